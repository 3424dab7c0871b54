"""
marketbill/features/plans/service.py

Plan catalog.

Handles:
- Role-filtered listing of active plans
- Admin create/update/delete with enum validation
- Default plan seeding (Basic, Pro, Premium)
"""

import logging
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List
from uuid import uuid4
from sqlalchemy import select, insert, update, delete, and_, or_, func
from sqlalchemy.orm import Session

from marketbill.core.database import get_db_session, plans, subscriptions, as_utc
from marketbill.core.errors import ValidationError, NotFoundError, ConflictError
from marketbill.models.plan import (
    Plan,
    PlanFeatures,
    SELLER_ROLES,
    TARGET_ROLES,
    PLAN_NAMES,
    BILLING_PERIODS,
    FREE_PLAN_NAME,
)
from marketbill.models.subscription import STATUS_ACTIVE


logger = logging.getLogger("marketbill.plans")

FEATURE_COLUMNS = ("max_listings", "featured_listings_count", "boosted_visibility", "priority_support")

DEFAULT_PERIOD_DAYS = {"monthly": 30, "yearly": 365}

# Default plan configurations
DEFAULT_PLANS = {
    "Basic": {
        "price": 0,
        "billing_period": "monthly",
        "duration_days": 30,
        "features": {
            "max_listings": 1,
            "featured_listings_count": 0,
            "boosted_visibility": False,
            "priority_support": False,
        },
    },
    "Pro": {
        "price": 19.99,
        "billing_period": "monthly",
        "duration_days": 30,
        "features": {
            "max_listings": 25,
            "featured_listings_count": 3,
            "boosted_visibility": False,
            "priority_support": False,
        },
    },
    "Premium": {
        "price": 49.99,
        "billing_period": "monthly",
        "duration_days": 30,
        "features": {
            "max_listings": 0,  # unlimited
            "featured_listings_count": 10,
            "boosted_visibility": True,
            "priority_support": True,
        },
    },
}


def validate_role(role: Optional[str]) -> str:
    """Seller role from the closed set, or ValidationError."""
    if role not in SELLER_ROLES:
        raise ValidationError(
            f"role must be one of {', '.join(SELLER_ROLES)}",
            code="invalid_role",
        )
    return role


def _validate_plan_fields(
    name: Optional[str] = None,
    billing_period: Optional[str] = None,
    target_role: Optional[str] = None,
    price: Optional[float] = None,
    duration_days: Optional[int] = None,
) -> None:
    if name is not None and name not in PLAN_NAMES:
        raise ValidationError("name must be Basic, Pro, or Premium", code="invalid_plan_name")
    if billing_period is not None and billing_period not in BILLING_PERIODS:
        raise ValidationError("billingPeriod must be monthly or yearly", code="invalid_billing_period")
    if target_role is not None and target_role not in TARGET_ROLES:
        raise ValidationError("Invalid targetRole", code="invalid_target_role")
    if price is not None and price < 0:
        raise ValidationError("price must be >= 0", code="invalid_price")
    if duration_days is not None and duration_days <= 0:
        raise ValidationError("duration must be > 0 days", code="invalid_duration")


def row_to_plan(row) -> Plan:
    return Plan(
        plan_id=row["plan_id"],
        name=row["name"],
        price=float(row["price"] or 0),
        billing_period=row["billing_period"],
        duration_days=row["duration_days"],
        features=PlanFeatures(
            max_listings=row["max_listings"],
            featured_listings_count=row["featured_listings_count"],
            boosted_visibility=bool(row["boosted_visibility"]),
            priority_support=bool(row["priority_support"]),
        ),
        target_role=row["target_role"],
        is_active=bool(row["is_active"]),
        created_at=as_utc(row["created_at"]),
        updated_at=as_utc(row["updated_at"]),
    )


def list_plans(role: str) -> List[Plan]:
    """Active plans for a seller role (role-specific or 'both'), cheapest first."""
    validate_role(role)
    with get_db_session() as session:
        rows = session.execute(
            select(plans)
            .where(
                and_(
                    plans.c.is_active.is_(True),
                    or_(plans.c.target_role == role, plans.c.target_role == "both"),
                )
            )
            .order_by(plans.c.price.asc(), plans.c.name.asc())
        ).mappings().all()
    return [row_to_plan(r) for r in rows]


def list_all_plans() -> List[Plan]:
    """Every plan regardless of role or active flag (admin view)."""
    with get_db_session() as session:
        rows = session.execute(
            select(plans).order_by(plans.c.price.asc(), plans.c.name.asc())
        ).mappings().all()
    return [row_to_plan(r) for r in rows]


def get_plan(plan_id: str, session: Optional[Session] = None) -> Optional[Plan]:
    """Look up a plan. Pass a session to read inside an open transaction."""
    stmt = select(plans).where(plans.c.plan_id == plan_id)
    if session is not None:
        row = session.execute(stmt).mappings().fetchone()
    else:
        with get_db_session() as own:
            row = own.execute(stmt).mappings().fetchone()
    return row_to_plan(row) if row else None


def require_plan(plan_id: str) -> Plan:
    plan = get_plan(plan_id)
    if not plan:
        raise NotFoundError("Plan not found", code="plan_not_found")
    return plan


def create_plan(
    name: str,
    target_role: str,
    price: Optional[float] = None,
    billing_period: str = "monthly",
    duration_days: Optional[int] = None,
    features: Optional[Dict[str, Any]] = None,
    is_active: bool = True,
) -> Plan:
    """
    Create a plan.

    The Basic tier is always free: its price is forced to 0.
    Duration defaults to the billing period length (30 or 365 days).
    """
    if not name or not target_role:
        raise ValidationError("name and targetRole are required")
    _validate_plan_fields(
        name=name,
        billing_period=billing_period,
        target_role=target_role,
        price=price,
        duration_days=duration_days,
    )

    final_price = 0 if name == FREE_PLAN_NAME else (price or 0)
    final_duration = duration_days or DEFAULT_PERIOD_DAYS[billing_period]

    features = features or {}
    final_features = {
        "max_listings": features.get("max_listings", 1 if name == FREE_PLAN_NAME else 0),
        "featured_listings_count": features.get("featured_listings_count", 0),
        "boosted_visibility": bool(features.get("boosted_visibility", False)),
        "priority_support": bool(features.get("priority_support", False)),
    }

    plan_id = str(uuid4())
    now = datetime.now(timezone.utc)
    with get_db_session() as session:
        session.execute(
            insert(plans).values(
                plan_id=plan_id,
                name=name,
                price=final_price,
                billing_period=billing_period,
                duration_days=final_duration,
                target_role=target_role,
                is_active=is_active,
                created_at=now,
                updated_at=now,
                **final_features,
            )
        )

    logger.info("[plans] created", extra={"plan_id": plan_id, "plan_name": name, "target_role": target_role})
    return require_plan(plan_id)


def update_plan(plan_id: str, changes: Dict[str, Any]) -> Plan:
    """
    Apply an admin edit. `features` is merged key by key.

    Existing subscriptions are unaffected: they carry their own dates.
    """
    existing = require_plan(plan_id)

    _validate_plan_fields(
        name=changes.get("name"),
        billing_period=changes.get("billing_period"),
        target_role=changes.get("target_role"),
        price=changes.get("price"),
        duration_days=changes.get("duration_days"),
    )

    values: Dict[str, Any] = {}
    for key in ("name", "price", "billing_period", "duration_days", "target_role", "is_active"):
        if changes.get(key) is not None:
            values[key] = changes[key]

    for key, value in (changes.get("features") or {}).items():
        if key in FEATURE_COLUMNS and value is not None:
            values[key] = value

    if values.get("name", existing.name) == FREE_PLAN_NAME:
        values["price"] = 0

    if values:
        values["updated_at"] = datetime.now(timezone.utc)
        with get_db_session() as session:
            session.execute(update(plans).where(plans.c.plan_id == plan_id).values(**values))

    logger.info("[plans] updated", extra={"plan_id": plan_id, "fields": sorted(values)})
    return require_plan(plan_id)


def delete_plan(plan_id: str) -> None:
    """Hard delete. Blocked while any active subscription references the plan."""
    with get_db_session() as session:
        exists = session.execute(
            select(plans.c.plan_id).where(plans.c.plan_id == plan_id)
        ).first()
        if not exists:
            raise NotFoundError("Plan not found", code="plan_not_found")

        active_count = session.execute(
            select(func.count())
            .select_from(subscriptions)
            .where(
                and_(
                    subscriptions.c.plan_id == plan_id,
                    subscriptions.c.status == STATUS_ACTIVE,
                )
            )
        ).scalar_one()

        if active_count > 0:
            raise ConflictError(
                f"Cannot delete plan with {active_count} active subscription(s). Deactivate it instead.",
                code="plan_has_active_subscriptions",
            )

        session.execute(delete(plans).where(plans.c.plan_id == plan_id))

    logger.info("[plans] deleted", extra={"plan_id": plan_id})


def seed_default_plans() -> int:
    """
    Seed Basic, Pro and Premium for both roles (idempotent).

    Returns the number of plans inserted.
    """
    now = datetime.now(timezone.utc)
    inserted = 0

    with get_db_session() as session:
        for name, config in DEFAULT_PLANS.items():
            existing = session.execute(
                select(plans.c.plan_id).where(
                    and_(plans.c.name == name, plans.c.target_role == "both")
                )
            ).first()
            if existing:
                continue

            session.execute(
                insert(plans).values(
                    plan_id=str(uuid4()),
                    name=name,
                    price=config["price"],
                    billing_period=config["billing_period"],
                    duration_days=config["duration_days"],
                    target_role="both",
                    is_active=True,
                    created_at=now,
                    updated_at=now,
                    **config["features"],
                )
            )
            inserted += 1

    if inserted:
        logger.info("[plans] seeded defaults", extra={"inserted": inserted})
    return inserted
