"""
marketbill/features/subscriptions/ledger.py

Subscription ledger: per-(user, role) entitlement state.

State machine:
    active -> expired    (sweeper or lazy expiry, end_date passed)
    active -> cancelled  (user cancel, or superseded by a new activation)

Terminal rows are never reactivated by the engine. Renewal inserts a new row
after cancelling the prior one.

At most one active row per (user_id, role) is enforced by the unique partial
index uq_subscriptions_one_active. Activation cancels and inserts in one
transaction; a concurrent activation for the same pair makes one side fail
with IntegrityError, and that side retries the whole transaction.
"""

import logging
import math
from datetime import datetime, timedelta
from typing import Optional, Dict, Any, List, Callable, TypeVar
from uuid import uuid4
from sqlalchemy import select, insert, update, and_, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from marketbill.core.config import settings
from marketbill.core.database import get_db_session, subscriptions, plans, utc_now, as_utc
from marketbill.core.errors import ConflictError, NotFoundError, ValidationError
from marketbill.features.plans.service import row_to_plan
from marketbill.models.plan import Plan
from marketbill.models.subscription import (
    Subscription,
    SubscriptionUsage,
    STATUS_ACTIVE,
    STATUS_EXPIRED,
    STATUS_CANCELLED,
    SUBSCRIPTION_STATUSES,
)


logger = logging.getLogger("marketbill.subscriptions")

T = TypeVar("T")


def row_to_subscription(row, plan: Optional[Plan] = None) -> Subscription:
    return Subscription(
        subscription_id=row["id"],
        user_id=row["user_id"],
        plan_id=row["plan_id"],
        role=row["role"],
        start_date=as_utc(row["start_date"]),
        end_date=as_utc(row["end_date"]),
        status=row["status"],
        auto_renew=bool(row["auto_renew"]),
        usage=SubscriptionUsage(
            listings_used=row["listings_used"] or 0,
            featured_used=row["featured_used"] or 0,
        ),
        payment_intent_id=row["payment_intent_id"],
        created_at=as_utc(row["created_at"]),
        plan=plan,
    )


def _with_plan(session: Session, row) -> Subscription:
    plan_row = session.execute(
        select(plans).where(plans.c.plan_id == row["plan_id"])
    ).mappings().fetchone()
    return row_to_subscription(row, plan=row_to_plan(plan_row) if plan_row else None)


def get_subscription(subscription_id: str) -> Optional[Subscription]:
    with get_db_session() as session:
        row = session.execute(
            select(subscriptions).where(subscriptions.c.id == subscription_id)
        ).mappings().fetchone()
        if not row:
            return None
        return _with_plan(session, row)


def get_active(user_id: str, role: str, session: Optional[Session] = None) -> Optional[Subscription]:
    """
    The active row for (user_id, role), or None.

    The row may be stale (end_date in the past); callers that grant
    entitlements must check Subscription.is_current().
    """
    stmt = select(subscriptions).where(
        and_(
            subscriptions.c.user_id == user_id,
            subscriptions.c.role == role,
            subscriptions.c.status == STATUS_ACTIVE,
        )
    )
    if session is not None:
        row = session.execute(stmt).mappings().fetchone()
        return _with_plan(session, row) if row else None

    with get_db_session() as own:
        row = own.execute(stmt).mappings().fetchone()
        return _with_plan(own, row) if row else None


def lock_active(session: Session, user_id: str, role: str):
    """
    Select the active row FOR UPDATE inside the caller's transaction.

    Concurrent quota checks for the same seller serialize on this lock.
    SQLite has no row locks; the clause is dropped there.
    """
    return session.execute(
        select(subscriptions)
        .where(
            and_(
                subscriptions.c.user_id == user_id,
                subscriptions.c.role == role,
                subscriptions.c.status == STATUS_ACTIVE,
            )
        )
        .with_for_update()
    ).mappings().fetchone()


def replace_active_in_session(
    session: Session,
    user_id: str,
    role: str,
    plan: Plan,
    payment_intent_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> str:
    """
    Cancel the current active row for the pair and insert a fresh one.

    Runs inside the caller's transaction. Returns the new subscription id.
    Raises IntegrityError when a concurrent activation won the race.
    """
    now = now or utc_now()

    cancelled = session.execute(
        update(subscriptions)
        .where(
            and_(
                subscriptions.c.user_id == user_id,
                subscriptions.c.role == role,
                subscriptions.c.status == STATUS_ACTIVE,
            )
        )
        .values(status=STATUS_CANCELLED, updated_at=now)
    ).rowcount

    subscription_id = str(uuid4())
    session.execute(
        insert(subscriptions).values(
            id=subscription_id,
            user_id=user_id,
            plan_id=plan.plan_id,
            role=role,
            start_date=now,
            end_date=now + timedelta(days=plan.duration_days),
            status=STATUS_ACTIVE,
            auto_renew=True,
            listings_used=0,
            featured_used=0,
            payment_intent_id=payment_intent_id,
            created_at=now,
            updated_at=now,
        )
    )

    logger.info(
        "[ledger] replaced active subscription",
        extra={
            "user_id": user_id,
            "role": role,
            "plan_id": plan.plan_id,
            "subscription_id": subscription_id,
            "superseded": cancelled,
        },
    )
    return subscription_id


def with_activation_retry(
    work: Callable[[], T],
    user_id: str,
    role: str,
    max_attempts: Optional[int] = None,
) -> T:
    """
    Run a transactional unit, retrying when the one-active index rejects it.

    `work` must open and commit its own transaction so each attempt starts clean.
    """
    attempts = max_attempts or settings.ACTIVATION_MAX_ATTEMPTS
    for attempt in range(1, attempts + 1):
        try:
            return work()
        except IntegrityError as e:
            logger.warning(
                "[ledger] activation conflict, retrying",
                extra={"user_id": user_id, "role": role, "attempt": attempt, "error": str(e.orig)},
            )

    logger.error("[ledger] activation conflict not resolved", extra={"user_id": user_id, "role": role, "attempts": attempts})
    raise ConflictError(
        "Another activation for this role is in progress. Please retry.",
        code="activation_conflict",
    )


def replace_active(
    user_id: str,
    role: str,
    plan: Plan,
    payment_intent_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Subscription:
    """Atomically supersede the pair's active subscription with a new one for `plan`."""

    def _work() -> str:
        with get_db_session() as session:
            return replace_active_in_session(session, user_id, role, plan, payment_intent_id, now=now)

    subscription_id = with_activation_retry(_work, user_id, role)
    return get_subscription(subscription_id)


def cancel_active(user_id: str, role: str) -> Subscription:
    """User cancellation: active -> cancelled and auto-renew off."""
    now = utc_now()
    with get_db_session() as session:
        row = session.execute(
            select(subscriptions.c.id).where(
                and_(
                    subscriptions.c.user_id == user_id,
                    subscriptions.c.role == role,
                    subscriptions.c.status == STATUS_ACTIVE,
                )
            )
        ).fetchone()
        if not row:
            raise NotFoundError("No active subscription found", code="subscription_not_found")

        result = session.execute(
            update(subscriptions)
            .where(and_(subscriptions.c.id == row[0], subscriptions.c.status == STATUS_ACTIVE))
            .values(status=STATUS_CANCELLED, auto_renew=False, updated_at=now)
        )
        if result.rowcount == 0:
            raise NotFoundError("No active subscription found", code="subscription_not_found")

    logger.info("[ledger] cancelled", extra={"user_id": user_id, "role": role, "subscription_id": row[0]})
    return get_subscription(row[0])


def expire(subscription_id: str, now: Optional[datetime] = None, session: Optional[Session] = None) -> bool:
    """
    Compare-and-set active -> expired for a row whose end_date has passed.

    Returns True only for the caller that performed the flip.
    """
    now = now or utc_now()
    stmt = (
        update(subscriptions)
        .where(
            and_(
                subscriptions.c.id == subscription_id,
                subscriptions.c.status == STATUS_ACTIVE,
                subscriptions.c.end_date < now,
            )
        )
        .values(status=STATUS_EXPIRED, updated_at=now)
    )
    if session is not None:
        return session.execute(stmt).rowcount == 1
    with get_db_session() as own:
        return own.execute(stmt).rowcount == 1


def increment_featured_used(session: Session, subscription_id: str) -> None:
    session.execute(
        update(subscriptions)
        .where(subscriptions.c.id == subscription_id)
        .values(featured_used=subscriptions.c.featured_used + 1, updated_at=utc_now())
    )


def list_expiring(now: datetime, lookahead_days: int) -> List[Subscription]:
    """Active, auto-renewing rows ending within [now, now + lookahead]."""
    horizon = now + timedelta(days=lookahead_days)
    with get_db_session() as session:
        rows = session.execute(
            select(subscriptions).where(
                and_(
                    subscriptions.c.status == STATUS_ACTIVE,
                    subscriptions.c.auto_renew.is_(True),
                    subscriptions.c.end_date >= now,
                    subscriptions.c.end_date <= horizon,
                )
            ).order_by(subscriptions.c.end_date.asc())
        ).mappings().all()
        return [_with_plan(session, r) for r in rows]


def list_overdue(now: datetime) -> List[Subscription]:
    """Active rows whose end_date is already in the past."""
    with get_db_session() as session:
        rows = session.execute(
            select(subscriptions).where(
                and_(
                    subscriptions.c.status == STATUS_ACTIVE,
                    subscriptions.c.end_date < now,
                )
            ).order_by(subscriptions.c.end_date.asc())
        ).mappings().all()
        return [_with_plan(session, r) for r in rows]


# --- Admin ---------------------------------------------------------------


def list_subscriptions(
    status: Optional[str] = None,
    role: Optional[str] = None,
    user_id: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
) -> Dict[str, Any]:
    """Filtered, newest-first page of subscriptions with pagination metadata."""
    page = max(1, page)
    limit = max(1, min(limit, 100))

    filters = []
    if status:
        filters.append(subscriptions.c.status == status)
    if role:
        filters.append(subscriptions.c.role == role)
    if user_id:
        filters.append(subscriptions.c.user_id == user_id)
    where = and_(*filters) if filters else None

    with get_db_session() as session:
        stmt = select(subscriptions)
        count_stmt = select(func.count()).select_from(subscriptions)
        if where is not None:
            stmt = stmt.where(where)
            count_stmt = count_stmt.where(where)

        total = session.execute(count_stmt).scalar_one()
        rows = session.execute(
            stmt.order_by(subscriptions.c.created_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        ).mappings().all()
        items = [_with_plan(session, r) for r in rows]

    return {
        "subscriptions": items,
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": math.ceil(total / limit) if total else 0,
        },
    }


def admin_update_subscription(
    subscription_id: str,
    status: Optional[str] = None,
    auto_renew: Optional[bool] = None,
    end_date: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Manual override of status, auto-renew and end date.

    Setting a row active cancels any other active row for the same pair first,
    so the one-active guarantee holds for overrides too.

    Returns {"subscription": Subscription, "previous_status": str}.
    """
    if status is not None and status not in SUBSCRIPTION_STATUSES:
        raise ValidationError("Invalid status", code="invalid_status")

    existing = get_subscription(subscription_id)
    if not existing:
        raise NotFoundError("Subscription not found", code="subscription_not_found")

    values: Dict[str, Any] = {}
    if status is not None:
        values["status"] = status
    if auto_renew is not None:
        values["auto_renew"] = auto_renew
    if end_date is not None:
        values["end_date"] = as_utc(end_date)

    if values:
        def _work() -> None:
            with get_db_session() as session:
                now = utc_now()
                if status == STATUS_ACTIVE and existing.status != STATUS_ACTIVE:
                    session.execute(
                        update(subscriptions)
                        .where(
                            and_(
                                subscriptions.c.user_id == existing.user_id,
                                subscriptions.c.role == existing.role,
                                subscriptions.c.status == STATUS_ACTIVE,
                                subscriptions.c.id != subscription_id,
                            )
                        )
                        .values(status=STATUS_CANCELLED, updated_at=now)
                    )
                session.execute(
                    update(subscriptions)
                    .where(subscriptions.c.id == subscription_id)
                    .values(updated_at=now, **values)
                )

        with_activation_retry(_work, existing.user_id, existing.role)
        logger.info(
            "[ledger] admin override",
            extra={"subscription_id": subscription_id, "fields": sorted(values), "previous_status": existing.status},
        )

    return {"subscription": get_subscription(subscription_id), "previous_status": existing.status}


def subscription_analytics(days: int = 30, now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Aggregate view for the admin dashboard.

    total_revenue is the sum of current plan prices over active subscriptions.
    """
    now = now or utc_now()
    since = now - timedelta(days=days)

    with get_db_session() as session:
        status_counts = dict(
            session.execute(
                select(subscriptions.c.status, func.count()).group_by(subscriptions.c.status)
            ).all()
        )

        total_revenue = session.execute(
            select(func.coalesce(func.sum(plans.c.price), 0))
            .select_from(subscriptions.join(plans, subscriptions.c.plan_id == plans.c.plan_id))
            .where(subscriptions.c.status == STATUS_ACTIVE)
        ).scalar_one()

        by_plan = session.execute(
            select(plans.c.name, func.count())
            .select_from(subscriptions.join(plans, subscriptions.c.plan_id == plans.c.plan_id))
            .where(subscriptions.c.status == STATUS_ACTIVE)
            .group_by(plans.c.name)
            .order_by(plans.c.name)
        ).all()

        by_role = session.execute(
            select(subscriptions.c.role, func.count())
            .where(subscriptions.c.status == STATUS_ACTIVE)
            .group_by(subscriptions.c.role)
            .order_by(subscriptions.c.role)
        ).all()

        recent_rows = session.execute(
            select(subscriptions)
            .where(subscriptions.c.created_at >= since)
            .order_by(subscriptions.c.created_at.desc())
            .limit(10)
        ).mappings().all()
        recent = [_with_plan(session, r) for r in recent_rows]

    return {
        "overview": {
            "total_subscriptions": sum(status_counts.values()),
            "active_subscriptions": status_counts.get(STATUS_ACTIVE, 0),
            "expired_subscriptions": status_counts.get(STATUS_EXPIRED, 0),
            "cancelled_subscriptions": status_counts.get(STATUS_CANCELLED, 0),
            "total_revenue": round(float(total_revenue or 0), 2),
        },
        "subscriptions_by_plan": [{"plan_name": name, "count": count} for name, count in by_plan],
        "subscriptions_by_role": [{"role": role, "count": count} for role, count in by_role],
        "recent_subscriptions": recent,
    }
