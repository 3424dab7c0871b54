"""
marketbill/features/entitlements/service.py

Entitlement enforcement for featured and boosted listings.

Handles:
- Active-subscription requirement for the role implied by the item type
- Featured quota (plan featured_listings_count, 0 = unlimited)
- Boost gate (plan boosted_visibility)
- One placement record per item, reused once expired

The subscription row is locked for the whole check-count-write transaction,
so concurrent feature requests from one seller serialize.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional, List, Tuple
from uuid import uuid4
from sqlalchemy import select, insert, update, and_, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from marketbill.core.database import get_db_session, featured_listings, utc_now, as_utc
from marketbill.core.errors import (
    ValidationError,
    EligibilityError,
    NotFoundError,
    ConflictError,
    QuotaExceededError,
)
from marketbill.features.directory.service import ListingDirectory, get_listing_directory
from marketbill.features.notifications.ports import NotificationPort, AnalyticsPort, notify, track
from marketbill.features.plans.service import get_plan
from marketbill.features.subscriptions import ledger
from marketbill.models.featured_listing import (
    FeaturedListing,
    ITEM_TYPE_ROLES,
    FEATURED_PRIORITY,
    BOOSTED_PRIORITY,
)
from marketbill.models.plan import Plan


logger = logging.getLogger("marketbill.entitlements")

DEFAULT_DURATION_DAYS = 7


def row_to_featured(row) -> FeaturedListing:
    return FeaturedListing(
        featured_id=row["id"],
        item_type=row["item_type"],
        item_id=row["item_id"],
        owner_id=row["owner_id"],
        start_date=as_utc(row["start_date"]),
        end_date=as_utc(row["end_date"]),
        priority_score=row["priority_score"],
        is_boosted=bool(row["is_boosted"]),
    )


def _validate_request(item_type: str, duration_days: int) -> str:
    if item_type not in ITEM_TYPE_ROLES:
        raise ValidationError("itemType must be product or property", code="invalid_item_type")
    if duration_days is None or duration_days <= 0:
        raise ValidationError("duration must be a positive number of days", code="invalid_duration")
    return ITEM_TYPE_ROLES[item_type]


def _block(code: str, message: str, user_id: str, item_type: str, item_id: str) -> EligibilityError:
    logger.warning(
        "[enforcement] BLOCK",
        extra={"user_id": user_id, "item_type": item_type, "item_id": item_id, "reason": code},
    )
    return EligibilityError(message, code=code)


def _current_subscription(session: Session, user_id: str, role: str, now: datetime) -> Tuple[Optional[object], Optional[str]]:
    """
    Lock and return the seller's active row for the role.

    Returns (row, None) when usable, else (None, denial_code). A stale row is
    expired in the same transaction.
    """
    row = ledger.lock_active(session, user_id, role)
    if not row:
        return None, "subscription_required"
    if as_utc(row["end_date"]) < now:
        ledger.expire(row["id"], now=now, session=session)
        return None, "subscription_expired"
    return row, None


def _active_record(session: Session, item_type: str, item_id: str):
    return session.execute(
        select(featured_listings)
        .where(
            and_(
                featured_listings.c.item_type == item_type,
                featured_listings.c.item_id == item_id,
            )
        )
        .with_for_update()
    ).mappings().fetchone()


def _write_placement(
    session: Session,
    existing,
    user_id: str,
    item_type: str,
    item_id: str,
    now: datetime,
    end_date: datetime,
    boosted: bool,
) -> str:
    """Insert a placement, or overwrite the item's expired record."""
    values = dict(
        owner_id=user_id,
        start_date=now,
        end_date=end_date,
        priority_score=BOOSTED_PRIORITY if boosted else FEATURED_PRIORITY,
        is_boosted=boosted,
        consumed_feature_slot=not boosted,
        updated_at=now,
    )
    if existing is not None:
        session.execute(
            update(featured_listings).where(featured_listings.c.id == existing["id"]).values(**values)
        )
        return existing["id"]

    featured_id = str(uuid4())
    session.execute(
        insert(featured_listings).values(
            id=featured_id,
            item_type=item_type,
            item_id=item_id,
            created_at=now,
            **values,
        )
    )
    return featured_id


def _load(featured_id: str) -> FeaturedListing:
    with get_db_session() as session:
        row = session.execute(
            select(featured_listings).where(featured_listings.c.id == featured_id)
        ).mappings().fetchone()
    return row_to_featured(row)


def count_active_featured(session: Session, user_id: str, item_type: str, now: datetime) -> int:
    """Unexpired placements holding a featured slot. Boost-only placements are not counted."""
    return session.execute(
        select(func.count())
        .select_from(featured_listings)
        .where(
            and_(
                featured_listings.c.owner_id == user_id,
                featured_listings.c.item_type == item_type,
                featured_listings.c.end_date >= now,
                featured_listings.c.consumed_feature_slot.is_(True),
            )
        )
    ).scalar_one()


def feature_listing(
    user_id: str,
    item_id: str,
    item_type: str,
    duration_days: int = DEFAULT_DURATION_DAYS,
    directory: Optional[ListingDirectory] = None,
    notifier: Optional[NotificationPort] = None,
    analytics: Optional[AnalyticsPort] = None,
    now: Optional[datetime] = None,
) -> FeaturedListing:
    """
    Feature an owned item for `duration_days`.

    Raises:
        EligibilityError: no active subscription (subscription_required / subscription_expired)
        QuotaExceededError: featured limit reached for this seller and item type
        NotFoundError: item missing or owned by someone else
        ConflictError: item already has an unexpired placement (already_featured)
    """
    role = _validate_request(item_type, duration_days)
    now = now or utc_now()
    item = (directory or get_listing_directory()).get_listing(item_type, item_id)

    denial = None
    plan: Optional[Plan] = None
    try:
        with get_db_session() as session:
            sub_row, denial = _current_subscription(session, user_id, role, now)
            if not denial:
                plan = get_plan(sub_row["plan_id"], session=session)
                limit = plan.features.featured_listings_count if plan else 0

                if limit > 0:
                    active_count = count_active_featured(session, user_id, item_type, now)
                    if active_count >= limit:
                        logger.warning(
                            "[enforcement] BLOCK",
                            extra={"user_id": user_id, "item_type": item_type, "reason": "quota_exceeded", "limit": limit, "usage": active_count},
                        )
                        raise QuotaExceededError(
                            f"You have reached your featured listings limit ({limit}). Upgrade your plan to feature more listings."
                        )

                if not item or item.owner_id != user_id:
                    raise NotFoundError("Item not found or you don't own it", code="item_not_found")

                existing = _active_record(session, item_type, item_id)
                if existing is not None and as_utc(existing["end_date"]) >= now:
                    raise ConflictError(
                        "This item is already featured. Use boost to upgrade it.",
                        code="already_featured",
                    )

                featured_id = _write_placement(
                    session, existing, user_id, item_type, item_id,
                    now, now + timedelta(days=duration_days), boosted=False,
                )
                ledger.increment_featured_used(session, sub_row["id"])
    except IntegrityError:
        # Concurrent insert for the same item won
        raise ConflictError("This item is already featured. Use boost to upgrade it.", code="already_featured")

    if denial == "subscription_required":
        raise _block(denial, "Active subscription required to feature listings", user_id, item_type, item_id)
    if denial == "subscription_expired":
        raise _block(denial, "Your subscription has expired", user_id, item_type, item_id)

    logger.info(
        "[enforcement] featured",
        extra={"user_id": user_id, "item_type": item_type, "item_id": item_id, "featured_id": featured_id, "duration_days": duration_days},
    )
    track(
        "listing_featured",
        user_id,
        {
            "item_type": item_type,
            "item_id": item_id,
            "plan_id": plan.plan_id if plan else None,
            "plan_name": plan.name if plan else None,
            "role": role,
            "duration_days": duration_days,
        },
        analytics=analytics,
    )
    notify(
        user_id,
        "listing_featured_approved",
        {
            "title": "Listing Featured",
            "message": f"Your {item_type} has been featured and will be highlighted in search results!",
            "item_id": item_id,
            "item_type": item_type,
        },
        notifier=notifier,
    )
    return _load(featured_id)


def boost_listing(
    user_id: str,
    item_id: str,
    item_type: str,
    duration_days: int = DEFAULT_DURATION_DAYS,
    directory: Optional[ListingDirectory] = None,
    analytics: Optional[AnalyticsPort] = None,
    now: Optional[datetime] = None,
) -> FeaturedListing:
    """
    Boost an owned item.

    An unexpired placement is upgraded in place and its end date pushed out to
    at least now + duration. Otherwise a new boosted placement is written.
    Boosting never consumes the featured quota.
    """
    role = _validate_request(item_type, duration_days)
    now = now or utc_now()
    item = (directory or get_listing_directory()).get_listing(item_type, item_id)

    denial = None
    plan: Optional[Plan] = None
    upgraded = False
    try:
        with get_db_session() as session:
            sub_row, denial = _current_subscription(session, user_id, role, now)
            if not denial:
                plan = get_plan(sub_row["plan_id"], session=session)
                if not plan or not plan.features.boosted_visibility:
                    raise _block(
                        "boost_not_included",
                        "Your plan does not include boosted visibility. Upgrade to boost listings.",
                        user_id, item_type, item_id,
                    )

                if not item or item.owner_id != user_id:
                    raise NotFoundError("Item not found or you don't own it", code="item_not_found")

                existing = _active_record(session, item_type, item_id)
                new_end = now + timedelta(days=duration_days)

                if existing is not None and as_utc(existing["end_date"]) >= now:
                    session.execute(
                        update(featured_listings)
                        .where(featured_listings.c.id == existing["id"])
                        .values(
                            is_boosted=True,
                            priority_score=BOOSTED_PRIORITY,
                            end_date=max(as_utc(existing["end_date"]), new_end),
                            updated_at=now,
                        )
                    )
                    featured_id = existing["id"]
                    upgraded = True
                else:
                    featured_id = _write_placement(
                        session, existing, user_id, item_type, item_id,
                        now, new_end, boosted=True,
                    )
    except IntegrityError:
        raise ConflictError("This item was promoted concurrently. Please retry.", code="already_featured")

    if denial == "subscription_required":
        raise _block(denial, "Active subscription required to boost listings", user_id, item_type, item_id)
    if denial == "subscription_expired":
        raise _block(denial, "Your subscription has expired", user_id, item_type, item_id)

    logger.info(
        "[enforcement] boosted",
        extra={"user_id": user_id, "item_type": item_type, "item_id": item_id, "featured_id": featured_id, "upgraded": upgraded},
    )
    track(
        "listing_boosted",
        user_id,
        {
            "item_type": item_type,
            "item_id": item_id,
            "plan_id": plan.plan_id,
            "plan_name": plan.name,
            "role": role,
            "duration_days": duration_days,
            "upgraded": upgraded,
        },
        analytics=analytics,
    )
    return _load(featured_id)


def list_active_featured(
    item_type: Optional[str] = None,
    limit: int = 50,
    now: Optional[datetime] = None,
) -> List[FeaturedListing]:
    """Unexpired placements, boosted first, then most recent."""
    if item_type is not None and item_type not in ITEM_TYPE_ROLES:
        raise ValidationError("itemType must be product or property", code="invalid_item_type")
    now = now or utc_now()

    stmt = select(featured_listings).where(featured_listings.c.end_date >= now)
    if item_type:
        stmt = stmt.where(featured_listings.c.item_type == item_type)

    with get_db_session() as session:
        rows = session.execute(
            stmt.order_by(
                featured_listings.c.priority_score.desc(),
                featured_listings.c.start_date.desc(),
            ).limit(max(1, min(limit, 200)))
        ).mappings().all()
    return [row_to_featured(r) for r in rows]
