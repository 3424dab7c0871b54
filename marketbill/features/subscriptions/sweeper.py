"""
Expiration sweeper.

Two passes over a snapshot of active subscriptions:
1. Expiring soon (auto-renew on, end_date within the lookahead): reminder notification.
   Every sweep inside the window re-sends it; there is no sent-once marker.
2. Overdue (end_date passed): compare-and-set to expired, analytics event.

Runs are single-flight per process. An overlapping run returns immediately
with skipped=True. Across processes the expire step is still safe because
the status flip is a compare-and-set.
"""
import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Optional
from uuid import uuid4

from marketbill.core.config import settings
from marketbill.core.database import utc_now
from marketbill.core.logging import bind_context
from marketbill.features.notifications.ports import NotificationPort, AnalyticsPort, notify, track
from marketbill.features.subscriptions import ledger


logger = logging.getLogger("marketbill.sweeper")

_sweep_lock = threading.Lock()


@dataclass
class SweepResult:
    expiring_count: int = 0
    expired_count: int = 0
    skipped: bool = False


def run_sweep(
    now: Optional[datetime] = None,
    lookahead_days: Optional[int] = None,
    notifier: Optional[NotificationPort] = None,
    analytics: Optional[AnalyticsPort] = None,
) -> SweepResult:
    if not _sweep_lock.acquire(blocking=False):
        logger.warning("[sweeper] previous run still in progress, skipping")
        return SweepResult(skipped=True)

    try:
        with bind_context(sweep_id=uuid4().hex[:12]):
            return _sweep(
                now or utc_now(),
                settings.EXPIRY_LOOKAHEAD_DAYS if lookahead_days is None else lookahead_days,
                notifier,
                analytics,
            )
    finally:
        _sweep_lock.release()


def _sweep(
    now: datetime,
    lookahead_days: int,
    notifier: Optional[NotificationPort],
    analytics: Optional[AnalyticsPort],
) -> SweepResult:
    result = SweepResult()

    for sub in ledger.list_expiring(now, lookahead_days):
        plan_name = sub.plan.name if sub.plan else "current"
        notify(
            sub.user_id,
            "subscription_expiring",
            {
                "title": "Subscription Expiring Soon",
                "message": f"Your {plan_name} subscription expires in {lookahead_days} days. Make sure to renew!",
                "subscription_id": sub.subscription_id,
                "plan_id": sub.plan_id,
                "plan_name": plan_name,
                "role": sub.role,
                "end_date": sub.end_date.isoformat(),
            },
            notifier=notifier,
        )
        result.expiring_count += 1

    for sub in ledger.list_overdue(now):
        if not ledger.expire(sub.subscription_id, now=now):
            # Cancelled or expired by someone else since the snapshot
            continue
        track(
            "subscription_expired",
            sub.user_id,
            {
                "subscription_id": sub.subscription_id,
                "plan_id": sub.plan_id,
                "plan_name": sub.plan.name if sub.plan else None,
                "role": sub.role,
            },
            analytics=analytics,
        )
        result.expired_count += 1

    logger.info(
        "[sweeper] run complete",
        extra={"expiring_count": result.expiring_count, "expired_count": result.expired_count},
    )
    return result
