"""
Seller-facing subscription operations.

Free-plan activation is the only synchronous path to an active subscription.
Paid plans are activated by the payment webhook once the processor confirms.
"""
import logging
from datetime import datetime
from typing import Optional

from marketbill.core.database import utc_now
from marketbill.core.errors import PaymentRequiredError
from marketbill.features.directory.service import UserDirectory
from marketbill.features.notifications.ports import NotificationPort, AnalyticsPort, notify, track
from marketbill.features.plans.service import validate_role
from marketbill.features.subscriptions import ledger
from marketbill.features.subscriptions.eligibility import check_purchase
from marketbill.models.plan import Plan
from marketbill.models.subscription import Subscription, STATUS_ACTIVE


logger = logging.getLogger("marketbill.subscriptions")


def announce_activation(
    user_id: str,
    role: str,
    plan: Plan,
    subscription_id: str,
    notifier: Optional[NotificationPort] = None,
    analytics: Optional[AnalyticsPort] = None,
) -> None:
    """Best-effort analytics record and user notification after a committed activation."""
    track(
        "subscription_purchased",
        user_id,
        {
            "subscription_id": subscription_id,
            "plan_id": plan.plan_id,
            "plan_name": plan.name,
            "role": role,
            "price": plan.price,
            "duration_days": plan.duration_days,
        },
        analytics=analytics,
    )
    notify(
        user_id,
        "subscription_activated",
        {
            "title": "Subscription Activated",
            "message": f"Your {plan.name} subscription for {role} has been activated!",
            "plan_id": plan.plan_id,
            "plan_name": plan.name,
            "role": role,
        },
        notifier=notifier,
    )


def subscribe(
    user_id: str,
    plan_id: str,
    role: str,
    directory: Optional[UserDirectory] = None,
    notifier: Optional[NotificationPort] = None,
    analytics: Optional[AnalyticsPort] = None,
) -> Subscription:
    """
    Activate a zero-price plan immediately.

    Raises PaymentRequiredError for any paid plan without touching the ledger:
    paid entitlements only come from a processor-confirmed webhook.
    """
    ctx = check_purchase(user_id, plan_id, role, directory=directory)

    if not ctx.plan.is_free:
        logger.info(
            "[subscriptions] paid plan requires payment",
            extra={"user_id": user_id, "role": role, "plan_id": plan_id},
        )
        raise PaymentRequiredError("This plan requires payment. Please use the payment flow.")

    subscription = ledger.replace_active(user_id, role, ctx.plan)
    announce_activation(user_id, role, ctx.plan, subscription.subscription_id, notifier=notifier, analytics=analytics)
    return subscription


def get_current_subscription(
    user_id: str,
    role: str,
    now: Optional[datetime] = None,
    analytics: Optional[AnalyticsPort] = None,
) -> Optional[Subscription]:
    """
    The caller's current subscription for a role, or None.

    A stale active row (end_date passed) is expired and persisted here rather
    than waiting for the next sweep.
    """
    validate_role(role)
    now = now or utc_now()

    subscription = ledger.get_active(user_id, role)
    if not subscription:
        return None

    if subscription.end_date < now:
        if ledger.expire(subscription.subscription_id, now=now):
            logger.info(
                "[subscriptions] lazily expired",
                extra={"user_id": user_id, "role": role, "subscription_id": subscription.subscription_id},
            )
            track(
                "subscription_expired",
                user_id,
                {
                    "subscription_id": subscription.subscription_id,
                    "plan_id": subscription.plan_id,
                    "plan_name": subscription.plan.name if subscription.plan else None,
                    "role": role,
                },
                analytics=analytics,
            )
        return None

    return subscription


def cancel_subscription(user_id: str, role: str) -> Subscription:
    validate_role(role)
    return ledger.cancel_active(user_id, role)


def admin_override(
    subscription_id: str,
    status: Optional[str] = None,
    auto_renew: Optional[bool] = None,
    end_date: Optional[datetime] = None,
    notifier: Optional[NotificationPort] = None,
) -> Subscription:
    """Admin status/auto-renew/end-date override. Notifies the seller when the status changes."""
    result = ledger.admin_update_subscription(subscription_id, status=status, auto_renew=auto_renew, end_date=end_date)
    subscription = result["subscription"]

    if status is not None and status != result["previous_status"]:
        plan_name = subscription.plan.name if subscription.plan else "current"
        if status == STATUS_ACTIVE:
            kind, title = "subscription_activated", "Subscription Activated"
            message = f"Your {plan_name} subscription has been activated by admin."
        else:
            kind, title = "subscription_updated", "Subscription Updated"
            message = f"Your subscription status has been updated to {status}."
        notify(
            subscription.user_id,
            kind,
            {"title": title, "message": message, "subscription_id": subscription_id, "role": subscription.role},
            notifier=notifier,
        )

    return subscription
