"""
Payment webhook processing (idempotent).

1. Verify signature against the raw body (SignatureError, nothing processed)
2. Look up the payment record by intent id (unknown intents are acknowledged)
3. Compare-and-set pending -> succeeded; a zero rowcount means a duplicate
   delivery, or a success for an already failed record (paid_after_failure)
4. Replace the active subscription in the same transaction as step 3
5. Best-effort analytics and notification after commit

A database failure in steps 3-4 rolls both back and propagates, so the
processor redelivers and the compare-and-set keeps the retry safe.
"""
import logging
from dataclasses import dataclass
from typing import Optional, Dict, Tuple

from marketbill.core.database import get_db_session, utc_now
from marketbill.core.errors import SignatureError, ExternalProcessorError
from marketbill.core.logging import bind_context
from marketbill.features.billing import payments
from marketbill.features.billing.provider import (
    PaymentProvider,
    PaymentWebhookError,
    PaymentWebhookEvent,
    EVENT_PAYMENT_SUCCEEDED,
    EVENT_PAYMENT_FAILED,
)
from marketbill.features.billing.service import get_provider
from marketbill.features.notifications.ports import NotificationPort, AnalyticsPort
from marketbill.features.plans.service import get_plan
from marketbill.features.subscriptions import ledger
from marketbill.features.subscriptions.service import announce_activation
from marketbill.models.plan import Plan


logger = logging.getLogger("marketbill.webhooks")

OUTCOME_PROCESSED = "processed"
OUTCOME_DUPLICATE = "duplicate"
OUTCOME_UNKNOWN_INTENT = "unknown_intent"
OUTCOME_PLAN_MISSING = "plan_missing"
OUTCOME_IGNORED = "ignored"
OUTCOME_FAILED_RECORDED = "failed_recorded"
OUTCOME_PAID_AFTER_FAILURE = "paid_after_failure"

DEFAULT_FAILURE_REASON = "Payment failed"


@dataclass
class WebhookOutcome:
    event_id: str
    event_type: str
    intent_id: Optional[str]
    status: str
    subscription_id: Optional[str] = None


def process_webhook(
    headers: Dict[str, str],
    body: bytes,
    provider: Optional[PaymentProvider] = None,
    notifier: Optional[NotificationPort] = None,
    analytics: Optional[AnalyticsPort] = None,
) -> WebhookOutcome:
    """
    Verify and apply one processor event.

    Raises:
        SignatureError: authenticity check failed, no state touched
        Exception: primary-effect failure (database), for the processor to redeliver
    """
    provider = provider or get_provider()
    if provider is None:
        raise ExternalProcessorError("Payments are not configured", code="billing_disabled", status_code=503)

    try:
        event = provider.parse_webhook(headers, body)
    except PaymentWebhookError as e:
        logger.warning("[webhook] signature verification failed", extra={"error": str(e)})
        raise SignatureError(f"Webhook Error: {e}")

    with bind_context(event_id=event.event_id, intent_id=event.intent_id):
        if event.event_type == EVENT_PAYMENT_SUCCEEDED:
            return _handle_succeeded(event, notifier, analytics)
        if event.event_type == EVENT_PAYMENT_FAILED:
            return _handle_failed(event)

        logger.info("[webhook] unhandled event type", extra={"event_type": event.event_type})
        return WebhookOutcome(event.event_id, event.event_type, event.intent_id, OUTCOME_IGNORED)


def _handle_succeeded(
    event: PaymentWebhookEvent,
    notifier: Optional[NotificationPort],
    analytics: Optional[AnalyticsPort],
) -> WebhookOutcome:
    intent_id = event.intent_id
    record = payments.get_by_intent(intent_id) if intent_id else None
    if not record:
        logger.warning("[webhook] payment record not found")
        return WebhookOutcome(event.event_id, event.event_type, intent_id, OUTCOME_UNKNOWN_INTENT)

    now = utc_now()

    def _work() -> Tuple[str, Optional[str], Optional[Plan]]:
        with get_db_session() as session:
            if not payments.mark_succeeded(session, intent_id, now=now):
                current = payments.get_by_intent(intent_id, session=session)
                if current is not None and current.status == payments.PAYMENT_FAILED:
                    # Failed is terminal; the charge needs manual reconciliation
                    return OUTCOME_PAID_AFTER_FAILURE, None, None
                return OUTCOME_DUPLICATE, None, None

            plan = get_plan(record.plan_id, session=session)
            if not plan:
                # Payment flip commits; entitlement needs manual reconciliation
                return OUTCOME_PLAN_MISSING, None, None

            subscription_id = ledger.replace_active_in_session(
                session,
                record.user_id,
                record.role,
                plan,
                payment_intent_id=intent_id,
                now=now,
            )
            return OUTCOME_PROCESSED, subscription_id, plan

    try:
        status, subscription_id, plan = ledger.with_activation_retry(_work, record.user_id, record.role)
    except Exception as e:
        logger.error(
            "[webhook] activation failed",
            exc_info=True,
            extra={"user_id": record.user_id, "error": str(e)},
        )
        raise

    if status == OUTCOME_DUPLICATE:
        logger.info("[webhook] duplicate delivery ignored")
    elif status == OUTCOME_PAID_AFTER_FAILURE:
        logger.error(
            "[webhook] payment succeeded after it was recorded as failed, no entitlement granted",
            extra={"plan_id": record.plan_id, "user_id": record.user_id, "role": record.role},
        )
    elif status == OUTCOME_PLAN_MISSING:
        logger.error(
            "[webhook] plan not found, payment recorded without entitlement",
            extra={"plan_id": record.plan_id, "user_id": record.user_id},
        )
    else:
        logger.info(
            "[webhook] subscription activated",
            extra={"user_id": record.user_id, "role": record.role, "subscription_id": subscription_id},
        )
        announce_activation(record.user_id, record.role, plan, subscription_id, notifier=notifier, analytics=analytics)

    return WebhookOutcome(event.event_id, event.event_type, intent_id, status, subscription_id)


def _handle_failed(event: PaymentWebhookEvent) -> WebhookOutcome:
    intent_id = event.intent_id
    record = payments.get_by_intent(intent_id) if intent_id else None
    if not record:
        logger.warning("[webhook] payment record not found")
        return WebhookOutcome(event.event_id, event.event_type, intent_id, OUTCOME_UNKNOWN_INTENT)

    reason = event.failure_message or DEFAULT_FAILURE_REASON
    if not payments.mark_failed(intent_id, reason):
        logger.info("[webhook] failure for terminal payment ignored", extra={"status": record.status})
        return WebhookOutcome(event.event_id, event.event_type, intent_id, OUTCOME_DUPLICATE)

    logger.info("[webhook] payment failed", extra={"user_id": record.user_id, "reason": reason})
    return WebhookOutcome(event.event_id, event.event_type, intent_id, OUTCOME_FAILED_RECORDED)
