"""
Payment webhook tests.

The webhook is the only path that activates a paid plan, and it must be safe
under redelivery: duplicate events never create a second subscription.
"""
import logging

import pytest
from sqlalchemy import select, func
from sqlalchemy.exc import OperationalError

from marketbill.core.database import get_db_session, subscriptions
from marketbill.core.errors import SignatureError
from marketbill.features.billing import payments as payment_store
from marketbill.features.billing.intents import issue_intent
from marketbill.features.billing.webhooks import (
    process_webhook,
    OUTCOME_PROCESSED,
    OUTCOME_DUPLICATE,
    OUTCOME_UNKNOWN_INTENT,
    OUTCOME_PLAN_MISSING,
    OUTCOME_IGNORED,
    OUTCOME_FAILED_RECORDED,
    OUTCOME_PAID_AFTER_FAILURE,
    DEFAULT_FAILURE_REASON,
)
from marketbill.features.notifications.ports import set_notifier, set_analytics
from marketbill.features.plans.service import delete_plan
from marketbill.features.subscriptions import ledger
from marketbill.tests.mocks import (
    VALID_SIGNATURE,
    stripe_event,
    ExplodingNotifier,
    ExplodingAnalytics,
)


SIGNED = {"stripe-signature": VALID_SIGNATURE}
SUCCEEDED = "payment_intent.succeeded"
FAILED = "payment_intent.payment_failed"


def _subscription_count() -> int:
    with get_db_session() as session:
        return session.execute(select(func.count()).select_from(subscriptions)).scalar_one()


@pytest.fixture
def pending(make_user, make_plan, provider):
    """A seller with a freshly issued Pro intent (pi_test_1)."""
    make_user("alice")
    plan = make_plan(name="Pro", price=19.99, duration_days=30)
    result = issue_intent("alice", plan.plan_id, "ecommerceSeller")
    return plan, result.intent_id


def test_bad_signature_is_rejected_without_side_effects(pending):
    _, intent_id = pending

    with pytest.raises(SignatureError) as exc:
        process_webhook({"stripe-signature": "t=1,v1=forged"}, stripe_event(SUCCEEDED, intent_id))

    assert exc.value.status_code == 400
    assert payment_store.get_by_intent(intent_id).status == "pending"
    assert _subscription_count() == 0


def test_success_activates_subscription(pending, notifier, analytics):
    plan, intent_id = pending

    outcome = process_webhook(SIGNED, stripe_event(SUCCEEDED, intent_id))

    assert outcome.status == OUTCOME_PROCESSED
    record = payment_store.get_by_intent(intent_id)
    assert record.status == "succeeded"
    assert record.processed_at is not None

    sub = ledger.get_active("alice", "ecommerceSeller")
    assert sub.subscription_id == outcome.subscription_id
    assert sub.plan_id == plan.plan_id
    assert sub.payment_intent_id == intent_id
    assert (sub.end_date - sub.start_date).days == 30
    assert notifier.kinds() == ["subscription_activated"]
    assert analytics.types() == ["subscription_purchased"]


def test_success_replaces_existing_subscription(pending, make_subscription):
    plan, intent_id = pending
    old_id = make_subscription("alice", plan.plan_id)

    process_webhook(SIGNED, stripe_event(SUCCEEDED, intent_id))

    assert ledger.get_subscription(old_id).status == "cancelled"
    assert ledger.get_active("alice", "ecommerceSeller").subscription_id != old_id


def test_duplicate_delivery_is_a_no_op(pending, notifier):
    _, intent_id = pending

    first = process_webhook(SIGNED, stripe_event(SUCCEEDED, intent_id))
    second = process_webhook(SIGNED, stripe_event(SUCCEEDED, intent_id))

    assert first.status == OUTCOME_PROCESSED
    assert second.status == OUTCOME_DUPLICATE
    assert second.subscription_id is None
    assert _subscription_count() == 1
    assert notifier.kinds() == ["subscription_activated"]


def test_unknown_intent_is_acknowledged(provider):
    outcome = process_webhook(SIGNED, stripe_event(SUCCEEDED, "pi_nobody"))

    assert outcome.status == OUTCOME_UNKNOWN_INTENT
    assert _subscription_count() == 0


def test_failure_records_reason(pending):
    _, intent_id = pending

    outcome = process_webhook(SIGNED, stripe_event(FAILED, intent_id, failure_message="Your card was declined."))

    assert outcome.status == OUTCOME_FAILED_RECORDED
    record = payment_store.get_by_intent(intent_id)
    assert record.status == "failed"
    assert record.failure_reason == "Your card was declined."
    assert _subscription_count() == 0


def test_failure_without_message_uses_default_reason(pending):
    _, intent_id = pending

    process_webhook(SIGNED, stripe_event(FAILED, intent_id))

    assert payment_store.get_by_intent(intent_id).failure_reason == DEFAULT_FAILURE_REASON


def test_failure_after_success_does_not_downgrade(pending):
    _, intent_id = pending
    process_webhook(SIGNED, stripe_event(SUCCEEDED, intent_id, event_id="evt_1"))

    outcome = process_webhook(SIGNED, stripe_event(FAILED, intent_id, event_id="evt_2"))

    assert outcome.status == OUTCOME_DUPLICATE
    assert payment_store.get_by_intent(intent_id).status == "succeeded"
    assert ledger.get_active("alice", "ecommerceSeller") is not None


def test_success_after_failure_is_flagged_for_reconciliation(pending, caplog):
    # Card declined, then a retry on the same intent is charged
    _, intent_id = pending
    process_webhook(SIGNED, stripe_event(FAILED, intent_id, event_id="evt_1"))

    with caplog.at_level(logging.ERROR, logger="marketbill.webhooks"):
        outcome = process_webhook(SIGNED, stripe_event(SUCCEEDED, intent_id, event_id="evt_2"))

    assert outcome.status == OUTCOME_PAID_AFTER_FAILURE
    assert payment_store.get_by_intent(intent_id).status == "failed"
    assert _subscription_count() == 0
    assert "recorded as failed" in caplog.text

    # Redelivery reports the same outcome
    again = process_webhook(SIGNED, stripe_event(SUCCEEDED, intent_id, event_id="evt_2"))
    assert again.status == OUTCOME_PAID_AFTER_FAILURE


def test_deleted_plan_records_payment_without_entitlement(pending, notifier):
    plan, intent_id = pending
    delete_plan(plan.plan_id)

    outcome = process_webhook(SIGNED, stripe_event(SUCCEEDED, intent_id))

    assert outcome.status == OUTCOME_PLAN_MISSING
    assert payment_store.get_by_intent(intent_id).status == "succeeded"
    assert _subscription_count() == 0
    assert notifier.sent == []


def test_secondary_effect_failures_are_swallowed(pending):
    _, intent_id = pending
    set_notifier(ExplodingNotifier())
    set_analytics(ExplodingAnalytics())

    outcome = process_webhook(SIGNED, stripe_event(SUCCEEDED, intent_id))

    assert outcome.status == OUTCOME_PROCESSED
    assert ledger.get_active("alice", "ecommerceSeller") is not None


def test_database_failure_rolls_back_and_redelivery_recovers(pending, monkeypatch):
    _, intent_id = pending
    real_replace = ledger.replace_active_in_session

    def broken(*args, **kwargs):
        raise OperationalError("INSERT INTO subscriptions", {}, Exception("connection lost"))

    monkeypatch.setattr(ledger, "replace_active_in_session", broken)
    with pytest.raises(OperationalError):
        process_webhook(SIGNED, stripe_event(SUCCEEDED, intent_id))

    assert payment_store.get_by_intent(intent_id).status == "pending"
    assert _subscription_count() == 0

    monkeypatch.setattr(ledger, "replace_active_in_session", real_replace)
    outcome = process_webhook(SIGNED, stripe_event(SUCCEEDED, intent_id))

    assert outcome.status == OUTCOME_PROCESSED
    assert _subscription_count() == 1


def test_other_event_types_are_ignored(pending):
    _, intent_id = pending

    outcome = process_webhook(SIGNED, stripe_event("charge.refunded", intent_id))

    assert outcome.status == OUTCOME_IGNORED
    assert payment_store.get_by_intent(intent_id).status == "pending"
