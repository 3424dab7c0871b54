"""
Payment intent issuance.

Validates purchase eligibility, opens an intent with the processor and
records a pending payment. No subscription changes here: activation waits for
the processor's webhook.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from marketbill.core.config import settings
from marketbill.core.errors import ExternalProcessorError
from marketbill.features.billing import payments
from marketbill.features.billing.provider import PaymentProvider, PaymentProviderError
from marketbill.features.billing.service import get_provider
from marketbill.features.directory.service import UserDirectory
from marketbill.features.subscriptions.eligibility import check_purchase


logger = logging.getLogger("marketbill.billing")


@dataclass
class IntentResult:
    free_plan: bool
    client_secret: Optional[str] = None
    intent_id: Optional[str] = None


def to_minor_units(price: float) -> int:
    return int(round(price * 100))


def issue_intent(
    user_id: str,
    plan_id: str,
    role: str,
    provider: Optional[PaymentProvider] = None,
    directory: Optional[UserDirectory] = None,
) -> IntentResult:
    """
    Open a payment intent for a paid plan.

    Free plans short-circuit with free_plan=True: no processor call and no
    payment record. The client then activates through the subscribe path.

    Raises:
        EligibilityError / NotFoundError / ValidationError: purchase not allowed
        ExternalProcessorError: processor unavailable, timed out or rejected
    """
    ctx = check_purchase(user_id, plan_id, role, directory=directory)
    plan = ctx.plan

    if plan.is_free:
        return IntentResult(free_plan=True)

    provider = provider or get_provider()
    if provider is None:
        raise ExternalProcessorError("Payments are not configured", code="billing_disabled", status_code=503)

    amount_minor = to_minor_units(plan.price)
    currency = settings.PAYMENT_CURRENCY

    try:
        intent = provider.create_payment_intent(
            amount_minor=amount_minor,
            currency=currency,
            metadata={
                "user_id": user_id,
                "plan_id": plan.plan_id,
                "role": role,
                "plan_name": plan.name,
            },
        )
    except PaymentProviderError as e:
        logger.error(
            "[billing] intent creation failed",
            extra={"user_id": user_id, "plan_id": plan.plan_id, "role": role, "error": str(e)},
        )
        raise ExternalProcessorError("Payment processor unavailable, please retry")

    payments.create_pending(
        user_id=user_id,
        plan_id=plan.plan_id,
        role=role,
        intent_id=intent.intent_id,
        amount=plan.price,
        currency=currency,
        metadata={
            "plan_name": plan.name,
            "billing_period": plan.billing_period,
            "duration_days": plan.duration_days,
        },
    )

    logger.info(
        "[billing] intent issued",
        extra={"user_id": user_id, "plan_id": plan.plan_id, "role": role, "intent_id": intent.intent_id, "amount_minor": amount_minor},
    )
    return IntentResult(free_plan=False, client_secret=intent.client_secret, intent_id=intent.intent_id)
