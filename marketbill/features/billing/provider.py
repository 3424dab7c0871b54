"""
Payment provider protocol.

Defines the interface for payment processors (Stripe, etc.).
This allows swapping processors without changing business logic.
"""
from typing import Protocol, Dict, Any, Optional
from dataclasses import dataclass, field


EVENT_PAYMENT_SUCCEEDED = "payment_intent.succeeded"
EVENT_PAYMENT_FAILED = "payment_intent.payment_failed"


@dataclass
class PaymentIntentResult:
    """Processor-side intent opened for a purchase."""
    intent_id: str
    client_secret: str
    status: Optional[str] = None


@dataclass
class PaymentWebhookEvent:
    """Verified, normalized processor event."""
    event_id: str
    event_type: str
    intent_id: Optional[str]
    metadata: Dict[str, Any] = field(default_factory=dict)
    failure_message: Optional[str] = None


class PaymentProvider(Protocol):
    """
    Protocol for payment processors.

    Implementations must handle:
    - Payment intent creation with a bounded timeout
    - Webhook signature verification and parsing
    """

    def create_payment_intent(
        self,
        amount_minor: int,
        currency: str,
        metadata: Dict[str, str],
    ) -> PaymentIntentResult:
        """
        Open a payment intent.

        Args:
            amount_minor: Amount in minor currency units (cents)
            currency: ISO currency code, passed through unchanged
            metadata: Correlation data echoed back on webhook events

        Raises:
            PaymentProviderError: On timeout or rejection
        """
        ...

    def parse_webhook(self, headers: Dict[str, str], body: bytes) -> PaymentWebhookEvent:
        """
        Verify webhook signature against the raw body and parse the event.

        Raises:
            PaymentWebhookError: If the signature is invalid or the payload malformed
        """
        ...


class PaymentProviderError(Exception):
    """Base exception for payment provider errors."""
    pass


class PaymentWebhookError(PaymentProviderError):
    """Exception for webhook verification errors."""
    pass
