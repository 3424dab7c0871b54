"""
Stripe payment provider implementation.

Implements PaymentProvider using the Stripe PaymentIntents API.
Handles webhook signature verification and event parsing.
"""
import json
from typing import Dict, Any, Optional
import stripe

from marketbill.core.config import settings
from marketbill.features.billing.provider import (
    PaymentIntentResult,
    PaymentProviderError,
    PaymentWebhookError,
    PaymentWebhookEvent,
)


class StripeProvider:
    """Stripe implementation of PaymentProvider protocol."""

    def __init__(
        self,
        secret_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
    ):
        """
        Initialize Stripe provider.

        Args:
            secret_key: Stripe secret key (defaults to STRIPE_SECRET_KEY)
            webhook_secret: Stripe webhook secret (defaults to STRIPE_WEBHOOK_SECRET)
            timeout_seconds: Per-request timeout (defaults to PAYMENT_PROVIDER_TIMEOUT_SECONDS)
        """
        self.secret_key = secret_key or settings.STRIPE_SECRET_KEY
        self.webhook_secret = webhook_secret or settings.STRIPE_WEBHOOK_SECRET
        self.timeout_seconds = timeout_seconds or settings.PAYMENT_PROVIDER_TIMEOUT_SECONDS

        if not self.secret_key:
            raise PaymentProviderError("STRIPE_SECRET_KEY not configured")

        stripe.api_key = self.secret_key
        # Bounded wait, no automatic retries: a timed-out intent is reconciled by webhook
        stripe.max_network_retries = 0
        stripe.default_http_client = stripe.RequestsClient(timeout=self.timeout_seconds)

    def create_payment_intent(
        self,
        amount_minor: int,
        currency: str,
        metadata: Dict[str, str],
    ) -> PaymentIntentResult:
        """Create Stripe PaymentIntent."""
        try:
            intent = stripe.PaymentIntent.create(
                amount=amount_minor,
                currency=currency,
                metadata=metadata,
                automatic_payment_methods={"enabled": True},
            )
        except stripe.StripeError as e:
            raise PaymentProviderError(f"Stripe payment intent creation failed: {e}")

        return PaymentIntentResult(
            intent_id=intent.id,
            client_secret=intent.client_secret,
            status=getattr(intent, "status", None),
        )

    def parse_webhook(self, headers: Dict[str, str], body: bytes) -> PaymentWebhookEvent:
        """Verify Stripe webhook signature and parse event."""
        if not self.webhook_secret:
            raise PaymentWebhookError("STRIPE_WEBHOOK_SECRET not configured")

        sig_header = headers.get("stripe-signature") or headers.get("Stripe-Signature")
        if not sig_header:
            raise PaymentWebhookError("Missing stripe-signature header")

        try:
            stripe.Webhook.construct_event(body, sig_header, self.webhook_secret)
        except ValueError as e:
            raise PaymentWebhookError(f"Invalid payload: {e}")
        except stripe.SignatureVerificationError as e:
            raise PaymentWebhookError(f"Invalid signature: {e}")

        # Signature covers the raw body, so the decoded payload is authentic
        return self._parse_event(json.loads(body))

    def _parse_event(self, event: Dict[str, Any]) -> PaymentWebhookEvent:
        """Parse Stripe event into normalized PaymentWebhookEvent."""
        data = event.get("data", {}).get("object", {}) or {}
        last_error = data.get("last_payment_error") or {}

        return PaymentWebhookEvent(
            event_id=event.get("id", ""),
            event_type=event.get("type", ""),
            intent_id=data.get("id") if data.get("object", "payment_intent") == "payment_intent" else None,
            metadata=data.get("metadata") or {},
            failure_message=last_error.get("message"),
        )
