"""
Billing provider wiring.

All Stripe-specific code is in stripe_provider.py. Intent issuance and
webhook processing resolve the provider through get_provider(), and tests
install a fake with set_provider().
"""
import logging
from typing import Optional

from marketbill.core.config import settings
from marketbill.features.billing.provider import PaymentProvider, PaymentProviderError
from marketbill.features.billing.stripe_provider import StripeProvider


logger = logging.getLogger("marketbill.billing")

_provider: Optional[PaymentProvider] = None


def billing_enabled() -> bool:
    """Check if billing is enabled (Stripe configured or a provider installed)."""
    return _provider is not None or bool(settings.STRIPE_SECRET_KEY)


def get_provider() -> Optional[PaymentProvider]:
    """Get payment provider if billing is enabled."""
    global _provider
    if _provider is not None:
        return _provider
    if not settings.STRIPE_SECRET_KEY:
        return None
    try:
        _provider = StripeProvider()
    except PaymentProviderError as e:
        logger.error("[billing] provider init failed", extra={"error": str(e)})
        return None
    return _provider


def set_provider(provider: Optional[PaymentProvider]) -> None:
    global _provider
    _provider = provider
