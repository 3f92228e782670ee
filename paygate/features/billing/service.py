"""
Billing service wiring.

Resolves the billing provider (Stripe when configured) and translates
provider-level failures into the API error taxonomy. All Stripe-specific code
is in stripe_provider.py; all callers go through get_provider() here so a
single patch point swaps the oracle in tests.
"""
from typing import Optional

from paygate.core.config import settings
from paygate.core.errors import BillingDisabled, NotFoundError, OracleUnavailable
from paygate.core.logging import log_event
from paygate.features.billing.provider import (
    BillingProvider,
    BillingProviderError,
    BillingNotFoundError,
)
from paygate.features.billing.stripe_provider import StripeProvider


_provider: Optional[BillingProvider] = None
_provider_config: Optional[tuple] = None


def billing_enabled() -> bool:
    """Check if billing is enabled (Stripe configured)."""
    return bool(settings.STRIPE_SECRET_KEY)


def get_provider() -> Optional[BillingProvider]:
    """
    Get billing provider if billing is enabled.

    The Stripe client is configured once and reused until the billing
    settings change.
    """
    global _provider, _provider_config
    if not billing_enabled():
        return None
    config = (
        settings.STRIPE_SECRET_KEY,
        settings.STRIPE_WEBHOOK_SECRET,
        settings.BILLING_TIMEOUT_SECONDS,
        settings.BILLING_MAX_RETRIES,
    )
    if _provider is None or _provider_config != config:
        try:
            _provider = StripeProvider()
        except BillingProviderError:
            return None
        _provider_config = config
    return _provider


def reset_provider() -> None:
    """Drop the cached provider. Used by tests."""
    global _provider, _provider_config
    _provider = None
    _provider_config = None


def require_provider() -> BillingProvider:
    provider = get_provider()
    if provider is None:
        raise BillingDisabled("Billing is not configured")
    return provider


def translate_provider_error(exc: BillingProviderError, *, user_id: Optional[str] = None, action: str = "billing"):
    """
    Map a provider failure onto the API taxonomy and log it.

    Returns the AppError to raise; callers use `raise translate_provider_error(e) from e`.
    """
    if isinstance(exc, BillingNotFoundError):
        log_event("warning", f"{action}.not_found", user_id=user_id, error_code="not_found", extra={"error": exc})
        return NotFoundError("Billing record not found")
    log_event("warning", f"{action}.oracle_unavailable", user_id=user_id, error_code="billing_unavailable", extra={"error": exc})
    return OracleUnavailable("Billing service is temporarily unavailable, please retry")
