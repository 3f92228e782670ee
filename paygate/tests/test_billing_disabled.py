"""
Billing provider wiring, including when STRIPE_SECRET_KEY is not configured.
"""
import pytest
from unittest.mock import patch

from paygate.core.auth import Identity
from paygate.core.config import settings
from paygate.core.errors import BillingDisabled
from paygate.features.billing.service import billing_enabled, get_provider, require_provider


@pytest.fixture
def no_stripe_key(monkeypatch):
    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", None)


def test_billing_disabled_when_no_stripe_key(no_stripe_key):
    assert billing_enabled() is False


def test_get_provider_returns_none_when_disabled(no_stripe_key):
    assert get_provider() is None


def test_require_provider_raises(no_stripe_key):
    with pytest.raises(BillingDisabled):
        require_provider()


def test_snapshot_degrades_to_basic(no_stripe_key):
    from paygate.features.entitlements.service import get_snapshot

    snapshot = get_snapshot(Identity(user_id="u1", email="u1@example.com"))
    assert snapshot.has_full_access is False
    assert snapshot.error == "billing_unavailable"


def test_billing_enabled_with_key(monkeypatch):
    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", "sk_test_123")
    assert billing_enabled() is True


def test_provider_is_configured_once_per_settings(monkeypatch):
    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", "sk_test_123")
    with patch("paygate.features.billing.service.StripeProvider") as provider_cls:
        first = get_provider()
        second = get_provider()
        assert first is second
        assert provider_cls.call_count == 1

        monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", "sk_test_rotated")
        rotated = get_provider()
        assert provider_cls.call_count == 2
        assert rotated is provider_cls.return_value
