"""
Billing reconciler tests against the fake oracle.
"""
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from paygate.core.auth import Identity
from paygate.core.errors import OracleUnavailable
from paygate.features.billing.provider import BillingUnavailableError
from paygate.features.billing.reconciler import reconcile
from paygate.features.entitlements import store


ALICE = Identity(user_id="user_alice", email="alice@example.com")


def test_no_customer_yields_basic_and_persists_profile(oracle):
    snap = reconcile(ALICE)
    assert snap.has_active_subscription is False
    assert snap.unlocked_queries == frozenset()
    assert snap.access_level == "basic"

    profile = store.get_profile("user_alice")
    assert profile["subscription_tier"] == "free"
    assert profile["access_level"] == "basic"


def test_no_customer_keeps_local_unlocks(oracle):
    store.record_unlock("user_alice", "tv", Decimal("4.99"))
    snap = reconcile(ALICE)
    assert snap.unlocked_queries == frozenset({"tv"})


def test_active_subscription_grants_premium(oracle):
    customer = oracle.add_customer(ALICE.email)
    sub = oracle.add_subscription(customer, status="active")

    snap = reconcile(ALICE)
    assert snap.has_active_subscription is True
    assert snap.access_level == "premium"
    assert snap.subscription.subscription_id == sub.subscription_id

    assert store.get_profile("user_alice")["subscription_tier"] == "premium"
    assert store.find_user_by_customer(customer) == "user_alice"
    assert [g.subscription_id for g in store.list_subscription_grants("user_alice")] == [sub.subscription_id]


def test_past_due_within_period_is_grace(oracle):
    now = datetime.now(timezone.utc)
    customer = oracle.add_customer(ALICE.email)
    oracle.add_subscription(customer, status="past_due", period_end=now + timedelta(days=2))

    snap = reconcile(ALICE, now=now)
    assert snap.has_active_subscription is False
    assert snap.in_grace_period is True
    assert snap.access_level == "premium"


def test_past_due_after_period_end_demotes(oracle):
    now = datetime.now(timezone.utc)
    customer = oracle.add_customer(ALICE.email)
    oracle.add_subscription(customer, status="past_due", period_end=now - timedelta(seconds=1))

    snap = reconcile(ALICE, now=now)
    assert snap.has_full_access is False
    assert snap.access_level == "basic"
    assert store.get_profile("user_alice")["subscription_tier"] == "free"


def test_heals_unlocks_from_completed_sessions(oracle):
    customer = oracle.add_customer(ALICE.email)
    oracle.add_completed_unlock_session(customer, "user_alice", "  Dyson Airwrap ", amount_total=499)

    snap = reconcile(ALICE)
    assert "dyson airwrap" in snap.unlocked_queries
    [grant] = store.list_unlock_grants("user_alice")
    assert grant.payment_amount == Decimal("4.99")

    # Second pass is a no-op on the store
    reconcile(ALICE)
    assert len(store.list_unlock_grants("user_alice")) == 1


def test_ignores_sessions_owned_by_another_user(oracle):
    customer = oracle.add_customer(ALICE.email)
    oracle.add_completed_unlock_session(customer, "user_mallory", "tv")

    snap = reconcile(ALICE)
    assert snap.unlocked_queries == frozenset()


def test_local_unlock_ahead_of_oracle_is_kept(oracle):
    oracle.add_customer(ALICE.email)
    store.record_unlock("user_alice", "blender", Decimal("4.99"))

    snap = reconcile(ALICE)
    assert snap.unlocked_queries == frozenset({"blender"})


def test_oracle_failure_raises_oracle_unavailable(oracle):
    oracle.fail_with = BillingUnavailableError("read timed out")
    with pytest.raises(OracleUnavailable):
        reconcile(ALICE)


def test_billing_disabled_is_oracle_unavailable(billing_disabled):
    with pytest.raises(OracleUnavailable):
        reconcile(ALICE)
