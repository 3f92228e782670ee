"""
Billing webhook tests.

Verifies duplicate webhook events are not reprocessed and that subscription
and checkout events land in the entitlement store.
"""
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import select

from paygate.core.database import get_db_session, billing_events
from paygate.features.billing.provider import BillingUnavailableError, BillingWebhookResult, OracleSubscription
from paygate.features.billing.webhooks import process_webhook_event
from paygate.features.entitlements import store
from paygate.features.entitlements.cache import get_snapshot_cache
from paygate.main import app
from paygate.models.entitlement import EntitlementSnapshot

client = TestClient(app)

SIGNED = {"stripe-signature": "valid"}


def _subscription_event(event_id: str, status: str, user_id: str = "user_alice", event_type: str = "customer.subscription.updated"):
    sub = OracleSubscription(
        subscription_id="sub_1",
        customer_id="cus_1",
        status=status,
        current_period_end=datetime.now(timezone.utc) + timedelta(days=30),
        metadata={"user_id": user_id},
    )
    return BillingWebhookResult(
        event_id=event_id,
        event_type=event_type,
        subscription=sub,
        customer_id="cus_1",
        metadata={"user_id": user_id},
    )


def _event_row(event_id: str):
    with get_db_session() as session:
        return session.execute(
            select(billing_events).where(billing_events.c.stripe_event_id == event_id)
        ).fetchone()


def test_webhook_idempotency_skips_duplicate_events(oracle):
    oracle.next_webhook = _subscription_event("evt_1", "active")

    first = process_webhook_event(SIGNED, b'{"id": "evt_1"}')
    assert first.duplicate is False
    assert store.list_subscription_grants("user_alice")[0].status == "active"

    # Same event id, different state: must not be applied twice
    oracle.next_webhook = _subscription_event("evt_1", "canceled")
    second = process_webhook_event(SIGNED, b'{"id": "evt_1"}')
    assert second.duplicate is True
    assert store.list_subscription_grants("user_alice")[0].status == "active"

    row = _event_row("evt_1")
    assert row.processed
    assert len(row.payload_hash) == 64


def test_subscription_event_updates_profile_and_invalidates(oracle):
    get_snapshot_cache().set("user_alice", EntitlementSnapshot.basic())
    oracle.next_webhook = _subscription_event("evt_2", "active", event_type="customer.subscription.created")
    process_webhook_event(SIGNED, b'{"id": "evt_2"}')

    assert get_snapshot_cache().get_usable("user_alice") is None
    assert store.get_profile("user_alice")["subscription_tier"] == "premium"

    oracle.next_webhook = _subscription_event("evt_3", "canceled", event_type="customer.subscription.deleted")
    process_webhook_event(SIGNED, b'{"id": "evt_3"}')
    assert store.get_profile("user_alice")["access_level"] == "basic"
    assert len(store.list_subscription_grants("user_alice")) == 1


def test_subscription_event_resolves_user_by_customer_link(oracle):
    store.link_customer("user_bob", "cus_1")
    oracle.next_webhook = _subscription_event("evt_4", "active", user_id="")
    oracle.next_webhook.metadata.clear()
    oracle.next_webhook.subscription.metadata.clear()

    process_webhook_event(SIGNED, b'{"id": "evt_4"}')
    assert store.list_subscription_grants("user_bob")[0].subscription_id == "sub_1"


def test_checkout_completed_records_through_verified_path(oracle):
    customer = oracle.add_customer("alice@example.com")
    session = oracle.add_completed_unlock_session(customer, "user_alice", "Dyson Airwrap")
    oracle.next_webhook = BillingWebhookResult(
        event_id="evt_5",
        event_type="checkout.session.completed",
        checkout_session_id=session.session_id,
        customer_id=customer,
    )

    outcome = process_webhook_event(SIGNED, b'{"id": "evt_5"}')
    assert outcome.duplicate is False
    assert store.list_unlocked_queries("user_alice") == {"dyson airwrap"}
    assert store.get_transaction(session.session_id).status == "completed"


def test_failed_event_records_error_and_is_retried(oracle):
    customer = oracle.add_customer("alice@example.com")
    session = oracle.add_completed_unlock_session(customer, "user_alice", "tv")
    oracle.next_webhook = BillingWebhookResult(
        event_id="evt_6",
        event_type="checkout.session.completed",
        checkout_session_id=session.session_id,
    )

    real_retrieve = oracle.retrieve_checkout_session

    def timed_out(session_id):
        raise BillingUnavailableError("timeout")

    oracle.retrieve_checkout_session = timed_out
    with pytest.raises(BillingUnavailableError):
        process_webhook_event(SIGNED, b'{"id": "evt_6"}')
    row = _event_row("evt_6")
    assert not row.processed
    assert "timeout" in row.error

    oracle.retrieve_checkout_session = real_retrieve
    retry = process_webhook_event(SIGNED, b'{"id": "evt_6"}')
    assert retry.duplicate is False
    assert _event_row("evt_6").processed
    assert store.list_unlocked_queries("user_alice") == {"tv"}


def test_unknown_event_type_is_acknowledged(oracle):
    oracle.next_webhook = BillingWebhookResult(event_id="evt_7", event_type="invoice.created")
    outcome = process_webhook_event(SIGNED, b'{"id": "evt_7"}')
    assert outcome.duplicate is False
    assert _event_row("evt_7").processed


def test_webhook_route_rejects_bad_signature(oracle):
    resp = client.post("/api/billing/webhook", content=b"{}", headers={"stripe-signature": "forged"})
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "invalid_webhook"


def test_webhook_route_reports_duplicates(oracle):
    oracle.next_webhook = _subscription_event("evt_8", "active")
    first = client.post("/api/billing/webhook", content=b'{"id": "evt_8"}', headers=SIGNED)
    assert first.status_code == 200
    assert first.json() == {"received": True, "eventId": "evt_8", "duplicate": False}

    again = client.post("/api/billing/webhook", content=b'{"id": "evt_8"}', headers=SIGNED)
    assert again.json()["duplicate"] is True


def test_webhook_route_billing_disabled(billing_disabled):
    resp = client.post("/api/billing/webhook", content=b"{}", headers=SIGNED)
    assert resp.status_code == 503
