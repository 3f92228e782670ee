"""
Billing webhook ingestion.

1. Verify signature (provider)
2. De-duplicate on the processor event id (billing_events)
3. Apply state changes
4. Mark as processed, or record the error and re-raise so the processor retries

Handled events:
- customer.subscription.created / updated / deleted: upsert the grant,
  refresh the profile tier, invalidate the user's snapshot
- checkout.session.completed: re-read the session from the processor and run
  it through the same verified-recording path as the verify endpoint
"""
import hashlib
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Optional
import logging
from sqlalchemy import select, update

from paygate.core.database import get_db_session, upsert, billing_events
from paygate.core.logging import log_event
from paygate.features.billing import service as billing
from paygate.features.billing.checkout import record_verified_session
from paygate.features.billing.provider import BillingProvider, BillingWebhookResult
from paygate.features.billing.reconciler import to_grant
from paygate.features.entitlements import grace, store
from paygate.features.entitlements import service as entitlements
from paygate.models.entitlement import ACCESS_BASIC, ACCESS_PREMIUM


logger = logging.getLogger(__name__)

SUBSCRIPTION_EVENTS = (
    "customer.subscription.created",
    "customer.subscription.updated",
    "customer.subscription.deleted",
)


@dataclass(frozen=True)
class WebhookOutcome:
    event_id: str
    event_type: str
    duplicate: bool


def _claim_event(result: BillingWebhookResult, payload_hash: str) -> bool:
    """
    Record the event id. Returns False if it was already processed.

    An event that was recorded but failed earlier is claimed again so the
    processor's retry can complete it.
    """
    with get_db_session() as session:
        inserted = session.execute(
            upsert(billing_events)
            .values(
                stripe_event_id=result.event_id,
                event_type=result.event_type,
                payload_hash=payload_hash,
                processed=False,
                received_at=datetime.now(timezone.utc),
            )
            .on_conflict_do_nothing(index_elements=["stripe_event_id"])
        ).rowcount == 1
        if inserted:
            return True
        processed = session.execute(
            select(billing_events.c.processed).where(billing_events.c.stripe_event_id == result.event_id)
        ).scalar()
        return not processed


def _resolve_user(result: BillingWebhookResult) -> Optional[str]:
    sub = result.subscription
    user_id = result.metadata.get("user_id")
    if not user_id and sub is not None:
        user_id = store.get_subscription_owner(sub.subscription_id)
    if not user_id and result.customer_id:
        user_id = store.find_user_by_customer(result.customer_id)
    return user_id


def _apply_subscription_event(result: BillingWebhookResult) -> None:
    user_id = _resolve_user(result)
    if not user_id:
        logger.warning(
            "[webhook] subscription event for unknown user",
            extra={"event_id": result.event_id, "customer_id": result.customer_id},
        )
        return

    grant = to_grant(result.subscription)
    store.upsert_subscription_grant(user_id, grant, stripe_customer_id=result.subscription.customer_id)
    full_access = grace.is_active(grant) or grace.in_grace_period(grant)
    store.upsert_profile(
        user_id,
        None,
        "premium" if full_access else "free",
        ACCESS_PREMIUM if full_access else ACCESS_BASIC,
    )
    entitlements.invalidate(user_id)


def _apply_checkout_completed(result: BillingWebhookResult, provider: BillingProvider) -> None:
    session = provider.retrieve_checkout_session(result.checkout_session_id)
    if session.payment_status != "paid":
        # Delayed payment methods complete later; the sweep picks these up
        logger.info("[webhook] checkout completed but not paid yet", extra={"session_id": session.session_id})
        return
    user_id = session.metadata.get("user_id")
    if not user_id and session.customer_id:
        user_id = store.find_user_by_customer(session.customer_id)
    if not user_id:
        logger.warning("[webhook] checkout session without owner", extra={"session_id": session.session_id})
        return
    record_verified_session(user_id, session, provider)


def process_webhook_event(headers: Dict[str, str], body: bytes) -> WebhookOutcome:
    """
    Process billing webhook event (idempotent).

    Returns:
        WebhookOutcome; duplicate=True when the event was already processed

    Raises:
        BillingDisabled: Billing not configured
        BillingWebhookError: If signature invalid or payload malformed
        BillingProviderError / AppError: If applying the event failed (recorded on the event row)
    """
    provider = billing.require_provider()
    result = provider.handle_webhook(headers, body)
    payload_hash = hashlib.sha256(body).hexdigest()

    if not _claim_event(result, payload_hash):
        log_event("info", "webhook.duplicate", event_type=result.event_type, extra={"event_id": result.event_id})
        return WebhookOutcome(event_id=result.event_id, event_type=result.event_type, duplicate=True)

    try:
        if result.event_type in SUBSCRIPTION_EVENTS and result.subscription is not None:
            _apply_subscription_event(result)
        elif result.event_type == "checkout.session.completed" and result.checkout_session_id:
            _apply_checkout_completed(result, provider)
        else:
            logger.info("[webhook] ignoring event", extra={"event_id": result.event_id, "event_type": result.event_type})

        with get_db_session() as session:
            session.execute(
                update(billing_events)
                .where(billing_events.c.stripe_event_id == result.event_id)
                .values(processed=True, processed_at=datetime.now(timezone.utc), error=None)
            )
    except Exception as e:
        with get_db_session() as session:
            session.execute(
                update(billing_events)
                .where(billing_events.c.stripe_event_id == result.event_id)
                .values(error=str(e)[:1000])
            )
        log_event("error", "webhook.failed", event_type=result.event_type, error_code="webhook_failed", extra={"event_id": result.event_id, "error": e})
        raise

    log_event("info", "webhook.processed", event_type=result.event_type, extra={"event_id": result.event_id})
    return WebhookOutcome(event_id=result.event_id, event_type=result.event_type, duplicate=False)
