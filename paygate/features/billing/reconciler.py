"""
Billing reconciler.

Re-derives a user's entitlements from the billing oracle and folds them into
the entitlement store:

1. Find the processor customer by the user's verified email, else by the
   customer linked to the user at checkout.
2. No customer: no paid grants; persist a basic profile.
3. Take the most recent `active` subscription; if none, the most recent
   `past_due` one (grace policy decides what it confers).
4. Self-heal unlocks from completed, paid unlock checkout sessions.
5. Union with locally stored unlocks. Local grants are never removed here.

Oracle failures raise OracleUnavailable; deciding what to serve instead is the
caller's job (see entitlements.service.get_snapshot).
"""
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional
import logging

from paygate.core.auth import Identity
from paygate.core.config import settings
from paygate.core.errors import OracleUnavailable
from paygate.core.logging import log_event
from paygate.features.billing import service as billing
from paygate.features.billing.provider import (
    BillingProvider,
    BillingProviderError,
    OracleCheckoutSession,
    OracleSubscription,
)
from paygate.features.entitlements import grace, store
from paygate.features.entitlements.evaluator import normalize_query
from paygate.models.billing import PURCHASE_UNLOCK
from paygate.models.entitlement import (
    ACCESS_BASIC,
    ACCESS_PREMIUM,
    EntitlementSnapshot,
    SubscriptionGrant,
)


logger = logging.getLogger(__name__)


def to_grant(sub: OracleSubscription) -> SubscriptionGrant:
    return SubscriptionGrant(
        subscription_id=sub.subscription_id,
        status=sub.status,
        current_period_end=sub.current_period_end,
        cancel_at_period_end=sub.cancel_at_period_end,
        plan_type=sub.metadata.get("plan_type") or settings.SUBSCRIPTION_PLAN_TYPE,
    )


def unlock_amount(session: OracleCheckoutSession) -> Decimal:
    """Amount actually charged, in major units; configured price if the session omits it."""
    cents = session.amount_total if session.amount_total is not None else settings.UNLOCK_PRICE_CENTS
    return (Decimal(cents) / Decimal(100)).quantize(Decimal("0.01"))


def build_snapshot(grant: Optional[SubscriptionGrant], unlocked_queries, now: Optional[datetime] = None) -> EntitlementSnapshot:
    """Pure projection of a subscription grant plus unlocks."""
    now = now or datetime.now(timezone.utc)
    active = grace.is_active(grant)
    in_grace = grace.in_grace_period(grant, now)
    return EntitlementSnapshot(
        has_active_subscription=active,
        in_grace_period=in_grace,
        unlocked_queries=frozenset(unlocked_queries),
        access_level=ACCESS_PREMIUM if (active or in_grace) else ACCESS_BASIC,
        subscription=grant,
        computed_at=now,
    )


def _persist_profile(identity: Identity, snapshot: EntitlementSnapshot) -> None:
    tier = "premium" if snapshot.has_full_access else "free"
    store.upsert_profile(identity.user_id, identity.email, tier, snapshot.access_level)


def _heal_unlocks(identity: Identity, sessions) -> int:
    healed = 0
    for s in sessions:
        if s.metadata.get("type") != PURCHASE_UNLOCK or s.payment_status != "paid":
            continue
        owner = s.metadata.get("user_id")
        if owner and owner != identity.user_id:
            logger.warning(
                "[reconcile] skipping unlock session owned by another user",
                extra={"user_id": identity.user_id, "session_id": s.session_id},
            )
            continue
        query = normalize_query(s.metadata.get("search_query"))
        if not query:
            continue
        if store.record_unlock(
            identity.user_id,
            query,
            unlock_amount(s),
            stripe_session_id=s.session_id,
        ):
            healed += 1
    return healed


def reconcile(identity: Identity, provider: Optional[BillingProvider] = None, now: Optional[datetime] = None) -> EntitlementSnapshot:
    """
    Reconcile one user's entitlements against the billing oracle.

    Args:
        identity: Authenticated caller
        provider: Billing oracle (defaults to the configured provider)
        now: Clock override for grace evaluation

    Returns:
        Fresh EntitlementSnapshot

    Raises:
        OracleUnavailable: Billing disabled, or any oracle call failed
    """
    now = now or datetime.now(timezone.utc)
    provider = provider or billing.get_provider()
    if provider is None:
        raise OracleUnavailable("Billing is not configured")

    try:
        customer_id = None
        if identity.email:
            customer_id = provider.find_customer_by_email(identity.email)
        if customer_id is None:
            # Callers without an email are found through the customer created at checkout
            customer_id = store.get_linked_customer(identity.user_id)

        if customer_id is None:
            snapshot = build_snapshot(None, store.list_unlocked_queries(identity.user_id), now)
            _persist_profile(identity, snapshot)
            logger.info("[reconcile] no billing customer", extra={"user_id": identity.user_id})
            return snapshot

        store.link_customer(identity.user_id, customer_id)

        subs = provider.list_subscriptions(customer_id, status="active", limit=1)
        if not subs:
            subs = provider.list_subscriptions(customer_id, status="past_due", limit=1)
        grant = None
        if subs:
            grant = to_grant(subs[0])
            store.upsert_subscription_grant(identity.user_id, grant, stripe_customer_id=customer_id)

        healed = _heal_unlocks(identity, provider.list_completed_checkout_sessions(customer_id))
    except BillingProviderError as e:
        log_event("warning", "reconcile.oracle_unavailable", user_id=identity.user_id, error_code="billing_unavailable", extra={"error": e})
        raise OracleUnavailable("Billing service is temporarily unavailable") from e

    snapshot = build_snapshot(grant, store.list_unlocked_queries(identity.user_id), now)
    _persist_profile(identity, snapshot)

    logger.info(
        "[reconcile] entitlements reconciled",
        extra={
            "user_id": identity.user_id,
            "has_active_subscription": snapshot.has_active_subscription,
            "in_grace_period": snapshot.in_grace_period,
            "unlock_count": len(snapshot.unlocked_queries),
            "healed_unlocks": healed,
        },
    )
    return snapshot
