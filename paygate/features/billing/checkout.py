"""
Checkout orchestrator.

Creates processor checkout sessions for the two purchasable products and
verifies completed sessions before granting anything.

- Prices come from settings only; nothing in a request can change an amount.
- A pending PaymentTransaction is written before the redirect URL is returned.
- A redirect back from the processor only triggers verification. The session
  is always re-read from the processor, and the grant is written by
  record_verified_session, the single path shared by the verify endpoint, the
  webhook and the pending sweep.
"""
from decimal import Decimal
from typing import Optional
import logging

from paygate.core.auth import Identity
from paygate.core.config import settings
from paygate.core.errors import (
    AuthenticationRequired,
    InvalidPurchaseRequest,
    NotFoundError,
    PaymentNotCompleted,
    SessionOwnershipMismatch,
)
from paygate.core.logging import log_event
from paygate.features.billing import service as billing
from paygate.features.billing.provider import (
    BillingProvider,
    BillingProviderError,
    OracleCheckoutSession,
)
from paygate.features.billing.reconciler import to_grant, unlock_amount
from paygate.features.entitlements import service as entitlements
from paygate.features.entitlements import store
from paygate.features.entitlements.evaluator import normalize_query
from paygate.models.billing import (
    CheckoutResult,
    PaymentTransaction,
    PURCHASE_SUBSCRIPTION,
    PURCHASE_TYPES,
    PURCHASE_UNLOCK,
    VerificationResult,
)


logger = logging.getLogger(__name__)


def _cents_to_amount(cents: int) -> Decimal:
    return (Decimal(cents) / Decimal(100)).quantize(Decimal("0.01"))


def validate_purchase(purchase_type: Optional[str], search_query: Optional[str]) -> Optional[str]:
    """
    Validate a purchase request before any oracle call.

    Returns:
        The normalized search query for unlocks, None for subscriptions

    Raises:
        InvalidPurchaseRequest: Unknown type, or unlock without a query
    """
    if purchase_type not in PURCHASE_TYPES:
        raise InvalidPurchaseRequest("Invalid or missing type. Must be 'subscription' or 'unlock'")
    if purchase_type == PURCHASE_UNLOCK:
        normalized = normalize_query(search_query)
        if not normalized:
            raise InvalidPurchaseRequest("Search query is required for unlock type")
        return normalized
    return None


def _ensure_customer(provider: BillingProvider, identity: Identity) -> str:
    customer_id = None
    if identity.email:
        customer_id = provider.find_customer_by_email(identity.email)
    if customer_id is None:
        customer_id = store.get_linked_customer(identity.user_id)
    if customer_id is None:
        customer_id = provider.create_customer(identity.email, identity.user_id)
        logger.info("[checkout] created billing customer", extra={"user_id": identity.user_id})
    store.link_customer(identity.user_id, customer_id)
    return customer_id


def create_checkout_session(
    identity: Optional[Identity],
    purchase_type: Optional[str],
    search_query: Optional[str] = None,
) -> CheckoutResult:
    """
    Create a checkout session and its pending ledger row.

    Args:
        identity: Authenticated caller (None raises AuthenticationRequired)
        purchase_type: "subscription" or "unlock"
        search_query: Required for unlocks; stored normalized in session metadata

    Returns:
        CheckoutResult with the processor redirect URL

    Raises:
        AuthenticationRequired: Anonymous caller
        InvalidPurchaseRequest: Bad type or missing query
        BillingDisabled: Billing not configured
        OracleUnavailable: Processor call failed
    """
    if identity is None:
        raise AuthenticationRequired("Sign in to purchase")
    normalized = validate_purchase(purchase_type, search_query)
    provider = billing.require_provider()

    if purchase_type == PURCHASE_SUBSCRIPTION:
        mode = "subscription"
        amount_cents = settings.SUBSCRIPTION_PRICE_CENTS
        product_name = "Monthly Premium Subscription"
    else:
        mode = "payment"
        amount_cents = settings.UNLOCK_PRICE_CENTS
        product_name = f"Search Unlock: {normalized}"

    metadata = {"user_id": identity.user_id, "type": purchase_type}
    if normalized:
        metadata["search_query"] = normalized

    base = settings.FRONTEND_URL.rstrip("/")
    success_url = f"{base}/payment-success?session_id={{CHECKOUT_SESSION_ID}}&type={purchase_type}"
    cancel_url = f"{base}/payment-canceled?type={purchase_type}"

    try:
        customer_id = _ensure_customer(provider, identity)
        session = provider.create_checkout_session(
            customer_id=customer_id,
            mode=mode,
            amount_cents=amount_cents,
            currency=settings.CURRENCY,
            product_name=product_name,
            success_url=success_url,
            cancel_url=cancel_url,
            metadata=metadata,
        )
    except BillingProviderError as e:
        raise billing.translate_provider_error(e, user_id=identity.user_id, action="checkout") from e

    store.create_pending_transaction(
        PaymentTransaction(
            transaction_id=session.session_id,
            user_id=identity.user_id,
            amount=_cents_to_amount(amount_cents),
            type=purchase_type,
            stripe_session_id=session.session_id,
        )
    )

    log_event(
        "info",
        "checkout.session_created",
        user_id=identity.user_id,
        event_type=purchase_type,
        extra={"session_id": session.session_id, "search_query": normalized},
    )
    return CheckoutResult(redirect_url=session.url or "", session_id=session.session_id)


def _check_ownership(session: OracleCheckoutSession, identity: Identity) -> None:
    owner = session.metadata.get("user_id")
    if owner:
        matches = owner == identity.user_id
    else:
        email = (session.customer_email or "").lower()
        matches = bool(email) and email == (identity.email or "").lower()
    if not matches:
        log_event(
            "warning",
            "verify.ownership_mismatch",
            user_id=identity.user_id,
            error_code="session_ownership_mismatch",
            extra={"session_id": session.session_id},
        )
        raise SessionOwnershipMismatch("This checkout session does not belong to you")


def record_verified_session(
    user_id: str,
    session: OracleCheckoutSession,
    provider: BillingProvider,
) -> VerificationResult:
    """
    Record grants for a session already confirmed paid and owned by user_id.

    Idempotent: grant writes are natural-key upserts and the ledger row is set
    to completed every time.

    Raises:
        PaymentNotCompleted: Subscription missing or not active
        InvalidPurchaseRequest: Session metadata has no usable type or query
        BillingProviderError: Subscription lookup failed
    """
    purchase_type = session.metadata.get("type")

    if purchase_type == PURCHASE_SUBSCRIPTION:
        if not session.subscription_id:
            raise PaymentNotCompleted("Checkout session has no subscription")
        sub = provider.retrieve_subscription(session.subscription_id)
        if sub.status != "active":
            raise PaymentNotCompleted(f"Subscription status is {sub.status}, not active")
        store.upsert_subscription_grant(user_id, to_grant(sub), stripe_customer_id=sub.customer_id)
        amount = (
            _cents_to_amount(session.amount_total)
            if session.amount_total is not None
            else _cents_to_amount(settings.SUBSCRIPTION_PRICE_CENTS)
        )
        result = VerificationResult(
            verified=True,
            grant_type=PURCHASE_SUBSCRIPTION,
            subscription_id=sub.subscription_id,
        )
    elif purchase_type == PURCHASE_UNLOCK:
        query = normalize_query(session.metadata.get("search_query"))
        if not query:
            raise InvalidPurchaseRequest("Checkout session has no search query")
        amount = unlock_amount(session)
        store.record_unlock(user_id, query, amount, stripe_session_id=session.session_id)
        result = VerificationResult(verified=True, grant_type=PURCHASE_UNLOCK, search_query=query)
    else:
        raise InvalidPurchaseRequest("Checkout session has an unknown purchase type")

    store.complete_transaction(
        PaymentTransaction(
            transaction_id=session.session_id,
            user_id=user_id,
            amount=amount,
            type=purchase_type,
            stripe_session_id=session.session_id,
        )
    )
    entitlements.invalidate(user_id)

    log_event(
        "info",
        "verify.recorded",
        user_id=user_id,
        event_type=purchase_type,
        extra={"session_id": session.session_id},
    )
    return result


def verify_and_record(session_id: Optional[str], identity: Optional[Identity]) -> VerificationResult:
    """
    Verify a completed checkout session against the processor and grant it.

    Args:
        session_id: Processor checkout session id from the success redirect
        identity: Authenticated caller

    Returns:
        VerificationResult (identical for repeated calls on the same session)

    Raises:
        AuthenticationRequired: Anonymous caller
        InvalidPurchaseRequest: Missing session id
        PaymentNotCompleted: Session not paid
        SessionOwnershipMismatch: Session belongs to another user
        NotFoundError: Unknown session id
        OracleUnavailable: Processor call failed
    """
    if identity is None:
        raise AuthenticationRequired("Sign in to verify a payment")
    if not session_id or not session_id.strip():
        raise InvalidPurchaseRequest("Session ID is required")
    provider = billing.require_provider()

    try:
        session = provider.retrieve_checkout_session(session_id.strip())
        if session.payment_status != "paid":
            log_event(
                "warning",
                "verify.not_paid",
                user_id=identity.user_id,
                error_code="payment_not_completed",
                extra={"session_id": session.session_id, "payment_status": session.payment_status},
            )
            raise PaymentNotCompleted("Payment not completed")
        _check_ownership(session, identity)
        return record_verified_session(identity.user_id, session, provider)
    except BillingProviderError as e:
        raise billing.translate_provider_error(e, user_id=identity.user_id, action="verify") from e


def create_portal_session(identity: Optional[Identity]) -> str:
    """
    Create a billing-portal session for the caller's processor customer.

    Raises:
        AuthenticationRequired: Anonymous caller
        NotFoundError: Caller never became a customer
        OracleUnavailable: Processor call failed
    """
    if identity is None:
        raise AuthenticationRequired("Sign in to manage billing")
    provider = billing.require_provider()

    try:
        customer_id = provider.find_customer_by_email(identity.email) if identity.email else None
        if customer_id is None:
            customer_id = store.get_linked_customer(identity.user_id)
        if customer_id is None:
            raise NotFoundError("No billing account found")
        url = provider.create_portal_session(
            customer_id=customer_id,
            return_url=f"{settings.FRONTEND_URL.rstrip('/')}/account",
        )
    except BillingProviderError as e:
        raise billing.translate_provider_error(e, user_id=identity.user_id, action="portal") from e

    # Portal changes arrive by webhook; drop the cached view now so the return trip reconciles
    entitlements.invalidate(identity.user_id)
    return url
