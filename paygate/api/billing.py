"""
Billing API routes.

Minimal surface:
- POST /api/billing/checkout: Create checkout session (subscription or unlock)
- POST /api/billing/verify: Verify a returned checkout session and grant it
- POST /api/billing/portal: Create portal session
- POST /api/billing/webhook: Handle Stripe webhooks
"""
from typing import Optional
from fastapi import APIRouter, Depends, Request

from paygate.api.schemas import CamelModel
from paygate.core.auth import Identity, get_optional_identity, require_identity
from paygate.core.errors import ValidationError
from paygate.features.billing import checkout
from paygate.features.billing.provider import BillingProviderError, BillingWebhookError
from paygate.features.billing.service import translate_provider_error
from paygate.features.billing.webhooks import process_webhook_event


router = APIRouter(prefix="/api/billing", tags=["billing"])


class CheckoutRequest(CamelModel):
    """Request to create checkout session. Prices are never accepted from clients."""
    type: Optional[str] = None
    search_query: Optional[str] = None


class CheckoutResponse(CamelModel):
    redirect_url: str
    session_id: str


class VerifyRequest(CamelModel):
    session_id: Optional[str] = None


class VerifyResponse(CamelModel):
    verified: bool
    grant_type: str
    search_query: Optional[str] = None
    subscription_id: Optional[str] = None


class PortalResponse(CamelModel):
    url: str


class WebhookResponse(CamelModel):
    received: bool
    event_id: str
    duplicate: bool


@router.post("/checkout", response_model=CheckoutResponse)
def create_checkout(body: CheckoutRequest, identity: Optional[Identity] = Depends(get_optional_identity)):
    """
    Create Stripe checkout session.

    Requires:
    - Authenticated caller (anonymous -> 401 auth_required, nothing is created)
    - type in {subscription, unlock}; unlock needs a non-empty searchQuery

    Returns:
        {"redirectUrl": "https://checkout.stripe.com/...", "sessionId": "cs_..."}

    Errors:
        401: auth_required
        400: invalid_purchase_request
        503: billing_disabled / billing_unavailable
    """
    result = checkout.create_checkout_session(identity, body.type, body.search_query)
    return CheckoutResponse(redirect_url=result.redirect_url, session_id=result.session_id)


@router.post("/verify", response_model=VerifyResponse)
def verify_payment(body: VerifyRequest, identity: Optional[Identity] = Depends(get_optional_identity)):
    """
    Verify a checkout session server-side and record its grant.

    Safe to call repeatedly (success page reloads); every call returns the same result.

    Errors:
        401: auth_required
        402: payment_not_completed
        403: session_ownership_mismatch
        404: unknown session
        503: billing_unavailable
    """
    result = checkout.verify_and_record(body.session_id, identity)
    return VerifyResponse(
        verified=result.verified,
        grant_type=result.grant_type,
        search_query=result.search_query,
        subscription_id=result.subscription_id,
    )


@router.post("/portal", response_model=PortalResponse)
def create_portal(identity: Identity = Depends(require_identity)):
    """
    Create Stripe billing portal session.

    Errors:
        401: auth_required
        404: Customer not found (user never checked out)
        503: billing_disabled / billing_unavailable
    """
    return PortalResponse(url=checkout.create_portal_session(identity))


@router.post("/webhook", response_model=WebhookResponse)
async def handle_webhook(request: Request):
    """
    Handle Stripe webhook events.

    Verifies signature, processes event idempotently, and updates entitlement state.
    Event deduplication uses stripe_event_id (stored in billing_events table).

    Errors:
        400: Invalid signature or payload
        503: Billing disabled, or the processor was unreachable while applying the event
    """
    # Raw body is required for signature verification
    body = await request.body()
    headers = dict(request.headers)

    try:
        outcome = process_webhook_event(headers, body)
    except BillingWebhookError as e:
        raise ValidationError(str(e), code="invalid_webhook")
    except BillingProviderError as e:
        raise translate_provider_error(e, action="webhook") from e

    return WebhookResponse(received=True, event_id=outcome.event_id, duplicate=outcome.duplicate)
