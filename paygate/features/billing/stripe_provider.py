"""
Stripe billing provider implementation.

Implements the BillingProvider protocol using the Stripe API.
Every call is bounded by BILLING_TIMEOUT_SECONDS and retried at most
BILLING_MAX_RETRIES times on network failure (Stripe's own retry loop).
Stripe objects are normalized into provider dataclasses before leaving
this module.
"""
from typing import Dict, Any, List, Optional
from datetime import datetime, timezone
import stripe

from paygate.core.config import settings
from paygate.features.billing.provider import (
    BillingProviderError,
    BillingNotFoundError,
    BillingUnavailableError,
    BillingWebhookError,
    BillingWebhookResult,
    OracleCheckoutSession,
    OracleSubscription,
)


def _to_dict(value: Any) -> Dict[str, Any]:
    if value is None:
        return {}
    if hasattr(value, "to_dict"):
        return value.to_dict()
    return dict(value)


def _ts(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _id_of(value: Any) -> Optional[str]:
    """Stripe fields may hold an id string or an expanded object."""
    if value is None or isinstance(value, str):
        return value
    return getattr(value, "id", None)


class StripeProvider:
    """Stripe implementation of BillingProvider protocol."""

    def __init__(
        self,
        secret_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        max_retries: Optional[int] = None,
    ):
        """
        Initialize Stripe provider.

        Args:
            secret_key: Stripe secret key (defaults to STRIPE_SECRET_KEY)
            webhook_secret: Stripe webhook secret (defaults to STRIPE_WEBHOOK_SECRET)
            timeout_seconds: Per-request timeout (defaults to BILLING_TIMEOUT_SECONDS)
            max_retries: Network retries per call, capped at 1
        """
        self.secret_key = secret_key or settings.STRIPE_SECRET_KEY
        self.webhook_secret = webhook_secret or settings.STRIPE_WEBHOOK_SECRET

        if not self.secret_key:
            raise BillingProviderError("STRIPE_SECRET_KEY not configured")

        timeout = timeout_seconds if timeout_seconds is not None else settings.BILLING_TIMEOUT_SECONDS
        retries = max_retries if max_retries is not None else settings.BILLING_MAX_RETRIES

        stripe.api_key = self.secret_key
        stripe.max_network_retries = max(0, min(int(retries), 1))
        stripe.default_http_client = stripe.RequestsClient(timeout=timeout)

    def _call(self, action: str, fn, *args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except stripe.APIConnectionError as e:
            raise BillingUnavailableError(f"Stripe {action} failed: {e}")
        except stripe.InvalidRequestError as e:
            if getattr(e, "http_status", None) == 404:
                raise BillingNotFoundError(f"Stripe {action} failed: {e}")
            raise BillingProviderError(f"Stripe {action} failed: {e}")
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe {action} failed: {e}")

    def find_customer_by_email(self, email: str) -> Optional[str]:
        """Look up the most recent Stripe customer with this email."""
        customers = self._call("customer lookup", stripe.Customer.list, email=email, limit=1)
        if customers.data:
            return customers.data[0].id
        return None

    def create_customer(self, email: Optional[str], user_id: str) -> str:
        customer_data: Dict[str, Any] = {"metadata": {"user_id": user_id}}
        if email:
            customer_data["email"] = email
        customer = self._call("customer creation", stripe.Customer.create, **customer_data)
        return customer.id

    def list_subscriptions(self, customer_id: str, status: str, limit: int = 1) -> List[OracleSubscription]:
        # Stripe lists newest first
        subs = self._call(
            "subscription listing",
            stripe.Subscription.list,
            customer=customer_id,
            status=status,
            limit=limit,
        )
        return [self._subscription(s) for s in subs.data]

    def retrieve_subscription(self, subscription_id: str) -> OracleSubscription:
        sub = self._call("subscription retrieval", stripe.Subscription.retrieve, subscription_id)
        return self._subscription(sub)

    def create_checkout_session(
        self,
        customer_id: str,
        mode: str,
        amount_cents: int,
        currency: str,
        product_name: str,
        success_url: str,
        cancel_url: str,
        metadata: Dict[str, str],
    ) -> OracleCheckoutSession:
        """Create Stripe checkout session with inline price data."""
        price_data: Dict[str, Any] = {
            "currency": currency,
            "product_data": {"name": product_name},
            "unit_amount": amount_cents,
        }
        params: Dict[str, Any] = {
            "customer": customer_id,
            "payment_method_types": ["card"],
            "mode": mode,
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata,
        }
        if mode == "subscription":
            price_data["recurring"] = {"interval": "month"}
            # Webhook subscription events carry the owning user this way
            params["subscription_data"] = {"metadata": metadata}
        params["line_items"] = [{"price_data": price_data, "quantity": 1}]

        session = self._call("checkout session creation", stripe.checkout.Session.create, **params)
        return self._session(session)

    def retrieve_checkout_session(self, session_id: str) -> OracleCheckoutSession:
        session = self._call(
            "checkout session retrieval",
            stripe.checkout.Session.retrieve,
            session_id,
            expand=["customer_details"],
        )
        return self._session(session)

    def list_completed_checkout_sessions(self, customer_id: str, limit: int = 100) -> List[OracleCheckoutSession]:
        sessions = self._call(
            "checkout session listing",
            stripe.checkout.Session.list,
            customer=customer_id,
            status="complete",
            limit=limit,
        )
        return [self._session(s) for s in sessions.data]

    def create_portal_session(self, customer_id: str, return_url: str) -> str:
        """Create Stripe billing portal session."""
        session = self._call(
            "portal session creation",
            stripe.billing_portal.Session.create,
            customer=customer_id,
            return_url=return_url,
        )
        return session.url

    def handle_webhook(self, headers: Dict[str, str], body: bytes) -> BillingWebhookResult:
        """Verify Stripe webhook signature and parse event."""
        if not self.webhook_secret:
            raise BillingWebhookError("STRIPE_WEBHOOK_SECRET not configured")

        sig_header = headers.get("stripe-signature") or headers.get("Stripe-Signature")
        if not sig_header:
            raise BillingWebhookError("Missing stripe-signature header")

        try:
            event = stripe.Webhook.construct_event(body, sig_header, self.webhook_secret)
        except ValueError as e:
            raise BillingWebhookError(f"Invalid payload: {e}")
        except stripe.SignatureVerificationError as e:
            raise BillingWebhookError(f"Invalid signature: {e}")

        return self._parse_event(event)

    def _parse_event(self, event) -> BillingWebhookResult:
        """Parse Stripe event into normalized BillingWebhookResult."""
        event_type = event.type
        data = event.data.object

        result = BillingWebhookResult(
            event_id=event.id,
            event_type=event_type,
            customer_id=_id_of(getattr(data, "customer", None)),
            metadata=_to_dict(getattr(data, "metadata", None)),
        )

        if event_type.startswith("customer.subscription."):
            result.subscription = self._subscription(data)
        elif event_type == "checkout.session.completed":
            result.checkout_session_id = getattr(data, "id", None)

        return result

    def _subscription(self, sub) -> OracleSubscription:
        period_end = getattr(sub, "current_period_end", None)
        if period_end is None:
            # Newer API versions carry the period on the subscription items
            try:
                items = sub["items"]["data"]
            except (KeyError, TypeError):
                items = []
            if items:
                period_end = getattr(items[0], "current_period_end", None)
        return OracleSubscription(
            subscription_id=sub.id,
            customer_id=_id_of(getattr(sub, "customer", None)),
            status=getattr(sub, "status", None) or "unknown",
            current_period_end=_ts(period_end),
            cancel_at_period_end=bool(getattr(sub, "cancel_at_period_end", False)),
            metadata=_to_dict(getattr(sub, "metadata", None)),
        )

    def _session(self, session) -> OracleCheckoutSession:
        details = getattr(session, "customer_details", None)
        email = getattr(details, "email", None) if details is not None else None
        return OracleCheckoutSession(
            session_id=session.id,
            status=getattr(session, "status", None),
            payment_status=getattr(session, "payment_status", None),
            mode=getattr(session, "mode", None),
            customer_id=_id_of(getattr(session, "customer", None)),
            customer_email=email or getattr(session, "customer_email", None),
            subscription_id=_id_of(getattr(session, "subscription", None)),
            amount_total=getattr(session, "amount_total", None),
            url=getattr(session, "url", None),
            metadata=_to_dict(getattr(session, "metadata", None)),
        )
