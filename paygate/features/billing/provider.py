"""
Billing oracle protocol.

The payment processor is the source of truth for billing facts. The core only
consumes it through the black-box queries below, so the processor can be
swapped (or faked in tests) without touching reconciliation or checkout logic.
"""
from typing import Protocol, Dict, Any, List, Optional
from dataclasses import dataclass, field
from datetime import datetime


@dataclass
class OracleSubscription:
    """Subscription as reported by the processor."""
    subscription_id: str
    customer_id: Optional[str]
    status: str  # active, past_due, canceled, incomplete, ...
    current_period_end: Optional[datetime]
    cancel_at_period_end: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class OracleCheckoutSession:
    """Checkout session as reported by the processor."""
    session_id: str
    status: Optional[str]  # open, complete, expired
    payment_status: Optional[str]  # paid, unpaid, no_payment_required
    mode: Optional[str] = None  # subscription, payment
    customer_id: Optional[str] = None
    customer_email: Optional[str] = None
    subscription_id: Optional[str] = None
    amount_total: Optional[int] = None  # minor units (cents)
    url: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class BillingWebhookResult:
    """Result of verifying and parsing a billing webhook."""
    event_id: str
    event_type: str
    subscription: Optional[OracleSubscription] = None
    checkout_session_id: Optional[str] = None
    customer_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class BillingProvider(Protocol):
    """
    Protocol for billing providers.

    Implementations must handle:
    - Customer lookup by email and creation
    - Subscription listing and retrieval
    - Checkout session creation, retrieval and listing
    - Portal session creation
    - Webhook signature verification and parsing

    Every method raises BillingProviderError (or a subclass) on failure.
    """

    def find_customer_by_email(self, email: str) -> Optional[str]:
        """Return the processor customer id for `email`, or None."""
        ...

    def create_customer(self, email: Optional[str], user_id: str) -> str:
        ...

    def list_subscriptions(self, customer_id: str, status: str, limit: int = 1) -> List[OracleSubscription]:
        """
        List a customer's subscriptions in one status, most recent first.

        Args:
            customer_id: Provider customer ID
            status: Subscription status filter (active, past_due, ...)
            limit: Maximum rows to return
        """
        ...

    def retrieve_subscription(self, subscription_id: str) -> OracleSubscription:
        ...

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
        """
        Create a checkout session with a server-defined price.

        Args:
            customer_id: Provider customer ID
            mode: "subscription" (monthly recurring) or "payment" (one-time)
            amount_cents: Price in minor units
            currency: ISO currency code
            product_name: Line item label
            success_url: URL to redirect on success
            cancel_url: URL to redirect on cancellation
            metadata: Immutable metadata recovered at verification time

        Returns:
            The created session (with its redirect url)
        """
        ...

    def retrieve_checkout_session(self, session_id: str) -> OracleCheckoutSession:
        ...

    def list_completed_checkout_sessions(self, customer_id: str, limit: int = 100) -> List[OracleCheckoutSession]:
        ...

    def create_portal_session(self, customer_id: str, return_url: str) -> str:
        """Create a billing portal session and return its URL."""
        ...

    def handle_webhook(self, headers: Dict[str, str], body: bytes) -> BillingWebhookResult:
        """
        Verify webhook signature and parse event.

        Raises:
            BillingWebhookError: If signature invalid or parsing fails
        """
        ...


class BillingProviderError(Exception):
    """Base exception for billing provider errors."""
    pass


class BillingUnavailableError(BillingProviderError):
    """The processor could not be reached (timeout, connection reset) after retries."""
    pass


class BillingNotFoundError(BillingProviderError):
    """The processor has no object with the requested id."""
    pass


class BillingWebhookError(BillingProviderError):
    """Exception for webhook processing errors."""
    pass
