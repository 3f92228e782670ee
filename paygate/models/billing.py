"""
Billing records mirrored locally from the payment processor.
"""

from decimal import Decimal
from typing import Optional
from pydantic import BaseModel, ConfigDict


PURCHASE_SUBSCRIPTION = "subscription"
PURCHASE_UNLOCK = "unlock"
PURCHASE_TYPES = (PURCHASE_SUBSCRIPTION, PURCHASE_UNLOCK)

TX_PENDING = "pending"
TX_COMPLETED = "completed"
TX_FAILED = "failed"


class PaymentTransaction(BaseModel):
    """Local mirror of a processor checkout session."""
    model_config = ConfigDict(frozen=True)

    transaction_id: str
    user_id: str
    amount: Decimal
    type: str  # subscription | unlock
    status: str = TX_PENDING
    stripe_session_id: str


class CheckoutResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    redirect_url: str
    session_id: str


class VerificationResult(BaseModel):
    """Outcome of verifying a checkout session. Identical on repeated calls."""
    model_config = ConfigDict(frozen=True)

    verified: bool
    grant_type: str
    search_query: Optional[str] = None
    subscription_id: Optional[str] = None
