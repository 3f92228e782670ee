"""
paygate/models/entitlement.py

Entitlement records.

Two independent grant types exist per user:
- SubscriptionGrant: recurring subscription mirrored from the billing oracle
- UnlockGrant: one-time, lifetime access to a single normalized search query

EntitlementSnapshot is a derived projection of both. It is cached briefly but
is never a source of truth.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import FrozenSet, Optional
from pydantic import BaseModel, ConfigDict, Field


ACCESS_BASIC = "basic"
ACCESS_PREMIUM = "premium"

SUBSCRIPTION_STATUSES = ("active", "past_due", "canceled")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SubscriptionGrant(BaseModel):
    """
    Recurring subscription grant.

    Status semantics:
    - active: full access
    - past_due with current_period_end in the future: grace-period full access
    - anything else: no subscription-based access
    """
    model_config = ConfigDict(frozen=True)

    subscription_id: str
    status: str
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    plan_type: str = "premium"


class UnlockGrant(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    search_query: str  # normalized
    payment_amount: Decimal
    unlock_date: datetime


class EntitlementSnapshot(BaseModel):
    """
    Per-user projection of SubscriptionGrant + UnlockGrants.

    `stale` marks a cached snapshot served while the billing oracle was
    unreachable; `error` carries a recoverable error code the caller may retry on.
    """
    model_config = ConfigDict(frozen=True)

    has_active_subscription: bool = False
    in_grace_period: bool = False
    unlocked_queries: FrozenSet[str] = Field(default_factory=frozenset)
    access_level: str = ACCESS_BASIC
    subscription: Optional[SubscriptionGrant] = None
    stale: bool = False
    error: Optional[str] = None
    computed_at: datetime = Field(default_factory=utc_now)

    @property
    def has_full_access(self) -> bool:
        return self.has_active_subscription or self.in_grace_period

    @property
    def payment_problem(self) -> bool:
        return self.in_grace_period

    @classmethod
    def basic(cls, unlocked_queries=(), error: Optional[str] = None) -> "EntitlementSnapshot":
        """Restrictive snapshot: no subscription, only locally confirmed unlocks."""
        return cls(unlocked_queries=frozenset(unlocked_queries), error=error)
