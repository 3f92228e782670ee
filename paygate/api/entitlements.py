"""
Entitlement status API.

- GET /api/entitlements/status: resolved entitlements for the caller
  (anonymous callers get basic access with no grants)
"""
from typing import List, Optional
from fastapi import APIRouter, Depends, Query

from paygate.api.schemas import CamelModel
from paygate.core.auth import Identity, get_optional_identity
from paygate.features.entitlements import grace
from paygate.features.entitlements.service import get_snapshot


router = APIRouter(prefix="/api/entitlements", tags=["entitlements"])


class SubscriptionInfo(CamelModel):
    subscription_id: str
    status: str
    current_period_end: Optional[str] = None  # ISO8601
    cancel_at_period_end: bool
    plan_type: str


class EntitlementStatusResponse(CamelModel):
    has_active_subscription: bool
    in_grace_period: bool
    payment_problem: bool
    grace_remaining: Optional[str] = None
    unlocked_queries: List[str]
    access_level: str
    stale: bool
    error: Optional[str] = None
    subscription: Optional[SubscriptionInfo] = None


@router.get("/status", response_model=EntitlementStatusResponse)
def entitlement_status(
    refresh: bool = Query(False, description="Bypass the snapshot cache (e.g. after a payment redirect)"),
    identity: Optional[Identity] = Depends(get_optional_identity),
):
    """
    Entitlement status for the caller.

    Never fails because the billing processor is down: a recent cached snapshot
    is returned with stale=true, otherwise basic access.
    """
    snapshot = get_snapshot(identity, force_refresh=refresh)

    subscription = None
    if snapshot.subscription is not None:
        sub = snapshot.subscription
        subscription = SubscriptionInfo(
            subscription_id=sub.subscription_id,
            status=sub.status,
            current_period_end=sub.current_period_end.isoformat() if sub.current_period_end else None,
            cancel_at_period_end=sub.cancel_at_period_end,
            plan_type=sub.plan_type,
        )

    return EntitlementStatusResponse(
        has_active_subscription=snapshot.has_active_subscription,
        in_grace_period=snapshot.in_grace_period,
        payment_problem=snapshot.payment_problem,
        grace_remaining=grace.format_remaining(grace.grace_remaining(snapshot.subscription))
        if snapshot.in_grace_period else None,
        unlocked_queries=sorted(snapshot.unlocked_queries),
        access_level=snapshot.access_level,
        stale=snapshot.stale,
        error=snapshot.error,
        subscription=subscription,
    )
