"""
paygate/features/entitlements/service.py

Entitlement resolution and server-side enforcement.

Handles:
- Snapshot resolution: fresh cache -> reconcile -> cache
- Degradation on oracle failure: usable cached snapshot marked stale, else
  the restrictive basic snapshot (never fails open)
- Explicit invalidation after anything that changes entitlements
- Truncating a result list to what the requester may see
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, List, Optional
import logging
from sqlalchemy.exc import SQLAlchemyError

from paygate.core.auth import Identity
from paygate.core.errors import OracleUnavailable
from paygate.core.logging import log_event
from paygate.features.billing import reconciler
from paygate.features.entitlements import store
from paygate.features.entitlements.cache import get_snapshot_cache
from paygate.features.entitlements.evaluator import (
    AccessRequest,
    UNLIMITED,
    normalize_query,
    evaluate,
    visible_count,
)
from paygate.models.entitlement import EntitlementSnapshot


logger = logging.getLogger(__name__)


def _restrictive_snapshot(user_id: str, error: str) -> EntitlementSnapshot:
    """Basic access plus unlocks already confirmed locally."""
    try:
        unlocked = store.list_unlocked_queries(user_id)
    except SQLAlchemyError as e:
        logger.error("[entitlements] local unlock read failed", extra={"user_id": user_id, "error": str(e)})
        unlocked = set()
    return EntitlementSnapshot.basic(unlocked, error=error)


def get_snapshot(
    identity: Optional[Identity],
    force_refresh: bool = False,
    now: Optional[datetime] = None,
) -> EntitlementSnapshot:
    """
    Resolve the requester's entitlement snapshot.

    Args:
        identity: Authenticated caller, or None for anonymous visitors
        force_refresh: Skip the fresh-cache check (e.g. returning from checkout)
        now: Clock override for grace evaluation

    Returns:
        EntitlementSnapshot; never raises on oracle failure
    """
    if identity is None:
        return EntitlementSnapshot.basic()

    cache = get_snapshot_cache()
    if not force_refresh:
        cached = cache.get_fresh(identity.user_id)
        if cached is not None:
            return cached.snapshot

    try:
        snapshot = reconciler.reconcile(identity, now=now)
    except OracleUnavailable as e:
        usable = cache.get_usable(identity.user_id)
        if usable is not None:
            log_event(
                "warning",
                "entitlements.serving_stale",
                user_id=identity.user_id,
                error_code=e.code,
                extra={"age_seconds": round(usable.age_seconds, 1)},
            )
            return usable.snapshot.model_copy(update={"stale": True})
        log_event("warning", "entitlements.restrictive_fallback", user_id=identity.user_id, error_code=e.code)
        return _restrictive_snapshot(identity.user_id, e.code)
    except SQLAlchemyError as e:
        log_event("error", "entitlements.store_unavailable", user_id=identity.user_id, error_code="store_unavailable", extra={"error": e})
        return EntitlementSnapshot.basic(error="store_unavailable")

    cache.set(identity.user_id, snapshot)
    return snapshot


def invalidate(user_id: str) -> None:
    """Drop the cached snapshot so the next read reconciles."""
    get_snapshot_cache().invalidate(user_id)
    logger.info("[entitlements] snapshot invalidated", extra={"user_id": user_id})


@dataclass(frozen=True)
class AccessControlledResults:
    visible_items: List[Any]
    total_count: int
    show_upgrade_banner: bool
    max_visible_results: Optional[int]  # None = unbounded
    has_active_subscription: bool
    has_search_unlock: bool
    in_grace_period: bool
    stale: bool = False


def filter_results(
    snapshot: EntitlementSnapshot,
    query: Optional[str],
    items: List[Any],
    free_cap: Optional[int] = None,
) -> AccessControlledResults:
    """
    Truncate an already-fetched result list to what the requester may see.

    visible_items always has length min(len(items), cap).
    """
    total = len(items)
    verdict = evaluate(snapshot, AccessRequest(query=query, total_results=total), free_cap=free_cap)
    shown = visible_count(total, verdict.max_visible_results)
    normalized = normalize_query(query)

    return AccessControlledResults(
        visible_items=list(items[:shown]),
        total_count=total,
        show_upgrade_banner=verdict.show_upgrade_banner,
        max_visible_results=None if verdict.max_visible_results == UNLIMITED else int(verdict.max_visible_results),
        has_active_subscription=snapshot.has_active_subscription,
        has_search_unlock=bool(normalized) and normalized in snapshot.unlocked_queries,
        in_grace_period=snapshot.in_grace_period,
        stale=snapshot.stale,
    )
