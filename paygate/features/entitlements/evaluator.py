"""
Access evaluator.

Pure decision functions over an EntitlementSnapshot. No I/O and no clock; the
free-tier cap comes from FREE_TIER_RESULT_CAP in settings unless overridden.
The same calls are safe on the server (where results are actually truncated)
and in any client that wants to decide what chrome to render.
Only the server-side result is authoritative.
"""

import math
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from paygate.core.config import settings
from paygate.models.entitlement import EntitlementSnapshot


UNLIMITED = math.inf


class AccessLevel(str, Enum):
    FULL = "full"
    CAPPED = "capped"
    DENIED = "denied"


@dataclass(frozen=True)
class AccessRequest:
    """A requested resource: a category, a search query, or a result list for a query."""
    category: Optional[str] = None
    query: Optional[str] = None
    total_results: Optional[int] = None


@dataclass(frozen=True)
class Verdict:
    access: AccessLevel
    max_visible_results: float
    show_upgrade_banner: bool = False

    @property
    def is_unbounded(self) -> bool:
        return self.max_visible_results == UNLIMITED


def normalize_query(query: Optional[str]) -> str:
    """Deterministic trim + lowercase; used both when writing and when checking unlocks."""
    if query is None:
        return ""
    return query.strip().lower()


def can_access_category(snapshot: EntitlementSnapshot, category: Optional[str] = None) -> bool:
    """
    Category-level access.

    Category unlocks do not exist in the current model, so this only reflects
    full access. Kept so callers can gate category pages through one function.
    """
    return snapshot.has_full_access


def can_access_search(snapshot: EntitlementSnapshot, query: Optional[str]) -> bool:
    if snapshot.has_full_access:
        return True
    normalized = normalize_query(query)
    if not normalized:
        return False
    return normalized in snapshot.unlocked_queries


def free_tier_cap(free_cap: Optional[int] = None) -> int:
    """Configured cap unless overridden; never below zero."""
    cap = settings.FREE_TIER_RESULT_CAP if free_cap is None else free_cap
    return max(0, int(cap))


def max_visible_results(snapshot: EntitlementSnapshot, query: Optional[str], free_cap: Optional[int] = None) -> float:
    """UNLIMITED for subscribers and unlocked queries, otherwise the free-tier cap."""
    if can_access_search(snapshot, query):
        return UNLIMITED
    return free_tier_cap(free_cap)


def visible_count(total_results: int, cap: float) -> int:
    return max(0, int(min(total_results, cap)))


def should_show_upgrade_banner(snapshot: EntitlementSnapshot, total_results: int, visible_results: int) -> bool:
    return not snapshot.has_full_access and total_results > visible_results


def evaluate(snapshot: EntitlementSnapshot, request: AccessRequest, free_cap: Optional[int] = None) -> Verdict:
    """
    Decide access for a single request.

    Args:
        snapshot: Resolved entitlements of the requester (basic for anonymous)
        request: Category and/or query, optionally with the size of the result set
        free_cap: Override for the cap applied to queries without access

    Returns:
        Verdict with access level, visible-result cap and upgrade signal
    """
    if request.category is not None and request.query is None:
        if can_access_category(snapshot, request.category):
            return Verdict(access=AccessLevel.FULL, max_visible_results=UNLIMITED)
        return Verdict(access=AccessLevel.DENIED, max_visible_results=0, show_upgrade_banner=True)

    cap = max_visible_results(snapshot, request.query, free_cap)
    if cap == UNLIMITED:
        access = AccessLevel.FULL
    elif cap > 0:
        access = AccessLevel.CAPPED
    else:
        access = AccessLevel.DENIED

    banner = False
    if request.total_results is not None:
        banner = should_show_upgrade_banner(
            snapshot,
            request.total_results,
            visible_count(request.total_results, cap),
        )

    return Verdict(access=access, max_visible_results=cap, show_upgrade_banner=banner)
