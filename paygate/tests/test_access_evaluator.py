"""
Access evaluator tests.

Pure functions only: no database, no oracle.
"""
import pytest

from paygate.features.entitlements.evaluator import (
    AccessLevel,
    AccessRequest,
    UNLIMITED,
    can_access_category,
    can_access_search,
    evaluate,
    max_visible_results,
    normalize_query,
    should_show_upgrade_banner,
    visible_count,
)
from paygate.core.config import settings
from paygate.models.entitlement import EntitlementSnapshot


FREE = EntitlementSnapshot.basic()
SUBSCRIBER = EntitlementSnapshot(has_active_subscription=True, access_level="premium")
GRACE = EntitlementSnapshot(in_grace_period=True, access_level="premium")
UNLOCKER = EntitlementSnapshot.basic({"wireless headphones"})


@pytest.mark.parametrize("query", ["laptop", "Dyson Airwrap", "  ", "", None, "wireless headphones pro"])
def test_free_user_is_capped_at_ten(query):
    assert max_visible_results(FREE, query) == 10
    assert can_access_search(FREE, query) is False


@pytest.mark.parametrize("query", ["laptop", "", None, "wireless headphones"])
def test_subscriber_is_unbounded(query):
    assert max_visible_results(SUBSCRIBER, query) == UNLIMITED
    assert can_access_search(SUBSCRIBER, query) is True


def test_subscriber_unbounded_regardless_of_unlocks():
    snap = EntitlementSnapshot(has_active_subscription=True, unlocked_queries=frozenset({"tv"}), access_level="premium")
    assert max_visible_results(snap, "radio") == UNLIMITED
    assert max_visible_results(snap, "tv") == UNLIMITED


def test_grace_period_counts_as_full_access():
    assert max_visible_results(GRACE, "anything") == UNLIMITED
    assert can_access_category(GRACE, "kitchen") is True


def test_unlock_matches_after_normalization():
    assert can_access_search(UNLOCKER, "  Wireless Headphones ") is True
    assert can_access_search(UNLOCKER, "WIRELESS HEADPHONES") is True
    assert max_visible_results(UNLOCKER, "wireless headphones") == UNLIMITED


def test_unlock_does_not_extend_to_similar_queries():
    assert can_access_search(UNLOCKER, "wireless headphones pro") is False
    assert can_access_search(UNLOCKER, "headphones") is False
    assert max_visible_results(UNLOCKER, "headphones") == settings.FREE_TIER_RESULT_CAP


def test_empty_query_is_never_unlocked():
    snap = EntitlementSnapshot.basic({""})
    assert can_access_search(snap, "") is False
    assert can_access_search(snap, "   ") is False


def test_normalize_query():
    assert normalize_query("  Wireless Headphones ") == "wireless headphones"
    assert normalize_query(None) == ""
    assert normalize_query("\tTV\n") == "tv"


def test_category_access_requires_subscription():
    assert can_access_category(FREE, "beauty") is False
    assert can_access_category(UNLOCKER, "wireless headphones") is False
    assert can_access_category(SUBSCRIBER, "beauty") is True


def test_upgrade_banner():
    assert should_show_upgrade_banner(FREE, total_results=25, visible_results=10) is True
    assert should_show_upgrade_banner(FREE, total_results=10, visible_results=10) is False
    assert should_show_upgrade_banner(FREE, total_results=3, visible_results=3) is False
    assert should_show_upgrade_banner(SUBSCRIBER, total_results=25, visible_results=10) is False


def test_evaluate_capped_with_banner():
    verdict = evaluate(FREE, AccessRequest(query="blender", total_results=30))
    assert verdict.access == AccessLevel.CAPPED
    assert verdict.max_visible_results == 10
    assert verdict.show_upgrade_banner is True
    assert verdict.is_unbounded is False


def test_evaluate_unlocked_query_is_full_without_banner():
    verdict = evaluate(UNLOCKER, AccessRequest(query="Wireless Headphones", total_results=30))
    assert verdict.access == AccessLevel.FULL
    assert verdict.is_unbounded
    assert verdict.show_upgrade_banner is False


def test_evaluate_category():
    assert evaluate(FREE, AccessRequest(category="beauty")).access == AccessLevel.DENIED
    assert evaluate(SUBSCRIBER, AccessRequest(category="beauty")).access == AccessLevel.FULL


def test_evaluate_zero_cap_denies():
    verdict = evaluate(FREE, AccessRequest(query="tv", total_results=5), free_cap=0)
    assert verdict.access == AccessLevel.DENIED
    assert verdict.show_upgrade_banner is True


def test_configured_cap_is_the_default(monkeypatch):
    monkeypatch.setattr(settings, "FREE_TIER_RESULT_CAP", 3)
    assert max_visible_results(FREE, "tv") == 3
    assert evaluate(FREE, AccessRequest(query="tv", total_results=5)).max_visible_results == 3


def test_negative_cap_is_treated_as_zero():
    assert max_visible_results(FREE, "tv", free_cap=-1) == 0
    assert visible_count(20, -1) == 0
    verdict = evaluate(FREE, AccessRequest(query="tv", total_results=20), free_cap=-1)
    assert verdict.access == AccessLevel.DENIED
