"""
Access-controlled list endpoint tests.

visibleItems always has length min(totalCount, cap).
"""
from decimal import Decimal

from fastapi.testclient import TestClient

from paygate.features.entitlements import store
from paygate.main import app

client = TestClient(app)

ALICE = {"X-User-Id": "user_alice", "X-User-Email": "alice@example.com"}
PRODUCTS = [{"id": i, "title": f"Product {i}"} for i in range(25)]


def test_anonymous_sees_ten_with_banner(oracle):
    resp = client.post("/api/access/results", json={"query": "blender", "items": PRODUCTS})
    assert resp.status_code == 200
    data = resp.json()
    assert len(data["visibleItems"]) == 10
    assert data["visibleItems"][0] == {"id": 0, "title": "Product 0"}
    assert data["totalCount"] == 25
    assert data["showUpgradeBanner"] is True
    assert data["maxVisibleResults"] == 10
    assert data["hasActiveSubscription"] is False


def test_short_list_is_returned_whole(oracle):
    data = client.post("/api/access/results", json={"query": "blender", "items": PRODUCTS[:4]}).json()
    assert len(data["visibleItems"]) == 4
    assert data["showUpgradeBanner"] is False


def test_unlocked_query_is_unbounded(oracle):
    store.record_unlock("user_alice", "wireless headphones", Decimal("4.99"))
    data = client.post(
        "/api/access/results",
        json={"query": "  Wireless Headphones ", "items": PRODUCTS},
        headers=ALICE,
    ).json()
    assert len(data["visibleItems"]) == 25
    assert data["maxVisibleResults"] is None
    assert data["hasSearchUnlock"] is True
    assert data["showUpgradeBanner"] is False


def test_subscriber_is_unbounded(oracle):
    customer = oracle.add_customer("alice@example.com")
    oracle.add_subscription(customer)
    data = client.post("/api/access/results", json={"query": "tv", "items": PRODUCTS}, headers=ALICE).json()
    assert len(data["visibleItems"]) == 25
    assert data["hasActiveSubscription"] is True
    assert data["showUpgradeBanner"] is False


def test_empty_items(oracle):
    data = client.post("/api/access/results", json={"query": "tv", "items": []}).json()
    assert data["visibleItems"] == []
    assert data["totalCount"] == 0
    assert data["showUpgradeBanner"] is False
