"""
Tests for the database diagnostics endpoint.
"""

import pytest
from fastapi.testclient import TestClient
from paygate.main import app


@pytest.fixture
def client():
    """FastAPI test client."""
    return TestClient(app)


def test_health_db_success(client):
    response = client.get("/api/health/db")

    assert response.status_code == 200
    data = response.json()

    assert data['ok'] is True
    assert data['db']['connected'] is True
    assert "unlock_grants" in data['db']['tables_present']
    assert "billing_events" in data['db']['tables_present']


def test_health_db_deterministic_with_now_param(client):
    """Supplying `now` pins computed_at and drops latency."""
    test_timestamp = "2025-12-22T10:00:00+00:00"
    response = client.get(f"/api/health/db?now={test_timestamp}")

    assert response.status_code == 200
    data = response.json()
    assert "2025-12-22T10:00:00" in data['computed_at']
    assert data['db']['latency_ms'] is None


def test_health_db_includes_latency_without_now(client):
    response = client.get("/api/health/db")

    data = response.json()
    assert isinstance(data['db']['latency_ms'], (int, float))
    assert 0 <= data['db']['latency_ms'] < 5000


def test_health_db_no_secrets_leak(client):
    response = client.get("/api/health/db")

    response_str = str(response.json()).lower()
    assert 'password' not in response_str
    assert 'secret' not in response_str
    assert 'sqlite' not in response_str
