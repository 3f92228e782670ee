# paygate/conftest.py
import os
import pytest
from unittest.mock import patch

# In-memory SQLite shared across sessions (StaticPool); set before settings load
os.environ.setdefault("TEST_DATABASE_URL", "sqlite://")
os.environ.setdefault("ALLOW_HEADER_AUTH", "true")
os.environ.setdefault("AUTH_JWT_SECRET", "test-jwt-secret-with-at-least-32-bytes")
os.environ.setdefault("FRONTEND_URL", "http://localhost:3000")
os.environ.pop("REDIS_URL", None)

from paygate.tests.mocks import FakeBillingOracle  # noqa: E402


@pytest.fixture(scope="session", autouse=True)
def create_tables():
    """Create all database tables once per test session."""
    from paygate.core.database import create_all_tables
    create_all_tables()
    yield


@pytest.fixture(scope="function", autouse=True)
def reset_db():
    """Drop and recreate every table so each test starts from a clean slate."""
    from paygate.core.database import reset_database
    reset_database()
    yield


@pytest.fixture(scope="function", autouse=True)
def fresh_snapshot_cache():
    """Per-test in-process snapshot cache."""
    from paygate.features.entitlements.cache import SnapshotCache, reset_snapshot_cache
    cache = SnapshotCache(client=None)
    reset_snapshot_cache(cache)
    yield cache
    reset_snapshot_cache(None)


@pytest.fixture
def oracle():
    """Fake billing oracle wired in place of Stripe."""
    fake = FakeBillingOracle()
    with patch("paygate.features.billing.service.get_provider", return_value=fake):
        yield fake


@pytest.fixture
def billing_disabled():
    with patch("paygate.features.billing.service.get_provider", return_value=None):
        yield


@pytest.fixture(scope="function", autouse=True)
def fresh_billing_provider():
    """No Stripe client carried over between tests."""
    from paygate.features.billing.service import reset_provider
    reset_provider()
    yield
    reset_provider()
