"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults
- Test database support (in-memory SQLite)
- Table definitions for profiles, grants, the payment ledger and webhook events
- Dialect-aware INSERT ... ON CONFLICT construct for natural-key upserts
"""
from typing import Optional
from contextlib import contextmanager
from sqlalchemy import create_engine, MetaData, Table, Column, Integer, String, DateTime, Boolean, Numeric, Text, Index, UniqueConstraint, false
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql import func
import logging
import os

from paygate.core.config import settings


# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour

# Global engine and session factory
_engine = None
_SessionLocal = None

logger = logging.getLogger("paygate")


def get_database_url() -> Optional[str]:
    """
    Get the database URL from settings or environment.

    For testing, use TEST_DATABASE_URL if available.
    """
    test_url = os.getenv("TEST_DATABASE_URL") or settings.TEST_DATABASE_URL
    if test_url:
        return test_url

    return os.getenv("DATABASE_URL") or settings.DATABASE_URL


def init_engine(database_url: Optional[str] = None):
    """
    Initialize the SQLAlchemy engine.

    Args:
        database_url: Optional override for DATABASE_URL
    """
    global _engine, _SessionLocal

    url = database_url or get_database_url()

    if not url:
        raise ValueError(
            "DATABASE_URL is not configured. "
            "Set DATABASE_URL in environment or .env file."
        )

    if url.startswith("sqlite"):
        # One shared connection so in-memory databases survive across sessions
        _engine = create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            echo=False,
        )
    else:
        _engine = create_engine(
            url,
            poolclass=QueuePool,
            pool_size=POOL_SIZE,
            max_overflow=MAX_OVERFLOW,
            pool_timeout=POOL_TIMEOUT,
            pool_recycle=POOL_RECYCLE,
            pool_pre_ping=True,
            echo=False,  # Set to True for SQL query logging
        )

    # Create session factory
    _SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=_engine
    )

    return _engine


def get_engine():
    """Get the current SQLAlchemy engine."""
    global _engine
    if _engine is None:
        init_engine()
    return _engine


def get_session_factory():
    """Get the session factory."""
    global _SessionLocal
    if _SessionLocal is None:
        init_engine()
    return _SessionLocal


@contextmanager
def get_db_session():
    """
    Context manager for database sessions.

    Usage:
        with get_db_session() as session:
            session.execute(...)
            session.commit()
    """
    SessionLocal = get_session_factory()
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def upsert(table: Table):
    """
    Return a dialect-specific INSERT for `table` that supports
    `.on_conflict_do_nothing()` / `.on_conflict_do_update()`.
    """
    dialect = get_engine().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(table)
    if dialect == "sqlite":
        return sqlite.insert(table)
    raise NotImplementedError(f"Conflict-target upserts not supported for dialect: {dialect}")


def create_all_tables():
    """
    Create all tables defined in metadata.

    This is idempotent - tables that already exist will not be recreated.
    """
    engine = get_engine()
    metadata.create_all(bind=engine)


def drop_all_tables():
    """
    Drop all tables defined in metadata.

    WARNING: This is destructive! Only use in tests or development.
    """
    engine = get_engine()
    metadata.drop_all(bind=engine)


def reset_database():
    """
    Reset the database by dropping and recreating all tables.

    WARNING: This is destructive! Only use in tests.
    """
    drop_all_tables()
    create_all_tables()


def check_connection() -> bool:
    """
    Check if database connection is available.

    Returns:
        True if connection successful, False otherwise
    """
    try:
        engine = get_engine()
        with engine.connect() as conn:
            conn.exec_driver_sql("SELECT 1")
        return True
    except Exception as e:
        logger.warning("Database connection check failed", extra={"error": str(e)})
        return False


# User profiles: tier/access projection written by reconciliation
users = Table(
    'app_users',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('email', String(320), nullable=True, index=True),
    Column('subscription_tier', String(20), nullable=False, server_default='free'),  # free | premium
    Column('access_level', String(20), nullable=False, server_default='basic'),  # basic | premium
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
)

# Billing customers: informational linkage only, lookups go by email
billing_customers = Table(
    'billing_customers',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), nullable=False, unique=True, index=True),
    Column('stripe_customer_id', String(100), nullable=False, index=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
)

# Recurring subscription grants
subscription_grants = Table(
    'subscription_grants',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), nullable=False, index=True),
    Column('stripe_subscription_id', String(100), nullable=False, unique=True),
    Column('stripe_customer_id', String(100), nullable=True),
    Column('status', String(50), nullable=False, index=True),  # active, past_due, canceled
    Column('plan_type', String(50), nullable=False, server_default='premium'),
    Column('current_period_end', DateTime(timezone=True), nullable=True),
    Column('cancel_at_period_end', Boolean, nullable=False, server_default=false()),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    UniqueConstraint('user_id', 'stripe_subscription_id', name='uq_subscription_grants_user_sub'),
    Index('idx_subscription_grants_user_status', 'user_id', 'status'),
)

# One-time per-query unlocks; search_query is always normalized
unlock_grants = Table(
    'unlock_grants',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), nullable=False, index=True),
    Column('search_query', Text, nullable=False),
    Column('payment_amount', Numeric(10, 2), nullable=False),
    Column('unlock_date', DateTime(timezone=True), nullable=False),
    Column('stripe_session_id', String(255), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('user_id', 'search_query', name='uq_unlock_grants_user_query'),
)

# Local mirror of processor checkout sessions
payment_transactions = Table(
    'payment_transactions',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('transaction_id', String(255), nullable=False, unique=True),
    Column('user_id', String(100), nullable=False, index=True),
    Column('amount', Numeric(10, 2), nullable=False),
    Column('type', String(20), nullable=False),  # subscription | unlock
    Column('status', String(20), nullable=False, server_default='pending', index=True),  # pending | completed | failed
    Column('stripe_session_id', String(255), nullable=False, unique=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    Index('idx_payment_transactions_status_created', 'status', 'created_at'),
)

# Webhook idempotency
billing_events = Table(
    'billing_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('stripe_event_id', String(100), nullable=False, unique=True),
    Column('event_type', String(100), nullable=False, index=True),
    Column('received_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('payload_hash', String(64), nullable=False),  # SHA256 of raw body
    Column('processed', Boolean, nullable=False, server_default=false(), index=True),
    Column('processed_at', DateTime(timezone=True), nullable=True),
    Column('error', Text, nullable=True),
)
