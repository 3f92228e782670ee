"""
Entitlement store.

Durable record of subscription grants, per-query unlock grants, user profiles,
billing-customer links and the local payment ledger.

Every write is an INSERT ... ON CONFLICT on the natural key (subscription id,
(user, normalized query), session id). A conflict on insert is a duplicate
grant and is reported as created=False, never raised.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional, Set
import logging
from sqlalchemy import select, update

from paygate.core.database import (
    get_db_session,
    upsert,
    users,
    billing_customers,
    subscription_grants,
    unlock_grants,
    payment_transactions,
)
from paygate.features.entitlements.evaluator import normalize_query
from paygate.models.billing import PaymentTransaction, TX_COMPLETED, TX_FAILED, TX_PENDING
from paygate.models.entitlement import SubscriptionGrant, UnlockGrant


logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ---------------------------------------------------------------------------
# Subscription grants
# ---------------------------------------------------------------------------

def upsert_subscription_grant(
    user_id: str,
    grant: SubscriptionGrant,
    stripe_customer_id: Optional[str] = None,
) -> bool:
    """
    Insert or refresh a subscription grant keyed by its processor subscription id.

    Returns:
        True if a new row was created, False if an existing row was updated
    """
    now = _utcnow()
    values = dict(
        status=grant.status,
        plan_type=grant.plan_type,
        current_period_end=grant.current_period_end,
        cancel_at_period_end=grant.cancel_at_period_end,
        updated_at=now,
    )
    with get_db_session() as session:
        result = session.execute(
            upsert(subscription_grants)
            .values(
                user_id=user_id,
                stripe_subscription_id=grant.subscription_id,
                stripe_customer_id=stripe_customer_id,
                created_at=now,
                **values,
            )
            .on_conflict_do_nothing(index_elements=["stripe_subscription_id"])
        )
        created = result.rowcount == 1
        if not created:
            session.execute(
                update(subscription_grants)
                .where(subscription_grants.c.stripe_subscription_id == grant.subscription_id)
                .values(**values)
            )

    logger.info(
        "[entitlements] subscription grant upserted",
        extra={
            "user_id": user_id,
            "subscription_id": grant.subscription_id,
            "status": grant.status,
            "grant_created": created,
        },
    )
    return created


def _row_to_grant(row) -> SubscriptionGrant:
    return SubscriptionGrant(
        subscription_id=row.stripe_subscription_id,
        status=row.status,
        current_period_end=_aware(row.current_period_end),
        cancel_at_period_end=bool(row.cancel_at_period_end),
        plan_type=row.plan_type,
    )


def list_subscription_grants(user_id: str) -> List[SubscriptionGrant]:
    """All grants for a user, most recently updated first."""
    with get_db_session() as session:
        rows = session.execute(
            select(subscription_grants)
            .where(subscription_grants.c.user_id == user_id)
            .order_by(subscription_grants.c.updated_at.desc(), subscription_grants.c.id.desc())
        ).fetchall()
    return [_row_to_grant(r) for r in rows]


def get_subscription_owner(stripe_subscription_id: str) -> Optional[str]:
    with get_db_session() as session:
        row = session.execute(
            select(subscription_grants.c.user_id).where(
                subscription_grants.c.stripe_subscription_id == stripe_subscription_id
            )
        ).fetchone()
    return row[0] if row else None


# ---------------------------------------------------------------------------
# Unlock grants
# ---------------------------------------------------------------------------

def record_unlock(
    user_id: str,
    search_query: str,
    payment_amount: Decimal,
    unlock_date: Optional[datetime] = None,
    stripe_session_id: Optional[str] = None,
) -> bool:
    """
    Record a lifetime unlock for (user, normalized query).

    Duplicates are ignored.

    Returns:
        True if a new grant was created, False if it already existed

    Raises:
        ValueError: If the query is empty after normalization
    """
    normalized = normalize_query(search_query)
    if not normalized:
        raise ValueError("search_query must not be empty")

    with get_db_session() as session:
        result = session.execute(
            upsert(unlock_grants)
            .values(
                user_id=user_id,
                search_query=normalized,
                payment_amount=payment_amount,
                unlock_date=unlock_date or _utcnow(),
                stripe_session_id=stripe_session_id,
            )
            .on_conflict_do_nothing(index_elements=["user_id", "search_query"])
        )
        created = result.rowcount == 1

    logger.info(
        "[entitlements] unlock grant recorded",
        extra={"user_id": user_id, "search_query": normalized, "grant_created": created},
    )
    return created


def list_unlock_grants(user_id: str) -> List[UnlockGrant]:
    with get_db_session() as session:
        rows = session.execute(
            select(unlock_grants)
            .where(unlock_grants.c.user_id == user_id)
            .order_by(unlock_grants.c.unlock_date.desc())
        ).fetchall()
    return [
        UnlockGrant(
            user_id=r.user_id,
            search_query=r.search_query,
            payment_amount=Decimal(str(r.payment_amount)),
            unlock_date=_aware(r.unlock_date),
        )
        for r in rows
    ]


def list_unlocked_queries(user_id: str) -> Set[str]:
    with get_db_session() as session:
        rows = session.execute(
            select(unlock_grants.c.search_query).where(unlock_grants.c.user_id == user_id)
        ).fetchall()
    return {r[0] for r in rows}


# ---------------------------------------------------------------------------
# Profiles and customer links
# ---------------------------------------------------------------------------

def upsert_profile(user_id: str, email: Optional[str], subscription_tier: str, access_level: str) -> None:
    now = _utcnow()
    stmt = upsert(users).values(
        user_id=user_id,
        email=email,
        subscription_tier=subscription_tier,
        access_level=access_level,
        created_at=now,
        updated_at=now,
    )
    set_ = dict(subscription_tier=subscription_tier, access_level=access_level, updated_at=now)
    if email:
        set_["email"] = email
    with get_db_session() as session:
        session.execute(stmt.on_conflict_do_update(index_elements=["user_id"], set_=set_))


def get_profile(user_id: str) -> Optional[dict]:
    with get_db_session() as session:
        row = session.execute(select(users).where(users.c.user_id == user_id)).fetchone()
    if not row:
        return None
    return {
        "user_id": row.user_id,
        "email": row.email,
        "subscription_tier": row.subscription_tier,
        "access_level": row.access_level,
    }


def link_customer(user_id: str, stripe_customer_id: str) -> None:
    """Remember which processor customer a user maps to (informational)."""
    now = _utcnow()
    with get_db_session() as session:
        session.execute(
            upsert(billing_customers)
            .values(user_id=user_id, stripe_customer_id=stripe_customer_id, created_at=now, updated_at=now)
            .on_conflict_do_update(
                index_elements=["user_id"],
                set_=dict(stripe_customer_id=stripe_customer_id, updated_at=now),
            )
        )


def find_user_by_customer(stripe_customer_id: str) -> Optional[str]:
    with get_db_session() as session:
        row = session.execute(
            select(billing_customers.c.user_id).where(
                billing_customers.c.stripe_customer_id == stripe_customer_id
            )
        ).fetchone()
    return row[0] if row else None


def get_linked_customer(user_id: str) -> Optional[str]:
    """Processor customer linked to this user, if any."""
    with get_db_session() as session:
        row = session.execute(
            select(billing_customers.c.stripe_customer_id).where(billing_customers.c.user_id == user_id)
        ).fetchone()
    return row[0] if row else None


# ---------------------------------------------------------------------------
# Payment ledger
# ---------------------------------------------------------------------------

def _row_to_tx(row) -> PaymentTransaction:
    return PaymentTransaction(
        transaction_id=row.transaction_id,
        user_id=row.user_id,
        amount=Decimal(str(row.amount)),
        type=row.type,
        status=row.status,
        stripe_session_id=row.stripe_session_id,
    )


def create_pending_transaction(tx: PaymentTransaction) -> bool:
    """Insert a pending ledger row; a repeat for the same session is a no-op."""
    now = _utcnow()
    with get_db_session() as session:
        result = session.execute(
            upsert(payment_transactions)
            .values(
                transaction_id=tx.transaction_id,
                user_id=tx.user_id,
                amount=tx.amount,
                type=tx.type,
                status=TX_PENDING,
                stripe_session_id=tx.stripe_session_id,
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing(index_elements=["stripe_session_id"])
        )
        return result.rowcount == 1


def complete_transaction(tx: PaymentTransaction) -> None:
    """
    Mark the ledger row for tx.stripe_session_id completed, inserting it if the
    checkout was created elsewhere. Applied even when the grant already existed.
    """
    now = _utcnow()
    with get_db_session() as session:
        session.execute(
            upsert(payment_transactions)
            .values(
                transaction_id=tx.transaction_id,
                user_id=tx.user_id,
                amount=tx.amount,
                type=tx.type,
                status=TX_COMPLETED,
                stripe_session_id=tx.stripe_session_id,
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_update(
                index_elements=["stripe_session_id"],
                set_=dict(status=TX_COMPLETED, amount=tx.amount, updated_at=now),
            )
        )


def fail_pending_transaction(stripe_session_id: str) -> bool:
    """pending -> failed. Completed rows are never downgraded."""
    with get_db_session() as session:
        result = session.execute(
            update(payment_transactions)
            .where(payment_transactions.c.stripe_session_id == stripe_session_id)
            .where(payment_transactions.c.status == TX_PENDING)
            .values(status=TX_FAILED, updated_at=_utcnow())
        )
        return result.rowcount == 1


def get_transaction(stripe_session_id: str) -> Optional[PaymentTransaction]:
    with get_db_session() as session:
        row = session.execute(
            select(payment_transactions).where(payment_transactions.c.stripe_session_id == stripe_session_id)
        ).fetchone()
    return _row_to_tx(row) if row else None


def list_pending_transactions(created_before: datetime, limit: int = 100) -> List[PaymentTransaction]:
    with get_db_session() as session:
        rows = session.execute(
            select(payment_transactions)
            .where(payment_transactions.c.status == TX_PENDING)
            .where(payment_transactions.c.created_at < created_before)
            .order_by(payment_transactions.c.created_at.asc())
            .limit(limit)
        ).fetchall()
    return [_row_to_tx(r) for r in rows]
