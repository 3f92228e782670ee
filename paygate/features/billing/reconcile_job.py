"""
Pending-transaction sweep.

Checkouts abandoned or paid without the user returning leave `pending` ledger
rows. For rows older than PENDING_TRANSACTION_SWEEP_MINUTES the session is
re-read from the processor:
- paid: recorded through the verified path (-> completed)
- expired: marked failed
- still open: left alone
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Dict, Any, Optional

from paygate.core.config import settings
from paygate.core.errors import AppError
from paygate.core.logging import log_event
from paygate.features.billing import service as billing
from paygate.features.billing.checkout import record_verified_session
from paygate.features.billing.provider import BillingProvider, BillingProviderError
from paygate.features.entitlements import store


def run_pending_sweep(now: datetime, limit: int = 100, provider: Optional[BillingProvider] = None) -> Dict[str, Any]:
    provider = provider or billing.require_provider()
    cutoff = now - timedelta(minutes=settings.PENDING_TRANSACTION_SWEEP_MINUTES)

    stats = {"checked": 0, "completed": 0, "failed": 0, "still_open": 0, "errors": 0}
    for tx in store.list_pending_transactions(cutoff, limit=limit):
        stats["checked"] += 1
        try:
            session = provider.retrieve_checkout_session(tx.stripe_session_id)
            if session.payment_status == "paid":
                record_verified_session(tx.user_id, session, provider)
                stats["completed"] += 1
            elif session.status == "expired":
                if store.fail_pending_transaction(tx.stripe_session_id):
                    stats["failed"] += 1
            else:
                stats["still_open"] += 1
        except (BillingProviderError, AppError) as e:
            stats["errors"] += 1
            log_event(
                "warning",
                "sweep.transaction_failed",
                user_id=tx.user_id,
                error_code=getattr(e, "code", "billing_provider_error"),
                extra={"session_id": tx.stripe_session_id, "error": e},
            )

    log_event("info", "sweep.finished", extra=stats)
    return {**stats, "timestamp": now.isoformat()}
