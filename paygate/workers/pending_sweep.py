"""Periodic sweep of checkouts that never came back through verification."""
from datetime import datetime, timezone
import logging

from paygate.core.database import create_all_tables
from paygate.features.billing.reconcile_job import run_pending_sweep

logger = logging.getLogger("paygate.workers.pending_sweep")


def sweep_pending_transactions(*, limit: int = 100) -> dict:
    create_all_tables()
    stats = run_pending_sweep(datetime.now(timezone.utc), limit=limit)
    logger.info("[sweep] pending transactions", extra={"checked": stats["checked"], "errors": stats["errors"]})
    return stats


if __name__ == "__main__":
    result = sweep_pending_transactions()
    print(result)
