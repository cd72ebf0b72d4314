"""
Scheduled-cancellation finalization job.

Moves subscriptions whose cancellation took effect (cancelling, ends_at in
the past) to cancelled. Entitlement reads already treat them as cancelled;
this keeps the stored status in step for reporting.

Should run hourly via cron or task scheduler:
    python -m saas_gate.jobs.finalize_cancellations
"""

import logging
import os
import sys
from datetime import datetime, timezone
from typing import Optional

from saas_gate.billing.errors import LedgerError
from saas_gate.billing.ledger import SubscriptionLedger
from saas_gate.database.session import create_db_engine, create_session_factory

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


class FinalizeCancellationsJob:
    """Finalizes cancellations whose period has ended."""

    def __init__(self, ledger: SubscriptionLedger):
        self.ledger = ledger

    def run(self, now: Optional[datetime] = None) -> dict:
        """
        Execute the job.

        Returns:
            Summary of finalized subscriptions
        """
        now = now or datetime.now(timezone.utc)
        logger.info("Starting cancellation finalization job", extra={"now": now.isoformat()})

        results = {
            "started_at": datetime.now(timezone.utc).isoformat(),
            "finalized": 0,
            "provider_subscription_ids": [],
        }
        finalized = self.ledger.finalize_scheduled_cancellations(now)
        results["finalized"] = len(finalized)
        results["provider_subscription_ids"] = finalized
        results["completed_at"] = datetime.now(timezone.utc).isoformat()

        logger.info("Cancellation finalization completed", extra={"finalized": results["finalized"]})
        return results


def main():
    """Main entry point for the finalization job."""
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        print("DATABASE_URL environment variable is required")
        sys.exit(1)

    engine = create_db_engine(database_url)
    ledger = SubscriptionLedger(create_session_factory(engine))

    try:
        results = FinalizeCancellationsJob(ledger).run()
    except LedgerError as e:
        logger.error(
            "Cancellation finalization job failed",
            extra={"error": str(e)},
            exc_info=True
        )
        sys.exit(1)
    finally:
        engine.dispose()

    print(f"Finalization completed: {results}")


if __name__ == "__main__":
    main()
