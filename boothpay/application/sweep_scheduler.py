# boothpay/application/sweep_scheduler.py

import asyncio
import logging

from boothpay.application.reconciliation_service import ReconciliationService
from boothpay.config import Settings

logger = logging.getLogger(__name__)


def run_sweep_once(service: ReconciliationService, settings: Settings) -> int:
    results = service.reconcile_sweep(
        max_age_minutes=settings.sweep_max_age_minutes,
        limit=settings.sweep_limit,
    )
    failed = [r.order_id for r in results if not r.ok]
    if failed:
        logger.warning("Sweep left %s order(s) unresolved: %s", len(failed), ", ".join(failed))
    return len(results)


async def run_sweep_scheduler(service: ReconciliationService, settings: Settings):
    """
    Background loop reconciling stale PENDING bookings. The sweep itself
    is blocking (database and gateway I/O) so it runs in a worker thread.
    """
    interval = settings.sweep_interval_seconds
    logger.info("Reconcile sweep scheduler started (every %ss)", interval)
    while True:
        try:
            await asyncio.to_thread(run_sweep_once, service, settings)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Reconcile sweep failed")
        await asyncio.sleep(interval)
