import asyncio
import logging
import os
import time

from fastapi import FastAPI
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from boothpay.api.routes.routes import (
    get_gateway,
    get_notifier,
    get_session_factory,
    router,
)
from boothpay.application.reconciliation_service import ReconciliationService
from boothpay.application.sweep_scheduler import run_sweep_scheduler
from boothpay.config import get_settings
from boothpay.infrastructure.db.session import engine
from boothpay.infrastructure.db.models import Base

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = FastAPI(title="Booth Payment Engine")

app.include_router(router)
logger = logging.getLogger(__name__)

_background_tasks: set[asyncio.Task] = set()


def _wait_for_db() -> None:
    # Handles the common case where API starts before Postgres is ready.
    max_retries = int(os.getenv("DB_CONNECT_MAX_RETRIES", "30"))
    retry_delay_seconds = float(os.getenv("DB_CONNECT_RETRY_DELAY", "1.5"))

    for attempt in range(1, max_retries + 1):
        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            logger.info("Database is reachable.")
            return
        except OperationalError:
            if attempt == max_retries:
                logger.exception(
                    "Database not reachable after %s attempts. Check DATABASE_URL and Postgres status.",
                    max_retries,
                )
                raise
            logger.warning(
                "Database not ready (attempt %s/%s). Retrying in %.1f seconds...",
                attempt,
                max_retries,
                retry_delay_seconds,
            )
            time.sleep(retry_delay_seconds)


@app.on_event("startup")
async def on_startup() -> None:
    await asyncio.to_thread(_wait_for_db)
    Base.metadata.create_all(bind=engine)

    settings = get_settings()
    if settings.sweep_interval_seconds > 0:
        service = ReconciliationService(
            get_session_factory(),
            get_gateway(),
            get_notifier(),
            settings,
        )
        task = asyncio.create_task(run_sweep_scheduler(service, settings))
        _background_tasks.add(task)
    else:
        logger.info("Periodic reconcile sweep disabled (RECONCILE_SWEEP_INTERVAL_SECONDS=0)")


@app.on_event("shutdown")
async def on_shutdown() -> None:
    for task in _background_tasks:
        task.cancel()
    for task in _background_tasks:
        try:
            await task
        except asyncio.CancelledError:
            logger.info("Reconcile sweep scheduler stopped.")
    _background_tasks.clear()
