from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from taxsync import __version__
from taxsync.core.config import get_settings
from taxsync.core.logging import configure_logging, request_id_middleware
from taxsync.db.init import create_tables, sanitize_db_url
from taxsync.db.base import get_database_url
from taxsync.ingestion.router import get_reconciler
from taxsync.ingestion.router import router as ingestion_router
from taxsync.ingestion.scheduler import HealthCheckScheduler

logger = logging.getLogger(__name__)

settings = get_settings()
configure_logging(settings.ENV)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifespan events."""
    # Startup
    logger.info("Starting tax sync ingestion service...")
    logger.info(f"Environment: {settings.ENV}")
    logger.info(f"Database: {sanitize_db_url(get_database_url())}")

    await create_tables()

    scheduler = HealthCheckScheduler(reconciler=get_reconciler())
    app.state.scheduler = scheduler
    if scheduler.config.enabled:
        await scheduler.start()
        logger.info("Webhook health-check scheduler started")
    else:
        logger.info("Webhook health-check scheduler disabled (SCHEDULER_ENABLED=false)")

    if not settings.SHOPIFY_WEBHOOK_SECRET:
        logger.warning("SHOPIFY_WEBHOOK_SECRET not set, all webhooks will be rejected")

    yield

    # Shutdown
    logger.info("Shutting down tax sync ingestion service...")
    await scheduler.stop()
    logger.info("Shutdown complete")


app = FastAPI(title="Tax Sync Ingestion", version=__version__, lifespan=lifespan)
app.middleware("http")(request_id_middleware)
app.include_router(ingestion_router)


@app.get("/")
def health_check():
    logger.debug("Health check endpoint called")
    return {"status": "ok"}


@app.get("/healthz")
def healthz():
    logger.debug(f"Healthz endpoint called (env: {settings.ENV})")
    return {"status": "healthy", "env": settings.ENV}
