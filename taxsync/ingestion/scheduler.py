"""
Periodic webhook health checks.

Runs the subscription reconciler for every connected integration on a
fixed interval. A failing run is logged and the loop keeps going.
"""

import asyncio
from typing import Any, Dict, Optional

import structlog

from taxsync.core.clock import utcnow
from taxsync.ingestion.config import SchedulerConfig, get_sync_config
from taxsync.ingestion.reconciler import SubscriptionReconciler

logger = structlog.get_logger()

ERROR_BACKOFF_SECONDS = 60


class HealthCheckScheduler:
    """Background loop around ``SubscriptionReconciler.run_global_health_check``."""

    def __init__(
        self,
        reconciler: Optional[SubscriptionReconciler] = None,
        config: Optional[SchedulerConfig] = None,
    ):
        self.reconciler = reconciler or SubscriptionReconciler()
        self.config = config or get_sync_config().scheduler
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self.last_run_at = None
        self.last_results: Dict[str, Any] = {}

    @property
    def running(self) -> bool:
        return self._running

    async def start(self):
        if self._running:
            logger.warning("scheduler.already_running")
            return

        self._running = True
        logger.info(
            "scheduler.started", interval_minutes=self.config.interval_minutes
        )
        self._task = asyncio.create_task(self._loop())

    async def stop(self):
        """Stop the loop and wait for the running check to be cancelled."""
        if not self._running:
            logger.debug("scheduler.not_running")
            return

        self._running = False
        logger.info("scheduler.stopping")

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        logger.info("scheduler.stopped")

    async def run_once(self) -> Dict[str, Any]:
        self.last_results = await self.reconciler.run_global_health_check()
        self.last_run_at = utcnow()
        return self.last_results

    async def _loop(self):
        while self._running:
            try:
                await asyncio.sleep(self.config.get_interval_seconds())
                await self.run_once()
            except asyncio.CancelledError:
                logger.info("scheduler.loop_cancelled")
                break
            except Exception as e:
                logger.error(
                    "scheduler.loop_error",
                    error=str(e),
                    error_type=type(e).__name__,
                )
                await asyncio.sleep(ERROR_BACKOFF_SECONDS)

    def get_status(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "enabled": self.config.enabled,
            "interval_minutes": self.config.interval_minutes,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "last_results": self.last_results,
        }
