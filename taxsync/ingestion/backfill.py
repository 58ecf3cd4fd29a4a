"""
Historical order import.

Pages through the platform's orders API for an integration, inserting
orders that are not in the ledger yet. Progress is checkpointed after
every page so a failed or interrupted run resumes from its cursor, and
orders already imported are never rolled back.
"""

import asyncio
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

import structlog
from sqlalchemy.ext.asyncio import async_sessionmaker

from taxsync.core.clock import ensure_utc, utcnow
from taxsync.core.errors import (
    EventValidationError,
    IntegrationNotFoundError,
    PermanentRemoteError,
)
from taxsync.db.models import ImportJob, ImportJobStatus, Integration, SyncStatus
from taxsync.db.unit_of_work import UnitOfWork
from taxsync.ingestion.checkpoints import ImportJobStore, import_job_store
from taxsync.ingestion.config import BackfillConfig, get_sync_config
from taxsync.ingestion.events import order_event_from_backfill
from taxsync.ingestion.retry import CircuitBreaker, retry_remote_call
from taxsync.ingestion.tax import TaxCalculator
from taxsync.ingestion.upserter import BatchResult, TransactionUpserter
from taxsync.platform import BasePlatformClient, OrderPage, create_platform_client
from taxsync.platform.base import MAX_PAGE_SIZE

logger = structlog.get_logger()

ClientFactory = Callable[[Integration], BasePlatformClient]


@dataclass
class ImportResult:
    """Outcome of one backfill run; counters include resumed progress."""

    job_id: str
    status: str
    total_fetched: int = 0
    total_imported: int = 0
    total_skipped: int = 0
    total_failed: int = 0
    window_start: Optional[datetime] = None
    window_end: Optional[datetime] = None
    error: Optional[str] = None

    @classmethod
    def from_job(cls, job: ImportJob, status: str, error: Optional[str] = None) -> "ImportResult":
        return cls(
            job_id=job.id,
            status=status,
            total_fetched=job.total_fetched,
            total_imported=job.total_processed,
            total_skipped=job.total_skipped,
            total_failed=job.total_failed,
            window_start=ensure_utc(job.window_start),
            window_end=ensure_utc(job.window_end),
            error=error,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["window_start"] = self.window_start.isoformat() if self.window_start else None
        data["window_end"] = self.window_end.isoformat() if self.window_end else None
        return data


class BackfillImporter:
    """
    Resumable, rate-limit-aware historical importer.

    One importer is shared by all backfills of a process, with one circuit
    breaker per integration. Each run owns its database session and commits
    once per page.
    """

    def __init__(
        self,
        config: Optional[BackfillConfig] = None,
        client_factory: ClientFactory = create_platform_client,
        session_factory: Optional[async_sessionmaker] = None,
        job_store: Optional[ImportJobStore] = None,
        tax_calculator: Optional[TaxCalculator] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.config = config or get_sync_config().backfill
        self.client_factory = client_factory
        self.session_factory = session_factory
        self.job_store = job_store or import_job_store
        self.tax_calculator = tax_calculator
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._sleep = sleep

    def circuit_breaker_for(self, integration_id: str) -> CircuitBreaker:
        """Breaker guarding one integration's orders API calls."""
        breaker = self._breakers.get(integration_id)
        if breaker is None:
            breaker = CircuitBreaker(self.config.circuit_breaker)
            self._breakers[integration_id] = breaker
        return breaker

    def _default_window(self) -> Tuple[datetime, datetime]:
        end = utcnow()
        return end - timedelta(days=self.config.days_back), end

    async def import_historical_orders(
        self,
        integration_id: str,
        window: Optional[Tuple[datetime, datetime]] = None,
        batch_size: Optional[int] = None,
        max_orders: Optional[int] = None,
        resume: bool = True,
    ) -> ImportResult:
        """
        Import orders created inside ``window`` (default: the last N days).

        Args:
            integration_id: Integration to import for
            window: (start, end) of order creation time
            batch_size: Orders per page (capped at the platform maximum)
            max_orders: Stop after fetching this many orders in total
            resume: Continue the latest unfinished job instead of starting over

        Returns:
            ImportResult with status "completed" or "failed"

        Raises:
            IntegrationNotFoundError: Unknown integration id
        """
        start, end = window or self._default_window()
        batch_size = min(batch_size or self.config.batch_size, MAX_PAGE_SIZE)
        max_orders = max_orders or self.config.max_orders

        async with UnitOfWork(session_factory=self.session_factory) as uow:
            integration = await uow.integrations.get_by_id(integration_id)
            if integration is None:
                raise IntegrationNotFoundError(f"Integration {integration_id} not found")

            job = await self.job_store.start(
                uow,
                integration_id,
                window_start=ensure_utc(start),
                window_end=ensure_utc(end),
                batch_size=batch_size,
                max_orders=max_orders,
                resume=resume,
            )
            await uow.integrations.save_import_state(
                integration_id,
                self._summary(job, ImportJobStatus.IN_PROGRESS.value),
                sync_status=SyncStatus.SYNCING.value,
                sync_error=None,
            )
            await uow.commit()

            log = logger.bind(integration_id=integration_id, job_id=job.id)
            log.info(
                "backfill.started",
                window_start=job.window_start.isoformat(),
                window_end=job.window_end.isoformat(),
                resumed_from=job.cursor,
                batch_size=job.batch_size,
                max_orders=job.max_orders,
            )

            client: Optional[BasePlatformClient] = None
            try:
                client = self.client_factory(integration)
                await self._run_pages(uow, integration, job, client)
            except Exception as e:
                return await self._fail(uow, integration_id, job, e)
            finally:
                if client is not None:
                    await client.aclose()

            summary = await self.job_store.complete(uow, job)
            state = {**summary, "status": ImportJobStatus.COMPLETED.value}
            await uow.integrations.save_import_state(
                integration_id,
                state,
                sync_status=SyncStatus.SUCCESS.value,
                sync_error=None,
                last_sync_at=utcnow(),
            )
            await uow.commit()

            result = ImportResult.from_job(job, ImportJobStatus.COMPLETED.value)
            log.info(
                "backfill.completed",
                imported=result.total_imported,
                skipped=result.total_skipped,
                failed=result.total_failed,
                fetched=result.total_fetched,
            )
            return result

    async def _run_pages(
        self,
        uow: UnitOfWork,
        integration: Integration,
        job: ImportJob,
        client: BasePlatformClient,
    ) -> None:
        upserter = TransactionUpserter(uow, self.tax_calculator)
        breaker = self.circuit_breaker_for(integration.id)
        window_start = ensure_utc(job.window_start)
        window_end = ensure_utc(job.window_end)
        cursor = job.cursor

        while job.total_fetched < job.max_orders:
            limit = min(job.batch_size, job.max_orders - job.total_fetched, MAX_PAGE_SIZE)

            async def fetch_page() -> OrderPage:
                return await retry_remote_call(
                    lambda: client.fetch_orders(window_start, window_end, limit, cursor),
                    operation_name="fetch_orders",
                    config=self.config.retry,
                    sleep=self._sleep,
                )

            page = await breaker.call_async(fetch_page)

            batch = BatchResult()
            events = []
            for raw_order in page.orders:
                try:
                    events.append(order_event_from_backfill(raw_order, integration.shop_domain))
                except EventValidationError as e:
                    logger.warning(
                        "backfill.order_invalid",
                        integration_id=integration.id,
                        order_id=raw_order.get("id"),
                        error=str(e),
                    )
                    batch.add_failure(f"create:{raw_order.get('id')}", e)
            await upserter.insert_many_if_absent(integration, events, result=batch)
            processed, skipped, failed = batch.created, batch.skipped, batch.failed

            if page.orders:
                cursor = str(page.orders[-1]["id"])
            await self.job_store.checkpoint(
                uow,
                job,
                cursor=cursor,
                fetched=len(page.orders),
                processed=processed,
                skipped=skipped,
                failed=failed,
            )
            await uow.integrations.save_import_state(
                integration.id, self._summary(job, ImportJobStatus.IN_PROGRESS.value)
            )
            await uow.commit()

            logger.info(
                "backfill.batch_committed",
                integration_id=integration.id,
                job_id=job.id,
                fetched=len(page.orders),
                imported=processed,
                skipped=skipped,
                failed=failed,
                cursor=cursor,
                total_fetched=job.total_fetched,
            )

            if not page.orders or page.next_cursor is None:
                break
            if job.total_fetched >= job.max_orders:
                logger.info("backfill.max_orders_reached", max_orders=job.max_orders)
                break
            await self._sleep(self.config.batch_delay)

    async def _fail(
        self, uow: UnitOfWork, integration_id: str, job: ImportJob, error: Exception
    ) -> ImportResult:
        """Persist the failure; committed batches stay in the ledger."""
        await uow.rollback()
        await uow.session.refresh(job)

        message = f"Historical import failed: {error}"
        summary = await self.job_store.fail(uow, job, message)
        state = {**summary, "status": ImportJobStatus.FAILED.value}

        if isinstance(error, PermanentRemoteError):
            await uow.integrations.mark_reconnect_required(integration_id, message)
            await uow.integrations.save_import_state(integration_id, state)
        else:
            await uow.integrations.save_import_state(
                integration_id,
                state,
                sync_status=SyncStatus.ERROR.value,
                sync_error=message,
            )
        await uow.commit()

        logger.error(
            "backfill.failed",
            integration_id=integration_id,
            job_id=job.id,
            error=str(error),
            error_type=type(error).__name__,
            imported=job.total_processed,
            cursor=job.cursor,
        )
        return ImportResult.from_job(job, ImportJobStatus.FAILED.value, error=message)

    def _summary(self, job: ImportJob, status: str) -> Dict[str, Any]:
        return {**job.to_dict(), "status": status}

    async def get_import_status(self, integration_id: str) -> Optional[Dict[str, Any]]:
        """Current job progress, or the summary of the last finished run."""
        async with UnitOfWork(session_factory=self.session_factory) as uow:
            return await self.job_store.get_status(uow, integration_id)
