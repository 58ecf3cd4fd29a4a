"""
Backfill checkpoint store.

ImportJob rows are the source of truth for backfill progress. This store
wraps them with a small in-process read-through cache so status polling
does not hit the database for every request; a cache miss always falls
back to the persisted row.
"""

from datetime import datetime
from typing import Any, Dict, Optional

from taxsync.core.clock import utcnow
from taxsync.db.models import ImportJob, ImportJobStatus
from taxsync.db.unit_of_work import UnitOfWork


class ImportJobStore:
    """Create, checkpoint and finish ImportJob rows."""

    def __init__(self):
        self._cache: Dict[str, Dict[str, Any]] = {}

    def cached(self, integration_id: str) -> Optional[Dict[str, Any]]:
        return self._cache.get(integration_id)

    def _remember(self, job: ImportJob) -> None:
        self._cache[job.integration_id] = job.to_dict()

    def forget(self, integration_id: str) -> None:
        self._cache.pop(integration_id, None)

    async def start(
        self,
        uow: UnitOfWork,
        integration_id: str,
        window_start: datetime,
        window_end: datetime,
        batch_size: int,
        max_orders: int,
        resume: bool = True,
    ) -> ImportJob:
        """
        Resume the latest unfinished job, or create a new one.

        A resumed job keeps its window, cursor and counters; only its status
        and error are reset.
        """
        job = await uow.import_jobs.get_unfinished(integration_id) if resume else None
        if job is None:
            job = await uow.import_jobs.create(
                integration_id=integration_id,
                status=ImportJobStatus.IN_PROGRESS.value,
                window_start=window_start,
                window_end=window_end,
                batch_size=batch_size,
                max_orders=max_orders,
            )
        else:
            job.status = ImportJobStatus.IN_PROGRESS.value
            job.error = None
            job.updated_at = utcnow()
            await uow.flush()

        self._remember(job)
        return job

    async def checkpoint(
        self,
        uow: UnitOfWork,
        job: ImportJob,
        cursor: Optional[str],
        fetched: int,
        processed: int,
        skipped: int,
        failed: int,
    ) -> ImportJob:
        """Add one batch's counters and advance the cursor."""
        job.cursor = cursor
        job.total_fetched += fetched
        job.total_processed += processed
        job.total_skipped += skipped
        job.total_failed += failed
        job.updated_at = utcnow()
        await uow.flush()
        self._remember(job)
        return job

    async def complete(self, uow: UnitOfWork, job: ImportJob) -> Dict[str, Any]:
        """Mark the job completed, delete its row and return the final summary."""
        job.status = ImportJobStatus.COMPLETED.value
        job.completed_at = utcnow()
        summary = job.to_dict()
        await uow.import_jobs.delete(job.id)
        self.forget(job.integration_id)
        return summary

    async def fail(self, uow: UnitOfWork, job: ImportJob, error: str) -> Dict[str, Any]:
        """Mark the job failed; the row stays so the next run resumes from it."""
        job.status = ImportJobStatus.FAILED.value
        job.error = error
        job.updated_at = utcnow()
        await uow.flush()
        self._remember(job)
        return job.to_dict()

    async def get_status(
        self, uow: UnitOfWork, integration_id: str
    ) -> Optional[Dict[str, Any]]:
        """Cached job, then persisted job, then the integration's last summary."""
        cached = self.cached(integration_id)
        if cached is not None:
            return cached

        job = await uow.import_jobs.get_latest(integration_id)
        if job is not None:
            self._remember(job)
            return job.to_dict()

        integration = await uow.integrations.get_by_id(integration_id)
        if integration is not None and integration.historical_import_state:
            return integration.historical_import_state
        return None


import_job_store = ImportJobStore()
