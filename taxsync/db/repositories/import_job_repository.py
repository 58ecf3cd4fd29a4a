"""ImportJob repository."""

from typing import Optional

from sqlalchemy import select

from taxsync.db.models.import_job import UNFINISHED_STATUSES, ImportJob
from taxsync.db.repository import BaseRepository


class ImportJobRepository(BaseRepository[ImportJob]):
    """Repository for backfill checkpoints."""

    async def get_unfinished(self, integration_id: str) -> Optional[ImportJob]:
        """
        Get the most recent job that can be resumed.

        Pending, in-progress (crashed) and failed jobs are all resumable.
        """
        result = await self.session.execute(
            select(self.model)
            .where(self.model.integration_id == integration_id)
            .where(self.model.status.in_(UNFINISHED_STATUSES))
            .order_by(self.model.started_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def get_latest(self, integration_id: str) -> Optional[ImportJob]:
        result = await self.session.execute(
            select(self.model)
            .where(self.model.integration_id == integration_id)
            .order_by(self.model.started_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()
