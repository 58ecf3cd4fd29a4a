"""Persisted checkpoint for a historical import run."""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from taxsync.db.base import Base


class ImportJobStatus(str, Enum):
    """Status of a backfill job."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


UNFINISHED_STATUSES = (
    ImportJobStatus.PENDING.value,
    ImportJobStatus.IN_PROGRESS.value,
    ImportJobStatus.FAILED.value,
)


class ImportJob(Base):
    """
    Checkpoint row for a paginated backfill.

    Updated after every batch so a crashed or failed run can resume from
    ``cursor`` with its counters intact.
    """

    __tablename__ = "import_jobs"

    id: Mapped[str] = mapped_column(
        String(64), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    integration_id: Mapped[str] = mapped_column(
        String(64), nullable=False, index=True
    )
    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default=ImportJobStatus.PENDING.value, index=True
    )

    window_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    window_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    cursor: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True, comment="Remote since_id of the last fetched order"
    )

    batch_size: Mapped[int] = mapped_column(Integer, nullable=False, default=50)
    max_orders: Mapped[int] = mapped_column(Integer, nullable=False, default=1000)

    total_fetched: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_skipped: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_failed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for status endpoints and the integration summary."""
        return {
            "job_id": self.id,
            "integration_id": self.integration_id,
            "status": self.status,
            "window": {
                "start": self.window_start.isoformat(),
                "end": self.window_end.isoformat(),
            },
            "cursor": self.cursor,
            "total_fetched": self.total_fetched,
            "total_processed": self.total_processed,
            "total_skipped": self.total_skipped,
            "total_failed": self.total_failed,
            "error": self.error,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }

    def __repr__(self) -> str:
        return (
            f"<ImportJob(id={self.id}, integration_id={self.integration_id}, "
            f"status={self.status}, processed={self.total_processed})>"
        )
