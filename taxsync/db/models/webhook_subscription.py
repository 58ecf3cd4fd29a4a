"""Local mirror of remote webhook subscriptions."""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import DateTime, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from taxsync.db.base import Base


class SubscriptionHealth(str, Enum):
    """Observed state of one required webhook topic."""

    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    MISSING = "missing"


class WebhookSubscription(Base):
    """
    Per-topic snapshot of a remote webhook registration.

    Rows are written only by the subscription reconciler.
    """

    __tablename__ = "webhook_subscriptions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    integration_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    topic: Mapped[str] = mapped_column(String(100), nullable=False)
    remote_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    observed_url: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default=SubscriptionHealth.MISSING.value
    )
    consecutive_failures: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_checked_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        UniqueConstraint("integration_id", "topic", name="uq_subscription_topic"),
    )

    def __repr__(self) -> str:
        return (
            f"<WebhookSubscription(integration_id={self.integration_id}, "
            f"topic={self.topic}, status={self.status})>"
        )
