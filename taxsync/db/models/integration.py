"""Integration model: one connected store per row."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from sqlalchemy import JSON, DateTime, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from taxsync.db.base import Base


class IntegrationStatus(str, Enum):
    """Connection state of an integration."""

    CONNECTED = "CONNECTED"
    DISCONNECTED = "DISCONNECTED"
    RECONNECT_REQUIRED = "RECONNECT_REQUIRED"


class SyncStatus(str, Enum):
    """Latest synchronization outcome shown on the dashboard."""

    IDLE = "IDLE"
    SYNCING = "SYNCING"
    SUCCESS = "SUCCESS"
    ERROR = "ERROR"


class Integration(Base):
    """
    A merchant's connection to the commerce platform.

    Besides credentials this row carries the state the rest of the
    application reads: sync status and error, last sync time, the latest
    webhook health snapshot and the summary of the last historical import.
    """

    __tablename__ = "integrations"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    organization_id: Mapped[str] = mapped_column(
        String(64), nullable=False, index=True
    )
    platform: Mapped[str] = mapped_column(
        String(32), nullable=False, default="shopify"
    )
    shop_domain: Mapped[str] = mapped_column(
        String(255),
        unique=True,
        nullable=False,
        index=True,
        comment="Shop domain as sent in webhook headers (e.g. acme.myshopify.com)",
    )
    credentials: Mapped[dict[str, Any]] = mapped_column(
        JSON, nullable=False, default=dict, comment="shop and access_token"
    )

    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default=IntegrationStatus.CONNECTED.value
    )
    sync_status: Mapped[str] = mapped_column(
        String(32), nullable=False, default=SyncStatus.IDLE.value
    )
    sync_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_sync_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    webhook_health: Mapped[Optional[dict[str, Any]]] = mapped_column(
        JSON, nullable=True
    )
    historical_import_state: Mapped[Optional[dict[str, Any]]] = mapped_column(
        JSON, nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
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

    @property
    def access_token(self) -> Optional[str]:
        return (self.credentials or {}).get("access_token")

    @property
    def shop(self) -> Optional[str]:
        return (self.credentials or {}).get("shop") or self.shop_domain

    def __repr__(self) -> str:
        return (
            f"<Integration(id={self.id}, shop={self.shop_domain}, "
            f"status={self.status}, sync_status={self.sync_status})>"
        )
