"""Integration repository with sync-state transitions."""

from typing import Any, Dict, List, Optional

from sqlalchemy import select

from taxsync.core.clock import utcnow
from taxsync.db.models.integration import Integration, IntegrationStatus, SyncStatus
from taxsync.db.repository import BaseRepository


class IntegrationRepository(BaseRepository[Integration]):
    """Repository for Integration model."""

    async def get_by_shop_domain(self, shop_domain: str) -> Optional[Integration]:
        """Resolve an integration from the shop domain sent with webhooks."""
        return await self.get_by_field("shop_domain", shop_domain.strip().lower())

    async def list_connected(self) -> List[Integration]:
        result = await self.session.execute(
            select(self.model)
            .where(self.model.status == IntegrationStatus.CONNECTED.value)
            .order_by(self.model.created_at)
        )
        return list(result.scalars().all())

    async def touch_sync(self, integration_id: str) -> Optional[Integration]:
        """Record that a ledger event was just ingested for this integration."""
        return await self.update(
            integration_id,
            last_sync_at=utcnow(),
            sync_status=SyncStatus.SUCCESS.value,
            sync_error=None,
        )

    async def set_sync_status(
        self, integration_id: str, status: SyncStatus, error: Optional[str] = None
    ) -> Optional[Integration]:
        return await self.update(
            integration_id, sync_status=status.value, sync_error=error
        )

    async def mark_disconnected(
        self, integration_id: str, reason: str = "App uninstalled by user"
    ) -> Optional[Integration]:
        """Mark the integration as uninstalled on the platform side."""
        return await self.update(
            integration_id,
            status=IntegrationStatus.DISCONNECTED.value,
            sync_status=SyncStatus.IDLE.value,
            sync_error=reason,
        )

    async def mark_reconnect_required(
        self, integration_id: str, error: str
    ) -> Optional[Integration]:
        """Credentials were rejected; the merchant has to reconnect."""
        return await self.update(
            integration_id,
            status=IntegrationStatus.RECONNECT_REQUIRED.value,
            sync_status=SyncStatus.ERROR.value,
            sync_error=error,
        )

    async def save_webhook_health(
        self, integration_id: str, snapshot: Dict[str, Any], **fields: Any
    ) -> Optional[Integration]:
        """Store the latest webhook health snapshot, plus any sync fields."""
        return await self.update(integration_id, webhook_health=snapshot, **fields)

    async def save_import_state(
        self, integration_id: str, state: Dict[str, Any], **fields: Any
    ) -> Optional[Integration]:
        """Store the backfill summary, plus any sync fields passed as kwargs."""
        return await self.update(
            integration_id, historical_import_state=state, **fields
        )
