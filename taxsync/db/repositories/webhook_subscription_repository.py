"""WebhookSubscription repository."""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import select

from taxsync.db.models.webhook_subscription import (
    SubscriptionHealth,
    WebhookSubscription,
)
from taxsync.db.repository import BaseRepository


class WebhookSubscriptionRepository(BaseRepository[WebhookSubscription]):
    """Repository for the local mirror of remote webhook registrations."""

    async def list_for_integration(self, integration_id: str) -> List[WebhookSubscription]:
        result = await self.session.execute(
            select(self.model)
            .where(self.model.integration_id == integration_id)
            .order_by(self.model.topic)
        )
        return list(result.scalars().all())

    async def record_observation(
        self,
        integration_id: str,
        topic: str,
        status: SubscriptionHealth,
        checked_at: datetime,
        remote_id: Optional[str] = None,
        observed_url: Optional[str] = None,
    ) -> WebhookSubscription:
        """
        Store the latest observed state of one topic.

        ``consecutive_failures`` grows while the topic stays non-healthy and
        resets to zero once it is healthy again.
        """
        row = (
            await self.session.execute(
                select(self.model)
                .where(self.model.integration_id == integration_id)
                .where(self.model.topic == topic)
            )
        ).scalar_one_or_none()

        failures = 0
        if status != SubscriptionHealth.HEALTHY:
            failures = (row.consecutive_failures if row else 0) + 1

        if row is None:
            return await self.create(
                integration_id=integration_id,
                topic=topic,
                status=status.value,
                remote_id=remote_id,
                observed_url=observed_url,
                consecutive_failures=failures,
                last_checked_at=checked_at,
            )

        row.status = status.value
        row.remote_id = remote_id
        row.observed_url = observed_url
        row.consecutive_failures = failures
        row.last_checked_at = checked_at
        await self.session.flush()
        return row
