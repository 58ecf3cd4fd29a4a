"""
Webhook subscription reconciliation.

Compares the platform's webhook registrations with the set this engine
needs, repairs drift (missing topics, stale URLs, duplicates) and records
the observed health on the integration.
"""

import asyncio
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import structlog
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import async_sessionmaker

from taxsync.core.clock import utcnow
from taxsync.core.errors import IntegrationNotFoundError
from taxsync.db.models import SubscriptionHealth, SyncStatus
from taxsync.db.unit_of_work import UnitOfWork
from taxsync.ingestion.config import ReconcilerConfig, get_sync_config
from taxsync.ingestion.retry import retry_remote_call
from taxsync.platform import BasePlatformClient, RemoteSubscription, create_platform_client

logger = structlog.get_logger()

REQUIRED_TOPICS = (
    "orders/create",
    "orders/updated",
    "orders/cancelled",
    "refunds/create",
    "app/uninstalled",
)

WEBHOOK_ERROR_PREFIX = "Webhook health check failed"


class OverallHealth(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    FAILED = "failed"


class TopicHealth(BaseModel):
    topic: str
    status: SubscriptionHealth
    remote_id: Optional[str] = None
    url: Optional[str] = None
    consecutive_failures: int = 0


class ReconcileActions(BaseModel):
    deleted: List[str] = Field(default_factory=list)
    created: List[str] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)


class IntegrationHealth(BaseModel):
    integration_id: str
    shop: str
    overall_status: OverallHealth
    webhooks: List[TopicHealth]
    last_check: datetime
    next_check: datetime
    actions: ReconcileActions = Field(default_factory=ReconcileActions)


def _same_url(a: str, b: str) -> bool:
    return a.strip().rstrip("/") == b.strip().rstrip("/")


def classify_subscriptions(
    subscriptions: Sequence[RemoteSubscription],
    canonical_url: str,
    topics: Sequence[str] = REQUIRED_TOPICS,
) -> Dict[str, TopicHealth]:
    """
    Classify each required topic.

    healthy: some subscription for the topic points at ``canonical_url``;
    unhealthy: the topic is subscribed, but only at other URLs;
    missing: no subscription for the topic at all.
    """
    result: Dict[str, TopicHealth] = {}
    for topic in topics:
        matching = [s for s in subscriptions if s.topic == topic]
        canonical = next((s for s in matching if _same_url(s.address, canonical_url)), None)
        if canonical is not None:
            result[topic] = TopicHealth(
                topic=topic,
                status=SubscriptionHealth.HEALTHY,
                remote_id=canonical.id,
                url=canonical.address,
            )
        elif matching:
            result[topic] = TopicHealth(
                topic=topic,
                status=SubscriptionHealth.UNHEALTHY,
                remote_id=matching[0].id,
                url=matching[0].address,
            )
        else:
            result[topic] = TopicHealth(topic=topic, status=SubscriptionHealth.MISSING)
    return result


def overall_health(
    topics: Sequence[TopicHealth], degraded_threshold: float = 0.6
) -> OverallHealth:
    """healthy at 100%, degraded at or above the threshold, failed below it."""
    total = len(topics)
    healthy = sum(1 for t in topics if t.status == SubscriptionHealth.HEALTHY)
    if healthy == total:
        return OverallHealth.HEALTHY
    if healthy >= total * degraded_threshold:
        return OverallHealth.DEGRADED
    return OverallHealth.FAILED


class SubscriptionReconciler:
    """Classify, heal and re-verify an integration's webhook subscriptions."""

    def __init__(
        self,
        config: Optional[ReconcilerConfig] = None,
        client_factory: Callable[..., BasePlatformClient] = create_platform_client,
        session_factory: Optional[async_sessionmaker] = None,
        required_topics: Sequence[str] = REQUIRED_TOPICS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.config = config or get_sync_config().reconciler
        self.client_factory = client_factory
        self.session_factory = session_factory
        self.required_topics = tuple(required_topics)
        self._sleep = sleep

    @property
    def canonical_url(self) -> str:
        return self.config.canonical_url

    async def _call(self, func, operation_name: str):
        return await retry_remote_call(func, operation_name=operation_name, sleep=self._sleep)

    async def ensure_health(self, integration_id: str) -> IntegrationHealth:
        """
        Check and repair one integration's subscriptions.

        Raises:
            IntegrationNotFoundError: Unknown integration id
            Exception: Remote failure while listing subscriptions; the
                integration is marked ERROR before re-raising
        """
        async with UnitOfWork(session_factory=self.session_factory) as uow:
            integration = await uow.integrations.get_by_id(integration_id)
            if integration is None:
                raise IntegrationNotFoundError(f"Integration {integration_id} not found")

            log = logger.bind(integration_id=integration_id, shop=integration.shop_domain)
            actions = ReconcileActions()
            client: Optional[BasePlatformClient] = None
            try:
                client = self.client_factory(integration)
                subscriptions = await self._call(client.list_webhooks, "list_webhooks")
                topics = classify_subscriptions(
                    subscriptions, self.canonical_url, self.required_topics
                )
                status = overall_health(list(topics.values()), self.config.degraded_threshold)

                if status != OverallHealth.HEALTHY:
                    log.info("reconcile.healing", status=status.value)
                    await self._heal(client, subscriptions, topics, actions)
                    subscriptions = await self._call(client.list_webhooks, "list_webhooks")
                    topics = classify_subscriptions(
                        subscriptions, self.canonical_url, self.required_topics
                    )
                    status = overall_health(
                        list(topics.values()), self.config.degraded_threshold
                    )
            except Exception as e:
                await uow.rollback()
                await uow.integrations.set_sync_status(
                    integration_id, SyncStatus.ERROR, f"{WEBHOOK_ERROR_PREFIX}: {e}"
                )
                await uow.commit()
                log.error("reconcile.failed", error=str(e), error_type=type(e).__name__)
                raise
            finally:
                if client is not None:
                    await client.aclose()

            now = utcnow()
            for topic in topics.values():
                row = await uow.subscriptions.record_observation(
                    integration_id,
                    topic.topic,
                    topic.status,
                    checked_at=now,
                    remote_id=topic.remote_id,
                    observed_url=topic.url,
                )
                topic.consecutive_failures = row.consecutive_failures

            health = IntegrationHealth(
                integration_id=integration_id,
                shop=integration.shop_domain,
                overall_status=status,
                webhooks=list(topics.values()),
                last_check=now,
                next_check=now + timedelta(hours=self.config.check_interval_hours),
                actions=actions,
            )

            unhealthy = sum(1 for t in health.webhooks if t.status != SubscriptionHealth.HEALTHY)
            if status == OverallHealth.FAILED:
                sync_fields = {
                    "sync_status": SyncStatus.ERROR.value,
                    "sync_error": f"{WEBHOOK_ERROR_PREFIX}: {unhealthy} unhealthy webhooks",
                }
            else:
                sync_fields = {"sync_status": SyncStatus.SUCCESS.value, "sync_error": None}

            await uow.integrations.save_webhook_health(
                integration_id, health.model_dump(mode="json"), **sync_fields
            )
            await uow.commit()

            log.info(
                "reconcile.completed",
                status=status.value,
                unhealthy=unhealthy,
                deleted=len(actions.deleted),
                created=len(actions.created),
                errors=len(actions.errors),
            )
            return health

    async def _heal(
        self,
        client: BasePlatformClient,
        subscriptions: Sequence[RemoteSubscription],
        topics: Dict[str, TopicHealth],
        actions: ReconcileActions,
    ) -> None:
        # Keep one canonical subscription per required topic; everything else goes.
        keep = {t.remote_id for t in topics.values() if t.status == SubscriptionHealth.HEALTHY}
        for subscription in subscriptions:
            if subscription.id in keep:
                continue
            try:
                await self._call(
                    lambda: client.delete_webhook(subscription.id), "delete_webhook"
                )
                actions.deleted.append(subscription.id)
            except Exception as e:
                logger.warning(
                    "reconcile.delete_failed",
                    webhook_id=subscription.id,
                    topic=subscription.topic,
                    error=str(e),
                )
                actions.errors.append(f"delete {subscription.topic} ({subscription.id}): {e}")

        for topic in topics.values():
            if topic.status == SubscriptionHealth.HEALTHY:
                continue
            try:
                created = await self._call(
                    lambda: client.create_webhook(topic.topic, self.canonical_url),
                    "create_webhook",
                )
                actions.created.append(created.topic)
            except Exception as e:
                logger.warning("reconcile.create_failed", topic=topic.topic, error=str(e))
                actions.errors.append(f"create {topic.topic}: {e}")

    async def run_global_health_check(self) -> Dict[str, Any]:
        """
        Reconcile every connected integration.

        One integration's failure is logged and reported, never propagated.
        """
        async with UnitOfWork(session_factory=self.session_factory) as uow:
            integration_ids = [i.id for i in await uow.integrations.list_connected()]

        results: Dict[str, Any] = {}
        for integration_id in integration_ids:
            try:
                health = await self.ensure_health(integration_id)
            except Exception as e:
                logger.error(
                    "reconcile.integration_failed",
                    integration_id=integration_id,
                    error=str(e),
                )
                results[integration_id] = {"status": "error", "error": str(e)}
            else:
                results[integration_id] = {"status": health.overall_status.value}

        logger.info(
            "reconcile.global_completed",
            integrations=len(integration_ids),
            failures=sum(1 for r in results.values() if r["status"] == "error"),
        )
        return results
