"""Tests for webhook subscription classification, healing and health checks."""

from unittest.mock import AsyncMock

import pytest

from taxsync.core.errors import PermanentRemoteError
from taxsync.db.models import IntegrationStatus, SubscriptionHealth, SyncStatus
from taxsync.db.unit_of_work import UnitOfWork
from taxsync.ingestion.reconciler import (
    REQUIRED_TOPICS,
    OverallHealth,
    SubscriptionReconciler,
    TopicHealth,
    classify_subscriptions,
    overall_health,
)
from taxsync.ingestion.config import SchedulerConfig
from taxsync.ingestion.scheduler import HealthCheckScheduler
from taxsync.platform import MockPlatformClient
from taxsync.platform.base import RemoteSubscription
from tests.conftest import create_integration

OLD_URL = "https://old-host.example.com/webhooks/shopify"


def subscription(id: str, topic: str, address: str) -> RemoteSubscription:
    return RemoteSubscription(id=id, topic=topic, address=address)


def make_reconciler(session_factory, config, clients) -> SubscriptionReconciler:
    """``clients`` is one client for every integration, or a dict keyed by integration id."""

    def factory(integration):
        if isinstance(clients, dict):
            client = clients[integration.id]
            if isinstance(client, Exception):
                raise client
            return client
        return clients

    return SubscriptionReconciler(
        config=config,
        client_factory=factory,
        session_factory=session_factory,
        sleep=AsyncMock(),
    )


def drifted_client(canonical_url: str) -> MockPlatformClient:
    """2 healthy, 1 registered at a stale URL, 2 missing."""
    return MockPlatformClient(
        webhooks=[
            subscription("1", "orders/create", canonical_url),
            subscription("2", "orders/updated", canonical_url),
            subscription("3", "orders/cancelled", OLD_URL),
        ]
    )


def healthy_client(canonical_url: str) -> MockPlatformClient:
    return MockPlatformClient(
        webhooks=[
            subscription(str(i), topic, canonical_url)
            for i, topic in enumerate(REQUIRED_TOPICS, start=1)
        ]
    )


class TestClassification:
    def test_each_topic_classified(self, canonical_url):
        topics = classify_subscriptions(
            drifted_client(canonical_url).webhooks.values(), canonical_url
        )

        assert topics["orders/create"].status == SubscriptionHealth.HEALTHY
        assert topics["orders/updated"].status == SubscriptionHealth.HEALTHY
        assert topics["orders/cancelled"].status == SubscriptionHealth.UNHEALTHY
        assert topics["orders/cancelled"].url == OLD_URL
        assert topics["refunds/create"].status == SubscriptionHealth.MISSING
        assert topics["app/uninstalled"].status == SubscriptionHealth.MISSING

    def test_trailing_slash_still_matches(self, canonical_url):
        topics = classify_subscriptions(
            [subscription("1", "orders/create", canonical_url + "/")],
            canonical_url,
            topics=["orders/create"],
        )
        assert topics["orders/create"].status == SubscriptionHealth.HEALTHY

    @pytest.mark.parametrize(
        "healthy, expected",
        [
            (5, OverallHealth.HEALTHY),
            (4, OverallHealth.DEGRADED),
            (3, OverallHealth.DEGRADED),
            (2, OverallHealth.FAILED),
            (0, OverallHealth.FAILED),
        ],
    )
    def test_overall_thresholds(self, healthy, expected):
        topics = [
            TopicHealth(
                topic=topic,
                status=SubscriptionHealth.HEALTHY if i < healthy else SubscriptionHealth.MISSING,
            )
            for i, topic in enumerate(REQUIRED_TOPICS)
        ]
        assert overall_health(topics, 0.6) == expected


@pytest.mark.asyncio
class TestEnsureHealth:
    async def test_drifted_subscriptions_converge_in_one_cycle(
        self, session_factory, integration, reconciler_config, canonical_url
    ):
        client = drifted_client(canonical_url)
        reconciler = make_reconciler(session_factory, reconciler_config, client)

        health = await reconciler.ensure_health("int_1")

        assert health.overall_status == OverallHealth.HEALTHY
        assert all(t.status == SubscriptionHealth.HEALTHY for t in health.webhooks)
        assert health.actions.deleted == ["3"]
        assert sorted(health.actions.created) == sorted(
            ["orders/cancelled", "refunds/create", "app/uninstalled"]
        )
        assert health.actions.errors == []

        remote = list(client.webhooks.values())
        assert len(remote) == 5
        assert all(w.address == canonical_url for w in remote)
        assert (health.next_check - health.last_check).total_seconds() == 24 * 3600

        async with UnitOfWork(session_factory=session_factory) as uow:
            stored = await uow.integrations.get_by_id("int_1")
            rows = await uow.subscriptions.list_for_integration("int_1")

        assert stored.sync_status == SyncStatus.SUCCESS.value
        assert stored.sync_error is None
        assert stored.webhook_health["overall_status"] == "healthy"
        assert "next_check" in stored.webhook_health
        assert len(rows) == 5
        assert all(r.status == SubscriptionHealth.HEALTHY.value for r in rows)
        assert all(r.consecutive_failures == 0 for r in rows)

    async def test_healthy_integration_is_left_alone(
        self, session_factory, integration, reconciler_config, canonical_url
    ):
        client = healthy_client(canonical_url)
        health = await make_reconciler(session_factory, reconciler_config, client).ensure_health(
            "int_1"
        )

        assert health.overall_status == OverallHealth.HEALTHY
        assert [op for op, _ in client.calls] == ["list_webhooks"]

    async def test_duplicates_are_removed(
        self, session_factory, integration, reconciler_config, canonical_url
    ):
        client = healthy_client(canonical_url)
        client.webhooks["99"] = subscription("99", "orders/create", canonical_url)
        client.webhooks["98"] = subscription("98", "products/update", canonical_url)
        # app/uninstalled goes missing, which triggers a heal
        client.webhooks.pop("5")

        health = await make_reconciler(session_factory, reconciler_config, client).ensure_health(
            "int_1"
        )

        assert health.overall_status == OverallHealth.HEALTHY
        assert sorted(health.actions.deleted) == ["98", "99"]
        assert health.actions.created == ["app/uninstalled"]
        assert len(client.webhooks) == 5

    async def test_create_failures_do_not_block_others(
        self, session_factory, integration, reconciler_config, canonical_url
    ):
        client = drifted_client(canonical_url)
        client.failing_topics.add("app/uninstalled")
        reconciler = make_reconciler(session_factory, reconciler_config, client)

        health = await reconciler.ensure_health("int_1")

        assert health.overall_status == OverallHealth.DEGRADED
        assert len(health.actions.errors) == 1
        assert "app/uninstalled" in health.actions.errors[0]
        assert "refunds/create" in health.actions.created

        again = await reconciler.ensure_health("int_1")
        failing = next(t for t in again.webhooks if t.topic == "app/uninstalled")
        assert failing.status == SubscriptionHealth.MISSING
        assert failing.consecutive_failures == 2

        async with UnitOfWork(session_factory=session_factory) as uow:
            stored = await uow.integrations.get_by_id("int_1")
        assert stored.sync_status == SyncStatus.SUCCESS.value

    async def test_unrepairable_integration_is_marked_error(
        self, session_factory, integration, reconciler_config
    ):
        client = MockPlatformClient()
        client.failing_topics.update(REQUIRED_TOPICS)

        health = await make_reconciler(session_factory, reconciler_config, client).ensure_health(
            "int_1"
        )

        assert health.overall_status == OverallHealth.FAILED
        async with UnitOfWork(session_factory=session_factory) as uow:
            stored = await uow.integrations.get_by_id("int_1")
        assert stored.sync_status == SyncStatus.ERROR.value
        assert stored.sync_error == "Webhook health check failed: 5 unhealthy webhooks"

    async def test_remote_failure_marks_error_and_reraises(
        self, session_factory, integration, reconciler_config
    ):
        client = MockPlatformClient()
        client.fail_next(PermanentRemoteError("Invalid API key", status_code=401))

        with pytest.raises(PermanentRemoteError):
            await make_reconciler(session_factory, reconciler_config, client).ensure_health(
                "int_1"
            )

        async with UnitOfWork(session_factory=session_factory) as uow:
            stored = await uow.integrations.get_by_id("int_1")
        assert stored.sync_status == SyncStatus.ERROR.value
        assert "Invalid API key" in stored.sync_error
        assert client.closed is True


@pytest.mark.asyncio
class TestGlobalHealthCheck:
    async def test_one_failure_does_not_stop_the_rest(
        self, session_factory, reconciler_config, canonical_url
    ):
        await create_integration(session_factory, "int_1", "one.myshopify.com")
        await create_integration(session_factory, "int_2", "two.myshopify.com")
        await create_integration(
            session_factory,
            "int_3",
            "three.myshopify.com",
            status=IntegrationStatus.DISCONNECTED.value,
        )
        clients = {
            "int_1": PermanentRemoteError("Invalid API key", status_code=401),
            "int_2": drifted_client(canonical_url),
        }

        results = await make_reconciler(
            session_factory, reconciler_config, clients
        ).run_global_health_check()

        assert set(results) == {"int_1", "int_2"}
        assert results["int_1"]["status"] == "error"
        assert "Invalid API key" in results["int_1"]["error"]
        assert results["int_2"] == {"status": "healthy"}

    async def test_scheduler_run_once(self, session_factory, integration, reconciler_config, canonical_url):
        reconciler = make_reconciler(session_factory, reconciler_config, healthy_client(canonical_url))
        scheduler = HealthCheckScheduler(reconciler, SchedulerConfig(interval_minutes=60))

        results = await scheduler.run_once()

        assert results == {"int_1": {"status": "healthy"}}
        status = scheduler.get_status()
        assert status["running"] is False
        assert status["last_run_at"] is not None

    async def test_scheduler_start_stop(self, session_factory, integration, reconciler_config, canonical_url):
        reconciler = make_reconciler(session_factory, reconciler_config, healthy_client(canonical_url))
        scheduler = HealthCheckScheduler(reconciler, SchedulerConfig(interval_minutes=60))

        await scheduler.start()
        assert scheduler.running is True
        await scheduler.stop()
        assert scheduler.running is False
