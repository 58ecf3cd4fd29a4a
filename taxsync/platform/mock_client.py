"""
In-memory platform client for testing and development.

Holds orders and webhook registrations in memory and mimics the live
client's paging, so the backfill and reconciliation flows can run without
network access. Failures can be scheduled per call.
"""

import asyncio
import itertools
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Set

from taxsync.core.clock import ensure_utc
from taxsync.core.errors import PermanentRemoteError
from taxsync.platform.base import (
    MAX_PAGE_SIZE,
    BasePlatformClient,
    OrderPage,
    RemoteSubscription,
)


class MockPlatformClient(BasePlatformClient):
    """
    Mock platform client backed by plain lists.

    Attributes:
        orders: Raw order objects, kept sorted by numeric id
        webhooks: Registered subscriptions keyed by id
        calls: (operation, args) tuples for every call, in order
    """

    def __init__(
        self,
        orders: Optional[Iterable[Dict[str, Any]]] = None,
        webhooks: Optional[Iterable[RemoteSubscription]] = None,
        latency_ms: int = 0,
    ):
        self.orders: List[Dict[str, Any]] = sorted(
            orders or [], key=lambda order: int(order["id"])
        )
        self.webhooks: Dict[str, RemoteSubscription] = {w.id: w for w in webhooks or []}
        self.latency_ms = latency_ms
        self.calls: List[tuple] = []
        self.failing_topics: Set[str] = set()
        self.valid_credentials = True
        self._fetch_failures: Dict[int, BaseException] = {}
        self._pending_failures: List[BaseException] = []
        self._fetch_count = 0
        self._ids = itertools.count(900000)
        self.closed = False

    def get_source_name(self) -> str:
        return "mock"

    def fail_next(self, *errors: BaseException) -> None:
        """Raise each error once, on the next calls of any operation."""
        self._pending_failures.extend(errors)

    def fail_fetch(self, call_number: int, error: BaseException) -> None:
        """Raise ``error`` on the given (1-based) fetch_orders call."""
        self._fetch_failures[call_number] = error

    async def _enter(self, operation: str, *args: Any) -> None:
        self.calls.append((operation, args))
        if self.latency_ms:
            await asyncio.sleep(self.latency_ms / 1000)
        if self._pending_failures:
            raise self._pending_failures.pop(0)

    async def fetch_orders(
        self,
        created_at_min: datetime,
        created_at_max: datetime,
        limit: int = 50,
        since_id: Optional[str] = None,
    ) -> OrderPage:
        await self._enter("fetch_orders", since_id, limit)
        self._fetch_count += 1
        if self._fetch_count in self._fetch_failures:
            raise self._fetch_failures.pop(self._fetch_count)

        limit = max(1, min(limit, MAX_PAGE_SIZE))
        start, end = ensure_utc(created_at_min), ensure_utc(created_at_max)
        after = int(since_id) if since_id else None

        matching = [
            order
            for order in self.orders
            if start <= ensure_utc(datetime.fromisoformat(order["created_at"])) <= end
            and (after is None or int(order["id"]) > after)
        ]
        page = matching[:limit]
        next_cursor = str(page[-1]["id"]) if len(page) >= limit else None
        return OrderPage(orders=page, next_cursor=next_cursor)

    async def list_webhooks(self) -> List[RemoteSubscription]:
        await self._enter("list_webhooks")
        return list(self.webhooks.values())

    async def create_webhook(self, topic: str, address: str) -> RemoteSubscription:
        await self._enter("create_webhook", topic, address)
        if topic in self.failing_topics:
            raise PermanentRemoteError(f"Cannot subscribe to {topic}", status_code=422)
        subscription = RemoteSubscription(id=str(next(self._ids)), topic=topic, address=address)
        self.webhooks[subscription.id] = subscription
        return subscription

    async def delete_webhook(self, webhook_id: str) -> None:
        await self._enter("delete_webhook", webhook_id)
        self.webhooks.pop(webhook_id, None)

    async def validate_credentials(self) -> bool:
        await self._enter("validate_credentials")
        return self.valid_credentials

    async def aclose(self) -> None:
        self.closed = True
