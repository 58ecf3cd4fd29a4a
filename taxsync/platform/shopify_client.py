"""
Shopify Admin REST API client.

Thin httpx wrapper: every response goes through ``raise_for_remote_status``
so rate limits, server errors and rejected credentials surface as typed
errors. Retrying is left to the caller.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx
import structlog

from taxsync.core.errors import PermanentRemoteError
from taxsync.platform.base import (
    MAX_PAGE_SIZE,
    BasePlatformClient,
    OrderPage,
    RemoteSubscription,
)
from taxsync.platform.rate_limit import raise_for_remote_status

logger = structlog.get_logger()

ACCESS_TOKEN_HEADER = "X-Shopify-Access-Token"


class ShopifyClient(BasePlatformClient):
    """Client for one shop, authenticated with its offline access token."""

    def __init__(
        self,
        shop: str,
        access_token: str,
        api_version: str = "2024-01",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the client.

        Args:
            shop: Shop domain (acme.myshopify.com)
            access_token: Admin API access token
            api_version: Admin API version segment
            timeout: Request timeout in seconds
            transport: Optional httpx transport (tests use MockTransport)
        """
        if not shop or not access_token:
            raise PermanentRemoteError(
                "Invalid Shopify credentials: shop and access token are required"
            )

        self.shop = shop
        self.api_version = api_version
        self.base_url = f"https://{shop}/admin/api/{api_version}"
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={
                ACCESS_TOKEN_HEADER: access_token,
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    def get_source_name(self) -> str:
        return "shopify"

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        response = await self._client.request(method, path, **kwargs)
        logger.debug(
            "shopify.request",
            shop=self.shop,
            method=method,
            path=path,
            status=response.status_code,
            call_limit=response.headers.get("X-Shopify-Shop-Api-Call-Limit"),
        )
        raise_for_remote_status(response)
        return response

    async def fetch_orders(
        self,
        created_at_min: datetime,
        created_at_max: datetime,
        limit: int = 50,
        since_id: Optional[str] = None,
    ) -> OrderPage:
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        params: Dict[str, Any] = {
            "status": "any",
            "limit": limit,
            "created_at_min": created_at_min.isoformat(),
            "created_at_max": created_at_max.isoformat(),
        }
        if since_id:
            params["since_id"] = since_id

        response = await self._request("GET", "/orders.json", params=params)
        orders: List[Dict[str, Any]] = response.json().get("orders", [])

        next_cursor = str(orders[-1]["id"]) if len(orders) >= limit else None
        return OrderPage(orders=orders, next_cursor=next_cursor)

    async def list_webhooks(self) -> List[RemoteSubscription]:
        response = await self._request("GET", "/webhooks.json")
        return [
            RemoteSubscription(
                id=str(item["id"]),
                topic=item.get("topic", ""),
                address=item.get("address", ""),
                format=item.get("format", "json"),
            )
            for item in response.json().get("webhooks", [])
        ]

    async def create_webhook(self, topic: str, address: str) -> RemoteSubscription:
        response = await self._request(
            "POST",
            "/webhooks.json",
            json={"webhook": {"topic": topic, "address": address, "format": "json"}},
        )
        item = response.json()["webhook"]
        return RemoteSubscription(
            id=str(item["id"]),
            topic=item.get("topic", topic),
            address=item.get("address", address),
            format=item.get("format", "json"),
        )

    async def delete_webhook(self, webhook_id: str) -> None:
        await self._request("DELETE", f"/webhooks/{webhook_id}.json")

    async def validate_credentials(self) -> bool:
        try:
            await self._request("GET", "/shop.json")
        except PermanentRemoteError as e:
            if e.status_code in (401, 403):
                return False
            raise
        return True

    async def aclose(self) -> None:
        await self._client.aclose()
