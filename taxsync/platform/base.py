"""
Base platform client interface.

Defines the contract that every commerce platform client implements, for
both the live API and the in-memory test double.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

# Largest page the orders endpoint accepts.
MAX_PAGE_SIZE = 250


class OrderPage(BaseModel):
    """One page of raw order objects plus the cursor for the next page."""

    orders: List[Dict[str, Any]] = Field(default_factory=list)
    next_cursor: Optional[str] = None


class RemoteSubscription(BaseModel):
    """A webhook registration as reported by the platform."""

    id: str
    topic: str
    address: str
    format: str = "json"


class BasePlatformClient(ABC):
    """
    Abstract base class for commerce platform clients.

    Implementations raise errors from ``taxsync.core.errors`` (or httpx
    transport errors) so callers can classify them for retry.
    """

    @abstractmethod
    async def fetch_orders(
        self,
        created_at_min: datetime,
        created_at_max: datetime,
        limit: int = 50,
        since_id: Optional[str] = None,
    ) -> OrderPage:
        """
        Fetch one page of orders in ascending id order.

        Args:
            created_at_min: Window start (inclusive)
            created_at_max: Window end (inclusive)
            limit: Page size, capped at MAX_PAGE_SIZE
            since_id: Only return orders with a larger id

        Returns:
            The page; ``next_cursor`` is None once the window is exhausted
        """

    @abstractmethod
    async def list_webhooks(self) -> List[RemoteSubscription]:
        """List every webhook registered for the shop."""

    @abstractmethod
    async def create_webhook(self, topic: str, address: str) -> RemoteSubscription:
        """Register a webhook for ``topic`` delivering to ``address``."""

    @abstractmethod
    async def delete_webhook(self, webhook_id: str) -> None:
        """Delete a webhook registration."""

    @abstractmethod
    async def validate_credentials(self) -> bool:
        """Return True if the stored access token is accepted."""

    @abstractmethod
    def get_source_name(self) -> str:
        """Source identifier (e.g. 'shopify', 'mock')."""

    async def aclose(self) -> None:
        """Release network resources."""
        return None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()
