"""Commerce platform clients."""

from typing import Optional

from taxsync.core.config import get_settings
from taxsync.core.errors import PermanentRemoteError
from taxsync.db.models import Integration
from taxsync.platform.base import BasePlatformClient, OrderPage, RemoteSubscription
from taxsync.platform.mock_client import MockPlatformClient
from taxsync.platform.shopify_client import ShopifyClient


def create_platform_client(
    integration: Integration,
    api_version: Optional[str] = None,
    timeout: Optional[float] = None,
) -> BasePlatformClient:
    """
    Build the client for an integration from its stored credentials.

    Raises:
        PermanentRemoteError: Unsupported platform or missing credentials
    """
    if integration.platform != "shopify":
        raise PermanentRemoteError(f"Unsupported platform: {integration.platform}")

    if not integration.access_token:
        raise PermanentRemoteError(
            f"Invalid credentials for integration {integration.id}: missing access token"
        )

    settings = get_settings()
    return ShopifyClient(
        shop=integration.shop,
        access_token=integration.access_token,
        api_version=api_version or settings.SHOPIFY_API_VERSION,
        timeout=timeout or settings.SHOPIFY_API_TIMEOUT,
    )


__all__ = [
    "BasePlatformClient",
    "MockPlatformClient",
    "OrderPage",
    "RemoteSubscription",
    "ShopifyClient",
    "create_platform_client",
]
