from __future__ import annotations

from functools import lru_cache
from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    This uses pydantic-settings so that we get type validation and defaults.
    Settings are loaded from environment variables with optional .env file override.
    """

    # App basics
    ENV: Literal["development", "staging", "production"] = "development"
    """Environment mode: affects logging and error handling."""

    DEBUG: bool = True
    """Enable debug mode: verbose logging and development features."""

    APP_BASE_URL: str = "http://localhost:8000"
    """Public base URL; webhook subscriptions are registered against it."""

    # DB
    DATABASE_URL: Optional[str] = None
    """Database connection URL. If None, uses SQLite for development."""

    TEST_DATABASE_URL: Optional[str] = None
    """Test database URL. Separate from main DB for testing."""

    # Commerce platform
    SHOPIFY_API_VERSION: str = "2024-01"
    """Admin REST API version used for outbound calls."""

    SHOPIFY_WEBHOOK_SECRET: Optional[str] = None
    """Shared secret used to sign inbound webhooks."""

    SHOPIFY_WEBHOOK_SECRET_FALLBACK: Optional[str] = None
    """Previous webhook secret, accepted while a key rotation is in progress."""

    SHOPIFY_API_TIMEOUT: float = 30.0
    """Outbound request timeout in seconds."""

    # Historical import
    BACKFILL_DAYS_BACK: int = 90
    """Default size of the backfill window in days."""

    BACKFILL_BATCH_SIZE: int = 50
    """Orders requested per page during a backfill."""

    BACKFILL_MAX_ORDERS: int = 1000
    """Upper bound on orders fetched by a single backfill run."""

    BACKFILL_BATCH_DELAY: float = 0.5
    """Fixed pause between backfill pages, in seconds."""

    # Webhook health
    HEALTH_CHECK_INTERVAL_MINUTES: int = 24 * 60
    """Minutes between scheduled webhook health checks."""

    SCHEDULER_ENABLED: bool = False
    """Start the webhook health-check scheduler with the app."""

    # Model config
    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached Settings instance to avoid re-parsing .env repeatedly."""
    return Settings()
