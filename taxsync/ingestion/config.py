"""
Ingestion engine configuration.

Defines retry policies, circuit breaker limits, backfill paging and the
webhook health-check cadence. Defaults come from application settings.
"""

from typing import Optional

from pydantic import BaseModel, Field

from taxsync.core.config import get_settings


class RetryConfig(BaseModel):
    """Configuration for retry behavior with exponential backoff."""

    max_retries: int = Field(
        default=3, ge=0, description="Retries after the first attempt"
    )
    initial_delay: float = Field(
        default=1.0, ge=0, description="Initial delay in seconds"
    )
    max_delay: float = Field(default=30.0, ge=0, description="Maximum delay in seconds")
    backoff_multiplier: float = Field(default=2.0, ge=1, description="Backoff multiplier")
    jitter: bool = Field(
        default=True, description="Add up to 25% random jitter to each delay"
    )


# Platform calls hit rate limits often, so they get a longer schedule.
REMOTE_RETRY_CONFIG = RetryConfig(max_retries=5, initial_delay=2.0, max_delay=60.0)


class CircuitBreakerConfig(BaseModel):
    """Configuration for circuit breaker pattern."""

    failure_threshold: int = Field(
        default=5, ge=1, description="Consecutive failures before opening circuit"
    )
    timeout: float = Field(
        default=60.0, gt=0, description="Seconds before a half-open trial is allowed"
    )


class BackfillConfig(BaseModel):
    """Historical import paging and pacing."""

    days_back: int = Field(default=90, ge=1, description="Default window size in days")
    batch_size: int = Field(
        default=50, ge=1, le=250, description="Orders requested per page"
    )
    max_orders: int = Field(default=1000, ge=1, description="Orders fetched per run")
    batch_delay: float = Field(
        default=0.5, ge=0, description="Seconds to pause between pages"
    )
    retry: RetryConfig = Field(default_factory=lambda: REMOTE_RETRY_CONFIG.model_copy())
    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)


class ReconcilerConfig(BaseModel):
    """Webhook subscription reconciliation."""

    base_url: str = Field(
        default="http://localhost:8000", description="Public app URL"
    )
    webhook_path: str = Field(
        default="/webhooks/shopify", description="Path the platform delivers to"
    )
    check_interval_hours: int = Field(
        default=24, ge=1, description="Hours until the next scheduled check"
    )
    degraded_threshold: float = Field(
        default=0.6,
        ge=0.0,
        le=1.0,
        description="Healthy fraction at or above which status is degraded, not failed",
    )

    @property
    def canonical_url(self) -> str:
        return self.base_url.rstrip("/") + self.webhook_path


class SchedulerConfig(BaseModel):
    """Background health-check loop."""

    enabled: bool = Field(default=False, description="Start the loop with the app")
    interval_minutes: int = Field(
        default=24 * 60, ge=1, description="Minutes between global health checks"
    )

    def get_interval_seconds(self) -> int:
        return self.interval_minutes * 60


class SyncConfig(BaseModel):
    """Top-level ingestion configuration."""

    api_version: str = Field(default="2024-01", description="Platform API version")
    api_timeout: float = Field(default=30.0, gt=0, description="Request timeout")
    webhook_secret: Optional[str] = Field(default=None, description="Primary secret")
    webhook_secret_fallback: Optional[str] = Field(
        default=None, description="Previous secret accepted during rotation"
    )
    backfill: BackfillConfig = Field(default_factory=BackfillConfig)
    reconciler: ReconcilerConfig = Field(default_factory=ReconcilerConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)


def get_sync_config() -> SyncConfig:
    """Build the ingestion configuration from application settings."""
    settings = get_settings()
    return SyncConfig(
        api_version=settings.SHOPIFY_API_VERSION,
        api_timeout=settings.SHOPIFY_API_TIMEOUT,
        webhook_secret=settings.SHOPIFY_WEBHOOK_SECRET,
        webhook_secret_fallback=settings.SHOPIFY_WEBHOOK_SECRET_FALLBACK,
        backfill=BackfillConfig(
            days_back=settings.BACKFILL_DAYS_BACK,
            batch_size=settings.BACKFILL_BATCH_SIZE,
            max_orders=settings.BACKFILL_MAX_ORDERS,
            batch_delay=settings.BACKFILL_BATCH_DELAY,
        ),
        reconciler=ReconcilerConfig(base_url=settings.APP_BASE_URL),
        scheduler=SchedulerConfig(
            enabled=settings.SCHEDULER_ENABLED,
            interval_minutes=settings.HEALTH_CHECK_INTERVAL_MINUTES,
        ),
    )
