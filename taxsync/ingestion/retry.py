"""
Retry and circuit breaker utilities for resilient platform calls.

Implements exponential backoff with jitter and the circuit breaker
pattern. Whether an error is worth retrying is read from the exception
type, never from its message.
"""

import asyncio
import random
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar

import httpx
import structlog

from taxsync.core.errors import CircuitOpenError
from taxsync.ingestion.config import (
    REMOTE_RETRY_CONFIG,
    CircuitBreakerConfig,
    RetryConfig,
)

logger = structlog.get_logger()

T = TypeVar("T")

_TRANSIENT_EXCEPTIONS = (httpx.TransportError, TimeoutError, ConnectionError)


def is_retryable_error(error: BaseException) -> bool:
    """
    Classify an error as transient.

    Errors from our own taxonomy carry a ``retryable`` flag (429, 5xx and
    throttling are retryable; other 4xx are not). Outside the taxonomy only
    network-level failures are retried.
    """
    flag = getattr(error, "retryable", None)
    if isinstance(flag, bool):
        return flag
    return isinstance(error, _TRANSIENT_EXCEPTIONS)


def calculate_backoff_delay(attempt: int, config: RetryConfig) -> float:
    """
    Delay before retry number ``attempt + 1``.

    ``min(initial_delay * multiplier**attempt, max_delay)``, plus a random
    0-25% on top when jitter is enabled.
    """
    delay = min(
        config.initial_delay * (config.backoff_multiplier**attempt),
        config.max_delay,
    )
    if config.jitter:
        delay += delay * 0.25 * random.random()
    return delay


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failing, reject requests
    HALF_OPEN = "half_open"  # One trial call in flight


class CircuitBreaker:
    """
    Circuit breaker pattern implementation.

    Opens after ``failure_threshold`` consecutive failures. While open,
    calls fail immediately with CircuitOpenError. Once ``timeout`` seconds
    have passed a single trial call is let through; concurrent callers are
    rejected until it finishes. Success closes the circuit, failure
    re-opens it.
    """

    def __init__(
        self,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
        counts_as_failure: Callable[[BaseException], bool] = is_retryable_error,
    ):
        """
        Initialize circuit breaker.

        Args:
            config: Circuit breaker configuration
            clock: Monotonic time source in seconds (injectable for tests)
            counts_as_failure: Which errors count towards opening the circuit.
                Defaults to the retryable (transient) errors only.
        """
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._counts_as_failure = counts_as_failure
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.opened_at: Optional[float] = None
        self.last_failure_time: Optional[datetime] = None
        self.last_state_change: datetime = datetime.now(timezone.utc)
        self._trial_in_flight = False

    async def call_async(self, func: Callable[[], Awaitable[T]]) -> T:
        """
        Execute an async function with circuit breaker protection.

        Raises:
            CircuitOpenError: If the circuit is open or a trial is running
            Exception: Original exception from function
        """
        self._admit()
        is_trial = self.state == CircuitState.HALF_OPEN

        try:
            result = await func()
        except Exception as e:
            if self._counts_as_failure(e):
                self._on_failure()
            else:
                self._on_success()
            raise
        else:
            self._on_success()
            return result
        finally:
            if is_trial:
                self._trial_in_flight = False

    def _admit(self):
        if self.state == CircuitState.CLOSED:
            return

        if self.state == CircuitState.HALF_OPEN:
            raise CircuitOpenError("Circuit breaker is HALF_OPEN; trial call in flight")

        remaining = self.config.timeout - (self._clock() - (self.opened_at or 0.0))
        if remaining > 0:
            raise CircuitOpenError(
                f"Circuit breaker is OPEN. Retry in {remaining:.1f}s "
                f"(last failure: {self.last_failure_time})"
            )

        self._transition_to(CircuitState.HALF_OPEN)
        self._trial_in_flight = True
        logger.info("circuit_breaker.half_open", attempting_recovery=True)

    def _on_success(self):
        if self.state != CircuitState.CLOSED:
            logger.info("circuit_breaker.closed")
        self.failure_count = 0
        self._transition_to(CircuitState.CLOSED)

    def _on_failure(self):
        self.failure_count += 1
        self.last_failure_time = datetime.now(timezone.utc)

        if self.state == CircuitState.HALF_OPEN:
            self._open()
            logger.warning(
                "circuit_breaker.reopened",
                failure_count=self.failure_count,
            )
        elif (
            self.state == CircuitState.CLOSED
            and self.failure_count >= self.config.failure_threshold
        ):
            self._open()
            logger.warning(
                "circuit_breaker.opened",
                failure_count=self.failure_count,
                threshold=self.config.failure_threshold,
            )

    def _open(self):
        self.opened_at = self._clock()
        self._transition_to(CircuitState.OPEN)

    def _transition_to(self, state: CircuitState):
        if self.state != state:
            self.state = state
            self.last_state_change = datetime.now(timezone.utc)

    def reset(self):
        """Force the circuit closed and forget past failures."""
        self.failure_count = 0
        self.opened_at = None
        self.last_failure_time = None
        self._trial_in_flight = False
        self._transition_to(CircuitState.CLOSED)

    def get_state(self) -> dict[str, Any]:
        """Get current circuit breaker state."""
        return {
            "state": self.state.value,
            "failure_count": self.failure_count,
            "last_failure_time": (
                self.last_failure_time.isoformat() if self.last_failure_time else None
            ),
            "last_state_change": self.last_state_change.isoformat(),
        }


async def retry_with_backoff(
    func: Callable[[], Awaitable[T]],
    config: Optional[RetryConfig] = None,
    operation_name: str = "operation",
    should_retry: Callable[[BaseException], bool] = is_retryable_error,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """
    Execute a function with exponential backoff retry.

    Args:
        func: Async function to execute
        config: Retry configuration; ``max_retries`` counts retries after
            the first attempt
        operation_name: Name for logging
        should_retry: Classifier deciding whether an error is transient
        sleep: Awaitable sleep (injectable for tests)

    Returns:
        Function result

    Raises:
        Exception: The first non-retryable error, or the last error once
            retries are exhausted
    """
    config = config or RetryConfig()

    for attempt in range(config.max_retries + 1):
        try:
            return await func()
        except Exception as e:
            if not should_retry(e):
                logger.warning(
                    "retry.not_retryable",
                    operation=operation_name,
                    attempt=attempt + 1,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                raise

            if attempt >= config.max_retries:
                logger.error(
                    "retry.exhausted",
                    operation=operation_name,
                    attempts=attempt + 1,
                    error=str(e),
                )
                raise

            delay = calculate_backoff_delay(attempt, config)
            retry_after = getattr(e, "retry_after", None)
            if retry_after:
                delay = max(delay, float(retry_after))

            logger.warning(
                "retry.attempt",
                operation=operation_name,
                attempt=attempt + 1,
                max_retries=config.max_retries,
                delay_seconds=round(delay, 3),
                error=str(e),
            )
            await sleep(delay)

    raise RuntimeError("unreachable")


async def retry_remote_call(
    func: Callable[[], Awaitable[T]],
    operation_name: str = "remote_call",
    config: Optional[RetryConfig] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """
    Retry a platform API call with rate-limit-aware defaults.

    Uses 5 retries, a 2 s initial delay and a 60 s cap unless overridden;
    a ``Retry-After`` hint on a RateLimitedError stretches the wait.
    """
    return await retry_with_backoff(
        func,
        config or REMOTE_RETRY_CONFIG,
        operation_name=operation_name,
        sleep=sleep,
    )


__all__ = [
    "CircuitBreaker",
    "CircuitState",
    "CircuitOpenError",
    "calculate_backoff_delay",
    "is_retryable_error",
    "retry_remote_call",
    "retry_with_backoff",
]
