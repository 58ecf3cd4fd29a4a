"""
Error taxonomy for the ingestion engine.

Every error carries a ``retryable`` classification so retry decisions
travel with the exception instead of being inferred from message text.
"""

from __future__ import annotations

from typing import Optional


class SyncError(Exception):
    """Base exception for ingestion and synchronization errors."""

    retryable: bool = False


class AuthenticationError(SyncError):
    """Raised when an inbound webhook signature is missing or invalid."""

    pass


class EventValidationError(SyncError):
    """Raised when required headers or payload fields are missing or malformed."""

    pass


class IntegrationNotFoundError(SyncError):
    """Raised when no integration matches an id or shop domain."""

    pass


class RemoteError(SyncError):
    """Base exception for errors returned by the commerce platform API."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TransientRemoteError(RemoteError):
    """Network, timeout, 5xx or throttling failure; safe to retry."""

    retryable = True


class RateLimitedError(TransientRemoteError):
    """Raised when the platform signals an exhausted call budget."""

    def __init__(
        self,
        message: str,
        retry_after: Optional[float] = None,
        calls_remaining: Optional[int] = None,
        call_limit: Optional[int] = None,
    ):
        super().__init__(message, status_code=429)
        self.retry_after = retry_after
        self.calls_remaining = calls_remaining
        self.call_limit = call_limit


class PermanentRemoteError(RemoteError):
    """401/403/404 or invalid credentials; fail fast and flag for reconnection."""

    retryable = False


class CircuitOpenError(SyncError):
    """Raised when circuit breaker is open."""

    pass
