"""Webhook signature verification."""

import base64
import hashlib
import hmac
from typing import Optional, Tuple

import structlog

from taxsync.core.errors import AuthenticationError

logger = structlog.get_logger()


def compute_signature(raw_body: bytes, secret: str) -> str:
    """Base64-encoded HMAC-SHA256 of ``raw_body``, as the platform sends it."""
    digest = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


class EventAuthenticator:
    """
    Verifies inbound webhook signatures.

    The signature is checked against the exact bytes received, before any
    parsing. During a secret rotation the previous secret is accepted as a
    fallback. With no secret configured every request is rejected.
    """

    def __init__(self, secret: Optional[str], fallback_secret: Optional[str] = None):
        self._secrets: Tuple[str, ...] = tuple(
            s for s in (secret, fallback_secret) if s
        )
        if not self._secrets:
            logger.warning("webhook_auth.no_secret_configured")

    def verify(self, raw_body: bytes, signature_header: Optional[str]) -> bool:
        """Return True if any configured secret produces ``signature_header``."""
        if not signature_header or not self._secrets:
            return False

        received = signature_header.strip().encode("ascii", errors="replace")
        for index, secret in enumerate(self._secrets):
            expected = compute_signature(raw_body, secret).encode("ascii")
            if hmac.compare_digest(expected, received):
                if index > 0:
                    logger.info("webhook_auth.fallback_secret_used")
                return True
        return False

    def verify_or_raise(self, raw_body: bytes, signature_header: Optional[str]) -> None:
        """
        Raises:
            AuthenticationError: Signature missing or invalid
        """
        if not self.verify(raw_body, signature_header):
            raise AuthenticationError("Invalid webhook signature")
