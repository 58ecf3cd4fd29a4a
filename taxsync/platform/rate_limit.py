"""
Decoding of the platform's rate-limit signals.

The platform reports its call budget in ``X-Shopify-Shop-Api-Call-Limit``
("used/max") and asks callers to back off with ``Retry-After``. Either
signal alone marks a response as rate-limited, even without a 429.
"""

from typing import Mapping, Optional, Union

import httpx
from pydantic import BaseModel

from taxsync.core.errors import (
    PermanentRemoteError,
    RateLimitedError,
    TransientRemoteError,
)

RETRY_AFTER_HEADER = "Retry-After"
CALL_LIMIT_HEADER = "X-Shopify-Shop-Api-Call-Limit"

# Wait used when the platform throttles without saying for how long.
DEFAULT_RETRY_AFTER = 2.0


class RateLimitInfo(BaseModel):
    """Rate-limit state decoded from one response."""

    is_rate_limited: bool = False
    retry_after: Optional[float] = None
    call_limit: Optional[int] = None
    calls_remaining: Optional[int] = None


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        seconds = float(value.strip())
    except ValueError:
        return None
    return seconds if seconds >= 0 else None


def _parse_call_limit(value: Optional[str]) -> tuple[Optional[int], Optional[int]]:
    if not value or "/" not in value:
        return None, None
    used, _, maximum = value.partition("/")
    try:
        used_calls, max_calls = int(used.strip()), int(maximum.strip())
    except ValueError:
        return None, None
    return max_calls, max(max_calls - used_calls, 0)


def parse_rate_limit_headers(
    headers: Union[httpx.Headers, Mapping[str, str]],
) -> RateLimitInfo:
    """
    Decode rate-limit headers.

    Malformed values are ignored rather than raising; a response is
    rate-limited when it carries a Retry-After hint or zero remaining calls.
    """
    headers = httpx.Headers(headers)
    retry_after = _parse_retry_after(headers.get(RETRY_AFTER_HEADER))
    call_limit, calls_remaining = _parse_call_limit(headers.get(CALL_LIMIT_HEADER))

    return RateLimitInfo(
        is_rate_limited=retry_after is not None or calls_remaining == 0,
        retry_after=retry_after,
        call_limit=call_limit,
        calls_remaining=calls_remaining,
    )


def raise_for_remote_status(response: httpx.Response) -> None:
    """
    Translate a platform response into the error taxonomy.

    Raises:
        RateLimitedError: 429, or any response signalling an exhausted budget
        TransientRemoteError: 5xx
        PermanentRemoteError: any other 4xx
    """
    info = parse_rate_limit_headers(response.headers)
    status = response.status_code

    if status == 429 or info.is_rate_limited:
        retry_after = info.retry_after if info.retry_after is not None else DEFAULT_RETRY_AFTER
        raise RateLimitedError(
            f"Rate limit exceeded (HTTP {status}). Retry after {retry_after}s. "
            f"Calls remaining: {info.calls_remaining}/{info.call_limit}",
            retry_after=retry_after,
            calls_remaining=info.calls_remaining,
            call_limit=info.call_limit,
        )

    if status < 400:
        return

    detail = response.text[:500]
    if status >= 500:
        raise TransientRemoteError(
            f"Platform server error {status}: {detail}", status_code=status
        )
    raise PermanentRemoteError(f"Platform API error {status}: {detail}", status_code=status)
