"""Rate limiting.

Two mechanisms:
- slowapi limiters for authenticated endpoints (link issuance), keyed per user
- Fixed-window counters in Redis for the anonymous verify/consume endpoints,
  keyed per client IP and per token hash. These must be shared across
  workers, so they cannot live in slowapi's in-process storage.

Fixed-window key format: ``ratelimit:{scope}:{identifier}:{window_start}``
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from fastapi import Request
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from charterdesk.core.config import settings
from charterdesk.core.errors import DownstreamError, ErrorCode, RateLimitError, create_error_response
from charterdesk.core.metrics import track_rate_limit_rejection
from charterdesk.services.cache_service import CacheService, CacheUnavailableError

logger = logging.getLogger(__name__)


def get_user_identifier(request: Request) -> str:
    """
    Get rate limit key based on authenticated user.

    Falls back to IP address if user not authenticated.
    Uses format: user:{user_id} or ip:{ip_address}
    """
    # Set by get_current_user
    user = getattr(request.state, "user", None)
    if user and hasattr(user, "id"):
        return f"user:{user.id}"

    return f"ip:{get_remote_address(request)}"


# =============================================================================
# slowapi Limiters
# =============================================================================

# IP-based limiter (for unauthenticated endpoints)
limiter = Limiter(key_func=get_remote_address)

# User-based limiter (for authenticated endpoints)
user_limiter = Limiter(key_func=get_user_identifier)


class RateLimits:
    """
    Centralized slowapi rate limit strings.

    Format: "X/period" where period is: second, minute, hour, day
    Multiple limits can be combined: "100/minute;1000/hour"
    """

    STANDARD = f"{settings.RATE_LIMIT_PER_MINUTE}/minute"

    # Issuing links sends email downstream; keep it modest per user
    ACTION_LINK_ISSUE = "30/minute;300/hour"

    # Authenticated reads
    ACTION_LINK_READ = "120/minute"


async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Render slowapi breaches in the standard error shape with Retry-After."""
    retry_after = None
    try:
        retry_after = int(exc.limit.limit.get_expiry())
    except AttributeError:
        pass

    headers = {"Retry-After": str(retry_after)} if retry_after else None
    return JSONResponse(
        status_code=429,
        content=create_error_response(
            code=ErrorCode.RATE_LIMITED,
            message="Too many requests. Please try again later.",
        ),
        headers=headers,
    )


# =============================================================================
# Fixed-window limiter for anonymous action link endpoints
# =============================================================================


@dataclass(frozen=True)
class WindowPolicy:
    """A named fixed window: at most ``limit`` hits per ``window_seconds``."""

    scope: str
    limit: int
    window_seconds: int


class WindowPolicies:
    VERIFY_IP = WindowPolicy(
        "verify:ip", settings.VERIFY_IP_LIMIT, settings.VERIFY_IP_WINDOW_SECONDS
    )
    VERIFY_TOKEN = WindowPolicy(
        "verify:token", settings.VERIFY_TOKEN_LIMIT, settings.VERIFY_TOKEN_WINDOW_SECONDS
    )
    CONSUME_IP = WindowPolicy(
        "consume:ip", settings.CONSUME_IP_LIMIT, settings.CONSUME_IP_WINDOW_SECONDS
    )


class FixedWindowRateLimiter:
    """Counts hits per (scope, identifier) in aligned fixed windows.

    Fails closed: if the counter store is unavailable the request is
    rejected with DownstreamError rather than let through unlimited.
    """

    def __init__(self, cache: CacheService, clock: Callable[[], float] | None = None):
        self.cache = cache
        self._clock = clock or time.time

    def window_key(self, policy: WindowPolicy, identifier: str, now: float) -> str:
        window_start = int(now // policy.window_seconds) * policy.window_seconds
        return f"{CacheService.PREFIX_RATE_LIMIT}{policy.scope}:{identifier}:{window_start}"

    async def hit(self, policy: WindowPolicy, identifier: str) -> int:
        """Record one hit; raise RateLimitError once the window is over its limit.

        Returns:
            The hit count within the current window
        """
        now = self._clock()
        key = self.window_key(policy, identifier, now)

        try:
            count = await self.cache.increment_window(key, policy.window_seconds)
        except CacheUnavailableError as e:
            raise DownstreamError("Rate limiter unavailable") from e

        if count > policy.limit:
            window_start = int(now // policy.window_seconds) * policy.window_seconds
            retry_after = max(int(window_start + policy.window_seconds - now), 1)
            logger.info(
                "Fixed window exceeded",
                extra={
                    "event_type": "security.rate_limit.exceeded",
                    "scope": policy.scope,
                    "count": count,
                    "limit": policy.limit,
                },
            )
            track_rate_limit_rejection(policy.scope)
            raise RateLimitError(retry_after=retry_after)

        return count
