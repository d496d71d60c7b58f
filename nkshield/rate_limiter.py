"""Sliding window rate limiter keyed by hashed client identity."""

import logging
import time
from dataclasses import dataclass
from typing import Callable

from aiohttp import web

from nkshield.errors import StoreUnavailableError
from nkshield.store import KVStore

logger = logging.getLogger("nkshield.rate_limiter")

RATE_LIMIT_PREFIX = "nk-rl:"


@dataclass
class RateLimiterConfig:
    """Configuration for rate limiter."""

    requests: int = 5
    window_seconds: int = 10
    name: str = "default"


class SlidingWindowRateLimiter:
    """Exact sliding-log rate limiter backed by the KV store.

    Each identity owns a list of request timestamps (newest first) trimmed
    to the request limit.  A request is allowed when fewer than `requests`
    timestamps fall inside the trailing window.  Rejected requests are not
    recorded, so a client that backs off regains access once its oldest
    accepted request ages out.
    """

    def __init__(
        self,
        store: KVStore,
        config: RateLimiterConfig | None = None,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize the rate limiter."""
        self.store = store
        self.config = config or RateLimiterConfig()
        self._clock = clock

    def _key(self, identifier: str) -> str:
        return f"{RATE_LIMIT_PREFIX}{identifier}"

    async def check(self, identifier: str) -> bool:
        """
        Record a request for identifier if it is within quota.

        Args:
            identifier: Hashed client identity

        Returns:
            True if the request is allowed, False if the limit is exceeded

        Raises:
            StoreUnavailableError: If the backing store cannot be reached
        """
        key = self._key(identifier)
        limit = self.config.requests
        now = self._clock()
        window_start = now - self.config.window_seconds

        timestamps = await self.store.lrange(key, 0, limit - 1)
        recent = 0
        for stamp in timestamps:
            try:
                if float(stamp) > window_start:
                    recent += 1
            except (TypeError, ValueError):
                continue

        if recent >= limit:
            logger.debug(f"{self.config.name}: limit of {limit} reached for {identifier[:12]}")
            return False

        await self.store.lpush(key, now)
        await self.store.ltrim(key, 0, limit - 1)
        await self.store.expire(key, self.config.window_seconds)
        return True

    async def reset(self, identifier: str) -> None:
        """Forget all recorded requests for identifier."""
        await self.store.delete(self._key(identifier))


def too_many_requests(retry_after: int) -> web.Response:
    """429 response sent to a client over quota."""
    return web.json_response(
        {
            "error": "Too Many Requests",
            "message": "Rate limit exceeded. Please try again in a few seconds.",
        },
        status=429,
        headers={"Retry-After": str(retry_after)},
    )


def service_unavailable(message: str) -> web.Response:
    """503 response used when a fail-closed check cannot reach the store."""
    return web.json_response(
        {"error": "Service Unavailable", "message": message},
        status=503,
    )


async def apply_rate_limit(
    limiter: SlidingWindowRateLimiter, hashed_ip: str
) -> web.Response | None:
    """
    Enforce the request quota for one identity.

    Returns:
        None to continue, or the terminal 429/503 response
    """
    try:
        allowed = await limiter.check(hashed_ip)
    except StoreUnavailableError as e:
        # Fail closed: an outage must not become a bypass
        logger.error(f"Rate limit check failed, blocking request: {e}")
        return service_unavailable(
            "Rate limiting service is temporarily unavailable. Please try again later."
        )
    if not allowed:
        return too_many_requests(limiter.config.window_seconds)
    return None
