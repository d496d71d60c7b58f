"""Tests for the sliding window rate limiter."""

import pytest
from conftest import BrokenKVStore, FakeClock

from nkshield.rate_limiter import (
    RateLimiterConfig,
    SlidingWindowRateLimiter,
    apply_rate_limit,
    too_many_requests,
)
from nkshield.store import MemoryKVStore


def _make_limiter(requests=5, window=10):
    clock = FakeClock()
    store = MemoryKVStore(clock=clock)
    limiter = SlidingWindowRateLimiter(
        store, RateLimiterConfig(requests=requests, window_seconds=window, name="test"), clock=clock
    )
    return limiter, clock, store


class TestRateLimiterConfig:
    """Tests for RateLimiterConfig dataclass."""

    def test_defaults(self):
        """Test the default quota is 5 requests per 10 seconds."""
        config = RateLimiterConfig()

        assert config.requests == 5
        assert config.window_seconds == 10


class TestSlidingWindowRateLimiter:
    """Tests for SlidingWindowRateLimiter."""

    @pytest.mark.asyncio
    async def test_five_allowed_sixth_rejected(self):
        """Test exactly five requests in the window succeed."""
        limiter, clock, _ = _make_limiter()

        results = []
        for _ in range(6):
            results.append(await limiter.check("abc"))
            clock.advance(1.5)

        assert results == [True, True, True, True, True, False]

    @pytest.mark.asyncio
    async def test_window_slides(self):
        """Test a request is allowed again once the oldest ages out."""
        limiter, clock, _ = _make_limiter()
        for _ in range(5):
            assert await limiter.check("abc")
            clock.advance(1)
        assert not await limiter.check("abc")

        clock.advance(6)

        assert await limiter.check("abc")

    @pytest.mark.asyncio
    async def test_rejected_requests_not_recorded(self):
        """Test rejections do not extend the lockout."""
        limiter, clock, store = _make_limiter(requests=2)
        await limiter.check("abc")
        await limiter.check("abc")
        for _ in range(3):
            assert not await limiter.check("abc")

        assert len(await store.lrange("nk-rl:abc", 0, -1)) == 2

    @pytest.mark.asyncio
    async def test_identities_independent(self):
        """Test each identity has its own quota."""
        limiter, _, _ = _make_limiter(requests=1)

        assert await limiter.check("a")
        assert await limiter.check("b")
        assert not await limiter.check("a")

    @pytest.mark.asyncio
    async def test_reset(self):
        """Test reset forgets recorded requests."""
        limiter, _, _ = _make_limiter(requests=1)
        await limiter.check("a")
        await limiter.reset("a")

        assert await limiter.check("a")


class TestApplyRateLimit:
    """Tests for apply_rate_limit."""

    @pytest.mark.asyncio
    async def test_allowed_returns_none(self):
        """Test an allowed request continues."""
        limiter, _, _ = _make_limiter()

        assert await apply_rate_limit(limiter, "abc") is None

    @pytest.mark.asyncio
    async def test_violation_returns_429(self):
        """Test a violation yields 429 with Retry-After."""
        limiter, _, _ = _make_limiter(requests=1, window=10)
        await apply_rate_limit(limiter, "abc")

        response = await apply_rate_limit(limiter, "abc")

        assert response.status == 429
        assert response.headers["Retry-After"] == "10"

    @pytest.mark.asyncio
    async def test_store_outage_fails_closed(self):
        """Test an unreachable store denies the request with 503."""
        limiter = SlidingWindowRateLimiter(BrokenKVStore())

        response = await apply_rate_limit(limiter, "abc")

        assert response.status == 503

    def test_too_many_requests_body(self):
        """Test the 429 body is JSON."""
        response = too_many_requests(10)

        assert response.content_type == "application/json"
        assert b"Too Many Requests" in response.body
