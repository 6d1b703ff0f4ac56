"""
Unit tests for the sliding-window rate limiter.
"""

from unittest.mock import MagicMock

import pytest
from fhirlink.services.rate_limiter import RateLimiter
from redis.exceptions import RedisError


@pytest.fixture
def clock():
    """Mutable wall clock: tests move time by assigning clock[0]."""
    return [1_700_000_000.0]


def make_limiter(clock, enforce=True, redis_client=None, max_requests=3):
    return RateLimiter(
        redis_client=redis_client,
        policies={"default": 100, "widget": max_requests},
        window_seconds=60,
        enforce=enforce,
        clock=lambda: clock[0],
    )


class TestInMemoryWindow:
    """Budget accounting without Redis."""

    @pytest.mark.asyncio
    async def test_allows_up_to_max_then_rejects(self, clock):
        limiter = make_limiter(clock)

        results = [await limiter.check("ip:1.2.3.4", "widget") for _ in range(3)]
        assert all(r.allowed for r in results)
        assert [r.remaining for r in results] == [2, 1, 0]

        rejected = await limiter.check("ip:1.2.3.4", "widget")
        assert rejected.allowed is False
        assert rejected.remaining == 0
        assert rejected.retry_after > 0
        assert rejected.backend == "memory"

    @pytest.mark.asyncio
    async def test_window_slides(self, clock):
        limiter = make_limiter(clock)
        for _ in range(3):
            await limiter.check("ip:1.2.3.4", "widget")

        clock[0] += 30
        assert (await limiter.check("ip:1.2.3.4", "widget")).allowed is False

        clock[0] += 31
        assert (await limiter.check("ip:1.2.3.4", "widget")).allowed is True

    @pytest.mark.asyncio
    async def test_rejections_do_not_consume_budget(self, clock):
        limiter = make_limiter(clock)
        for _ in range(3):
            await limiter.check("ip:1.2.3.4", "widget")
        for _ in range(5):
            await limiter.check("ip:1.2.3.4", "widget")

        clock[0] += 61
        assert (await limiter.check("ip:1.2.3.4", "widget")).remaining == 2

    @pytest.mark.asyncio
    async def test_identities_and_categories_are_independent(self, clock):
        limiter = make_limiter(clock)
        for _ in range(3):
            await limiter.check("ip:1.2.3.4", "widget")

        assert (await limiter.check("ip:5.6.7.8", "widget")).allowed is True
        assert (await limiter.check("ip:1.2.3.4", "default")).allowed is True

    @pytest.mark.asyncio
    async def test_unknown_category_uses_default_policy(self, clock):
        limiter = make_limiter(clock)
        result = await limiter.check("ip:1.2.3.4", "nonexistent")
        assert result.limit == 100

    @pytest.mark.asyncio
    async def test_status_does_not_consume(self, clock):
        limiter = make_limiter(clock)
        await limiter.check("ip:1.2.3.4", "widget")

        status = await limiter.status("ip:1.2.3.4", "widget")
        again = await limiter.status("ip:1.2.3.4", "widget")
        assert status.remaining == again.remaining == 2

    @pytest.mark.asyncio
    async def test_cleanup_drops_idle_windows(self, clock):
        limiter = make_limiter(clock)
        await limiter.check("ip:1.2.3.4", "widget")

        clock[0] += 120
        assert limiter.cleanup_memory() == 1


class TestEnforcement:
    @pytest.mark.asyncio
    async def test_disabled_enforcement_is_reported(self, clock):
        limiter = make_limiter(clock, enforce=False)
        for _ in range(3):
            await limiter.check("ip:1.2.3.4", "widget")

        result = await limiter.check("ip:1.2.3.4", "widget")
        assert result.allowed is False
        assert result.enforced is False


class TestRedisFallback:
    @pytest.mark.asyncio
    async def test_redis_error_falls_back_to_memory(self, clock):
        redis_client = MagicMock()
        redis_client.pipeline.side_effect = RedisError("connection refused")
        limiter = make_limiter(clock, redis_client=redis_client)

        result = await limiter.check("ip:1.2.3.4", "widget")

        assert result.allowed is True
        assert result.backend == "memory"
        assert limiter.backend == "redis"


class TestHeaders:
    def test_rejected_result_headers(self):
        from fhirlink.services.rate_limiter import RateLimitResult

        result = RateLimitResult(False, 10, 0, 60, "memory", retry_after=12)
        headers = result.headers(now=1000.0)

        assert headers["X-RateLimit-Limit"] == "10"
        assert headers["X-RateLimit-Remaining"] == "0"
        assert headers["Retry-After"] == "12"
        assert headers["X-RateLimit-Reset"] == "1012"
