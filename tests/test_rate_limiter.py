"""Tests for fixed and sliding window rate limiting."""

import asyncio
import time

import pytest

from rediscoord.exceptions import RateLimitError
from rediscoord.redis.rate_limiter import RateLimiter


@pytest.fixture
def limiter(redis):
    return RateLimiter(redis, window_seconds=3600, prefix="ratelimit:")


class TestFixedWindow:
    """check_limit behavior."""

    async def test_allows_up_to_limit(self, limiter):
        results = [await limiter.check_limit("api", 3) for _ in range(4)]

        assert [r.limited for r in results] == [False, False, False, True]
        assert [r.remaining for r in results] == [2, 1, 0, 0]
        assert all(r.total == 3 for r in results)

    async def test_concurrent_requests_never_over_admit(self, limiter):
        """Concurrent checks admit exactly the limit."""
        results = await asyncio.gather(*(limiter.check_limit("burst", 5) for _ in range(20)))

        assert sum(1 for r in results if r.allowed) == 5
        assert await limiter.get_current_count("burst") == 5

    async def test_window_key_has_expiry(self, limiter, redis):
        await limiter.check_limit("api", 10, window_seconds=60)

        keys = await redis.scan_keys("ratelimit:api:*")
        assert len(keys) == 1
        assert 0 < await redis.pttl(keys[0]) <= 60_000

    async def test_reset_time_and_retry_after(self, limiter):
        before = time.time()
        await limiter.check_limit("api", 1, window_seconds=60)
        blocked = await limiter.check_limit("api", 1, window_seconds=60)

        assert blocked.limited
        assert before < blocked.reset_time <= before + 61
        assert 0 < blocked.retry_after <= 60

    async def test_identifiers_are_independent(self, limiter):
        await limiter.check_limit("a", 1)

        assert (await limiter.check_limit("a", 1)).limited
        assert not (await limiter.check_limit("b", 1)).limited

    async def test_new_window_admits_again(self, limiter):
        """A new window starts from zero."""
        for _ in range(2):
            await limiter.check_limit("short", 2, window_seconds=0.3)

        await asyncio.sleep(0.35)

        assert not (await limiter.check_limit("short", 2, window_seconds=0.3)).limited

    async def test_rejects_non_positive_window(self, limiter):
        with pytest.raises(ValueError):
            await limiter.check_limit("api", 1, window_seconds=0)


class TestSlidingWindow:
    """check_sliding_window_limit behavior."""

    async def test_allows_up_to_limit(self, limiter):
        results = [
            await limiter.check_sliding_window_limit("api", 2, window_seconds=60) for _ in range(3)
        ]

        assert [r.limited for r in results] == [False, False, True]
        assert results[2].remaining == 0
        assert results[2].retry_after > 0

    async def test_concurrent_requests_never_over_admit(self, limiter):
        results = await asyncio.gather(
            *(limiter.check_sliding_window_limit("burst", 4, window_seconds=60) for _ in range(15))
        )

        assert sum(1 for r in results if r.allowed) == 4

    async def test_admits_again_after_window_passes(self, limiter):
        for _ in range(2):
            await limiter.check_sliding_window_limit("api", 2, window_seconds=0.3)
        assert (await limiter.check_sliding_window_limit("api", 2, window_seconds=0.3)).limited

        await asyncio.sleep(0.35)

        assert not (await limiter.check_sliding_window_limit("api", 2, window_seconds=0.3)).limited

    async def test_rejected_requests_are_not_recorded(self, limiter):
        for _ in range(5):
            await limiter.check_sliding_window_limit("api", 2, window_seconds=60)

        assert await limiter.get_current_count("api", window_seconds=60, sliding=True) == 2

    async def test_sorted_set_has_expiry(self, limiter, redis):
        await limiter.check_sliding_window_limit("api", 2, window_seconds=10)

        assert 0 < await redis.pttl("ratelimit:sliding:api") <= 11_000


class TestEnforceAndInspect:
    """enforce_limit, get_info, reset, check_multiple, cleanup."""

    async def test_enforce_raises_when_limited(self, limiter):
        await limiter.enforce_limit("api", 1)

        with pytest.raises(RateLimitError) as exc_info:
            await limiter.enforce_limit("api", 1, message="Slow down")

        assert exc_info.value.code == "RATE_LIMIT_EXCEEDED"
        assert exc_info.value.message == "Slow down"
        assert exc_info.value.reset_time > time.time()

    async def test_enforce_sliding(self, limiter):
        await limiter.enforce_limit("api", 1, window_seconds=60, sliding=True)

        with pytest.raises(RateLimitError):
            await limiter.enforce_limit("api", 1, window_seconds=60, sliding=True)

    async def test_get_info_does_not_count(self, limiter):
        await limiter.check_limit("api", 3)

        info = await limiter.get_info("api", 3)
        again = await limiter.get_info("api", 3)

        assert info.remaining == again.remaining == 2
        assert not info.limited

    async def test_get_info_reports_exhausted_window(self, limiter):
        for _ in range(2):
            await limiter.check_limit("api", 2)

        assert (await limiter.get_info("api", 2)).limited

    async def test_reset_clears_both_algorithms(self, limiter):
        await limiter.check_limit("api", 1)
        await limiter.check_sliding_window_limit("api", 1)

        assert await limiter.reset("api")
        assert not (await limiter.check_limit("api", 1)).limited
        assert not (await limiter.check_sliding_window_limit("api", 1)).limited

    async def test_check_multiple(self, limiter):
        await limiter.check_limit("a", 1)

        results = await limiter.check_multiple(["a", "b"], 1)

        assert results["a"].limited
        assert results["b"].allowed

    async def test_cleanup_removes_keys_without_expiry(self, limiter, redis):
        await limiter.check_limit("api", 5)
        await redis.set("ratelimit:orphan", "3")

        assert await limiter.cleanup() == 1
        assert await redis.get("ratelimit:orphan") is None
        assert await limiter.get_current_count("api") == 1
