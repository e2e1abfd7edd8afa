"""Fixed and sliding window rate limiting with atomic Lua scripts."""

import asyncio
import logging
import time
import uuid
from collections.abc import Sequence
from dataclasses import dataclass

from rediscoord.exceptions import RateLimitError
from rediscoord.redis.client import RedisClient
from rediscoord.redis.keys import RedisKeys

logger = logging.getLogger(__name__)


@dataclass
class RateLimitResult:
    """Result of rate limit check."""

    limited: bool
    remaining: int
    reset_time: float
    total: int
    retry_after: float = 0.0

    @property
    def allowed(self) -> bool:
        return not self.limited


class RateLimiter:
    """
    Redis rate limiter with fixed and sliding window algorithms.

    Both checks read, compare and write in one Lua script so concurrent
    callers can never over-admit or leave a window key without expiry.
    """

    # Fixed window: refuse at the limit, otherwise INCR and set the
    # window expiry on the first hit. Returns {count, limited, pttl}.
    FIXED_WINDOW_SCRIPT = """
    local key = KEYS[1]
    local limit = tonumber(ARGV[1])
    local window_ms = tonumber(ARGV[2])

    local current = tonumber(redis.call('GET', key) or '0')
    if current >= limit then
        return {current, 1, redis.call('PTTL', key)}
    end

    current = redis.call('INCR', key)
    if current == 1 then
        redis.call('PEXPIRE', key, window_ms)
    end
    return {current, 0, redis.call('PTTL', key)}
    """

    # Sliding window over a sorted set scored by request time (ms).
    # Returns {count, limited, reset_ms}.
    SLIDING_WINDOW_SCRIPT = """
    local key = KEYS[1]
    local now = tonumber(ARGV[1])
    local window = tonumber(ARGV[2])
    local limit = tonumber(ARGV[3])
    local member = ARGV[4]

    -- Remove expired entries
    redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)

    local current = redis.call('ZCARD', key)
    if current >= limit then
        -- Oldest entry decides when a slot frees up
        local reset = now + window
        local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
        if oldest and oldest[2] then
            reset = tonumber(oldest[2]) + window
        end
        return {current, 1, reset}
    end

    redis.call('ZADD', key, now, member)
    redis.call('PEXPIRE', key, window + 1000)
    return {current + 1, 0, now + window}
    """

    def __init__(
        self,
        redis: RedisClient,
        window_seconds: float = 3600.0,
        prefix: str = "ratelimit:",
    ) -> None:
        self._redis = redis
        self._window_seconds = window_seconds
        self._prefix = prefix

    @property
    def prefix(self) -> str:
        return self._prefix

    def _window_ms(self, window_seconds: float | None) -> int:
        window = window_seconds if window_seconds is not None else self._window_seconds
        if window <= 0:
            raise ValueError("window_seconds must be positive")
        return max(1, int(round(window * 1000)))

    def _fixed_key(self, identifier: str, window_ms: int, now_ms: int) -> tuple[str, int]:
        window_start = (now_ms // window_ms) * window_ms
        return RedisKeys.fixed_window(self._prefix, identifier, window_start), window_start

    async def check_limit(
        self,
        identifier: str,
        limit: int,
        window_seconds: float | None = None,
    ) -> RateLimitResult:
        """
        Count a request against the identifier's current fixed window.

        A burst straddling a window boundary can admit up to 2x limit
        requests across the two windows.

        Args:
            identifier: Caller identifier (user id, IP, route...)
            limit: Maximum requests per window
            window_seconds: Window length (defaults to the limiter's)

        Returns:
            RateLimitResult with limited status and metadata
        """
        window_ms = self._window_ms(window_seconds)
        now_ms = _now_ms()
        key, window_start = self._fixed_key(identifier, window_ms, now_ms)

        result = await self._redis.eval(
            self.FIXED_WINDOW_SCRIPT,
            keys=[key],
            args=[limit, window_ms],
        )

        count = int(result[0])
        limited = bool(int(result[1]))
        pttl = int(result[2])
        reset_ms = now_ms + pttl if pttl > 0 else window_start + window_ms

        if limited:
            logger.debug(f"Fixed window limit reached for {identifier} ({count}/{limit})")

        return _build_result(count, limited, limit, reset_ms, now_ms)

    async def check_sliding_window_limit(
        self,
        identifier: str,
        limit: int,
        window_seconds: float | None = None,
    ) -> RateLimitResult:
        """
        Count a request against the identifier's sliding window.

        Args:
            identifier: Caller identifier
            limit: Maximum requests within any window-length interval
            window_seconds: Window length (defaults to the limiter's)

        Returns:
            RateLimitResult; reset_time is when the oldest request ages out
        """
        window_ms = self._window_ms(window_seconds)
        now_ms = _now_ms()
        key = RedisKeys.sliding_window(self._prefix, identifier)
        member = f"{now_ms}-{uuid.uuid4().hex}"

        result = await self._redis.eval(
            self.SLIDING_WINDOW_SCRIPT,
            keys=[key],
            args=[now_ms, window_ms, limit, member],
        )

        count = int(result[0])
        limited = bool(int(result[1]))
        reset_ms = int(result[2])

        if limited:
            logger.debug(f"Sliding window limit reached for {identifier} ({count}/{limit})")

        return _build_result(count, limited, limit, reset_ms, now_ms)

    async def enforce_limit(
        self,
        identifier: str,
        limit: int,
        window_seconds: float | None = None,
        message: str = "Rate limit exceeded",
        sliding: bool = False,
    ) -> RateLimitResult:
        """
        Check the limit and raise when the caller is limited.

        Raises:
            RateLimitError: carrying the reset time
        """
        if sliding:
            result = await self.check_sliding_window_limit(identifier, limit, window_seconds)
        else:
            result = await self.check_limit(identifier, limit, window_seconds)

        if result.limited:
            logger.warning(f"Rate limit exceeded for {identifier}")
            raise RateLimitError(message, result.reset_time, result.retry_after)

        return result

    async def get_current_count(
        self,
        identifier: str,
        window_seconds: float | None = None,
        sliding: bool = False,
    ) -> int:
        """Current request count without counting a new request."""
        window_ms = self._window_ms(window_seconds)
        now_ms = _now_ms()

        if sliding:
            key = RedisKeys.sliding_window(self._prefix, identifier)
            # Remove expired and count
            await self._redis.zremrangebyscore(key, "-inf", now_ms - window_ms)
            return await self._redis.zcard(key)

        key, _ = self._fixed_key(identifier, window_ms, now_ms)
        value = await self._redis.get(key)
        return int(value) if value else 0

    async def get_info(
        self,
        identifier: str,
        limit: int,
        window_seconds: float | None = None,
        sliding: bool = False,
    ) -> RateLimitResult:
        """Rate limit status without incrementing; limited means the next request would be."""
        window_ms = self._window_ms(window_seconds)
        count = await self.get_current_count(identifier, window_seconds, sliding=sliding)

        now_ms = _now_ms()
        if sliding:
            reset_ms = now_ms + window_ms
        else:
            _, window_start = self._fixed_key(identifier, window_ms, now_ms)
            reset_ms = window_start + window_ms

        return _build_result(count, count >= limit, limit, reset_ms, now_ms)

    async def reset(self, identifier: str, window_seconds: float | None = None) -> bool:
        """Delete the identifier's current fixed window and its sliding window."""
        window_ms = self._window_ms(window_seconds)
        key, _ = self._fixed_key(identifier, window_ms, _now_ms())
        sliding_key = RedisKeys.sliding_window(self._prefix, identifier)

        deleted = await self._redis.delete(key, sliding_key)
        return deleted > 0

    async def check_multiple(
        self,
        identifiers: Sequence[str],
        limit: int,
        window_seconds: float | None = None,
        sliding: bool = False,
    ) -> dict[str, RateLimitResult]:
        """Check several identifiers concurrently."""
        check = self.check_sliding_window_limit if sliding else self.check_limit
        results = await asyncio.gather(
            *(check(identifier, limit, window_seconds) for identifier in identifiers)
        )
        return dict(zip(identifiers, results))

    async def cleanup(self) -> int:
        """
        Delete rate-limit keys that carry no TTL.

        Every write path sets an expiry, so a persistent key can only come
        from an external or non-atomic write.

        Returns:
            Number of keys deleted
        """
        keys = await self._redis.scan_keys(f"{self._prefix}*")
        cleaned = 0

        for key in keys:
            cleaned += await self._redis.delete_if_persistent(key)

        if cleaned:
            logger.info(f"Removed {cleaned} rate limit key(s) without expiry")
        return cleaned


def _now_ms() -> int:
    return int(time.time() * 1000)


def _build_result(
    count: int,
    limited: bool,
    limit: int,
    reset_ms: int,
    now_ms: int,
) -> RateLimitResult:
    return RateLimitResult(
        limited=limited,
        remaining=max(0, limit - count),
        reset_time=reset_ms / 1000,
        total=limit,
        retry_after=max(0.0, (reset_ms - now_ms) / 1000) if limited else 0.0,
    )
