"""Namespaced TTL cache with cache-aside reads."""

import inspect
import json
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Any, TypeVar

from pydantic import BaseModel

from rediscoord.redis.client import RedisClient
from rediscoord.redis.keys import RedisKeys

logger = logging.getLogger(__name__)

T = TypeVar("T")

_MISSING = object()


@dataclass
class CacheItem:
    """Entry for ``CacheManager.mset``."""

    key: str
    value: Any
    ttl: float | None = None


class CacheManager:
    """
    Redis-backed JSON cache.

    Features:
    - Namespace isolation
    - Default TTL with per-call override
    - Cache-aside get_or_set
    - Corrupted payloads read as misses
    """

    def __init__(
        self,
        redis: RedisClient,
        namespace: str = "cache:",
        ttl_seconds: float = 3600,
    ):
        self._redis = redis
        self._namespace = namespace
        self._ttl = ttl_seconds

    @property
    def namespace(self) -> str:
        return self._namespace

    def _key(self, key: str) -> str:
        """Generate Redis key."""
        return RedisKeys.cache(self._namespace, key)

    @staticmethod
    def _serialize(value: Any) -> str:
        if isinstance(value, BaseModel):
            value = value.model_dump(mode="json")
        return json.dumps(value, default=str)

    def _deserialize(self, key: str, raw: str | None) -> Any:
        if raw is None:
            return _MISSING
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, TypeError) as e:
            logger.warning(f"Discarding unreadable cache entry {key}: {e}")
            return _MISSING

    async def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        """
        Store a value.

        Args:
            key: Logical key (namespace is added)
            value: JSON-serializable value or pydantic model
            ttl: Expiry in seconds (defaults to the manager's)
        """
        await self._redis.set(
            self._key(key),
            self._serialize(value),
            ttl=ttl if ttl is not None else self._ttl,
        )

    async def get(self, key: str) -> Any | None:
        """
        Read a value.

        Returns:
            The decoded value, or None on a miss or unreadable payload
        """
        value = self._deserialize(key, await self._redis.get(self._key(key)))
        if value is _MISSING:
            logger.debug(f"Cache miss {key}")
            return None

        logger.debug(f"Cache hit {key}")
        return value

    async def delete(self, key: str) -> bool:
        return await self._redis.delete(self._key(key)) > 0

    async def exists(self, key: str) -> bool:
        return await self._redis.exists(self._key(key))

    async def ttl(self, key: str) -> int:
        """Remaining TTL in seconds (-1 no expiry, -2 missing)."""
        return await self._redis.ttl(self._key(key))

    async def refresh(self, key: str, ttl: float | None = None) -> bool:
        """Reset the TTL of an existing entry."""
        return await self._redis.expire(self._key(key), ttl if ttl is not None else self._ttl)

    async def get_or_set(
        self,
        key: str,
        fetch: Callable[[], Awaitable[T] | T],
        ttl: float | None = None,
    ) -> T:
        """
        Cache-aside read.

        Returns the cached value on a hit; otherwise calls ``fetch``
        (sync or async), stores its result with the TTL and returns it.
        """
        cached = await self.get(key)
        if cached is not None:
            return cached

        fresh = fetch()
        if inspect.isawaitable(fresh):
            fresh = await fresh

        await self.set(key, fresh, ttl)
        return fresh

    async def clear(self) -> int:
        """
        Delete every entry in the namespace.

        Returns:
            Number of deleted entries
        """
        keys = await self._redis.scan_keys(f"{self._namespace}*")
        if not keys:
            return 0

        deleted = await self._redis.delete(*keys)
        logger.info(f"Cleared {deleted} cache entries from {self._namespace}")
        return deleted

    async def mget(self, keys: Sequence[str]) -> list[Any | None]:
        """Read several values at once; misses and unreadable entries are None."""
        raw_values = await self._redis.mget([self._key(key) for key in keys])

        values = []
        for key, raw in zip(keys, raw_values):
            value = self._deserialize(key, raw)
            values.append(None if value is _MISSING else value)
        return values

    async def mset(self, entries: Sequence[CacheItem]) -> None:
        """Store several values in one round trip, each with its own TTL."""
        if not entries:
            return

        async with self._redis.pipeline(transaction=False) as pipe:
            for entry in entries:
                ttl = entry.ttl if entry.ttl is not None else self._ttl
                pipe.set(
                    self._key(entry.key),
                    self._serialize(entry.value),
                    px=max(1, int(round(ttl * 1000))),
                )
