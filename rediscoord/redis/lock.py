"""Distributed locks with ownership tokens, plus channel publishing."""

import asyncio
import inspect
import json
import logging
import time
import uuid
from collections.abc import AsyncGenerator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, replace
from typing import Any, TypeVar

from rediscoord.exceptions import LockError
from rediscoord.redis.client import RedisClient
from rediscoord.redis.keys import RedisKeys

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class LockOptions:
    """Lock TTL and retry behavior."""

    ttl_seconds: float = 30.0
    retry_delay: float = 0.1
    max_retries: int = 3

    def get_delay(self, attempt: int) -> float:
        """Delay before retry ``attempt`` (1-based), growing linearly."""
        return self.retry_delay * attempt


@dataclass
class LockInfo:
    """Snapshot of a held lock."""

    resource: str
    token: str | None
    ttl: int


class LockManager:
    """
    Distributed mutual exclusion and broadcast messaging over Redis.

    A lock is ``SET key token NX PX ttl``. Release and extend compare the
    stored token inside a Lua script, so a caller whose lock expired and
    was taken by someone else can never delete or prolong the new holder's
    lock.
    """

    # Delete only if the caller still owns the lock
    RELEASE_SCRIPT = """
    if redis.call('GET', KEYS[1]) == ARGV[1] then
        return redis.call('DEL', KEYS[1])
    else
        return 0
    end
    """

    # Reset the TTL only if the caller still owns the lock
    EXTEND_SCRIPT = """
    if redis.call('GET', KEYS[1]) == ARGV[1] then
        return redis.call('PEXPIRE', KEYS[1], ARGV[2])
    else
        return 0
    end
    """

    def __init__(
        self,
        redis: RedisClient,
        lock_prefix: str = "lock:",
        channel_prefix: str = "channel:",
        default_options: LockOptions | None = None,
    ) -> None:
        self._redis = redis
        self._lock_prefix = lock_prefix
        self._channel_prefix = channel_prefix
        self._defaults = default_options or LockOptions()

    def _key(self, resource: str) -> str:
        return RedisKeys.lock(self._lock_prefix, resource)

    @staticmethod
    def _generate_token() -> str:
        return f"{int(time.time() * 1000):x}-{uuid.uuid4().hex}"

    def _resolve(self, ttl: float | None, options: LockOptions | None) -> LockOptions:
        opts = options or self._defaults
        if ttl is not None:
            opts = replace(opts, ttl_seconds=ttl)
        return opts

    async def acquire_lock(
        self,
        resource: str,
        ttl: float | None = None,
        options: LockOptions | None = None,
    ) -> str | None:
        """
        Try to take the lock for a resource.

        Contention is an expected outcome: after the retry budget is spent
        this returns None instead of raising. Store errors propagate.

        Args:
            resource: Resource name
            ttl: Lock TTL in seconds (overrides options.ttl_seconds)
            options: Retry/TTL options

        Returns:
            The ownership token, or None if the lock is held elsewhere
        """
        opts = self._resolve(ttl, options)
        key = self._key(resource)
        token = self._generate_token()

        attempt = 0
        while True:
            if await self._redis.set_if_absent(key, token, opts.ttl_seconds):
                logger.debug(f"Acquired lock {resource}")
                return token

            if attempt >= opts.max_retries:
                break

            attempt += 1
            await asyncio.sleep(opts.get_delay(attempt))

        logger.warning(f"Could not acquire lock {resource} after {attempt} retries")
        return None

    async def release_lock(self, resource: str, token: str) -> bool:
        """Release the lock if ``token`` still owns it."""
        result = await self._redis.eval(
            self.RELEASE_SCRIPT,
            keys=[self._key(resource)],
            args=[token],
        )
        released = int(result) == 1
        if released:
            logger.debug(f"Released lock {resource}")
        return released

    async def extend_lock(self, resource: str, token: str, ttl: float) -> bool:
        """Reset the lock TTL if ``token`` still owns it."""
        result = await self._redis.eval(
            self.EXTEND_SCRIPT,
            keys=[self._key(resource)],
            args=[token, max(1, int(round(ttl * 1000)))],
        )
        return int(result) == 1

    async def is_locked(self, resource: str) -> bool:
        return await self._redis.exists(self._key(resource))

    async def get_lock_info(self, resource: str) -> LockInfo:
        """Current token and TTL (seconds) of a lock."""
        key = self._key(resource)
        token, ttl = await asyncio.gather(self._redis.get(key), self._redis.ttl(key))
        return LockInfo(resource=resource, token=token, ttl=ttl)

    async def force_release_lock(self, resource: str) -> bool:
        """Delete a lock regardless of owner (admin use)."""
        deleted = await self._redis.delete(self._key(resource))
        if deleted:
            logger.warning(f"Force released lock {resource}")
        return deleted > 0

    @asynccontextmanager
    async def lock(
        self,
        resource: str,
        ttl: float | None = None,
        options: LockOptions | None = None,
    ) -> AsyncGenerator[str, None]:
        """
        Hold a lock for the duration of the block.

        Usage:
            async with locks.lock("report:42") as token:
                ...

        Raises:
            LockError: if the lock cannot be acquired
        """
        token = await self.acquire_lock(resource, ttl, options)
        if token is None:
            raise LockError(resource)

        try:
            yield token
        finally:
            await self.release_lock(resource, token)

    async def with_lock(
        self,
        resource: str,
        task: Callable[[], Awaitable[T] | T],
        ttl: float | None = None,
        options: LockOptions | None = None,
    ) -> T:
        """
        Run ``task`` while holding the lock; released on every exit path.

        Raises:
            LockError: if the lock cannot be acquired
        """
        async with self.lock(resource, ttl, options):
            result = task()
            if inspect.isawaitable(result):
                result = await result
            return result

    async def publish(self, channel: str, message: Any) -> int:
        """
        Broadcast a message on a namespaced channel.

        Fire-and-forget: nothing is persisted.

        Returns:
            Number of subscribers that received the message
        """
        payload = message if isinstance(message, str) else json.dumps(message, default=str)
        return await self._redis.publish(RedisKeys.channel(self._channel_prefix, channel), payload)

    async def get_active_locks(self) -> list[LockInfo]:
        """List every lock currently held."""
        keys = await self._redis.scan_keys(f"{self._lock_prefix}*")
        locks: list[LockInfo] = []

        for key in keys:
            token, ttl = await asyncio.gather(self._redis.get(key), self._redis.ttl(key))
            if token:
                locks.append(
                    LockInfo(
                        resource=RedisKeys.strip_prefix(self._lock_prefix, key),
                        token=token,
                        ttl=ttl,
                    )
                )

        return locks

    async def cleanup_locks(self) -> int:
        """
        Delete lock keys that have no TTL.

        Every acquisition sets an expiry, so a persistent lock key would
        otherwise block its resource forever.

        Returns:
            Number of locks removed
        """
        keys = await self._redis.scan_keys(f"{self._lock_prefix}*")
        cleaned = 0

        for key in keys:
            cleaned += await self._redis.delete_if_persistent(key)

        if cleaned:
            logger.info(f"Removed {cleaned} lock(s) without expiry")
        return cleaned
