"""Async Redis client with connection pooling."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncGenerator, Awaitable, Callable, Mapping, Sequence
from contextlib import asynccontextmanager
from typing import Any, TypeVar

import redis.asyncio as redis
from redis.asyncio import Redis
from redis.asyncio.client import Pipeline
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff, NoBackoff

from rediscoord.config import Settings, get_settings
from rediscoord.exceptions import StoreConnectionError
from rediscoord.redis.pool import ConnectionFactory, ConnectionPool, PooledConnection

logger = logging.getLogger(__name__)

T = TypeVar("T")

RedisValue = str | int | float | bytes

EVENTS = ("connect", "disconnect", "error")

_TRANSPORT_ERRORS = (redis.ConnectionError, redis.TimeoutError, OSError)

DELETE_IF_PERSISTENT_SCRIPT = """
if redis.call('PTTL', KEYS[1]) == -1 then
    return redis.call('DEL', KEYS[1])
end
return 0
"""


def build_connection_factory(settings: Settings) -> ConnectionFactory:
    """Create a factory for single-connection clients from settings."""

    def factory() -> Redis:
        if settings.redis_auto_reconnect:
            retry = Retry(ExponentialBackoff(), settings.redis_max_retries)
        else:
            retry = Retry(NoBackoff(), 0)

        return Redis.from_url(
            settings.redis_url,
            single_connection_client=True,
            decode_responses=True,
            socket_timeout=settings.redis_socket_timeout,
            socket_connect_timeout=settings.redis_connect_timeout,
            retry=retry,
        )

    return factory


class RedisClient:
    """
    Typed command surface over a bounded connection pool.

    Features:
    - Explicit connect/disconnect lifecycle
    - Every command runs on one checked-out connection
    - Transport failures discard the connection and raise StoreConnectionError
    - Periodic sweep of idle connections
    - connect/disconnect/error event hooks
    """

    def __init__(
        self,
        settings: Settings | None = None,
        connection_factory: ConnectionFactory | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._factory = connection_factory or build_connection_factory(self._settings)
        self._pool = self._build_pool()
        self._events: dict[str, Callable[..., Any]] = {}
        self._sweeper: asyncio.Task | None = None
        self._initialized = False

    def _build_pool(self) -> ConnectionPool:
        return ConnectionPool(
            self._factory,
            max_connections=self._settings.redis_max_connections,
            acquire_timeout=self._settings.redis_acquire_timeout,
            idle_timeout=self._settings.redis_idle_timeout,
        )

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def pool(self) -> ConnectionPool:
        return self._pool

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def on(self, event: str, handler: Callable[..., Any]) -> None:
        """Register a handler for ``connect``, ``disconnect`` or ``error``."""
        if event not in EVENTS:
            raise ValueError(f"Unknown event: {event}")
        self._events[event] = handler

    def off(self, event: str) -> None:
        """Remove the handler for an event."""
        self._events.pop(event, None)

    def _emit(self, event: str, *args: Any) -> None:
        handler = self._events.get(event)
        if handler is None:
            return
        try:
            handler(*args)
        except Exception:
            logger.exception(f"Handler for '{event}' event failed")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Verify connectivity and start the idle connection sweep.

        A client that was disconnected gets a fresh pool and can be used again.
        """
        if self._initialized:
            return

        if self._pool.closed:
            self._pool = self._build_pool()

        try:
            conn = await self._pool.acquire()
            await self._pool.release(conn)
        except StoreConnectionError as e:
            logger.error(f"Failed to connect to Redis: {e}")
            self._emit("error", e)
            raise

        self._sweeper = asyncio.create_task(self._sweep_idle())
        self._initialized = True
        logger.info("Redis connection established")
        self._emit("connect")

    async def disconnect(self) -> None:
        """Stop the sweep and close every pooled connection."""
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None

        await self._pool.close()
        self._initialized = False
        logger.info("Redis connection closed")
        self._emit("disconnect")

    async def _sweep_idle(self) -> None:
        interval = self._settings.redis_idle_check_interval
        while True:
            await asyncio.sleep(interval)
            try:
                await self._pool.cleanup()
            except Exception:
                logger.exception("Idle connection sweep failed")

    @property
    def connected(self) -> bool:
        return self._initialized and not self._pool.closed

    @property
    def pool_size(self) -> int:
        return self._pool.size

    @property
    def available_connections(self) -> int:
        return self._pool.available

    async def health_check(self) -> bool:
        """Check if Redis is healthy."""
        try:
            return bool(await self.execute(lambda c: c.ping()))
        except Exception as e:
            logger.error(f"Redis health check failed: {e}")
            return False

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(self, operation: Callable[[Redis], Awaitable[T]]) -> T:
        """
        Run one operation on a checked-out connection.

        Args:
            operation: Callable receiving the connection's client

        Returns:
            The operation's result

        Raises:
            StoreConnectionError: pool or transport failure
        """
        try:
            conn = await self._pool.acquire()
        except StoreConnectionError as e:
            self._emit("error", e)
            raise

        try:
            return await operation(conn.client)
        except _TRANSPORT_ERRORS as e:
            conn.mark_dead()
            error = StoreConnectionError(f"Redis transport failure: {e}")
            self._emit("error", error)
            raise error from e
        except redis.RedisError as e:
            self._emit("error", e)
            raise
        finally:
            await self._pool.release(conn)

    @asynccontextmanager
    async def pipeline(self, transaction: bool = True) -> AsyncGenerator[Pipeline, None]:
        """Context manager for Redis pipelines on a single connection."""
        conn: PooledConnection = await self._pool.acquire()
        try:
            async with conn.client.pipeline(transaction=transaction) as pipe:
                yield pipe
                await pipe.execute()
        except _TRANSPORT_ERRORS as e:
            conn.mark_dead()
            raise StoreConnectionError(f"Redis transport failure: {e}") from e
        finally:
            await self._pool.release(conn)

    # ------------------------------------------------------------------
    # Strings
    # ------------------------------------------------------------------

    async def get(self, key: str) -> str | None:
        return await self.execute(lambda c: c.get(key))

    async def set(
        self,
        key: str,
        value: RedisValue,
        ttl: float | None = None,
        keep_ttl: bool = False,
        only_if_exists: bool = False,
    ) -> bool:
        """
        Set a string value.

        SET and its expiry are sent as one command, so the key is never
        observable without its TTL.

        Args:
            key: Redis key
            value: Value to store
            ttl: Optional expiry in seconds
            keep_ttl: Preserve the key's current expiry
            only_if_exists: SET XX, write only over an existing key

        Returns:
            True if the value was written
        """
        options: dict[str, Any] = {}
        if ttl is not None:
            options["px"] = _to_ms(ttl)
        elif keep_ttl:
            options["keepttl"] = True
        if only_if_exists:
            options["xx"] = True

        return bool(await self.execute(lambda c: c.set(key, value, **options)))

    async def set_if_absent(self, key: str, value: RedisValue, ttl: float) -> bool:
        """SET NX PX: True only if the key did not exist."""
        result = await self.execute(lambda c: c.set(key, value, nx=True, px=_to_ms(ttl)))
        return bool(result)

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return await self.execute(lambda c: c.delete(*keys))

    async def exists(self, key: str) -> bool:
        return await self.execute(lambda c: c.exists(key)) > 0

    async def expire(self, key: str, seconds: float) -> bool:
        return bool(await self.execute(lambda c: c.pexpire(key, _to_ms(seconds))))

    async def ttl(self, key: str) -> int:
        """Remaining TTL in seconds (-1 no expiry, -2 missing key)."""
        return await self.execute(lambda c: c.ttl(key))

    async def pttl(self, key: str) -> int:
        """Remaining TTL in milliseconds (-1 no expiry, -2 missing key)."""
        return await self.execute(lambda c: c.pttl(key))

    async def incr(self, key: str) -> int:
        return await self.execute(lambda c: c.incr(key))

    async def incrby(self, key: str, increment: int) -> int:
        return await self.execute(lambda c: c.incrby(key, increment))

    async def decr(self, key: str) -> int:
        return await self.execute(lambda c: c.decr(key))

    async def mget(self, keys: Sequence[str]) -> list[str | None]:
        if not keys:
            return []
        return await self.execute(lambda c: c.mget(list(keys)))

    # ------------------------------------------------------------------
    # Hashes
    # ------------------------------------------------------------------

    async def hset(self, key: str, field: str, value: RedisValue) -> int:
        return await self.execute(lambda c: c.hset(key, field, value))

    async def hget(self, key: str, field: str) -> str | None:
        return await self.execute(lambda c: c.hget(key, field))

    async def hmset(self, key: str, mapping: Mapping[str, RedisValue]) -> int:
        return await self.execute(lambda c: c.hset(key, mapping=dict(mapping)))

    async def hmget(self, key: str, fields: Sequence[str]) -> list[str | None]:
        return await self.execute(lambda c: c.hmget(key, list(fields)))

    async def hgetall(self, key: str) -> dict[str, str]:
        return await self.execute(lambda c: c.hgetall(key))

    # ------------------------------------------------------------------
    # Sets
    # ------------------------------------------------------------------

    async def sadd(self, key: str, *members: RedisValue) -> int:
        return await self.execute(lambda c: c.sadd(key, *members))

    async def srem(self, key: str, *members: RedisValue) -> int:
        return await self.execute(lambda c: c.srem(key, *members))

    async def sismember(self, key: str, member: RedisValue) -> bool:
        return bool(await self.execute(lambda c: c.sismember(key, member)))

    async def smembers(self, key: str) -> set[str]:
        return await self.execute(lambda c: c.smembers(key))

    # ------------------------------------------------------------------
    # Sorted sets
    # ------------------------------------------------------------------

    async def zadd(self, key: str, mapping: Mapping[str, float]) -> int:
        return await self.execute(lambda c: c.zadd(key, dict(mapping)))

    async def zremrangebyscore(
        self, key: str, min_score: float | str, max_score: float | str
    ) -> int:
        return await self.execute(lambda c: c.zremrangebyscore(key, min_score, max_score))

    async def zcard(self, key: str) -> int:
        return await self.execute(lambda c: c.zcard(key))

    # ------------------------------------------------------------------
    # Scripts, PubSub, Scan
    # ------------------------------------------------------------------

    async def eval(
        self,
        script: str,
        keys: Sequence[str] = (),
        args: Sequence[RedisValue] = (),
    ) -> Any:
        """
        Run a Lua script atomically on the server.

        Errors raised by the script propagate unchanged.
        """
        return await self.execute(lambda c: c.eval(script, len(keys), *keys, *args))

    async def delete_if_persistent(self, key: str) -> int:
        """Delete a key only if it has no expiry, in one atomic step."""
        return int(await self.eval(DELETE_IF_PERSISTENT_SCRIPT, keys=[key]))

    async def publish(self, channel: str, message: str) -> int:
        """Publish to a channel; returns the number of subscribers reached."""
        return await self.execute(lambda c: c.publish(channel, message))

    async def scan_keys(self, pattern: str, count: int | None = None) -> list[str]:
        """
        Collect keys matching a pattern with cursor-based SCAN.

        Never issues KEYS, so the server is not blocked on large keyspaces.
        """
        batch = count or self._settings.scan_count

        async def scan(client: Redis) -> list[str]:
            keys: list[str] = []
            async for key in client.scan_iter(match=pattern, count=batch):
                keys.append(key)
            return keys

        return await self.execute(scan)

    async def ping(self) -> bool:
        return bool(await self.execute(lambda c: c.ping()))


def _to_ms(seconds: float) -> int:
    """Convert a TTL in seconds to a positive millisecond count."""
    return max(1, int(round(seconds * 1000)))
