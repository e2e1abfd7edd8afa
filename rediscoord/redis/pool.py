"""Bounded pool of single-connection Redis clients."""

import asyncio
import logging
import time
import uuid
from collections.abc import AsyncGenerator, Callable
from contextlib import asynccontextmanager

import redis.asyncio as redis
from redis.asyncio import Redis

from rediscoord.exceptions import StoreConnectionError

logger = logging.getLogger(__name__)

ConnectionFactory = Callable[[], Redis]


class PooledConnection:
    """A Redis client checked out to exactly one caller at a time."""

    def __init__(self, client: Redis) -> None:
        self.id = uuid.uuid4().hex[:8]
        self.client = client
        self.connected = False
        self.last_used = time.monotonic()

    async def connect(self) -> None:
        """Open the connection and verify it with PING."""
        try:
            await self.client.ping()
        except (redis.ConnectionError, redis.TimeoutError, OSError) as e:
            self.connected = False
            raise StoreConnectionError(f"Failed to connect: {e}") from e

        self.connected = True
        self.touch()

    async def disconnect(self) -> None:
        """Close the underlying client."""
        self.connected = False
        try:
            await self.client.aclose()
        except (redis.RedisError, OSError) as e:
            logger.debug(f"Error closing connection {self.id}: {e}")

    def mark_dead(self) -> None:
        """Flag the connection so the pool discards it on release."""
        self.connected = False

    def touch(self) -> None:
        self.last_used = time.monotonic()

    def idle_for(self, now: float | None = None) -> float:
        return (now if now is not None else time.monotonic()) - self.last_used


class ConnectionPool:
    """
    Bounded pool of live Redis connections.

    Invariants:
    - At most ``max_connections`` connections exist (including ones
      still being opened), so at most that many are checked out.
    - A connection is either available or held by one caller, never both.
    """

    def __init__(
        self,
        connection_factory: ConnectionFactory,
        max_connections: int = 10,
        acquire_timeout: float = 5.0,
        idle_timeout: float = 30.0,
    ) -> None:
        if max_connections < 1:
            raise ValueError("max_connections must be at least 1")

        self._factory = connection_factory
        self._max_connections = max_connections
        self._acquire_timeout = acquire_timeout
        self._idle_timeout = idle_timeout

        self._connections: list[PooledConnection] = []
        self._available: list[PooledConnection] = []
        self._in_use: set[PooledConnection] = set()
        self._opening = 0
        self._closed = False
        self._condition = asyncio.Condition()

    @property
    def size(self) -> int:
        """Number of tracked connections."""
        return len(self._connections)

    @property
    def available(self) -> int:
        """Number of idle connections ready to be checked out."""
        return len(self._available)

    @property
    def in_use(self) -> int:
        """Number of connections currently checked out."""
        return len(self._in_use)

    @property
    def max_connections(self) -> int:
        return self._max_connections

    @property
    def closed(self) -> bool:
        return self._closed

    async def acquire(self) -> PooledConnection:
        """
        Check out a live connection.

        Reuses an idle connection, opens a new one while below the
        maximum, otherwise waits for a release until the acquire
        timeout elapses.

        Raises:
            StoreConnectionError: on timeout, closed pool or connect failure
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._acquire_timeout
        dead: list[PooledConnection] = []

        async with self._condition:
            while True:
                if self._closed:
                    raise StoreConnectionError("Connection pool is closed")

                connection = self._pop_available(dead)
                if connection is not None:
                    self._in_use.add(connection)
                    break

                if len(self._connections) + self._opening < self._max_connections:
                    self._opening += 1
                    break

                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise StoreConnectionError(
                        "Pool timeout: no connections available",
                        {"max_connections": self._max_connections},
                    )
                try:
                    await asyncio.wait_for(self._condition.wait(), remaining)
                except asyncio.TimeoutError:
                    raise StoreConnectionError(
                        "Pool timeout: no connections available",
                        {"max_connections": self._max_connections},
                    ) from None

        for conn in dead:
            await conn.disconnect()

        if connection is not None:
            connection.touch()
            return connection

        return await self._open()

    async def release(self, connection: PooledConnection) -> None:
        """Return a connection; dead connections are dropped from the pool."""
        async with self._condition:
            self._in_use.discard(connection)

            keep = connection.connected and not self._closed
            if keep:
                if connection not in self._available:
                    connection.touch()
                    self._available.append(connection)
            else:
                self._forget(connection)

            self._condition.notify()

        if not keep:
            logger.warning(f"Discarding dead connection {connection.id}")
            await connection.disconnect()

    @asynccontextmanager
    async def connection(self) -> AsyncGenerator[PooledConnection, None]:
        """Context manager pairing acquire with release."""
        conn = await self.acquire()
        try:
            yield conn
        finally:
            await self.release(conn)

    async def cleanup(self) -> int:
        """
        Disconnect connections idle longer than the idle timeout.

        Returns:
            Number of connections closed
        """
        now = time.monotonic()

        async with self._condition:
            idle = [c for c in self._available if c.idle_for(now) > self._idle_timeout]
            for conn in idle:
                self._available.remove(conn)
                self._forget(conn)
            if idle:
                self._condition.notify(len(idle))

        for conn in idle:
            await conn.disconnect()

        if idle:
            logger.debug(f"Closed {len(idle)} idle connection(s)")
        return len(idle)

    async def close(self) -> None:
        """Disconnect every tracked connection and refuse new checkouts."""
        async with self._condition:
            self._closed = True
            connections = list(self._connections)
            self._connections.clear()
            self._available.clear()
            self._in_use.clear()
            self._condition.notify_all()

        for conn in connections:
            await conn.disconnect()

    async def _open(self) -> PooledConnection:
        connection: PooledConnection | None = None
        try:
            connection = PooledConnection(self._factory())
            await connection.connect()
        except BaseException:
            async with self._condition:
                self._opening -= 1
                self._condition.notify()
            if connection is not None:
                await connection.disconnect()
            raise

        async with self._condition:
            self._opening -= 1
            if self._closed:
                closed = True
            else:
                closed = False
                self._connections.append(connection)
                self._in_use.add(connection)

        if closed:
            await connection.disconnect()
            raise StoreConnectionError("Connection pool is closed")

        logger.debug(f"Opened connection {connection.id} ({self.size}/{self._max_connections})")
        return connection

    def _pop_available(self, dead: list[PooledConnection]) -> PooledConnection | None:
        while self._available:
            connection = self._available.pop()
            if connection.connected:
                return connection
            self._forget(connection)
            dead.append(connection)
        return None

    def _forget(self, connection: PooledConnection) -> None:
        if connection in self._connections:
            self._connections.remove(connection)
