"""
Shared fixtures.

Every pooled connection talks to the same in-process fakeredis server,
so Lua scripts run for real and all connections see the same keyspace.
"""

import fakeredis
import pytest
import pytest_asyncio

from rediscoord.config import Settings
from rediscoord.redis.client import RedisClient


@pytest.fixture
def server():
    """Fresh fake Redis server per test."""
    return fakeredis.FakeServer()


@pytest.fixture
def connection_factory(server):
    """Factory handing out fake clients bound to the shared server."""

    def factory():
        return fakeredis.FakeAsyncRedis(server=server, decode_responses=True)

    return factory


@pytest.fixture
def settings():
    """Settings isolated from the environment."""
    return Settings(
        _env_file=None,
        redis_max_connections=5,
        redis_acquire_timeout=0.5,
        redis_idle_check_interval=60.0,
    )


@pytest_asyncio.fixture
async def redis(settings, connection_factory):
    """Connected client, disconnected after the test."""
    client = RedisClient(settings, connection_factory)
    await client.connect()
    yield client
    await client.disconnect()
