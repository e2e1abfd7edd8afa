"""Factories wiring components to settings."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from rediscoord.config import Settings, get_settings
from rediscoord.redis.client import RedisClient
from rediscoord.redis.lock import LockManager, LockOptions
from rediscoord.redis.pool import ConnectionFactory
from rediscoord.redis.rate_limiter import RateLimiter
from rediscoord.services.cache.manager import CacheManager
from rediscoord.services.session.manager import SessionManager

# ============================================================================
# Client
# ============================================================================


def create_client(
    settings: Settings | None = None,
    connection_factory: ConnectionFactory | None = None,
) -> RedisClient:
    """Create an unconnected client; call ``connect()`` before use."""
    return RedisClient(settings or get_settings(), connection_factory)


@asynccontextmanager
async def open_client(
    settings: Settings | None = None,
    connection_factory: ConnectionFactory | None = None,
) -> AsyncGenerator[RedisClient, None]:
    """
    Connected client for the duration of the block.

    Usage:
        async with open_client() as redis:
            sessions = get_session_manager(redis)
    """
    client = create_client(settings, connection_factory)
    await client.connect()
    try:
        yield client
    finally:
        await client.disconnect()


# ============================================================================
# Components
# ============================================================================


def get_cache_manager(redis: RedisClient) -> CacheManager:
    """Get cache manager instance."""
    settings = redis.settings
    return CacheManager(redis, settings.cache_namespace, settings.cache_ttl_seconds)


def get_rate_limiter(redis: RedisClient) -> RateLimiter:
    """Get rate limiter instance."""
    settings = redis.settings
    return RateLimiter(redis, settings.rate_limit_window_seconds, settings.rate_limit_prefix)


def get_lock_manager(redis: RedisClient) -> LockManager:
    """Get lock manager instance."""
    settings = redis.settings
    return LockManager(
        redis,
        lock_prefix=settings.lock_prefix,
        channel_prefix=settings.channel_prefix,
        default_options=LockOptions(
            ttl_seconds=settings.lock_ttl_seconds,
            retry_delay=settings.lock_retry_delay_seconds,
            max_retries=settings.lock_max_retries,
        ),
    )


def get_session_manager(redis: RedisClient) -> SessionManager:
    """Get session manager instance."""
    settings = redis.settings
    return SessionManager(
        redis,
        settings.session_ttl_seconds,
        prefix=settings.session_prefix,
        index_grace_seconds=settings.session_index_grace_seconds,
    )
