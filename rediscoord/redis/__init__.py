"""Redis client, pool and coordination primitives."""

from rediscoord.redis.client import RedisClient
from rediscoord.redis.keys import RedisKeys
from rediscoord.redis.lock import LockInfo, LockManager, LockOptions
from rediscoord.redis.pool import ConnectionPool, PooledConnection
from rediscoord.redis.rate_limiter import RateLimiter, RateLimitResult

__all__ = [
    "ConnectionPool",
    "LockInfo",
    "LockManager",
    "LockOptions",
    "PooledConnection",
    "RateLimitResult",
    "RateLimiter",
    "RedisClient",
    "RedisKeys",
]
