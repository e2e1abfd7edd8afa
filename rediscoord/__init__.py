"""Redis-backed coordination primitives."""

from rediscoord.config import Settings, get_settings
from rediscoord.exceptions import (
    CoordinationError,
    LockError,
    RateLimitError,
    StoreConnectionError,
)
from rediscoord.redis import (
    ConnectionPool,
    LockManager,
    LockOptions,
    RateLimiter,
    RateLimitResult,
    RedisClient,
)
from rediscoord.services.cache import CacheManager
from rediscoord.services.session import SessionManager

__version__ = "1.0.0"

__all__ = [
    "CacheManager",
    "ConnectionPool",
    "CoordinationError",
    "LockError",
    "LockManager",
    "LockOptions",
    "RateLimitError",
    "RateLimitResult",
    "RateLimiter",
    "RedisClient",
    "SessionManager",
    "Settings",
    "StoreConnectionError",
    "get_settings",
]
