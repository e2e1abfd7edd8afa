"""Configuration using Pydantic Settings."""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Coordination layer settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="REDISCOORD_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    log_level: str = "INFO"

    # Redis
    redis_url: str = "redis://localhost:6379/0"
    redis_max_connections: int = 10
    redis_connect_timeout: float = 10.0
    redis_socket_timeout: float = 5.0
    redis_idle_timeout: float = 30.0
    redis_idle_check_interval: float = 30.0
    redis_acquire_timeout: float = 5.0
    redis_auto_reconnect: bool = True
    redis_max_retries: int = 10

    # Cache
    cache_namespace: str = "cache:"
    cache_ttl_seconds: int = 3600  # 1 hour

    # Session
    session_prefix: str = "session:"
    session_ttl_seconds: int = 86400  # 24 hours
    session_index_grace_seconds: int = 3600

    # Rate Limiting
    rate_limit_prefix: str = "ratelimit:"
    rate_limit_window_seconds: float = 3600.0

    # Locks / PubSub
    lock_prefix: str = "lock:"
    lock_ttl_seconds: float = 30.0
    lock_retry_delay_seconds: float = 0.1
    lock_max_retries: int = 3
    channel_prefix: str = "channel:"

    # Maintenance
    scan_count: int = 500
    maintenance_interval_seconds: float = 60.0


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
