from rediscoord.services.cache.manager import CacheItem, CacheManager

__all__ = ["CacheItem", "CacheManager"]
