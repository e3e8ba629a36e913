"""Response caching module."""

from .backend import CacheProvider, MemoryCache, TTL_MISSING, TTL_NO_EXPIRY
from .config import CacheConfig, create_cache_provider
from .mediator import CacheMediator, headers_key

__all__ = [
    "CacheProvider",
    "MemoryCache",
    "TTL_MISSING",
    "TTL_NO_EXPIRY",
    "CacheConfig",
    "create_cache_provider",
    "CacheMediator",
    "headers_key",
]
