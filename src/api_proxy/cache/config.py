"""Cache provider configuration."""

from typing import Optional

from pydantic import BaseModel, Field

from .backend import CacheProvider, MemoryCache


class CacheConfig(BaseModel):
    """Application level cache configuration."""

    backend: str = Field(default="memory", pattern="^(memory|none)$", description="Cache backend type")


def create_cache_provider(config: CacheConfig) -> Optional[CacheProvider]:
    """
    Create the application default cache provider.

    Args:
        config: Cache configuration, usually built from ``Settings.CACHE_BACKEND``

    Returns:
        CacheProvider instance or None if caching is disabled
    """
    if config.backend == "none":
        return None
    if config.backend == "memory":
        return MemoryCache()
    raise ValueError(f"Unknown cache backend: {config.backend}")
