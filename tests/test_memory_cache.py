"""Tests for the in-memory cache provider."""

import pytest
from unittest.mock import patch

from api_proxy.cache import MemoryCache, TTL_MISSING, TTL_NO_EXPIRY, create_cache_provider, CacheConfig


async def collect(stream):
    return b"".join([chunk async for chunk in stream])


async def chunks(*parts, fail=False):
    for part in parts:
        yield part
    if fail:
        raise RuntimeError("upstream reset")


class TestMemoryCache:
    """Test memory cache provider behaviour."""

    @pytest.mark.asyncio
    async def test_set_and_get(self):
        cache = MemoryCache()
        await cache.set("key", "value")

        assert await cache.exists("key") is True
        assert await cache.get("key") == b"value"
        assert await cache.get("missing") is None
        assert await cache.exists("missing") is False

    @pytest.mark.asyncio
    async def test_ttl_sentinels(self):
        cache = MemoryCache()
        await cache.set("forever", b"1")
        await cache.setex("expiring", 100, b"2")

        assert await cache.ttl("absent") == TTL_MISSING == -2
        assert await cache.ttl("forever") == TTL_NO_EXPIRY == -1
        assert 0 <= await cache.ttl("expiring") <= 100

    @pytest.mark.asyncio
    async def test_ttl_is_non_increasing(self):
        cache = MemoryCache()
        with patch("api_proxy.cache.backend.time.time") as mock_time:
            mock_time.return_value = 1000.0
            await cache.setex("key", 100, b"v")
            assert await cache.ttl("key") == 100

            mock_time.return_value = 1030.0
            assert await cache.ttl("key") == 70

            mock_time.return_value = 1100.0
            assert await cache.ttl("key") == 0

    @pytest.mark.asyncio
    async def test_expired_entry_is_purged(self):
        cache = MemoryCache()
        with patch("api_proxy.cache.backend.time.time") as mock_time:
            mock_time.return_value = 1000.0
            await cache.setex("key", 10, b"v")

            mock_time.return_value = 1011.0
            assert await cache.ttl("key") == TTL_MISSING
            assert len(cache) == 0
            assert await cache.exists("key") is False

    @pytest.mark.asyncio
    async def test_lazy_expiry_on_read(self):
        cache = MemoryCache()
        with patch("api_proxy.cache.backend.time.time") as mock_time:
            mock_time.return_value = 1000.0
            await cache.setex("key", 10, b"v")

            mock_time.return_value = 1020.0
            assert await cache.get("key") is None
            assert len(cache) == 0

    @pytest.mark.asyncio
    async def test_delete_and_expire(self):
        cache = MemoryCache()
        await cache.set("key", b"v")
        await cache.expire("key", 50)
        assert 0 <= await cache.ttl("key") <= 50

        await cache.delete("key")
        await cache.delete("key")
        assert await cache.exists("key") is False

    @pytest.mark.asyncio
    async def test_write_through_round_trip(self):
        cache = MemoryCache()
        body = await collect(cache.write_through("key", 100, chunks(b"he", b"llo")))

        assert body == b"hello"
        assert await cache.get("key") == b"hello"
        assert await collect(cache.read_stream("key")) == b"hello"
        assert 0 <= await cache.ttl("key") <= 100

    @pytest.mark.asyncio
    async def test_write_through_stores_nothing_on_failure(self):
        cache = MemoryCache()
        with pytest.raises(RuntimeError):
            await collect(cache.write_through("key", 100, chunks(b"partial", fail=True)))

        assert await cache.exists("key") is False

    @pytest.mark.asyncio
    async def test_write_through_stores_nothing_when_closed_early(self):
        cache = MemoryCache()
        stream = cache.write_through("key", 100, chunks(b"a", b"b"))
        assert await stream.__anext__() == b"a"
        await stream.aclose()

        assert await cache.exists("key") is False


class TestCacheConfig:
    """Test application cache provider creation."""

    def test_memory_backend(self):
        assert isinstance(create_cache_provider(CacheConfig(backend="memory")), MemoryCache)

    def test_none_backend(self):
        assert create_cache_provider(CacheConfig(backend="none")) is None

    def test_invalid_backend(self):
        with pytest.raises(ValueError):
            CacheConfig(backend="redis")
