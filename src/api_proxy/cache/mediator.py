"""
Cache mediation for proxied GET requests.

Decides hit vs miss for a cache key, replays cached responses and tees
successful upstream responses into the cache while they stream to the client.
"""

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Awaitable, Dict, Mapping, Optional

from starlette.responses import Response, StreamingResponse

from ..core.exceptions import CacheProviderError
from .backend import CacheProvider, TTL_MISSING, TTL_NO_EXPIRY

logger = logging.getLogger(__name__)

HEADERS_KEY_SUFFIX = "__headers"

# Origin headers that never reach the client or the cache on the cache path.
DISCARD_ORIGIN_HEADERS = frozenset({"cache-control", "expires", "etag", "last-modified"})

# Origin headers replayed on a cache hit.
PRESERVED_HEADERS = ("content-type", "content-language", "content-disposition")


def headers_key(cache_key: str) -> str:
    return cache_key + HEADERS_KEY_SUFFIX


class CacheMediator:
    """Cache hit/miss handling for a single request."""

    def __init__(self, provider: CacheProvider, max_age: int, indicator_header: str):
        self.provider = provider
        self.max_age = max_age
        self.indicator_header = indicator_header

    async def _call(self, operation: str, key: str, awaitable: Awaitable[Any]) -> Any:
        try:
            return await awaitable
        except CacheProviderError:
            raise
        except Exception as e:
            logger.error(
                "Cache provider call failed",
                extra={"operation": operation, "key": key, "error": str(e)},
                exc_info=True
            )
            raise CacheProviderError(
                f"Cache provider '{operation}' failed for key {key}",
                operation=operation,
                key=key,
                original_exception=e
            ) from e

    # Hit path

    async def lookup(self, key: str, accept: Optional[str] = None) -> Optional[Response]:
        """
        Return a response replayed from the cache, or None on a miss.

        A key that expires between the existence check and the TTL read is
        treated as a miss.
        """
        logger.debug("Checking if key exists in cache", extra={"key": key})
        if not await self._call("exists", key, self.provider.exists(key)):
            logger.debug("Cache miss", extra={"key": key})
            return None

        ttl, restored = await asyncio.gather(
            self._call("ttl", key, self.provider.ttl(key)),
            self._restore_headers(key),
        )
        if ttl == TTL_MISSING:
            logger.debug("Cache entry expired during lookup", extra={"key": key})
            return None

        headers = dict(restored)
        if "content-type" not in headers:
            headers["content-type"] = _content_type_from_accept(accept)
        headers[self.indicator_header] = "hit"
        max_age = self.max_age if ttl == TTL_NO_EXPIRY else ttl
        headers["cache-control"] = f"max-age={max_age}"

        logger.debug("Serving response from cache", extra={"key": key, "ttl": ttl})

        if self.provider.supports_read_stream:
            return StreamingResponse(self._read_stream(key), status_code=200, headers=headers)

        contents = await self._call("get", key, self.provider.get(key))
        if contents is None:
            return None
        return Response(content=contents, status_code=200, headers=headers)

    async def _restore_headers(self, key: str) -> Dict[str, str]:
        value = await self._call("get", headers_key(key), self.provider.get(headers_key(key)))
        if not value:
            return {}
        try:
            parsed = json.loads(value)
        except ValueError:
            logger.warning("Can't parse cached headers as json", extra={"key": key})
            return {}
        if not isinstance(parsed, dict):
            logger.warning("Cached headers entry is not an object", extra={"key": key})
            return {}
        return {str(name).lower(): str(value) for name, value in parsed.items()}

    async def _read_stream(self, key: str) -> AsyncIterator[bytes]:
        try:
            async for chunk in self.provider.read_stream(key):
                yield chunk
        except Exception as e:
            raise CacheProviderError(
                f"Cache provider 'read_stream' failed for key {key}",
                operation="read_stream",
                key=key,
                original_exception=e
            ) from e

    # Miss path

    def miss_headers(self) -> Dict[str, str]:
        """Headers every miss response carries, whatever happens upstream."""
        return {
            self.indicator_header: "miss",
            "cache-control": f"max-age={self.max_age}",
        }

    @staticmethod
    def strip_origin_cache_headers(headers: Mapping[str, str]) -> Dict[str, str]:
        return {
            name: value for name, value in headers.items()
            if name.lower() not in DISCARD_ORIGIN_HEADERS
        }

    @staticmethod
    def preserved_headers(headers: Mapping[str, str]) -> Dict[str, str]:
        return {name: headers[name] for name in PRESERVED_HEADERS if name in headers}

    async def store_headers(self, key: str, headers: Mapping[str, str]) -> None:
        """Write the headers companion entry."""
        logger.debug("Writing original headers to cache", extra={"key": key})
        await self._call(
            "setex",
            headers_key(key),
            self.provider.setex(headers_key(key), self.max_age, json.dumps(dict(headers)))
        )

    async def tee(self, key: str, stream: AsyncIterator[bytes],
                  headers: Mapping[str, str]) -> AsyncIterator[bytes]:
        """
        Stream ``stream`` to the caller while writing it to the cache.

        The headers companion is written when iteration starts, before the
        first body chunk, so a response whose body is never consumed leaves
        nothing behind. If the stream fails or is closed early the companion is
        removed again, together with any primary entry. When the companion
        cannot be written the body is streamed without caching.
        """
        try:
            await self.store_headers(key, headers)
        except CacheProviderError:
            logger.warning("Streaming response without caching it", extra={"key": key})
            async for chunk in stream:
                yield chunk
            return

        logger.debug("Caching api response", extra={"key": key, "max_age": self.max_age})
        try:
            async for chunk in self.provider.write_through(key, self.max_age, stream):
                yield chunk
        except BaseException as e:
            logger.warning(
                "Response stream did not complete, discarding cache entry",
                extra={"key": key, "error": repr(e)}
            )
            await asyncio.shield(self._discard(key))
            raise

    async def _discard(self, key: str) -> None:
        try:
            await self.provider.delete(headers_key(key))
            await self.provider.delete(key)
        except Exception as e:
            logger.error(
                "Failed to discard incomplete cache entry",
                extra={"key": key, "error": str(e)},
                exc_info=True
            )


def _content_type_from_accept(accept: Optional[str]) -> str:
    if accept and "," not in accept and "*" not in accept:
        return accept.split(";")[0].strip() or "text/plain"
    return "text/plain"
