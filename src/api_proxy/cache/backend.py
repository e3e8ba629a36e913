"""Cache provider capability and the in-memory implementation."""

import threading
import time
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import AsyncIterator, Dict, Optional, Union

logger = logging.getLogger(__name__)

# TTL sentinels, same values a Redis TTL command returns.
TTL_MISSING = -2
TTL_NO_EXPIRY = -1

CacheValue = Union[bytes, str]


def _to_bytes(value: CacheValue) -> bytes:
    if isinstance(value, bytes):
        return value
    return str(value).encode("utf-8")


class CacheProvider(ABC):
    """
    Abstract base class for response cache providers.

    Providers store opaque byte values with an optional expiry. Implementations
    must be safe to use from concurrent requests; the proxy never locks across
    keys.
    """

    #: Providers that can stream a value back set this and override ``read_stream``.
    supports_read_stream: bool = False

    @abstractmethod
    async def exists(self, key: str) -> bool:
        """Return True if ``key`` holds a live (non-expired) value."""

    @abstractmethod
    async def get(self, key: str) -> Optional[bytes]:
        """Return the value for ``key`` or None."""

    @abstractmethod
    async def set(self, key: str, value: CacheValue) -> None:
        """Store ``value`` under ``key`` with no expiry."""

    @abstractmethod
    async def setex(self, key: str, max_age: int, value: CacheValue) -> None:
        """Store ``value`` under ``key`` for ``max_age`` seconds."""

    @abstractmethod
    async def ttl(self, key: str) -> int:
        """
        Remaining lifetime of ``key`` in seconds.

        Returns -2 if the key does not exist, -1 if it exists with no expiry.
        """

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove ``key``. Missing keys are ignored."""

    async def read_stream(self, key: str) -> AsyncIterator[bytes]:
        """Stream the value for ``key``. Only available when ``supports_read_stream``."""
        raise NotImplementedError(f"{type(self).__name__} does not support streaming reads")
        yield b""  # pragma: no cover

    async def write_through(self, key: str, max_age: int,
                            chunks: AsyncIterator[bytes]) -> AsyncIterator[bytes]:
        """
        Pass ``chunks`` through unchanged while collecting them.

        The collected value is stored with ``setex`` only once the source is
        exhausted. An error or an early close of the generator stores nothing.
        """
        buffer = bytearray()
        async for chunk in chunks:
            buffer.extend(chunk)
            yield chunk
        await self.setex(key, max_age, bytes(buffer))


@dataclass
class _Entry:
    contents: bytes
    expires: Optional[float] = None


class MemoryCache(CacheProvider):
    """Thread-safe in-process cache provider with lazy expiry."""

    supports_read_stream = True

    def __init__(self):
        self._entries: Dict[str, _Entry] = {}
        self._lock = threading.Lock()

    def _live_entry(self, key: str) -> Optional[_Entry]:
        # Caller holds the lock.
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires is not None and entry.expires - time.time() < 0:
            del self._entries[key]
            return None
        return entry

    async def exists(self, key: str) -> bool:
        with self._lock:
            return self._live_entry(key) is not None

    async def get(self, key: str) -> Optional[bytes]:
        with self._lock:
            entry = self._live_entry(key)
            return entry.contents if entry else None

    async def set(self, key: str, value: CacheValue) -> None:
        with self._lock:
            self._entries[key] = _Entry(contents=_to_bytes(value))

    async def setex(self, key: str, max_age: int, value: CacheValue) -> None:
        with self._lock:
            self._entries[key] = _Entry(
                contents=_to_bytes(value),
                expires=time.time() + max_age if max_age else None,
            )

    async def expire(self, key: str, max_age: int) -> None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None:
                entry.expires = time.time() + max_age

    async def ttl(self, key: str) -> int:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return TTL_MISSING
            if entry.expires is None:
                return TTL_NO_EXPIRY

            ttl = round(entry.expires - time.time())
            if ttl < 0:
                del self._entries[key]
                logger.debug("Purged expired cache entry", extra={"key": key})
                return TTL_MISSING
            return ttl

    async def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    async def read_stream(self, key: str) -> AsyncIterator[bytes]:
        contents = await self.get(key)
        if contents:
            yield contents

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
