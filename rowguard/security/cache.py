from __future__ import annotations

import logging
import time
from fnmatch import fnmatchcase
from threading import Lock
from typing import Any, Protocol, runtime_checkable

from cachetools import LRUCache


logger = logging.getLogger("rowguard.cache")

DEFAULT_CACHE_MAX_ENTRIES = 4096


@runtime_checkable
class CacheProvider(Protocol):
    """Pluggable store for resolved context data.

    Values are small serializable mappings. Implementations must tolerate
    concurrent readers and writers; last writer wins.
    """

    async def get(self, key: str) -> Any | None:
        ...

    async def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        ...

    async def delete(self, key: str) -> None:
        ...


@runtime_checkable
class PatternCacheProvider(CacheProvider, Protocol):
    async def delete_pattern(self, pattern: str) -> int:
        ...


class InMemoryCacheProvider:
    """In-process LRU cache with per-entry expiry.

    Expired entries are dropped lazily on read; ``purge_expired`` sweeps them
    explicitly. ``delete_pattern`` accepts shell-style globs (``rls:*:42:*``).
    """

    def __init__(self, maxsize: int = DEFAULT_CACHE_MAX_ENTRIES, *, clock: Any = time.monotonic) -> None:
        self._entries: LRUCache[str, tuple[Any, float]] = LRUCache(maxsize=maxsize)
        self._lock = Lock()
        self._clock = clock

    async def get(self, key: str) -> Any | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if self._clock() >= expires_at:
                self._entries.pop(key, None)
                return None
            return value

    async def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        with self._lock:
            self._entries[key] = (value, self._clock() + ttl_seconds)
        logger.debug("cache.set", extra={"cache_key": key, "ttl": ttl_seconds})

    async def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    async def delete_pattern(self, pattern: str) -> int:
        with self._lock:
            matched = [key for key in list(self._entries.keys()) if fnmatchcase(key, pattern)]
            for key in matched:
                self._entries.pop(key, None)
        if matched:
            logger.debug("cache.delete_pattern", extra={"key": pattern, "count": len(matched)})
        return len(matched)

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [key for key, (_, expires_at) in list(self._entries.items()) if now >= expires_at]
            for key in expired:
                self._entries.pop(key, None)
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    @property
    def size(self) -> int:
        return len(self._entries)
