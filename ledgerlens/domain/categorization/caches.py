"""
Org-scoped read-through caches

Vendor embeddings and active rule versions are read on every categorization
but change rarely. Each org's entry is loaded lazily, at most once per TTL, and
refreshed by replacing the whole value so readers never see a half-built map.
"""
import asyncio
import time
from typing import Awaitable, Callable, Dict, Generic, Hashable, Optional, Tuple, TypeVar

import structlog

logger = structlog.get_logger()

T = TypeVar("T")


class OrgScopedCache(Generic[T]):
    """
    Read-through cache keyed by org (or any hashable key).

    Usage:
        cache = OrgScopedCache("vendor_embeddings", loader, ttl_seconds=300)
        embeddings = await cache.get(org_id)
    """

    def __init__(
        self,
        name: str,
        loader: Callable[[Hashable], Awaitable[T]],
        ttl_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self._loader = loader
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: Dict[Hashable, Tuple[float, T]] = {}
        self._locks: Dict[Hashable, asyncio.Lock] = {}

    def _fresh(self, key: Hashable) -> Optional[T]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        loaded_at, value = entry
        if self._clock() - loaded_at > self._ttl:
            return None
        return value

    async def get(self, key: Hashable) -> T:
        value = self._fresh(key)
        if value is not None:
            return value

        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            # Another coroutine may have loaded while we waited
            value = self._fresh(key)
            if value is not None:
                return value
            value = await self._loader(key)
            self._entries[key] = (self._clock(), value)
            logger.debug("cache_loaded", cache=self.name, key=str(key))
            return value

    async def refresh(self, key: Hashable) -> T:
        """Reload a key now and swap the new value in."""
        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            value = await self._loader(key)
            self._entries[key] = (self._clock(), value)
            logger.info("cache_refreshed", cache=self.name, key=str(key))
            return value

    def invalidate(self, key: Hashable) -> None:
        """Mark a key stale; the next read reloads it."""
        self._entries.pop(key, None)

    def __contains__(self, key: Hashable) -> bool:
        return self._fresh(key) is not None

    def clear(self) -> None:
        """Mark every key stale (global rule changes touch all orgs)."""
        self._entries.clear()
