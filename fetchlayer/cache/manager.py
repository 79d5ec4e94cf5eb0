"""
Shared TTL cache with refresh-on-access and coalesced computation.
"""
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from config.settings import settings

from .core import CacheEntry, CacheSource
from .coalescer import RequestCoalescer, get_request_coalescer

logger = logging.getLogger("cache.manager")


class SharedCache:
    """
    Process-wide key/value cache with:
    - Per-entry TTL, optionally extended on every hit
    - Request coalescing so concurrent misses share one producer run
    - Invalidation by key, by substring pattern, or wholesale
    - Hit/miss statistics

    There is no size bound: entries leave only on expiry or invalidation.
    """

    def __init__(
        self,
        coalescer: Optional[RequestCoalescer] = None,
        default_ttl: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
        enabled: Optional[bool] = None,
    ):
        """
        Initialize the shared cache.

        Args:
            coalescer: Coalescer used for misses (defaults to the global one)
            default_ttl: TTL in seconds when callers don't pass one
            clock: Monotonic time source, injectable for tests
            enabled: When False every read is a miss (writes are dropped)
        """
        self._entries: Dict[str, CacheEntry] = {}
        self._coalescer = coalescer if coalescer is not None else get_request_coalescer()
        self._default_ttl = settings.cache_ttl_seconds if default_ttl is None else default_ttl
        self._clock = clock
        self._enabled = settings.cache_enabled if enabled is None else enabled

        self._stats = {
            "hits": 0,
            "misses": 0,
            "expirations": 0,
            "coalesced": 0,
        }

    @property
    def coalescer(self) -> RequestCoalescer:
        return self._coalescer

    def _lookup(self, key: str) -> Optional[CacheEntry]:
        """Return a live entry (touching it) or None, dropping it if expired."""
        entry = self._entries.get(key)
        if entry is None:
            return None

        now = self._clock()
        if entry.is_expired(now):
            del self._entries[key]
            self._stats["expirations"] += 1
            logger.info(f"CACHE EXPIRED: {key}")
            return None

        entry.touch(now)
        return entry

    def get(self, key: str, default: Any = None) -> Any:
        """
        Read a cached value.

        A hit on an entry stored with refresh_on_access extends its expiry by
        the entry's original TTL, measured from now.

        Returns:
            The cached value, or default on a miss
        """
        entry = self._lookup(key) if self._enabled else None
        if entry is None:
            self._stats["misses"] += 1
            return default

        self._stats["hits"] += 1
        logger.debug(f"CACHE HIT: {key} [hits={entry.hits}]")
        return entry.value

    def set(
        self,
        key: str,
        value: Any,
        ttl: Optional[float] = None,
        refresh_on_access: bool = False,
    ) -> None:
        """Store value under key, replacing any existing entry."""
        if not self._enabled:
            return

        ttl_seconds = self._default_ttl if ttl is None else ttl
        now = self._clock()
        self._entries[key] = CacheEntry(
            key=key,
            value=value,
            expires_at=now + ttl_seconds,
            ttl_seconds=ttl_seconds,
            refresh_on_access=refresh_on_access,
            created_at=now,
        )

    async def get_or_compute(
        self,
        key: str,
        producer: Callable[[], Awaitable[Any]],
        ttl: Optional[float] = None,
        refresh_on_access: bool = True,
        coalesce_key: Optional[str] = None,
        deduplicate: bool = True,
    ) -> Any:
        """
        Return the cached value for key, or compute and store it.

        Args:
            key: Cache key
            producer: Coroutine function producing the value on a miss
            ttl: TTL in seconds for a newly stored value
            refresh_on_access: Extend expiry on later hits
            coalesce_key: Identifier concurrent misses are merged on
                (defaults to key)
            deduplicate: When False, every miss runs its own producer

        Returns:
            The cached or freshly produced value

        Raises:
            Exception: Any error from producer; nothing is stored
        """
        value, _ = await self.get_or_compute_with_source(
            key,
            producer,
            ttl=ttl,
            refresh_on_access=refresh_on_access,
            coalesce_key=coalesce_key,
            deduplicate=deduplicate,
        )
        return value

    async def get_or_compute_with_source(
        self,
        key: str,
        producer: Callable[[], Awaitable[Any]],
        ttl: Optional[float] = None,
        refresh_on_access: bool = True,
        coalesce_key: Optional[str] = None,
        deduplicate: bool = True,
    ) -> Tuple[Any, CacheSource]:
        """Same as get_or_compute, also reporting where the value came from."""
        entry = self._lookup(key) if self._enabled else None
        if entry is not None:
            self._stats["hits"] += 1
            logger.debug(f"CACHE HIT: {key} [remaining={entry.remaining_seconds(self._clock()):.1f}s]")
            return entry.value, CacheSource.FRESH

        self._stats["misses"] += 1

        async def produce_and_store() -> Any:
            value = await producer()
            self.set(key, value, ttl=ttl, refresh_on_access=refresh_on_access)
            return value

        if not deduplicate:
            logger.info(f"CACHE MISS: {key}")
            return await produce_and_store(), CacheSource.UPSTREAM

        identifier = coalesce_key or key
        if self._coalescer.is_pending(identifier):
            self._stats["coalesced"] += 1
            source = CacheSource.COALESCED
        else:
            logger.info(f"CACHE MISS: {key}")
            source = CacheSource.UPSTREAM

        value = await self._coalescer.run(identifier, produce_and_store)
        return value, source

    def invalidate(self, key: str) -> bool:
        """
        Invalidate a specific cache entry.

        Returns:
            True if entry was found and removed
        """
        if key in self._entries:
            del self._entries[key]
            logger.info(f"Invalidated cache: {key}")
            return True
        return False

    def invalidate_pattern(self, pattern: str) -> int:
        """
        Invalidate all cache entries whose key contains pattern.

        Returns:
            Number of entries invalidated
        """
        to_delete = [k for k in self._entries if pattern in k]
        for key in to_delete:
            del self._entries[key]
        if to_delete:
            logger.info(f"Invalidated {len(to_delete)} entries matching '{pattern}'")
        return len(to_delete)

    def clear(self) -> int:
        """
        Clear all cache entries.

        Returns:
            Number of entries cleared
        """
        count = len(self._entries)
        self._entries.clear()
        logger.info(f"Cleared {count} cache entries")
        return count

    def __len__(self) -> int:
        return len(self._entries)

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        total_requests = self._stats["hits"] + self._stats["misses"]
        hit_rate = (self._stats["hits"] / total_requests * 100) if total_requests > 0 else 0

        return {
            "enabled": self._enabled,
            "entries": len(self._entries),
            "hits": self._stats["hits"],
            "misses": self._stats["misses"],
            "expirations": self._stats["expirations"],
            "coalesced": self._stats["coalesced"],
            "hit_rate_percent": round(hit_rate, 1),
            "coalescer": self._coalescer.get_stats(),
        }


# Global shared cache instance
_shared_cache: Optional[SharedCache] = None


def get_shared_cache() -> SharedCache:
    """Get or create the global shared cache."""
    global _shared_cache
    if _shared_cache is None:
        _shared_cache = SharedCache()
    return _shared_cache
