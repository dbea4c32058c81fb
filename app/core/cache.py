"""TTL cache with an injectable clock.

Used by the Media Identity Resolver for Radarr/Sonarr lookups, quality
profiles and service configuration. Entries are not invalidated when
service config changes; staleness up to the TTL is accepted.
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Generic, Hashable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Sentinel for "no entry" (None is a valid cached value)
MISSING = object()


class TTLCache(Generic[T]):
    """
    Small in-process cache with per-entry expiry.

    Usage:
        cache = TTLCache(ttl=30)
        value = await cache.get_or_load(("movie", 603), lambda: radarr.lookup(603))

    The clock is a zero-arg callable returning seconds; tests pass a fake one
    to step past the TTL without sleeping.
    """

    def __init__(
        self,
        ttl: float,
        clock: Optional[Callable[[], float]] = None,
        max_entries: int = 1024,
    ):
        self.ttl = ttl
        self.clock = clock or time.monotonic
        self.max_entries = max_entries
        self._entries: dict[Hashable, tuple[float, T]] = {}
        self._inflight: dict[Hashable, asyncio.Future] = {}

    def get(self, key: Hashable) -> Any:
        """Return cached value, or MISSING if absent or expired."""
        entry = self._entries.get(key)
        if entry is None:
            return MISSING
        expires_at, value = entry
        if expires_at <= self.clock():
            del self._entries[key]
            return MISSING
        return value

    def set(self, key: Hashable, value: T, ttl: Optional[float] = None) -> None:
        if len(self._entries) >= self.max_entries:
            self._evict_expired()
            if len(self._entries) >= self.max_entries:
                # Drop the entry closest to expiry
                oldest = min(self._entries, key=lambda k: self._entries[k][0])
                del self._entries[oldest]
        self._entries[key] = (self.clock() + (self.ttl if ttl is None else ttl), value)

    def invalidate(self, key: Optional[Hashable] = None) -> None:
        """Drop one key, or everything when key is None."""
        if key is None:
            self._entries.clear()
            self._inflight.clear()
        else:
            self._entries.pop(key, None)
            self._inflight.pop(key, None)

    async def get_or_load(
        self,
        key: Hashable,
        loader: Callable[[], Awaitable[T]],
        should_cache: Optional[Callable[[T], bool]] = None,
    ) -> T:
        """
        Return the cached value or await loader() and cache its result.

        Exceptions from loader propagate and nothing is cached.
        should_cache lets callers skip caching some results (e.g. "unreachable").
        Concurrent callers for the same key share one in-flight load and
        all see its result or exception.
        """
        value = self.get(key)
        if value is not MISSING:
            return value

        pending = self._inflight.get(key)
        if pending is None:
            pending = asyncio.ensure_future(self._load(key, loader, should_cache))
            self._inflight[key] = pending
        # A cancelled caller must not cancel the load other callers await
        return await asyncio.shield(pending)

    async def _load(
        self,
        key: Hashable,
        loader: Callable[[], Awaitable[T]],
        should_cache: Optional[Callable[[T], bool]],
    ) -> T:
        this = asyncio.current_task()
        try:
            value = await loader()
            if self._inflight.get(key) is not this:
                # Invalidated while loading; the result may be stale
                logger.debug(f"Discarding result for {key!r} loaded across an invalidate")
            elif should_cache is None or should_cache(value):
                self.set(key, value)
            else:
                logger.debug(f"Not caching result for {key!r}")
            return value
        finally:
            if self._inflight.get(key) is this:
                del self._inflight[key]

    def _evict_expired(self) -> None:
        now = self.clock()
        for key in [k for k, (exp, _) in self._entries.items() if exp <= now]:
            del self._entries[key]

    def __len__(self) -> int:
        self._evict_expired()
        return len(self._entries)
