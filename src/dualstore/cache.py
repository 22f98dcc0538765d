"""
TimedCache - return a cached value or recompute it.

Used for dropdown-style lookups (distinct service names, payment statuses)
that are expensive to compute and fine to serve slightly stale. It is not
part of the migration engine.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

T = TypeVar("T")


@dataclass
class CacheStats:
    """Hit and miss counters."""

    hits: int = 0
    misses: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total > 0 else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {"hits": self.hits, "misses": self.misses, "hit_rate": self.hit_rate}


class TimedCache(Generic[T]):
    """
    Async cache with a fixed expiry per entry.

    Concurrent callers missing the same key share one recompute: each key
    has its own asyncio.Lock and the value is re-checked under it.

    Example:
        >>> cache: TimedCache[list[str]] = TimedCache(ttl_seconds=3600)
        >>> names = await cache.get_or_compute("services", store.distinct_service_names)
    """

    def __init__(
        self,
        ttl_seconds: float = 3600.0,
        *,
        clock: Callable[[], float] | None = None,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError(f"ttl_seconds must be positive, got {ttl_seconds}")
        self._ttl = ttl_seconds
        self._clock = clock or time.monotonic
        self._entries: dict[str, tuple[float, T]] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self.stats = CacheStats()

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    def get(self, key: str) -> T | None:
        """Cached value if present and fresh, else None."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            return None
        return value

    def set(self, key: str, value: T) -> None:
        self._entries[key] = (self._clock() + self._ttl, value)

    async def get_or_compute(self, key: str, compute: Callable[[], Awaitable[T]]) -> T:
        """
        Return the cached value for ``key`` or compute and cache it.

        Errors raised by ``compute`` propagate and nothing is cached.
        """
        cached = self._lookup(key)
        if cached is not None:
            return cached[0]

        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            cached = self._lookup(key)
            if cached is not None:
                return cached[0]
            self.stats.misses += 1
            value = await compute()
            self.set(key, value)
            return value

    def _lookup(self, key: str) -> tuple[T] | None:
        # Wrapped in a tuple so a cached None or empty list still counts as a hit.
        entry = self._entries.get(key)
        if entry is None or self._clock() >= entry[0]:
            return None
        self.stats.hits += 1
        return (entry[1],)

    def invalidate(self, key: str) -> bool:
        """Drop one entry. Returns True if it was cached."""
        return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        self._entries.clear()


__all__ = ["CacheStats", "TimedCache"]
