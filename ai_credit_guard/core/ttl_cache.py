"""
Time-bounded in-memory caches.

A process-wide ``TTLCache`` is a plain dict of (value, stored_at) pairs.
Entries expire lazily on read and are dropped in bulk by a
``CacheSweeper`` running on the event loop. There are no locks: all
access happens on one event loop, and concurrent writers for the same
key simply overwrite each other with equally valid values.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Generic, Hashable, List, Optional, TypeVar

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")

Clock = Callable[[], float]


@dataclass
class CacheEntry(Generic[V]):
    value: V
    stored_at: float


class TTLCache(Generic[K, V]):
    """Key/value cache whose entries are fresh for ``ttl_seconds``."""

    def __init__(self, ttl_seconds: float, clock: Clock = time.monotonic, name: str = "cache"):
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be > 0")
        self.ttl_seconds = ttl_seconds
        self.name = name
        self._clock = clock
        self._entries: Dict[K, CacheEntry[V]] = {}

    def _is_fresh(self, entry: CacheEntry[V], now: float) -> bool:
        return now - entry.stored_at < self.ttl_seconds

    def get(self, key: K) -> Optional[V]:
        """Return the cached value, or None when missing or stale.

        A stale entry is removed on the way out.
        """
        entry = self._entries.get(key)
        if entry is None:
            return None
        if not self._is_fresh(entry, self._clock()):
            self._entries.pop(key, None)
            return None
        return entry.value

    def set(self, key: K, value: V) -> None:
        self._entries[key] = CacheEntry(value=value, stored_at=self._clock())

    def invalidate(self, key: K) -> None:
        """Drop ``key``; a no-op when it isn't cached."""
        self._entries.pop(key, None)

    def sweep(self) -> int:
        """Remove every stale entry.

        Returns:
            Number of entries removed
        """
        now = self._clock()
        stale = [key for key, entry in self._entries.items() if not self._is_fresh(entry, now)]
        for key in stale:
            del self._entries[key]
        return len(stale)

    def clear(self) -> None:
        self._entries.clear()

    def keys(self) -> List[K]:
        return list(self._entries.keys())

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries


class CacheSweeper:
    """Periodically sweeps a set of TTL caches from a background task."""

    def __init__(self, interval_seconds: float = 300.0):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        self.interval_seconds = interval_seconds
        self._caches: List[TTLCache] = []
        self._task: Optional[asyncio.Task] = None

    def register(self, cache: TTLCache) -> None:
        if cache not in self._caches:
            self._caches.append(cache)

    def sweep_all(self) -> int:
        removed = 0
        for cache in self._caches:
            count = cache.sweep()
            if count:
                logger.debug(f"Swept {count} stale entries from {cache.name}")
            removed += count
        return removed

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the sweep loop on the running event loop (idempotent)."""
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            self.sweep_all()
