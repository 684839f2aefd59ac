from __future__ import annotations

import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Dict, Generic, Hashable, Optional, TypeVar

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


@dataclass
class CacheEntry(Generic[V]):
    value: V
    stored_at: float
    hit_count: int = 0


class TTLCache(Generic[K, V]):
    """Bounded LRU cache with a per-entry time-to-live.

    - Entries older than ``ttl_seconds`` are treated as missing and dropped on read.
    - When ``max_items`` is reached the least recently used entry is evicted.
    - ``clock`` is injectable so tests can move time without sleeping.

    Process-local and not shared across replicas; callers invalidate keys they
    write through.
    """

    def __init__(
        self,
        max_items: int = 1024,
        ttl_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_items <= 0:
            raise ValueError("max_items must be positive")
        self.max_items = max_items
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: OrderedDict[K, CacheEntry[V]] = OrderedDict()
        self._stats: Dict[str, int] = {"hits": 0, "misses": 0, "evictions": 0, "expired": 0}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return self.get(key) is not None  # type: ignore[arg-type]

    def _is_stale(self, entry: CacheEntry[V]) -> bool:
        return (self._clock() - entry.stored_at) > self.ttl_seconds

    def get(self, key: K) -> Optional[V]:
        entry = self._entries.get(key)
        if entry is None:
            self._stats["misses"] += 1
            return None
        if self._is_stale(entry):
            del self._entries[key]
            self._stats["expired"] += 1
            self._stats["misses"] += 1
            return None
        self._entries.move_to_end(key)
        entry.hit_count += 1
        self._stats["hits"] += 1
        return entry.value

    def set(self, key: K, value: V) -> None:
        if key in self._entries:
            del self._entries[key]
        while len(self._entries) >= self.max_items:
            self._entries.popitem(last=False)
            self._stats["evictions"] += 1
        self._entries[key] = CacheEntry(value=value, stored_at=self._clock())

    def invalidate(self, key: K) -> bool:
        return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        self._entries.clear()

    def purge_expired(self) -> int:
        stale = [k for k, e in self._entries.items() if self._is_stale(e)]
        for k in stale:
            del self._entries[k]
        self._stats["expired"] += len(stale)
        return len(stale)

    def stats(self) -> Dict[str, int]:
        return {**self._stats, "size": len(self._entries), "max_items": self.max_items}
