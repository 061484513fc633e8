"""
Staleness-budgeted read cache.

Each read path passes its own ``max_age`` instead of the cache owning fixed
TTLs per key pattern. The cache is never consulted on write paths, which
always read the authoritative store.

The cache holds at most ``max_entries`` values; the least recently stored
or read entry is evicted first.
"""

from __future__ import annotations

import time
from collections import OrderedDict
from collections.abc import Hashable
from dataclasses import dataclass
from typing import Generic, TypeVar

V = TypeVar("V")


@dataclass
class CachedValue(Generic[V]):
    value: V
    stored_at: float

    def age(self, now: float) -> float:
        return now - self.stored_at


class StalenessCache(Generic[V]):
    """Bounded key/value cache where freshness is decided by the caller."""

    def __init__(self, clock=time.monotonic, max_entries: int = 10_000):
        self._clock = clock
        self.max_entries = max_entries
        self._entries: OrderedDict[Hashable, CachedValue[V]] = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def put(self, key: Hashable, value: V) -> None:
        self._entries[key] = CachedValue(value=value, stored_at=self._clock())
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    def get(self, key: Hashable, max_age: float) -> V | None:
        """Value if present and no older than ``max_age`` seconds."""
        entry = self._entries.get(key)
        if entry is None or entry.age(self._clock()) > max_age:
            return None
        self._entries.move_to_end(key)
        return entry.value

    def get_any(self, key: Hashable) -> CachedValue[V] | None:
        """Last known value regardless of age (for degraded reads)."""
        return self._entries.get(key)

    def invalidate(self, key: Hashable) -> None:
        self._entries.pop(key, None)

    def invalidate_prefix(self, prefix: Hashable) -> None:
        """Drop tuple keys whose first element equals ``prefix``."""
        for key in [k for k in self._entries if isinstance(k, tuple) and k and k[0] == prefix]:
            del self._entries[key]
