"""Small TTL caches shared by the roster lookup and the query executor.

Usage:
    cache = TTLCache(ttl=300)

    hit, rows = cache.get(key)
    if hit:
        return rows
    rows = expensive_query()
    cache.set(key, rows)
"""
from __future__ import annotations
import threading
import time


class TTLCache:
    """Keyed TTL cache. Entries older than ``ttl`` seconds are misses."""

    __slots__ = ("ttl", "max_entries", "_data", "_lock")

    def __init__(self, ttl: float, max_entries: int = 512):
        self.ttl = ttl
        self.max_entries = max_entries
        self._data: dict[object, tuple[float, object]] = {}
        self._lock = threading.Lock()

    def get(self, key) -> tuple[bool, object]:
        """Return (hit, data)."""
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return False, None
            stored_at, data = entry
            if time.time() - stored_at >= self.ttl:
                del self._data[key]
                return False, None
            return True, data

    def set(self, key, data: object) -> None:
        with self._lock:
            if len(self._data) >= self.max_entries and key not in self._data:
                # drop the oldest entry
                oldest = min(self._data, key=lambda k: self._data[k][0])
                del self._data[oldest]
            self._data[key] = (time.time(), data)

    def invalidate(self, key=None) -> None:
        """Clear one key, or everything."""
        with self._lock:
            if key is None:
                self._data.clear()
            else:
                self._data.pop(key, None)

    def __len__(self) -> int:
        return len(self._data)
