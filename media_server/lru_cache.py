"""
In-process LRU cache. Bounded key -> value map; least recently used entry is
evicted when capacity is exceeded. No expiry: entries live until evicted or deleted.
Thread-safe via a single RLock (low contention expected).
"""
import threading
from collections import OrderedDict
from typing import Any

from media_server.config import LRU_CACHE_SIZE

_MISSING = object()


class LRUCache:
    def __init__(self, max_size: int):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.max_size = max_size
        self._store: "OrderedDict[str, Any]" = OrderedDict()
        self._lock = threading.RLock()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def get(self, key: str, default: Any = None) -> Any:
        """Return cached value and mark it most recently used, or default."""
        with self._lock:
            value = self._store.get(key, _MISSING)
            if value is _MISSING:
                self._misses += 1
                return default
            self._store.move_to_end(key)
            self._hits += 1
            return value

    def peek(self, key: str, default: Any = None) -> Any:
        """Read without updating recency or hit counters (diagnostics)."""
        with self._lock:
            return self._store.get(key, default)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._store[key] = value
            self._store.move_to_end(key)
            while len(self._store) > self.max_size:
                self._store.popitem(last=False)
                self._evictions += 1

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._store.pop(key, _MISSING) is not _MISSING

    def clear(self) -> None:
        with self._lock:
            self._store.clear()
            self._hits = self._misses = self._evictions = 0

    def size(self) -> int:
        with self._lock:
            return len(self._store)

    __len__ = size

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._store

    def keys(self) -> list[str]:
        """Snapshot of keys, least recently used first."""
        with self._lock:
            return list(self._store.keys())

    def items(self) -> list[tuple[str, Any]]:
        with self._lock:
            return list(self._store.items())

    def stats(self) -> dict:
        with self._lock:
            return {
                "size": len(self._store),
                "max_size": self.max_size,
                "hits": self._hits,
                "misses": self._misses,
                "evictions": self._evictions,
            }


# Shared process-wide cache (JWKS document, feed summaries); inspected by the admin debug route
lru_cache = LRUCache(LRU_CACHE_SIZE)
