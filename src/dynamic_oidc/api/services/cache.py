from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)


class CacheBackend(ABC):
    """Abstract base class for cache backends."""

    @abstractmethod
    def get(self, key: str) -> Optional[Any]:
        """Get a value from the cache."""
        pass

    @abstractmethod
    def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        """Set a value in the cache with TTL."""
        pass

    @abstractmethod
    def delete(self, key: str) -> None:
        pass

    @abstractmethod
    def clear(self) -> None:
        pass


class MemoryBackend(CacheBackend):
    """In-memory cache backend with per-entry expiry.

    The lock guards dictionary access only; callers never hold it while
    waiting on I/O. When ``max_entries`` is reached, expired entries are
    purged first and then the entry closest to expiry is evicted.
    """

    def __init__(
        self,
        max_entries: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store: Dict[str, Tuple[float, Any]] = {}
        self._lock = threading.Lock()
        self._max_entries = max_entries
        self._clock = clock

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._store.get(key)
            if not entry:
                return None
            expires_at, value = entry
            if self._clock() >= expires_at:
                self._store.pop(key, None)
                return None
            return value

    def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        with self._lock:
            if (
                self._max_entries is not None
                and key not in self._store
                and len(self._store) >= self._max_entries
            ):
                self._evict()
            self._store[key] = (self._clock() + ttl_seconds, value)

    def delete(self, key: str) -> None:
        with self._lock:
            self._store.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._store.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._store)

    def _evict(self) -> None:
        now = self._clock()
        expired = [k for k, (expires_at, _) in self._store.items() if now >= expires_at]
        for key in expired:
            del self._store[key]
        if self._store and len(self._store) >= (self._max_entries or 0):
            oldest = min(self._store, key=lambda k: self._store[k][0])
            del self._store[oldest]


class TTLCache:
    """Cache with a default TTL and optional per-entry overrides."""

    def __init__(
        self,
        ttl_seconds: float,
        backend: Optional[CacheBackend] = None,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self._backend = backend if backend is not None else MemoryBackend()

    def get(self, key: str) -> Optional[Any]:
        return self._backend.get(key)

    def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> None:
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        self._backend.set(key, value, ttl)

    def delete(self, key: str) -> None:
        self._backend.delete(key)

    def clear(self) -> None:
        self._backend.clear()


def create_cache(
    ttl_seconds: float,
    max_entries: Optional[int] = None,
    clock: Callable[[], float] = time.monotonic,
) -> TTLCache:
    """Factory function to create an in-memory cache."""
    return TTLCache(
        ttl_seconds=ttl_seconds,
        backend=MemoryBackend(max_entries=max_entries, clock=clock),
    )
