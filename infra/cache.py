"""Read-through TTL cache with single-flight loading.

Concurrent callers asking for the same missing key share one pending
``Future`` instead of each issuing an upstream request.
"""

import logging
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class _Entry(Generic[T]):
    value: T
    loaded_at: float


class ReadThroughCache(Generic[T]):
    """
    TTL cache keyed by string.

    Usage:
        positions = ReadThroughCache("positions", ttl_seconds=2.0)
        rows = positions.get("all", broker.list_positions)
    """

    def __init__(self, name: str, ttl_seconds: float, clock: Callable[[], float] = time.time):
        self.name = name
        self.ttl_seconds = float(ttl_seconds)
        self.clock = clock
        self._entries: Dict[str, _Entry[T]] = {}
        self._pending: Dict[str, Future] = {}
        self._lock = threading.Lock()
        self.loads = 0
        self.hits = 0

    def get(self, key: str, loader: Callable[[], T], *, max_age_seconds: Optional[float] = None) -> T:
        ttl = self.ttl_seconds if max_age_seconds is None else min(self.ttl_seconds, max_age_seconds)
        owner = False
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and self.clock() - entry.loaded_at < ttl:
                self.hits += 1
                return entry.value
            future = self._pending.get(key)
            if future is None:
                future = Future()
                self._pending[key] = future
                owner = True

        if not owner:
            return future.result()

        try:
            value = loader()
        except BaseException as exc:
            with self._lock:
                self._pending.pop(key, None)
            future.set_exception(exc)
            raise
        with self._lock:
            self._entries[key] = _Entry(value=value, loaded_at=self.clock())
            self._pending.pop(key, None)
            self.loads += 1
        future.set_result(value)
        return value

    def peek(self, key: str) -> Optional[T]:
        """Return the cached value regardless of age (None if never loaded)."""
        with self._lock:
            entry = self._entries.get(key)
            return entry.value if entry else None

    def invalidate(self, key: Optional[str] = None) -> None:
        with self._lock:
            if key is None:
                self._entries.clear()
            else:
                self._entries.pop(key, None)

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "name": self.name,
                "entries": len(self._entries),
                "pending": len(self._pending),
                "loads": self.loads,
                "hits": self.hits,
            }
