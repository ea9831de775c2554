"""Bounded TTL cache able to remember confirmed absences."""

from __future__ import annotations

import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Generic, TypeVar


T = TypeVar("T")


@dataclass(slots=True, frozen=True)
class CacheEntry(Generic[T]):
    """A cache hit. ``value`` is ``None`` when the key is known to be absent."""

    value: T | None

    @property
    def is_negative(self) -> bool:
        return self.value is None


class TTLCache(Generic[T]):
    """LRU cache with per-entry expiry, safe to share between threads.

    ``get`` returns ``None`` on a miss and a :class:`CacheEntry` on a hit, so a
    cached "not found" is distinguishable from "not looked up yet".
    """

    def __init__(
        self,
        max_size: int = 1000,
        ttl_seconds: float = 300.0,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        self.max_size = max_size
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._items: OrderedDict[str, tuple[float, CacheEntry[T]]] = OrderedDict()

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def get(self, key: str) -> CacheEntry[T] | None:
        with self._lock:
            item = self._items.get(key)
            if item is None:
                return None
            expires_at, entry = item
            if expires_at <= self._clock():
                del self._items[key]
                return None
            self._items.move_to_end(key)
            return entry

    def set(self, key: str, value: T | None, ttl_seconds: float | None = None) -> None:
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        with self._lock:
            self._items[key] = (self._clock() + ttl, CacheEntry(value))
            self._items.move_to_end(key)
            while len(self._items) > self.max_size:
                self._items.popitem(last=False)

    def set_absent(self, key: str, ttl_seconds: float | None = None) -> None:
        self.set(key, None, ttl_seconds)

    def delete(self, key: str) -> None:
        with self._lock:
            self._items.pop(key, None)

    def delete_where(self, predicate: Callable[[str], bool]) -> int:
        with self._lock:
            doomed = [key for key in self._items if predicate(key)]
            for key in doomed:
                del self._items[key]
            return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._items.clear()


# sizes and lifetimes used by the persistent backends
LAUNCH_CONFIG_CACHE_SIZE = 1000
LAUNCH_CONFIG_CACHE_TTL = 15 * 60
SESSION_CACHE_SIZE = 1000
SESSION_CACHE_TTL = 5 * 60


__all__ = [
    "CacheEntry",
    "LAUNCH_CONFIG_CACHE_SIZE",
    "LAUNCH_CONFIG_CACHE_TTL",
    "SESSION_CACHE_SIZE",
    "SESSION_CACHE_TTL",
    "TTLCache",
]
