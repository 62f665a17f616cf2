"""
Key-value store used for the embedding cache and rate-limit counters.

Services receive a store instance instead of touching module globals, so tests
can hand in a fresh InMemoryKeyValueStore (optionally with a fake clock).
"""
from __future__ import annotations

import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any


class KeyValueStore(ABC):
    @abstractmethod
    def get(self, key: str) -> Any | None:
        """Return the stored value or None when missing/expired."""

    @abstractmethod
    def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        """Store value; ttl_seconds=None keeps it until deleted."""

    @abstractmethod
    def delete(self, key: str) -> None:
        ...

    @abstractmethod
    def incr(self, key: str, ttl_seconds: int) -> tuple[int, float]:
        """
        Atomically increment the counter at key and return (new_value, seconds_until_reset).

        The TTL starts with the first increment of a window and is not extended by
        later increments (fixed window).
        """


class InMemoryKeyValueStore(KeyValueStore):
    """Process-local store guarded by a single lock."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._data: dict[str, tuple[float | None, Any]] = {}
        self._lock = threading.Lock()

    def _live(self, key: str, now: float) -> tuple[float | None, Any] | None:
        row = self._data.get(key)
        if row is None:
            return None
        expires_at, _ = row
        if expires_at is not None and now >= expires_at:
            self._data.pop(key, None)
            return None
        return row

    def get(self, key: str) -> Any | None:
        with self._lock:
            row = self._live(key, self._clock())
            return None if row is None else row[1]

    def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        with self._lock:
            expires_at = None if ttl_seconds is None else self._clock() + ttl_seconds
            self._data[key] = (expires_at, value)

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def incr(self, key: str, ttl_seconds: int) -> tuple[int, float]:
        with self._lock:
            now = self._clock()
            row = self._live(key, now)
            if row is None:
                expires_at, count = now + ttl_seconds, 0
            else:
                expires_at, count = row
            count = int(count) + 1
            self._data[key] = (expires_at, count)
            return count, max(0.0, (expires_at or now) - now)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()


_default_store: InMemoryKeyValueStore | None = None


def get_kv_store() -> InMemoryKeyValueStore:
    global _default_store
    if _default_store is None:
        _default_store = InMemoryKeyValueStore()
    return _default_store
