"""Shared key-value state for rate-limit counters.

Rate-limit state is short-lived and never persisted durably. Everything goes
through the `KeyValueStore` protocol so a networked store can replace the
in-process one without touching the limiters.
"""

from __future__ import annotations

import math
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, ContextManager, Iterator, Protocol

from cachetools import TLRUCache

from monitor_guard.clock import Clock, SystemClock


class KeyValueStore(Protocol):
    def get(self, key: str, default: Any = None) -> Any: ...

    def set(self, key: str, value: Any, ttl_seconds: float | None = None) -> None: ...

    def incr(self, key: str, amount: int = 1, ttl_seconds: float | None = None) -> int: ...

    def delete(self, key: str) -> None: ...

    def ttl(self, key: str) -> float | None: ...

    def lock(self, key: str) -> ContextManager[None]: ...


@dataclass(frozen=True)
class _Entry:
    value: Any
    expires_at: float


def _entry_expiry(_key: str, entry: _Entry, _now: float) -> float:
    return entry.expires_at


class MemoryStore:
    """
    Thread-safe in-process store with per-key expiry.

    `incr` is atomic and only applies `ttl_seconds` when it creates the key, so a
    counter's window is anchored at its first increment. `lock(key)` serializes
    read-modify-write sequences on one key across worker threads.
    """

    _LOCK_STRIPES = 64

    def __init__(self, clock: Clock | None = None, *, maxsize: int = 100_000) -> None:
        self._clock = clock or SystemClock()
        self._cache: TLRUCache = TLRUCache(maxsize=maxsize, ttu=_entry_expiry, timer=self._clock.timestamp)
        self._mutex = threading.RLock()
        self._stripes = [threading.RLock() for _ in range(self._LOCK_STRIPES)]

    def _expiry(self, ttl_seconds: float | None) -> float:
        if ttl_seconds is None:
            return math.inf
        return self._clock.timestamp() + max(0.0, float(ttl_seconds))

    def get(self, key: str, default: Any = None) -> Any:
        with self._mutex:
            entry = self._cache.get(key)
        return default if entry is None else entry.value

    def set(self, key: str, value: Any, ttl_seconds: float | None = None) -> None:
        with self._mutex:
            self._cache[key] = _Entry(value=value, expires_at=self._expiry(ttl_seconds))

    def incr(self, key: str, amount: int = 1, ttl_seconds: float | None = None) -> int:
        with self._mutex:
            entry = self._cache.get(key)
            if entry is None:
                value = int(amount)
                self._cache[key] = _Entry(value=value, expires_at=self._expiry(ttl_seconds))
                return value
            value = int(entry.value or 0) + int(amount)
            self._cache[key] = _Entry(value=value, expires_at=entry.expires_at)
            return value

    def delete(self, key: str) -> None:
        with self._mutex:
            self._cache.pop(key, None)

    def ttl(self, key: str) -> float | None:
        with self._mutex:
            entry = self._cache.get(key)
        if entry is None or math.isinf(entry.expires_at):
            return None
        return max(0.0, entry.expires_at - self._clock.timestamp())

    @contextmanager
    def lock(self, key: str) -> Iterator[None]:
        stripe = self._stripes[hash(key) % self._LOCK_STRIPES]
        with stripe:
            yield
