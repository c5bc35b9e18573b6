"""Small TTL cache for container metadata."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Generic, TypeVar

V = TypeVar("V")


@dataclass
class _Entry(Generic[V]):
    value: V
    expires_at: float


class TTLCache(Generic[V]):
    """Thread-safe key/value cache with a fixed time-to-live.

    An entry is served while now <= expires_at. Expired entries are removed
    when they are next looked up; there is no background sweep. The lock is
    only held around dict access, never around caller I/O.
    """

    def __init__(self, ttl: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl = ttl
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[str, _Entry[V]] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get(self, key: str) -> V | None:
        """Return the cached value, or None if missing or expired."""
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if now > entry.expires_at:
                del self._entries[key]
                return None
            return entry.value

    def set(self, key: str, value: V) -> None:
        """Store value under key, expiring ttl seconds from now."""
        expires_at = self._clock() + self.ttl
        with self._lock:
            self._entries[key] = _Entry(value=value, expires_at=expires_at)
