"""Thread-safe key/value table with per-entry expiry.

Both the embedding cache and the workflow job table are instances of
:class:`ExpiringStore`. The store owns its entries outright: readers receive the
stored value, and all mutation goes through :meth:`set`, :meth:`update` or
:meth:`pop`. The lock guards one key operation at a time; :meth:`sweep`
re-acquires it per key so a large purge never blocks request handling.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Generic, Hashable, List, Optional, TypeVar

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")

Clock = Callable[[], float]


@dataclass(slots=True)
class _Entry(Generic[V]):
    value: V
    stored_at: float
    expires_at: float | None

    def expired(self, now: float) -> bool:
        return self.expires_at is not None and now >= self.expires_at


class ExpiringStore(Generic[K, V]):
    """Mutex-guarded mapping whose entries stop being served once they expire."""

    def __init__(self, *, default_ttl: float | None = None, clock: Clock = time.monotonic) -> None:
        self._entries: dict[K, _Entry[V]] = {}
        self._lock = threading.Lock()
        self._default_ttl = default_ttl
        self._clock = clock

    def get(self, key: K) -> Optional[V]:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.expired(now):
                del self._entries[key]
                return None
            return entry.value

    def set(self, key: K, value: V, *, ttl: float | None = None) -> None:
        now = self._clock()
        entry = _Entry(value=value, stored_at=now, expires_at=self._deadline(now, ttl))
        with self._lock:
            self._entries[key] = entry

    def update(
        self,
        key: K,
        fn: Callable[[Optional[V]], V],
        *,
        ttl: float | None = None,
    ) -> V:
        """Atomically replace ``key`` with ``fn(current)``; expired values read as None."""

        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            current = None if entry is None or entry.expired(now) else entry.value
            value = fn(current)
            self._entries[key] = _Entry(value=value, stored_at=now, expires_at=self._deadline(now, ttl))
            return value

    def pop(self, key: K) -> Optional[V]:
        with self._lock:
            entry = self._entries.pop(key, None)
        if entry is None or entry.expired(self._clock()):
            return None
        return entry.value

    def keys(self) -> List[K]:
        now = self._clock()
        with self._lock:
            return [key for key, entry in self._entries.items() if not entry.expired(now)]

    def values(self) -> List[V]:
        now = self._clock()
        with self._lock:
            return [entry.value for entry in self._entries.values() if not entry.expired(now)]

    def sweep(self) -> int:
        """Purge expired entries and return how many were removed."""

        now = self._clock()
        with self._lock:
            candidates = [key for key, entry in self._entries.items() if entry.expired(now)]
        removed = 0
        for key in candidates:
            with self._lock:
                entry = self._entries.get(key)
                # The key may have been refreshed since the snapshot was taken.
                if entry is not None and entry.expired(now):
                    del self._entries[key]
                    removed += 1
        return removed

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self.keys())

    def __contains__(self, key: object) -> bool:
        return self.get(key) is not None  # type: ignore[arg-type]

    def _deadline(self, now: float, ttl: float | None) -> float | None:
        effective = ttl if ttl is not None else self._default_ttl
        if effective is None:
            return None
        return now + max(effective, 0.0)


__all__ = ["ExpiringStore", "Clock"]
