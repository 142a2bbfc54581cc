"""Per-group cache of the most recent metric set."""

from __future__ import annotations

import threading
from dataclasses import dataclass

from .errors import RowConversionError
from .models import MetricObservation


@dataclass(frozen=True, slots=True)
class CacheEntry:
    """Metrics and row errors produced by one query group run."""

    metrics: tuple[MetricObservation, ...]
    errors: tuple[RowConversionError, ...]
    timestamp: float

    def age(self, now: float) -> float:
        return now - self.timestamp


class MetricCache:
    """Key-value store guarded by a single lock.

    Expiry is left to the caller: entries only carry the time they were stored.
    A disabled cache reports a miss on every lookup and drops writes.
    """

    def __init__(self, *, enabled: bool = True) -> None:
        self._enabled = enabled
        self._entries: dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return self._enabled

    def get(self, name: str) -> tuple[CacheEntry | None, bool]:
        if not self._enabled:
            return None, False
        with self._lock:
            entry = self._entries.get(name)
        return entry, entry is not None

    def put(self, name: str, entry: CacheEntry) -> None:
        if not self._enabled:
            return
        with self._lock:
            self._entries[name] = entry

    def invalidate(self, name: str | None = None) -> None:
        """Drop one entry, or every entry when ``name`` is omitted."""

        with self._lock:
            if name is None:
                self._entries.clear()
            else:
                self._entries.pop(name, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


__all__ = ["CacheEntry", "MetricCache"]
