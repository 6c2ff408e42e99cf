from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime
from threading import Lock
from typing import Callable, Generic, TypeVar

K = TypeVar("K")
V = TypeVar("V")


def utc_now() -> str:
    return datetime.utcnow().strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass
class OperationRecord:
    operation: str  # spawn|destroy|reload
    status: str
    config_hash: str | None = None
    error: str | None = None
    at: str = field(default_factory=utc_now)


class BoundedCache(Generic[K, V]):
    """Fixed-capacity map of key -> (value, last_used) with manual LRU eviction.

    Reads refresh last_used; inserting past capacity evicts the least
    recently used entries.
    """

    def __init__(self, capacity: int, clock: Callable[[], float] = time.monotonic):
        self.capacity = max(1, int(capacity))
        self._clock = clock
        self._lock = Lock()
        self._entries: dict[K, tuple[V, float]] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: K) -> bool:
        with self._lock:
            return key in self._entries

    def get(self, key: K) -> V | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, _ = entry
            self._entries[key] = (value, self._clock())
            return value

    def put(self, key: K, value: V) -> None:
        with self._lock:
            self._entries[key] = (value, self._clock())
            if len(self._entries) > self.capacity:
                self._evict()

    def pop(self, key: K) -> V | None:
        with self._lock:
            entry = self._entries.pop(key, None)
            return entry[0] if entry else None

    def _evict(self) -> None:
        # Caller holds the lock.
        overflow = len(self._entries) - self.capacity
        if overflow <= 0:
            return
        oldest = sorted(self._entries.items(), key=lambda kv: kv[1][1])[:overflow]
        for key, _ in oldest:
            del self._entries[key]


class RuntimeState:
    """In-memory, per-tenant activity. Never consulted for container state."""

    def __init__(self, capacity: int = 1024, clock: Callable[[], float] = time.monotonic) -> None:
        self.activity: BoundedCache[str, OperationRecord] = BoundedCache(capacity, clock=clock)

    def record(self, project_id: str, operation: str, status: str, config_hash: str | None = None, error: str | None = None) -> OperationRecord:
        rec = OperationRecord(operation=operation, status=status, config_hash=config_hash, error=error)
        self.activity.put(project_id, rec)
        return rec

    def last_operation(self, project_id: str) -> OperationRecord | None:
        return self.activity.get(project_id)
