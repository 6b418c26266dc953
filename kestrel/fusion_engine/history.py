"""Kestrel — Rolling History Store.

Per-entity, time-windowed buffers of past samples. Eviction is lazy: old
samples are dropped whenever an entity is read or written, never by a
timer. Each entity has exactly one writer (the scorer that owns it);
anyone may read.
"""

import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Generic, Optional, TypeVar

logger = logging.getLogger("kestrel.history")

T = TypeVar("T")


class HistoryOwnershipError(RuntimeError):
    """Raised when a second writer tries to append to an entity it does not own."""


@dataclass(frozen=True)
class HistorySample(Generic[T]):
    timestamp: datetime
    value: T


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class HistoryStore(Generic[T]):
    """Rolling window of samples keyed by entity id."""

    def __init__(
        self,
        window: timedelta,
        max_samples: Optional[int] = None,
        clock: Callable[[], datetime] = _utcnow,
        name: str = "history",
    ):
        self.window = window
        self.max_samples = max_samples
        self.name = name
        self._clock = clock
        self._buffers: dict[str, deque[HistorySample[T]]] = {}
        self._owners: dict[str, str] = {}

    def append(self, entity: str, value: T, *, owner: str, timestamp: Optional[datetime] = None) -> None:
        claimed = self._owners.setdefault(entity, owner)
        if claimed != owner:
            raise HistoryOwnershipError(
                f"{self.name}: entity {entity!r} is owned by {claimed!r}, not {owner!r}"
            )
        ts = timestamp or self._clock()
        buf = self._buffers.get(entity)
        if buf is None:
            buf = deque(maxlen=self.max_samples)
            self._buffers[entity] = buf
        buf.append(HistorySample(ts, value))
        self._evict(entity, ts)

    def samples(self, entity: str, now: Optional[datetime] = None) -> list[HistorySample[T]]:
        """Samples for an entity still inside the window, oldest first."""
        if entity not in self._buffers:
            return []
        self._evict(entity, now or self._clock())
        return list(self._buffers[entity])

    def values(self, entity: str, now: Optional[datetime] = None) -> list[T]:
        return [s.value for s in self.samples(entity, now)]

    def since(self, entity: str, age: timedelta, now: Optional[datetime] = None) -> list[HistorySample[T]]:
        """Samples no older than `age` (a sub-window of the retention window)."""
        now = now or self._clock()
        cutoff = now - age
        return [s for s in self.samples(entity, now) if s.timestamp >= cutoff]

    def latest(self, entity: str, now: Optional[datetime] = None) -> Optional[HistorySample[T]]:
        items = self.samples(entity, now)
        return items[-1] if items else None

    def owner_of(self, entity: str) -> Optional[str]:
        return self._owners.get(entity)

    def entities(self) -> list[str]:
        return list(self._buffers.keys())

    def purge(self, now: Optional[datetime] = None) -> int:
        """Evict expired samples across all entities. Returns the number dropped."""
        now = now or self._clock()
        dropped = 0
        for entity in list(self._buffers.keys()):
            dropped += self._evict(entity, now)
        if dropped:
            logger.debug("[%s] Purged %d expired samples", self.name, dropped)
        return dropped

    def clear(self, entity: Optional[str] = None) -> None:
        if entity is None:
            self._buffers.clear()
            self._owners.clear()
        else:
            self._buffers.pop(entity, None)
            self._owners.pop(entity, None)

    def _evict(self, entity: str, now: datetime) -> int:
        buf = self._buffers[entity]
        cutoff = now - self.window
        dropped = 0
        while buf and buf[0].timestamp < cutoff:
            buf.popleft()
            dropped += 1
        return dropped

    def __len__(self) -> int:
        return sum(len(b) for b in self._buffers.values())

    def __contains__(self, entity: Any) -> bool:
        return entity in self._buffers
