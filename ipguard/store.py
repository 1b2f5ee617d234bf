from __future__ import annotations

from dataclasses import dataclass, field
import threading
from typing import Callable, Iterator, Optional, Protocol


@dataclass(frozen=True)
class TrackerRecord:
    """Failure bookkeeping for one client key.

    Records are immutable; every mutation stores a new instance so a reader
    never observes a half-applied update.
    """

    failure_count: int
    window_start: float
    blocked_until: Optional[float] = None
    offense_count: int = 0
    last_reason: Optional[str] = None

    def is_blocked_at(self, now: float) -> bool:
        return self.blocked_until is not None and self.blocked_until > now


RecordUpdate = Callable[[Optional[TrackerRecord]], Optional[TrackerRecord]]


class TrackerStore(Protocol):
    def get(self, key: str) -> Optional[TrackerRecord]: ...

    def set(self, key: str, record: TrackerRecord) -> None: ...

    def delete(self, key: str) -> bool: ...

    def update(self, key: str, fn: RecordUpdate) -> Optional[TrackerRecord]: ...

    def delete_if(self, key: str, predicate: Callable[[TrackerRecord], bool]) -> bool: ...

    def scan(self) -> Iterator[tuple[str, TrackerRecord]]: ...

    def __len__(self) -> int: ...


@dataclass
class _Shard:
    records: dict[str, TrackerRecord] = field(default_factory=dict)
    lock: threading.Lock = field(default_factory=threading.Lock)


class InMemoryTrackerStore:
    """Process-local store, sharded so unrelated keys rarely share a lock."""

    def __init__(self, shards: int = 16) -> None:
        if shards < 1:
            raise ValueError("shards must be at least 1")
        self._shards = [_Shard() for _ in range(shards)]

    def _shard(self, key: str) -> _Shard:
        return self._shards[hash(key) % len(self._shards)]

    def get(self, key: str) -> Optional[TrackerRecord]:
        shard = self._shard(key)
        with shard.lock:
            return shard.records.get(key)

    def set(self, key: str, record: TrackerRecord) -> None:
        shard = self._shard(key)
        with shard.lock:
            shard.records[key] = record

    def delete(self, key: str) -> bool:
        shard = self._shard(key)
        with shard.lock:
            return shard.records.pop(key, None) is not None

    def update(self, key: str, fn: RecordUpdate) -> Optional[TrackerRecord]:
        """Apply ``fn`` to the current record atomically.

        ``fn`` receives the stored record (or None) and returns the record to
        store; returning None deletes the key.
        """
        shard = self._shard(key)
        with shard.lock:
            updated = fn(shard.records.get(key))
            if updated is None:
                shard.records.pop(key, None)
            else:
                shard.records[key] = updated
            return updated

    def delete_if(self, key: str, predicate: Callable[[TrackerRecord], bool]) -> bool:
        shard = self._shard(key)
        with shard.lock:
            record = shard.records.get(key)
            if record is None or not predicate(record):
                return False
            del shard.records[key]
            return True

    def scan(self) -> Iterator[tuple[str, TrackerRecord]]:
        # Snapshot one shard at a time; the lock is released between shards.
        for shard in self._shards:
            with shard.lock:
                snapshot = list(shard.records.items())
            yield from snapshot

    def clear(self) -> None:
        for shard in self._shards:
            with shard.lock:
                shard.records.clear()

    def __len__(self) -> int:
        return sum(len(shard.records) for shard in self._shards)
