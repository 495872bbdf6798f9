from __future__ import annotations

import threading
from collections.abc import Iterable
from typing import Generic, TypeVar

from coverage_escalation.models import BroadcastRecord, BroadcastStatus

K = TypeVar("K")
V = TypeVar("V")


class RecordNotFoundError(KeyError):
    pass


class ConcurrencyConflictError(Exception):
    """A write lost the race: the stored version moved on since it was read."""

    def __init__(self, record_id: str, expected_version: int, actual_version: int):
        super().__init__(
            f"record {record_id}: expected version {expected_version}, "
            f"found {actual_version}"
        )
        self.record_id = record_id
        self.expected_version = expected_version
        self.actual_version = actual_version


class InMemoryKeyValueDatabase(Generic[K, V]):
    def __init__(self) -> None:
        self._data: dict[K, V] = {}
        self._lock = threading.Lock()

    def get(self, key: K) -> V | None:
        return self._data.get(key)

    def put(self, key: K, value: V) -> None:
        with self._lock:
            self._data[key] = value

    def all(self) -> list[V]:
        return list(self._data.values())

    def clear(self) -> None:
        with self._lock:
            self._data.clear()


class BroadcastRecordStore(InMemoryKeyValueDatabase[str, BroadcastRecord]):
    """Record store with optimistic concurrency on ``BroadcastRecord.version``."""

    def require(self, record_id: str) -> BroadcastRecord:
        record = self.get(record_id)
        if record is None:
            raise RecordNotFoundError(record_id)
        return record

    def add(self, record: BroadcastRecord) -> None:
        with self._lock:
            if record.id in self._data:
                raise ValueError(f"record {record.id} already exists")
            self._data[record.id] = record

    def compare_and_set(self, record: BroadcastRecord, expected_version: int) -> None:
        """Store ``record`` only if the stored copy is still at ``expected_version``."""
        with self._lock:
            current = self._data.get(record.id)
            if current is None:
                raise RecordNotFoundError(record.id)
            if current.version != expected_version:
                raise ConcurrencyConflictError(record.id, expected_version, current.version)
            self._data[record.id] = record

    def with_status(self, statuses: Iterable[BroadcastStatus]) -> list[BroadcastRecord]:
        wanted = set(statuses)
        return [r for r in self.all() if r.status in wanted]

    def pending(self) -> list[BroadcastRecord]:
        return self.with_status([BroadcastStatus.PENDING])
