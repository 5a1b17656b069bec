"""In-process history store.

Keeps partitions, constraints, indexes and records in memory with the same
contract as the Postgres store: appends are buffered per transaction and only
become visible on commit, event ids come from a locked counter, and appends
into unprovisioned months fail. Used for development and tests.
"""
import itertools
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Generator, Optional

from ..errors import MissingPartitionError, ObjectExistsError, PartitionRangeError
from ..indexes import IndexSpec
from ..partitions import Partition
from ..schemas import HistoryRecord
from .base import HistoryStore, HistoryWriter


@dataclass
class _MemoryPartition:
    partition: Partition
    constrained: bool = False
    indexes: set[str] = field(default_factory=set)
    records: list[HistoryRecord] = field(default_factory=list)


class _MemoryWriter(HistoryWriter):
    def __init__(self, store: "InMemoryHistoryStore"):
        self._store = store
        self.pending: list[tuple[int, HistoryRecord]] = []

    def next_event_id(self) -> int:
        return self._store._next_event_id()

    def append(self, partition: Partition, record: HistoryRecord) -> None:
        segment = self._store._segment(partition.key)
        if segment is None:
            raise MissingPartitionError(
                f"No partition {partition.name} for statement_time "
                f"{record.statement_time.isoformat()}",
                details={"partition": partition.name, "partition_key": partition.key}
            )
        if segment.constrained and not segment.partition.contains(record.statement_time):
            raise PartitionRangeError(
                f"statement_time {record.statement_time.isoformat()} violates "
                f"{segment.partition.constraint_name}",
                details={"partition": partition.name, "event_id": record.event_id}
            )
        self.pending.append((partition.key, record))


class InMemoryHistoryStore(HistoryStore):
    """Thread-safe in-memory HistoryStore."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._partitions: dict[int, _MemoryPartition] = {}

    def _next_event_id(self) -> int:
        with self._lock:
            return next(self._ids)

    def _segment(self, key: int) -> Optional[_MemoryPartition]:
        with self._lock:
            return self._partitions.get(key)

    @contextmanager
    def transaction(self) -> Generator[HistoryWriter, None, None]:
        writer = _MemoryWriter(self)
        yield writer
        # Only reached when the block did not raise
        with self._lock:
            for key, record in writer.pending:
                self._partitions[key].records.append(record)

    def partition_exists(self, partition: Partition) -> bool:
        return self._segment(partition.key) is not None

    def create_partition(self, partition: Partition) -> None:
        with self._lock:
            if partition.key in self._partitions:
                raise ObjectExistsError(
                    f"Partition {partition.name} already exists",
                    details={"partition": partition.name}
                )
            self._partitions[partition.key] = _MemoryPartition(partition)

    def constraint_exists(self, partition: Partition) -> bool:
        segment = self._segment(partition.key)
        return segment is not None and segment.constrained

    def add_range_constraint(self, partition: Partition) -> None:
        with self._lock:
            segment = self._require(partition)
            if segment.constrained:
                raise ObjectExistsError(
                    f"Constraint {partition.constraint_name} already exists",
                    details={"constraint": partition.constraint_name}
                )
            outside = [r.event_id for r in segment.records if not partition.contains(r.statement_time)]
            if outside:
                raise PartitionRangeError(
                    f"{partition.name} holds rows outside its range",
                    details={"partition": partition.name, "event_ids": outside}
                )
            segment.constrained = True

    def list_partitions(self) -> list[Partition]:
        with self._lock:
            return sorted(segment.partition for segment in self._partitions.values())

    def index_exists(self, partition: Partition, spec: IndexSpec) -> bool:
        segment = self._segment(partition.key)
        return segment is not None and spec.index_name(partition) in segment.indexes

    def create_index(self, partition: Partition, spec: IndexSpec) -> None:
        name = spec.index_name(partition)
        with self._lock:
            segment = self._require(partition)
            if name in segment.indexes:
                raise ObjectExistsError(f"Index {name} already exists", details={"index": name})
            segment.indexes.add(name)

    def index_names(self, partition: Partition) -> set[str]:
        with self._lock:
            return set(self._require(partition).indexes)

    def records_in(self, partition: Partition) -> list[HistoryRecord]:
        """Records stored in one partition, in append order."""
        with self._lock:
            return list(self._require(partition).records)

    def scan(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[HistoryRecord]:
        with self._lock:
            records = [r for s in self._partitions.values() for r in s.records]
        if start is not None:
            records = [r for r in records if r.statement_time >= start]
        if end is not None:
            records = [r for r in records if r.statement_time < end]
        return sorted(records, key=lambda r: r.event_id)

    def scan_events(self, after_event_id: int = 0, limit: int = 100) -> list[HistoryRecord]:
        records = [r for r in self.scan() if r.event_id > after_event_id]
        return records[:limit]

    def _require(self, partition: Partition) -> _MemoryPartition:
        # Caller holds the lock
        segment = self._partitions.get(partition.key)
        if segment is None:
            raise MissingPartitionError(
                f"No partition {partition.name}",
                details={"partition": partition.name, "partition_key": partition.key}
            )
        return segment
