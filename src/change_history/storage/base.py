"""Base classes for history store backends.

A history store holds HistoryRecords in month partitions. Backends implement
two surfaces:

- HistoryWriter: the transaction-bound append path used by the capture hook.
  A writer belongs to the transaction of the audited mutation; if that
  transaction rolls back, everything appended through the writer is gone.
- HistoryStore: partition, constraint and index provisioning, plus the
  ordinary scans records are read back with.
"""
from abc import ABC, abstractmethod
from contextlib import AbstractContextManager
from datetime import datetime
from typing import TYPE_CHECKING, Optional

from ..schemas import HistoryRecord

if TYPE_CHECKING:
    from ..indexes import IndexSpec
    from ..partitions import Partition


class HistoryWriter(ABC):
    """Append path bound to one open transaction."""

    @abstractmethod
    def next_event_id(self) -> int:
        """Draw the next event id.

        Ids are unique under any number of concurrent writers. Gaps are
        allowed (ids drawn by rolled back transactions are never reused).
        """
        pass

    @abstractmethod
    def append(self, partition: "Partition", record: HistoryRecord) -> None:
        """Append a record to a partition.

        Raises:
            MissingPartitionError: The partition has not been provisioned.
            PartitionRangeError: record.statement_time is outside the
                partition's range constraint.
        """
        pass


class HistoryStore(ABC):
    """Abstract base class for history stores.

    Provisioning methods raise ObjectExistsError when asked to create
    something that already exists; callers treat that as success.
    """

    @abstractmethod
    def transaction(self) -> AbstractContextManager[HistoryWriter]:
        """Open a transaction and yield a writer bound to it.

        The transaction commits when the block exits normally and rolls back
        when it raises.
        """
        pass

    @abstractmethod
    def partition_exists(self, partition: "Partition") -> bool:
        pass

    @abstractmethod
    def create_partition(self, partition: "Partition") -> None:
        pass

    @abstractmethod
    def constraint_exists(self, partition: "Partition") -> bool:
        pass

    @abstractmethod
    def add_range_constraint(self, partition: "Partition") -> None:
        """Attach the [start, end) statement_time constraint to a partition."""
        pass

    @abstractmethod
    def list_partitions(self) -> list["Partition"]:
        """Existing partitions, oldest month first."""
        pass

    @abstractmethod
    def index_exists(self, partition: "Partition", spec: "IndexSpec") -> bool:
        pass

    @abstractmethod
    def create_index(self, partition: "Partition", spec: "IndexSpec") -> None:
        pass

    @abstractmethod
    def scan(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[HistoryRecord]:
        """Records with start <= statement_time < end, by event_id."""
        pass

    @abstractmethod
    def scan_events(self, after_event_id: int = 0, limit: int = 100) -> list[HistoryRecord]:
        """Up to limit records with event_id > after_event_id, by event_id."""
        pass
