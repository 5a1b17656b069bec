"""Month partitions of the history store.

Every history record lands in the partition of the calendar month its
statement_time falls in, evaluated in the configured partition time zone.
The partition key is ``year * 100 + month`` (e.g. 202503) and each partition
carries a half-open range constraint ``[month_start, next_month_start)`` on
statement_time, so ranges are contiguous and never overlap.

Partitions are never created on first write. PartitionLifecycleManager
provisions a whole year ahead of time; an append into a month nobody
provisioned fails with MissingPartitionError.

Example:
    >>> router = PartitionRouter("logged_actions")
    >>> router.route(datetime(2025, 3, 14, tzinfo=timezone.utc)).name
    'logged_actions_202503'
"""
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone, tzinfo
from typing import TYPE_CHECKING, Optional

from .errors import ObjectExistsError
from .metrics import PARTITIONS_CREATED

if TYPE_CHECKING:
    from .config import Settings
    from .storage.base import HistoryStore

logger = logging.getLogger("change_history.partitions")


@dataclass(frozen=True, order=True)
class Partition:
    """One month segment of the history store."""
    key: int
    name: str
    start: datetime
    end: datetime

    @property
    def year(self) -> int:
        return self.key // 100

    @property
    def month(self) -> int:
        return self.key % 100

    @property
    def constraint_name(self) -> str:
        return f"{self.name}_statement_time_range"

    def contains(self, statement_time: datetime) -> bool:
        return self.start <= statement_time < self.end


def partition_key(statement_time: datetime, tz: tzinfo = timezone.utc) -> int:
    """Partition key (year * 100 + month) of a timestamp in time zone tz."""
    if statement_time.tzinfo is None:
        raise ValueError("statement_time must be timezone-aware")
    local = statement_time.astimezone(tz)
    return local.year * 100 + local.month


def month_bounds(year: int, month: int, tz: tzinfo = timezone.utc) -> tuple[datetime, datetime]:
    """Start of the month and start of the next month, in time zone tz."""
    if not 1 <= month <= 12:
        raise ValueError(f"month out of range: {month}")
    start = datetime(year, month, 1, tzinfo=tz)
    if month == 12:
        end = datetime(year + 1, 1, 1, tzinfo=tz)
    else:
        end = datetime(year, month + 1, 1, tzinfo=tz)
    return start, end


class PartitionRouter:
    """Maps statement times to month partitions. Never creates partitions."""

    def __init__(self, table_name: str = "logged_actions", tz: tzinfo = timezone.utc):
        self.table_name = table_name
        self.tz = tz
        self._name_pattern = re.compile(rf"^{re.escape(table_name)}_(\d{{4}})(\d{{2}})$")

    @classmethod
    def from_settings(cls, settings: "Settings") -> "PartitionRouter":
        return cls(settings.history_table, settings.tzinfo)

    def partition_for(self, year: int, month: int) -> Partition:
        start, end = month_bounds(year, month, self.tz)
        key = year * 100 + month
        return Partition(key=key, name=f"{self.table_name}_{key}", start=start, end=end)

    def partitions_for_year(self, year: int) -> list[Partition]:
        return [self.partition_for(year, month) for month in range(1, 13)]

    def route(self, statement_time: datetime) -> Partition:
        """Partition whose range contains statement_time."""
        key = partition_key(statement_time, self.tz)
        return self.partition_for(key // 100, key % 100)

    def parse_name(self, name: str) -> Optional[Partition]:
        """Partition described by a physical table name, if it is one of ours."""
        match = self._name_pattern.match(name)
        if match is None:
            return None
        year, month = int(match.group(1)), int(match.group(2))
        if not 1 <= month <= 12:
            return None
        return self.partition_for(year, month)


class PartitionLifecycleManager:
    """Provisions month partitions ahead of the data that will target them.

    ensure_partitions() is idempotent and safe to run concurrently: existence
    checks precede creation, and "already exists" from a racing run counts as
    success.
    """

    def __init__(self, store: "HistoryStore", router: PartitionRouter):
        self.store = store
        self.router = router

    def ensure_partitions(self, year: int) -> list[Partition]:
        """Create the twelve partitions of year and their range constraints.

        Args:
            year: Calendar year to provision.

        Returns:
            The year's partitions, January first.
        """
        partitions = self.router.partitions_for_year(year)
        for partition in partitions:
            self._ensure_partition(partition)
            self._ensure_constraint(partition)
        logger.info("Partitions ensured for %s", year)
        return partitions

    def _ensure_partition(self, partition: Partition) -> None:
        if self.store.partition_exists(partition):
            return
        try:
            self.store.create_partition(partition)
        except ObjectExistsError:
            logger.debug("Partition %s created concurrently", partition.name)
            return
        PARTITIONS_CREATED.inc()
        logger.info("Created partition %s", partition.name)

    def _ensure_constraint(self, partition: Partition) -> None:
        if self.store.constraint_exists(partition):
            return
        try:
            self.store.add_range_constraint(partition)
        except ObjectExistsError:
            logger.debug("Constraint %s created concurrently", partition.constraint_name)
            return
        logger.info(
            "Attached %s [%s, %s)",
            partition.constraint_name,
            partition.start.isoformat(),
            partition.end.isoformat(),
        )
