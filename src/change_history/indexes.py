"""Supporting indexes for every history partition.

The catalog is the same for every partition:
- a unique index on event_id (primary lookup)
- btree indexes on actor, transaction_id, action, table_name, schema_name
- an expression index on the calendar date of statement_time in a fixed
  time zone
- one expression index per hot row-image key (foreign-key shaped fields the
  deployment looks rows up by), taken from configuration

Creation is create-if-absent, so provision_indexes() can run on a schedule
and right after new partitions appear, empty or not.
"""
import hashlib
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Iterable, Optional

from .errors import ConfigurationError, ObjectExistsError
from .metrics import INDEXES_CREATED

if TYPE_CHECKING:
    from .config import Settings
    from .partitions import Partition
    from .storage.base import HistoryStore

logger = logging.getLogger("change_history.indexes")

MAX_IDENTIFIER_LENGTH = 63

GENERIC_INDEX_COLUMNS = ("actor", "transaction_id", "action", "table_name", "schema_name")

_SAFE_SUFFIX = re.compile(r"[^a-z0-9_]+")


class IndexKind(str, Enum):
    COLUMN = "column"              # Plain column
    STATEMENT_DATE = "statement_date"  # Date of statement_time in a time zone
    ROW_KEY = "row_key"            # Text value of a row_image key


@dataclass(frozen=True)
class IndexSpec:
    """One index of the per-partition catalog."""
    suffix: str
    kind: IndexKind
    target: str
    unique: bool = False

    def index_name(self, partition: "Partition") -> str:
        name = f"{partition.name}_{self.suffix}"
        if len(name) <= MAX_IDENTIFIER_LENGTH:
            return name
        # Postgres truncates identifiers to 63 bytes; keep truncated names distinct
        digest = hashlib.sha256(name.encode()).hexdigest()[:8]
        return f"{name[:MAX_IDENTIFIER_LENGTH - len(digest) - 1]}_{digest}"


def build_index_catalog(
    hot_row_keys: Iterable[str] = (),
    timezone_name: str = "UTC",
) -> list[IndexSpec]:
    """Build the index catalog applied to every partition.

    Args:
        hot_row_keys: row_image keys that get a dedicated index.
        timezone_name: Time zone the statement date is derived in.

    Raises:
        ConfigurationError: A hot key is empty or duplicated.
    """
    catalog = [IndexSpec("event_id_key", IndexKind.COLUMN, "event_id", unique=True)]
    catalog.extend(
        IndexSpec(f"{column}_idx", IndexKind.COLUMN, column) for column in GENERIC_INDEX_COLUMNS
    )
    catalog.append(IndexSpec("statement_date_idx", IndexKind.STATEMENT_DATE, timezone_name))

    seen = set()
    for key in hot_row_keys:
        suffix = _SAFE_SUFFIX.sub("_", key.lower()).strip("_")
        if not suffix:
            raise ConfigurationError(
                "Hot row key has no usable characters",
                details={"key": key}
            )
        if suffix in seen:
            raise ConfigurationError(
                f"Hot row key '{key}' collides with another key",
                details={"key": key, "suffix": suffix}
            )
        seen.add(suffix)
        catalog.append(IndexSpec(f"row_{suffix}_idx", IndexKind.ROW_KEY, key))
    return catalog


class IndexProvisioner:
    """Creates the index catalog on every existing partition."""

    def __init__(self, store: "HistoryStore", catalog: Optional[list[IndexSpec]] = None):
        self.store = store
        self.catalog = catalog if catalog is not None else build_index_catalog()

    @classmethod
    def from_settings(cls, store: "HistoryStore", settings: "Settings") -> "IndexProvisioner":
        return cls(store, build_index_catalog(settings.hot_row_keys, settings.partition_timezone))

    def provision_indexes(self) -> int:
        """Create missing catalog indexes on all partitions.

        Returns:
            Number of indexes created by this run.
        """
        created = 0
        partitions = self.store.list_partitions()
        for partition in partitions:
            for spec in self.catalog:
                if self._ensure_index(partition, spec):
                    created += 1
        logger.info(
            "Index provisioning done: %d created across %d partitions",
            created,
            len(partitions),
        )
        return created

    def _ensure_index(self, partition: "Partition", spec: IndexSpec) -> bool:
        if self.store.index_exists(partition, spec):
            return False
        try:
            self.store.create_index(partition, spec)
        except ObjectExistsError:
            logger.debug("Index %s created concurrently", spec.index_name(partition))
            return False
        INDEXES_CREATED.inc()
        logger.info("Created index %s", spec.index_name(partition))
        return True
