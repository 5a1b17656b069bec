"""Enablement: which tables are audited, for which events.

AuditRegistry holds one explicit wiring record per instrumented table. A
wiring binds a CaptureHook to the (operation, granularity) pairs it fires
on:

    capture_rows=True    row-level insert/update/delete
                         + statement-level truncate
    capture_rows=False   statement-level insert/update/delete/truncate

enable() is re-runnable (the prior wiring is dropped and recreated).
set_active() toggles a wiring without removing it. enable_matching() is the
bulk form: it applies one config to every table of a catalog whose name
matches a SQL ILIKE pattern such as ``tb_%``. discover_tables() builds that
catalog from Postgres.
"""
import logging
import re
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, Iterable, Optional

import psycopg

from .capture import CaptureHook
from .partitions import PartitionRouter
from .schemas import Granularity, Operation, TableAuditConfig, TableIdentity

if TYPE_CHECKING:
    from .config import Settings

logger = logging.getLogger("change_history.enablement")

CaptureEvent = tuple[Operation, Granularity]

ROW_EVENTS: frozenset[CaptureEvent] = frozenset(
    (op, Granularity.ROW) for op in (Operation.INSERT, Operation.UPDATE, Operation.DELETE)
)
ALL_STATEMENT_EVENTS: frozenset[CaptureEvent] = frozenset(
    (op, Granularity.STATEMENT) for op in Operation
)


def wiring_events(config: TableAuditConfig) -> frozenset[CaptureEvent]:
    """Events a table is wired for under config."""
    if config.capture_rows:
        return ROW_EVENTS | {(Operation.TRUNCATE, Granularity.STATEMENT)}
    return ALL_STATEMENT_EVENTS


def ilike_to_regex(pattern: str) -> re.Pattern:
    """Compile a SQL ILIKE pattern (``%``, ``_``, backslash escapes)."""
    parts = []
    chars = iter(pattern)
    for ch in chars:
        if ch == "\\":
            parts.append(re.escape(next(chars, "\\")))
        elif ch == "%":
            parts.append(".*")
        elif ch == "_":
            parts.append(".")
        else:
            parts.append(re.escape(ch))
    return re.compile("".join(parts), re.IGNORECASE | re.DOTALL)


@dataclass(frozen=True)
class TableWiring:
    """Explicit wiring of the capture hook to one table."""
    table: TableIdentity
    config: TableAuditConfig
    events: frozenset[CaptureEvent]
    hook: CaptureHook
    active: bool = True

    def fires_on(self, operation: Operation, granularity: Granularity) -> bool:
        return self.active and (operation, granularity) in self.events

    def describe(self) -> list[str]:
        return describe_events(self.table, self.events)


def describe_events(table: TableIdentity, events: Iterable[CaptureEvent]) -> list[str]:
    """One line per granularity, e.g. ``public.tb_a row: delete, insert, update``."""
    events = set(events)
    lines = []
    for granularity in Granularity:
        ops = sorted(op.value for op, g in events if g is granularity)
        if ops:
            lines.append(f"{table.qualified_name} {granularity.value}: {', '.join(ops)}")
    return lines


class AuditRegistry:
    """Per-table wiring records, keyed by schema and table name."""

    def __init__(self, router: PartitionRouter, default_config: Optional[TableAuditConfig] = None):
        self.router = router
        self.default_config = default_config or TableAuditConfig()
        self._lock = threading.Lock()
        self._wirings: dict[tuple[str, str], TableWiring] = {}

    @classmethod
    def from_settings(cls, settings: "Settings") -> "AuditRegistry":
        default = TableAuditConfig(capture_statement_text=settings.capture_statement_text)
        return cls(PartitionRouter.from_settings(settings), default)

    def enable(self, table: TableIdentity, config: Optional[TableAuditConfig] = None) -> TableWiring:
        """Wire the capture hook to table, replacing any prior wiring."""
        config = config or self.default_config
        wiring = TableWiring(
            table=table,
            config=config,
            events=wiring_events(config),
            hook=CaptureHook(table, config, self.router),
        )
        with self._lock:
            replaced = self._wirings.pop(_key(table), None) is not None
            self._wirings[_key(table)] = wiring
        logger.info(
            "%s capture on %s (rows=%s, statement_text=%s, ignored=%d)",
            "Re-enabled" if replaced else "Enabled",
            table.qualified_name,
            config.capture_rows,
            config.capture_statement_text,
            len(config.ignored_columns),
        )
        return wiring

    def disable(self, table: TableIdentity) -> bool:
        """Remove a table's wiring. Returns False if it was not wired."""
        with self._lock:
            removed = self._wirings.pop(_key(table), None) is not None
        if removed:
            logger.info("Disabled capture on %s", table.qualified_name)
        return removed

    def set_active(self, table: TableIdentity, active: bool) -> TableWiring:
        """Toggle a wiring on or off without removing it.

        Raises:
            KeyError: table is not wired.
        """
        with self._lock:
            wiring = self._wirings[_key(table)]
            wiring = TableWiring(wiring.table, wiring.config, wiring.events, wiring.hook, active)
            self._wirings[_key(table)] = wiring
        logger.info("Capture on %s %s", table.qualified_name, "activated" if active else "deactivated")
        return wiring

    def get(self, table: TableIdentity) -> Optional[TableWiring]:
        with self._lock:
            return self._wirings.get(_key(table))

    def wirings(self) -> list[TableWiring]:
        with self._lock:
            return sorted(self._wirings.values(), key=lambda w: _key(w.table))

    def enable_matching(
        self,
        tables: Iterable[TableIdentity],
        pattern: str,
        config: Optional[TableAuditConfig] = None,
    ) -> list[TableWiring]:
        """Enable every table whose name matches an ILIKE pattern."""
        return [self.enable(table, config) for table in matching_tables(tables, pattern)]


def matching_tables(tables: Iterable[TableIdentity], pattern: str) -> list[TableIdentity]:
    regex = ilike_to_regex(pattern)
    return [t for t in tables if regex.fullmatch(t.table_name)]


def enablement_plan(
    tables: Iterable[TableIdentity],
    pattern: str,
    config: Optional[TableAuditConfig] = None,
) -> list[str]:
    """Wiring lines a bulk enablement would produce, without enabling anything."""
    config = config or TableAuditConfig()
    events = wiring_events(config)
    lines = []
    for table in matching_tables(tables, pattern):
        lines.extend(describe_events(table, events))
    return lines


def discover_tables(
    conn: psycopg.Connection,
    schema_name: str,
    pattern: str = "%",
    exclude_schema: Optional[str] = None,
) -> list[TableIdentity]:
    """Ordinary tables of schema_name whose name matches an ILIKE pattern.

    Tables of exclude_schema (the history store's own schema) are never
    returned, so the history store cannot be wired to audit itself.
    """
    if exclude_schema is not None and schema_name == exclude_schema:
        return []
    with conn.cursor() as cur:
        cur.execute(
            """
            SELECT n.nspname, c.relname, c.oid::bigint
            FROM pg_class c
            JOIN pg_namespace n ON n.oid = c.relnamespace
            WHERE n.nspname = %s
              AND c.relname ILIKE %s
              AND c.relkind IN ('r', 'p')
            ORDER BY c.relname
            """,
            (schema_name, pattern)
        )
        rows = cur.fetchall()
    return [
        TableIdentity(schema_name=schema, table_name=name, relation_id=oid)
        for schema, name, oid in rows
    ]


def _key(table: TableIdentity) -> tuple[str, str]:
    return (table.schema_name, table.table_name)
