"""Application-layer interception of writes to instrumented tables.

MutationInterceptor fans one mutation out to the capture hook according to
the table's wiring: every wired row-level event first, one per changed row,
then the statement-level event once. AuditedTable is the Postgres write path:
it executes insert/update/delete/truncate with psycopg, reads the before and
after row images back with ``to_jsonb`` in RETURNING, and runs the mutation
and its capture inside one ``conn.transaction()`` block.
"""
import logging
from typing import Any, Callable, Optional, Sequence

import psycopg
from psycopg import sql

from .enablement import AuditRegistry
from .schemas import (
    CaptureContext,
    Granularity,
    HistoryRecord,
    MutationEvent,
    Operation,
    RowChange,
    RowImage,
    TableIdentity,
)
from .storage.base import HistoryWriter
from .storage.postgres import PostgresHistoryStore, fetch_capture_context, lookup_table

logger = logging.getLogger("change_history.interceptor")

_RETURNING = sql.SQL("RETURNING to_jsonb(t), statement_timestamp(), clock_timestamp()")


class MutationInterceptor:
    """Routes mutations on instrumented tables to their capture hooks."""

    def __init__(self, registry: AuditRegistry):
        self.registry = registry

    def dispatch(
        self,
        table: TableIdentity,
        operation: Operation,
        changes: Sequence[RowChange],
        context: CaptureContext,
        writer: HistoryWriter,
    ) -> list[HistoryRecord]:
        """Capture one statement's effect on table.

        Args:
            table: Table the statement mutated.
            operation: The statement's operation.
            changes: Before/after images of every row it touched.
            context: Session/transaction metadata of the statement.
            writer: Writer bound to the statement's transaction.

        Returns:
            Records appended (suppressed updates are absent). Empty when the
            table is not wired or its wiring is inactive.
        """
        wiring = self.registry.get(table)
        if wiring is None or not wiring.active:
            return []

        records = []
        if wiring.fires_on(operation, Granularity.ROW):
            for change in changes:
                event = MutationEvent(operation, Granularity.ROW, change.old_image, change.new_image)
                record = wiring.hook.fire(event, context, writer)
                if record is not None:
                    records.append(record)
        if wiring.fires_on(operation, Granularity.STATEMENT):
            event = MutationEvent(operation, Granularity.STATEMENT)
            records.append(wiring.hook.fire(event, context, writer))
        return records


class AuditedTable:
    """Audited write path for one Postgres table.

    Usage:
        with get_connection() as conn:
            customers = AuditedTable.open(conn, "public", "tb_customer", interceptor, store)
            customers.update({"id": 1}, {"name": "y"})
            conn.commit()

    Each call runs in ``conn.transaction()``: a savepoint when the caller
    already has a transaction open, otherwise its own transaction. If the
    capture fails, the mutation is rolled back with it.
    """

    def __init__(
        self,
        conn: psycopg.Connection,
        table: TableIdentity,
        interceptor: MutationInterceptor,
        store: PostgresHistoryStore,
    ):
        self._conn = conn
        self.table = table
        self._interceptor = interceptor
        self._store = store

    @classmethod
    def open(
        cls,
        conn: psycopg.Connection,
        schema_name: str,
        table_name: str,
        interceptor: MutationInterceptor,
        store: PostgresHistoryStore,
    ) -> "AuditedTable":
        return cls(conn, lookup_table(conn, schema_name, table_name), interceptor, store)

    @property
    def _ident(self) -> sql.Identifier:
        return sql.Identifier(self.table.schema_name, self.table.table_name)

    def insert(self, values: dict[str, Any]) -> RowImage:
        """Insert one row and return it as stored."""
        if values:
            query = sql.SQL("INSERT INTO {} AS t ({}) VALUES ({}) {}").format(
                self._ident,
                sql.SQL(", ").join(map(sql.Identifier, values)),
                sql.SQL(", ").join(sql.Placeholder() * len(values)),
                _RETURNING,
            )
        else:
            query = sql.SQL("INSERT INTO {} AS t DEFAULT VALUES {}").format(self._ident, _RETURNING)
        changes = self._run(
            Operation.INSERT, query, list(values.values()),
            lambda row: RowChange(new_image=row[0]),
        )
        return changes[0].new_image

    def update(self, where: dict[str, Any], values: dict[str, Any]) -> list[RowImage]:
        """Update matching rows and return their new images."""
        if not values:
            raise ValueError("update requires at least one column to set")
        condition, where_params = _condition(where, "t")
        query = sql.SQL(
            "WITH before_rows AS ("
            "SELECT t.tableoid AS row_tableoid, t.ctid AS row_ctid, to_jsonb(t) AS image "
            "FROM {tbl} AS t WHERE {cond} FOR UPDATE"
            ") "
            "UPDATE {tbl} AS t SET {assign} FROM before_rows "
            "WHERE t.tableoid = before_rows.row_tableoid AND t.ctid = before_rows.row_ctid "
            "RETURNING before_rows.image, to_jsonb(t), statement_timestamp(), clock_timestamp()"
        ).format(
            tbl=self._ident,
            cond=condition,
            assign=sql.SQL(", ").join(
                sql.SQL("{} = %s").format(sql.Identifier(column)) for column in values
            ),
        )
        changes = self._run(
            Operation.UPDATE, query, where_params + list(values.values()),
            lambda row: RowChange(old_image=row[0], new_image=row[1]),
        )
        return [change.new_image for change in changes]

    def delete(self, where: dict[str, Any]) -> list[RowImage]:
        """Delete matching rows and return their old images."""
        condition, params = _condition(where, "t")
        query = sql.SQL("DELETE FROM {} AS t WHERE {} {}").format(self._ident, condition, _RETURNING)
        changes = self._run(
            Operation.DELETE, query, params,
            lambda row: RowChange(old_image=row[0]),
        )
        return [change.old_image for change in changes]

    def truncate(self) -> None:
        """Remove every row; audited as a single bulk-clear."""
        query = sql.SQL("TRUNCATE {}").format(self._ident)
        self._run(Operation.TRUNCATE, query, [], None)

    def _run(
        self,
        operation: Operation,
        query: sql.Composable,
        params: list[Any],
        to_change: Optional[Callable[[tuple], RowChange]],
    ) -> list[RowChange]:
        statement_text = query.as_string(self._conn)
        with self._conn.transaction():
            # Read before the mutation so a statement that returns no rows is
            # never stamped later than it ran
            context = fetch_capture_context(self._conn, statement_text)
            with self._conn.cursor() as cur:
                cur.execute(query, params)
                rows = cur.fetchall() if cur.description is not None else []
            changes = [to_change(row) for row in rows] if to_change else []

            if rows:
                # Timestamps of the mutation itself
                context = context.model_copy(
                    update={"statement_time": rows[0][-2], "clock_time": rows[-1][-1]}
                )
            records = self._interceptor.dispatch(
                self.table, operation, changes, context, self._store.writer(self._conn)
            )
        logger.debug(
            "%s on %s: %d rows, %d history records",
            operation.value, self.table.qualified_name, len(changes), len(records),
        )
        return changes


def _condition(where: dict[str, Any], alias: str) -> tuple[sql.Composable, list[Any]]:
    if not where:
        return sql.SQL("TRUE"), []
    condition = sql.SQL(" AND ").join(
        sql.SQL("{} IS NOT DISTINCT FROM %s").format(sql.Identifier(alias, column))
        for column in where
    )
    return condition, list(where.values())
