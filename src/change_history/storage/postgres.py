"""Postgres history store.

Layout (schema and table names come from Settings):

    audit.logged_actions                parent table, never written directly
    audit.logged_actions_event_id_seq   event id generator
    audit.logged_actions_YYYYMM         one child table per month, INHERITS
                                        the parent and carries a CHECK
                                        constraint on its statement_time range

Reading the parent scans every month; constraint exclusion prunes months by
statement_time. The capture path appends on the caller's connection, so the
record commits or rolls back with the audited mutation. It never touches the
history tables directly: it calls two SECURITY DEFINER functions owned by the
store owner

    audit.logged_actions_next_event_id()      draws an event id
    audit.logged_actions_append(text, jsonb)  inserts into one month partition

so writer roles hold EXECUTE on those and no privilege on the tables.
"""
import json
import logging
from contextlib import contextmanager
from datetime import datetime
from functools import partial
from typing import Any, Callable, ContextManager, Generator, Optional

import psycopg
from psycopg import errors as pg_errors
from psycopg import sql
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from ..config import Settings, settings as default_settings
from ..db import get_connection
from ..errors import (
    MissingPartitionError,
    ObjectExistsError,
    PartitionRangeError,
    StorageError,
)
from ..indexes import IndexKind, IndexSpec
from ..partitions import Partition, PartitionRouter
from ..schemas import CaptureContext, ClientContext, HistoryRecord, TableIdentity
from .base import HistoryStore, HistoryWriter

logger = logging.getLogger("change_history.storage")

HISTORY_COLUMNS = (
    "event_id", "schema_name", "table_name", "relation_id", "actor",
    "tx_time", "statement_time", "clock_time", "transaction_id",
    "application_name", "client_addr", "client_port", "statement_text",
    "action", "row_image", "changed_fields", "is_statement_level",
)

_dumps = partial(json.dumps, default=str)

# Inherited by every month partition, CHECK constraints included
_PARENT_DDL = """
    CREATE TABLE IF NOT EXISTS {} (
        event_id bigint NOT NULL,
        schema_name text NOT NULL,
        table_name text NOT NULL,
        relation_id bigint NOT NULL,
        actor text NOT NULL,
        tx_time timestamptz NOT NULL,
        statement_time timestamptz NOT NULL,
        clock_time timestamptz NOT NULL,
        transaction_id bigint,
        application_name text,
        client_addr inet,
        client_port integer,
        statement_text text,
        action text NOT NULL
            CHECK (action IN ('insert', 'update', 'delete', 'bulk-clear')),
        row_image jsonb,
        changed_fields jsonb,
        is_statement_level boolean NOT NULL,
        CHECK (action <> 'bulk-clear' OR (
            is_statement_level AND row_image IS NULL AND changed_fields IS NULL
        ))
    )
"""

# The capture path writes only through these two functions. They run with the
# store owner's privileges, so writer roles need EXECUTE and nothing else.
_NEXT_EVENT_ID_BODY = "SELECT pg_catalog.nextval({sequence}::pg_catalog.regclass)"

_APPEND_BODY = """
DECLARE
    history_schema constant text := {schema};
    parent_table constant text := {table};
BEGIN
    IF pg_catalog.left(partition_name, -7) IS DISTINCT FROM parent_table
       OR pg_catalog.right(partition_name, 7) !~ '^_[0-9]{{6}}$' THEN
        RAISE EXCEPTION 'not a history partition: %', partition_name
            USING ERRCODE = 'invalid_parameter_value';
    END IF;
    EXECUTE pg_catalog.format(
        'INSERT INTO %I.%I SELECT * FROM pg_catalog.jsonb_populate_record(NULL::%I.%I, $1)',
        history_schema, partition_name, history_schema, parent_table
    ) USING history_record;
END
"""

_CONTEXT_QUERY = """
    SELECT session_user::text AS actor,
           transaction_timestamp() AS tx_time,
           statement_timestamp() AS statement_time,
           clock_timestamp() AS clock_time,
           txid_current() AS transaction_id,
           current_setting('application_name') AS application_name,
           host(inet_client_addr()) AS address,
           inet_client_port() AS port
"""


def fetch_capture_context(
    conn: psycopg.Connection,
    statement_text: Optional[str] = None,
) -> CaptureContext:
    """Read session and transaction metadata for a capture.

    actor is session_user (the login identity), never current_user, so a
    SECURITY DEFINER function or SET ROLE does not hide who acted.
    client_context is None for non-network (unix socket) sessions.
    """
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(_CONTEXT_QUERY)
        row = cur.fetchone()

    client = None
    if row["address"] is not None:
        client = ClientContext(
            application_name=row["application_name"] or None,
            address=row["address"],
            port=row["port"],
        )
    return CaptureContext(
        actor=row["actor"],
        tx_time=row["tx_time"],
        statement_time=row["statement_time"],
        clock_time=row["clock_time"],
        transaction_id=row["transaction_id"],
        client_context=client,
        statement_text=statement_text,
    )


def lookup_table(conn: psycopg.Connection, schema_name: str, table_name: str) -> TableIdentity:
    """Resolve a table to its identity, including the relation oid."""
    with conn.cursor() as cur:
        cur.execute(
            """
            SELECT c.oid::bigint
            FROM pg_class c
            JOIN pg_namespace n ON n.oid = c.relnamespace
            WHERE n.nspname = %s AND c.relname = %s AND c.relkind IN ('r', 'p')
            """,
            (schema_name, table_name)
        )
        row = cur.fetchone()
    if row is None:
        raise StorageError(
            f"Table {schema_name}.{table_name} does not exist",
            retryable=False,
            details={"schema_name": schema_name, "table_name": table_name}
        )
    return TableIdentity(schema_name=schema_name, table_name=table_name, relation_id=row[0])


class PostgresHistoryWriter(HistoryWriter):
    """Appends history records on an open connection without committing.

    Both calls go through the store's SECURITY DEFINER functions, so the
    connection's role needs no privileges on the history tables themselves.
    """

    def __init__(self, conn: psycopg.Connection, store: "PostgresHistoryStore"):
        self._conn = conn
        self._store = store

    def next_event_id(self) -> int:
        try:
            with self._conn.cursor() as cur:
                cur.execute(sql.SQL("SELECT {}()").format(self._store.next_event_id_ident))
                return cur.fetchone()[0]
        except psycopg.Error as e:
            raise StorageError(
                f"Failed to draw an event id: {e}",
                details={"sqlstate": e.sqlstate}
            ) from e

    def append(self, partition: Partition, record: HistoryRecord) -> None:
        query = sql.SQL("SELECT {}(%s, %s)").format(self._store.append_ident)
        try:
            with self._conn.cursor() as cur:
                cur.execute(query, (partition.name, Jsonb(_record_document(record), dumps=_dumps)))
        except pg_errors.UndefinedTable as e:
            raise MissingPartitionError(
                f"No partition {partition.name} for statement_time "
                f"{record.statement_time.isoformat()}",
                details={"partition": partition.name, "partition_key": partition.key}
            ) from e
        except pg_errors.CheckViolation as e:
            raise PartitionRangeError(
                f"Record {record.event_id} violates a constraint of {partition.name}",
                details={"partition": partition.name, "event_id": record.event_id,
                         "constraint": e.diag.constraint_name}
            ) from e
        except psycopg.Error as e:
            raise StorageError(
                f"Failed to append history record: {e}",
                details={"partition": partition.name, "sqlstate": e.sqlstate}
            ) from e


class PostgresHistoryStore(HistoryStore):
    """HistoryStore backed by inheritance-partitioned Postgres tables."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        connect: Callable[[], ContextManager[psycopg.Connection]] = get_connection,
        router: Optional[PartitionRouter] = None,
    ):
        self.settings = settings or default_settings
        self._connect = connect
        self.router = router or PartitionRouter.from_settings(self.settings)
        self.schema = self.settings.history_schema
        self.table = self.settings.history_table

    @property
    def parent_ident(self) -> sql.Identifier:
        return sql.Identifier(self.schema, self.table)

    @property
    def sequence_ident(self) -> sql.Identifier:
        return sql.Identifier(self.schema, f"{self.table}_event_id_seq")

    def partition_ident(self, partition: Partition) -> sql.Identifier:
        return sql.Identifier(self.schema, partition.name)

    @property
    def next_event_id_ident(self) -> sql.Identifier:
        return sql.Identifier(self.schema, f"{self.table}_next_event_id")

    @property
    def append_ident(self) -> sql.Identifier:
        return sql.Identifier(self.schema, f"{self.table}_append")

    def bootstrap(self) -> None:
        """Create the history schema, sequence, parent table and append functions.

        The functions are owned by the bootstrapping role and run with its
        privileges. EXECUTE on them is revoked from PUBLIC and granted to the
        configured writer roles only.
        """
        try:
            with self._connect() as conn:
                with conn.cursor() as cur:
                    cur.execute(sql.SQL("CREATE SCHEMA IF NOT EXISTS {}").format(sql.Identifier(self.schema)))
                    cur.execute(sql.SQL("CREATE SEQUENCE IF NOT EXISTS {}").format(self.sequence_ident))
                    cur.execute(sql.SQL(_PARENT_DDL).format(self.parent_ident))
                    cur.execute(sql.SQL("REVOKE ALL ON {} FROM PUBLIC").format(self.parent_ident))
                    self._create_functions(conn, cur)
                conn.commit()
        except psycopg.Error as e:
            raise StorageError(
                f"History store bootstrap failed: {e}",
                details={"schema": self.schema, "sqlstate": e.sqlstate}
            ) from e
        logger.info("History store bootstrapped in schema %s", self.schema)
        for role in self.settings.writer_roles:
            self.grant_writer(role)

    def grant_writer(self, role: str) -> None:
        """Let role capture history: EXECUTE on the append functions, nothing more."""
        try:
            with self._connect() as conn:
                with conn.cursor() as cur:
                    role_ident = sql.Identifier(role)
                    cur.execute(sql.SQL("GRANT USAGE ON SCHEMA {} TO {}").format(
                        sql.Identifier(self.schema), role_ident
                    ))
                    cur.execute(sql.SQL("GRANT EXECUTE ON FUNCTION {}(), {}(text, jsonb) TO {}").format(
                        self.next_event_id_ident, self.append_ident, role_ident
                    ))
                conn.commit()
        except psycopg.Error as e:
            raise StorageError(
                f"Granting history writer to {role} failed: {e}",
                retryable=False,
                details={"role": role, "sqlstate": e.sqlstate}
            ) from e
        logger.info("Granted history writer to %s", role)

    def _create_functions(self, conn: psycopg.Connection, cur: psycopg.Cursor) -> None:
        next_body = _NEXT_EVENT_ID_BODY.format(
            sequence=sql.Literal(self.sequence_ident.as_string(conn)).as_string(conn)
        )
        append_body = _APPEND_BODY.format(
            schema=sql.Literal(self.schema).as_string(conn),
            table=sql.Literal(self.table).as_string(conn),
        )
        cur.execute(sql.SQL(
            "CREATE OR REPLACE FUNCTION {}() RETURNS bigint LANGUAGE sql "
            "SECURITY DEFINER SET search_path = pg_catalog, pg_temp AS {}"
        ).format(self.next_event_id_ident, sql.Literal(next_body)))
        cur.execute(sql.SQL(
            "CREATE OR REPLACE FUNCTION {}(partition_name text, history_record jsonb) RETURNS void "
            "LANGUAGE plpgsql SECURITY DEFINER SET search_path = pg_catalog, pg_temp AS {}"
        ).format(self.append_ident, sql.Literal(append_body)))
        cur.execute(sql.SQL("REVOKE ALL ON FUNCTION {}(), {}(text, jsonb) FROM PUBLIC").format(
            self.next_event_id_ident, self.append_ident
        ))

    @contextmanager
    def transaction(self) -> Generator[HistoryWriter, None, None]:
        with self._connect() as conn:
            with conn.transaction():
                yield PostgresHistoryWriter(conn, self)

    def writer(self, conn: psycopg.Connection) -> PostgresHistoryWriter:
        """Writer bound to a caller-managed connection and transaction."""
        return PostgresHistoryWriter(conn, self)

    def partition_exists(self, partition: Partition) -> bool:
        return self._relation_exists(partition.name, ("r",))

    def create_partition(self, partition: Partition) -> None:
        query = sql.SQL("CREATE TABLE {} () INHERITS ({})").format(
            self.partition_ident(partition), self.parent_ident
        )
        self._execute_ddl(query, partition.name)

    def constraint_exists(self, partition: Partition) -> bool:
        row = self._fetch_one(
            """
            SELECT 1
            FROM pg_constraint con
            JOIN pg_class c ON c.oid = con.conrelid
            JOIN pg_namespace n ON n.oid = c.relnamespace
            WHERE n.nspname = %s AND c.relname = %s AND con.conname = %s
            """,
            (self.schema, partition.name, partition.constraint_name)
        )
        return row is not None

    def add_range_constraint(self, partition: Partition) -> None:
        query = sql.SQL(
            "ALTER TABLE {} ADD CONSTRAINT {} "
            "CHECK (statement_time >= {} AND statement_time < {})"
        ).format(
            self.partition_ident(partition),
            sql.Identifier(partition.constraint_name),
            sql.Literal(partition.start),
            sql.Literal(partition.end),
        )
        try:
            self._execute_ddl(query, partition.constraint_name)
        except pg_errors.CheckViolation as e:
            raise PartitionRangeError(
                f"{partition.name} holds rows outside its range",
                details={"partition": partition.name}
            ) from e

    def list_partitions(self) -> list[Partition]:
        rows = self._fetch_all(
            """
            SELECT c.relname
            FROM pg_inherits i
            JOIN pg_class c ON c.oid = i.inhrelid
            JOIN pg_class p ON p.oid = i.inhparent
            JOIN pg_namespace n ON n.oid = p.relnamespace
            WHERE n.nspname = %s AND p.relname = %s
            """,
            (self.schema, self.table)
        )
        partitions = [p for p in (self.router.parse_name(row[0]) for row in rows) if p is not None]
        return sorted(partitions)

    def index_exists(self, partition: Partition, spec: IndexSpec) -> bool:
        return self._relation_exists(spec.index_name(partition), ("i",))

    def create_index(self, partition: Partition, spec: IndexSpec) -> None:
        query = sql.SQL("CREATE {}INDEX IF NOT EXISTS {} ON {} ({})").format(
            sql.SQL("UNIQUE ") if spec.unique else sql.SQL(""),
            sql.Identifier(spec.index_name(partition)),
            self.partition_ident(partition),
            _index_expression(spec),
        )
        self._execute_ddl(query, spec.index_name(partition))

    def scan(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[HistoryRecord]:
        conditions = [sql.SQL("TRUE")]
        params: list[Any] = []
        if start is not None:
            conditions.append(sql.SQL("statement_time >= %s"))
            params.append(start)
        if end is not None:
            conditions.append(sql.SQL("statement_time < %s"))
            params.append(end)
        query = sql.SQL("SELECT {} FROM {} WHERE {} ORDER BY event_id").format(
            sql.SQL(", ").join(map(sql.Identifier, HISTORY_COLUMNS)),
            self.parent_ident,
            sql.SQL(" AND ").join(conditions),
        )
        return self._fetch_records(query, params)

    def scan_events(self, after_event_id: int = 0, limit: int = 100) -> list[HistoryRecord]:
        query = sql.SQL("SELECT {} FROM {} WHERE event_id > %s ORDER BY event_id LIMIT %s").format(
            sql.SQL(", ").join(map(sql.Identifier, HISTORY_COLUMNS)),
            self.parent_ident,
        )
        return self._fetch_records(query, [after_event_id, limit])

    def _fetch_records(self, query: sql.Composable, params: list[Any]) -> list[HistoryRecord]:
        with _reading():
            with self._connect() as conn:
                with conn.cursor(row_factory=dict_row) as cur:
                    cur.execute(query, params)
                    rows = cur.fetchall()
        return [_row_to_record(row) for row in rows]

    def _fetch_all(self, query: str, params: tuple) -> list[tuple]:
        with _reading():
            with self._connect() as conn:
                with conn.cursor() as cur:
                    cur.execute(query, params)
                    return cur.fetchall()

    def _fetch_one(self, query: str, params: tuple) -> Optional[tuple]:
        rows = self._fetch_all(query, params)
        return rows[0] if rows else None

    def _relation_exists(self, name: str, kinds: tuple[str, ...]) -> bool:
        row = self._fetch_one(
            """
            SELECT 1
            FROM pg_class c
            JOIN pg_namespace n ON n.oid = c.relnamespace
            WHERE n.nspname = %s AND c.relname = %s AND c.relkind = ANY(%s)
            """,
            (self.schema, name, list(kinds))
        )
        return row is not None

    def _execute_ddl(self, query: sql.Composable, object_name: str) -> None:
        """Run one DDL statement in its own transaction.

        Raises:
            ObjectExistsError: The object was created by someone else first.
        """
        try:
            with self._connect() as conn:
                with conn.cursor() as cur:
                    cur.execute(query)
                conn.commit()
        except (pg_errors.DuplicateTable, pg_errors.DuplicateObject) as e:
            raise ObjectExistsError(
                f"{object_name} already exists", details={"object": object_name}
            ) from e
        except pg_errors.UniqueViolation as e:
            # Concurrent CREATE racing on the catalog
            raise ObjectExistsError(
                f"{object_name} was created concurrently", details={"object": object_name}
            ) from e
        except pg_errors.CheckViolation:
            raise
        except psycopg.Error as e:
            raise StorageError(
                f"DDL for {object_name} failed: {e}",
                details={"object": object_name, "sqlstate": e.sqlstate}
            ) from e


def _index_expression(spec: IndexSpec) -> sql.Composable:
    if spec.kind is IndexKind.COLUMN:
        return sql.Identifier(spec.target)
    if spec.kind is IndexKind.STATEMENT_DATE:
        return sql.SQL("((statement_time AT TIME ZONE {})::date)").format(sql.Literal(spec.target))
    return sql.SQL("(row_image ->> {})").format(sql.Literal(spec.target))


def _record_document(record: HistoryRecord) -> dict[str, Any]:
    """One record as a jsonb document keyed by history column."""
    client = record.client_context or ClientContext()
    values = (
        record.event_id,
        record.schema_name,
        record.table_name,
        record.relation_id,
        record.actor,
        record.tx_time.isoformat(),
        record.statement_time.isoformat(),
        record.clock_time.isoformat(),
        record.transaction_id,
        client.application_name,
        client.address,
        client.port,
        record.statement_text,
        record.action.value,
        record.row_image,
        record.changed_fields,
        record.is_statement_level,
    )
    return dict(zip(HISTORY_COLUMNS, values))


def _row_to_record(row: dict[str, Any]) -> HistoryRecord:
    client = None
    if row["client_addr"] is not None:
        client = ClientContext(
            application_name=row["application_name"],
            address=str(row["client_addr"]),
            port=row["client_port"],
        )
    return HistoryRecord(
        event_id=row["event_id"],
        schema_name=row["schema_name"],
        table_name=row["table_name"],
        relation_id=row["relation_id"],
        actor=row["actor"],
        tx_time=row["tx_time"],
        statement_time=row["statement_time"],
        clock_time=row["clock_time"],
        transaction_id=row["transaction_id"],
        client_context=client,
        statement_text=row["statement_text"],
        action=row["action"],
        row_image=row["row_image"],
        changed_fields=row["changed_fields"],
        is_statement_level=row["is_statement_level"],
    )


@contextmanager
def _reading() -> Generator[None, None, None]:
    try:
        yield
    except psycopg.Error as e:
        raise StorageError(
            f"History store read failed: {e}",
            details={"sqlstate": e.sqlstate}
        ) from e
