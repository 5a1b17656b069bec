"""Pytest fixtures and configuration.

Unit tests run against the in-memory history store. Integration tests
(marked ``integration``) need Postgres and skip when it does not answer.
"""
import sys
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Generator

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from change_history.partitions import PartitionLifecycleManager, PartitionRouter  # noqa: E402
from change_history.schemas import (  # noqa: E402
    CaptureContext,
    ClientContext,
    TableAuditConfig,
    TableIdentity,
)
from change_history.storage.memory import InMemoryHistoryStore  # noqa: E402

MARCH_2025 = datetime(2025, 3, 14, 10, 30, 1, tzinfo=timezone.utc)


@pytest.fixture
def store() -> InMemoryHistoryStore:
    return InMemoryHistoryStore()


@pytest.fixture
def router() -> PartitionRouter:
    return PartitionRouter("logged_actions", timezone.utc)


@pytest.fixture
def provisioned_store(store: InMemoryHistoryStore, router: PartitionRouter) -> InMemoryHistoryStore:
    """In-memory store with every 2025 partition provisioned."""
    PartitionLifecycleManager(store, router).ensure_partitions(2025)
    return store


@pytest.fixture
def customer_table() -> TableIdentity:
    return TableIdentity(schema_name="public", table_name="tb_customer", relation_id=16384)


@pytest.fixture
def secret_config() -> TableAuditConfig:
    return TableAuditConfig(ignored_columns=frozenset({"secret"}))


@pytest.fixture
def make_context() -> Callable[..., CaptureContext]:
    """Factory for capture contexts; keyword arguments override defaults."""

    def factory(**overrides) -> CaptureContext:
        statement_time = overrides.pop("statement_time", MARCH_2025)
        values = {
            "actor": "app_user",
            "tx_time": statement_time,
            "statement_time": statement_time,
            "clock_time": statement_time,
            "transaction_id": 981234,
            "client_context": ClientContext(
                application_name="billing", address="10.0.0.12", port=51234
            ),
            "statement_text": "UPDATE tb_customer SET name = $1 WHERE id = $2",
        }
        values.update(overrides)
        return CaptureContext(**values)

    return factory


# Integration fixtures for Postgres
@pytest.fixture(scope="session")
def pg_available() -> bool:
    from change_history.db import ping_database
    return ping_database()


@pytest.fixture
def pg_store(pg_available: bool) -> Generator:
    """PostgresHistoryStore in a throwaway schema.

    Requires Postgres to be running (DB_HOST, DB_PORT, ... environment).
    """
    if not pg_available:
        pytest.skip("Postgres not available - set DB_HOST/DB_PORT and start the database")

    from psycopg import sql
    from change_history.config import Settings
    from change_history.db import get_connection
    from change_history.storage.postgres import PostgresHistoryStore

    schema = f"audit_test_{uuid.uuid4().hex[:8]}"
    pg = PostgresHistoryStore(Settings(history_schema=schema, hot_row_keys=["customer_id"]))
    pg.bootstrap()

    yield pg

    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(sql.SQL("DROP SCHEMA {} CASCADE").format(sql.Identifier(schema)))
        conn.commit()
