"""Database connection helper for Postgres."""
import os
from contextlib import contextmanager
from typing import Generator

import psycopg


class DatabaseConfig:
    """Database configuration from environment variables."""

    def __init__(self) -> None:
        self.host = os.getenv("DB_HOST", "localhost")
        self.port = int(os.getenv("DB_PORT", "5432"))
        self.name = os.getenv("DB_NAME", "history_db")
        self.user = os.getenv("DB_USER", "history_user")
        self.password = os.getenv("DB_PASSWORD", "history_password")
        self.application_name = os.getenv("DB_APPLICATION_NAME", "change-history")

    def connection_string(self) -> str:
        """Return PostgreSQL connection string."""
        return (
            f"host={self.host} "
            f"port={self.port} "
            f"dbname={self.name} "
            f"user={self.user} "
            f"password={self.password} "
            f"application_name={self.application_name}"
        )


# Global config instance
_db_config = DatabaseConfig()


@contextmanager
def get_connection() -> Generator[psycopg.Connection, None, None]:
    """Get a database connection as a context manager.

    The connection is not in autocommit mode: callers commit, or wrap their
    work in ``conn.transaction()`` so that an audited mutation and its history
    record commit or roll back together.

    Usage:
        with get_connection() as conn:
            with conn.transaction():
                audited.update({"id": 1}, {"name": "y"})
    """
    conn = psycopg.connect(_db_config.connection_string())
    try:
        yield conn
    finally:
        conn.close()


def ping_database() -> bool:
    """Check whether the database answers.

    Returns:
        True if connection succeeds, False otherwise.
    """
    try:
        with get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT 1")
                cur.fetchone()
        return True
    except psycopg.Error:
        return False
