#!/usr/bin/env python3
"""
Initialize the history store and provision partitions for the current and
next year. Used by CI to set up the database before running integration tests.
"""
import sys
from datetime import datetime, timezone
from pathlib import Path

# Add src to path so we can import from change_history
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from change_history.config import settings
from change_history.errors import StructuredError
from change_history.indexes import IndexProvisioner
from change_history.partitions import PartitionLifecycleManager, PartitionRouter
from change_history.storage.postgres import PostgresHistoryStore


def init_database():
    """Bootstrap the history store, its partitions and indexes."""
    store = PostgresHistoryStore(settings)
    manager = PartitionLifecycleManager(store, PartitionRouter.from_settings(settings))
    this_year = datetime.now(timezone.utc).year

    try:
        store.bootstrap()
        print("[OK] History store initialized")
        print(f"   - Schema: {settings.history_schema}.{settings.history_table}")

        for year in (this_year, this_year + 1):
            manager.ensure_partitions(year)
            print(f"   - Partitions ensured for {year}")

        created = IndexProvisioner.from_settings(store, settings).provision_indexes()
        print(f"   - Indexes created: {created}")

    except StructuredError as e:
        print(f"[ERROR] Database initialization failed: {e.message}")
        sys.exit(1)


if __name__ == "__main__":
    init_database()
