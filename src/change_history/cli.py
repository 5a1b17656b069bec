"""Operational entry points.

    change-history init-db
    change-history grant-writer app_writer
    change-history ensure-partitions 2025 2026
    change-history provision-indexes
    change-history discover --schema public --pattern 'tb_%'
"""
import argparse
import sys
from typing import Optional, Sequence

from .config import settings
from .db import get_connection
from .enablement import discover_tables, enablement_plan
from .errors import StructuredError
from .indexes import IndexProvisioner
from .logging import logger, setup_logging
from .partitions import PartitionLifecycleManager, PartitionRouter
from .schemas import TableAuditConfig
from .storage.base import HistoryStore
from .storage.postgres import PostgresHistoryStore


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="change-history")
    sub = ap.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create the history schema, sequence, parent table and append functions")

    grant = sub.add_parser("grant-writer", help="Let a role capture history through the append functions")
    grant.add_argument("roles", nargs="+")

    ensure = sub.add_parser("ensure-partitions", help="Provision the month partitions of a year")
    ensure.add_argument("years", nargs="+", type=int)

    sub.add_parser("provision-indexes", help="Create missing indexes on every partition")

    discover = sub.add_parser("discover", help="Show the wiring a bulk enablement would create")
    discover.add_argument("--schema", default="public")
    discover.add_argument("--pattern", default="%", help="ILIKE pattern, e.g. 'tb_%%'")
    discover.add_argument("--statement-only", action="store_true",
                          help="Statement-level capture only (no row images)")
    return ap


def run(args: argparse.Namespace, store: HistoryStore) -> int:
    router = PartitionRouter.from_settings(settings)

    if args.command == "init-db":
        if not isinstance(store, PostgresHistoryStore):
            print("init-db needs a Postgres store", file=sys.stderr)
            return 2
        store.bootstrap()
        print(f"[OK] History store ready in schema {settings.history_schema}")

    elif args.command == "grant-writer":
        if not isinstance(store, PostgresHistoryStore):
            print("grant-writer needs a Postgres store", file=sys.stderr)
            return 2
        for role in args.roles:
            store.grant_writer(role)
            print(f"[OK] {role} may append history")

    elif args.command == "ensure-partitions":
        manager = PartitionLifecycleManager(store, router)
        for year in args.years:
            partitions = manager.ensure_partitions(year)
            print(f"[OK] {year}: {partitions[0].name} .. {partitions[-1].name}")

    elif args.command == "provision-indexes":
        created = IndexProvisioner.from_settings(store, settings).provision_indexes()
        print(f"[OK] {created} indexes created")

    elif args.command == "discover":
        config = TableAuditConfig(capture_rows=not args.statement_only)
        with get_connection() as conn:
            tables = discover_tables(conn, args.schema, args.pattern, settings.history_schema)
        for line in enablement_plan(tables, args.pattern, config):
            print(line)

    return 0


def main(argv: Optional[Sequence[str]] = None, store: Optional[HistoryStore] = None) -> int:
    setup_logging()
    args = build_parser().parse_args(argv)
    try:
        return run(args, store or PostgresHistoryStore(settings))
    except StructuredError as e:
        logger.error("%s failed: %s", args.command, e.message)
        print(f"[ERROR] {e.message}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
