"""Tests for the command line entry points."""
import pytest

from change_history.cli import build_parser, main
from change_history.config import Settings
from change_history.errors import StorageError
from change_history.storage.memory import InMemoryHistoryStore
from change_history.storage.postgres import PostgresHistoryStore


class TestParser:

    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])

    def test_discover_defaults(self):
        args = build_parser().parse_args(["discover"])

        assert args.schema == "public"
        assert args.pattern == "%"
        assert args.statement_only is False


class TestCommands:

    def test_ensure_partitions(self, capsys):
        store = InMemoryHistoryStore()

        assert main(["ensure-partitions", "2025", "2026"], store=store) == 0

        assert len(store.list_partitions()) == 24
        out = capsys.readouterr().out
        assert "[OK] 2025" in out
        assert "[OK] 2026" in out

    def test_provision_indexes(self, capsys):
        store = InMemoryHistoryStore()
        main(["ensure-partitions", "2025"], store=store)

        assert main(["provision-indexes"], store=store) == 0
        assert main(["provision-indexes"], store=store) == 0

        assert "[OK] 0 indexes created" in capsys.readouterr().out

    def test_init_db_needs_postgres(self, capsys):
        assert main(["init-db"], store=InMemoryHistoryStore()) == 2
        assert "Postgres" in capsys.readouterr().err

    def test_grant_writer(self, capsys):

        class RecordingStore(PostgresHistoryStore):
            granted = []

            def grant_writer(self, role):
                self.granted.append(role)

        store = RecordingStore(Settings())

        assert main(["grant-writer", "app_writer", "batch_writer"], store=store) == 0
        assert store.granted == ["app_writer", "batch_writer"]
        assert "[OK] batch_writer may append history" in capsys.readouterr().out

    def test_grant_writer_needs_postgres(self, capsys):
        assert main(["grant-writer", "app_writer"], store=InMemoryHistoryStore()) == 2

    def test_structured_error_exit_code(self, capsys):

        class BrokenStore(InMemoryHistoryStore):
            def partition_exists(self, partition):
                raise StorageError("connection refused")

        assert main(["ensure-partitions", "2025"], store=BrokenStore()) == 1
        assert "[ERROR] connection refused" in capsys.readouterr().err
