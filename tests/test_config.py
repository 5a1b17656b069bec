"""Tests for environment-driven settings."""
from datetime import timezone

import pytest
from pydantic import ValidationError

from change_history.config import Settings


class TestFromEnv:

    def test_defaults(self, monkeypatch):
        for name in ("HISTORY_SCHEMA", "HISTORY_TABLE", "HISTORY_PARTITION_TZ",
                     "HISTORY_CAPTURE_STATEMENT_TEXT", "HISTORY_WRITER_ROLES", "HISTORY_HOT_ROW_KEYS"):
            monkeypatch.delenv(name, raising=False)

        settings = Settings.from_env()

        assert settings.history_schema == "audit"
        assert settings.history_table == "logged_actions"
        assert settings.capture_statement_text is True
        assert settings.writer_roles == []
        assert settings.hot_row_keys == []
        assert settings.tzinfo is timezone.utc

    @pytest.mark.parametrize("raw,expected", [
        ("false", False), ("0", False), ("off", False),
        ("true", True), ("YES", True), ("1", True),
    ])
    def test_capture_statement_text_read_from_env(self, monkeypatch, raw, expected):
        monkeypatch.setenv("HISTORY_CAPTURE_STATEMENT_TEXT", raw)
        assert Settings.from_env().capture_statement_text is expected

    def test_comma_separated_lists(self, monkeypatch):
        monkeypatch.setenv("HISTORY_WRITER_ROLES", "app_writer, batch_writer,")
        monkeypatch.setenv("HISTORY_HOT_ROW_KEYS", "customer_id")

        settings = Settings.from_env()

        assert settings.writer_roles == ["app_writer", "batch_writer"]
        assert settings.hot_row_keys == ["customer_id"]

    def test_unknown_time_zone_rejected(self, monkeypatch):
        monkeypatch.setenv("HISTORY_PARTITION_TZ", "Mars/Olympus")
        with pytest.raises((ValidationError, LookupError)):
            Settings.from_env()
