"""Tests for history record shape rules."""
from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from change_history.schemas import (
    Action,
    CaptureContext,
    ClientContext,
    HistoryRecord,
    TableAuditConfig,
    TableIdentity,
)

T = datetime(2025, 3, 14, 10, 30, 1, tzinfo=timezone.utc)


def record(**overrides):
    values = dict(
        event_id=1,
        schema_name="public",
        table_name="tb_customer",
        relation_id=16384,
        actor="app_user",
        tx_time=T,
        statement_time=T,
        clock_time=T,
        action=Action.INSERT,
        row_image={"id": 1},
        is_statement_level=False,
    )
    values.update(overrides)
    return HistoryRecord(**values)


class TestHistoryRecord:

    def test_row_level_insert(self):
        assert record().row_image == {"id": 1}

    def test_row_level_update_with_changes(self):
        r = record(action=Action.UPDATE, changed_fields={"name": "y"})
        assert r.changed_fields == {"name": "y"}

    def test_statement_level_without_images(self):
        r = record(action=Action.BULK_CLEAR, row_image=None, is_statement_level=True)
        assert r.is_statement_level is True

    @pytest.mark.parametrize(
        "overrides",
        [
            {"is_statement_level": True},                                   # images on statement record
            {"action": Action.BULK_CLEAR},                                  # row-level bulk-clear
            {"row_image": None},                                            # row-level without image
            {"action": Action.UPDATE},                                      # update without changes
            {"action": Action.UPDATE, "changed_fields": {}},                # empty changes
            {"changed_fields": {"id": 2}},                                  # changes on insert
            {"statement_time": datetime(2025, 3, 14, 10, 30)},              # naive timestamp
            {"event_id": 0},
        ],
    )
    def test_invalid_shapes_rejected(self, overrides):
        with pytest.raises(ValidationError):
            record(**overrides)

    def test_records_are_immutable(self):
        r = record()
        with pytest.raises(ValidationError):
            r.actor = "someone_else"

    def test_action_serializes_as_bulk_clear(self):
        r = record(action=Action.BULK_CLEAR, row_image=None, is_statement_level=True)
        assert r.model_dump(mode="json")["action"] == "bulk-clear"


class TestInputs:

    def test_qualified_name(self):
        assert TableIdentity(schema_name="s", table_name="t", relation_id=1).qualified_name == "s.t"

    def test_config_defaults(self):
        config = TableAuditConfig()
        assert config.capture_rows is True
        assert config.capture_statement_text is True
        assert config.ignored_columns == frozenset()

    def test_port_range(self):
        with pytest.raises(ValidationError):
            ClientContext(application_name="x", address="10.0.0.1", port=70000)

    def test_context_requires_aware_times(self):
        with pytest.raises(ValidationError):
            CaptureContext(
                actor="u",
                tx_time=datetime(2025, 1, 1),
                statement_time=T,
                clock_time=T,
            )
