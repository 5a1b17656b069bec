"""Pydantic schemas for history records and capture inputs."""
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from pydantic import AwareDatetime, BaseModel, ConfigDict, Field, model_validator

RowImage = dict[str, Any]


class Action(str, Enum):
    """Kind of audited event stored in a history record."""
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"
    BULK_CLEAR = "bulk-clear"


class Operation(str, Enum):
    """Mutation that fired the capture hook."""
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"
    TRUNCATE = "truncate"


class Granularity(str, Enum):
    ROW = "row"
    STATEMENT = "statement"


class TableIdentity(BaseModel):
    """An instrumented relation.

    relation_id survives a rename and changes on drop/recreate; the names are
    recorded as they are at capture time.
    """
    schema_name: str = Field(..., min_length=1)
    table_name: str = Field(..., min_length=1)
    relation_id: int = Field(..., ge=0)

    model_config = ConfigDict(frozen=True)

    @property
    def qualified_name(self) -> str:
        return f"{self.schema_name}.{self.table_name}"


class TableAuditConfig(BaseModel):
    """Per-table capture settings supplied at enablement time.

    ignored_columns is never checked against the table, so one preset can be
    reused across tables that lack some of the listed columns.
    """
    capture_rows: bool = True
    capture_statement_text: bool = True
    ignored_columns: frozenset[str] = frozenset()

    model_config = ConfigDict(frozen=True)


class ClientContext(BaseModel):
    """Originating client of a network session."""
    application_name: Optional[str] = None
    address: Optional[str] = None
    port: Optional[int] = Field(None, ge=0, le=65535)

    model_config = ConfigDict(frozen=True)


class CaptureContext(BaseModel):
    """Session and transaction metadata gathered for one capture.

    tx_time is the start of the enclosing transaction, statement_time the
    start of the triggering statement and clock_time the instant the capture
    ran. They diverge inside multi-statement and long-running transactions.
    """
    actor: str = Field(..., min_length=1, description="Login (session) identity")
    tx_time: AwareDatetime
    statement_time: AwareDatetime
    clock_time: AwareDatetime
    transaction_id: Optional[int] = None
    client_context: Optional[ClientContext] = None
    statement_text: Optional[str] = None

    model_config = ConfigDict(frozen=True)


@dataclass(frozen=True)
class MutationEvent:
    """One firing of the capture hook.

    Row-level events carry the before image (update, delete) and the after
    image (insert, update). Statement-level events carry neither.
    """
    operation: Operation
    granularity: Granularity
    old_image: Optional[RowImage] = None
    new_image: Optional[RowImage] = None


@dataclass(frozen=True)
class RowChange:
    """Before/after images of one row touched by a statement."""
    old_image: Optional[RowImage] = None
    new_image: Optional[RowImage] = None


class HistoryRecord(BaseModel):
    """One audited event. Append-only: never updated after capture."""
    event_id: int = Field(..., ge=1, description="Unique, never reused")
    schema_name: str = Field(..., min_length=1)
    table_name: str = Field(..., min_length=1)
    relation_id: int = Field(..., ge=0)
    actor: str = Field(..., min_length=1)
    tx_time: AwareDatetime
    statement_time: AwareDatetime
    clock_time: AwareDatetime
    transaction_id: Optional[int] = None
    client_context: Optional[ClientContext] = None
    statement_text: Optional[str] = None
    action: Action
    row_image: Optional[RowImage] = None
    changed_fields: Optional[RowImage] = None
    is_statement_level: bool

    model_config = ConfigDict(
        frozen=True,
        json_schema_extra={
            "examples": [
                {
                    "event_id": 42,
                    "schema_name": "public",
                    "table_name": "tb_customer",
                    "relation_id": 16384,
                    "actor": "app_user",
                    "tx_time": "2025-03-14T10:30:00Z",
                    "statement_time": "2025-03-14T10:30:01Z",
                    "clock_time": "2025-03-14T10:30:01.002Z",
                    "transaction_id": 981234,
                    "client_context": {
                        "application_name": "billing",
                        "address": "10.0.0.12",
                        "port": 51234
                    },
                    "statement_text": "UPDATE tb_customer SET name = 'y' WHERE id = 1",
                    "action": "update",
                    "row_image": {"id": 1, "name": "x"},
                    "changed_fields": {"name": "y"},
                    "is_statement_level": False
                }
            ]
        }
    )

    @model_validator(mode="after")
    def _check_shape(self) -> "HistoryRecord":
        if self.is_statement_level:
            if self.row_image is not None or self.changed_fields is not None:
                raise ValueError("statement-level records carry no row images")
        else:
            if self.action is Action.BULK_CLEAR:
                raise ValueError("bulk-clear is always statement-level")
            if self.row_image is None:
                raise ValueError("row-level records require a row_image")
        if self.action is Action.UPDATE and not self.is_statement_level:
            if not self.changed_fields:
                raise ValueError("row-level updates require non-empty changed_fields")
        elif self.changed_fields is not None:
            raise ValueError("changed_fields is only recorded for row-level updates")
        return self


class PartitionReport(BaseModel):
    year: int
    partitions: list[str]


class IndexReport(BaseModel):
    created: int = Field(..., ge=0)
    partitions: int = Field(..., ge=0)
