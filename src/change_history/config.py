import os
from datetime import timezone, tzinfo
from zoneinfo import ZoneInfo

from pydantic import BaseModel, Field, field_validator


def _env_list(name: str) -> list[str]:
    raw = os.getenv(name, "")
    return [item.strip() for item in raw.split(",") if item.strip()]


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    service_name: str = "change-history"
    environment: str = "dev"

    # History store layout
    history_schema: str = "audit"
    history_table: str = "logged_actions"
    partition_timezone: str = "UTC"   # Month boundaries and the date index

    # Row-image keys that get their own expression index on every partition
    hot_row_keys: list[str] = Field(default_factory=lambda: _env_list("HISTORY_HOT_ROW_KEYS"))

    # Roles granted EXECUTE on the append functions at bootstrap
    writer_roles: list[str] = Field(default_factory=lambda: _env_list("HISTORY_WRITER_ROLES"))

    # Default for tables enabled without an explicit TableAuditConfig
    capture_statement_text: bool = True

    @field_validator("partition_timezone")
    @classmethod
    def _known_timezone(cls, value: str) -> str:
        if value.upper() != "UTC":
            ZoneInfo(value)
        return value

    @property
    def tzinfo(self) -> tzinfo:
        """Time zone used to cut months and derive the statement date."""
        if self.partition_timezone.upper() == "UTC":
            return timezone.utc
        return ZoneInfo(self.partition_timezone)

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            environment=os.getenv("HISTORY_ENVIRONMENT", "dev"),
            history_schema=os.getenv("HISTORY_SCHEMA", "audit"),
            history_table=os.getenv("HISTORY_TABLE", "logged_actions"),
            partition_timezone=os.getenv("HISTORY_PARTITION_TZ", "UTC"),
            capture_statement_text=_env_flag("HISTORY_CAPTURE_STATEMENT_TEXT", True),
        )

settings = Settings.from_env()
