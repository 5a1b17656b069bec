"""Tests for the structured error taxonomy.

Validates that:
1. All errors inherit from StructuredError
2. All errors share the same to_dict() schema
3. Categories, severities and retryability defaults are correct
4. Details survive serialization
"""
import pytest
from datetime import datetime

from change_history.errors import (
    ConfigurationError,
    ErrorCategory,
    ErrorSeverity,
    MissingPartitionError,
    ObjectExistsError,
    PartitionRangeError,
    StorageError,
    StructuredError,
)


class TestStructuredErrorBase:
    """Test base StructuredError functionality."""

    def test_structured_error_creation(self):
        error = StructuredError(
            "Test error message",
            category=ErrorCategory.STORAGE,
            severity=ErrorSeverity.ERROR,
            retryable=True,
            details={"key": "value"}
        )

        assert str(error) == "Test error message"
        assert error.message == "Test error message"
        assert error.category == ErrorCategory.STORAGE
        assert error.severity == ErrorSeverity.ERROR
        assert error.retryable is True
        assert error.details == {"key": "value"}
        assert isinstance(error.timestamp, datetime)

    def test_structured_error_to_dict(self):
        """to_dict() returns a predictable schema."""
        error = StructuredError(
            "Test message",
            category=ErrorCategory.PROVISIONING,
            severity=ErrorSeverity.WARNING,
            retryable=False,
            details={"context": "test"}
        )

        error_dict = error.to_dict()

        assert error_dict["error_type"] == "StructuredError"
        assert error_dict["message"] == "Test message"
        assert error_dict["category"] == "provisioning"
        assert error_dict["severity"] == "warning"
        assert error_dict["retryable"] is False
        assert error_dict["details"] == {"context": "test"}
        assert isinstance(error_dict["timestamp"], str)

    def test_structured_error_defaults(self):
        error = StructuredError("Simple error")

        assert error.category == ErrorCategory.UNKNOWN
        assert error.severity == ErrorSeverity.ERROR
        assert error.retryable is False
        assert error.details == {}

    def test_timestamp_is_utc(self):
        error = StructuredError("Test")
        assert error.timestamp.tzinfo is not None
        assert error.to_dict()["timestamp"].endswith("+00:00")


class TestConfigurationError:
    """Wiring faults abort the audited mutation."""

    def test_configuration_error_defaults(self):
        error = ConfigurationError("Row-level truncate")

        assert error.category == ErrorCategory.CONFIGURATION
        assert error.severity == ErrorSeverity.CRITICAL
        assert error.retryable is False

    def test_configuration_error_with_details(self):
        error = ConfigurationError(
            "Unsupported event",
            details={"operation": "truncate", "granularity": "row"}
        )

        assert error.to_dict()["details"]["granularity"] == "row"


class TestPartitionErrors:

    def test_missing_partition_defaults(self):
        error = MissingPartitionError("No partition", details={"partition_key": 202403})

        assert error.category == ErrorCategory.PARTITION
        assert error.severity == ErrorSeverity.CRITICAL
        assert error.retryable is False
        assert error.to_dict()["details"]["partition_key"] == 202403

    def test_partition_range_defaults(self):
        error = PartitionRangeError("Out of range")

        assert error.category == ErrorCategory.PARTITION
        assert error.severity == ErrorSeverity.CRITICAL


class TestObjectExistsError:

    def test_object_exists_is_informational(self):
        error = ObjectExistsError("Index exists", details={"index": "x"})

        assert error.category == ErrorCategory.PROVISIONING
        assert error.severity == ErrorSeverity.INFO
        assert error.retryable is False


class TestStorageError:

    def test_storage_error_defaults_to_retryable(self):
        error = StorageError("Connection refused")

        assert error.category == ErrorCategory.STORAGE
        assert error.severity == ErrorSeverity.ERROR
        assert error.retryable is True

    def test_storage_error_can_be_permanent(self):
        assert StorageError("Table missing", retryable=False).retryable is False


class TestErrorSchemaConsistency:
    """All error types produce the same to_dict() shape."""

    ALL_ERRORS = [
        StructuredError("base"),
        ConfigurationError("config"),
        MissingPartitionError("missing"),
        PartitionRangeError("range"),
        ObjectExistsError("exists"),
        StorageError("storage"),
    ]

    @pytest.mark.parametrize("error", ALL_ERRORS, ids=lambda e: type(e).__name__)
    def test_all_errors_have_same_keys(self, error):
        assert set(error.to_dict()) == {
            "error_type", "message", "category", "severity",
            "retryable", "details", "timestamp",
        }

    @pytest.mark.parametrize("error", ALL_ERRORS, ids=lambda e: type(e).__name__)
    def test_all_errors_are_structured(self, error):
        assert isinstance(error, StructuredError)
        assert isinstance(error, Exception)

    @pytest.mark.parametrize("error", ALL_ERRORS, ids=lambda e: type(e).__name__)
    def test_all_errors_have_valid_enums(self, error):
        error_dict = error.to_dict()
        assert error_dict["category"] in [c.value for c in ErrorCategory]
        assert error_dict["severity"] in [s.value for s in ErrorSeverity]
        assert isinstance(error_dict["retryable"], bool)
