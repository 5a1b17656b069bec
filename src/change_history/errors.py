"""Structured error taxonomy for the change history engine.

Every failure raised by the engine inherits from StructuredError and carries:
- a category (configuration, partition, provisioning, storage, ...)
- a severity level
- a retryability flag
- a details dictionary with machine-readable context

Capture failures are fail-closed: ConfigurationError, MissingPartitionError and
PartitionRangeError propagate out of the capture hook and abort the mutation
being audited. ObjectExistsError is the only error the engine recovers from
locally (provisioning treats "already exists" as success).

Example:
    >>> try:
    ...     raise MissingPartitionError(
    ...         "No partition for 202403",
    ...         details={"partition_key": 202403},
    ...     )
    ... except StructuredError as e:
    ...     e.to_dict()["category"]
    'partition'
"""
from enum import Enum
from typing import Optional, Dict, Any
from datetime import datetime, timezone


class ErrorCategory(Enum):
    """Error categories for classification."""
    CONFIGURATION = "configuration"  # Hook wiring / settings errors
    VALIDATION = "validation"        # Record or input validation errors
    PARTITION = "partition"          # Partition routing errors at append time
    PROVISIONING = "provisioning"    # Partition / constraint / index DDL
    STORAGE = "storage"              # Database errors
    UNKNOWN = "unknown"              # Unclassified errors


class ErrorSeverity(Enum):
    """Error severity levels."""
    INFO = "info"          # Informational (e.g., object already exists)
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"  # Audit path broken, mutation must not proceed


class StructuredError(Exception):
    """Base class for all structured errors.

    Attributes:
        message: Human-readable error message
        category: ErrorCategory classification
        severity: ErrorSeverity level
        retryable: Whether the operation can be retried
        details: Additional context (dict)
        timestamp: When the error occurred
    """

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
        severity: ErrorSeverity = ErrorSeverity.ERROR,
        retryable: bool = False,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.category = category
        self.severity = severity
        self.retryable = retryable
        self.details = details or {}
        self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to structured dictionary.

        Returns:
            Dictionary with error details in predictable schema:
            {
                "error_type": "ErrorClassName",
                "message": "Human-readable message",
                "category": "configuration|partition|provisioning|...",
                "severity": "info|warning|error|critical",
                "retryable": true|false,
                "details": {...},
                "timestamp": "2024-01-01T12:00:00.000000"
            }
        """
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "severity": self.severity.value,
            "retryable": self.retryable,
            "details": self.details,
            "timestamp": self.timestamp.isoformat()
        }


class ConfigurationError(StructuredError):
    """The capture hook was reached for an event it was never wired for.

    Raised for (operation, granularity) pairs outside the hook's contract,
    for events missing the row images their operation requires, and for
    invalid settings. Never swallowed: it aborts the audited mutation.

    Example:
        >>> raise ConfigurationError(
        ...     "Row-level truncate is not a capture event",
        ...     details={"operation": "truncate", "granularity": "row"}
        ... )
    """

    def __init__(
        self,
        message: str,
        retryable: bool = False,  # Wiring drift needs a manual fix
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            message=message,
            category=ErrorCategory.CONFIGURATION,
            severity=ErrorSeverity.CRITICAL,
            retryable=retryable,
            details=details
        )


class MissingPartitionError(StructuredError):
    """No partition exists for the month an event's statement_time maps to.

    Partitions are provisioned ahead of time by the lifecycle manager. An
    append into an unprovisioned month fails, and the audited mutation fails
    with it.
    """

    def __init__(
        self,
        message: str,
        retryable: bool = False,  # Needs ensure_partitions() to run first
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            message=message,
            category=ErrorCategory.PARTITION,
            severity=ErrorSeverity.CRITICAL,
            retryable=retryable,
            details=details
        )


class PartitionRangeError(StructuredError):
    """A record's statement_time violates its partition's range constraint."""

    def __init__(
        self,
        message: str,
        retryable: bool = False,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            message=message,
            category=ErrorCategory.PARTITION,
            severity=ErrorSeverity.CRITICAL,
            retryable=retryable,
            details=details
        )


class ObjectExistsError(StructuredError):
    """A partition, constraint or index already exists.

    Provisioning treats this as success; it only surfaces from the storage
    layer when a concurrent run created the object first.
    """

    def __init__(
        self,
        message: str,
        retryable: bool = False,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            message=message,
            category=ErrorCategory.PROVISIONING,
            severity=ErrorSeverity.INFO,
            retryable=retryable,
            details=details
        )


class StorageError(StructuredError):
    """Database failure not covered by a more specific error.

    Example:
        >>> raise StorageError(
        ...     "Database connection failed",
        ...     details={"db_host": "localhost", "error_code": "08006"}
        ... )
    """

    def __init__(
        self,
        message: str,
        retryable: bool = True,  # Connection errors are often transient
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            message=message,
            category=ErrorCategory.STORAGE,
            severity=ErrorSeverity.ERROR,
            retryable=retryable,
            details=details
        )
