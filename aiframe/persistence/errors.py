"""
Error types for the aiframe persistence layer.

This module defines all exception types raised by adapters, the adapter
registry, the migration runner and the event store:
- PersistenceError: Base exception
- ConfigurationError: Invalid or incomplete configuration (raised before I/O)
- ConnectivityError: Backing engine cannot be reached or opened
- ConstraintError: Uniqueness or consistency violation reported by the engine
- ConcurrencyError: Version conflict or serialization failure
- MigrationError: Migration execution or bookkeeping failure
- MigrationValidationError: Ill-shaped or conflicting migration units

Invariants:
    - All errors inherit from PersistenceError
    - Errors wrapping a driver exception chain it as __cause__
    - Configuration errors are never retried
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class PersistenceError(Exception):
    """Base exception for all persistence errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "PERSISTENCE_ERROR"
        self.details = details or {}


class ConfigurationError(PersistenceError):
    """Adapter or runner configuration is invalid.

    Raised when:
    - A required field is missing (e.g. database name, file path)
    - The adapter type is not supported
    - A table or schema name is not a plain SQL identifier
    """

    def __init__(self, message: str, field_name: Optional[str] = None) -> None:
        super().__init__(
            message,
            code="CONFIGURATION_ERROR",
            details={"field": field_name},
        )
        self.field_name = field_name


class ConnectivityError(PersistenceError):
    """Backing engine could not be reached.

    Raised when:
    - The PostgreSQL server refuses or drops the connection
    - The SQLite file cannot be opened
    """

    def __init__(self, message: str, target: Optional[str] = None) -> None:
        super().__init__(
            message,
            code="CONNECTIVITY_ERROR",
            details={"target": target},
        )
        self.target = target


class ConstraintError(PersistenceError):
    """Engine rejected a write because it violates a constraint."""

    def __init__(
        self,
        message: str,
        constraint: Optional[str] = None,
        code: str = "CONSTRAINT_ERROR",
    ) -> None:
        super().__init__(message, code=code, details={"constraint": constraint})
        self.constraint = constraint


class ConcurrencyError(ConstraintError):
    """Concurrent writers conflicted.

    Raised when:
    - Two appenders race for the same stream version
    - A serializable transaction cannot be committed
    - An append's expected_version does not match the stream head
    """

    def __init__(
        self,
        message: str,
        stream_id: Optional[str] = None,
        expected_version: Optional[int] = None,
        actual_version: Optional[int] = None,
    ) -> None:
        super().__init__(message, code="CONCURRENCY_ERROR")
        self.details.update(
            {
                "stream_id": stream_id,
                "expected_version": expected_version,
                "actual_version": actual_version,
            }
        )
        self.stream_id = stream_id
        self.expected_version = expected_version
        self.actual_version = actual_version


class MigrationError(PersistenceError):
    """A migration could not be applied or rolled back."""

    def __init__(
        self,
        message: str,
        migration_id: Optional[str] = None,
        code: str = "MIGRATION_ERROR",
    ) -> None:
        super().__init__(message, code=code, details={"migration_id": migration_id})
        self.migration_id = migration_id


class MigrationValidationError(MigrationError):
    """A discovered migration unit is ill-shaped or conflicts with another.

    Attributes:
        path: File the unit was loaded from
        problems: Individual validation failures
    """

    def __init__(
        self,
        message: str,
        path: Optional[str] = None,
        problems: Optional[list[str]] = None,
        migration_id: Optional[str] = None,
    ) -> None:
        super().__init__(message, migration_id=migration_id, code="MIGRATION_VALIDATION_ERROR")
        self.details.update({"path": path, "problems": problems or []})
        self.path = path
        self.problems = problems or []
