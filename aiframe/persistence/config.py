"""
Configuration for the aiframe persistence layer.

Configuration objects are plain frozen dataclasses so they can be built in
code, from a mapping (see AdapterConfig.from_dict) or by the migration CLI
from its settings. Nothing in this module performs I/O.

Invariants:
    - validate() raises ConfigurationError before any connection is opened
    - Table, schema and column names are plain SQL identifiers
    - Secrets are never logged or exposed in error messages

How to change safely:
    - Add new settings with defaults that keep existing configs valid
    - Keep AdapterConfig keys aligned with the CLI settings names
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, Mapping

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,62}$")


def validate_identifier(value: str, field_name: str) -> str:
    """Check that a table/schema/column name is a plain SQL identifier.

    These names are interpolated into SQL text, so only trusted,
    configuration-provided identifiers are accepted.

    Raises:
        ConfigurationError: If the name is empty or not a plain identifier
    """
    if not isinstance(value, str) or not _IDENTIFIER_RE.match(value):
        raise ConfigurationError(
            f"{field_name} must be a plain SQL identifier, got {value!r}",
            field_name=field_name,
        )
    return value


class AdapterType(Enum):
    """Supported entity adapter backends."""

    POSTGRES = "postgres"
    SQLITE = "sqlite"


@dataclass(frozen=True)
class PostgresConfig:
    """PostgreSQL connection and table configuration.

    Attributes:
        database: Database name (required)
        host: Server host
        port: Server port
        user: Login role
        password: Login password
        schema: Schema holding the entity table
        table: Entity table name
        key_column: Primary key column
        data_column: JSONB document column
        min_pool_size: Minimum pooled connections
        max_pool_size: Maximum pooled connections
        shutdown_timeout_seconds: Upper bound on pool draining at close
    """

    database: str = ""
    host: str = "localhost"
    port: int = 5432
    user: str = "postgres"
    password: str = field(default="postgres", repr=False)
    schema: str = "public"
    table: str = "entities"
    key_column: str = "key"
    data_column: str = "data"
    min_pool_size: int = 1
    max_pool_size: int = 10
    shutdown_timeout_seconds: float = 10.0

    @property
    def target(self) -> str:
        """host:port/database, safe to log."""
        return f"{self.host}:{self.port}/{self.database}"

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ConfigurationError: If configuration is invalid.
        """
        if not self.database:
            raise ConfigurationError(
                "Missing required PostgreSQL configuration: database", field_name="database"
            )
        validate_identifier(self.schema, "schema")
        validate_identifier(self.table, "table")
        validate_identifier(self.key_column, "key_column")
        validate_identifier(self.data_column, "data_column")
        if self.min_pool_size < 0 or self.max_pool_size < 1:
            raise ConfigurationError("Pool sizes must be positive", field_name="max_pool_size")
        if self.min_pool_size > self.max_pool_size:
            raise ConfigurationError(
                "min_pool_size cannot exceed max_pool_size", field_name="min_pool_size"
            )
        if self.shutdown_timeout_seconds <= 0:
            raise ConfigurationError(
                "shutdown_timeout_seconds must be positive",
                field_name="shutdown_timeout_seconds",
            )


@dataclass(frozen=True)
class SqliteConfig:
    """Embedded SQLite file configuration.

    Attributes:
        filename: Database file path, or ":memory:" (required)
        table: Entity table name
        key_column: Primary key column
        data_column: JSON text column
        busy_timeout_ms: SQLite busy timeout
        wal_mode: Enable SQLite WAL journal mode
    """

    filename: str = ""
    table: str = "entities"
    key_column: str = "key"
    data_column: str = "data"
    busy_timeout_ms: int = 5000
    wal_mode: bool = True

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ConfigurationError: If configuration is invalid.
        """
        if not self.filename:
            raise ConfigurationError(
                "Missing required SQLite configuration: filename", field_name="filename"
            )
        validate_identifier(self.table, "table")
        validate_identifier(self.key_column, "key_column")
        validate_identifier(self.data_column, "data_column")
        if self.busy_timeout_ms < 0:
            raise ConfigurationError("busy_timeout_ms cannot be negative", field_name="busy_timeout_ms")


@dataclass(frozen=True)
class AdapterConfig:
    """Configuration accepted by AdapterRegistry.create().

    A flat union of the PostgreSQL and SQLite settings; ``type`` selects
    which subset applies. Unset table names default to the logical adapter
    name.

    Example:
        >>> AdapterConfig.from_dict({"type": "sqlite", "filename": "app.db"})
    """

    type: AdapterType
    database: str | None = None
    host: str = "localhost"
    port: int = 5432
    user: str = "postgres"
    password: str = field(default="postgres", repr=False)
    schema: str = "public"
    table: str | None = None
    filename: str | None = None
    key_column: str = "key"
    data_column: str = "data"
    min_pool_size: int = 1
    max_pool_size: int = 10
    shutdown_timeout_seconds: float = 10.0
    busy_timeout_ms: int = 5000
    wal_mode: bool = True

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> AdapterConfig:
        """Create from a plain mapping.

        Raises:
            ConfigurationError: If the type is missing/unsupported or a key is unknown
        """
        if not isinstance(data, Mapping):
            raise ConfigurationError("Adapter configuration must be a mapping")

        values = dict(data)
        raw_type = values.pop("type", None)
        if raw_type is None:
            raise ConfigurationError("Missing adapter type", field_name="type")
        if isinstance(raw_type, AdapterType):
            adapter_type = raw_type
        else:
            try:
                adapter_type = AdapterType(str(raw_type).lower())
            except ValueError:
                raise ConfigurationError(
                    f"Unsupported adapter type: {raw_type}", field_name="type"
                ) from None

        known = {f.name for f in fields(cls)}
        unknown = sorted(set(values) - known)
        if unknown:
            raise ConfigurationError(
                f"Unknown adapter configuration keys: {', '.join(unknown)}",
                field_name=unknown[0],
            )
        return cls(type=adapter_type, **values)

    def to_postgres(self, name: str) -> PostgresConfig:
        """Build the PostgreSQL config for adapter ``name``."""
        if not self.database:
            raise ConfigurationError(
                "Missing required PostgreSQL configuration: database", field_name="database"
            )
        config = PostgresConfig(
            database=self.database,
            host=self.host,
            port=self.port,
            user=self.user,
            password=self.password,
            schema=self.schema,
            table=self.table or name,
            key_column=self.key_column,
            data_column=self.data_column,
            min_pool_size=self.min_pool_size,
            max_pool_size=self.max_pool_size,
            shutdown_timeout_seconds=self.shutdown_timeout_seconds,
        )
        config.validate()
        return config

    def to_sqlite(self, name: str) -> SqliteConfig:
        """Build the SQLite config for adapter ``name``."""
        if not self.filename:
            raise ConfigurationError(
                "Missing required SQLite configuration: filename", field_name="filename"
            )
        config = SqliteConfig(
            filename=self.filename,
            table=self.table or name,
            key_column=self.key_column,
            data_column=self.data_column,
            busy_timeout_ms=self.busy_timeout_ms,
            wal_mode=self.wal_mode,
        )
        config.validate()
        return config


@dataclass(frozen=True)
class MigrationConfig:
    """Migration runner configuration.

    Attributes:
        schema: Schema holding the bookkeeping table (ignored on SQLite)
        table: Bookkeeping table name
        migrations_dir: Directory scanned for migration units
    """

    schema: str = "public"
    table: str = "migrations"
    migrations_dir: str = "migrations"

    def validate(self) -> None:
        """Raises ConfigurationError if names are not plain identifiers."""
        validate_identifier(self.schema, "schema")
        validate_identifier(self.table, "table")
        if not self.migrations_dir:
            raise ConfigurationError("migrations_dir is required", field_name="migrations_dir")


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "text"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "text"),
        )

    def validate(self) -> None:
        if self.log_format not in ("json", "text"):
            raise ConfigurationError(
                f"Invalid LOG_FORMAT '{self.log_format}'. Must be one of: json, text",
                field_name="log_format",
            )
