"""
Persistence layer for aiframe.

Usage:
    from aiframe.persistence import AdapterRegistry, EventStore, NewEvent, SqliteDatabase

    registry = AdapterRegistry()
    users = registry.create("users", {"type": "sqlite", "filename": "app.db"})
    await users.save("u1", {"type": "user", "name": "Ada"})

    events = EventStore(SqliteDatabase("events.db"), owns_database=True)
    await events.append("order-1", [NewEvent("created", {"total": 10})])
"""

from .adapters import (
    Connection,
    Database,
    EntityAdapter,
    EntityRecord,
    EntityStore,
    EntityTransaction,
    PostgresAdapter,
    PostgresDatabase,
    SqliteAdapter,
    SqliteDatabase,
)
from .config import (
    AdapterConfig,
    AdapterType,
    MigrationConfig,
    ObservabilityConfig,
    PostgresConfig,
    SqliteConfig,
)
from .errors import (
    ConcurrencyError,
    ConfigurationError,
    ConnectivityError,
    ConstraintError,
    MigrationError,
    MigrationValidationError,
    PersistenceError,
)
from .events import Event, EventMetadata, EventStore, NewEvent, Snapshot
from .factory import AdapterRegistry
from .migrations import MigrationRunner

__all__ = [
    # Entity storage
    "Connection",
    "Database",
    "EntityAdapter",
    "EntityRecord",
    "EntityStore",
    "EntityTransaction",
    "PostgresAdapter",
    "PostgresDatabase",
    "SqliteAdapter",
    "SqliteDatabase",
    "AdapterRegistry",
    # Configuration
    "AdapterConfig",
    "AdapterType",
    "MigrationConfig",
    "ObservabilityConfig",
    "PostgresConfig",
    "SqliteConfig",
    # Errors
    "PersistenceError",
    "ConfigurationError",
    "ConnectivityError",
    "ConstraintError",
    "ConcurrencyError",
    "MigrationError",
    "MigrationValidationError",
    # Migrations and events
    "MigrationRunner",
    "EventStore",
    "NewEvent",
    "Event",
    "EventMetadata",
    "Snapshot",
]
