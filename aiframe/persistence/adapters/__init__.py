"""
Entity adapters for aiframe.

This module provides a pluggable storage backend interface supporting:
- PostgreSQL (asyncpg pool, JSONB documents)
- SQLite (single file, JSON text documents)

Both backends implement the same entity contract and produce the same
results for the same sequence of operations.
"""

from .base import (
    Connection,
    Database,
    Dialect,
    EntityAdapter,
    EntityRecord,
    EntityStore,
    EntityTransaction,
)
from .postgres import PostgresAdapter, PostgresDatabase
from .sqlite import SqliteAdapter, SqliteDatabase

__all__ = [
    # Protocols and types
    "Connection",
    "Database",
    "Dialect",
    "EntityStore",
    "EntityRecord",
    "EntityTransaction",
    "EntityAdapter",
    # Implementations
    "PostgresAdapter",
    "PostgresDatabase",
    "SqliteAdapter",
    "SqliteDatabase",
]
