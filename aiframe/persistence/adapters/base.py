"""
Base protocols and types for entity storage.

This module defines the contract every entity adapter satisfies, the
Database/Connection protocols shared by adapters, the migration runner and
the event store, and the filter rules used by query().

Invariants:
    - save() is an upsert; repeated saves of one key leave exactly one row
    - load() returns None for a missing key and never raises for it
    - delete() of a missing key is a no-op
    - query() compares top-level document fields with JSON-typed equality
    - Malformed filters match nothing; None and {} match everything
    - Integer filter values outside the signed 64-bit range are malformed
    - Schema provisioning runs at most once per adapter instance

How to change safely:
    - Contract changes require updating every adapter
    - Keep placeholder style ($1..$n) identical across Database backends
    - Filter rules must produce the same rows on every backend
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
from abc import ABC, abstractmethod
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Mapping,
    Optional,
    Protocol,
    TypeVar,
    Union,
    runtime_checkable,
)

logger = logging.getLogger(__name__)

JsonScalar = Union[str, int, float, bool, None]
FilterTerms = list[tuple[str, JsonScalar]]

# Integer filter values must fit a signed 64-bit column on every engine.
INT64_MIN = -(2**63)
INT64_MAX = 2**63 - 1

R = TypeVar("R")


@runtime_checkable
class Connection(Protocol):
    """An execution scope on a backing engine.

    Either autocommit (Database.acquire) or transactional
    (Database.transaction). Queries use $1..$n positional placeholders on
    every backend.
    """

    async def execute(self, query: str, *args: Any) -> str:
        ...

    async def fetch(self, query: str, *args: Any) -> list[Any]:
        ...

    async def fetchrow(self, query: str, *args: Any) -> Optional[Any]:
        ...

    async def fetchval(self, query: str, *args: Any) -> Any:
        ...


@dataclass(frozen=True)
class Dialect:
    """Engine-specific SQL fragments.

    Attributes:
        name: Engine name (postgres, sqlite)
        json_type: Column type for JSON documents
        timestamp_type: Column type for timestamps
        now: SQL expression for the current timestamp
        autoincrement_key: Column definition for a surrogate key
        supports_schemas: Whether tables live in a named schema
    """

    name: str
    json_type: str
    timestamp_type: str
    now: str
    autoincrement_key: str
    supports_schemas: bool

    def qualify(self, schema: Optional[str], table: str) -> str:
        """Return the table reference used in SQL text."""
        if self.supports_schemas and schema:
            return f"{schema}.{table}"
        return table

    def create_schema(self, schema: Optional[str]) -> list[str]:
        """Statements that provision ``schema`` (empty if unsupported)."""
        if self.supports_schemas and schema:
            return [f"CREATE SCHEMA IF NOT EXISTS {schema}"]
        return []


class Database(Protocol):
    """A backing engine handle: a connection pool or an embedded file.

    Example:
        >>> async with database.transaction() as conn:
        ...     await conn.execute("INSERT INTO t (id) VALUES ($1)", "a")
    """

    dialect: Dialect

    @property
    def is_connected(self) -> bool:
        ...

    async def connect(self) -> None:
        """Open the pool or file.

        Raises:
            ConnectivityError: If the engine cannot be reached
        """
        ...

    def acquire(self) -> AbstractAsyncContextManager[Connection]:
        """Borrow an autocommit connection."""
        ...

    def transaction(self) -> AbstractAsyncContextManager[Connection]:
        """Run the block atomically.

        Commits on success; rolls back and re-raises on any exception. A
        failing rollback is logged and never replaces the original error.
        The connection is always released.
        """
        ...

    async def close(self) -> None:
        """Release the pool or file handle. Bounded by a timeout."""
        ...


@dataclass
class EntityRecord:
    """Stored entity with its envelope.

    Attributes:
        key: Entity key
        value: Opaque JSON document
        created_at: First write time
        updated_at: Last write time (>= created_at)
    """

    key: str
    value: Any
    created_at: datetime
    updated_at: datetime


@runtime_checkable
class EntityStore(Protocol):
    """Contract every entity adapter implements.

    Example:
        >>> await store.save("user:1", {"type": "user", "age": 30})
        >>> await store.load("user:1")
        {'type': 'user', 'age': 30}
        >>> await store.query({"type": "user"})
        [{'type': 'user', 'age': 30}]
    """

    async def save(self, key: str, value: Any, *, scope: Optional[Connection] = None) -> None:
        ...

    async def load(self, key: str, *, scope: Optional[Connection] = None) -> Any:
        ...

    async def delete(self, key: str, *, scope: Optional[Connection] = None) -> None:
        ...

    async def query(
        self, filter: Any = None, *, scope: Optional[Connection] = None
    ) -> list[Any]:
        ...

    async def disconnect(self) -> None:
        ...


def encode_json(value: Any) -> str:
    """Serialize a document for storage.

    Raises:
        ValueError: If the value is not JSON-serializable
    """
    try:
        return json.dumps(value, allow_nan=False, separators=(",", ":"))
    except (TypeError, ValueError) as e:
        raise ValueError(f"Value is not JSON-serializable: {e}") from e


def decode_json(raw: Any) -> Any:
    """Deserialize a stored document (drivers return JSON columns as text)."""
    if isinstance(raw, (str, bytes, bytearray)):
        return json.loads(raw)
    return raw


def to_datetime(value: Any) -> datetime:
    """Normalize a driver timestamp (datetime or ISO-8601 text) to a datetime."""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, str):
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    raise TypeError(f"Unsupported timestamp value: {value!r}")


def validate_key(key: Any) -> str:
    if not isinstance(key, str) or not key:
        raise ValueError("Entity key must be a non-empty string")
    return key


def _is_scalar(value: Any) -> bool:
    if value is None or isinstance(value, (str, bool)):
        return True
    if isinstance(value, int):
        return INT64_MIN <= value <= INT64_MAX
    if isinstance(value, float):
        return math.isfinite(value)
    return False


def normalize_filter(filter: Any) -> Optional[FilterTerms]:
    """Turn a query filter into (field, value) equality terms.

    Returns:
        [] for None or an empty mapping (match everything), a list of terms
        for a well-formed mapping, or None for malformed input (match
        nothing).
    """
    if filter is None:
        return []
    if not isinstance(filter, Mapping):
        return None

    terms: FilterTerms = []
    for field_name, value in filter.items():
        if not isinstance(field_name, str) or not field_name or '"' in field_name:
            return None
        if not _is_scalar(value):
            return None
        terms.append((field_name, value))
    return terms


class EntityTransaction:
    """Entity operations bound to one open transaction.

    Obtained from EntityAdapter.transaction(); every call runs on the same
    connection and commits or rolls back with the enclosing block.
    """

    def __init__(self, adapter: EntityAdapter, connection: Connection) -> None:
        self.adapter = adapter
        self.connection = connection

    async def save(self, key: str, value: Any) -> None:
        await self.adapter.save(key, value, scope=self.connection)

    async def load(self, key: str) -> Any:
        return await self.adapter.load(key, scope=self.connection)

    async def load_record(self, key: str) -> Optional[EntityRecord]:
        return await self.adapter.load_record(key, scope=self.connection)

    async def delete(self, key: str) -> None:
        await self.adapter.delete(key, scope=self.connection)

    async def query(self, filter: Any = None) -> list[Any]:
        return await self.adapter.query(filter, scope=self.connection)


class EntityAdapter(ABC):
    """Shared implementation of the entity contract over a Database.

    Subclasses supply the engine-specific DDL and the per-field filter
    clause; statements for save/load/delete are common to both engines.

    Every operation takes an optional ``scope``: a Connection from an
    enclosing transaction. Without one, the adapter borrows an autocommit
    connection for the single statement.

    Attributes:
        database: Backing engine handle, owned by the adapter
        table: Unqualified entity table name
    """

    def __init__(
        self,
        database: Database,
        table: str,
        key_column: str = "key",
        data_column: str = "data",
        schema: Optional[str] = None,
    ) -> None:
        self.database = database
        self.table = table
        self.schema = schema
        self.key_column = key_column
        self.data_column = data_column
        self.table_ref = database.dialect.qualify(schema, table)
        self._initialized = False
        self._init_lock = asyncio.Lock()

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @abstractmethod
    def _schema_statements(self) -> list[str]:
        """DDL creating the table and the updated_at trigger, idempotently."""
        ...

    @abstractmethod
    def _table_exists_query(self) -> tuple[str, list[Any]]:
        """Catalog lookup returning a truthy value once the entity table exists."""
        ...

    @abstractmethod
    def _field_condition(
        self, index: int, field_name: str, value: JsonScalar
    ) -> tuple[str, list[Any]]:
        """Build the WHERE clause for one filter term.

        Args:
            index: Placeholder number of the field parameter; the expected
                value uses ``index + 1``
            field_name: Top-level document field
            value: Expected scalar value

        Returns:
            Tuple of (SQL clause, [field parameter, value parameter])
        """
        ...

    async def initialize(self) -> None:
        """Provision the table and trigger once per adapter instance."""
        if self._initialized:
            return
        async with self._init_lock:
            if self._initialized:
                return
            await self.database.connect()
            async with self.database.transaction() as conn:
                await self._create_schema(conn)
            self._initialized = True
            logger.info(
                "Entity table ready",
                extra={"table": self.table_ref, "engine": self.database.dialect.name},
            )

    async def _create_schema(self, conn: Connection) -> None:
        for statement in self._schema_statements():
            await conn.execute(statement)

    async def _table_exists(self, conn: Connection) -> bool:
        query, args = self._table_exists_query()
        return bool(await conn.fetchval(query, *args))

    @asynccontextmanager
    async def _connection(self, scope: Optional[Connection]) -> AsyncIterator[Connection]:
        if scope is not None:
            if not self._initialized and not await self._table_exists(scope):
                # Runs in the caller's transaction, so it is not memoized.
                await self._create_schema(scope)
            yield scope
            return

        await self.initialize()
        async with self.database.acquire() as conn:
            yield conn

    async def save(self, key: str, value: Any, *, scope: Optional[Connection] = None) -> None:
        """Insert or replace the document stored under ``key``.

        Raises:
            ValueError: If the key is empty or the value is not JSON-serializable
        """
        validate_key(key)
        document = encode_json(value)
        query = f"""
            INSERT INTO {self.table_ref} ({self.key_column}, {self.data_column})
            VALUES ($1, $2)
            ON CONFLICT ({self.key_column})
            DO UPDATE SET {self.data_column} = excluded.{self.data_column},
                          updated_at = {self.database.dialect.now}
        """
        async with self._connection(scope) as conn:
            await conn.execute(query, key, document)

        logger.debug("Saved entity", extra={"table": self.table_ref, "key": key})

    async def load(self, key: str, *, scope: Optional[Connection] = None) -> Any:
        """Return the document for ``key``, or None if absent."""
        validate_key(key)
        query = f"SELECT {self.data_column} FROM {self.table_ref} WHERE {self.key_column} = $1"
        async with self._connection(scope) as conn:
            row = await conn.fetchrow(query, key)
        if row is None:
            return None
        return decode_json(row[0])

    async def load_record(
        self, key: str, *, scope: Optional[Connection] = None
    ) -> Optional[EntityRecord]:
        """Return the document for ``key`` with its timestamps, or None."""
        validate_key(key)
        query = f"""
            SELECT {self.key_column}, {self.data_column}, created_at, updated_at
            FROM {self.table_ref}
            WHERE {self.key_column} = $1
        """
        async with self._connection(scope) as conn:
            row = await conn.fetchrow(query, key)
        if row is None:
            return None
        return EntityRecord(
            key=row[0],
            value=decode_json(row[1]),
            created_at=to_datetime(row[2]),
            updated_at=to_datetime(row[3]),
        )

    async def delete(self, key: str, *, scope: Optional[Connection] = None) -> None:
        """Remove ``key`` if present."""
        validate_key(key)
        query = f"DELETE FROM {self.table_ref} WHERE {self.key_column} = $1"
        async with self._connection(scope) as conn:
            await conn.execute(query, key)

        logger.debug("Deleted entity", extra={"table": self.table_ref, "key": key})

    async def query(
        self, filter: Any = None, *, scope: Optional[Connection] = None
    ) -> list[Any]:
        """Return documents whose top-level fields equal every filter value.

        Args:
            filter: Mapping of field name to expected scalar value

        Returns:
            Matching documents ordered by key; [] for a malformed filter
        """
        terms = normalize_filter(filter)
        if terms is None:
            logger.warning(
                "Malformed query filter, matching nothing",
                extra={"table": self.table_ref, "filter_type": type(filter).__name__},
            )
            return []

        clauses: list[str] = []
        params: list[Any] = []
        for field_name, value in terms:
            clause, clause_params = self._field_condition(len(params) + 1, field_name, value)
            clauses.append(clause)
            params.extend(clause_params)

        where = " AND ".join(clauses) if clauses else "1=1"
        query = f"""
            SELECT {self.data_column} FROM {self.table_ref}
            WHERE {where}
            ORDER BY {self.key_column}
        """
        async with self._connection(scope) as conn:
            rows = await conn.fetch(query, *params)
        return [decode_json(row[0]) for row in rows]

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[EntityTransaction]:
        """Run entity operations atomically.

        Example:
            >>> async with adapter.transaction() as tx:
            ...     await tx.save("a", {"n": 1})
            ...     await tx.delete("b")
        """
        await self.initialize()
        async with self.database.transaction() as conn:
            yield EntityTransaction(self, conn)

    async def with_transaction(self, callback: Callable[[EntityTransaction], Awaitable[R]]) -> R:
        """Run ``callback(tx)`` atomically and return its result.

        Any exception raised by the callback rolls back every write it made
        and is re-raised unchanged.
        """
        async with self.transaction() as tx:
            return await callback(tx)

    async def disconnect(self) -> None:
        """Close the backing engine handle."""
        await self.database.close()
        self._initialized = False
