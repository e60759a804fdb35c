"""
Embedded SQLite entity adapter for aiframe.

This module provides:
- SqliteDatabase: one sqlite3 connection per file, driven from a single
  dedicated worker thread so callers never block the event loop
- SqliteAdapter: the entity contract over a JSON text column

SQLite has one writer at a time, so "transaction" here means serializing
every operation through the database lock: a transaction holds the lock
from BEGIN IMMEDIATE to COMMIT/ROLLBACK, and autocommit statements take it
for one statement.

Table schema:
    <table>:
        - <key_column> TEXT PRIMARY KEY
        - <data_column> TEXT NOT NULL (valid JSON)
        - created_at TEXT NOT NULL (ISO-8601 UTC, millisecond precision)
        - updated_at TEXT NOT NULL
    AFTER UPDATE trigger <table>_touch_updated_at refreshes updated_at.

Invariants:
    - The adapter owns the file handle until disconnect()
    - All statements run on the same worker thread, in submission order
    - Filters use json_extract/json_type and match the rows PostgresAdapter
      returns for the same filter

How to change safely:
    - Never issue statements on the raw sqlite3 connection outside _run()
    - Keep PRAGMAs in _open(); they apply per connection
"""

from __future__ import annotations

import asyncio
import functools
import logging
import re
import sqlite3
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Optional

from ..config import SqliteConfig
from ..errors import ConcurrencyError, ConnectivityError, ConstraintError, PersistenceError
from .base import Connection, Dialect, EntityAdapter, JsonScalar

logger = logging.getLogger(__name__)

SQLITE_NOW = "(strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))"

SQLITE_DIALECT = Dialect(
    name="sqlite",
    json_type="TEXT",
    timestamp_type="TEXT",
    now=SQLITE_NOW,
    autoincrement_key="INTEGER PRIMARY KEY AUTOINCREMENT",
    supports_schemas=False,
)

_PLACEHOLDER_RE = re.compile(r"\$(\d+)")


def to_sqlite_placeholders(query: str) -> str:
    """Rewrite $1..$n placeholders to SQLite's numbered ?1..?n form."""
    return _PLACEHOLDER_RE.sub(r"?\1", query)


def translate_error(exc: BaseException) -> Optional[PersistenceError]:
    """Map a sqlite3 exception to the persistence taxonomy.

    Returns:
        The typed error to raise (chained to ``exc``), or None to re-raise
        ``exc`` unchanged
    """
    if isinstance(exc, sqlite3.IntegrityError):
        return ConstraintError(f"Constraint violated: {exc}")
    if isinstance(exc, sqlite3.OperationalError):
        message = str(exc).lower()
        if "locked" in message or "busy" in message:
            return ConcurrencyError(f"Database is locked: {exc}")
    return None


class SqliteConnection:
    """Connection protocol over the database's worker thread."""

    def __init__(self, database: SqliteDatabase) -> None:
        self._database = database

    async def execute(self, query: str, *args: Any) -> str:
        return await self._database._run(self._database._execute_sync, query, args)

    async def fetch(self, query: str, *args: Any) -> list[Any]:
        return await self._database._run(self._database._fetch_sync, query, args)

    async def fetchrow(self, query: str, *args: Any) -> Optional[Any]:
        return await self._database._run(self._database._fetchrow_sync, query, args)

    async def fetchval(self, query: str, *args: Any) -> Any:
        row = await self.fetchrow(query, *args)
        return None if row is None else row[0]


class SqliteDatabase:
    """Single-file SQLite database implementing the Database protocol.

    Attributes:
        filename: Database file path or ":memory:"
        busy_timeout_ms: SQLite busy timeout
        wal_mode: Whether WAL journal mode is enabled

    Thread safety:
        The sqlite3 connection is created and used only on the database's
        own worker thread. An asyncio lock serializes callers.

    Example:
        >>> db = SqliteDatabase("/var/lib/app/events.db")
        >>> async with db.transaction() as conn:
        ...     await conn.execute("INSERT INTO t (id) VALUES ($1)", "a")
        >>> await db.close()
    """

    dialect = SQLITE_DIALECT

    def __init__(
        self,
        filename: str,
        busy_timeout_ms: int = 5000,
        wal_mode: bool = True,
    ) -> None:
        self.filename = filename
        self.busy_timeout_ms = busy_timeout_ms
        self.wal_mode = wal_mode
        self._conn: Optional[sqlite3.Connection] = None
        self._executor: Optional[ThreadPoolExecutor] = None
        self._lock = asyncio.Lock()
        self._connect_lock = asyncio.Lock()
        self._holder: Optional[asyncio.Task[Any]] = None

    @classmethod
    def from_config(cls, config: SqliteConfig) -> SqliteDatabase:
        return cls(
            filename=config.filename,
            busy_timeout_ms=config.busy_timeout_ms,
            wal_mode=config.wal_mode,
        )

    @property
    def is_connected(self) -> bool:
        return self._conn is not None

    def _open(self) -> sqlite3.Connection:
        """Open and configure the connection (runs on the worker thread)."""
        in_memory = self.filename == ":memory:"
        if not in_memory:
            Path(self.filename).parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(
            self.filename,
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,  # Autocommit by default, explicit transactions
        )
        conn.row_factory = sqlite3.Row
        conn.execute(f"PRAGMA busy_timeout = {int(self.busy_timeout_ms)}")
        if self.wal_mode and not in_memory:
            conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA synchronous = NORMAL")
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    async def connect(self) -> None:
        """Open the database file if it is not open yet.

        Raises:
            ConnectivityError: If the file cannot be opened
        """
        if self._conn is not None:
            return
        async with self._connect_lock:
            if self._conn is not None:
                return
            executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="aiframe-sqlite")
            loop = asyncio.get_running_loop()
            try:
                conn = await loop.run_in_executor(executor, self._open)
            except (sqlite3.Error, OSError) as e:
                executor.shutdown(wait=False)
                raise ConnectivityError(
                    f"Cannot open SQLite database {self.filename}: {e}",
                    target=self.filename,
                ) from e
            self._executor = executor
            self._conn = conn
            logger.info("SQLite database opened", extra={"filename": self.filename})

    async def _run(self, fn: Callable[..., Any], *args: Any) -> Any:
        if self._conn is None:
            raise ConnectivityError(
                f"SQLite database {self.filename} is not open", target=self.filename
            )
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, functools.partial(fn, *args))

    def _execute_sync(self, query: str, args: tuple[Any, ...]) -> str:
        assert self._conn is not None
        cursor = self._conn.execute(to_sqlite_placeholders(query), args)
        words = query.split(None, 1)
        verb = words[0].upper() if words else ""
        return f"{verb} {max(cursor.rowcount, 0)}"

    def _fetch_sync(self, query: str, args: tuple[Any, ...]) -> list[sqlite3.Row]:
        assert self._conn is not None
        return self._conn.execute(to_sqlite_placeholders(query), args).fetchall()

    def _fetchrow_sync(self, query: str, args: tuple[Any, ...]) -> Optional[sqlite3.Row]:
        assert self._conn is not None
        return self._conn.execute(to_sqlite_placeholders(query), args).fetchone()

    def _rollback_sync(self) -> None:
        if self._conn is not None and self._conn.in_transaction:
            self._conn.execute("ROLLBACK")

    @asynccontextmanager
    async def _locked(self) -> AsyncIterator[None]:
        current = asyncio.current_task()
        if current is not None and self._holder is current:
            raise RuntimeError(
                "SQLite database is already held by this task; "
                "run the statement on the open transaction's connection"
            )
        async with self._lock:
            self._holder = current
            try:
                yield
            finally:
                self._holder = None

    @asynccontextmanager
    async def acquire(self) -> AsyncIterator[Connection]:
        """Run statements in autocommit mode while holding the database lock."""
        await self.connect()
        async with self._locked():
            try:
                yield SqliteConnection(self)
            except Exception as e:
                typed = translate_error(e)
                if typed is None:
                    raise
                raise typed from e

    @asynccontextmanager
    async def transaction(self, isolation: Optional[str] = None) -> AsyncIterator[Connection]:
        """Run the block between BEGIN IMMEDIATE and COMMIT/ROLLBACK.

        Args:
            isolation: Ignored; a single writer is always serializable
        """
        await self.connect()
        async with self._locked():
            conn = SqliteConnection(self)
            try:
                await conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                typed = translate_error(e)
                if typed is None:
                    raise
                raise typed from e
            try:
                yield conn
            except BaseException as e:
                try:
                    await self._run(self._rollback_sync)
                except Exception:
                    logger.exception(
                        "Rollback failed",
                        extra={"filename": self.filename},
                    )
                typed = translate_error(e) if isinstance(e, Exception) else None
                if typed is None:
                    raise
                raise typed from e
            else:
                try:
                    await conn.execute("COMMIT")
                except sqlite3.Error as e:
                    try:
                        await self._run(self._rollback_sync)
                    except Exception:
                        logger.exception(
                            "Rollback after failed commit failed",
                            extra={"filename": self.filename},
                        )
                    typed = translate_error(e)
                    if typed is None:
                        raise
                    raise typed from e

    async def close(self, timeout: Optional[float] = None) -> None:
        """Close the file handle, releasing OS-level locks.

        Waits for the operation in progress up to ``timeout`` seconds
        (default: busy timeout). Statements queued on the worker thread
        always finish before the close runs.
        """
        if self._conn is None:
            return
        timeout = timeout if timeout is not None else max(self.busy_timeout_ms / 1000.0, 1.0)
        acquired = False
        try:
            await asyncio.wait_for(self._lock.acquire(), timeout=timeout)
            acquired = True
        except asyncio.TimeoutError:
            logger.warning(
                "SQLite database busy at close, closing after queued statements",
                extra={"filename": self.filename, "timeout_seconds": timeout},
            )
        try:
            conn, executor = self._conn, self._executor
            self._conn = None
            self._executor = None
            if conn is not None and executor is not None:
                loop = asyncio.get_running_loop()
                await loop.run_in_executor(executor, conn.close)
                executor.shutdown(wait=True)
        finally:
            if acquired:
                self._lock.release()
        logger.info("SQLite database closed", extra={"filename": self.filename})


class SqliteAdapter(EntityAdapter):
    """Entity adapter backed by a SQLite JSON text column.

    Example:
        >>> adapter = SqliteAdapter(SqliteConfig(filename="app.db", table="users"))
        >>> await adapter.save("u1", {"type": "user", "age": 30})
        >>> await adapter.load("u1")
        {'type': 'user', 'age': 30}
    """

    def __init__(
        self,
        config: SqliteConfig,
        database: Optional[SqliteDatabase] = None,
    ) -> None:
        """Initialize the adapter. Performs no I/O.

        Args:
            config: File and table configuration
            database: Optional open database to share instead of creating one

        Raises:
            ConfigurationError: If the configuration is invalid
        """
        config.validate()
        self.config = config
        super().__init__(
            database=database or SqliteDatabase.from_config(config),
            table=config.table,
            key_column=config.key_column,
            data_column=config.data_column,
        )

    def _schema_statements(self) -> list[str]:
        key, data = self.key_column, self.data_column
        return [
            f"""
            CREATE TABLE IF NOT EXISTS {self.table_ref} (
                {key} TEXT PRIMARY KEY,
                {data} TEXT NOT NULL CHECK (json_valid({data})),
                created_at TEXT NOT NULL DEFAULT {SQLITE_NOW},
                updated_at TEXT NOT NULL DEFAULT {SQLITE_NOW}
            )
            """,
            f"""
            CREATE TRIGGER IF NOT EXISTS {self.table}_touch_updated_at
            AFTER UPDATE OF {data} ON {self.table_ref}
            FOR EACH ROW
            BEGIN
                UPDATE {self.table_ref} SET updated_at = {SQLITE_NOW}
                WHERE {key} = NEW.{key};
            END
            """,
        ]

    def _table_exists_query(self) -> tuple[str, list[Any]]:
        return "SELECT count(*) FROM sqlite_master WHERE type = 'table' AND name = $1", [
            self.table
        ]

    def _field_condition(
        self, index: int, field_name: str, value: JsonScalar
    ) -> tuple[str, list[Any]]:
        data = self.data_column
        path = f'$."{field_name}"'
        field_ref = f"${index}"
        expected = f"${index + 1}"

        if isinstance(value, bool):
            return f"(json_type({data}, {field_ref}) = {expected})", [
                path,
                "true" if value else "false",
            ]
        if value is None:
            return f"(json_type({data}, {field_ref}) = {expected})", [path, "null"]
        if isinstance(value, (int, float)):
            clause = (
                f"(json_type({data}, {field_ref}) IN ('integer', 'real') "
                f"AND json_extract({data}, {field_ref}) = {expected})"
            )
            return clause, [path, value]
        clause = (
            f"(json_type({data}, {field_ref}) = 'text' "
            f"AND json_extract({data}, {field_ref}) = {expected})"
        )
        return clause, [path, value]
