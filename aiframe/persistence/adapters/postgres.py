"""
PostgreSQL entity adapter and connection pool for aiframe.

This module provides:
- PostgresDatabase: an asyncpg pool with transaction scoping, driver error
  translation and bounded shutdown
- PostgresAdapter: the entity contract over a JSONB document column

Table schema:
    <schema>.<table>:
        - <key_column> TEXT PRIMARY KEY
        - <data_column> JSONB NOT NULL
        - created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
        - updated_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
    BEFORE UPDATE trigger <table>_touch_updated_at refreshes updated_at.

Invariants:
    - Transactions run at SERIALIZABLE unless the caller asks otherwise
    - Values and filter fields are always bound parameters; only the
      configured (validated) identifiers appear in SQL text
    - A connection is released to the pool on every exit path
    - close() never waits longer than shutdown_timeout_seconds

How to change safely:
    - Keep the DDL idempotent (IF NOT EXISTS / OR REPLACE)
    - Test concurrent appenders when lowering the isolation level
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

import asyncpg

from ..config import PostgresConfig
from ..errors import ConcurrencyError, ConnectivityError, ConstraintError, PersistenceError
from .base import Connection, Dialect, EntityAdapter, JsonScalar, encode_json

logger = logging.getLogger(__name__)

POSTGRES_DIALECT = Dialect(
    name="postgres",
    json_type="JSONB",
    timestamp_type="TIMESTAMPTZ",
    now="CURRENT_TIMESTAMP",
    autoincrement_key="BIGSERIAL PRIMARY KEY",
    supports_schemas=True,
)

_CONNECTION_ERRORS = (
    OSError,
    asyncio.TimeoutError,
    asyncpg.exceptions.PostgresConnectionError,
    asyncpg.exceptions.ConnectionDoesNotExistError,
)


def translate_error(exc: BaseException) -> Optional[PersistenceError]:
    """Map an asyncpg exception to the persistence taxonomy.

    Returns:
        The typed error to raise (chained to ``exc``), or None to re-raise
        ``exc`` unchanged
    """
    if isinstance(exc, asyncpg.exceptions.TransactionRollbackError):
        return ConcurrencyError(f"Transaction conflict: {exc}")
    if isinstance(exc, asyncpg.exceptions.IntegrityConstraintViolationError):
        return ConstraintError(
            f"Constraint violated: {exc}",
            constraint=getattr(exc, "constraint_name", None),
        )
    if isinstance(exc, _CONNECTION_ERRORS):
        return ConnectivityError(f"PostgreSQL connection failed: {exc}")
    return None


class PostgresDatabase:
    """asyncpg connection pool implementing the Database protocol.

    Attributes:
        config: Connection configuration
        dialect: PostgreSQL SQL fragments
        isolation: Default transaction isolation level

    Example:
        >>> db = PostgresDatabase(PostgresConfig(database="app"))
        >>> async with db.transaction() as conn:
        ...     await conn.execute("SELECT 1")
        >>> await db.close()
    """

    dialect = POSTGRES_DIALECT

    def __init__(self, config: PostgresConfig, isolation: str = "serializable") -> None:
        self.config = config
        self.isolation = isolation
        self._pool: Optional[asyncpg.Pool] = None
        self._lock = asyncio.Lock()

    @property
    def is_connected(self) -> bool:
        return self._pool is not None

    async def connect(self) -> None:
        """Create the pool if it does not exist yet.

        Raises:
            ConnectivityError: If the server cannot be reached
        """
        if self._pool is not None:
            return
        async with self._lock:
            if self._pool is not None:
                return
            try:
                self._pool = await asyncpg.create_pool(
                    host=self.config.host,
                    port=self.config.port,
                    user=self.config.user,
                    password=self.config.password,
                    database=self.config.database,
                    min_size=self.config.min_pool_size,
                    max_size=self.config.max_pool_size,
                )
            except (*_CONNECTION_ERRORS, asyncpg.PostgresError) as e:
                raise ConnectivityError(
                    f"Cannot connect to PostgreSQL at {self.config.target}: {e}",
                    target=self.config.target,
                ) from e
            logger.info("PostgreSQL pool opened", extra={"target": self.config.target})

    @asynccontextmanager
    async def _borrow(self) -> AsyncIterator[Any]:
        await self.connect()
        pool = self._pool
        assert pool is not None
        try:
            conn = await pool.acquire()
        except _CONNECTION_ERRORS as e:
            raise ConnectivityError(
                f"Cannot acquire a connection to {self.config.target}: {e}",
                target=self.config.target,
            ) from e
        try:
            yield conn
        finally:
            await pool.release(conn)

    @asynccontextmanager
    async def acquire(self) -> AsyncIterator[Connection]:
        """Borrow an autocommit connection from the pool."""
        async with self._borrow() as conn:
            try:
                yield conn
            except Exception as e:
                typed = translate_error(e)
                if typed is None:
                    raise
                raise typed from e

    @asynccontextmanager
    async def transaction(self, isolation: Optional[str] = None) -> AsyncIterator[Connection]:
        """Run the block in one transaction on one pooled connection.

        Args:
            isolation: Isolation level (defaults to the database default)
        """
        async with self._borrow() as conn:
            tx = conn.transaction(isolation=isolation or self.isolation)
            try:
                await tx.start()
            except Exception as e:
                typed = translate_error(e)
                if typed is None:
                    raise
                raise typed from e
            try:
                yield conn
            except BaseException as e:
                try:
                    await tx.rollback()
                except Exception:
                    logger.exception(
                        "Rollback failed, releasing connection",
                        extra={"target": self.config.target},
                    )
                typed = translate_error(e) if isinstance(e, Exception) else None
                if typed is None:
                    raise
                raise typed from e
            else:
                try:
                    await tx.commit()
                except Exception as e:
                    typed = translate_error(e)
                    if typed is None:
                        raise
                    raise typed from e

    async def close(self, timeout: Optional[float] = None) -> None:
        """Drain and close the pool.

        Waits for in-flight connections to be released, up to ``timeout``
        seconds (default: shutdown_timeout_seconds), then terminates the
        remaining connections. Released connections are reset by asyncpg,
        which discards prepared statements and session state.
        """
        pool = self._pool
        if pool is None:
            return
        self._pool = None
        timeout = timeout if timeout is not None else self.config.shutdown_timeout_seconds
        try:
            await asyncio.wait_for(pool.close(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "PostgreSQL pool did not close in time, terminating connections",
                extra={"target": self.config.target, "timeout_seconds": timeout},
            )
            pool.terminate()
        logger.info("PostgreSQL pool closed", extra={"target": self.config.target})


class PostgresAdapter(EntityAdapter):
    """Entity adapter backed by a PostgreSQL JSONB column.

    Query filters compile to ``data -> $n::text = $m::jsonb``, so values are
    compared as JSON (``30`` matches ``30.0`` but not ``"30"`` or ``true``).

    Example:
        >>> adapter = PostgresAdapter(PostgresConfig(database="app", table="users"))
        >>> await adapter.save("u1", {"type": "user", "age": 30})
        >>> await adapter.query({"type": "user"})
        [{'type': 'user', 'age': 30}]
    """

    def __init__(
        self,
        config: PostgresConfig,
        database: Optional[PostgresDatabase] = None,
    ) -> None:
        """Initialize the adapter. Performs no I/O.

        Args:
            config: Connection and table configuration
            database: Optional pool to use instead of creating one

        Raises:
            ConfigurationError: If the configuration is invalid
        """
        config.validate()
        self.config = config
        super().__init__(
            database=database or PostgresDatabase(config),
            table=config.table,
            key_column=config.key_column,
            data_column=config.data_column,
            schema=config.schema,
        )

    def _schema_statements(self) -> list[str]:
        schema = self.config.schema
        trigger = f"{self.table}_touch_updated_at"
        function = f"{schema}.aiframe_touch_updated_at"
        return [
            *POSTGRES_DIALECT.create_schema(schema),
            f"""
            CREATE TABLE IF NOT EXISTS {self.table_ref} (
                {self.key_column} TEXT PRIMARY KEY,
                {self.data_column} JSONB NOT NULL,
                created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
            )
            """,
            f"""
            CREATE OR REPLACE FUNCTION {function}()
            RETURNS TRIGGER AS $$
            BEGIN
                NEW.updated_at = CURRENT_TIMESTAMP;
                RETURN NEW;
            END;
            $$ LANGUAGE plpgsql
            """,
            f"DROP TRIGGER IF EXISTS {trigger} ON {self.table_ref}",
            f"""
            CREATE TRIGGER {trigger}
            BEFORE UPDATE ON {self.table_ref}
            FOR EACH ROW
            EXECUTE FUNCTION {function}()
            """,
        ]

    def _table_exists_query(self) -> tuple[str, list[Any]]:
        return "SELECT to_regclass($1::text) IS NOT NULL", [self.table_ref]

    def _field_condition(
        self, index: int, field_name: str, value: JsonScalar
    ) -> tuple[str, list[Any]]:
        clause = f"{self.data_column} -> ${index}::text = ${index + 1}::jsonb"
        return clause, [field_name, encode_json(value)]
