"""
Schema migration runner for aiframe.

The runner discovers migration units in a directory, records applied units
in a bookkeeping table, and applies or rolls back units one transaction at
a time.

Per-migration state machine:
    unknown -> pending -> applied
    applied -> pending (rollback)

Table schema:
    <schema>.<table>:
        - id TEXT PRIMARY KEY
        - name TEXT NOT NULL
        - timestamp BIGINT NOT NULL
        - applied_at TIMESTAMP NOT NULL DEFAULT now
        - batch INTEGER NOT NULL

Invariants:
    - Units apply in ascending timestamp order
    - All units applied by one up() call share one batch number
    - A record exists iff the unit's up() ran to completion; the unit body
      and its record insert/delete commit in the same transaction
    - The first failure stops the run; later units are not attempted
    - down() only touches the latest batch

How to change safely:
    - Never change the bookkeeping table layout without a migration for it
    - Runs are single-operator; there is no cross-process lock
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Optional

from ..adapters.base import Database, to_datetime
from ..config import MigrationConfig
from ..errors import MigrationError, MigrationValidationError
from .types import (
    Migration,
    MigrationRecord,
    MigrationResult,
    MigrationState,
    MigrationStatus,
    discover_migrations,
)

logger = logging.getLogger(__name__)


class MigrationRunner:
    """Applies and rolls back migration units against a Database.

    Attributes:
        database: Engine the migrations run against (not owned)
        config: Bookkeeping table and migrations directory
        strict: Fail discovery on ill-shaped files instead of skipping them
        discovery_errors: Files skipped by the last discovery

    Example:
        >>> runner = MigrationRunner(database, MigrationConfig(migrations_dir="migrations"))
        >>> results = await runner.up()
        >>> all(r.ok for r in results)
        True
    """

    def __init__(
        self,
        database: Database,
        config: Optional[MigrationConfig] = None,
        strict: bool = False,
    ) -> None:
        self.database = database
        self.config = config or MigrationConfig()
        self.config.validate()
        self.strict = strict
        self.discovery_errors: list[MigrationValidationError] = []
        self.table_ref = database.dialect.qualify(self.config.schema, self.config.table)
        self._initialized = False

    async def initialize(self) -> None:
        """Create the bookkeeping table if needed. Safe to call repeatedly."""
        if self._initialized:
            return

        dialect = self.database.dialect
        statements = [
            *dialect.create_schema(self.config.schema),
            f"""
            CREATE TABLE IF NOT EXISTS {self.table_ref} (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                timestamp BIGINT NOT NULL,
                applied_at {dialect.timestamp_type} NOT NULL DEFAULT {dialect.now},
                batch INTEGER NOT NULL
            )
            """,
        ]
        await self.database.connect()
        async with self.database.transaction() as conn:
            for statement in statements:
                await conn.execute(statement)

        self._initialized = True
        logger.info("Migration table ready", extra={"table": self.table_ref})

    async def get_applied_migrations(self) -> list[MigrationRecord]:
        """Return applied records in application order (batch, timestamp)."""
        await self.initialize()
        async with self.database.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT id, name, timestamp, applied_at, batch
                FROM {self.table_ref}
                ORDER BY batch ASC, timestamp ASC, id ASC
                """
            )
        return [
            MigrationRecord(
                id=row[0],
                name=row[1],
                timestamp=int(row[2]),
                applied_at=to_datetime(row[3]),
                batch=int(row[4]),
            )
            for row in rows
        ]

    def load_migrations(self) -> list[Migration]:
        """Discover migration units, ordered by timestamp.

        Raises:
            MigrationValidationError: For duplicate ids, or any ill-shaped
                file when strict
        """
        migrations, errors = discover_migrations(Path(self.config.migrations_dir), strict=self.strict)
        self.discovery_errors = errors
        return migrations

    async def status(self) -> MigrationState:
        """Return applied records and pending units without changing anything."""
        applied = await self.get_applied_migrations()
        applied_ids = {record.id for record in applied}
        pending = [m for m in self.load_migrations() if m.id not in applied_ids]
        return MigrationState(applied=applied, pending=pending)

    async def up(self) -> list[MigrationResult]:
        """Apply every pending migration as one new batch.

        Returns:
            One result per attempted migration; stops after the first error
        """
        applied = await self.get_applied_migrations()
        migrations = self.load_migrations()

        applied_ids = {record.id for record in applied}
        pending = [m for m in migrations if m.id not in applied_ids]
        if not pending:
            logger.info("No pending migrations")
            return []

        batch = max((record.batch for record in applied), default=0) + 1
        logger.info(f"Applying {len(pending)} migration(s) as batch {batch}")

        results: list[MigrationResult] = []
        for migration in pending:
            result = await self._apply(migration, batch)
            results.append(result)
            if not result.ok:
                break
        return results

    async def _apply(self, migration: Migration, batch: int) -> MigrationResult:
        start = time.perf_counter()
        try:
            async with self.database.transaction() as conn:
                await migration.up(conn)
                await conn.execute(
                    f"""
                    INSERT INTO {self.table_ref} (id, name, timestamp, batch)
                    VALUES ($1, $2, $3, $4)
                    """,
                    migration.id,
                    migration.name,
                    migration.timestamp,
                    batch,
                )
        except Exception as e:
            duration_ms = (time.perf_counter() - start) * 1000
            logger.error(
                f"Migration {migration.name} failed: {e}",
                extra={"migration_id": migration.id, "batch": batch, "duration_ms": duration_ms},
            )
            return MigrationResult(
                id=migration.id,
                name=migration.name,
                status=MigrationStatus.ERROR,
                duration_ms=duration_ms,
                error=e,
            )

        duration_ms = (time.perf_counter() - start) * 1000
        logger.info(
            f"Applied migration {migration.name}",
            extra={"migration_id": migration.id, "batch": batch, "duration_ms": duration_ms},
        )
        return MigrationResult(
            id=migration.id,
            name=migration.name,
            status=MigrationStatus.SUCCESS,
            duration_ms=duration_ms,
        )

    async def down(self, steps: int = 1) -> list[MigrationResult]:
        """Roll back the last ``steps`` migrations of the latest batch.

        Migrations are reverted newest first. A record whose unit file is
        missing produces an error result and stops the run.

        Returns:
            One result per attempted migration; stops after the first error
        """
        if steps < 1:
            return []

        applied = await self.get_applied_migrations()
        if not applied:
            logger.info("No applied migrations to roll back")
            return []

        latest_batch = max(record.batch for record in applied)
        in_batch = [record for record in applied if record.batch == latest_batch]
        to_rollback = list(reversed(in_batch[-steps:]))

        units = {m.id: m for m in self.load_migrations()}

        results: list[MigrationResult] = []
        for record in to_rollback:
            migration = units.get(record.id)
            if migration is None:
                error = MigrationError(
                    f"Migration source for applied migration '{record.id}' ({record.name}) not found",
                    migration_id=record.id,
                )
                logger.error(error.message)
                results.append(
                    MigrationResult(
                        id=record.id,
                        name=record.name,
                        status=MigrationStatus.ERROR,
                        duration_ms=0.0,
                        error=error,
                    )
                )
                break

            result = await self._revert(migration)
            results.append(result)
            if not result.ok:
                break
        return results

    async def _revert(self, migration: Migration) -> MigrationResult:
        start = time.perf_counter()
        try:
            async with self.database.transaction() as conn:
                await migration.down(conn)
                await conn.execute(f"DELETE FROM {self.table_ref} WHERE id = $1", migration.id)
        except Exception as e:
            duration_ms = (time.perf_counter() - start) * 1000
            logger.error(
                f"Rollback of {migration.name} failed: {e}",
                extra={"migration_id": migration.id, "duration_ms": duration_ms},
            )
            return MigrationResult(
                id=migration.id,
                name=migration.name,
                status=MigrationStatus.ERROR,
                duration_ms=duration_ms,
                error=e,
            )

        duration_ms = (time.perf_counter() - start) * 1000
        logger.info(
            f"Rolled back migration {migration.name}",
            extra={"migration_id": migration.id, "duration_ms": duration_ms},
        )
        return MigrationResult(
            id=migration.id,
            name=migration.name,
            status=MigrationStatus.SUCCESS,
            duration_ms=duration_ms,
        )

    async def reset(self) -> list[MigrationResult]:
        """down() with steps equal to the number of applied migrations."""
        applied = await self.get_applied_migrations()
        return await self.down(len(applied))
