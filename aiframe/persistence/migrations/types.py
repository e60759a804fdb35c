"""
Migration units, bookkeeping records and discovery.

A migration unit is a Python module exposing:

    id = "3f2a9c1b"                 # unique, never changed once published
    name = "create users"
    timestamp = 1718000000000       # ordering key (Unix ms)

    async def up(conn): ...
    async def down(conn): ...

``conn`` is the transaction-scoped Connection (execute/fetch/fetchrow/
fetchval with $1..$n placeholders).

Discovery turns each file into a validated Migration value or a
MigrationValidationError naming the file; ill-shaped modules never enter
the ordered migration list.
"""

from __future__ import annotations

import hashlib
import importlib.util
import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

from ..errors import MigrationValidationError

logger = logging.getLogger(__name__)

MigrationFn = Callable[[Any], Awaitable[None]]


@dataclass(frozen=True)
class Migration:
    """A validated migration unit.

    Attributes:
        id: Stable unique identifier
        name: Human readable name
        timestamp: Ordering key, ascending
        up: Coroutine function applying the change
        down: Coroutine function reverting the change
        path: File the unit was loaded from (None if built in code)
    """

    id: str
    name: str
    timestamp: int
    up: MigrationFn = field(repr=False)
    down: MigrationFn = field(repr=False)
    path: Optional[str] = None


@dataclass(frozen=True)
class MigrationRecord:
    """Row of the bookkeeping table: a migration whose up() completed."""

    id: str
    name: str
    timestamp: int
    applied_at: datetime
    batch: int


class MigrationStatus(Enum):
    SUCCESS = "success"
    ERROR = "error"


@dataclass
class MigrationResult:
    """Outcome of applying or rolling back one migration.

    Attributes:
        id: Migration id
        name: Migration name
        status: SUCCESS or ERROR
        duration_ms: Wall time spent, including the transaction
        error: Underlying exception when status is ERROR
    """

    id: str
    name: str
    status: MigrationStatus
    duration_ms: float
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.status == MigrationStatus.SUCCESS


@dataclass
class MigrationState:
    """Snapshot of applied and pending migrations."""

    applied: list[MigrationRecord]
    pending: list[Migration]


def _problems(module: Any) -> list[str]:
    problems = []
    unit_id = getattr(module, "id", None)
    if not isinstance(unit_id, str) or not unit_id:
        problems.append("'id' must be a non-empty string")
    if not isinstance(getattr(module, "name", None), str):
        problems.append("'name' must be a string")
    timestamp = getattr(module, "timestamp", None)
    if isinstance(timestamp, bool) or not isinstance(timestamp, int):
        problems.append("'timestamp' must be an integer")
    for fn_name in ("up", "down"):
        fn = getattr(module, fn_name, None)
        if not callable(fn):
            problems.append(f"'{fn_name}' must be a function")
        elif not inspect.iscoroutinefunction(fn):
            problems.append(f"'{fn_name}' must be an async function")
    return problems


def migration_from_module(module: Any, path: Optional[str] = None) -> Migration:
    """Build a Migration from a loaded module (or any object with the attributes).

    Raises:
        MigrationValidationError: If the object does not have the unit shape
    """
    problems = _problems(module)
    if problems:
        raise MigrationValidationError(
            f"Invalid migration {path or module!r}: {'; '.join(problems)}",
            path=path,
            problems=problems,
        )
    return Migration(
        id=module.id,
        name=module.name,
        timestamp=module.timestamp,
        up=module.up,
        down=module.down,
        path=path,
    )


def load_migration_file(path: Path) -> Migration:
    """Import a migration file and validate it.

    Raises:
        MigrationValidationError: If the file cannot be imported or is ill-shaped
    """
    digest = hashlib.sha1(str(path.resolve()).encode("utf-8")).hexdigest()[:12]
    module_name = f"aiframe_migration_{path.stem}_{digest}"
    spec = importlib.util.spec_from_file_location(module_name, path)
    if spec is None or spec.loader is None:
        raise MigrationValidationError(f"Cannot import migration {path}", path=str(path))

    module = importlib.util.module_from_spec(spec)
    try:
        spec.loader.exec_module(module)
    except Exception as e:
        raise MigrationValidationError(
            f"Failed to import migration {path}: {e}",
            path=str(path),
            problems=[str(e)],
        ) from e
    return migration_from_module(module, path=str(path))


def discover_migrations(
    directory: Path,
    strict: bool = False,
) -> tuple[list[Migration], list[MigrationValidationError]]:
    """Load every migration unit in ``directory``, ordered by timestamp.

    Files ending in ``.py`` are considered; names starting with ``_`` are
    ignored. Ordering is by (timestamp, id), never by file name.

    Args:
        directory: Directory to scan (missing directory yields nothing)
        strict: Raise on the first ill-shaped file instead of skipping it

    Returns:
        Tuple of (ordered migrations, validation errors for skipped files)

    Raises:
        MigrationValidationError: In strict mode for any ill-shaped file, and
            always for duplicate ids
    """
    migrations: list[Migration] = []
    errors: list[MigrationValidationError] = []

    if not directory.is_dir():
        return migrations, errors

    for path in sorted(directory.glob("*.py")):
        if path.name.startswith("_"):
            continue
        try:
            migrations.append(load_migration_file(path))
        except MigrationValidationError as e:
            if strict:
                raise
            logger.warning(f"Skipping invalid migration {path.name}: {e.message}")
            errors.append(e)

    seen: dict[str, Migration] = {}
    for migration in migrations:
        other = seen.get(migration.id)
        if other is not None:
            raise MigrationValidationError(
                f"Duplicate migration id '{migration.id}' in {other.path} and {migration.path}",
                path=migration.path,
                migration_id=migration.id,
            )
        seen[migration.id] = migration

    migrations.sort(key=lambda m: (m.timestamp, m.id))
    return migrations, errors
