"""
Migration CLI tool for aiframe.

Commands:
- create <name>: Write a new migration unit from the template
- up: Apply all pending migrations as one batch
- down [--steps N]: Roll back the last N migrations of the latest batch
- status: List applied and pending migrations
- reset: Roll back the latest batch entirely

Usage:
    aiframe-migrate create "add users table"
    aiframe-migrate up
    aiframe-migrate down --steps 2
    aiframe-migrate --config aiframe.config.yaml status

Configuration is read from --config (YAML or JSON), else from
aiframe.config.{yaml,yml,json} in the working directory, else from
environment variables (POSTGRES_HOST, POSTGRES_PORT, POSTGRES_DB,
POSTGRES_USER, POSTGRES_PASSWORD, AIFRAME_DB_TYPE, AIFRAME_SQLITE_FILENAME,
AIFRAME_MIGRATIONS_DIR, AIFRAME_MIGRATIONS_SCHEMA, AIFRAME_MIGRATIONS_TABLE).
Values from the file win over the environment.

Invariants:
    - Exit code 1 if any migration in the run failed
    - Exit code 2 for configuration errors
    - One ✓/✗ line per attempted migration
"""

from __future__ import annotations

import argparse
import asyncio
import hashlib
import re
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, TextIO

import yaml
from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings

from ..adapters.base import Database
from ..adapters.postgres import PostgresDatabase
from ..adapters.sqlite import SqliteDatabase
from ..config import MigrationConfig, ObservabilityConfig, PostgresConfig
from ..errors import ConfigurationError, PersistenceError
from ..observability import setup_logging
from .runner import MigrationRunner
from .types import MigrationResult

DEFAULT_CONFIG_FILES = ("aiframe.config.yaml", "aiframe.config.yml", "aiframe.config.json")

MIGRATION_TEMPLATE = '''"""
Migration: {name}
"""

id = "{id}"
name = {name!r}
timestamp = {timestamp}


async def up(conn):
    # await conn.execute("CREATE TABLE ...")
    pass


async def down(conn):
    # await conn.execute("DROP TABLE ...")
    pass
'''


class PostgresSettings(BaseSettings):
    """PostgreSQL connection settings (POSTGRES_* environment variables)."""

    host: str = Field(default="localhost")
    port: int = Field(default=5432)
    db: str = Field(default="aiframe")
    user: str = Field(default="postgres")
    password: str = Field(default="postgres", repr=False)

    model_config = {"env_prefix": "POSTGRES_"}


class MigrateSettings(BaseSettings):
    """Runner settings (AIFRAME_* environment variables)."""

    db_type: str = Field(default="postgres", description="postgres or sqlite")
    sqlite_filename: str = Field(default="aiframe.db")
    migrations_dir: str = Field(default="migrations")
    migrations_schema: str = Field(default="public")
    migrations_table: str = Field(default="migrations")

    model_config = {"env_prefix": "AIFRAME_"}


@dataclass
class CliConfig:
    """Resolved CLI configuration."""

    database: Database
    migrations: MigrationConfig


def slugify(name: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "_", name.lower()).strip("_")
    return slug or "migration"


def create_migration(directory: Path, name: str, now_ms: Optional[int] = None) -> Path:
    """Write a new migration unit file.

    Args:
        directory: Migrations directory (created if missing)
        name: Human readable migration name
        now_ms: Timestamp override (Unix ms)

    Returns:
        Path of the created file
    """
    timestamp = now_ms if now_ms is not None else int(time.time() * 1000)
    unit_id = hashlib.sha256(f"{timestamp}-{name}".encode("utf-8")).hexdigest()[:8]

    directory.mkdir(parents=True, exist_ok=True)
    path = directory / f"{timestamp}_{slugify(name)}.py"
    if path.exists():
        raise FileExistsError(f"Migration file already exists: {path}")
    path.write_text(
        MIGRATION_TEMPLATE.format(id=unit_id, name=name, timestamp=timestamp),
        encoding="utf-8",
    )
    return path


def _read_config_file(path: Path) -> dict[str, Any]:
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Cannot read config file {path}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file {path} must contain a mapping")
    return data


def _find_config_file(explicit: Optional[str]) -> Optional[Path]:
    if explicit:
        path = Path(explicit)
        if not path.is_file():
            raise ConfigurationError(f"Config file not found: {path}")
        return path
    for candidate in DEFAULT_CONFIG_FILES:
        path = Path.cwd() / candidate
        if path.is_file():
            return path
    return None


def load_config(
    config_path: Optional[str] = None,
    migrations_dir: Optional[str] = None,
) -> CliConfig:
    """Resolve database and runner configuration.

    File layout (YAML or JSON):
        database:
          type: postgres        # or sqlite
          host: localhost
          port: 5432
          database: aiframe
          user: postgres
          password: postgres
          filename: app.db      # sqlite only
        migrations:
          schema: public
          table: migrations
          migrations_dir: migrations

    Raises:
        ConfigurationError: If the file or values are invalid
    """
    path = _find_config_file(config_path)
    data = _read_config_file(path) if path else {}

    db_section = dict(data.get("database") or {})
    mig_section = dict(data.get("migrations") or {})

    settings_kwargs: dict[str, Any] = {}
    if "type" in db_section:
        settings_kwargs["db_type"] = db_section.pop("type")
    if "filename" in db_section:
        settings_kwargs["sqlite_filename"] = db_section.pop("filename")
    for file_key, settings_key in (
        ("schema", "migrations_schema"),
        ("table", "migrations_table"),
        ("migrations_dir", "migrations_dir"),
        ("migrationsDir", "migrations_dir"),
    ):
        if file_key in mig_section:
            settings_kwargs[settings_key] = mig_section[file_key]
    if migrations_dir:
        settings_kwargs["migrations_dir"] = migrations_dir

    pg_kwargs = {
        ("db" if key == "database" else key): value
        for key, value in db_section.items()
        if key in ("host", "port", "database", "user", "password")
    }

    try:
        settings = MigrateSettings(**settings_kwargs)
        pg = PostgresSettings(**pg_kwargs)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid migration settings: {e}") from e

    migrations = MigrationConfig(
        schema=settings.migrations_schema,
        table=settings.migrations_table,
        migrations_dir=settings.migrations_dir,
    )
    migrations.validate()

    db_type = settings.db_type.lower()
    database: Database
    if db_type == "postgres":
        pg_config = PostgresConfig(
            database=pg.db,
            host=pg.host,
            port=pg.port,
            user=pg.user,
            password=pg.password,
            max_pool_size=2,
        )
        pg_config.validate()
        database = PostgresDatabase(pg_config)
    elif db_type == "sqlite":
        if not settings.sqlite_filename:
            raise ConfigurationError("Missing SQLite filename", field_name="filename")
        database = SqliteDatabase(settings.sqlite_filename)
    else:
        raise ConfigurationError(
            f"Unsupported database type '{settings.db_type}'. Must be one of: postgres, sqlite",
            field_name="type",
        )

    return CliConfig(database=database, migrations=migrations)


class MigrationCLI:
    """Command implementations; each returns the process exit code.

    Example:
        >>> cli = MigrationCLI(runner)
        >>> await cli.up()
        0
    """

    def __init__(
        self,
        runner: MigrationRunner,
        out: Optional[TextIO] = None,
        err: Optional[TextIO] = None,
    ) -> None:
        self.runner = runner
        self._out = out
        self._err = err

    @property
    def out(self) -> TextIO:
        return self._out or sys.stdout

    @property
    def err(self) -> TextIO:
        return self._err or sys.stderr

    def _print_results(self, title: str, results: list[MigrationResult]) -> int:
        print(title, file=self.out)
        if not results:
            print("  (nothing to do)", file=self.out)
        for result in results:
            marker = "✓" if result.ok else "✗"
            print(f"{marker} {result.name} ({result.duration_ms:.0f}ms)", file=self.out)
            if result.error is not None:
                print(f"  {type(result.error).__name__}: {result.error}", file=self.err)
        self._print_discovery_errors()
        return 0 if all(result.ok for result in results) else 1

    def _print_discovery_errors(self) -> None:
        for error in self.runner.discovery_errors:
            print(f"warning: skipped {error.path}: {'; '.join(error.problems)}", file=self.err)

    async def up(self) -> int:
        results = await self.runner.up()
        return self._print_results("Applied migrations:", results)

    async def down(self, steps: int = 1) -> int:
        results = await self.runner.down(steps)
        return self._print_results("Rolled back migrations:", results)

    async def reset(self) -> int:
        results = await self.runner.reset()
        return self._print_results("Reset migrations:", results)

    async def status(self) -> int:
        state = await self.runner.status()
        print("Applied migrations:", file=self.out)
        for record in state.applied:
            print(
                f"✓ {record.name} (batch {record.batch}, applied at {record.applied_at.isoformat()})",
                file=self.out,
            )
        print("\nPending migrations:", file=self.out)
        for migration in state.pending:
            print(f"- {migration.name}", file=self.out)
        self._print_discovery_errors()
        return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="aiframe-migrate", description="aiframe schema migration tool"
    )
    parser.add_argument("--config", "-c", help="Path to YAML/JSON config file")
    parser.add_argument("--migrations-dir", help="Override the migrations directory")
    parser.add_argument("--log-level", default=None, help="Logging level (default: LOG_LEVEL or INFO)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    create_parser = subparsers.add_parser("create", help="Create a new migration file")
    create_parser.add_argument("name", help="Migration name")

    subparsers.add_parser("up", help="Apply pending migrations")

    down_parser = subparsers.add_parser("down", help="Roll back migrations of the latest batch")
    down_parser.add_argument("--steps", "-n", type=int, default=1, help="Number of migrations")

    subparsers.add_parser("status", help="Show applied and pending migrations")
    subparsers.add_parser("reset", help="Roll back the latest batch")

    return parser


async def _run_command(args: argparse.Namespace, config: CliConfig) -> int:
    runner = MigrationRunner(config.database, config.migrations)
    cli = MigrationCLI(runner)
    try:
        if args.command == "up":
            return await cli.up()
        elif args.command == "down":
            return await cli.down(args.steps)
        elif args.command == "reset":
            return await cli.reset()
        else:
            return await cli.status()
    finally:
        await config.database.close()


def run(argv: Optional[list[str]] = None) -> int:
    """Parse arguments, execute the command and return the exit code."""
    parser = build_parser()
    args = parser.parse_args(argv)

    observability = ObservabilityConfig.from_env()
    if args.log_level:
        observability = ObservabilityConfig(
            log_level=args.log_level, log_format=observability.log_format
        )

    try:
        setup_logging(observability)
        config = load_config(args.config, args.migrations_dir)
    except ConfigurationError as e:
        print(f"Configuration error: {e.message}", file=sys.stderr)
        return 2

    if args.command == "create":
        try:
            path = create_migration(Path(config.migrations.migrations_dir), args.name)
        except OSError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1
        print(f"Created migration: {path.name}")
        return 0

    if args.command == "down" and args.steps < 1:
        print("--steps must be at least 1", file=sys.stderr)
        return 2

    try:
        return asyncio.run(_run_command(args, config))
    except ConfigurationError as e:
        print(f"Configuration error: {e.message}", file=sys.stderr)
        return 2
    except PersistenceError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1


def main() -> None:
    """CLI entry point for the migration tool."""
    sys.exit(run())


if __name__ == "__main__":
    main()
