"""
Schema migrations for aiframe.

This module handles:
- Discovery of migration units (Python modules with async up/down)
- Batch-numbered application with per-migration transactions
- Rollback of the latest batch
- The aiframe-migrate command line tool

Invariants:
    - Migrations apply in timestamp order, never file-name order
    - A failed migration leaves no record and stops the run

How to change safely:
    - Never edit a migration that has been applied anywhere; add a new one
    - Test down() as carefully as up()
"""

from .runner import MigrationRunner
from .types import (
    Migration,
    MigrationRecord,
    MigrationResult,
    MigrationState,
    MigrationStatus,
    discover_migrations,
    load_migration_file,
    migration_from_module,
)

__all__ = [
    "MigrationRunner",
    "Migration",
    "MigrationRecord",
    "MigrationResult",
    "MigrationState",
    "MigrationStatus",
    "discover_migrations",
    "load_migration_file",
    "migration_from_module",
]
