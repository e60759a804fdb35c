"""
aiframe - application framework persistence core.

This package implements the storage layer used by aiframe applications:
- Pluggable entity adapters (PostgreSQL, SQLite) behind one contract
- An adapter registry that owns adapter lifetimes
- A schema migration runner with batches and rollback
- An append-only event store with per-stream versions and snapshots

Architecture:
    ┌─────────────┐     ┌──────────────────┐     ┌──────────────────┐
    │ Application │────▶│ AdapterRegistry  │────▶│ Postgres/SQLite  │
    │    code     │     │  (named stores)  │     │  EntityAdapter   │
    └─────────────┘     └──────────────────┘     └────────┬─────────┘
                                                          │
    ┌─────────────┐     ┌──────────────────┐              ▼
    │  Operator   │────▶│ MigrationRunner  │────▶┌──────────────────┐
    │    (CLI)    │     └──────────────────┘     │     Database     │
    └─────────────┘     ┌──────────────────┐     │ (pool / file)    │
                        │    EventStore    │────▶└──────────────────┘
                        └──────────────────┘

Invariants:
    - Every multi-statement write runs inside one transaction
    - Migration records exist only for migrations whose up() completed
    - Event versions per stream are contiguous from 0

Version: see _version.py.
"""

from ._version import __version__

__all__ = ["__version__"]
