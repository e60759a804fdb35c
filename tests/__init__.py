"""
aiframe persistence test suite.

This package contains:
- unit/: Unit tests (no database I/O beyond temporary SQLite files)
- integration/: Integration tests (SQLite files; PostgreSQL when enabled)
"""
