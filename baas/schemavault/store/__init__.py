"""
Store module for SchemaVault.

This module wraps the application SQLite database:
- Connection configuration (busy timeout, WAL mode, foreign keys)
- Catalog introspection used by every manager
- Atomic statement batches for table reconstruction

Invariants:
    - Callers never build SQL from unvalidated identifiers
    - Multi-statement changes go through transaction() or run_atomic()
"""

from .sqlite_store import AUTO_INDEX_PREFIX, SqliteStore

__all__ = ["SqliteStore", "AUTO_INDEX_PREFIX"]
