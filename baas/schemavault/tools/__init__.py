"""
CLI tools for SchemaVault administration.

This module provides command-line tools for:
- snapshot: Create, list, restore, prune and compare schema snapshots

Invariants:
    - Tools work directly on the database file (no running server required)
    - All operations are logged for audit
"""

from .snapshot_cli import SnapshotCLI, main, setup_logging

__all__ = ["SnapshotCLI", "main", "setup_logging"]
