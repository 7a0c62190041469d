"""
SchemaVault - schema evolution and versioned snapshots for a personal BaaS.

This package lets an operator create, alter and drop user tables and indexes
on a live SQLite database while recording a recoverable snapshot of the prior
schema (and, best-effort, its data) before every structural change.

Architecture:
    ┌───────────────┐     ┌───────────────┐
    │ SchemaManager │     │ IndexManager  │
    └───────┬───────┘     └───────┬───────┘
            │  pre_change request │
            ▼                     ▼
    ┌─────────────────────────────────────┐
    │        BackgroundSnapshotter        │
    └──────────────────┬──────────────────┘
                       ▼
    ┌─────────────────────────────────────┐      ┌───────────┐
    │           SnapshotManager           │─────▶│ BlobStore │
    └──────────────────┬──────────────────┘      │ (S3/mem)  │
                       ▼                         └───────────┘
    ┌─────────────────────────────────────┐
    │     SqliteStore (catalog + DDL)     │
    └─────────────────────────────────────┘

Invariants:
    - Every mutating schema/index call requests a pre_change snapshot first
    - Snapshot metadata rows are authoritative, blob payloads are optional
    - Snapshot versions are strictly increasing and never reused
    - Table reconstruction is all-or-nothing

How to change safely:
    - Never build DDL from unvalidated names or types
    - Keep blob-store failures non-fatal for the owning operation
    - Add snapshot columns additively, old rows must stay readable
"""

from ._version import __version__
from .engine import SchemaEngine

__all__ = ["__version__", "SchemaEngine"]
