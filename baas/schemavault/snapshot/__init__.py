"""Versioned schema snapshots."""

from .blob_store import (
    BlobStore,
    InMemoryBlobStore,
    S3BlobStore,
    create_blob_store,
    data_key,
    schema_key,
)
from .compare import SnapshotComparison, TableChange, TableChangeKind, compare_table_schemas
from .manager import (
    RestoreResult,
    SchemaSnapshot,
    SnapshotManager,
    SnapshotPage,
    SnapshotType,
    calculate_schema_hash,
)
from .scheduler import BackgroundSnapshotter

__all__ = [
    "BackgroundSnapshotter",
    "BlobStore",
    "InMemoryBlobStore",
    "RestoreResult",
    "S3BlobStore",
    "SchemaSnapshot",
    "SnapshotComparison",
    "SnapshotManager",
    "SnapshotPage",
    "SnapshotType",
    "TableChange",
    "TableChangeKind",
    "calculate_schema_hash",
    "compare_table_schemas",
    "create_blob_store",
    "data_key",
    "schema_key",
]
