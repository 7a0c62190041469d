"""
SchemaVault engine - wires all components together.

The engine owns:
- SqliteStore (application database)
- Optional BlobStore (snapshot payloads)
- SnapshotManager + BackgroundSnapshotter
- SchemaManager and IndexManager

Usage:
    >>> engine = SchemaEngine.from_config(EngineConfig.from_env())
    >>> await engine.initialize()
    >>> await engine.schema.create_table("notes", [{"name": "title", "type": "TEXT"}])
    >>> await engine.close()

Invariants:
    - initialize() must complete before any manager call
    - close() waits for outstanding background snapshots

How to change safely:
    - New components take the shared store, never open their own database
"""

from __future__ import annotations

import logging
from typing import Optional

from .config import EngineConfig
from .schema.indexes import IndexManager
from .schema.manager import SchemaManager
from .snapshot.blob_store import BlobStore, create_blob_store
from .snapshot.manager import RestoreResult, SnapshotManager
from .snapshot.scheduler import BackgroundSnapshotter
from .store.sqlite_store import SqliteStore

logger = logging.getLogger(__name__)


class SchemaEngine:
    """SchemaVault orchestrator.

    Attributes:
        config: Engine configuration
        store: Application SQLite store
        blob_store: Snapshot payload store (None for schema-only snapshots)
        snapshots: Snapshot manager
        background: Background pre-change snapshotter
        schema: Table and column manager
        indexes: Index manager
    """

    def __init__(
        self,
        store: SqliteStore,
        blob_store: Optional[BlobStore] = None,
        config: Optional[EngineConfig] = None,
    ) -> None:
        self.config = config or EngineConfig()
        self.store = store
        self.blob_store = blob_store

        self.snapshots = SnapshotManager(
            store,
            blob_store=blob_store,
            blob_timeout_seconds=self.config.snapshot.blob_timeout_seconds,
        )
        self.background = BackgroundSnapshotter(
            self.snapshots,
            enabled=self.config.snapshot.pre_change_enabled,
        )
        self.schema = SchemaManager(store, snapshots=self.background)
        self.indexes = IndexManager(store, snapshots=self.background)

    @classmethod
    def from_config(cls, config: EngineConfig) -> SchemaEngine:
        store = SqliteStore(
            db_path=config.storage.db_path,
            wal_mode=config.storage.wal_mode,
            busy_timeout_ms=config.storage.busy_timeout_ms,
        )
        return cls(store, blob_store=create_blob_store(config), config=config)

    async def initialize(self) -> None:
        """Create bookkeeping tables."""
        await self.store.initialize()
        logger.info(
            "Schema engine initialized",
            extra={
                "db_path": str(self.store.get_db_path()),
                "blob_store": type(self.blob_store).__name__ if self.blob_store else None,
                "sqlite_version": ".".join(str(p) for p in self.store.sqlite_version),
            },
        )

    async def restore_snapshot(self, snapshot_id: str) -> RestoreResult:
        """Restore a snapshot, recording the current schema first.

        The pre-change snapshot is awaited so it is versioned before the
        restore's own auto snapshot.
        """
        task = await self.background.request(description=f"Before restoring snapshot {snapshot_id}")
        if task is not None:
            await task
        return await self.snapshots.restore_snapshot(snapshot_id)

    async def prune_snapshots(self, keep_count: Optional[int] = None, delete_payloads: bool = False) -> int:
        """Prune snapshots, keeping the configured count by default."""
        if keep_count is None:
            keep_count = self.config.snapshot.keep_count
        return await self.snapshots.prune_snapshots(keep_count, delete_payloads=delete_payloads)

    async def close(self) -> None:
        """Wait for background snapshots and release the blob store."""
        await self.background.drain()
        close = getattr(self.blob_store, "close", None)
        if close is not None:
            await close()
        logger.info("Schema engine closed", extra={"snapshot_stats": self.background.stats})
