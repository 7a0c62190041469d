"""
Unit tests for background pre-change snapshots.
"""

import asyncio
import logging
import os
import tempfile

import pytest

from baas.schemavault.snapshot.blob_store import InMemoryBlobStore
from baas.schemavault.snapshot.manager import SnapshotManager, SnapshotType
from baas.schemavault.snapshot.scheduler import BackgroundSnapshotter
from baas.schemavault.store.sqlite_store import SqliteStore


class SlowBlobStore(InMemoryBlobStore):
    """Blob store that holds every write for a while."""

    async def put(self, key, text):
        await asyncio.sleep(0.05)
        await super().put(key, text)


class FailingSnapshotManager:
    """Snapshot manager stand-in whose captures always fail."""

    async def create_snapshot(self, **options):
        raise RuntimeError("disk on fire")


class TestBackgroundSnapshotter:
    """Tests for BackgroundSnapshotter."""

    @pytest.fixture
    def data_dir(self):
        """Create temporary data directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    @pytest.fixture
    def store(self, data_dir):
        """Create store."""
        return SqliteStore(os.path.join(data_dir, "app.db"), wal_mode=False)

    @pytest.fixture
    def snapshots(self, store):
        """Create snapshot manager."""
        return SnapshotManager(store)

    @pytest.mark.asyncio
    async def test_request_creates_pre_change_snapshot(self, store, snapshots):
        """A request produces a pre_change snapshot with the description."""
        await store.initialize()
        background = BackgroundSnapshotter(snapshots)

        task = await background.request(description="Before dropping table: notes")
        snapshot_id = await task

        snapshot = await snapshots.get_snapshot(snapshot_id)
        assert snapshot.snapshot_type == SnapshotType.PRE_CHANGE
        assert snapshot.description == "Before dropping table: notes"
        assert background.stats == {
            "enabled": True,
            "requested": 1,
            "completed": 1,
            "failed": 0,
            "pending": 0,
        }

    @pytest.mark.asyncio
    async def test_disabled(self, store, snapshots):
        """Disabled snapshotters ignore requests."""
        await store.initialize()
        background = BackgroundSnapshotter(snapshots, enabled=False)

        assert await background.request(description="ignored") is None
        assert (await snapshots.get_snapshots()).total == 0
        assert background.stats["requested"] == 0

    @pytest.mark.asyncio
    async def test_failure_is_logged_not_raised(self, caplog):
        """Failures go to the background logger and never reach the caller."""
        background = BackgroundSnapshotter(FailingSnapshotManager())

        with caplog.at_level(logging.WARNING, logger="baas.schemavault.snapshot.background"):
            task = await background.request(description="Before dropping table: notes")
            await background.drain()

        assert task.result() is None
        assert background.stats["failed"] == 1
        assert background.stats["completed"] == 0
        records = [r for r in caplog.records if r.name == "baas.schemavault.snapshot.background"]
        assert len(records) == 1
        assert records[0].getMessage() == "Background snapshot failed"
        assert records[0].exc_info is not None

    @pytest.mark.asyncio
    async def test_capture_precedes_caller(self, store):
        """The schema is read before request() returns, even if payloads lag."""
        await store.initialize()
        snapshots = SnapshotManager(store, blob_store=SlowBlobStore())
        background = BackgroundSnapshotter(snapshots)

        task = await background.request(description="Before creating table: notes")
        await store.execute("CREATE TABLE notes (title TEXT)")
        assert background.pending == 1

        snapshot = await snapshots.get_snapshot(await task)
        assert snapshot.tables == []
        assert snapshot.has_data_backup is True

    @pytest.mark.asyncio
    async def test_schema_only_capture_is_recorded_immediately(self, store, snapshots):
        """Without a blob store the row exists as soon as request() returns."""
        await store.initialize()
        background = BackgroundSnapshotter(snapshots)

        await background.request(description="Before creating table: notes")

        assert (await snapshots.get_snapshots()).total == 1
        await background.drain()

    @pytest.mark.asyncio
    async def test_drain_waits_for_all(self, store, snapshots):
        """drain() returns once every request has finished."""
        await store.initialize()
        background = BackgroundSnapshotter(snapshots)

        for i in range(3):
            await background.request(description=f"change {i}")
        await background.drain()

        assert background.pending == 0
        assert (await snapshots.get_snapshots()).total == 3
