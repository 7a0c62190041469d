"""
Unit tests for the snapshot manager.

Tests cover:
- Schema hashing and change detection
- Gap-free version allocation, including concurrent writers
- Snapshot creation with and without a blob store
- Blob-store degradation (failures and timeouts)
- Restore (schema, data, partial failures)
- Comparison, deletion and pruning
"""

import asyncio
import json
import logging
import os
import tempfile
from concurrent.futures import ThreadPoolExecutor

import pytest

from baas.schemavault.errors import (
    InvalidRequestError,
    NotFoundError,
    RestoreFailedError,
)
from baas.schemavault.schema.manager import SchemaManager
from baas.schemavault.schema.types import TableSchema
from baas.schemavault.snapshot.blob_store import InMemoryBlobStore, data_key, schema_key
from baas.schemavault.snapshot.manager import (
    SnapshotManager,
    SnapshotType,
    calculate_schema_hash,
    decode_data_dump,
    encode_data_dump,
)
from baas.schemavault.store.sqlite_store import SqliteStore


class SlowBlobStore(InMemoryBlobStore):
    """Blob store whose writes outlast any reasonable timeout."""

    async def put(self, key, text):
        await asyncio.sleep(5)
        await super().put(key, text)


def count_rows(store, table_name):
    with store.connection() as conn:
        return conn.execute(f'SELECT COUNT(*) FROM "{table_name}"').fetchone()[0]


def table_names(store):
    with store.connection() as conn:
        return [row["name"] for row in store.list_tables(conn)]


class TestSchemaHash:
    """Tests for calculate_schema_hash."""

    def test_order_independent(self):
        """Enumeration order does not change the hash."""
        a = TableSchema("a", "CREATE TABLE a (x)")
        b = TableSchema("b", "CREATE TABLE b (y)")

        assert calculate_schema_hash([a, b]) == calculate_schema_hash([b, a])

    def test_sensitive_to_ddl(self):
        """Any DDL change changes the hash."""
        before = calculate_schema_hash([TableSchema("a", "CREATE TABLE a (x)")])
        after = calculate_schema_hash([TableSchema("a", "CREATE TABLE a (x, y)")])

        assert before != after
        assert len(before) == 64

    def test_empty_schema(self):
        """An empty schema hashes the empty string."""
        assert calculate_schema_hash([]) == (
            "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"
        )


class TestDataDump:
    """Tests for the data.json payload encoding."""

    def test_bytes_are_tagged(self):
        """BLOB values survive the JSON payload."""
        text = encode_data_dump({"files": [{"id": "1", "content": b"\x00\xff"}]})

        assert json.loads(text)["files"][0]["content"] == {"$base64": "AP8="}
        assert decode_data_dump(text) == {"files": [{"id": "1", "content": b"\x00\xff"}]}

    def test_rejects_non_object(self):
        """The payload must be keyed by table name."""
        with pytest.raises(ValueError):
            decode_data_dump("[1, 2]")


class TestSnapshotManager:
    """Tests for SnapshotManager."""

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
    def blobs(self):
        """Create in-memory blob store."""
        return InMemoryBlobStore()

    @pytest.fixture
    def snapshots(self, store):
        """Create schema-only snapshot manager."""
        return SnapshotManager(store)

    @pytest.fixture
    def data_snapshots(self, store, blobs):
        """Create snapshot manager with a data payload store."""
        return SnapshotManager(store, blob_store=blobs, blob_timeout_seconds=1.0)

    @pytest.fixture
    def schema(self, store):
        """Create schema manager without pre-change snapshots."""
        return SchemaManager(store)

    # ------------------------------------------------------------------
    # Capture
    # ------------------------------------------------------------------

    @pytest.mark.asyncio
    async def test_capture_excludes_bookkeeping_tables(self, store, snapshots, schema):
        """Snapshot tables never appear in captured schemas."""
        await store.initialize()
        await schema.create_table("notes", [{"name": "title", "type": "TEXT"}])
        await store.execute("CREATE INDEX idx_notes_title ON notes (title)")

        schemas = await snapshots.get_all_table_schemas()

        assert [s.name for s in schemas] == ["notes"]
        assert [i.name for i in schemas[0].indexes] == ["idx_notes_title"]
        assert "title" in schemas[0].column_names

    @pytest.mark.asyncio
    async def test_has_schema_changed(self, store, snapshots, schema):
        """Change detection compares against the latest snapshot."""
        await store.initialize()

        assert await snapshots.has_schema_changed() is True

        await snapshots.create_snapshot()
        assert await snapshots.has_schema_changed() is False

        await schema.create_table("notes", [{"name": "title", "type": "TEXT"}])
        assert await snapshots.has_schema_changed() is True

    @pytest.mark.asyncio
    async def test_snapshot_on_unchanged_schema_still_versions(self, store, snapshots):
        """Every call allocates a version, even without changes."""
        await store.initialize()

        first = await snapshots.get_snapshot(await snapshots.create_snapshot())
        second = await snapshots.get_snapshot(await snapshots.create_snapshot())

        assert (first.version, second.version) == (1, 2)
        assert first.schema_hash == second.schema_hash

    @pytest.mark.asyncio
    async def test_create_snapshot_defaults(self, store, snapshots, schema):
        """Defaults: generated name, manual type, schema only."""
        await store.initialize()
        await schema.create_table("notes", [{"name": "title", "type": "TEXT"}])

        snapshot_id = await snapshots.create_snapshot(description="first")
        snapshot = await snapshots.get_snapshot(snapshot_id)

        assert snapshot.name == "Snapshot v1"
        assert snapshot.description == "first"
        assert snapshot.snapshot_type == SnapshotType.MANUAL
        assert snapshot.has_data_backup is False
        assert snapshot.created_at is not None
        assert "CREATE TABLE" in snapshot.full_schema
        assert [t.name for t in snapshot.tables] == ["notes"]
        assert "full_schema" not in snapshot.to_dict()

    @pytest.mark.asyncio
    async def test_create_snapshot_options(self, store, snapshots):
        """Name, actor, type and checkpoint are stored as given."""
        await store.initialize()

        snapshot_id = await snapshots.create_snapshot(
            name="before-migration",
            created_by="ops",
            snapshot_type="pre_change",
            external_checkpoint="bookmark-42",
        )
        snapshot = await snapshots.get_snapshot(snapshot_id)

        assert snapshot.name == "before-migration"
        assert snapshot.created_by == "ops"
        assert snapshot.snapshot_type == SnapshotType.PRE_CHANGE
        assert snapshot.external_checkpoint == "bookmark-42"

    @pytest.mark.asyncio
    async def test_get_missing_snapshot(self, store, snapshots):
        """Unknown ids return None."""
        await store.initialize()

        assert await snapshots.get_snapshot("missing") is None

    # ------------------------------------------------------------------
    # Versions
    # ------------------------------------------------------------------

    @pytest.mark.asyncio
    async def test_versions_are_sequential(self, store, snapshots):
        """Versions start at 1 and increase by one."""
        await store.initialize()

        ids = [await snapshots.create_snapshot() for _ in range(4)]
        versions = [(await snapshots.get_snapshot(i)).version for i in ids]

        assert versions == [1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_get_next_version(self, store, snapshots):
        """The counter is shared with snapshot creation."""
        await store.initialize()

        assert await snapshots.get_next_version() == 1
        assert await snapshots.get_next_version() == 2

    def test_concurrent_snapshots_have_distinct_versions(self, data_dir):
        """Concurrent writers on separate connections get 1..N without gaps."""
        store = SqliteStore(os.path.join(data_dir, "app.db"), wal_mode=True)
        asyncio.run(store.initialize())
        snapshots = SnapshotManager(store)

        def create(_):
            return asyncio.run(snapshots.create_snapshot())

        with ThreadPoolExecutor(max_workers=8) as pool:
            ids = list(pool.map(create, range(16)))

        page = asyncio.run(snapshots.get_snapshots(limit=100))

        assert len(set(ids)) == 16
        assert sorted(s.version for s in page.snapshots) == list(range(1, 17))

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------

    @pytest.mark.asyncio
    async def test_pagination(self, store, snapshots):
        """Pages are ordered by version descending with a total count."""
        await store.initialize()
        for _ in range(5):
            await snapshots.create_snapshot()

        first = await snapshots.get_snapshots(limit=2)
        last = await snapshots.get_snapshots(limit=2, offset=4)

        assert first.total == 5
        assert [s.version for s in first.snapshots] == [5, 4]
        assert [s.version for s in last.snapshots] == [1]

    @pytest.mark.asyncio
    async def test_pagination_rejects_negative(self, store, snapshots):
        """Negative limit or offset is an invalid request."""
        await store.initialize()

        with pytest.raises(InvalidRequestError):
            await snapshots.get_snapshots(limit=-1)
        with pytest.raises(InvalidRequestError):
            await snapshots.get_snapshots(offset=-1)

    # ------------------------------------------------------------------
    # Blob store
    # ------------------------------------------------------------------

    @pytest.mark.asyncio
    async def test_data_backup_written(self, store, data_snapshots, blobs, schema):
        """Both payloads are written and flagged on the row."""
        await store.initialize()
        await schema.create_table("notes", [{"name": "title", "type": "TEXT"}])
        await store.execute("INSERT INTO notes (title) VALUES ('hello')")

        snapshot_id = await data_snapshots.create_snapshot()
        snapshot = await data_snapshots.get_snapshot(snapshot_id)

        assert snapshot.has_data_backup is True
        assert blobs.keys() == sorted([data_key(snapshot_id), schema_key(snapshot_id)])
        data = decode_data_dump(await blobs.get(data_key(snapshot_id)))
        assert [row["title"] for row in data["notes"]] == ["hello"]

    @pytest.mark.asyncio
    async def test_write_failure_degrades(self, store, data_snapshots, blobs, caplog):
        """An unavailable blob store yields a schema-only snapshot and a warning."""
        await store.initialize()
        blobs.fail_writes = True

        with caplog.at_level(logging.WARNING, logger="baas.schemavault.snapshot.manager"):
            snapshot_id = await data_snapshots.create_snapshot()

        snapshot = await data_snapshots.get_snapshot(snapshot_id)
        assert snapshot.has_data_backup is False
        assert snapshot.version == 1
        assert any("continuing schema-only" in r.getMessage() for r in caplog.records)

    @pytest.mark.asyncio
    async def test_write_timeout_degrades(self, store):
        """A blob store slower than the timeout yields a schema-only snapshot."""
        await store.initialize()
        snapshots = SnapshotManager(store, blob_store=SlowBlobStore(), blob_timeout_seconds=0.05)

        snapshot_id = await snapshots.create_snapshot()

        assert (await snapshots.get_snapshot(snapshot_id)).has_data_backup is False

    # ------------------------------------------------------------------
    # Restore
    # ------------------------------------------------------------------

    @pytest.mark.asyncio
    async def test_restore_round_trip(self, store, data_snapshots, schema):
        """Dropped columns and their data come back."""
        await store.initialize()
        await schema.create_table(
            "notes", [{"name": "title", "type": "TEXT"}, {"name": "body", "type": "TEXT"}]
        )
        await store.execute("INSERT INTO notes (title, body) VALUES ('a', 'first'), ('b', 'second')")
        snapshot_id = await data_snapshots.create_snapshot(name="with-body")

        await schema.drop_column("notes", "body")
        await store.execute("INSERT INTO notes (title) VALUES ('c')")

        result = await data_snapshots.restore_snapshot(snapshot_id)

        assert result.restored_tables == ["notes"]
        assert result.data_restored is True
        assert result.rows_restored == {"notes": 2}
        assert result.is_partial is False
        with store.connection() as conn:
            rows = conn.execute("SELECT title, body FROM notes ORDER BY title").fetchall()
        assert [(r["title"], r["body"]) for r in rows] == [("a", "first"), ("b", "second")]

        restored = await data_snapshots.get_snapshot(result.new_snapshot_id)
        assert restored.version == 2
        assert restored.snapshot_type == SnapshotType.AUTO
        assert restored.name == "Restored from v1"
        assert restored.description == "Restored from snapshot: with-body"

    @pytest.mark.asyncio
    async def test_restore_schema_only(self, store, snapshots, schema):
        """Without a payload the tables come back empty."""
        await store.initialize()
        await schema.create_table("notes", [{"name": "title", "type": "TEXT"}])
        snapshot_id = await snapshots.create_snapshot()
        await store.execute("INSERT INTO notes (title) VALUES ('later')")

        result = await snapshots.restore_snapshot(snapshot_id)

        assert result.data_restored is False
        assert count_rows(store, "notes") == 0

    @pytest.mark.asyncio
    async def test_restore_foreign_key_tables(self, store, data_snapshots, schema):
        """Referencing tables restore regardless of order."""
        await store.initialize()
        await schema.create_table("authors", [{"name": "name", "type": "TEXT"}])
        await schema.create_table(
            "books",
            [{"name": "author_id", "type": "TEXT", "foreign_key": {"table": "authors", "column": "id"}}],
        )
        await store.execute("INSERT INTO authors (id, name) VALUES ('a1', 'Ann')")
        await store.execute("INSERT INTO books (author_id) VALUES ('a1')")
        snapshot_id = await data_snapshots.create_snapshot()

        await schema.drop_table("books")
        await schema.drop_table("authors")

        result = await data_snapshots.restore_snapshot(snapshot_id)

        assert sorted(result.restored_tables) == ["authors", "books"]
        assert count_rows(store, "books") == 1
        assert [fk.ref_table for fk in await schema.get_foreign_keys("books")] == ["authors"]

    @pytest.mark.asyncio
    async def test_restore_removes_later_tables(self, store, snapshots, schema):
        """Tables created after the snapshot are dropped."""
        await store.initialize()
        snapshot_id = await snapshots.create_snapshot()
        await schema.create_table("extra", [{"name": "x", "type": "TEXT"}])

        await snapshots.restore_snapshot(snapshot_id)

        assert "extra" not in table_names(store)

    @pytest.mark.asyncio
    async def test_restore_leaves_system_tables(self, store, data_snapshots):
        """System tables are neither dropped nor reinserted."""
        await store.initialize()
        await store.execute("CREATE TABLE sessions (token TEXT)")
        await store.execute("INSERT INTO sessions (token) VALUES ('t1')")
        snapshot_id = await data_snapshots.create_snapshot()
        await store.execute("INSERT INTO sessions (token) VALUES ('t2')")

        result = await data_snapshots.restore_snapshot(snapshot_id)

        assert "sessions" not in result.restored_tables
        assert count_rows(store, "sessions") == 2
        assert (await data_snapshots.get_snapshots()).total == 2

    @pytest.mark.asyncio
    async def test_restore_leaves_system_tables_in_any_case(self, store, data_snapshots):
        """A reserved table stored under a differently cased name is left alone."""
        await store.initialize()
        snapshot_id = await data_snapshots.create_snapshot()
        await store.execute("CREATE TABLE Admins (email TEXT)")
        await store.execute("INSERT INTO Admins (email) VALUES ('root@example.com')")

        result = await data_snapshots.restore_snapshot(snapshot_id)

        assert "Admins" in table_names(store)
        assert "Admins" not in result.restored_tables
        assert count_rows(store, "admins") == 1

    @pytest.mark.asyncio
    async def test_restore_recreates_indexes(self, store, snapshots, schema):
        """User indexes are recreated from the snapshot."""
        await store.initialize()
        await schema.create_table("notes", [{"name": "title", "type": "TEXT"}])
        await store.execute("CREATE INDEX idx_notes_title ON notes (title)")
        snapshot_id = await snapshots.create_snapshot()
        await store.execute("DROP INDEX idx_notes_title")

        await snapshots.restore_snapshot(snapshot_id)

        with store.connection() as conn:
            assert [i.name for i in store.table_indexes(conn, "notes")] == ["idx_notes_title"]

    @pytest.mark.asyncio
    async def test_restore_binary_values(self, store, data_snapshots, schema):
        """BLOB columns round-trip through the payload."""
        await store.initialize()
        await schema.create_table("files", [{"name": "content", "type": "BLOB"}])
        await store.execute("INSERT INTO files (content) VALUES (?)", (b"\x00\x01\xfe",))
        snapshot_id = await data_snapshots.create_snapshot()
        await store.execute("DELETE FROM files")

        await data_snapshots.restore_snapshot(snapshot_id)

        with store.connection() as conn:
            assert conn.execute("SELECT content FROM files").fetchone()[0] == b"\x00\x01\xfe"

    @pytest.mark.asyncio
    async def test_restore_missing_snapshot(self, store, snapshots):
        """Unknown ids raise NotFoundError."""
        await store.initialize()

        with pytest.raises(NotFoundError):
            await snapshots.restore_snapshot("missing")

    @pytest.mark.asyncio
    async def test_restore_corrupted_metadata(self, store, snapshots, schema):
        """Unreadable table metadata aborts before anything is dropped."""
        await store.initialize()
        await schema.create_table("notes", [{"name": "title", "type": "TEXT"}])
        snapshot_id = await snapshots.create_snapshot()
        await store.execute(
            "UPDATE schema_snapshots SET tables_json = ? WHERE id = ?", ("not json", snapshot_id)
        )

        with pytest.raises(RestoreFailedError):
            await snapshots.restore_snapshot(snapshot_id)

        assert "notes" in table_names(store)
        assert (await snapshots.get_snapshots()).total == 1

    @pytest.mark.asyncio
    async def test_restore_partial_data_failure(self, store, data_snapshots, blobs, schema):
        """A table whose rows cannot be reinserted is reported, others restore."""
        await store.initialize()
        await schema.create_table("notes", [{"name": "title", "type": "TEXT"}])
        await schema.create_table("tags", [{"name": "label", "type": "TEXT"}])
        await store.execute("INSERT INTO notes (title) VALUES ('a')")
        await store.execute("INSERT INTO tags (label) VALUES ('x')")
        snapshot_id = await data_snapshots.create_snapshot()

        payload = decode_data_dump(await blobs.get(data_key(snapshot_id)))
        payload["notes"] = [{"no_such_column": 1}]
        await blobs.put(data_key(snapshot_id), encode_data_dump(payload))

        result = await data_snapshots.restore_snapshot(snapshot_id)

        assert result.is_partial is True
        assert list(result.failed_tables) == ["notes"]
        assert result.rows_restored == {"tags": 1}
        assert count_rows(store, "notes") == 0
        assert count_rows(store, "tags") == 1

    @pytest.mark.asyncio
    async def test_restore_with_unreadable_payload(self, store, data_snapshots, blobs, schema):
        """A failing blob read falls back to a schema-only restore."""
        await store.initialize()
        await schema.create_table("notes", [{"name": "title", "type": "TEXT"}])
        await store.execute("INSERT INTO notes (title) VALUES ('a')")
        snapshot_id = await data_snapshots.create_snapshot()
        blobs.fail_reads = True

        result = await data_snapshots.restore_snapshot(snapshot_id)

        assert result.data_restored is False
        assert result.restored_tables == ["notes"]
        assert count_rows(store, "notes") == 0

    # ------------------------------------------------------------------
    # Comparison
    # ------------------------------------------------------------------

    @pytest.mark.asyncio
    async def test_compare_snapshots(self, store, snapshots, schema):
        """Added, removed and modified tables are reported."""
        await store.initialize()
        await schema.create_table("notes", [{"name": "title", "type": "TEXT"}])
        await schema.create_table("old_table", [{"name": "x", "type": "TEXT"}])
        old_id = await snapshots.create_snapshot()

        await schema.add_column("notes", {"name": "body", "type": "TEXT"})
        await schema.drop_table("old_table")
        await schema.create_table("tags", [{"name": "label", "type": "TEXT"}])
        new_id = await snapshots.create_snapshot()

        comparison = await snapshots.compare_snapshots(old_id, new_id)

        assert comparison.added == ["tags"]
        assert comparison.removed == ["old_table"]
        assert comparison.modified == ["notes"]
        assert [c.table for c in comparison.changes] == ["old_table", "notes", "tags"]
        assert comparison.changes[1].message == "columns added: body"
        assert comparison.to_dict()["old"] == {"id": old_id, "version": 1}

    @pytest.mark.asyncio
    async def test_compare_missing_snapshot(self, store, snapshots):
        """Comparing against an unknown id raises NotFoundError."""
        await store.initialize()
        snapshot_id = await snapshots.create_snapshot()

        with pytest.raises(NotFoundError):
            await snapshots.compare_snapshots(snapshot_id, "missing")

    # ------------------------------------------------------------------
    # Deletion
    # ------------------------------------------------------------------

    @pytest.mark.asyncio
    async def test_delete_snapshot(self, store, snapshots):
        """Deleting removes the row; deleting again raises NotFoundError."""
        await store.initialize()
        snapshot_id = await snapshots.create_snapshot()

        await snapshots.delete_snapshot(snapshot_id)

        assert await snapshots.get_snapshot(snapshot_id) is None
        with pytest.raises(NotFoundError):
            await snapshots.delete_snapshot(snapshot_id)

    @pytest.mark.asyncio
    async def test_prune_keeps_newest(self, store, data_snapshots, blobs):
        """Pruning keeps the newest rows and, by default, every payload."""
        await store.initialize()
        for _ in range(5):
            await data_snapshots.create_snapshot()

        deleted = await data_snapshots.prune_snapshots(keep_count=2)

        page = await data_snapshots.get_snapshots()
        assert deleted == 3
        assert [s.version for s in page.snapshots] == [5, 4]
        assert len(blobs.keys()) == 10

    @pytest.mark.asyncio
    async def test_prune_with_payloads(self, store, data_snapshots, blobs):
        """delete_payloads removes pruned payloads too."""
        await store.initialize()
        ids = [await data_snapshots.create_snapshot() for _ in range(3)]

        await data_snapshots.prune_snapshots(keep_count=1, delete_payloads=True)

        assert blobs.keys() == sorted([data_key(ids[-1]), schema_key(ids[-1])])

    @pytest.mark.asyncio
    async def test_prune_validation(self, store, snapshots):
        """Negative keep counts are rejected; zero deletes everything."""
        await store.initialize()
        await snapshots.create_snapshot()

        with pytest.raises(InvalidRequestError):
            await snapshots.prune_snapshots(keep_count=-1)

        assert await snapshots.prune_snapshots(keep_count=0) == 1
        assert (await snapshots.get_snapshots()).total == 0

    @pytest.mark.asyncio
    async def test_versions_continue_after_prune(self, store, snapshots):
        """Pruning never resets the version counter."""
        await store.initialize()
        await snapshots.create_snapshot()
        await snapshots.prune_snapshots(keep_count=0)

        snapshot = await snapshots.get_snapshot(await snapshots.create_snapshot())

        assert snapshot.version == 2

    @pytest.mark.asyncio
    async def test_delete_snapshot_payloads(self, store, data_snapshots, snapshots, blobs):
        """Payload deletion counts deleted keys; no blob store means zero."""
        await store.initialize()
        snapshot_id = await data_snapshots.create_snapshot()

        assert await data_snapshots.delete_snapshot_payloads(snapshot_id) == 2
        assert await data_snapshots.delete_snapshot_payloads(snapshot_id) == 0
        assert await snapshots.delete_snapshot_payloads(snapshot_id) == 0
        assert blobs.keys() == []
