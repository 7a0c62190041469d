"""
Snapshot manager for SchemaVault.

A snapshot is a versioned record of the full database schema, optionally
paired with a data dump in the blob store:

    schema_snapshots row                  authoritative metadata
    <prefix>/<id>/data.json               per-table row dumps (optional)
    <prefix>/<id>/schema.json             serialized TableSchema list (optional)

Lifecycle:
    created -> (listed | fetched | restored-from)* -> pruned

Invariants:
    - Versions are allocated in the same write transaction that inserts the
      snapshot row, so versions are strictly increasing with no gaps
    - create_snapshot never dedupes: every call allocates a new version
    - Blob failures degrade the snapshot to schema-only (has_data_backup=False),
      they never fail the snapshot itself
    - Restore rebuilds structure atomically; data reinsertion is per table

How to change safely:
    - Keep the data.json layout readable by older restores
    - Never hold a SQLite transaction open across a blob-store await
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import json
import logging
import sqlite3
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Dict, List, Optional, Sequence, TypeVar

from ..errors import (
    InvalidRequestError,
    NotFoundError,
    RestoreFailedError,
    StorageDegradedError,
)
from ..schema.identifiers import SNAPSHOT_TABLES, SYSTEM_TABLES, escape_identifier, is_system_table
from ..schema.types import TableSchema
from ..store.sqlite_store import SqliteStore
from .blob_store import BlobStore, data_key, schema_key
from .compare import SnapshotComparison, compare_table_schemas

logger = logging.getLogger(__name__)

T = TypeVar("T")

SCHEMA_HASH_SEPARATOR = "|"

# JSON marker for BLOB values in data.json
_BYTES_MARKER = "$base64"

_SNAPSHOT_COLUMNS = (
    "id, version, name, description, full_schema, tables_json, schema_hash, "
    "created_by, snapshot_type, external_checkpoint, has_data_backup, created_at"
)


class SnapshotType(str, Enum):
    """Why a snapshot was taken."""

    MANUAL = "manual"
    AUTO = "auto"
    PRE_CHANGE = "pre_change"


@dataclass(frozen=True)
class SchemaSnapshot:
    """A persisted snapshot row.

    Attributes:
        id: Snapshot identifier (UUID)
        version: Monotonic version number
        name: Display name
        description: Optional description
        full_schema: All CREATE TABLE statements joined with ";\\n"
        tables_json: Serialized TableSchema list
        schema_hash: SHA-256 hex digest of the schema
        created_at: Creation timestamp (store clock)
        created_by: Optional actor
        snapshot_type: manual, auto or pre_change
        external_checkpoint: Optional reference to an external backup
        has_data_backup: Whether the data payload was written to the blob store
    """

    id: str
    version: int
    name: str
    description: Optional[str]
    full_schema: str
    tables_json: str
    schema_hash: str
    created_at: Optional[str]
    created_by: Optional[str] = None
    snapshot_type: SnapshotType = SnapshotType.MANUAL
    external_checkpoint: Optional[str] = None
    has_data_backup: bool = False

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> SchemaSnapshot:
        return cls(
            id=row["id"],
            version=row["version"],
            name=row["name"],
            description=row["description"],
            full_schema=row["full_schema"],
            tables_json=row["tables_json"],
            schema_hash=row["schema_hash"],
            created_at=row["created_at"],
            created_by=row["created_by"],
            snapshot_type=SnapshotType(row["snapshot_type"]),
            external_checkpoint=row["external_checkpoint"],
            has_data_backup=bool(row["has_data_backup"]),
        )

    @property
    def tables(self) -> List[TableSchema]:
        """Parse tables_json.

        Raises:
            ValueError: If the stored JSON is malformed
        """
        try:
            return [TableSchema.from_dict(t) for t in json.loads(self.tables_json)]
        except (KeyError, TypeError) as e:
            raise ValueError(f"Malformed tables_json: {e}") from e

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "version": self.version,
            "name": self.name,
            "description": self.description,
            "schema_hash": self.schema_hash,
            "created_at": self.created_at,
            "created_by": self.created_by,
            "snapshot_type": self.snapshot_type.value,
            "external_checkpoint": self.external_checkpoint,
            "has_data_backup": self.has_data_backup,
        }


@dataclass
class SnapshotPage:
    """A page of snapshots ordered by version descending."""

    snapshots: List[SchemaSnapshot]
    total: int


@dataclass
class RestoreResult:
    """Outcome of restore_snapshot.

    Attributes:
        snapshot_id: Snapshot that was restored
        version: Its version
        restored_tables: Tables recreated from the snapshot
        data_restored: Whether a data payload was available and applied
        rows_restored: Rows reinserted per table
        failed_tables: Tables whose data reinsertion failed, with the reason
        new_snapshot_id: The auto snapshot recording the restore
    """

    snapshot_id: str
    version: int
    restored_tables: List[str] = field(default_factory=list)
    data_restored: bool = False
    rows_restored: Dict[str, int] = field(default_factory=dict)
    failed_tables: Dict[str, str] = field(default_factory=dict)
    new_snapshot_id: Optional[str] = None

    @property
    def is_partial(self) -> bool:
        return bool(self.failed_tables)


def calculate_schema_hash(schemas: Sequence[TableSchema]) -> str:
    """Hash a schema set independently of enumeration order.

    Each table's DDL text is sorted lexicographically, joined with "|" and
    digested with SHA-256.
    """
    canonical = SCHEMA_HASH_SEPARATOR.join(sorted(s.sql for s in schemas))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def render_full_schema(schemas: Sequence[TableSchema]) -> str:
    return ";\n".join(s.sql for s in schemas)


def _encode_value(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return {_BYTES_MARKER: base64.b64encode(bytes(value)).decode("ascii")}
    return value


def _decode_value(value: Any) -> Any:
    if isinstance(value, dict) and set(value) == {_BYTES_MARKER}:
        return base64.b64decode(value[_BYTES_MARKER])
    return value


def encode_data_dump(data: Dict[str, List[Dict[str, Any]]]) -> str:
    """Serialize per-table rows to the data.json payload."""
    encoded = {
        table: [{col: _encode_value(v) for col, v in row.items()} for row in rows]
        for table, rows in data.items()
    }
    return json.dumps(encoded)


def decode_data_dump(text: str) -> Dict[str, List[Dict[str, Any]]]:
    """Parse a data.json payload."""
    raw = json.loads(text)
    if not isinstance(raw, dict):
        raise ValueError("data.json must hold an object keyed by table name")
    return {
        table: [{col: _decode_value(v) for col, v in row.items()} for row in rows]
        for table, rows in raw.items()
    }


class SnapshotManager:
    """Captures, lists, restores and prunes schema snapshots.

    Example:
        >>> snapshots = SnapshotManager(store, blob_store=InMemoryBlobStore())
        >>> snapshot_id = await snapshots.create_snapshot(name="before-migration")
        >>> result = await snapshots.restore_snapshot(snapshot_id)
    """

    def __init__(
        self,
        store: SqliteStore,
        blob_store: Optional[BlobStore] = None,
        blob_timeout_seconds: float = 30.0,
    ) -> None:
        """Initialize the snapshot manager.

        Args:
            store: Application SQLite store
            blob_store: Optional payload store (None means schema-only snapshots)
            blob_timeout_seconds: Upper bound for each blob-store call
        """
        self.store = store
        self.blob_store = blob_store
        self.blob_timeout_seconds = blob_timeout_seconds

    # ------------------------------------------------------------------
    # Capture
    # ------------------------------------------------------------------

    def _capture_schemas(self, conn: sqlite3.Connection) -> List[TableSchema]:
        schemas = []
        for row in self.store.list_tables(conn, exclude=SNAPSHOT_TABLES):
            name = row["name"]
            schemas.append(
                TableSchema(
                    name=name,
                    sql=row["sql"],
                    columns=tuple(self.store.table_columns(conn, name)),
                    foreign_keys=tuple(self.store.foreign_keys(conn, name)),
                    indexes=tuple(self.store.table_indexes(conn, name)),
                )
            )
        return schemas

    def _capture_data(
        self,
        conn: sqlite3.Connection,
        schemas: Sequence[TableSchema],
    ) -> Dict[str, List[Dict[str, Any]]]:
        return {
            schema.name: self.store.fetch_rows(conn, schema.name)
            for schema in schemas
            if not is_system_table(schema.name)
        }

    async def get_all_table_schemas(self) -> List[TableSchema]:
        """Capture every table except internal and bookkeeping tables, by name."""
        with self.store.transaction(mode="DEFERRED") as conn:
            return self._capture_schemas(conn)

    def calculate_schema_hash(self, schemas: Sequence[TableSchema]) -> str:
        return calculate_schema_hash(schemas)

    async def has_schema_changed(self) -> bool:
        """Compare the live schema hash with the latest snapshot.

        Advisory only. Returns True when no snapshot exists yet.
        """
        with self.store.transaction(mode="DEFERRED") as conn:
            current_hash = calculate_schema_hash(self._capture_schemas(conn))
            row = conn.execute(
                "SELECT schema_hash FROM schema_snapshots ORDER BY version DESC LIMIT 1"
            ).fetchone()

        if row is None:
            return True
        return row["schema_hash"] != current_hash

    # ------------------------------------------------------------------
    # Versions
    # ------------------------------------------------------------------

    def _allocate_version(self, conn: sqlite3.Connection) -> int:
        """Increment and return the version counter.

        Must run inside a write transaction.
        """
        conn.execute(
            "INSERT OR IGNORE INTO schema_snapshot_counter (id, current_version) VALUES (1, 0)"
        )
        conn.execute(
            "UPDATE schema_snapshot_counter SET current_version = current_version + 1 WHERE id = 1"
        )
        row = conn.execute(
            "SELECT current_version FROM schema_snapshot_counter WHERE id = 1"
        ).fetchone()
        return row["current_version"]

    async def get_next_version(self) -> int:
        """Atomically allocate the next version number (first call returns 1)."""
        with self.store.transaction() as conn:
            return self._allocate_version(conn)

    # ------------------------------------------------------------------
    # Blob helpers
    # ------------------------------------------------------------------

    async def _blob_call(self, operation: Awaitable[T], key: str, action: str) -> T:
        """Run one blob-store call bounded by the configured timeout.

        Raises:
            StorageDegradedError: If the call fails or times out
        """
        try:
            return await asyncio.wait_for(operation, timeout=self.blob_timeout_seconds)
        except asyncio.TimeoutError as e:
            raise StorageDegradedError(
                f"Blob {action} timed out after {self.blob_timeout_seconds}s", key=key
            ) from e
        except Exception as e:
            raise StorageDegradedError(f"Blob {action} failed: {e}", key=key) from e

    async def _write_payloads(
        self,
        snapshot_id: str,
        schemas: Sequence[TableSchema],
        data: Dict[str, List[Dict[str, Any]]],
    ) -> bool:
        """Best-effort write of data.json and schema.json.

        Returns:
            True if both payloads were written
        """
        if self.blob_store is None:
            return False

        prefix = self.blob_store.prefix
        payloads = [
            (data_key(snapshot_id, prefix), encode_data_dump(data)),
            (schema_key(snapshot_id, prefix), json.dumps([s.to_dict() for s in schemas])),
        ]

        try:
            for key, text in payloads:
                await self._blob_call(self.blob_store.put(key, text), key, "write")
        except StorageDegradedError as e:
            logger.warning(
                "Snapshot payload write failed, continuing schema-only",
                extra={"snapshot_id": snapshot_id, "key": e.key, "error": e.message},
            )
            return False

        return True

    async def _read_data(self, snapshot_id: str) -> Optional[Dict[str, List[Dict[str, Any]]]]:
        """Best-effort read of data.json. None if unavailable."""
        if self.blob_store is None:
            return None

        key = data_key(snapshot_id, self.blob_store.prefix)
        try:
            text = await self._blob_call(self.blob_store.get(key), key, "read")
        except StorageDegradedError as e:
            logger.warning(
                "Snapshot data read failed, restoring schema only",
                extra={"snapshot_id": snapshot_id, "key": key, "error": e.message},
            )
            return None

        if text is None:
            return None

        try:
            return decode_data_dump(text)
        except (ValueError, AttributeError, TypeError) as e:
            logger.warning(
                "Snapshot data payload is malformed, restoring schema only",
                extra={"snapshot_id": snapshot_id, "key": key, "error": str(e)},
            )
            return None

    # ------------------------------------------------------------------
    # Create / read
    # ------------------------------------------------------------------

    async def create_snapshot(
        self,
        name: Optional[str] = None,
        description: Optional[str] = None,
        created_by: Optional[str] = None,
        snapshot_type: SnapshotType | str = SnapshotType.MANUAL,
        external_checkpoint: Optional[str] = None,
    ) -> str:
        """Capture the current schema (and data, if a blob store is set).

        Args:
            name: Display name (defaults to "Snapshot v<version>")
            description: Optional description
            created_by: Optional actor
            snapshot_type: manual, auto or pre_change
            external_checkpoint: Optional reference to an external backup

        Returns:
            The new snapshot id
        """
        snapshot_type = SnapshotType(snapshot_type)
        snapshot_id = str(uuid.uuid4())

        with self.store.transaction(mode="DEFERRED") as conn:
            schemas = self._capture_schemas(conn)
            data = self._capture_data(conn, schemas) if self.blob_store is not None else {}

        schema_hash = calculate_schema_hash(schemas)
        full_schema = render_full_schema(schemas)
        tables_json = json.dumps([s.to_dict() for s in schemas])

        has_data_backup = await self._write_payloads(snapshot_id, schemas, data)

        with self.store.transaction() as conn:
            version = self._allocate_version(conn)
            conn.execute(
                """
                INSERT INTO schema_snapshots (
                    id, version, name, description, full_schema, tables_json,
                    schema_hash, created_by, snapshot_type, external_checkpoint,
                    has_data_backup
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    snapshot_id,
                    version,
                    name or f"Snapshot v{version}",
                    description,
                    full_schema,
                    tables_json,
                    schema_hash,
                    created_by,
                    snapshot_type.value,
                    external_checkpoint,
                    1 if has_data_backup else 0,
                ),
            )

        logger.info(
            "Snapshot created",
            extra={
                "snapshot_id": snapshot_id,
                "version": version,
                "snapshot_type": snapshot_type.value,
                "tables": len(schemas),
                "has_data_backup": has_data_backup,
            },
        )
        return snapshot_id

    async def get_snapshots(self, limit: int = 20, offset: int = 0) -> SnapshotPage:
        """List snapshots by version descending, with the total count."""
        if limit < 0 or offset < 0:
            raise InvalidRequestError("limit and offset must be non-negative", limit=limit, offset=offset)

        with self.store.connection() as conn:
            rows = conn.execute(
                f"SELECT {_SNAPSHOT_COLUMNS} FROM schema_snapshots "
                "ORDER BY version DESC LIMIT ? OFFSET ?",
                (limit, offset),
            ).fetchall()
            total = conn.execute("SELECT COUNT(*) AS n FROM schema_snapshots").fetchone()["n"]

        return SnapshotPage(snapshots=[SchemaSnapshot.from_row(r) for r in rows], total=total)

    async def get_snapshot(self, snapshot_id: str) -> Optional[SchemaSnapshot]:
        with self.store.connection() as conn:
            row = conn.execute(
                f"SELECT {_SNAPSHOT_COLUMNS} FROM schema_snapshots WHERE id = ?",
                (snapshot_id,),
            ).fetchone()
        return SchemaSnapshot.from_row(row) if row else None

    async def _require_snapshot(self, snapshot_id: str) -> SchemaSnapshot:
        snapshot = await self.get_snapshot(snapshot_id)
        if snapshot is None:
            raise NotFoundError("snapshot", snapshot_id)
        return snapshot

    async def compare_snapshots(self, old_id: str, new_id: str) -> SnapshotComparison:
        """Report tables added, removed and modified between two snapshots.

        Raises:
            NotFoundError: If either snapshot does not exist
        """
        old = await self._require_snapshot(old_id)
        new = await self._require_snapshot(new_id)
        return SnapshotComparison(
            old_id=old.id,
            old_version=old.version,
            new_id=new.id,
            new_version=new.version,
            changes=compare_table_schemas(old.tables, new.tables),
        )

    # ------------------------------------------------------------------
    # Restore
    # ------------------------------------------------------------------

    def _rebuild_structure(self, snapshot_id: str, schemas: Sequence[TableSchema]) -> List[str]:
        """Drop all user tables and recreate them from stored DDL, atomically."""
        restored = []
        try:
            with self.store.transaction(foreign_keys=False) as conn:
                for row in self.store.list_tables(conn, exclude=SYSTEM_TABLES):
                    conn.execute(f"DROP TABLE IF EXISTS {escape_identifier(row['name'])}")

                for schema in schemas:
                    conn.execute(schema.sql)
                    restored.append(schema.name)

                for schema in schemas:
                    for index in schema.indexes:
                        conn.execute(index.sql)
        except sqlite3.Error as e:
            raise RestoreFailedError(snapshot_id, f"could not rebuild tables: {e}") from e
        return restored

    def _reinsert_rows(self, table_name: str, rows: List[Dict[str, Any]]) -> int:
        """Insert dumped rows into one table in its own transaction.

        The column set is taken from the first row.
        """
        columns = list(rows[0].keys())
        column_list = ", ".join(escape_identifier(c) for c in columns)
        placeholders = ", ".join("?" for _ in columns)
        sql = f"INSERT INTO {escape_identifier(table_name)} ({column_list}) VALUES ({placeholders})"

        with self.store.transaction(foreign_keys=False) as conn:
            conn.executemany(sql, [tuple(row.get(c) for c in columns) for row in rows])
        return len(rows)

    async def restore_snapshot(self, snapshot_id: str) -> RestoreResult:
        """Restore the schema (and data, when available) of a snapshot.

        Steps:
            1. Load metadata and parse tables_json (fatal on failure)
            2. Best-effort fetch of the data payload
            3. Drop and recreate all user tables in one transaction
            4. Reinsert rows per table; failures are isolated and reported
            5. Record an auto snapshot describing the restore

        Raises:
            NotFoundError: If the snapshot does not exist
            RestoreFailedError: If metadata is unreadable or tables cannot be rebuilt
        """
        snapshot = await self._require_snapshot(snapshot_id)

        try:
            schemas = [t for t in snapshot.tables if not is_system_table(t.name)]
        except ValueError as e:
            raise RestoreFailedError(snapshot_id, str(e)) from e

        data = await self._read_data(snapshot_id)

        result = RestoreResult(snapshot_id=snapshot_id, version=snapshot.version)
        result.restored_tables = self._rebuild_structure(snapshot_id, schemas)

        if data is not None:
            result.data_restored = True
            for table_name in result.restored_tables:
                rows = data.get(table_name)
                if not rows:
                    continue
                try:
                    result.rows_restored[table_name] = self._reinsert_rows(table_name, rows)
                except (sqlite3.Error, AttributeError, TypeError) as e:
                    result.failed_tables[table_name] = str(e)
                    logger.error(
                        "Failed to restore table data",
                        extra={"snapshot_id": snapshot_id, "table": table_name, "error": str(e)},
                    )

        result.new_snapshot_id = await self.create_snapshot(
            name=f"Restored from v{snapshot.version}",
            description=f"Restored from snapshot: {snapshot.name}",
            snapshot_type=SnapshotType.AUTO,
        )

        logger.info(
            "Snapshot restored",
            extra={
                "snapshot_id": snapshot_id,
                "version": snapshot.version,
                "tables": len(result.restored_tables),
                "data_restored": result.data_restored,
                "failed_tables": sorted(result.failed_tables),
            },
        )
        return result

    # ------------------------------------------------------------------
    # Deletion
    # ------------------------------------------------------------------

    async def delete_snapshot(self, snapshot_id: str) -> None:
        """Delete one snapshot row. Payloads are left in the blob store.

        Raises:
            NotFoundError: If the snapshot does not exist
        """
        with self.store.transaction() as conn:
            cursor = conn.execute("DELETE FROM schema_snapshots WHERE id = ?", (snapshot_id,))
            if cursor.rowcount == 0:
                raise NotFoundError("snapshot", snapshot_id)

        logger.info("Snapshot deleted", extra={"snapshot_id": snapshot_id})

    async def delete_snapshot_payloads(self, snapshot_id: str) -> int:
        """Delete the blob payloads of a snapshot.

        Works for pruned snapshots too; the row is not consulted. Failures are
        logged and the remaining keys are still attempted.

        Returns:
            Number of payloads deleted
        """
        if self.blob_store is None:
            return 0

        prefix = self.blob_store.prefix
        deleted = 0
        for key in (data_key(snapshot_id, prefix), schema_key(snapshot_id, prefix)):
            try:
                if await self._blob_call(self.blob_store.delete(key), key, "delete"):
                    deleted += 1
            except StorageDegradedError as e:
                logger.warning(
                    "Snapshot payload delete failed",
                    extra={"snapshot_id": snapshot_id, "key": key, "error": e.message},
                )
        return deleted

    async def prune_snapshots(self, keep_count: int, delete_payloads: bool = False) -> int:
        """Delete all but the keep_count most recent snapshots by version.

        Args:
            keep_count: Number of snapshots to keep
            delete_payloads: Also delete blob payloads of pruned snapshots

        Returns:
            Number of snapshot rows deleted
        """
        if keep_count < 0:
            raise InvalidRequestError("keep_count must be non-negative", keep_count=keep_count)

        with self.store.transaction() as conn:
            pruned_ids = [
                row["id"]
                for row in conn.execute(
                    "SELECT id FROM schema_snapshots ORDER BY version DESC LIMIT -1 OFFSET ?",
                    (keep_count,),
                ).fetchall()
            ]
            if pruned_ids:
                conn.executemany(
                    "DELETE FROM schema_snapshots WHERE id = ?",
                    [(snapshot_id,) for snapshot_id in pruned_ids],
                )

        if delete_payloads:
            for snapshot_id in pruned_ids:
                await self.delete_snapshot_payloads(snapshot_id)

        logger.info(
            "Snapshots pruned",
            extra={"keep_count": keep_count, "deleted": len(pruned_ids), "payloads": delete_payloads},
        )
        return len(pruned_ids)
