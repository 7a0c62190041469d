"""
SQLite store for SchemaVault.

This module owns the single application SQLite database:
- Catalog introspection (tables, columns, foreign keys, indexes)
- Statement execution, single and atomic batches
- Snapshot bookkeeping tables (schema_snapshots, schema_snapshot_counter)

Invariants:
    - One logical session (connection) per call
    - Atomic batches run inside BEGIN IMMEDIATE ... COMMIT, rolled back on any error
    - Catalog projections exclude SQLite internal tables (sqlite_%, _cf_KV)
    - Foreign key enforcement is on unless a batch explicitly suspends it

How to change safely:
    - Bookkeeping schema changes must be additive (old rows stay readable)
    - Never hold a transaction open across an await

Table schema:
    schema_snapshots:
        - id TEXT PRIMARY KEY (UUID)
        - version INTEGER NOT NULL UNIQUE
        - name, description TEXT
        - full_schema TEXT (all CREATE TABLE statements)
        - tables_json TEXT (serialized TableSchema list)
        - schema_hash TEXT (hex SHA-256)
        - created_by, snapshot_type, external_checkpoint TEXT
        - has_data_backup INTEGER (0/1)
        - created_at, updated_at DATETIME

    schema_snapshot_counter:
        - id INTEGER PRIMARY KEY CHECK (id = 1)
        - current_version INTEGER
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterable, Sequence, Union

from ..schema.casting import SQL_FUNCTION_NAME, sql_castable
from ..schema.identifiers import escape_identifier
from ..schema.types import ColumnInfo, ForeignKeyInfo, IndexInfo

logger = logging.getLogger(__name__)

AUTO_INDEX_PREFIX = "sqlite_autoindex_"

# Tables SQLite (or the hosting platform) maintains internally.
INTERNAL_TABLE_FILTER = "name NOT LIKE 'sqlite_%' AND name != '_cf_KV'"

Statement = Union[str, tuple[str, Sequence[Any]]]

RENAME_COLUMN_MIN_VERSION = (3, 25, 0)
DROP_COLUMN_MIN_VERSION = (3, 35, 0)


class SqliteStore:
    """Application SQLite database with catalog introspection.

    Thread safety:
        Each operation opens its own connection. SQLite serializes writers;
        BEGIN IMMEDIATE takes the write lock up front so read-modify-write
        sequences inside a transaction are atomic across connections.

    Example:
        >>> store = SqliteStore("/var/lib/schemavault/app.db")
        >>> await store.initialize()
        >>> tables = await store.list_tables()
    """

    def __init__(
        self,
        db_path: str,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
    ) -> None:
        """Initialize the store.

        Args:
            db_path: Path to the SQLite database file
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout
        """
        self.db_path = Path(db_path)
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self._lock = asyncio.Lock()

    @property
    def sqlite_version(self) -> tuple[int, ...]:
        return sqlite3.sqlite_version_info

    @property
    def supports_rename_column(self) -> bool:
        return sqlite3.sqlite_version_info >= RENAME_COLUMN_MIN_VERSION

    @property
    def supports_drop_column(self) -> bool:
        return sqlite3.sqlite_version_info >= DROP_COLUMN_MIN_VERSION

    @contextmanager
    def connection(self, foreign_keys: bool = True) -> Iterator[sqlite3.Connection]:
        """Open a configured connection.

        Args:
            foreign_keys: Whether foreign key enforcement is on for this session

        Yields:
            SQLite connection in autocommit mode (explicit transactions)
        """
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,
        )
        conn.row_factory = sqlite3.Row

        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            conn.execute(f"PRAGMA foreign_keys = {'ON' if foreign_keys else 'OFF'}")
            conn.create_function(SQL_FUNCTION_NAME, 2, sql_castable, deterministic=True)

            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(
        self,
        foreign_keys: bool = True,
        mode: str = "IMMEDIATE",
    ) -> Iterator[sqlite3.Connection]:
        """Run a block inside BEGIN <mode> ... COMMIT.

        IMMEDIATE takes the write lock up front; DEFERRED gives a consistent
        read view. Any exception rolls the transaction back and propagates.
        """
        if mode not in ("DEFERRED", "IMMEDIATE", "EXCLUSIVE"):
            raise ValueError(f"Invalid transaction mode: {mode}")

        with self.connection(foreign_keys=foreign_keys) as conn:
            conn.execute(f"BEGIN {mode}")
            try:
                yield conn
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        """Create snapshot bookkeeping tables."""
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS schema_snapshots (
                id TEXT PRIMARY KEY,
                version INTEGER NOT NULL UNIQUE,
                name TEXT,
                description TEXT,
                full_schema TEXT NOT NULL,
                tables_json TEXT NOT NULL,
                schema_hash TEXT NOT NULL,
                created_by TEXT,
                snapshot_type TEXT NOT NULL DEFAULT 'manual',
                external_checkpoint TEXT,
                has_data_backup INTEGER NOT NULL DEFAULT 0,
                created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
                updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
            );

            CREATE INDEX IF NOT EXISTS idx_schema_snapshots_created_at
                ON schema_snapshots(created_at DESC);

            CREATE TABLE IF NOT EXISTS schema_snapshot_counter (
                id INTEGER PRIMARY KEY CHECK (id = 1),
                current_version INTEGER NOT NULL DEFAULT 0
            );
        """)

    async def initialize(self) -> None:
        """Create the database file and bookkeeping tables if missing."""
        async with self._lock:
            with self.connection() as conn:
                self._create_schema(conn)
        logger.info("Initialized schema store", extra={"db_path": str(self.db_path)})

    # ------------------------------------------------------------------
    # Catalog introspection
    # ------------------------------------------------------------------

    def list_tables(
        self,
        conn: sqlite3.Connection,
        exclude: Iterable[str] = (),
    ) -> list[sqlite3.Row]:
        """List (name, sql) of tables ordered by name, excluding internal tables.

        Excluded names match case-insensitively, as SQLite resolves table names.
        """
        excluded = sorted({name.lower() for name in exclude})
        query = f"SELECT name, sql FROM sqlite_master WHERE type = 'table' AND {INTERNAL_TABLE_FILTER}"
        if excluded:
            query += f" AND lower(name) NOT IN ({', '.join('?' for _ in excluded)})"
        query += " ORDER BY name"
        return conn.execute(query, excluded).fetchall()

    def table_exists(self, conn: sqlite3.Connection, table_name: str) -> bool:
        cursor = conn.execute(
            "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ? COLLATE NOCASE",
            (table_name,),
        )
        return cursor.fetchone() is not None

    def table_sql(self, conn: sqlite3.Connection, table_name: str) -> str | None:
        cursor = conn.execute(
            "SELECT sql FROM sqlite_master WHERE type = 'table' AND name = ? COLLATE NOCASE",
            (table_name,),
        )
        row = cursor.fetchone()
        return row["sql"] if row else None

    def table_columns(self, conn: sqlite3.Connection, table_name: str) -> list[ColumnInfo]:
        rows = conn.execute(
            "SELECT * FROM pragma_table_info(?) ORDER BY cid", (table_name,)
        ).fetchall()
        return [ColumnInfo.from_pragma(row) for row in rows]

    def foreign_keys(self, conn: sqlite3.Connection, table_name: str) -> list[ForeignKeyInfo]:
        rows = conn.execute(
            "SELECT * FROM pragma_foreign_key_list(?) ORDER BY id, seq", (table_name,)
        ).fetchall()
        return [ForeignKeyInfo.from_pragma(row) for row in rows]

    def _index_columns(self, conn: sqlite3.Connection, index_name: str) -> tuple[str, ...]:
        rows = conn.execute(
            "SELECT name FROM pragma_index_info(?) ORDER BY seqno", (index_name,)
        ).fetchall()
        return tuple(row["name"] for row in rows)

    def table_indexes(self, conn: sqlite3.Connection, table_name: str) -> list[IndexInfo]:
        """User indexes on a table (auto-generated indexes excluded)."""
        rows = conn.execute(
            "SELECT name, \"unique\" FROM pragma_index_list(?) ORDER BY name", (table_name,)
        ).fetchall()

        indexes = []
        for row in rows:
            if row["name"].startswith(AUTO_INDEX_PREFIX):
                continue
            sql_row = conn.execute(
                "SELECT sql FROM sqlite_master WHERE type = 'index' AND name = ?",
                (row["name"],),
            ).fetchone()
            if sql_row is None or sql_row["sql"] is None:
                continue
            indexes.append(
                IndexInfo(
                    name=row["name"],
                    table_name=table_name,
                    columns=self._index_columns(conn, row["name"]),
                    unique=bool(row["unique"]),
                    sql=sql_row["sql"],
                )
            )
        return indexes

    def all_indexes(self, conn: sqlite3.Connection) -> list[IndexInfo]:
        """User indexes across all tables, ordered by table then name."""
        rows = conn.execute(
            f"""
            SELECT name, tbl_name, sql FROM sqlite_master
            WHERE type = 'index'
            AND name NOT LIKE '{AUTO_INDEX_PREFIX}%'
            AND sql IS NOT NULL
            ORDER BY tbl_name, name
            """
        ).fetchall()

        indexes = []
        for row in rows:
            unique_row = conn.execute(
                "SELECT \"unique\" FROM pragma_index_list(?) WHERE name = ?",
                (row["tbl_name"], row["name"]),
            ).fetchone()
            indexes.append(
                IndexInfo(
                    name=row["name"],
                    table_name=row["tbl_name"],
                    columns=self._index_columns(conn, row["name"]),
                    unique=bool(unique_row["unique"]) if unique_row else False,
                    sql=row["sql"],
                )
            )
        return indexes

    def unique_constraints(self, conn: sqlite3.Connection, table_name: str) -> list[tuple[str, ...]]:
        """Column sets of UNIQUE constraints declared in the table definition."""
        rows = conn.execute(
            "SELECT name FROM pragma_index_list(?) WHERE origin = 'u' ORDER BY seq", (table_name,)
        ).fetchall()
        return [self._index_columns(conn, row["name"]) for row in rows]

    def fetch_rows(self, conn: sqlite3.Connection, table_name: str) -> list[dict[str, Any]]:
        cursor = conn.execute(f"SELECT * FROM {escape_identifier(table_name)}")
        return [dict(row) for row in cursor.fetchall()]

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        """Execute a single statement in autocommit mode.

        Returns:
            Number of rows changed
        """
        with self.connection() as conn:
            cursor = conn.execute(sql, params)
            return cursor.rowcount

    async def run_atomic(
        self,
        statements: Sequence[Statement],
        foreign_keys: bool = True,
        check_foreign_keys: Sequence[str] = (),
    ) -> None:
        """Run statements as one all-or-nothing unit.

        Args:
            statements: SQL strings or (sql, params) tuples
            foreign_keys: Whether FK enforcement stays on during the batch
            check_foreign_keys: Tables to verify with PRAGMA foreign_key_check
                before committing (used when enforcement is suspended)

        Raises:
            sqlite3.Error: If any statement fails (nothing is applied)
        """
        with self.transaction(foreign_keys=foreign_keys) as conn:
            for statement in statements:
                if isinstance(statement, tuple):
                    conn.execute(statement[0], statement[1])
                else:
                    conn.execute(statement)

            for table_name in check_foreign_keys:
                violations = conn.execute(
                    f"PRAGMA foreign_key_check({escape_identifier(table_name)})"
                ).fetchall()
                if violations:
                    raise sqlite3.IntegrityError(
                        f"{len(violations)} foreign key violation(s) in table {table_name}"
                    )

        logger.debug("Atomic batch committed", extra={"statements": len(statements)})

    def get_db_path(self) -> Path:
        return self.db_path
