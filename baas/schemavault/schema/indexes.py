"""
Index manager for SchemaVault.

Lists, creates and drops user indexes. Indexes SQLite creates on its own
(sqlite_autoindex_*, backing PRIMARY KEY and UNIQUE constraints) are never
listed and can never be dropped.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import TYPE_CHECKING, List, Optional, Sequence

from ..errors import AlreadyExistsError, InvalidRequestError, NotFoundError, SchemaVaultError
from ..store.sqlite_store import AUTO_INDEX_PREFIX, SqliteStore
from .ddl import render_create_index
from .identifiers import (
    ensure_not_system_table,
    validate_and_escape_identifier,
    validate_and_escape_identifiers,
)
from .types import IndexInfo

if TYPE_CHECKING:
    from ..snapshot.scheduler import BackgroundSnapshotter

logger = logging.getLogger(__name__)


class IndexManager:
    """Manages user indexes.

    Example:
        >>> indexes = IndexManager(store, snapshots=background_snapshotter)
        >>> await indexes.create_index("idx_notes_title", "notes", ["title"])
    """

    def __init__(
        self, store: SqliteStore, snapshots: Optional[BackgroundSnapshotter] = None
    ) -> None:
        self.store = store
        self.snapshots = snapshots

    async def _request_snapshot(self, name: str, description: str) -> None:
        if self.snapshots is not None:
            await self.snapshots.request(name=name, description=description)

    async def get_table_indexes(self, table_name: str) -> List[IndexInfo]:
        with self.store.connection() as conn:
            return self.store.table_indexes(conn, table_name)

    async def get_all_user_indexes(self) -> List[IndexInfo]:
        """User indexes across all tables, ordered by table then name."""
        with self.store.connection() as conn:
            return self.store.all_indexes(conn)

    async def create_index(
        self,
        index_name: str,
        table_name: str,
        columns: Sequence[str],
        unique: bool = False,
    ) -> None:
        """Create an index.

        Raises:
            SystemTableProtectedError: If the table is a system table
            InvalidRequestError: If no columns are given
            NotFoundError: If the table or a column does not exist
            AlreadyExistsError: If an index with that name exists
        """
        ensure_not_system_table(table_name, "index")
        validate_and_escape_identifier("index", index_name)
        validate_and_escape_identifier("table", table_name)
        if not columns:
            raise InvalidRequestError("At least one column is required", index=index_name)
        validate_and_escape_identifiers("column", columns)

        with self.store.connection() as conn:
            table_columns = {c.name.lower() for c in self.store.table_columns(conn, table_name)}
            if not table_columns:
                raise NotFoundError("table", table_name)
            for column in columns:
                if column.lower() not in table_columns:
                    raise NotFoundError("column", f"{table_name}.{column}")
            exists = conn.execute(
                "SELECT 1 FROM sqlite_master WHERE type = 'index' AND name = ?",
                (index_name,),
            ).fetchone()
            if exists:
                raise AlreadyExistsError("index", index_name)

        await self._request_snapshot(
            f"Before creating index {index_name}",
            f"Auto-snapshot before creating index {index_name} on table {table_name}",
        )

        sql = render_create_index(index_name, table_name, columns, unique=unique)
        try:
            await self.store.execute(sql)
        except sqlite3.Error as e:
            raise SchemaVaultError(
                f"Failed to create index {index_name}: {e}",
                code="DDL_FAILED",
                details={"index": index_name, "table": table_name},
            ) from e

        logger.info(
            "Index created",
            extra={"index": index_name, "table": table_name, "columns": list(columns), "unique": unique},
        )

    async def drop_index(self, index_name: str) -> None:
        """Drop a user index.

        Raises:
            InvalidRequestError: If the index was generated by SQLite
            NotFoundError: If no such user index exists
        """
        if index_name.startswith(AUTO_INDEX_PREFIX):
            raise InvalidRequestError("Cannot drop system-generated indexes", index=index_name)
        escaped = validate_and_escape_identifier("index", index_name)

        target = next(
            (idx for idx in await self.get_all_user_indexes() if idx.name == index_name),
            None,
        )
        if target is None:
            raise NotFoundError("index", index_name)
        ensure_not_system_table(target.table_name, "drop index on")

        await self._request_snapshot(
            f"Before dropping index {index_name}",
            f"Auto-snapshot before dropping index {index_name} from table {target.table_name}",
        )

        try:
            await self.store.execute(f"DROP INDEX {escaped}")
        except sqlite3.Error as e:
            raise SchemaVaultError(
                f"Failed to drop index {index_name}: {e}",
                code="DDL_FAILED",
                details={"index": index_name},
            ) from e

        logger.info("Index dropped", extra={"index": index_name, "table": target.table_name})
