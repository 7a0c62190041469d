"""
Schema manager for SchemaVault.

Creates, alters and drops user tables. Every mutating call follows the same
order:

    1. Refuse system tables (no I/O)
    2. Validate and escape every user-supplied identifier and type
    3. Check the catalog (existence, conflicting rows)
    4. Request a background pre-change snapshot
    5. Run the DDL

Changes SQLite cannot apply in place (adding a foreign key, changing a
column's type or NOT NULL flag, renaming/dropping columns on old SQLite
versions) go through table reconstruction: create a temp table with the new
definition, copy rows, drop the original, rename the temp table into place,
recreate indexes. All of it runs in one transaction with foreign-key
enforcement suspended, followed by PRAGMA foreign_key_check on the rebuilt
table. Any failure rolls back everything.

Invariants:
    - Validation failures leave the store untouched
    - The new table definition is rendered from catalog structure, never
      from text-matching the stored DDL
    - Primary-key flags and default values survive reconstruction
"""

from __future__ import annotations

import logging
import sqlite3
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional, Sequence, Union

from ..errors import (
    AlreadyExistsError,
    InvalidRequestError,
    NotFoundError,
    ReconstructionError,
    SchemaVaultError,
    ValidationFailedError,
)
from ..store.sqlite_store import SqliteStore
from .casting import SQL_FUNCTION_NAME, numeric_kind
from .ddl import (
    CREATED_AT_SQL,
    ID_COLUMN,
    ID_COLUMN_SQL,
    IMPLICIT_COLUMNS,
    UPDATED_AT_SQL,
    render_column,
    render_column_definition,
    render_create_index,
    render_create_table,
    render_foreign_key,
    render_unique,
)
from .identifiers import (
    ensure_not_system_table,
    escape_identifier,
    validate_and_escape_identifier,
    validate_and_normalize_type,
    validate_constraints,
)
from .types import (
    ColumnChanges,
    ColumnDefinition,
    ColumnInfo,
    ForeignKeyInfo,
    ForeignKeyRef,
    ValidationResult,
)

if TYPE_CHECKING:
    from ..snapshot.scheduler import BackgroundSnapshotter

logger = logging.getLogger(__name__)

ColumnInput = Union[ColumnDefinition, Mapping[str, Any]]


@dataclass(frozen=True)
class RebuildColumn:
    """A column of the table produced by reconstruction.

    Attributes:
        name: Column name in the rebuilt table
        sql: Rendered column definition
        source: Column in the original table to copy from (None for a new column)
    """

    name: str
    sql: str
    source: Optional[str]


def _as_column_definition(column: ColumnInput) -> ColumnDefinition:
    if isinstance(column, ColumnDefinition):
        return column
    return ColumnDefinition.from_dict(dict(column))


def _as_column_changes(changes: Union[ColumnChanges, Mapping[str, Any]]) -> ColumnChanges:
    if isinstance(changes, ColumnChanges):
        return changes
    return ColumnChanges.from_dict(dict(changes))


def _validate_foreign_key_ref(ref: ForeignKeyRef) -> None:
    validate_and_escape_identifier("table", ref.table)
    validate_and_escape_identifier("column", ref.column)


def _normalize_column(column: ColumnDefinition) -> ColumnDefinition:
    """Validate a user column definition and return it normalized."""
    validate_and_escape_identifier("column", column.name)
    if column.foreign_key is not None:
        _validate_foreign_key_ref(column.foreign_key)
    return ColumnDefinition(
        name=column.name,
        type=validate_and_normalize_type(column.type),
        constraints=validate_constraints(column.constraints),
        foreign_key=column.foreign_key,
    )


class SchemaManager:
    """Manages user table structure.

    Example:
        >>> schema = SchemaManager(store, snapshots=background_snapshotter)
        >>> await schema.create_table("notes", [{"name": "title", "type": "TEXT"}])
        >>> await schema.modify_column("notes", "title", {"not_null": True})
    """

    def __init__(
        self, store: SqliteStore, snapshots: Optional[BackgroundSnapshotter] = None
    ) -> None:
        """Initialize the schema manager.

        Args:
            store: Application SQLite store
            snapshots: BackgroundSnapshotter for pre-change snapshots (optional)
        """
        self.store = store
        self.snapshots = snapshots

    async def _request_snapshot(self, description: str) -> None:
        if self.snapshots is not None:
            await self.snapshots.request(description=description)

    async def _execute_ddl(self, sql: str, table_name: str) -> None:
        try:
            await self.store.execute(sql)
        except sqlite3.Error as e:
            raise SchemaVaultError(
                f"DDL on table {table_name} failed: {e}",
                code="DDL_FAILED",
                details={"table": table_name, "sql": sql},
            ) from e
        logger.debug("DDL executed", extra={"table": table_name, "sql": sql})

    # ------------------------------------------------------------------
    # Read-only
    # ------------------------------------------------------------------

    async def get_table_columns(self, table_name: str) -> List[ColumnInfo]:
        """Columns of a table in ordinal order (empty if the table is absent)."""
        with self.store.connection() as conn:
            return self.store.table_columns(conn, table_name)

    async def get_foreign_keys(self, table_name: str) -> List[ForeignKeyInfo]:
        with self.store.connection() as conn:
            return self.store.foreign_keys(conn, table_name)

    def _require_table(self, conn: sqlite3.Connection, table_name: str) -> List[ColumnInfo]:
        columns = self.store.table_columns(conn, table_name)
        if not columns:
            raise NotFoundError("table", table_name)
        return columns

    # ------------------------------------------------------------------
    # Tables
    # ------------------------------------------------------------------

    async def create_table(self, table_name: str, columns: Sequence[ColumnInput]) -> None:
        """Create a user table.

        Every table gets an implicit id primary key and created_at/updated_at
        timestamps around the declared columns.

        Raises:
            SystemTableProtectedError: If the name is a system table
            InvalidIdentifierError / InvalidTypeError: On invalid names or types
            InvalidRequestError: If columns are empty, duplicated or implicit
            AlreadyExistsError: If the table exists
        """
        ensure_not_system_table(table_name, "create")
        validate_and_escape_identifier("table", table_name)

        if not columns:
            raise InvalidRequestError("At least one column is required", table=table_name)

        definitions = [_normalize_column(_as_column_definition(c)) for c in columns]

        seen = set()
        for column in definitions:
            lowered = column.name.lower()
            if lowered in IMPLICIT_COLUMNS:
                raise InvalidRequestError(
                    f'Column "{column.name}" is created automatically',
                    table=table_name,
                    column=column.name,
                )
            if lowered in seen:
                raise InvalidRequestError(
                    f'Duplicate column name: "{column.name}"',
                    table=table_name,
                    column=column.name,
                )
            seen.add(lowered)

        column_defs = [ID_COLUMN_SQL]
        column_defs.extend(render_column_definition(c) for c in definitions)
        column_defs.extend([CREATED_AT_SQL, UPDATED_AT_SQL])
        foreign_keys = [
            render_foreign_key(ForeignKeyInfo.from_ref(c.name, c.foreign_key))
            for c in definitions
            if c.foreign_key is not None
        ]
        sql = render_create_table(table_name, column_defs, foreign_keys)

        with self.store.connection() as conn:
            if self.store.table_exists(conn, table_name):
                raise AlreadyExistsError("table", table_name)

        await self._request_snapshot(f"Before creating table: {table_name}")
        await self._execute_ddl(sql, table_name)
        logger.info("Table created", extra={"table": table_name, "columns": len(definitions)})

    async def drop_table(self, table_name: str) -> None:
        """Drop a user table (no error if it does not exist)."""
        ensure_not_system_table(table_name, "drop")
        escaped = validate_and_escape_identifier("table", table_name)

        await self._request_snapshot(f"Before dropping table: {table_name}")
        await self._execute_ddl(f"DROP TABLE IF EXISTS {escaped}", table_name)
        logger.info("Table dropped", extra={"table": table_name})

    # ------------------------------------------------------------------
    # Columns
    # ------------------------------------------------------------------

    async def add_column(self, table_name: str, column: ColumnInput) -> None:
        """Add a column to a table.

        Without a foreign key this is a native ALTER TABLE ADD COLUMN. With a
        foreign key, a single reconstruction adds the column and the
        constraint together.

        Raises:
            NotFoundError: If the table (or the referenced table) does not exist
            AlreadyExistsError: If the column exists
        """
        ensure_not_system_table(table_name, "modify")
        escaped_table = validate_and_escape_identifier("table", table_name)
        definition = _normalize_column(_as_column_definition(column))

        with self.store.connection() as conn:
            existing = self._require_table(conn, table_name)
            if any(c.name.lower() == definition.name.lower() for c in existing):
                raise AlreadyExistsError("column", f"{table_name}.{definition.name}")
            if definition.foreign_key is not None:
                if not self.store.table_exists(conn, definition.foreign_key.table):
                    raise NotFoundError("table", definition.foreign_key.table)
                foreign_keys = self.store.foreign_keys(conn, table_name)

        await self._request_snapshot(f"Before adding column {definition.name} to {table_name}")

        if definition.foreign_key is None:
            await self._execute_ddl(
                f"ALTER TABLE {escaped_table} ADD COLUMN {render_column_definition(definition)}",
                table_name,
            )
        else:
            rebuild = [RebuildColumn(c.name, render_column(c), c.name) for c in existing]
            rebuild.append(
                RebuildColumn(definition.name, render_column_definition(definition), None)
            )
            foreign_keys.append(ForeignKeyInfo.from_ref(definition.name, definition.foreign_key))
            self._reconstruct(table_name, rebuild, foreign_keys)

        logger.info(
            "Column added",
            extra={
                "table": table_name,
                "column": definition.name,
                "foreign_key": definition.foreign_key is not None,
            },
        )

    async def rename_column(self, table_name: str, old_name: str, new_name: str) -> None:
        """Rename a column.

        Uses ALTER TABLE RENAME COLUMN when SQLite supports it, otherwise
        reconstruction.
        """
        ensure_not_system_table(table_name, "modify")
        escaped_table = validate_and_escape_identifier("table", table_name)
        escaped_old = validate_and_escape_identifier("column", old_name)
        escaped_new = validate_and_escape_identifier("column", new_name)

        with self.store.connection() as conn:
            existing = self._require_table(conn, table_name)
            names = {c.name.lower() for c in existing}
            if old_name.lower() not in names:
                raise NotFoundError("column", f"{table_name}.{old_name}")
            if new_name.lower() in names and new_name.lower() != old_name.lower():
                raise AlreadyExistsError("column", f"{table_name}.{new_name}")
            foreign_keys = self.store.foreign_keys(conn, table_name)

        await self._request_snapshot(
            f"Before renaming column {old_name} to {new_name} in {table_name}"
        )

        if self.store.supports_rename_column:
            await self._execute_ddl(
                f"ALTER TABLE {escaped_table} RENAME COLUMN {escaped_old} TO {escaped_new}",
                table_name,
            )
        else:
            rebuild = []
            for c in existing:
                if c.name.lower() == old_name.lower():
                    renamed = ColumnInfo(
                        ordinal=c.ordinal,
                        name=new_name,
                        declared_type=c.declared_type,
                        not_null=c.not_null,
                        default=c.default,
                        is_primary_key=c.is_primary_key,
                    )
                    rebuild.append(RebuildColumn(new_name, render_column(renamed), c.name))
                else:
                    rebuild.append(RebuildColumn(c.name, render_column(c), c.name))
            foreign_keys = [
                ForeignKeyInfo(new_name, fk.ref_table, fk.ref_column, fk.on_update, fk.on_delete)
                if fk.column.lower() == old_name.lower()
                else fk
                for fk in foreign_keys
            ]
            self._reconstruct(table_name, rebuild, foreign_keys)

        logger.info(
            "Column renamed",
            extra={"table": table_name, "old_name": old_name, "new_name": new_name},
        )

    async def drop_column(self, table_name: str, column_name: str) -> None:
        """Drop a column.

        Uses ALTER TABLE DROP COLUMN when SQLite supports it and the column
        is not part of an index, UNIQUE constraint or foreign key, otherwise
        reconstruction. The implicit id primary key cannot be dropped.
        """
        ensure_not_system_table(table_name, "modify")
        escaped_table = validate_and_escape_identifier("table", table_name)
        escaped_column = validate_and_escape_identifier("column", column_name)

        with self.store.connection() as conn:
            existing = self._require_table(conn, table_name)
            target = next((c for c in existing if c.name.lower() == column_name.lower()), None)
            if target is None:
                raise NotFoundError("column", f"{table_name}.{column_name}")
            foreign_keys = self.store.foreign_keys(conn, table_name)
            key_columns = [fk.column for fk in foreign_keys]
            for index in self.store.table_indexes(conn, table_name):
                key_columns.extend(index.columns)
            for unique_columns in self.store.unique_constraints(conn, table_name):
                key_columns.extend(unique_columns)

        # Native DROP COLUMN refuses indexed, UNIQUE and foreign-key columns
        referenced = any(
            col is not None and col.lower() == target.name.lower() for col in key_columns
        )

        if target.is_primary_key or target.name.lower() == ID_COLUMN:
            raise InvalidRequestError(
                f"Cannot drop primary key column: {column_name}",
                table=table_name,
                column=column_name,
            )
        if len(existing) == 1:
            raise InvalidRequestError(
                f"Cannot drop the only column of table {table_name}",
                table=table_name,
                column=column_name,
            )

        await self._request_snapshot(f"Before dropping column {column_name} from {table_name}")

        if self.store.supports_drop_column and not referenced:
            await self._execute_ddl(
                f"ALTER TABLE {escaped_table} DROP COLUMN {escaped_column}", table_name
            )
        else:
            rebuild = [
                RebuildColumn(c.name, render_column(c), c.name)
                for c in existing
                if c is not target
            ]
            foreign_keys = [
                fk for fk in foreign_keys if fk.column.lower() != target.name.lower()
            ]
            self._reconstruct(table_name, rebuild, foreign_keys)

        logger.info("Column dropped", extra={"table": table_name, "column": column_name})

    async def validate_column_changes(
        self,
        table_name: str,
        column_name: str,
        changes: Union[ColumnChanges, Mapping[str, Any]],
    ) -> ValidationResult:
        """Check existing rows against requested column changes. Read-only.

        Checks:
            - NOT NULL: rows where the column is NULL
            - Foreign key: non-null values with no match in the referenced column
            - Numeric type: values that fail the casting-safety predicate

        Raises:
            NotFoundError: If the table, column or referenced table/column is absent
        """
        changes = _as_column_changes(changes)
        escaped_table = validate_and_escape_identifier("table", table_name)
        escaped_column = validate_and_escape_identifier("column", column_name)
        new_type = validate_and_normalize_type(changes.type) if changes.type is not None else None

        result = ValidationResult()

        with self.store.connection() as conn:
            columns = self._require_table(conn, table_name)
            column = next((c for c in columns if c.name.lower() == column_name.lower()), None)
            if column is None:
                raise NotFoundError("column", f"{table_name}.{column_name}")

            if changes.not_null:
                null_count = conn.execute(
                    f"SELECT COUNT(*) AS n FROM {escaped_table} WHERE {escaped_column} IS NULL"
                ).fetchone()["n"]
                if null_count:
                    result.add_conflict(
                        f"Cannot add NOT NULL constraint: {null_count} rows have NULL values "
                        f"in column '{column_name}'",
                        null_count,
                    )

            ref = changes.foreign_key if changes.changes_foreign_key else None
            if ref is not None:
                _validate_foreign_key_ref(ref)
                ref_columns = self.store.table_columns(conn, ref.table)
                if not ref_columns:
                    raise NotFoundError("table", ref.table)
                if not any(c.name.lower() == ref.column.lower() for c in ref_columns):
                    raise NotFoundError("column", f"{ref.table}.{ref.column}")

                orphan_count = conn.execute(
                    f"""
                    SELECT COUNT(*) AS n FROM {escaped_table} t1
                    WHERE t1.{escaped_column} IS NOT NULL
                    AND NOT EXISTS (
                        SELECT 1 FROM {escape_identifier(ref.table)} t2
                        WHERE t2.{escape_identifier(ref.column)} = t1.{escaped_column}
                    )
                    """
                ).fetchone()["n"]
                if orphan_count:
                    result.add_conflict(
                        f"Cannot add foreign key constraint: {orphan_count} rows reference "
                        f"non-existent values in '{ref.table}.{ref.column}'",
                        orphan_count,
                    )

            if new_type is not None and new_type != column.declared_type.upper():
                kind = numeric_kind(new_type)
                if kind is not None:
                    invalid_count = conn.execute(
                        f"SELECT COUNT(*) AS n FROM {escaped_table} "
                        f"WHERE {escaped_column} IS NOT NULL "
                        f"AND {SQL_FUNCTION_NAME}({escaped_column}, ?) = 0",
                        (kind,),
                    ).fetchone()["n"]
                    if invalid_count:
                        result.add_conflict(
                            f"Cannot convert to {new_type}: {invalid_count} rows contain "
                            f"values that do not convert cleanly in column '{column_name}'",
                            invalid_count,
                        )

        return result

    async def modify_column(
        self,
        table_name: str,
        column_name: str,
        changes: Union[ColumnChanges, Mapping[str, Any]],
    ) -> None:
        """Change a column's type, NOT NULL flag or foreign key.

        Validates existing rows first, then rebuilds the table.

        Raises:
            ValidationFailedError: If existing rows conflict with the changes
            ReconstructionError: If the rebuild failed (nothing was changed)
        """
        changes = _as_column_changes(changes)
        ensure_not_system_table(table_name, "modify")

        validation = await self.validate_column_changes(table_name, column_name, changes)
        if not validation.valid:
            raise ValidationFailedError(validation)

        if changes.is_empty:
            logger.debug("No column changes requested", extra={"table": table_name, "column": column_name})
            return

        new_type = validate_and_normalize_type(changes.type) if changes.type is not None else None

        with self.store.connection() as conn:
            existing = self.store.table_columns(conn, table_name)
            foreign_keys = self.store.foreign_keys(conn, table_name)

        rebuild = []
        for c in existing:
            if c.name.lower() == column_name.lower():
                sql = render_column(c, declared_type=new_type, not_null=changes.not_null)
            else:
                sql = render_column(c)
            rebuild.append(RebuildColumn(c.name, sql, c.name))

        if changes.changes_foreign_key:
            foreign_keys = [fk for fk in foreign_keys if fk.column.lower() != column_name.lower()]
            if not changes.removes_foreign_key:
                target = next(c.name for c in existing if c.name.lower() == column_name.lower())
                foreign_keys.append(ForeignKeyInfo.from_ref(target, changes.foreign_key))

        await self._request_snapshot(f"Before modifying column {column_name} in {table_name}")
        self._reconstruct(table_name, rebuild, foreign_keys)

        logger.info(
            "Column modified",
            extra={
                "table": table_name,
                "column": column_name,
                "type": new_type,
                "not_null": changes.not_null,
                "foreign_key_changed": changes.changes_foreign_key,
            },
        )

    # ------------------------------------------------------------------
    # Reconstruction
    # ------------------------------------------------------------------

    def _reconstruct(
        self,
        table_name: str,
        columns: Sequence[RebuildColumn],
        foreign_keys: Sequence[ForeignKeyInfo],
    ) -> None:
        """Rebuild a table with a new definition, atomically.

        Rows are copied by explicit column list from each column's source.
        UNIQUE constraints and user indexes whose columns survive are carried
        over under the new column names.

        Raises:
            ReconstructionError: If any step fails (the original table is intact)
        """
        temp_name = f"{table_name}_temp_{int(time.time() * 1000)}"
        renamed: Dict[str, str] = {
            c.source.lower(): c.name for c in columns if c.source is not None
        }

        def carry_over(index_columns: Sequence[Optional[str]]) -> Optional[List[Optional[str]]]:
            # Expression columns (None) are kept as-is
            if any(col is not None and col.lower() not in renamed for col in index_columns):
                return None
            return [renamed[col.lower()] if col is not None else None for col in index_columns]

        try:
            with self.store.transaction(foreign_keys=False) as conn:
                indexes = self.store.table_indexes(conn, table_name)
                constraints = []
                for unique_columns in self.store.unique_constraints(conn, table_name):
                    mapped = carry_over(unique_columns)
                    if mapped is not None and None not in mapped:
                        constraints.append(render_unique(mapped))
                constraints.extend(render_foreign_key(fk) for fk in foreign_keys)

                copied = [c for c in columns if c.source is not None]
                target_list = ", ".join(escape_identifier(c.name) for c in copied)
                source_list = ", ".join(escape_identifier(c.source) for c in copied)

                conn.execute(render_create_table(temp_name, [c.sql for c in columns], constraints))
                conn.execute(
                    f"INSERT INTO {escape_identifier(temp_name)} ({target_list}) "
                    f"SELECT {source_list} FROM {escape_identifier(table_name)}"
                )
                conn.execute(f"DROP TABLE {escape_identifier(table_name)}")
                conn.execute(
                    f"ALTER TABLE {escape_identifier(temp_name)} "
                    f"RENAME TO {escape_identifier(table_name)}"
                )

                for index in indexes:
                    mapped = carry_over(index.columns)
                    if mapped is None:
                        logger.warning(
                            "Index dropped during reconstruction",
                            extra={"table": table_name, "index": index.name},
                        )
                        continue
                    if mapped == list(index.columns):
                        conn.execute(index.sql)
                    elif None not in mapped:
                        conn.execute(render_create_index(index.name, table_name, mapped, index.unique))
                    else:
                        logger.warning(
                            "Expression index dropped during column rename",
                            extra={"table": table_name, "index": index.name},
                        )

                violations = conn.execute(
                    f"PRAGMA foreign_key_check({escape_identifier(table_name)})"
                ).fetchall()
                if violations:
                    raise sqlite3.IntegrityError(
                        f"{len(violations)} foreign key violation(s) after rebuild"
                    )
        except sqlite3.Error as e:
            logger.error(
                "Table reconstruction rolled back",
                extra={"table": table_name, "error": str(e)},
            )
            raise ReconstructionError(table_name, str(e)) from e

        logger.debug(
            "Table reconstructed",
            extra={"table": table_name, "columns": len(columns), "foreign_keys": len(foreign_keys)},
        )
