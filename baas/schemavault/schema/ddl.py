"""
DDL rendering for SchemaVault.

All CREATE TABLE / CREATE INDEX text produced by the engine is rendered here
from the structured model in types.py. Callers validate user-supplied names
and types first; this module only escapes.
"""

from __future__ import annotations

from typing import Sequence

from .identifiers import escape_identifier
from .types import ColumnDefinition, ColumnInfo, ForeignKeyInfo

ID_COLUMN = "id"
CREATED_AT_COLUMN = "created_at"
UPDATED_AT_COLUMN = "updated_at"
IMPLICIT_COLUMNS = (ID_COLUMN, CREATED_AT_COLUMN, UPDATED_AT_COLUMN)

ID_COLUMN_SQL = '"id" TEXT PRIMARY KEY DEFAULT (lower(hex(randomblob(16))))'
CREATED_AT_SQL = '"created_at" DATETIME DEFAULT CURRENT_TIMESTAMP'
UPDATED_AT_SQL = '"updated_at" DATETIME DEFAULT CURRENT_TIMESTAMP'


def render_column(
    column: ColumnInfo,
    declared_type: str | None = None,
    not_null: bool | None = None,
) -> str:
    """Render a catalog column, optionally overriding its type and NOT NULL flag.

    The primary-key flag and the default value are always preserved.
    """
    parts = [escape_identifier(column.name)]

    col_type = declared_type if declared_type is not None else column.declared_type
    if col_type:
        parts.append(col_type)
    if column.is_primary_key:
        parts.append("PRIMARY KEY")

    default = column.default.render()
    if default is not None:
        parts.append(f"DEFAULT {default}")

    if column.not_null if not_null is None else not_null:
        parts.append("NOT NULL")

    return " ".join(parts)


def render_column_definition(column: ColumnDefinition) -> str:
    """Render a validated user column definition (without its foreign key)."""
    sql = f"{escape_identifier(column.name)} {column.type}"
    if column.constraints:
        sql += f" {column.constraints}"
    return sql


def render_foreign_key(fk: ForeignKeyInfo) -> str:
    sql = f"FOREIGN KEY ({escape_identifier(fk.column)}) REFERENCES {escape_identifier(fk.ref_table)}"
    if fk.ref_column:
        sql += f"({escape_identifier(fk.ref_column)})"
    if fk.on_update and fk.on_update.upper() != "NO ACTION":
        sql += f" ON UPDATE {fk.on_update.upper()}"
    if fk.on_delete and fk.on_delete.upper() != "NO ACTION":
        sql += f" ON DELETE {fk.on_delete.upper()}"
    return sql


def render_unique(columns: Sequence[str]) -> str:
    return "UNIQUE (" + ", ".join(escape_identifier(c) for c in columns) + ")"


def render_create_table(
    table_name: str,
    column_defs: Sequence[str],
    table_constraints: Sequence[str] = (),
) -> str:
    body = ",\n  ".join([*column_defs, *table_constraints])
    return f"CREATE TABLE {escape_identifier(table_name)} (\n  {body}\n)"


def render_create_index(
    index_name: str,
    table_name: str,
    columns: Sequence[str],
    unique: bool = False,
) -> str:
    unique_clause = "UNIQUE " if unique else ""
    column_list = ", ".join(escape_identifier(c) for c in columns)
    return (
        f"CREATE {unique_clause}INDEX {escape_identifier(index_name)} "
        f"ON {escape_identifier(table_name)} ({column_list})"
    )
