"""
Structured schema model for SchemaVault.

Tables, columns, foreign keys and indexes are discovered live from the
SQLite catalog and represented by the immutable types in this module.
DDL is always rendered from these types (see ddl.py); stored DDL text is
never parsed back into structure.

Invariants:
    - At most one column per table is a primary key (composite keys are not modeled)
    - Foreign keys come from PRAGMA foreign_key_list, one per column
    - to_dict()/from_dict() round-trip without loss (used for tables_json)

How to change safely:
    - Add new fields with defaults so old tables_json payloads still load
    - Keep dictionary keys stable, they are persisted in snapshot rows
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

SQL_DEFAULT_KEYWORDS = frozenset(
    {"CURRENT_TIMESTAMP", "CURRENT_DATE", "CURRENT_TIME", "NULL", "TRUE", "FALSE"}
)

_NUMBER_RE = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?$")
_BLOB_LITERAL_RE = re.compile(r"^[xX]'[0-9a-fA-F]*'$")
_BARE_WORD_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class DefaultKind(Enum):
    """Shape of a column default as reported by the catalog."""

    NONE = "none"
    LITERAL = "literal"
    KEYWORD = "keyword"
    EXPRESSION = "expression"


@dataclass(frozen=True)
class DefaultValue:
    """Column default value.

    Attributes:
        kind: Shape of the default
        text: Default text as stored in the catalog (None for NONE)

    Render rules:
        - keyword defaults are rendered verbatim (CURRENT_TIMESTAMP)
        - function-call-shaped defaults are parenthesized
        - string literals are quoted (unless the catalog already quoted them)
    """

    kind: DefaultKind = DefaultKind.NONE
    text: str | None = None

    @classmethod
    def from_catalog(cls, raw: Any) -> DefaultValue:
        """Classify a PRAGMA table_info dflt_value."""
        if raw is None:
            return cls()

        text = str(raw).strip()
        if text.startswith("'") and text.endswith("'") and len(text) >= 2:
            return cls(DefaultKind.LITERAL, text)
        if _NUMBER_RE.match(text) or _BLOB_LITERAL_RE.match(text):
            return cls(DefaultKind.LITERAL, text)
        if text.upper() in SQL_DEFAULT_KEYWORDS:
            return cls(DefaultKind.KEYWORD, text.upper())
        if _BARE_WORD_RE.match(text):
            return cls(DefaultKind.LITERAL, text)
        return cls(DefaultKind.EXPRESSION, text)

    def render(self) -> str | None:
        """Render the DEFAULT operand, or None when there is no default."""
        if self.kind == DefaultKind.NONE or self.text is None:
            return None
        if self.kind == DefaultKind.KEYWORD:
            return self.text
        if self.kind == DefaultKind.EXPRESSION:
            return f"({self.text})"

        # Literal
        if (
            (self.text.startswith("'") and self.text.endswith("'") and len(self.text) >= 2)
            or _NUMBER_RE.match(self.text)
            or _BLOB_LITERAL_RE.match(self.text)
        ):
            return self.text
        escaped = self.text.replace("'", "''")
        return f"'{escaped}'"

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind.value, "text": self.text}

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> DefaultValue:
        if not data:
            return cls()
        return cls(DefaultKind(data.get("kind", "none")), data.get("text"))


@dataclass(frozen=True)
class ColumnInfo:
    """A column as reported by PRAGMA table_info.

    Attributes:
        ordinal: Zero-based column position (cid)
        name: Column name
        declared_type: Declared type text (may be empty)
        not_null: Whether the column is NOT NULL
        default: Default value
        is_primary_key: Whether the column is the primary key
    """

    ordinal: int
    name: str
    declared_type: str
    not_null: bool = False
    default: DefaultValue = field(default_factory=DefaultValue)
    is_primary_key: bool = False

    @classmethod
    def from_pragma(cls, row: Any) -> ColumnInfo:
        """Create from a PRAGMA table_info row."""
        return cls(
            ordinal=row["cid"],
            name=row["name"],
            declared_type=row["type"] or "",
            not_null=bool(row["notnull"]),
            default=DefaultValue.from_catalog(row["dflt_value"]),
            is_primary_key=bool(row["pk"]),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "ordinal": self.ordinal,
            "name": self.name,
            "type": self.declared_type,
            "not_null": self.not_null,
            "default": self.default.to_dict(),
            "primary_key": self.is_primary_key,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ColumnInfo:
        return cls(
            ordinal=data["ordinal"],
            name=data["name"],
            declared_type=data.get("type", ""),
            not_null=bool(data.get("not_null", False)),
            default=DefaultValue.from_dict(data.get("default")),
            is_primary_key=bool(data.get("primary_key", False)),
        )


@dataclass(frozen=True)
class ForeignKeyRef:
    """Target of a requested foreign key (table + column)."""

    table: str
    column: str

    @classmethod
    def from_value(cls, value: Any) -> ForeignKeyRef | None:
        """Accept a ForeignKeyRef, a {"table", "column"} mapping or None."""
        if value is None or isinstance(value, ForeignKeyRef):
            return value
        return cls(table=value["table"], column=value["column"])


@dataclass(frozen=True)
class ForeignKeyInfo:
    """A foreign key as reported by PRAGMA foreign_key_list.

    Attributes:
        column: Referencing column in the owning table
        ref_table: Referenced table
        ref_column: Referenced column (None means the referenced primary key)
        on_update: ON UPDATE action
        on_delete: ON DELETE action
    """

    column: str
    ref_table: str
    ref_column: str | None
    on_update: str = "NO ACTION"
    on_delete: str = "NO ACTION"

    @classmethod
    def from_pragma(cls, row: Any) -> ForeignKeyInfo:
        return cls(
            column=row["from"],
            ref_table=row["table"],
            ref_column=row["to"],
            on_update=row["on_update"] or "NO ACTION",
            on_delete=row["on_delete"] or "NO ACTION",
        )

    @classmethod
    def from_ref(cls, column: str, ref: ForeignKeyRef) -> ForeignKeyInfo:
        return cls(column=column, ref_table=ref.table, ref_column=ref.column)

    def to_dict(self) -> dict[str, Any]:
        return {
            "from": self.column,
            "table": self.ref_table,
            "to": self.ref_column,
            "on_update": self.on_update,
            "on_delete": self.on_delete,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ForeignKeyInfo:
        return cls(
            column=data["from"],
            ref_table=data["table"],
            ref_column=data.get("to"),
            on_update=data.get("on_update", "NO ACTION"),
            on_delete=data.get("on_delete", "NO ACTION"),
        )


@dataclass(frozen=True)
class IndexInfo:
    """A user index.

    Attributes:
        name: Index name
        table_name: Owning table
        columns: Indexed columns in key order
        unique: Whether the index is UNIQUE
        sql: CREATE INDEX text from the catalog
    """

    name: str
    table_name: str
    columns: tuple[str, ...]
    unique: bool
    sql: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "table": self.table_name,
            "columns": list(self.columns),
            "unique": self.unique,
            "sql": self.sql,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> IndexInfo:
        return cls(
            name=data["name"],
            table_name=data["table"],
            columns=tuple(data.get("columns", ())),
            unique=bool(data.get("unique", False)),
            sql=data.get("sql", ""),
        )


@dataclass(frozen=True)
class TableSchema:
    """A table as captured from the catalog.

    Attributes:
        name: Table name
        sql: CREATE TABLE text exactly as stored in sqlite_master
        columns: Columns in ordinal order
        foreign_keys: Foreign keys declared on the table
        indexes: User indexes on the table
    """

    name: str
    sql: str
    columns: tuple[ColumnInfo, ...] = ()
    foreign_keys: tuple[ForeignKeyInfo, ...] = ()
    indexes: tuple[IndexInfo, ...] = ()

    def column(self, name: str) -> ColumnInfo | None:
        for col in self.columns:
            if col.name == name:
                return col
        return None

    @property
    def column_names(self) -> list[str]:
        return [col.name for col in self.columns]

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "sql": self.sql,
            "columns": [col.to_dict() for col in self.columns],
            "foreign_keys": [fk.to_dict() for fk in self.foreign_keys],
            "indexes": [idx.to_dict() for idx in self.indexes],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TableSchema:
        return cls(
            name=data["name"],
            sql=data["sql"],
            columns=tuple(ColumnInfo.from_dict(c) for c in data.get("columns", [])),
            foreign_keys=tuple(ForeignKeyInfo.from_dict(f) for f in data.get("foreign_keys", [])),
            indexes=tuple(IndexInfo.from_dict(i) for i in data.get("indexes", [])),
        )


@dataclass(frozen=True)
class ColumnDefinition:
    """Input column for create_table / add_column.

    Attributes:
        name: Column name
        type: Declared type (must pass the type allow-list)
        constraints: Optional raw constraint clause (e.g. "NOT NULL DEFAULT 0")
        foreign_key: Optional referenced table/column
    """

    name: str
    type: str
    constraints: str | None = None
    foreign_key: ForeignKeyRef | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ColumnDefinition:
        fk = data.get("foreign_key", data.get("foreignKey"))
        return cls(
            name=data["name"],
            type=data["type"],
            constraints=data.get("constraints"),
            foreign_key=ForeignKeyRef.from_value(fk),
        )


class _Unset:
    """Marker for 'leave unchanged'."""

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET: Any = _Unset()


@dataclass(frozen=True)
class ColumnChanges:
    """Requested changes for modify_column.

    Attributes:
        type: New declared type, or None to keep the current type
        not_null: New NOT NULL flag, or None to keep the current flag
        foreign_key: New foreign key target; None removes the existing foreign
            key on the column, UNSET leaves it unchanged
    """

    type: str | None = None
    not_null: bool | None = None
    foreign_key: Any = UNSET

    @property
    def changes_foreign_key(self) -> bool:
        return self.foreign_key is not UNSET

    @property
    def removes_foreign_key(self) -> bool:
        return self.foreign_key is None

    @property
    def is_empty(self) -> bool:
        return self.type is None and self.not_null is None and not self.changes_foreign_key

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ColumnChanges:
        fk: Any = UNSET
        for key in ("foreign_key", "foreignKey"):
            if key in data:
                fk = ForeignKeyRef.from_value(data[key])
        not_null = data.get("not_null", data.get("notNull"))
        return cls(type=data.get("type"), not_null=not_null, foreign_key=fk)


@dataclass
class ValidationResult:
    """Outcome of validate_column_changes.

    Attributes:
        valid: True when no conflicting rows were found
        errors: Human-readable message per failed check
        conflicting_rows: Total conflicting rows across all checks
    """

    valid: bool = True
    errors: list[str] = field(default_factory=list)
    conflicting_rows: int = 0

    def add_conflict(self, message: str, count: int) -> None:
        self.valid = False
        self.errors.append(message)
        self.conflicting_rows += count
