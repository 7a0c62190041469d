"""
Schema module for SchemaVault.

This module provides the structured schema model and the managers that
change it:
- Catalog types (TableSchema, ColumnInfo, ForeignKeyInfo, IndexInfo)
- Identifier and type validation
- DDL rendering
- SchemaManager (tables and columns) in schema.manager
- IndexManager in schema.indexes

Invariants:
    - Every user-supplied name and type is validated before it reaches DDL
    - System tables are never created, altered or dropped
    - Structural changes that SQLite cannot do in place are atomic rebuilds

How to change safely:
    - Add new catalog fields with defaults (old snapshots must still load)
    - Route all new DDL through ddl.py so escaping stays in one place
"""

from .casting import is_castable, numeric_kind
from .identifiers import (
    SYSTEM_TABLES,
    ensure_not_system_table,
    escape_identifier,
    is_system_table,
    is_valid_identifier,
    validate_and_escape_identifier,
    validate_and_normalize_type,
)
from .types import (
    UNSET,
    ColumnChanges,
    ColumnDefinition,
    ColumnInfo,
    DefaultKind,
    DefaultValue,
    ForeignKeyInfo,
    ForeignKeyRef,
    IndexInfo,
    TableSchema,
    ValidationResult,
)

__all__ = [
    "SYSTEM_TABLES",
    "UNSET",
    "ColumnChanges",
    "ColumnDefinition",
    "ColumnInfo",
    "DefaultKind",
    "DefaultValue",
    "ForeignKeyInfo",
    "ForeignKeyRef",
    "IndexInfo",
    "TableSchema",
    "ValidationResult",
    "ensure_not_system_table",
    "escape_identifier",
    "is_castable",
    "is_system_table",
    "is_valid_identifier",
    "numeric_kind",
    "validate_and_escape_identifier",
    "validate_and_normalize_type",
]
