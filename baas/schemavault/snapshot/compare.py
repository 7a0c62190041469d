"""
Snapshot comparison for SchemaVault.

Compares the captured table schemas of two snapshots and reports which
tables were added, removed or modified. A table counts as modified when its
stored CREATE TABLE text differs; column-level differences are reported in
the change message.

Example:
    >>> comparison = await snapshots.compare_snapshots(old_id, new_id)
    >>> for change in comparison.changes:
    ...     print(change)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from ..schema.types import TableSchema


class TableChangeKind(Enum):
    """Kinds of table-level changes between two snapshots."""

    ADDED = "added"
    REMOVED = "removed"
    MODIFIED = "modified"


@dataclass
class TableChange:
    """A single table-level change.

    Attributes:
        kind: The type of change
        table: Table name
        old_sql: CREATE TABLE text in the older snapshot (None if added)
        new_sql: CREATE TABLE text in the newer snapshot (None if removed)
        message: Human-readable description of the change
    """

    kind: TableChangeKind
    table: str
    old_sql: Optional[str] = None
    new_sql: Optional[str] = None
    message: str = ""

    def __str__(self) -> str:
        return f"{self.kind.name}: {self.table} - {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "table": self.table,
            "old_sql": self.old_sql,
            "new_sql": self.new_sql,
            "message": self.message,
        }


@dataclass
class SnapshotComparison:
    """Result of comparing two snapshots.

    Attributes:
        old_id, old_version: The baseline snapshot
        new_id, new_version: The snapshot compared against the baseline
        changes: Table changes, removed first, then added and modified by name
    """

    old_id: str
    old_version: int
    new_id: str
    new_version: int
    changes: List[TableChange] = field(default_factory=list)

    def _tables(self, kind: TableChangeKind) -> List[str]:
        return [c.table for c in self.changes if c.kind == kind]

    @property
    def added(self) -> List[str]:
        return self._tables(TableChangeKind.ADDED)

    @property
    def removed(self) -> List[str]:
        return self._tables(TableChangeKind.REMOVED)

    @property
    def modified(self) -> List[str]:
        return self._tables(TableChangeKind.MODIFIED)

    @property
    def has_changes(self) -> bool:
        return bool(self.changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "old": {"id": self.old_id, "version": self.old_version},
            "new": {"id": self.new_id, "version": self.new_version},
            "added": self.added,
            "removed": self.removed,
            "modified": self.modified,
            "changes": [c.to_dict() for c in self.changes],
        }


def compare_table_schemas(
    old_tables: Sequence[TableSchema],
    new_tables: Sequence[TableSchema],
) -> List[TableChange]:
    """Compare two captured schema sets.

    Args:
        old_tables: Baseline tables
        new_tables: Tables to compare against the baseline

    Returns:
        List of TableChange objects describing all differences
    """
    changes: List[TableChange] = []

    old_by_name = {t.name: t for t in old_tables}
    new_by_name = {t.name: t for t in new_tables}

    for name in sorted(old_by_name):
        if name not in new_by_name:
            changes.append(TableChange(
                kind=TableChangeKind.REMOVED,
                table=name,
                old_sql=old_by_name[name].sql,
                message=f"Table '{name}' was removed",
            ))

    for name in sorted(new_by_name):
        new_table = new_by_name[name]
        old_table = old_by_name.get(name)
        if old_table is None:
            changes.append(TableChange(
                kind=TableChangeKind.ADDED,
                table=name,
                new_sql=new_table.sql,
                message=f"Table '{name}' added",
            ))
        elif old_table.sql != new_table.sql:
            changes.append(TableChange(
                kind=TableChangeKind.MODIFIED,
                table=name,
                old_sql=old_table.sql,
                new_sql=new_table.sql,
                message=_describe_column_diff(old_table, new_table),
            ))

    return changes


def _describe_column_diff(old_table: TableSchema, new_table: TableSchema) -> str:
    old_names = old_table.column_names
    new_names = new_table.column_names

    parts = []
    added = [n for n in new_names if n not in old_names]
    removed = [n for n in old_names if n not in new_names]
    changed = []
    for name in new_names:
        old_column = old_table.column(name)
        new_column = new_table.column(name)
        if old_column is None or new_column is None:
            continue
        if (
            old_column.declared_type != new_column.declared_type
            or old_column.not_null != new_column.not_null
        ):
            changed.append(name)
    if added:
        parts.append("columns added: " + ", ".join(added))
    if removed:
        parts.append("columns removed: " + ", ".join(removed))
    if changed:
        parts.append("columns changed: " + ", ".join(changed))

    if not parts:
        return "Definition changed"
    return "; ".join(parts)
