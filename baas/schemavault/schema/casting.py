"""
Casting-safety predicate for column type changes.

Before a column is rebuilt with a numeric type, every existing value is
checked with is_castable(). The predicate is registered on the SQLite
connection as the SQL function ``sv_castable(value, kind)`` so counting
unsafe rows is a single query.

Rules:
    INTEGER kind: NULL, integers, integral floats, and text holding a base-10
        integer literal (surrounding whitespace allowed) are safe.
    REAL kind: NULL, integers, finite floats, and text holding a finite
        decimal/scientific literal are safe.
    BLOB values are never safe.
"""

from __future__ import annotations

import math
import re
from typing import Any

INTEGER_KIND = "integer"
REAL_KIND = "real"

# Declared base types that trigger a casting check, mapped to the numeric kind.
NUMERIC_KINDS = {
    "INTEGER": INTEGER_KIND,
    "INT": INTEGER_KIND,
    "BIGINT": INTEGER_KIND,
    "REAL": REAL_KIND,
    "FLOAT": REAL_KIND,
    "DOUBLE": REAL_KIND,
    "NUMERIC": REAL_KIND,
    "DECIMAL": REAL_KIND,
}

SQL_FUNCTION_NAME = "sv_castable"

_INTEGER_TEXT_RE = re.compile(r"^[+-]?\d+$")
_REAL_TEXT_RE = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?$")


def numeric_kind(declared_type: str | None) -> str | None:
    """Return the numeric kind for a declared type, or None if not numeric."""
    if not declared_type:
        return None
    base = declared_type.split("(")[0].strip().upper()
    return NUMERIC_KINDS.get(base)


def is_castable(value: Any, kind: str) -> bool:
    """Whether value converts to the numeric kind without loss."""
    if value is None:
        return True
    if isinstance(value, (bytes, bytearray, memoryview)):
        return False
    if isinstance(value, bool):
        return True
    if isinstance(value, int):
        return True
    if isinstance(value, float):
        if not math.isfinite(value):
            return False
        return value.is_integer() if kind == INTEGER_KIND else True
    if isinstance(value, str):
        text = value.strip()
        if kind == INTEGER_KIND:
            return bool(_INTEGER_TEXT_RE.match(text))
        if not _REAL_TEXT_RE.match(text):
            return False
        return math.isfinite(float(text))
    return False


def sql_castable(value: Any, kind: str) -> int:
    """SQL-callable wrapper returning 1/0."""
    return 1 if is_castable(value, kind) else 0
