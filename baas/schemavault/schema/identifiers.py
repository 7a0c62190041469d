"""
Identifier validation for SchemaVault.

Every user-supplied table, column and index name and every declared type
passes through this module before it is placed into DDL text. Names are
checked against an allow-list pattern, a length limit and a reserved-word
set, then double-quoted.

Invariants:
    - Functions are pure: no I/O, no global state
    - An escaped identifier is always safe to interpolate into SQL
    - System tables can never be created, altered or dropped by user calls
"""

from __future__ import annotations

import re
from typing import Iterable

from ..errors import InvalidIdentifierError, InvalidTypeError, SystemTableProtectedError

MAX_IDENTIFIER_LENGTH = 64

VALID_IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

SQL_RESERVED_WORDS = frozenset(
    {
        "SELECT", "INSERT", "UPDATE", "DELETE", "CREATE", "DROP", "ALTER", "TABLE",
        "INDEX", "VIEW", "TRIGGER", "PROCEDURE", "FUNCTION", "DATABASE", "SCHEMA",
        "FROM", "WHERE", "JOIN", "INNER", "LEFT", "RIGHT", "OUTER", "ON", "UNION",
        "GROUP", "ORDER", "BY", "HAVING", "LIMIT", "OFFSET", "INTO", "VALUES", "SET",
        "AND", "OR", "NOT", "NULL", "TRUE", "FALSE", "CASE", "WHEN", "THEN", "ELSE",
        "END", "IF", "EXISTS", "DISTINCT", "AS", "IS", "IN", "BETWEEN", "LIKE", "GLOB",
        "REGEXP", "MATCH", "ESCAPE", "ISNULL", "NOTNULL", "COLLATE", "ASC", "DESC",
        "PRIMARY", "FOREIGN", "KEY", "REFERENCES", "CONSTRAINT", "UNIQUE", "CHECK",
        "DEFAULT", "AUTOINCREMENT", "ROWID", "OID", "_ROWID_",
    }
)

ALLOWED_TYPES = frozenset(
    {
        "TEXT", "INTEGER", "REAL", "BLOB", "NUMERIC", "VARCHAR", "CHAR", "BOOLEAN",
        "DATE", "DATETIME", "TIMESTAMP", "DECIMAL", "FLOAT", "DOUBLE",
    }
)

_TYPE_PATTERN = re.compile(r"^([A-Za-z]+)\s*(\(\s*\d+\s*(,\s*\d+\s*)?\))?$")

# Tables owned by the platform itself (lower-case). User DDL may never touch them.
SYSTEM_TABLES = frozenset(
    {
        "admins",
        "sessions",
        "schema_snapshots",
        "schema_snapshot_counter",
        "d1_migrations",
        "api_keys",
        "user_sessions",
        "oauth_providers",
        "app_settings",
        "table_policies",
        "hooks",
        "event_queue",
        "realtime_subscriptions",
        "custom_queries",
        "custom_query_logs",
        "push_subscriptions",
        "notification_rules",
        "notification_templates",
        "notification_logs",
        "vapid_config",
    }
)

# Bookkeeping tables of the snapshot engine. Never captured in a snapshot.
SNAPSHOT_TABLES = frozenset({"schema_snapshots", "schema_snapshot_counter"})

_FORBIDDEN_CONSTRAINT_TOKENS = (";", "--", "/*", "*/")
_PRIMARY_KEY_RE = re.compile(r"\bPRIMARY\s+KEY\b", re.IGNORECASE)


def is_valid_identifier(identifier: object) -> bool:
    """Check a name against the pattern, length limit and reserved words."""
    if not identifier or not isinstance(identifier, str):
        return False
    if len(identifier) > MAX_IDENTIFIER_LENGTH:
        return False
    if not VALID_IDENTIFIER_PATTERN.match(identifier):
        return False
    return identifier.upper() not in SQL_RESERVED_WORDS


def escape_identifier(identifier: str) -> str:
    """Double-quote an identifier, doubling embedded quotes."""
    return '"' + identifier.replace('"', '""') + '"'


def validate_and_escape_identifier(kind: str, name: object) -> str:
    """Validate a table/column/index name and return it escaped.

    Args:
        kind: "table", "column" or "index" (used in the error message)
        name: Candidate identifier

    Returns:
        Double-quoted identifier

    Raises:
        InvalidIdentifierError: If the name fails validation
    """
    if not is_valid_identifier(name):
        raise InvalidIdentifierError(
            f'Invalid {kind} name: "{name}". {kind.capitalize()} names must start with a '
            "letter or underscore, contain only letters, numbers, and underscores, "
            f"be at most {MAX_IDENTIFIER_LENGTH} characters, and not be SQL reserved words.",
            kind=kind,
            name=name,
        )
    return escape_identifier(name)  # type: ignore[arg-type]


def validate_and_escape_identifiers(kind: str, names: Iterable[object]) -> list[str]:
    return [validate_and_escape_identifier(kind, name) for name in names]


def is_valid_type(declared_type: object) -> bool:
    if not declared_type or not isinstance(declared_type, str):
        return False
    match = _TYPE_PATTERN.match(declared_type.strip())
    if not match:
        return False
    return match.group(1).upper() in ALLOWED_TYPES


def validate_and_normalize_type(declared_type: object) -> str:
    """Validate a declared column type and return it upper-cased.

    Accepts parameterized forms such as VARCHAR(255) and DECIMAL(10, 2).

    Raises:
        InvalidTypeError: If the base type is not in the allow-list
    """
    if not is_valid_type(declared_type):
        raise InvalidTypeError(f'Invalid SQL data type: "{declared_type}"', declared_type)
    return " ".join(str(declared_type).split()).upper()


def validate_constraints(clause: str | None) -> str | None:
    """Validate a raw column constraint clause.

    The clause is appended verbatim to a column definition, so statement
    separators and comments are rejected. A user column may not declare a
    primary key: every user table is keyed by its implicit id column.

    Raises:
        InvalidTypeError: If the clause contains forbidden tokens
    """
    if clause is None:
        return None
    clause = clause.strip()
    if not clause:
        return None
    for token in _FORBIDDEN_CONSTRAINT_TOKENS:
        if token in clause:
            raise InvalidTypeError(f'Invalid column constraints: "{clause}"', clause)
    if _PRIMARY_KEY_RE.search(clause):
        raise InvalidTypeError(
            f'Invalid column constraints: "{clause}". User tables use the implicit id primary key',
            clause,
        )
    return clause


def is_system_table(table_name: str) -> bool:
    # SQLite table names are case-insensitive
    return isinstance(table_name, str) and table_name.lower() in SYSTEM_TABLES


def ensure_not_system_table(table_name: str, operation: str = "modify") -> None:
    """Raise SystemTableProtectedError for reserved tables."""
    if is_system_table(table_name):
        raise SystemTableProtectedError(table_name, operation)
