"""
Error types for SchemaVault.

This module defines all exception types raised by the engine:
- SchemaVaultError: Base exception
- InvalidIdentifierError: Name fails the identifier allow-list
- InvalidTypeError: Declared column type is not allowed
- SystemTableProtectedError: Mutation of a reserved system table
- ValidationFailedError: Column change conflicts with existing rows
- NotFoundError: Table, column, index or snapshot is absent
- AlreadyExistsError: Object with that name already exists
- InvalidRequestError: Malformed request (empty column list, etc.)
- StorageDegradedError: Blob-store operation failed (non-fatal)
- ReconstructionError: Table reconstruction was rolled back
- RestoreFailedError: Snapshot restore could not rebuild the schema

Invariants:
    - All errors inherit from SchemaVaultError
    - Validation errors are raised before any store mutation
    - StorageDegradedError never escapes a snapshot operation
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict, List, Optional

if TYPE_CHECKING:
    from .schema.types import ValidationResult


class SchemaVaultError(Exception):
    """Base exception for all SchemaVault errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "SCHEMAVAULT_ERROR"
        self.details = details or {}


class InvalidIdentifierError(SchemaVaultError):
    """Identifier fails the allow-list, length or reserved-word rule."""

    def __init__(self, message: str, kind: str, name: Any) -> None:
        super().__init__(
            message,
            code="INVALID_IDENTIFIER",
            details={"kind": kind, "name": name},
        )
        self.kind = kind
        self.name = name


class InvalidTypeError(SchemaVaultError):
    """Declared column type is not in the type allow-list."""

    def __init__(self, message: str, declared_type: Any) -> None:
        super().__init__(
            message,
            code="INVALID_TYPE",
            details={"type": declared_type},
        )
        self.declared_type = declared_type


class SystemTableProtectedError(SchemaVaultError):
    """Attempted mutation of a reserved system table."""

    def __init__(self, table_name: str, operation: str = "modify") -> None:
        super().__init__(
            f"Cannot {operation} system table: {table_name}",
            code="SYSTEM_TABLE_PROTECTED",
            details={"table": table_name, "operation": operation},
        )
        self.table_name = table_name


class ValidationFailedError(SchemaVaultError):
    """Column change validation found rows that conflict with the change.

    Raised when:
    - NOT NULL is requested and NULLs exist
    - A foreign key is requested and orphaned values exist
    - A numeric type is requested and values do not cast cleanly
    """

    def __init__(self, result: ValidationResult) -> None:
        super().__init__(
            f"Validation failed: {'; '.join(result.errors)}",
            code="VALIDATION_FAILED",
            details={
                "errors": list(result.errors),
                "conflicting_rows": result.conflicting_rows,
            },
        )
        self.result = result

    @property
    def errors(self) -> List[str]:
        return list(self.result.errors)

    @property
    def conflicting_rows(self) -> int:
        return self.result.conflicting_rows


class NotFoundError(SchemaVaultError):
    """Table, column, index or snapshot does not exist."""

    def __init__(self, kind: str, name: str) -> None:
        super().__init__(
            f"{kind.capitalize()} not found: {name}",
            code="NOT_FOUND",
            details={"kind": kind, "name": name},
        )
        self.kind = kind
        self.name = name


class AlreadyExistsError(SchemaVaultError):
    """Object with the requested name already exists."""

    def __init__(self, kind: str, name: str) -> None:
        super().__init__(
            f'{kind.capitalize()} "{name}" already exists',
            code="ALREADY_EXISTS",
            details={"kind": kind, "name": name},
        )
        self.kind = kind
        self.name = name


class InvalidRequestError(SchemaVaultError):
    """Request is malformed (missing columns, conflicting names, ...)."""

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message, code="INVALID_REQUEST", details=details)


class StorageDegradedError(SchemaVaultError):
    """Blob-store operation failed.

    Non-fatal: snapshot creation and restore continue schema-only and log
    a warning.
    """

    def __init__(self, message: str, key: Optional[str] = None) -> None:
        super().__init__(message, code="STORAGE_DEGRADED", details={"key": key})
        self.key = key


class ReconstructionError(SchemaVaultError):
    """Table reconstruction failed and was rolled back."""

    def __init__(self, table_name: str, reason: str) -> None:
        super().__init__(
            f"Reconstruction of table {table_name} failed: {reason}",
            code="RECONSTRUCTION_FAILED",
            details={"table": table_name, "reason": reason},
        )
        self.table_name = table_name


class RestoreFailedError(SchemaVaultError):
    """Snapshot restore failed before any data was reinserted.

    Raised when the stored table metadata cannot be parsed or when dropping
    and recreating tables fails. The structural step is transactional, so
    the schema is left as it was before the restore.
    """

    def __init__(self, snapshot_id: str, reason: str) -> None:
        super().__init__(
            f"Restore of snapshot {snapshot_id} failed: {reason}",
            code="RESTORE_FAILED",
            details={"snapshot_id": snapshot_id, "reason": reason},
        )
        self.snapshot_id = snapshot_id
