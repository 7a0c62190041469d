"""
Configuration management for SchemaVault.

All configuration is done via environment variables - no config files.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Blob storage is optional, the engine degrades to schema-only snapshots
    - Secrets are never logged or exposed in error messages

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Deprecate settings by logging warnings but continuing to support them
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)


class BlobBackend(Enum):
    """Supported snapshot blob-store backends."""

    NONE = "none"
    S3 = "s3"
    MEMORY = "memory"


@dataclass(frozen=True)
class StorageConfig:
    """SQLite storage configuration.

    Attributes:
        db_path: Path to the SQLite database file
        wal_mode: SQLite WAL mode enabled
        busy_timeout_ms: SQLite busy timeout in milliseconds
    """

    db_path: str = "/var/lib/schemavault/app.db"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        return cls(
            db_path=os.getenv("DB_PATH", "/var/lib/schemavault/app.db"),
            wal_mode=os.getenv("SQLITE_WAL_MODE", "true").lower() == "true",
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
        )


@dataclass(frozen=True)
class S3Config:
    """S3 configuration for snapshot payloads.

    Attributes:
        bucket: S3 bucket name
        region: AWS region
        endpoint_url: Custom endpoint URL (for MinIO / R2)
        snapshot_prefix: Key prefix for snapshot payloads
        access_key_id: AWS access key ID (optional, uses AWS credential chain)
        secret_access_key: AWS secret access key (optional)
    """

    bucket: str = "schemavault-storage"
    region: str = "us-east-1"
    endpoint_url: str | None = None
    snapshot_prefix: str = "snapshots"
    access_key_id: str | None = None
    secret_access_key: str | None = None

    @classmethod
    def from_env(cls) -> S3Config:
        """Load configuration from environment variables."""
        return cls(
            bucket=os.getenv("S3_BUCKET", "schemavault-storage"),
            region=os.getenv("S3_REGION", os.getenv("AWS_REGION", "us-east-1")),
            endpoint_url=os.getenv("S3_ENDPOINT"),
            snapshot_prefix=os.getenv("S3_SNAPSHOT_PREFIX", "snapshots"),
            access_key_id=os.getenv("AWS_ACCESS_KEY_ID"),
            secret_access_key=os.getenv("AWS_SECRET_ACCESS_KEY"),
        )


@dataclass(frozen=True)
class SnapshotConfig:
    """Snapshot manager configuration.

    Attributes:
        blob_backend: Where data/schema payloads are written
        blob_timeout_seconds: Upper bound for a single blob read or write
        keep_count: Default number of snapshots kept by pruning
        pre_change_enabled: Whether DDL operations request pre_change snapshots
    """

    blob_backend: BlobBackend = BlobBackend.NONE
    blob_timeout_seconds: float = 30.0
    keep_count: int = 50
    pre_change_enabled: bool = True

    @classmethod
    def from_env(cls) -> SnapshotConfig:
        """Load configuration from environment variables."""
        backend_str = os.getenv("SNAPSHOT_BLOB_BACKEND", "none").lower()
        try:
            blob_backend = BlobBackend(backend_str)
        except ValueError:
            raise ValueError(
                f"Invalid SNAPSHOT_BLOB_BACKEND '{backend_str}'. Must be one of: none, s3, memory"
            )

        return cls(
            blob_backend=blob_backend,
            blob_timeout_seconds=float(os.getenv("SNAPSHOT_BLOB_TIMEOUT_SECONDS", "30")),
            keep_count=int(os.getenv("SNAPSHOT_KEEP_COUNT", "50")),
            pre_change_enabled=os.getenv("SNAPSHOT_PRE_CHANGE", "true").lower() == "true",
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class EngineConfig:
    """Complete engine configuration.

    Attributes:
        storage: SQLite storage configuration
        s3: S3 configuration (used when blob_backend is S3)
        snapshot: Snapshot configuration
        observability: Logging configuration
    """

    storage: StorageConfig = field(default_factory=StorageConfig)
    s3: S3Config = field(default_factory=S3Config)
    snapshot: SnapshotConfig = field(default_factory=SnapshotConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load complete configuration from environment variables.

        Returns:
            EngineConfig with all sections populated from environment.

        Raises:
            ValueError: If required configuration is missing or invalid.
        """
        config = cls(
            storage=StorageConfig.from_env(),
            s3=S3Config.from_env(),
            snapshot=SnapshotConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if not self.storage.db_path:
            raise ValueError("DB_PATH is required")

        if self.snapshot.blob_backend == BlobBackend.S3 and not self.s3.bucket:
            raise ValueError("S3_BUCKET is required when SNAPSHOT_BLOB_BACKEND=s3")

        if self.snapshot.keep_count < 1:
            raise ValueError("SNAPSHOT_KEEP_COUNT must be at least 1")

        if self.snapshot.blob_timeout_seconds <= 0:
            raise ValueError("SNAPSHOT_BLOB_TIMEOUT_SECONDS must be positive")

        if self.observability.log_format not in ("json", "text"):
            raise ValueError("LOG_FORMAT must be one of: json, text")

        db_dir = os.path.dirname(self.storage.db_path)
        if db_dir and not os.path.exists(db_dir):
            logger.warning(
                f"Database directory does not exist: {db_dir}. "
                "It will be created on first connection."
            )

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Engine configuration loaded",
            extra={
                "db_path": self.storage.db_path,
                "wal_mode": self.storage.wal_mode,
                "blob_backend": self.snapshot.blob_backend.value,
                "s3_bucket": self.s3.bucket
                if self.snapshot.blob_backend == BlobBackend.S3
                else None,
                "s3_endpoint": self.s3.endpoint_url,
                "keep_count": self.snapshot.keep_count,
                "log_level": self.observability.log_level,
            },
        )
