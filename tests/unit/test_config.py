"""
Unit tests for environment-based configuration.
"""

import pytest

from baas.schemavault.config import (
    BlobBackend,
    EngineConfig,
    SnapshotConfig,
    StorageConfig,
)

ENV_VARS = [
    "DB_PATH",
    "SQLITE_WAL_MODE",
    "SQLITE_BUSY_TIMEOUT_MS",
    "S3_BUCKET",
    "S3_REGION",
    "AWS_REGION",
    "S3_ENDPOINT",
    "S3_SNAPSHOT_PREFIX",
    "AWS_ACCESS_KEY_ID",
    "AWS_SECRET_ACCESS_KEY",
    "SNAPSHOT_BLOB_BACKEND",
    "SNAPSHOT_BLOB_TIMEOUT_SECONDS",
    "SNAPSHOT_KEEP_COUNT",
    "SNAPSHOT_PRE_CHANGE",
    "LOG_LEVEL",
    "LOG_FORMAT",
]


class TestEngineConfig:
    """Tests for EngineConfig."""

    @pytest.fixture(autouse=True)
    def clean_env(self, monkeypatch, tmp_path):
        """Start every test from an empty environment."""
        for name in ENV_VARS:
            monkeypatch.delenv(name, raising=False)
        monkeypatch.setenv("DB_PATH", str(tmp_path / "app.db"))

    def test_defaults(self, tmp_path):
        """Unset variables fall back to local-development defaults."""
        config = EngineConfig.from_env()

        assert config.storage.db_path == str(tmp_path / "app.db")
        assert config.storage.wal_mode is True
        assert config.snapshot.blob_backend == BlobBackend.NONE
        assert config.snapshot.keep_count == 50
        assert config.snapshot.pre_change_enabled is True
        assert config.s3.snapshot_prefix == "snapshots"
        assert config.observability.log_format == "json"

    def test_overrides(self, monkeypatch):
        """Environment variables override defaults."""
        monkeypatch.setenv("SNAPSHOT_BLOB_BACKEND", "S3")
        monkeypatch.setenv("S3_BUCKET", "backups")
        monkeypatch.setenv("S3_SNAPSHOT_PREFIX", "app-a/snapshots")
        monkeypatch.setenv("SNAPSHOT_KEEP_COUNT", "5")
        monkeypatch.setenv("SNAPSHOT_PRE_CHANGE", "false")
        monkeypatch.setenv("SQLITE_WAL_MODE", "false")

        config = EngineConfig.from_env()

        assert config.snapshot.blob_backend == BlobBackend.S3
        assert config.s3.bucket == "backups"
        assert config.s3.snapshot_prefix == "app-a/snapshots"
        assert config.snapshot.keep_count == 5
        assert config.snapshot.pre_change_enabled is False
        assert config.storage.wal_mode is False

    def test_invalid_backend(self, monkeypatch):
        """Unknown blob backends are rejected."""
        monkeypatch.setenv("SNAPSHOT_BLOB_BACKEND", "ftp")

        with pytest.raises(ValueError, match="SNAPSHOT_BLOB_BACKEND"):
            SnapshotConfig.from_env()

    @pytest.mark.parametrize(
        "config",
        [
            EngineConfig(storage=StorageConfig(db_path="")),
            EngineConfig(snapshot=SnapshotConfig(keep_count=0)),
            EngineConfig(snapshot=SnapshotConfig(blob_timeout_seconds=0)),
        ],
    )
    def test_validate_rejects(self, config):
        """Inconsistent settings fail validation."""
        with pytest.raises(ValueError):
            config.validate()

    def test_invalid_log_format(self, monkeypatch):
        """Only json and text log formats are supported."""
        monkeypatch.setenv("LOG_FORMAT", "xml")

        with pytest.raises(ValueError, match="LOG_FORMAT"):
            EngineConfig.from_env()
