"""
Unit tests for configuration loading.

Tests cover:
- Defaults
- Environment overrides
- Validation failures
- API settings
"""

import pytest
from pydantic import ValidationError

from ops.backup_server.api.settings import ApiSettings
from ops.backup_server.config import (
    BackupConfig,
    S3Config,
    SchedulerConfig,
    ServerConfig,
    StorageBackend,
)

ENV_VARS = [
    "STORAGE_BACKEND",
    "S3_BUCKET",
    "S3_BACKUP_PREFIX",
    "S3_ENDPOINT",
    "DATABASE_PATH",
    "BACKUP_WORK_DIR",
    "BACKUP_SKIP_UNCHANGED",
    "BACKUP_HEADER_READ_BYTES",
    "BACKUP_MAX_HEADER_BYTES",
    "SCHEDULER_ENABLED",
    "SCHEDULER_FULL_INTERVAL_SECONDS",
    "SCHEDULER_INCREMENTAL_INTERVAL_SECONDS",
]


@pytest.fixture
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


class TestServerConfig:
    """Tests for ServerConfig.from_env."""

    def test_defaults(self, clean_env):
        config = ServerConfig.from_env()

        assert config.storage_backend == StorageBackend.S3
        assert config.s3.bucket == "intranet-backups"
        assert config.s3.prefix == "backups"
        assert config.scheduler.full_interval_seconds == 7 * 24 * 3600
        assert config.scheduler.incremental_interval_seconds == 3600
        assert config.backup.skip_unchanged is False

    def test_environment_overrides(self, clean_env, tmp_path):
        clean_env.setenv("STORAGE_BACKEND", "MEMORY")
        clean_env.setenv("DATABASE_PATH", str(tmp_path / "app.db"))
        clean_env.setenv("BACKUP_WORK_DIR", str(tmp_path / "work"))
        clean_env.setenv("BACKUP_SKIP_UNCHANGED", "true")
        clean_env.setenv("S3_BACKUP_PREFIX", "/nightly/")
        clean_env.setenv("SCHEDULER_ENABLED", "false")

        config = ServerConfig.from_env()

        assert config.storage_backend == StorageBackend.MEMORY
        assert config.database.path == str(tmp_path / "app.db")
        assert config.backup.work_dir == str(tmp_path / "work")
        assert config.backup.skip_unchanged is True
        assert config.s3.prefix == "nightly"
        assert config.scheduler.enabled is False

    def test_invalid_backend(self, clean_env):
        clean_env.setenv("STORAGE_BACKEND", "ftp")

        with pytest.raises(ValueError, match="STORAGE_BACKEND"):
            ServerConfig.from_env()

    def test_header_bytes_must_fit(self, clean_env):
        clean_env.setenv("BACKUP_HEADER_READ_BYTES", "4096")
        clean_env.setenv("BACKUP_MAX_HEADER_BYTES", "1024")

        with pytest.raises(ValueError, match="BACKUP_MAX_HEADER_BYTES"):
            ServerConfig.from_env()

    def test_scheduler_intervals_positive(self, clean_env):
        clean_env.setenv("SCHEDULER_INCREMENTAL_INTERVAL_SECONDS", "0")

        with pytest.raises(ValueError, match="Scheduler"):
            ServerConfig.from_env()

    def test_disabled_scheduler_skips_interval_check(self):
        config = ServerConfig(
            storage_backend=StorageBackend.MEMORY,
            scheduler=SchedulerConfig(enabled=False, full_interval_seconds=0),
        )

        config.validate()

    def test_empty_bucket_rejected(self):
        config = ServerConfig(s3=S3Config(bucket=""))

        with pytest.raises(ValueError, match="S3_BUCKET"):
            config.validate()

    def test_timeouts_positive(self):
        config = ServerConfig(
            storage_backend=StorageBackend.MEMORY,
            backup=BackupConfig(storage_timeout_seconds=0),
        )

        with pytest.raises(ValueError, match="timeouts"):
            config.validate()

    def test_log_size_minimum(self):
        config = ServerConfig(
            storage_backend=StorageBackend.MEMORY,
            backup=BackupConfig(log_size=0),
        )

        with pytest.raises(ValueError, match="BACKUP_LOG_SIZE"):
            config.validate()


class TestApiSettings:
    """Tests for ApiSettings."""

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("BACKUP_API_PORT", raising=False)

        settings = ApiSettings()

        assert settings.port == 8080
        assert settings.keepalive_seconds == 15

    def test_env_prefix(self, monkeypatch):
        monkeypatch.setenv("BACKUP_API_PORT", "9090")

        assert ApiSettings().port == 9090

    def test_queue_size_minimum(self):
        with pytest.raises(ValidationError):
            ApiSettings(subscriber_queue_size=1)
