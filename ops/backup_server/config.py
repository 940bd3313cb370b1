"""
Configuration management for the Backup Server.

All configuration is done via environment variables - no config files inside containers.
This module provides typed configuration classes with validation. HTTP-layer
settings live in api/settings.py (pydantic-settings, BACKUP_API_ prefix).

Invariants:
    - All settings have sensible defaults for local development
    - Production deployments MUST set explicit values for critical settings
    - Secrets are never logged or exposed in error messages

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Deprecate settings by logging warnings but continuing to support them
"""

from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


class StorageBackend(Enum):
    """Supported artifact store backends."""

    S3 = "s3"
    MEMORY = "memory"


@dataclass(frozen=True)
class S3Config:
    """S3 configuration for backup artifacts.

    Attributes:
        bucket: S3 bucket name
        region: AWS region
        endpoint_url: Custom endpoint URL (for MinIO)
        prefix: Key prefix under which artifacts are stored
        public_url: Base URL for operator-facing links (s3:// links if unset)
        access_key_id: AWS access key ID (optional, uses AWS credential chain)
        secret_access_key: AWS secret access key (optional)
    """

    bucket: str = "intranet-backups"
    region: str = "us-east-1"
    endpoint_url: str | None = None
    prefix: str = "backups"
    public_url: str | None = None
    access_key_id: str | None = None
    secret_access_key: str | None = None

    @classmethod
    def from_env(cls) -> S3Config:
        """Load configuration from environment variables."""
        return cls(
            bucket=os.getenv("S3_BUCKET", "intranet-backups"),
            region=os.getenv("S3_REGION", os.getenv("AWS_REGION", "us-east-1")),
            endpoint_url=os.getenv("S3_ENDPOINT"),
            prefix=os.getenv("S3_BACKUP_PREFIX", "backups").strip("/"),
            public_url=os.getenv("S3_PUBLIC_URL"),
            access_key_id=os.getenv("AWS_ACCESS_KEY_ID"),
            secret_access_key=os.getenv("AWS_SECRET_ACCESS_KEY"),
        )


@dataclass(frozen=True)
class DatabaseConfig:
    """Target database configuration.

    Attributes:
        path: SQLite database file to back up and restore
        wal_mode: SQLite WAL mode enabled
        busy_timeout_ms: SQLite busy timeout in milliseconds
        change_log_enabled: Install change capture triggers on startup
    """

    path: str = "/var/lib/intranet/intranet.db"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000
    change_log_enabled: bool = True

    @classmethod
    def from_env(cls) -> DatabaseConfig:
        """Load configuration from environment variables."""
        return cls(
            path=os.getenv("DATABASE_PATH", "/var/lib/intranet/intranet.db"),
            wal_mode=_env_bool("SQLITE_WAL_MODE", "true"),
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
            change_log_enabled=_env_bool("CHANGE_LOG_ENABLED", "true"),
        )


@dataclass(frozen=True)
class BackupConfig:
    """Backup and restore job configuration.

    Attributes:
        work_dir: Directory for temporary dump and download files
        storage_timeout_seconds: Bound on each artifact store call
        phase_timeout_seconds: Bound on each database/file phase
        skip_unchanged: Skip uploading a full backup identical to the latest one
        header_read_bytes: Initial byte range read when listing tables
        max_header_bytes: Largest header accepted before declaring corruption
        history_size: Finished jobs kept in memory
        log_size: Operation log entries kept in memory
    """

    work_dir: str = field(default_factory=lambda: os.path.join(tempfile.gettempdir(), "backup-server"))
    storage_timeout_seconds: float = 300.0
    phase_timeout_seconds: float = 1800.0
    skip_unchanged: bool = False
    header_read_bytes: int = 64 * 1024
    max_header_bytes: int = 8 * 1024 * 1024
    history_size: int = 50
    log_size: int = 200

    @classmethod
    def from_env(cls) -> BackupConfig:
        """Load configuration from environment variables."""
        return cls(
            work_dir=os.getenv(
                "BACKUP_WORK_DIR", os.path.join(tempfile.gettempdir(), "backup-server")
            ),
            storage_timeout_seconds=float(os.getenv("BACKUP_STORAGE_TIMEOUT_SECONDS", "300")),
            phase_timeout_seconds=float(os.getenv("BACKUP_PHASE_TIMEOUT_SECONDS", "1800")),
            skip_unchanged=_env_bool("BACKUP_SKIP_UNCHANGED", "false"),
            header_read_bytes=int(os.getenv("BACKUP_HEADER_READ_BYTES", str(64 * 1024))),
            max_header_bytes=int(os.getenv("BACKUP_MAX_HEADER_BYTES", str(8 * 1024 * 1024))),
            history_size=int(os.getenv("BACKUP_HISTORY_SIZE", "50")),
            log_size=int(os.getenv("BACKUP_LOG_SIZE", "200")),
        )


@dataclass(frozen=True)
class SchedulerConfig:
    """Scheduled backup configuration.

    Attributes:
        enabled: Whether the scheduler runs
        full_interval_seconds: Interval between scheduled full backups
        incremental_interval_seconds: Interval between incremental exports
        tick_seconds: How often the scheduler checks for due jobs
    """

    enabled: bool = True
    full_interval_seconds: int = 7 * 24 * 3600  # weekly
    incremental_interval_seconds: int = 3600  # hourly
    tick_seconds: int = 30

    @classmethod
    def from_env(cls) -> SchedulerConfig:
        """Load configuration from environment variables."""
        return cls(
            enabled=_env_bool("SCHEDULER_ENABLED", "true"),
            full_interval_seconds=int(
                os.getenv("SCHEDULER_FULL_INTERVAL_SECONDS", str(7 * 24 * 3600))
            ),
            incremental_interval_seconds=int(
                os.getenv("SCHEDULER_INCREMENTAL_INTERVAL_SECONDS", "3600")
            ),
            tick_seconds=int(os.getenv("SCHEDULER_TICK_SECONDS", "30")),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Observability and logging configuration.

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
class ServerConfig:
    """Complete server configuration.

    This aggregates all configuration sections and provides validation.

    Attributes:
        storage_backend: Which artifact store to use
        s3: S3 configuration (if storage_backend is S3)
        database: Target database configuration
        backup: Job configuration
        scheduler: Scheduler configuration
        observability: Observability configuration
    """

    storage_backend: StorageBackend = StorageBackend.S3
    s3: S3Config = field(default_factory=S3Config)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    backup: BackupConfig = field(default_factory=BackupConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> ServerConfig:
        """Load complete configuration from environment variables.

        Returns:
            ServerConfig with all sections populated from environment.

        Raises:
            ValueError: If required configuration is missing or invalid.
        """
        backend_str = os.getenv("STORAGE_BACKEND", "s3").lower()
        try:
            storage_backend = StorageBackend(backend_str)
        except ValueError:
            raise ValueError(
                f"Invalid STORAGE_BACKEND '{backend_str}'. Must be one of: s3, memory"
            )

        config = cls(
            storage_backend=storage_backend,
            s3=S3Config.from_env(),
            database=DatabaseConfig.from_env(),
            backup=BackupConfig.from_env(),
            scheduler=SchedulerConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if self.storage_backend == StorageBackend.S3 and not self.s3.bucket:
            raise ValueError("S3_BUCKET is required when STORAGE_BACKEND=s3")

        if not self.database.path:
            raise ValueError("DATABASE_PATH is required")

        if self.backup.storage_timeout_seconds <= 0 or self.backup.phase_timeout_seconds <= 0:
            raise ValueError("Backup timeouts must be positive")

        if self.backup.header_read_bytes <= 0:
            raise ValueError("BACKUP_HEADER_READ_BYTES must be positive")

        if self.backup.max_header_bytes < self.backup.header_read_bytes:
            raise ValueError("BACKUP_MAX_HEADER_BYTES must be >= BACKUP_HEADER_READ_BYTES")

        if self.backup.log_size < 1:
            raise ValueError("BACKUP_LOG_SIZE must be at least 1")

        if self.scheduler.enabled and (
            self.scheduler.full_interval_seconds <= 0
            or self.scheduler.incremental_interval_seconds <= 0
            or self.scheduler.tick_seconds <= 0
        ):
            raise ValueError("Scheduler intervals must be positive")

        if self.storage_backend == StorageBackend.MEMORY:
            logger.warning("STORAGE_BACKEND=memory: backups are lost when the process exits")

        if not os.path.exists(self.database.path):
            logger.warning(
                f"Database does not exist: {self.database.path}. "
                "It will be created on first write."
            )

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Server configuration loaded",
            extra={
                "storage_backend": self.storage_backend.value,
                "s3_bucket": self.s3.bucket
                if self.storage_backend == StorageBackend.S3
                else None,
                "s3_prefix": self.s3.prefix,
                "s3_endpoint": self.s3.endpoint_url,
                "database_path": self.database.path,
                "change_log_enabled": self.database.change_log_enabled,
                "work_dir": self.backup.work_dir,
                "skip_unchanged": self.backup.skip_unchanged,
                "scheduler_enabled": self.scheduler.enabled,
                "log_level": self.observability.log_level,
            },
        )
