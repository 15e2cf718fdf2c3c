"""
Configuration management for the backup server.

All configuration is done via environment variables.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Query ceilings default to the values the backup format was built with
    - Secrets are never logged or exposed in error messages

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Changing a QueryLimits default changes what new snapshots contain;
      old snapshots stay readable by the Time Machine either way
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)


class SourceBackend(Enum):
    """Supported RecordSource backends."""

    SALESFORCE = "salesforce"
    MEMORY = "memory"


@dataclass(frozen=True)
class SourceConfig:
    """Remote system connection configuration.

    Attributes:
        instance_url: Base URL of the Salesforce instance
        access_token: Bearer token (obtaining/refreshing it is handled elsewhere)
        api_version: REST API version
        timeout_seconds: Per-request timeout
    """

    instance_url: str = ""
    access_token: str | None = None
    api_version: str = "58.0"
    timeout_seconds: float = 60.0

    @classmethod
    def from_env(cls) -> SourceConfig:
        """Load configuration from environment variables."""
        return cls(
            instance_url=os.getenv("SALESFORCE_INSTANCE_URL", ""),
            access_token=os.getenv("SALESFORCE_ACCESS_TOKEN"),
            api_version=os.getenv("SALESFORCE_API_VERSION", "58.0"),
            timeout_seconds=float(os.getenv("SALESFORCE_TIMEOUT_SECONDS", "60")),
        )


@dataclass(frozen=True)
class BackupConfig:
    """Snapshot writer and downloader configuration.

    Attributes:
        output_directory: Root directory holding snapshots and job lock files
        parallel_downloads: Binary download batch size (1-10)
        retry_attempts: Attempts per binary download
        backoff_factor: Multiplier for the 2**attempt backoff (seconds)
    """

    output_directory: str = "./backups"
    parallel_downloads: int = 5
    retry_attempts: int = 3
    backoff_factor: float = 1.0

    @classmethod
    def from_env(cls) -> BackupConfig:
        """Load configuration from environment variables."""
        return cls(
            output_directory=os.getenv("BACKUP_OUTPUT_DIR", "./backups"),
            parallel_downloads=int(os.getenv("BACKUP_PARALLEL_DOWNLOADS", "5")),
            retry_attempts=int(os.getenv("BACKUP_RETRY_ATTEMPTS", "3")),
            backoff_factor=float(os.getenv("BACKUP_BACKOFF_FACTOR", "1.0")),
        )


@dataclass(frozen=True)
class QueryLimits:
    """Per-query ceilings used while extracting a snapshot.

    Attributes:
        max_fields_per_object: Fields selected per object type
        record_query_limit: LIMIT for record queries
        content_version_limit: LIMIT for ContentVersion discovery
        attachment_limit: LIMIT for Attachment discovery
        document_limit: LIMIT for Document discovery
    """

    max_fields_per_object: int = 20
    record_query_limit: int = 1000
    content_version_limit: int = 2000
    attachment_limit: int = 1000
    document_limit: int = 1000

    @classmethod
    def from_env(cls) -> QueryLimits:
        """Load configuration from environment variables."""
        return cls(
            max_fields_per_object=int(os.getenv("BACKUP_MAX_FIELDS", "20")),
            record_query_limit=int(os.getenv("BACKUP_RECORD_LIMIT", "1000")),
            content_version_limit=int(os.getenv("BACKUP_CONTENT_VERSION_LIMIT", "2000")),
            attachment_limit=int(os.getenv("BACKUP_ATTACHMENT_LIMIT", "1000")),
            document_limit=int(os.getenv("BACKUP_DOCUMENT_LIMIT", "1000")),
        )


@dataclass(frozen=True)
class JobConfig:
    """Background job configuration.

    Attributes:
        cleanup_delay_seconds: Grace period before a terminal lock file is deleted
    """

    cleanup_delay_seconds: float = 5.0

    @classmethod
    def from_env(cls) -> JobConfig:
        """Load configuration from environment variables."""
        return cls(
            cleanup_delay_seconds=float(os.getenv("JOB_CLEANUP_DELAY_SECONDS", "5")),
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
class AppConfig:
    """Complete backup server configuration.

    Attributes:
        source_backend: Which RecordSource implementation to use
        source: Remote system configuration
        backup: Snapshot writer configuration
        limits: Query ceilings
        jobs: Job manager configuration
        observability: Logging configuration
    """

    source_backend: SourceBackend = SourceBackend.SALESFORCE
    source: SourceConfig = field(default_factory=SourceConfig)
    backup: BackupConfig = field(default_factory=BackupConfig)
    limits: QueryLimits = field(default_factory=QueryLimits)
    jobs: JobConfig = field(default_factory=JobConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> AppConfig:
        """Load complete configuration from environment variables.

        Raises:
            ValueError: If configuration is invalid.
        """
        backend_str = os.getenv("RECORD_SOURCE", "salesforce").lower()
        try:
            source_backend = SourceBackend(backend_str)
        except ValueError:
            raise ValueError(
                f"Invalid RECORD_SOURCE '{backend_str}'. Must be one of: salesforce, memory"
            )

        config = cls(
            source_backend=source_backend,
            source=SourceConfig.from_env(),
            backup=BackupConfig.from_env(),
            limits=QueryLimits.from_env(),
            jobs=JobConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )
        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if not 1 <= self.backup.parallel_downloads <= 10:
            raise ValueError("BACKUP_PARALLEL_DOWNLOADS must be between 1 and 10")
        if self.backup.retry_attempts < 1:
            raise ValueError("BACKUP_RETRY_ATTEMPTS must be at least 1")
        if self.jobs.cleanup_delay_seconds < 0:
            raise ValueError("JOB_CLEANUP_DELAY_SECONDS cannot be negative")
        for name in (
            "max_fields_per_object",
            "record_query_limit",
            "content_version_limit",
            "attachment_limit",
            "document_limit",
        ):
            if getattr(self.limits, name) < 1:
                raise ValueError(f"Query limit {name} must be positive")

    def require_source_credentials(self) -> None:
        """Check that the remote connection settings are present.

        Only commands that talk to the remote system need these, so this is
        kept out of validate().

        Raises:
            ValueError: If the Salesforce backend is missing credentials.
        """
        if self.source_backend != SourceBackend.SALESFORCE:
            return
        if not self.source.instance_url:
            raise ValueError("SALESFORCE_INSTANCE_URL is required when RECORD_SOURCE=salesforce")
        if not self.source.access_token:
            raise ValueError("SALESFORCE_ACCESS_TOKEN is required when RECORD_SOURCE=salesforce")

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Backup configuration loaded",
            extra={
                "source_backend": self.source_backend.value,
                "instance_url": self.source.instance_url or None,
                "api_version": self.source.api_version,
                "access_token_set": bool(self.source.access_token),
                "output_directory": self.backup.output_directory,
                "parallel_downloads": self.backup.parallel_downloads,
                "retry_attempts": self.backup.retry_attempts,
                "cleanup_delay_seconds": self.jobs.cleanup_delay_seconds,
                "log_level": self.observability.log_level,
            },
        )
