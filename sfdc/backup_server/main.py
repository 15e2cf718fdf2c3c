"""
Backup runner and logging setup.

This module wires configuration, the RecordSource, the downloader and the
job manager together for one backup run:

    config = AppConfig.from_env()
    setup_logging(config)
    record = asyncio.run(run_backup(config, BackupOptions(...)))

Invariants:
    - Logging is configured once, before any component logs
    - A source created here is closed here
    - run_backup returns the terminal job record and never raises for a
      failed run; failures are reported through the record
"""

from __future__ import annotations

import asyncio
import logging

import json_log_formatter

from .config import AppConfig
from .download import BinaryDownloader
from .jobs import BackupJobManager, JobRecord
from .snapshot import BackupOptions
from .source import RecordSource, create_record_source

logger = logging.getLogger(__name__)


def setup_logging(config: AppConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Application configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def create_job_manager(config: AppConfig) -> BackupJobManager:
    """Build a job manager whose downloads follow the configured retry policy."""

    def downloader_factory(source: RecordSource, options: BackupOptions) -> BinaryDownloader:
        return BinaryDownloader(
            source,
            parallel_limit=options.parallel_downloads,
            retry_attempts=config.backup.retry_attempts,
            backoff_factor=config.backup.backoff_factor,
        )

    return BackupJobManager(
        config.backup.output_directory,
        cleanup_delay_seconds=config.jobs.cleanup_delay_seconds,
        limits=config.limits,
        downloader_factory=downloader_factory,
    )


async def run_backup(
    config: AppConfig,
    options: BackupOptions,
    source: RecordSource | None = None,
    poll_interval: float = 1.0,
) -> JobRecord:
    """Start a backup job and follow it to completion.

    Args:
        config: Application configuration
        options: Backup options
        source: RecordSource to use (created from config if omitted)
        poll_interval: Seconds between progress reads of the lock file

    Returns:
        Terminal job record
    """
    own_source = source is None
    if source is None:
        source = create_record_source(config)

    manager = create_job_manager(config)
    try:
        handle = await manager.start_job(source, options)
        last_seen = None
        while not handle.task.done():
            record = manager.get_job_status(handle.job_id)
            if record is not None and (record.progress, record.message) != last_seen:
                last_seen = (record.progress, record.message)
                logger.info(
                    "Backup progress",
                    extra={
                        "job_id": record.job_id,
                        "progress": record.progress,
                        "status": record.status.value,
                        "step": record.message,
                    },
                )
            await asyncio.wait({handle.task}, timeout=poll_interval)
        return await handle.wait()
    finally:
        # With a non-zero cleanup delay the terminal lock file stays behind
        # for `backup status`; `backup cleanup` removes old ones.
        await manager.close(wait_for_cleanup=config.jobs.cleanup_delay_seconds == 0)
        close = getattr(source, "close", None)
        if own_source and close is not None:
            await close()
