"""
Background backup job manager.

The BackupJobManager runs SnapshotWriter instances as asyncio tasks and
reports their progress through job records.

Job state lives in an in-process registry guarded by an asyncio.Lock.
After every transition the record is exported to
``<output_directory>/<jobId>.lock`` so other processes (the CLI status
command, operators) can observe it. The owning manager never reads the
lock file back as its source of truth.

Progress checkpoints:
    metadata  10 -> 30
    records   35 -> 60
    files     65 -> 85  (or "skipped" at 85)
    manifest  90 -> 100

Invariants:
    - start_job returns before the snapshot run starts
    - Progress of a successful run never decreases and ends at 100
    - A failed run ends with progress 0 and error set
    - Terminal lock files are removed after cleanup_delay_seconds
    - Exactly one writer per job id

How to change safely:
    - Keep the lock file keys stable; external tooling polls them
    - is_job_running is an observation, not a mutex
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

from ..config import QueryLimits
from ..download import BinaryDownloader
from ..snapshot import BackupOptions, SnapshotWriter, format_timestamp, parse_timestamp
from ..source.base import RecordSource
from .models import JobHandle, JobRecord, JobStatus

logger = logging.getLogger(__name__)

JOB_ID_PATTERN = re.compile(r"^backup-[0-9A-Za-z-]+$")
LOCK_SUFFIX = ".lock"

WriterFactory = Callable[..., SnapshotWriter]
DownloaderFactory = Callable[[RecordSource, BackupOptions], BinaryDownloader]


def _now() -> str:
    return format_timestamp(datetime.now(timezone.utc))


class BackupJobManager:
    """Starts and tracks background backup jobs.

    Attributes:
        output_directory: Directory holding the job lock files
        cleanup_delay_seconds: Grace period before terminal lock files are removed

    Example:
        >>> manager = BackupJobManager("./backups")
        >>> handle = await manager.start_job(source, BackupOptions(output_directory="./backups"))
        >>> manager.get_job_status(handle.job_id).progress
        10
        >>> record = await handle.wait()
        >>> record.status
        <JobStatus.COMPLETED: 'completed'>
    """

    def __init__(
        self,
        output_directory: str,
        cleanup_delay_seconds: float = 5.0,
        writer_factory: WriterFactory | None = None,
        limits: QueryLimits | None = None,
        downloader_factory: DownloaderFactory | None = None,
    ) -> None:
        self.output_directory = Path(output_directory).resolve()
        self.cleanup_delay_seconds = cleanup_delay_seconds
        self._writer_factory = writer_factory or SnapshotWriter
        self._limits = limits
        self._downloader_factory = downloader_factory

        self._jobs: dict[str, JobRecord] = {}
        self._lock = asyncio.Lock()
        self._tasks: dict[str, asyncio.Task] = {}
        self._cleanup_tasks: dict[str, asyncio.Task] = {}

    # =========================================================================
    # Starting jobs
    # =========================================================================

    async def start_job(self, source: RecordSource, options: BackupOptions) -> JobHandle:
        """Start a backup run in the background.

        Args:
            source: RecordSource to back up
            options: Validated backup options

        Returns:
            JobHandle for the new job

        Raises:
            OSError: If the initial job record cannot be written
        """
        downloader = None
        if self._downloader_factory is not None:
            downloader = self._downloader_factory(source, options)
        writer = self._writer_factory(
            source, options, limits=self._limits, downloader=downloader
        )

        await asyncio.get_running_loop().run_in_executor(
            None, lambda: self.output_directory.mkdir(parents=True, exist_ok=True)
        )

        async with self._lock:
            job_id = self._unique_job_id(f"backup-{writer.stamp}")
            now = _now()
            record = JobRecord(
                job_id=job_id,
                start_time=now,
                status=JobStatus.STARTING,
                message="Backup job starting",
                progress=0,
                backup_directory=str(writer.directory),
                options=options.to_dict(),
                pid=os.getpid(),
                last_updated=now,
            )
            self._jobs[job_id] = record
            await self._export(record)

        task = asyncio.create_task(self._run(job_id, writer))
        self._tasks[job_id] = task

        logger.info(
            "Backup job started",
            extra={
                "job_id": job_id,
                "backup_type": options.backup_type.value,
                "backup_directory": record.backup_directory,
            },
        )
        return JobHandle(
            job_id=job_id,
            backup_directory=record.backup_directory,
            lock_file=str(self._lock_path(job_id)),
            task=task,
        )

    async def _run(self, job_id: str, writer: SnapshotWriter) -> JobRecord:
        try:
            await self._update(job_id, status=JobStatus.RUNNING, progress=10, message="Backing up metadata")
            await writer.create_structure()
            await writer.backup_metadata()
            await self._update(job_id, progress=30, message="Metadata backed up")

            await self._update(job_id, progress=35, message="Backing up object data")
            await writer.backup_object_data()
            await self._update(job_id, progress=60, message="Object data backed up")

            if writer.options.includes_any_files:
                await self._update(job_id, progress=65, message="Backing up files")
                await writer.backup_files()
                await self._update(job_id, progress=85, message="Files backed up")
            else:
                await self._update(job_id, progress=85, message="File backup skipped")

            await self._update(job_id, progress=90, message="Writing backup manifest")
            result = await writer.write_manifest()

            record = await self._update(
                job_id,
                status=JobStatus.COMPLETED,
                progress=100,
                message="Backup completed successfully",
                result=result.to_dict(),
                end_time=_now(),
            )
            logger.info(
                "Backup job completed",
                extra={"job_id": job_id, "duration": result.duration},
            )
        except Exception as e:
            logger.error(
                "Backup job failed",
                extra={"job_id": job_id, "error": str(e)},
                exc_info=True,
            )
            record = await self._mark_failed(job_id, e)
        finally:
            self._tasks.pop(job_id, None)
            self._schedule_cleanup(job_id)

        return record

    async def _mark_failed(self, job_id: str, error: Exception) -> JobRecord:
        try:
            return await self._update(
                job_id,
                status=JobStatus.FAILED,
                progress=0,
                message=f"Backup failed: {error}",
                error=str(error),
                end_time=_now(),
            )
        except OSError as e:
            logger.error("Failed to export failed job record", extra={"job_id": job_id, "error": str(e)})
            async with self._lock:
                return self._jobs[job_id].copy()

    async def _update(self, job_id: str, **changes: Any) -> JobRecord:
        async with self._lock:
            record = self._jobs[job_id]
            for key, value in changes.items():
                setattr(record, key, value)
            record.last_updated = _now()
            await self._export(record)
            return record.copy()

    # =========================================================================
    # Observation
    # =========================================================================

    def get_job_status(self, job_id: str) -> JobRecord | None:
        """Read a job record from its lock file.

        Returns:
            JobRecord, or None for malformed ids and missing or corrupt files
        """
        if not JOB_ID_PATTERN.match(job_id or ""):
            return None
        return self._read_lock_file(self._lock_path(job_id))

    def list_jobs(self) -> list[JobRecord]:
        """All jobs with a lock file, newest start time first."""
        if not self.output_directory.is_dir():
            return []

        records = []
        for path in self.output_directory.glob(f"backup-*{LOCK_SUFFIX}"):
            if not JOB_ID_PATTERN.match(path.name[: -len(LOCK_SUFFIX)]):
                continue
            record = self._read_lock_file(path)
            if record is not None:
                records.append(record)
        records.sort(key=lambda r: r.start_time, reverse=True)
        return records

    def is_job_running(self, job_id: str) -> bool:
        """Whether the job's lock file currently reports status running."""
        record = self.get_job_status(job_id)
        return record is not None and record.status == JobStatus.RUNNING

    # =========================================================================
    # Cleanup
    # =========================================================================

    def cleanup_jobs(self, max_age_seconds: float = 3600.0) -> int:
        """Remove terminal lock files older than max_age_seconds.

        Returns:
            Number of lock files removed
        """
        now = datetime.now(timezone.utc)
        removed = 0
        for record in self.list_jobs():
            if not record.status.is_terminal or not record.end_time:
                continue
            try:
                age = (now - parse_timestamp(record.end_time)).total_seconds()
            except ValueError:
                continue
            if age < max_age_seconds:
                continue
            self._lock_path(record.job_id).unlink(missing_ok=True)
            if record.job_id not in self._tasks:
                self._jobs.pop(record.job_id, None)
            removed += 1

        if removed:
            logger.info("Cleaned up old backup jobs", extra={"removed": removed})
        return removed

    async def close(self, wait_for_cleanup: bool = False) -> None:
        """Cancel pending lock file cleanups, or let them finish first.

        Args:
            wait_for_cleanup: Wait out the cleanup delay instead of
                cancelling, so terminal lock files are removed
        """
        tasks = list(self._cleanup_tasks.values())
        if not wait_for_cleanup:
            for task in tasks:
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._cleanup_tasks.clear()

    def _schedule_cleanup(self, job_id: str) -> None:
        self._cleanup_tasks[job_id] = asyncio.create_task(self._cleanup_later(job_id))

    async def _cleanup_later(self, job_id: str) -> None:
        try:
            await asyncio.sleep(self.cleanup_delay_seconds)
            async with self._lock:
                self._lock_path(job_id).unlink(missing_ok=True)
                self._jobs.pop(job_id, None)
            logger.debug("Removed job lock file", extra={"job_id": job_id})
        except OSError as e:
            logger.warning("Failed to remove job lock file", extra={"job_id": job_id, "error": str(e)})
        finally:
            self._cleanup_tasks.pop(job_id, None)

    # =========================================================================
    # Lock files
    # =========================================================================

    def _lock_path(self, job_id: str) -> Path:
        return self.output_directory / f"{job_id}{LOCK_SUFFIX}"

    def _unique_job_id(self, base: str) -> str:
        job_id = base
        counter = 1
        while job_id in self._jobs:
            counter += 1
            job_id = f"{base}-{counter}"
        return job_id

    async def _export(self, record: JobRecord) -> None:
        await asyncio.get_running_loop().run_in_executor(
            None, _write_lock_file, self._lock_path(record.job_id), record.to_dict()
        )

    @staticmethod
    def _read_lock_file(path: Path) -> JobRecord | None:
        try:
            with open(path, encoding="utf-8") as f:
                return JobRecord.from_dict(json.load(f))
        except (OSError, ValueError, KeyError, TypeError):
            return None


def _write_lock_file(path: Path, data: dict[str, Any]) -> None:
    tmp_path = path.with_name(path.name + ".tmp")
    with open(tmp_path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)
    os.replace(tmp_path, path)
