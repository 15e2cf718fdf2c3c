"""
Job record types.

A JobRecord is the state of one background backup run. The owning
BackupJobManager keeps it in memory and exports it to
``<output_directory>/<jobId>.lock`` after every transition.

Lock file JSON:
    {jobId, startTime, status, message, progress, backupDirectory,
     options, pid, lastUpdated, endTime?, result?, error?}
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any


class JobStatus(str, Enum):
    """Job lifecycle states: starting -> running -> completed | failed."""

    STARTING = "starting"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


@dataclass
class JobRecord:
    """State of one backup job.

    Attributes:
        job_id: backup-<stamp>
        start_time: ISO-8601 start time
        status: Current lifecycle state
        message: Human readable description of the current step
        progress: Percentage (0-100)
        backup_directory: Snapshot directory the run writes to
        options: Backup options (camelCase)
        pid: Process that owns the job
        last_updated: ISO-8601 time of the last transition
        end_time: ISO-8601 time the job reached a terminal state
        result: Snapshot summary on success
        error: Error message on failure
    """

    job_id: str
    start_time: str
    status: JobStatus
    message: str
    progress: int
    backup_directory: str
    options: dict[str, Any] = field(default_factory=dict)
    pid: int = 0
    last_updated: str = ""
    end_time: str | None = None
    result: dict[str, Any] | None = None
    error: str | None = None

    def copy(self) -> JobRecord:
        return replace(self, options=dict(self.options))

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "jobId": self.job_id,
            "startTime": self.start_time,
            "status": self.status.value,
            "message": self.message,
            "progress": self.progress,
            "backupDirectory": self.backup_directory,
            "options": self.options,
            "pid": self.pid,
            "lastUpdated": self.last_updated,
        }
        if self.end_time is not None:
            data["endTime"] = self.end_time
        if self.result is not None:
            data["result"] = self.result
        if self.error is not None:
            data["error"] = self.error
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> JobRecord:
        """Build a record from lock file JSON.

        Raises:
            KeyError: If a required key is missing
            ValueError: If the status is unknown
        """
        return cls(
            job_id=data["jobId"],
            start_time=data["startTime"],
            status=JobStatus(data["status"]),
            message=data.get("message", ""),
            progress=int(data.get("progress", 0)),
            backup_directory=data.get("backupDirectory", ""),
            options=data.get("options") or {},
            pid=int(data.get("pid", 0)),
            last_updated=data.get("lastUpdated", ""),
            end_time=data.get("endTime"),
            result=data.get("result"),
            error=data.get("error"),
        )


@dataclass
class JobHandle:
    """Returned by start_job before the run begins.

    Attributes:
        job_id: Job identifier
        status: Always "started"
        backup_directory: Snapshot directory the run will write to
        lock_file: Path of the exported job record
    """

    job_id: str
    backup_directory: str
    lock_file: str
    task: asyncio.Task = field(repr=False)
    status: str = "started"

    async def wait(self) -> JobRecord:
        """Wait for the run to finish and return its terminal record."""
        return await asyncio.shield(self.task)

    def to_dict(self) -> dict[str, Any]:
        return {
            "jobId": self.job_id,
            "status": self.status,
            "backupDirectory": self.backup_directory,
            "lockFile": self.lock_file,
        }
