"""
Background backup jobs.
"""

from .manager import JOB_ID_PATTERN, BackupJobManager
from .models import JobHandle, JobRecord, JobStatus

__all__ = [
    "BackupJobManager",
    "JobHandle",
    "JobRecord",
    "JobStatus",
    "JOB_ID_PATTERN",
]
