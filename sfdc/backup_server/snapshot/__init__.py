"""
Snapshot creation for the backup server.

This module provides:
- BackupOptions: validated options for one run
- SnapshotWriter: extracts schema, records and files into a snapshot directory
"""

from .options import BackupOptions, BackupType, format_timestamp, parse_timestamp
from .writer import (
    MANIFEST_NAME,
    SNAPSHOT_PREFIX,
    SnapshotResult,
    SnapshotWriter,
    extension_for,
    snapshot_name,
)

__all__ = [
    "BackupOptions",
    "BackupType",
    "SnapshotWriter",
    "SnapshotResult",
    "MANIFEST_NAME",
    "SNAPSHOT_PREFIX",
    "extension_for",
    "format_timestamp",
    "parse_timestamp",
    "snapshot_name",
]
