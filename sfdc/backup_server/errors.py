"""
Error types for the backup server.

This module defines all exception types raised by the backup components:
- BackupError: Base exception
- ValidationError: Invalid backup options or arguments
- SourceError: RecordSource failures (transport and HTTP status)
- DownloadError: Binary download failed after all retries
- SnapshotWriteError: Fatal snapshot writer failure

Invariants:
    - All errors inherit from BackupError
    - Errors include context for debugging
    - Only DownloadError and SnapshotWriteError abort work; SourceError is
      recoverable at the per-object level inside the writer
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class BackupError(Exception):
    """Base exception for all backup server errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "BACKUP_ERROR"
        self.details = details or {}


class ValidationError(BackupError):
    """Backup options or operation arguments are invalid.

    Raised when:
    - backup_type is not one of the supported types
    - parallel_downloads is out of range
    - since_date cannot be parsed
    """

    def __init__(self, message: str, field_name: Optional[str] = None) -> None:
        super().__init__(
            message,
            code="VALIDATION_ERROR",
            details={"field": field_name},
        )
        self.field_name = field_name


class SourceError(BackupError):
    """A RecordSource call failed."""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, code=code or "SOURCE_ERROR", details=details)


class SourceConnectionError(SourceError):
    """Transport-level failure talking to the remote system."""

    def __init__(self, message: str, url: Optional[str] = None) -> None:
        super().__init__(message, code="SOURCE_CONNECTION_ERROR", details={"url": url})
        self.url = url


class SourceHTTPError(SourceError):
    """The remote system answered with a non-2xx status."""

    def __init__(self, status_code: int, reason: str = "", url: Optional[str] = None) -> None:
        super().__init__(
            f"HTTP {status_code}: {reason}".rstrip(": "),
            code="SOURCE_HTTP_ERROR",
            details={"status_code": status_code, "url": url},
        )
        self.status_code = status_code
        self.url = url


class DownloadError(BackupError):
    """A binary download failed after exhausting its retries.

    Attributes:
        reference_id: Id of the file reference
        kind: File kind value (ContentVersion, Attachment, Document)
    """

    def __init__(self, message: str, reference_id: str, kind: str) -> None:
        super().__init__(
            f"{kind} download failed for {reference_id}: {message}",
            code="DOWNLOAD_ERROR",
            details={"reference_id": reference_id, "kind": kind},
        )
        self.reference_id = reference_id
        self.kind = kind


class SnapshotWriteError(BackupError):
    """The snapshot writer could not create its layout or commit the manifest."""

    def __init__(self, message: str, path: Optional[str] = None) -> None:
        super().__init__(message, code="SNAPSHOT_WRITE_ERROR", details={"path": path})
        self.path = path
