"""
Backup options for a single snapshot run.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from ..errors import ValidationError

MAX_PARALLEL_DOWNLOADS = 10


class BackupType(str, Enum):
    """Supported backup types."""

    FULL = "full"
    INCREMENTAL = "incremental"
    FILES_ONLY = "files_only"


def format_timestamp(value: datetime) -> str:
    """Render a datetime as ISO-8601 UTC with milliseconds and a Z suffix."""
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC.

    Raises:
        ValueError: If the value is not ISO-8601
    """
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class BackupOptions:
    """Options for one snapshot run.

    Attributes:
        output_directory: Root directory receiving the snapshot directory
        backup_type: full, incremental or files_only
        include_files: Download ContentVersion payloads
        include_attachments: Download Attachment payloads
        include_documents: Download Document payloads
        objects_filter: Object types to extract (empty means all)
        since_date: Only records modified after this instant (ignored for full)
        parallel_downloads: Binary download batch size (1-10)
    """

    output_directory: str = "./backups"
    backup_type: BackupType = BackupType.INCREMENTAL
    include_files: bool = True
    include_attachments: bool = True
    include_documents: bool = True
    objects_filter: list[str] = field(default_factory=list)
    since_date: str | None = None
    parallel_downloads: int = 5

    def __post_init__(self) -> None:
        try:
            self.backup_type = BackupType(self.backup_type)
        except ValueError:
            valid = ", ".join(t.value for t in BackupType)
            raise ValidationError(
                f"Invalid backup_type '{self.backup_type}'. Must be one of: {valid}",
                field_name="backup_type",
            )

        if not isinstance(self.parallel_downloads, int) or not (
            1 <= self.parallel_downloads <= MAX_PARALLEL_DOWNLOADS
        ):
            raise ValidationError(
                f"parallel_downloads must be between 1 and {MAX_PARALLEL_DOWNLOADS}",
                field_name="parallel_downloads",
            )

        if self.since_date:
            try:
                self.since_date = format_timestamp(parse_timestamp(self.since_date))
            except ValueError:
                raise ValidationError(
                    "Invalid since_date format. Use ISO format: YYYY-MM-DDTHH:mm:ss.sssZ",
                    field_name="since_date",
                )
        else:
            self.since_date = None

        self.objects_filter = [name.strip() for name in self.objects_filter if name.strip()]

    @property
    def includes_any_files(self) -> bool:
        return self.include_files or self.include_attachments or self.include_documents

    @property
    def effective_since(self) -> str | None:
        """The modification cutoff applied to queries."""
        if self.backup_type is BackupType.FULL:
            return None
        return self.since_date

    def to_dict(self) -> dict[str, Any]:
        return {
            "outputDirectory": self.output_directory,
            "backupType": self.backup_type.value,
            "includeFiles": self.include_files,
            "includeAttachments": self.include_attachments,
            "includeDocuments": self.include_documents,
            "objectsFilter": list(self.objects_filter),
            "sinceDate": self.since_date,
            "parallelDownloads": self.parallel_downloads,
        }
