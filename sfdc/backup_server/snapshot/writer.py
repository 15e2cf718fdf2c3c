"""
Snapshot writer for Salesforce backups.

The SnapshotWriter extracts one point-in-time copy of the remote system
into a self-contained directory:

    <output_directory>/salesforce-backup-<stamp>/
        metadata/objects-schema.json
        metadata/file-manifest.json     (only when a file kind is enabled)
        data/<ObjectType>.json          (one per non-empty object type)
        files/content/<id>.<filetype>
        files/attachments/<id><ext>
        files/documents/<id><ext>
        logs/
        backup-manifest.json            (commit marker, written last)

Phases run strictly in sequence: structure, metadata, records, files,
manifest. Each phase is a public coroutine so the job manager can report
progress between them.

Invariants:
    - The directory name is fixed when the writer is constructed
    - backup-manifest.json is written last and atomically (temp + rename)
    - A SourceError for one object type or discovery query is a skip,
      never fatal
    - Failing to create the layout or write the manifest is fatal

How to change safely:
    - Add manifest fields, don't remove existing ones; the Time Machine
      reads backupInfo.timestamp and downloadStats
    - Keep SOQL shapes in sync with InMemoryRecordSource
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

from ..config import QueryLimits
from ..download.downloader import BinaryDownloader, DownloadResult, FileReference
from ..errors import SnapshotWriteError, SourceError
from ..source.base import FileKind, RecordSource
from .options import BackupOptions, BackupType, format_timestamp

logger = logging.getLogger(__name__)

SNAPSHOT_PREFIX = "salesforce-backup-"
MANIFEST_NAME = "backup-manifest.json"

DIRECTORIES = {
    "metadata": "metadata/",
    "data": "data/",
    "files": "files/",
    "logs": "logs/",
}

FILE_SUBDIRECTORIES = {
    FileKind.CONTENT_VERSION: "content",
    FileKind.ATTACHMENT: "attachments",
    FileKind.DOCUMENT: "documents",
}

CONTENT_TYPE_EXTENSIONS = {
    "application/pdf": ".pdf",
    "application/msword": ".doc",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": ".docx",
    "application/vnd.ms-excel": ".xls",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": ".xlsx",
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/gif": ".gif",
    "text/plain": ".txt",
    "text/csv": ".csv",
}

Clock = Callable[[], datetime]


def extension_for(content_type: str | None) -> str:
    """Map a declared content type to a file extension (default .bin)."""
    return CONTENT_TYPE_EXTENSIONS.get(content_type or "", ".bin")


def snapshot_name(started_at: datetime) -> str:
    """Directory name for a snapshot started at the given instant."""
    stamp = format_timestamp(started_at).replace(":", "-").replace(".", "-")
    return f"{SNAPSHOT_PREFIX}{stamp}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SnapshotResult:
    """Outcome of a completed snapshot run.

    Attributes:
        directory: Absolute path of the snapshot directory
        duration: Run time in whole seconds
        stats: Downloader statistics (camelCase keys)
        skipped: Object types and queries skipped because of source errors
    """

    directory: str
    duration: int
    stats: dict[str, Any]
    skipped: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "duration": self.duration,
            "backupDirectory": self.directory,
            "stats": self.stats,
            "skipped": list(self.skipped),
        }


class SnapshotWriter:
    """Writes one snapshot of a RecordSource to disk.

    Example:
        >>> writer = SnapshotWriter(source, BackupOptions(output_directory="./backups"))
        >>> result = await writer.create_snapshot()
        >>> result.directory
        './backups/salesforce-backup-2025-01-01T00-00-00-000Z'
    """

    def __init__(
        self,
        source: RecordSource,
        options: BackupOptions,
        limits: QueryLimits | None = None,
        downloader: BinaryDownloader | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.source = source
        self.options = options
        self.limits = limits or QueryLimits()
        self.downloader = downloader or BinaryDownloader(
            source, parallel_limit=options.parallel_downloads
        )
        self._clock = clock or _utcnow

        self.started_at = self._clock()
        self.timestamp = format_timestamp(self.started_at)
        self.name = snapshot_name(self.started_at)
        self.directory = Path(options.output_directory).resolve() / self.name
        self.skipped: list[dict[str, Any]] = []

        self._objects: list[dict[str, Any]] | None = None
        self._started_monotonic = time.monotonic()

    @property
    def stamp(self) -> str:
        """Timestamp suffix of the directory name."""
        return self.name[len(SNAPSHOT_PREFIX) :]

    async def create_snapshot(self) -> SnapshotResult:
        """Run every phase in order.

        Returns:
            SnapshotResult for the committed snapshot

        Raises:
            SnapshotWriteError: If the layout or manifest cannot be written
        """
        logger.info(
            "Starting backup",
            extra={"backup_type": self.options.backup_type.value, "directory": str(self.directory)},
        )
        await self.create_structure()
        await self.backup_metadata()
        await self.backup_object_data()
        if self.options.includes_any_files:
            await self.backup_files()
        return await self.write_manifest()

    async def create_structure(self) -> None:
        """Create the snapshot directory layout."""
        paths = [self.directory / d for d in ("metadata", "data", "logs")]
        paths += [self.directory / "files" / sub for sub in FILE_SUBDIRECTORIES.values()]
        try:
            await self._run_blocking(_make_directories, paths)
        except OSError as e:
            raise SnapshotWriteError(
                f"Cannot create snapshot directory: {e}", path=str(self.directory)
            ) from e

    async def backup_metadata(self) -> None:
        """Save the global object list to metadata/objects-schema.json."""
        objects = await self._describe_global("metadata")
        metadata = {
            "backupTimestamp": format_timestamp(self._clock()),
            "sourceInstance": self.source.instance_url,
            "apiVersion": self.source.api_version,
            "totalObjects": len(objects),
            "objects": objects,
        }
        await self._write_json(self.directory / "metadata" / "objects-schema.json", metadata)
        logger.info("Saved object metadata", extra={"total_objects": len(objects)})

    async def backup_object_data(self) -> None:
        """Query each queryable object type and save non-empty results."""
        if self.options.backup_type is BackupType.FILES_ONLY:
            logger.info("Record phase skipped for files_only backup")
            return

        objects = self._objects
        if objects is None:
            objects = await self._describe_global("records")

        wanted = set(self.options.objects_filter)
        candidates = [
            obj["name"]
            for obj in objects
            if obj.get("queryable")
            and not obj["name"].endswith("__History")
            and (not wanted or obj["name"] in wanted)
        ]

        backed_up = 0
        total_records = 0
        for name in candidates:
            try:
                records = await self._query_object(name)
            except SourceError as e:
                self._skip("records", name, e)
                continue

            if records:
                await self._write_json(self.directory / "data" / f"{name}.json", records)
                backed_up += 1
                total_records += len(records)

        logger.info(
            "Object data saved",
            extra={
                "object_types": backed_up,
                "total_records": total_records,
                "skipped": len(self.skipped),
            },
        )

    async def backup_files(self) -> None:
        """Discover binary files, download them and write the file manifest."""
        references = await self._discover_files()

        results: list[DownloadResult] = []
        if references:
            results = await self.downloader.download_batch(
                references, concurrency_limit=self.options.parallel_downloads
            )

        failed = sum(1 for r in results if not r.success)
        await self._write_json(
            self.directory / "metadata" / "file-manifest.json",
            {
                "totalFiles": len(references),
                "downloadResults": [r.to_dict() for r in results],
                "stats": self.downloader.stats.to_dict(),
            },
        )
        logger.info(
            "File phase finished",
            extra={"total_files": len(references), "failed": failed},
        )

    async def write_manifest(self) -> SnapshotResult:
        """Commit the snapshot by writing backup-manifest.json.

        Raises:
            SnapshotWriteError: If the manifest cannot be written
        """
        duration = round(time.monotonic() - self._started_monotonic)
        stats = self.downloader.stats.to_dict()
        manifest = {
            "backupInfo": {
                "timestamp": self.timestamp,
                "type": self.options.backup_type.value,
                "duration": duration,
                "sourceInstance": self.source.instance_url,
            },
            "options": self.options.to_dict(),
            "downloadStats": stats,
            "directories": dict(DIRECTORIES),
            "skipped": list(self.skipped),
        }

        path = self.directory / MANIFEST_NAME
        try:
            await self._run_blocking(_write_json_atomic, path, manifest)
        except OSError as e:
            raise SnapshotWriteError(f"Cannot write manifest: {e}", path=str(path)) from e

        logger.info(
            "Backup completed",
            extra={"directory": str(self.directory), "duration": duration},
        )
        return SnapshotResult(
            directory=str(self.directory),
            duration=duration,
            stats=stats,
            skipped=list(self.skipped),
        )

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _describe_global(self, phase: str) -> list[dict[str, Any]]:
        try:
            self._objects = list(await self.source.describe_global())
        except SourceError as e:
            self._skip(phase, None, e)
            self._objects = []
        return self._objects

    async def _query_object(self, name: str) -> list[dict[str, Any]]:
        description = await self.source.describe(name)
        fields = [
            f["name"]
            for f in description.get("fields", [])
            if f.get("type") != "base64" and f.get("name") != "Body"
        ][: self.limits.max_fields_per_object]
        field_list = ", ".join(fields) if fields else "Id, Name"

        clauses = [f"SELECT {field_list} FROM {name}"]
        since = self.options.effective_since
        if since:
            clauses.append(f"WHERE LastModifiedDate > {since}")
        clauses.append(f"LIMIT {self.limits.record_query_limit}")

        result = await self.source.query(" ".join(clauses))
        return list(result.get("records") or [])

    async def _discover_files(self) -> list[FileReference]:
        since = self.options.effective_since
        where = f"WHERE LastModifiedDate > {since}" if since else ""
        files_dir = self.directory / "files"
        references: list[FileReference] = []

        if self.options.include_files:
            condition = f"{where} AND IsLatest = true" if where else "WHERE IsLatest = true"
            soql = (
                "SELECT Id, Title, FileType, ContentSize FROM ContentVersion "
                f"{condition} LIMIT {self.limits.content_version_limit}"
            )
            for record in await self._discovery_query(FileKind.CONTENT_VERSION, soql):
                file_type = (record.get("FileType") or "bin").lower()
                references.append(
                    FileReference(
                        kind=FileKind.CONTENT_VERSION,
                        id=record["Id"],
                        name=record.get("Title") or record["Id"],
                        size=record.get("ContentSize") or 0,
                        output_path=str(files_dir / "content" / f"{record['Id']}.{file_type}"),
                        content_type=record.get("FileType"),
                    )
                )

        if self.options.include_attachments:
            soql = _join(
                "SELECT Id, Name, ContentType, BodyLength FROM Attachment",
                where,
                f"LIMIT {self.limits.attachment_limit}",
            )
            for record in await self._discovery_query(FileKind.ATTACHMENT, soql):
                ext = extension_for(record.get("ContentType"))
                references.append(
                    FileReference(
                        kind=FileKind.ATTACHMENT,
                        id=record["Id"],
                        name=record.get("Name") or record["Id"],
                        size=record.get("BodyLength") or 0,
                        output_path=str(files_dir / "attachments" / f"{record['Id']}{ext}"),
                        content_type=record.get("ContentType"),
                    )
                )

        if self.options.include_documents:
            soql = _join(
                "SELECT Id, Name, Type, BodyLength FROM Document",
                where,
                f"LIMIT {self.limits.document_limit}",
            )
            for record in await self._discovery_query(FileKind.DOCUMENT, soql):
                ext = extension_for(record.get("Type"))
                references.append(
                    FileReference(
                        kind=FileKind.DOCUMENT,
                        id=record["Id"],
                        name=record.get("Name") or record["Id"],
                        size=record.get("BodyLength") or 0,
                        output_path=str(files_dir / "documents" / f"{record['Id']}{ext}"),
                        content_type=record.get("Type"),
                    )
                )

        return references

    async def _discovery_query(self, kind: FileKind, soql: str) -> list[dict[str, Any]]:
        try:
            result = await self.source.query(soql)
        except SourceError as e:
            self._skip("files", kind.value, e)
            return []
        records = list(result.get("records") or [])
        logger.info("Discovered files", extra={"kind": kind.value, "count": len(records)})
        return records

    def _skip(self, phase: str, object_name: str | None, error: Exception) -> None:
        self.skipped.append({"phase": phase, "object": object_name, "error": str(error)})
        logger.warning(
            "Skipped during backup",
            extra={"phase": phase, "object": object_name, "error": str(error)},
        )

    async def _write_json(self, path: Path, data: Any) -> None:
        try:
            await self._run_blocking(_write_json_file, path, data)
        except OSError as e:
            raise SnapshotWriteError(f"Cannot write {path.name}: {e}", path=str(path)) from e

    @staticmethod
    async def _run_blocking(func: Callable[..., Any], *args: Any) -> Any:
        return await asyncio.get_running_loop().run_in_executor(None, func, *args)


def _join(*parts: str) -> str:
    return " ".join(p for p in parts if p)


def _make_directories(paths: list[Path]) -> None:
    for path in paths:
        path.mkdir(parents=True, exist_ok=True)


def _write_json_file(path: Path, data: Any) -> None:
    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)


def _write_json_atomic(path: Path, data: Any) -> None:
    tmp_path = path.with_name(path.name + ".tmp")
    with open(tmp_path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)
    os.replace(tmp_path, path)
