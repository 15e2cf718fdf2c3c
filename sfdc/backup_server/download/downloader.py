"""
Binary downloader for file references.

The BinaryDownloader fetches the raw payload of ContentVersion, Attachment
and Document records from a RecordSource and writes them to disk. It is
used by the SnapshotWriter during the file phase.

Retry policy:
    attempt 1 fails -> sleep backoff_factor * 2**1
    attempt 2 fails -> sleep backoff_factor * 2**2
    ...
    attempt N fails -> DownloadError

Invariants:
    - Every reference gets its own retry budget
    - download_batch returns exactly one result per input, in input order
    - A failure in one reference never aborts its batch or later batches
    - At most concurrency_limit downloads are in flight at once

How to change safely:
    - Keep the stats keys stable; they are embedded in every manifest
    - The batch window is fixed-size on purpose: peak connection count
      is bounded by the batch size
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable

from ..errors import DownloadError, SourceError
from ..source.base import FileKind, RecordSource

logger = logging.getLogger(__name__)

SleepFunc = Callable[[float], Awaitable[Any]]


@dataclass
class FileReference:
    """A binary asset selected for download.

    Attributes:
        kind: Storage mechanism the record belongs to
        id: Record Id
        name: Title or file name from the discovery query
        size: Declared size in bytes (may be 0 when unknown)
        output_path: Destination path on disk
        content_type: Declared content type or file type
    """

    kind: FileKind
    id: str
    name: str
    size: int
    output_path: str
    content_type: str | None = None


@dataclass
class DownloadResult:
    """Outcome of one reference download."""

    reference: FileReference
    success: bool
    size: int = 0
    path: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        entry: dict[str, Any] = {
            "success": self.success,
            "type": self.reference.kind.value,
            "id": self.reference.id,
            "name": self.reference.name,
        }
        if self.success:
            entry["path"] = self.path
            entry["size"] = self.size
        else:
            entry["error"] = self.error
        return entry


@dataclass
class DownloadStats:
    """Cumulative downloader counters."""

    content_versions: int = 0
    attachments: int = 0
    documents: int = 0
    total_bytes: int = 0
    errors: int = 0

    def record(self, kind: FileKind, size: int) -> None:
        if kind is FileKind.CONTENT_VERSION:
            self.content_versions += 1
        elif kind is FileKind.ATTACHMENT:
            self.attachments += 1
        else:
            self.documents += 1
        self.total_bytes += size

    def to_dict(self) -> dict[str, Any]:
        return {
            "contentVersions": self.content_versions,
            "attachments": self.attachments,
            "documents": self.documents,
            "totalBytes": self.total_bytes,
            "errors": self.errors,
            "totalMB": round(self.total_bytes / 1024 / 1024, 2),
        }


class BinaryDownloader:
    """Downloads file references with retries and bounded concurrency.

    Attributes:
        source: RecordSource serving the binary payloads
        parallel_limit: Default batch size for download_batch
        retry_attempts: Attempts per reference
        backoff_factor: Multiplier for the exponential backoff
        stats: Cumulative counters across all downloads

    Example:
        >>> downloader = BinaryDownloader(source, parallel_limit=5)
        >>> results = await downloader.download_batch(references)
        >>> downloader.stats.to_dict()
    """

    def __init__(
        self,
        source: RecordSource,
        parallel_limit: int = 5,
        retry_attempts: int = 3,
        backoff_factor: float = 1.0,
        sleep: SleepFunc | None = None,
    ) -> None:
        if parallel_limit < 1:
            raise ValueError("parallel_limit must be at least 1")
        if retry_attempts < 1:
            raise ValueError("retry_attempts must be at least 1")

        self.source = source
        self.parallel_limit = parallel_limit
        self.retry_attempts = retry_attempts
        self.backoff_factor = backoff_factor
        self._sleep = sleep or asyncio.sleep
        self.stats = DownloadStats()

    async def download_one(self, reference: FileReference) -> DownloadResult:
        """Download one reference to its output path.

        Args:
            reference: File to fetch

        Returns:
            Successful DownloadResult

        Raises:
            DownloadError: If every attempt failed
        """
        last_error: Exception | None = None

        for attempt in range(1, self.retry_attempts + 1):
            try:
                payload = await self.source.fetch_binary(reference.kind, reference.id)
                await asyncio.get_running_loop().run_in_executor(
                    None, self._write_payload, reference.output_path, payload
                )
            except (SourceError, OSError) as e:
                last_error = e
                logger.warning(
                    "Download attempt failed",
                    extra={
                        "reference_id": reference.id,
                        "kind": reference.kind.value,
                        "attempt": attempt,
                        "error": str(e),
                    },
                )
                if attempt < self.retry_attempts:
                    await self._sleep(self.backoff_factor * 2**attempt)
                continue

            self.stats.record(reference.kind, len(payload))
            logger.debug(
                "Downloaded file",
                extra={
                    "reference_id": reference.id,
                    "kind": reference.kind.value,
                    "size": len(payload),
                },
            )
            return DownloadResult(
                reference=reference,
                success=True,
                size=len(payload),
                path=reference.output_path,
            )

        self.stats.errors += 1
        raise DownloadError(str(last_error), reference.id, reference.kind.value)

    async def download_batch(
        self,
        references: list[FileReference],
        concurrency_limit: int | None = None,
    ) -> list[DownloadResult]:
        """Download references in sequential fixed-size concurrent batches.

        Args:
            references: Files to fetch
            concurrency_limit: Batch size (defaults to parallel_limit)

        Returns:
            One DownloadResult per reference, in input order

        Raises:
            ValueError: If concurrency_limit is below 1
        """
        if concurrency_limit is not None and concurrency_limit < 1:
            raise ValueError("concurrency_limit must be at least 1")
        limit = concurrency_limit if concurrency_limit is not None else self.parallel_limit
        results: list[DownloadResult] = []
        total = len(references)

        for start in range(0, total, limit):
            batch = references[start : start + limit]
            outcomes = await asyncio.gather(
                *(self.download_one(ref) for ref in batch),
                return_exceptions=True,
            )

            for ref, outcome in zip(batch, outcomes):
                if isinstance(outcome, DownloadResult):
                    results.append(outcome)
                elif isinstance(outcome, Exception):
                    results.append(DownloadResult(reference=ref, success=False, error=str(outcome)))
                else:
                    raise outcome

            logger.info(
                "Download batch finished",
                extra={
                    "completed": len(results),
                    "total": total,
                    "errors": self.stats.errors,
                },
            )

        return results

    @staticmethod
    def _write_payload(output_path: str, payload: bytes) -> None:
        path = Path(output_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(payload)
