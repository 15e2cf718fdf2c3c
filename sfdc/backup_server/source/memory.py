"""
In-memory RecordSource implementation for testing.

This module provides a simple in-memory remote system for:
- Unit tests
- Integration tests
- Local development without Salesforce credentials

Invariants:
    - All data is lost on process exit
    - Answers exactly the SOQL shapes the Snapshot Writer emits
    - Injected failures surface as the same SourceError types the HTTP
      source raises

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep interface compatible with RecordSource protocol
    - Add features to help with testing scenarios
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from ..errors import SourceConnectionError, SourceError, SourceHTTPError
from ..snapshot.options import parse_timestamp
from .base import FileKind

logger = logging.getLogger(__name__)

_SOQL_PATTERN = re.compile(
    r"^\s*SELECT\s+(?P<fields>.+?)\s+FROM\s+(?P<object>\w+)(?P<rest>.*)$",
    re.IGNORECASE | re.DOTALL,
)
_SINCE_PATTERN = re.compile(r"LastModifiedDate\s*>\s*(?P<ts>\S+)", re.IGNORECASE)
_IS_LATEST_PATTERN = re.compile(r"IsLatest\s*=\s*true", re.IGNORECASE)
_LIMIT_PATTERN = re.compile(r"LIMIT\s+(?P<limit>\d+)", re.IGNORECASE)

# Standard objects every org has; queryable even before any file is added.
_STANDARD_FILE_OBJECTS = frozenset(kind.value for kind in FileKind)

_FILE_FIELDS: Dict[FileKind, List[Tuple[str, str]]] = {
    FileKind.CONTENT_VERSION: [
        ("Id", "id"),
        ("Title", "string"),
        ("FileType", "string"),
        ("ContentSize", "int"),
        ("IsLatest", "boolean"),
        ("LastModifiedDate", "datetime"),
        ("VersionData", "base64"),
    ],
    FileKind.ATTACHMENT: [
        ("Id", "id"),
        ("Name", "string"),
        ("ContentType", "string"),
        ("BodyLength", "int"),
        ("LastModifiedDate", "datetime"),
        ("Body", "base64"),
    ],
    FileKind.DOCUMENT: [
        ("Id", "id"),
        ("Name", "string"),
        ("Type", "string"),
        ("BodyLength", "int"),
        ("LastModifiedDate", "datetime"),
        ("Body", "base64"),
    ],
}


@dataclass
class InMemoryObject:
    """In-memory object type storage."""

    name: str
    fields: List[Dict[str, str]] = field(default_factory=list)
    records: List[Dict[str, Any]] = field(default_factory=list)
    queryable: bool = True


@dataclass
class _DownloadFailure:
    status_code: int
    remaining: Optional[int]


class InMemoryRecordSource:
    """In-memory implementation of RecordSource for testing.

    Attributes:
        queries: Every SOQL string received, in order
        download_calls: Every (kind, record_id) download attempt, in order
        max_concurrent_downloads: Highest number of downloads seen in flight

    Example:
        >>> source = InMemoryRecordSource()
        >>> source.add_object("Account", [{"Id": "001A", "Name": "Acme"}])
        >>> source.add_file(FileKind.ATTACHMENT, "00P1", b"%PDF", ContentType="application/pdf")
        >>> await source.query("SELECT Id, Name FROM Account LIMIT 1000")
    """

    def __init__(
        self,
        instance_url: str = "https://test.my.salesforce.com",
        api_version: str = "58.0",
        download_delay: float = 0.0,
    ) -> None:
        self._instance_url = instance_url
        self._api_version = api_version
        self.download_delay = download_delay

        self._objects: Dict[str, InMemoryObject] = {}
        self._payloads: Dict[Tuple[FileKind, str], bytes] = {}
        self._object_failures: Dict[str, SourceError] = {}
        self._download_failures: Dict[str, _DownloadFailure] = {}
        self._describe_global_failure: Optional[SourceError] = None

        self.queries: List[str] = []
        self.download_calls: List[Tuple[FileKind, str]] = []
        self.max_concurrent_downloads = 0
        self._in_flight = 0

    @property
    def instance_url(self) -> str:
        return self._instance_url

    @property
    def api_version(self) -> str:
        return self._api_version

    # =========================================================================
    # Test setup helpers
    # =========================================================================

    def add_object(
        self,
        name: str,
        records: Optional[List[Dict[str, Any]]] = None,
        fields: Optional[List[Tuple[str, str]]] = None,
        queryable: bool = True,
    ) -> InMemoryObject:
        """Register an object type with its records.

        Args:
            name: Object API name
            records: Records to serve
            fields: (name, type) pairs; inferred from record keys if omitted
            queryable: Whether describe_global reports it as queryable
        """
        records = [dict(r) for r in records or []]
        if fields is None:
            seen: Dict[str, None] = {}
            for record in records:
                for key in record:
                    seen.setdefault(key, None)
            fields = [(key, "id" if key == "Id" else "string") for key in seen]
        obj = InMemoryObject(
            name=name,
            fields=[{"name": n, "type": t} for n, t in fields],
            records=records,
            queryable=queryable,
        )
        self._objects[name] = obj
        return obj

    def add_file(self, kind: FileKind, record_id: str, payload: bytes, **metadata: Any) -> None:
        """Register a binary file and its discovery record.

        Args:
            kind: Storage mechanism
            record_id: Record Id
            payload: Bytes served by fetch_binary
            **metadata: Extra record fields (Title, FileType, ContentType, Type, ...)
        """
        obj = self._objects.get(kind.value)
        if obj is None:
            obj = self.add_object(kind.value, [], fields=_FILE_FIELDS[kind])

        record: Dict[str, Any] = {"Id": record_id}
        if kind is FileKind.CONTENT_VERSION:
            record.update({"Title": record_id, "FileType": None, "IsLatest": True})
            record["ContentSize"] = len(payload)
        else:
            record.update({"Name": record_id, "BodyLength": len(payload)})
        record.update(metadata)
        obj.records.append(record)
        self._payloads[(kind, record_id)] = payload

    def fail_object(self, name: str, error: Optional[SourceError] = None) -> None:
        """Make describe() and query() fail for one object type."""
        self._object_failures[name] = error or SourceHTTPError(400, "INVALID_TYPE")

    def fail_describe_global(self, error: Optional[SourceError] = None) -> None:
        """Make describe_global() fail."""
        self._describe_global_failure = error or SourceConnectionError("connection reset")

    def fail_download(
        self, record_id: str, status_code: int = 500, times: Optional[int] = None
    ) -> None:
        """Make downloads of one record fail.

        Args:
            record_id: Record Id
            status_code: HTTP status to report
            times: Number of attempts that fail before succeeding (None = always)
        """
        self._download_failures[record_id] = _DownloadFailure(status_code, times)

    # =========================================================================
    # RecordSource protocol
    # =========================================================================

    async def describe_global(self) -> List[Dict[str, Any]]:
        if self._describe_global_failure is not None:
            raise self._describe_global_failure
        return [
            {"name": obj.name, "label": obj.name, "queryable": obj.queryable}
            for obj in self._objects.values()
        ]

    async def describe(self, object_name: str) -> Dict[str, Any]:
        self._check_object(object_name)
        obj = self._objects.get(object_name)
        if obj is None:
            raise SourceHTTPError(404, "NOT_FOUND")
        return {"name": obj.name, "fields": [dict(f) for f in obj.fields]}

    async def query(self, soql: str) -> Dict[str, Any]:
        self.queries.append(soql)

        match = _SOQL_PATTERN.match(soql)
        if not match:
            raise SourceHTTPError(400, "MALFORMED_QUERY")

        object_name = match.group("object")
        self._check_object(object_name)
        obj = self._objects.get(object_name)
        if obj is None:
            if object_name not in _STANDARD_FILE_OBJECTS:
                raise SourceHTTPError(400, "INVALID_TYPE")
            obj = InMemoryObject(name=object_name, fields=[])

        rest = match.group("rest")
        records = obj.records

        since = _SINCE_PATTERN.search(rest)
        if since:
            cutoff = parse_timestamp(since.group("ts"))
            records = [
                r
                for r in records
                if r.get("LastModifiedDate")
                and parse_timestamp(r["LastModifiedDate"]) > cutoff
            ]

        if _IS_LATEST_PATTERN.search(rest):
            records = [r for r in records if r.get("IsLatest")]

        limit = _LIMIT_PATTERN.search(rest)
        if limit:
            records = records[: int(limit.group("limit"))]

        selected = [f.strip() for f in match.group("fields").split(",") if f.strip()]
        projected = []
        for record in records:
            row: Dict[str, Any] = {"attributes": {"type": object_name}}
            for name in selected:
                if name in record:
                    row[name] = record[name]
            projected.append(row)

        return {"totalSize": len(projected), "done": True, "records": projected}

    async def fetch_binary(self, kind: FileKind, record_id: str) -> bytes:
        self.download_calls.append((kind, record_id))
        self._in_flight += 1
        self.max_concurrent_downloads = max(self.max_concurrent_downloads, self._in_flight)
        try:
            if self.download_delay:
                await asyncio.sleep(self.download_delay)

            failure = self._download_failures.get(record_id)
            if failure is not None and (failure.remaining is None or failure.remaining > 0):
                if failure.remaining is not None:
                    failure.remaining -= 1
                raise SourceHTTPError(failure.status_code, "injected failure")

            payload = self._payloads.get((kind, record_id))
            if payload is None:
                raise SourceHTTPError(404, "NOT_FOUND")
            return payload
        finally:
            self._in_flight -= 1

    def _check_object(self, object_name: str) -> None:
        error = self._object_failures.get(object_name)
        if error is not None:
            raise error
