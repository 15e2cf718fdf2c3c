"""
Time Machine over committed snapshots.

The TimeMachine answers "what did the data look like at time T" from the
snapshot directories under one root:
- list_snapshots: committed snapshots, newest first
- resolve_at: nearest snapshot at or before T, clamped to the oldest
- query_at / compare / record_history: filtered reads of data/<Type>.json

Invariants:
    - Only directories named salesforce-backup-* with a readable
      backup-manifest.json are snapshots; anything else is ignored
    - Ordering uses backupInfo.timestamp from the manifest, not the
      directory name
    - resolve_at never returns None while at least one snapshot exists
    - compare reports only the difference in record counts

How to change safely:
    - A per-record diff would change the comparison contract; add it as a
      new operation instead of extending compare
    - Snapshots are read-only here; never write into a snapshot directory
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping

from ..snapshot import MANIFEST_NAME, SNAPSHOT_PREFIX, parse_timestamp
from .filters import CompiledFilter

logger = logging.getLogger(__name__)


@dataclass
class Snapshot:
    """A committed snapshot directory.

    Attributes:
        name: Directory name
        path: Directory path
        timestamp: backupInfo.timestamp as written in the manifest
        taken_at: Parsed timestamp
        manifest: Full manifest contents
    """

    name: str
    path: str
    timestamp: str
    taken_at: datetime
    manifest: dict[str, Any] = field(repr=False, default_factory=dict)

    @property
    def stats(self) -> dict[str, Any]:
        return self.manifest.get("downloadStats", {})


@dataclass
class QueryResult:
    """Records of one object type read from one snapshot."""

    snapshot: Snapshot
    object_type: str
    records: list[dict[str, Any]]

    @property
    def count(self) -> int:
        return len(self.records)


@dataclass
class ObjectTypeNotFound:
    """The object type has no data file in the snapshot."""

    snapshot: Snapshot
    object_type: str
    available_objects: list[str]

    @property
    def error(self) -> str:
        return f"No data found for object type '{self.object_type}' in backup"


@dataclass
class Comparison:
    """Two query results for the same object type."""

    start: QueryResult
    end: QueryResult

    @property
    def count_difference(self) -> int:
        return self.end.count - self.start.count


@dataclass
class HistoryEntry:
    timestamp: str
    record: dict[str, Any]


class TimeMachine:
    """Read-only view over the snapshots in a root directory.

    Example:
        >>> tm = TimeMachine("./backups")
        >>> result = tm.query_at("2025-01-15T00:00:00Z", "Account", {"Name": "*acme*"})
        >>> result.count
        3
    """

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def list_snapshots(self) -> list[Snapshot]:
        """Committed snapshots sorted by start time, newest first."""
        if not self.root.is_dir():
            return []

        snapshots = []
        for path in self.root.iterdir():
            if not path.name.startswith(SNAPSHOT_PREFIX) or not path.is_dir():
                continue
            snapshot = self._load_snapshot(path)
            if snapshot is not None:
                snapshots.append(snapshot)

        snapshots.sort(key=lambda s: s.taken_at, reverse=True)
        return snapshots

    def resolve_at(self, when: str | datetime) -> Snapshot | None:
        """Nearest snapshot taken at or before ``when``.

        Falls back to the oldest snapshot when every snapshot is newer
        than ``when``. Naive datetimes are taken as UTC, like naive strings.

        Raises:
            ValueError: If ``when`` is not an ISO-8601 timestamp
        """
        if isinstance(when, str):
            target = parse_timestamp(when)
        elif when.tzinfo is None:
            target = when.replace(tzinfo=timezone.utc)
        else:
            target = when
        snapshots = self.list_snapshots()
        if not snapshots:
            return None
        for snapshot in snapshots:
            if snapshot.taken_at <= target:
                return snapshot
        return snapshots[-1]

    def available_object_types(self, snapshot: Snapshot) -> list[str]:
        data_dir = Path(snapshot.path) / "data"
        if not data_dir.is_dir():
            return []
        return sorted(p.stem for p in data_dir.glob("*.json"))

    def query_snapshot(
        self,
        snapshot: Snapshot,
        object_type: str,
        filters: Mapping[str, Any] | CompiledFilter | None = None,
    ) -> QueryResult | ObjectTypeNotFound:
        """Filtered records of one object type in one snapshot."""
        records = self._load_records(snapshot, object_type)
        if records is None:
            return ObjectTypeNotFound(
                snapshot=snapshot,
                object_type=object_type,
                available_objects=self.available_object_types(snapshot),
            )
        compiled = filters if isinstance(filters, CompiledFilter) else CompiledFilter(filters)
        return QueryResult(snapshot=snapshot, object_type=object_type, records=compiled.apply(records))

    def query_at(
        self,
        when: str | datetime,
        object_type: str,
        filters: Mapping[str, Any] | None = None,
    ) -> QueryResult | ObjectTypeNotFound | None:
        """Query the snapshot resolved for ``when``; None if there are no snapshots."""
        snapshot = self.resolve_at(when)
        if snapshot is None:
            return None
        return self.query_snapshot(snapshot, object_type, filters)

    def compare(
        self,
        start: str | datetime,
        end: str | datetime,
        object_type: str,
        filters: Mapping[str, Any] | None = None,
    ) -> Comparison | ObjectTypeNotFound | None:
        """Query both ends independently and pair the results."""
        start_snapshot = self.resolve_at(start)
        end_snapshot = self.resolve_at(end)
        if start_snapshot is None or end_snapshot is None:
            return None

        compiled = CompiledFilter(filters)
        start_result = self.query_snapshot(start_snapshot, object_type, compiled)
        if isinstance(start_result, ObjectTypeNotFound):
            return start_result
        end_result = self.query_snapshot(end_snapshot, object_type, compiled)
        if isinstance(end_result, ObjectTypeNotFound):
            return end_result
        return Comparison(start=start_result, end=end_result)

    def record_history(self, record_id: str, object_type: str) -> list[HistoryEntry]:
        """One entry per snapshot containing the record, in listing order."""
        compiled = CompiledFilter({"Id": record_id})
        history = []
        for snapshot in self.list_snapshots():
            records = self._load_records(snapshot, object_type)
            if not records:
                continue
            matches = compiled.apply(records)
            if matches:
                history.append(HistoryEntry(timestamp=snapshot.timestamp, record=matches[0]))
        return history

    def _load_snapshot(self, path: Path) -> Snapshot | None:
        try:
            with open(path / MANIFEST_NAME, encoding="utf-8") as f:
                manifest = json.load(f)
            timestamp = manifest["backupInfo"]["timestamp"]
            taken_at = parse_timestamp(timestamp)
        except FileNotFoundError:
            return None
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as e:
            logger.warning(
                "Could not read backup manifest",
                extra={"snapshot": path.name, "error": str(e)},
            )
            return None
        return Snapshot(
            name=path.name,
            path=str(path),
            timestamp=timestamp,
            taken_at=taken_at,
            manifest=manifest,
        )

    def _load_records(self, snapshot: Snapshot, object_type: str) -> list[dict[str, Any]] | None:
        if not object_type or "/" in object_type or "\\" in object_type or object_type.startswith("."):
            return None
        path = Path(snapshot.path) / "data" / f"{object_type}.json"
        try:
            with open(path, encoding="utf-8") as f:
                records = json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            logger.warning(
                "Could not read snapshot data",
                extra={"snapshot": snapshot.name, "object_type": object_type, "error": str(e)},
            )
            return None
        return records if isinstance(records, list) else None
