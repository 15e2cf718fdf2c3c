"""
Integration tests for the full backup and Time Machine flow.

These tests use:
- InMemoryRecordSource as the remote system
- BackupJobManager to run real SnapshotWriter jobs
- TimeMachine operations to read the snapshots back
"""

import json
from datetime import datetime, timezone
from pathlib import Path

import pytest

from sfdc.backup_server.config import AppConfig, BackupConfig, JobConfig, SourceBackend
from sfdc.backup_server.jobs import BackupJobManager, JobStatus
from sfdc.backup_server.main import run_backup
from sfdc.backup_server.snapshot import BackupOptions, SnapshotWriter
from sfdc.backup_server.source import FileKind, InMemoryRecordSource
from sfdc.backup_server.timemachine import run_operation


def clock_at(iso):
    moment = datetime.fromisoformat(iso.replace("Z", "+00:00"))
    return lambda: moment


def manager_with_clock(root, iso):
    def writer_factory(source, options, **kwargs):
        return SnapshotWriter(source, options, clock=clock_at(iso), **kwargs)

    return BackupJobManager(str(root), cleanup_delay_seconds=60, writer_factory=writer_factory)


async def backup_at(root, source, iso):
    manager = manager_with_clock(root, iso)
    handle = await manager.start_job(source, BackupOptions(output_directory=str(root), backup_type="full"))
    record = await handle.wait()
    await manager.close()
    assert record.status == JobStatus.COMPLETED
    return record


class TestBackupAndQuery:
    """End-to-end: jobs produce snapshots the Time Machine can read."""

    @pytest.mark.asyncio
    async def test_amount_change_keeps_count_difference_zero(self, tmp_path):
        source = InMemoryRecordSource()
        source.add_object("Invoice", [{"Id": "A1", "Amount": 100}])
        await backup_at(tmp_path, source, "2025-01-01T00:00:00Z")

        source.add_object("Invoice", [{"Id": "A1", "Amount": 150}])
        await backup_at(tmp_path, source, "2025-02-01T00:00:00Z")

        result = run_operation(
            "compare_over_time",
            {
                "startDate": "2025-01-01T00:00:00Z",
                "endDate": "2025-02-01T00:00:00Z",
                "objectType": "Invoice",
            },
            root=tmp_path,
        )

        assert result["success"]
        comparison = result["comparison"]
        assert comparison["changes"]["countDifference"] == 0
        assert comparison["startSnapshot"]["date"] == "2025-01-01T00:00:00.000Z"
        assert comparison["endSnapshot"]["date"] == "2025-02-01T00:00:00.000Z"
        assert comparison["startSnapshot"]["data"][0]["Amount"] == 100
        assert comparison["endSnapshot"]["data"][0]["Amount"] == 150

        history = run_operation(
            "get_record_history", {"recordId": "A1", "objectType": "Invoice"}, root=tmp_path
        )
        assert [h["data"]["Amount"] for h in history["history"]] == [150, 100]
        assert history["changesCount"] == 2

    @pytest.mark.asyncio
    async def test_uncommitted_snapshot_is_invisible(self, tmp_path):
        source = InMemoryRecordSource()
        source.add_object("Account", [{"Id": "001A", "Name": "Acme"}])
        await backup_at(tmp_path, source, "2025-01-01T00:00:00Z")

        crashed = SnapshotWriter(
            source,
            BackupOptions(output_directory=str(tmp_path)),
            clock=clock_at("2025-03-01T00:00:00Z"),
        )
        await crashed.create_structure()
        await crashed.backup_metadata()
        await crashed.backup_object_data()

        listing = run_operation("list_backups", {}, root=tmp_path)
        assert [b["timestamp"] for b in listing["backups"]] == ["2025-01-01T00:00:00.000Z"]

        query = run_operation(
            "query_at_point_in_time",
            {"targetDate": "2025-06-01T00:00:00Z", "objectType": "Account"},
            root=tmp_path,
        )
        assert query["snapshotDate"] == "2025-01-01T00:00:00.000Z"

    @pytest.mark.asyncio
    async def test_query_before_first_snapshot_clamps(self, tmp_path):
        source = InMemoryRecordSource()
        source.add_object("Account", [{"Id": "001A", "Name": "Acme"}])
        await backup_at(tmp_path, source, "2025-01-01T00:00:00Z")

        result = run_operation(
            "query_at_point_in_time",
            {"targetDate": "2020-01-01T00:00:00Z", "objectType": "Account"},
            root=tmp_path,
        )

        assert result["success"]
        assert result["snapshotDate"] == "2025-01-01T00:00:00.000Z"

    @pytest.mark.asyncio
    async def test_download_failure_does_not_fail_job(self, tmp_path):
        source = InMemoryRecordSource()
        for i in range(6):
            source.add_file(FileKind.ATTACHMENT, f"00P{i}", b"x" * 10, ContentType="text/plain")
        source.fail_download("00P2", status_code=500)

        def downloader_factory(src, options):
            from sfdc.backup_server.download import BinaryDownloader

            return BinaryDownloader(src, parallel_limit=options.parallel_downloads, backoff_factor=0)

        manager = BackupJobManager(str(tmp_path), cleanup_delay_seconds=60, downloader_factory=downloader_factory)
        handle = await manager.start_job(
            source, BackupOptions(output_directory=str(tmp_path), parallel_downloads=2)
        )
        record = await handle.wait()
        await manager.close()

        assert record.status == JobStatus.COMPLETED
        assert record.result["stats"]["attachments"] == 5
        assert record.result["stats"]["errors"] == 1
        attachments = sorted(p.name for p in (Path(handle.backup_directory) / "files" / "attachments").iterdir())
        assert attachments == ["00P0.txt", "00P1.txt", "00P3.txt", "00P4.txt", "00P5.txt"]
        assert source.max_concurrent_downloads <= 2


class TestRunBackup:
    """Tests for the run_backup helper used by the CLI."""

    @pytest.mark.asyncio
    async def test_follows_job_to_completion(self, tmp_path):
        config = AppConfig(
            source_backend=SourceBackend.MEMORY,
            backup=BackupConfig(output_directory=str(tmp_path), backoff_factor=0),
            jobs=JobConfig(cleanup_delay_seconds=60),
        )
        source = InMemoryRecordSource()
        source.add_object("Opportunity", [{"Id": "006A", "StageName": "Closed Won"}])

        record = await run_backup(
            config,
            BackupOptions(output_directory=str(tmp_path)),
            source=source,
            poll_interval=0.01,
        )

        assert record.status == JobStatus.COMPLETED
        data = Path(record.backup_directory) / "data" / "Opportunity.json"
        with open(data, encoding="utf-8") as f:
            assert json.load(f)[0]["StageName"] == "Closed Won"

    @pytest.mark.asyncio
    async def test_zero_cleanup_delay_removes_lock_file(self, tmp_path):
        config = AppConfig(
            source_backend=SourceBackend.MEMORY,
            backup=BackupConfig(output_directory=str(tmp_path)),
            jobs=JobConfig(cleanup_delay_seconds=0),
        )

        record = await run_backup(
            config,
            BackupOptions(output_directory=str(tmp_path)),
            source=InMemoryRecordSource(),
            poll_interval=0.01,
        )

        assert record.status == JobStatus.COMPLETED
        assert list(tmp_path.glob("*.lock")) == []
        assert (Path(record.backup_directory) / "backup-manifest.json").exists()

    @pytest.mark.asyncio
    async def test_lock_file_kept_with_cleanup_delay(self, tmp_path):
        config = AppConfig(
            source_backend=SourceBackend.MEMORY,
            backup=BackupConfig(output_directory=str(tmp_path)),
            jobs=JobConfig(cleanup_delay_seconds=60),
        )

        record = await run_backup(
            config,
            BackupOptions(output_directory=str(tmp_path)),
            source=InMemoryRecordSource(),
            poll_interval=0.01,
        )

        assert [p.stem for p in tmp_path.glob("*.lock")] == [record.job_id]

    @pytest.mark.asyncio
    async def test_reports_failure_in_record(self, tmp_path):
        blocker = tmp_path / "blocked"
        blocker.write_text("not a directory")
        config = AppConfig(
            source_backend=SourceBackend.MEMORY,
            backup=BackupConfig(output_directory=str(tmp_path)),
            jobs=JobConfig(cleanup_delay_seconds=60),
        )

        record = await run_backup(
            config,
            BackupOptions(output_directory=str(blocker)),
            source=InMemoryRecordSource(),
            poll_interval=0.01,
        )

        assert record.status == JobStatus.FAILED
        assert record.progress == 0
        assert "Cannot create snapshot directory" in record.error
