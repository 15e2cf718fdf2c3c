"""
Unit tests for BackupOptions and SnapshotWriter.

Tests cover:
- Directory layout and manifest contents
- Field selection and SOQL shapes
- Incremental, full and files_only runs
- Skips for source errors, fatal manifest errors
"""

import json
import os
from datetime import datetime, timezone
from pathlib import Path

import pytest

from sfdc.backup_server.config import QueryLimits
from sfdc.backup_server.download import BinaryDownloader
from sfdc.backup_server.errors import SnapshotWriteError, ValidationError
from sfdc.backup_server.snapshot import BackupOptions, BackupType, SnapshotWriter, extension_for
from sfdc.backup_server.source import FileKind, InMemoryRecordSource

STARTED = datetime(2025, 1, 1, tzinfo=timezone.utc)


def fixed_clock():
    return STARTED


def read_json(path):
    with open(path, encoding="utf-8") as f:
        return json.load(f)


@pytest.fixture
def source():
    source = InMemoryRecordSource(instance_url="https://acme.my.salesforce.com")
    source.add_object(
        "Account",
        [
            {"Id": "001A", "Name": "Acme", "LastModifiedDate": "2025-02-01T00:00:00.000Z"},
            {"Id": "001B", "Name": "Globex", "LastModifiedDate": "2024-06-01T00:00:00.000Z"},
        ],
        fields=[
            ("Id", "id"),
            ("Name", "string"),
            ("LastModifiedDate", "datetime"),
            ("Logo", "base64"),
        ],
    )
    source.add_object("Account__History", [{"Id": "017A"}])
    source.add_object("Empty", [])
    source.add_object("Hidden", [{"Id": "x1"}], queryable=False)
    source.add_file(FileKind.CONTENT_VERSION, "068A", b"%PDF-1.4", FileType="PDF", Title="Deck")
    source.add_file(FileKind.ATTACHMENT, "00PA", b"\x89PNG", ContentType="image/png")
    source.add_file(FileKind.DOCUMENT, "015A", b"a,b\n1,2\n", Type="text/csv")
    return source


def make_writer(source, tmp_path, **options):
    options.setdefault("output_directory", str(tmp_path))
    downloader = BinaryDownloader(source, backoff_factor=0)
    return SnapshotWriter(
        source,
        BackupOptions(**options),
        downloader=downloader,
        clock=fixed_clock,
    )


class TestBackupOptions:
    """Tests for BackupOptions validation."""

    def test_defaults(self):
        options = BackupOptions()

        assert options.backup_type is BackupType.INCREMENTAL
        assert options.parallel_downloads == 5
        assert options.includes_any_files

    def test_invalid_backup_type(self):
        with pytest.raises(ValidationError) as exc_info:
            BackupOptions(backup_type="weekly")
        assert exc_info.value.field_name == "backup_type"

    @pytest.mark.parametrize("value", [0, 11])
    def test_parallel_downloads_range(self, value):
        with pytest.raises(ValidationError):
            BackupOptions(parallel_downloads=value)

    def test_since_date_normalised(self):
        options = BackupOptions(since_date="2025-01-15T10:30:00Z")

        assert options.since_date == "2025-01-15T10:30:00.000Z"

    def test_since_date_with_offset(self):
        options = BackupOptions(since_date="2025-01-15T12:30:00.250+02:00")

        assert options.since_date == "2025-01-15T10:30:00.250Z"

    def test_invalid_since_date(self):
        with pytest.raises(ValidationError, match="since_date"):
            BackupOptions(since_date="last tuesday")

    def test_full_ignores_since(self):
        options = BackupOptions(backup_type="full", since_date="2025-01-15T00:00:00Z")

        assert options.effective_since is None

    def test_to_dict(self):
        options = BackupOptions(output_directory="/b", objects_filter=["Account", " "])

        assert options.to_dict() == {
            "outputDirectory": "/b",
            "backupType": "incremental",
            "includeFiles": True,
            "includeAttachments": True,
            "includeDocuments": True,
            "objectsFilter": ["Account"],
            "sinceDate": None,
            "parallelDownloads": 5,
        }


class TestExtensions:
    @pytest.mark.parametrize(
        "content_type,ext",
        [
            ("application/pdf", ".pdf"),
            ("application/vnd.openxmlformats-officedocument.spreadsheetml.sheet", ".xlsx"),
            ("image/jpeg", ".jpg"),
            ("application/zip", ".bin"),
            (None, ".bin"),
        ],
    )
    def test_extension_for(self, content_type, ext):
        assert extension_for(content_type) == ext


class TestSnapshotWriter:
    """Tests for a complete SnapshotWriter run."""

    @pytest.mark.asyncio
    async def test_layout_and_manifest(self, source, tmp_path):
        writer = make_writer(source, tmp_path)

        result = await writer.create_snapshot()

        directory = Path(result.directory)
        assert directory.name == "salesforce-backup-2025-01-01T00-00-00-000Z"
        assert writer.stamp == "2025-01-01T00-00-00-000Z"
        for sub in ("metadata", "data", "logs", "files/content", "files/attachments", "files/documents"):
            assert (directory / sub).is_dir()

        manifest = read_json(directory / "backup-manifest.json")
        assert manifest["backupInfo"]["timestamp"] == "2025-01-01T00:00:00.000Z"
        assert manifest["backupInfo"]["type"] == "incremental"
        assert manifest["backupInfo"]["sourceInstance"] == "https://acme.my.salesforce.com"
        assert manifest["directories"] == {
            "metadata": "metadata/",
            "data": "data/",
            "files": "files/",
            "logs": "logs/",
        }
        assert manifest["downloadStats"]["contentVersions"] == 1
        assert manifest["downloadStats"]["attachments"] == 1
        assert manifest["downloadStats"]["documents"] == 1
        assert manifest["downloadStats"]["errors"] == 0
        assert manifest["options"]["backupType"] == "incremental"
        assert manifest["skipped"] == []
        assert not (directory / "backup-manifest.json.tmp").exists()

    @pytest.mark.asyncio
    async def test_metadata(self, source, tmp_path):
        result = await make_writer(source, tmp_path).create_snapshot()

        schema = read_json(Path(result.directory) / "metadata" / "objects-schema.json")
        assert schema["sourceInstance"] == "https://acme.my.salesforce.com"
        assert schema["apiVersion"] == "58.0"
        assert schema["totalObjects"] == 7
        assert {o["name"] for o in schema["objects"]} >= {"Account", "Hidden", "Document"}

    @pytest.mark.asyncio
    async def test_record_phase(self, source, tmp_path):
        result = await make_writer(source, tmp_path).create_snapshot()

        data_dir = Path(result.directory) / "data"
        assert "SELECT Id, Name, LastModifiedDate FROM Account LIMIT 1000" in source.queries
        records = read_json(data_dir / "Account.json")
        assert [r["Id"] for r in records] == ["001A", "001B"]
        assert not (data_dir / "Account__History.json").exists()
        assert not (data_dir / "Empty.json").exists()
        assert not (data_dir / "Hidden.json").exists()

    @pytest.mark.asyncio
    async def test_field_cap(self, source, tmp_path):
        options = BackupOptions(output_directory=str(tmp_path), objects_filter=["Account"])
        writer = SnapshotWriter(
            source, options, limits=QueryLimits(max_fields_per_object=2), clock=fixed_clock
        )

        await writer.create_structure()
        await writer.backup_object_data()

        assert source.queries == ["SELECT Id, Name FROM Account LIMIT 1000"]

    @pytest.mark.asyncio
    async def test_field_fallback(self, tmp_path):
        source = InMemoryRecordSource()
        source.add_object(
            "Blob",
            [{"Id": "b1", "Name": "blob"}],
            fields=[("Data", "base64"), ("Body", "string")],
        )
        writer = make_writer(source, tmp_path, include_files=False, include_attachments=False, include_documents=False)

        result = await writer.create_snapshot()

        assert source.queries == ["SELECT Id, Name FROM Blob LIMIT 1000"]
        assert read_json(Path(result.directory) / "data" / "Blob.json")[0]["Name"] == "blob"

    @pytest.mark.asyncio
    async def test_files_phase(self, source, tmp_path):
        result = await make_writer(source, tmp_path).create_snapshot()

        files = Path(result.directory) / "files"
        assert (files / "content" / "068A.pdf").read_bytes() == b"%PDF-1.4"
        assert (files / "attachments" / "00PA.png").read_bytes() == b"\x89PNG"
        assert (files / "documents" / "015A.csv").read_bytes() == b"a,b\n1,2\n"
        assert (
            "SELECT Id, Title, FileType, ContentSize FROM ContentVersion "
            "WHERE IsLatest = true LIMIT 2000"
        ) in source.queries
        assert "SELECT Id, Name, ContentType, BodyLength FROM Attachment LIMIT 1000" in source.queries
        assert "SELECT Id, Name, Type, BodyLength FROM Document LIMIT 1000" in source.queries

        file_manifest = read_json(Path(result.directory) / "metadata" / "file-manifest.json")
        assert file_manifest["totalFiles"] == 3
        assert all(r["success"] for r in file_manifest["downloadResults"])
        assert file_manifest["stats"]["totalBytes"] == 8 + 4 + 8

    @pytest.mark.asyncio
    async def test_content_version_without_file_type(self, tmp_path):
        source = InMemoryRecordSource()
        source.add_file(FileKind.CONTENT_VERSION, "068Z", b"raw")

        result = await make_writer(source, tmp_path).create_snapshot()

        assert (Path(result.directory) / "files" / "content" / "068Z.bin").exists()

    @pytest.mark.asyncio
    async def test_incremental_since(self, source, tmp_path):
        writer = make_writer(source, tmp_path, since_date="2025-01-01T00:00:00Z")

        result = await writer.create_snapshot()

        since = "2025-01-01T00:00:00.000Z"
        assert (
            f"SELECT Id, Name, LastModifiedDate FROM Account WHERE LastModifiedDate > {since} LIMIT 1000"
            in source.queries
        )
        assert (
            "SELECT Id, Title, FileType, ContentSize FROM ContentVersion "
            f"WHERE LastModifiedDate > {since} AND IsLatest = true LIMIT 2000"
        ) in source.queries
        records = read_json(Path(result.directory) / "data" / "Account.json")
        assert [r["Id"] for r in records] == ["001A"]

    @pytest.mark.asyncio
    async def test_full_backup_ignores_since(self, source, tmp_path):
        writer = make_writer(source, tmp_path, backup_type="full", since_date="2025-01-01T00:00:00Z")

        await writer.create_snapshot()

        assert not any("LastModifiedDate >" in q for q in source.queries)

    @pytest.mark.asyncio
    async def test_files_only(self, source, tmp_path):
        result = await make_writer(source, tmp_path, backup_type="files_only").create_snapshot()

        directory = Path(result.directory)
        assert list((directory / "data").iterdir()) == []
        assert (directory / "metadata" / "objects-schema.json").exists()
        assert (directory / "files" / "attachments" / "00PA.png").exists()

    @pytest.mark.asyncio
    async def test_objects_filter(self, source, tmp_path):
        result = await make_writer(source, tmp_path, objects_filter=["Account"]).create_snapshot()

        names = sorted(p.name for p in (Path(result.directory) / "data").iterdir())
        assert names == ["Account.json"]

    @pytest.mark.asyncio
    async def test_files_disabled(self, source, tmp_path):
        writer = make_writer(
            source, tmp_path, include_files=False, include_attachments=False, include_documents=False
        )

        result = await writer.create_snapshot()

        assert not (Path(result.directory) / "metadata" / "file-manifest.json").exists()
        assert source.download_calls == []

    @pytest.mark.asyncio
    async def test_object_error_is_skipped(self, source, tmp_path):
        source.fail_object("Account")

        result = await make_writer(source, tmp_path).create_snapshot()

        assert result.skipped[0]["phase"] == "records"
        assert result.skipped[0]["object"] == "Account"
        assert "HTTP 400" in result.skipped[0]["error"]
        data_dir = Path(result.directory) / "data"
        assert not (data_dir / "Account.json").exists()
        assert (data_dir / "ContentVersion.json").exists()
        manifest = read_json(Path(result.directory) / "backup-manifest.json")
        assert manifest["skipped"] == result.skipped

    @pytest.mark.asyncio
    async def test_describe_global_error_is_skipped(self, source, tmp_path):
        source.fail_describe_global()

        result = await make_writer(source, tmp_path).create_snapshot()

        schema = read_json(Path(result.directory) / "metadata" / "objects-schema.json")
        assert schema["totalObjects"] == 0
        assert result.skipped[0]["phase"] == "metadata"
        assert (Path(result.directory) / "backup-manifest.json").exists()

    @pytest.mark.asyncio
    async def test_discovery_error_is_skipped(self, source, tmp_path):
        source.fail_object("Attachment")

        result = await make_writer(source, tmp_path).create_snapshot()

        assert {"phase": "files", "object": "Attachment"} in [
            {"phase": s["phase"], "object": s["object"]} for s in result.skipped
        ]
        assert result.stats["contentVersions"] == 1
        assert result.stats["attachments"] == 0
        assert result.stats["documents"] == 1

    @pytest.mark.asyncio
    async def test_failed_download_is_recorded(self, source, tmp_path):
        source.fail_download("00PA", status_code=500)

        result = await make_writer(source, tmp_path).create_snapshot()

        assert result.stats["errors"] == 1
        file_manifest = read_json(Path(result.directory) / "metadata" / "file-manifest.json")
        failed = [r for r in file_manifest["downloadResults"] if not r["success"]]
        assert [r["id"] for r in failed] == ["00PA"]

    @pytest.mark.asyncio
    async def test_manifest_write_failure_is_fatal(self, source, tmp_path):
        writer = make_writer(source, tmp_path)
        await writer.create_structure()
        os.makedirs(writer.directory / "backup-manifest.json" / "occupied")

        with pytest.raises(SnapshotWriteError):
            await writer.write_manifest()

    @pytest.mark.asyncio
    async def test_structure_failure_is_fatal(self, source, tmp_path):
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("file")
        writer = make_writer(source, tmp_path, output_directory=str(blocker))

        with pytest.raises(SnapshotWriteError):
            await writer.create_snapshot()
