"""
Shared fixtures for snapshot-reading tests.
"""

import json
from pathlib import Path

import pytest


@pytest.fixture
def make_snapshot(tmp_path):
    """Factory that writes a snapshot directory under tmp_path.

    Args:
        timestamp: backupInfo.timestamp for the manifest
        data: object type -> list of records
        name: directory name (derived from timestamp if omitted)
        manifest: write backup-manifest.json when True
    """

    def _make(timestamp, data=None, name=None, manifest=True):
        name = name or "salesforce-backup-" + timestamp.replace(":", "-").replace(".", "-")
        directory = Path(tmp_path) / name
        (directory / "data").mkdir(parents=True)
        (directory / "metadata").mkdir()
        for object_type, records in (data or {}).items():
            (directory / "data" / f"{object_type}.json").write_text(json.dumps(records))
        if manifest:
            (directory / "backup-manifest.json").write_text(
                json.dumps(
                    {
                        "backupInfo": {
                            "timestamp": timestamp,
                            "type": "full",
                            "duration": 1,
                            "sourceInstance": "https://test.my.salesforce.com",
                        },
                        "options": {},
                        "downloadStats": {
                            "contentVersions": 0,
                            "attachments": 0,
                            "documents": 0,
                            "totalBytes": 0,
                            "errors": 0,
                            "totalMB": 0,
                        },
                        "directories": {
                            "metadata": "metadata/",
                            "data": "data/",
                            "files": "files/",
                            "logs": "logs/",
                        },
                    }
                )
            )
        return directory

    return _make
