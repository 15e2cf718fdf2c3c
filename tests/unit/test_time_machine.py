"""
Unit tests for TimeMachine snapshot selection and queries.
"""

import json
from datetime import datetime, timezone

import pytest

from sfdc.backup_server.timemachine import ObjectTypeNotFound, QueryResult, TimeMachine

T1 = "2025-01-01T00:00:00.000Z"
T2 = "2025-02-01T00:00:00.000Z"
T3 = "2025-03-01T00:00:00.000Z"


@pytest.fixture
def three_snapshots(make_snapshot, tmp_path):
    make_snapshot(T1, {"Account": [{"Id": "001A", "Name": "Acme"}]})
    make_snapshot(
        T2,
        {
            "Account": [{"Id": "001A", "Name": "Acme Corp"}, {"Id": "001B", "Name": "Globex"}],
            "Contact": [{"Id": "003A", "LastName": "Smith"}],
        },
    )
    make_snapshot(T3, {"Contact": [{"Id": "003A", "LastName": "Smyth"}]})
    return TimeMachine(tmp_path)


class TestListSnapshots:
    """Tests for list_snapshots."""

    def test_sorted_newest_first(self, three_snapshots):
        assert [s.timestamp for s in three_snapshots.list_snapshots()] == [T3, T2, T1]

    def test_orders_by_manifest_timestamp(self, make_snapshot, tmp_path):
        make_snapshot(T1, name="salesforce-backup-zzz")
        make_snapshot(T2, name="salesforce-backup-aaa")

        names = [s.name for s in TimeMachine(tmp_path).list_snapshots()]

        assert names == ["salesforce-backup-aaa", "salesforce-backup-zzz"]

    def test_excludes_uncommitted_and_foreign(self, make_snapshot, tmp_path):
        make_snapshot(T1)
        make_snapshot(T2, {"Account": [{"Id": "001A"}]}, manifest=False)
        make_snapshot(T3, name="other-backup")
        corrupt = make_snapshot("2025-04-01T00:00:00.000Z", manifest=False)
        (corrupt / "backup-manifest.json").write_text("{")
        no_timestamp = make_snapshot("2025-05-01T00:00:00.000Z", manifest=False)
        (no_timestamp / "backup-manifest.json").write_text(json.dumps({"backupInfo": {}}))
        (tmp_path / "salesforce-backup-file").write_text("not a directory")

        snapshots = TimeMachine(tmp_path).list_snapshots()

        assert [s.timestamp for s in snapshots] == [T1]

    def test_missing_root(self, tmp_path):
        assert TimeMachine(tmp_path / "missing").list_snapshots() == []

    def test_stats(self, three_snapshots):
        snapshot = three_snapshots.list_snapshots()[0]

        assert snapshot.stats["totalBytes"] == 0
        assert snapshot.taken_at == datetime(2025, 3, 1, tzinfo=timezone.utc)


class TestResolveAt:
    """Tests for nearest-snapshot resolution."""

    @pytest.mark.parametrize(
        "when,expected",
        [
            ("2024-12-31T23:59:59Z", T1),
            (T1, T1),
            ("2025-01-15T00:00:00Z", T1),
            (T2, T2),
            ("2025-02-28T23:59:59.999Z", T2),
            (T3, T3),
            ("2030-01-01T00:00:00Z", T3),
        ],
    )
    def test_clamp(self, three_snapshots, when, expected):
        assert three_snapshots.resolve_at(when).timestamp == expected

    @pytest.mark.parametrize(
        "when",
        [datetime(2025, 2, 1), datetime(2025, 2, 1, tzinfo=timezone.utc)],
    )
    def test_datetime_target(self, three_snapshots, when):
        assert three_snapshots.resolve_at(when).timestamp == T2

    def test_naive_datetime_in_compare(self, three_snapshots):
        result = three_snapshots.compare(datetime(2025, 1, 1), datetime(2025, 2, 15), "Account")

        assert result.count_difference == 1

    def test_no_snapshots(self, tmp_path):
        assert TimeMachine(tmp_path).resolve_at(T1) is None

    def test_invalid_date(self, three_snapshots):
        with pytest.raises(ValueError):
            three_snapshots.resolve_at("yesterday")


class TestQueries:
    """Tests for query_at, compare and record_history."""

    def test_query_at(self, three_snapshots):
        result = three_snapshots.query_at("2025-02-15T00:00:00Z", "Account", {"Name": "*acme*"})

        assert isinstance(result, QueryResult)
        assert result.snapshot.timestamp == T2
        assert result.count == 1
        assert result.records[0]["Name"] == "Acme Corp"

    def test_query_at_missing_object_type(self, three_snapshots):
        result = three_snapshots.query_at(T3, "Account")

        assert isinstance(result, ObjectTypeNotFound)
        assert result.available_objects == ["Contact"]
        assert "Account" in result.error

    def test_query_rejects_path_segments(self, three_snapshots):
        result = three_snapshots.query_at(T2, "../Account")

        assert isinstance(result, ObjectTypeNotFound)

    def test_query_without_snapshots(self, tmp_path):
        assert TimeMachine(tmp_path).query_at(T1, "Account") is None

    def test_compare_counts_only(self, three_snapshots):
        comparison = three_snapshots.compare(T1, T2, "Account")

        assert comparison.start.count == 1
        assert comparison.end.count == 2
        assert comparison.count_difference == 1

    def test_compare_missing_object_type(self, three_snapshots):
        assert isinstance(three_snapshots.compare(T1, T3, "Account"), ObjectTypeNotFound)

    def test_record_history(self, three_snapshots):
        history = three_snapshots.record_history("001A", "Account")

        assert [(h.timestamp, h.record["Name"]) for h in history] == [
            (T2, "Acme Corp"),
            (T1, "Acme"),
        ]

    def test_record_history_unknown_id(self, three_snapshots):
        assert three_snapshots.record_history("001Z", "Account") == []

    def test_record_history_skips_missing_type(self, three_snapshots):
        history = three_snapshots.record_history("003A", "Contact")

        assert [h.record["LastName"] for h in history] == ["Smyth", "Smith"]
