"""
Command line interface for backups and the Time Machine.

Usage:
    sfbackup backup start [--type TYPE] [--since ISO] [--objects A,B] [--parallel N]
    sfbackup backup status [JOB_ID]
    sfbackup backup list
    sfbackup backup cleanup [--max-age SECONDS]
    sfbackup time-machine list
    sfbackup time-machine query --date ISO --object TYPE [--filter FIELD=VALUE ...]
    sfbackup time-machine compare --start ISO --end ISO --object TYPE [--filter ...]
    sfbackup time-machine history --record-id ID --object TYPE
    sfbackup time-machine operations

Results are printed as JSON.

Exit codes:
    0 - success
    1 - the backup or query failed
    2 - invalid configuration or arguments
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any

from ..config import AppConfig
from ..errors import ValidationError
from ..jobs import JobStatus
from ..main import create_job_manager, run_backup, setup_logging
from ..snapshot import BackupOptions, BackupType
from ..timemachine import available_operations, run_operation

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2


def _print(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def _parse_filters(pairs: list[str] | None) -> dict[str, Any]:
    """Parse FIELD=VALUE pairs; values that are valid JSON are decoded."""
    filters: dict[str, Any] = {}
    for pair in pairs or []:
        key, sep, raw = pair.partition("=")
        if not sep or not key:
            raise ValidationError(f"Invalid filter '{pair}'. Use FIELD=VALUE", field_name="filter")
        try:
            filters[key] = json.loads(raw)
        except ValueError:
            filters[key] = raw
    return filters


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sfbackup",
        description="Back up a Salesforce org and query historical snapshots",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
    commands = parser.add_subparsers(dest="command", required=True)

    backup = commands.add_parser("backup", help="Run and inspect backup jobs")
    backup_commands = backup.add_subparsers(dest="action", required=True)

    start = backup_commands.add_parser(
        "start",
        help="Run a backup and wait for it",
        description=(
            "Run a backup and wait for it. The finished job record stays on disk "
            "for `backup status` unless JOB_CLEANUP_DELAY_SECONDS is 0; "
            "remove old records with `backup cleanup`."
        ),
    )
    start.add_argument(
        "--type",
        dest="backup_type",
        choices=[t.value for t in BackupType],
        default=BackupType.INCREMENTAL.value,
        help="Backup type",
    )
    start.add_argument("--since", help="Only records modified after this ISO-8601 time")
    start.add_argument("--objects", help="Comma separated object types to back up")
    start.add_argument("--parallel", type=int, help="Concurrent binary downloads (1-10)")
    start.add_argument("--no-files", action="store_true", help="Skip ContentVersion files")
    start.add_argument("--no-attachments", action="store_true", help="Skip Attachments")
    start.add_argument("--no-documents", action="store_true", help="Skip Documents")
    start.add_argument(
        "--poll-interval", type=float, default=1.0, help="Seconds between progress reports"
    )

    status = backup_commands.add_parser("status", help="Show job status")
    status.add_argument("job_id", nargs="?", help="Job ID (all jobs when omitted)")

    backup_commands.add_parser("list", help="List jobs with a lock file")

    cleanup = backup_commands.add_parser("cleanup", help="Remove old finished job records")
    cleanup.add_argument(
        "--max-age", type=float, default=3600.0, help="Minimum age in seconds (default 3600)"
    )

    tm = commands.add_parser("time-machine", help="Query historical snapshots")
    tm.add_argument("--root", help="Snapshot root directory (default BACKUP_OUTPUT_DIR)")
    tm_commands = tm.add_subparsers(dest="action", required=True)

    tm_commands.add_parser("list", help="List snapshots")
    tm_commands.add_parser("operations", help="List Time Machine operations")

    query = tm_commands.add_parser("query", help="Query data as of a date")
    query.add_argument("--date", required=True, help="Target ISO-8601 time")
    query.add_argument("--object", required=True, help="Object type")
    query.add_argument("--filter", action="append", help="FIELD=VALUE (repeatable, * wildcard)")

    compare = tm_commands.add_parser("compare", help="Compare two dates")
    compare.add_argument("--start", required=True, help="Start ISO-8601 time")
    compare.add_argument("--end", required=True, help="End ISO-8601 time")
    compare.add_argument("--object", required=True, help="Object type")
    compare.add_argument("--filter", action="append", help="FIELD=VALUE (repeatable, * wildcard)")

    history = tm_commands.add_parser("history", help="History of one record")
    history.add_argument("--record-id", required=True, help="Record Id")
    history.add_argument("--object", required=True, help="Object type")

    return parser


def _backup_start(config: AppConfig, args: argparse.Namespace) -> int:
    config.require_source_credentials()
    options = BackupOptions(
        output_directory=config.backup.output_directory,
        backup_type=args.backup_type,
        include_files=not args.no_files,
        include_attachments=not args.no_attachments,
        include_documents=not args.no_documents,
        objects_filter=(args.objects or "").split(","),
        since_date=args.since,
        parallel_downloads=args.parallel or config.backup.parallel_downloads,
    )
    record = asyncio.run(run_backup(config, options, poll_interval=args.poll_interval))
    _print(record.to_dict())
    return EXIT_OK if record.status == JobStatus.COMPLETED else EXIT_FAILED


def _backup_command(config: AppConfig, args: argparse.Namespace) -> int:
    if args.action == "start":
        return _backup_start(config, args)

    manager = create_job_manager(config)
    if args.action == "status" and args.job_id:
        record = manager.get_job_status(args.job_id)
        if record is None:
            _print({"success": False, "error": f"Job '{args.job_id}' not found"})
            return EXIT_FAILED
        _print(record.to_dict())
    elif args.action in ("status", "list"):
        jobs = [r.to_dict() for r in manager.list_jobs()]
        _print({"success": True, "jobs": jobs, "count": len(jobs)})
    elif args.action == "cleanup":
        removed = manager.cleanup_jobs(max_age_seconds=args.max_age)
        _print({"success": True, "removed": removed})
    return EXIT_OK


def _time_machine_command(config: AppConfig, args: argparse.Namespace) -> int:
    if args.action == "operations":
        _print({"success": True, "operations": available_operations()})
        return EXIT_OK

    root = args.root or config.backup.output_directory
    if args.action == "list":
        result = run_operation("list_backups", {}, root=root)
    elif args.action == "query":
        result = run_operation(
            "query_at_point_in_time",
            {"targetDate": args.date, "objectType": args.object, "filters": _parse_filters(args.filter)},
            root=root,
        )
    elif args.action == "compare":
        result = run_operation(
            "compare_over_time",
            {
                "startDate": args.start,
                "endDate": args.end,
                "objectType": args.object,
                "filters": _parse_filters(args.filter),
            },
            root=root,
        )
    else:
        result = run_operation(
            "get_record_history",
            {"recordId": args.record_id, "objectType": args.object},
            root=root,
        )

    _print(result)
    return EXIT_OK if result.get("success") else EXIT_FAILED


def run(argv: list[str] | None = None) -> int:
    """Parse arguments, run the command and return the exit code."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = AppConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_CONFIG

    setup_logging(config)
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        if args.command == "backup":
            return _backup_command(config, args)
        return _time_machine_command(config, args)
    except ValidationError as e:
        print(f"Invalid arguments: {e.message}", file=sys.stderr)
        return EXIT_CONFIG
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_CONFIG


def main() -> None:
    """CLI entry point."""
    sys.exit(run())


if __name__ == "__main__":
    main()
