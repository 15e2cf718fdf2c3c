"""
Time Machine operation surface.

Each operation takes an argument dict and returns a JSON-ready dict:
``{"success": True, ...}`` or ``{"success": False, "error": "..."}``.
Operations never raise; lookup failures and bad arguments are reported
in the result.

Operations:
    list_backups()
    query_at_point_in_time(targetDate, objectType, filters?)
    compare_over_time(startDate, endDate, objectType, filters?)
    get_record_history(recordId, objectType)
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Callable, Mapping

from .machine import ObjectTypeNotFound, TimeMachine

logger = logging.getLogger(__name__)

DEFAULT_ROOT = "./backups"

OPERATIONS: list[dict[str, Any]] = [
    {
        "operation": "query_at_point_in_time",
        "description": "Query data as it existed at a specific date",
        "parameters": ["targetDate", "objectType", "filters (optional)"],
    },
    {
        "operation": "compare_over_time",
        "description": "Compare data between two points in time",
        "parameters": ["startDate", "endDate", "objectType", "filters (optional)"],
    },
    {
        "operation": "get_record_history",
        "description": "Get complete history of changes for a specific record",
        "parameters": ["recordId", "objectType"],
    },
    {
        "operation": "list_backups",
        "description": "List all available backup snapshots",
        "parameters": [],
    },
]


class OperationError(Exception):
    """Invalid arguments for an operation."""


def available_operations() -> list[dict[str, Any]]:
    return [dict(op, parameters=list(op["parameters"])) for op in OPERATIONS]


def _require(args: Mapping[str, Any], *names: str) -> list[Any]:
    missing = [name for name in names if not args.get(name)]
    if missing:
        raise OperationError(f"Missing required argument(s): {', '.join(missing)}")
    return [args[name] for name in names]


def _filters(args: Mapping[str, Any]) -> dict[str, Any]:
    filters = args.get("filters") or {}
    if not isinstance(filters, Mapping):
        raise OperationError("filters must be an object mapping field names to values")
    return dict(filters)


def _not_found(result: ObjectTypeNotFound) -> dict[str, Any]:
    return {
        "success": False,
        "error": result.error,
        "availableObjects": result.available_objects,
    }


def list_backups(machine: TimeMachine, args: Mapping[str, Any]) -> dict[str, Any]:
    backups = [
        {"timestamp": s.timestamp, "path": s.path, "stats": s.stats}
        for s in machine.list_snapshots()
    ]
    return {"success": True, "backups": backups, "count": len(backups)}


def query_at_point_in_time(machine: TimeMachine, args: Mapping[str, Any]) -> dict[str, Any]:
    target_date, object_type = _require(args, "targetDate", "objectType")
    result = machine.query_at(target_date, object_type, _filters(args))
    if result is None:
        return {"success": False, "error": "No backups found for the specified date range"}
    if isinstance(result, ObjectTypeNotFound):
        return _not_found(result)
    return {
        "success": True,
        "data": result.records,
        "count": result.count,
        "objectType": object_type,
        "snapshotDate": result.snapshot.timestamp,
        "message": f"Data as it existed on {result.snapshot.timestamp}",
    }


def compare_over_time(machine: TimeMachine, args: Mapping[str, Any]) -> dict[str, Any]:
    start_date, end_date, object_type = _require(args, "startDate", "endDate", "objectType")
    result = machine.compare(start_date, end_date, object_type, _filters(args))
    if result is None:
        return {"success": False, "error": "Could not find backups for the specified date range"}
    if isinstance(result, ObjectTypeNotFound):
        return _not_found(result)
    return {
        "success": True,
        "comparison": {
            "startSnapshot": {
                "date": result.start.snapshot.timestamp,
                "count": result.start.count,
                "data": result.start.records,
            },
            "endSnapshot": {
                "date": result.end.snapshot.timestamp,
                "count": result.end.count,
                "data": result.end.records,
            },
            "changes": {"countDifference": result.count_difference},
        },
        "objectType": object_type,
    }


def get_record_history(machine: TimeMachine, args: Mapping[str, Any]) -> dict[str, Any]:
    record_id, object_type = _require(args, "recordId", "objectType")
    history = [
        {"timestamp": entry.timestamp, "data": entry.record}
        for entry in machine.record_history(record_id, object_type)
    ]
    return {
        "success": True,
        "recordId": record_id,
        "objectType": object_type,
        "history": history,
        "changesCount": len(history),
    }


HANDLERS: dict[str, Callable[[TimeMachine, Mapping[str, Any]], dict[str, Any]]] = {
    "list_backups": list_backups,
    "query_at_point_in_time": query_at_point_in_time,
    "compare_over_time": compare_over_time,
    "get_record_history": get_record_history,
}


def run_operation(
    name: str,
    args: Mapping[str, Any] | None = None,
    root: str | Path | None = None,
) -> dict[str, Any]:
    """Run a named Time Machine operation.

    Args:
        name: Operation name
        args: Operation arguments; ``backupDirectory`` overrides ``root``
        root: Snapshot root directory (defaults to ./backups)

    Returns:
        Tagged result dict
    """
    args = dict(args or {})
    handler = HANDLERS.get(name)
    if handler is None:
        return {
            "success": False,
            "error": f"Unknown operation '{name}'",
            "availableOperations": available_operations(),
        }

    machine = TimeMachine(args.get("backupDirectory") or root or DEFAULT_ROOT)
    try:
        return handler(machine, args)
    except OperationError as e:
        return {"success": False, "error": str(e)}
    except ValueError as e:
        return {"success": False, "error": f"Invalid date: {e}"}
    except Exception as e:
        logger.error(
            "Time Machine operation failed",
            extra={"operation": name, "error": str(e)},
            exc_info=True,
        )
        return {"success": False, "error": f"Time Machine {name} failed: {e}"}
