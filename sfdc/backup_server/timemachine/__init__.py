"""
Point-in-time queries over committed snapshots.
"""

from .filters import CompiledFilter, compile_wildcard
from .machine import (
    Comparison,
    HistoryEntry,
    ObjectTypeNotFound,
    QueryResult,
    Snapshot,
    TimeMachine,
)
from .operations import available_operations, run_operation

__all__ = [
    "TimeMachine",
    "Snapshot",
    "QueryResult",
    "ObjectTypeNotFound",
    "Comparison",
    "HistoryEntry",
    "CompiledFilter",
    "compile_wildcard",
    "run_operation",
    "available_operations",
]
