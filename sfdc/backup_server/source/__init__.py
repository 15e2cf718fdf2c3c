"""
RecordSource abstraction for the backup server.

This module provides the narrow contract through which the backup engine
reaches the remote system:
- Salesforce REST API (production)
- In-memory (for testing and local development)

Invariants:
    - The engine never builds HTTP requests itself
    - All remote failures are SourceError subclasses

How to change safely:
    - New backends must implement the RecordSource protocol
    - Keep InMemoryRecordSource able to answer every query the writer emits
"""

from .base import FileKind, RecordSource, create_record_source
from .memory import InMemoryRecordSource
from .salesforce import SalesforceRecordSource

__all__ = [
    # Protocol and types
    "RecordSource",
    "FileKind",
    # Factory
    "create_record_source",
    # Implementations
    "SalesforceRecordSource",
    "InMemoryRecordSource",
]
