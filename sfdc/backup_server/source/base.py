"""
Base protocol and types for the remote RecordSource abstraction.

This module defines the RecordSource protocol that all backends must
implement, along with the binary storage kinds a source can serve.

Invariants:
    - Every remote failure surfaces as a SourceError subclass
    - Non-2xx responses raise SourceHTTPError with the status code
    - Transport failures raise SourceConnectionError
    - describe_global/describe/query return decoded JSON, never raw bytes

How to change safely:
    - Protocol changes require updating all implementations
    - The Snapshot Writer relies on the exact SOQL shapes it emits;
      InMemoryRecordSource must be kept able to answer them
"""

from __future__ import annotations

from abc import abstractmethod
from enum import Enum
from typing import Any, Dict, List, Protocol, TYPE_CHECKING, runtime_checkable

if TYPE_CHECKING:
    from ..config import AppConfig


class FileKind(Enum):
    """Binary storage mechanisms of the remote system."""

    CONTENT_VERSION = "ContentVersion"
    ATTACHMENT = "Attachment"
    DOCUMENT = "Document"

    @property
    def body_field(self) -> str:
        """Name of the binary field on the sobject."""
        if self is FileKind.CONTENT_VERSION:
            return "VersionData"
        return "Body"


@runtime_checkable
class RecordSource(Protocol):
    """Protocol for remote record sources.

    The core backup engine only talks to the remote system through this
    interface: schema description, SOQL queries and binary downloads.

    Example:
        >>> source = SalesforceRecordSource(config.source)
        >>> objects = await source.describe_global()
        >>> result = await source.query("SELECT Id, Name FROM Account LIMIT 10")
        >>> payload = await source.fetch_binary(FileKind.ATTACHMENT, "00P000000000001")
    """

    @property
    @abstractmethod
    def instance_url(self) -> str:
        """Identity of the target system."""
        ...

    @property
    @abstractmethod
    def api_version(self) -> str:
        """API version used for requests."""
        ...

    @abstractmethod
    async def describe_global(self) -> List[Dict[str, Any]]:
        """List all object types.

        Returns:
            Object descriptors with at least ``name`` and ``queryable``

        Raises:
            SourceError: If the request fails
        """
        ...

    @abstractmethod
    async def describe(self, object_name: str) -> Dict[str, Any]:
        """Describe one object type.

        Args:
            object_name: API name of the object type

        Returns:
            Description with a ``fields`` list of ``{name, type}`` entries

        Raises:
            SourceError: If the request fails
        """
        ...

    @abstractmethod
    async def query(self, soql: str) -> Dict[str, Any]:
        """Run a SOQL query.

        Args:
            soql: Query string

        Returns:
            ``{"records": [...], "totalSize": n}``

        Raises:
            SourceError: If the request fails
        """
        ...

    @abstractmethod
    async def fetch_binary(self, kind: FileKind, record_id: str) -> bytes:
        """Download the binary payload of one file record.

        Args:
            kind: Storage mechanism the record belongs to
            record_id: Id of the ContentVersion/Attachment/Document

        Returns:
            Raw bytes

        Raises:
            SourceConnectionError: On transport failure
            SourceHTTPError: On non-2xx status
        """
        ...


def create_record_source(config: "AppConfig") -> RecordSource:
    """Factory function to create a RecordSource from configuration.

    Args:
        config: Application configuration

    Returns:
        Appropriate RecordSource implementation

    Raises:
        ValueError: If backend is not supported
    """
    from ..config import SourceBackend
    from .memory import InMemoryRecordSource
    from .salesforce import SalesforceRecordSource

    if config.source_backend == SourceBackend.SALESFORCE:
        return SalesforceRecordSource(config.source)
    elif config.source_backend == SourceBackend.MEMORY:
        return InMemoryRecordSource(instance_url=config.source.instance_url or "memory://local")
    else:
        raise ValueError(f"Unsupported record source: {config.source_backend}")
