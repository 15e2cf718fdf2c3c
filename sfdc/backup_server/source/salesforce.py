"""
Salesforce REST API RecordSource implementation.

This module provides the production RecordSource backed by the Salesforce
REST API:
- /services/data/v{ver}/sobjects/                  (describe global)
- /services/data/v{ver}/sobjects/{name}/describe   (describe object)
- /services/data/v{ver}/query?q=...                (SOQL, follows nextRecordsUrl)
- ContentVersion/{id}/VersionData, Attachment/{id}/Body, Document/{id}/Body

Invariants:
    - Every request carries the configured bearer token
    - httpx transport errors become SourceConnectionError
    - Non-2xx responses become SourceHTTPError
    - Undecodable JSON becomes SourceError

How to change safely:
    - Token acquisition and refresh live outside this module; pass a fresh
      token through SourceConfig
    - Bump api_version through configuration, not in code
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from ..errors import SourceConnectionError, SourceError, SourceHTTPError
from .base import FileKind

logger = logging.getLogger(__name__)


class SalesforceRecordSource:
    """httpx implementation of the RecordSource protocol.

    Attributes:
        config: SourceConfig with instance URL, token and API version

    Example:
        >>> source = SalesforceRecordSource(SourceConfig(instance_url=url, access_token=token))
        >>> async with source:
        ...     objects = await source.describe_global()
    """

    def __init__(self, config: Any, transport: httpx.AsyncBaseTransport | None = None) -> None:
        """Initialize the Salesforce source.

        Args:
            config: SourceConfig instance with connection settings
            transport: Optional httpx transport (tests pass httpx.MockTransport)
        """
        self.config = config
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def instance_url(self) -> str:
        return self.config.instance_url.rstrip("/")

    @property
    def api_version(self) -> str:
        return self.config.api_version

    @property
    def is_connected(self) -> bool:
        """Whether an HTTP client is open."""
        return self._client is not None

    @property
    def _base_path(self) -> str:
        return f"/services/data/v{self.api_version}"

    async def connect(self) -> None:
        """Open the HTTP client."""
        if self._client is not None:
            return
        self._client = httpx.AsyncClient(
            base_url=self.instance_url,
            headers={
                "Authorization": f"Bearer {self.config.access_token}",
                "Accept": "application/json",
            },
            timeout=self.config.timeout_seconds,
            transport=self._transport,
        )
        logger.info(
            "Salesforce source connected",
            extra={"instance_url": self.instance_url, "api_version": self.api_version},
        )

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.debug("Salesforce source closed")

    async def __aenter__(self) -> SalesforceRecordSource:
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def describe_global(self) -> list[dict[str, Any]]:
        data = await self._get_json(f"{self._base_path}/sobjects/")
        return list(data.get("sobjects", []))

    async def describe(self, object_name: str) -> dict[str, Any]:
        return await self._get_json(f"{self._base_path}/sobjects/{object_name}/describe")

    async def query(self, soql: str) -> dict[str, Any]:
        data = await self._get_json(f"{self._base_path}/query", params={"q": soql})
        records = list(data.get("records", []))

        next_url = data.get("nextRecordsUrl")
        while next_url:
            page = await self._get_json(next_url)
            records.extend(page.get("records", []))
            next_url = page.get("nextRecordsUrl")

        return {
            "totalSize": data.get("totalSize", len(records)),
            "done": True,
            "records": records,
        }

    async def fetch_binary(self, kind: FileKind, record_id: str) -> bytes:
        path = f"{self._base_path}/sobjects/{kind.value}/{record_id}/{kind.body_field}"
        response = await self._request(path)
        return response.content

    async def _get_json(self, path: str, params: dict[str, str] | None = None) -> dict[str, Any]:
        response = await self._request(path, params=params)
        try:
            return response.json()
        except ValueError as e:
            raise SourceError(f"Invalid JSON from {path}: {e}") from e

    async def _request(self, path: str, params: dict[str, str] | None = None) -> httpx.Response:
        if self._client is None:
            await self.connect()

        try:
            response = await self._client.get(path, params=params)
        except httpx.TransportError as e:
            raise SourceConnectionError(f"Request to {path} failed: {e}", url=path) from e

        if not response.is_success:
            raise SourceHTTPError(response.status_code, response.reason_phrase, url=path)
        return response
