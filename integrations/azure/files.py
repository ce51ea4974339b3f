#!/usr/bin/env python3
"""
Azure Files Integration

Shares, directories and files over the File service REST API. Files are
created at their final size and written as 4 MiB ranges.
"""

import logging
from typing import AsyncIterator, Callable, ClassVar, Dict, List, Mapping, Optional
from xml.etree import ElementTree

import httpx
from pydantic import Field
from pydantic_settings import SettingsConfigDict

from ..auth import TokenProvider
from ..base import IntegrationClient
from ..batch import BatchExecutor
from ..errors import ValidationError
from ..models import VendorModel
from ..transport import HttpTransport
from .storage import (
    AzureStorageSettings,
    as_int,
    encode_path,
    metadata_from_headers,
    metadata_headers,
    range_header,
    storage_auth,
    storage_headers,
)

logger = logging.getLogger(__name__)

MAX_RANGE_SIZE = 4 * 1024 * 1024


class AzureFilesSettings(AzureStorageSettings):
    """File service settings (``AZURE_FILES_`` environment prefix)."""

    model_config = SettingsConfigDict(env_prefix="AZURE_FILES_", env_file=".env", extra="ignore")

    service: ClassVar[str] = "file"

    default_share: Optional[str] = Field(default=None)
    range_size: int = Field(default=MAX_RANGE_SIZE, description="Bytes per Put Range call")

    def collect_issues(self) -> List[str]:
        issues = super().collect_issues()
        if not 0 < self.range_size <= MAX_RANGE_SIZE:
            issues.append(f"range_size must be between 1 and {MAX_RANGE_SIZE} bytes")
        return issues


class FileProperties(VendorModel):
    share: str
    path: str
    content_length: Optional[int] = None
    content_type: Optional[str] = None
    etag: Optional[str] = None
    last_modified: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)


class FileDownload(VendorModel):
    content: bytes
    properties: FileProperties


class DirectoryEntry(VendorModel):
    name: str
    is_directory: bool = False
    content_length: Optional[int] = None


class DirectoryListing(VendorModel):
    entries: List[DirectoryEntry] = Field(default_factory=list)
    next_marker: Optional[str] = None


def parse_directory_listing(xml_text: str) -> DirectoryListing:
    root = ElementTree.fromstring(xml_text)
    listing = DirectoryListing(next_marker=root.findtext("NextMarker") or None)
    entries = root.find("Entries")
    if entries is None:
        return listing
    for entry in entries:
        listing.entries.append(
            DirectoryEntry(
                name=entry.findtext("Name", ""),
                is_directory=entry.tag == "Directory",
                content_length=as_int(entry.findtext("Properties/Content-Length")),
            )
        )
    return listing


class AzureFilesClient(IntegrationClient):
    """Azure File service client."""

    provider = "azure_files"
    settings_class = AzureFilesSettings

    @classmethod
    def from_settings(
        cls,
        settings: AzureFilesSettings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        token_provider: Optional[TokenProvider] = None,
        **kwargs,
    ) -> "AzureFilesClient":
        settings.validate_configuration()
        headers = storage_headers(settings)
        if token_provider is not None:
            # OAuth against Azure Files requires the backup intent header
            headers["x-ms-file-request-intent"] = "backup"
        http = HttpTransport.from_settings(
            settings,
            cls.provider,
            auth=storage_auth(settings, token_provider),
            default_headers=headers,
            transport=transport,
            **kwargs,
        )
        return cls(settings, http)

    def _share(self, share: Optional[str]) -> str:
        share = share or self.settings.default_share
        if not share:
            raise ValidationError("A share name is required", provider=self.provider)
        return share

    def _url(self, share: str, path: str) -> str:
        if not path.strip("/"):
            raise ValidationError("File path must not be empty", provider=self.provider)
        return f"/{share}/{encode_path(path)}"

    async def create_share(self, share: str, quota_gb: Optional[int] = None):
        headers = {"x-ms-share-quota": str(quota_gb)} if quota_gb else None
        await self.http.request(
            "PUT",
            f"/{share}",
            params={"restype": "share"},
            headers=headers,
            operation="create_share",
        )

    async def create_directory(self, path: str, share: Optional[str] = None):
        share = self._share(share)
        await self.http.request(
            "PUT",
            self._url(share, path),
            params={"restype": "directory"},
            headers={
                "x-ms-file-attributes": "Directory",
                "x-ms-file-creation-time": "now",
                "x-ms-file-last-write-time": "now",
                "x-ms-file-permission": "inherit",
            },
            operation="create_directory",
        )

    async def create_file(
        self,
        path: str,
        size: int,
        share: Optional[str] = None,
        content_type: Optional[str] = None,
        metadata: Optional[Mapping[str, str]] = None,
    ) -> FileProperties:
        """Create (or truncate) a file of ``size`` bytes."""
        if size < 0:
            raise ValidationError("size must not be negative", provider=self.provider)
        share = self._share(share)
        headers = {
            "x-ms-type": "file",
            "x-ms-content-length": str(size),
            "x-ms-file-attributes": "None",
            "x-ms-file-creation-time": "now",
            "x-ms-file-last-write-time": "now",
            "x-ms-file-permission": "inherit",
            **metadata_headers(metadata),
        }
        if content_type:
            headers["x-ms-content-type"] = content_type
        response = await self.http.request(
            "PUT", self._url(share, path), headers=headers, operation="create_file"
        )
        return FileProperties(
            share=share,
            path=path,
            content_length=size,
            content_type=content_type,
            etag=response.headers.get("etag"),
            last_modified=response.headers.get("last-modified"),
            metadata=dict(metadata or {}),
        )

    async def put_range(self, path: str, offset: int, data: bytes, share: Optional[str] = None):
        if not data:
            raise ValidationError("range data must not be empty", provider=self.provider)
        if len(data) > MAX_RANGE_SIZE:
            raise ValidationError(
                f"range exceeds {MAX_RANGE_SIZE} bytes", provider=self.provider
            )
        share = self._share(share)
        await self.http.request(
            "PUT",
            self._url(share, path),
            params={"comp": "range"},
            content=data,
            headers={
                "x-ms-range": f"bytes={offset}-{offset + len(data) - 1}",
                "x-ms-write": "update",
            },
            operation="put_range",
        )

    async def upload_file(
        self,
        path: str,
        data: bytes,
        share: Optional[str] = None,
        content_type: Optional[str] = None,
        metadata: Optional[Mapping[str, str]] = None,
        on_progress: Optional[Callable[[int, int], None]] = None,
    ) -> FileProperties:
        """Create the file then write its ranges concurrently."""
        share = self._share(share)
        properties = await self.create_file(path, len(data), share, content_type, metadata)
        if not data:
            return properties

        size = self.settings.range_size
        offsets = list(range(0, len(data), size))

        async def write(index: int, chunk):
            offset = chunk[0]
            await self.put_range(path, offset, data[offset : offset + size], share)

        executor = BatchExecutor(
            concurrency=self.settings.max_concurrency, chunk_size=1, fail_fast=True
        )
        await executor.run(offsets, write, on_progress)
        logger.info("Uploaded %s/%s in %d ranges", share, path, len(offsets))
        return properties

    def _properties(self, share: str, path: str, headers: httpx.Headers) -> FileProperties:
        return FileProperties(
            share=share,
            path=path,
            content_length=as_int(headers.get("content-length")),
            content_type=headers.get("content-type"),
            etag=headers.get("etag"),
            last_modified=headers.get("last-modified"),
            metadata=metadata_from_headers(headers),
        )

    async def download_file(
        self,
        path: str,
        share: Optional[str] = None,
        offset: Optional[int] = None,
        length: Optional[int] = None,
    ) -> FileDownload:
        share = self._share(share)
        byte_range = range_header(offset, length)
        response = await self.http.request(
            "GET",
            self._url(share, path),
            headers={"x-ms-range": byte_range} if byte_range else None,
            operation="get_file",
        )
        return FileDownload(
            content=response.content, properties=self._properties(share, path, response.headers)
        )

    async def get_file_properties(self, path: str, share: Optional[str] = None) -> FileProperties:
        share = self._share(share)
        response = await self.http.request(
            "HEAD", self._url(share, path), operation="get_file_properties"
        )
        return self._properties(share, path, response.headers)

    async def delete_file(self, path: str, share: Optional[str] = None):
        share = self._share(share)
        await self.http.request("DELETE", self._url(share, path), operation="delete_file")

    async def list_directory(
        self,
        path: str = "",
        share: Optional[str] = None,
        prefix: Optional[str] = None,
        max_results: Optional[int] = None,
        marker: Optional[str] = None,
    ) -> DirectoryListing:
        share = self._share(share)
        url = f"/{share}/{encode_path(path)}" if path.strip("/") else f"/{share}"
        response = await self.http.request(
            "GET",
            url,
            params={
                "restype": "directory",
                "comp": "list",
                "prefix": prefix,
                "maxresults": max_results,
                "marker": marker,
            },
            operation="list_directory",
        )
        return parse_directory_listing(response.text)

    async def iter_directory(
        self, path: str = "", share: Optional[str] = None, prefix: Optional[str] = None
    ) -> AsyncIterator[DirectoryEntry]:
        """Iterate every entry of a directory, following NextMarker."""
        marker = None
        while True:
            listing = await self.list_directory(path, share, prefix=prefix, marker=marker)
            for entry in listing.entries:
                yield entry
            marker = listing.next_marker
            if not marker:
                return

    async def _ping(self):
        await self.http.request(
            "GET",
            "/",
            params={"restype": "service", "comp": "properties"},
            operation="get_service_properties",
        )
