#!/usr/bin/env python3
"""
Azure Blob Storage Integration

Block blob upload (single put or staged blocks), ranged download,
properties and metadata, listing with marker pagination, and container
management over the Blob service REST API.
"""

import base64
import logging
from typing import AsyncIterator, Callable, Dict, List, Mapping, Optional
from xml.etree import ElementTree

import httpx
from pydantic import Field
from pydantic_settings import SettingsConfigDict

from ..auth import TokenProvider
from ..base import IntegrationClient
from ..batch import BatchExecutor, chunked
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

MAX_BLOCKS = 50000


class BlobStorageSettings(AzureStorageSettings):
    """Blob service settings (``AZURE_STORAGE_`` environment prefix)."""

    model_config = SettingsConfigDict(
        env_prefix="AZURE_STORAGE_", env_file=".env", extra="ignore"
    )

    default_container: Optional[str] = Field(default=None)
    block_size: int = Field(default=4 * 1024 * 1024, description="Staged block size")
    single_upload_threshold: int = Field(
        default=8 * 1024 * 1024, description="Largest blob uploaded with a single PUT"
    )


class BlobProperties(VendorModel):
    name: str
    container: str
    content_length: Optional[int] = None
    content_type: Optional[str] = None
    etag: Optional[str] = None
    last_modified: Optional[str] = None
    blob_type: Optional[str] = None
    access_tier: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)


class BlobDownload(VendorModel):
    content: bytes
    properties: BlobProperties


class UploadResult(VendorModel):
    name: str
    container: str
    etag: Optional[str] = None
    last_modified: Optional[str] = None
    block_count: int = 0


class BlobItem(VendorModel):
    name: str
    content_length: Optional[int] = None
    content_type: Optional[str] = None
    etag: Optional[str] = None
    last_modified: Optional[str] = None
    access_tier: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)


class ListBlobsPage(VendorModel):
    blobs: List[BlobItem] = Field(default_factory=list)
    prefixes: List[str] = Field(default_factory=list)
    next_marker: Optional[str] = None


def block_id(index: int) -> str:
    """Block ids must have equal length within a blob."""
    return base64.b64encode(f"block-{index:08d}".encode("ascii")).decode("ascii")


def block_list_xml(block_ids: List[str]) -> bytes:
    entries = "".join(f"<Latest>{bid}</Latest>" for bid in block_ids)
    return f'<?xml version="1.0" encoding="utf-8"?><BlockList>{entries}</BlockList>'.encode(
        "utf-8"
    )


def parse_list_blobs(xml_text: str) -> ListBlobsPage:
    root = ElementTree.fromstring(xml_text)
    page = ListBlobsPage(next_marker=root.findtext("NextMarker") or None)
    blobs = root.find("Blobs")
    if blobs is None:
        return page
    for blob in blobs.findall("Blob"):
        props = blob.find("Properties")
        metadata = {}
        meta = blob.find("Metadata")
        if meta is not None:
            metadata = {child.tag: child.text or "" for child in meta}
        page.blobs.append(
            BlobItem(
                name=blob.findtext("Name", ""),
                content_length=as_int(props.findtext("Content-Length")) if props is not None else None,
                content_type=props.findtext("Content-Type") if props is not None else None,
                etag=props.findtext("Etag") if props is not None else None,
                last_modified=props.findtext("Last-Modified") if props is not None else None,
                access_tier=props.findtext("AccessTier") if props is not None else None,
                metadata=metadata,
            )
        )
    for prefix in blobs.findall("BlobPrefix"):
        page.prefixes.append(prefix.findtext("Name", ""))
    return page


class BlobStorageClient(IntegrationClient):
    """Azure Blob service client."""

    provider = "azure_blob"
    settings_class = BlobStorageSettings

    @classmethod
    def from_settings(
        cls,
        settings: BlobStorageSettings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        token_provider: Optional[TokenProvider] = None,
        **kwargs,
    ) -> "BlobStorageClient":
        settings.validate_configuration()
        http = HttpTransport.from_settings(
            settings,
            cls.provider,
            auth=storage_auth(settings, token_provider),
            default_headers=storage_headers(settings),
            transport=transport,
            **kwargs,
        )
        return cls(settings, http)

    def _container(self, container: Optional[str]) -> str:
        container = container or self.settings.default_container
        if not container:
            raise ValidationError("A container name is required", provider=self.provider)
        return container

    def _blob_url(self, container: str, name: str) -> str:
        if not name:
            raise ValidationError("Blob name must not be empty", provider=self.provider)
        return f"/{container}/{encode_path(name)}"

    async def create_container(self, container: str, public_access: Optional[str] = None):
        headers = {"x-ms-blob-public-access": public_access} if public_access else None
        await self.http.request(
            "PUT",
            f"/{container}",
            params={"restype": "container"},
            headers=headers,
            operation="create_container",
        )

    async def delete_container(self, container: str):
        await self.http.request(
            "DELETE",
            f"/{container}",
            params={"restype": "container"},
            operation="delete_container",
        )

    async def upload_blob(
        self,
        name: str,
        data: bytes,
        container: Optional[str] = None,
        content_type: Optional[str] = None,
        metadata: Optional[Mapping[str, str]] = None,
        overwrite: bool = True,
        on_progress: Optional[Callable[[int, int], None]] = None,
    ) -> UploadResult:
        """
        Upload a block blob.

        Data up to ``single_upload_threshold`` goes in one PUT; larger data is
        staged as ``block_size`` blocks uploaded concurrently and committed
        with Put Block List.
        """
        container = self._container(container)
        url = self._blob_url(container, name)
        headers = {
            "x-ms-blob-content-type": content_type or "application/octet-stream",
            **metadata_headers(metadata),
        }
        if not overwrite:
            headers["If-None-Match"] = "*"

        if len(data) <= self.settings.single_upload_threshold:
            response = await self.http.request(
                "PUT",
                url,
                content=data,
                headers={"x-ms-blob-type": "BlockBlob", **headers},
                operation="put_blob",
            )
            return UploadResult(
                name=name,
                container=container,
                etag=response.headers.get("etag"),
                last_modified=response.headers.get("last-modified"),
            )

        blocks = list(chunked(data, self.settings.block_size))
        if len(blocks) > MAX_BLOCKS:
            raise ValidationError(
                f"Blob needs {len(blocks)} blocks, more than the {MAX_BLOCKS} allowed",
                provider=self.provider,
            )
        ids = [block_id(i) for i in range(len(blocks))]

        async def stage(index: int, chunk):
            await self.http.request(
                "PUT",
                url,
                params={"comp": "block", "blockid": ids[index]},
                content=chunk[0],
                operation="put_block",
            )

        executor = BatchExecutor(
            concurrency=self.settings.max_concurrency, chunk_size=1, fail_fast=True
        )
        await executor.run(blocks, stage, on_progress)

        response = await self.http.request(
            "PUT",
            url,
            params={"comp": "blocklist"},
            content=block_list_xml(ids),
            headers={"Content-Type": "application/xml", **headers},
            operation="put_block_list",
        )
        logger.info("Uploaded %s/%s in %d blocks", container, name, len(blocks))
        return UploadResult(
            name=name,
            container=container,
            etag=response.headers.get("etag"),
            last_modified=response.headers.get("last-modified"),
            block_count=len(blocks),
        )

    def _properties(self, container: str, name: str, headers: httpx.Headers) -> BlobProperties:
        return BlobProperties(
            name=name,
            container=container,
            content_length=as_int(headers.get("content-length")),
            content_type=headers.get("content-type"),
            etag=headers.get("etag"),
            last_modified=headers.get("last-modified"),
            blob_type=headers.get("x-ms-blob-type"),
            access_tier=headers.get("x-ms-access-tier"),
            metadata=metadata_from_headers(headers),
        )

    async def download_blob(
        self,
        name: str,
        container: Optional[str] = None,
        offset: Optional[int] = None,
        length: Optional[int] = None,
    ) -> BlobDownload:
        container = self._container(container)
        byte_range = range_header(offset, length)
        response = await self.http.request(
            "GET",
            self._blob_url(container, name),
            headers={"x-ms-range": byte_range} if byte_range else None,
            operation="get_blob",
        )
        return BlobDownload(
            content=response.content,
            properties=self._properties(container, name, response.headers),
        )

    async def get_blob_properties(self, name: str, container: Optional[str] = None) -> BlobProperties:
        container = self._container(container)
        response = await self.http.request(
            "HEAD", self._blob_url(container, name), operation="get_blob_properties"
        )
        return self._properties(container, name, response.headers)

    async def set_blob_metadata(
        self, name: str, metadata: Mapping[str, str], container: Optional[str] = None
    ):
        container = self._container(container)
        await self.http.request(
            "PUT",
            self._blob_url(container, name),
            params={"comp": "metadata"},
            headers=metadata_headers(metadata),
            operation="set_blob_metadata",
        )

    async def delete_blob(
        self, name: str, container: Optional[str] = None, include_snapshots: bool = True
    ):
        container = self._container(container)
        await self.http.request(
            "DELETE",
            self._blob_url(container, name),
            headers={"x-ms-delete-snapshots": "include"} if include_snapshots else None,
            operation="delete_blob",
        )

    async def list_blobs(
        self,
        container: Optional[str] = None,
        prefix: Optional[str] = None,
        delimiter: Optional[str] = None,
        max_results: Optional[int] = None,
        marker: Optional[str] = None,
        include_metadata: bool = False,
    ) -> ListBlobsPage:
        container = self._container(container)
        response = await self.http.request(
            "GET",
            f"/{container}",
            params={
                "restype": "container",
                "comp": "list",
                "prefix": prefix,
                "delimiter": delimiter,
                "maxresults": max_results,
                "marker": marker,
                "include": "metadata" if include_metadata else None,
            },
            operation="list_blobs",
        )
        return parse_list_blobs(response.text)

    async def iter_blobs(
        self, container: Optional[str] = None, prefix: Optional[str] = None, **kwargs
    ) -> AsyncIterator[BlobItem]:
        """Iterate every blob, following NextMarker."""
        marker = None
        while True:
            page = await self.list_blobs(container, prefix=prefix, marker=marker, **kwargs)
            for blob in page.blobs:
                yield blob
            marker = page.next_marker
            if not marker:
                return

    async def _ping(self):
        await self.http.request(
            "GET",
            "/",
            params={"restype": "service", "comp": "properties"},
            operation="get_service_properties",
        )
