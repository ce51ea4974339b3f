#!/usr/bin/env python3
"""
Cloudflare R2 Multipart Uploads

Multipart upload calls and the orchestrated ``upload`` that splits a payload
into parts, uploads them concurrently and completes the upload, aborting it
if anything fails.
"""

import logging
from typing import Callable, List, Mapping, Optional, Sequence
from xml.sax.saxutils import escape

from ..batch import BatchExecutor, chunked
from ..errors import ServerError, ValidationError
from .models import CompletedPart, CompleteMultipartResult, PartSummary, parse_xml

logger = logging.getLogger(__name__)

MIN_PART_SIZE = 5 * 1024 * 1024
MAX_PART_SIZE = 5 * 1024 * 1024 * 1024
MAX_PARTS = 10000


def complete_multipart_xml(parts: Sequence[CompletedPart]) -> bytes:
    entries = "".join(
        f"<Part><PartNumber>{part.part_number}</PartNumber><ETag>{escape(part.etag)}</ETag></Part>"
        for part in sorted(parts, key=lambda p: p.part_number)
    )
    return f"<CompleteMultipartUpload>{entries}</CompleteMultipartUpload>".encode("utf-8")


class MultipartMixin:
    """
    Multipart operations for the R2 client.

    Relies on the client's ``http`` transport plus its ``_bucket`` and
    ``_object_url`` helpers.
    """

    async def create_multipart_upload(
        self,
        key: str,
        bucket: Optional[str] = None,
        content_type: Optional[str] = None,
        metadata: Optional[Mapping[str, str]] = None,
    ) -> str:
        """Start a multipart upload and return its upload id."""
        bucket = self._bucket(bucket)
        headers = self._object_headers(content_type, metadata)
        response = await self.http.request(
            "POST",
            self._object_url(bucket, key),
            params={"uploads": ""},
            headers=headers,
            operation="create_multipart_upload",
            retry=False,
        )
        upload_id = parse_xml(response.text).findtext("UploadId")
        if not upload_id:
            raise ServerError(
                "CreateMultipartUpload response carried no UploadId", provider=self.provider
            )
        logger.debug("Started multipart upload %s for %s/%s", upload_id, bucket, key)
        return upload_id

    async def upload_part(
        self,
        key: str,
        upload_id: str,
        part_number: int,
        data: bytes,
        bucket: Optional[str] = None,
    ) -> CompletedPart:
        if not 1 <= part_number <= MAX_PARTS:
            raise ValidationError(
                f"part_number must be between 1 and {MAX_PARTS}", provider=self.provider
            )
        if len(data) > MAX_PART_SIZE:
            raise ValidationError("part exceeds 5 GiB", provider=self.provider)
        bucket = self._bucket(bucket)
        response = await self.http.request(
            "PUT",
            self._object_url(bucket, key),
            params={"partNumber": part_number, "uploadId": upload_id},
            content=data,
            operation="upload_part",
        )
        return CompletedPart(
            part_number=part_number, etag=response.headers.get("etag", ""), size=len(data)
        )

    async def complete_multipart_upload(
        self,
        key: str,
        upload_id: str,
        parts: Sequence[CompletedPart],
        bucket: Optional[str] = None,
    ) -> CompleteMultipartResult:
        if not parts:
            raise ValidationError("At least one part is required", provider=self.provider)
        bucket = self._bucket(bucket)
        response = await self.http.request(
            "POST",
            self._object_url(bucket, key),
            params={"uploadId": upload_id},
            content=complete_multipart_xml(parts),
            headers={"Content-Type": "application/xml"},
            operation="complete_multipart_upload",
        )
        root = parse_xml(response.text)
        # CompleteMultipartUpload can fail with a 200 status and an Error body
        if root.tag == "Error":
            raise ServerError(
                root.findtext("Message") or "CompleteMultipartUpload failed",
                status_code=response.status_code,
                provider=self.provider,
                response_data={"code": root.findtext("Code")},
            )
        return CompleteMultipartResult(
            bucket=bucket,
            key=key,
            etag=root.findtext("ETag"),
            location=root.findtext("Location"),
            upload_id=upload_id,
            parts=len(parts),
        )

    async def abort_multipart_upload(
        self, key: str, upload_id: str, bucket: Optional[str] = None
    ):
        bucket = self._bucket(bucket)
        await self.http.request(
            "DELETE",
            self._object_url(bucket, key),
            params={"uploadId": upload_id},
            operation="abort_multipart_upload",
        )
        logger.info("Aborted multipart upload %s for %s/%s", upload_id, bucket, key)

    async def list_parts(
        self, key: str, upload_id: str, bucket: Optional[str] = None
    ) -> List[PartSummary]:
        bucket = self._bucket(bucket)
        response = await self.http.request(
            "GET",
            self._object_url(bucket, key),
            params={"uploadId": upload_id},
            operation="list_parts",
        )
        return [
            PartSummary(
                part_number=int(part.findtext("PartNumber", "0")),
                etag=part.findtext("ETag", ""),
                size=int(part.findtext("Size", "0")),
                last_modified=part.findtext("LastModified"),
            )
            for part in parse_xml(response.text).findall("Part")
        ]

    async def upload(
        self,
        key: str,
        data: bytes,
        bucket: Optional[str] = None,
        content_type: Optional[str] = None,
        metadata: Optional[Mapping[str, str]] = None,
        part_size: Optional[int] = None,
        concurrency: Optional[int] = None,
        on_progress: Optional[Callable[[int, int], None]] = None,
    ) -> CompleteMultipartResult:
        """
        Upload an object, switching to multipart above ``multipart_threshold``.

        Parts are ``part_size`` bytes (at least 5 MiB, except the last) and are
        uploaded ``concurrency`` at a time. ``on_progress`` receives the bytes
        uploaded so far and the total. Any failure aborts the multipart
        upload before the original error propagates.
        """
        bucket = self._bucket(bucket)
        total = len(data)
        if total <= self.settings.multipart_threshold:
            result = await self.put_object(key, data, bucket, content_type, metadata)
            if on_progress:
                on_progress(total, total)
            return CompleteMultipartResult(bucket=bucket, key=key, etag=result.etag, parts=1)

        part_size = part_size or self.settings.part_size
        if part_size < MIN_PART_SIZE:
            raise ValidationError(
                f"part_size must be at least {MIN_PART_SIZE} bytes", provider=self.provider
            )
        chunks = list(chunked(data, part_size))
        if len(chunks) > MAX_PARTS:
            raise ValidationError(
                f"Upload needs {len(chunks)} parts, more than the {MAX_PARTS} allowed",
                provider=self.provider,
            )

        upload_id = await self.create_multipart_upload(key, bucket, content_type, metadata)
        try:
            parts = await self._upload_parts(
                key,
                upload_id,
                bucket,
                chunks,
                concurrency or self.settings.multipart_concurrency,
                on_progress,
                total,
            )
            return await self.complete_multipart_upload(key, upload_id, parts, bucket)
        except Exception:
            try:
                await self.abort_multipart_upload(key, upload_id, bucket)
            except Exception as abort_error:
                logger.error("Failed to abort multipart upload %s: %s", upload_id, abort_error)
            raise

    async def _upload_parts(
        self,
        key: str,
        upload_id: str,
        bucket: str,
        chunks: Sequence[bytes],
        concurrency: int,
        on_progress: Optional[Callable[[int, int], None]],
        total: int,
    ) -> List[CompletedPart]:
        uploaded = 0

        async def send(index: int, chunk: Sequence[bytes]) -> CompletedPart:
            nonlocal uploaded
            part = await self.upload_part(key, upload_id, index + 1, chunk[0], bucket)
            uploaded += len(chunk[0])
            if on_progress:
                on_progress(uploaded, total)
            return part

        executor = BatchExecutor(concurrency=concurrency, chunk_size=1, fail_fast=True)
        result = await executor.run(chunks, send)
        return result.succeeded
