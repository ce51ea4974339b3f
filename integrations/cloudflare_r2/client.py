#!/usr/bin/env python3
"""
Cloudflare R2 Client

S3-compatible object operations against R2, signed with AWS Signature V4
(region ``auto``, service ``s3``), plus presigned GET and PUT URLs.
"""

import base64
import hashlib
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Sequence
from xml.sax.saxutils import escape

import httpx
from pydantic import Field
from pydantic_settings import SettingsConfigDict

from ..base import IntegrationClient
from ..errors import ValidationError
from ..settings import IntegrationSettings
from ..signing import SigV4Auth, SigV4Signer, uri_encode
from ..transport import HttpTransport
from .models import (
    CopyObjectResult,
    DeleteObjectsResult,
    GetObjectResult,
    ListObjectsResult,
    ObjectProperties,
    ObjectSummary,
    PresignedUrl,
    PutObjectResult,
    parse_xml,
)
from .multipart import MIN_PART_SIZE, MultipartMixin

logger = logging.getLogger(__name__)

MAX_DELETE_KEYS = 1000
MAX_KEY_LENGTH = 1024


class R2Settings(IntegrationSettings):
    """R2 settings (``CLOUDFLARE_R2_`` environment prefix)."""

    model_config = SettingsConfigDict(
        env_prefix="CLOUDFLARE_R2_", env_file=".env", extra="ignore"
    )

    account_id: str = Field(default="", description="Cloudflare account id")
    access_key_id: str = Field(default="", description="R2 access key id")
    secret_access_key: str = Field(default="", description="R2 secret access key")
    region: str = Field(default="auto")
    default_bucket: Optional[str] = Field(default=None)
    multipart_threshold: int = Field(
        default=100 * 1024 * 1024, description="Objects above this size use multipart upload"
    )
    part_size: int = Field(default=10 * 1024 * 1024, description="Multipart part size")
    multipart_concurrency: int = Field(default=4)
    presign_expires_in: int = Field(default=3600, description="Default presigned URL lifetime")

    def model_post_init(self, __context: Any) -> None:
        if not self.base_url and self.account_id:
            self.base_url = f"https://{self.account_id}.r2.cloudflarestorage.com"

    def collect_issues(self) -> List[str]:
        issues = super().collect_issues()
        if not self.base_url:
            issues.append("R2 account_id or base_url is required")
        if not self.access_key_id or not self.secret_access_key:
            issues.append("R2 access_key_id and secret_access_key are required")
        if self.part_size < MIN_PART_SIZE:
            issues.append(f"part_size must be at least {MIN_PART_SIZE} bytes")
        if self.multipart_concurrency <= 0:
            issues.append(f"Invalid multipart concurrency: {self.multipart_concurrency}")
        return issues


class R2Client(MultipartMixin, IntegrationClient):
    """Cloudflare R2 object storage client."""

    provider = "cloudflare_r2"
    settings_class = R2Settings

    def __init__(self, settings: R2Settings, http: HttpTransport, signer: SigV4Signer):
        super().__init__(settings, http)
        self.signer = signer

    @classmethod
    def from_settings(
        cls,
        settings: R2Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        **kwargs,
    ) -> "R2Client":
        settings.validate_configuration()
        signer = SigV4Signer(
            settings.access_key_id, settings.secret_access_key, region=settings.region, service="s3"
        )
        http = HttpTransport.from_settings(
            settings,
            cls.provider,
            auth=SigV4Auth(signer),
            default_headers={"Accept": "application/xml"},
            transport=transport,
            **kwargs,
        )
        return cls(settings, http, signer)

    def _bucket(self, bucket: Optional[str]) -> str:
        bucket = bucket or self.settings.default_bucket
        if not bucket:
            raise ValidationError("A bucket name is required", provider=self.provider)
        return bucket

    def _object_url(self, bucket: str, key: str) -> str:
        if not key:
            raise ValidationError("Object key must not be empty", provider=self.provider)
        if len(key.encode("utf-8")) > MAX_KEY_LENGTH:
            raise ValidationError(
                f"Object key exceeds {MAX_KEY_LENGTH} bytes", provider=self.provider
            )
        # Sent pre-encoded so the wire path matches the signed canonical URI
        return f"/{bucket}/{uri_encode(key, encode_slash=False)}"

    @staticmethod
    def _object_headers(
        content_type: Optional[str] = None,
        metadata: Optional[Mapping[str, str]] = None,
        cache_control: Optional[str] = None,
    ) -> Dict[str, str]:
        headers = {f"x-amz-meta-{k}": str(v) for k, v in (metadata or {}).items()}
        if content_type:
            headers["Content-Type"] = content_type
        if cache_control:
            headers["Cache-Control"] = cache_control
        return headers

    def _properties(self, bucket: str, key: str, headers: httpx.Headers) -> ObjectProperties:
        length = headers.get("content-length")
        return ObjectProperties(
            bucket=bucket,
            key=key,
            content_length=int(length) if length else None,
            content_type=headers.get("content-type"),
            etag=headers.get("etag"),
            last_modified=headers.get("last-modified"),
            cache_control=headers.get("cache-control"),
            version_id=headers.get("x-amz-version-id"),
            metadata={
                name[len("x-amz-meta-"):]: value
                for name, value in headers.items()
                if name.lower().startswith("x-amz-meta-")
            },
        )

    async def put_object(
        self,
        key: str,
        data: bytes,
        bucket: Optional[str] = None,
        content_type: Optional[str] = None,
        metadata: Optional[Mapping[str, str]] = None,
        cache_control: Optional[str] = None,
    ) -> PutObjectResult:
        bucket = self._bucket(bucket)
        response = await self.http.request(
            "PUT",
            self._object_url(bucket, key),
            content=data,
            headers=self._object_headers(content_type, metadata, cache_control),
            operation="put_object",
        )
        return PutObjectResult(
            bucket=bucket,
            key=key,
            etag=response.headers.get("etag"),
            version_id=response.headers.get("x-amz-version-id"),
        )

    async def get_object(
        self,
        key: str,
        bucket: Optional[str] = None,
        offset: Optional[int] = None,
        length: Optional[int] = None,
    ) -> GetObjectResult:
        bucket = self._bucket(bucket)
        headers = {}
        if offset is not None or length is not None:
            start = offset or 0
            end = "" if length is None else str(start + length - 1)
            headers["Range"] = f"bytes={start}-{end}"
        response = await self.http.request(
            "GET", self._object_url(bucket, key), headers=headers, operation="get_object"
        )
        return GetObjectResult(
            content=response.content, properties=self._properties(bucket, key, response.headers)
        )

    async def head_object(self, key: str, bucket: Optional[str] = None) -> ObjectProperties:
        bucket = self._bucket(bucket)
        response = await self.http.request(
            "HEAD", self._object_url(bucket, key), operation="head_object"
        )
        return self._properties(bucket, key, response.headers)

    async def delete_object(self, key: str, bucket: Optional[str] = None):
        bucket = self._bucket(bucket)
        await self.http.request("DELETE", self._object_url(bucket, key), operation="delete_object")

    async def delete_objects(
        self, keys: Sequence[str], bucket: Optional[str] = None, quiet: bool = False
    ) -> DeleteObjectsResult:
        """Delete up to 1000 keys in one request; per-key failures are returned, not raised."""
        if not keys:
            return DeleteObjectsResult()
        if len(keys) > MAX_DELETE_KEYS:
            raise ValidationError(
                f"delete_objects accepts at most {MAX_DELETE_KEYS} keys", provider=self.provider
            )
        bucket = self._bucket(bucket)
        objects = "".join(f"<Object><Key>{escape(key)}</Key></Object>" for key in keys)
        body = (
            f"<Delete><Quiet>{'true' if quiet else 'false'}</Quiet>{objects}</Delete>"
        ).encode("utf-8")
        response = await self.http.request(
            "POST",
            f"/{bucket}",
            params={"delete": ""},
            content=body,
            headers={
                "Content-Type": "application/xml",
                "Content-MD5": base64.b64encode(hashlib.md5(body).digest()).decode("ascii"),
            },
            operation="delete_objects",
        )
        result = DeleteObjectsResult.from_xml(response.text)
        if result.errors:
            logger.warning("delete_objects: %d of %d keys failed", len(result.errors), len(keys))
        return result

    async def list_objects(
        self,
        bucket: Optional[str] = None,
        prefix: Optional[str] = None,
        delimiter: Optional[str] = None,
        max_keys: Optional[int] = None,
        continuation_token: Optional[str] = None,
        start_after: Optional[str] = None,
    ) -> ListObjectsResult:
        bucket = self._bucket(bucket)
        response = await self.http.request(
            "GET",
            f"/{bucket}",
            params={
                "list-type": "2",
                "prefix": prefix,
                "delimiter": delimiter,
                "max-keys": max_keys,
                "continuation-token": continuation_token,
                "start-after": start_after,
            },
            operation="list_objects",
        )
        return ListObjectsResult.from_xml(response.text)

    async def iter_objects(
        self, bucket: Optional[str] = None, prefix: Optional[str] = None
    ) -> AsyncIterator[ObjectSummary]:
        """Iterate every object under ``prefix`` following continuation tokens."""
        token = None
        while True:
            page = await self.list_objects(bucket, prefix=prefix, continuation_token=token)
            for item in page.objects:
                yield item
            token = page.next_continuation_token
            if not page.is_truncated or not token:
                return

    async def copy_object(
        self,
        source_key: str,
        destination_key: str,
        source_bucket: Optional[str] = None,
        destination_bucket: Optional[str] = None,
        metadata: Optional[Mapping[str, str]] = None,
    ) -> CopyObjectResult:
        """Server-side copy; passing ``metadata`` replaces the source metadata."""
        source_bucket = self._bucket(source_bucket)
        destination_bucket = destination_bucket or source_bucket
        headers = {
            "x-amz-copy-source": f"/{source_bucket}/{uri_encode(source_key, encode_slash=False)}",
            "x-amz-metadata-directive": "REPLACE" if metadata is not None else "COPY",
            **self._object_headers(metadata=metadata),
        }
        response = await self.http.request(
            "PUT",
            self._object_url(destination_bucket, destination_key),
            headers=headers,
            operation="copy_object",
        )
        root = parse_xml(response.text)
        return CopyObjectResult(
            bucket=destination_bucket,
            key=destination_key,
            etag=root.findtext("ETag"),
            last_modified=root.findtext("LastModified"),
        )

    def _presign(
        self, method: str, key: str, bucket: Optional[str], expires_in: Optional[int]
    ) -> PresignedUrl:
        bucket = self._bucket(bucket)
        if expires_in is None:
            expires_in = self.settings.presign_expires_in
        now = datetime.now(timezone.utc)
        url = self.settings.base_url.rstrip("/") + self._object_url(bucket, key)
        try:
            signed = self.signer.presign(method, url, expires_in=expires_in, now=now)
        except ValueError as e:
            raise ValidationError(str(e), provider=self.provider) from e
        return PresignedUrl(url=signed, method=method, expires_at=now + timedelta(seconds=expires_in))

    def presign_get(
        self, key: str, bucket: Optional[str] = None, expires_in: Optional[int] = None
    ) -> PresignedUrl:
        return self._presign("GET", key, bucket, expires_in)

    def presign_put(
        self, key: str, bucket: Optional[str] = None, expires_in: Optional[int] = None
    ) -> PresignedUrl:
        return self._presign("PUT", key, bucket, expires_in)

    async def _ping(self):
        await self.http.request("GET", "/", operation="list_buckets")
