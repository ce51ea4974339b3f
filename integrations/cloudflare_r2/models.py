#!/usr/bin/env python3
"""
Cloudflare R2 Models

Typed results for object and multipart operations, and parsing of the
S3-compatible XML documents R2 returns.
"""

from datetime import datetime
from typing import Dict, List, Optional
from xml.etree import ElementTree

from pydantic import Field

from ..models import VendorModel


def parse_xml(text: str) -> ElementTree.Element:
    """Parse an S3 XML document with the namespace stripped from every tag."""
    root = ElementTree.fromstring(text)
    for element in root.iter():
        if isinstance(element.tag, str) and element.tag.startswith("{"):
            element.tag = element.tag.split("}", 1)[1]
    return root


def _int(value: Optional[str]) -> Optional[int]:
    return int(value) if value not in (None, "") else None


class ObjectProperties(VendorModel):
    bucket: str
    key: str
    content_length: Optional[int] = None
    content_type: Optional[str] = None
    etag: Optional[str] = None
    last_modified: Optional[str] = None
    cache_control: Optional[str] = None
    version_id: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)


class GetObjectResult(VendorModel):
    content: bytes
    properties: ObjectProperties


class PutObjectResult(VendorModel):
    bucket: str
    key: str
    etag: Optional[str] = None
    version_id: Optional[str] = None


class ObjectSummary(VendorModel):
    key: str
    size: int = 0
    etag: Optional[str] = None
    last_modified: Optional[str] = None
    storage_class: Optional[str] = None


class ListObjectsResult(VendorModel):
    bucket: str
    prefix: Optional[str] = None
    objects: List[ObjectSummary] = Field(default_factory=list)
    common_prefixes: List[str] = Field(default_factory=list)
    is_truncated: bool = False
    next_continuation_token: Optional[str] = None
    key_count: int = 0

    @classmethod
    def from_xml(cls, text: str) -> "ListObjectsResult":
        root = parse_xml(text)
        objects = [
            ObjectSummary(
                key=item.findtext("Key", ""),
                size=_int(item.findtext("Size")) or 0,
                etag=item.findtext("ETag"),
                last_modified=item.findtext("LastModified"),
                storage_class=item.findtext("StorageClass"),
            )
            for item in root.findall("Contents")
        ]
        return cls(
            bucket=root.findtext("Name", ""),
            prefix=root.findtext("Prefix") or None,
            objects=objects,
            common_prefixes=[p.findtext("Prefix", "") for p in root.findall("CommonPrefixes")],
            is_truncated=root.findtext("IsTruncated", "false").lower() == "true",
            next_continuation_token=root.findtext("NextContinuationToken") or None,
            key_count=_int(root.findtext("KeyCount")) or len(objects),
        )


class DeleteError(VendorModel):
    key: str
    code: Optional[str] = None
    message: Optional[str] = None


class DeleteObjectsResult(VendorModel):
    deleted: List[str] = Field(default_factory=list)
    errors: List[DeleteError] = Field(default_factory=list)

    @classmethod
    def from_xml(cls, text: str) -> "DeleteObjectsResult":
        root = parse_xml(text)
        return cls(
            deleted=[item.findtext("Key", "") for item in root.findall("Deleted")],
            errors=[
                DeleteError(
                    key=item.findtext("Key", ""),
                    code=item.findtext("Code"),
                    message=item.findtext("Message"),
                )
                for item in root.findall("Error")
            ],
        )


class CopyObjectResult(VendorModel):
    bucket: str
    key: str
    etag: Optional[str] = None
    last_modified: Optional[str] = None


class PresignedUrl(VendorModel):
    url: str
    method: str
    expires_at: datetime


class CompletedPart(VendorModel):
    part_number: int
    etag: str
    size: Optional[int] = None


class PartSummary(CompletedPart):
    last_modified: Optional[str] = None


class CompleteMultipartResult(VendorModel):
    bucket: str
    key: str
    etag: Optional[str] = None
    location: Optional[str] = None
    upload_id: Optional[str] = None
    parts: int = 0
