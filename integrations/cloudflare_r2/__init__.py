#!/usr/bin/env python3
"""
Cloudflare R2 Integration

S3-compatible object storage client with SigV4 signing, presigned URLs and
concurrent multipart uploads.
"""

from .client import R2Client, R2Settings
from .models import (
    CompletedPart,
    CompleteMultipartResult,
    CopyObjectResult,
    DeleteObjectsResult,
    GetObjectResult,
    ListObjectsResult,
    ObjectProperties,
    ObjectSummary,
    PresignedUrl,
    PutObjectResult,
)

__all__ = [
    "R2Client",
    "R2Settings",
    "CompletedPart",
    "CompleteMultipartResult",
    "CopyObjectResult",
    "DeleteObjectsResult",
    "GetObjectResult",
    "ListObjectsResult",
    "ObjectProperties",
    "ObjectSummary",
    "PresignedUrl",
    "PutObjectResult",
]
