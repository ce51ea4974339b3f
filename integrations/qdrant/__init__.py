#!/usr/bin/env python3
"""
Qdrant Integration

REST client for Qdrant collections and points plus a payload filter builder.
"""

from .client import (
    CollectionInfo,
    PointStruct,
    QdrantClient,
    QdrantSettings,
    Record,
    ScoredPoint,
    ScrollResult,
    UpdateResult,
    vectors_config,
)
from .filters import Condition, Filter, validate_point_id

__all__ = [
    "CollectionInfo",
    "Condition",
    "Filter",
    "PointStruct",
    "QdrantClient",
    "QdrantSettings",
    "Record",
    "ScoredPoint",
    "ScrollResult",
    "UpdateResult",
    "validate_point_id",
    "vectors_config",
]
