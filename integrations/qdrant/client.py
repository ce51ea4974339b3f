#!/usr/bin/env python3
"""
Qdrant Client

Collections and points over the Qdrant REST API. Responses wrap their
payload in ``{"result": ..., "status": "ok", "time": ...}``; the client
returns the unwrapped result as typed models.
"""

import logging
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Sequence, Union

import httpx
from pydantic import Field
from pydantic_settings import SettingsConfigDict

from ..auth import ApiKeyAuth
from ..base import IntegrationClient
from ..batch import BatchExecutor
from ..errors import IntegrationError, ValidationError
from ..models import VendorModel
from ..settings import IntegrationSettings
from ..transport import HttpTransport
from .filters import Filter, PointId, to_filter, validate_point_id

logger = logging.getLogger(__name__)

DISTANCES = ("Cosine", "Euclid", "Dot", "Manhattan")
VectorData = Union[List[float], Dict[str, Any]]
FilterInput = Union[Filter, Dict[str, Any], None]


class QdrantSettings(IntegrationSettings):
    """Qdrant settings (``QDRANT_`` environment prefix)."""

    model_config = SettingsConfigDict(env_prefix="QDRANT_", env_file=".env", extra="ignore")

    base_url: str = Field(default="http://localhost:6333")
    api_key: Optional[str] = Field(default=None)
    upsert_batch_size: int = Field(default=100)
    upsert_concurrency: int = Field(default=2)
    wait_for_writes: bool = Field(default=True, description="Send wait=true on writes")

    def collect_issues(self) -> List[str]:
        issues = super().collect_issues()
        if self.upsert_batch_size <= 0:
            issues.append(f"Invalid upsert batch size: {self.upsert_batch_size}")
        if self.upsert_concurrency <= 0:
            issues.append(f"Invalid upsert concurrency: {self.upsert_concurrency}")
        return issues


class PointStruct(VendorModel):
    id: PointId
    vector: VectorData
    payload: Optional[Dict[str, Any]] = None


class Record(VendorModel):
    id: PointId
    payload: Optional[Dict[str, Any]] = None
    vector: Optional[VectorData] = None


class ScoredPoint(Record):
    score: float = 0.0
    version: Optional[int] = None


class ScrollResult(VendorModel):
    points: List[Record] = Field(default_factory=list)
    next_page_offset: Optional[PointId] = None


class CollectionInfo(VendorModel):
    status: Optional[str] = None
    optimizer_status: Optional[Any] = None
    points_count: Optional[int] = None
    indexed_vectors_count: Optional[int] = None
    segments_count: Optional[int] = None
    config: Dict[str, Any] = Field(default_factory=dict)
    payload_schema: Dict[str, Any] = Field(default_factory=dict)


class UpdateResult(VendorModel):
    operation_id: Optional[int] = None
    status: Optional[str] = None


def vectors_config(size: int, distance: str = "Cosine", on_disk: Optional[bool] = None) -> Dict[str, Any]:
    if size <= 0:
        raise ValidationError("Vector size must be positive", provider="qdrant")
    if distance not in DISTANCES:
        raise ValidationError(f"distance must be one of {DISTANCES}", provider="qdrant")
    config: Dict[str, Any] = {"size": size, "distance": distance}
    if on_disk is not None:
        config["on_disk"] = on_disk
    return config


def _query_vector(vector: Sequence[float], using: Optional[str]) -> VectorData:
    if not vector:
        raise ValidationError("Query vector must not be empty", provider="qdrant")
    return {"name": using, "vector": list(vector)} if using else list(vector)


class QdrantClient(IntegrationClient):
    """Qdrant REST client."""

    provider = "qdrant"
    settings_class = QdrantSettings

    @classmethod
    def from_settings(
        cls,
        settings: QdrantSettings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        **kwargs,
    ) -> "QdrantClient":
        settings.validate_configuration()
        auth = ApiKeyAuth(settings.api_key, header="api-key") if settings.api_key else None
        http = HttpTransport.from_settings(
            settings, cls.provider, auth=auth, transport=transport, **kwargs
        )
        return cls(settings, http)

    async def _result(self, method: str, url: str, operation: str, **kwargs) -> Any:
        data = await self.http.request_json(method, url, operation=operation, **kwargs)
        status = data.get("status")
        if isinstance(status, dict) and status.get("error"):
            raise IntegrationError(
                f"qdrant {operation} failed: {status['error']}",
                provider=self.provider,
                response_data=data,
            )
        return data.get("result")

    def _wait(self) -> Dict[str, Any]:
        return {"wait": "true" if self.settings.wait_for_writes else None}

    # Collections

    async def create_collection(
        self,
        name: str,
        vectors: Union[Dict[str, Any], Mapping[str, Dict[str, Any]]],
        hnsw_config: Optional[Dict[str, Any]] = None,
        optimizers_config: Optional[Dict[str, Any]] = None,
        on_disk_payload: Optional[bool] = None,
    ) -> bool:
        """
        Create a collection.

        ``vectors`` is one ``vectors_config(...)`` or a mapping of vector name
        to config for named vectors.
        """
        body: Dict[str, Any] = {"vectors": dict(vectors)}
        if hnsw_config:
            body["hnsw_config"] = hnsw_config
        if optimizers_config:
            body["optimizers_config"] = optimizers_config
        if on_disk_payload is not None:
            body["on_disk_payload"] = on_disk_payload
        result = await self._result(
            "PUT", f"/collections/{name}", "create_collection", json=body, retry=False
        )
        logger.info("Created Qdrant collection %s", name)
        return bool(result)

    async def get_collection(self, name: str) -> CollectionInfo:
        result = await self._result("GET", f"/collections/{name}", "get_collection")
        return CollectionInfo.model_validate(result or {})

    async def list_collections(self) -> List[str]:
        result = await self._result("GET", "/collections", "list_collections") or {}
        return [item["name"] for item in result.get("collections", [])]

    async def collection_exists(self, name: str) -> bool:
        result = await self._result("GET", f"/collections/{name}/exists", "collection_exists")
        return bool((result or {}).get("exists"))

    async def delete_collection(self, name: str) -> bool:
        return bool(await self._result("DELETE", f"/collections/{name}", "delete_collection"))

    # Points

    async def upsert(
        self, collection: str, points: Sequence[Union[PointStruct, Mapping[str, Any]]]
    ) -> List[UpdateResult]:
        """Upsert points in batches of ``upsert_batch_size``."""
        items = [p if isinstance(p, PointStruct) else PointStruct.model_validate(p) for p in points]
        if not items:
            return []
        for point in items:
            validate_point_id(point.id)

        async def send(index: int, batch: Sequence[PointStruct]) -> UpdateResult:
            result = await self._result(
                "PUT",
                f"/collections/{collection}/points",
                "upsert",
                params=self._wait(),
                json={"points": [p.to_payload() for p in batch]},
            )
            return UpdateResult.model_validate(result or {})

        executor = BatchExecutor(
            concurrency=self.settings.upsert_concurrency,
            chunk_size=self.settings.upsert_batch_size,
            fail_fast=True,
        )
        result = await executor.run(items, send)
        logger.debug("Upserted %d points into %s", len(items), collection)
        return result.succeeded

    async def get_points(
        self,
        collection: str,
        ids: Sequence[PointId],
        with_payload: bool = True,
        with_vector: bool = False,
    ) -> List[Record]:
        if not ids:
            return []
        result = await self._result(
            "POST",
            f"/collections/{collection}/points",
            "get_points",
            json={
                "ids": [validate_point_id(i) for i in ids],
                "with_payload": with_payload,
                "with_vector": with_vector,
            },
        )
        return [Record.model_validate(item) for item in result or []]

    def _selector(self, ids: Optional[Sequence[PointId]], filter: FilterInput) -> Dict[str, Any]:
        selected = to_filter(filter)
        if bool(ids) == bool(selected):
            raise ValidationError("Pass exactly one of ids or filter", provider=self.provider)
        if ids:
            return {"points": [validate_point_id(i) for i in ids]}
        return {"filter": selected}

    async def delete_points(
        self,
        collection: str,
        ids: Optional[Sequence[PointId]] = None,
        filter: FilterInput = None,
    ) -> UpdateResult:
        result = await self._result(
            "POST",
            f"/collections/{collection}/points/delete",
            "delete_points",
            params=self._wait(),
            json=self._selector(ids, filter),
        )
        return UpdateResult.model_validate(result or {})

    async def set_payload(
        self,
        collection: str,
        payload: Dict[str, Any],
        ids: Optional[Sequence[PointId]] = None,
        filter: FilterInput = None,
    ) -> UpdateResult:
        """Merge ``payload`` into the selected points."""
        result = await self._result(
            "POST",
            f"/collections/{collection}/points/payload",
            "set_payload",
            params=self._wait(),
            json={"payload": payload, **self._selector(ids, filter)},
        )
        return UpdateResult.model_validate(result or {})

    @staticmethod
    def _search_body(
        vector: Sequence[float],
        limit: int,
        filter: FilterInput,
        using: Optional[str],
        with_payload: bool,
        with_vector: bool,
        score_threshold: Optional[float],
        offset: Optional[int],
        params: Optional[Dict[str, Any]],
    ) -> Dict[str, Any]:
        if limit <= 0:
            raise ValidationError("limit must be positive", provider="qdrant")
        body: Dict[str, Any] = {
            "vector": _query_vector(vector, using),
            "limit": limit,
            "with_payload": with_payload,
            "with_vector": with_vector,
        }
        selected = to_filter(filter)
        if selected:
            body["filter"] = selected
        if score_threshold is not None:
            body["score_threshold"] = score_threshold
        if offset:
            body["offset"] = offset
        if params:
            body["params"] = params
        return body

    async def search(
        self,
        collection: str,
        vector: Sequence[float],
        limit: int = 10,
        filter: FilterInput = None,
        using: Optional[str] = None,
        with_payload: bool = True,
        with_vector: bool = False,
        score_threshold: Optional[float] = None,
        offset: Optional[int] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> List[ScoredPoint]:
        body = self._search_body(
            vector, limit, filter, using, with_payload, with_vector, score_threshold, offset, params
        )
        result = await self._result(
            "POST", f"/collections/{collection}/points/search", "search", json=body
        )
        return [ScoredPoint.model_validate(item) for item in result or []]

    async def search_batch(
        self, collection: str, searches: Sequence[Mapping[str, Any]]
    ) -> List[List[ScoredPoint]]:
        """
        Run several searches in one request.

        Each entry takes the keyword arguments of ``search`` (``vector``,
        ``limit``, ``filter``, ``using``...).
        """
        if not searches:
            return []
        bodies = []
        for search in searches:
            bodies.append(
                self._search_body(
                    search["vector"],
                    search.get("limit", 10),
                    search.get("filter"),
                    search.get("using"),
                    search.get("with_payload", True),
                    search.get("with_vector", False),
                    search.get("score_threshold"),
                    search.get("offset"),
                    search.get("params"),
                )
            )
        result = await self._result(
            "POST",
            f"/collections/{collection}/points/search/batch",
            "search_batch",
            json={"searches": bodies},
        )
        return [[ScoredPoint.model_validate(item) for item in batch] for batch in result or []]

    async def recommend(
        self,
        collection: str,
        positive: Sequence[Union[PointId, List[float]]],
        negative: Sequence[Union[PointId, List[float]]] = (),
        limit: int = 10,
        filter: FilterInput = None,
        using: Optional[str] = None,
        strategy: Optional[str] = None,
        with_payload: bool = True,
        score_threshold: Optional[float] = None,
    ) -> List[ScoredPoint]:
        """Points similar to ``positive`` examples and dissimilar to ``negative`` ones."""
        if not positive:
            raise ValidationError("recommend needs at least one positive example", provider=self.provider)
        body: Dict[str, Any] = {
            "positive": list(positive),
            "negative": list(negative),
            "limit": limit,
            "with_payload": with_payload,
        }
        selected = to_filter(filter)
        if selected:
            body["filter"] = selected
        if using:
            body["using"] = using
        if strategy:
            body["strategy"] = strategy
        if score_threshold is not None:
            body["score_threshold"] = score_threshold
        result = await self._result(
            "POST", f"/collections/{collection}/points/recommend", "recommend", json=body
        )
        return [ScoredPoint.model_validate(item) for item in result or []]

    async def scroll(
        self,
        collection: str,
        filter: FilterInput = None,
        limit: int = 100,
        offset: Optional[PointId] = None,
        with_payload: bool = True,
        with_vector: bool = False,
        order_by: Optional[str] = None,
    ) -> ScrollResult:
        body: Dict[str, Any] = {
            "limit": limit,
            "with_payload": with_payload,
            "with_vector": with_vector,
        }
        selected = to_filter(filter)
        if selected:
            body["filter"] = selected
        if offset is not None:
            body["offset"] = offset
        if order_by:
            body["order_by"] = order_by
        result = await self._result(
            "POST", f"/collections/{collection}/points/scroll", "scroll", json=body
        )
        return ScrollResult.model_validate(result or {})

    async def scroll_all(
        self,
        collection: str,
        filter: FilterInput = None,
        batch_size: int = 100,
        with_payload: bool = True,
        with_vector: bool = False,
    ) -> AsyncIterator[Record]:
        """Iterate every matching point, following ``next_page_offset``."""
        offset: Optional[PointId] = None
        while True:
            page = await self.scroll(
                collection,
                filter=filter,
                limit=batch_size,
                offset=offset,
                with_payload=with_payload,
                with_vector=with_vector,
            )
            for point in page.points:
                yield point
            if page.next_page_offset is None:
                return
            offset = page.next_page_offset

    async def count(self, collection: str, filter: FilterInput = None, exact: bool = True) -> int:
        body: Dict[str, Any] = {"exact": exact}
        selected = to_filter(filter)
        if selected:
            body["filter"] = selected
        result = await self._result(
            "POST", f"/collections/{collection}/points/count", "count", json=body
        )
        return int((result or {}).get("count", 0))

    async def _ping(self):
        return {"collections": len(await self.list_collections())}
