#!/usr/bin/env python3
"""
Pinecone Integration

Control plane calls (index management on ``api.pinecone.io``) and data plane
calls against each index's own host: batched upserts, queries, fetches,
metadata updates, deletes, stats and vector id listing.
"""

import logging
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Sequence, Union

import httpx
from pydantic import Field
from pydantic_settings import SettingsConfigDict

from .auth import ApiKeyAuth
from .base import IntegrationClient
from .batch import BatchExecutor
from .errors import ValidationError
from .models import VendorModel
from .settings import IntegrationSettings
from .transport import HttpTransport

logger = logging.getLogger(__name__)

UPSERT_BATCH_SIZE = 100
MAX_TOP_K = 10000
METRICS = ("cosine", "euclidean", "dotproduct")


class PineconeSettings(IntegrationSettings):
    """Pinecone settings (``PINECONE_`` environment prefix)."""

    model_config = SettingsConfigDict(env_prefix="PINECONE_", env_file=".env", extra="ignore")

    base_url: str = Field(default="https://api.pinecone.io", description="Control plane URL")
    api_key: str = Field(default="")
    api_version: str = Field(default="2024-07")
    default_index: Optional[str] = Field(default=None)
    index_host: Optional[str] = Field(
        default=None, description="Data plane host of default_index, skips describe_index"
    )
    upsert_concurrency: int = Field(default=4)

    def collect_issues(self) -> List[str]:
        issues = super().collect_issues()
        if not self.api_key:
            issues.append("Pinecone api_key is required")
        if self.upsert_concurrency <= 0:
            issues.append(f"Invalid upsert concurrency: {self.upsert_concurrency}")
        return issues


class IndexStatus(VendorModel):
    ready: bool = False
    state: Optional[str] = None


class IndexDescription(VendorModel):
    name: str
    dimension: Optional[int] = None
    metric: Optional[str] = None
    host: Optional[str] = None
    spec: Dict[str, Any] = Field(default_factory=dict)
    status: IndexStatus = Field(default_factory=IndexStatus)
    deletion_protection: Optional[str] = None


class SparseValues(VendorModel):
    indices: List[int]
    values: List[float]


class Vector(VendorModel):
    id: str
    values: List[float] = Field(default_factory=list)
    sparse_values: Optional[SparseValues] = Field(default=None, alias="sparseValues")
    metadata: Optional[Dict[str, Any]] = None


class ScoredVector(VendorModel):
    id: str
    score: float = 0.0
    values: List[float] = Field(default_factory=list)
    sparse_values: Optional[SparseValues] = Field(default=None, alias="sparseValues")
    metadata: Optional[Dict[str, Any]] = None


class QueryResponse(VendorModel):
    matches: List[ScoredVector] = Field(default_factory=list)
    namespace: str = ""
    usage: Optional[Dict[str, Any]] = None


class FetchResponse(VendorModel):
    vectors: Dict[str, Vector] = Field(default_factory=dict)
    namespace: str = ""


class NamespaceSummary(VendorModel):
    vector_count: int = Field(default=0, alias="vectorCount")


class IndexStats(VendorModel):
    namespaces: Dict[str, NamespaceSummary] = Field(default_factory=dict)
    dimension: Optional[int] = None
    index_fullness: float = Field(default=0.0, alias="indexFullness")
    total_vector_count: int = Field(default=0, alias="totalVectorCount")


VectorInput = Union[Vector, Mapping[str, Any]]


def _as_vector(vector: VectorInput) -> Vector:
    return vector if isinstance(vector, Vector) else Vector.model_validate(vector)


def validate_vectors(vectors: Sequence[Vector]):
    errors = []
    dimension = None
    for index, vector in enumerate(vectors):
        if not vector.id:
            errors.append(f"vectors[{index}].id must not be empty")
        if not vector.values and vector.sparse_values is None:
            errors.append(f"vectors[{index}] needs dense or sparse values")
        if vector.values:
            if dimension is None:
                dimension = len(vector.values)
            elif len(vector.values) != dimension:
                errors.append(f"vectors[{index}] has dimension {len(vector.values)}, expected {dimension}")
        if vector.sparse_values is not None and len(vector.sparse_values.indices) != len(
            vector.sparse_values.values
        ):
            errors.append(f"vectors[{index}].sparse_values indices and values differ in length")
    if errors:
        raise ValidationError(
            "Invalid vectors: " + "; ".join(errors[:10]),
            validation_errors=errors,
            provider="pinecone",
        )


class PineconeClient(IntegrationClient):
    """Pinecone control and data plane client."""

    provider = "pinecone"
    settings_class = PineconeSettings

    def __init__(
        self,
        settings: PineconeSettings,
        http: HttpTransport,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(settings, http)
        self._transport = transport
        self._hosts: Dict[str, str] = {}
        self._data_planes: Dict[str, HttpTransport] = {}
        if settings.default_index and settings.index_host:
            self._hosts[settings.default_index] = settings.index_host

    @classmethod
    def _headers(cls, settings: PineconeSettings) -> Dict[str, str]:
        return {"X-Pinecone-API-Version": settings.api_version}

    @classmethod
    def from_settings(
        cls,
        settings: PineconeSettings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        **kwargs,
    ) -> "PineconeClient":
        settings.validate_configuration()
        http = HttpTransport.from_settings(
            settings,
            cls.provider,
            auth=ApiKeyAuth(settings.api_key, header="Api-Key"),
            default_headers=cls._headers(settings),
            transport=transport,
            **kwargs,
        )
        return cls(settings, http, transport)

    async def close(self):
        for data_plane in self._data_planes.values():
            await data_plane.close()
        self._data_planes.clear()
        await super().close()

    # Control plane

    async def list_indexes(self) -> List[IndexDescription]:
        data = await self.http.request_json("GET", "/indexes", operation="list_indexes")
        return [IndexDescription.model_validate(item) for item in data.get("indexes", [])]

    async def describe_index(self, name: str) -> IndexDescription:
        data = await self.http.request_json("GET", f"/indexes/{name}", operation="describe_index")
        index = IndexDescription.model_validate(data)
        if index.host:
            self._hosts[name] = index.host
        return index

    async def create_index(
        self,
        name: str,
        dimension: int,
        metric: str = "cosine",
        cloud: str = "aws",
        region: str = "us-east-1",
        spec: Optional[Dict[str, Any]] = None,
        deletion_protection: Optional[str] = None,
    ) -> IndexDescription:
        """Create an index; defaults to a serverless spec in ``cloud``/``region``."""
        if dimension <= 0:
            raise ValidationError("dimension must be positive", provider=self.provider)
        if metric not in METRICS:
            raise ValidationError(f"metric must be one of {METRICS}", provider=self.provider)
        body: Dict[str, Any] = {
            "name": name,
            "dimension": dimension,
            "metric": metric,
            "spec": spec or {"serverless": {"cloud": cloud, "region": region}},
        }
        if deletion_protection:
            body["deletion_protection"] = deletion_protection
        data = await self.http.request_json(
            "POST", "/indexes", json=body, operation="create_index", retry=False
        )
        logger.info("Created Pinecone index %s (%d dims, %s)", name, dimension, metric)
        return IndexDescription.model_validate(data)

    async def delete_index(self, name: str):
        await self.http.request("DELETE", f"/indexes/{name}", operation="delete_index")
        self._hosts.pop(name, None)
        data_plane = self._data_planes.pop(name, None)
        if data_plane is not None:
            await data_plane.close()

    # Data plane

    async def _data(self, index: Optional[str]) -> HttpTransport:
        index = index or self.settings.default_index
        if not index:
            raise ValidationError("An index name is required", provider=self.provider)
        data_plane = self._data_planes.get(index)
        if data_plane is not None:
            return data_plane
        host = self._hosts.get(index)
        if host is None:
            host = (await self.describe_index(index)).host
            if not host:
                raise ValidationError(f"Index {index} has no host yet", provider=self.provider)
        base_url = host if host.startswith(("http://", "https://")) else f"https://{host}"
        data_plane = HttpTransport.from_settings(
            self.settings,
            self.provider,
            auth=ApiKeyAuth(self.settings.api_key, header="Api-Key"),
            default_headers=self._headers(self.settings),
            base_url=base_url,
            transport=self._transport,
            simulation=self.http.simulation,
        )
        self._data_planes[index] = data_plane
        return data_plane

    async def upsert(
        self,
        vectors: Sequence[VectorInput],
        namespace: str = "",
        index: Optional[str] = None,
    ) -> int:
        """Upsert vectors in batches of 100 and return the total upserted count."""
        items = [_as_vector(vector) for vector in vectors]
        if not items:
            return 0
        validate_vectors(items)
        data_plane = await self._data(index)

        async def send(batch_index: int, batch: Sequence[Vector]) -> int:
            data = await data_plane.request_json(
                "POST",
                "/vectors/upsert",
                json={"vectors": [v.to_payload() for v in batch], "namespace": namespace},
                operation="upsert",
            )
            return data.get("upsertedCount", 0)

        executor = BatchExecutor(
            concurrency=self.settings.upsert_concurrency,
            chunk_size=UPSERT_BATCH_SIZE,
            fail_fast=True,
        )
        result = await executor.run(items, send)
        total = sum(result.succeeded)
        logger.debug("Upserted %d vectors in %d batches", total, result.total_chunks)
        return total

    async def query(
        self,
        vector: Optional[Sequence[float]] = None,
        id: Optional[str] = None,
        top_k: int = 10,
        namespace: str = "",
        filter: Optional[Dict[str, Any]] = None,
        include_values: bool = False,
        include_metadata: bool = True,
        sparse_vector: Optional[SparseValues] = None,
        index: Optional[str] = None,
    ) -> QueryResponse:
        if (vector is None) == (id is None):
            raise ValidationError("query needs exactly one of vector or id", provider=self.provider)
        if not 1 <= top_k <= MAX_TOP_K:
            raise ValidationError(f"top_k must be between 1 and {MAX_TOP_K}", provider=self.provider)
        body: Dict[str, Any] = {
            "topK": top_k,
            "namespace": namespace,
            "includeValues": include_values,
            "includeMetadata": include_metadata,
        }
        if vector is not None:
            body["vector"] = list(vector)
        else:
            body["id"] = id
        if filter:
            body["filter"] = filter
        if sparse_vector is not None:
            body["sparseVector"] = sparse_vector.to_payload()
        data_plane = await self._data(index)
        data = await data_plane.request_json("POST", "/query", json=body, operation="query")
        return QueryResponse.model_validate(data)

    async def fetch(
        self, ids: Sequence[str], namespace: str = "", index: Optional[str] = None
    ) -> FetchResponse:
        if not ids:
            return FetchResponse(namespace=namespace)
        data_plane = await self._data(index)
        data = await data_plane.request_json(
            "GET",
            "/vectors/fetch",
            params={"ids": list(ids), "namespace": namespace or None},
            operation="fetch",
        )
        return FetchResponse.model_validate(data)

    async def update(
        self,
        id: str,
        values: Optional[Sequence[float]] = None,
        set_metadata: Optional[Dict[str, Any]] = None,
        sparse_values: Optional[SparseValues] = None,
        namespace: str = "",
        index: Optional[str] = None,
    ):
        if values is None and set_metadata is None and sparse_values is None:
            raise ValidationError(
                "update needs values, set_metadata or sparse_values", provider=self.provider
            )
        body: Dict[str, Any] = {"id": id, "namespace": namespace}
        if values is not None:
            body["values"] = list(values)
        if set_metadata is not None:
            body["setMetadata"] = set_metadata
        if sparse_values is not None:
            body["sparseValues"] = sparse_values.to_payload()
        data_plane = await self._data(index)
        await data_plane.request("POST", "/vectors/update", json=body, operation="update")

    async def delete(
        self,
        ids: Optional[Sequence[str]] = None,
        delete_all: bool = False,
        filter: Optional[Dict[str, Any]] = None,
        namespace: str = "",
        index: Optional[str] = None,
    ):
        """Delete by ids, by metadata filter, or everything in a namespace."""
        selectors = sum(bool(s) for s in (ids, delete_all, filter))
        if selectors != 1:
            raise ValidationError(
                "delete needs exactly one of ids, delete_all or filter", provider=self.provider
            )
        body: Dict[str, Any] = {"namespace": namespace}
        if ids:
            body["ids"] = list(ids)
        elif delete_all:
            body["deleteAll"] = True
        else:
            body["filter"] = filter
        data_plane = await self._data(index)
        await data_plane.request("POST", "/vectors/delete", json=body, operation="delete")

    async def describe_index_stats(
        self, filter: Optional[Dict[str, Any]] = None, index: Optional[str] = None
    ) -> IndexStats:
        data_plane = await self._data(index)
        data = await data_plane.request_json(
            "POST",
            "/describe_index_stats",
            json={"filter": filter} if filter else {},
            operation="describe_index_stats",
        )
        return IndexStats.model_validate(data)

    async def list_vector_ids(
        self,
        prefix: Optional[str] = None,
        namespace: str = "",
        limit: Optional[int] = None,
        index: Optional[str] = None,
    ) -> AsyncIterator[str]:
        """Iterate vector ids (serverless indexes), following pagination tokens."""
        data_plane = await self._data(index)
        async for item in data_plane.paginate(
            "/vectors/list",
            "vectors",
            "pagination.next",
            "paginationToken",
            params={"prefix": prefix, "namespace": namespace or None, "limit": limit},
            operation="list_vector_ids",
        ):
            yield item["id"]

    async def _ping(self):
        return {"indexes": len(await self.list_indexes())}
