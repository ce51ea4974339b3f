#!/usr/bin/env python3
"""
Milvus Integration

Client for the Milvus RESTful API v2: collection lifecycle and load state,
batched inserts and upserts, deletes, primary-key gets, scalar queries,
vector search and server-side reranked hybrid search.

Every endpoint answers HTTP 200 with a ``{code, data, message}`` envelope;
a non-zero ``code`` is raised as the matching IntegrationError.
"""

import asyncio
import json
import logging
import time
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

import httpx
from pydantic import Field
from pydantic_settings import SettingsConfigDict

from .auth import BearerTokenAuth
from .base import IntegrationClient
from .batch import BatchExecutor
from .errors import (
    AuthenticationError,
    IntegrationError,
    NotFoundError,
    RequestTimeoutError,
    ValidationError,
)
from .models import VendorModel
from .settings import IntegrationSettings
from .transport import HttpTransport

logger = logging.getLogger(__name__)

API_PREFIX = "/v2/vectordb"
RERANK_STRATEGIES = ("rrf", "weighted")

# Envelope codes with a more specific meaning than "request failed"
ENVELOPE_ERRORS = {
    100: NotFoundError,
    1100: ValidationError,
    1800: AuthenticationError,
    1802: AuthenticationError,
}


class MilvusSettings(IntegrationSettings):
    """Milvus settings (``MILVUS_`` environment prefix)."""

    model_config = SettingsConfigDict(env_prefix="MILVUS_", env_file=".env", extra="ignore")

    base_url: str = Field(default="http://localhost:19530")
    token: Optional[str] = Field(default=None, description="API key or user:password")
    username: Optional[str] = Field(default=None)
    password: Optional[str] = Field(default=None)
    db_name: str = Field(default="default")
    auto_load: bool = Field(default=True, description="Load collections before reads")
    insert_batch_size: int = Field(default=1000, description="Rows per insert request")
    insert_concurrency: int = Field(default=2)
    load_timeout: float = Field(default=300.0)
    load_poll_interval: float = Field(default=1.0)

    def collect_issues(self) -> List[str]:
        issues = super().collect_issues()
        if bool(self.username) != bool(self.password):
            issues.append("Milvus username and password must be set together")
        if self.insert_batch_size <= 0:
            issues.append(f"Invalid insert batch size: {self.insert_batch_size}")
        if self.insert_concurrency <= 0:
            issues.append(f"Invalid insert concurrency: {self.insert_concurrency}")
        return issues

    @property
    def auth_token(self) -> Optional[str]:
        if self.token:
            return self.token
        if self.username:
            return f"{self.username}:{self.password}"
        return None


class FieldSchema(VendorModel):
    name: str = Field(alias="fieldName")
    data_type: str = Field(alias="dataType")
    is_primary: bool = Field(default=False, alias="isPrimary")
    auto_id: Optional[bool] = Field(default=None, alias="autoId")
    element_type_params: Dict[str, Any] = Field(default_factory=dict, alias="elementTypeParams")


class CollectionSchema(VendorModel):
    auto_id: bool = Field(default=False, alias="autoId")
    enable_dynamic_field: bool = Field(default=True, alias="enableDynamicField")
    fields: List[FieldSchema] = Field(default_factory=list)


class IndexParams(VendorModel):
    field_name: str = Field(alias="fieldName")
    metric_type: str = Field(default="COSINE", alias="metricType")
    index_name: Optional[str] = Field(default=None, alias="indexName")
    index_type: Optional[str] = Field(default=None, alias="indexType")
    params: Optional[Dict[str, Any]] = None


class CollectionDescription(VendorModel):
    collection_name: str = Field(alias="collectionName")
    description: Optional[str] = None
    auto_id: bool = Field(default=False, alias="autoId")
    enable_dynamic_field: bool = Field(default=False, alias="enableDynamicField")
    fields: List[Dict[str, Any]] = Field(default_factory=list)
    indexes: List[Dict[str, Any]] = Field(default_factory=list)
    load: Optional[str] = None
    shards_num: Optional[int] = Field(default=None, alias="shardsNum")
    partitions_num: Optional[int] = Field(default=None, alias="partitionsNum")

    @property
    def primary_field(self) -> Optional[str]:
        for field in self.fields:
            if field.get("primaryKey"):
                return field.get("name")
        return None


class MutationResult(VendorModel):
    count: int = 0
    ids: List[Union[int, str]] = Field(default_factory=list)


class SearchHit(VendorModel):
    distance: Optional[float] = None
    id: Optional[Union[int, str]] = None

    @property
    def entity(self) -> Dict[str, Any]:
        return dict(self.model_extra or {})


class AnnSearch(VendorModel):
    """One vector field request inside a hybrid search."""

    data: List[List[float]]
    anns_field: str = Field(alias="annsField")
    limit: int = 10
    filter: Optional[str] = None
    params: Optional[Dict[str, Any]] = None


def _check_vectors(vectors: Sequence[Sequence[float]], name: str = "data"):
    if not vectors:
        raise ValidationError(f"{name} must contain at least one vector", provider="milvus")
    dimension = len(vectors[0])
    if dimension == 0:
        raise ValidationError(f"{name} vectors must not be empty", provider="milvus")
    for vector in vectors:
        if len(vector) != dimension:
            raise ValidationError(
                f"{name} vectors must share one dimension ({dimension})", provider="milvus"
            )


def _pk_filter(field: str, ids: Sequence[Union[int, str]]) -> str:
    return f"{field} in {json.dumps(list(ids))}"


class MilvusClient(IntegrationClient):
    """Milvus RESTful API v2 client."""

    provider = "milvus"
    settings_class = MilvusSettings

    def __init__(self, settings: MilvusSettings, http: HttpTransport):
        super().__init__(settings, http)
        self._loaded: set = set()

    @classmethod
    def from_settings(
        cls,
        settings: MilvusSettings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        **kwargs,
    ) -> "MilvusClient":
        settings.validate_configuration()
        token = settings.auth_token
        http = HttpTransport.from_settings(
            settings,
            cls.provider,
            auth=BearerTokenAuth(token) if token else None,
            transport=transport,
            **kwargs,
        )
        return cls(settings, http)

    def _raise_for_envelope(self, operation: str, data: Mapping[str, Any]):
        code = data.get("code", 0)
        if code in (0, 200):
            return
        message = data.get("message") or f"code {code}"
        error_class = ENVELOPE_ERRORS.get(code)
        if error_class is None:
            lowered = message.lower()
            if "not found" in lowered or "not exist" in lowered or "can't find" in lowered:
                error_class = NotFoundError
            else:
                error_class = IntegrationError
        logger.warning("milvus %s failed with code %s: %s", operation, code, message)
        raise error_class(
            f"milvus {operation} failed: {message}",
            provider=self.provider,
            response_data=dict(data),
        )

    async def _call(self, path: str, body: Dict[str, Any], operation: str, retry: bool = True) -> Any:
        payload = {"dbName": self.settings.db_name, **body}
        data = await self.http.request_json(
            "POST", f"{API_PREFIX}{path}", json=payload, operation=operation, retry=retry
        )
        self._raise_for_envelope(operation, data)
        return data.get("data")

    # Collections

    async def list_collections(self) -> List[str]:
        return await self._call("/collections/list", {}, "list_collections") or []

    async def describe_collection(self, name: str) -> CollectionDescription:
        data = await self._call(
            "/collections/describe", {"collectionName": name}, "describe_collection"
        )
        return CollectionDescription.model_validate(data or {})

    async def has_collection(self, name: str) -> bool:
        data = await self._call("/collections/has", {"collectionName": name}, "has_collection")
        return bool((data or {}).get("has"))

    async def create_collection(
        self,
        name: str,
        dimension: Optional[int] = None,
        schema: Optional[CollectionSchema] = None,
        index_params: Optional[Sequence[IndexParams]] = None,
        metric_type: str = "COSINE",
        primary_field: str = "id",
        vector_field: str = "vector",
        id_type: str = "Int64",
        auto_id: bool = False,
    ):
        """
        Create a collection.

        Pass ``dimension`` for the quick-setup form (primary key plus one
        vector field) or a full ``schema`` with ``index_params``.
        """
        if dimension is None and schema is None:
            raise ValidationError(
                "create_collection needs a dimension or a schema", provider=self.provider
            )
        body: Dict[str, Any] = {"collectionName": name}
        if schema is not None:
            body["schema"] = schema.to_payload()
            if index_params:
                body["indexParams"] = [params.to_payload() for params in index_params]
        else:
            if dimension <= 0:
                raise ValidationError("dimension must be positive", provider=self.provider)
            body.update(
                dimension=dimension,
                metricType=metric_type,
                primaryFieldName=primary_field,
                vectorFieldName=vector_field,
                idType=id_type,
                autoID=auto_id,
            )
        await self._call("/collections/create", body, "create_collection", retry=False)
        logger.info("Created Milvus collection %s", name)

    async def drop_collection(self, name: str):
        await self._call("/collections/drop", {"collectionName": name}, "drop_collection")
        self._loaded.discard(name)

    async def load_collection(self, name: str):
        await self._call("/collections/load", {"collectionName": name}, "load_collection")

    async def release_collection(self, name: str):
        await self._call("/collections/release", {"collectionName": name}, "release_collection")
        self._loaded.discard(name)

    async def get_load_state(self, name: str) -> str:
        data = await self._call(
            "/collections/get_load_state", {"collectionName": name}, "get_load_state"
        )
        return (data or {}).get("loadState", "LoadStateNotExist")

    async def ensure_loaded(self, name: str, timeout: Optional[float] = None):
        """Load a collection if needed and wait until it is ready for reads."""
        if name in self._loaded:
            return
        timeout = timeout if timeout is not None else self.settings.load_timeout
        state = await self.get_load_state(name)
        if state == "LoadStateNotExist":
            raise NotFoundError(f"Collection {name} does not exist", provider=self.provider)
        if state == "LoadStateNotLoad":
            await self.load_collection(name)

        deadline = time.monotonic() + timeout
        while state != "LoadStateLoaded":
            if time.monotonic() >= deadline:
                raise RequestTimeoutError(
                    f"Collection {name} did not load within {timeout}s", provider=self.provider
                )
            await asyncio.sleep(self.settings.load_poll_interval)
            state = await self.get_load_state(name)
            if state == "LoadStateNotExist":
                raise NotFoundError(f"Collection {name} disappeared while loading", provider=self.provider)
        self._loaded.add(name)

    async def _maybe_load(self, name: str):
        if self.settings.auto_load:
            await self.ensure_loaded(name)

    # Entities

    async def _write(
        self,
        action: str,
        collection: str,
        rows: Sequence[Mapping[str, Any]],
        partition: Optional[str],
    ) -> MutationResult:
        if not rows:
            raise ValidationError(f"{action} needs at least one row", provider=self.provider)

        async def send(index: int, batch: Sequence[Mapping[str, Any]]) -> Dict[str, Any]:
            body: Dict[str, Any] = {"collectionName": collection, "data": list(batch)}
            if partition:
                body["partitionName"] = partition
            return await self._call(f"/entities/{action}", body, action, retry=False) or {}

        executor = BatchExecutor(
            concurrency=self.settings.insert_concurrency,
            chunk_size=self.settings.insert_batch_size,
            fail_fast=True,
        )
        result = await executor.run(list(rows), send)
        count_key, ids_key = f"{action}Count", f"{action}Ids"
        total = MutationResult()
        for data in result.succeeded:
            total.count += data.get(count_key, 0)
            total.ids.extend(data.get(ids_key, []))
        logger.debug("%s %d rows into %s", action, total.count, collection)
        return total

    async def insert(
        self,
        collection: str,
        rows: Sequence[Mapping[str, Any]],
        partition: Optional[str] = None,
    ) -> MutationResult:
        return await self._write("insert", collection, rows, partition)

    async def upsert(
        self,
        collection: str,
        rows: Sequence[Mapping[str, Any]],
        partition: Optional[str] = None,
    ) -> MutationResult:
        return await self._write("upsert", collection, rows, partition)

    async def delete(
        self,
        collection: str,
        filter: Optional[str] = None,
        ids: Optional[Sequence[Union[int, str]]] = None,
        primary_field: str = "id",
        partition: Optional[str] = None,
    ):
        """Delete by boolean expression or by primary keys."""
        if not filter and not ids:
            raise ValidationError("delete needs a filter or ids", provider=self.provider)
        body: Dict[str, Any] = {
            "collectionName": collection,
            "filter": filter or _pk_filter(primary_field, ids),
        }
        if partition:
            body["partitionName"] = partition
        await self._call("/entities/delete", body, "delete")

    async def get(
        self,
        collection: str,
        ids: Sequence[Union[int, str]],
        output_fields: Optional[Sequence[str]] = None,
    ) -> List[Dict[str, Any]]:
        if not ids:
            return []
        await self._maybe_load(collection)
        body: Dict[str, Any] = {"collectionName": collection, "id": list(ids)}
        if output_fields:
            body["outputFields"] = list(output_fields)
        return await self._call("/entities/get", body, "get") or []

    async def query(
        self,
        collection: str,
        filter: str,
        output_fields: Optional[Sequence[str]] = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        await self._maybe_load(collection)
        body: Dict[str, Any] = {"collectionName": collection, "filter": filter}
        if output_fields:
            body["outputFields"] = list(output_fields)
        if limit is not None:
            body["limit"] = limit
        if offset is not None:
            body["offset"] = offset
        return await self._call("/entities/query", body, "query") or []

    async def search(
        self,
        collection: str,
        vectors: Sequence[Sequence[float]],
        limit: int = 10,
        anns_field: Optional[str] = None,
        filter: Optional[str] = None,
        output_fields: Optional[Sequence[str]] = None,
        search_params: Optional[Dict[str, Any]] = None,
        offset: Optional[int] = None,
    ) -> List[SearchHit]:
        _check_vectors(vectors)
        if limit <= 0:
            raise ValidationError("limit must be positive", provider=self.provider)
        await self._maybe_load(collection)
        body: Dict[str, Any] = {
            "collectionName": collection,
            "data": [list(v) for v in vectors],
            "limit": limit,
        }
        if anns_field:
            body["annsField"] = anns_field
        if filter:
            body["filter"] = filter
        if output_fields:
            body["outputFields"] = list(output_fields)
        if search_params:
            body["searchParams"] = search_params
        if offset is not None:
            body["offset"] = offset
        data = await self._call("/entities/search", body, "search") or []
        return [SearchHit.model_validate(hit) for hit in data]

    async def hybrid_search(
        self,
        collection: str,
        searches: Sequence[AnnSearch],
        rerank: str = "rrf",
        rerank_params: Optional[Dict[str, Any]] = None,
        limit: int = 10,
        output_fields: Optional[Sequence[str]] = None,
    ) -> List[SearchHit]:
        """Run several vector searches and merge them with RRF or weighted reranking."""
        if not searches:
            raise ValidationError("hybrid_search needs at least one search", provider=self.provider)
        if rerank not in RERANK_STRATEGIES:
            raise ValidationError(
                f"rerank must be one of {RERANK_STRATEGIES}", provider=self.provider
            )
        for search in searches:
            _check_vectors(search.data)
        params = dict(rerank_params or {})
        if rerank == "rrf":
            params.setdefault("k", 60)
        elif len(params.get("weights", [])) != len(searches):
            raise ValidationError(
                "weighted rerank needs one weight per search", provider=self.provider
            )
        await self._maybe_load(collection)
        body: Dict[str, Any] = {
            "collectionName": collection,
            "search": [search.to_payload() for search in searches],
            "rerank": {"strategy": rerank, "params": params},
            "limit": limit,
        }
        if output_fields:
            body["outputFields"] = list(output_fields)
        data = await self._call("/entities/hybrid_search", body, "hybrid_search") or []
        return [SearchHit.model_validate(hit) for hit in data]

    async def _ping(self):
        return {"collections": len(await self.list_collections())}
