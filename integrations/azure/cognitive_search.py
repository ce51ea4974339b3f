#!/usr/bin/env python3
"""
Azure Cognitive Search Integration

Full text, filtered and vector search, document lookup and counting,
suggestions and autocomplete, and batched document indexing against an
Azure AI Search service.
"""

import logging
from typing import Any, Dict, List, Optional, Sequence, Union
from urllib.parse import quote

import httpx
from pydantic import Field
from pydantic_settings import SettingsConfigDict

from ..auth import ApiKeyAuth, TokenProvider, TokenProviderAuth
from ..base import IntegrationClient
from ..batch import BatchExecutor
from ..errors import ConfigurationError, ValidationError
from ..models import VendorModel
from ..settings import IntegrationSettings
from ..transport import HttpTransport

logger = logging.getLogger(__name__)

SEARCH_SCOPE = "https://search.azure.com/.default"
MAX_INDEX_BATCH = 1000
INDEX_ACTIONS = {"upload", "merge", "mergeOrUpload", "delete"}


class CognitiveSearchSettings(IntegrationSettings):
    """Search service settings (``AZURE_SEARCH_`` environment prefix)."""

    model_config = SettingsConfigDict(
        env_prefix="AZURE_SEARCH_", env_file=".env", extra="ignore"
    )

    base_url: str = Field(default="", description="https://<service>.search.windows.net")
    api_key: Optional[str] = Field(default=None, description="Admin or query key")
    api_version: str = Field(default="2023-11-01")
    default_index: Optional[str] = Field(default=None)
    index_batch_size: int = Field(default=MAX_INDEX_BATCH)
    index_concurrency: int = Field(default=2)

    def collect_issues(self) -> List[str]:
        issues = super().collect_issues()
        if not self.base_url:
            issues.append("Search base_url is required")
        if not 0 < self.index_batch_size <= MAX_INDEX_BATCH:
            issues.append(f"index_batch_size must be between 1 and {MAX_INDEX_BATCH}")
        if self.index_concurrency <= 0:
            issues.append(f"Invalid index concurrency: {self.index_concurrency}")
        return issues


class VectorQuery(VendorModel):
    """A ``vector`` (raw embedding) or ``text`` (vectorized by the service) query."""

    kind: str = "vector"
    vector: Optional[List[float]] = None
    text: Optional[str] = None
    fields: str
    k: int = 10
    exhaustive: Optional[bool] = None


class SearchResult(VendorModel):
    score: Optional[float] = Field(default=None, alias="@search.score")
    reranker_score: Optional[float] = Field(default=None, alias="@search.rerankerScore")
    highlights: Optional[Dict[str, List[str]]] = Field(default=None, alias="@search.highlights")

    @property
    def document(self) -> Dict[str, Any]:
        """Document fields without the ``@search.*`` annotations."""
        return {k: v for k, v in (self.model_extra or {}).items() if not k.startswith("@search.")}


class SearchResponse(VendorModel):
    count: Optional[int] = Field(default=None, alias="@odata.count")
    facets: Optional[Dict[str, List[Dict[str, Any]]]] = Field(default=None, alias="@search.facets")
    results: List[SearchResult] = Field(default_factory=list, alias="value")
    next_page_parameters: Optional[Dict[str, Any]] = Field(
        default=None, alias="@search.nextPageParameters"
    )


class Suggestion(VendorModel):
    text: str = Field(default="", alias="@search.text")

    @property
    def document(self) -> Dict[str, Any]:
        return dict(self.model_extra or {})


class AutocompleteItem(VendorModel):
    text: str = ""
    query_plus_text: str = Field(default="", alias="queryPlusText")


class IndexingFailure(VendorModel):
    key: str
    status_code: int
    error_message: Optional[str] = None


class IndexingResult(VendorModel):
    """Per-key outcome of an ``index_documents`` call across every batch."""

    succeeded: List[str] = Field(default_factory=list)
    failed: List[IndexingFailure] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed


class SearchIndex(VendorModel):
    name: str
    fields: List[Dict[str, Any]] = Field(default_factory=list)
    suggesters: List[Dict[str, Any]] = Field(default_factory=list)
    etag: Optional[str] = Field(default=None, alias="@odata.etag")


class CognitiveSearchClient(IntegrationClient):
    """Azure AI Search data and index client."""

    provider = "azure_search"
    settings_class = CognitiveSearchSettings

    @classmethod
    def from_settings(
        cls,
        settings: CognitiveSearchSettings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        token_provider: Optional[TokenProvider] = None,
        **kwargs,
    ) -> "CognitiveSearchClient":
        settings.validate_configuration()
        if token_provider is not None:
            auth: httpx.Auth = TokenProviderAuth(token_provider, [SEARCH_SCOPE])
        elif settings.api_key:
            auth = ApiKeyAuth(settings.api_key, header="api-key")
        else:
            raise ConfigurationError(
                "Search needs an api_key or a token provider", provider=cls.provider
            )
        http = HttpTransport.from_settings(
            settings, cls.provider, auth=auth, transport=transport, **kwargs
        )
        return cls(settings, http)

    def _index(self, index: Optional[str]) -> str:
        index = index or self.settings.default_index
        if not index:
            raise ValidationError("An index name is required", provider=self.provider)
        return index

    def _params(self, **extra) -> Dict[str, Any]:
        return {"api-version": self.settings.api_version, **extra}

    async def search(
        self,
        search_text: Optional[str] = "*",
        index: Optional[str] = None,
        filter: Optional[str] = None,
        facets: Optional[Sequence[str]] = None,
        top: Optional[int] = None,
        skip: Optional[int] = None,
        select: Optional[Sequence[str]] = None,
        order_by: Optional[Sequence[str]] = None,
        search_fields: Optional[Sequence[str]] = None,
        vector_queries: Optional[Sequence[Union[VectorQuery, Dict[str, Any]]]] = None,
        query_type: Optional[str] = None,
        semantic_configuration: Optional[str] = None,
        highlight_fields: Optional[Sequence[str]] = None,
        include_total_count: bool = False,
    ) -> SearchResponse:
        """
        Query an index.

        Args:
            search_text: Simple or Lucene query text ("*" matches everything)
            filter: OData filter expression
            facets: Facet expressions such as ``"category,count:10"``
            vector_queries: Vector or text-to-vector queries combined with the text query
            query_type: ``simple``, ``full`` or ``semantic``
            include_total_count: Ask for ``@odata.count``
        """
        if top is not None and top < 0:
            raise ValidationError("top must not be negative", provider=self.provider)
        if skip is not None and skip < 0:
            raise ValidationError("skip must not be negative", provider=self.provider)

        body: Dict[str, Any] = {"search": search_text, "count": include_total_count}
        if filter:
            body["filter"] = filter
        if facets:
            body["facets"] = list(facets)
        if top is not None:
            body["top"] = top
        if skip is not None:
            body["skip"] = skip
        if select:
            body["select"] = ",".join(select)
        if order_by:
            body["orderby"] = ",".join(order_by)
        if search_fields:
            body["searchFields"] = ",".join(search_fields)
        if highlight_fields:
            body["highlight"] = ",".join(highlight_fields)
        if query_type:
            body["queryType"] = query_type
        if semantic_configuration:
            body["semanticConfiguration"] = semantic_configuration
        if vector_queries:
            body["vectorQueries"] = [
                q.to_payload() if isinstance(q, VectorQuery) else dict(q) for q in vector_queries
            ]

        data = await self.http.request_json(
            "POST",
            f"/indexes/{self._index(index)}/docs/search",
            params=self._params(),
            json=body,
            operation="search",
        )
        return SearchResponse.model_validate(data)

    async def lookup_document(
        self, key: str, index: Optional[str] = None, select: Optional[Sequence[str]] = None
    ) -> Dict[str, Any]:
        if not key:
            raise ValidationError("Document key must not be empty", provider=self.provider)
        return await self.http.request_json(
            "GET",
            f"/indexes/{self._index(index)}/docs/{quote(key, safe='')}",
            params=self._params(**{"$select": ",".join(select) if select else None}),
            operation="lookup_document",
        )

    async def count_documents(self, index: Optional[str] = None) -> int:
        response = await self.http.request(
            "GET",
            f"/indexes/{self._index(index)}/docs/$count",
            params=self._params(),
            headers={"Accept": "text/plain"},
            operation="count_documents",
        )
        # Plain text count, sometimes with a UTF-8 BOM
        return int(response.text.strip().lstrip("\ufeff"))

    async def suggest(
        self,
        search_text: str,
        suggester_name: str,
        index: Optional[str] = None,
        top: Optional[int] = None,
        filter: Optional[str] = None,
        select: Optional[Sequence[str]] = None,
        fuzzy: bool = False,
    ) -> List[Suggestion]:
        if not search_text:
            raise ValidationError("search_text must not be empty", provider=self.provider)
        body: Dict[str, Any] = {
            "search": search_text,
            "suggesterName": suggester_name,
            "fuzzy": fuzzy,
        }
        if top is not None:
            body["top"] = top
        if filter:
            body["filter"] = filter
        if select:
            body["select"] = ",".join(select)
        data = await self.http.request_json(
            "POST",
            f"/indexes/{self._index(index)}/docs/suggest",
            params=self._params(),
            json=body,
            operation="suggest",
        )
        return [Suggestion.model_validate(item) for item in data.get("value", [])]

    async def autocomplete(
        self,
        search_text: str,
        suggester_name: str,
        index: Optional[str] = None,
        mode: str = "oneTerm",
        top: Optional[int] = None,
        fuzzy: bool = False,
    ) -> List[AutocompleteItem]:
        if mode not in ("oneTerm", "twoTerms", "oneTermWithContext"):
            raise ValidationError(f"Invalid autocomplete mode: {mode}", provider=self.provider)
        body: Dict[str, Any] = {
            "search": search_text,
            "suggesterName": suggester_name,
            "autocompleteMode": mode,
            "fuzzy": fuzzy,
        }
        if top is not None:
            body["top"] = top
        data = await self.http.request_json(
            "POST",
            f"/indexes/{self._index(index)}/docs/autocomplete",
            params=self._params(),
            json=body,
            operation="autocomplete",
        )
        return [AutocompleteItem.model_validate(item) for item in data.get("value", [])]

    async def index_documents(
        self, actions: Sequence[Dict[str, Any]], index: Optional[str] = None
    ) -> IndexingResult:
        """
        Send indexing actions in batches of at most 1000.

        Each action is a document with an ``@search.action`` of upload, merge,
        mergeOrUpload or delete. A 207 response means some keys failed; those
        are reported in ``IndexingResult.failed`` rather than raised.
        """
        for action in actions:
            if action.get("@search.action", "upload") not in INDEX_ACTIONS:
                raise ValidationError(
                    f"Invalid index action: {action.get('@search.action')}",
                    provider=self.provider,
                )
        index = self._index(index)
        result = IndexingResult()
        if not actions:
            return result

        async def send(batch_index: int, batch: Sequence[Dict[str, Any]]):
            response = await self.http.request(
                "POST",
                f"/indexes/{index}/docs/index",
                params=self._params(),
                json={"value": list(batch)},
                expected_status=(200, 207),
                operation="index_documents",
            )
            return response.json().get("value", [])

        executor = BatchExecutor(
            concurrency=self.settings.index_concurrency,
            chunk_size=self.settings.index_batch_size,
            fail_fast=True,
        )
        batches = await executor.run(list(actions), send)
        for statuses in batches.succeeded:
            for status in statuses:
                if status.get("status"):
                    result.succeeded.append(status.get("key"))
                else:
                    result.failed.append(
                        IndexingFailure(
                            key=status.get("key", ""),
                            status_code=status.get("statusCode", 0),
                            error_message=status.get("errorMessage"),
                        )
                    )
        if result.failed:
            logger.warning(
                "Indexing into %s: %d succeeded, %d failed",
                index,
                len(result.succeeded),
                len(result.failed),
            )
        return result

    async def upload_documents(self, documents: Sequence[Dict[str, Any]], index: Optional[str] = None):
        return await self.index_documents(
            [{"@search.action": "upload", **doc} for doc in documents], index
        )

    async def merge_or_upload_documents(
        self, documents: Sequence[Dict[str, Any]], index: Optional[str] = None
    ):
        return await self.index_documents(
            [{"@search.action": "mergeOrUpload", **doc} for doc in documents], index
        )

    async def delete_documents(
        self, key_field: str, keys: Sequence[str], index: Optional[str] = None
    ):
        return await self.index_documents(
            [{"@search.action": "delete", key_field: key} for key in keys], index
        )

    async def get_index(self, name: Optional[str] = None) -> SearchIndex:
        data = await self.http.request_json(
            "GET",
            f"/indexes/{self._index(name)}",
            params=self._params(),
            operation="get_index",
            cache_ttl=self.settings.cache_ttl_seconds,
        )
        return SearchIndex.model_validate(data)

    async def list_indexes(self) -> List[SearchIndex]:
        data = await self.http.request_json(
            "GET", "/indexes", params=self._params(), operation="list_indexes"
        )
        return [SearchIndex.model_validate(item) for item in data.get("value", [])]

    async def _ping(self):
        data = await self.http.request_json(
            "GET", "/servicestats", params=self._params(), operation="get_service_statistics"
        )
        return {"counters": list((data.get("counters") or {}).keys())}
