#!/usr/bin/env python3
"""
Tests for the Milvus integration.
"""

import json

import httpx
import pytest

from integrations.errors import (
    AuthenticationError,
    ConfigurationError,
    IntegrationError,
    NotFoundError,
    RequestTimeoutError,
    ValidationError,
)
from integrations.milvus import (
    AnnSearch,
    CollectionSchema,
    FieldSchema,
    IndexParams,
    MilvusClient,
    MilvusSettings,
)


def make_client(transport, **overrides):
    values = {
        "base_url": "http://milvus.local:19530",
        "token": "root:Milvus",
        "load_poll_interval": 0.001,
        "max_retry_attempts": 0,
    }
    values.update(overrides)
    return MilvusClient.from_settings(MilvusSettings(**values), transport=transport)


def ok(data=None):
    return {"code": 0, "data": data if data is not None else {}}


def loaded():
    return ok({"loadState": "LoadStateLoaded"})


class TestSettings:
    """Test Milvus configuration."""

    def test_credentials_paired(self, clean_env):
        with pytest.raises(ConfigurationError):
            MilvusClient.from_settings(MilvusSettings(username="root"))

    def test_auth_token(self, clean_env, monkeypatch):
        assert MilvusSettings(username="root", password="pw").auth_token == "root:pw"
        assert MilvusSettings(token="key", username="root", password="pw").auth_token == "key"
        assert MilvusSettings().auth_token is None

        monkeypatch.setenv("MILVUS_DB_NAME", "search")
        assert MilvusSettings().db_name == "search"

    def test_invalid_batching(self, clean_env):
        issues = MilvusSettings(insert_batch_size=0, insert_concurrency=0).collect_issues()
        assert len(issues) == 2


class TestEnvelope:
    """Test the code/message response envelope."""

    @pytest.mark.asyncio
    async def test_database_and_auth_sent(self, clean_env, handler, transport):
        handler.add("POST", "/v2/vectordb/collections/list", ok(["docs", "images"]))
        client = make_client(transport, db_name="search")

        assert await client.list_collections() == ["docs", "images"]
        assert handler.last.headers["Authorization"] == "Bearer root:Milvus"
        assert handler.json_body() == {"dbName": "search"}
        await client.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "envelope,error_class",
        [
            ({"code": 100, "message": "collection not found[collection=x]"}, NotFoundError),
            ({"code": 1100, "message": "invalid parameter"}, ValidationError),
            ({"code": 1800, "message": "user hasn't authenticated"}, AuthenticationError),
            ({"code": 65535, "message": "can't find collection: x"}, NotFoundError),
            ({"code": 65535, "message": "service unavailable"}, IntegrationError),
        ],
    )
    async def test_error_codes(self, clean_env, handler, transport, envelope, error_class):
        handler.add("POST", "/collections/describe", envelope)
        client = make_client(transport)

        with pytest.raises(error_class) as exc_info:
            await client.describe_collection("x")
        assert exc_info.value.response_data == envelope
        assert envelope["message"] in str(exc_info.value)
        await client.close()

    @pytest.mark.asyncio
    async def test_code_200_is_success(self, clean_env, handler, transport):
        handler.add("POST", "/collections/has", {"code": 200, "data": {"has": True}})
        client = make_client(transport)
        assert await client.has_collection("docs") is True
        await client.close()


class TestCollections:
    """Test collection lifecycle calls."""

    @pytest.mark.asyncio
    async def test_quick_create(self, clean_env, handler, transport):
        handler.add("POST", "/collections/create", ok())
        client = make_client(transport)

        await client.create_collection("docs", dimension=768, metric_type="L2", id_type="VarChar")
        assert handler.json_body() == {
            "dbName": "default",
            "collectionName": "docs",
            "dimension": 768,
            "metricType": "L2",
            "primaryFieldName": "id",
            "vectorFieldName": "vector",
            "idType": "VarChar",
            "autoID": False,
        }
        await client.close()

    @pytest.mark.asyncio
    async def test_schema_create(self, clean_env, handler, transport):
        handler.add("POST", "/collections/create", ok())
        client = make_client(transport)

        schema = CollectionSchema(
            auto_id=True,
            fields=[
                FieldSchema(name="id", data_type="Int64", is_primary=True),
                FieldSchema(
                    name="embedding",
                    data_type="FloatVector",
                    element_type_params={"dim": "4"},
                ),
            ],
        )
        await client.create_collection(
            "docs",
            schema=schema,
            index_params=[IndexParams(field_name="embedding", index_type="HNSW")],
        )
        body = handler.json_body()
        assert body["schema"]["autoId"] is True
        assert body["schema"]["fields"][0] == {
            "fieldName": "id",
            "dataType": "Int64",
            "isPrimary": True,
            "elementTypeParams": {},
        }
        assert body["indexParams"] == [
            {"fieldName": "embedding", "metricType": "COSINE", "indexType": "HNSW"}
        ]
        await client.close()

    @pytest.mark.asyncio
    async def test_create_needs_shape(self, clean_env, handler, transport):
        client = make_client(transport)
        with pytest.raises(ValidationError):
            await client.create_collection("docs")
        with pytest.raises(ValidationError):
            await client.create_collection("docs", dimension=0)
        assert handler.requests == []
        await client.close()

    @pytest.mark.asyncio
    async def test_describe_collection(self, clean_env, handler, transport):
        handler.add(
            "POST",
            "/collections/describe",
            ok(
                {
                    "collectionName": "docs",
                    "fields": [
                        {"name": "pk", "type": "Int64", "primaryKey": True},
                        {"name": "vector", "type": "FloatVector"},
                    ],
                    "load": "LoadStateLoaded",
                    "shardsNum": 1,
                }
            ),
        )
        client = make_client(transport)

        description = await client.describe_collection("docs")
        assert description.primary_field == "pk"
        assert description.shards_num == 1
        await client.close()

    @pytest.mark.asyncio
    async def test_ensure_loaded_waits(self, clean_env, handler, transport):
        states = iter(["LoadStateNotLoad", "LoadStateLoading", "LoadStateLoaded"])
        handler.add(
            "POST",
            "/collections/get_load_state",
            lambda request: httpx.Response(200, json=ok({"loadState": next(states)})),
        )
        handler.add("POST", "/collections/load", ok())
        client = make_client(transport)

        await client.ensure_loaded("docs")
        await client.ensure_loaded("docs")

        paths = [r.url.path.rsplit("/", 1)[-1] for r in handler.requests]
        assert paths == ["get_load_state", "load", "get_load_state", "get_load_state"]
        await client.close()

    @pytest.mark.asyncio
    async def test_ensure_loaded_missing(self, clean_env, handler, transport):
        handler.add("POST", "/collections/get_load_state", ok({"loadState": "LoadStateNotExist"}))
        client = make_client(transport)
        with pytest.raises(NotFoundError):
            await client.ensure_loaded("ghost")
        await client.close()

    @pytest.mark.asyncio
    async def test_ensure_loaded_timeout(self, clean_env, handler, transport):
        handler.add("POST", "/collections/get_load_state", ok({"loadState": "LoadStateLoading"}))
        client = make_client(transport)
        with pytest.raises(RequestTimeoutError):
            await client.ensure_loaded("docs", timeout=0)
        await client.close()

    @pytest.mark.asyncio
    async def test_release_forgets_load(self, clean_env, handler, transport):
        handler.add("POST", "/collections/get_load_state", loaded())
        handler.add("POST", "/collections/release", ok())
        client = make_client(transport)

        await client.ensure_loaded("docs")
        await client.release_collection("docs")
        await client.ensure_loaded("docs")
        assert len([r for r in handler.requests if r.url.path.endswith("get_load_state")]) == 2
        await client.close()


class TestEntities:
    """Test writes, reads and searches."""

    @pytest.mark.asyncio
    async def test_insert_batches(self, clean_env, handler, transport):
        def insert(request):
            rows = json.loads(request.content)["data"]
            return httpx.Response(
                200, json=ok({"insertCount": len(rows), "insertIds": [r["id"] for r in rows]})
            )

        handler.add("POST", "/entities/insert", insert)
        client = make_client(transport, insert_batch_size=2)

        rows = [{"id": i, "vector": [0.1, 0.2]} for i in range(5)]
        result = await client.insert("docs", rows, partition="2024")

        assert result.count == 5
        assert result.ids == [0, 1, 2, 3, 4]
        assert len(handler.requests) == 3
        assert all(json.loads(r.content)["partitionName"] == "2024" for r in handler.requests)
        await client.close()

    @pytest.mark.asyncio
    async def test_upsert_and_empty_rows(self, clean_env, handler, transport):
        handler.add("POST", "/entities/upsert", ok({"upsertCount": 1, "upsertIds": ["a"]}))
        client = make_client(transport)

        result = await client.upsert("docs", [{"id": "a", "vector": [1.0]}])
        assert (result.count, result.ids) == (1, ["a"])
        with pytest.raises(ValidationError):
            await client.insert("docs", [])
        await client.close()

    @pytest.mark.asyncio
    async def test_failed_batch_raises(self, clean_env, handler, transport):
        handler.add("POST", "/entities/insert", {"code": 1100, "message": "dim mismatch"})
        client = make_client(transport)
        with pytest.raises(ValidationError):
            await client.insert("docs", [{"id": 1, "vector": [1.0]}])
        await client.close()

    @pytest.mark.asyncio
    async def test_delete(self, clean_env, handler, transport):
        handler.add("POST", "/entities/delete", ok())
        client = make_client(transport)

        await client.delete("docs", ids=["a", "b"], primary_field="doc_id")
        assert handler.json_body()["filter"] == 'doc_id in ["a", "b"]'

        await client.delete("docs", filter="year < 2020", partition="old")
        body = handler.json_body()
        assert body["filter"] == "year < 2020"
        assert body["partitionName"] == "old"

        with pytest.raises(ValidationError):
            await client.delete("docs")
        await client.close()

    @pytest.mark.asyncio
    async def test_get_and_query(self, clean_env, handler, transport):
        handler.add("POST", "/collections/get_load_state", loaded())
        handler.add("POST", "/entities/get", ok([{"id": 1, "title": "a"}]))
        handler.add("POST", "/entities/query", ok([{"id": 2}]))
        client = make_client(transport)

        assert await client.get("docs", []) == []
        assert handler.requests == []

        rows = await client.get("docs", [1], output_fields=["title"])
        assert rows == [{"id": 1, "title": "a"}]
        assert handler.json_body()["outputFields"] == ["title"]

        rows = await client.query("docs", "id > 1", limit=10, offset=5)
        body = handler.json_body()
        assert (body["limit"], body["offset"]) == (10, 5)
        assert rows == [{"id": 2}]
        await client.close()

    @pytest.mark.asyncio
    async def test_search(self, clean_env, handler, transport):
        handler.add(
            "POST",
            "/entities/search",
            ok([{"id": 7, "distance": 0.12, "title": "Hello"}]),
        )
        client = make_client(transport, auto_load=False)

        hits = await client.search(
            "docs",
            [[0.1, 0.2]],
            limit=3,
            anns_field="vector",
            filter="lang == 'en'",
            output_fields=["title"],
            search_params={"params": {"ef": 64}},
        )

        assert hits[0].id == 7
        assert hits[0].distance == 0.12
        assert hits[0].entity == {"title": "Hello"}
        assert len(handler.requests) == 1
        body = handler.json_body()
        assert body["data"] == [[0.1, 0.2]]
        assert body["searchParams"] == {"params": {"ef": 64}}
        await client.close()

    @pytest.mark.asyncio
    async def test_search_validation(self, clean_env, handler, transport):
        client = make_client(transport, auto_load=False)
        with pytest.raises(ValidationError):
            await client.search("docs", [])
        with pytest.raises(ValidationError):
            await client.search("docs", [[0.1, 0.2], [0.3]])
        with pytest.raises(ValidationError):
            await client.search("docs", [[0.1]], limit=0)
        assert handler.requests == []
        await client.close()

    @pytest.mark.asyncio
    async def test_hybrid_search(self, clean_env, handler, transport):
        handler.add("POST", "/entities/hybrid_search", ok([{"id": 1, "distance": 0.03}]))
        client = make_client(transport, auto_load=False)

        searches = [
            AnnSearch(data=[[0.1, 0.2]], anns_field="dense", limit=5),
            AnnSearch(data=[[0.3, 0.4, 0.5]], anns_field="image", filter="kind == 'photo'"),
        ]
        hits = await client.hybrid_search("docs", searches, limit=2)

        assert hits[0].id == 1
        body = handler.json_body()
        assert body["rerank"] == {"strategy": "rrf", "params": {"k": 60}}
        assert body["search"][0] == {"data": [[0.1, 0.2]], "annsField": "dense", "limit": 5}
        assert body["search"][1]["filter"] == "kind == 'photo'"

        await client.hybrid_search(
            "docs", searches, rerank="weighted", rerank_params={"weights": [0.7, 0.3]}
        )
        assert handler.json_body()["rerank"]["params"] == {"weights": [0.7, 0.3]}
        await client.close()

    @pytest.mark.asyncio
    async def test_hybrid_search_validation(self, clean_env, handler, transport):
        client = make_client(transport, auto_load=False)
        search = AnnSearch(data=[[0.1]], anns_field="dense")
        with pytest.raises(ValidationError):
            await client.hybrid_search("docs", [])
        with pytest.raises(ValidationError):
            await client.hybrid_search("docs", [search], rerank="max")
        with pytest.raises(ValidationError):
            await client.hybrid_search("docs", [search, search], rerank="weighted")
        assert handler.requests == []
        await client.close()

    @pytest.mark.asyncio
    async def test_health_check(self, clean_env, handler, transport):
        handler.add("POST", "/collections/list", ok(["a", "b"]))
        client = make_client(transport)
        health = await client.health_check()
        assert health["status"] == "healthy"
        assert health["details"] == {"collections": 2}
        await client.close()
