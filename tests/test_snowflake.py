#!/usr/bin/env python3
"""
Tests for the Snowflake integration.
"""

import json
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal

import httpx
import jwt
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from integrations.errors import ConfigurationError, RequestTimeoutError, ValidationError
from integrations.snowflake import (
    ColumnType,
    KeyPairJWTGenerator,
    SnowflakeClient,
    SnowflakeSettings,
    bind_value,
    build_bindings,
    convert_value,
    quote_identifier,
)

ACCOUNT = "xy12345.us-east-1"
HANDLE = "01b2c3d4-0000-1111-0000-000123456789"


@pytest.fixture(scope="module")
def rsa_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="module")
def private_pem(rsa_key):
    return rsa_key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    )


def make_client(transport, **overrides):
    values = {
        "account": ACCOUNT,
        "token": "oauth-token",
        "warehouse": "COMPUTE_WH",
        "database": "ANALYTICS",
        "schema_name": "PUBLIC",
        "poll_interval": 0.001,
        "max_retry_attempts": 0,
    }
    values.update(overrides)
    return SnowflakeClient.from_settings(SnowflakeSettings(**values), transport=transport)


def result_set(columns, data, handle=HANDLE, partitions=None):
    metadata = {"numRows": len(data), "format": "jsonv2", "rowType": columns}
    if partitions is not None:
        metadata["partitionInfo"] = partitions
    return {
        "resultSetMetaData": metadata,
        "data": data,
        "code": "090001",
        "statementHandle": handle,
        "message": "Statement executed successfully.",
    }


def column(name, type_, **extra):
    return {"name": name, "type": type_, "nullable": True, **extra}


def running(handle=HANDLE):
    return httpx.Response(
        202,
        json={
            "code": "333334",
            "message": "Asynchronous execution in progress.",
            "statementHandle": handle,
            "statementStatusUrl": f"/api/v2/statements/{handle}",
        },
    )


class TestConversion:
    """Test JSON v2 cell conversion and bindings."""

    @pytest.mark.parametrize(
        "value,col,expected",
        [
            ("42", {"type": "fixed", "scale": 0}, 42),
            ("12.50", {"type": "fixed", "scale": 2}, Decimal("12.50")),
            ("1.5e3", {"type": "real"}, 1500.0),
            ("true", {"type": "boolean"}, True),
            ("0", {"type": "boolean"}, False),
            ("18262", {"type": "date"}, date(2020, 1, 1)),
            ("3661.500000000", {"type": "time"}, time(1, 1, 1, 500000)),
            ("1577836800.123456000", {"type": "timestamp_ntz"}, datetime(2020, 1, 1, 0, 0, 0, 123456)),
            (
                "1577836800.000000000",
                {"type": "timestamp_ltz"},
                datetime(2020, 1, 1, tzinfo=timezone.utc),
            ),
            ('{"a": [1, 2]}', {"type": "variant"}, {"a": [1, 2]}),
            ("[1, 2]", {"type": "array"}, [1, 2]),
            ("cafe", {"type": "binary"}, b"\xca\xfe"),
            ("plain", {"type": "text"}, "plain"),
            (None, {"type": "fixed"}, None),
        ],
    )
    def test_convert_value(self, value, col, expected):
        assert convert_value(value, ColumnType(name="c", **col)) == expected

    def test_timestamp_tz_offset(self):
        converted = convert_value(
            "1577836800.000000000 1500", ColumnType(name="c", type="timestamp_tz")
        )
        assert converted.utcoffset() == timedelta(hours=1)
        assert converted.hour == 1
        assert converted == datetime(2020, 1, 1, tzinfo=timezone.utc)

    def test_bindings(self):
        assert build_bindings([1, "x", None]) == {
            "1": {"type": "FIXED", "value": "1"},
            "2": {"type": "TEXT", "value": "x"},
            "3": {"type": "TEXT", "value": None},
        }
        assert bind_value(True) == {"type": "BOOLEAN", "value": "true"}
        assert bind_value(Decimal("1.25")) == {"type": "FIXED", "value": "1.25"}
        assert bind_value(0.5) == {"type": "REAL", "value": "0.5"}
        assert bind_value(date(2024, 2, 29)) == {"type": "TEXT", "value": "2024-02-29"}
        assert bind_value(datetime(2024, 2, 29, 12, 30)) == {
            "type": "TEXT",
            "value": "2024-02-29 12:30:00",
        }
        assert bind_value(b"\x01\xff") == {"type": "BINARY", "value": "01ff"}
        assert bind_value({"a": 1}) == {"type": "TEXT", "value": '{"a": 1}'}

    def test_quote_identifier(self):
        assert quote_identifier("ANALYTICS.PUBLIC.orders") == "ANALYTICS.PUBLIC.orders"
        assert quote_identifier("order date") == '"order date"'
        assert quote_identifier('db.we"ird') == 'db."we""ird"'
        assert quote_identifier("orders\n") == '"orders\n"'
        with pytest.raises(ValidationError):
            quote_identifier("")


class TestSettings:
    """Test Snowflake configuration."""

    def test_base_url_from_account(self, clean_env):
        settings = SnowflakeSettings(account="XY12345.us-east-1", token="t")
        assert settings.base_url == "https://xy12345.us-east-1.snowflakecomputing.com"

    def test_issues(self, clean_env):
        with pytest.raises(ConfigurationError):
            SnowflakeClient.from_settings(SnowflakeSettings(account=ACCOUNT))

        issues = SnowflakeSettings(
            account=ACCOUNT, authenticator="keypair", jwt_lifetime=10
        ).collect_issues()
        assert any("user" in issue for issue in issues)
        assert any("private_key" in issue for issue in issues)
        assert any("jwt_lifetime" in issue for issue in issues)

        issues = SnowflakeSettings(account=ACCOUNT, authenticator="password").collect_issues()
        assert any("authenticator" in issue for issue in issues)

    def test_environment(self, clean_env, monkeypatch):
        monkeypatch.setenv("SNOWFLAKE_ACCOUNT", "myorg-myaccount")
        monkeypatch.setenv("SNOWFLAKE_SCHEMA_NAME", "STAGING")
        settings = SnowflakeSettings()
        assert settings.schema_name == "STAGING"
        assert settings.base_url == "https://myorg-myaccount.snowflakecomputing.com"


class TestKeyPairAuth:
    """Test key-pair JWT generation."""

    @pytest.mark.parametrize(
        "account,expected",
        [
            ("xy12345.us-east-1", "XY12345"),
            ("myorg-myaccount", "MYORG-MYACCOUNT"),
            ("xy12345.snowflakecomputing.com", "XY12345"),
        ],
    )
    def test_normalize_account(self, account, expected):
        assert KeyPairJWTGenerator.normalize_account(account) == expected

    def test_token_claims(self, rsa_key, private_pem):
        generator = KeyPairJWTGenerator(ACCOUNT, "alice", private_pem, lifetime=600)

        token = generator.get_token()
        claims = jwt.decode(token, rsa_key.public_key(), algorithms=["RS256"])

        assert claims["sub"] == "XY12345.ALICE"
        assert claims["iss"] == f"XY12345.ALICE.{generator.fingerprint}"
        assert claims["exp"] - claims["iat"] == 600
        assert generator.fingerprint.startswith("SHA256:")
        assert generator.get_token() == token

    def test_encrypted_key(self, rsa_key):
        pem = rsa_key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.BestAvailableEncryption(b"secret"),
        )
        generator = KeyPairJWTGenerator(ACCOUNT, "alice", pem, passphrase="secret")
        assert generator.get_token()

        with pytest.raises(ConfigurationError):
            KeyPairJWTGenerator(ACCOUNT, "alice", pem, passphrase="wrong")
        with pytest.raises(ConfigurationError):
            KeyPairJWTGenerator(ACCOUNT, "alice", pem)

    def test_invalid_key(self):
        with pytest.raises(ConfigurationError):
            KeyPairJWTGenerator(ACCOUNT, "alice", b"not a key")

    @pytest.mark.asyncio
    async def test_client_sends_jwt(self, clean_env, handler, transport, rsa_key, private_pem):
        handler.add("POST", "/api/v2/statements", result_set([column("1", "fixed", scale=0)], [["1"]]))
        client = make_client(
            transport,
            token=None,
            authenticator="keypair",
            user="alice",
            private_key=private_pem.decode(),
        )

        await client.execute("SELECT 1")
        request = handler.last
        assert request.headers["X-Snowflake-Authorization-Token-Type"] == "KEYPAIR_JWT"
        token = request.headers["Authorization"].removeprefix("Bearer ")
        assert jwt.decode(token, rsa_key.public_key(), algorithms=["RS256"])["sub"] == "XY12345.ALICE"
        await client.close()

    @pytest.mark.asyncio
    async def test_private_key_path(self, clean_env, handler, transport, private_pem, tmp_path):
        key_file = tmp_path / "rsa_key.p8"
        key_file.write_bytes(private_pem)
        client = make_client(
            transport,
            token=None,
            authenticator="keypair",
            user="alice",
            private_key_path=str(key_file),
        )
        assert client.settings.load_private_key() == private_pem
        await client.close()


class TestExecute:
    """Test statement execution and polling."""

    @pytest.mark.asyncio
    async def test_execute_sync(self, clean_env, handler, transport):
        handler.add(
            "POST",
            "/api/v2/statements",
            result_set(
                [column("ID", "fixed", scale=0), column("NAME", "text"), column("AMOUNT", "fixed", scale=2)],
                [["1", "widget", "9.99"], ["2", None, "0.50"]],
            ),
        )
        client = make_client(transport, query_tag="etl")

        result = await client.execute(
            "SELECT * FROM orders WHERE id > ? AND region = ?", bindings=[0, "EU"], timeout=30
        )

        assert result.complete is True
        assert result.column_names == ["ID", "NAME", "AMOUNT"]
        assert result.rows == [
            {"ID": 1, "NAME": "widget", "AMOUNT": Decimal("9.99")},
            {"ID": 2, "NAME": None, "AMOUNT": Decimal("0.50")},
        ]
        assert result.scalar() == 1

        request = handler.last
        assert request.headers["Authorization"] == "Bearer oauth-token"
        assert request.headers["X-Snowflake-Authorization-Token-Type"] == "OAUTH"
        assert request.url.params["retry"] == "true"
        assert request.url.params["requestId"]
        assert "async" not in request.url.params
        assert handler.json_body() == {
            "statement": "SELECT * FROM orders WHERE id > ? AND region = ?",
            "warehouse": "COMPUTE_WH",
            "database": "ANALYTICS",
            "schema": "PUBLIC",
            "timeout": 30,
            "bindings": {
                "1": {"type": "FIXED", "value": "0"},
                "2": {"type": "TEXT", "value": "EU"},
            },
            "parameters": {"query_tag": "etl"},
        }
        await client.close()

    @pytest.mark.asyncio
    async def test_context_overrides(self, clean_env, handler, transport):
        handler.add("POST", "/api/v2/statements", result_set([], []))
        client = make_client(transport, token="pat-token", authenticator="pat")

        await client.execute("SELECT 1", warehouse="BIG_WH", role="ANALYST")
        body = handler.json_body()
        assert body["warehouse"] == "BIG_WH"
        assert body["role"] == "ANALYST"
        assert handler.last.headers["X-Snowflake-Authorization-Token-Type"] == "PROGRAMMATIC_ACCESS_TOKEN"
        await client.close()

    @pytest.mark.asyncio
    async def test_polls_running_statement(self, clean_env, handler, transport):
        handler.add("POST", "/api/v2/statements", running())
        polls = iter([running(), httpx.Response(200, json=result_set([column("N", "fixed", scale=0)], [["5"]]))])
        handler.add("GET", f"/api/v2/statements/{HANDLE}", lambda request: next(polls))
        client = make_client(transport)

        result = await client.execute("CALL long_running()")

        assert result.complete is True
        assert result.scalar() == 5
        assert [r.method for r in handler.requests] == ["POST", "GET", "GET"]
        await client.close()

    @pytest.mark.asyncio
    async def test_async_submit(self, clean_env, handler, transport):
        handler.add("POST", "/api/v2/statements", running())
        client = make_client(transport)

        result = await client.execute("CALL long_running()", async_exec=True)

        assert result.complete is False
        assert result.statement_handle == HANDLE
        assert handler.last.url.params["async"] == "true"
        assert len(handler.requests) == 1
        await client.close()

    @pytest.mark.asyncio
    async def test_wait_timeout(self, clean_env, handler, transport):
        handler.add("GET", f"/api/v2/statements/{HANDLE}", running())
        client = make_client(transport)
        with pytest.raises(RequestTimeoutError):
            await client.wait_for_statement(HANDLE, timeout=0)
        await client.close()

    @pytest.mark.asyncio
    async def test_fetches_partitions(self, clean_env, handler, transport):
        columns = [column("ID", "fixed", scale=0)]
        handler.add(
            "POST",
            "/api/v2/statements",
            result_set(
                columns,
                [["1"], ["2"]],
                partitions=[{"rowCount": 2}, {"rowCount": 1}, {"rowCount": 1}],
            ),
        )
        handler.add(
            "GET",
            f"/api/v2/statements/{HANDLE}",
            lambda request: httpx.Response(
                200, json={"data": [[str(int(request.url.params["partition"]) + 2)]]}
            ),
        )
        client = make_client(transport)

        result = await client.execute("SELECT id FROM big")
        assert [row["ID"] for row in result.rows] == [1, 2, 3, 4]
        assert len(result.data) == 4
        partitions = [r.url.params["partition"] for r in handler.requests if r.method == "GET"]
        assert partitions == ["1", "2"]

        handler.requests.clear()
        first_only = await client.execute("SELECT id FROM big", fetch_all=False)
        assert len(first_only.rows) == 2
        assert len(handler.requests) == 1
        await client.close()

    @pytest.mark.asyncio
    async def test_sql_error(self, clean_env, handler, transport):
        handler.add(
            "POST",
            "/api/v2/statements",
            httpx.Response(
                422,
                json={
                    "code": "002003",
                    "message": "SQL compilation error: Object 'MISSING' does not exist.",
                    "sqlState": "02000",
                    "statementHandle": HANDLE,
                },
            ),
        )
        client = make_client(transport)

        with pytest.raises(ValidationError) as exc_info:
            await client.execute("SELECT * FROM missing")
        assert "SQL compilation error" in str(exc_info.value)
        assert exc_info.value.status_code == 422

        with pytest.raises(ValidationError):
            await client.execute("   ")
        await client.close()

    @pytest.mark.asyncio
    async def test_cancel(self, clean_env, handler, transport):
        handler.add("POST", f"/api/v2/statements/{HANDLE}/cancel", {"code": "000604"})
        client = make_client(transport)
        await client.cancel(HANDLE)
        assert handler.last.url.path.endswith("/cancel")
        await client.close()


class TestMetadata:
    """Test metadata discovery and bulk inserts."""

    @pytest.mark.asyncio
    async def test_list_tables(self, clean_env, handler, transport):
        handler.add(
            "POST",
            "/api/v2/statements",
            result_set([column("created_on", "timestamp_ltz"), column("name", "text")], [[None, "ORDERS"]]),
        )
        client = make_client(transport)

        assert await client.list_tables() == ["ORDERS"]
        assert handler.json_body()["statement"] == "SHOW TABLES IN SCHEMA ANALYTICS.PUBLIC"

        await client.list_schemas("raw data")
        assert handler.json_body()["statement"] == 'SHOW SCHEMAS IN DATABASE "raw data"'

        assert await client.list_databases() == ["ORDERS"]
        await client.close()

    @pytest.mark.asyncio
    async def test_metadata_needs_context(self, clean_env, transport):
        client = make_client(transport, database=None, schema_name=None)
        with pytest.raises(ValidationError):
            await client.list_tables()
        with pytest.raises(ValidationError):
            await client.list_schemas()
        await client.close()

    @pytest.mark.asyncio
    async def test_describe_table(self, clean_env, handler, transport):
        describe_columns = [
            column("name", "text"),
            column("type", "text"),
            column("null?", "text"),
            column("default", "text"),
            column("primary key", "text"),
            column("comment", "text"),
        ]
        handler.add(
            "POST",
            "/api/v2/statements",
            result_set(
                describe_columns,
                [
                    ["ID", "NUMBER(38,0)", "N", None, "Y", None],
                    ["NOTE", "VARCHAR(16777216)", "Y", "'n/a'", "N", "free text"],
                ],
            ),
        )
        client = make_client(transport)

        columns = await client.describe_table("orders")
        assert columns[0].primary_key is True
        assert columns[0].nullable is False
        assert columns[1].default == "'n/a'"
        assert columns[1].comment == "free text"
        await client.close()

    @pytest.mark.asyncio
    async def test_bulk_insert(self, clean_env, handler, transport):
        def insert(request):
            bindings = json.loads(request.content)["bindings"]
            inserted = len(bindings) // 2
            return httpx.Response(
                200,
                json=result_set(
                    [column("number of rows inserted", "fixed", scale=0)], [[str(inserted)]]
                ),
            )

        handler.add("POST", "/api/v2/statements", insert)
        client = make_client(transport)

        rows = [(1, date(2024, 1, 1)), (2, date(2024, 1, 2)), (3, None)]
        total = await client.bulk_insert("orders", ["id", "order date"], rows, batch_size=2)

        assert total == 3
        assert len(handler.requests) == 2
        first = handler.json_body(0)
        assert first["statement"] == 'INSERT INTO orders (id, "order date") VALUES (?, ?), (?, ?)'
        assert first["bindings"]["2"] == {"type": "TEXT", "value": "2024-01-01"}
        assert handler.json_body(1)["statement"].endswith("VALUES (?, ?)")
        await client.close()

    @pytest.mark.asyncio
    async def test_bulk_insert_validation(self, clean_env, handler, transport):
        client = make_client(transport)
        assert await client.bulk_insert("orders", ["id"], []) == 0
        with pytest.raises(ValidationError):
            await client.bulk_insert("orders", [], [(1,)])
        with pytest.raises(ValidationError):
            await client.bulk_insert("orders", ["id", "name"], [(1,)])
        assert handler.requests == []
        await client.close()

    @pytest.mark.asyncio
    async def test_health_check(self, clean_env, handler, transport):
        handler.add("POST", "/api/v2/statements", result_set([column("1", "fixed", scale=0)], [["1"]]))
        client = make_client(transport)
        health = await client.health_check()
        assert health["status"] == "healthy"
        assert health["details"] == {"statement_handle": HANDLE}
        await client.close()
