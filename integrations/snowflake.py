#!/usr/bin/env python3
"""
Snowflake Integration

Client for the Snowflake SQL API v2: statement execution with bindings and
session context, asynchronous statements polled by handle, result partition
fetching, typed row conversion, metadata discovery and batched inserts.

Authentication uses an OAuth or programmatic access token, or a key-pair
JWT signed with RS256.
"""

import asyncio
import base64
import hashlib
import json
import logging
import re
import time
import uuid
from datetime import date, datetime, timedelta, timezone
from decimal import ROUND_HALF_EVEN, Decimal
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

import httpx
import jwt
from cryptography.hazmat.primitives import serialization
from pydantic import Field
from pydantic_settings import SettingsConfigDict

from .base import IntegrationClient
from .batch import BatchExecutor
from .errors import ConfigurationError, RequestTimeoutError, ValidationError
from .models import VendorModel
from .settings import IntegrationSettings
from .transport import HttpTransport

logger = logging.getLogger(__name__)

STATEMENTS_PATH = "/api/v2/statements"
AUTHENTICATORS = ("oauth", "pat", "keypair")
TOKEN_TYPES = {
    "oauth": "OAUTH",
    "pat": "PROGRAMMATIC_ACCESS_TOKEN",
    "keypair": "KEYPAIR_JWT",
}
MAX_JWT_LIFETIME = 3600
IDENTIFIER_PATTERN = re.compile(r"[A-Za-z_][A-Za-z0-9_$]*")

EPOCH = datetime(1970, 1, 1)
EPOCH_UTC = datetime(1970, 1, 1, tzinfo=timezone.utc)
EPOCH_DATE = date(1970, 1, 1)


class SnowflakeSettings(IntegrationSettings):
    """Snowflake settings (``SNOWFLAKE_`` environment prefix)."""

    model_config = SettingsConfigDict(env_prefix="SNOWFLAKE_", env_file=".env", extra="ignore")

    account: str = Field(default="", description="Account identifier (orgname-account or locator)")
    user: Optional[str] = Field(default=None)
    authenticator: str = Field(default="oauth", description="oauth, pat or keypair")
    token: Optional[str] = Field(default=None, description="OAuth or programmatic access token")
    private_key: Optional[str] = Field(default=None, description="PEM private key for key-pair auth")
    private_key_path: Optional[str] = Field(default=None)
    private_key_passphrase: Optional[str] = Field(default=None)
    jwt_lifetime: int = Field(default=3600, description="Key-pair JWT lifetime in seconds")
    warehouse: Optional[str] = Field(default=None)
    database: Optional[str] = Field(default=None)
    schema_name: Optional[str] = Field(default=None)
    role: Optional[str] = Field(default=None)
    query_tag: Optional[str] = Field(default=None)
    statement_timeout: Optional[int] = Field(default=None, description="Server side timeout (s)")
    poll_interval: float = Field(default=1.0, description="Async statement poll interval")
    wait_timeout: float = Field(default=600.0, description="Seconds to wait for a statement")
    bulk_insert_batch_size: int = Field(default=1000)

    def model_post_init(self, __context: Any) -> None:
        if not self.base_url and self.account:
            self.base_url = f"https://{self.account.lower()}.snowflakecomputing.com"

    def collect_issues(self) -> List[str]:
        issues = super().collect_issues()
        if not self.account:
            issues.append("Snowflake account is required")
        if self.authenticator not in AUTHENTICATORS:
            issues.append(f"Invalid authenticator: {self.authenticator}")
        elif self.authenticator == "keypair":
            if not self.user:
                issues.append("Snowflake user is required for key-pair authentication")
            if not self.private_key and not self.private_key_path:
                issues.append("Key-pair authentication needs private_key or private_key_path")
        elif not self.token:
            issues.append(f"Snowflake token is required for {self.authenticator} authentication")
        if not 60 <= self.jwt_lifetime <= MAX_JWT_LIFETIME:
            issues.append(f"jwt_lifetime must be between 60 and {MAX_JWT_LIFETIME} seconds")
        if self.bulk_insert_batch_size <= 0:
            issues.append(f"Invalid bulk insert batch size: {self.bulk_insert_batch_size}")
        return issues

    def load_private_key(self) -> bytes:
        if self.private_key:
            return self.private_key.encode("utf-8")
        with open(self.private_key_path, "rb") as f:
            return f.read()


class KeyPairJWTGenerator:
    """
    Key-pair JWTs for the SQL API.

    The issuer is ``ACCOUNT.USER.SHA256:<public key fingerprint>`` and the
    subject ``ACCOUNT.USER``. Tokens are reused until ``renew_buffer``
    seconds before they expire.
    """

    def __init__(
        self,
        account: str,
        user: str,
        private_key_pem: bytes,
        passphrase: Optional[str] = None,
        lifetime: int = MAX_JWT_LIFETIME,
        renew_buffer: int = 60,
    ):
        self.account = self.normalize_account(account)
        self.user = user.upper()
        self.lifetime = min(lifetime, MAX_JWT_LIFETIME)
        self.renew_buffer = renew_buffer
        try:
            self.private_key = serialization.load_pem_private_key(
                private_key_pem, password=passphrase.encode("utf-8") if passphrase else None
            )
        except (ValueError, TypeError) as e:
            raise ConfigurationError(
                f"Unable to load Snowflake private key: {e}", provider="snowflake"
            ) from e
        self.fingerprint = self.public_key_fingerprint(self.private_key)
        self._token: Optional[str] = None
        self._expires_at = 0.0

    @staticmethod
    def normalize_account(account: str) -> str:
        """``xy12345.us-east-1`` becomes ``XY12345``; org-account names keep their dash."""
        account = account.split(".snowflakecomputing.com")[0]
        return account.split(".")[0].upper()

    @staticmethod
    def public_key_fingerprint(private_key) -> str:
        der = private_key.public_key().public_bytes(
            serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo
        )
        return "SHA256:" + base64.b64encode(hashlib.sha256(der).digest()).decode("ascii")

    @property
    def qualified_user(self) -> str:
        return f"{self.account}.{self.user}"

    def get_token(self) -> str:
        now = time.time()
        if self._token is not None and now < self._expires_at - self.renew_buffer:
            return self._token
        issued_at = int(now)
        payload = {
            "iss": f"{self.qualified_user}.{self.fingerprint}",
            "sub": self.qualified_user,
            "iat": issued_at,
            "exp": issued_at + self.lifetime,
        }
        self._token = jwt.encode(payload, self.private_key, algorithm="RS256")
        self._expires_at = issued_at + self.lifetime
        logger.debug("Generated key-pair JWT for %s", self.qualified_user)
        return self._token


class SnowflakeAuth(httpx.Auth):
    """Bearer token plus the token type header the SQL API requires."""

    def __init__(self, token_getter: Callable[[], str], token_type: str):
        self.token_getter = token_getter
        self.token_type = token_type

    def auth_flow(self, request: httpx.Request):
        request.headers["Authorization"] = f"Bearer {self.token_getter()}"
        request.headers["X-Snowflake-Authorization-Token-Type"] = self.token_type
        yield request


class ColumnType(VendorModel):
    name: str
    type: str
    scale: Optional[int] = None
    precision: Optional[int] = None
    nullable: bool = True
    length: Optional[int] = None


class PartitionInfo(VendorModel):
    row_count: int = Field(default=0, alias="rowCount")
    uncompressed_size: Optional[int] = Field(default=None, alias="uncompressedSize")


class StatementResult(VendorModel):
    statement_handle: str = ""
    code: Optional[str] = None
    message: Optional[str] = None
    sql_state: Optional[str] = None
    complete: bool = True
    num_rows: int = 0
    columns: List[ColumnType] = Field(default_factory=list)
    partitions: List[PartitionInfo] = Field(default_factory=list)
    data: List[List[Optional[str]]] = Field(default_factory=list)
    rows: List[Dict[str, Any]] = Field(default_factory=list)
    stats: Optional[Dict[str, Any]] = None

    @property
    def column_names(self) -> List[str]:
        return [column.name for column in self.columns]

    def scalar(self) -> Any:
        """First column of the first row."""
        if not self.rows:
            return None
        return next(iter(self.rows[0].values()), None)


class TableColumn(VendorModel):
    name: str
    type: str
    nullable: bool = True
    default: Optional[str] = None
    primary_key: bool = False
    comment: Optional[str] = None


def _micros(value: str) -> timedelta:
    micros = (Decimal(value) * 1_000_000).to_integral_value(rounding=ROUND_HALF_EVEN)
    return timedelta(microseconds=int(micros))


def convert_value(value: Optional[str], column: ColumnType) -> Any:
    """Convert a JSON v2 string cell to the Python type of its column."""
    if value is None:
        return None
    kind = column.type.lower()
    if kind == "fixed":
        return int(value) if not column.scale else Decimal(value)
    if kind == "real":
        return float(value)
    if kind == "boolean":
        return value.lower() in ("true", "1")
    if kind == "date":
        return EPOCH_DATE + timedelta(days=int(value))
    if kind == "time":
        return (EPOCH + _micros(value)).time()
    if kind == "timestamp_ntz":
        return EPOCH + _micros(value)
    if kind == "timestamp_ltz":
        return EPOCH_UTC + _micros(value)
    if kind == "timestamp_tz":
        seconds, _, offset = value.partition(" ")
        # Offsets are minutes shifted by 1440 so they are never negative
        tz = timezone(timedelta(minutes=int(offset) - 1440)) if offset else timezone.utc
        return (EPOCH_UTC + _micros(seconds)).astimezone(tz)
    if kind in ("variant", "object", "array"):
        return json.loads(value)
    if kind == "binary":
        return bytes.fromhex(value)
    return value


def convert_rows(
    columns: Sequence[ColumnType], data: Sequence[Sequence[Optional[str]]]
) -> List[Dict[str, Any]]:
    return [
        {column.name: convert_value(cell, column) for column, cell in zip(columns, row)}
        for row in data
    ]


def bind_value(value: Any) -> Dict[str, Any]:
    """SQL API binding for a Python value."""
    if value is None:
        return {"type": "TEXT", "value": None}
    if isinstance(value, bool):
        return {"type": "BOOLEAN", "value": "true" if value else "false"}
    if isinstance(value, (int, Decimal)):
        return {"type": "FIXED", "value": str(value)}
    if isinstance(value, float):
        return {"type": "REAL", "value": repr(value)}
    if isinstance(value, datetime):
        return {"type": "TEXT", "value": value.isoformat(sep=" ")}
    if isinstance(value, date):
        return {"type": "TEXT", "value": value.isoformat()}
    if isinstance(value, (bytes, bytearray)):
        return {"type": "BINARY", "value": bytes(value).hex()}
    if isinstance(value, (dict, list)):
        return {"type": "TEXT", "value": json.dumps(value)}
    return {"type": "TEXT", "value": str(value)}


def build_bindings(values: Sequence[Any]) -> Dict[str, Dict[str, Any]]:
    return {str(index): bind_value(value) for index, value in enumerate(values, start=1)}


def quote_identifier(name: str) -> str:
    """Quote each part of a dotted identifier unless it is a plain identifier."""
    if not name:
        raise ValidationError("Identifier must not be empty", provider="snowflake")
    parts = []
    for part in name.split("."):
        if IDENTIFIER_PATTERN.fullmatch(part):
            parts.append(part)
        else:
            parts.append('"' + part.replace('"', '""') + '"')
    return ".".join(parts)


class SnowflakeClient(IntegrationClient):
    """Snowflake SQL API v2 client."""

    provider = "snowflake"
    settings_class = SnowflakeSettings

    @classmethod
    def from_settings(
        cls,
        settings: SnowflakeSettings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        **kwargs,
    ) -> "SnowflakeClient":
        settings.validate_configuration()
        if settings.authenticator == "keypair":
            generator = KeyPairJWTGenerator(
                settings.account,
                settings.user,
                settings.load_private_key(),
                passphrase=settings.private_key_passphrase,
                lifetime=settings.jwt_lifetime,
            )
            getter = generator.get_token
        else:
            token = settings.token

            def getter() -> str:
                return token

        http = HttpTransport.from_settings(
            settings,
            cls.provider,
            auth=SnowflakeAuth(getter, TOKEN_TYPES[settings.authenticator]),
            transport=transport,
            **kwargs,
        )
        return cls(settings, http)

    def _parse(self, data: Mapping[str, Any], complete: bool) -> StatementResult:
        metadata = data.get("resultSetMetaData") or {}
        columns = [ColumnType.model_validate(col) for col in metadata.get("rowType", [])]
        rows_data = data.get("data") or []
        return StatementResult(
            statement_handle=data.get("statementHandle", ""),
            code=data.get("code"),
            message=data.get("message"),
            sql_state=data.get("sqlState"),
            complete=complete,
            num_rows=metadata.get("numRows", len(rows_data)),
            columns=columns,
            partitions=[PartitionInfo.model_validate(p) for p in metadata.get("partitionInfo", [])],
            data=rows_data,
            rows=convert_rows(columns, rows_data),
            stats=data.get("stats"),
        )

    async def execute(
        self,
        statement: str,
        bindings: Optional[Sequence[Any]] = None,
        warehouse: Optional[str] = None,
        database: Optional[str] = None,
        schema: Optional[str] = None,
        role: Optional[str] = None,
        query_tag: Optional[str] = None,
        timeout: Optional[int] = None,
        async_exec: bool = False,
        fetch_all: bool = True,
    ) -> StatementResult:
        """
        Execute one SQL statement.

        Positional ``?`` placeholders are bound from ``bindings``. With
        ``async_exec`` the statement is submitted and its handle returned
        immediately; otherwise a 202 answer is polled until the statement
        completes and, with ``fetch_all``, every result partition is loaded.

        Raises:
            ValidationError: Empty statement or SQL compilation/execution error
            RequestTimeoutError: Statement did not finish within wait_timeout
        """
        if not statement or not statement.strip():
            raise ValidationError("Statement must not be empty", provider=self.provider)
        body: Dict[str, Any] = {"statement": statement}
        context = {
            "warehouse": warehouse or self.settings.warehouse,
            "database": database or self.settings.database,
            "schema": schema or self.settings.schema_name,
            "role": role or self.settings.role,
        }
        body.update({key: value for key, value in context.items() if value})
        timeout = timeout if timeout is not None else self.settings.statement_timeout
        if timeout is not None:
            body["timeout"] = timeout
        if bindings:
            body["bindings"] = build_bindings(bindings)
        tag = query_tag or self.settings.query_tag
        if tag:
            body["parameters"] = {"query_tag": tag}

        # requestId plus retry=true lets Snowflake deduplicate resubmissions
        response = await self.http.request(
            "POST",
            STATEMENTS_PATH,
            params={
                "requestId": str(uuid.uuid4()),
                "retry": "true",
                "async": "true" if async_exec else None,
            },
            json=body,
            expected_status=(200, 202),
            operation="execute",
        )
        data = response.json()
        if response.status_code == 202:
            result = self._parse(data, complete=False)
            logger.debug("Statement %s still running", result.statement_handle)
            if async_exec:
                return result
            result = await self.wait_for_statement(result.statement_handle)
        else:
            result = self._parse(data, complete=True)

        if fetch_all and len(result.partitions) > 1:
            await self._fetch_remaining(result)
        return result

    async def get_statement_status(
        self, handle: str, partition: Optional[int] = None
    ) -> StatementResult:
        response = await self.http.request(
            "GET",
            f"{STATEMENTS_PATH}/{handle}",
            params={"partition": partition},
            expected_status=(200, 202),
            operation="get_statement_status",
        )
        return self._parse(response.json(), complete=response.status_code == 200)

    async def wait_for_statement(
        self, handle: str, timeout: Optional[float] = None
    ) -> StatementResult:
        timeout = timeout if timeout is not None else self.settings.wait_timeout
        deadline = time.monotonic() + timeout
        while True:
            result = await self.get_statement_status(handle)
            if result.complete:
                return result
            if time.monotonic() >= deadline:
                raise RequestTimeoutError(
                    f"Statement {handle} did not complete within {timeout}s",
                    provider=self.provider,
                )
            await asyncio.sleep(self.settings.poll_interval)

    async def fetch_partition(
        self, handle: str, partition: int
    ) -> List[List[Optional[str]]]:
        """Raw cells of one result partition (partition 0 arrives with the result)."""
        data = await self.http.request_json(
            "GET",
            f"{STATEMENTS_PATH}/{handle}",
            params={"partition": partition},
            operation="fetch_partition",
        )
        return data.get("data") or []

    async def _fetch_remaining(self, result: StatementResult):
        for partition in range(1, len(result.partitions)):
            cells = await self.fetch_partition(result.statement_handle, partition)
            result.data.extend(cells)
            result.rows.extend(convert_rows(result.columns, cells))
        logger.debug(
            "Fetched %d partitions for %s", len(result.partitions), result.statement_handle
        )

    async def cancel(self, handle: str):
        await self.http.request(
            "POST", f"{STATEMENTS_PATH}/{handle}/cancel", operation="cancel"
        )
        logger.info("Cancelled statement %s", handle)

    # Metadata

    async def list_databases(self) -> List[str]:
        result = await self.execute("SHOW DATABASES")
        return [row.get("name") for row in result.rows]

    async def list_schemas(self, database: Optional[str] = None) -> List[str]:
        database = database or self.settings.database
        if not database:
            raise ValidationError("A database is required", provider=self.provider)
        result = await self.execute(f"SHOW SCHEMAS IN DATABASE {quote_identifier(database)}")
        return [row.get("name") for row in result.rows]

    async def list_tables(
        self, database: Optional[str] = None, schema: Optional[str] = None
    ) -> List[str]:
        database = database or self.settings.database
        schema = schema or self.settings.schema_name
        if not database or not schema:
            raise ValidationError("A database and schema are required", provider=self.provider)
        result = await self.execute(
            f"SHOW TABLES IN SCHEMA {quote_identifier(database)}.{quote_identifier(schema)}"
        )
        return [row.get("name") for row in result.rows]

    async def describe_table(self, table: str) -> List[TableColumn]:
        result = await self.execute(f"DESCRIBE TABLE {quote_identifier(table)}")
        return [
            TableColumn(
                name=row.get("name"),
                type=row.get("type"),
                nullable=row.get("null?", "Y") == "Y",
                default=row.get("default"),
                primary_key=row.get("primary key", "N") == "Y",
                comment=row.get("comment"),
            )
            for row in result.rows
        ]

    async def bulk_insert(
        self,
        table: str,
        columns: Sequence[str],
        rows: Sequence[Sequence[Any]],
        batch_size: Optional[int] = None,
    ) -> int:
        """Insert rows with multi-row ``INSERT ... VALUES`` statements; returns rows inserted."""
        if not columns:
            raise ValidationError("bulk_insert needs at least one column", provider=self.provider)
        for index, row in enumerate(rows):
            if len(row) != len(columns):
                raise ValidationError(
                    f"Row {index} has {len(row)} values, expected {len(columns)}",
                    provider=self.provider,
                )
        if not rows:
            return 0

        column_list = ", ".join(quote_identifier(column) for column in columns)
        placeholders = "(" + ", ".join("?" for _ in columns) + ")"

        async def insert(index: int, batch: Sequence[Sequence[Any]]) -> int:
            statement = (
                f"INSERT INTO {quote_identifier(table)} ({column_list}) VALUES "
                + ", ".join(placeholders for _ in batch)
            )
            values = [value for row in batch for value in row]
            result = await self.execute(statement, bindings=values)
            inserted = result.scalar()
            return int(inserted) if inserted is not None else len(batch)

        executor = BatchExecutor(
            concurrency=1,
            chunk_size=batch_size or self.settings.bulk_insert_batch_size,
            fail_fast=True,
        )
        result = await executor.run(list(rows), insert)
        total = sum(result.succeeded)
        logger.info("Inserted %d rows into %s", total, table)
        return total

    async def _ping(self):
        result = await self.execute("SELECT 1")
        return {"statement_handle": result.statement_handle}


