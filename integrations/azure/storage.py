#!/usr/bin/env python3
"""
Azure Storage Common

Settings, Shared Key and SAS authentication, and response helpers shared by
the Blob and Files integrations.
"""

import base64
import hashlib
import hmac
from email.utils import formatdate
from typing import Any, ClassVar, Dict, List, Mapping, Optional
from urllib.parse import parse_qsl, quote

import httpx
from pydantic import Field

from ..auth import TokenProvider, TokenProviderAuth
from ..errors import ConfigurationError
from ..settings import IntegrationSettings

STORAGE_SCOPE = "https://storage.azure.com/.default"

# Headers in Shared Key string-to-sign order
SHARED_KEY_HEADERS = (
    "content-encoding",
    "content-language",
    "content-length",
    "content-md5",
    "content-type",
    "date",
    "if-modified-since",
    "if-match",
    "if-none-match",
    "if-unmodified-since",
    "range",
)


def parse_connection_string(connection_string: str) -> Dict[str, str]:
    """Split ``Key=Value;Key=Value`` into a dictionary."""
    parts = {}
    for segment in connection_string.split(";"):
        if not segment.strip():
            continue
        key, _, value = segment.partition("=")
        parts[key.strip()] = value.strip()
    return parts


class AzureStorageSettings(IntegrationSettings):
    """Account and credential fields common to storage services."""

    account_name: str = Field(default="", description="Storage account name")
    account_key: Optional[str] = Field(default=None, description="Shared Key (base64)")
    sas_token: Optional[str] = Field(default=None, description="Shared access signature")
    connection_string: Optional[str] = Field(default=None, description="Connection string")
    endpoint_suffix: str = Field(default="core.windows.net")
    api_version: str = Field(default="2023-11-03", description="x-ms-version header")
    max_concurrency: int = Field(default=4, description="Parallel block/range uploads")

    service: ClassVar[str] = "blob"

    def model_post_init(self, __context: Any) -> None:
        if self.connection_string:
            parts = parse_connection_string(self.connection_string)
            self.account_name = self.account_name or parts.get("AccountName", "")
            self.account_key = self.account_key or parts.get("AccountKey")
            self.sas_token = self.sas_token or parts.get("SharedAccessSignature")
            self.endpoint_suffix = parts.get("EndpointSuffix", self.endpoint_suffix)
        if not self.base_url and self.account_name:
            self.base_url = f"https://{self.account_name}.{self.service}.{self.endpoint_suffix}"

    def collect_issues(self) -> List[str]:
        issues = super().collect_issues()
        if not self.account_name and not self.base_url:
            issues.append("Storage account_name or base_url is required")
        if self.max_concurrency <= 0:
            issues.append(f"Invalid max concurrency: {self.max_concurrency}")
        return issues


class SharedKeyAuth(httpx.Auth):
    """Azure Storage Shared Key request signing."""

    def __init__(self, account_name: str, account_key: str):
        self.account_name = account_name
        self._key = base64.b64decode(account_key)

    def canonicalized_headers(self, headers: httpx.Headers) -> str:
        ms_headers = sorted(
            (name.lower(), " ".join(value.strip().split()))
            for name, value in headers.items()
            if name.lower().startswith("x-ms-")
        )
        return "".join(f"{name}:{value}\n" for name, value in ms_headers)

    def canonicalized_resource(self, url: httpx.URL) -> str:
        resource = f"/{self.account_name}{url.raw_path.decode('ascii').split('?', 1)[0]}"
        grouped: Dict[str, List[str]] = {}
        for name, value in parse_qsl(url.query.decode("ascii"), keep_blank_values=True):
            grouped.setdefault(name.lower(), []).append(value)
        for name in sorted(grouped):
            resource += f"\n{name}:{','.join(sorted(grouped[name]))}"
        return resource

    def string_to_sign(self, request: httpx.Request) -> str:
        values = []
        for name in SHARED_KEY_HEADERS:
            value = request.headers.get(name, "")
            if name == "content-length" and value == "0":
                value = ""
            values.append(value)
        lines = "\n".join([request.method.upper(), *values]) + "\n"
        return (
            lines
            + self.canonicalized_headers(request.headers)
            + self.canonicalized_resource(request.url)
        )

    def sign(self, request: httpx.Request) -> str:
        digest = hmac.new(
            self._key, self.string_to_sign(request).encode("utf-8"), hashlib.sha256
        ).digest()
        return base64.b64encode(digest).decode("ascii")

    def auth_flow(self, request: httpx.Request):
        request.headers["x-ms-date"] = formatdate(usegmt=True)
        request.headers["Authorization"] = f"SharedKey {self.account_name}:{self.sign(request)}"
        yield request


class SasAuth(httpx.Auth):
    """Appends a shared access signature to every request URL."""

    def __init__(self, sas_token: str):
        self.params = parse_qsl(sas_token.lstrip("?"), keep_blank_values=True)

    def auth_flow(self, request: httpx.Request):
        request.url = request.url.copy_merge_params(self.params)
        yield request


def storage_auth(
    settings: AzureStorageSettings, token_provider: Optional[TokenProvider] = None
) -> httpx.Auth:
    """Pick Azure AD, Shared Key or SAS authentication, in that order."""
    if token_provider is not None:
        return TokenProviderAuth(token_provider, [STORAGE_SCOPE])
    if settings.account_key:
        return SharedKeyAuth(settings.account_name, settings.account_key)
    if settings.sas_token:
        return SasAuth(settings.sas_token)
    raise ConfigurationError(
        "Storage credentials are required: account_key, sas_token or a token provider",
        provider=settings.service,
    )


def storage_headers(settings: AzureStorageSettings) -> Dict[str, str]:
    return {"x-ms-version": settings.api_version}


def encode_path(path: str) -> str:
    """Percent-encode each segment of a blob or file path."""
    return "/".join(quote(segment, safe="") for segment in path.strip("/").split("/"))


def metadata_headers(metadata: Optional[Mapping[str, str]]) -> Dict[str, str]:
    return {f"x-ms-meta-{key}": str(value) for key, value in (metadata or {}).items()}


def metadata_from_headers(headers: httpx.Headers) -> Dict[str, str]:
    return {
        name[len("x-ms-meta-"):]: value
        for name, value in headers.items()
        if name.lower().startswith("x-ms-meta-")
    }


def as_int(value: Optional[str]) -> Optional[int]:
    try:
        return int(value) if value is not None else None
    except ValueError:
        return None


def range_header(offset: Optional[int], length: Optional[int]) -> Optional[str]:
    """``bytes=start-end`` for an offset and optional length."""
    if offset is None and length is None:
        return None
    start = offset or 0
    if length is None:
        return f"bytes={start}-"
    if length <= 0:
        raise ValueError("length must be positive")
    return f"bytes={start}-{start + length - 1}"
