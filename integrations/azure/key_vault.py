#!/usr/bin/env python3
"""
Azure Key Vault Integration

Secrets, keys and certificates over the Key Vault REST API (api-version 7.4).
Secret reads are cached in memory for a short TTL and invalidated whenever
the secret is written or deleted.
"""

import base64
import logging
import re
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Sequence

import httpx
from pydantic import Field
from pydantic_settings import SettingsConfigDict

from ..auth import BearerTokenAuth, TokenProvider, TokenProviderAuth
from ..base import IntegrationClient
from ..cache import TTLCache
from ..errors import ConfigurationError, ValidationError
from ..models import VendorModel
from ..settings import IntegrationSettings
from ..transport import HttpTransport, paginate

logger = logging.getLogger(__name__)

KEY_VAULT_SCOPE = "https://vault.azure.net/.default"

NAME_PATTERN = re.compile(r"[0-9a-zA-Z-]{1,127}")

KEY_TYPES = {"EC", "EC-HSM", "RSA", "RSA-HSM", "oct", "oct-HSM"}
SIGNATURE_ALGORITHMS = {
    "PS256", "PS384", "PS512",
    "RS256", "RS384", "RS512",
    "ES256", "ES384", "ES512", "ES256K",
}
ENCRYPTION_ALGORITHMS = {
    "RSA-OAEP", "RSA-OAEP-256", "RSA1_5",
    "A128GCM", "A192GCM", "A256GCM",
    "A128KW", "A192KW", "A256KW",
    "A128CBC", "A192CBC", "A256CBC",
    "A128CBCPAD", "A192CBCPAD", "A256CBCPAD",
}


class KeyVaultSettings(IntegrationSettings):
    """Key Vault settings (``AZURE_KEY_VAULT_`` environment prefix)."""

    model_config = SettingsConfigDict(
        env_prefix="AZURE_KEY_VAULT_", env_file=".env", extra="ignore"
    )

    base_url: str = Field(default="", description="Vault URL, https://<name>.vault.azure.net")
    api_version: str = Field(default="7.4")
    access_token: Optional[str] = Field(default=None, description="Static bearer token")
    secret_cache_ttl: float = Field(default=300.0, description="Secret cache TTL in seconds")
    secret_cache_size: int = Field(default=500)

    def collect_issues(self) -> List[str]:
        issues = super().collect_issues()
        if not self.base_url:
            issues.append("Key Vault base_url (vault URL) is required")
        if self.secret_cache_ttl < 0:
            issues.append(f"Invalid secret cache TTL: {self.secret_cache_ttl}")
        return issues


def validate_name(name: str, kind: str = "secret"):
    """Vault object names are 1-127 alphanumerics and dashes."""
    if not name or not NAME_PATTERN.fullmatch(name):
        raise ValidationError(
            f"Invalid {kind} name {name!r}: use 1-127 letters, digits or dashes",
            provider="azure_key_vault",
        )


def b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(value: str) -> bytes:
    return base64.urlsafe_b64decode(value + "=" * (-len(value) % 4))


def _split_id(object_id: Optional[str]) -> List[str]:
    # https://<vault>/<collection>/<name>[/<version>]
    if not object_id:
        return []
    return httpx.URL(object_id).path.strip("/").split("/")[1:]


class VaultAttributes(VendorModel):
    enabled: Optional[bool] = None
    nbf: Optional[int] = None
    exp: Optional[int] = None
    created: Optional[int] = None
    updated: Optional[int] = None
    recovery_level: Optional[str] = Field(default=None, alias="recoveryLevel")


class VaultObject(VendorModel):
    """Common ``id`` handling for secrets, keys and certificates."""

    id: Optional[str] = None
    attributes: Optional[VaultAttributes] = None
    tags: Dict[str, str] = Field(default_factory=dict)

    @property
    def name(self) -> Optional[str]:
        parts = _split_id(self.id)
        return parts[0] if parts else None

    @property
    def version(self) -> Optional[str]:
        parts = _split_id(self.id)
        return parts[1] if len(parts) > 1 else None


class Secret(VaultObject):
    value: Optional[str] = None
    content_type: Optional[str] = Field(default=None, alias="contentType")
    kid: Optional[str] = None
    managed: Optional[bool] = None


class SecretProperties(VaultObject):
    content_type: Optional[str] = Field(default=None, alias="contentType")
    managed: Optional[bool] = None


class DeletedSecret(Secret):
    recovery_id: Optional[str] = Field(default=None, alias="recoveryId")
    deleted_date: Optional[int] = Field(default=None, alias="deletedDate")
    scheduled_purge_date: Optional[int] = Field(default=None, alias="scheduledPurgeDate")


class JsonWebKey(VendorModel):
    kid: Optional[str] = None
    kty: Optional[str] = None
    key_ops: List[str] = Field(default_factory=list)
    n: Optional[str] = None
    e: Optional[str] = None
    crv: Optional[str] = None
    x: Optional[str] = None
    y: Optional[str] = None


class Key(VendorModel):
    key: JsonWebKey
    attributes: Optional[VaultAttributes] = None
    tags: Dict[str, str] = Field(default_factory=dict)
    managed: Optional[bool] = None

    @property
    def name(self) -> Optional[str]:
        parts = _split_id(self.key.kid)
        return parts[0] if parts else None

    @property
    def version(self) -> Optional[str]:
        parts = _split_id(self.key.kid)
        return parts[1] if len(parts) > 1 else None


class KeyProperties(VendorModel):
    kid: Optional[str] = None
    attributes: Optional[VaultAttributes] = None
    tags: Dict[str, str] = Field(default_factory=dict)
    managed: Optional[bool] = None

    @property
    def name(self) -> Optional[str]:
        parts = _split_id(self.kid)
        return parts[0] if parts else None


class KeyOperationResult(VendorModel):
    """Result of sign, encrypt, decrypt, wrap and unwrap; ``result`` is raw bytes."""

    kid: Optional[str] = None
    value: str = ""

    @property
    def result(self) -> bytes:
        return b64url_decode(self.value)


class Certificate(VaultObject):
    kid: Optional[str] = None
    sid: Optional[str] = None
    x509_thumbprint: Optional[str] = Field(default=None, alias="x5t")
    cer: Optional[str] = None
    content_type: Optional[str] = Field(default=None, alias="contentType")
    policy: Optional[Dict[str, Any]] = None

    @property
    def der(self) -> Optional[bytes]:
        return base64.b64decode(self.cer) if self.cer else None


class CertificateProperties(VaultObject):
    x509_thumbprint: Optional[str] = Field(default=None, alias="x5t")


class CertificatePolicy(VendorModel):
    id: Optional[str] = None
    key_props: Optional[Dict[str, Any]] = None
    secret_props: Optional[Dict[str, Any]] = None
    x509_props: Optional[Dict[str, Any]] = None
    lifetime_actions: List[Dict[str, Any]] = Field(default_factory=list)
    issuer: Optional[Dict[str, Any]] = None
    attributes: Optional[VaultAttributes] = None


class KeyVaultClient(IntegrationClient):
    """Azure Key Vault data plane client."""

    provider = "azure_key_vault"
    settings_class = KeyVaultSettings

    def __init__(self, settings: KeyVaultSettings, http: HttpTransport):
        super().__init__(settings, http)
        self.secret_cache = TTLCache(
            max_size=settings.secret_cache_size, default_ttl=settings.secret_cache_ttl
        )

    @classmethod
    def from_settings(
        cls,
        settings: KeyVaultSettings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        token_provider: Optional[TokenProvider] = None,
        **kwargs,
    ) -> "KeyVaultClient":
        settings.validate_configuration()
        if token_provider is not None:
            auth: httpx.Auth = TokenProviderAuth(token_provider, [KEY_VAULT_SCOPE])
        elif settings.access_token:
            auth = BearerTokenAuth(settings.access_token)
        else:
            raise ConfigurationError(
                "Key Vault needs a token provider or an access_token", provider=cls.provider
            )
        http = HttpTransport.from_settings(
            settings, cls.provider, auth=auth, transport=transport, **kwargs
        )
        return cls(settings, http)

    def _params(self, **extra) -> Dict[str, Any]:
        return {"api-version": self.settings.api_version, **extra}

    def _iterate(
        self, path: str, operation: str, max_results: Optional[int] = None
    ) -> AsyncIterator[Dict[str, Any]]:
        """Follow ``nextLink`` pages; next links already carry the api-version."""

        async def fetch(next_link: Optional[str]) -> Dict[str, Any]:
            if next_link:
                return await self.http.request_json("GET", next_link, operation=operation)
            return await self.http.request_json(
                "GET", path, params=self._params(maxresults=max_results), operation=operation
            )

        return paginate(fetch, "value", "nextLink")

    # Secrets

    async def get_secret(
        self, name: str, version: Optional[str] = None, use_cache: bool = True
    ) -> Secret:
        validate_name(name)
        cache_version = version or "latest"
        if use_cache:
            cached = await self.secret_cache.get(f"secret:{name}:{cache_version}", direct_key=True)
            if cached is not None:
                return cached

        path = f"/secrets/{name}/{version}" if version else f"/secrets/{name}"
        data = await self.http.request_json(
            "GET", path, params=self._params(), operation="get_secret"
        )
        secret = Secret.model_validate(data)
        if secret.attributes is not None and secret.attributes.enabled is False:
            logger.warning("Secret %s is disabled", name)
        if use_cache:
            await self.secret_cache.set(f"secret:{name}:{cache_version}", secret, direct_key=True)
        return secret

    async def set_secret(
        self,
        name: str,
        value: str,
        content_type: Optional[str] = None,
        tags: Optional[Mapping[str, str]] = None,
        enabled: Optional[bool] = None,
        expires_on: Optional[int] = None,
        not_before: Optional[int] = None,
    ) -> Secret:
        validate_name(name)
        payload: Dict[str, Any] = {"value": value}
        if content_type:
            payload["contentType"] = content_type
        if tags:
            payload["tags"] = dict(tags)
        attributes = {
            k: v
            for k, v in (("enabled", enabled), ("exp", expires_on), ("nbf", not_before))
            if v is not None
        }
        if attributes:
            payload["attributes"] = attributes

        data = await self.http.request_json(
            "PUT", f"/secrets/{name}", params=self._params(), json=payload, operation="set_secret"
        )
        await self._invalidate_secret(name)
        logger.info("Stored secret %s", name)
        return Secret.model_validate(data)

    async def delete_secret(self, name: str) -> DeletedSecret:
        validate_name(name)
        data = await self.http.request_json(
            "DELETE", f"/secrets/{name}", params=self._params(), operation="delete_secret"
        )
        await self._invalidate_secret(name)
        logger.info("Deleted secret %s", name)
        return DeletedSecret.model_validate(data)

    async def _invalidate_secret(self, name: str):
        await self.secret_cache.invalidate_prefix(f"secret:{name}:")

    async def list_secrets(self, max_results: Optional[int] = None) -> AsyncIterator[SecretProperties]:
        async for item in self._iterate("/secrets", "list_secrets", max_results):
            yield SecretProperties.model_validate(item)

    async def list_secret_versions(
        self, name: str, max_results: Optional[int] = None
    ) -> AsyncIterator[SecretProperties]:
        validate_name(name)
        async for item in self._iterate(
            f"/secrets/{name}/versions", "list_secret_versions", max_results
        ):
            yield SecretProperties.model_validate(item)

    async def get_deleted_secret(self, name: str) -> DeletedSecret:
        validate_name(name)
        data = await self.http.request_json(
            "GET", f"/deletedsecrets/{name}", params=self._params(), operation="get_deleted_secret"
        )
        return DeletedSecret.model_validate(data)

    async def recover_deleted_secret(self, name: str) -> Secret:
        validate_name(name)
        data = await self.http.request_json(
            "POST",
            f"/deletedsecrets/{name}/recover",
            params=self._params(),
            operation="recover_deleted_secret",
        )
        await self._invalidate_secret(name)
        return Secret.model_validate(data)

    async def purge_deleted_secret(self, name: str):
        validate_name(name)
        await self.http.request(
            "DELETE",
            f"/deletedsecrets/{name}",
            params=self._params(),
            operation="purge_deleted_secret",
        )

    # Keys

    async def create_key(
        self,
        name: str,
        key_type: str = "RSA",
        key_size: Optional[int] = None,
        curve: Optional[str] = None,
        key_ops: Optional[Sequence[str]] = None,
        tags: Optional[Mapping[str, str]] = None,
        enabled: Optional[bool] = None,
    ) -> Key:
        validate_name(name, "key")
        if key_type not in KEY_TYPES:
            raise ValidationError(f"Unsupported key type: {key_type}", provider=self.provider)
        payload: Dict[str, Any] = {"kty": key_type}
        if key_size:
            payload["key_size"] = key_size
        if curve:
            payload["crv"] = curve
        if key_ops:
            payload["key_ops"] = list(key_ops)
        if tags:
            payload["tags"] = dict(tags)
        if enabled is not None:
            payload["attributes"] = {"enabled": enabled}

        data = await self.http.request_json(
            "POST",
            f"/keys/{name}/create",
            params=self._params(),
            json=payload,
            operation="create_key",
            retry=False,
        )
        logger.info("Created %s key %s", key_type, name)
        return Key.model_validate(data)

    async def get_key(self, name: str, version: Optional[str] = None) -> Key:
        validate_name(name, "key")
        path = f"/keys/{name}/{version}" if version else f"/keys/{name}"
        data = await self.http.request_json(
            "GET", path, params=self._params(), operation="get_key"
        )
        return Key.model_validate(data)

    async def list_keys(self, max_results: Optional[int] = None) -> AsyncIterator[KeyProperties]:
        async for item in self._iterate("/keys", "list_keys", max_results):
            yield KeyProperties.model_validate(item)

    async def list_key_versions(self, name: str) -> AsyncIterator[KeyProperties]:
        validate_name(name, "key")
        async for item in self._iterate(f"/keys/{name}/versions", "list_key_versions"):
            yield KeyProperties.model_validate(item)

    async def delete_key(self, name: str) -> Dict[str, Any]:
        validate_name(name, "key")
        return await self.http.request_json(
            "DELETE", f"/keys/{name}", params=self._params(), operation="delete_key"
        )

    async def _key_operation(
        self,
        name: str,
        version: Optional[str],
        action: str,
        payload: Dict[str, Any],
    ) -> Dict[str, Any]:
        validate_name(name, "key")
        path = f"/keys/{name}/{version}/{action}" if version else f"/keys/{name}/{action}"
        return await self.http.request_json(
            "POST", path, params=self._params(), json=payload, operation=f"key_{action}"
        )

    def _check_algorithm(self, algorithm: str, allowed: set):
        if algorithm not in allowed:
            raise ValidationError(f"Unsupported algorithm: {algorithm}", provider=self.provider)

    async def sign(
        self, name: str, algorithm: str, digest: bytes, version: Optional[str] = None
    ) -> KeyOperationResult:
        """Sign a precomputed digest."""
        self._check_algorithm(algorithm, SIGNATURE_ALGORITHMS)
        data = await self._key_operation(
            name, version, "sign", {"alg": algorithm, "value": b64url_encode(digest)}
        )
        return KeyOperationResult.model_validate(data)

    async def verify(
        self,
        name: str,
        algorithm: str,
        digest: bytes,
        signature: bytes,
        version: Optional[str] = None,
    ) -> bool:
        self._check_algorithm(algorithm, SIGNATURE_ALGORITHMS)
        data = await self._key_operation(
            name,
            version,
            "verify",
            {"alg": algorithm, "digest": b64url_encode(digest), "value": b64url_encode(signature)},
        )
        return bool(data.get("value"))

    async def encrypt(
        self, name: str, algorithm: str, plaintext: bytes, version: Optional[str] = None
    ) -> KeyOperationResult:
        self._check_algorithm(algorithm, ENCRYPTION_ALGORITHMS)
        data = await self._key_operation(
            name, version, "encrypt", {"alg": algorithm, "value": b64url_encode(plaintext)}
        )
        return KeyOperationResult.model_validate(data)

    async def decrypt(
        self, name: str, algorithm: str, ciphertext: bytes, version: Optional[str] = None
    ) -> KeyOperationResult:
        self._check_algorithm(algorithm, ENCRYPTION_ALGORITHMS)
        data = await self._key_operation(
            name, version, "decrypt", {"alg": algorithm, "value": b64url_encode(ciphertext)}
        )
        return KeyOperationResult.model_validate(data)

    async def wrap_key(
        self, name: str, algorithm: str, key: bytes, version: Optional[str] = None
    ) -> KeyOperationResult:
        self._check_algorithm(algorithm, ENCRYPTION_ALGORITHMS)
        data = await self._key_operation(
            name, version, "wrapkey", {"alg": algorithm, "value": b64url_encode(key)}
        )
        return KeyOperationResult.model_validate(data)

    async def unwrap_key(
        self, name: str, algorithm: str, wrapped_key: bytes, version: Optional[str] = None
    ) -> KeyOperationResult:
        self._check_algorithm(algorithm, ENCRYPTION_ALGORITHMS)
        data = await self._key_operation(
            name, version, "unwrapkey", {"alg": algorithm, "value": b64url_encode(wrapped_key)}
        )
        return KeyOperationResult.model_validate(data)

    # Certificates

    async def get_certificate(self, name: str, version: Optional[str] = None) -> Certificate:
        validate_name(name, "certificate")
        path = f"/certificates/{name}/{version}" if version else f"/certificates/{name}"
        data = await self.http.request_json(
            "GET", path, params=self._params(), operation="get_certificate"
        )
        return Certificate.model_validate(data)

    async def list_certificates(
        self, max_results: Optional[int] = None
    ) -> AsyncIterator[CertificateProperties]:
        async for item in self._iterate("/certificates", "list_certificates", max_results):
            yield CertificateProperties.model_validate(item)

    async def get_certificate_policy(self, name: str) -> CertificatePolicy:
        validate_name(name, "certificate")
        data = await self.http.request_json(
            "GET",
            f"/certificates/{name}/policy",
            params=self._params(),
            operation="get_certificate_policy",
            cache_ttl=self.settings.cache_ttl_seconds,
        )
        return CertificatePolicy.model_validate(data)

    def get_cache_stats(self) -> Dict[str, Any]:
        return self.secret_cache.get_stats()

    async def _ping(self):
        await self.http.request_json(
            "GET", "/secrets", params=self._params(maxresults=1), operation="list_secrets"
        )
