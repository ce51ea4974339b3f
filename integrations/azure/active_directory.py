#!/usr/bin/env python3
"""
Azure Active Directory Integration

OAuth2 token acquisition against the Microsoft identity platform v2.0
endpoints (client credentials, authorization code with PKCE, device code,
refresh token), managed identity tokens from IMDS, and access token
validation against the tenant JWKS.
"""

import asyncio
import base64
import hashlib
import json
import logging
import secrets
import time
from typing import Any, Dict, List, Optional, Sequence, Tuple
from urllib.parse import urlencode

import httpx
import jwt
from jwt.algorithms import RSAAlgorithm
from pydantic import Field
from pydantic_settings import SettingsConfigDict

from ..auth import AccessToken
from ..base import IntegrationClient
from ..errors import AuthenticationError, ConfigurationError, IntegrationError
from ..models import VendorModel
from ..settings import IntegrationSettings
from ..transport import HttpTransport

logger = logging.getLogger(__name__)

IMDS_API_VERSION = "2018-02-01"
FORM_HEADERS = {"Content-Type": "application/x-www-form-urlencoded"}


class AzureADSettings(IntegrationSettings):
    """Azure AD settings (``AZURE_AD_`` environment prefix)."""

    model_config = SettingsConfigDict(env_prefix="AZURE_AD_", env_file=".env", extra="ignore")

    base_url: str = Field(default="https://login.microsoftonline.com")
    tenant_id: str = Field(default="", description="Directory (tenant) id")
    client_id: str = Field(default="", description="Application (client) id")
    client_secret: Optional[str] = Field(default=None, description="Client secret")
    imds_endpoint: str = Field(
        default="http://169.254.169.254/metadata/identity/oauth2/token",
        description="Instance metadata token endpoint",
    )
    managed_identity_client_id: Optional[str] = Field(
        default=None, description="User assigned managed identity client id"
    )
    token_refresh_buffer: int = Field(
        default=300, description="Seconds before expiry a cached token is refreshed"
    )
    jwks_cache_ttl: int = Field(default=3600, description="Seconds JWKS keys are cached")

    def collect_issues(self) -> List[str]:
        issues = super().collect_issues()
        if not self.tenant_id:
            issues.append("Azure AD tenant_id is required")
        if not self.client_id:
            issues.append("Azure AD client_id is required")
        return issues


class TokenResponse(VendorModel):
    access_token: AccessToken
    refresh_token: Optional[str] = None
    id_token: Optional[str] = None
    expires_in: int = 0


class DeviceCodeResponse(VendorModel):
    device_code: str
    user_code: str
    verification_uri: str
    expires_in: int = 900
    interval: int = 5
    message: Optional[str] = None


class AuthorizationUrl(VendorModel):
    url: str
    state: str
    code_verifier: str


def pkce_pair() -> Tuple[str, str]:
    """Return a (code_verifier, S256 code_challenge) pair."""
    verifier = secrets.token_urlsafe(64)
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    challenge = base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
    return verifier, challenge


def scope_to_resource(scope: str) -> str:
    """``https://vault.azure.net/.default`` -> ``https://vault.azure.net``."""
    return scope[: -len("/.default")] if scope.endswith("/.default") else scope


class TokenCache:
    """Access and refresh tokens keyed by flow and scopes."""

    def __init__(self, refresh_buffer: float = 300.0):
        self.refresh_buffer = refresh_buffer
        self._tokens: Dict[str, AccessToken] = {}
        self._refresh_tokens: Dict[str, str] = {}

    @staticmethod
    def build_key(tenant_id: str, client_id: str, flow: str, scopes: Sequence[str]) -> str:
        return f"{tenant_id}:{client_id}:{flow}:{' '.join(sorted(scopes))}"

    def get(self, key: str) -> Optional[AccessToken]:
        token = self._tokens.get(key)
        if token is None or token.is_expiring(self.refresh_buffer):
            return None
        return token

    def set(self, key: str, token: AccessToken):
        self._tokens[key] = token
        if token.refresh_token:
            self._refresh_tokens[key] = token.refresh_token

    def get_refresh_token(self, key: str) -> Optional[str]:
        return self._refresh_tokens.get(key)

    def clear(self):
        self._tokens.clear()
        self._refresh_tokens.clear()

    def get_stats(self) -> Dict[str, int]:
        return {
            "access_token_count": len(self._tokens),
            "refresh_token_count": len(self._refresh_tokens),
        }


class AzureADClient(IntegrationClient):
    """Microsoft identity platform client."""

    provider = "azure_ad"
    settings_class = AzureADSettings

    def __init__(self, settings: AzureADSettings, http: HttpTransport):
        super().__init__(settings, http)
        self.cache = TokenCache(settings.token_refresh_buffer)
        self._lock = asyncio.Lock()
        self._jwks: Optional[Dict[str, Any]] = None
        self._jwks_fetched_at = 0.0
        self._sleep = asyncio.sleep

    @classmethod
    def from_settings(
        cls,
        settings: AzureADSettings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        **kwargs,
    ) -> "AzureADClient":
        settings.validate_configuration()
        http = HttpTransport.from_settings(settings, cls.provider, transport=transport, **kwargs)
        return cls(settings, http)

    @property
    def tenant_url(self) -> str:
        return f"/{self.settings.tenant_id}"

    @property
    def token_endpoint(self) -> str:
        return f"{self.tenant_url}/oauth2/v2.0/token"

    def _key(self, flow: str, scopes: Sequence[str]) -> str:
        return TokenCache.build_key(self.settings.tenant_id, self.settings.client_id, flow, scopes)

    def _with_credentials(self, form: Dict[str, str]) -> Dict[str, str]:
        form["client_id"] = self.settings.client_id
        if self.settings.client_secret:
            form["client_secret"] = self.settings.client_secret
        return form

    @staticmethod
    def _to_access_token(data: Dict[str, Any], scopes: Sequence[str]) -> AccessToken:
        if "expires_on" in data:
            expires_on = float(data["expires_on"])
        else:
            expires_on = time.time() + float(data.get("expires_in", 3600))
        return AccessToken(
            token=data["access_token"],
            expires_on=expires_on,
            token_type=data.get("token_type", "Bearer"),
            refresh_token=data.get("refresh_token"),
            scope=data.get("scope") or " ".join(scopes),
        )

    async def _token_request(self, form: Dict[str, str], operation: str) -> Dict[str, Any]:
        async with self.http.tracer.trace_auth_operation(self.provider, operation):
            return await self.http.request_json(
                "POST",
                self.token_endpoint,
                content=urlencode(form).encode("ascii"),
                headers=FORM_HEADERS,
                operation=operation,
            )

    async def acquire_token_client_credentials(
        self, scopes: Sequence[str], force_refresh: bool = False
    ) -> AccessToken:
        """Acquire an app-only token, served from cache until near expiry."""
        if not self.settings.client_secret:
            raise ConfigurationError(
                "client_secret is required for the client credentials flow",
                provider=self.provider,
            )
        key = self._key("client_credentials", scopes)
        async with self._lock:
            if not force_refresh:
                cached = self.cache.get(key)
                if cached is not None:
                    return cached

            data = await self._token_request(
                self._with_credentials(
                    {"grant_type": "client_credentials", "scope": " ".join(scopes)}
                ),
                "client_credentials",
            )
            token = self._to_access_token(data, scopes)
            self.cache.set(key, token)
            logger.info("Acquired client credentials token, expires in %ds", token.expires_in)
            return token

    def get_authorization_url(
        self,
        redirect_uri: str,
        scopes: Sequence[str],
        state: Optional[str] = None,
        prompt: Optional[str] = None,
        login_hint: Optional[str] = None,
    ) -> AuthorizationUrl:
        """Build the interactive sign-in URL with a fresh PKCE verifier."""
        verifier, challenge = pkce_pair()
        state = state or secrets.token_urlsafe(16)
        params = {
            "client_id": self.settings.client_id,
            "response_type": "code",
            "redirect_uri": redirect_uri,
            "response_mode": "query",
            "scope": " ".join(scopes),
            "state": state,
            "code_challenge": challenge,
            "code_challenge_method": "S256",
        }
        if prompt:
            params["prompt"] = prompt
        if login_hint:
            params["login_hint"] = login_hint
        base = self.settings.base_url.rstrip("/")
        url = f"{base}{self.tenant_url}/oauth2/v2.0/authorize?{urlencode(params)}"
        return AuthorizationUrl(url=url, state=state, code_verifier=verifier)

    async def acquire_token_by_auth_code(
        self,
        code: str,
        redirect_uri: str,
        code_verifier: str,
        scopes: Sequence[str],
    ) -> TokenResponse:
        data = await self._token_request(
            self._with_credentials(
                {
                    "grant_type": "authorization_code",
                    "code": code,
                    "redirect_uri": redirect_uri,
                    "code_verifier": code_verifier,
                    "scope": " ".join(scopes),
                }
            ),
            "authorization_code",
        )
        token = self._to_access_token(data, scopes)
        self.cache.set(self._key("authorization_code", scopes), token)
        return TokenResponse(
            access_token=token,
            refresh_token=data.get("refresh_token"),
            id_token=data.get("id_token"),
            expires_in=int(data.get("expires_in", 0)),
        )

    async def refresh_token(self, refresh_token: str, scopes: Sequence[str]) -> TokenResponse:
        data = await self._token_request(
            self._with_credentials(
                {
                    "grant_type": "refresh_token",
                    "refresh_token": refresh_token,
                    "scope": " ".join(scopes),
                }
            ),
            "refresh_token",
        )
        token = self._to_access_token(data, scopes)
        self.cache.set(self._key("refresh", scopes), token)
        logger.info("Access token refreshed")
        return TokenResponse(
            access_token=token,
            refresh_token=data.get("refresh_token"),
            id_token=data.get("id_token"),
            expires_in=int(data.get("expires_in", 0)),
        )

    async def initiate_device_code(self, scopes: Sequence[str]) -> DeviceCodeResponse:
        data = await self.http.request_json(
            "POST",
            f"{self.tenant_url}/oauth2/v2.0/devicecode",
            content=urlencode(
                {"client_id": self.settings.client_id, "scope": " ".join(scopes)}
            ).encode("ascii"),
            headers=FORM_HEADERS,
            operation="device_code_initiate",
        )
        response = DeviceCodeResponse.model_validate(data)
        logger.info("Device code flow initiated, verification at %s", response.verification_uri)
        return response

    async def acquire_token_by_device_code(
        self,
        device_code: str,
        interval: int = 5,
        expires_in: int = 900,
        scopes: Sequence[str] = (),
    ) -> AccessToken:
        """
        Poll the token endpoint until the user completes sign-in.

        ``authorization_pending`` keeps polling, ``slow_down`` adds five
        seconds to the interval, and ``expired_token`` or a declined
        authorization raise AuthenticationError.
        """
        deadline = time.monotonic() + expires_in
        form = {
            "grant_type": "urn:ietf:params:oauth:grant-type:device_code",
            "client_id": self.settings.client_id,
            "device_code": device_code,
        }
        while time.monotonic() < deadline:
            await self._sleep(interval)
            try:
                data = await self.http.request_json(
                    "POST",
                    self.token_endpoint,
                    content=urlencode(form).encode("ascii"),
                    headers=FORM_HEADERS,
                    operation="device_code_poll",
                    retry=False,
                )
            except IntegrationError as e:
                error_code = (
                    e.response_data.get("error") if isinstance(e.response_data, dict) else None
                )
                if error_code == "authorization_pending":
                    continue
                if error_code == "slow_down":
                    interval += 5
                    continue
                if error_code in ("expired_token", "authorization_declined", "bad_verification_code"):
                    raise AuthenticationError(
                        f"Device code flow failed: {error_code}",
                        status_code=e.status_code,
                        response_data=e.response_data,
                        provider=self.provider,
                    ) from e
                raise

            token = self._to_access_token(data, scopes)
            self.cache.set(self._key("device_code", scopes), token)
            return token

        raise AuthenticationError("Device code expired before sign-in completed", provider=self.provider)

    async def acquire_token_managed_identity(
        self, resource: str, force_refresh: bool = False
    ) -> AccessToken:
        """Acquire a token from the instance metadata service."""
        key = self._key("managed_identity", [resource])
        async with self._lock:
            if not force_refresh:
                cached = self.cache.get(key)
                if cached is not None:
                    return cached

            params = {"api-version": IMDS_API_VERSION, "resource": resource}
            if self.settings.managed_identity_client_id:
                params["client_id"] = self.settings.managed_identity_client_id
            async with self.http.tracer.trace_auth_operation(self.provider, "managed_identity"):
                data = await self.http.request_json(
                    "GET",
                    self.settings.imds_endpoint,
                    params=params,
                    headers={"Metadata": "true"},
                    operation="managed_identity",
                )
            token = self._to_access_token(data, [resource])
            self.cache.set(key, token)
            return token

    async def _fetch_jwks(self) -> Dict[str, Any]:
        self._jwks = await self.http.request_json(
            "GET", f"{self.tenant_url}/discovery/v2.0/keys", operation="jwks"
        )
        self._jwks_fetched_at = time.monotonic()
        return self._jwks

    async def _signing_key(self, kid: Optional[str]) -> Dict[str, Any]:
        fresh = (
            self._jwks is not None
            and time.monotonic() - self._jwks_fetched_at < self.settings.jwks_cache_ttl
        )
        if fresh and kid:
            for key in self._jwks.get("keys", []):
                if key.get("kid") == kid:
                    return key

        # Unknown kid usually means the keys rotated
        jwks = await self._fetch_jwks()
        keys = jwks.get("keys", [])
        if kid:
            for key in keys:
                if key.get("kid") == kid:
                    return key
            raise AuthenticationError(f"Signing key {kid} not found", provider=self.provider)
        if not keys:
            raise AuthenticationError("No signing keys found in JWKS", provider=self.provider)
        return keys[0]

    async def validate_token(self, token: str, audience: Optional[str] = None) -> Dict[str, Any]:
        """
        Verify an RS256 access token and return its claims.

        Checks signature, expiry, audience (client id by default) and that the
        issuer belongs to the configured tenant.
        """
        try:
            header = jwt.get_unverified_header(token)
        except jwt.PyJWTError as e:
            raise AuthenticationError(f"Malformed token: {e}", provider=self.provider) from e

        jwk = await self._signing_key(header.get("kid"))
        public_key = RSAAlgorithm.from_jwk(json.dumps(jwk))
        try:
            claims = jwt.decode(
                token,
                public_key,
                algorithms=["RS256"],
                audience=audience or self.settings.client_id,
                options={"verify_iss": False},
            )
        except jwt.PyJWTError as e:
            raise AuthenticationError(f"Invalid token: {e}", provider=self.provider) from e

        tenant = self.settings.tenant_id
        allowed_issuers = {
            f"{self.settings.base_url.rstrip('/')}/{tenant}/v2.0",
            f"https://sts.windows.net/{tenant}/",
        }
        if claims.get("iss") not in allowed_issuers:
            raise AuthenticationError(
                f"Invalid token issuer: {claims.get('iss')}", provider=self.provider
            )
        return claims

    def token_provider(self, flow: str = "client_credentials") -> "AzureADTokenProvider":
        return AzureADTokenProvider(self, flow)

    def clear_cache(self):
        self.cache.clear()

    def get_cache_stats(self) -> Dict[str, int]:
        return self.cache.get_stats()

    async def _ping(self):
        data = await self.http.request_json(
            "GET",
            f"{self.tenant_url}/v2.0/.well-known/openid-configuration",
            operation="openid_configuration",
        )
        return {"issuer": data.get("issuer")}


class AzureADTokenProvider:
    """Token provider backed by an AzureADClient, for other Azure integrations."""

    def __init__(self, client: AzureADClient, flow: str = "client_credentials"):
        if flow not in ("client_credentials", "managed_identity"):
            raise ValueError(f"Unsupported token provider flow: {flow}")
        self.client = client
        self.flow = flow

    async def get_token(self, scopes: Sequence[str], force_refresh: bool = False) -> AccessToken:
        if self.flow == "managed_identity":
            return await self.client.acquire_token_managed_identity(
                scope_to_resource(scopes[0]), force_refresh=force_refresh
            )
        return await self.client.acquire_token_client_credentials(
            scopes, force_refresh=force_refresh
        )
