#!/usr/bin/env python3
"""
Tests for the Azure Active Directory integration.
"""

import json
import time
from unittest.mock import AsyncMock
from urllib.parse import parse_qs, urlparse

import httpx
import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import rsa
from jwt.algorithms import RSAAlgorithm

from integrations.azure.active_directory import (
    AzureADClient,
    AzureADSettings,
    AzureADTokenProvider,
    pkce_pair,
    scope_to_resource,
)
from integrations.errors import AuthenticationError, ConfigurationError

TENANT = "contoso-tenant"
CLIENT_ID = "app-client-id"
SCOPES = ["https://graph.microsoft.com/.default"]


def make_client(transport, **overrides):
    values = {
        "tenant_id": TENANT,
        "client_id": CLIENT_ID,
        "client_secret": "s3cret",
        "max_retry_attempts": 0,
    }
    values.update(overrides)
    return AzureADClient.from_settings(AzureADSettings(**values), transport=transport)


def form(request):
    return {k: v[0] for k, v in parse_qs(request.content.decode()).items()}


@pytest.fixture(scope="module")
def rsa_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="module")
def jwks(rsa_key):
    jwk = json.loads(RSAAlgorithm.to_jwk(rsa_key.public_key()))
    jwk["kid"] = "key-1"
    return {"keys": [jwk]}


class TestHelpers:
    """Test PKCE and scope helpers."""

    def test_pkce_pair(self):
        verifier, challenge = pkce_pair()
        assert 43 <= len(verifier) <= 128
        assert "=" not in challenge
        assert len(challenge) == 43

    def test_scope_to_resource(self):
        assert scope_to_resource("https://vault.azure.net/.default") == "https://vault.azure.net"
        assert scope_to_resource("User.Read") == "User.Read"


class TestClientCredentials:
    """Test the client credentials flow."""

    def test_tenant_and_client_required(self, clean_env):
        with pytest.raises(ConfigurationError) as exc_info:
            AzureADClient.from_settings(AzureADSettings())
        assert "tenant_id" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_token_cached_until_expiry(self, clean_env, handler, transport):
        handler.add(
            "POST",
            f"/{TENANT}/oauth2/v2.0/token",
            {"access_token": "at-1", "expires_in": 3600, "token_type": "Bearer"},
        )
        client = make_client(transport)

        first = await client.acquire_token_client_credentials(SCOPES)
        second = await client.acquire_token_client_credentials(SCOPES)

        assert first.token == second.token == "at-1"
        assert len(handler.requests) == 1
        body = form(handler.last)
        assert body == {
            "grant_type": "client_credentials",
            "scope": SCOPES[0],
            "client_id": CLIENT_ID,
            "client_secret": "s3cret",
        }
        assert handler.last.headers["Content-Type"] == "application/x-www-form-urlencoded"

        await client.acquire_token_client_credentials(SCOPES, force_refresh=True)
        assert len(handler.requests) == 2
        assert client.get_cache_stats()["access_token_count"] == 1
        await client.close()

    @pytest.mark.asyncio
    async def test_expiring_token_refetched(self, clean_env, handler, transport):
        handler.add(
            "POST", f"/{TENANT}/oauth2/v2.0/token", {"access_token": "short", "expires_in": 60}
        )
        client = make_client(transport)

        await client.acquire_token_client_credentials(SCOPES)
        await client.acquire_token_client_credentials(SCOPES)
        assert len(handler.requests) == 2
        await client.close()

    @pytest.mark.asyncio
    async def test_secret_required(self, clean_env, transport):
        client = make_client(transport, client_secret=None)
        with pytest.raises(ConfigurationError):
            await client.acquire_token_client_credentials(SCOPES)
        await client.close()

    @pytest.mark.asyncio
    async def test_invalid_client(self, clean_env, handler, transport):
        handler.add(
            "POST",
            f"/{TENANT}/oauth2/v2.0/token",
            httpx.Response(
                401,
                json={"error": "invalid_client", "error_description": "AADSTS7000215"},
            ),
        )
        client = make_client(transport)
        with pytest.raises(AuthenticationError) as exc_info:
            await client.acquire_token_client_credentials(SCOPES)
        assert "invalid_client" in str(exc_info.value)
        await client.close()


class TestInteractiveFlows:
    """Test authorization code, refresh and device code flows."""

    def test_authorization_url(self, clean_env, transport):
        client = make_client(transport)
        auth_url = client.get_authorization_url(
            "http://localhost/callback", ["User.Read"], prompt="consent"
        )

        parsed = urlparse(auth_url.url)
        params = {k: v[0] for k, v in parse_qs(parsed.query).items()}
        assert parsed.path == f"/{TENANT}/oauth2/v2.0/authorize"
        assert params["code_challenge_method"] == "S256"
        assert params["state"] == auth_url.state
        assert params["prompt"] == "consent"
        assert "code_verifier" not in params

    @pytest.mark.asyncio
    async def test_auth_code_exchange(self, clean_env, handler, transport):
        handler.add(
            "POST",
            f"/{TENANT}/oauth2/v2.0/token",
            {
                "access_token": "at",
                "refresh_token": "rt",
                "id_token": "idt",
                "expires_in": 3600,
            },
        )
        client = make_client(transport)

        result = await client.acquire_token_by_auth_code(
            "the-code", "http://localhost/callback", "verifier", ["User.Read"]
        )
        assert result.access_token.token == "at"
        assert result.refresh_token == "rt"
        assert result.expires_in == 3600
        body = form(handler.last)
        assert body["grant_type"] == "authorization_code"
        assert body["code_verifier"] == "verifier"
        await client.close()

    @pytest.mark.asyncio
    async def test_refresh_token(self, clean_env, handler, transport):
        handler.add(
            "POST",
            f"/{TENANT}/oauth2/v2.0/token",
            {"access_token": "new", "refresh_token": "rt2", "expires_in": 3600},
        )
        client = make_client(transport)

        result = await client.refresh_token("rt1", ["User.Read"])
        assert result.access_token.token == "new"
        assert form(handler.last)["refresh_token"] == "rt1"
        await client.close()

    @pytest.mark.asyncio
    async def test_device_code_polling(self, clean_env, handler, transport):
        """Test pending and slow_down responses keep polling."""
        handler.add(
            "POST",
            f"/{TENANT}/oauth2/v2.0/devicecode",
            {
                "device_code": "dc",
                "user_code": "ABCD",
                "verification_uri": "https://microsoft.com/devicelogin",
                "interval": 1,
            },
        )
        responses = iter(
            [
                httpx.Response(400, json={"error": "authorization_pending"}),
                httpx.Response(400, json={"error": "slow_down"}),
                httpx.Response(200, json={"access_token": "dev", "expires_in": 3600}),
            ]
        )
        handler.add("POST", f"/{TENANT}/oauth2/v2.0/token", lambda request: next(responses))
        client = make_client(transport)
        client._sleep = AsyncMock()

        device = await client.initiate_device_code(["User.Read"])
        token = await client.acquire_token_by_device_code(
            device.device_code, interval=device.interval, scopes=["User.Read"]
        )

        assert device.user_code == "ABCD"
        assert token.token == "dev"
        assert [call.args[0] for call in client._sleep.await_args_list] == [1, 1, 6]
        await client.close()

    @pytest.mark.asyncio
    async def test_device_code_declined(self, clean_env, handler, transport):
        handler.add(
            "POST",
            f"/{TENANT}/oauth2/v2.0/token",
            httpx.Response(400, json={"error": "authorization_declined"}),
        )
        client = make_client(transport)
        client._sleep = AsyncMock()

        with pytest.raises(AuthenticationError):
            await client.acquire_token_by_device_code("dc", interval=1)
        await client.close()


class TestManagedIdentity:
    """Test IMDS tokens."""

    @pytest.mark.asyncio
    async def test_managed_identity(self, clean_env, handler, transport):
        expires_on = int(time.time()) + 3600
        handler.add(
            "GET",
            "/metadata/identity/oauth2/token",
            {"access_token": "mi", "expires_on": str(expires_on)},
        )
        client = make_client(transport, managed_identity_client_id="mi-client")
        provider = client.token_provider("managed_identity")

        token = await provider.get_token(["https://vault.azure.net/.default"])
        assert token.token == "mi"
        assert token.expires_on == expires_on

        request = handler.last
        assert request.headers["Metadata"] == "true"
        assert request.url.params["resource"] == "https://vault.azure.net"
        assert request.url.params["client_id"] == "mi-client"
        await client.close()

    def test_unsupported_flow(self, clean_env, transport):
        with pytest.raises(ValueError):
            AzureADTokenProvider(make_client(transport), "password")


class TestTokenValidation:
    """Test JWT validation against the tenant JWKS."""

    def make_token(self, rsa_key, **claims):
        payload = {
            "aud": CLIENT_ID,
            "iss": f"https://login.microsoftonline.com/{TENANT}/v2.0",
            "exp": int(time.time()) + 600,
            "sub": "user",
        }
        payload.update(claims)
        return jwt.encode(payload, rsa_key, algorithm="RS256", headers={"kid": "key-1"})

    @pytest.mark.asyncio
    async def test_valid_token(self, clean_env, handler, transport, rsa_key, jwks):
        handler.add("GET", f"/{TENANT}/discovery/v2.0/keys", jwks)
        client = make_client(transport)

        claims = await client.validate_token(self.make_token(rsa_key))
        assert claims["sub"] == "user"

        await client.validate_token(self.make_token(rsa_key))
        assert len(handler.requests) == 1
        await client.close()

    @pytest.mark.asyncio
    async def test_wrong_audience(self, clean_env, handler, transport, rsa_key, jwks):
        handler.add("GET", f"/{TENANT}/discovery/v2.0/keys", jwks)
        client = make_client(transport)

        with pytest.raises(AuthenticationError):
            await client.validate_token(self.make_token(rsa_key, aud="someone-else"))
        await client.close()

    @pytest.mark.asyncio
    async def test_foreign_issuer(self, clean_env, handler, transport, rsa_key, jwks):
        handler.add("GET", f"/{TENANT}/discovery/v2.0/keys", jwks)
        client = make_client(transport)

        token = self.make_token(rsa_key, iss="https://login.microsoftonline.com/other/v2.0")
        with pytest.raises(AuthenticationError) as exc_info:
            await client.validate_token(token)
        assert "issuer" in str(exc_info.value)
        await client.close()

    @pytest.mark.asyncio
    async def test_malformed_token(self, clean_env, transport):
        client = make_client(transport)
        with pytest.raises(AuthenticationError):
            await client.validate_token("not-a-jwt")
        await client.close()

    @pytest.mark.asyncio
    async def test_health_check(self, clean_env, handler, transport):
        handler.add(
            "GET",
            f"/{TENANT}/v2.0/.well-known/openid-configuration",
            {"issuer": f"https://login.microsoftonline.com/{TENANT}/v2.0"},
        )
        client = make_client(transport)
        health = await client.health_check()
        assert health["status"] == "healthy"
        await client.close()
