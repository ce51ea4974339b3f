#!/usr/bin/env python3
"""
Tests for the Azure OpenAI integration.
"""

import httpx
import pytest

from integrations.auth import AccessToken
from integrations.azure.openai import (
    COGNITIVE_SERVICES_SCOPE,
    AzureOpenAIClient,
    AzureOpenAISettings,
)
from integrations.errors import ConfigurationError, ValidationError

ENDPOINT = "https://contoso.openai.azure.com"

COMPLETION = {
    "id": "chatcmpl-1",
    "object": "chat.completion",
    "created": 1700000000,
    "model": "gpt-4o",
    "choices": [
        {"index": 0, "message": {"role": "assistant", "content": "Hi"}, "finish_reason": "stop"}
    ],
}


def make_client(transport, **overrides):
    values = {
        "base_url": ENDPOINT,
        "api_key": "azure-key",
        "chat_deployment": "chat",
        "embedding_deployment": "embed",
        "max_retry_attempts": 0,
    }
    values.update(overrides)
    return AzureOpenAIClient.from_settings(AzureOpenAISettings(**values), transport=transport)


class StaticProvider:
    def __init__(self):
        self.scopes = []

    async def get_token(self, scopes, force_refresh=False):
        self.scopes.append(list(scopes))
        return AccessToken(token="aad-token", expires_on=4102444800)


class TestConfiguration:
    """Test settings and auth selection."""

    def test_endpoint_required(self, clean_env):
        with pytest.raises(ConfigurationError):
            AzureOpenAIClient.from_settings(AzureOpenAISettings(api_key="k"))

    def test_credentials_required(self, clean_env):
        with pytest.raises(ConfigurationError):
            AzureOpenAIClient.from_settings(AzureOpenAISettings(base_url=ENDPOINT))

    def test_environment(self, clean_env, monkeypatch):
        monkeypatch.setenv("AZURE_OPENAI_BASE_URL", ENDPOINT)
        monkeypatch.setenv("AZURE_OPENAI_API_VERSION", "2024-10-21")
        settings = AzureOpenAISettings()
        assert settings.base_url == ENDPOINT
        assert settings.api_version == "2024-10-21"


class TestChat:
    """Test deployment chat completions."""

    @pytest.mark.asyncio
    async def test_chat_completion(self, clean_env, handler, transport):
        handler.add("POST", "/openai/deployments/chat/chat/completions", COMPLETION)
        client = make_client(transport)

        completion = await client.chat_completion(
            {"messages": [{"role": "user", "content": "Hello"}], "max_tokens": 10}
        )

        assert completion.content == "Hi"
        request = handler.last
        assert request.headers["api-key"] == "azure-key"
        assert "Authorization" not in request.headers
        assert request.url.params["api-version"] == "2024-06-01"
        body = handler.json_body()
        assert "model" not in body
        assert "stream" not in body
        assert body["max_tokens"] == 10
        await client.close()

    @pytest.mark.asyncio
    async def test_explicit_deployment(self, clean_env, handler, transport):
        handler.add("POST", "/openai/deployments/other/chat/completions", COMPLETION)
        client = make_client(transport, chat_deployment=None)

        await client.chat_completion(
            {"messages": [{"role": "user", "content": "Hello"}]}, deployment="other"
        )
        assert handler.last.url.path == "/openai/deployments/other/chat/completions"
        await client.close()

    @pytest.mark.asyncio
    async def test_deployment_required(self, clean_env, handler, transport):
        client = make_client(transport, chat_deployment=None)
        with pytest.raises(ValidationError):
            await client.chat_completion({"messages": [{"role": "user", "content": "Hello"}]})
        assert handler.requests == []
        await client.close()

    @pytest.mark.asyncio
    async def test_stream_skips_prompt_filter_chunk(self, clean_env, handler, transport):
        body = (
            'data: {"id": "", "choices": [], "prompt_filter_results": [{"prompt_index": 0}]}\n\n'
            'data: {"id": "c", "choices": [{"index": 0, "delta": {"content": "Hi"}}]}\n\n'
            "data: [DONE]\n\n"
        )
        handler.add(
            "POST", "/openai/deployments/chat/chat/completions", httpx.Response(200, text=body)
        )
        client = make_client(transport)

        chunks = [
            chunk
            async for chunk in client.stream_chat_completion(
                {"messages": [{"role": "user", "content": "Hello"}]}
            )
        ]
        assert len(chunks) == 1
        assert chunks[0].delta_content == "Hi"
        assert handler.json_body()["stream"] is True
        await client.close()

    @pytest.mark.asyncio
    async def test_token_provider_auth(self, clean_env, handler, transport):
        handler.add("POST", "/openai/deployments/chat/chat/completions", COMPLETION)
        provider = StaticProvider()
        client = AzureOpenAIClient.from_settings(
            AzureOpenAISettings(base_url=ENDPOINT, chat_deployment="chat", max_retry_attempts=0),
            transport=transport,
            token_provider=provider,
        )

        await client.chat_completion({"messages": [{"role": "user", "content": "Hello"}]})
        assert handler.last.headers["Authorization"] == "Bearer aad-token"
        assert provider.scopes == [[COGNITIVE_SERVICES_SCOPE]]
        await client.close()


class TestEmbeddings:
    """Test deployment embeddings."""

    @pytest.mark.asyncio
    async def test_embeddings(self, clean_env, handler, transport):
        handler.add(
            "POST",
            "/openai/deployments/embed/embeddings",
            {"data": [{"index": 0, "embedding": [0.5, 0.25]}], "model": "text-embedding-3-small"},
        )
        client = make_client(transport)

        response = await client.embeddings("hello", dimensions=2)
        assert response.vectors == [[0.5, 0.25]]
        assert handler.json_body() == {"input": "hello", "dimensions": 2}
        await client.close()

    @pytest.mark.asyncio
    async def test_empty_input(self, clean_env, transport):
        client = make_client(transport)
        with pytest.raises(ValidationError):
            await client.embeddings([])
        await client.close()

    @pytest.mark.asyncio
    async def test_health_check(self, clean_env, handler, transport):
        handler.add("GET", "/openai/models", {"data": []})
        client = make_client(transport)
        assert (await client.health_check())["status"] == "healthy"
        await client.close()
