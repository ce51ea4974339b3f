#!/usr/bin/env python3
"""
Azure OpenAI Integration

Chat completions and embeddings against Azure OpenAI deployments. Requests
and responses use the OpenAI models; Azure adds the deployment path segment,
the ``api-version`` query parameter and ``api-key`` or Azure AD auth.
"""

import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Union

import httpx
from pydantic import Field
from pydantic_settings import SettingsConfigDict

from ..auth import ApiKeyAuth, TokenProvider, TokenProviderAuth
from ..base import IntegrationClient
from ..errors import ConfigurationError, ValidationError
from ..openai import (
    ChatCompletion,
    ChatCompletionChunk,
    ChatCompletionRequest,
    EmbeddingResponse,
    RateLimitInfo,
    _as_chat_request,
    validate_chat_request,
)
from ..settings import IntegrationSettings
from ..transport import HttpTransport

logger = logging.getLogger(__name__)

COGNITIVE_SERVICES_SCOPE = "https://cognitiveservices.azure.com/.default"


class AzureOpenAISettings(IntegrationSettings):
    """Azure OpenAI settings (``AZURE_OPENAI_`` environment prefix)."""

    model_config = SettingsConfigDict(
        env_prefix="AZURE_OPENAI_", env_file=".env", extra="ignore"
    )

    base_url: str = Field(default="", description="Resource endpoint, https://<name>.openai.azure.com")
    api_key: Optional[str] = Field(default=None)
    api_version: str = Field(default="2024-06-01")
    chat_deployment: Optional[str] = Field(default=None)
    embedding_deployment: Optional[str] = Field(default=None)

    def collect_issues(self) -> List[str]:
        issues = super().collect_issues()
        if not self.base_url:
            issues.append("Azure OpenAI base_url (resource endpoint) is required")
        return issues


class AzureOpenAIClient(IntegrationClient):
    """Azure OpenAI deployment client."""

    provider = "azure_openai"
    settings_class = AzureOpenAISettings

    @classmethod
    def from_settings(
        cls,
        settings: AzureOpenAISettings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        token_provider: Optional[TokenProvider] = None,
        **kwargs,
    ) -> "AzureOpenAIClient":
        settings.validate_configuration()
        if token_provider is not None:
            auth: httpx.Auth = TokenProviderAuth(token_provider, [COGNITIVE_SERVICES_SCOPE])
        elif settings.api_key:
            auth = ApiKeyAuth(settings.api_key, header="api-key")
        else:
            raise ConfigurationError(
                "Azure OpenAI needs an api_key or a token provider", provider=cls.provider
            )
        http = HttpTransport.from_settings(
            settings, cls.provider, auth=auth, transport=transport, **kwargs
        )
        return cls(settings, http)

    def _deployment_path(self, deployment: Optional[str], default: Optional[str], action: str) -> str:
        deployment = deployment or default
        if not deployment:
            raise ValidationError("A deployment name is required", provider=self.provider)
        return f"/openai/deployments/{deployment}/{action}"

    def _params(self) -> Dict[str, str]:
        return {"api-version": self.settings.api_version}

    def _payload(self, request: ChatCompletionRequest) -> Dict[str, Any]:
        validate_chat_request(request)
        payload = request.to_payload()
        # The deployment selects the model
        payload.pop("model", None)
        return payload

    async def chat_completion(
        self,
        request: Union[ChatCompletionRequest, Dict[str, Any]],
        deployment: Optional[str] = None,
    ) -> ChatCompletion:
        path = self._deployment_path(deployment, self.settings.chat_deployment, "chat/completions")
        payload = self._payload(_as_chat_request(request))
        payload.pop("stream", None)

        response = await self.http.request(
            "POST", path, params=self._params(), json=payload, operation="chat_completion"
        )
        completion = ChatCompletion.model_validate(response.json())
        completion.rate_limit = RateLimitInfo.from_headers(response.headers)
        for choice in completion.choices:
            if choice.finish_reason == "content_filter":
                logger.warning("Azure OpenAI content filter truncated choice %d", choice.index)
        return completion

    async def stream_chat_completion(
        self,
        request: Union[ChatCompletionRequest, Dict[str, Any]],
        deployment: Optional[str] = None,
    ) -> AsyncIterator[ChatCompletionChunk]:
        path = self._deployment_path(deployment, self.settings.chat_deployment, "chat/completions")
        payload = self._payload(_as_chat_request(request))
        payload["stream"] = True

        async for event in self.http.stream_events(
            "POST",
            path,
            params=self._params(),
            json=payload,
            headers={"Accept": "text/event-stream"},
            operation="stream_chat_completion",
        ):
            # Azure sends a leading chunk with only prompt filter results
            if not event.get("choices") and "prompt_filter_results" in event:
                continue
            yield ChatCompletionChunk.model_validate(event)

    async def embeddings(
        self,
        inputs: Union[str, List[str]],
        deployment: Optional[str] = None,
        dimensions: Optional[int] = None,
    ) -> EmbeddingResponse:
        if not inputs:
            raise ValidationError("input must not be empty", provider=self.provider)
        path = self._deployment_path(deployment, self.settings.embedding_deployment, "embeddings")
        payload: Dict[str, Any] = {"input": inputs}
        if dimensions:
            payload["dimensions"] = dimensions
        data = await self.http.request_json(
            "POST", path, params=self._params(), json=payload, operation="embeddings"
        )
        return EmbeddingResponse.model_validate(data)

    async def _ping(self):
        await self.http.request_json(
            "GET", "/openai/models", params=self._params(), operation="list_models"
        )
