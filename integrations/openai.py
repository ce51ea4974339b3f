#!/usr/bin/env python3
"""
OpenAI Integration

Client for the OpenAI REST API: chat completions (plain and streamed),
embeddings, models and moderations. The chat and embedding models are shared
with the Azure OpenAI integration.
"""

import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Union

import httpx
from pydantic import Field
from pydantic_settings import SettingsConfigDict

from .auth import BearerTokenAuth
from .base import IntegrationClient
from .errors import ValidationError
from .models import VendorModel
from .settings import IntegrationSettings
from .transport import HttpTransport

logger = logging.getLogger(__name__)

CHAT_ROLES = {"system", "developer", "user", "assistant", "tool", "function"}


class OpenAISettings(IntegrationSettings):
    """OpenAI settings (``OPENAI_`` environment prefix)."""

    model_config = SettingsConfigDict(env_prefix="OPENAI_", env_file=".env", extra="ignore")

    base_url: str = Field(default="https://api.openai.com/v1")
    api_key: str = Field(default="", description="OpenAI API key")
    organization: Optional[str] = Field(default=None, description="OpenAI-Organization")
    project: Optional[str] = Field(default=None, description="OpenAI-Project")
    default_model: str = Field(default="gpt-4o-mini")
    embedding_model: str = Field(default="text-embedding-3-small")

    def collect_issues(self) -> List[str]:
        issues = super().collect_issues()
        if not self.api_key:
            issues.append("OpenAI api_key is required")
        return issues


class ChatMessage(VendorModel):
    role: str
    content: Optional[Union[str, List[Dict[str, Any]]]] = None
    name: Optional[str] = None
    tool_calls: Optional[List[Dict[str, Any]]] = None
    tool_call_id: Optional[str] = None


class ChatCompletionRequest(VendorModel):
    model: Optional[str] = None
    messages: List[ChatMessage]
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    max_tokens: Optional[int] = None
    n: Optional[int] = None
    stop: Optional[Union[str, List[str]]] = None
    presence_penalty: Optional[float] = None
    frequency_penalty: Optional[float] = None
    tools: Optional[List[Dict[str, Any]]] = None
    tool_choice: Optional[Union[str, Dict[str, Any]]] = None
    response_format: Optional[Dict[str, Any]] = None
    seed: Optional[int] = None
    user: Optional[str] = None
    stream: Optional[bool] = None


class Usage(VendorModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class ChatChoice(VendorModel):
    index: int = 0
    message: Optional[ChatMessage] = None
    finish_reason: Optional[str] = None


class RateLimitInfo(VendorModel):
    """Values of the ``x-ratelimit-*`` response headers."""

    limit_requests: Optional[int] = None
    limit_tokens: Optional[int] = None
    remaining_requests: Optional[int] = None
    remaining_tokens: Optional[int] = None
    reset_requests: Optional[str] = None
    reset_tokens: Optional[str] = None

    @classmethod
    def from_headers(cls, headers: httpx.Headers) -> "RateLimitInfo":
        def as_int(name: str) -> Optional[int]:
            value = headers.get(name)
            try:
                return int(value) if value is not None else None
            except ValueError:
                return None

        return cls(
            limit_requests=as_int("x-ratelimit-limit-requests"),
            limit_tokens=as_int("x-ratelimit-limit-tokens"),
            remaining_requests=as_int("x-ratelimit-remaining-requests"),
            remaining_tokens=as_int("x-ratelimit-remaining-tokens"),
            reset_requests=headers.get("x-ratelimit-reset-requests"),
            reset_tokens=headers.get("x-ratelimit-reset-tokens"),
        )


class ChatCompletion(VendorModel):
    id: str = ""
    object: str = "chat.completion"
    created: int = 0
    model: str = ""
    choices: List[ChatChoice] = Field(default_factory=list)
    usage: Optional[Usage] = None
    rate_limit: Optional[RateLimitInfo] = None

    @property
    def content(self) -> Optional[str]:
        """Text of the first choice."""
        if not self.choices or self.choices[0].message is None:
            return None
        content = self.choices[0].message.content
        return content if isinstance(content, str) else None


class ChatCompletionChunk(VendorModel):
    id: str = ""
    model: str = ""
    choices: List[Dict[str, Any]] = Field(default_factory=list)

    @property
    def delta_content(self) -> str:
        parts = []
        for choice in self.choices:
            content = (choice.get("delta") or {}).get("content")
            if content:
                parts.append(content)
        return "".join(parts)


class Embedding(VendorModel):
    index: int = 0
    embedding: List[float] = Field(default_factory=list)


class EmbeddingResponse(VendorModel):
    model: str = ""
    data: List[Embedding] = Field(default_factory=list)
    usage: Optional[Usage] = None

    @property
    def vectors(self) -> List[List[float]]:
        return [item.embedding for item in sorted(self.data, key=lambda e: e.index)]


class Model(VendorModel):
    id: str
    object: str = "model"
    created: Optional[int] = None
    owned_by: Optional[str] = None


class ModerationResult(VendorModel):
    flagged: bool = False
    categories: Dict[str, bool] = Field(default_factory=dict)
    category_scores: Dict[str, float] = Field(default_factory=dict)


class ModerationResponse(VendorModel):
    id: str = ""
    model: str = ""
    results: List[ModerationResult] = Field(default_factory=list)


def validate_chat_request(request: ChatCompletionRequest):
    """Reject requests the API would refuse before spending a round trip."""
    if not request.messages:
        raise ValidationError("messages must not be empty")
    for message in request.messages:
        if message.role not in CHAT_ROLES:
            raise ValidationError(f"Invalid message role: {message.role}")
    if request.temperature is not None and not 0 <= request.temperature <= 2:
        raise ValidationError("temperature must be between 0 and 2")
    if request.top_p is not None and not 0 <= request.top_p <= 1:
        raise ValidationError("top_p must be between 0 and 1")


def _as_chat_request(request: Union[ChatCompletionRequest, Dict[str, Any]]) -> ChatCompletionRequest:
    if isinstance(request, ChatCompletionRequest):
        return request
    return ChatCompletionRequest.model_validate(request)


class OpenAIClient(IntegrationClient):
    """OpenAI REST client."""

    provider = "openai"
    settings_class = OpenAISettings

    @classmethod
    def from_settings(
        cls,
        settings: OpenAISettings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        **kwargs,
    ) -> "OpenAIClient":
        settings.validate_configuration()

        headers = {}
        if settings.organization:
            headers["OpenAI-Organization"] = settings.organization
        if settings.project:
            headers["OpenAI-Project"] = settings.project

        http = HttpTransport.from_settings(
            settings,
            cls.provider,
            auth=BearerTokenAuth(settings.api_key),
            default_headers=headers,
            transport=transport,
            **kwargs,
        )
        return cls(settings, http)

    async def chat_completion(
        self, request: Union[ChatCompletionRequest, Dict[str, Any]]
    ) -> ChatCompletion:
        request = _as_chat_request(request)
        validate_chat_request(request)
        payload = request.to_payload()
        payload.setdefault("model", self.settings.default_model)
        payload.pop("stream", None)

        response = await self.http.request(
            "POST", "/chat/completions", json=payload, operation="chat_completion"
        )
        completion = ChatCompletion.model_validate(response.json())
        completion.rate_limit = RateLimitInfo.from_headers(response.headers)
        return completion

    async def stream_chat_completion(
        self, request: Union[ChatCompletionRequest, Dict[str, Any]]
    ) -> AsyncIterator[ChatCompletionChunk]:
        """Yield completion chunks until the ``[DONE]`` sentinel."""
        request = _as_chat_request(request)
        validate_chat_request(request)
        payload = request.to_payload()
        payload.setdefault("model", self.settings.default_model)
        payload["stream"] = True

        async for event in self.http.stream_events(
            "POST",
            "/chat/completions",
            json=payload,
            headers={"Accept": "text/event-stream"},
            operation="stream_chat_completion",
        ):
            yield ChatCompletionChunk.model_validate(event)

    async def embeddings(
        self,
        inputs: Union[str, List[str]],
        model: Optional[str] = None,
        dimensions: Optional[int] = None,
    ) -> EmbeddingResponse:
        if not inputs:
            raise ValidationError("input must not be empty")
        payload: Dict[str, Any] = {
            "model": model or self.settings.embedding_model,
            "input": inputs,
        }
        if dimensions:
            payload["dimensions"] = dimensions
        data = await self.http.request_json(
            "POST", "/embeddings", json=payload, operation="embeddings"
        )
        return EmbeddingResponse.model_validate(data)

    async def list_models(self) -> List[Model]:
        data = await self.http.request_json(
            "GET", "/models", operation="list_models", cache_ttl=self.settings.cache_ttl_seconds
        )
        return [Model.model_validate(item) for item in data.get("data", [])]

    async def get_model(self, model_id: str) -> Model:
        data = await self.http.request_json(
            "GET", f"/models/{model_id}", operation="get_model"
        )
        return Model.model_validate(data)

    async def moderations(
        self, inputs: Union[str, List[str]], model: Optional[str] = None
    ) -> ModerationResponse:
        payload: Dict[str, Any] = {"input": inputs}
        if model:
            payload["model"] = model
        data = await self.http.request_json(
            "POST", "/moderations", json=payload, operation="moderations"
        )
        return ModerationResponse.model_validate(data)

    async def _ping(self):
        models = await self.list_models()
        return {"models": len(models)}
