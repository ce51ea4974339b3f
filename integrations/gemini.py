#!/usr/bin/env python3
"""
Gemini Integration

Client for the Generative Language API (v1beta): content generation (plain
and streamed), token counting, embeddings, models, uploaded files and
cached contents. Responses blocked by safety filters raise
ContentBlockedError instead of returning an empty candidate.
"""

import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Union

import httpx
from pydantic import Field
from pydantic_settings import SettingsConfigDict

from .auth import ApiKeyAuth
from .base import IntegrationClient
from .batch import BatchExecutor
from .errors import IntegrationError, ValidationError
from .models import VendorModel
from .settings import IntegrationSettings
from .transport import HttpTransport

logger = logging.getLogger(__name__)

CONTENT_ROLES = {"user", "model", "function"}
BLOCKED_PROMPT_REASONS = {"SAFETY", "BLOCKLIST", "PROHIBITED_CONTENT"}
BLOCKED_FINISH_REASONS = {"SAFETY", "RECITATION", "BLOCKLIST", "PROHIBITED_CONTENT", "SPII"}
MAX_EMBED_BATCH = 100


class ContentBlockedError(IntegrationError):
    """The prompt or every generated candidate was blocked."""

    def __init__(
        self,
        message: str,
        reason: str,
        safety_ratings: Optional[List[Dict[str, Any]]] = None,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.reason = reason
        self.safety_ratings = safety_ratings or []


class GeminiSettings(IntegrationSettings):
    """Gemini settings (``GEMINI_`` environment prefix)."""

    model_config = SettingsConfigDict(env_prefix="GEMINI_", env_file=".env", extra="ignore")

    base_url: str = Field(default="https://generativelanguage.googleapis.com/v1beta")
    api_key: str = Field(default="", description="Google AI API key")
    auth_method: str = Field(
        default="header", description="Send the key as x-goog-api-key (header) or ?key= (query)"
    )
    default_model: str = Field(default="gemini-1.5-flash")
    embedding_model: str = Field(default="text-embedding-004")

    def collect_issues(self) -> List[str]:
        issues = super().collect_issues()
        if not self.api_key:
            issues.append("Gemini api_key is required")
        if self.auth_method not in ("header", "query"):
            issues.append(f"Invalid auth method: {self.auth_method}")
        return issues


class QueryKeyAuth(httpx.Auth):
    """Pass the API key as the ``key`` query parameter."""

    def __init__(self, key: str):
        self.key = key

    def auth_flow(self, request: httpx.Request):
        request.url = request.url.copy_merge_params({"key": self.key})
        yield request


class Part(VendorModel):
    text: Optional[str] = None
    inline_data: Optional[Dict[str, Any]] = Field(default=None, alias="inlineData")
    file_data: Optional[Dict[str, Any]] = Field(default=None, alias="fileData")
    function_call: Optional[Dict[str, Any]] = Field(default=None, alias="functionCall")
    function_response: Optional[Dict[str, Any]] = Field(default=None, alias="functionResponse")


class Content(VendorModel):
    role: Optional[str] = None
    parts: List[Part] = Field(default_factory=list)

    @classmethod
    def from_text(cls, text: str, role: Optional[str] = "user") -> "Content":
        return cls(role=role, parts=[Part(text=text)])


class GenerationConfig(VendorModel):
    temperature: Optional[float] = None
    top_p: Optional[float] = Field(default=None, alias="topP")
    top_k: Optional[int] = Field(default=None, alias="topK")
    max_output_tokens: Optional[int] = Field(default=None, alias="maxOutputTokens")
    candidate_count: Optional[int] = Field(default=None, alias="candidateCount")
    stop_sequences: Optional[List[str]] = Field(default=None, alias="stopSequences")
    response_mime_type: Optional[str] = Field(default=None, alias="responseMimeType")


class SafetySetting(VendorModel):
    category: str
    threshold: str


class GenerateContentRequest(VendorModel):
    contents: List[Content]
    system_instruction: Optional[Content] = Field(default=None, alias="systemInstruction")
    generation_config: Optional[GenerationConfig] = Field(default=None, alias="generationConfig")
    safety_settings: Optional[List[SafetySetting]] = Field(default=None, alias="safetySettings")
    tools: Optional[List[Dict[str, Any]]] = None
    cached_content: Optional[str] = Field(default=None, alias="cachedContent")


class Candidate(VendorModel):
    index: int = 0
    content: Optional[Content] = None
    finish_reason: Optional[str] = Field(default=None, alias="finishReason")
    safety_ratings: List[Dict[str, Any]] = Field(default_factory=list, alias="safetyRatings")


class PromptFeedback(VendorModel):
    block_reason: Optional[str] = Field(default=None, alias="blockReason")
    safety_ratings: List[Dict[str, Any]] = Field(default_factory=list, alias="safetyRatings")


class UsageMetadata(VendorModel):
    prompt_token_count: int = Field(default=0, alias="promptTokenCount")
    candidates_token_count: int = Field(default=0, alias="candidatesTokenCount")
    total_token_count: int = Field(default=0, alias="totalTokenCount")
    cached_content_token_count: Optional[int] = Field(
        default=None, alias="cachedContentTokenCount"
    )


class GenerateContentResponse(VendorModel):
    candidates: List[Candidate] = Field(default_factory=list)
    prompt_feedback: Optional[PromptFeedback] = Field(default=None, alias="promptFeedback")
    usage_metadata: Optional[UsageMetadata] = Field(default=None, alias="usageMetadata")
    model_version: Optional[str] = Field(default=None, alias="modelVersion")

    @property
    def text(self) -> str:
        """Concatenated text parts of the first candidate."""
        if not self.candidates or self.candidates[0].content is None:
            return ""
        return "".join(part.text or "" for part in self.candidates[0].content.parts)


class CountTokensResponse(VendorModel):
    total_tokens: int = Field(default=0, alias="totalTokens")
    cached_content_token_count: Optional[int] = Field(
        default=None, alias="cachedContentTokenCount"
    )


class GeminiModel(VendorModel):
    name: str
    display_name: Optional[str] = Field(default=None, alias="displayName")
    description: Optional[str] = None
    input_token_limit: Optional[int] = Field(default=None, alias="inputTokenLimit")
    output_token_limit: Optional[int] = Field(default=None, alias="outputTokenLimit")
    supported_generation_methods: List[str] = Field(
        default_factory=list, alias="supportedGenerationMethods"
    )


class GeminiFile(VendorModel):
    name: str
    display_name: Optional[str] = Field(default=None, alias="displayName")
    mime_type: Optional[str] = Field(default=None, alias="mimeType")
    size_bytes: Optional[str] = Field(default=None, alias="sizeBytes")
    uri: Optional[str] = None
    state: Optional[str] = None
    expiration_time: Optional[str] = Field(default=None, alias="expirationTime")


class CachedContent(VendorModel):
    name: Optional[str] = None
    model: Optional[str] = None
    display_name: Optional[str] = Field(default=None, alias="displayName")
    expire_time: Optional[str] = Field(default=None, alias="expireTime")
    usage_metadata: Optional[Dict[str, Any]] = Field(default=None, alias="usageMetadata")


def model_path(model: str) -> str:
    """Normalise ``gemini-1.5-pro`` or ``models/gemini-1.5-pro`` to a resource name."""
    if not model:
        raise ValidationError("Model name must not be empty", provider="gemini")
    if model.startswith(("models/", "tunedModels/")):
        return model
    if "/" in model:
        raise ValidationError(
            f"Model name must start with 'models/' or contain no slash: {model}",
            provider="gemini",
        )
    return f"models/{model}"


def validate_generation_config(config: GenerationConfig, errors: List[str]):
    if config.temperature is not None and not 0.0 <= config.temperature <= 2.0:
        errors.append("generation_config.temperature must be between 0.0 and 2.0")
    if config.top_p is not None and not 0.0 <= config.top_p <= 1.0:
        errors.append("generation_config.top_p must be between 0.0 and 1.0")
    if config.top_k is not None and config.top_k < 1:
        errors.append("generation_config.top_k must be >= 1")
    if config.max_output_tokens is not None and config.max_output_tokens < 1:
        errors.append("generation_config.max_output_tokens must be >= 1")
    if config.candidate_count is not None and not 1 <= config.candidate_count <= 8:
        errors.append("generation_config.candidate_count must be between 1 and 8")


def validate_generate_request(request: GenerateContentRequest):
    errors: List[str] = []
    if not request.contents:
        errors.append("contents must not be empty")
    for index, content in enumerate(request.contents):
        if not content.parts:
            errors.append(f"contents[{index}].parts must not be empty")
        if content.role is not None and content.role not in CONTENT_ROLES:
            errors.append(f"contents[{index}].role must be one of {sorted(CONTENT_ROLES)}")
    if request.system_instruction is not None and not request.system_instruction.parts:
        errors.append("system_instruction.parts must not be empty")
    if request.generation_config is not None:
        validate_generation_config(request.generation_config, errors)
    if errors:
        raise ValidationError(
            "Invalid generate content request: " + "; ".join(errors),
            validation_errors=errors,
            provider="gemini",
        )


def check_blocked(response: GenerateContentResponse):
    """Raise ContentBlockedError for blocked prompts or safety-stopped candidates."""
    feedback = response.prompt_feedback
    if feedback is not None and feedback.block_reason in BLOCKED_PROMPT_REASONS:
        logger.warning("Gemini prompt blocked: %s", feedback.block_reason)
        raise ContentBlockedError(
            f"Prompt blocked: {feedback.block_reason}",
            reason=feedback.block_reason,
            safety_ratings=feedback.safety_ratings,
            provider="gemini",
        )
    for candidate in response.candidates:
        if candidate.finish_reason in BLOCKED_FINISH_REASONS:
            logger.warning(
                "Gemini candidate %d blocked: %s", candidate.index, candidate.finish_reason
            )
            raise ContentBlockedError(
                f"Content blocked: {candidate.finish_reason}",
                reason=candidate.finish_reason,
                safety_ratings=candidate.safety_ratings,
                provider="gemini",
            )


RequestInput = Union[GenerateContentRequest, Dict[str, Any], str]


def _as_request(request: RequestInput) -> GenerateContentRequest:
    if isinstance(request, GenerateContentRequest):
        return request
    if isinstance(request, str):
        return GenerateContentRequest(contents=[Content.from_text(request)])
    return GenerateContentRequest.model_validate(request)


class GeminiClient(IntegrationClient):
    """Generative Language API client."""

    provider = "gemini"
    settings_class = GeminiSettings

    @classmethod
    def from_settings(
        cls,
        settings: GeminiSettings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        **kwargs,
    ) -> "GeminiClient":
        settings.validate_configuration()
        if settings.auth_method == "query":
            auth: httpx.Auth = QueryKeyAuth(settings.api_key)
        else:
            auth = ApiKeyAuth(settings.api_key, header="x-goog-api-key")
        http = HttpTransport.from_settings(
            settings, cls.provider, auth=auth, transport=transport, **kwargs
        )
        return cls(settings, http)

    def _prepare(self, request: RequestInput) -> Dict[str, Any]:
        request = _as_request(request)
        validate_generate_request(request)
        return request.to_payload()

    async def generate_content(
        self, request: RequestInput, model: Optional[str] = None
    ) -> GenerateContentResponse:
        payload = self._prepare(request)
        data = await self.http.request_json(
            "POST",
            f"/{model_path(model or self.settings.default_model)}:generateContent",
            json=payload,
            operation="generate_content",
        )
        response = GenerateContentResponse.model_validate(data)
        check_blocked(response)
        if response.usage_metadata is not None:
            logger.debug(
                "Gemini usage: %d prompt + %d candidate tokens",
                response.usage_metadata.prompt_token_count,
                response.usage_metadata.candidates_token_count,
            )
        return response

    async def stream_generate_content(
        self, request: RequestInput, model: Optional[str] = None
    ) -> AsyncIterator[GenerateContentResponse]:
        """Yield partial responses from the ``alt=sse`` stream."""
        payload = self._prepare(request)
        async for event in self.http.stream_events(
            "POST",
            f"/{model_path(model or self.settings.default_model)}:streamGenerateContent",
            done_sentinel=None,
            params={"alt": "sse"},
            json=payload,
            headers={"Accept": "text/event-stream"},
            operation="stream_generate_content",
        ):
            chunk = GenerateContentResponse.model_validate(event)
            check_blocked(chunk)
            yield chunk

    async def count_tokens(
        self, request: RequestInput, model: Optional[str] = None
    ) -> CountTokensResponse:
        payload = self._prepare(request)
        name = model_path(model or self.settings.default_model)
        body = (
            {"contents": payload["contents"]}
            if set(payload) == {"contents"}
            else {"generateContentRequest": {"model": name, **payload}}
        )
        data = await self.http.request_json(
            "POST", f"/{name}:countTokens", json=body, operation="count_tokens"
        )
        return CountTokensResponse.model_validate(data)

    @staticmethod
    def _embed_request(
        text: Union[str, Content],
        task_type: Optional[str],
        title: Optional[str],
        output_dimensionality: Optional[int],
    ) -> Dict[str, Any]:
        content = Content.from_text(text, role=None) if isinstance(text, str) else text
        body: Dict[str, Any] = {"content": content.to_payload()}
        if task_type:
            body["taskType"] = task_type
        if title:
            body["title"] = title
        if output_dimensionality:
            body["outputDimensionality"] = output_dimensionality
        return body

    async def embed_content(
        self,
        text: Union[str, Content],
        model: Optional[str] = None,
        task_type: Optional[str] = None,
        title: Optional[str] = None,
        output_dimensionality: Optional[int] = None,
    ) -> List[float]:
        name = model_path(model or self.settings.embedding_model)
        data = await self.http.request_json(
            "POST",
            f"/{name}:embedContent",
            json=self._embed_request(text, task_type, title, output_dimensionality),
            operation="embed_content",
        )
        return (data.get("embedding") or {}).get("values", [])

    async def batch_embed_contents(
        self,
        texts: Sequence[Union[str, Content]],
        model: Optional[str] = None,
        task_type: Optional[str] = None,
        output_dimensionality: Optional[int] = None,
    ) -> List[List[float]]:
        """Embed many texts, 100 per request, preserving input order."""
        if not texts:
            return []
        name = model_path(model or self.settings.embedding_model)

        async def embed(index: int, batch: Sequence[Union[str, Content]]):
            requests = [
                {"model": name, **self._embed_request(t, task_type, None, output_dimensionality)}
                for t in batch
            ]
            data = await self.http.request_json(
                "POST",
                f"/{name}:batchEmbedContents",
                json={"requests": requests},
                operation="batch_embed_contents",
            )
            return [item.get("values", []) for item in data.get("embeddings", [])]

        executor = BatchExecutor(concurrency=2, chunk_size=MAX_EMBED_BATCH, fail_fast=True)
        result = await executor.run(list(texts), embed)
        return [vector for batch in result.succeeded for vector in batch]

    async def list_models(self, page_size: Optional[int] = None) -> AsyncIterator[GeminiModel]:
        async for item in self.http.paginate(
            "/models",
            "models",
            "nextPageToken",
            "pageToken",
            params={"pageSize": page_size},
            operation="list_models",
        ):
            yield GeminiModel.model_validate(item)

    async def get_model(self, model: str) -> GeminiModel:
        data = await self.http.request_json(
            "GET",
            f"/{model_path(model)}",
            operation="get_model",
            cache_ttl=self.settings.cache_ttl_seconds,
        )
        return GeminiModel.model_validate(data)

    # Files

    @staticmethod
    def _file_name(name: str) -> str:
        return name if name.startswith("files/") else f"files/{name}"

    async def list_files(self, page_size: Optional[int] = None) -> AsyncIterator[GeminiFile]:
        async for item in self.http.paginate(
            "/files",
            "files",
            "nextPageToken",
            "pageToken",
            params={"pageSize": page_size},
            operation="list_files",
        ):
            yield GeminiFile.model_validate(item)

    async def get_file(self, name: str) -> GeminiFile:
        data = await self.http.request_json(
            "GET", f"/{self._file_name(name)}", operation="get_file"
        )
        return GeminiFile.model_validate(data)

    async def delete_file(self, name: str):
        await self.http.request("DELETE", f"/{self._file_name(name)}", operation="delete_file")

    # Cached contents

    @staticmethod
    def _cache_name(name: str) -> str:
        return name if name.startswith("cachedContents/") else f"cachedContents/{name}"

    async def create_cached_content(
        self,
        contents: Sequence[Union[Content, Dict[str, Any]]],
        model: Optional[str] = None,
        system_instruction: Optional[Union[Content, str]] = None,
        ttl_seconds: Optional[int] = None,
        display_name: Optional[str] = None,
    ) -> CachedContent:
        if not contents:
            raise ValidationError("contents must not be empty", provider=self.provider)
        body: Dict[str, Any] = {
            "model": model_path(model or self.settings.default_model),
            "contents": [
                c.to_payload() if isinstance(c, Content) else dict(c) for c in contents
            ],
        }
        if system_instruction is not None:
            if isinstance(system_instruction, str):
                system_instruction = Content.from_text(system_instruction, role=None)
            body["systemInstruction"] = system_instruction.to_payload()
        if ttl_seconds:
            body["ttl"] = f"{ttl_seconds}s"
        if display_name:
            body["displayName"] = display_name
        data = await self.http.request_json(
            "POST", "/cachedContents", json=body, operation="create_cached_content", retry=False
        )
        return CachedContent.model_validate(data)

    async def get_cached_content(self, name: str) -> CachedContent:
        data = await self.http.request_json(
            "GET", f"/{self._cache_name(name)}", operation="get_cached_content"
        )
        return CachedContent.model_validate(data)

    async def list_cached_contents(
        self, page_size: Optional[int] = None
    ) -> AsyncIterator[CachedContent]:
        async for item in self.http.paginate(
            "/cachedContents",
            "cachedContents",
            "nextPageToken",
            "pageToken",
            params={"pageSize": page_size},
            operation="list_cached_contents",
        ):
            yield CachedContent.model_validate(item)

    async def delete_cached_content(self, name: str):
        await self.http.request(
            "DELETE", f"/{self._cache_name(name)}", operation="delete_cached_content"
        )

    async def _ping(self):
        data = await self.http.request_json(
            "GET", "/models", params={"pageSize": 1}, operation="list_models"
        )
        return {"models": len(data.get("models", []))}
