#!/usr/bin/env python3
"""
Vendor API Integrations

Typed async clients for cloud, AI, vector database, messaging and CI
services. Every client shares the same plumbing: pydantic-settings
configuration, an httpx transport with retries and a circuit breaker,
optional response caching, record/replay simulation, OpenTelemetry spans
and metrics, and a common exception hierarchy.
"""

from .artifact_registry import ArtifactRegistryClient, ArtifactRegistrySettings
from .auth import AccessToken, ApiKeyAuth, BearerTokenAuth, RateLimiter, TokenProviderAuth
from .base import IntegrationClient
from .batch import BatchExecutor, BatchResult, chunked
from .cache import TTLCache
from .cloudflare_r2 import R2Client, R2Settings
from .discord import DiscordClient, DiscordSettings
from .errors import (
    AuthenticationError,
    CircuitBreakerOpenError,
    ConfigurationError,
    ConflictError,
    ErrorHandler,
    IntegrationError,
    NotFoundError,
    PermissionDeniedError,
    RateLimitError,
    RequestTimeoutError,
    ServerError,
    ServiceConnectionError,
    SimulationError,
    ValidationError,
)
from .ffmpeg import FFmpegSettings, FFprobeClient
from .gemini import GeminiClient, GeminiSettings
from .health import HealthChecker
from .jenkins import JenkinsClient, JenkinsSettings
from .milvus import MilvusClient, MilvusSettings
from .openai import OpenAIClient, OpenAISettings
from .pinecone import PineconeClient, PineconeSettings
from .qdrant import QdrantClient, QdrantSettings
from .settings import IntegrationSettings, SimulationMode
from .signing import SigV4Auth, SigV4Signer
from .snowflake import SnowflakeClient, SnowflakeSettings
from .transport import HttpTransport

__version__ = "1.0.0"
__all__ = [
    # Core components
    "IntegrationClient",
    "IntegrationSettings",
    "SimulationMode",
    "HttpTransport",
    "HealthChecker",
    "TTLCache",
    "BatchExecutor",
    "BatchResult",
    "chunked",
    # Authentication
    "AccessToken",
    "ApiKeyAuth",
    "BearerTokenAuth",
    "TokenProviderAuth",
    "RateLimiter",
    "SigV4Auth",
    "SigV4Signer",
    # Error handling
    "IntegrationError",
    "AuthenticationError",
    "PermissionDeniedError",
    "NotFoundError",
    "ConflictError",
    "ValidationError",
    "RateLimitError",
    "RequestTimeoutError",
    "ServiceConnectionError",
    "ServerError",
    "CircuitBreakerOpenError",
    "ConfigurationError",
    "SimulationError",
    "ErrorHandler",
    # Clients
    "ArtifactRegistryClient",
    "ArtifactRegistrySettings",
    "DiscordClient",
    "DiscordSettings",
    "FFprobeClient",
    "FFmpegSettings",
    "GeminiClient",
    "GeminiSettings",
    "JenkinsClient",
    "JenkinsSettings",
    "MilvusClient",
    "MilvusSettings",
    "OpenAIClient",
    "OpenAISettings",
    "PineconeClient",
    "PineconeSettings",
    "QdrantClient",
    "QdrantSettings",
    "R2Client",
    "R2Settings",
    "SnowflakeClient",
    "SnowflakeSettings",
]
