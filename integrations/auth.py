#!/usr/bin/env python3
"""
Authentication and Rate Limiting

Provides the token bucket rate limiter used by the resilience orchestrator
and the httpx authentication flows shared by the integrations: static API
keys, bearer tokens and refreshing token providers.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import AsyncGenerator, Optional, Protocol, Sequence

import httpx

logger = logging.getLogger(__name__)


class RateLimiter:
    """
    Token bucket rate limiter for outbound API requests.

    Implements a token bucket algorithm with configurable rate and burst capacity.
    """

    def __init__(self, requests_per_minute: int = 60, burst_size: int = 10):
        """
        Initialize the rate limiter.

        Args:
            requests_per_minute: Maximum requests allowed per minute
            burst_size: Maximum burst capacity (tokens in bucket)
        """
        self.requests_per_minute = requests_per_minute
        self.burst_size = burst_size
        self.tokens = float(burst_size)
        self.last_refill = time.monotonic()
        self.total_requests = 0
        self.rejected_requests = 0
        self.waited_seconds = 0.0
        self._lock = asyncio.Lock()

    def _refill_tokens(self):
        """Refill tokens based on elapsed time since last refill."""
        now = time.monotonic()
        elapsed = now - self.last_refill
        if elapsed > 0:
            tokens_to_add = (self.requests_per_minute / 60.0) * elapsed
            self.tokens = min(self.burst_size, self.tokens + tokens_to_add)
            self.last_refill = now

    async def acquire(self) -> bool:
        """
        Attempt to acquire a token without waiting.

        Returns:
            True if token acquired (request allowed), False otherwise
        """
        async with self._lock:
            self.total_requests += 1
            self._refill_tokens()
            if self.tokens >= 1:
                self.tokens -= 1
                return True
            self.rejected_requests += 1
            return False

    async def wait(self) -> float:
        """Block until a token is available. Returns the seconds spent waiting."""
        waited = 0.0
        async with self._lock:
            self.total_requests += 1
            self._refill_tokens()
            while self.tokens < 1:
                delay = self.time_until_token
                await asyncio.sleep(delay)
                waited += delay
                self._refill_tokens()
            self.tokens -= 1
        self.waited_seconds += waited
        return waited

    @property
    def time_until_token(self) -> float:
        """Seconds until the next token is available."""
        if self.tokens >= 1:
            return 0.0
        return (1 - self.tokens) * 60.0 / self.requests_per_minute

    @property
    def tokens_available(self) -> float:
        self._refill_tokens()
        return self.tokens

    def get_stats(self) -> dict:
        """Get rate limiter statistics."""
        return {
            "requests_per_minute": self.requests_per_minute,
            "burst_size": self.burst_size,
            "current_tokens": round(self.tokens, 2),
            "total_requests": self.total_requests,
            "rejected_requests": self.rejected_requests,
            "waited_seconds": round(self.waited_seconds, 3),
        }


@dataclass
class AccessToken:
    """An OAuth access token and its absolute expiry (epoch seconds)."""

    token: str
    expires_on: float
    token_type: str = "Bearer"
    refresh_token: Optional[str] = None
    scope: Optional[str] = None

    def is_expiring(self, buffer_seconds: float = 300.0) -> bool:
        return time.time() + buffer_seconds >= self.expires_on

    @property
    def expires_in(self) -> float:
        return max(0.0, self.expires_on - time.time())


class TokenProvider(Protocol):
    """Anything that can hand out access tokens for a set of scopes."""

    async def get_token(
        self, scopes: Sequence[str], force_refresh: bool = False
    ) -> AccessToken:
        ...


class ApiKeyAuth(httpx.Auth):
    """Send a static API key in a header, optionally with a scheme prefix."""

    def __init__(self, key: str, header: str = "api-key", prefix: Optional[str] = None):
        self.key = key
        self.header = header
        self.prefix = prefix

    def auth_flow(self, request: httpx.Request):
        value = f"{self.prefix} {self.key}" if self.prefix else self.key
        request.headers[self.header] = value
        yield request


class BearerTokenAuth(ApiKeyAuth):
    """Static bearer token."""

    def __init__(self, token: str):
        super().__init__(token, header="Authorization", prefix="Bearer")


class TokenProviderAuth(httpx.Auth):
    """
    Bearer authentication backed by a refreshing token provider.

    Tokens are fetched lazily; a 401 forces a single refresh and replay of
    the request.
    """

    def __init__(self, provider: TokenProvider, scopes: Sequence[str]):
        self.provider = provider
        self.scopes = list(scopes)

    def sync_auth_flow(self, request):
        raise RuntimeError("TokenProviderAuth only supports async clients")

    async def async_auth_flow(
        self, request: httpx.Request
    ) -> AsyncGenerator[httpx.Request, httpx.Response]:
        token = await self.provider.get_token(self.scopes)
        request.headers["Authorization"] = f"{token.token_type} {token.token}"
        response = yield request

        if response.status_code == 401:
            logger.info("Received 401, refreshing access token and retrying once")
            token = await self.provider.get_token(self.scopes, force_refresh=True)
            request.headers["Authorization"] = f"{token.token_type} {token.token}"
            yield request
