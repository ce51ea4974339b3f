#!/usr/bin/env python3
"""
HTTP Transport

Provides the HttpTransport every integration client is built on. It owns the
httpx client and routes each call through the resilience orchestrator,
response cache, metrics, tracing and the simulation layer.
"""

import json as jsonlib
import logging
import time
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    Iterable,
    Mapping,
    Optional,
)

import httpx

from observability.metrics.client_metrics import ClientMetrics, get_metrics
from observability.tracing.client_tracer import ClientTracer, get_client_tracer

from .cache import TTLCache
from .cache_backends import CacheBackend, create_cache_backend
from .errors import ErrorHandler
from .resilience import ResilienceOrchestrator
from .settings import IntegrationSettings
from .simulation import MatchMode, SimulationLayer

logger = logging.getLogger(__name__)


def _dig(data: Any, dotted_key: str) -> Any:
    for part in dotted_key.split("."):
        if not isinstance(data, dict):
            return None
        data = data.get(part)
    return data


async def paginate(
    fetch: Callable[[Optional[str]], Awaitable[Dict[str, Any]]],
    items_key: str,
    token_key: str,
    max_pages: Optional[int] = None,
) -> AsyncIterator[Any]:
    """
    Iterate items across token or cursor paginated pages.

    Args:
        fetch: Coroutine returning one page for a continuation token (None first)
        items_key: Dotted key of the item list in each page
        token_key: Dotted key of the next page token in each page
        max_pages: Optional cap on the number of pages fetched
    """
    token = None
    pages = 0
    while True:
        page = await fetch(token)
        for item in _dig(page, items_key) or []:
            yield item
        pages += 1
        token = _dig(page, token_key)
        if not token or (max_pages is not None and pages >= max_pages):
            return


class HttpTransport:
    """
    Shared HTTP plumbing for integration clients.

    Non-2xx responses are raised as IntegrationError subclasses and httpx
    transport failures as timeout or connection errors, so callers only ever
    see the integration exception hierarchy.
    """

    def __init__(
        self,
        settings: IntegrationSettings,
        provider: str,
        auth: Optional[httpx.Auth] = None,
        orchestrator: Optional[ResilienceOrchestrator] = None,
        cache: Optional[CacheBackend] = None,
        metrics: Optional[ClientMetrics] = None,
        tracer: Optional[ClientTracer] = None,
        simulation: Optional[SimulationLayer] = None,
        default_headers: Optional[Mapping[str, str]] = None,
        base_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings
        self.provider = provider
        self.metrics = metrics or get_metrics()
        self.tracer = tracer or get_client_tracer()
        self.orchestrator = orchestrator or ResilienceOrchestrator.from_settings(
            settings, provider, self.metrics
        )
        self.cache = cache
        self.simulation = simulation or SimulationLayer(
            mode=settings.simulation_mode,
            path=settings.simulation_path,
            match_mode=MatchMode(settings.simulation_match),
        )
        self.error_handler = ErrorHandler(provider)

        limits = httpx.Limits(
            max_connections=settings.connection_pool_size,
            max_keepalive_connections=settings.connection_pool_size,
        )
        inner = transport or httpx.AsyncHTTPTransport(limits=limits)

        headers = {"User-Agent": settings.user_agent, "Accept": "application/json"}
        headers.update(default_headers or {})

        self.base_url = base_url if base_url is not None else settings.base_url
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            auth=auth,
            headers=headers,
            timeout=httpx.Timeout(settings.timeout),
            transport=self.simulation.wrap_transport(inner),
        )

    @classmethod
    def from_settings(
        cls, settings: IntegrationSettings, provider: str, **kwargs
    ) -> "HttpTransport":
        """Build a transport with the cache backend configured in ``settings``."""
        kwargs.setdefault("cache", create_cache_backend(settings, provider))
        return cls(settings, provider, **kwargs)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self):
        """Persist recordings and release connections."""
        self.simulation.save()
        await self.client.aclose()
        if self.cache is not None:
            await self.cache.close()

    @staticmethod
    def _is_success(status_code: int, expected_status: Optional[Iterable[int]]) -> bool:
        if expected_status is not None:
            return status_code in expected_status
        return 200 <= status_code < 300

    async def _send(
        self,
        method: str,
        url: str,
        operation: str,
        expected_status: Optional[Iterable[int]],
        kwargs: Dict[str, Any],
    ) -> httpx.Response:
        start_time = time.monotonic()
        async with self.tracer.trace_request(self.provider, operation, method, url) as span:
            try:
                response = await self.client.request(
                    method, url, extensions={"operation": operation}, **kwargs
                )
            except httpx.TransportError as e:
                duration = time.monotonic() - start_time
                self.metrics.record_request(self.provider, operation, method, None, duration)
                logger.warning("%s %s %s failed: %s", self.provider, method, operation, e)
                raise self.error_handler.from_transport_error(e, operation) from e

            duration = time.monotonic() - start_time
            self.metrics.record_request(
                self.provider, operation, method, response.status_code, duration
            )
            if span is not None:
                span.set_attribute("http.status_code", response.status_code)

            if not self._is_success(response.status_code, expected_status):
                error = self.error_handler.from_response(response, operation)
                logger.warning(
                    "%s %s returned %d (%s)",
                    self.provider,
                    operation,
                    response.status_code,
                    error.message,
                )
                raise error

            logger.debug(
                "%s %s %s -> %d in %.3fs",
                self.provider,
                method,
                operation,
                response.status_code,
                duration,
            )
            return response

    async def request(
        self,
        method: str,
        url: str,
        *,
        params: Optional[Mapping[str, Any]] = None,
        json: Optional[Any] = None,
        content: Optional[bytes] = None,
        data: Optional[Mapping[str, Any]] = None,
        files: Optional[Any] = None,
        headers: Optional[Mapping[str, str]] = None,
        auth: Optional[httpx.Auth] = None,
        timeout: Optional[float] = None,
        operation: Optional[str] = None,
        expected_status: Optional[Iterable[int]] = None,
        retry: bool = True,
    ) -> httpx.Response:
        """
        Send a request through the resilience orchestrator.

        Args:
            method: HTTP method
            url: Path relative to the base URL, or an absolute URL
            params: Query parameters (None values are dropped)
            json: JSON body
            content: Raw body bytes
            data: Form fields
            files: Multipart files
            headers: Extra request headers
            auth: Per-request auth overriding the client auth
            timeout: Per-request timeout in seconds
            operation: Logical operation name used for logs, metrics and replay
            expected_status: Status codes treated as success (default: any 2xx)
            retry: Retry retryable failures (disable for non-idempotent calls)

        Returns:
            The httpx.Response
        """
        operation = operation or f"{method.upper()} {url}"
        kwargs: Dict[str, Any] = {}
        if params:
            kwargs["params"] = {k: v for k, v in params.items() if v is not None}
        if json is not None:
            kwargs["json"] = json
        if content is not None:
            kwargs["content"] = content
        if data is not None:
            kwargs["data"] = data
        if files is not None:
            kwargs["files"] = files
        if headers:
            kwargs["headers"] = dict(headers)
        if auth is not None:
            kwargs["auth"] = auth
        if timeout is not None:
            kwargs["timeout"] = timeout

        async def send():
            return await self._send(method.upper(), url, operation, expected_status, kwargs)

        if retry:
            return await self.orchestrator.execute(send, operation)
        return await self.orchestrator.execute_once(send, operation)

    async def request_json(
        self,
        method: str,
        url: str,
        *,
        cache_ttl: Optional[float] = None,
        **kwargs,
    ) -> Any:
        """
        Send a request and return the decoded JSON body ({} when empty).

        GET responses are cached for ``cache_ttl`` seconds when a cache
        backend is configured and a TTL is given.
        """
        cache_key = None
        if self.cache is not None and cache_ttl and method.upper() == "GET":
            cache_key = TTLCache.generate_key(
                kwargs.get("operation") or url,
                url=url,
                params=sorted((kwargs.get("params") or {}).items()),
            )
            cached = await self.cache.get(cache_key)
            self.metrics.record_cache_operation(self.provider, cached is not None)
            if cached is not None:
                logger.debug("%s cache hit for %s", self.provider, url)
                return cached

        response = await self.request(method, url, **kwargs)
        result = response.json() if response.content else {}

        if cache_key is not None:
            await self.cache.set(cache_key, result, ttl=cache_ttl)
        return result

    async def invalidate(self, operation: str, url: str, params: Optional[Mapping] = None):
        """Drop a cached GET response."""
        if self.cache is None:
            return
        await self.cache.delete(
            TTLCache.generate_key(operation, url=url, params=sorted((params or {}).items()))
        )

    async def stream_lines(
        self,
        method: str,
        url: str,
        *,
        params: Optional[Mapping[str, Any]] = None,
        json: Optional[Any] = None,
        headers: Optional[Mapping[str, str]] = None,
        operation: Optional[str] = None,
    ) -> AsyncIterator[str]:
        """
        Stream response lines.

        Opening the stream runs through the orchestrator; once the first byte
        arrives the body is consumed without retries.
        """
        operation = operation or f"{method.upper()} {url}"

        async def open_stream() -> httpx.Response:
            request = self.client.build_request(
                method.upper(),
                url,
                params={k: v for k, v in (params or {}).items() if v is not None},
                json=json,
                headers=headers,
                extensions={"operation": operation},
            )
            start_time = time.monotonic()
            try:
                response = await self.client.send(request, stream=True)
            except httpx.TransportError as e:
                raise self.error_handler.from_transport_error(e, operation) from e
            self.metrics.record_request(
                self.provider,
                operation,
                method.upper(),
                response.status_code,
                time.monotonic() - start_time,
            )
            if not 200 <= response.status_code < 300:
                await response.aread()
                await response.aclose()
                raise self.error_handler.from_response(response, operation)
            return response

        response = await self.orchestrator.execute(open_stream, operation)
        try:
            async for line in response.aiter_lines():
                yield line
        finally:
            await response.aclose()

    async def stream_events(
        self, method: str, url: str, done_sentinel: Optional[str] = "[DONE]", **kwargs
    ) -> AsyncIterator[Any]:
        """Yield decoded JSON payloads of ``data:`` lines from a server-sent event stream."""
        async for line in self.stream_lines(method, url, **kwargs):
            if not line.startswith("data:"):
                continue
            payload = line[5:].strip()
            if not payload:
                continue
            if done_sentinel is not None and payload == done_sentinel:
                return
            yield jsonlib.loads(payload)

    def paginate(
        self,
        url: str,
        items_key: str,
        token_key: str,
        token_param: str,
        params: Optional[Mapping[str, Any]] = None,
        operation: Optional[str] = None,
        max_pages: Optional[int] = None,
    ) -> AsyncIterator[Any]:
        """Iterate a GET endpoint that takes its continuation token as a query parameter."""

        async def fetch(token: Optional[str]) -> Dict[str, Any]:
            query = dict(params or {})
            if token:
                query[token_param] = token
            return await self.request_json("GET", url, params=query, operation=operation)

        return paginate(fetch, items_key, token_key, max_pages=max_pages)
