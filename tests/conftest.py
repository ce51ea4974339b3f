"""
Shared pytest configuration and fixtures for the integration test suite.

Clients are exercised against httpx.MockTransport handlers, so no test in
this suite touches the network.
"""

import json
import os
from typing import Any, Callable, Dict, List
from unittest.mock import patch

import httpx
import pytest


class RecordingHandler:
    """
    Callable httpx.MockTransport handler that records every request.

    Routes are matched on (method, path); the first route whose path is a
    suffix match wins. Unmatched requests get a 404.
    """

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.routes: List[tuple] = []

    def add(self, method: str, path: str, response: Any):
        """Register a response (httpx.Response, dict, or callable(request))."""
        self.routes.append((method.upper(), path, response))
        return self

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        for method, path, response in self.routes:
            if request.method == method and request.url.path.endswith(path):
                if callable(response):
                    response = response(request)
                if isinstance(response, httpx.Response):
                    # Registered responses may be served more than once
                    return httpx.Response(
                        response.status_code,
                        headers=response.headers,
                        content=response.content,
                    )
                return httpx.Response(200, json=response)
        return httpx.Response(404, json={"error": {"message": f"no route {request.url.path}"}})

    @property
    def last(self) -> httpx.Request:
        return self.requests[-1]

    def json_body(self, index: int = -1) -> Dict[str, Any]:
        return json.loads(self.requests[index].content)


@pytest.fixture
def handler() -> RecordingHandler:
    """A fresh recording request handler."""
    return RecordingHandler()


@pytest.fixture
def transport(handler) -> httpx.MockTransport:
    """Mock transport backed by the ``handler`` fixture."""
    return httpx.MockTransport(handler)


@pytest.fixture
def make_transport() -> Callable[[Callable], httpx.MockTransport]:
    """Build a mock transport from an arbitrary handler function."""

    def factory(fn: Callable[[httpx.Request], httpx.Response]) -> httpx.MockTransport:
        return httpx.MockTransport(fn)

    return factory


@pytest.fixture
def clean_env():
    """Run a test with integration environment variables removed."""
    prefixes = (
        "INTEGRATIONS_",
        "OPENAI_",
        "AZURE_",
        "GEMINI_",
        "PINECONE_",
        "QDRANT_",
        "MILVUS_",
        "SNOWFLAKE_",
        "JENKINS_",
        "DISCORD_",
        "CLOUDFLARE_R2_",
        "ARTIFACT_REGISTRY_",
        "FFMPEG_",
    )
    env = {k: v for k, v in os.environ.items() if not k.startswith(prefixes)}
    with patch.dict(os.environ, env, clear=True):
        yield

