#!/usr/bin/env python3
"""
Simulation Layer (Record / Replay)

Captures real HTTP request/response pairs to a JSON cassette and replays them
without network access. Recording and replay are implemented as httpx
transports, so client code runs unchanged in all three modes.
"""

import base64
import hashlib
import json
import logging
import os
import time
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Set
from urllib.parse import parse_qsl, urlencode

import httpx

from .errors import SimulationLoadError, SimulationNoMatchError
from .settings import IntegrationSettings, SimulationMode

logger = logging.getLogger(__name__)

CASSETTE_VERSION = "1.0"

SKIP_REQUEST_HEADERS = {
    "authorization",
    "api-key",
    "x-api-key",
    "api_key",
    "cookie",
    "x-goog-api-key",
    "ocp-apim-subscription-key",
    "jenkins-crumb",
    "x-amz-date",
    "x-amz-content-sha256",
    "x-amz-security-token",
    "x-ms-date",
    "content-length",
    "user-agent",
}

# Headers describing the wire encoding of a body we store decoded
SKIP_RESPONSE_HEADERS = {"content-encoding", "content-length", "transfer-encoding", "set-cookie"}

REDACTED_FIELDS = {
    "token",
    "secret",
    "password",
    "authorization",
    "client_secret",
    "client_assertion",
    "api_key",
    "refresh_token",
    "code",
    "device_code",
}

# Query parameters carrying signatures or keys
SENSITIVE_QUERY_PARAMS = {
    "sig",
    "key",
    "api_key",
    "x-amz-signature",
    "x-amz-credential",
    "x-amz-security-token",
}

# Per-request values that differ between recording and replay
VOLATILE_QUERY_PARAMS = {"requestid"}

# Credentials issued by token endpoints
RESPONSE_REDACTED_FIELDS = {"access_token", "refresh_token", "id_token"}


class MatchMode(str, Enum):
    """How replayed requests are matched against recorded interactions."""

    EXACT = "exact"
    PATH = "path"
    OPERATION = "operation"


def body_hash(content: bytes) -> Optional[str]:
    if not content:
        return None
    return hashlib.sha256(content).hexdigest()


def normalize_url(url: httpx.URL) -> str:
    """
    Path plus query string without credentials or per-request ids.

    Host and scheme are not part of the match.
    """
    path = url.raw_path.decode("ascii").split("?", 1)[0]
    params = [
        (name, value)
        for name, value in url.params.multi_items()
        if name.lower() not in SENSITIVE_QUERY_PARAMS
        and name.lower() not in VOLATILE_QUERY_PARAMS
    ]
    return f"{path}?{urlencode(params)}" if params else path


def redact(value: Any, fields: Set[str] = REDACTED_FIELDS) -> Any:
    if isinstance(value, list):
        return [redact(item, fields) for item in value]
    if isinstance(value, dict):
        return {
            key: "[REDACTED]" if key.lower() in fields else redact(item, fields)
            for key, item in value.items()
        }
    return value


def encode_body(content: bytes, content_type: str) -> Dict[str, Any]:
    if not content:
        return {"encoding": "none", "body": None}
    if "json" in content_type:
        try:
            return {"encoding": "json", "body": json.loads(content)}
        except ValueError:
            pass
    try:
        return {"encoding": "utf-8", "body": content.decode("utf-8")}
    except UnicodeDecodeError:
        return {"encoding": "base64", "body": base64.b64encode(content).decode("ascii")}


def decode_body(encoding: str, body: Any) -> bytes:
    if encoding == "none" or body is None:
        return b""
    if encoding == "json":
        return json.dumps(body).encode("utf-8")
    if encoding == "base64":
        return base64.b64decode(body)
    return body.encode("utf-8")


class Cassette:
    """An ordered collection of recorded interactions."""

    def __init__(
        self,
        interactions: Optional[List[Dict[str, Any]]] = None,
        match_mode: MatchMode = MatchMode.EXACT,
    ):
        self.interactions: List[Dict[str, Any]] = list(interactions or [])
        self.match_mode = MatchMode(match_mode)
        self._used: set = set()

    @classmethod
    def load(cls, path: str, match_mode: MatchMode = MatchMode.EXACT) -> "Cassette":
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            interactions = data["interactions"]
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise SimulationLoadError(path, e) from e
        logger.info("Loaded %d recorded interactions from %s", len(interactions), path)
        return cls(interactions, match_mode)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": CASSETTE_VERSION,
            "created": datetime.now(timezone.utc).isoformat(),
            "interactions": self.interactions,
        }

    def save(self, path: str):
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=2)
        logger.info("Saved %d interactions to %s", len(self.interactions), path)

    def record(
        self,
        request: httpx.Request,
        response: httpx.Response,
        content: bytes,
        duration_ms: float,
    ) -> Dict[str, Any]:
        request_body = encode_body(
            request.content, request.headers.get("content-type", "")
        )
        content_type = request.headers.get("content-type", "")
        if request_body["encoding"] == "json":
            request_body["body"] = redact(request_body["body"])
        elif "x-www-form-urlencoded" in content_type and request_body["encoding"] == "utf-8":
            request_body["body"] = redact(dict(parse_qsl(request_body["body"])))

        response_body = encode_body(content, response.headers.get("content-type", ""))
        if response_body["encoding"] == "json":
            response_body["body"] = redact(response_body["body"], RESPONSE_REDACTED_FIELDS)

        interaction = {
            "id": str(uuid.uuid4()),
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "operation": request.extensions.get("operation"),
            "request": {
                "method": request.method,
                "url": normalize_url(request.url),
                "headers": {
                    k.lower(): v
                    for k, v in request.headers.items()
                    if k.lower() not in SKIP_REQUEST_HEADERS
                },
                "body_hash": body_hash(request.content),
                "body": request_body["body"],
            },
            "response": {
                "status": response.status_code,
                "headers": {
                    k.lower(): v
                    for k, v in response.headers.items()
                    if k.lower() not in SKIP_RESPONSE_HEADERS
                },
                "encoding": response_body["encoding"],
                "body": response_body["body"],
            },
            "duration_ms": round(duration_ms, 2),
        }
        self.interactions.append(interaction)
        return interaction

    def _matches(
        self,
        interaction: Dict[str, Any],
        operation: Optional[str],
        method: str,
        url: str,
        content_hash: Optional[str],
    ) -> bool:
        recorded = interaction["request"]
        if self.match_mode == MatchMode.OPERATION:
            return operation is not None and interaction.get("operation") == operation
        if recorded["method"] != method:
            return False
        if self.match_mode == MatchMode.PATH:
            return recorded["url"].split("?", 1)[0] == url.split("?", 1)[0]
        return recorded["url"] == url and recorded.get("body_hash") == content_hash

    def find(self, request: httpx.Request) -> Optional[Dict[str, Any]]:
        """Return and consume the first unused interaction matching ``request``."""
        operation = request.extensions.get("operation")
        url = normalize_url(request.url)
        content_hash = body_hash(request.content)
        for index, interaction in enumerate(self.interactions):
            if index in self._used:
                continue
            if self._matches(interaction, operation, request.method, url, content_hash):
                self._used.add(index)
                return interaction
        return None

    @property
    def remaining(self) -> int:
        return len(self.interactions) - len(self._used)

    def reset(self):
        """Allow every interaction to be replayed again."""
        self._used.clear()


class RecordingTransport(httpx.AsyncBaseTransport):
    """Forwards requests to a real transport and records each exchange."""

    def __init__(self, cassette: Cassette, inner: Optional[httpx.AsyncBaseTransport] = None):
        self.cassette = cassette
        self.inner = inner or httpx.AsyncHTTPTransport()

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        await request.aread()
        start = time.monotonic()
        response = await self.inner.handle_async_request(request)
        # Read the decoded body through a bound Response so gzip etc. are undone
        bound = httpx.Response(
            status_code=response.status_code,
            headers=response.headers,
            stream=response.stream,
            request=request,
        )
        content = await bound.aread()
        duration_ms = (time.monotonic() - start) * 1000
        self.cassette.record(request, bound, content, duration_ms)

        headers = [
            (k, v) for k, v in response.headers.items()
            if k.lower() not in SKIP_RESPONSE_HEADERS
        ]
        return httpx.Response(
            status_code=response.status_code,
            headers=headers,
            content=content,
            extensions=response.extensions,
        )

    async def aclose(self) -> None:
        await self.inner.aclose()


class ReplayTransport(httpx.AsyncBaseTransport):
    """Serves responses from a cassette; never touches the network."""

    def __init__(self, cassette: Cassette):
        self.cassette = cassette

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        await request.aread()
        interaction = self.cassette.find(request)
        if interaction is None:
            operation = request.extensions.get("operation") or "-"
            raise SimulationNoMatchError(
                f"{operation}:{request.method}:{normalize_url(request.url)}"
            )

        recorded = interaction["response"]
        return httpx.Response(
            status_code=recorded["status"],
            headers=recorded.get("headers", {}),
            content=decode_body(recorded.get("encoding", "utf-8"), recorded.get("body")),
        )


class SimulationLayer:
    """Chooses the transport for the configured mode and persists recordings."""

    def __init__(
        self,
        mode: SimulationMode = SimulationMode.OFF,
        path: Optional[str] = None,
        match_mode: MatchMode = MatchMode.EXACT,
    ):
        self.mode = SimulationMode(mode)
        self.path = path
        self.match_mode = MatchMode(match_mode)
        self.cassette: Optional[Cassette] = None

    @classmethod
    def from_settings(cls, settings: IntegrationSettings) -> "SimulationLayer":
        return cls(
            mode=settings.simulation_mode,
            path=settings.simulation_path,
            match_mode=settings.simulation_match,
        )

    @property
    def is_recording(self) -> bool:
        return self.mode == SimulationMode.RECORD

    @property
    def is_replay(self) -> bool:
        return self.mode == SimulationMode.REPLAY

    def wrap_transport(
        self, inner: Optional[httpx.AsyncBaseTransport] = None
    ) -> Optional[httpx.AsyncBaseTransport]:
        """
        Return the transport to hand to httpx for the current mode.

        Every transport wrapped by one layer shares a single cassette, so
        clients that talk to several hosts record to and replay from one file.
        """
        if self.mode == SimulationMode.OFF:
            return inner
        if self.mode == SimulationMode.RECORD:
            if self.cassette is None:
                self.cassette = Cassette(match_mode=self.match_mode)
            return RecordingTransport(self.cassette, inner)
        if self.cassette is None:
            self.cassette = Cassette.load(self.path, self.match_mode)
        return ReplayTransport(self.cassette)

    def save(self):
        """Write recorded interactions to ``path`` (record mode only)."""
        if self.is_recording and self.cassette is not None and self.path:
            self.cassette.save(self.path)
