#!/usr/bin/env python3
"""
OpenTelemetry Tracing Utilities for Integration Clients

This module provides client spans for outbound vendor API calls, cache
lookups and token acquisition.
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

from opentelemetry import trace
from opentelemetry.trace import SpanKind, Status, StatusCode

from ..config.otel_config import get_tracer, is_tracing_enabled

logger = logging.getLogger(__name__)


class ClientTracer:
    """Tracing utilities shared by every integration transport."""

    def __init__(self, tracer: Optional[trace.Tracer] = None):
        self.tracer = tracer or get_tracer()
        self.enabled = is_tracing_enabled() and self.tracer is not None

        if not self.enabled:
            logger.debug("Client tracing disabled or tracer not available")

    @asynccontextmanager
    async def trace_request(
        self, provider: str, operation: str, method: str, url: str
    ):
        """Trace a single outbound API call."""
        if not self.enabled:
            yield None
            return

        span = self.tracer.start_span(f"{provider}.{operation}", kind=SpanKind.CLIENT)
        start_time = time.monotonic()
        try:
            span.set_attribute("http.method", method)
            # Query strings may carry signatures or keys
            span.set_attribute("http.url", url.split("?", 1)[0])
            span.set_attribute("integration.provider", provider)
            span.set_attribute("integration.operation", operation)

            yield span

            span.set_attribute("http.duration", time.monotonic() - start_time)
            span.set_status(Status(StatusCode.OK))

        except Exception as e:
            span.set_attribute("http.duration", time.monotonic() - start_time)
            span.record_exception(e)
            span.set_status(Status(StatusCode.ERROR, str(e)))
            span.set_attribute("error", True)
            span.set_attribute("error.type", type(e).__name__)
            status_code = getattr(e, "status_code", None)
            if status_code is not None:
                span.set_attribute("http.status_code", status_code)
            raise
        finally:
            span.end()

    @asynccontextmanager
    async def trace_cache_operation(self, provider: str, operation: str):
        """Trace a response cache lookup."""
        if not self.enabled:
            yield None
            return

        span = self.tracer.start_span(f"{provider}.cache.{operation}")
        try:
            span.set_attribute("cache.operation", operation)
            span.set_attribute("integration.provider", provider)
            yield span
        finally:
            span.end()

    @asynccontextmanager
    async def trace_auth_operation(self, provider: str, flow: str):
        """Trace token acquisition."""
        if not self.enabled:
            yield None
            return

        span = self.tracer.start_span(f"{provider}.auth.{flow}", kind=SpanKind.CLIENT)
        try:
            span.set_attribute("auth.flow", flow)
            span.set_attribute("integration.provider", provider)
            yield span
            span.set_status(Status(StatusCode.OK))
        except Exception as e:
            span.record_exception(e)
            span.set_status(Status(StatusCode.ERROR, str(e)))
            raise
        finally:
            span.end()


_client_tracer: Optional[ClientTracer] = None


def get_client_tracer() -> ClientTracer:
    """Get the global client tracer instance."""
    global _client_tracer
    if _client_tracer is None:
        _client_tracer = ClientTracer()
    return _client_tracer
