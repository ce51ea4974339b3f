#!/usr/bin/env python3
"""
Observability Package for the Integration Clients

This package provides the observability features shared by every integration:
- OpenTelemetry configuration and initialization
- Client spans for outbound vendor API calls
- Request, retry, cache and circuit breaker metrics (in-process + OTEL)
- Logging setup

## Package Structure
```
observability/
├── config/           # OpenTelemetry configuration and logging setup
├── metrics/          # Client metrics collection
└── tracing/          # Client spans for vendor API calls
```
"""

from .config.otel_config import (
    configure_logging,
    get_meter,
    get_tracer,
    initialize_otel,
    is_otel_enabled,
)
from .metrics.client_metrics import ClientMetrics, get_metrics, initialize_metrics
from .tracing.client_tracer import ClientTracer, get_client_tracer

__version__ = "1.0.0"
__all__ = [
    # Configuration
    "initialize_otel",
    "get_tracer",
    "get_meter",
    "is_otel_enabled",
    "configure_logging",
    # Metrics
    "ClientMetrics",
    "get_metrics",
    "initialize_metrics",
    # Tracing
    "ClientTracer",
    "get_client_tracer",
]
