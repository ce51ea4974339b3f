#!/usr/bin/env python3
"""
Observability Metrics Module

Provides client metrics collection that keeps in-process counters and
mirrors them to OpenTelemetry when enabled.
"""

from .client_metrics import ClientMetrics, ProviderStats, get_metrics, initialize_metrics

__all__ = ["ClientMetrics", "ProviderStats", "get_metrics", "initialize_metrics"]
