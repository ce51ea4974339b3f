#!/usr/bin/env python3
"""
Observability Tracing Module

Provides distributed tracing for outbound integration calls.
"""

from .client_tracer import ClientTracer, get_client_tracer

__all__ = ["ClientTracer", "get_client_tracer"]
