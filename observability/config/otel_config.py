#!/usr/bin/env python3
"""
OpenTelemetry Configuration for the Integration Clients

This module provides a simplified OpenTelemetry configuration for the tracer
and meter used by every integration, plus the logging setup shared by
applications embedding the clients.
"""

import logging
import os
from typing import Optional, Tuple

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

# Global configuration
_otel_config = None
_tracer = None
_meter = None


def _flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes", "on")


class OTELConfig:
    """OpenTelemetry configuration read from the environment."""

    def __init__(self):
        self.service_name = os.getenv("OTEL_SERVICE_NAME", "integrations")
        self.service_version = os.getenv("OTEL_SERVICE_VERSION", "1.0.0")
        self.environment = os.getenv("OTEL_ENVIRONMENT", "development")

        self.otel_enabled = _flag("OTEL_ENABLED")
        self.tracing_enabled = _flag("OTEL_TRACING_ENABLED")
        self.metrics_enabled = _flag("OTEL_METRICS_ENABLED")

        logger.debug(
            "OTEL config: enabled=%s tracing=%s metrics=%s",
            self.otel_enabled,
            self.tracing_enabled,
            self.metrics_enabled,
        )

    def _resource(self):
        from opentelemetry.sdk.resources import Resource

        return Resource.create(
            {
                "service.name": self.service_name,
                "service.version": self.service_version,
                "deployment.environment": self.environment,
            }
        )

    def setup_tracing(self) -> Optional[object]:
        """Configure OpenTelemetry tracing."""
        if not self.otel_enabled or not self.tracing_enabled:
            logger.debug("OpenTelemetry tracing is disabled")
            return None

        from opentelemetry import trace
        from opentelemetry.sdk.trace import TracerProvider

        trace.set_tracer_provider(TracerProvider(resource=self._resource()))
        tracer = trace.get_tracer(self.service_name, self.service_version)
        logger.info("OpenTelemetry tracing configured for %s", self.service_name)
        return tracer

    def setup_metrics(self) -> Optional[object]:
        """Configure OpenTelemetry metrics."""
        if not self.otel_enabled or not self.metrics_enabled:
            logger.debug("OpenTelemetry metrics is disabled")
            return None

        from opentelemetry import metrics
        from opentelemetry.sdk.metrics import MeterProvider

        metrics.set_meter_provider(MeterProvider(resource=self._resource()))
        meter = metrics.get_meter(self.service_name, self.service_version)
        logger.info("OpenTelemetry metrics configured for %s", self.service_name)
        return meter


def get_otel_config() -> OTELConfig:
    """Get the global OTEL configuration."""
    global _otel_config
    if _otel_config is None:
        _otel_config = OTELConfig()
    return _otel_config


def initialize_otel() -> Tuple[Optional[object], Optional[object]]:
    """Initialize OpenTelemetry tracing and metrics."""
    global _tracer, _meter

    config = get_otel_config()
    if _tracer is None:
        _tracer = config.setup_tracing()
    if _meter is None:
        _meter = config.setup_metrics()
    return _tracer, _meter


def get_tracer() -> Optional[object]:
    """Get the global tracer."""
    if _tracer is None:
        initialize_otel()
    return _tracer


def get_meter() -> Optional[object]:
    """Get the global meter."""
    if _meter is None:
        initialize_otel()
    return _meter


def is_otel_enabled() -> bool:
    return get_otel_config().otel_enabled


def is_tracing_enabled() -> bool:
    config = get_otel_config()
    return config.otel_enabled and config.tracing_enabled


def is_metrics_enabled() -> bool:
    config = get_otel_config()
    return config.otel_enabled and config.metrics_enabled


def configure_logging(level: str = "INFO", fmt: str = LOG_FORMAT):
    """Install a basic root handler once and set the integrations log level."""
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(format=fmt)
    logging.getLogger("integrations").setLevel(level.upper())
    logging.getLogger("observability").setLevel(level.upper())
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
