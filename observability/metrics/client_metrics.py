#!/usr/bin/env python3
"""
Client Metrics

In-process counters for every integration client, mirrored to OpenTelemetry
counters and histograms when OTEL metrics are enabled.
"""

import json
import logging
import time
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from opentelemetry import metrics

from ..config.otel_config import get_meter, is_metrics_enabled

logger = logging.getLogger(__name__)

DURATION_BUCKETS = [0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0]


@dataclass
class ProviderStats:
    """Counters kept per provider (integration)."""

    requests: int = 0
    failures: int = 0
    retries: int = 0
    throttled: int = 0
    cache_hits: int = 0
    cache_misses: int = 0
    circuit_state: str = "closed"
    status_codes: Dict[str, int] = field(default_factory=lambda: defaultdict(int))
    response_times: deque = field(default_factory=lambda: deque(maxlen=1000))

    @property
    def avg_response_time(self) -> float:
        if not self.response_times:
            return 0.0
        return sum(self.response_times) / len(self.response_times)

    def to_dict(self) -> Dict[str, Any]:
        lookups = self.cache_hits + self.cache_misses
        return {
            "requests": self.requests,
            "failures": self.failures,
            "success_rate": (
                round((self.requests - self.failures) / self.requests * 100, 2)
                if self.requests
                else 100.0
            ),
            "retries": self.retries,
            "throttled": self.throttled,
            "status_codes": dict(self.status_codes),
            "avg_response_time": round(self.avg_response_time, 4),
            "cache": {
                "hits": self.cache_hits,
                "misses": self.cache_misses,
                "hit_rate": round(self.cache_hits / lookups * 100, 2) if lookups else 0.0,
            },
            "circuit_state": self.circuit_state,
        }


class OTELInstruments:
    """OpenTelemetry instruments; inert when metrics are disabled."""

    def __init__(self, meter: Optional[metrics.Meter] = None):
        self.meter = meter or get_meter()
        self.enabled = is_metrics_enabled() and self.meter is not None
        if not self.enabled:
            return

        self.requests = self.meter.create_counter(
            name="integration_requests_total",
            description="Outbound vendor API requests",
            unit="1",
        )
        self.duration = self.meter.create_histogram(
            name="integration_request_duration_seconds",
            description="Outbound vendor API request duration",
            unit="s",
        )
        self.retries = self.meter.create_counter(
            name="integration_retries_total",
            description="Retried vendor API calls",
            unit="1",
        )
        self.circuit_transitions = self.meter.create_counter(
            name="integration_circuit_transitions_total",
            description="Circuit breaker state transitions",
            unit="1",
        )
        self.cache_operations = self.meter.create_counter(
            name="integration_cache_operations_total",
            description="Response cache lookups",
            unit="1",
        )
        self.rate_limit_events = self.meter.create_counter(
            name="integration_rate_limit_events_total",
            description="Client side throttling events",
            unit="1",
        )
        logger.info("OTEL client metrics initialized")


class ClientMetrics:
    """Metrics collector shared by all integration transports."""

    def __init__(self, instruments: Optional[OTELInstruments] = None):
        self.otel = instruments or OTELInstruments()
        self.providers: Dict[str, ProviderStats] = defaultdict(ProviderStats)
        self.start_time = datetime.now()

    def record_request(
        self,
        provider: str,
        operation: str,
        method: str,
        status_code: Optional[int],
        duration: float,
    ):
        stats = self.providers[provider]
        stats.requests += 1
        stats.response_times.append(duration)
        code = str(status_code) if status_code is not None else "error"
        stats.status_codes[code] += 1
        if status_code is None or status_code >= 400:
            stats.failures += 1

        if self.otel.enabled:
            labels = {
                "provider": provider,
                "operation": operation,
                "method": method,
                "status_code": code,
            }
            self.otel.requests.add(1, labels)
            self.otel.duration.record(duration, labels)

    def record_retry(self, provider: str, operation: str, error_type: str):
        self.providers[provider].retries += 1
        if self.otel.enabled:
            self.otel.retries.add(
                1, {"provider": provider, "operation": operation, "error_type": error_type}
            )

    def record_circuit_state(self, provider: str, state: Any):
        value = getattr(state, "value", str(state))
        self.providers[provider].circuit_state = value
        if self.otel.enabled:
            self.otel.circuit_transitions.add(1, {"provider": provider, "state": value})

    def record_cache_operation(self, provider: str, hit: bool):
        stats = self.providers[provider]
        if hit:
            stats.cache_hits += 1
        else:
            stats.cache_misses += 1
        if self.otel.enabled:
            self.otel.cache_operations.add(
                1, {"provider": provider, "result": "hit" if hit else "miss"}
            )

    def record_rate_limit_event(self, event_type: str, provider: str):
        self.providers[provider].throttled += 1
        if self.otel.enabled:
            self.otel.rate_limit_events.add(
                1, {"provider": provider, "event_type": event_type}
            )

    def reset(self):
        self.providers.clear()
        self.start_time = datetime.now()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uptime_seconds": round((datetime.now() - self.start_time).total_seconds(), 1),
            "providers": {name: stats.to_dict() for name, stats in self.providers.items()},
        }

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent, default=str)


_metrics: Optional[ClientMetrics] = None


def get_metrics() -> ClientMetrics:
    """Return the process wide metrics collector."""
    global _metrics
    if _metrics is None:
        _metrics = ClientMetrics()
    return _metrics


def initialize_metrics() -> ClientMetrics:
    """Create (or recreate) the process wide metrics collector."""
    global _metrics
    _metrics = ClientMetrics()
    logger.debug("Client metrics initialized at %s", time.strftime("%H:%M:%S"))
    return _metrics
