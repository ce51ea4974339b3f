#!/usr/bin/env python3
"""
Health Checking

Pings every registered integration client concurrently and aggregates the
results into a single report.
"""

import asyncio
import time
from datetime import datetime
from typing import Any, Dict, Mapping


class HealthChecker:
    """
    Aggregated health checker for a set of integration clients.

    The overall status is ``healthy`` when every client is healthy,
    ``unhealthy`` when none is, and ``degraded`` otherwise.
    """

    def __init__(self, clients: Mapping[str, Any], timeout: float = 10.0):
        """
        Args:
            clients: Mapping of name to a client exposing ``health_check()``
            timeout: Seconds to wait for each client
        """
        self.clients = dict(clients)
        self.timeout = timeout
        self.start_time = datetime.now()
        self.last_health_check = None
        self.consecutive_failures = 0
        self.total_checks = 0
        self.successful_checks = 0

    def register(self, name: str, client: Any):
        self.clients[name] = client

    async def _check(self, name: str, client: Any) -> Dict[str, Any]:
        start = time.monotonic()
        try:
            return await asyncio.wait_for(client.health_check(), timeout=self.timeout)
        except asyncio.TimeoutError:
            return {
                "provider": name,
                "status": "unhealthy",
                "error": f"health check timed out after {self.timeout}s",
                "latency_seconds": round(time.monotonic() - start, 3),
            }
        except Exception as e:
            return {
                "provider": name,
                "status": "unhealthy",
                "error": str(e),
                "latency_seconds": round(time.monotonic() - start, 3),
            }

    @staticmethod
    def _calculate_overall_status(checks: Dict[str, Dict[str, Any]]) -> str:
        if not checks:
            return "healthy"
        statuses = [check.get("status") for check in checks.values()]
        if all(status == "healthy" for status in statuses):
            return "healthy"
        if any(status == "healthy" for status in statuses):
            return "degraded"
        return "unhealthy"

    async def get_health(self) -> Dict[str, Any]:
        """Run every check and return the combined report."""
        self.total_checks += 1
        check_start = time.monotonic()

        names = list(self.clients)
        results = await asyncio.gather(
            *(self._check(name, self.clients[name]) for name in names)
        )
        checks = dict(zip(names, results))
        overall_status = self._calculate_overall_status(checks)

        if overall_status == "healthy":
            self.successful_checks += 1
            self.consecutive_failures = 0
        else:
            self.consecutive_failures += 1
        self.last_health_check = datetime.now()

        return {
            "status": overall_status,
            "timestamp": self.last_health_check.isoformat(),
            "uptime_seconds": (self.last_health_check - self.start_time).total_seconds(),
            "checks": checks,
            "metrics": {
                "check_duration_seconds": round(time.monotonic() - check_start, 3),
                "total_checks": self.total_checks,
                "successful_checks": self.successful_checks,
                "success_rate_percent": round(
                    (self.successful_checks / self.total_checks) * 100, 2
                ),
                "consecutive_failures": self.consecutive_failures,
            },
        }
