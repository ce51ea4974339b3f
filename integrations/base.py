#!/usr/bin/env python3
"""
Integration Client Base

Common construction, lifecycle and health check plumbing shared by the
vendor clients.
"""

import logging
import time
from typing import Any, Dict, Optional, Type

from .errors import IntegrationError
from .settings import IntegrationSettings
from .transport import HttpTransport

logger = logging.getLogger(__name__)


class IntegrationClient:
    """
    Base class for vendor API clients.

    Subclasses set ``provider`` and ``settings_class``, implement
    ``from_settings`` to wire authentication into an HttpTransport, and
    implement ``_ping`` as the cheapest authenticated call the vendor offers.
    """

    provider: str = "integration"
    settings_class: Type[IntegrationSettings] = IntegrationSettings

    def __init__(self, settings: IntegrationSettings, http: HttpTransport):
        self.settings = settings
        self.http = http

    @classmethod
    def from_settings(cls, settings: IntegrationSettings, **kwargs):
        raise NotImplementedError

    @classmethod
    def from_env(cls, **overrides):
        """Create a client from environment variables plus explicit overrides."""
        transport = overrides.pop("transport", None)
        settings = cls.settings_class.from_env(**overrides)
        return cls.from_settings(settings, transport=transport)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self):
        await self.http.close()

    async def _ping(self) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    async def health_check(self) -> Dict[str, Any]:
        """Probe the vendor API and report status and latency."""
        start_time = time.monotonic()
        try:
            details = await self._ping()
        except IntegrationError as e:
            logger.warning("%s health check failed: %s", self.provider, e)
            return {
                "provider": self.provider,
                "status": "unhealthy",
                "error": str(e),
                "latency_seconds": round(time.monotonic() - start_time, 3),
            }

        result = {
            "provider": self.provider,
            "status": "healthy",
            "latency_seconds": round(time.monotonic() - start_time, 3),
        }
        if details:
            result["details"] = details
        return result
