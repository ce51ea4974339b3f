#!/usr/bin/env python3
"""
Configuration and Settings Management

Provides the shared settings base class every integration extends. Each
integration declares its own environment prefix and vendor fields on top of
the common transport, resilience, caching and simulation knobs.
"""

from enum import Enum
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigurationError


class SimulationMode(str, Enum):
    """Record/replay mode for the simulation layer."""

    OFF = "off"
    RECORD = "record"
    REPLAY = "replay"


class IntegrationSettings(BaseSettings):
    """Common settings shared by every integration client."""

    model_config = SettingsConfigDict(
        env_prefix="INTEGRATIONS_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        validate_assignment=True,
        extra="ignore",
    )

    # Transport configuration
    base_url: str = Field(default="", description="Vendor API base URL")
    timeout: float = Field(default=30.0, description="Request timeout in seconds")
    connection_pool_size: int = Field(
        default=20, description="HTTP connection pool size"
    )
    user_agent: str = Field(
        default="integrations-python/1.0", description="User-Agent header value"
    )
    log_level: str = Field(default="INFO", description="Logging level")

    # Retry configuration
    max_retry_attempts: int = Field(default=3, description="Maximum retry attempts")
    retry_base_delay: float = Field(
        default=1.0, description="Base retry delay in seconds"
    )
    retry_max_delay: float = Field(
        default=60.0, description="Maximum retry delay in seconds"
    )

    # Circuit breaker configuration
    circuit_breaker_enabled: bool = Field(
        default=True, description="Enable the circuit breaker"
    )
    circuit_breaker_failure_threshold: int = Field(
        default=5, description="Consecutive failures before the circuit opens"
    )
    circuit_breaker_success_threshold: int = Field(
        default=2, description="Half-open successes before the circuit closes"
    )
    circuit_breaker_recovery_timeout: float = Field(
        default=60.0, description="Seconds the circuit stays open"
    )

    # Rate limiting configuration
    rate_limit_enabled: bool = Field(default=False, description="Enable rate limiting")
    rate_limit_requests_per_minute: int = Field(
        default=600, description="Rate limit: requests per minute"
    )
    rate_limit_burst_size: int = Field(default=20, description="Rate limit: burst size")

    # Caching configuration
    cache_enabled: bool = Field(default=False, description="Enable response caching")
    cache_max_size: int = Field(default=1000, description="Maximum cache entries")
    cache_ttl_seconds: int = Field(default=300, description="Cache TTL in seconds")
    cache_backend: str = Field(default="memory", description="memory or redis")
    redis_url: str = Field(
        default="redis://localhost:6379", description="Redis URL for the redis backend"
    )

    # Simulation configuration
    simulation_mode: SimulationMode = Field(
        default=SimulationMode.OFF, description="Record/replay mode"
    )
    simulation_path: Optional[str] = Field(
        default=None, description="Cassette file used for record/replay"
    )
    simulation_match: str = Field(
        default="exact", description="Replay matching mode: exact, path or operation"
    )

    @classmethod
    def from_env(cls, **overrides):
        """Create settings from environment variables plus explicit overrides."""
        return cls(**overrides)

    def collect_issues(self) -> List[str]:
        """Return a list of human readable configuration problems."""
        issues = []

        if self.timeout <= 0:
            issues.append(f"Invalid timeout: {self.timeout}")

        if self.connection_pool_size <= 0:
            issues.append(f"Invalid connection pool size: {self.connection_pool_size}")

        if self.max_retry_attempts < 0:
            issues.append(f"Invalid max retry attempts: {self.max_retry_attempts}")

        if self.retry_base_delay < 0:
            issues.append(f"Invalid retry base delay: {self.retry_base_delay}")

        if self.retry_max_delay < self.retry_base_delay:
            issues.append(
                f"Retry max delay {self.retry_max_delay} is below base delay "
                f"{self.retry_base_delay}"
            )

        if self.circuit_breaker_failure_threshold <= 0:
            issues.append(
                f"Invalid circuit breaker failure threshold: "
                f"{self.circuit_breaker_failure_threshold}"
            )

        if self.circuit_breaker_success_threshold <= 0:
            issues.append(
                f"Invalid circuit breaker success threshold: "
                f"{self.circuit_breaker_success_threshold}"
            )

        if self.rate_limit_requests_per_minute <= 0:
            issues.append(f"Invalid rate limit: {self.rate_limit_requests_per_minute}")

        if self.rate_limit_burst_size <= 0:
            issues.append(f"Invalid burst size: {self.rate_limit_burst_size}")

        if self.cache_max_size <= 0:
            issues.append(f"Invalid cache max size: {self.cache_max_size}")

        if self.cache_ttl_seconds <= 0:
            issues.append(f"Invalid cache TTL: {self.cache_ttl_seconds}")

        if self.cache_backend not in ("memory", "redis"):
            issues.append(f"Invalid cache backend: {self.cache_backend}")

        if self.simulation_mode != SimulationMode.OFF and not self.simulation_path:
            issues.append("Simulation mode requires a simulation_path")

        if self.simulation_match not in ("exact", "path", "operation"):
            issues.append(f"Invalid simulation match mode: {self.simulation_match}")

        return issues

    def validate_configuration(self) -> bool:
        """Validate the current configuration."""
        issues = self.collect_issues()
        if issues:
            raise ConfigurationError(f"Configuration validation failed: {'; '.join(issues)}")
        return True
