#!/usr/bin/env python3
"""
Resilience Orchestration

Provides the circuit breaker, retry policy and the orchestrator that combines
them with the rate limiter around every outbound call.
"""

import asyncio
import functools
import logging
import random
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from .auth import RateLimiter
from .errors import CircuitBreakerOpenError, RateLimitError, is_retryable
from .settings import IntegrationSettings

logger = logging.getLogger(__name__)


class CircuitBreakerState(Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Circuit breaker implementation for enhanced resilience.

    Prevents cascading failures by temporarily stopping requests
    to failing services and allowing them time to recover. After
    ``recovery_timeout`` seconds the breaker lets trial calls through;
    ``success_threshold`` consecutive successes close it again and any
    failure reopens it.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        success_threshold: int = 2,
        name: str = "default",
        on_state_change: Optional[Callable[[str, CircuitBreakerState], None]] = None,
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.success_threshold = success_threshold
        self.name = name
        self.on_state_change = on_state_change

        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.opened_at: Optional[float] = None
        self.state = CircuitBreakerState.CLOSED

    def check(self):
        """Raise CircuitBreakerOpenError if calls are currently rejected."""
        if self.state != CircuitBreakerState.OPEN:
            return

        if self._should_attempt_reset():
            self._transition(CircuitBreakerState.HALF_OPEN)
            return

        remaining = self.recovery_timeout - (time.monotonic() - self.opened_at)
        raise CircuitBreakerOpenError(
            f"Circuit breaker '{self.name}' is OPEN", retry_after=max(0.0, remaining)
        )

    def call(self, func: Callable, *args, **kwargs):
        """Execute function with circuit breaker protection."""
        self.check()
        try:
            result = func(*args, **kwargs)
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result

    async def acall(self, func: Callable, *args, **kwargs):
        """Execute async function with circuit breaker protection."""
        self.check()
        try:
            result = await func(*args, **kwargs)
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result

    def _should_attempt_reset(self) -> bool:
        return (
            self.opened_at is not None
            and time.monotonic() - self.opened_at >= self.recovery_timeout
        )

    def record_success(self):
        if self.state == CircuitBreakerState.HALF_OPEN:
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self._transition(CircuitBreakerState.CLOSED)
        elif self.state == CircuitBreakerState.CLOSED:
            self.failure_count = 0

    def record_failure(self):
        self.last_failure_time = time.monotonic()

        if self.state == CircuitBreakerState.HALF_OPEN:
            self._transition(CircuitBreakerState.OPEN)
        elif self.state == CircuitBreakerState.CLOSED:
            self.failure_count += 1
            if self.failure_count >= self.failure_threshold:
                self._transition(CircuitBreakerState.OPEN)

    def _transition(self, state: CircuitBreakerState):
        if state == self.state:
            return
        logger.warning(
            "Circuit breaker '%s' transitioning %s -> %s",
            self.name,
            self.state.value,
            state.value,
        )
        self.state = state
        self.failure_count = 0
        self.success_count = 0
        self.opened_at = time.monotonic() if state == CircuitBreakerState.OPEN else None
        if self.on_state_change:
            self.on_state_change(self.name, state)

    def reset(self):
        """Force the breaker back to CLOSED."""
        self.state = CircuitBreakerState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.opened_at = None
        self.last_failure_time = None


class RetryPolicy:
    """Exponential backoff with jitter."""

    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        jitter: float = 0.25,
    ):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter

    def get_retry_delay(self, attempt: int, error: Optional[Exception] = None) -> float:
        """Calculate the delay before retry number ``attempt`` (zero based)."""
        retry_after = getattr(error, "retry_after", None)
        if isinstance(error, RateLimitError) and retry_after is not None:
            return min(float(retry_after), self.max_delay)

        delay = self.base_delay * (2**attempt)
        # Jitter is +/- self.jitter of the calculated delay
        delay += delay * self.jitter * (2 * random.random() - 1)
        return min(max(0.0, delay), self.max_delay)

    def should_retry(self, attempt: int, error: Exception) -> bool:
        return attempt < self.max_retries and is_retryable(error)


class ResilienceOrchestrator:
    """
    Combines rate limiting, circuit breaking and retries.

    Order of operations for each call: wait on the rate limiter, check the
    breaker, run the operation retrying retryable failures, then record the
    outcome on the breaker. Non-retryable errors (validation, auth, not found)
    never count as breaker failures.
    """

    def __init__(
        self,
        retry_policy: Optional[RetryPolicy] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        rate_limiter: Optional[RateLimiter] = None,
        metrics: Optional[Any] = None,
        provider: str = "default",
    ):
        self.retry_policy = retry_policy or RetryPolicy(max_retries=0)
        self.circuit_breaker = circuit_breaker
        self.rate_limiter = rate_limiter
        self.metrics = metrics
        self.provider = provider

    @classmethod
    def from_settings(
        cls,
        settings: IntegrationSettings,
        provider: str,
        metrics: Optional[Any] = None,
    ) -> "ResilienceOrchestrator":
        breaker = None
        if settings.circuit_breaker_enabled:
            breaker = CircuitBreaker(
                failure_threshold=settings.circuit_breaker_failure_threshold,
                recovery_timeout=settings.circuit_breaker_recovery_timeout,
                success_threshold=settings.circuit_breaker_success_threshold,
                name=provider,
                on_state_change=(
                    metrics.record_circuit_state
                    if metrics is not None and hasattr(metrics, "record_circuit_state")
                    else None
                ),
            )
        limiter = None
        if settings.rate_limit_enabled:
            limiter = RateLimiter(
                requests_per_minute=settings.rate_limit_requests_per_minute,
                burst_size=settings.rate_limit_burst_size,
            )
        return cls(
            retry_policy=RetryPolicy(
                max_retries=settings.max_retry_attempts,
                base_delay=settings.retry_base_delay,
                max_delay=settings.retry_max_delay,
            ),
            circuit_breaker=breaker,
            rate_limiter=limiter,
            metrics=metrics,
            provider=provider,
        )

    @classmethod
    def disabled(cls, provider: str = "default") -> "ResilienceOrchestrator":
        """An orchestrator that simply runs the operation once."""
        return cls(retry_policy=RetryPolicy(max_retries=0), provider=provider)

    async def _attempt(self, operation: Callable[[], Awaitable[Any]]) -> Any:
        if self.rate_limiter is not None:
            waited = await self.rate_limiter.wait()
            if waited and self.metrics and hasattr(self.metrics, "record_rate_limit_event"):
                self.metrics.record_rate_limit_event("throttled", self.provider)

        if self.circuit_breaker is not None:
            self.circuit_breaker.check()

        try:
            result = await operation()
        except Exception as error:
            if self.circuit_breaker is not None and is_retryable(error):
                self.circuit_breaker.record_failure()
            raise

        if self.circuit_breaker is not None:
            self.circuit_breaker.record_success()
        return result

    async def execute(
        self, operation: Callable[[], Awaitable[Any]], name: str = "operation"
    ) -> Any:
        """Execute ``operation`` with full resilience protection."""
        attempt = 0
        while True:
            try:
                return await self._attempt(operation)
            except CircuitBreakerOpenError:
                raise
            except Exception as error:
                if not self.retry_policy.should_retry(attempt, error):
                    raise
                delay = self.retry_policy.get_retry_delay(attempt, error)
                logger.warning(
                    "%s %s failed (%s), retry %d/%d in %.2fs",
                    self.provider,
                    name,
                    type(error).__name__,
                    attempt + 1,
                    self.retry_policy.max_retries,
                    delay,
                )
                if self.metrics and hasattr(self.metrics, "record_retry"):
                    self.metrics.record_retry(self.provider, name, type(error).__name__)
                await asyncio.sleep(delay)
                attempt += 1

    async def execute_once(
        self, operation: Callable[[], Awaitable[Any]], name: str = "operation"
    ) -> Any:
        """Execute with rate limiting and circuit breaking but no retries."""
        return await self._attempt(operation)

    def reset(self):
        if self.circuit_breaker is not None:
            self.circuit_breaker.reset()


def retry_on_failure(max_retries: int = 3, base_delay: float = 1.0):
    """Decorator adding retry logic to coroutine functions."""
    policy = RetryPolicy(max_retries=max_retries, base_delay=base_delay)

    def decorator(func: Callable):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            attempt = 0
            while True:
                try:
                    return await func(*args, **kwargs)
                except Exception as error:
                    if not policy.should_retry(attempt, error):
                        raise
                    await asyncio.sleep(policy.get_retry_delay(attempt, error))
                    attempt += 1

        return wrapper

    return decorator
