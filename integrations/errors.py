#!/usr/bin/env python3
"""
Error Handling and Exception Classes

Provides the exception hierarchy shared by every integration and the
ErrorHandler that converts vendor HTTP responses and transport failures into
those exceptions.
"""

import email.utils
import time
from typing import Any, Dict, List, Optional
from xml.etree import ElementTree

import httpx

RETRYABLE_STATUSES = {500, 502, 503, 504}

REQUEST_ID_HEADERS = (
    "x-request-id",
    "x-ms-request-id",
    "request-id",
    "x-amz-request-id",
    "cf-ray",
    "x-goog-request-id",
)


class IntegrationError(Exception):
    """Base exception for all integration errors."""

    retryable = False

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response_data: Optional[Any] = None,
        provider: Optional[str] = None,
        request_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.response_data = response_data if response_data is not None else {}
        self.provider = provider
        self.request_id = request_id

    def __str__(self) -> str:
        parts = [self.message]
        if self.status_code is not None:
            parts.append(f"status={self.status_code}")
        if self.request_id:
            parts.append(f"request_id={self.request_id}")
        return " ".join(parts)


class AuthenticationError(IntegrationError):
    """Credentials were missing, invalid or expired."""


class PermissionDeniedError(IntegrationError):
    """Credentials are valid but not allowed to perform the operation."""


class NotFoundError(IntegrationError):
    """The requested resource does not exist."""


class ConflictError(IntegrationError):
    """The request conflicts with the current state of the resource."""


class ValidationError(IntegrationError):
    """The request was rejected as invalid, locally or by the vendor."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response_data: Optional[Any] = None,
        provider: Optional[str] = None,
        request_id: Optional[str] = None,
        validation_errors: Optional[List[Any]] = None,
    ):
        super().__init__(message, status_code, response_data, provider, request_id)
        self.validation_errors = validation_errors or []


class RateLimitError(IntegrationError):
    """The vendor throttled the request."""

    retryable = True

    def __init__(
        self,
        message: str,
        status_code: int = 429,
        response_data: Optional[Any] = None,
        provider: Optional[str] = None,
        request_id: Optional[str] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message, status_code, response_data, provider, request_id)
        self.retry_after = retry_after


class RequestTimeoutError(IntegrationError):
    """The request timed out."""

    retryable = True


class ServiceConnectionError(IntegrationError):
    """The service could not be reached."""

    retryable = True


class ServerError(IntegrationError):
    """The vendor returned a 5xx response."""

    @property
    def retryable(self) -> bool:
        return self.status_code is None or self.status_code in RETRYABLE_STATUSES


class CircuitBreakerOpenError(IntegrationError):
    """Raised when the circuit breaker rejects a call."""

    def __init__(self, message: str, retry_after: Optional[float] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class ConfigurationError(IntegrationError, ValueError):
    """The client is misconfigured."""


class SimulationError(IntegrationError):
    """Base class for record/replay failures."""


class SimulationNoMatchError(SimulationError):
    """No recorded interaction matches the outgoing request."""

    def __init__(self, match_key: str):
        super().__init__(f"No recorded interaction matches {match_key}")
        self.match_key = match_key


class SimulationLoadError(SimulationError):
    """The cassette file could not be read."""

    def __init__(self, path: str, cause: Optional[Exception] = None):
        super().__init__(f"Failed to load simulation cassette {path}: {cause}")
        self.path = path
        self.cause = cause


STATUS_ERRORS = {
    400: ValidationError,
    401: AuthenticationError,
    403: PermissionDeniedError,
    404: NotFoundError,
    409: ConflictError,
    412: ConflictError,
    413: ValidationError,
    422: ValidationError,
    429: RateLimitError,
}


def parse_xml_error(text: str) -> Optional[Dict[str, Any]]:
    """Parse the <Error><Code/><Message/></Error> bodies of storage services."""
    if not text or not text.lstrip().startswith("<"):
        return None
    try:
        root = ElementTree.fromstring(text)
    except ElementTree.ParseError:
        return None
    code = root.findtext("Code")
    message = root.findtext("Message")
    if code is None and message is None:
        return None
    return {"error": {"code": code, "message": (message or code or "").strip()}}


def parse_retry_after(headers: httpx.Headers) -> Optional[float]:
    """Parse Retry-After style headers into seconds."""
    if headers is None:
        return None

    value = headers.get("retry-after-ms")
    if value:
        try:
            return float(value) / 1000.0
        except ValueError:
            pass

    for name in ("retry-after", "x-ratelimit-reset-after"):
        value = headers.get(name)
        if not value:
            continue
        try:
            return max(0.0, float(value))
        except ValueError:
            pass
        try:
            parsed = email.utils.parsedate_to_datetime(value)
        except (TypeError, ValueError):
            continue
        if parsed is not None:
            return max(0.0, parsed.timestamp() - time.time())
    return None


class ErrorHandler:
    """Maps vendor responses and transport failures to integration errors."""

    def __init__(self, provider: str):
        self.provider = provider

    def extract_message(self, data: Any) -> Optional[str]:
        """Pull the human readable message out of common error payload shapes."""
        if isinstance(data, str):
            return data.strip()[:500] or None
        if not isinstance(data, dict):
            return None

        error = data.get("error")
        if isinstance(error, dict):
            message = error.get("message") or error.get("code")
            if isinstance(message, dict):
                message = message.get("value")
            if message:
                return str(message)
        elif isinstance(error, str):
            description = data.get("error_description")
            return f"{error}: {description}" if description else error

        status = data.get("status")
        if isinstance(status, dict) and status.get("error"):
            return str(status["error"])

        for key in ("message", "detail", "error_description", "errorMessage", "msg"):
            if data.get(key):
                return str(data[key])
        return None

    def extract_request_id(self, headers: httpx.Headers) -> Optional[str]:
        for name in REQUEST_ID_HEADERS:
            if headers.get(name):
                return headers[name]
        return None

    def from_response(
        self, response: httpx.Response, operation: str
    ) -> IntegrationError:
        """Convert a non-2xx response to the matching exception."""
        status_code = response.status_code
        try:
            response_data = response.json()
        except ValueError:
            response_data = parse_xml_error(response.text) or {
                "raw_response": response.text[:2000]
            }

        detail = self.extract_message(response_data) or response.reason_phrase
        message = f"{self.provider} {operation} failed: {detail}"
        request_id = self.extract_request_id(response.headers)
        kwargs = dict(
            status_code=status_code,
            response_data=response_data,
            provider=self.provider,
            request_id=request_id,
        )

        if status_code == 429:
            return RateLimitError(
                message, retry_after=parse_retry_after(response.headers), **kwargs
            )

        if status_code in (400, 413, 422):
            validation_errors = []
            if isinstance(response_data, dict):
                if isinstance(response_data.get("errors"), list):
                    validation_errors = response_data["errors"]
                elif "error" in response_data:
                    validation_errors = [response_data["error"]]
            return ValidationError(message, validation_errors=validation_errors, **kwargs)

        error_class = STATUS_ERRORS.get(status_code)
        if error_class is not None:
            return error_class(message, **kwargs)

        if status_code >= 500:
            return ServerError(message, **kwargs)

        return IntegrationError(message, **kwargs)

    def from_transport_error(
        self, error: httpx.TransportError, operation: str
    ) -> IntegrationError:
        """Convert httpx transport exceptions."""
        if isinstance(error, httpx.TimeoutException):
            return RequestTimeoutError(
                f"{self.provider} {operation} timed out: {error}",
                provider=self.provider,
            )
        return ServiceConnectionError(
            f"{self.provider} {operation} connection failed: {error}",
            provider=self.provider,
        )

    def categorize_error(self, error: Exception, operation: str) -> Dict[str, Any]:
        """Categorize error and extract relevant information for logs and metrics."""
        if isinstance(error, AuthenticationError):
            error_type = "authentication_error"
        elif isinstance(error, PermissionDeniedError):
            error_type = "permission_error"
        elif isinstance(error, NotFoundError):
            error_type = "not_found_error"
        elif isinstance(error, ValidationError):
            error_type = "validation_error"
        elif isinstance(error, RateLimitError):
            error_type = "rate_limit_error"
        elif isinstance(error, RequestTimeoutError):
            error_type = "timeout_error"
        elif isinstance(error, ServiceConnectionError):
            error_type = "connection_error"
        elif isinstance(error, CircuitBreakerOpenError):
            error_type = "circuit_open"
        elif isinstance(error, ServerError):
            error_type = "server_error"
        elif isinstance(error, IntegrationError):
            error_type = "integration_error"
        else:
            error_type = "unknown_error"

        return {
            "type": error_type,
            "message": str(error)[:500],
            "status_code": getattr(error, "status_code", None),
            "retryable": is_retryable(error),
            "operation": operation,
            "provider": self.provider,
        }


def is_retryable(error: Exception) -> bool:
    """Determine if an error should trigger a retry."""
    if isinstance(error, IntegrationError):
        return bool(error.retryable)
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code in RETRYABLE_STATUSES
    return isinstance(error, (httpx.TimeoutException, httpx.ConnectError))
