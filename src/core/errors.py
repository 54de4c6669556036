"""Structured error responses for the token proxy.

Every failure the proxy can report is a ``TokenProxyError`` carrying a
machine-readable code, an HTTP status, a client-safe message and optional
details.  ``StructuredErrorResponse`` renders any exception as the
``{"error": {...}}`` envelope without leaking internals.
"""

from __future__ import annotations

import enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ErrorCode(str, enum.Enum):
    """Error codes produced by the proxy itself (provider codes pass through)."""

    METHOD_NOT_ALLOWED = "METHOD_NOT_ALLOWED"
    INVALID_CONTENT_TYPE = "INVALID_CONTENT_TYPE"
    PAYLOAD_TOO_LARGE = "PAYLOAD_TOO_LARGE"
    INVALID_JSON = "INVALID_JSON"
    INVALID_CODE_TYPE = "INVALID_CODE_TYPE"
    INVALID_CODE_FORMAT = "INVALID_CODE_FORMAT"
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    GATEWAY_TIMEOUT = "GATEWAY_TIMEOUT"
    BAD_GATEWAY = "BAD_GATEWAY"
    UPSTREAM_ERROR = "UPSTREAM_ERROR"
    INTERNAL_SERVER_ERROR = "INTERNAL_SERVER_ERROR"
    NOT_FOUND = "NOT_FOUND"


# Provider OAuth error → HTTP status returned to the browser
PROVIDER_ERROR_STATUS: dict[str, int] = {
    "invalid_request": 400,
    "invalid_grant": 400,
    "unsupported_grant_type": 400,
    "invalid_scope": 400,
    "invalid_client": 401,
    "unauthorized_client": 401,
}


class TokenProxyError(Exception):
    """Base exception for all token proxy errors."""

    code: str = ErrorCode.INTERNAL_SERVER_ERROR.value
    status_code: int = 500

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        status_code: int | None = None,
        details: dict[str, Any] | list[Any] | None = None,
    ) -> None:
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code
        self.message = message
        self.details = details
        super().__init__(message)


class RequestValidationError(TokenProxyError):
    """Raised when an inbound exchange request is rejected.

    The ``code``/``status_code`` pair is one of the validation rows of the
    error table (405, 415, 413 or 400).
    """

    def __init__(
        self,
        code: ErrorCode,
        status_code: int,
        message: str,
        details: dict[str, Any] | list[Any] | None = None,
    ) -> None:
        super().__init__(message, code=code.value, status_code=status_code, details=details)


class ConfigurationError(TokenProxyError):
    """Raised when required server-side secrets are absent."""

    code = ErrorCode.CONFIGURATION_ERROR.value
    status_code = 500

    def __init__(self, message: str = "Server is not configured for token exchange") -> None:
        super().__init__(message)


class CircuitOpenError(TokenProxyError):
    """Raised when the circuit breaker rejects the call without contacting upstream."""

    code = ErrorCode.SERVICE_UNAVAILABLE.value
    status_code = 503

    def __init__(self, backend_name: str, retry_after: float = 0.0) -> None:
        self.backend_name = backend_name
        self.retry_after = max(0.0, retry_after)
        super().__init__(
            "Service temporarily unavailable due to high error rates. Please try again later.",
            details={"reason": "circuit_breaker_open"},
        )


class UpstreamTimeoutError(TokenProxyError):
    """Raised when the final upstream attempt exceeded its timeout."""

    code = ErrorCode.GATEWAY_TIMEOUT.value
    status_code = 504

    def __init__(self, backend_name: str, timeout_seconds: float) -> None:
        self.backend_name = backend_name
        self.timeout_seconds = timeout_seconds
        super().__init__("Request to authentication service timed out")


class UpstreamTransportError(TokenProxyError):
    """Raised when the upstream could not be reached after all retries."""

    code = ErrorCode.BAD_GATEWAY.value
    status_code = 502

    def __init__(self, backend_name: str, detail: str = "") -> None:
        self.backend_name = backend_name
        self.detail = detail
        super().__init__("Authentication service is unreachable")


class BadGatewayError(TokenProxyError):
    """Raised when upstream answered with a malformed or non-JSON body."""

    code = ErrorCode.BAD_GATEWAY.value
    status_code = 502

    def __init__(self, message: str = "Invalid response from authentication service") -> None:
        super().__init__(message)


class ProviderError(TokenProxyError):
    """Raised when the provider reported an error for the exchange.

    ``provider_code`` is the OAuth ``error`` value (e.g. ``invalid_grant``)
    and becomes the envelope code.  The HTTP status follows
    ``PROVIDER_ERROR_STATUS`` and otherwise the provider's own status.
    """

    def __init__(self, upstream_status: int, provider_code: str | None, message: str | None) -> None:
        self.upstream_status = upstream_status
        self.provider_code = provider_code
        super().__init__(
            message or "Failed to fetch tokens from authentication service",
            code=provider_code or ErrorCode.UPSTREAM_ERROR.value,
            status_code=provider_error_status(provider_code, upstream_status),
        )


def provider_error_status(provider_code: str | None, upstream_status: int | None) -> int:
    """Map a provider error to the status the proxy answers with."""
    if provider_code in PROVIDER_ERROR_STATUS:
        return PROVIDER_ERROR_STATUS[provider_code]
    if upstream_status is None or upstream_status < 400:
        return 400
    return upstream_status


# ── Envelope models ─────────────────────────────────────────────────────


class ErrorDetail(BaseModel):
    """Body of the ``error`` key in every error response."""

    model_config = ConfigDict(populate_by_name=True)

    code: str
    message: str
    request_id: str | None = Field(default=None, alias="requestId")
    details: dict[str, Any] | list[Any] | None = None


class StructuredErrorResponse(BaseModel):
    """Structured error envelope ``{"error": {code, message, requestId?, details?}}``.

    No stack traces, secrets, or authorization codes ever appear here.
    """

    error: ErrorDetail
    status_code: int = Field(default=500, exclude=True)

    @classmethod
    def build(
        cls,
        code: str | ErrorCode,
        message: str,
        status_code: int,
        request_id: str | None = None,
        details: dict[str, Any] | list[Any] | None = None,
    ) -> StructuredErrorResponse:
        if isinstance(code, ErrorCode):
            code = code.value
        return cls(
            error=ErrorDetail(code=code, message=message, request_id=request_id, details=details or None),
            status_code=status_code,
        )

    @classmethod
    def from_exception(cls, exc: Exception, request_id: str | None) -> StructuredErrorResponse:
        """Create from an exception, mapping to machine-readable codes.

        Never leaks internal details for unhandled exceptions.
        """
        if isinstance(exc, TokenProxyError):
            return cls.build(exc.code, exc.message, exc.status_code, request_id, exc.details)
        # Unhandled: never expose internal details
        return cls.build(
            ErrorCode.INTERNAL_SERVER_ERROR,
            "An internal server error occurred",
            500,
            request_id,
        )

    def to_body(self) -> dict[str, Any]:
        """Return the JSON-ready envelope using the wire field names."""
        return self.model_dump(by_alias=True, exclude_none=True)
