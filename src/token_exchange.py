"""Token exchange handler — validate → exchange → map.

Factory creates a closure that validates the inbound request, trades the
authorization code at the provider via ``UpstreamClient`` and renders
either the token payload or the structured error envelope.  Nothing
raised inside the pipeline escapes the handler.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any

from starlette.requests import Request
from starlette.responses import JSONResponse

from src.core.config import Settings
from src.core.errors import ConfigurationError, StructuredErrorResponse, TokenProxyError
from src.security.audit import SecuritySeverity, log_security_event
from src.security.cors import cors_headers
from src.security.request_validator import RequestValidator
from src.upstream_client import UpstreamClient

logger = logging.getLogger(__name__)


def json_response(
    content: dict[str, Any],
    status_code: int,
    allowed_origin: str,
    extra_headers: dict[str, str] | None = None,
) -> JSONResponse:
    """JSON response carrying the CORS header set."""
    headers = cors_headers(allowed_origin)
    if extra_headers:
        headers.update(extra_headers)
    return JSONResponse(content=content, status_code=status_code, headers=headers)


def render_error(request: Request, exc: Exception, allowed_origin: str) -> JSONResponse:
    """Render *exc* as the error envelope and note its code for the audit log."""
    request_id = getattr(request.state, "request_id", None)
    envelope = StructuredErrorResponse.from_exception(exc, request_id)
    request.state.error_code = envelope.error.code
    return json_response(envelope.to_body(), envelope.status_code, allowed_origin)


def create_handler(
    settings: Settings,
    validator: RequestValidator,
    upstream: UpstreamClient,
) -> Callable[[Request], Awaitable[JSONResponse]]:
    """Return the async handler serving the exchange route."""

    async def exchange_token(request: Request) -> JSONResponse:
        request_id = request.state.request_id
        try:
            if not settings.has_client_credentials:
                log_security_event(
                    "missing_client_credentials",
                    SecuritySeverity.CRITICAL,
                    "OAuth client id/secret not configured",
                    request_id,
                )
                raise ConfigurationError()

            exchange_request = await validator.validate(request, request_id)
            tokens = await upstream.exchange(exchange_request.code)
        except TokenProxyError as exc:
            logger.info("Exchange %s failed: %s (%d)", request_id, exc.code, exc.status_code)
            return render_error(request, exc, settings.ALLOWED_ORIGIN)
        except Exception as exc:
            logger.exception("Unhandled error during token exchange %s", request_id)
            return render_error(request, exc, settings.ALLOWED_ORIGIN)

        return json_response(
            {**tokens, "requestId": request_id},
            200,
            settings.ALLOWED_ORIGIN,
            {"Cache-Control": "no-store"},
        )

    return exchange_token
