"""Inbound validation for the token exchange endpoint.

Checks run in a fixed order and stop at the first failure:
method → Content-Type → declared Content-Length → streamed body size →
JSON syntax → ``code`` type → ``code`` format.  Each rejection raises
``RequestValidationError`` with the matching error code and status.

The format check is a charset/length filter only; real validation of
the authorization code happens at the provider.
"""

from __future__ import annotations

import json
import re
from typing import Any

from pydantic import ValidationError
from starlette.requests import Request

from src.core.config import Settings
from src.core.errors import ErrorCode, RequestValidationError
from src.models.schemas import ExchangeRequest, ExchangeRequestBody
from src.security.audit import SecuritySeverity, log_security_event

_JSON_CONTENT_TYPE = "application/json"


def format_validation_errors(exc: Any) -> list[dict[str, str]]:
    """Convert a Pydantic ``ValidationError`` into a structured list.

    Returns ``{"field": ..., "message": ...}`` dicts.  Never includes the
    rejected input value.
    """
    errors: list[dict[str, str]] = []
    for err in exc.errors():
        loc = err.get("loc", ())
        field = ".".join(str(part) for part in loc) if loc else "unknown"
        errors.append({
            "field": field,
            "message": err.get("msg", "Validation error"),
        })
    return errors


def _too_large(max_body_bytes: int) -> RequestValidationError:
    return RequestValidationError(
        ErrorCode.PAYLOAD_TOO_LARGE,
        413,
        "Request body too large",
        {"maxSize": max_body_bytes},
    )


class RequestValidator:
    """Validates ``POST`` exchange requests against the configured limits.

    Args:
        max_body_bytes: Largest accepted body, checked against both the
                        declared ``Content-Length`` and the bytes received.
        code_pattern:   Regex the trimmed ``code`` must fully match.
    """

    def __init__(self, max_body_bytes: int = 10 * 1024, code_pattern: str = r"^[A-Za-z0-9_-]{10,100}$") -> None:
        self.max_body_bytes = max_body_bytes
        self._code_re = re.compile(code_pattern)

    @classmethod
    def from_settings(cls, settings: Settings) -> RequestValidator:
        return cls(
            max_body_bytes=settings.MAX_REQUEST_BODY_BYTES,
            code_pattern=settings.AUTH_CODE_PATTERN,
        )

    async def validate(self, request: Request, request_id: str) -> ExchangeRequest:
        """Return the validated request or raise ``RequestValidationError``."""
        try:
            return await self._validate(request, request_id)
        except RequestValidationError as exc:
            severity = SecuritySeverity.MEDIUM if exc.status_code == 413 else SecuritySeverity.LOW
            log_security_event("request_rejected", severity, exc.code, request_id)
            raise

    async def _validate(self, request: Request, request_id: str) -> ExchangeRequest:
        self.check_method(request.method)
        self.check_content_type(request.headers.get("content-type", ""))
        self.check_declared_length(request.headers.get("content-length"))
        raw = await self.read_body(request)
        payload = self.parse_json(raw)
        code = self.extract_code(payload)
        return ExchangeRequest(code=code, request_id=request_id)

    # ── Individual checks ────────────────────────────────────────────

    def check_method(self, method: str) -> None:
        if method.upper() != "POST":
            raise RequestValidationError(
                ErrorCode.METHOD_NOT_ALLOWED,
                405,
                "Method not allowed",
                {"allowed": "POST"},
            )

    def check_content_type(self, content_type: str) -> None:
        if not content_type.strip().lower().startswith(_JSON_CONTENT_TYPE):
            raise RequestValidationError(
                ErrorCode.INVALID_CONTENT_TYPE,
                415,
                "Invalid Content-Type. Must be application/json",
                {"expected": _JSON_CONTENT_TYPE},
            )

    def check_declared_length(self, content_length: str | None) -> None:
        """Reject early on a numeric ``Content-Length`` above the limit."""
        if content_length is None:
            return
        value = content_length.strip()
        if value.isdecimal() and int(value) > self.max_body_bytes:
            raise _too_large(self.max_body_bytes)

    async def read_body(self, request: Request) -> bytes:
        """Stream the body, aborting as soon as it passes the limit."""
        received = bytearray()
        async for chunk in request.stream():
            received.extend(chunk)
            if len(received) > self.max_body_bytes:
                raise _too_large(self.max_body_bytes)
        return bytes(received)

    def parse_json(self, raw: bytes) -> Any:
        try:
            return json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, ValueError):
            raise RequestValidationError(
                ErrorCode.INVALID_JSON,
                400,
                "Invalid JSON in request body",
            ) from None

    def extract_code(self, payload: Any) -> str:
        """Return the trimmed ``code`` if it is a string of the accepted shape."""
        if not isinstance(payload, dict):
            raise RequestValidationError(
                ErrorCode.INVALID_CODE_TYPE,
                400,
                "Authorization code must be a string",
                [{"field": "code", "message": "Request body must be a JSON object"}],
            )
        try:
            body = ExchangeRequestBody.model_validate(payload)
        except ValidationError as exc:
            raise RequestValidationError(
                ErrorCode.INVALID_CODE_TYPE,
                400,
                "Authorization code must be a string",
                format_validation_errors(exc),
            ) from None

        code = body.code.strip()
        if not self._code_re.fullmatch(code):
            raise RequestValidationError(
                ErrorCode.INVALID_CODE_FORMAT,
                400,
                "Authorization code has an invalid format",
            )
        return code
