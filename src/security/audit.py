"""AuditMiddleware and security-event logging.

Provides ``AuditEntry`` with JSON serialization, security event logging
with severity levels, and ``AuditMiddleware`` which records one entry per
request.  Entries carry only correlation data (request id, route, status,
error code, timing), never the authorization code, tokens or secrets.
"""

from __future__ import annotations

import enum
import json
import logging
import time
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import aiofiles
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

_security_logger = logging.getLogger("token_proxy.security")
_audit_logger = logging.getLogger("token_proxy.audit")

# Paths excluded from audit logging
_EXCLUDED_PATHS: set[str] = {"/health", "/health/"}


# ── SecuritySeverity ────────────────────────────────────────────────────


class SecuritySeverity(enum.Enum):
    """Severity levels for security events."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


def log_security_event(
    event_type: str,
    severity: SecuritySeverity,
    detail: str,
    request_id: str = "",
) -> None:
    """Log a security event with severity.

    CRITICAL severity logs at ERROR level; others at WARNING.
    """
    msg = f"SECURITY_EVENT event={event_type} severity={severity.value} detail='{detail}' request_id={request_id}"
    if severity == SecuritySeverity.CRITICAL:
        _security_logger.error(msg)
    else:
        _security_logger.warning(msg)


# ── AuditEntry ──────────────────────────────────────────────────────────


@dataclass
class AuditEntry:
    """Structured audit record for one inbound request."""

    request_id: str = ""
    method: str = ""
    path: str = ""
    origin: str = ""
    source_ip: str = ""
    timestamp: str = ""
    latency_ms: float = 0.0
    status: str = ""
    status_code: int = 0
    error_code: str | None = None

    def to_json(self) -> str:
        """Serialize to a single-line JSON string (JSONL-safe)."""
        return json.dumps(asdict(self), separators=(",", ":"), default=str)


def create_audit_entry(
    *,
    request_id: str,
    method: str,
    path: str,
    origin: str,
    source_ip: str,
    status_code: int,
    latency_ms: float,
    error_code: str | None = None,
) -> AuditEntry:
    """Factory for ``AuditEntry`` with timestamp and outcome label."""
    return AuditEntry(
        request_id=request_id,
        method=method,
        path=path,
        origin=origin,
        source_ip=source_ip,
        timestamp=datetime.now(UTC).isoformat(),
        latency_ms=latency_ms,
        status="success" if status_code < 400 else "error",
        status_code=status_code,
        error_code=error_code,
    )


# ── AuditMiddleware ─────────────────────────────────────────────────────


class AuditMiddleware(BaseHTTPMiddleware):
    """Audits every non-health request; appends JSONL when *log_path* is set."""

    def __init__(self, app: Any, log_path: str = "") -> None:
        super().__init__(app)
        self.log_path = log_path

    async def dispatch(self, request: Request, call_next: Any) -> Response:
        if request.url.path in _EXCLUDED_PATHS:
            return await call_next(request)

        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000

        entry = create_audit_entry(
            request_id=getattr(request.state, "request_id", ""),
            method=request.method,
            path=request.url.path,
            origin=request.headers.get("Origin", ""),
            source_ip=request.client.host if request.client else "unknown",
            status_code=response.status_code,
            latency_ms=round(latency_ms, 2),
            error_code=getattr(request.state, "error_code", None),
        )
        _audit_logger.debug("AUDIT %s", entry.to_json())

        if self.log_path:
            await self._append(entry)

        return response

    async def _append(self, entry: AuditEntry) -> None:
        """Append *entry* to the JSONL file; a failed write never fails the request."""
        path = Path(self.log_path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(path, "a") as f:
                await f.write(entry.to_json() + "\n")
        except OSError as exc:
            _audit_logger.warning(
                "Audit write to %s failed for request %s: %s",
                path,
                entry.request_id,
                type(exc).__name__,
            )
