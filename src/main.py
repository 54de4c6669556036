"""FastAPI application entrypoint — the request router.

Routes:
- ``OPTIONS *``          → CORS preflight, nothing else runs
- ``POST /auth``         → validate → exchange → map pipeline
- ``GET /health``        → service health with circuit breaker snapshot
- anything else          → ``NOT_FOUND`` envelope

Every response carries an ``X-Request-ID``; any exception that reaches
the top is turned into an ``INTERNAL_SERVER_ERROR`` envelope.
"""

import logging
import time
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from src.core.config import Settings
from src.core.errors import ErrorCode, StructuredErrorResponse
from src.models.schemas import HealthResponse
from src.resilience import CircuitBreaker, RetryPolicy
from src.security.audit import AuditMiddleware
from src.security.cors import preflight_response
from src.security.request_validator import RequestValidator
from src.token_exchange import create_handler, json_response, render_error
from src.upstream_client import UPSTREAM_NAME, UpstreamClient

logger = logging.getLogger(__name__)


def create_app(
    settings: Settings | None = None,
    *,
    http_client: httpx.AsyncClient | None = None,
    breaker: CircuitBreaker | None = None,
    retry: RetryPolicy | None = None,
) -> FastAPI:
    """Build the proxy app with its own breaker, retry policy and upstream client.

    ``http_client``, ``breaker`` and ``retry`` are injectable so each test
    gets isolated resilience state and a mocked upstream.
    """
    settings = settings or Settings()
    breaker = breaker or CircuitBreaker(
        name=UPSTREAM_NAME,
        failure_threshold=settings.CIRCUIT_BREAKER_THRESHOLD,
        recovery_timeout=settings.CIRCUIT_BREAKER_RECOVERY_SECONDS,
        half_open_success_threshold=settings.CIRCUIT_BREAKER_HALF_OPEN_SUCCESSES,
        half_open_max=settings.CIRCUIT_BREAKER_HALF_OPEN_MAX,
    )
    retry = retry or RetryPolicy(
        max_retries=settings.UPSTREAM_MAX_RETRIES,
        initial_delay_ms=settings.RETRY_INITIAL_DELAY_MS,
        max_delay_ms=settings.RETRY_MAX_DELAY_MS,
        jitter_ratio=settings.RETRY_JITTER_RATIO,
    )
    upstream = UpstreamClient(settings, breaker, retry, client=http_client)
    started_at = time.monotonic()

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        logger.info(
            "%s %s ready  token_url=%s origin=%s credentials=%s",
            settings.SERVICE_NAME,
            settings.SERVICE_VERSION,
            settings.OAUTH_TOKEN_URL,
            settings.ALLOWED_ORIGIN,
            "set" if settings.has_client_credentials else "MISSING",
        )
        try:
            yield
        finally:
            await upstream.close()

    app = FastAPI(
        title=settings.SERVICE_NAME,
        version=settings.SERVICE_VERSION,
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.settings = settings
    app.state.breaker = breaker
    app.state.upstream = upstream

    # ── Middleware chain ────────────────────────────────────────────
    # Starlette add_middleware prepends, so LAST added = OUTERMOST.
    # RequestID (outermost) → Audit → [handler]

    app.add_middleware(AuditMiddleware, log_path=settings.AUDIT_LOG_PATH)

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next) -> Response:
        """Assign a fresh request ID and convert anything that escaped."""
        request_id = str(uuid.uuid4())
        request.state.request_id = request_id
        try:
            response = await call_next(request)
        except Exception as exc:
            logger.exception("Unhandled error for request %s", request_id)
            response = render_error(request, exc, settings.ALLOWED_ORIGIN)
        response.headers["X-Request-ID"] = request_id
        return response

    # ── Error handlers ──────────────────────────────────────────────

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> Response:
        """Unknown paths and wrong methods on known paths are both NOT_FOUND."""
        request_id = getattr(request.state, "request_id", None)
        if exc.status_code in (404, 405):
            envelope = StructuredErrorResponse.build(ErrorCode.NOT_FOUND, "Not Found", 404, request_id)
        else:
            envelope = StructuredErrorResponse.build(
                ErrorCode.INTERNAL_SERVER_ERROR,
                "An internal server error occurred",
                500,
                request_id,
            )
        request.state.error_code = envelope.error.code
        return json_response(envelope.to_body(), envelope.status_code, settings.ALLOWED_ORIGIN)

    # ── Routes ──────────────────────────────────────────────────────

    @app.options("/{full_path:path}", include_in_schema=False)
    async def preflight(request: Request, full_path: str) -> Response:
        return preflight_response(request, settings.ALLOWED_ORIGIN)

    app.add_api_route(
        settings.EXCHANGE_PATH,
        create_handler(settings, RequestValidator.from_settings(settings), upstream),
        methods=["POST"],
        include_in_schema=False,
    )

    @app.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        """Return service health with name, version, uptime and breaker state."""
        return HealthResponse(
            service=settings.SERVICE_NAME,
            version=settings.SERVICE_VERSION,
            status="healthy",
            uptime_seconds=round(time.monotonic() - started_at, 2),
            circuit_breaker=breaker.snapshot(),
        )

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    _settings: Settings = app.state.settings
    logging.basicConfig(
        level=_settings.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    uvicorn.run(app, host=_settings.HOST, port=_settings.PORT, log_level=_settings.LOG_LEVEL.lower())
