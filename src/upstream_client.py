"""UpstreamClient — timed, retried, circuit-gated call to the token endpoint.

``send()`` runs the retry loop and returns a tagged ``UpstreamResult``
instead of raising, so the retry logic never uses exceptions for control
flow.  ``exchange()`` is the boundary that turns that result into a token
payload or a ``TokenProxyError`` the router can render.

Retry rules:
- timeout / transport error → breaker failure, retry while attempts remain
- 5xx                       → breaker failure, retry; last 5xx is returned
- 4xx                       → no verdict, returned immediately (codes are single-use)
- 2xx                       → breaker success, returned immediately
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
from dataclasses import dataclass
from typing import Any

import httpx

from src.core.config import Settings
from src.core.errors import (
    BadGatewayError,
    CircuitOpenError,
    ConfigurationError,
    ProviderError,
    UpstreamTimeoutError,
    UpstreamTransportError,
)
from src.models.schemas import TokenRequestPayload
from src.resilience.circuit_breaker import CircuitBreaker
from src.resilience.retry import RetryPolicy

logger = logging.getLogger(__name__)

UPSTREAM_NAME = "token-endpoint"


# ── Data classes ────────────────────────────────────────────────────────


class UpstreamOutcome(str, enum.Enum):
    """How a ``send()`` call ended."""

    RESPONSE = "response"
    CIRCUIT_OPEN = "circuit_open"
    TIMEOUT = "timeout"
    TRANSPORT = "transport"


@dataclass(frozen=True)
class UpstreamResult:
    """Tagged result of one ``send()`` call.

    Attributes:
        outcome:    Which way the call ended.
        response:   The final HTTP response (only for ``RESPONSE``).
        attempts:   Outbound requests actually issued.
        detail:     Short reason for non-response outcomes (no secrets).
        elapsed_ms: Wall time across all attempts and backoff sleeps.
    """

    outcome: UpstreamOutcome
    response: httpx.Response | None = None
    attempts: int = 0
    detail: str = ""
    elapsed_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return self.outcome == UpstreamOutcome.RESPONSE and self.response is not None and self.response.is_success


# ── Client ──────────────────────────────────────────────────────────────


class UpstreamClient:
    """Posts authorization-code grants to the provider's token endpoint.

    Args:
        settings: Application settings (token URL, credentials, timeouts).
        breaker:  Shared circuit breaker for the token endpoint.
        retry:    Backoff policy; also decides how many attempts are made.
        client:   Optional pre-built ``httpx.AsyncClient`` (tests inject one
                  with a ``MockTransport``).  Created lazily otherwise.
    """

    def __init__(
        self,
        settings: Settings,
        breaker: CircuitBreaker,
        retry: RetryPolicy,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._settings = settings
        self.breaker = breaker
        self.retry = retry
        self.token_url = settings.OAUTH_TOKEN_URL
        self.timeout = settings.UPSTREAM_TIMEOUT_SECONDS
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                headers={"Accept": "application/json"},
            )
        return self._client

    # ── Retry loop ───────────────────────────────────────────────────

    async def send(self, payload: dict[str, Any]) -> UpstreamResult:
        """POST *payload* with circuit breaker protection and bounded retries.

        Never raises for upstream failures; cancellation of the caller is
        propagated after the breaker's trial slot has been released.
        """
        start = time.monotonic()
        attempts = self.retry.max_attempts
        outcome = UpstreamOutcome.TRANSPORT
        detail = ""

        for attempt in range(attempts):
            admission = await self.breaker.admit()
            if admission is None:
                logger.warning("Circuit open for %s, rejecting call (attempt %d/%d)", UPSTREAM_NAME, attempt + 1, attempts)
                return self._result(UpstreamOutcome.CIRCUIT_OPEN, start, attempt, detail="circuit_breaker_open")

            verdict_recorded = False
            try:
                try:
                    response = await self._post(payload)
                except (TimeoutError, httpx.TimeoutException):
                    outcome, detail = UpstreamOutcome.TIMEOUT, f"timed out after {self.timeout}s"
                except httpx.RequestError as exc:
                    outcome, detail = UpstreamOutcome.TRANSPORT, type(exc).__name__
                else:
                    if response.status_code >= 500:
                        await self.breaker.record_failure(admission)
                        verdict_recorded = True
                        if attempt < attempts - 1:
                            await self._retry_delay(attempt, attempts, f"Upstream status {response.status_code}")
                            continue
                        return self._result(UpstreamOutcome.RESPONSE, start, attempt + 1, response=response)

                    if response.status_code < 400:
                        await self.breaker.record_success(admission)
                        verdict_recorded = True
                    return self._result(UpstreamOutcome.RESPONSE, start, attempt + 1, response=response)

                await self.breaker.record_failure(admission)
                verdict_recorded = True
                if attempt < attempts - 1:
                    await self._retry_delay(attempt, attempts, detail)
                    continue
                return self._result(outcome, start, attempt + 1, detail=detail)
            finally:
                if not verdict_recorded:
                    await self.breaker.release(admission)

        # range(attempts) always returns from inside the loop
        return self._result(outcome, start, attempts, detail=detail)

    async def _post(self, payload: dict[str, Any]) -> httpx.Response:
        """Send one attempt; ``asyncio.timeout`` cancels the request if it overruns."""
        async with asyncio.timeout(self.timeout):
            return await self._get_client().post(
                self.token_url,
                json=payload,
                headers={"Content-Type": "application/json", "Accept": "application/json"},
                timeout=self.timeout,
            )

    async def _retry_delay(self, attempt: int, attempts: int, reason: str) -> None:
        """Log a warning and sleep for the jittered backoff."""
        delay_ms = self.retry.delay(attempt)
        logger.warning(
            "%s for %s (attempt %d/%d), retrying in %.0fms",
            reason,
            UPSTREAM_NAME,
            attempt + 1,
            attempts,
            delay_ms,
        )
        await asyncio.sleep(delay_ms / 1000)

    @staticmethod
    def _result(
        outcome: UpstreamOutcome,
        start: float,
        attempts: int,
        *,
        response: httpx.Response | None = None,
        detail: str = "",
    ) -> UpstreamResult:
        return UpstreamResult(
            outcome=outcome,
            response=response,
            attempts=attempts,
            detail=detail,
            elapsed_ms=round((time.monotonic() - start) * 1000, 2),
        )

    # ── Exchange boundary ────────────────────────────────────────────

    def build_payload(self, code: str) -> dict[str, Any]:
        """Build the authorization-code grant body for *code*."""
        if not self._settings.has_client_credentials:
            raise ConfigurationError()
        return TokenRequestPayload(
            code=code,
            client_id=self._settings.OAUTH_CLIENT_ID.get_secret_value(),
            client_secret=self._settings.OAUTH_CLIENT_SECRET.get_secret_value(),
            redirect_uri=self._settings.OAUTH_REDIRECT_URI,
        ).model_dump()

    async def exchange(self, code: str) -> dict[str, Any]:
        """Trade *code* for the provider's token payload.

        Raises:
            ConfigurationError:     Client id/secret are not configured.
            CircuitOpenError:       The breaker rejected the call.
            UpstreamTimeoutError:   The final attempt timed out.
            UpstreamTransportError: Upstream unreachable after all retries.
            BadGatewayError:        Upstream body is not a JSON object.
            ProviderError:          Upstream reported an error status.
        """
        result = await self.send(self.build_payload(code))

        if result.outcome == UpstreamOutcome.CIRCUIT_OPEN:
            raise CircuitOpenError(UPSTREAM_NAME, self.breaker.retry_after)
        if result.outcome == UpstreamOutcome.TIMEOUT:
            raise UpstreamTimeoutError(UPSTREAM_NAME, self.timeout)
        if result.outcome == UpstreamOutcome.TRANSPORT or result.response is None:
            raise UpstreamTransportError(UPSTREAM_NAME, result.detail)

        response = result.response
        body = self._parse_body(response)

        if not response.is_success:
            provider_code, message = _provider_error(body)
            logger.info(
                "Token endpoint answered %d (%s) after %d attempt(s)",
                response.status_code,
                provider_code or "no error code",
                result.attempts,
            )
            raise ProviderError(response.status_code, provider_code, message)

        return body

    @staticmethod
    def _parse_body(response: httpx.Response) -> dict[str, Any]:
        """Parse a JSON object body or raise ``BadGatewayError``."""
        try:
            body = response.json()
        except ValueError:
            raise BadGatewayError() from None
        if not isinstance(body, dict):
            raise BadGatewayError()
        return body

    async def close(self) -> None:
        """Close the pooled httpx client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None


def _provider_error(body: dict[str, Any]) -> tuple[str | None, str | None]:
    """Extract ``(error code, description)`` from a provider error body.

    Handles the RFC 6749 shape ``{"error": "...", "error_description": "..."}``
    and the nested ``{"error": {"status": "...", "message": "..."}}`` shape.
    """
    error = body.get("error")
    if isinstance(error, str):
        description = body.get("error_description")
        return error, description if isinstance(description, str) else None
    if isinstance(error, dict):
        status = error.get("status")
        message = error.get("message")
        return (
            status if isinstance(status, str) else None,
            message if isinstance(message, str) else None,
        )
    return None, None
