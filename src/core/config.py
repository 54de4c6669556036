"""Settings — centralized configuration for the token proxy.

All settings are loaded from environment variables with the
``TOKEN_PROXY_`` prefix.  The OAuth client credentials have no usable
default: the service still starts without them, but every exchange
request then fails with ``CONFIGURATION_ERROR``.
"""

from __future__ import annotations

import re

from pydantic import SecretStr, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Token proxy configuration.

    All fields can be overridden by environment variables prefixed with
    ``TOKEN_PROXY_``.  For example, ``TOKEN_PROXY_PORT=9999`` overrides
    the default port.
    """

    # ── Service identity ────────────────────────────────────────────
    SERVICE_NAME: str = "oauth-token-proxy"
    SERVICE_VERSION: str = "0.1.0"
    HOST: str = "0.0.0.0"
    PORT: int = 8090
    LOG_LEVEL: str = "INFO"

    # ── OAuth provider ──────────────────────────────────────────────
    OAUTH_CLIENT_ID: SecretStr = SecretStr("")
    OAUTH_CLIENT_SECRET: SecretStr = SecretStr("")
    OAUTH_REDIRECT_URI: str = "http://localhost:5173/redirect.html"  # Must match provider registration
    OAUTH_TOKEN_URL: str = "https://oauth2.googleapis.com/token"

    # ── Inbound surface ─────────────────────────────────────────────
    ALLOWED_ORIGIN: str = "http://localhost:5173"
    EXCHANGE_PATH: str = "/auth"
    MAX_REQUEST_BODY_BYTES: int = 10 * 1024
    AUTH_CODE_PATTERN: str = r"^[A-Za-z0-9_-]{10,100}$"

    # ── Upstream call ───────────────────────────────────────────────
    UPSTREAM_TIMEOUT_SECONDS: float = 8.0  # Per attempt
    UPSTREAM_MAX_RETRIES: int = 2  # Retries after the first attempt
    RETRY_INITIAL_DELAY_MS: float = 200.0
    RETRY_MAX_DELAY_MS: float = 2000.0
    RETRY_JITTER_RATIO: float = 0.3

    # ── Circuit breaker ─────────────────────────────────────────────
    CIRCUIT_BREAKER_THRESHOLD: int = 5  # Consecutive failures before OPEN
    CIRCUIT_BREAKER_RECOVERY_SECONDS: float = 30.0  # Seconds before HALF_OPEN trial
    CIRCUIT_BREAKER_HALF_OPEN_SUCCESSES: int = 1  # Trial successes needed to close
    CIRCUIT_BREAKER_HALF_OPEN_MAX: int = 1  # Concurrent trials while HALF_OPEN

    # ── Audit ───────────────────────────────────────────────────────
    AUDIT_LOG_PATH: str = ""  # Empty disables the JSONL file

    model_config = {
        "env_prefix": "TOKEN_PROXY_",
    }

    @field_validator("AUTH_CODE_PATTERN")
    @classmethod
    def _pattern_compiles(cls, v: str) -> str:
        try:
            re.compile(v)
        except re.error as exc:
            raise ValueError(f"AUTH_CODE_PATTERN is not a valid regex: {exc}") from exc
        return v

    @field_validator("UPSTREAM_MAX_RETRIES")
    @classmethod
    def _non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("must be >= 0")
        return v

    @field_validator(
        "CIRCUIT_BREAKER_THRESHOLD",
        "CIRCUIT_BREAKER_HALF_OPEN_SUCCESSES",
        "CIRCUIT_BREAKER_HALF_OPEN_MAX",
        "MAX_REQUEST_BODY_BYTES",
    )
    @classmethod
    def _positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be >= 1")
        return v

    @property
    def has_client_credentials(self) -> bool:
        """True when both the client id and client secret are set."""
        return bool(
            self.OAUTH_CLIENT_ID.get_secret_value()
            and self.OAUTH_CLIENT_SECRET.get_secret_value()
        )
