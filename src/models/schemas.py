"""Request/response Pydantic models for the token proxy.

``ExchangeRequestBody`` type-checks the inbound JSON body;
``TokenRequestPayload`` is the body sent to the provider's token
endpoint.  Authorization codes and secrets are excluded from ``repr``.
"""

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, StrictStr


class HealthResponse(BaseModel):
    """Response model for GET /health."""

    service: str
    version: str
    status: str
    uptime_seconds: float
    circuit_breaker: dict


class ExchangeRequestBody(BaseModel):
    """Inbound ``{"code": "<string>"}`` body; unknown keys are ignored."""

    model_config = ConfigDict(extra="ignore")

    code: StrictStr = Field(..., repr=False)


class ExchangeRequest(BaseModel):
    """A validated exchange request: trimmed code plus correlation id."""

    code: str = Field(..., repr=False)
    request_id: str


class TokenRequestPayload(BaseModel):
    """Outbound authorization-code grant sent to the token endpoint."""

    code: str = Field(..., repr=False)
    client_id: str = Field(..., repr=False)
    client_secret: str = Field(..., repr=False)
    redirect_uri: str
    grant_type: Literal["authorization_code"] = "authorization_code"
