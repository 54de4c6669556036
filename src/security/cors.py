"""CORS policy for the single browser origin allowed to call the proxy.

The proxy answers every response with the same fixed header set rather
than reflecting the caller's ``Origin``; browsers on any other origin
simply fail the CORS check.
"""

from __future__ import annotations

from starlette.requests import Request
from starlette.responses import Response

ALLOWED_METHODS = "POST, OPTIONS"
ALLOWED_HEADERS = "Content-Type"
MAX_AGE_SECONDS = 86400

# Headers whose joint presence marks a real CORS preflight
_PREFLIGHT_HEADERS = ("origin", "access-control-request-method", "access-control-request-headers")


def cors_headers(allowed_origin: str) -> dict[str, str]:
    """Return the CORS headers attached to every response."""
    return {
        "Access-Control-Allow-Origin": allowed_origin,
        "Access-Control-Allow-Methods": ALLOWED_METHODS,
        "Access-Control-Allow-Headers": ALLOWED_HEADERS,
        "Access-Control-Max-Age": str(MAX_AGE_SECONDS),
        "Vary": "Origin",
    }


def is_preflight(request: Request) -> bool:
    """True when the OPTIONS request carries all three preflight headers."""
    return all(request.headers.get(name) for name in _PREFLIGHT_HEADERS)


def preflight_response(request: Request, allowed_origin: str) -> Response:
    """Answer an OPTIONS request with no body.

    A full preflight gets the CORS header set; a bare OPTIONS only learns
    which methods the proxy accepts.
    """
    if is_preflight(request):
        return Response(status_code=204, headers=cors_headers(allowed_origin))
    return Response(
        status_code=204,
        headers={
            "Allow": ALLOWED_METHODS,
            "Access-Control-Max-Age": str(MAX_AGE_SECONDS),
        },
    )
