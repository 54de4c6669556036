"""Tests for the fixed-origin CORS policy."""

from starlette.requests import Request

from src.security.cors import cors_headers, is_preflight, preflight_response


def _options_request(headers: dict[str, str]) -> Request:
    scope = {
        "type": "http",
        "method": "OPTIONS",
        "path": "/auth",
        "headers": [(k.lower().encode(), v.encode()) for k, v in headers.items()],
    }
    return Request(scope)


PREFLIGHT = {
    "Origin": "https://app.test",
    "Access-Control-Request-Method": "POST",
    "Access-Control-Request-Headers": "Content-Type",
}


class TestCorsHeaders:
    def test_header_set(self):
        assert cors_headers("https://app.test") == {
            "Access-Control-Allow-Origin": "https://app.test",
            "Access-Control-Allow-Methods": "POST, OPTIONS",
            "Access-Control-Allow-Headers": "Content-Type",
            "Access-Control-Max-Age": "86400",
            "Vary": "Origin",
        }


class TestPreflight:
    def test_detects_full_preflight(self):
        assert is_preflight(_options_request(PREFLIGHT)) is True

    def test_partial_headers_are_not_preflight(self):
        headers = dict(PREFLIGHT)
        del headers["Access-Control-Request-Headers"]
        assert is_preflight(_options_request(headers)) is False

    def test_preflight_response_has_cors(self):
        response = preflight_response(_options_request(PREFLIGHT), "https://app.test")
        assert response.status_code == 204
        assert response.body == b""
        assert response.headers["access-control-allow-origin"] == "https://app.test"
        assert response.headers["vary"] == "Origin"

    def test_bare_options_lists_methods(self):
        response = preflight_response(_options_request({}), "https://app.test")
        assert response.status_code == 204
        assert response.headers["allow"] == "POST, OPTIONS"
        assert "access-control-allow-origin" not in response.headers
