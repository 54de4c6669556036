"""Tests for RequestValidator: check order, limits and code shape."""

import json

import pytest
from starlette.requests import Request

from src.core.config import Settings
from src.core.errors import ErrorCode, RequestValidationError
from src.security.request_validator import RequestValidator, format_validation_errors

CODE = "abc123XYZ_-0000"


def make_request(
    body: bytes | list[bytes] = b"",
    *,
    method: str = "POST",
    content_type: str | None = "application/json",
    content_length: str | None = "auto",
) -> Request:
    """Build a Starlette request whose body arrives in the given chunks."""
    chunks = body if isinstance(body, list) else [body]
    headers: list[tuple[bytes, bytes]] = []
    if content_type is not None:
        headers.append((b"content-type", content_type.encode()))
    if content_length == "auto":
        headers.append((b"content-length", str(sum(len(c) for c in chunks)).encode()))
    elif content_length is not None:
        headers.append((b"content-length", content_length.encode()))

    messages = [
        {"type": "http.request", "body": chunk, "more_body": i < len(chunks) - 1}
        for i, chunk in enumerate(chunks)
    ]

    async def receive():
        return messages.pop(0)

    scope = {"type": "http", "method": method, "path": "/auth", "headers": headers}
    return Request(scope, receive)


@pytest.fixture
def validator() -> RequestValidator:
    return RequestValidator()


async def expect_error(validator: RequestValidator, request: Request) -> RequestValidationError:
    with pytest.raises(RequestValidationError) as exc_info:
        await validator.validate(request, "req-test")
    return exc_info.value


class TestOrdering:
    async def test_method_checked_before_content_type(self, validator):
        err = await expect_error(validator, make_request(b"{}", method="GET", content_type="text/plain"))
        assert err.code == ErrorCode.METHOD_NOT_ALLOWED.value
        assert err.status_code == 405
        assert err.details == {"allowed": "POST"}

    async def test_content_type_checked_before_size(self, validator):
        err = await expect_error(validator, make_request(b"x" * 20000, content_type="text/plain"))
        assert err.code == ErrorCode.INVALID_CONTENT_TYPE.value
        assert err.status_code == 415

    async def test_size_checked_before_json(self, validator):
        err = await expect_error(validator, make_request(b"{" * 20000))
        assert err.code == ErrorCode.PAYLOAD_TOO_LARGE.value

    async def test_json_checked_before_code(self, validator):
        err = await expect_error(validator, make_request(b"not json"))
        assert err.code == ErrorCode.INVALID_JSON.value


class TestContentType:
    @pytest.mark.parametrize(
        "content_type",
        ["application/json", "APPLICATION/JSON", "application/json; charset=utf-8", "application/json;charset=UTF-8"],
    )
    async def test_accepted(self, validator, content_type):
        body = json.dumps({"code": CODE}).encode()
        result = await validator.validate(make_request(body, content_type=content_type), "req-1")
        assert result.code == CODE

    @pytest.mark.parametrize("content_type", [None, "", "text/plain", "multipart/form-data", "text/application/json"])
    async def test_rejected(self, validator, content_type):
        err = await expect_error(validator, make_request(b"{}", content_type=content_type))
        assert err.code == ErrorCode.INVALID_CONTENT_TYPE.value


class TestBodySize:
    async def test_declared_length_rejects_before_reading(self, validator):
        async def receive():
            raise AssertionError("body must not be read")

        scope = {
            "type": "http",
            "method": "POST",
            "path": "/auth",
            "headers": [(b"content-type", b"application/json"), (b"content-length", b"20480")],
        }
        err = await expect_error(validator, Request(scope, receive))
        assert err.code == ErrorCode.PAYLOAD_TOO_LARGE.value
        assert err.status_code == 413
        assert err.details == {"maxSize": 10240}

    async def test_streamed_body_without_length_header(self, validator):
        chunks = [b'{"code": "' + b"a" * 4096] * 3 + [b'"}']
        err = await expect_error(validator, make_request(chunks, content_length=None))
        assert err.code == ErrorCode.PAYLOAD_TOO_LARGE.value

    async def test_understated_length_header(self, validator):
        body = json.dumps({"code": CODE, "pad": "x" * 11000}).encode()
        err = await expect_error(validator, make_request(body, content_length="10"))
        assert err.code == ErrorCode.PAYLOAD_TOO_LARGE.value

    async def test_non_numeric_length_header_ignored(self, validator):
        body = json.dumps({"code": CODE}).encode()
        result = await validator.validate(make_request(body, content_length="abc"), "req-1")
        assert result.code == CODE

    @pytest.mark.parametrize("content_length", ["\u00b2", "\u00b9\u00b3", "1e9", "-5"])
    async def test_non_ascii_digit_length_header_ignored(self, validator, content_length):
        body = json.dumps({"code": CODE}).encode()
        scope = {
            "type": "http",
            "method": "POST",
            "path": "/auth",
            "headers": [
                (b"content-type", b"application/json"),
                (b"content-length", content_length.encode("latin-1")),
            ],
        }
        messages = [{"type": "http.request", "body": body, "more_body": False}]

        async def receive():
            return messages.pop(0)

        result = await validator.validate(Request(scope, receive), "req-1")
        assert result.code == CODE

    async def test_exactly_at_limit_passes_size_check(self):
        validator = RequestValidator(max_body_bytes=64)
        body = json.dumps({"code": CODE}).encode()
        body = body[:-1] + b" " * (64 - len(body)) + b"}"
        assert len(body) == 64
        result = await validator.validate(make_request(body), "req-1")
        assert result.code == CODE


class TestJson:
    @pytest.mark.parametrize("body", [b"", b"{", b"{'code': 'x'}", b"\xff\xfe"])
    async def test_invalid_json(self, validator, body):
        err = await expect_error(validator, make_request(body))
        assert err.code == ErrorCode.INVALID_JSON.value
        assert err.status_code == 400


class TestCodeType:
    @pytest.mark.parametrize(
        "payload",
        [{}, {"code": None}, {"code": 1234567890123}, {"code": ["abc123XYZ_-0000"]}, {"code": True}],
    )
    async def test_code_missing_or_not_string(self, validator, payload):
        err = await expect_error(validator, make_request(json.dumps(payload).encode()))
        assert err.code == ErrorCode.INVALID_CODE_TYPE.value
        assert err.details[0]["field"] == "code"

    @pytest.mark.parametrize("payload", [[], "abc123XYZ_-0000", 42, None])
    async def test_body_not_an_object(self, validator, payload):
        err = await expect_error(validator, make_request(json.dumps(payload).encode()))
        assert err.code == ErrorCode.INVALID_CODE_TYPE.value

    async def test_extra_fields_ignored(self, validator):
        body = json.dumps({"code": CODE, "state": "xyz"}).encode()
        result = await validator.validate(make_request(body), "req-1")
        assert result.code == CODE


class TestCodeFormat:
    @pytest.mark.parametrize(
        "code",
        ["", "short", "a" * 9, "a" * 101, "abc123XYZ/0000", "abc 123 XYZ 000", "abc123XYZ\x00-0000", "ünïcödé_code"],
    )
    async def test_rejected(self, validator, code):
        err = await expect_error(validator, make_request(json.dumps({"code": code}).encode()))
        assert err.code == ErrorCode.INVALID_CODE_FORMAT.value
        assert err.status_code == 400

    @pytest.mark.parametrize("code", ["a" * 10, "a" * 100, "A-b_C-d_E-f", CODE])
    async def test_accepted(self, validator, code):
        result = await validator.validate(make_request(json.dumps({"code": code}).encode()), "req-1")
        assert result.code == code
        assert result.request_id == "req-1"

    async def test_trimmed(self, validator):
        result = await validator.validate(make_request(json.dumps({"code": f"\t {CODE} \n"}).encode()), "req-1")
        assert result.code == CODE

    async def test_pattern_is_configurable(self):
        validator = RequestValidator.from_settings(Settings(AUTH_CODE_PATTERN=r"^4/[A-Za-z0-9_-]{10,200}$"))
        code = "4/0AbCdEfGhIjKlMn"
        result = await validator.validate(make_request(json.dumps({"code": code}).encode()), "req-1")
        assert result.code == code

    async def test_code_not_in_error(self, validator):
        err = await expect_error(validator, make_request(json.dumps({"code": "leaky code!"}).encode()))
        assert "leaky" not in str(err)
        assert "leaky" not in repr(err.details)


class TestFormatValidationErrors:
    def test_returns_field_and_message(self):
        from pydantic import ValidationError

        from src.models.schemas import ExchangeRequestBody

        with pytest.raises(ValidationError) as exc_info:
            ExchangeRequestBody.model_validate({"code": 5})
        result = format_validation_errors(exc_info.value)
        assert result == [{"field": "code", "message": result[0]["message"]}]
        assert "5" not in result[0]["message"]
