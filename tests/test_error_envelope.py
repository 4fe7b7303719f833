"""Tests for the ``{error, message}`` error body and the status-to-code mapping."""

import json

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import ValidationError

from authlane.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    error_response,
    rate_limit_headers,
    register_exception_handlers,
)
from authlane.api.schemas import ERROR_CODES, ErrorResponse
from authlane.logging import sanitize_error_message
from authlane.service.errors import (
    AuthenticationError,
    ConflictError,
    RateLimitedError,
    ServerError,
    UnavailableError,
    ValidationError as ServiceValidationError,
)


class TestErrorResponse:
    def test_known_codes_accepted(self):
        for code in ERROR_CODES:
            assert ErrorResponse(error=code, message="m").error == code

    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorResponse(error="teapot", message="m")

    def test_error_response_body(self):
        response = error_response(409, "user with this email already exists")
        assert response.status_code == 409
        assert json.loads(response.body) == {
            "error": "conflict",
            "message": "user with this email already exists",
        }


class TestStatusMapping:
    def test_every_mapped_code_is_stable(self):
        assert set(_STATUS_TO_CODE.values()) <= ERROR_CODES

    def test_unmapped_status_is_server_error(self):
        assert _error_code_for_status(418) == "server_error"

    @pytest.mark.parametrize(
        "exc,status,code",
        [
            (ServiceValidationError("bad"), 400, "invalid_input"),
            (AuthenticationError("no"), 401, "unauthorized"),
            (ConflictError("dup"), 409, "conflict"),
            (RateLimitedError(retry_after=3), 429, "rate_limited"),
            (ServerError("boom"), 500, "server_error"),
            (UnavailableError("down"), 503, "unavailable"),
        ],
    )
    def test_service_errors_carry_status_and_code(self, exc, status, code):
        assert exc.status_code == status
        assert exc.error_code == code
        assert _error_code_for_status(status) == code


def test_rate_limit_headers():
    headers = rate_limit_headers(RateLimitedError(retry_after=12, limit=10))
    assert headers == {
        "Retry-After": "12",
        "X-RateLimit-Remaining": "0",
        "X-RateLimit-Limit": "10",
    }


@pytest.mark.parametrize(
    "raw",
    [
        "connection to server at db failed: postgresql://auth:pw@db/auth",
        "SELECT * FROM users WHERE email = 'a@example.com'",
        "password=hunter2 rejected",
    ],
)
def test_sanitize_strips_store_details(raw):
    cleaned = sanitize_error_message(raw)
    assert "[redacted]" in cleaned
    assert "hunter2" not in cleaned
    assert "postgresql://" not in cleaned


def test_sanitize_keeps_plain_messages():
    assert sanitize_error_message("invalid email or password") == "invalid email or password"


def test_uncaught_exception_renders_server_error():
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/boom")
    async def boom():
        raise RuntimeError("postgresql://auth:pw@db/auth refused")

    response = TestClient(app, raise_server_exceptions=False).get("/boom")

    assert response.status_code == 500
    assert response.json() == {"error": "server_error", "message": "internal server error"}
