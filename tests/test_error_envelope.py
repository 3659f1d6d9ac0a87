"""Tests for the error envelope format and localized error messages.

Error responses share one shape:
{
    "status": "error",
    "error": {
        "code": "<stable_code>",
        "message": "<localized, non-technical>",
        "details": <object|null>
    },
    "request_id": "<uuid>"
}
"""

import json

import pytest
from pydantic import ValidationError
from starlette.requests import Request

from pinguard.api.error_handling import (
    _client_details,
    _error_code_for_status,
    _error_response,
)
from pinguard.api.schemas import Envelope, ErrorBody
from pinguard.service.errors import (
    ERROR_CODES,
    AuthenticationFailedError,
    RateLimitExceededError,
    TokenRevokedError,
    user_message,
)


def _request(accept_language=None):
    headers = []
    if accept_language:
        headers.append((b"accept-language", accept_language.encode()))
    return Request({"type": "http", "method": "GET", "path": "/", "headers": headers})


class TestErrorBody:
    """Tests for the ErrorBody model."""

    def test_required_fields(self):
        error = ErrorBody(code="authentication_failed", message="Invalid credentials.")
        assert error.code == "authentication_failed"
        assert error.details is None

    def test_missing_fields_raise(self):
        with pytest.raises(ValidationError):
            ErrorBody(message="Error occurred")
        with pytest.raises(ValidationError):
            ErrorBody(code="server_error")

    def test_unknown_code_collapses_to_server_error(self):
        """Codes outside the catalogue never reach a client."""
        assert ErrorBody(code="pin_hash_mismatch", message="x").code == "server_error"


class TestEnvelope:
    def test_error_status(self):
        envelope = Envelope(status="error", error=ErrorBody(code="forbidden", message="No"))
        assert envelope.data is None
        assert envelope.error.code == "forbidden"

    def test_request_id_generated(self):
        assert len(Envelope(status="ok").request_id) == 36
        assert Envelope(status="ok", request_id="req-1").request_id == "req-1"

    def test_invalid_status_raises(self):
        with pytest.raises(ValidationError):
            Envelope(status="success")


class TestErrorCodeMapping:
    def test_statuses(self):
        assert _error_code_for_status(400) == "validation_error"
        assert _error_code_for_status(401) == "unauthorized"
        assert _error_code_for_status(429) == "rate_limit_exceeded"
        assert _error_code_for_status(503) == "internal_error"
        assert _error_code_for_status(418) == "server_error"

    def test_every_service_error_code_is_catalogued(self):
        for exc in (AuthenticationFailedError("x"), RateLimitExceededError("x"), TokenRevokedError("x")):
            assert exc.error_code in ERROR_CODES


class TestUserMessages:
    def test_locale_selection(self):
        assert user_message("authentication_failed") == "Invalid credentials."
        assert user_message("authentication_failed", "fr-CA,fr;q=0.9") == "Identifiants invalides."
        assert user_message("authentication_failed", "de") == "Invalid credentials."

    def test_unknown_code_falls_back(self):
        assert user_message("nope") == user_message("server_error")


class TestErrorResponseFactory:
    def test_basic(self):
        response = _error_response(_request(), 401, "authentication_failed")
        data = json.loads(response.body.decode())
        assert response.status_code == 401
        assert data["status"] == "error"
        assert data["error"] == {
            "code": "authentication_failed",
            "message": "Invalid credentials.",
            "details": None,
        }
        assert data["request_id"]

    def test_localized(self):
        response = _error_response(_request("fr"), 403, "device_not_authorized")
        data = json.loads(response.body.decode())
        assert data["error"]["message"].startswith("Appareil non autorisé")

    def test_retry_after(self):
        response = _error_response(_request(), 429, "rate_limit_exceeded", retry_after=900)
        data = json.loads(response.body.decode())
        assert response.headers["Retry-After"] == "900"
        assert data["error"]["details"] == {"retry_after_seconds": 900}

    def test_client_details_filtered(self):
        assert _client_details({"reason": "device_binding", "checks": {}}) is None
        assert _client_details({"fallback_to_pin": True, "reason": "x"}) == {"fallback_to_pin": True}
        assert _client_details(None) is None
