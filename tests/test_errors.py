"""
Tests for HTTP error classification.
"""

import pytest

from sendly_cli.errors import (
    API_KEY_HINT,
    LOGIN_HINT,
    SERVER_ERROR_HINT,
    ApiConnectionError,
    ApiError,
    ApiKeyRequiredError,
    AuthenticationError,
    InsufficientCreditsError,
    NotFoundError,
    RateLimitError,
    ValidationError,
    classify,
)


class TestClassify:
    """Status code and body to typed error."""

    @pytest.mark.parametrize(
        "status,error_cls",
        [
            (400, ValidationError),
            (401, AuthenticationError),
            (403, AuthenticationError),
            (402, InsufficientCreditsError),
            (404, NotFoundError),
            (429, RateLimitError),
        ],
    )
    def test_status_mapping(self, status, error_cls):
        err = classify(status, {"message": "boom"})
        assert type(err) is error_cls
        assert err.status_code == status
        assert err.message == "boom"

    @pytest.mark.parametrize("message", ["", " ", "x", "Need 5 credits"])
    def test_insufficient_credits_message_round_trips(self, message):
        err = classify(402, {"message": message})
        assert isinstance(err, InsufficientCreditsError)
        assert err.message == message

    def test_non_string_message_uses_status_text(self):
        assert classify(402, {"message": 5}).message == "HTTP 402"

    def test_insufficient_credits_keeps_message(self):
        err = classify(402, {"error": "insufficient_credits", "message": "Need 5 credits, have 2"})
        assert isinstance(err, InsufficientCreditsError)
        assert err.message == "Need 5 credits, have 2"
        assert err.code == "insufficient_credits"

    @pytest.mark.parametrize(
        "body",
        [
            {"error": "api_key_required", "message": "Use a key"},
            {"error": "invalid_api_key", "message": "Nope"},
            {"error": "forbidden", "message": "An API key is required for this endpoint"},
        ],
    )
    def test_api_key_failures(self, body):
        err = classify(403, body)
        assert isinstance(err, ApiKeyRequiredError)
        assert isinstance(err, AuthenticationError)
        assert err.hint == API_KEY_HINT

    def test_plain_auth_failure_points_to_login(self):
        err = classify(401, {"error": "token_expired", "message": "Session expired"})
        assert type(err) is AuthenticationError
        assert err.code == "token_expired"
        assert err.hint == LOGIN_HINT

    def test_retry_after_from_body(self):
        err = classify(429, {"retryAfter": 45})
        assert err.retry_after == 45

    @pytest.mark.parametrize("retry_after", [None, "soon", True])
    def test_retry_after_defaults_to_sixty(self, retry_after):
        err = classify(429, {"retryAfter": retry_after})
        assert err.retry_after == 60

    @pytest.mark.parametrize("status", [500, 502, 503])
    def test_server_errors_are_generic(self, status):
        err = classify(status, {"error": "internal", "message": "oops"})
        assert type(err) is ApiError
        assert err.code == "internal"
        assert err.hint == SERVER_ERROR_HINT

    def test_empty_body_defaults(self):
        err = classify(418, {})
        assert type(err) is ApiError
        assert err.code == "unknown_error"
        assert err.message == "HTTP 418"
        assert err.hint is None

    def test_non_dict_body(self):
        err = classify(500, None)
        assert err.message == "HTTP 500"

    def test_details_are_kept(self):
        details = {"to": ["must be E.164"]}
        err = classify(400, {"error": "invalid_phone", "message": "Bad", "details": details})
        assert err.details == details
        assert err.code == "invalid_phone"
        assert err.to_dict() == {
            "error": "invalid_phone",
            "message": "Bad",
            "status": 400,
            "details": details,
        }


class TestRendering:

    def test_str_includes_status(self):
        assert str(NotFoundError("No such message")) == "No such message (HTTP 404)"

    def test_connection_error_has_no_status(self):
        err = ApiConnectionError("Network error: refused")
        assert err.status_code is None
        assert err.code == "network_error"
        assert str(err) == "Network error: refused"
        assert "status" not in err.to_dict()
