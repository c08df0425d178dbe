"""
Typed errors for the Sendly API client and event relay.

Every non-2xx response and every transport failure becomes one of these.
The CLI renders them without needing to look at raw HTTP status codes.
"""

from typing import Any

API_KEY_HINT = (
    "Create an API key with 'sendly keys create' "
    "or at https://sendly.live/dashboard/api-keys"
)
LOGIN_HINT = "Run 'sendly login' to authenticate"
SERVER_ERROR_HINT = (
    "The Sendly API had a problem. Try again in a moment, "
    "or check https://status.sendly.live"
)
NETWORK_HINT = "Check your network connection and SENDLY_BASE_URL"

API_KEY_ERROR_CODES = frozenset({"api_key_required", "invalid_api_key"})


class SendlyError(Exception):
    """Base exception for everything the CLI runtime raises."""


class ApiError(SendlyError):
    """Base exception for Sendly API errors."""

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
        hint: str | None = None,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details
        self.hint = hint

    def __str__(self) -> str:
        base = super().__str__()
        if self.status_code:
            return f"{base} (HTTP {self.status_code})"
        return base

    def to_dict(self) -> dict[str, Any]:
        """JSON-mode rendering."""
        data: dict[str, Any] = {"error": self.code, "message": self.message}
        if self.status_code:
            data["status"] = self.status_code
        if self.details:
            data["details"] = self.details
        if self.hint:
            data["hint"] = self.hint
        return data


class AuthenticationError(ApiError):
    """Raised when authentication fails (401/403) or no credentials exist."""

    def __init__(
        self,
        message: str = "Not authenticated. Run 'sendly login' first.",
        code: str = "authentication_error",
        status_code: int = 401,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(code, message, status_code, details, hint=LOGIN_HINT)


class ApiKeyRequiredError(AuthenticationError):
    """Raised when the endpoint needs an API key rather than a session token."""

    def __init__(
        self,
        message: str = "This command requires an API key",
        code: str = "api_key_required",
        status_code: int = 401,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, code, status_code, details)
        self.hint = API_KEY_HINT


class ValidationError(ApiError):
    """Raised on 400; carries the server's field details."""

    def __init__(
        self,
        message: str,
        code: str = "validation_error",
        details: dict[str, Any] | None = None,
    ):
        super().__init__(code, message, 400, details)


class InsufficientCreditsError(ApiError):
    """Raised on 402."""

    def __init__(
        self,
        message: str = "Insufficient credits",
        code: str = "insufficient_credits",
        details: dict[str, Any] | None = None,
    ):
        super().__init__(
            code, message, 402, details,
            hint="Add credits at https://sendly.live/dashboard/billing",
        )


class NotFoundError(ApiError):
    """Raised on 404."""

    def __init__(
        self,
        message: str = "Resource not found",
        code: str = "not_found",
        details: dict[str, Any] | None = None,
    ):
        super().__init__(code, message, 404, details)


class RateLimitError(ApiError):
    """Raised on 429. Waiting `retry_after` seconds is the caller's job."""

    def __init__(
        self,
        retry_after: int = 60,
        message: str = "Rate limit exceeded",
        code: str = "rate_limit_exceeded",
        details: dict[str, Any] | None = None,
    ):
        super().__init__(
            code, message, 429, details,
            hint=f"Wait {retry_after}s before retrying",
        )
        self.retry_after = retry_after


class ApiConnectionError(ApiError):
    """Raised when the request never got an HTTP response."""

    def __init__(self, message: str):
        super().__init__("network_error", message, None, hint=NETWORK_HINT)


class RelayError(SendlyError):
    """User-facing relay problem (bad forward URL, bad registration response)."""


class RelayConnectionError(RelayError):
    """Relay connection could not be opened or was lost. Terminal for the session."""


def _is_api_key_failure(code: str, message: str) -> bool:
    if code in API_KEY_ERROR_CODES:
        return True
    return "api key" in code.lower() or "api key" in message.lower()


def classify(status_code: int, body: dict[str, Any] | None) -> ApiError:
    """
    Map an HTTP status and decoded error body to a typed error.

    Pure function. Body fields used: error, message, details, retryAfter.
    """
    body = body if isinstance(body, dict) else {}
    raw_code = body.get("error")
    code = raw_code if isinstance(raw_code, str) and raw_code else "unknown_error"
    message = body.get("message")
    if not isinstance(message, str):
        message = f"HTTP {status_code}"
    details = body.get("details") if isinstance(body.get("details"), dict) else None

    if status_code in (401, 403):
        if _is_api_key_failure(code, message):
            return ApiKeyRequiredError(message, code, status_code, details)
        return AuthenticationError(message, code, status_code, details)

    if status_code == 400:
        return ValidationError(
            message,
            code if raw_code else "validation_error",
            details,
        )

    if status_code == 402:
        return InsufficientCreditsError(
            message,
            code if raw_code else "insufficient_credits",
            details,
        )

    if status_code == 404:
        return NotFoundError(message, code if raw_code else "not_found", details)

    if status_code == 429:
        retry_after = body.get("retryAfter")
        if not isinstance(retry_after, (int, float)) or isinstance(retry_after, bool):
            retry_after = 60
        return RateLimitError(
            int(retry_after),
            message,
            code if raw_code else "rate_limit_exceeded",
            details,
        )

    hint = SERVER_ERROR_HINT if status_code >= 500 else None
    return ApiError(code, message, status_code, details, hint)
