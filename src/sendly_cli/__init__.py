"""
Sendly CLI runtime

The request layer and live webhook relay shared by every `sendly` command.

Features:
- Bearer auth with transparent session refresh (single-flight)
- Retry with exponential backoff for 5xx and network errors
- Typed errors with user-facing hints
- Rate-limit snapshot tracking
- HMAC-verified webhook relay to a local endpoint

Quick Start:
    pip install sendly-cli
    sendly login --api-key sk_test_v1_...
    sendly webhooks listen --forward http://localhost:3000/webhook
"""

__version__ = "1.0.0"

from sendly_cli.client import ApiClient, gather_with_defaults
from sendly_cli.config import ConfigStore, CredentialStore, MemoryCredentialStore
from sendly_cli.errors import (
    ApiConnectionError,
    ApiError,
    ApiKeyRequiredError,
    AuthenticationError,
    InsufficientCreditsError,
    NotFoundError,
    RateLimitError,
    RelayConnectionError,
    RelayError,
    SendlyError,
    ValidationError,
    classify,
)
from sendly_cli.models import RelayEvent, RelaySession, RequestSpec
from sendly_cli.polling import PeriodicTask
from sendly_cli.rate_limit import RateLimitInfo
from sendly_cli.relay import EventRelay, RelayState, start_session, stop_session
from sendly_cli.signing import compute_signature, verify_signature

__all__ = [
    # API client
    "ApiClient",
    "RequestSpec",
    "gather_with_defaults",

    # Credentials
    "CredentialStore",
    "ConfigStore",
    "MemoryCredentialStore",

    # Errors
    "SendlyError",
    "ApiError",
    "ApiConnectionError",
    "AuthenticationError",
    "ApiKeyRequiredError",
    "ValidationError",
    "InsufficientCreditsError",
    "NotFoundError",
    "RateLimitError",
    "RelayError",
    "RelayConnectionError",
    "classify",

    # Rate limits
    "RateLimitInfo",

    # Relay
    "EventRelay",
    "RelayEvent",
    "RelaySession",
    "RelayState",
    "start_session",
    "stop_session",
    "compute_signature",
    "verify_signature",

    # Polling
    "PeriodicTask",
]
