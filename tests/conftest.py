"""
Pytest configuration and fixtures for the Sendly CLI runtime tests.
"""

import time

import httpx
import pytest

from sendly_cli import output
from sendly_cli.client import ApiClient
from sendly_cli.config import MemoryCredentialStore
from sendly_cli.logging_config import setup_logging
from sendly_cli.rate_limit import RateLimitTracker

TEST_API_KEY = "sk_test_v1_abc123"
BASE_URL = "https://api.test.sendly"


class SleepRecorder:
    """Stand-in for time.sleep that records requested delays."""

    def __init__(self):
        self.calls: list[float] = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture(autouse=True, scope="session")
def stderr_logging():
    """Route structlog through stdlib to stderr so stdout holds only command output."""
    setup_logging("WARNING")


@pytest.fixture(autouse=True)
def plain_output():
    """Human output without ANSI colors so assertions can match text."""
    output.configure("human", quiet=False, color=False)
    yield
    output.configure("human", quiet=False, color=False)


@pytest.fixture
def sleeper():
    return SleepRecorder()


@pytest.fixture
def api_key_store():
    return MemoryCredentialStore({"api_key": TEST_API_KEY}, env={})


@pytest.fixture
def session_store():
    """Logged in via browser: valid access token plus refresh token."""
    return MemoryCredentialStore(
        {
            "access_token": "at_old",
            "refresh_token": "rt_old",
            "token_expires_at": int(time.time() * 1000) + 3_600_000,
            "email": "dev@example.com",
        },
        env={},
    )


@pytest.fixture
def expired_session_store():
    return MemoryCredentialStore(
        {
            "access_token": "at_expired",
            "refresh_token": "rt_old",
            "token_expires_at": int(time.time() * 1000) - 1000,
        },
        env={},
    )


@pytest.fixture
def make_client(sleeper):
    """
    Build an ApiClient whose HTTP calls go to `handler`.

    Every client gets its own rate-limit tracker and the recording sleeper.
    """
    clients = []

    def _make(handler, store, **kwargs):
        kwargs.setdefault("base_url", BASE_URL)
        kwargs.setdefault("timeout_ms", 5000)
        kwargs.setdefault("max_retries", 3)
        client = ApiClient(
            store,
            transport=httpx.MockTransport(handler),
            sleep=sleeper,
            rate_limits=RateLimitTracker(),
            **kwargs,
        )
        clients.append(client)
        return client

    yield _make

    for client in clients:
        client.close()


@pytest.fixture
def refresh_response():
    return {
        "accessToken": "at_new",
        "refreshToken": "rt_new",
        "expiresIn": 3600,
        "userId": "user_1",
        "email": "dev@example.com",
    }
