"""
Tests for the Sendly API client request lifecycle.
"""

import json
import threading
import time

import httpx
import pytest

from sendly_cli.client import USER_AGENT, gather_with_defaults
from sendly_cli.errors import (
    ApiConnectionError,
    ApiError,
    AuthenticationError,
    InsufficientCreditsError,
    NotFoundError,
    RateLimitError,
    ValidationError,
)
from sendly_cli.config import MemoryCredentialStore

from conftest import BASE_URL, TEST_API_KEY


class TestRequestBuilding:
    """Headers, query strings and bodies."""

    def test_default_headers(self, make_client, api_key_store):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"data": "test"})

        client = make_client(handler, api_key_store)
        assert client.get("/api/test") == {"data": "test"}

        request = seen[0]
        assert str(request.url) == f"{BASE_URL}/api/test"
        assert request.headers["Authorization"] == f"Bearer {TEST_API_KEY}"
        assert request.headers["Content-Type"] == "application/json"
        assert request.headers["Accept"] == "application/json"
        assert request.headers["User-Agent"] == USER_AGENT
        assert USER_AGENT.startswith("sendly/cli/")
        assert "X-Organization-Id" not in request.headers

    def test_organization_header(self, make_client):
        store = MemoryCredentialStore(
            {"api_key": TEST_API_KEY, "organization_id": "org_42"}, env={},
        )
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={})

        make_client(handler, store).get("/api/test")
        assert seen[0].headers["X-Organization-Id"] == "org_42"

    def test_query_omits_none(self, make_client, api_key_store):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json=[])

        client = make_client(handler, api_key_store)
        client.get("/api/logs", {"limit": 50, "status": None, "verbose": True})

        params = dict(seen[0].url.params)
        assert params == {"limit": "50", "verbose": "true"}

    def test_post_body_keeps_key_order(self, make_client, api_key_store):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(201, json={"id": "msg_1"})

        client = make_client(handler, api_key_store)
        result = client.post("/api/v1/messages", {"to": "+15551234567", "text": "hi"})

        assert result == {"id": "msg_1"}
        assert seen[0].method == "POST"
        assert seen[0].content == b'{"to": "+15551234567", "text": "hi"}'

    def test_patch_and_delete(self, make_client, api_key_store):
        methods = []

        def handler(request):
            methods.append(request.method)
            return httpx.Response(200, json={"ok": True})

        client = make_client(handler, api_key_store)
        client.patch("/api/contacts/c_1", {"name": "Ann"})
        client.delete("/api/contacts/c_1")
        assert methods == ["PATCH", "DELETE"]

    def test_empty_body_decodes_to_empty_dict(self, make_client, api_key_store):
        client = make_client(lambda request: httpx.Response(204), api_key_store)
        assert client.delete("/api/webhooks/wh_1") == {}

    def test_unauthenticated_request(self, make_client):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"status": "ok"})

        client = make_client(handler, MemoryCredentialStore(env={}))
        assert client.get("/api/health", require_auth=False) == {"status": "ok"}
        assert "Authorization" not in seen[0].headers

    def test_missing_credentials_raise_before_any_call(self, make_client):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json={})

        client = make_client(handler, MemoryCredentialStore(env={}))
        with pytest.raises(AuthenticationError):
            client.get("/api/test")
        assert calls == []

    def test_upload_file_is_multipart(self, make_client, api_key_store):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"imported": 2})

        client = make_client(handler, api_key_store)
        result = client.upload_file(
            "/api/contacts/import",
            b"phone\n+15551234567\n",
            "contacts.csv",
            "text/csv",
            fields={"listId": "lst_1"},
        )

        assert result == {"imported": 2}
        content_type = seen[0].headers["Content-Type"]
        assert content_type.startswith("multipart/form-data")
        body = seen[0].content
        assert b'filename="contacts.csv"' in body
        assert b"lst_1" in body
        assert seen[0].headers["Authorization"] == f"Bearer {TEST_API_KEY}"


class TestRetries:
    """Transport errors and 5xx are retried with exponential backoff."""

    @pytest.mark.parametrize("status", [500, 502, 503, 504])
    @pytest.mark.parametrize("max_retries", [0, 1, 3])
    def test_server_errors_use_every_attempt(self, make_client, api_key_store, sleeper, status, max_retries):
        attempts = []

        def handler(request):
            attempts.append(request)
            return httpx.Response(status, json={"error": "server_error", "message": "boom"})

        client = make_client(handler, api_key_store, max_retries=max_retries)
        with pytest.raises(ApiError) as exc_info:
            client.get("/api/test")

        assert len(attempts) == max_retries + 1
        assert sleeper.calls == [1.0, 2.0, 4.0][:max_retries]
        assert exc_info.value.status_code == status
        assert exc_info.value.hint is not None

    def test_backoff_is_capped_at_ten_seconds(self, make_client, api_key_store, sleeper):
        client = make_client(lambda r: httpx.Response(500, json={}), api_key_store, max_retries=6)
        with pytest.raises(ApiError):
            client.get("/api/test")
        assert sleeper.calls == [1.0, 2.0, 4.0, 8.0, 10.0, 10.0]

    def test_recovers_from_network_errors(self, make_client, api_key_store, sleeper):
        attempts = []

        def handler(request):
            attempts.append(request)
            if len(attempts) <= 2:
                raise httpx.ConnectError("connection refused", request=request)
            return httpx.Response(200, json={"id": "msg_1"})

        client = make_client(handler, api_key_store, max_retries=2, timeout_ms=5000)
        assert client.get("/api/v1/messages/msg_1") == {"id": "msg_1"}
        assert len(attempts) == 3
        assert sleeper.calls == [1.0, 2.0]

    def test_network_error_after_last_attempt(self, make_client, api_key_store):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        client = make_client(handler, api_key_store, max_retries=1)
        with pytest.raises(ApiConnectionError) as exc_info:
            client.get("/api/test")
        assert exc_info.value.code == "network_error"

    @pytest.mark.parametrize(
        "status,error_cls",
        [
            (400, ValidationError),
            (402, InsufficientCreditsError),
            (404, NotFoundError),
            (429, RateLimitError),
        ],
    )
    def test_client_errors_are_not_retried(self, make_client, api_key_store, sleeper, status, error_cls):
        attempts = []

        def handler(request):
            attempts.append(request)
            return httpx.Response(status, json={"message": "nope"})

        client = make_client(handler, api_key_store, max_retries=3)
        with pytest.raises(error_cls):
            client.get("/api/test")

        assert len(attempts) == 1
        assert sleeper.calls == []

    def test_rate_limit_error_carries_retry_after(self, make_client, api_key_store, sleeper):
        attempts = []

        def handler(request):
            attempts.append(request)
            return httpx.Response(429, json={"message": "slow down", "retryAfter": 45})

        client = make_client(handler, api_key_store)
        with pytest.raises(RateLimitError) as exc_info:
            client.post("/api/v1/messages", {"to": "+15551234567"})

        assert exc_info.value.retry_after == 45
        assert exc_info.value.message == "slow down"
        assert len(attempts) == 1

    def test_non_json_error_body(self, make_client, api_key_store):
        client = make_client(
            lambda r: httpx.Response(404, text="<html>not found</html>"),
            api_key_store,
        )
        with pytest.raises(NotFoundError) as exc_info:
            client.get("/api/missing")
        assert exc_info.value.message == "HTTP 404"


class TestTokenRefresh:
    """401 triggers one refresh-and-replay per call."""

    def test_refresh_and_replay(self, make_client, session_store, sleeper, refresh_response):
        calls = []

        def handler(request):
            calls.append((request.url.path, request.headers.get("Authorization")))
            if request.url.path == "/api/cli/auth/refresh":
                assert json.loads(request.content) == {"refreshToken": "rt_old"}
                return httpx.Response(200, json=refresh_response)
            if request.headers["Authorization"] == "Bearer at_old":
                return httpx.Response(401, json={"error": "token_expired", "message": "expired"})
            return httpx.Response(200, json={"id": "msg_1"})

        client = make_client(handler, session_store, max_retries=0)
        assert client.get("/api/v1/messages/msg_1") == {"id": "msg_1"}

        assert calls == [
            ("/api/v1/messages/msg_1", "Bearer at_old"),
            ("/api/cli/auth/refresh", None),
            ("/api/v1/messages/msg_1", "Bearer at_new"),
        ]
        assert sleeper.calls == []
        assert session_store.get("access_token") == "at_new"
        assert session_store.get("refresh_token") == "rt_new"
        assert session_store.get("user_id") == "user_1"

    def test_failed_refresh_raises_authentication_error(self, make_client, session_store):
        calls = []

        def handler(request):
            calls.append(request.url.path)
            if request.url.path == "/api/cli/auth/refresh":
                return httpx.Response(401, json={"error": "invalid_refresh_token"})
            return httpx.Response(401, json={"error": "token_expired", "message": "Session expired"})

        client = make_client(handler, session_store)
        with pytest.raises(AuthenticationError) as exc_info:
            client.get("/api/test")

        assert exc_info.value.message == "Session expired"
        assert calls == ["/api/test", "/api/cli/auth/refresh"]

    def test_only_one_refresh_per_call(self, make_client, session_store, refresh_response):
        calls = []

        def handler(request):
            calls.append(request.url.path)
            if request.url.path == "/api/cli/auth/refresh":
                return httpx.Response(200, json=refresh_response)
            return httpx.Response(401, json={"message": "still no"})

        client = make_client(handler, session_store)
        with pytest.raises(AuthenticationError):
            client.get("/api/test")
        assert calls.count("/api/cli/auth/refresh") == 1
        assert calls.count("/api/test") == 2

    def test_api_key_is_never_refreshed(self, make_client, api_key_store):
        calls = []

        def handler(request):
            calls.append(request.url.path)
            return httpx.Response(401, json={"message": "bad key"})

        client = make_client(handler, api_key_store)
        with pytest.raises(AuthenticationError):
            client.get("/api/test")
        assert calls == ["/api/test"]

    def test_expired_session_refreshes_before_first_attempt(
        self, make_client, expired_session_store, refresh_response,
    ):
        calls = []

        def handler(request):
            calls.append((request.url.path, request.headers.get("Authorization")))
            if request.url.path == "/api/cli/auth/refresh":
                return httpx.Response(200, json=refresh_response)
            return httpx.Response(200, json={"ok": True})

        client = make_client(handler, expired_session_store)
        assert client.get("/api/test") == {"ok": True}
        assert calls == [
            ("/api/cli/auth/refresh", None),
            ("/api/test", "Bearer at_new"),
        ]

    def test_expired_session_with_failed_refresh(self, make_client, expired_session_store):
        def handler(request):
            return httpx.Response(400, json={"error": "invalid_grant"})

        client = make_client(handler, expired_session_store)
        with pytest.raises(AuthenticationError) as exc_info:
            client.get("/api/test")
        assert "sendly login" in exc_info.value.message

    def test_concurrent_refreshes_share_one_call(self, make_client, session_store, refresh_response):
        refresh_calls = []
        release = threading.Event()

        def handler(request):
            refresh_calls.append(request)
            release.wait(timeout=5)
            return httpx.Response(200, json=refresh_response)

        client = make_client(handler, session_store)
        results = []

        def worker():
            results.append(client.refresh_session())

        threads = [threading.Thread(target=worker) for _ in range(5)]
        for t in threads:
            t.start()
        time.sleep(0.2)
        release.set()
        for t in threads:
            t.join(timeout=5)

        assert len(refresh_calls) == 1
        assert results == [True] * 5


class TestRateLimitInfo:
    """Rate-limit headers are captured on success."""

    def test_captures_headers(self, make_client, api_key_store):
        headers = {
            "X-RateLimit-Limit": "100",
            "X-RateLimit-Remaining": "99",
            "X-RateLimit-Reset": "1700000000",
        }
        client = make_client(lambda r: httpx.Response(200, json={}, headers=headers), api_key_store)
        assert client.get_rate_limit_info() is None

        client.get("/api/test")
        info = client.get_rate_limit_info()
        assert (info.limit, info.remaining, info.reset) == (100, 99, 1700000000)

    def test_partial_headers_keep_previous_snapshot(self, make_client, api_key_store):
        responses = iter([
            httpx.Response(200, json={}, headers={
                "X-RateLimit-Limit": "100",
                "X-RateLimit-Remaining": "50",
                "X-RateLimit-Reset": "1700000000",
            }),
            httpx.Response(200, json={}, headers={"X-RateLimit-Remaining": "49"}),
        ])
        client = make_client(lambda r: next(responses), api_key_store)
        client.get("/api/a")
        client.get("/api/b")
        assert client.get_rate_limit_info().remaining == 50


class TestGatherWithDefaults:
    """Independent calls tolerate partial failure."""

    def test_failed_calls_fall_back_to_defaults(self, make_client, api_key_store):
        def handler(request):
            if request.url.path == "/api/credits":
                return httpx.Response(200, json={"balance": 120})
            return httpx.Response(404, json={"message": "gone"})

        client = make_client(handler, api_key_store)
        results = gather_with_defaults({
            "credits": (lambda: client.get("/api/credits"), {}),
            "webhooks": (lambda: client.get("/api/webhooks"), []),
        })

        assert results == {"credits": {"balance": 120}, "webhooks": []}

    def test_unexpected_exceptions_propagate(self):
        def broken():
            raise KeyError("bug")

        with pytest.raises(KeyError):
            gather_with_defaults({"broken": (broken, None)})


def test_get_stats(make_client, api_key_store):
    headers = {
        "X-RateLimit-Limit": "10",
        "X-RateLimit-Remaining": "3",
        "X-RateLimit-Reset": "1700000000",
    }
    client = make_client(lambda r: httpx.Response(200, json={}, headers=headers), api_key_store)
    client.get("/api/a")
    client.get("/api/b")

    assert client.get_stats() == {
        "base_url": BASE_URL,
        "request_count": 2,
        "rate_limit": {"limit": 10, "remaining": 3, "reset": 1700000000},
    }


def test_bearer_token_refreshes_expired_session(make_client, expired_session_store, refresh_response):
    paths = []

    def handler(request):
        paths.append(request.url.path)
        return httpx.Response(200, json=refresh_response)

    client = make_client(handler, expired_session_store)
    assert client.bearer_token() == "at_new"
    assert paths == ["/api/cli/auth/refresh"]


def test_bearer_token_without_credentials(make_client):
    client = make_client(lambda r: httpx.Response(500), MemoryCredentialStore(env={}))
    assert client.bearer_token() is None
