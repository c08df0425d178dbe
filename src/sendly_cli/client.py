"""
Sendly API Client

Synchronous HTTP client shared by every CLI command:
- Bearer auth from the credential store (API key or session token)
- Transparent session refresh on 401, at most one refresh in flight
- Retry with exponential backoff for transient errors (5xx, network)
- Typed errors for everything else
- Rate-limit snapshot bookkeeping
"""

import json
import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable

import httpx
import structlog
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from sendly_cli import __version__
from sendly_cli import rate_limit
from sendly_cli.config import DEFAULT_BASE_URL, CredentialStore
from sendly_cli.errors import (
    ApiConnectionError,
    ApiError,
    AuthenticationError,
    SendlyError,
    classify,
)
from sendly_cli.models import RequestSpec, TokenResponse
from sendly_cli.rate_limit import RateLimitInfo, RateLimitTracker

logger = structlog.get_logger(__name__)

USER_AGENT = f"sendly/cli/{__version__}"
ORGANIZATION_HEADER = "X-Organization-Id"
REFRESH_PATH = "/api/cli/auth/refresh"

DEFAULT_TIMEOUT_MS = 30000
DEFAULT_MAX_RETRIES = 3
MAX_BACKOFF_SECONDS = 10


# ---------------------------------------------------------------------------
# Retry Configuration
# ---------------------------------------------------------------------------

def is_retryable_error(exception: BaseException) -> bool:
    """Only transport failures and 5xx are worth another attempt."""
    if isinstance(exception, ApiConnectionError):
        return True
    if isinstance(exception, ApiError) and exception.status_code is not None:
        return exception.status_code >= 500
    return False


def _decode_error_body(response: httpx.Response) -> dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class ApiClient:
    """
    Sendly API client.

    Commands receive an instance rather than subclassing anything:

        store = ConfigStore()
        with ApiClient(store) as client:
            me = client.get("/api/cli/auth/me")
            client.post("/api/v1/messages", {"to": "+15551234567", "text": "hi"})

    `sleep` is the delay primitive used between retries; tests pass a
    recorder instead of time.sleep.
    """

    def __init__(
        self,
        store: CredentialStore,
        base_url: str | None = None,
        timeout_ms: int | None = None,
        max_retries: int | None = None,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
        rate_limits: RateLimitTracker | None = None,
    ):
        self.store = store
        self._base_url = base_url
        self.timeout_ms = timeout_ms if timeout_ms is not None else (
            store.effective("timeout") or DEFAULT_TIMEOUT_MS
        )
        configured_retries = store.effective("max_retries")
        self.max_retries = max_retries if max_retries is not None else (
            configured_retries if configured_retries is not None else DEFAULT_MAX_RETRIES
        )
        self._transport = transport
        self._sleep = sleep
        self.rate_limits = rate_limits or rate_limit.tracker

        self._client: httpx.Client | None = None

        # Single-flight token refresh
        self._refresh_lock = threading.Lock()
        self._refresh_future: Future[bool] | None = None

        self._request_count = 0
        self._log = logger.bind(base_url=self.base_url)

    def _build_client(self) -> httpx.Client:
        return httpx.Client(
            timeout=self.timeout_ms / 1000,
            transport=self._transport,
            headers={"User-Agent": USER_AGENT},
        )

    def __enter__(self) -> "ApiClient":
        """Initialize HTTP client with connection pooling."""
        if self._client is None:
            self._client = self._build_client()
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def close(self) -> None:
        if self._client:
            self._client.close()
            self._client = None

    @property
    def client(self) -> httpx.Client:
        """Get HTTP client, creating if needed."""
        if self._client is None:
            self._client = self._build_client()
        return self._client

    @property
    def base_url(self) -> str:
        url = self._base_url or self.store.effective("base_url") or DEFAULT_BASE_URL
        return url.rstrip("/")

    def _headers(self, token: str | None, json_body: bool = True) -> dict[str, str]:
        headers = {
            "Accept": "application/json",
            "User-Agent": USER_AGENT,
        }
        if json_body:
            headers["Content-Type"] = "application/json"
        if token:
            headers["Authorization"] = f"Bearer {token}"
        org_id = self.store.organization_id()
        if org_id:
            headers[ORGANIZATION_HEADER] = org_id
        return headers

    # -------------------------------------------------------------------------
    # Token refresh
    # -------------------------------------------------------------------------

    def refresh_session(self) -> bool:
        """
        Exchange the stored refresh token for a new access token.

        Concurrent callers share one in-flight refresh and all get its result.
        """
        with self._refresh_lock:
            future = self._refresh_future
            owner = future is None
            if owner:
                future = self._refresh_future = Future()

        if not owner:
            return future.result()

        refreshed = False
        try:
            refreshed = self._do_refresh()
        finally:
            with self._refresh_lock:
                self._refresh_future = None
            future.set_result(refreshed)
        return refreshed

    def _do_refresh(self) -> bool:
        refresh_token = self.store.refresh_token()
        if not refresh_token:
            return False

        log = self._log.bind(path=REFRESH_PATH)
        log.debug("Refreshing session token")
        try:
            response = self.client.post(
                f"{self.base_url}{REFRESH_PATH}",
                content=json.dumps({"refreshToken": refresh_token}),
                headers=self._headers(None),
            )
        except httpx.TransportError as e:
            log.warning("Token refresh failed", error=str(e))
            return False

        if not response.is_success:
            log.warning("Token refresh rejected", status_code=response.status_code)
            return False

        try:
            tokens = TokenResponse.model_validate(response.json())
        except ValueError as e:
            log.warning("Token refresh returned an invalid body", error=str(e))
            return False

        self.store.persist_refreshed_tokens(
            tokens.access_token,
            tokens.refresh_token,
            tokens.expires_in,
            tokens.user_id,
            tokens.email,
        )
        log.info("Session token refreshed", expires_in=tokens.expires_in)
        return True

    def bearer_token(self) -> str | None:
        """Token for non-HTTP channels (the relay socket), refreshing an expired session first."""
        token = self.store.current_token()
        if token is None and self.store.has_refreshable_session() and self.refresh_session():
            token = self.store.current_token()
        return token

    # -------------------------------------------------------------------------
    # Request lifecycle
    # -------------------------------------------------------------------------

    def _send(
        self,
        spec: RequestSpec,
        token: str | None,
        files: Any = None,
    ) -> httpx.Response:
        self._request_count += 1
        request_id = self._request_count
        kwargs: dict[str, Any] = {
            "params": spec.query_params(),
            "headers": self._headers(token, json_body=files is None),
        }
        if files is not None:
            kwargs["files"] = files
            if spec.body:
                kwargs["data"] = {k: str(v) for k, v in spec.body.items()}
        elif spec.body is not None:
            kwargs["content"] = json.dumps(spec.body)

        log = self._log.bind(method=spec.method, path=spec.path, request_id=request_id)
        log.debug("API request")
        start_time = time.monotonic()
        try:
            response = self.client.request(spec.method, f"{self.base_url}{spec.path}", **kwargs)
        except httpx.TransportError as e:
            log.debug("API transport error", error=str(e))
            raise ApiConnectionError(f"Network error: {e}") from e

        log.debug(
            "API response",
            status_code=response.status_code,
            elapsed_ms=round((time.monotonic() - start_time) * 1000),
        )
        return response

    def _resolve_token(self, spec: RequestSpec) -> tuple[str | None, bool]:
        """Bearer token for this call, plus whether a refresh was already spent."""
        if not spec.require_auth:
            return None, False

        token = self.store.current_token()
        refresh_attempted = False
        if token is None and self.store.has_refreshable_session():
            refresh_attempted = True
            if self.refresh_session():
                token = self.store.current_token()
        if token is None:
            raise AuthenticationError()
        return token, refresh_attempted

    def execute(self, spec: RequestSpec, files: Any = None) -> Any:
        """
        Run one logical call with refresh and retry.

        Returns the decoded JSON body ({} for an empty body). Raises an
        ApiError subclass on failure.
        """
        log = self._log.bind(method=spec.method, path=spec.path)
        token, refresh_attempted = self._resolve_token(spec)

        @retry(
            retry=retry_if_exception(is_retryable_error),
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait_exponential(multiplier=1, max=MAX_BACKOFF_SECONDS),
            sleep=self._sleep,
            before_sleep=before_sleep_log(log, logging.INFO),
            reraise=True,
        )
        def _attempt() -> Any:
            nonlocal token, refresh_attempted

            response = self._send(spec, token, files)

            # One refresh-and-replay per call, outside the retry budget
            if (
                response.status_code == 401
                and spec.require_auth
                and not refresh_attempted
                and self.store.has_refreshable_session()
            ):
                refresh_attempted = True
                if self.refresh_session():
                    token = self.store.current_token() or token
                    log.info("Replaying request with refreshed token")
                    response = self._send(spec, token, files)

            if not response.is_success:
                raise classify(response.status_code, _decode_error_body(response))

            self.rate_limits.record(response.headers)

            if not response.content:
                return {}
            try:
                return response.json()
            except ValueError as e:
                raise ApiError(
                    "invalid_response",
                    f"Invalid JSON response: {e}",
                    response.status_code,
                ) from e

        return _attempt()

    def request(
        self,
        method: str,
        path: str,
        body: dict[str, Any] | None = None,
        query: dict[str, Any] | None = None,
        require_auth: bool = True,
    ) -> Any:
        return self.execute(RequestSpec(method.upper(), path, body, query, require_auth))

    # -------------------------------------------------------------------------
    # Convenience methods
    # -------------------------------------------------------------------------

    def get(
        self,
        path: str,
        query: dict[str, Any] | None = None,
        require_auth: bool = True,
    ) -> Any:
        return self.request("GET", path, query=query, require_auth=require_auth)

    def post(
        self,
        path: str,
        body: dict[str, Any] | None = None,
        require_auth: bool = True,
    ) -> Any:
        return self.request("POST", path, body=body, require_auth=require_auth)

    def patch(
        self,
        path: str,
        body: dict[str, Any] | None = None,
        require_auth: bool = True,
    ) -> Any:
        return self.request("PATCH", path, body=body, require_auth=require_auth)

    def delete(self, path: str, require_auth: bool = True) -> Any:
        return self.request("DELETE", path, require_auth=require_auth)

    def upload_file(
        self,
        path: str,
        content: bytes,
        filename: str,
        mime_type: str = "application/octet-stream",
        fields: dict[str, Any] | None = None,
        require_auth: bool = True,
    ) -> Any:
        """POST a multipart/form-data upload with a single `file` part."""
        spec = RequestSpec("POST", path, body=fields, require_auth=require_auth)
        return self.execute(spec, files={"file": (filename, content, mime_type)})

    # -------------------------------------------------------------------------
    # Observability
    # -------------------------------------------------------------------------

    def get_rate_limit_info(self) -> RateLimitInfo | None:
        return self.rate_limits.current()

    def get_stats(self) -> dict[str, Any]:
        info = self.get_rate_limit_info()
        return {
            "base_url": self.base_url,
            "request_count": self._request_count,
            "rate_limit": None if info is None else {
                "limit": info.limit,
                "remaining": info.remaining,
                "reset": info.reset,
            },
        }


def gather_with_defaults(
    calls: dict[str, tuple[Callable[[], Any], Any]],
    max_workers: int = 4,
) -> dict[str, Any]:
    """
    Run independent API calls concurrently.

    `calls` maps a name to (zero-arg callable, default). A call that raises a
    SendlyError yields its default instead of failing the whole batch.
    """
    results: dict[str, Any] = {}
    with ThreadPoolExecutor(max_workers=max_workers) as pool:
        futures = {name: pool.submit(fn) for name, (fn, _) in calls.items()}
        for name, future in futures.items():
            try:
                results[name] = future.result()
            except SendlyError as e:
                logger.warning("Call failed, using default", call=name, error=str(e))
                results[name] = calls[name][1]
    return results
