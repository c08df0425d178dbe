"""
Live webhook relay for `sendly webhooks listen`.

Registers a temporary relay session with the Sendly API, holds a WebSocket
open to receive pushed events, checks each event's HMAC signature, and
forwards authentic events to the developer's local endpoint.

Lifecycle:
    IDLE -> STARTING -> CONNECTED -> (RECEIVING -> CONNECTED)* -> CLOSING -> CLOSED

A bad signature or a failed forward is reported and the relay keeps
listening. Only connection-level failures end the session.
"""

import asyncio
from contextlib import suppress
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable
from urllib.parse import quote, urlparse

import aiohttp
import httpx
import structlog
from pydantic import ValidationError

from sendly_cli import output
from sendly_cli.client import USER_AGENT, ApiClient
from sendly_cli.errors import RelayConnectionError, RelayError, SendlyError
from sendly_cli.models import (
    DEFAULT_RELAY_EVENTS,
    RelayEnvelope,
    RelayEvent,
    RelayRegistration,
    RelaySession,
)
from sendly_cli.polling import install_signal_handlers
from sendly_cli.signing import canonical_json, verify_signature

logger = structlog.get_logger(__name__)

LISTEN_PATH = "/api/cli/webhooks/listen"
CONNECT_TIMEOUT_SECONDS = 30.0
NORMAL_CLOSURE = 1000

SIGNATURE_HEADER = "X-Signature"
TIMESTAMP_HEADER = "X-Timestamp"
EVENT_TYPE_HEADER = "X-Event-Type"
EVENT_ID_HEADER = "X-Event-Id"

WebSocketConnect = Callable[[str, dict[str, str]], Awaitable[Any]]


class RelayState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    CONNECTED = "connected"
    RECEIVING = "receiving"
    CLOSING = "closing"
    CLOSED = "closed"


@dataclass
class RelayStats:
    """Counters for the end-of-session summary."""
    received: int = 0
    forwarded: int = 0
    forward_failed: int = 0
    rejected: int = 0
    unparseable: int = 0
    errors: int = 0


# ---------------------------------------------------------------------------
# Session registration
# ---------------------------------------------------------------------------

def validate_forward_url(url: str) -> str:
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise RelayError(f"Invalid forward URL '{url}'. Expected e.g. http://localhost:3000/webhook")
    return url


def parse_event_types(value: str | None) -> list[str]:
    """'a, b,,c' -> ['a', 'b', 'c']; empty -> the default subscription list."""
    if not value:
        return list(DEFAULT_RELAY_EVENTS)
    events = [e.strip() for e in value.split(",") if e.strip()]
    return events or list(DEFAULT_RELAY_EVENTS)


def start_session(
    client: ApiClient,
    forward_url: str,
    events: list[str] | None = None,
) -> RelaySession:
    """Register a relay session. The returned secret is shown to the operator once."""
    validate_forward_url(forward_url)
    events = list(events) if events else list(DEFAULT_RELAY_EVENTS)

    data = client.post(LISTEN_PATH, {"forwardUrl": forward_url, "events": events})
    try:
        registration = RelayRegistration.model_validate(data)
    except ValidationError as e:
        raise RelayError(f"Unexpected relay registration response: {e.error_count()} invalid field(s)") from e

    logger.info("Relay session registered", session_id=registration.id, events=events)
    return RelaySession(
        session_id=registration.id,
        secret=registration.secret,
        forward_url=forward_url,
        events=events,
        ws_url=registration.ws_url,
    )


def stop_session(client: ApiClient, session_id: str) -> bool:
    """Ask the API to drop the session. Failures are logged, never raised."""
    try:
        client.delete(f"{LISTEN_PATH}/{session_id}")
    except SendlyError as e:
        logger.warning("Could not deregister relay session", session_id=session_id, error=str(e))
        return False
    logger.info("Relay session deregistered", session_id=session_id)
    return True


# ---------------------------------------------------------------------------
# Relay
# ---------------------------------------------------------------------------

class EventRelay:
    """
    Receives events for one registered session and forwards them.

    Example:
        session = start_session(client, "http://localhost:3000/webhook")
        relay = EventRelay(client, session)
        asyncio.run(relay.run_until_signal())

    `connect` opens the WebSocket (aiohttp by default) and `http_client`
    performs the local forwards; both are replaceable for tests.
    """

    def __init__(
        self,
        client: ApiClient,
        session: RelaySession,
        connect: WebSocketConnect | None = None,
        http_client: httpx.AsyncClient | None = None,
        connect_timeout: float = CONNECT_TIMEOUT_SECONDS,
    ):
        self.client = client
        self.session = session
        self.connect_timeout = connect_timeout
        self.state = RelayState.STARTING
        self.stats = RelayStats()

        self._connect = connect or self._aiohttp_connect
        self._http = http_client
        self._owns_http = http_client is None
        self._aiohttp_session: aiohttp.ClientSession | None = None
        self._ws: Any = None
        self._closed = False

        self._log = logger.bind(session_id=session.session_id)

    @property
    def http(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self.client.timeout_ms / 1000)
        return self._http

    async def _aiohttp_connect(self, url: str, headers: dict[str, str]) -> aiohttp.ClientWebSocketResponse:
        self._aiohttp_session = aiohttp.ClientSession()
        return await self._aiohttp_session.ws_connect(url, headers=headers, heartbeat=30)

    # -------------------------------------------------------------------------
    # Connection
    # -------------------------------------------------------------------------

    async def _await_ack(self, ws: Any) -> None:
        while True:
            msg = await ws.receive()
            if msg.type != aiohttp.WSMsgType.TEXT:
                raise RelayConnectionError("Relay connection closed before it was acknowledged")
            envelope = self._parse(msg.data)
            if envelope is not None and envelope.type == "cli_connected":
                return
            self._log.debug("Ignoring message before acknowledgement")

    async def connect(self) -> Any:
        """Open the WebSocket and wait for the server's cli_connected message."""
        headers = {"User-Agent": USER_AGENT}
        token = await asyncio.to_thread(self.client.bearer_token)
        if token:
            headers["Authorization"] = f"Bearer {token}"

        async def _open() -> Any:
            ws = await self._connect(self.session.ws_url, headers)
            self._ws = ws
            await self._await_ack(ws)
            return ws

        try:
            ws = await asyncio.wait_for(_open(), timeout=self.connect_timeout)
        except asyncio.TimeoutError as e:
            self.state = RelayState.CLOSED
            raise RelayConnectionError(
                f"Timed out after {self.connect_timeout:.0f}s waiting for the relay connection"
            ) from e
        except (aiohttp.ClientError, OSError) as e:
            self.state = RelayState.CLOSED
            raise RelayConnectionError(f"Could not connect to relay: {e}") from e
        except RelayConnectionError:
            self.state = RelayState.CLOSED
            raise

        self.state = RelayState.CONNECTED
        self._log.info("Relay connected")
        return ws

    # -------------------------------------------------------------------------
    # Messages
    # -------------------------------------------------------------------------

    def _parse(self, raw: Any) -> RelayEnvelope | None:
        try:
            return RelayEnvelope.model_validate_json(raw)
        except ValidationError as e:
            self.stats.unparseable += 1
            self._log.warning("Unparseable relay message", error_count=e.error_count())
            return None

    async def handle_message(self, raw: Any) -> None:
        envelope = self._parse(raw)
        if envelope is None:
            return
        if not envelope.is_event:
            self._log.debug("Control message", type=envelope.type)
            return

        self.state = RelayState.RECEIVING
        try:
            await self.handle_event(envelope)
        except Exception as e:
            # One bad event must not end the session
            self.stats.errors += 1
            self._log.exception("Failed to process relay event", error=str(e))
            output.echo(f"  {output.red('✗')} Could not process event: {e}")
            output.echo()
        finally:
            self.state = RelayState.CONNECTED

    async def handle_event(self, envelope: RelayEnvelope) -> bool:
        """Display, verify, and forward one event. Returns True if forwarded."""
        self.stats.received += 1
        raw_event = envelope.event or {}
        event = RelayEvent.model_validate(raw_event)
        display_event(event, envelope.timestamp)

        if envelope.timestamp is None or not envelope.signature or not verify_signature(
            self.session.secret.get_secret_value(),
            envelope.timestamp,
            raw_event,
            envelope.signature,
        ):
            self.stats.rejected += 1
            self._log.warning("Signature verification failed", event_id=event.id)
            output.echo(f"  {output.red('✗')} Signature verification failed, event not forwarded")
            output.echo()
            return False

        return await self.forward(raw_event, envelope.timestamp, envelope.signature, event)

    async def forward(
        self,
        raw_event: dict[str, Any],
        timestamp: int,
        signature: str,
        event: RelayEvent,
    ) -> bool:
        """POST the event to the forward URL once. Failures are reported, not raised."""
        url = self.session.forward_url
        headers = {
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
            SIGNATURE_HEADER: signature,
            TIMESTAMP_HEADER: str(timestamp),
            EVENT_TYPE_HEADER: header_value(event.type),
            EVENT_ID_HEADER: header_value(event.id or ""),
        }
        try:
            response = await self.http.post(
                url,
                content=canonical_json(raw_event).encode("utf-8"),
                headers=headers,
            )
        except (httpx.HTTPError, ValueError) as e:
            self.stats.forward_failed += 1
            self._log.warning("Forward error", event_id=event.id, error=str(e))
            output.echo(f"  {output.red('✗')} Forward error: {e}")
            output.echo()
            return False

        if response.is_success:
            self.stats.forwarded += 1
            output.echo(f"  {output.green('✓')} Forwarded to {url} ({response.status_code})")
            output.echo()
            return True

        self.stats.forward_failed += 1
        self._log.warning("Forward failed", event_id=event.id, status_code=response.status_code)
        output.echo(f"  {output.red('✗')} Forward failed ({response.status_code})")
        output.echo()
        return False

    async def _read_loop(self, ws: Any) -> None:
        while True:
            msg = await ws.receive()
            if msg.type == aiohttp.WSMsgType.TEXT:
                await self.handle_message(msg.data)
                continue
            if msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSING, aiohttp.WSMsgType.CLOSED):
                break
            if msg.type == aiohttp.WSMsgType.ERROR:
                raise RelayConnectionError(f"Relay connection error: {msg.data}")

        code = getattr(ws, "close_code", None)
        if code not in (None, NORMAL_CLOSURE):
            raise RelayConnectionError(f"Relay connection closed unexpectedly (code {code})")
        self._log.info("Relay connection closed by server", close_code=code)

    # -------------------------------------------------------------------------
    # Run / close
    # -------------------------------------------------------------------------

    async def run(self, stop_event: asyncio.Event | None = None) -> None:
        """
        Connect and relay events until `stop_event` is set or the connection ends.

        Always closes before returning. Raises RelayConnectionError if the
        connection could not be opened or was lost.
        """
        stop_event = stop_event or asyncio.Event()
        try:
            ws = await self.connect()
        except RelayConnectionError:
            await self.close()
            raise

        reader = asyncio.create_task(self._read_loop(ws))
        stopper = asyncio.create_task(stop_event.wait())
        done, _ = await asyncio.wait({reader, stopper}, return_when=asyncio.FIRST_COMPLETED)

        error: BaseException | None = None
        if reader in done:
            stopper.cancel()
            error = reader.exception()
        else:
            reader.cancel()
            with suppress(asyncio.CancelledError):
                await reader

        await self.close()
        if error is not None:
            raise error

    async def run_until_signal(self) -> None:
        """run() with SIGINT/SIGTERM wired to a clean shutdown."""
        stop_event = asyncio.Event()
        install_signal_handlers(stop_event)
        await self.run(stop_event)

    async def close(self) -> None:
        """Close the socket with a normal-closure code and deregister the session."""
        if self._closed:
            return
        self._closed = True
        self.state = RelayState.CLOSING

        if self._ws is not None and not getattr(self._ws, "closed", False):
            await self._ws.close(code=NORMAL_CLOSURE)
        self._ws = None
        if self._aiohttp_session is not None:
            await self._aiohttp_session.close()
            self._aiohttp_session = None
        if self._owns_http and self._http is not None:
            await self._http.aclose()
            self._http = None

        await stop_session_async(self.client, self.session.session_id)
        self.state = RelayState.CLOSED
        self._log.info("Relay closed", **vars(self.stats))


def header_value(value: str) -> str:
    """Percent-encode anything outside visible ASCII so event fields are safe in headers."""
    return quote(value, safe="!#$&'*+-.^_`|~:/@=,;()")


async def stop_session_async(client: ApiClient, session_id: str) -> bool:
    return await asyncio.to_thread(stop_session, client, session_id)


def display_event(event: RelayEvent, delivered_at: int | None = None) -> None:
    """One block per event: time, type, and message id / recipient if present."""
    when = datetime.now()
    for epoch in (event.created, delivered_at):
        if not epoch:
            continue
        try:
            when = datetime.fromtimestamp(epoch)
            break
        except (OverflowError, OSError, ValueError):
            continue
    timestamp = when.strftime("%H:%M:%S")

    arrow = output.blue("→")
    if "delivered" in event.type:
        arrow = output.green("→")
    elif "failed" in event.type:
        arrow = output.red("→")

    output.echo(f"{output.dim(timestamp)} {arrow} {output.bold(event.type)}")
    if event.message_id:
        output.echo(f"  {output.dim('id:')} {event.message_id}")
    if event.to:
        output.echo(f"  {output.dim('to:')} {event.to}")
