"""
Pydantic models for Sendly API payloads used by the client runtime.

Only the fields the runtime acts on are declared; everything else the
server sends is kept (extra="allow") so forwarded events stay intact.
"""

from dataclasses import dataclass, field
from typing import Any

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    ValidationInfo,
    field_validator,
)

DEFAULT_RELAY_EVENTS = (
    "message.sent",
    "message.delivered",
    "message.failed",
    "message.bounced",
)


@dataclass(frozen=True)
class RequestSpec:
    """One outbound API call. Built once per request, never mutated."""
    method: str
    path: str
    body: dict[str, Any] | None = None
    query: dict[str, Any] | None = None
    require_auth: bool = True

    def query_params(self) -> dict[str, str]:
        """Query values as strings, with None values dropped."""
        if not self.query:
            return {}
        params = {}
        for key, value in self.query.items():
            if value is None:
                continue
            if isinstance(value, bool):
                value = "true" if value else "false"
            params[key] = str(value)
        return params


class TokenResponse(BaseModel):
    """Response of the token refresh endpoint."""

    model_config = ConfigDict(populate_by_name=True)

    access_token: str = Field(alias="accessToken")
    refresh_token: str = Field(alias="refreshToken")
    expires_in: int = Field(default=3600, alias="expiresIn")
    user_id: str | None = Field(default=None, alias="userId")
    email: str | None = None


class RelayRegistration(BaseModel):
    """Response of POST /api/cli/webhooks/listen."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    secret: SecretStr
    ws_url: str = Field(alias="wsUrl")


class RelaySession(BaseModel):
    """A registered relay session. The secret never shows up in repr/logs."""

    session_id: str
    secret: SecretStr
    forward_url: str
    events: list[str] = Field(default_factory=lambda: list(DEFAULT_RELAY_EVENTS))
    ws_url: str


class RelayEvent(BaseModel):
    """Event pushed over the relay connection."""

    model_config = ConfigDict(extra="allow")

    id: str | None = None
    type: str = "unknown"
    created: float | None = None
    data: dict[str, Any] = Field(default_factory=dict)

    @field_validator("id", "type", mode="before")
    @classmethod
    def coerce_str(cls, v: Any, info: ValidationInfo) -> Any:
        if v is None:
            return "unknown" if info.field_name == "type" else None
        return v if isinstance(v, str) else str(v)

    @field_validator("created", mode="before")
    @classmethod
    def coerce_created(cls, v: Any) -> Any:
        return v if isinstance(v, (int, float)) and not isinstance(v, bool) else None

    @field_validator("data", mode="before")
    @classmethod
    def coerce_data(cls, v: Any) -> dict[str, Any]:
        return v if isinstance(v, dict) else {}

    @property
    def message_id(self) -> str | None:
        return self.data.get("message_id") or self.data.get("id") or self.id

    @property
    def to(self) -> str | None:
        return self.data.get("to")


class RelayEnvelope(BaseModel):
    """
    Inbound relay message.

    Either {"type": "cli_connected"} or
    {"type": "webhook_event", "event": {...}, "timestamp": n, "signature": "hex"}.
    """

    type: str
    event: dict[str, Any] | None = None
    timestamp: int | None = None
    signature: str | None = None

    @property
    def is_event(self) -> bool:
        return self.type == "webhook_event"


@dataclass
class DashboardSummary:
    """What `sendly status` shows; each part may be a fallback default."""
    credits: dict[str, Any] = field(default_factory=dict)
    messages: list[dict[str, Any]] = field(default_factory=list)
    webhooks: list[dict[str, Any]] = field(default_factory=list)
