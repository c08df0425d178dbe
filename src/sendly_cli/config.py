"""
CLI configuration and credential storage.

Stores preferences and credentials in ~/.sendly/config.json (mode 0600).
Environment variables take precedence over stored values:

    SENDLY_API_KEY        API key for authentication
    SENDLY_BASE_URL       Custom API endpoint
    SENDLY_OUTPUT_FORMAT  Default output format (human/json)
    SENDLY_NO_COLOR       Disable colored output (any value)
    SENDLY_TIMEOUT        Request timeout in ms (default: 30000)
    SENDLY_MAX_RETRIES    Max retry attempts (default: 3)
    SENDLY_ORG_ID         Active organization
    SENDLY_CONFIG_DIR     Override the config directory
"""

import json
import os
import re
import time
from pathlib import Path
from typing import Any, Protocol
from urllib.parse import urlparse

import structlog

logger = structlog.get_logger(__name__)

DEFAULT_BASE_URL = "https://sendly.live"

DEFAULTS: dict[str, Any] = {
    "environment": "test",
    "base_url": DEFAULT_BASE_URL,
    "default_format": "human",
    "color_enabled": True,
    "timeout": 30000,
    "max_retries": 3,
}

AUTH_KEYS = (
    "api_key",
    "access_token",
    "refresh_token",
    "token_expires_at",
    "user_id",
    "email",
)

API_KEY_PATTERN = re.compile(r"^sk_(test|live)_v1_[a-zA-Z0-9_-]+$")

SETTABLE_KEYS = (
    "environment",
    "base_url",
    "default_format",
    "color_enabled",
    "timeout",
    "max_retries",
    "organization_id",
)


def coerce_setting(key: str, value: str) -> Any:
    """Validate a `sendly config set` value and convert it to its stored type."""
    if key not in SETTABLE_KEYS:
        raise ValueError(f"Unknown config key '{key}'. Allowed: {', '.join(SETTABLE_KEYS)}")

    if key == "environment":
        if value not in ("test", "live"):
            raise ValueError("Invalid environment. Use 'test' or 'live'")
        return value
    if key == "default_format":
        if value not in ("human", "json"):
            raise ValueError("Invalid format. Use 'human' or 'json'")
        return value
    if key == "color_enabled":
        return value.lower() in ("true", "1", "yes")
    if key == "base_url":
        parsed = urlparse(value)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError("Invalid URL format")
        return value.rstrip("/")
    if key in ("timeout", "max_retries"):
        parsed_int = _positive_int(value, 1 if key == "timeout" else 0)
        if parsed_int is None:
            raise ValueError(f"{key} must be a {'positive' if key == 'timeout' else 'non-negative'} integer")
        return parsed_int
    return value or None


def get_config_dir() -> Path:
    override = os.environ.get("SENDLY_CONFIG_DIR")
    if override:
        return Path(override)
    return Path.home() / ".sendly"


def _positive_int(value: str | None, minimum: int) -> int | None:
    if value is None:
        return None
    try:
        parsed = int(value)
    except ValueError:
        return None
    return parsed if parsed >= minimum else None


class CredentialStore(Protocol):
    """What the API client needs from credential storage."""

    def current_token(self) -> str | None: ...

    def current_api_key(self) -> str | None: ...

    def refresh_token(self) -> str | None: ...

    def organization_id(self) -> str | None: ...

    def has_refreshable_session(self) -> bool: ...

    def effective(self, key: str) -> Any: ...

    def persist_refreshed_tokens(
        self,
        access_token: str,
        refresh_token: str,
        expires_in: int,
        user_id: str | None,
        email: str | None,
    ) -> None: ...


class MemoryCredentialStore:
    """
    In-memory credential store.

    Holds the same keys as the config file and applies the same
    environment overrides. ConfigStore adds persistence on top.
    """

    def __init__(self, values: dict[str, Any] | None = None, env: dict[str, str] | None = None):
        self._data: dict[str, Any] = dict(values or {})
        self._env = env

    # -------------------------------------------------------------------------
    # Raw access
    # -------------------------------------------------------------------------

    def _getenv(self, name: str) -> str | None:
        if self._env is not None:
            return self._env.get(name)
        return os.environ.get(name)

    def _save(self) -> None:
        pass

    def get(self, key: str) -> Any:
        """Stored value, falling back to the default."""
        if key in self._data:
            return self._data[key]
        return DEFAULTS.get(key)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = value
        self._save()

    def delete(self, *keys: str) -> None:
        for key in keys:
            self._data.pop(key, None)
        self._save()

    def as_dict(self) -> dict[str, Any]:
        merged = dict(DEFAULTS)
        merged.update(self._data)
        return merged

    # -------------------------------------------------------------------------
    # Effective values (env > stored > default)
    # -------------------------------------------------------------------------

    def effective(self, key: str) -> Any:
        if key == "api_key":
            override = self._getenv("SENDLY_API_KEY")
            if override:
                return override
        elif key == "base_url":
            override = self._getenv("SENDLY_BASE_URL")
            if override:
                return override
        elif key == "default_format":
            fmt = (self._getenv("SENDLY_OUTPUT_FORMAT") or "").lower()
            if fmt in ("json", "human"):
                return fmt
        elif key == "color_enabled":
            if (
                self._getenv("SENDLY_NO_COLOR")
                or self._getenv("NO_COLOR")
                or self._getenv("TERM") == "dumb"
            ):
                return False
        elif key == "timeout":
            timeout = _positive_int(self._getenv("SENDLY_TIMEOUT"), 1)
            if timeout is not None:
                return timeout
        elif key == "max_retries":
            retries = _positive_int(self._getenv("SENDLY_MAX_RETRIES"), 0)
            if retries is not None:
                return retries
        elif key == "organization_id":
            override = self._getenv("SENDLY_ORG_ID")
            if override:
                return override

        return self.get(key)

    # -------------------------------------------------------------------------
    # Credentials
    # -------------------------------------------------------------------------

    def current_api_key(self) -> str | None:
        return self.effective("api_key") or None

    def current_token(self) -> str | None:
        """
        Bearer token for the next request.

        API key (env first, then stored) wins over a session token. A session
        token is only returned while unexpired.
        """
        api_key = self.current_api_key()
        if api_key:
            return api_key

        access_token = self.get("access_token")
        expires_at = self.get("token_expires_at")
        if access_token and expires_at and time.time() * 1000 < expires_at:
            return access_token
        return None

    def refresh_token(self) -> str | None:
        return self.get("refresh_token") or None

    def organization_id(self) -> str | None:
        return self.effective("organization_id") or None

    def has_refreshable_session(self) -> bool:
        """
        A session is refreshable iff a refresh token is stored and no API key
        is in effect. API keys are never refreshed.
        """
        return self.current_api_key() is None and self.refresh_token() is not None

    def is_authenticated(self) -> bool:
        return bool(self.current_api_key() or self.get("access_token"))

    def persist_refreshed_tokens(
        self,
        access_token: str,
        refresh_token: str,
        expires_in: int,
        user_id: str | None = None,
        email: str | None = None,
    ) -> None:
        self._data["access_token"] = access_token
        self._data["refresh_token"] = refresh_token
        self._data["token_expires_at"] = int(time.time() * 1000) + int(expires_in) * 1000
        if user_id:
            self._data["user_id"] = user_id
        if email:
            self._data["email"] = email
        self._save()

    def set_api_key(self, api_key: str) -> None:
        """Store an API key; its prefix selects the environment."""
        if not API_KEY_PATTERN.match(api_key):
            raise ValueError(
                "Invalid API key format. Expected sk_test_v1_xxx or sk_live_v1_xxx"
            )
        self._data["api_key"] = api_key
        self._data["environment"] = "test" if api_key.startswith("sk_test_") else "live"
        self._save()

    def clear_auth(self) -> None:
        self.delete(*AUTH_KEYS)


class ConfigStore(MemoryCredentialStore):
    """
    JSON-file-backed store.

    Writes are atomic (temp file, then rename) and the file is chmod 600
    since it holds credentials.
    """

    def __init__(self, config_dir: str | Path | None = None):
        self.config_dir = Path(config_dir) if config_dir else get_config_dir()
        self.config_path = self.config_dir / "config.json"
        self._log = logger.bind(config_path=str(self.config_path))
        super().__init__(self._load())

    def _load(self) -> dict[str, Any]:
        if not self.config_path.exists():
            return {}
        try:
            with open(self.config_path, "r") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            self._log.warning("Failed to read config, using defaults", error=str(e))
            return {}
        if not isinstance(data, dict):
            self._log.warning("Config file is not an object, using defaults")
            return {}
        return data

    def _save(self) -> None:
        self.config_dir.mkdir(parents=True, exist_ok=True, mode=0o700)
        temp_file = self.config_path.with_suffix(".tmp")
        with open(temp_file, "w") as f:
            json.dump(self._data, f, indent=2)
        os.chmod(temp_file, 0o600)
        temp_file.replace(self.config_path)
        self._log.debug("Saved config", keys=sorted(self._data))
