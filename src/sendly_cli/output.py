"""
Operator-facing console output.

Human mode prints colored one-liners; JSON mode prints machine-readable
objects only. Logs go to stderr through structlog and never mix with this.
"""

import json
import sys
from typing import Any

from colorama import Fore, Style, init

from sendly_cli.errors import ApiError, SendlyError

_state = {"format": "human", "quiet": False, "color": True}


def configure(output_format: str = "human", quiet: bool = False, color: bool = True) -> None:
    _state["format"] = output_format
    _state["quiet"] = quiet
    _state["color"] = color
    if color:
        init()


def is_json_mode() -> bool:
    return _state["format"] == "json"


def _paint(color: str, text: str) -> str:
    if not _state["color"]:
        return text
    return f"{color}{text}{Style.RESET_ALL}"


def green(text: str) -> str:
    return _paint(Fore.GREEN, text)


def red(text: str) -> str:
    return _paint(Fore.RED, text)


def yellow(text: str) -> str:
    return _paint(Fore.YELLOW, text)


def blue(text: str) -> str:
    return _paint(Fore.CYAN, text)


def bold(text: str) -> str:
    return _paint(Style.BRIGHT, text)


def dim(text: str) -> str:
    return _paint(Style.DIM, text)


def echo(msg: str = "") -> None:
    if is_json_mode() or _state["quiet"]:
        return
    print(msg)


def print_success(msg: str):
    echo(green(f"✓ {msg}"))


def print_warning(msg: str):
    echo(yellow(f"⚠ {msg}"))


def print_info(msg: str):
    echo(blue(f"ℹ {msg}"))


def print_error(msg: str, details: dict[str, Any] | None = None):
    """Errors are shown even in quiet mode, on stderr."""
    if is_json_mode():
        print(json.dumps({"error": msg, **(details or {})}), file=sys.stderr)
        return
    print(red(f"✗ {msg}"), file=sys.stderr)
    for key, value in (details or {}).items():
        print(f"  {dim(key + ':')} {value}", file=sys.stderr)


def print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def render_error(err: SendlyError) -> None:
    """Message, code, hint and details for any runtime error."""
    if isinstance(err, ApiError):
        if is_json_mode():
            print(json.dumps(err.to_dict()), file=sys.stderr)
            return
        details: dict[str, Any] = {}
        if err.code:
            details["code"] = err.code
        if err.details:
            details.update(err.details)
        if err.hint:
            details["hint"] = err.hint
        print_error(err.message, details)
        return
    print_error(str(err))
