#!/usr/bin/env python3
"""
Sendly CLI

Usage:
    sendly login --api-key sk_test_v1_...   # Store and verify an API key
    sendly logout                           # Clear stored credentials
    sendly whoami                           # Show current credentials
    sendly status                           # Account dashboard
    sendly config list|get|set              # Local configuration
    sendly webhooks listen                  # Relay live events to localhost
    sendly logs tail                        # Stream recent activity
"""

import argparse
import asyncio
import re
import sys
from datetime import datetime, timedelta, timezone
from typing import Any

from sendly_cli import __version__, output
from sendly_cli.client import ApiClient, gather_with_defaults
from sendly_cli.config import (
    API_KEY_PATTERN,
    ConfigStore,
    MemoryCredentialStore,
    coerce_setting,
)
from sendly_cli.errors import AuthenticationError, SendlyError
from sendly_cli.logging_config import setup_logging
from sendly_cli.models import DashboardSummary
from sendly_cli.output import (
    blue,
    bold,
    dim,
    print_error,
    print_info,
    print_success,
    print_warning,
)
from sendly_cli.polling import PeriodicTask
from sendly_cli.relay import EventRelay, parse_event_types, start_session

VERIFY_KEY_PATH = "/api/cli/auth/verify-key"
LOGS_PATH = "/api/logs"
TAIL_INTERVAL_SECONDS = 2.0
SINCE_PATTERN = re.compile(r"^(\d+)([mhd])$")
SECRET_KEYS = ("api_key", "access_token", "refresh_token")


def print_banner():
    """Print the banner."""
    output.echo(bold(blue("Sendly CLI")) + dim(f" v{__version__}"))
    output.echo(dim("─" * 60))
    output.echo()


def build_client(store: ConfigStore) -> ApiClient:
    return ApiClient(store)


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------

def cmd_login(args, store: ConfigStore):
    """Verify an API key with the server, then store it."""
    api_key = args.api_key.strip()
    if not API_KEY_PATTERN.match(api_key):
        print_error("Invalid API key format. Expected sk_test_v1_xxx or sk_live_v1_xxx")
        return 1

    verifier = ApiClient(
        MemoryCredentialStore({"api_key": api_key}, env={}),
        base_url=store.effective("base_url"),
        timeout_ms=store.effective("timeout"),
        max_retries=store.effective("max_retries"),
    )
    with verifier:
        verifier.post(VERIFY_KEY_PATH)

    store.set_api_key(api_key)
    if output.is_json_mode():
        output.print_json({"authenticated": True, "environment": store.get("environment")})
    else:
        print_success(f"Logged in with {store.get('environment')} API key")
    return 0


def cmd_logout(args, store: ConfigStore):
    store.clear_auth()
    print_success("Logged out")
    return 0


def cmd_whoami(args, store: ConfigStore):
    api_key = store.current_api_key()
    info: dict[str, Any] = {
        "authenticated": store.is_authenticated(),
        "environment": store.effective("environment"),
        "email": store.get("email"),
        "user_id": store.get("user_id"),
        "key_type": None,
    }
    if api_key:
        info["key_type"] = "test" if api_key.startswith("sk_test_") else "live"

    if output.is_json_mode():
        output.print_json(info)
        return 0 if info["authenticated"] else 1

    if not info["authenticated"]:
        print_warning("Not logged in")
        print_info("Run 'sendly login --api-key sk_test_v1_...' to authenticate")
        return 1

    print_success("Authenticated")
    for key in ("email", "user_id", "environment", "key_type"):
        if info[key]:
            output.echo(f"  {dim(key + ':')} {info[key]}")
    return 0


# ---------------------------------------------------------------------------
# Status dashboard
# ---------------------------------------------------------------------------

def load_dashboard(client: ApiClient) -> DashboardSummary:
    """Independent calls run concurrently; any that fail fall back to empty."""
    results = gather_with_defaults({
        "credits": (lambda: client.get("/api/credits"), {}),
        "messages": (lambda: client.get("/api/v1/messages", {"limit": 5}), {"data": []}),
        "webhooks": (lambda: client.get("/api/webhooks"), []),
    })
    messages = results["messages"]
    if isinstance(messages, dict):
        messages = messages.get("data", [])
    webhooks = results["webhooks"]
    if isinstance(webhooks, dict):
        webhooks = webhooks.get("data", [])
    return DashboardSummary(
        credits=results["credits"] if isinstance(results["credits"], dict) else {},
        messages=messages if isinstance(messages, list) else [],
        webhooks=webhooks if isinstance(webhooks, list) else [],
    )


def cmd_status(args, store: ConfigStore):
    if not store.is_authenticated():
        raise AuthenticationError()

    with build_client(store) as client:
        summary = load_dashboard(client)
        rate = client.get_rate_limit_info()

    if output.is_json_mode():
        output.print_json({
            "credits": summary.credits,
            "messages": summary.messages,
            "webhooks": summary.webhooks,
            "rate_limit": None if rate is None else vars(rate),
        })
        return 0

    print_banner()
    output.echo(bold("Account"))
    output.echo(f"  {dim('environment:')} {store.effective('environment')}")
    balance = summary.credits.get("balance")
    output.echo(f"  {dim('credits:')} {balance if balance is not None else 'unavailable'}")
    output.echo()

    output.echo(bold("Recent messages"))
    if not summary.messages:
        output.echo(dim("  none"))
    for msg in summary.messages:
        output.echo(f"  {msg.get('id', '?')}  {msg.get('to', '')}  {msg.get('status', '')}")
    output.echo()

    output.echo(bold("Webhooks"))
    output.echo(f"  {len(summary.webhooks)} configured")

    if rate is not None:
        output.echo()
        reset = datetime.fromtimestamp(rate.reset).strftime("%H:%M:%S")
        output.echo(dim(f"Rate limit: {rate.remaining}/{rate.limit} remaining, resets {reset}"))
    return 0


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------

def cmd_config(args, store: ConfigStore):
    if args.config_command == "list":
        values = {k: v for k, v in store.as_dict().items() if k not in SECRET_KEYS}
        if output.is_json_mode():
            output.print_json(values)
        else:
            for key in sorted(values):
                output.echo(f"{dim(key + ':')} {values[key]}")
            output.echo(dim(f"\n{store.config_path}"))
        return 0

    if args.config_command == "get":
        value = store.effective(args.key)
        if args.key in SECRET_KEYS and value:
            value = f"{value[:8]}...{value[-4:]}" if len(value) > 12 else "(set)"
        if output.is_json_mode():
            output.print_json({args.key: value})
        else:
            output.echo("" if value is None else str(value))
        return 0

    try:
        value = coerce_setting(args.key, args.value)
    except ValueError as e:
        print_error(str(e))
        return 1
    store.set(args.key, value)
    print_success(f"Set {args.key} = {value}")
    return 0


# ---------------------------------------------------------------------------
# Webhook relay
# ---------------------------------------------------------------------------

def cmd_webhooks_listen(args, store: ConfigStore):
    events = parse_event_types(args.events)
    client = build_client(store)

    with client:
        session = start_session(client, args.forward, events)

        output.echo()
        output.echo(bold(blue("Webhook listener ready!")))
        output.echo()
        output.echo(f"  {dim('Forwarding to:')} {session.forward_url}")
        output.echo(f"  {dim('Events:')}        {', '.join(session.events)}")
        output.echo()
        output.echo(f"  {dim('Webhook Secret:')}")
        output.echo(f"  {blue(session.secret.get_secret_value())}")
        output.echo()
        output.echo(dim("Use this secret to verify webhook signatures in your app."))
        output.echo()
        output.echo(bold("Waiting for events..."))
        output.echo(dim("─" * 60))
        output.echo()

        relay = EventRelay(client, session)
        asyncio.run(relay.run_until_signal())

    output.echo()
    print_info(
        f"Listener stopped ({relay.stats.received} received, "
        f"{relay.stats.forwarded} forwarded, {relay.stats.rejected} rejected)"
    )
    return 0


# ---------------------------------------------------------------------------
# Logs
# ---------------------------------------------------------------------------

def parse_since(since: str, now: datetime | None = None) -> datetime:
    """'30m' / '1h' / '2d' -> a UTC datetime; anything else means one hour ago."""
    now = now or datetime.now(timezone.utc)
    match = SINCE_PATTERN.match(since or "")
    if not match:
        return now - timedelta(hours=1)
    value, unit = int(match.group(1)), match.group(2)
    if unit == "m":
        return now - timedelta(minutes=value)
    if unit == "d":
        return now - timedelta(days=value)
    return now - timedelta(hours=value)


LOG_ICONS = {
    "delivered": ("✓", output.green),
    "success": ("✓", output.green),
    "failed": ("✗", output.red),
    "error": ("✗", output.red),
    "queued": ("○", output.yellow),
    "pending": ("○", output.yellow),
    "sent": ("→", output.blue),
}


def display_log(entry: dict[str, Any]) -> None:
    if output.is_json_mode():
        output.print_json(entry)
        return

    try:
        when = datetime.fromisoformat(str(entry.get("timestamp", "")).replace("Z", "+00:00"))
        timestamp = when.astimezone().strftime("%H:%M:%S")
    except ValueError:
        timestamp = "--:--:--"

    status = entry.get("status", "")
    icon, color = LOG_ICONS.get(status, ("•", output.dim))
    kind = str(entry.get("type", "log")).upper()

    output.echo(f"{dim(timestamp)} {color(icon)} [{kind}] {color(status)}")
    if entry.get("to"):
        output.echo(f"  {dim('to:')} {entry['to']}")
    if entry.get("endpoint"):
        output.echo(f"  {dim('endpoint:')} {entry.get('method') or 'GET'} {entry['endpoint']}")
    if entry.get("messageId"):
        output.echo(f"  {dim('id:')} {entry['messageId']}")
    if entry.get("error"):
        output.echo(f"  {output.red('error:')} {entry['error']}")
    output.echo()


def cmd_logs_tail(args, store: ConfigStore):
    since = parse_since(args.since)
    filters = {"status": args.status, "type": args.type, "limit": 50}

    print_banner()
    output.echo(dim("Streaming logs in real-time. Press Ctrl+C to stop."))
    output.echo()

    with build_client(store) as client:
        initial = client.get(LOGS_PATH, {"since": since.isoformat(), **filters})
        entries = initial if isinstance(initial, list) else []
        if not entries:
            print_info("No recent logs found")
            output.echo()
        for entry in reversed(entries):
            display_log(entry)

        cursor = {"since": datetime.now(timezone.utc).isoformat()}

        def show(batch: Any) -> None:
            for entry in batch if isinstance(batch, list) else []:
                display_log(entry)
                cursor["since"] = entry.get("timestamp", cursor["since"])

        task = PeriodicTask(
            lambda: client.get(LOGS_PATH, {"since": cursor["since"], **filters}),
            TAIL_INTERVAL_SECONDS,
            on_result=show,
            name="logs-tail",
        )
        asyncio.run(task.run_until_signal())

    output.echo()
    print_info("Log streaming stopped")
    return 0


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sendly",
        description="Sendly CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  sendly login --api-key sk_test_v1_xxx      Authenticate
  sendly status                              Account overview
  sendly webhooks listen --forward http://localhost:3000/webhook
  sendly logs tail --since 30m --status failed
        """,
    )
    parser.add_argument("--version", action="version", version=f"sendly/cli/{__version__}")
    parser.add_argument("--json", action="store_true", help="Output in JSON format")
    parser.add_argument("-q", "--quiet", action="store_true", help="Minimal output")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging on stderr")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    login_parser = subparsers.add_parser("login", help="Authenticate with an API key")
    login_parser.add_argument("--api-key", required=True, help="sk_test_v1_... or sk_live_v1_...")

    subparsers.add_parser("logout", help="Clear stored credentials")
    subparsers.add_parser("whoami", help="Show current credentials")
    subparsers.add_parser("status", help="Account dashboard")

    config_parser = subparsers.add_parser("config", help="Manage local configuration")
    config_sub = config_parser.add_subparsers(dest="config_command", required=True)
    config_sub.add_parser("list", help="Show all settings")
    get_parser = config_sub.add_parser("get", help="Show one setting")
    get_parser.add_argument("key")
    set_parser = config_sub.add_parser("set", help="Change one setting")
    set_parser.add_argument("key")
    set_parser.add_argument("value")

    webhooks_parser = subparsers.add_parser("webhooks", help="Webhook tools")
    webhooks_sub = webhooks_parser.add_subparsers(dest="webhooks_command", required=True)
    listen_parser = webhooks_sub.add_parser("listen", help="Relay live events to a local URL")
    listen_parser.add_argument(
        "-f", "--forward",
        default="http://localhost:3000/webhook",
        help="Local URL to forward events to",
    )
    listen_parser.add_argument(
        "-e", "--events",
        default=None,
        help="Comma-separated list of events to listen for",
    )

    logs_parser = subparsers.add_parser("logs", help="Activity logs")
    logs_sub = logs_parser.add_subparsers(dest="logs_command", required=True)
    tail_parser = logs_sub.add_parser("tail", help="Stream logs in real time")
    tail_parser.add_argument("-s", "--status", help="Filter by status (sent, delivered, failed)")
    tail_parser.add_argument("-t", "--type", help="Filter by type (message, api_call, webhook)")
    tail_parser.add_argument("--since", default="1h", help="Show logs since (e.g. 1h, 30m, 1d)")

    return parser


def main(argv: list[str] | None = None):
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging("DEBUG" if args.verbose else None)
    store = ConfigStore()
    output_format = "json" if args.json else store.effective("default_format")
    output.configure(output_format, args.quiet, bool(store.effective("color_enabled")))

    if args.command is None:
        print_banner()
        parser.print_help()
        return 0

    commands = {
        "login": cmd_login,
        "logout": cmd_logout,
        "whoami": cmd_whoami,
        "status": cmd_status,
        "config": cmd_config,
        "webhooks": cmd_webhooks_listen,
        "logs": cmd_logs_tail,
    }

    try:
        return commands[args.command](args, store)
    except SendlyError as e:
        output.render_error(e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
