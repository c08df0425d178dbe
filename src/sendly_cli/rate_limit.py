"""
Rate-limit snapshot tracking.

The Sendly API reports quota on every response. We keep only the most
recent values; nothing is throttled client-side and nothing is persisted.
"""

import threading
from dataclasses import dataclass
from typing import Mapping

LIMIT_HEADER = "X-RateLimit-Limit"
REMAINING_HEADER = "X-RateLimit-Remaining"
RESET_HEADER = "X-RateLimit-Reset"


@dataclass(frozen=True)
class RateLimitInfo:
    """Last observed quota values."""
    limit: int
    remaining: int
    reset: int  # epoch seconds


def parse_rate_limit(headers: Mapping[str, str]) -> RateLimitInfo | None:
    """Return a snapshot if all three headers are present and integral."""
    values = [headers.get(name) for name in (LIMIT_HEADER, REMAINING_HEADER, RESET_HEADER)]
    if any(v is None or v == "" for v in values):
        return None
    try:
        limit, remaining, reset = (int(v) for v in values)
    except ValueError:
        return None
    return RateLimitInfo(limit=limit, remaining=remaining, reset=reset)


class RateLimitTracker:
    """
    Thread-safe holder for the latest RateLimitInfo.

    Every recorded snapshot replaces the previous one wholesale.
    """

    def __init__(self) -> None:
        self._info: RateLimitInfo | None = None
        self._lock = threading.Lock()

    def record(self, headers: Mapping[str, str]) -> RateLimitInfo | None:
        info = parse_rate_limit(headers)
        if info is not None:
            with self._lock:
                self._info = info
        return info

    def current(self) -> RateLimitInfo | None:
        with self._lock:
            return self._info

    def reset(self) -> None:
        """Forget the snapshot (used by tests)."""
        with self._lock:
            self._info = None


# Process-wide slot shared by every ApiClient
tracker = RateLimitTracker()


def record(headers: Mapping[str, str]) -> RateLimitInfo | None:
    return tracker.record(headers)


def current() -> RateLimitInfo | None:
    return tracker.current()
