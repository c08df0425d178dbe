"""
HMAC signatures for relayed webhook events.

signature = hex(HMAC-SHA256(secret, f"{timestamp}.{canonical_json(event)}"))
"""

import hashlib
import hmac
import json
from typing import Any


def canonical_json(event: Any) -> str:
    """Compact JSON with keys in received order, non-ASCII kept as-is."""
    return json.dumps(event, separators=(",", ":"), ensure_ascii=False)


def compute_signature(secret: str, timestamp: int, event: Any) -> str:
    payload = f"{timestamp}.{canonical_json(event)}"
    return hmac.new(
        secret.encode("utf-8"),
        payload.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


def verify_signature(secret: str, timestamp: int, event: Any, signature: str) -> bool:
    """Constant-time check of `signature` against the recomputed value."""
    if not signature:
        return False
    expected = compute_signature(secret, timestamp, event)
    return hmac.compare_digest(expected.encode("ascii"), signature.strip().lower().encode("utf-8"))
