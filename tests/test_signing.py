"""
Tests for relay event signatures.
"""

import hashlib
import hmac
import json

from sendly_cli.signing import canonical_json, compute_signature, verify_signature

SECRET = "whsec_test"
EVENT = {"id": "evt_1", "type": "message.delivered", "data": {"message_id": "msg_1", "to": "+15551234567"}}


def test_canonical_json_is_compact_and_ordered():
    assert canonical_json({"b": 1, "a": [1, 2]}) == '{"b":1,"a":[1,2]}'


def test_canonical_json_keeps_unicode():
    assert canonical_json({"text": "héllo"}) == '{"text":"héllo"}'


def test_signature_matches_hmac_sha256():
    expected = hmac.new(
        SECRET.encode(),
        f"1700000000.{canonical_json(EVENT)}".encode(),
        hashlib.sha256,
    ).hexdigest()
    assert compute_signature(SECRET, 1700000000, EVENT) == expected


def test_valid_signature_verifies():
    signature = compute_signature(SECRET, 1700000000, EVENT)
    assert verify_signature(SECRET, 1700000000, EVENT, signature)
    assert verify_signature(SECRET, 1700000000, EVENT, signature.upper())


def test_tampered_inputs_fail():
    signature = compute_signature(SECRET, 1700000000, EVENT)
    assert not verify_signature(SECRET, 1700000001, EVENT, signature)
    assert not verify_signature("whsec_other", 1700000000, EVENT, signature)
    assert not verify_signature(SECRET, 1700000000, {**EVENT, "type": "message.failed"}, signature)


def test_empty_signature_fails():
    assert not verify_signature(SECRET, 1700000000, EVENT, "")


def test_any_single_character_change_alters_signature():
    payload = canonical_json(EVENT)
    original = compute_signature(SECRET, 1700000000, EVENT)
    assert compute_signature(SECRET, 1700000000, EVENT) == original

    for i in range(len(payload)):
        if not payload[i].isalnum():
            continue
        flipped = payload[:i] + ("X" if payload[i] != "X" else "Y") + payload[i + 1:]
        assert compute_signature(SECRET, 1700000000, json.loads(flipped)) != original
