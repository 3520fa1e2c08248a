from __future__ import annotations

from datetime import datetime, timedelta, timezone
import hashlib
import hmac

import pytest

from eventrelay.services.webhooks.signing import compute_signature, parse_signature, verify_signature


NOW = datetime(2026, 3, 1, 9, 30, tzinfo=timezone.utc)
BODY = b'{"id":"evt_1","type":"fx.quote.created","tenant_id":"t1","data":{"rate":"1.0842"}}'
SECRET = "whsec-test"


def test_signature_header_is_timestamp_and_hmac_of_raw_body() -> None:
    header = compute_signature(SECRET, BODY, NOW)
    expected_hex = hmac.new(SECRET.encode("utf-8"), BODY, hashlib.sha256).hexdigest()
    assert header == f"t={int(NOW.timestamp())}, v1={expected_hex}"

    parsed = parse_signature(header)
    assert parsed.timestamp == int(NOW.timestamp())
    assert parsed.digest_hex == expected_hex


def test_verification_accepts_untouched_body() -> None:
    header = compute_signature(SECRET, BODY, NOW)
    result = verify_signature(BODY, header, SECRET, now=NOW + timedelta(seconds=5))
    assert result.ok is True
    assert result.reason == "ok"


def test_altering_one_byte_invalidates_signature() -> None:
    header = compute_signature(SECRET, BODY, NOW)
    tampered = bytearray(BODY)
    tampered[10] ^= 0x01
    result = verify_signature(bytes(tampered), header, SECRET, now=NOW)
    assert result.ok is False
    assert result.reason == "signature_mismatch"


def test_wrong_secret_is_a_mismatch() -> None:
    header = compute_signature("other-secret", BODY, NOW)
    assert verify_signature(BODY, header, SECRET, now=NOW).reason == "signature_mismatch"


@pytest.mark.parametrize("header", [None, "", "   "])
def test_missing_signature(header: str | None) -> None:
    assert verify_signature(BODY, header, SECRET, now=NOW).reason == "missing_signature"


@pytest.mark.parametrize(
    "header",
    [
        "sha256=" + "0" * 64,
        "t=1700000000",
        "v1=" + "0" * 64,
        "t=abc, v1=" + "0" * 64,
        "t=1700000000, v1=xyz",
        "t=1700000000, v1=" + "0" * 10,
        "t=1700000000, t=1700000001, v1=" + "0" * 64,
    ],
)
def test_malformed_signature_headers(header: str) -> None:
    with pytest.raises(ValueError, match="invalid_signature_format"):
        parse_signature(header)
    assert verify_signature(BODY, header, SECRET, now=NOW).reason == "invalid_signature_format"


def test_timestamp_outside_tolerance_is_rejected() -> None:
    header = compute_signature(SECRET, BODY, NOW - timedelta(minutes=20))
    result = verify_signature(BODY, header, SECRET, max_skew_seconds=300, now=NOW)
    assert result.ok is False
    assert result.reason == "timestamp_skew"


def test_skew_check_can_be_disabled() -> None:
    header = compute_signature(SECRET, BODY, NOW - timedelta(days=2))
    assert verify_signature(BODY, header, SECRET, max_skew_seconds=None, now=NOW).ok is True
