from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import hashlib
import hmac


DEFAULT_MAX_SKEW_SECONDS = 300


@dataclass(frozen=True)
class ParsedSignature:
    # Keep parsed header shape explicit so sender and receivers share one canonical schema.
    timestamp: int
    digest_hex: str


@dataclass(frozen=True)
class VerificationResult:
    # Stable reason codes let operators triage receiver rejections without inspecting secrets.
    ok: bool
    reason: str


def compute_hmac_sha256_hex(secret: str, raw_body: bytes) -> str:
    # Sign the exact bytes on the wire; receivers must verify against the unmodified body.
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def compute_signature(secret: str, raw_body: bytes, timestamp: datetime | int) -> str:
    unix_seconds = timestamp if isinstance(timestamp, int) else int(timestamp.timestamp())
    return f"t={unix_seconds}, v1={compute_hmac_sha256_hex(secret, raw_body)}"


def parse_signature(header_value: str) -> ParsedSignature:
    # Parse `t=<unix>, v1=<hex>` strictly so malformed values are rejected deterministically.
    fields: dict[str, str] = {}
    for part in header_value.split(","):
        name, separator, value = part.strip().partition("=")
        name = name.strip().lower()
        if separator != "=" or not name or name in fields:
            raise ValueError("invalid_signature_format")
        fields[name] = value.strip()
    raw_timestamp = fields.get("t")
    digest_hex = (fields.get("v1") or "").lower()
    if not raw_timestamp or not digest_hex:
        raise ValueError("invalid_signature_format")
    try:
        timestamp = int(raw_timestamp)
        int(digest_hex, 16)
    except ValueError as exc:
        raise ValueError("invalid_signature_format") from exc
    if len(digest_hex) != 64:
        raise ValueError("invalid_signature_format")
    return ParsedSignature(timestamp=timestamp, digest_hex=digest_hex)


def verify_signature(
    raw_body: bytes,
    header_value: str | None,
    secret: str,
    *,
    max_skew_seconds: int | None = DEFAULT_MAX_SKEW_SECONDS,
    now: datetime | None = None,
) -> VerificationResult:
    """Check a received signature header against the raw request body.

    The digest is compared in constant time before the timestamp is checked,
    so a forged header never reveals whether its timestamp was acceptable.
    A ``max_skew_seconds`` of None or 0 disables the skew check.
    """
    if not header_value or not header_value.strip():
        return VerificationResult(ok=False, reason="missing_signature")
    try:
        parsed = parse_signature(header_value)
    except ValueError:
        return VerificationResult(ok=False, reason="invalid_signature_format")
    expected_hex = compute_hmac_sha256_hex(secret, raw_body)
    if not hmac.compare_digest(expected_hex, parsed.digest_hex):
        return VerificationResult(ok=False, reason="signature_mismatch")
    if max_skew_seconds:
        reference = now or datetime.now(timezone.utc)
        if abs(reference.timestamp() - parsed.timestamp) > max_skew_seconds:
            return VerificationResult(ok=False, reason="timestamp_skew")
    return VerificationResult(ok=True, reason="ok")
