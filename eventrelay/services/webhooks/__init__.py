from eventrelay.services.webhooks.delivery import (
    ENDPOINT_UNAVAILABLE,
    DeliveryOutcome,
    DeliveryPolicy,
    DeliveryWorker,
    WebhookSender,
    circuit_name,
    compute_backoff_ms,
)
from eventrelay.services.webhooks.outbox import InMemoryOutbox, Outbox, SqlOutbox
from eventrelay.services.webhooks.signing import (
    ParsedSignature,
    VerificationResult,
    compute_hmac_sha256_hex,
    compute_signature,
    parse_signature,
    verify_signature,
)

__all__ = [
    "ENDPOINT_UNAVAILABLE",
    "DeliveryOutcome",
    "DeliveryPolicy",
    "DeliveryWorker",
    "WebhookSender",
    "circuit_name",
    "compute_backoff_ms",
    "Outbox",
    "InMemoryOutbox",
    "SqlOutbox",
    "ParsedSignature",
    "VerificationResult",
    "compute_hmac_sha256_hex",
    "compute_signature",
    "parse_signature",
    "verify_signature",
]
