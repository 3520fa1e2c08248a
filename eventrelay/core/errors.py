from __future__ import annotations

from datetime import datetime


class EventRelayError(Exception):
    """Base error for eventrelay."""


class ConfigError(EventRelayError):
    """Missing or invalid runtime configuration."""


class WebhookConfigError(ConfigError):
    """Webhook endpoint configuration rejected at startup."""


class CircuitOpenError(EventRelayError):
    """Outbound call refused because the named circuit is open; retry later."""

    def __init__(self, name: str, next_retry_time: datetime | None) -> None:
        self.name = name
        self.next_retry_time = next_retry_time
        until = next_retry_time.isoformat() if next_retry_time else "unknown"
        super().__init__(f"Circuit breaker '{name}' is open until {until}")


class WebhookDeliveryError(EventRelayError):
    """Receiver answered a webhook POST with a non-2xx status."""

    def __init__(self, endpoint_name: str, status_code: int) -> None:
        self.endpoint_name = endpoint_name
        self.status_code = status_code
        super().__init__(f"Webhook endpoint '{endpoint_name}' responded with status {status_code}")


class OutboxError(EventRelayError):
    """Outbox storage failure."""


class OutboxEntryNotFoundError(OutboxError):
    """No outbox entry exists for the requested id."""


class OutboxStateError(OutboxError):
    """Requested transition is not valid from the entry's current status."""


class OutboxLeaseLostError(OutboxStateError):
    """The caller's lease expired and another worker claimed the entry."""
