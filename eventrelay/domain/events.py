from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
import json
from typing import Any, TypedDict
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from eventrelay.core.config import Settings
from eventrelay.core.errors import WebhookConfigError


class OutboxStatus(str, Enum):
    PENDING = "pending"
    DELIVERED = "delivered"
    DEAD_LETTERED = "dead_lettered"

    @property
    def terminal(self) -> bool:
        return self is not OutboxStatus.PENDING


@dataclass(frozen=True)
class OutboxEntry:
    # One pending delivery of one event to one endpoint; mutated only through outbox transitions.
    id: str
    event_id: str
    event_type: str
    payload: bytes
    tenant_id: str
    endpoint_name: str
    attempt: int
    next_attempt_at: datetime
    status: OutboxStatus
    created_at: datetime
    updated_at: datetime
    last_error: str | None = None
    delivered_at: datetime | None = None
    replay_of: str | None = None
    # Set only on entries returned by claim_due; transitions carrying it must match the live lease.
    lease_token: str | None = None

    def evolve(self, **changes: Any) -> OutboxEntry:
        return replace(self, **changes)


class EventEnvelope(TypedDict):
    id: str
    type: str
    tenant_id: str
    created_at: str
    data: Any


class WebhookEndpointConfig(BaseModel):
    # Endpoint definitions are immutable once loaded; tenant_id None means the endpoint is global.
    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(min_length=1, max_length=128)
    url: str
    secret: str = ""
    active: bool = True
    tenant_id: str | None = None

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("endpoint name must not be blank")
        return stripped

    @field_validator("url")
    @classmethod
    def _validate_url(cls, value: str) -> str:
        # Fail fast on malformed receivers instead of discovering them at delivery time.
        parsed = urlparse(value.strip())
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise ValueError("endpoint url must be an absolute http(s) url")
        return value.strip()

    def matches_tenant(self, tenant_id: str) -> bool:
        return self.tenant_id is None or self.tenant_id == tenant_id


def parse_webhook_endpoints(raw: str | list[dict[str, Any]]) -> list[WebhookEndpointConfig]:
    """Parse and validate the ordered endpoint list.

    Raises ``WebhookConfigError`` for invalid JSON, malformed entries, duplicate
    names, or active endpoints without a signing secret.
    """
    if isinstance(raw, str):
        try:
            items = json.loads(raw or "[]")
        except json.JSONDecodeError as exc:
            raise WebhookConfigError(f"webhook endpoints are not valid JSON: {exc.msg}") from exc
    else:
        items = raw
    if not isinstance(items, list):
        raise WebhookConfigError("webhook endpoints must be a JSON list")
    endpoints: list[WebhookEndpointConfig] = []
    seen: set[str] = set()
    for index, item in enumerate(items):
        try:
            endpoint = WebhookEndpointConfig.model_validate(item)
        except ValidationError as exc:
            raise WebhookConfigError(f"webhook endpoint #{index} is invalid: {exc.errors()[0]['msg']}") from exc
        if endpoint.name in seen:
            raise WebhookConfigError(f"duplicate webhook endpoint name '{endpoint.name}'")
        if endpoint.active and not endpoint.secret:
            raise WebhookConfigError(f"active webhook endpoint '{endpoint.name}' has no secret")
        seen.add(endpoint.name)
        endpoints.append(endpoint)
    return endpoints


def load_webhook_endpoints(settings: Settings) -> list[WebhookEndpointConfig]:
    return parse_webhook_endpoints(settings.webhook_endpoints_json)
