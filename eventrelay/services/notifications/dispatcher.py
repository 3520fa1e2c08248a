from __future__ import annotations

import asyncio
from dataclasses import dataclass
import json
import logging
from typing import Any, Iterable, Protocol
from uuid import uuid4

from eventrelay.core.clock import Clock, utc_now
from eventrelay.core.config import Settings
from eventrelay.domain.events import EventEnvelope, OutboxEntry, WebhookEndpointConfig
from eventrelay.services.notifications.hub import RealtimeHub, tenant_group
from eventrelay.services.telemetry import increment_counter
from eventrelay.services.webhooks.outbox import Outbox


logger = logging.getLogger(__name__)


class WebhookFanout(Protocol):
    async def fan_out(
        self,
        *,
        event_id: str,
        event_type: str,
        payload: bytes,
        tenant_id: str,
    ) -> list[OutboxEntry]: ...


class OutboxWebhookFanout:
    # Enqueue one outbox entry per active endpoint scoped to the tenant or global.
    def __init__(self, outbox: Outbox, endpoints: Iterable[WebhookEndpointConfig]) -> None:
        self._outbox = outbox
        self._endpoints = tuple(endpoints)

    def matching_endpoints(self, tenant_id: str) -> list[WebhookEndpointConfig]:
        return [endpoint for endpoint in self._endpoints if endpoint.active and endpoint.matches_tenant(tenant_id)]

    async def fan_out(
        self,
        *,
        event_id: str,
        event_type: str,
        payload: bytes,
        tenant_id: str,
    ) -> list[OutboxEntry]:
        entries: list[OutboxEntry] = []
        for endpoint in self.matching_endpoints(tenant_id):
            entry = await self._outbox.enqueue(
                event_type=event_type,
                payload=payload,
                tenant_id=tenant_id,
                endpoint_name=endpoint.name,
                event_id=event_id,
            )
            entries.append(entry)
        return entries


class DisabledWebhookFanout:
    async def fan_out(
        self,
        *,
        event_id: str,
        event_type: str,
        payload: bytes,
        tenant_id: str,
    ) -> list[OutboxEntry]:
        return []


def resolve_webhook_fanout(
    settings: Settings,
    outbox: Outbox,
    endpoints: Iterable[WebhookEndpointConfig],
) -> WebhookFanout:
    # Decide once at startup; the dispatcher never consults the flag per event.
    if not settings.webhooks_enabled:
        logger.info("webhook_fanout_disabled")
        return DisabledWebhookFanout()
    return OutboxWebhookFanout(outbox, endpoints)


@dataclass(frozen=True)
class PublishResult:
    event_id: str
    envelope: EventEnvelope
    group_key: str
    hub_published: bool
    outbox_entries: tuple[OutboxEntry, ...]

    @property
    def outbox_entry_ids(self) -> list[str]:
        return [entry.id for entry in self.outbox_entries]


def serialize_envelope(envelope: EventEnvelope) -> bytes:
    return json.dumps(envelope, separators=(",", ":"), default=str).encode("utf-8")


class CompositeNotificationDispatcher:
    """Route one domain event to the tenant's real-time group and to webhooks.

    The two sinks run concurrently and fail independently: hub failures and
    timeouts are logged and reported in ``PublishResult.hub_published`` but
    never raised, while outbox errors propagate because the caller must know
    the delivery intent was not recorded.
    """

    def __init__(
        self,
        *,
        hub: RealtimeHub,
        webhooks: WebhookFanout,
        clock: Clock | None = None,
        hub_timeout_ms: int = 2000,
    ) -> None:
        self._hub = hub
        self._webhooks = webhooks
        self._clock = clock or utc_now
        self._hub_timeout_s = max(0.001, hub_timeout_ms / 1000.0)

    def build_envelope(
        self,
        *,
        event_type: str,
        payload: Any,
        tenant_id: str,
        event_id: str | None = None,
    ) -> EventEnvelope:
        return EventEnvelope(
            id=event_id or f"evt_{uuid4().hex}",
            type=event_type,
            tenant_id=tenant_id,
            created_at=self._clock().isoformat(),
            data=payload,
        )

    async def _publish_to_hub(self, group_key: str, envelope: EventEnvelope) -> bool:
        try:
            await asyncio.wait_for(
                self._hub.publish(group_key, envelope["type"], envelope),
                timeout=self._hub_timeout_s,
            )
        except asyncio.TimeoutError:
            increment_counter("realtime_publish_failed_total")
            logger.warning("realtime_publish_timeout group=%s event_id=%s", group_key, envelope["id"])
            return False
        except Exception as exc:  # noqa: BLE001 - the real-time sink is best effort.
            increment_counter("realtime_publish_failed_total")
            logger.warning(
                "realtime_publish_failed group=%s event_id=%s error=%s",
                group_key,
                envelope["id"],
                type(exc).__name__,
            )
            return False
        return True

    async def publish(
        self,
        event_type: str,
        payload: Any,
        tenant_id: str,
        *,
        event_id: str | None = None,
    ) -> PublishResult:
        envelope = self.build_envelope(event_type=event_type, payload=payload, tenant_id=tenant_id, event_id=event_id)
        # Serialize once; every webhook entry carries these exact bytes.
        body = serialize_envelope(envelope)
        group_key = tenant_group(tenant_id)
        hub_published, entries = await asyncio.gather(
            self._publish_to_hub(group_key, envelope),
            self._webhooks.fan_out(
                event_id=envelope["id"],
                event_type=event_type,
                payload=body,
                tenant_id=tenant_id,
            ),
        )
        increment_counter("events_published_total")
        logger.info(
            "event_published event_id=%s type=%s tenant_id=%s hub=%s webhooks=%s",
            envelope["id"],
            event_type,
            tenant_id,
            hub_published,
            len(entries),
        )
        return PublishResult(
            event_id=envelope["id"],
            envelope=envelope,
            group_key=group_key,
            hub_published=hub_published,
            outbox_entries=tuple(entries),
        )
