from eventrelay.services.notifications.dispatcher import (
    CompositeNotificationDispatcher,
    DisabledWebhookFanout,
    OutboxWebhookFanout,
    PublishResult,
    WebhookFanout,
    resolve_webhook_fanout,
    serialize_envelope,
)
from eventrelay.services.notifications.hub import (
    HubMessage,
    InMemoryRealtimeHub,
    NullRealtimeHub,
    RealtimeHub,
    RedisRealtimeHub,
    tenant_group,
)

__all__ = [
    "CompositeNotificationDispatcher",
    "DisabledWebhookFanout",
    "OutboxWebhookFanout",
    "PublishResult",
    "WebhookFanout",
    "resolve_webhook_fanout",
    "serialize_envelope",
    "HubMessage",
    "InMemoryRealtimeHub",
    "NullRealtimeHub",
    "RealtimeHub",
    "RedisRealtimeHub",
    "tenant_group",
]
