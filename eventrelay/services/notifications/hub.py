from __future__ import annotations

from dataclasses import dataclass
import json
import logging
from threading import Lock
from typing import Any, Protocol

from redis.asyncio import Redis
from redis.exceptions import ConnectionError as RedisConnectionError, TimeoutError as RedisTimeoutError

from eventrelay.services.resilience import RetryPolicy, retry_async


logger = logging.getLogger(__name__)


def _retryable_redis_error(exc: Exception) -> bool:
    return isinstance(exc, (RedisConnectionError, RedisTimeoutError, TimeoutError, OSError))


def tenant_group(tenant_id: str) -> str:
    return f"tenant::{tenant_id}"


class RealtimeHub(Protocol):
    async def publish(self, group_key: str, event_name: str, payload: Any) -> None: ...


@dataclass(frozen=True)
class HubMessage:
    group_key: str
    event_name: str
    payload: Any


class InMemoryRealtimeHub:
    # Record publishes in order so local runs and tests can observe what subscribers would receive.
    def __init__(self) -> None:
        self._messages: list[HubMessage] = []
        self._lock = Lock()

    async def publish(self, group_key: str, event_name: str, payload: Any) -> None:
        with self._lock:
            self._messages.append(HubMessage(group_key=group_key, event_name=event_name, payload=payload))

    @property
    def messages(self) -> list[HubMessage]:
        with self._lock:
            return list(self._messages)

    def messages_for(self, group_key: str) -> list[HubMessage]:
        return [message for message in self.messages if message.group_key == group_key]


class RedisRealtimeHub:
    """Publish group messages on one redis pub/sub channel per group.

    Group membership and socket transport belong to whatever relays the
    channel to connected clients; this side only publishes.
    """

    def __init__(
        self,
        redis: Redis,
        *,
        prefix: str = "eventrelay:rt",
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._redis = redis
        self._prefix = prefix
        self._retry_policy = retry_policy

    def channel(self, group_key: str) -> str:
        return f"{self._prefix}:{group_key}"

    async def publish(self, group_key: str, event_name: str, payload: Any) -> None:
        message = json.dumps({"event": event_name, "payload": payload}, separators=(",", ":"), default=str)
        receivers = await retry_async(
            lambda: self._redis.publish(self.channel(group_key), message),
            policy=self._retry_policy,
            retryable=_retryable_redis_error,
        )
        logger.debug("realtime_publish group=%s event=%s receivers=%s", group_key, event_name, receivers)


class NullRealtimeHub:
    async def publish(self, group_key: str, event_name: str, payload: Any) -> None:
        return None
