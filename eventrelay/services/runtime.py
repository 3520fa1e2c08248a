from __future__ import annotations

from dataclasses import dataclass
import logging

import httpx
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncEngine

from eventrelay.core.clock import Clock, utc_now
from eventrelay.core.config import Settings, get_settings
from eventrelay.core.errors import ConfigError
from eventrelay.domain.events import WebhookEndpointConfig, load_webhook_endpoints
from eventrelay.persistence.db import create_engine, create_schema
from eventrelay.services.idempotency import (
    IdempotencyResponseCache,
    IdempotencyStore,
    InMemoryIdempotencyResponseCache,
    InMemoryIdempotencyStore,
    RedisIdempotencyResponseCache,
    RedisIdempotencyStore,
)
from eventrelay.services.notifications import (
    CompositeNotificationDispatcher,
    InMemoryRealtimeHub,
    NullRealtimeHub,
    RealtimeHub,
    RedisRealtimeHub,
    resolve_webhook_fanout,
)
from eventrelay.services.resilience import CircuitBreakerRegistry, default_breaker_config
from eventrelay.services.webhooks import DeliveryPolicy, DeliveryWorker, InMemoryOutbox, Outbox, SqlOutbox, WebhookSender


logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    # Process-wide collaborators wired once at startup and shared by the API and the worker.
    settings: Settings
    clock: Clock
    endpoints: list[WebhookEndpointConfig]
    breakers: CircuitBreakerRegistry
    idempotency_store: IdempotencyStore
    idempotency_responses: IdempotencyResponseCache
    outbox: Outbox
    hub: RealtimeHub
    dispatcher: CompositeNotificationDispatcher
    sender: WebhookSender
    worker: DeliveryWorker
    engine: AsyncEngine | None = None
    redis: Redis | None = None
    # False when the client was injected; the caller then owns closing it.
    owns_redis: bool = False

    async def startup(self) -> None:
        if self.engine is not None:
            await create_schema(self.engine)

    async def shutdown(self) -> None:
        await self.worker.stop(timeout=self.settings.webhook_timeout_seconds * 2)
        await self.sender.aclose()
        if self.engine is not None:
            await self.engine.dispose()
        if self.redis is not None and self.owns_redis:
            await self.redis.aclose()


def _redis_client(settings: Settings, current: Redis | None) -> Redis:
    return current or Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)


def build_runtime(
    settings: Settings | None = None,
    *,
    clock: Clock | None = None,
    outbox: Outbox | None = None,
    hub: RealtimeHub | None = None,
    http_client: httpx.AsyncClient | None = None,
    redis: Redis | None = None,
) -> Runtime:
    """Wire every collaborator from settings.

    Webhook endpoint configuration is validated here, so a malformed endpoint
    fails startup with ``WebhookConfigError`` instead of failing deliveries.
    Injected collaborators replace the configured ones (tests, embedding).
    """
    settings = settings or get_settings()
    clock = clock or utc_now
    endpoints = load_webhook_endpoints(settings)
    owns_redis = redis is None

    engine: AsyncEngine | None = None
    if outbox is None:
        if settings.outbox_backend == "sql":
            engine = create_engine(settings.database_url)
            outbox = SqlOutbox(engine, clock=clock)
        elif settings.outbox_backend == "memory":
            outbox = InMemoryOutbox(clock=clock)
        else:
            raise ConfigError(f"unknown outbox_backend '{settings.outbox_backend}'")

    idempotency_store: IdempotencyStore
    idempotency_responses: IdempotencyResponseCache
    if settings.idempotency_backend == "redis":
        redis = _redis_client(settings, redis)
        idempotency_store = RedisIdempotencyStore(redis, prefix=settings.idempotency_redis_prefix, clock=clock)
        idempotency_responses = RedisIdempotencyResponseCache(
            redis, prefix=f"{settings.idempotency_redis_prefix}:response"
        )
    elif settings.idempotency_backend == "memory":
        idempotency_store = InMemoryIdempotencyStore(clock=clock, sweep_every=settings.idempotency_sweep_every)
        idempotency_responses = InMemoryIdempotencyResponseCache(clock=clock)
    else:
        raise ConfigError(f"unknown idempotency_backend '{settings.idempotency_backend}'")

    if hub is None:
        if settings.realtime_provider == "redis":
            redis = _redis_client(settings, redis)
            hub = RedisRealtimeHub(redis, prefix=settings.realtime_redis_prefix)
        elif settings.realtime_provider == "memory":
            hub = InMemoryRealtimeHub()
        elif settings.realtime_provider == "none":
            hub = NullRealtimeHub()
        else:
            raise ConfigError(f"unknown realtime_provider '{settings.realtime_provider}'")

    breakers = CircuitBreakerRegistry(config=default_breaker_config(settings), clock=clock)
    dispatcher = CompositeNotificationDispatcher(
        hub=hub,
        webhooks=resolve_webhook_fanout(settings, outbox, endpoints),
        clock=clock,
        hub_timeout_ms=settings.realtime_publish_timeout_ms,
    )
    sender = WebhookSender(
        client=http_client,
        signature_header=settings.webhook_signature_header,
        timeout_seconds=settings.webhook_timeout_seconds,
        clock=clock,
    )
    worker = DeliveryWorker(
        outbox=outbox,
        endpoints=endpoints,
        sender=sender,
        breakers=breakers,
        policy=DeliveryPolicy.from_settings(settings),
        clock=clock,
    )
    logger.info(
        "runtime_built outbox=%s idempotency=%s realtime=%s endpoints=%s webhooks_enabled=%s",
        type(outbox).__name__,
        settings.idempotency_backend,
        type(hub).__name__,
        len(endpoints),
        settings.webhooks_enabled,
    )
    return Runtime(
        settings=settings,
        clock=clock,
        endpoints=endpoints,
        breakers=breakers,
        idempotency_store=idempotency_store,
        idempotency_responses=idempotency_responses,
        outbox=outbox,
        hub=hub,
        dispatcher=dispatcher,
        sender=sender,
        worker=worker,
        engine=engine,
        redis=redis,
        owns_redis=owns_redis and redis is not None,
    )
