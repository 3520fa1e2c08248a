from __future__ import annotations

import json

import pytest

from eventrelay.core.errors import ConfigError, WebhookConfigError
from eventrelay.domain.events import parse_webhook_endpoints
from eventrelay.services.notifications import DisabledWebhookFanout, NullRealtimeHub
from eventrelay.services.runtime import build_runtime
from eventrelay.services.webhooks import DeliveryPolicy, InMemoryOutbox
from eventrelay.tests.utils.fakes import FakeClock, FakeRedis, endpoint_config, make_settings


def test_endpoints_parse_in_order_with_optional_tenant_scope() -> None:
    raw = json.dumps([endpoint_config("b-hook", tenant_id="t1"), endpoint_config("a-hook")])
    endpoints = parse_webhook_endpoints(raw)
    assert [endpoint.name for endpoint in endpoints] == ["b-hook", "a-hook"]
    assert endpoints[0].matches_tenant("t1") is True
    assert endpoints[0].matches_tenant("t2") is False
    assert endpoints[1].matches_tenant("t2") is True


def test_inactive_endpoint_may_omit_secret() -> None:
    [endpoint] = parse_webhook_endpoints([endpoint_config("paused", secret="", active=False)])
    assert endpoint.active is False


@pytest.mark.parametrize(
    "raw",
    [
        "not json",
        json.dumps({"name": "a"}),
        json.dumps([endpoint_config("dup"), endpoint_config("dup")]),
        json.dumps([endpoint_config("no-secret", secret="")]),
        json.dumps([endpoint_config("bad-url", url="ftp://example.test/hooks")]),
        json.dumps([endpoint_config("relative", url="/hooks")]),
        json.dumps([{**endpoint_config("extra"), "retries": 3}]),
        json.dumps([endpoint_config("   ")]),
    ],
)
def test_invalid_endpoint_configuration_is_rejected(raw: str) -> None:
    with pytest.raises(WebhookConfigError):
        parse_webhook_endpoints(raw)


def test_build_runtime_fails_fast_on_bad_endpoints() -> None:
    settings = make_settings()
    settings = settings.model_copy(update={"webhook_endpoints_json": "[{}]"})
    with pytest.raises(WebhookConfigError):
        build_runtime(settings)


@pytest.mark.parametrize(
    "overrides",
    [
        {"outbox_backend": "cassandra"},
        {"idempotency_backend": "memcached"},
        {"realtime_provider": "pusher"},
    ],
)
def test_build_runtime_rejects_unknown_backends(overrides: dict[str, str]) -> None:
    with pytest.raises(ConfigError):
        build_runtime(make_settings(**overrides))


def test_build_runtime_wires_settings_into_collaborators(clock: FakeClock) -> None:
    settings = make_settings(
        [endpoint_config()],
        realtime_provider="none",
        webhooks_enabled=False,
        webhook_max_attempts=7,
        webhook_initial_backoff_ms=50,
    )
    runtime = build_runtime(settings, clock=clock)
    assert isinstance(runtime.outbox, InMemoryOutbox)
    assert isinstance(runtime.hub, NullRealtimeHub)
    assert isinstance(runtime.dispatcher._webhooks, DisabledWebhookFanout)
    assert runtime.engine is None
    assert runtime.worker.policy == DeliveryPolicy.from_settings(settings)
    assert runtime.worker.policy.max_attempts == 7
    assert [endpoint.name for endpoint in runtime.endpoints] == ["receiver-a"]


@pytest.mark.asyncio
async def test_shutdown_leaves_injected_redis_open(clock: FakeClock) -> None:
    redis = FakeRedis(clock)
    runtime = build_runtime(
        make_settings(idempotency_backend="redis", realtime_provider="redis"),
        clock=clock,
        redis=redis,
    )
    assert runtime.redis is redis
    assert runtime.owns_redis is False

    await runtime.shutdown()

    assert redis.closed is False


@pytest.mark.asyncio
async def test_runtime_owns_and_closes_redis_it_creates(clock: FakeClock) -> None:
    runtime = build_runtime(make_settings(idempotency_backend="redis"), clock=clock)
    assert runtime.redis is not None
    assert runtime.owns_redis is True
    await runtime.shutdown()
    assert build_runtime(make_settings(), clock=clock).owns_redis is False
