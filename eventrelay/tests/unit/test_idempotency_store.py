from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from eventrelay.services.idempotency import (
    InMemoryIdempotencyResponseCache,
    InMemoryIdempotencyStore,
    RedisIdempotencyResponseCache,
    RedisIdempotencyStore,
    StoredResponse,
    compute_request_hash,
    idempotency_expiry,
    scoped_idempotency_key,
)
from eventrelay.tests.utils.fakes import FakeClock, FakeRedis


@pytest.mark.asyncio
async def test_second_put_within_window_is_rejected(clock: FakeClock) -> None:
    store = InMemoryIdempotencyStore(clock=clock)
    key = scoped_idempotency_key("t1", "order-12345")
    assert await store.try_put(key, clock() + timedelta(hours=24)) is True
    assert await store.try_put(key, clock() + timedelta(hours=48)) is False


@pytest.mark.asyncio
async def test_put_after_expiry_wins_again(clock: FakeClock) -> None:
    store = InMemoryIdempotencyStore(clock=clock)
    assert await store.try_put("t1::abc12345", clock() + timedelta(seconds=10)) is True
    clock.advance(seconds=10)
    # Expiry is exclusive: a record is no longer live at its expires_at instant.
    assert await store.try_put("t1::abc12345", clock() + timedelta(seconds=10)) is True
    assert await store.try_put("t1::abc12345", clock() + timedelta(seconds=10)) is False


@pytest.mark.asyncio
async def test_same_key_for_different_tenants_does_not_collide(clock: FakeClock) -> None:
    store = InMemoryIdempotencyStore(clock=clock)
    expires_at = clock() + timedelta(hours=1)
    assert await store.try_put(scoped_idempotency_key("t1", "retry-token"), expires_at) is True
    assert await store.try_put(scoped_idempotency_key("t2", "retry-token"), expires_at) is True


def test_concurrent_puts_leave_exactly_one_winner(clock: FakeClock) -> None:
    store = InMemoryIdempotencyStore(clock=clock, shard_count=4)
    expires_at = clock() + timedelta(hours=1)

    with ThreadPoolExecutor(max_workers=16) as pool:
        results = list(pool.map(lambda _idx: store.try_put_sync("t1::race-key", expires_at), range(64)))

    assert sum(1 for won in results if won) == 1


def test_sweep_reclaims_only_expired_records(clock: FakeClock) -> None:
    store = InMemoryIdempotencyStore(clock=clock, sweep_every=0)
    store.try_put_sync("t1::short-lived", clock() + timedelta(seconds=5))
    store.try_put_sync("t1::long-lived", clock() + timedelta(hours=1))
    clock.advance(seconds=6)
    assert store.sweep_expired() == 1
    assert len(store) == 1


def test_opportunistic_sweep_runs_every_n_writes(clock: FakeClock) -> None:
    store = InMemoryIdempotencyStore(clock=clock, sweep_every=3)
    store.try_put_sync("t1::a-expiring", clock() + timedelta(seconds=1))
    clock.advance(seconds=2)
    store.try_put_sync("t1::b-live-key", clock() + timedelta(hours=1))
    assert len(store) == 2
    store.try_put_sync("t1::c-live-key", clock() + timedelta(hours=1))
    assert len(store) == 2


def test_request_hash_ignores_key_order() -> None:
    assert compute_request_hash({"a": 1, "b": [1, 2]}) == compute_request_hash({"b": [1, 2], "a": 1})
    assert compute_request_hash({"a": 1}) != compute_request_hash({"a": 2})


def test_expiry_uses_ttl_hours(clock: FakeClock) -> None:
    assert idempotency_expiry(24, now=clock()) == clock() + timedelta(hours=24)


@pytest.mark.asyncio
async def test_response_cache_hides_expired_snapshots(clock: FakeClock) -> None:
    cache = InMemoryIdempotencyResponseCache(clock=clock)
    stored = StoredResponse(status_code=202, body={"ok": True}, request_hash="h1", expires_at=clock() + timedelta(minutes=1))
    await cache.put("t1::key-12345", stored)
    assert await cache.get("t1::key-12345") == stored
    clock.advance(seconds=61)
    assert await cache.get("t1::key-12345") is None
    assert cache.sweep_expired() == 1


@pytest.mark.asyncio
async def test_redis_store_uses_set_nx_with_absolute_expiry(clock: FakeClock) -> None:
    redis = FakeRedis(clock)
    store = RedisIdempotencyStore(redis, prefix="test:idem", clock=clock)
    expires_at = clock() + timedelta(seconds=30)
    assert await store.try_put("t1::shared-key", expires_at) is True
    assert await store.try_put("t1::shared-key", expires_at) is False
    clock.advance(seconds=31)
    assert await store.try_put("t1::shared-key", clock() + timedelta(seconds=30)) is True


@pytest.mark.asyncio
async def test_redis_response_cache_round_trips_snapshot(clock: FakeClock) -> None:
    redis = FakeRedis(clock)
    cache = RedisIdempotencyResponseCache(redis, prefix="test:idem:response")
    stored = StoredResponse(
        status_code=202,
        body={"data": {"event_id": "evt_1"}},
        request_hash="abc",
        expires_at=clock() + timedelta(hours=1),
    )
    await cache.put("t1::key-12345", stored)
    assert await cache.get("t1::key-12345") == stored
    assert await cache.get("t1::missing-key") is None
