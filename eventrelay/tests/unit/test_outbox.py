from __future__ import annotations

from datetime import timedelta
from pathlib import Path

import pytest
import pytest_asyncio

from eventrelay.core.errors import OutboxEntryNotFoundError, OutboxLeaseLostError, OutboxStateError
from eventrelay.domain.events import OutboxStatus
from eventrelay.persistence.db import create_engine, create_schema
from eventrelay.services.webhooks.outbox import InMemoryOutbox, SqlOutbox
from eventrelay.tests.utils.fakes import FakeClock


LEASE = timedelta(seconds=60)


@pytest_asyncio.fixture
async def sql_engine(tmp_path: Path):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'outbox.db'}")
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture(params=["memory", "sql"])
async def outbox(request, clock: FakeClock, tmp_path: Path):
    if request.param == "memory":
        yield InMemoryOutbox(clock=clock)
        return
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'outbox.db'}")
    await create_schema(engine)
    yield SqlOutbox(engine, clock=clock)
    await engine.dispose()


async def _enqueue(outbox, *, endpoint: str = "receiver-a", tenant_id: str = "t1", event_id: str | None = None):
    return await outbox.enqueue(
        event_type="fx.quote.created",
        payload=b'{"id":"evt_1"}',
        tenant_id=tenant_id,
        endpoint_name=endpoint,
        event_id=event_id,
    )


@pytest.mark.asyncio
async def test_enqueue_creates_pending_entry_due_now(outbox, clock: FakeClock) -> None:
    entry = await _enqueue(outbox, event_id="evt_1")
    assert entry.status == OutboxStatus.PENDING
    assert entry.attempt == 0
    assert entry.next_attempt_at == clock()
    assert entry.payload == b'{"id":"evt_1"}'
    assert entry.event_id == "evt_1"
    assert entry.replay_of is None
    assert await outbox.get(entry.id) == entry


@pytest.mark.asyncio
async def test_duplicate_enqueue_creates_independent_entries(outbox) -> None:
    first = await _enqueue(outbox, event_id="evt_dup")
    second = await _enqueue(outbox, event_id="evt_dup")
    assert first.id != second.id
    entries = await outbox.list_entries(status=OutboxStatus.PENDING)
    assert {entry.id for entry in entries} == {first.id, second.id}


@pytest.mark.asyncio
async def test_claim_leases_entries_so_they_are_not_dispatched_twice(outbox, clock: FakeClock) -> None:
    entry = await _enqueue(outbox)
    claimed = await outbox.claim_due(now=clock(), limit=10, lease=LEASE)
    assert [item.id for item in claimed] == [entry.id]
    assert await outbox.claim_due(now=clock(), limit=10, lease=LEASE) == []

    # A crashed worker's lease runs out and the entry becomes claimable again.
    clock.advance(seconds=61)
    reclaimed = await outbox.claim_due(now=clock(), limit=10, lease=LEASE)
    assert [item.id for item in reclaimed] == [entry.id]


@pytest.mark.asyncio
async def test_claim_respects_limit_and_due_time(outbox, clock: FakeClock) -> None:
    entries = [await _enqueue(outbox, endpoint=f"receiver-{idx}") for idx in range(3)]
    await outbox.schedule_retry(
        entries[0].id,
        attempt=1,
        next_attempt_at=clock() + timedelta(seconds=30),
        error="http_500",
    )
    claimed = await outbox.claim_due(now=clock(), limit=1, lease=LEASE)
    assert len(claimed) == 1
    assert claimed[0].id in {entries[1].id, entries[2].id}
    rest = await outbox.claim_due(now=clock(), limit=10, lease=LEASE)
    assert len(rest) == 1
    assert entries[0].id not in {item.id for item in claimed + rest}


@pytest.mark.asyncio
async def test_schedule_retry_updates_attempt_and_releases_lease(outbox, clock: FakeClock) -> None:
    entry = await _enqueue(outbox)
    await outbox.claim_due(now=clock(), limit=10, lease=LEASE)
    retry_at = clock() + timedelta(milliseconds=300)
    updated = await outbox.schedule_retry(entry.id, attempt=1, next_attempt_at=retry_at, error="http_500")
    assert updated.status == OutboxStatus.PENDING
    assert updated.attempt == 1
    assert updated.next_attempt_at == retry_at
    assert updated.last_error == "http_500"

    assert await outbox.claim_due(now=clock(), limit=10, lease=LEASE) == []
    clock.advance(milliseconds=300)
    assert [item.id for item in await outbox.claim_due(now=clock(), limit=10, lease=LEASE)] == [entry.id]


@pytest.mark.asyncio
async def test_terminal_entries_are_never_mutated_again(outbox, clock: FakeClock) -> None:
    entry = await _enqueue(outbox)
    delivered = await outbox.mark_delivered(entry.id, attempt=1)
    assert delivered.status == OutboxStatus.DELIVERED
    assert delivered.delivered_at == clock()

    with pytest.raises(OutboxStateError):
        await outbox.schedule_retry(entry.id, attempt=2, next_attempt_at=clock(), error="late")
    with pytest.raises(OutboxStateError):
        await outbox.mark_dead_lettered(entry.id, attempt=2, error="late")
    assert (await outbox.get(entry.id)).status == OutboxStatus.DELIVERED
    assert await outbox.claim_due(now=clock() + timedelta(hours=1), limit=10, lease=LEASE) == []


@pytest.mark.asyncio
async def test_unknown_entry_raises_not_found(outbox) -> None:
    with pytest.raises(OutboxEntryNotFoundError):
        await outbox.mark_delivered("obx_missing", attempt=1)
    with pytest.raises(OutboxEntryNotFoundError):
        await outbox.replay_dead_letter("obx_missing")
    assert await outbox.get("obx_missing") is None


@pytest.mark.asyncio
async def test_replay_dead_letter_appends_linked_pending_entry(outbox, clock: FakeClock) -> None:
    entry = await _enqueue(outbox, event_id="evt_dead")
    await outbox.mark_dead_lettered(entry.id, attempt=5, error="http_500")
    clock.advance(seconds=10)

    replay = await outbox.replay_dead_letter(entry.id)
    assert replay.id != entry.id
    assert replay.replay_of == entry.id
    assert replay.event_id == "evt_dead"
    assert replay.status == OutboxStatus.PENDING
    assert replay.attempt == 0
    assert replay.next_attempt_at == clock()
    assert (await outbox.get(entry.id)).status == OutboxStatus.DEAD_LETTERED

    with pytest.raises(OutboxStateError):
        await outbox.replay_dead_letter(replay.id)


@pytest.mark.asyncio
async def test_list_and_summary_report_by_status_and_tenant(outbox) -> None:
    delivered = await _enqueue(outbox, tenant_id="t1")
    await _enqueue(outbox, tenant_id="t1")
    dead = await _enqueue(outbox, tenant_id="t2")
    await outbox.mark_delivered(delivered.id, attempt=1)
    await outbox.mark_dead_lettered(dead.id, attempt=5, error="timeout")

    assert await outbox.summary() == {"pending": 1, "delivered": 1, "dead_lettered": 1}
    t1_entries = await outbox.list_entries(tenant_id="t1")
    assert len(t1_entries) == 2
    dead_entries = await outbox.list_entries(status=OutboxStatus.DEAD_LETTERED)
    assert [entry.id for entry in dead_entries] == [dead.id]
    assert len(await outbox.list_entries(limit=1)) == 1


@pytest.mark.asyncio
async def test_sql_outbox_pending_entries_survive_restart(sql_engine, clock: FakeClock) -> None:
    first = SqlOutbox(sql_engine, clock=clock)
    entry = await _enqueue(first)

    restarted = SqlOutbox(sql_engine, clock=clock)
    claimed = await restarted.claim_due(now=clock(), limit=10, lease=LEASE)
    assert [item.id for item in claimed] == [entry.id]
    assert claimed[0].payload == entry.payload
    assert claimed[0].created_at == clock()


@pytest.mark.asyncio
async def test_worker_whose_lease_was_taken_over_cannot_write(outbox, clock: FakeClock) -> None:
    entry = await _enqueue(outbox)
    [first] = await outbox.claim_due(now=clock(), limit=10, lease=LEASE)
    assert first.lease_token
    clock.advance(seconds=61)
    [second] = await outbox.claim_due(now=clock(), limit=10, lease=LEASE)
    assert second.lease_token != first.lease_token

    with pytest.raises(OutboxLeaseLostError):
        await outbox.mark_delivered(entry.id, attempt=1, lease_token=first.lease_token)
    with pytest.raises(OutboxLeaseLostError):
        await outbox.schedule_retry(
            entry.id,
            attempt=1,
            next_attempt_at=clock(),
            error="http_500",
            lease_token=first.lease_token,
        )
    assert (await outbox.get(entry.id)).status == OutboxStatus.PENDING

    delivered = await outbox.mark_delivered(entry.id, attempt=1, lease_token=second.lease_token)
    assert delivered.status == OutboxStatus.DELIVERED
    assert delivered.lease_token is None
    # The lease ends with the transition, so even the last holder cannot write again.
    with pytest.raises(OutboxLeaseLostError):
        await outbox.mark_dead_lettered(entry.id, attempt=2, error="http_500", lease_token=second.lease_token)


@pytest.mark.asyncio
async def test_renew_lease_extends_only_the_current_holder(outbox, clock: FakeClock) -> None:
    entry = await _enqueue(outbox)
    [claimed] = await outbox.claim_due(now=clock(), limit=10, lease=LEASE)

    clock.advance(seconds=50)
    assert await outbox.renew_lease(entry.id, lease_token=claimed.lease_token, now=clock(), lease=LEASE) is True
    assert await outbox.renew_lease(entry.id, lease_token="someone-else", now=clock(), lease=LEASE) is False

    # Past the original expiry but inside the renewed one.
    clock.advance(seconds=30)
    assert await outbox.claim_due(now=clock(), limit=10, lease=LEASE) == []

    clock.advance(seconds=31)
    [taken_over] = await outbox.claim_due(now=clock(), limit=10, lease=LEASE)
    assert taken_over.id == entry.id
    assert await outbox.renew_lease(entry.id, lease_token=claimed.lease_token, now=clock(), lease=LEASE) is False
    assert await outbox.renew_lease(entry.id, lease_token=taken_over.lease_token, now=clock(), lease=LEASE) is True

    await outbox.mark_delivered(entry.id, attempt=1, lease_token=taken_over.lease_token)
    assert await outbox.renew_lease(entry.id, lease_token=taken_over.lease_token, now=clock(), lease=LEASE) is False
