from __future__ import annotations

from datetime import datetime, timedelta
import logging
from threading import Lock
from typing import Protocol
from uuid import uuid4

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from eventrelay.core.clock import Clock, utc_now
from eventrelay.core.errors import OutboxEntryNotFoundError, OutboxLeaseLostError, OutboxStateError
from eventrelay.domain.events import OutboxEntry, OutboxStatus
from eventrelay.domain.models import OutboxEntryRow
from eventrelay.persistence.db import create_sessionmaker


logger = logging.getLogger(__name__)


class Outbox(Protocol):
    async def enqueue(
        self,
        *,
        event_type: str,
        payload: bytes,
        tenant_id: str,
        endpoint_name: str,
        event_id: str | None = None,
    ) -> OutboxEntry: ...

    async def claim_due(self, *, now: datetime, limit: int, lease: timedelta) -> list[OutboxEntry]: ...

    async def renew_lease(self, entry_id: str, *, lease_token: str, now: datetime, lease: timedelta) -> bool: ...

    async def mark_delivered(
        self,
        entry_id: str,
        *,
        attempt: int,
        now: datetime | None = None,
        lease_token: str | None = None,
    ) -> OutboxEntry: ...

    async def schedule_retry(
        self,
        entry_id: str,
        *,
        attempt: int,
        next_attempt_at: datetime,
        error: str,
        now: datetime | None = None,
        lease_token: str | None = None,
    ) -> OutboxEntry: ...

    async def mark_dead_lettered(
        self,
        entry_id: str,
        *,
        attempt: int,
        error: str,
        now: datetime | None = None,
        lease_token: str | None = None,
    ) -> OutboxEntry: ...

    async def get(self, entry_id: str) -> OutboxEntry | None: ...

    async def list_entries(
        self,
        *,
        status: OutboxStatus | None = None,
        tenant_id: str | None = None,
        limit: int = 100,
    ) -> list[OutboxEntry]: ...

    async def summary(self) -> dict[str, int]: ...

    async def replay_dead_letter(self, entry_id: str) -> OutboxEntry: ...


def _new_entry_id() -> str:
    return f"obx_{uuid4().hex}"


def _new_lease_token() -> str:
    return uuid4().hex


def _empty_summary() -> dict[str, int]:
    return {status.value: 0 for status in OutboxStatus}


class InMemoryOutbox:
    """Volatile outbox for tests and single-process development.

    Entries are lost on restart. Claims take a lease per entry so a second
    ``claim_due`` never returns an entry another dispatcher still holds, and
    each lease carries a token so a dispatcher whose lease was taken over
    cannot write the entry any more.
    """

    def __init__(self, *, clock: Clock | None = None) -> None:
        self._clock = clock or utc_now
        self._entries: dict[str, OutboxEntry] = {}
        # entry id -> (lease token, lease expiry)
        self._leases: dict[str, tuple[str, datetime]] = {}
        self._lock = Lock()

    async def enqueue(
        self,
        *,
        event_type: str,
        payload: bytes,
        tenant_id: str,
        endpoint_name: str,
        event_id: str | None = None,
        replay_of: str | None = None,
    ) -> OutboxEntry:
        now = self._clock()
        entry_id = _new_entry_id()
        entry = OutboxEntry(
            id=entry_id,
            event_id=event_id or entry_id,
            event_type=event_type,
            payload=bytes(payload),
            tenant_id=tenant_id,
            endpoint_name=endpoint_name,
            attempt=0,
            next_attempt_at=now,
            status=OutboxStatus.PENDING,
            created_at=now,
            updated_at=now,
            replay_of=replay_of,
        )
        with self._lock:
            self._entries[entry.id] = entry
        return entry

    def _lease_free(self, entry_id: str, now: datetime) -> bool:
        held = self._leases.get(entry_id)
        return held is None or held[1] <= now

    async def claim_due(self, *, now: datetime, limit: int, lease: timedelta) -> list[OutboxEntry]:
        with self._lock:
            due = [
                entry
                for entry in self._entries.values()
                if entry.status == OutboxStatus.PENDING
                and entry.next_attempt_at <= now
                and self._lease_free(entry.id, now)
            ]
            due.sort(key=lambda entry: entry.next_attempt_at)
            claimed: list[OutboxEntry] = []
            for entry in due[: max(0, limit)]:
                token = _new_lease_token()
                self._leases[entry.id] = (token, now + lease)
                claimed.append(entry.evolve(lease_token=token))
            return claimed

    async def renew_lease(self, entry_id: str, *, lease_token: str, now: datetime, lease: timedelta) -> bool:
        with self._lock:
            entry = self._entries.get(entry_id)
            held = self._leases.get(entry_id)
            if entry is None or entry.status != OutboxStatus.PENDING or held is None or held[0] != lease_token:
                return False
            self._leases[entry_id] = (lease_token, now + lease)
            return True

    def _transition(self, entry_id: str, lease_token: str | None, **changes) -> OutboxEntry:
        with self._lock:
            current = self._entries.get(entry_id)
            if current is None:
                raise OutboxEntryNotFoundError(f"outbox entry {entry_id} not found")
            if lease_token is not None:
                held = self._leases.get(entry_id)
                if held is None or held[0] != lease_token:
                    raise OutboxLeaseLostError(f"outbox entry {entry_id} lease is no longer held by this worker")
            if current.status != OutboxStatus.PENDING:
                raise OutboxStateError(f"outbox entry {entry_id} is {current.status.value}")
            updated = current.evolve(**changes)
            self._entries[entry_id] = updated
            self._leases.pop(entry_id, None)
            return updated

    async def mark_delivered(
        self,
        entry_id: str,
        *,
        attempt: int,
        now: datetime | None = None,
        lease_token: str | None = None,
    ) -> OutboxEntry:
        now = now or self._clock()
        return self._transition(
            entry_id,
            lease_token,
            status=OutboxStatus.DELIVERED,
            attempt=attempt,
            delivered_at=now,
            updated_at=now,
            last_error=None,
        )

    async def schedule_retry(
        self,
        entry_id: str,
        *,
        attempt: int,
        next_attempt_at: datetime,
        error: str,
        now: datetime | None = None,
        lease_token: str | None = None,
    ) -> OutboxEntry:
        return self._transition(
            entry_id,
            lease_token,
            attempt=attempt,
            next_attempt_at=next_attempt_at,
            last_error=error,
            updated_at=now or self._clock(),
        )

    async def mark_dead_lettered(
        self,
        entry_id: str,
        *,
        attempt: int,
        error: str,
        now: datetime | None = None,
        lease_token: str | None = None,
    ) -> OutboxEntry:
        return self._transition(
            entry_id,
            lease_token,
            status=OutboxStatus.DEAD_LETTERED,
            attempt=attempt,
            last_error=error,
            updated_at=now or self._clock(),
        )

    async def get(self, entry_id: str) -> OutboxEntry | None:
        with self._lock:
            return self._entries.get(entry_id)

    async def list_entries(
        self,
        *,
        status: OutboxStatus | None = None,
        tenant_id: str | None = None,
        limit: int = 100,
    ) -> list[OutboxEntry]:
        with self._lock:
            entries = list(self._entries.values())
        if status is not None:
            entries = [entry for entry in entries if entry.status == status]
        if tenant_id is not None:
            entries = [entry for entry in entries if entry.tenant_id == tenant_id]
        entries.reverse()
        return entries[: max(0, limit)]

    async def summary(self) -> dict[str, int]:
        counts = _empty_summary()
        with self._lock:
            for entry in self._entries.values():
                counts[entry.status.value] += 1
        return counts

    async def replay_dead_letter(self, entry_id: str) -> OutboxEntry:
        original = await self.get(entry_id)
        if original is None:
            raise OutboxEntryNotFoundError(f"outbox entry {entry_id} not found")
        if original.status != OutboxStatus.DEAD_LETTERED:
            raise OutboxStateError(f"outbox entry {entry_id} is {original.status.value}, not dead_lettered")
        replay = await self.enqueue(
            event_type=original.event_type,
            payload=original.payload,
            tenant_id=original.tenant_id,
            endpoint_name=original.endpoint_name,
            event_id=original.event_id,
            replay_of=original.id,
        )
        logger.info("outbox_dead_letter_replayed entry_id=%s replay_id=%s", original.id, replay.id)
        return replay

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


def _row_to_entry(row: OutboxEntryRow) -> OutboxEntry:
    return OutboxEntry(
        id=row.id,
        event_id=row.event_id,
        event_type=row.event_type,
        payload=bytes(row.payload),
        tenant_id=row.tenant_id,
        endpoint_name=row.endpoint_name,
        attempt=int(row.attempt),
        next_attempt_at=row.next_attempt_at,
        status=OutboxStatus(row.status),
        created_at=row.created_at,
        updated_at=row.updated_at,
        last_error=row.last_error,
        delivered_at=row.delivered_at,
        replay_of=row.replay_of,
    )


class SqlOutbox:
    """Durable outbox on the ``outbox_entries`` table.

    Pending entries survive restarts. ``claim_due`` leases rows with a
    conditional UPDATE, so concurrent workers (in one process or many) never
    both win the same row; Postgres additionally skips rows locked by a
    concurrent claim. Every lease stores a token that later transitions must
    present.
    """

    def __init__(self, engine: AsyncEngine, *, clock: Clock | None = None) -> None:
        self._engine = engine
        self._sessionmaker: async_sessionmaker[AsyncSession] = create_sessionmaker(engine)
        self._clock = clock or utc_now
        self._skip_locked = engine.dialect.name != "sqlite"

    async def enqueue(
        self,
        *,
        event_type: str,
        payload: bytes,
        tenant_id: str,
        endpoint_name: str,
        event_id: str | None = None,
        replay_of: str | None = None,
    ) -> OutboxEntry:
        now = self._clock()
        entry_id = _new_entry_id()
        row = OutboxEntryRow(
            id=entry_id,
            event_id=event_id or entry_id,
            event_type=event_type,
            payload=bytes(payload),
            tenant_id=tenant_id,
            endpoint_name=endpoint_name,
            attempt=0,
            next_attempt_at=now,
            status=OutboxStatus.PENDING.value,
            lease_expires_at=None,
            lease_token=None,
            replay_of=replay_of,
            created_at=now,
            updated_at=now,
        )
        async with self._sessionmaker() as session:
            session.add(row)
            await session.commit()
            await session.refresh(row)
            return _row_to_entry(row)

    def _claimable(self, now: datetime):
        return and_(
            OutboxEntryRow.status == OutboxStatus.PENDING.value,
            OutboxEntryRow.next_attempt_at <= now,
            or_(OutboxEntryRow.lease_expires_at.is_(None), OutboxEntryRow.lease_expires_at <= now),
        )

    async def claim_due(self, *, now: datetime, limit: int, lease: timedelta) -> list[OutboxEntry]:
        if limit <= 0:
            return []
        async with self._sessionmaker() as session:
            query = (
                select(OutboxEntryRow.id)
                .where(self._claimable(now))
                .order_by(OutboxEntryRow.next_attempt_at.asc(), OutboxEntryRow.created_at.asc())
                .limit(limit)
            )
            if self._skip_locked:
                query = query.with_for_update(skip_locked=True)
            candidate_ids = [str(row) for row in (await session.execute(query)).scalars().all()]
            tokens: dict[str, str] = {}
            for entry_id in candidate_ids:
                token = _new_lease_token()
                # Conditional update: a row another worker leased in between matches zero rows.
                result = await session.execute(
                    update(OutboxEntryRow)
                    .where(OutboxEntryRow.id == entry_id, self._claimable(now))
                    .values(lease_expires_at=now + lease, lease_token=token)
                )
                if result.rowcount == 1:
                    tokens[entry_id] = token
            await session.commit()
            if not tokens:
                return []
            rows = (
                await session.execute(
                    select(OutboxEntryRow)
                    .where(OutboxEntryRow.id.in_(list(tokens)))
                    .order_by(OutboxEntryRow.next_attempt_at.asc(), OutboxEntryRow.created_at.asc())
                )
            ).scalars().all()
            return [_row_to_entry(row).evolve(lease_token=tokens[row.id]) for row in rows]

    async def renew_lease(self, entry_id: str, *, lease_token: str, now: datetime, lease: timedelta) -> bool:
        async with self._sessionmaker() as session:
            result = await session.execute(
                update(OutboxEntryRow)
                .where(
                    OutboxEntryRow.id == entry_id,
                    OutboxEntryRow.status == OutboxStatus.PENDING.value,
                    OutboxEntryRow.lease_token == lease_token,
                )
                .values(lease_expires_at=now + lease)
            )
            await session.commit()
            return result.rowcount == 1

    async def _transition(self, entry_id: str, lease_token: str | None, **values) -> OutboxEntry:
        conditions = [OutboxEntryRow.id == entry_id, OutboxEntryRow.status == OutboxStatus.PENDING.value]
        if lease_token is not None:
            conditions.append(OutboxEntryRow.lease_token == lease_token)
        async with self._sessionmaker() as session:
            result = await session.execute(
                update(OutboxEntryRow)
                .where(*conditions)
                .values(lease_expires_at=None, lease_token=None, **values)
            )
            await session.commit()
            row = await session.get(OutboxEntryRow, entry_id, populate_existing=True)
            if row is None:
                raise OutboxEntryNotFoundError(f"outbox entry {entry_id} not found")
            if result.rowcount != 1:
                if lease_token is not None and row.lease_token != lease_token:
                    raise OutboxLeaseLostError(f"outbox entry {entry_id} lease is no longer held by this worker")
                raise OutboxStateError(f"outbox entry {entry_id} is {row.status}")
            return _row_to_entry(row)

    async def mark_delivered(
        self,
        entry_id: str,
        *,
        attempt: int,
        now: datetime | None = None,
        lease_token: str | None = None,
    ) -> OutboxEntry:
        now = now or self._clock()
        return await self._transition(
            entry_id,
            lease_token,
            status=OutboxStatus.DELIVERED.value,
            attempt=attempt,
            delivered_at=now,
            updated_at=now,
            last_error=None,
        )

    async def schedule_retry(
        self,
        entry_id: str,
        *,
        attempt: int,
        next_attempt_at: datetime,
        error: str,
        now: datetime | None = None,
        lease_token: str | None = None,
    ) -> OutboxEntry:
        return await self._transition(
            entry_id,
            lease_token,
            attempt=attempt,
            next_attempt_at=next_attempt_at,
            last_error=error,
            updated_at=now or self._clock(),
        )

    async def mark_dead_lettered(
        self,
        entry_id: str,
        *,
        attempt: int,
        error: str,
        now: datetime | None = None,
        lease_token: str | None = None,
    ) -> OutboxEntry:
        return await self._transition(
            entry_id,
            lease_token,
            status=OutboxStatus.DEAD_LETTERED.value,
            attempt=attempt,
            last_error=error,
            updated_at=now or self._clock(),
        )

    async def get(self, entry_id: str) -> OutboxEntry | None:
        async with self._sessionmaker() as session:
            row = await session.get(OutboxEntryRow, entry_id)
            return _row_to_entry(row) if row is not None else None

    async def list_entries(
        self,
        *,
        status: OutboxStatus | None = None,
        tenant_id: str | None = None,
        limit: int = 100,
    ) -> list[OutboxEntry]:
        query = select(OutboxEntryRow)
        if status is not None:
            query = query.where(OutboxEntryRow.status == status.value)
        if tenant_id is not None:
            query = query.where(OutboxEntryRow.tenant_id == tenant_id)
        query = query.order_by(OutboxEntryRow.created_at.desc(), OutboxEntryRow.id.desc()).limit(max(0, limit))
        async with self._sessionmaker() as session:
            rows = (await session.execute(query)).scalars().all()
            return [_row_to_entry(row) for row in rows]

    async def summary(self) -> dict[str, int]:
        counts = _empty_summary()
        async with self._sessionmaker() as session:
            rows = (
                await session.execute(
                    select(OutboxEntryRow.status, func.count(OutboxEntryRow.id)).group_by(OutboxEntryRow.status)
                )
            ).all()
        for status, count in rows:
            counts[str(status)] = int(count)
        return counts

    async def replay_dead_letter(self, entry_id: str) -> OutboxEntry:
        original = await self.get(entry_id)
        if original is None:
            raise OutboxEntryNotFoundError(f"outbox entry {entry_id} not found")
        if original.status != OutboxStatus.DEAD_LETTERED:
            raise OutboxStateError(f"outbox entry {entry_id} is {original.status.value}, not dead_lettered")
        replay = await self.enqueue(
            event_type=original.event_type,
            payload=original.payload,
            tenant_id=original.tenant_id,
            endpoint_name=original.endpoint_name,
            event_id=original.event_id,
            replay_of=original.id,
        )
        logger.info("outbox_dead_letter_replayed entry_id=%s replay_id=%s", original.id, replay.id)
        return replay
