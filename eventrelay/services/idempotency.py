from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
import hashlib
import json
import logging
from threading import Lock
from typing import Any, Protocol

from redis.asyncio import Redis

from eventrelay.core.clock import Clock, utc_now
from eventrelay.core.concurrency import ShardedMap


logger = logging.getLogger(__name__)

IDEMPOTENCY_HEADER = "Idempotency-Key"
IDEMPOTENT_REPLAY_HEADER = "Idempotent-Replay"


def scoped_idempotency_key(tenant_id: str, key: str) -> str:
    # Scope caller tokens per tenant so two tenants can never collide on the same key.
    return f"{tenant_id}::{key}"


def compute_request_hash(payload: Any) -> str:
    # Hash request payloads deterministically without persisting sensitive data.
    serialized = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


class IdempotencyStore(Protocol):
    async def try_put(self, key: str, expires_at: datetime) -> bool: ...


class InMemoryIdempotencyStore:
    """Process-local idempotency window.

    ``try_put`` is a compare-and-set under the lock of the key's shard: exactly
    one concurrent caller wins for a live key. Expired records count as absent
    and are overwritten in place; ``sweep_expired`` reclaims the rest and runs
    opportunistically every ``sweep_every`` successful writes.
    """

    def __init__(
        self,
        *,
        clock: Clock | None = None,
        shard_count: int = 32,
        sweep_every: int = 1024,
    ) -> None:
        self._records: ShardedMap[datetime] = ShardedMap(shard_count)
        self._clock = clock or utc_now
        self._sweep_every = max(0, sweep_every)
        self._writes = 0
        self._writes_lock = Lock()

    async def try_put(self, key: str, expires_at: datetime) -> bool:
        return self.try_put_sync(key, expires_at)

    def try_put_sync(self, key: str, expires_at: datetime) -> bool:
        now = self._clock()
        shard = self._records.locked(key)
        with shard.lock:
            existing = shard.items.get(key)
            if existing is not None and existing > now:
                return False
            shard.items[key] = expires_at
        self._maybe_sweep()
        return True

    def sweep_expired(self, now: datetime | None = None) -> int:
        cutoff = now or self._clock()
        removed = self._records.remove_where(lambda _key, expires_at: expires_at <= cutoff)
        if removed:
            logger.debug("idempotency_sweep removed=%s", removed)
        return removed

    def _maybe_sweep(self) -> None:
        if not self._sweep_every:
            return
        with self._writes_lock:
            self._writes += 1
            due = self._writes % self._sweep_every == 0
        if due:
            self.sweep_expired()

    def __len__(self) -> int:
        return len(self._records)


class RedisIdempotencyStore:
    # Share one dedupe window across API processes with Redis SET NX + absolute expiry.
    def __init__(self, redis: Redis, *, prefix: str = "eventrelay:idem", clock: Clock | None = None) -> None:
        self._redis = redis
        self._prefix = prefix
        self._clock = clock or utc_now

    def _key(self, key: str) -> str:
        return f"{self._prefix}:{key}"

    async def try_put(self, key: str, expires_at: datetime) -> bool:
        if expires_at <= self._clock():
            # Redis rejects expiries in the past; an already-expired record is never live.
            return True
        expires_ms = int(expires_at.timestamp() * 1000)
        acquired = await self._redis.set(self._key(key), "1", nx=True, pxat=expires_ms)
        return bool(acquired)


@dataclass(frozen=True)
class StoredResponse:
    # Original outcome replayed to duplicate requests within the idempotency window.
    status_code: int
    body: Any
    request_hash: str
    expires_at: datetime


class IdempotencyResponseCache(Protocol):
    async def get(self, key: str) -> StoredResponse | None: ...

    async def put(self, key: str, response: StoredResponse) -> None: ...


class InMemoryIdempotencyResponseCache:
    def __init__(self, *, clock: Clock | None = None, shard_count: int = 32) -> None:
        self._responses: ShardedMap[StoredResponse] = ShardedMap(shard_count)
        self._clock = clock or utc_now

    async def get(self, key: str) -> StoredResponse | None:
        stored = self._responses.get(key)
        if stored is None or stored.expires_at <= self._clock():
            return None
        return stored

    async def put(self, key: str, response: StoredResponse) -> None:
        shard = self._responses.locked(key)
        with shard.lock:
            shard.items[key] = response

    def sweep_expired(self, now: datetime | None = None) -> int:
        cutoff = now or self._clock()
        return self._responses.remove_where(lambda _key, stored: stored.expires_at <= cutoff)


class RedisIdempotencyResponseCache:
    def __init__(self, redis: Redis, *, prefix: str = "eventrelay:idem:response") -> None:
        self._redis = redis
        self._prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self._prefix}:{key}"

    async def get(self, key: str) -> StoredResponse | None:
        raw = await self._redis.get(self._key(key))
        if not raw:
            return None
        try:
            data = json.loads(raw)
            return StoredResponse(
                status_code=int(data["status_code"]),
                body=data.get("body"),
                request_hash=str(data["request_hash"]),
                expires_at=datetime.fromisoformat(data["expires_at"]),
            )
        except (KeyError, TypeError, ValueError):
            logger.warning("idempotency_response_unreadable key=%s", key)
            return None

    async def put(self, key: str, response: StoredResponse) -> None:
        payload = asdict(response)
        payload["expires_at"] = response.expires_at.isoformat()
        expires_ms = int(response.expires_at.timestamp() * 1000)
        await self._redis.set(self._key(key), json.dumps(payload, default=str), pxat=expires_ms)


def idempotency_expiry(ttl_hours: int, *, now: datetime | None = None) -> datetime:
    # Use UTC timestamps for consistent TTL boundaries.
    return (now or datetime.now(timezone.utc)) + timedelta(hours=ttl_hours)
