from __future__ import annotations

from threading import Lock
from typing import Callable, Generic, Iterator, TypeVar
import zlib


V = TypeVar("V")


class _Shard(Generic[V]):
    __slots__ = ("lock", "items")

    def __init__(self) -> None:
        self.lock = Lock()
        self.items: dict[str, V] = {}


class ShardedMap(Generic[V]):
    """String-keyed map split into independently locked shards.

    Operations on keys that hash to different shards never contend, and no
    lock spans the whole map. Callers that need a read-modify-write on one key
    use ``locked(key)`` and mutate ``items`` while holding the shard lock.
    """

    def __init__(self, shard_count: int = 32) -> None:
        self._shards: list[_Shard[V]] = [_Shard() for _ in range(max(1, shard_count))]

    def _shard(self, key: str) -> _Shard[V]:
        # crc32 keeps shard selection stable across processes, unlike hash().
        return self._shards[zlib.crc32(key.encode("utf-8")) % len(self._shards)]

    def locked(self, key: str) -> _Shard[V]:
        return self._shard(key)

    def get(self, key: str) -> V | None:
        shard = self._shard(key)
        with shard.lock:
            return shard.items.get(key)

    def get_or_create(self, key: str, factory: Callable[[], V]) -> V:
        shard = self._shard(key)
        with shard.lock:
            value = shard.items.get(key)
            if value is None:
                value = factory()
                shard.items[key] = value
            return value

    def remove_where(self, predicate: Callable[[str, V], bool]) -> int:
        # Lock one shard at a time so sweeps never stall the whole map.
        removed = 0
        for shard in self._shards:
            with shard.lock:
                stale = [key for key, value in shard.items.items() if predicate(key, value)]
                for key in stale:
                    del shard.items[key]
                removed += len(stale)
        return removed

    def items(self) -> Iterator[tuple[str, V]]:
        for shard in self._shards:
            with shard.lock:
                snapshot = list(shard.items.items())
            yield from snapshot

    def __len__(self) -> int:
        total = 0
        for shard in self._shards:
            with shard.lock:
                total += len(shard.items)
        return total
