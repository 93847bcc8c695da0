"""In-process implementation of the shared store.

Used by tests and single-process deployments. TTLs are enforced lazily on
access against an injectable clock; pub/sub fans out to asyncio queues.
"""

from __future__ import annotations

import asyncio
import time
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable

from fleetctl.errors import StorageError


class _MemorySubscription:
    def __init__(self, queue: asyncio.Queue[str]):
        self._queue = queue

    async def wait(self, timeout: float) -> str | None:
        if timeout <= 0:
            try:
                return self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return None
        try:
            return await asyncio.wait_for(self._queue.get(), timeout)
        except asyncio.TimeoutError:
            return None


class InMemoryStorageAdapter:
    """Dict-backed store with lists, hashes, TTLs, pub/sub and named locks."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._scalars: dict[str, str] = {}
        self._hashes: dict[str, dict[str, str]] = {}
        self._lists: dict[str, list[str]] = {}
        self._expiry: dict[str, float] = {}
        self._subscribers: dict[str, set[asyncio.Queue[str]]] = defaultdict(set)
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    def _purge(self, key: str) -> None:
        deadline = self._expiry.get(key)
        if deadline is not None and deadline <= self._clock():
            self._drop(key)

    def _drop(self, key: str) -> bool:
        self._expiry.pop(key, None)
        found = False
        for store in (self._scalars, self._hashes, self._lists):
            if key in store:
                del store[key]
                found = True
        return found

    async def set(self, key: str, value: str, ttl: int | None = None) -> None:
        self._drop(key)
        self._scalars[key] = value
        if ttl is not None:
            self._expiry[key] = self._clock() + ttl

    async def get(self, key: str) -> str | None:
        self._purge(key)
        return self._scalars.get(key)

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            self._purge(key)
            if self._drop(key):
                removed += 1
        return removed

    async def exists(self, key: str) -> bool:
        self._purge(key)
        return key in self._scalars or key in self._hashes or key in self._lists

    async def expire(self, key: str, ttl: int) -> bool:
        if not await self.exists(key):
            return False
        self._expiry[key] = self._clock() + ttl
        return True

    async def hset_many(self, key: str, mapping: dict[str, str]) -> None:
        self._purge(key)
        self._hashes.setdefault(key, {}).update(mapping)

    async def hgetall(self, key: str) -> dict[str, str]:
        self._purge(key)
        return dict(self._hashes.get(key, {}))

    def _list(self, key: str) -> list[str]:
        self._purge(key)
        return self._lists.setdefault(key, [])

    def _prune_list(self, key: str) -> None:
        if key in self._lists and not self._lists[key]:
            self._drop(key)

    async def lpush(self, key: str, value: str) -> int:
        items = self._list(key)
        items.insert(0, value)
        return len(items)

    async def rpush(self, key: str, value: str) -> int:
        items = self._list(key)
        items.append(value)
        return len(items)

    async def rpop(self, key: str) -> str | None:
        items = self._list(key)
        value = items.pop() if items else None
        self._prune_list(key)
        return value

    async def llen(self, key: str) -> int:
        self._purge(key)
        return len(self._lists.get(key, []))

    async def lrange(self, key: str, start: int, stop: int) -> list[str]:
        self._purge(key)
        items = self._lists.get(key, [])
        size = len(items)
        if start < 0:
            start = max(size + start, 0)
        if stop < 0:
            stop = size + stop
        if start > stop:
            return []
        return list(items[start : stop + 1])

    async def lrem(self, key: str, count: int, value: str) -> int:
        items = self._list(key)
        removed = 0
        index = 0
        while index < len(items) and (count <= 0 or removed < count):
            if items[index] == value:
                del items[index]
                removed += 1
            else:
                index += 1
        self._prune_list(key)
        return removed

    async def publish(self, channel: str, message: str) -> int:
        receivers = self._subscribers.get(channel, set())
        for queue in receivers:
            queue.put_nowait(message)
        return len(receivers)

    @asynccontextmanager
    async def subscribe(self, channel: str) -> AsyncIterator[_MemorySubscription]:
        queue: asyncio.Queue[str] = asyncio.Queue()
        self._subscribers[channel].add(queue)
        try:
            yield _MemorySubscription(queue)
        finally:
            self._subscribers[channel].discard(queue)
            if not self._subscribers[channel]:
                del self._subscribers[channel]

    @asynccontextmanager
    async def lock(self, name: str, timeout: float, blocking_timeout: float) -> AsyncIterator[None]:
        # Lease expiry (timeout) only matters across processes; a local lock dies with its holder.
        lock = self._locks.setdefault(name, asyncio.Lock())
        self._lock_users[name] = self._lock_users.get(name, 0) + 1
        try:
            try:
                await asyncio.wait_for(lock.acquire(), blocking_timeout)
            except asyncio.TimeoutError as exc:
                raise StorageError(f"Timed out waiting for lock {name}") from exc
            try:
                yield
            finally:
                lock.release()
        finally:
            # Forget the lock once no holder or waiter refers to it
            self._lock_users[name] -= 1
            if not self._lock_users[name]:
                del self._lock_users[name]
                del self._locks[name]

    async def close(self) -> None:
        self._subscribers.clear()
