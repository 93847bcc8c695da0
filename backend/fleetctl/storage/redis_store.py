"""Redis-backed implementation of the shared store."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

import redis.asyncio as aioredis
from redis.exceptions import LockError

from fleetctl.errors import StorageError

logger = logging.getLogger(__name__)


class _RedisSubscription:
    def __init__(self, pubsub: aioredis.client.PubSub):
        self._pubsub = pubsub

    async def wait(self, timeout: float) -> str | None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + max(timeout, 0.0)
        while True:
            remaining = deadline - loop.time()
            message = await self._pubsub.get_message(
                ignore_subscribe_messages=True,
                timeout=max(remaining, 0.0),
            )
            if message is not None and message.get("type") == "message":
                return message["data"]
            if remaining <= 0:
                return None


class RedisStorageAdapter:
    """Shared store over redis.asyncio with string responses."""

    def __init__(self, client: aioredis.Redis):
        self._redis = client

    @classmethod
    def from_url(cls, url: str) -> "RedisStorageAdapter":
        return cls(aioredis.from_url(url, decode_responses=True))

    async def set(self, key: str, value: str, ttl: int | None = None) -> None:
        await self._redis.set(key, value, ex=ttl)

    async def get(self, key: str) -> str | None:
        return await self._redis.get(key)

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self._redis.delete(*keys))

    async def exists(self, key: str) -> bool:
        return bool(await self._redis.exists(key))

    async def expire(self, key: str, ttl: int) -> bool:
        return bool(await self._redis.expire(key, ttl))

    async def hset_many(self, key: str, mapping: dict[str, str]) -> None:
        if mapping:
            await self._redis.hset(key, mapping=mapping)

    async def hgetall(self, key: str) -> dict[str, str]:
        return await self._redis.hgetall(key)

    async def lpush(self, key: str, value: str) -> int:
        return int(await self._redis.lpush(key, value))

    async def rpush(self, key: str, value: str) -> int:
        return int(await self._redis.rpush(key, value))

    async def rpop(self, key: str) -> str | None:
        return await self._redis.rpop(key)

    async def llen(self, key: str) -> int:
        return int(await self._redis.llen(key))

    async def lrange(self, key: str, start: int, stop: int) -> list[str]:
        return await self._redis.lrange(key, start, stop)

    async def lrem(self, key: str, count: int, value: str) -> int:
        return int(await self._redis.lrem(key, count, value))

    async def publish(self, channel: str, message: str) -> int:
        return int(await self._redis.publish(channel, message))

    @asynccontextmanager
    async def subscribe(self, channel: str) -> AsyncIterator[_RedisSubscription]:
        pubsub = self._redis.pubsub()
        await pubsub.subscribe(channel)
        try:
            yield _RedisSubscription(pubsub)
        finally:
            await pubsub.unsubscribe(channel)
            await pubsub.aclose()

    @asynccontextmanager
    async def lock(self, name: str, timeout: float, blocking_timeout: float) -> AsyncIterator[None]:
        lock = self._redis.lock(name, timeout=timeout, blocking_timeout=blocking_timeout)
        if not await lock.acquire():
            raise StorageError(f"Timed out waiting for lock {name}")
        try:
            yield
        finally:
            try:
                await lock.release()
            except LockError:
                # Lease ran out before release; another holder may already own it.
                logger.warning("lock_release_failed", extra={"lock": name})

    async def ping(self) -> bool:
        return bool(await self._redis.ping())

    async def close(self) -> None:
        await self._redis.aclose()
