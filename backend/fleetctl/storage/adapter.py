"""Shared key/value store contract.

Every component that keeps cross-process state (queues, presence, instruction
status, locks) talks to the store through this protocol so that a Redis-backed
deployment and the in-memory fake used in tests are interchangeable.
"""

from __future__ import annotations

from typing import AsyncContextManager, Protocol, runtime_checkable


@runtime_checkable
class Subscription(Protocol):
    """An open subscription to one pub/sub channel."""

    async def wait(self, timeout: float) -> str | None:
        """Return the next published message, or None once timeout elapses."""
        ...


@runtime_checkable
class StorageAdapter(Protocol):
    """Protocol for the shared store (lists, hashes, TTL'd scalars, pub/sub, locks)."""

    async def set(self, key: str, value: str, ttl: int | None = None) -> None:
        """Set a scalar, optionally expiring after ttl seconds."""
        ...

    async def get(self, key: str) -> str | None:
        ...

    async def delete(self, *keys: str) -> int:
        """Delete keys and return how many existed."""
        ...

    async def exists(self, key: str) -> bool:
        ...

    async def expire(self, key: str, ttl: int) -> bool:
        ...

    async def hset_many(self, key: str, mapping: dict[str, str]) -> None:
        """Write several hash fields at once."""
        ...

    async def hgetall(self, key: str) -> dict[str, str]:
        ...

    async def lpush(self, key: str, value: str) -> int:
        """Insert at the left end of a list and return the new length."""
        ...

    async def rpush(self, key: str, value: str) -> int:
        """Insert at the right end of a list and return the new length."""
        ...

    async def rpop(self, key: str) -> str | None:
        """Remove and return the rightmost list element."""
        ...

    async def llen(self, key: str) -> int:
        ...

    async def lrange(self, key: str, start: int, stop: int) -> list[str]:
        """Read list elements by inclusive index range, negative indexes allowed."""
        ...

    async def lrem(self, key: str, count: int, value: str) -> int:
        """Remove up to count occurrences of value scanning from the left."""
        ...

    async def publish(self, channel: str, message: str) -> int:
        """Publish a message and return the number of receivers."""
        ...

    def subscribe(self, channel: str) -> AsyncContextManager[Subscription]:
        """Open a subscription for the lifetime of the context."""
        ...

    def lock(self, name: str, timeout: float, blocking_timeout: float) -> AsyncContextManager[None]:
        """Hold a named mutual-exclusion lock, waiting up to blocking_timeout to get it."""
        ...

    async def close(self) -> None:
        ...
