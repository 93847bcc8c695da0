"""Last-write-wins status records for individual instructions."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from enum import Enum as PyEnum
from typing import Any

from fleetctl.storage.adapter import StorageAdapter
from fleetctl.storage.keys import QueueKeys


class InstructionStatus(str, PyEnum):
    # Written by the queue
    pending = "pending"
    delivered = "delivered"
    expired = "expired"
    cancelled = "cancelled"
    cleared = "cleared"
    # Reported by devices
    running = "running"
    success = "success"
    failed = "failed"
    timeout = "timeout"


DEVICE_TERMINAL_STATUSES = frozenset(
    {
        InstructionStatus.success,
        InstructionStatus.failed,
        InstructionStatus.timeout,
        InstructionStatus.cancelled,
    }
)

STRING_FIELDS = ("status", "device_code", "task_id", "updated_at", "type", "output", "error_message")


def _encode(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, datetime):
        return value.isoformat()
    return json.dumps(value, default=str)


def _decode(value: str) -> Any:
    try:
        return json.loads(value)
    except ValueError:
        return value


class InstructionStatusStore:
    """Stores a flat status map per instruction id with a TTL."""

    def __init__(self, store: StorageAdapter, ttl_seconds: int = 3600):
        self._store = store
        self._ttl = ttl_seconds

    async def update(self, instruction_id: str, status: InstructionStatus | str, **fields: Any) -> None:
        key = QueueKeys.instruction_status(instruction_id)
        mapping = {name: _encode(value) for name, value in fields.items() if value is not None}
        mapping["status"] = status.value if isinstance(status, InstructionStatus) else status
        mapping["updated_at"] = datetime.now(timezone.utc).isoformat()
        await self._store.hset_many(key, mapping)
        await self._store.expire(key, self._ttl)

    async def get(self, instruction_id: str) -> dict[str, Any] | None:
        raw = await self._store.hgetall(QueueKeys.instruction_status(instruction_id))
        if not raw:
            return None
        decoded = {name: _decode(value) for name, value in raw.items()}
        # Identifiers, timestamps and device text stay as strings even when they look like JSON
        for name in STRING_FIELDS:
            if name in raw:
                decoded[name] = raw[name]
        return decoded
