"""Per-device instruction queue on top of the shared store.

Layout: each device owns one list. Deliveries pop from the right end, so
routine instructions are pushed on the left (FIFO behind everything already
queued) and high-priority ones on the right (delivered next). Every enqueue
publishes on the device's notify channel to wake a waiting long-poll.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Iterable

from pydantic import ValidationError

from fleetctl.queue.instruction import Instruction, InstructionType, ROUTINE_PRIORITY
from fleetctl.queue.status import InstructionStatus, InstructionStatusStore
from fleetctl.storage.adapter import StorageAdapter
from fleetctl.storage.keys import QueueKeys

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _decode(raw: str, device_code: str) -> Instruction | None:
    try:
        return Instruction.from_json(raw)
    except ValidationError:
        logger.warning("instruction_malformed", extra={"device_code": device_code, "raw": raw[:200]})
        return None


class InstructionQueue:
    """Enqueue, deliver, inspect and prune instructions for a device."""

    def __init__(
        self,
        store: StorageAdapter,
        statuses: InstructionStatusStore,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._store = store
        self._statuses = statuses
        self._clock = clock

    async def enqueue(self, device_code: str, instruction: Instruction, high_priority: bool = False) -> int:
        """Queue an instruction and wake the device. Returns the new queue length."""
        key = QueueKeys.device_queue(device_code)
        raw = instruction.to_json()
        if high_priority:
            length = await self._store.rpush(key, raw)
        else:
            length = await self._store.lpush(key, raw)

        await self._statuses.update(
            instruction.id,
            InstructionStatus.pending,
            device_code=device_code,
            task_id=instruction.task_id,
            type=instruction.type.value,
        )
        await self._store.publish(QueueKeys.device_notify(device_code), QueueKeys.NOTIFY_MESSAGE)

        logger.info(
            "instruction_enqueued",
            extra={
                "device_code": device_code,
                "instruction_id": instruction.id,
                "instruction_type": instruction.type.value,
                "high_priority": high_priority,
                "queue_length": length,
            },
        )
        return length

    async def enqueue_many(
        self,
        device_codes: Iterable[str],
        instruction_type: InstructionType,
        payload: dict[str, Any] | None = None,
        *,
        timeout: int | None = None,
        priority: int = ROUTINE_PRIORITY,
        high_priority: bool = False,
    ) -> dict[str, str | None]:
        """Send a fresh instruction to each device.

        Returns device code -> instruction id, or None where the write failed.
        A failure for one device never stops delivery to the rest.
        """
        results: dict[str, str | None] = {}
        for device_code in device_codes:
            kwargs = {"priority": priority}
            if timeout is not None:
                kwargs["timeout"] = timeout
            instruction = Instruction.create(instruction_type, dict(payload or {}), **kwargs)
            try:
                await self.enqueue(device_code, instruction, high_priority=high_priority)
                results[device_code] = instruction.id
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    "instruction_enqueue_failed",
                    extra={"device_code": device_code, "instruction_id": instruction.id, "error": str(exc)},
                )
                results[device_code] = None
        return results

    async def dequeue_all(self, device_code: str) -> list[Instruction]:
        """Pop everything queued for the device, dropping expired entries."""
        key = QueueKeys.device_queue(device_code)
        now = self._clock()
        delivered: list[Instruction] = []
        while True:
            raw = await self._store.rpop(key)
            if raw is None:
                break
            instruction = _decode(raw, device_code)
            if instruction is None:
                continue
            if instruction.is_expired(now):
                await self._statuses.update(instruction.id, InstructionStatus.expired, expired_at=now)
                logger.info(
                    "instruction_expired",
                    extra={"device_code": device_code, "instruction_id": instruction.id},
                )
                continue
            await self._statuses.update(instruction.id, InstructionStatus.delivered, delivered_at=now)
            delivered.append(instruction)
        return delivered

    async def long_poll(self, device_code: str, timeout: float) -> list[Instruction]:
        """Return queued instructions at once, or wait up to timeout for new ones."""
        instructions = await self.dequeue_all(device_code)
        if instructions or timeout <= 0:
            return instructions

        async with self._store.subscribe(QueueKeys.device_notify(device_code)) as subscription:
            # Anything enqueued between the first pop and subscribing has already published.
            instructions = await self.dequeue_all(device_code)
            if instructions:
                return instructions
            await subscription.wait(timeout)

        return await self.dequeue_all(device_code)

    async def preview(self, device_code: str, limit: int = 10) -> list[Instruction]:
        """Read up to limit queued instructions in delivery order without removing them."""
        if limit <= 0:
            return []
        raws = await self._store.lrange(QueueKeys.device_queue(device_code), -limit, -1)
        preview: list[Instruction] = []
        for raw in reversed(raws):
            instruction = _decode(raw, device_code)
            if instruction is not None:
                preview.append(instruction)
        return preview

    async def length(self, device_code: str) -> int:
        return await self._store.llen(QueueKeys.device_queue(device_code))

    async def clear(self, device_code: str) -> int:
        """Drain and discard the whole queue, returning how many entries were removed."""
        key = QueueKeys.device_queue(device_code)
        removed = 0
        while True:
            raw = await self._store.rpop(key)
            if raw is None:
                break
            removed += 1
            instruction = _decode(raw, device_code)
            if instruction is not None:
                await self._statuses.update(instruction.id, InstructionStatus.cleared)

        logger.info("instruction_queue_cleared", extra={"device_code": device_code, "removed": removed})
        return removed

    async def cancel(self, device_code: str, instruction_id: str) -> bool:
        """Remove the first queued instruction with this id."""
        removed = await self._remove_where(device_code, lambda item: item.id == instruction_id, limit=1)
        return removed > 0

    async def remove_for_task(self, device_code: str, task_id: str) -> int:
        """Remove every undelivered instruction belonging to a task."""
        return await self._remove_where(
            device_code,
            lambda item: item.task_id == task_id and item.type == InstructionType.execute_task,
        )

    async def _remove_where(
        self,
        device_code: str,
        predicate: Callable[[Instruction], bool],
        limit: int | None = None,
    ) -> int:
        key = QueueKeys.device_queue(device_code)
        removed = 0
        # Scan in delivery order so "first match" means the next one a device would get.
        for raw in reversed(await self._store.lrange(key, 0, -1)):
            instruction = _decode(raw, device_code)
            if instruction is None or not predicate(instruction):
                continue
            if await self._store.lrem(key, 1, raw):
                removed += 1
                await self._statuses.update(instruction.id, InstructionStatus.cancelled)
                logger.info(
                    "instruction_cancelled",
                    extra={"device_code": device_code, "instruction_id": instruction.id},
                )
            if limit is not None and removed >= limit:
                break
        return removed
