"""Fan a task out to its devices and fold device reports back into task status."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable

from fleetctl.errors import TargetConfigurationError
from fleetctl.queue.instruction import EXECUTE_PRIORITY, URGENT_PRIORITY, Instruction, InstructionType
from fleetctl.queue.service import InstructionQueue
from fleetctl.queue.status import InstructionStatus, InstructionStatusStore
from fleetctl.storage.adapter import StorageAdapter
from fleetctl.storage.keys import QueueKeys
from fleetctl.storage.models import Task, TaskStatus, TaskType
from fleetctl.tasks.repository import TaskRepository
from fleetctl.tasks.retry import RetryPolicy
from fleetctl.tasks.targets import TaskTargetResolver

logger = logging.getLogger(__name__)

NO_DEVICES_REASON = "no available target devices"
DELIVERY_FAILED_REASON = "all instruction deliveries failed"

IN_FLIGHT_VALUES = frozenset({InstructionStatus.delivered.value, InstructionStatus.running.value})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TaskDispatcher:
    """Owns every change to a task's status and device counters.

    Callers are expected to hold the task's dispatch lock around each call so
    that dispatch, progress updates and cancellation never interleave for the
    same task.
    """

    def __init__(
        self,
        *,
        repository: TaskRepository,
        resolver: TaskTargetResolver,
        queue: InstructionQueue,
        statuses: InstructionStatusStore,
        store: StorageAdapter,
        retry_policy: RetryPolicy | None = None,
        instruction_timeout_seconds: int = 300,
        head_priority_threshold: int = 5,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.repository = repository
        self.resolver = resolver
        self.queue = queue
        self.statuses = statuses
        self.store = store
        self.retry_policy = retry_policy or RetryPolicy()
        self.instruction_timeout_seconds = instruction_timeout_seconds
        self.head_priority_threshold = head_priority_threshold
        self._clock = clock

    async def dispatch(self, task: Task) -> Task:
        """Resolve targets and enqueue one execute instruction per device."""
        now = self._clock()
        task.start_time = now
        task.end_time = None
        task.last_execution_time = now
        task.failure_reason = None
        task.success_devices = 0
        task.failed_devices = 0

        try:
            devices = await self.resolver.resolve(task)
        except TargetConfigurationError as exc:
            task.total_devices = 0
            await self._fail(task, str(exc), now)
            raise

        task.total_devices = len(devices)
        if not devices:
            await self._fail(task, NO_DEVICES_REASON, now)
            return task

        task.status = TaskStatus.running
        await self.repository.save(task)

        high_priority = task.priority > self.head_priority_threshold
        instructions_key = QueueKeys.task_instructions(task.id)
        await self.store.delete(instructions_key)

        delivered = 0
        for device in devices:
            instruction = Instruction.create(
                InstructionType.execute_task,
                {
                    "task_id": task.id,
                    "task_name": task.name,
                    "script_id": task.script_id,
                    "parameters": dict(task.parameters or {}),
                },
                timeout=self.instruction_timeout_seconds,
                priority=EXECUTE_PRIORITY,
                task_id=task.id,
                created_at=now,
            )
            try:
                await self.queue.enqueue(device.code, instruction, high_priority=high_priority)
                await self.store.hset_many(instructions_key, {device.code: instruction.id})
                delivered += 1
            except Exception as exc:  # noqa: BLE001
                task.failed_devices += 1
                logger.warning(
                    "task_instruction_delivery_failed",
                    extra={"task_id": task.id, "device_code": device.code, "error": str(exc)},
                )

        if delivered == 0:
            await self._fail(task, DELIVERY_FAILED_REASON, now)
            return task

        await self.repository.save(task)
        logger.info(
            "task_dispatched",
            extra={
                "task_id": task.id,
                "total_devices": task.total_devices,
                "delivered": delivered,
                "high_priority": high_priority,
            },
        )
        return task

    async def record_device_result(self, task: Task, device_code: str, instruction_id: str, success: bool) -> Task:
        """Count one device outcome and finish the task once every device has reported.

        The instruction must be the one this run sent to that device; reports
        for other devices or earlier runs leave the counters alone.
        """
        if task.status not in (TaskStatus.running, TaskStatus.paused):
            logger.info(
                "task_result_ignored",
                extra={"task_id": task.id, "device_code": device_code, "status": task.status.value},
            )
            return task
        if task.reported_devices >= task.total_devices:
            logger.warning(
                "task_result_overflow",
                extra={"task_id": task.id, "device_code": device_code, "total_devices": task.total_devices},
            )
            return task

        sent = await self.store.hgetall(QueueKeys.task_instructions(task.id))
        if sent.get(device_code) != instruction_id:
            logger.warning(
                "task_result_unexpected_instruction",
                extra={"task_id": task.id, "device_code": device_code, "instruction_id": instruction_id},
            )
            return task

        if success:
            task.success_devices += 1
        else:
            task.failed_devices += 1

        # A paused task keeps counting but only finishes on resume.
        if task.status == TaskStatus.running:
            self.finish_if_complete(task)
        await self.repository.save(task)
        return task

    def finish_if_complete(self, task: Task) -> bool:
        if task.reported_devices < task.total_devices:
            return False

        now = self._clock()
        task.status = TaskStatus.completed if task.failed_devices == 0 else TaskStatus.partially_completed
        task.end_time = now
        logger.info(
            "task_finished",
            extra={
                "task_id": task.id,
                "status": task.status.value,
                "success_devices": task.success_devices,
                "failed_devices": task.failed_devices,
            },
        )
        if task.failed_devices > 0:
            self.schedule_retry(task, now)
        return True

    def schedule_retry(self, task: Task, now: datetime | None = None) -> bool:
        """Move a failed run back to PENDING with backoff if the task still has retries left."""
        if task.task_type == TaskType.recurring or task.retry_count >= task.max_retries:
            return False

        now = now or self._clock()
        task.retry_count += 1
        task.status = TaskStatus.pending
        task.scheduled_time = now + self.retry_policy.delay_for(task.retry_count)
        logger.info(
            "task_retry_scheduled",
            extra={
                "task_id": task.id,
                "retry_count": task.retry_count,
                "scheduled_time": task.scheduled_time.isoformat(),
            },
        )
        return True

    async def recall(self, task: Task) -> None:
        """Pull undelivered instructions for a cancelled task and tell busy devices to stop."""
        instructions_key = QueueKeys.task_instructions(task.id)
        sent = await self.store.hgetall(instructions_key)
        for device_code, instruction_id in sent.items():
            try:
                await self.queue.remove_for_task(device_code, task.id)
                status = await self.statuses.get(instruction_id)
                if status is None or status.get("status") not in IN_FLIGHT_VALUES:
                    continue
                cancel = Instruction.create(
                    InstructionType.cancel_task,
                    {"task_id": task.id, "instruction_id": instruction_id},
                    timeout=self.instruction_timeout_seconds,
                    priority=URGENT_PRIORITY,
                    task_id=task.id,
                    created_at=self._clock(),
                )
                await self.queue.enqueue(device_code, cancel, high_priority=True)
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    "task_recall_failed",
                    extra={"task_id": task.id, "device_code": device_code, "error": str(exc)},
                )
        await self.store.delete(instructions_key)

    async def _fail(self, task: Task, reason: str, now: datetime) -> None:
        task.status = TaskStatus.failed
        task.failure_reason = reason
        task.end_time = now
        logger.error("task_dispatch_failed", extra={"task_id": task.id, "reason": reason})
        self.schedule_retry(task, now)
        await self.repository.save(task)
