"""Top-level task orchestration: creation, due scans, and guarded status transitions."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Callable

from fleetctl.errors import InvalidCronExpression, TaskConfigurationError, TaskNotFoundError, TaskStateError
from fleetctl.storage.adapter import StorageAdapter
from fleetctl.storage.keys import QueueKeys
from fleetctl.storage.models import TERMINAL_STATUSES, Task, TaskStatus, TaskType
from fleetctl.tasks.cron import is_cron_due, validate_cron
from fleetctl.tasks.dispatcher import TaskDispatcher
from fleetctl.tasks.repository import TaskRepository
from fleetctl.tasks.schemas import DueScanResult, TaskCreateRequest, TaskStatistics
from fleetctl.tasks.targets import TaskTargetResolver

logger = logging.getLogger(__name__)

PAUSABLE_STATUSES = (TaskStatus.pending, TaskStatus.running)
RUN_NOW_STATUSES = (TaskStatus.pending, TaskStatus.failed)
RECURRING_BLOCKED_STATUSES = (TaskStatus.running, TaskStatus.paused, TaskStatus.cancelled)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class TaskScheduler:
    """Creates tasks and drives them through their lifecycle.

    Every mutation of an existing task runs under the shared-store lock
    ``task_dispatch:{task_id}`` and re-reads the task inside the lock, so two
    triggers racing for the same task (overlapping scans, an operator
    pressing "run now" mid-scan, a device report landing during dispatch)
    serialize instead of double-sending or losing counter updates.
    """

    def __init__(
        self,
        *,
        repository: TaskRepository,
        dispatcher: TaskDispatcher,
        resolver: TaskTargetResolver,
        store: StorageAdapter,
        lock_ttl_seconds: float = 30.0,
        lock_wait_seconds: float = 10.0,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.repository = repository
        self.dispatcher = dispatcher
        self.resolver = resolver
        self.store = store
        self.lock_ttl_seconds = lock_ttl_seconds
        self.lock_wait_seconds = lock_wait_seconds
        self._clock = clock

    @asynccontextmanager
    async def _task_lock(self, task_id: str) -> AsyncIterator[None]:
        async with self.store.lock(QueueKeys.task_dispatch_lock(task_id), self.lock_ttl_seconds, self.lock_wait_seconds):
            yield

    async def get_task(self, task_id: str) -> Task:
        task = await self.repository.get(task_id)
        if task is None:
            raise TaskNotFoundError(f"Task {task_id} not found")
        return task

    async def create_task(self, request: TaskCreateRequest) -> Task:
        """Validate and persist a task without dispatching it."""
        if not request.name.strip():
            raise TaskConfigurationError("Task name is required")
        if request.task_type == TaskType.scheduled and request.scheduled_time is None:
            raise TaskConfigurationError("A scheduled task needs a scheduled_time")
        if request.task_type == TaskType.recurring:
            if not request.cron_expression:
                raise TaskConfigurationError("A recurring task needs a cron_expression")
            try:
                validate_cron(request.cron_expression)
            except InvalidCronExpression as exc:
                raise TaskConfigurationError(str(exc)) from exc

        task = Task(
            name=request.name.strip(),
            description=request.description,
            task_type=request.task_type,
            target_type=request.target_type,
            status=TaskStatus.pending,
            priority=request.priority,
            script_id=request.script_id,
            parameters=dict(request.parameters),
            scheduled_time=_as_utc(request.scheduled_time) if request.scheduled_time else None,
            cron_expression=request.cron_expression if request.task_type == TaskType.recurring else None,
            max_retries=request.max_retries,
            created_at=self._clock(),
        )
        await self.resolver.apply_target(task, request.target_device_ids, request.target_group_id)
        await self.repository.add(task)
        logger.info(
            "task_created",
            extra={"task_id": task.id, "task_type": task.task_type.value, "target_type": task.target_type.value},
        )
        return task

    async def create_and_dispatch(self, request: TaskCreateRequest) -> Task:
        task = await self.create_task(request)
        if task.task_type == TaskType.immediate:
            return await self.dispatch_task(task.id)
        return task

    async def dispatch_task(self, task_id: str) -> Task:
        """Dispatch under the task lock; a task that is no longer dispatchable is returned untouched."""
        task, _ = await self._dispatch_locked(task_id)
        return task

    async def run_now(self, task_id: str) -> Task:
        """Operator re-trigger for a pending or failed task."""
        async with self._task_lock(task_id):
            task = await self.get_task(task_id)
            if task.status not in RUN_NOW_STATUSES:
                raise TaskStateError(task.id, task.status.value, "run")
            task.status = TaskStatus.pending
            task.scheduled_time = self._clock()
            await self.repository.save(task)
        return await self.dispatch_task(task_id)

    async def run_due_tasks(self) -> DueScanResult:
        """Dispatch every scheduled or recurring task that is due now. Safe to overlap."""
        now = self._clock()
        due: dict[str, Task] = {task.id: task for task in await self.repository.list_due(now)}

        for task in await self.repository.list_recurring():
            since = task.last_execution_time or task.created_at
            try:
                if is_cron_due(task.cron_expression, _as_utc(since), now):
                    due.setdefault(task.id, task)
            except InvalidCronExpression as exc:
                logger.error(
                    "task_cron_invalid",
                    extra={"task_id": task.id, "cron_expression": task.cron_expression, "error": str(exc)},
                )

        dispatched: list[str] = []
        skipped = 0
        for task_id in due:
            try:
                _, did_dispatch = await self._dispatch_locked(task_id, due_at=now)
            except Exception as exc:  # noqa: BLE001
                logger.error("due_task_dispatch_failed", extra={"task_id": task_id, "error": str(exc)})
                skipped += 1
                continue
            if did_dispatch:
                dispatched.append(task_id)
            else:
                skipped += 1

        logger.info("due_task_scan_completed", extra={"dispatched": len(dispatched), "skipped": skipped})
        return DueScanResult(dispatched=dispatched, skipped=skipped)

    async def record_device_result(self, task_id: str, device_code: str, instruction_id: str, success: bool) -> None:
        async with self._task_lock(task_id):
            task = await self.repository.get(task_id)
            if task is None:
                logger.warning("task_result_unknown_task", extra={"task_id": task_id, "device_code": device_code})
                return
            await self.dispatcher.record_device_result(task, device_code, instruction_id, success)

    async def pause(self, task_id: str) -> Task:
        async with self._task_lock(task_id):
            task = await self.get_task(task_id)
            if task.status not in PAUSABLE_STATUSES:
                raise TaskStateError(task.id, task.status.value, "pause")
            task.status = TaskStatus.paused
            await self.repository.save(task)
        logger.info("task_paused", extra={"task_id": task_id})
        return task

    async def resume(self, task_id: str) -> Task:
        """Leave PAUSED. An in-flight run continues; a run that never started goes back to PENDING."""
        dispatch_now = False
        async with self._task_lock(task_id):
            task = await self.get_task(task_id)
            if task.status != TaskStatus.paused:
                raise TaskStateError(task.id, task.status.value, "resume")

            in_flight = task.start_time is not None and task.end_time is None
            if in_flight:
                task.status = TaskStatus.running
                self.dispatcher.finish_if_complete(task)
            else:
                task.status = TaskStatus.pending
                dispatch_now = task.task_type == TaskType.immediate or (
                    task.task_type == TaskType.scheduled
                    and task.scheduled_time is not None
                    and _as_utc(task.scheduled_time) <= self._clock()
                )
            await self.repository.save(task)

        logger.info("task_resumed", extra={"task_id": task_id, "status": task.status.value})
        if dispatch_now:
            return await self.dispatch_task(task_id)
        return task

    async def cancel(self, task_id: str) -> Task:
        async with self._task_lock(task_id):
            task = await self.get_task(task_id)
            if task.status in TERMINAL_STATUSES:
                raise TaskStateError(task.id, task.status.value, "cancel")

            task.status = TaskStatus.cancelled
            task.end_time = self._clock()
            await self.repository.save(task)
            if task.total_devices > 0:
                await self.dispatcher.recall(task)

        logger.info("task_cancelled", extra={"task_id": task_id})
        return task

    async def statistics(self) -> TaskStatistics:
        by_status = await self.repository.count_by_status()
        recurring = await self.repository.list_recurring()
        return TaskStatistics(
            total=sum(by_status.values()),
            by_status=by_status,
            by_type=await self.repository.count_by_type(),
            active_recurring=len(recurring),
        )

    async def _dispatch_locked(self, task_id: str, due_at: datetime | None = None) -> tuple[Task, bool]:
        async with self._task_lock(task_id):
            task = await self.get_task(task_id)
            if not self._is_dispatchable(task) or (due_at is not None and not self._still_due(task, due_at)):
                logger.info(
                    "task_dispatch_skipped",
                    extra={"task_id": task.id, "status": task.status.value},
                )
                return task, False
            return await self.dispatcher.dispatch(task), True

    def _is_dispatchable(self, task: Task) -> bool:
        if task.task_type == TaskType.recurring:
            return task.status not in RECURRING_BLOCKED_STATUSES
        return task.status == TaskStatus.pending

    def _still_due(self, task: Task, now: datetime) -> bool:
        # Scan results can be stale by the time the lock is held.
        if task.task_type == TaskType.recurring:
            since = task.last_execution_time or task.created_at
            try:
                return is_cron_due(task.cron_expression, _as_utc(since), now)
            except InvalidCronExpression:
                return False
        return task.scheduled_time is None or _as_utc(task.scheduled_time) <= now
