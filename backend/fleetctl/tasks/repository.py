"""Task record storage."""

from __future__ import annotations

from collections import Counter
from datetime import datetime
from typing import Protocol, runtime_checkable

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fleetctl.storage.models import Task, TaskStatus, TaskType

RECURRING_IDLE_EXCLUDED = (TaskStatus.running, TaskStatus.paused, TaskStatus.cancelled)


@runtime_checkable
class TaskRepository(Protocol):
    """Protocol for persisting and querying tasks."""

    async def add(self, task: Task) -> Task:
        ...

    async def get(self, task_id: str) -> Task | None:
        ...

    async def save(self, task: Task) -> None:
        ...

    async def list_due(self, now: datetime) -> list[Task]:
        """Pending one-shot tasks whose scheduled time has passed."""
        ...

    async def list_recurring(self) -> list[Task]:
        """Recurring tasks that are not running, paused or cancelled."""
        ...

    async def list_tasks(self, status: TaskStatus | None = None, limit: int = 50) -> list[Task]:
        ...

    async def count_by_status(self) -> dict[str, int]:
        ...

    async def count_by_type(self) -> dict[str, int]:
        ...


class InMemoryTaskRepository:
    """Keeps Task objects in a dict; the same instance is handed back on every read."""

    def __init__(self) -> None:
        self._tasks: dict[str, Task] = {}

    async def add(self, task: Task) -> Task:
        self._tasks[task.id] = task
        return task

    async def get(self, task_id: str) -> Task | None:
        return self._tasks.get(task_id)

    async def save(self, task: Task) -> None:
        self._tasks[task.id] = task

    async def list_due(self, now: datetime) -> list[Task]:
        due = [
            task
            for task in self._tasks.values()
            if task.status == TaskStatus.pending
            and task.task_type != TaskType.recurring
            and task.scheduled_time is not None
            and task.scheduled_time <= now
        ]
        return sorted(due, key=lambda task: task.scheduled_time)

    async def list_recurring(self) -> list[Task]:
        return [
            task
            for task in self._tasks.values()
            if task.task_type == TaskType.recurring and task.status not in RECURRING_IDLE_EXCLUDED
        ]

    async def list_tasks(self, status: TaskStatus | None = None, limit: int = 50) -> list[Task]:
        tasks = [task for task in self._tasks.values() if status is None or task.status == status]
        tasks.sort(key=lambda task: task.created_at, reverse=True)
        return tasks[:limit]

    async def count_by_status(self) -> dict[str, int]:
        return dict(Counter(task.status.value for task in self._tasks.values()))

    async def count_by_type(self) -> dict[str, int]:
        return dict(Counter(task.task_type.value for task in self._tasks.values()))


class SqlTaskRepository:
    """Tasks stored in the tasks table. Returned objects are detached from their session."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._session_maker = session_maker

    async def add(self, task: Task) -> Task:
        async with self._session_maker() as session:
            session.add(task)
            await session.commit()
            return task

    async def get(self, task_id: str) -> Task | None:
        async with self._session_maker() as session:
            return await session.get(Task, task_id)

    async def save(self, task: Task) -> None:
        async with self._session_maker() as session:
            await session.merge(task)
            await session.commit()

    async def list_due(self, now: datetime) -> list[Task]:
        async with self._session_maker() as session:
            result = await session.execute(
                select(Task)
                .where(
                    Task.status == TaskStatus.pending,
                    Task.task_type != TaskType.recurring,
                    Task.scheduled_time.is_not(None),
                    Task.scheduled_time <= now,
                )
                .order_by(Task.scheduled_time.asc())
            )
            return list(result.scalars().all())

    async def list_recurring(self) -> list[Task]:
        async with self._session_maker() as session:
            result = await session.execute(
                select(Task).where(
                    Task.task_type == TaskType.recurring,
                    Task.status.not_in(RECURRING_IDLE_EXCLUDED),
                )
            )
            return list(result.scalars().all())

    async def list_tasks(self, status: TaskStatus | None = None, limit: int = 50) -> list[Task]:
        query = select(Task).order_by(Task.created_at.desc()).limit(limit)
        if status is not None:
            query = query.where(Task.status == status)
        async with self._session_maker() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def count_by_status(self) -> dict[str, int]:
        async with self._session_maker() as session:
            result = await session.execute(select(Task.status, func.count()).group_by(Task.status))
            return {status.value: count for status, count in result.all()}

    async def count_by_type(self) -> dict[str, int]:
        async with self._session_maker() as session:
            result = await session.execute(select(Task.task_type, func.count()).group_by(Task.task_type))
            return {task_type.value: count for task_type, count in result.all()}
