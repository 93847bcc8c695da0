"""Dependency wiring layer.

Builds one container holding the shared store and every service on top of it.
Only the storage backend varies between deployments; the services are
always the same classes wired the same way.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from fleetctl.config import Settings
from fleetctl.devices.auth import SignatureAuthenticator
from fleetctl.devices.directory import DeviceDirectory, InMemoryDeviceDirectory, SqlDeviceDirectory
from fleetctl.devices.presence import PresenceTracker
from fleetctl.devices.service import DeviceService
from fleetctl.queue.monitor import QueueMonitor
from fleetctl.queue.service import InstructionQueue
from fleetctl.queue.status import InstructionStatusStore
from fleetctl.storage.adapter import StorageAdapter
from fleetctl.storage.memory import InMemoryStorageAdapter
from fleetctl.tasks.dispatcher import TaskDispatcher
from fleetctl.tasks.repository import InMemoryTaskRepository, SqlTaskRepository, TaskRepository
from fleetctl.tasks.retry import RetryPolicy
from fleetctl.tasks.scheduler import TaskScheduler
from fleetctl.tasks.targets import TaskTargetResolver

logger = logging.getLogger(__name__)


@dataclass
class RuntimeDependencies:
    """Container for everything the API layer and background jobs need."""

    settings: Settings
    store: StorageAdapter
    directory: DeviceDirectory
    tasks: TaskRepository
    authenticator: SignatureAuthenticator
    presence: PresenceTracker
    statuses: InstructionStatusStore
    queue: InstructionQueue
    monitor: QueueMonitor
    devices: DeviceService
    dispatcher: TaskDispatcher
    scheduler: TaskScheduler
    engine: Any = field(default=None, repr=False)

    def __post_init__(self):
        logger.info(
            "runtime_dependencies_created",
            extra={
                "storage_backend": self.settings.storage_backend,
                "store": type(self.store).__name__,
                "directory": type(self.directory).__name__,
            },
        )

    async def close(self) -> None:
        await self.store.close()
        if self.engine is not None:
            await self.engine.dispose()


def build_dependencies(
    settings: Settings,
    *,
    store: StorageAdapter | None = None,
    directory: DeviceDirectory | None = None,
    tasks: TaskRepository | None = None,
) -> RuntimeDependencies:
    """Wire services for the configured backend. Explicit arguments override the backend choice."""
    engine = None
    backend = settings.storage_backend.lower()
    if backend == "redis":
        from fleetctl.storage.database import create_engine, create_session_maker
        from fleetctl.storage.redis_store import RedisStorageAdapter

        store = store or RedisStorageAdapter.from_url(settings.redis_url)
        if directory is None or tasks is None:
            engine = create_engine(settings.database_url, echo=settings.debug)
            session_maker = create_session_maker(engine)
            directory = directory or SqlDeviceDirectory(session_maker)
            tasks = tasks or SqlTaskRepository(session_maker)
    elif backend == "memory":
        store = store or InMemoryStorageAdapter()
        directory = directory or InMemoryDeviceDirectory()
        tasks = tasks or InMemoryTaskRepository()
    else:
        raise ValueError(f"Unknown storage backend: {settings.storage_backend}")

    authenticator = SignatureAuthenticator(max_skew_seconds=settings.signature_max_skew_seconds)
    presence = PresenceTracker(
        store,
        online_ttl_seconds=settings.online_ttl_seconds,
        heartbeat_ttl_seconds=settings.heartbeat_ttl_seconds,
        metrics_ttl_seconds=settings.metrics_ttl_seconds,
    )
    statuses = InstructionStatusStore(store, ttl_seconds=settings.instruction_status_ttl_seconds)
    queue = InstructionQueue(store, statuses)
    resolver = TaskTargetResolver(directory)
    dispatcher = TaskDispatcher(
        repository=tasks,
        resolver=resolver,
        queue=queue,
        statuses=statuses,
        store=store,
        retry_policy=RetryPolicy(
            base_delay_seconds=settings.retry_base_delay_seconds,
            max_delay_seconds=settings.retry_max_delay_seconds,
        ),
        instruction_timeout_seconds=settings.instruction_timeout_seconds,
        head_priority_threshold=settings.dispatch_head_priority_threshold,
    )
    scheduler = TaskScheduler(
        repository=tasks,
        dispatcher=dispatcher,
        resolver=resolver,
        store=store,
        lock_ttl_seconds=settings.lock_ttl_seconds,
        lock_wait_seconds=settings.lock_wait_seconds,
    )
    devices = DeviceService(
        store=store,
        directory=directory,
        authenticator=authenticator,
        presence=presence,
        queue=queue,
        statuses=statuses,
        progress=scheduler,
        long_poll_default_seconds=settings.long_poll_default_seconds,
        long_poll_max_seconds=settings.long_poll_max_seconds,
        lock_ttl_seconds=settings.lock_ttl_seconds,
        lock_wait_seconds=settings.lock_wait_seconds,
        welcome_timeout_seconds=settings.instruction_timeout_seconds,
    )

    return RuntimeDependencies(
        settings=settings,
        store=store,
        directory=directory,
        tasks=tasks,
        authenticator=authenticator,
        presence=presence,
        statuses=statuses,
        queue=queue,
        monitor=QueueMonitor(queue, presence),
        devices=devices,
        dispatcher=dispatcher,
        scheduler=scheduler,
        engine=engine,
    )
