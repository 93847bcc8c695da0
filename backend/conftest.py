# conftest.py - Global pytest configuration
"""
Global pytest configuration.

Shared fixtures build the control plane on the in-memory store with a
controllable clock so queue expiry, presence windows, retry backoff and cron
scans can be exercised without sleeping.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import pytest

from fleetctl.devices.auth import SignatureAuthenticator
from fleetctl.devices.directory import DeviceRecord, InMemoryDeviceDirectory
from fleetctl.devices.presence import PresenceTracker
from fleetctl.devices.service import DeviceService
from fleetctl.queue.service import InstructionQueue
from fleetctl.queue.status import InstructionStatusStore
from fleetctl.storage.memory import InMemoryStorageAdapter
from fleetctl.tasks.dispatcher import TaskDispatcher
from fleetctl.tasks.repository import InMemoryTaskRepository
from fleetctl.tasks.retry import RetryPolicy
from fleetctl.tasks.scheduler import TaskScheduler
from fleetctl.tasks.targets import TaskTargetResolver


class FakeClock:
    """Settable clock usable both as a datetime source and a float timestamp source."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime.now(timezone.utc).replace(microsecond=0)

    def __call__(self) -> datetime:
        return self.now

    def timestamp(self) -> float:
        return self.now.timestamp()

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


@dataclass
class Fleet:
    clock: FakeClock
    store: InMemoryStorageAdapter
    directory: InMemoryDeviceDirectory
    tasks: InMemoryTaskRepository
    authenticator: SignatureAuthenticator
    presence: PresenceTracker
    statuses: InstructionStatusStore
    queue: InstructionQueue
    resolver: TaskTargetResolver
    dispatcher: TaskDispatcher
    scheduler: TaskScheduler
    devices: DeviceService

    def add_device(self, code: str, group_id: str | None = None) -> DeviceRecord:
        return self.directory.add_device(
            DeviceRecord(
                id=f"id-{code}",
                code=code,
                name=f"Device {code}",
                certificate=self.authenticator.generate_certificate(code, "test-request"),
                group_id=group_id,
            )
        )

    def sign(self, code: str, additional: dict | None = None) -> dict:
        certificate = self.authenticator.generate_certificate(code, "test-request")
        return self.authenticator.sign(code, certificate, additional)


def build_fleet(clock: FakeClock, retry_policy: RetryPolicy | None = None) -> Fleet:
    store = InMemoryStorageAdapter(clock=clock.timestamp)
    directory = InMemoryDeviceDirectory()
    tasks = InMemoryTaskRepository()
    authenticator = SignatureAuthenticator(clock=clock.timestamp)
    presence = PresenceTracker(store, clock=clock.timestamp)
    statuses = InstructionStatusStore(store)
    queue = InstructionQueue(store, statuses, clock=clock)
    resolver = TaskTargetResolver(directory)
    dispatcher = TaskDispatcher(
        repository=tasks,
        resolver=resolver,
        queue=queue,
        statuses=statuses,
        store=store,
        retry_policy=retry_policy or RetryPolicy(),
        clock=clock,
    )
    scheduler = TaskScheduler(
        repository=tasks,
        dispatcher=dispatcher,
        resolver=resolver,
        store=store,
        lock_wait_seconds=2.0,
        clock=clock,
    )
    devices = DeviceService(
        store=store,
        directory=directory,
        authenticator=authenticator,
        presence=presence,
        queue=queue,
        statuses=statuses,
        progress=scheduler,
        long_poll_default_seconds=0.5,
        long_poll_max_seconds=2.0,
        lock_wait_seconds=2.0,
    )
    return Fleet(
        clock=clock,
        store=store,
        directory=directory,
        tasks=tasks,
        authenticator=authenticator,
        presence=presence,
        statuses=statuses,
        queue=queue,
        resolver=resolver,
        dispatcher=dispatcher,
        scheduler=scheduler,
        devices=devices,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fleet(clock) -> Fleet:
    return build_fleet(clock)
