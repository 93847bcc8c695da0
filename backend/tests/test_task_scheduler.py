"""Tests for task creation, dispatch, aggregation and lifecycle transitions."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from conftest import build_fleet
from fleetctl.errors import TaskConfigurationError, TaskStateError
from fleetctl.queue.instruction import Instruction, InstructionType
from fleetctl.storage.keys import QueueKeys
from fleetctl.storage.models import Task, TaskStatus, TaskTargetType, TaskType
from fleetctl.tasks.dispatcher import NO_DEVICES_REASON
from fleetctl.tasks.retry import RetryPolicy
from fleetctl.tasks.schemas import TaskCreateRequest


def _request(**overrides) -> TaskCreateRequest:
    values = {
        "name": "collect diagnostics",
        "task_type": TaskType.immediate,
        "target_type": TaskTargetType.all,
        "script_id": "diag",
    }
    values.update(overrides)
    return TaskCreateRequest(**values)


async def _report(fleet, task, code: str, success: bool) -> None:
    sent = await fleet.store.hgetall(QueueKeys.task_instructions(task.id))
    await fleet.scheduler.record_device_result(task.id, code, sent[code], success)


async def _report_all(fleet, task, outcomes: dict[str, bool]) -> None:
    for code, success in outcomes.items():
        await _report(fleet, task, code, success)


# =============================================================================
# Creation
# =============================================================================

@pytest.mark.asyncio
async def test_scheduled_task_requires_time(fleet):
    with pytest.raises(TaskConfigurationError):
        await fleet.scheduler.create_task(_request(task_type=TaskType.scheduled))


@pytest.mark.asyncio
@pytest.mark.parametrize("cron", [None, "every minute"])
async def test_recurring_task_requires_valid_cron(fleet, cron):
    with pytest.raises(TaskConfigurationError):
        await fleet.scheduler.create_task(_request(task_type=TaskType.recurring, cron_expression=cron))


@pytest.mark.asyncio
async def test_created_task_starts_pending_with_zero_counters(fleet):
    task = await fleet.scheduler.create_task(_request(task_type=TaskType.scheduled, scheduled_time=fleet.clock()))

    assert task.status == TaskStatus.pending
    assert (task.total_devices, task.success_devices, task.failed_devices) == (0, 0, 0)
    assert task.retry_count == 0


# =============================================================================
# Dispatch
# =============================================================================

@pytest.mark.asyncio
async def test_dispatch_with_no_devices_fails(fleet):
    task = await fleet.scheduler.create_and_dispatch(_request())

    assert task.status == TaskStatus.failed
    assert task.failure_reason == NO_DEVICES_REASON
    assert task.total_devices == 0
    assert task.end_time is not None


@pytest.mark.asyncio
async def test_specific_task_with_empty_device_list_fails_at_dispatch(fleet):
    fleet.add_device("D1")
    task = Task(
        name="orphan",
        task_type=TaskType.immediate,
        target_type=TaskTargetType.specific,
        target_device_ids=[],
        created_at=fleet.clock(),
    )
    await fleet.tasks.add(task)

    task = await fleet.scheduler.dispatch_task(task.id)

    assert task.status == TaskStatus.failed
    assert task.failure_reason == "no available target devices"
    assert task.total_devices == 0
    assert await fleet.queue.length("D1") == 0


@pytest.mark.asyncio
async def test_dispatch_enqueues_one_instruction_per_device(fleet):
    fleet.add_device("D1")
    fleet.add_device("D2")

    task = await fleet.scheduler.create_and_dispatch(_request(parameters={"level": "full"}))

    assert task.status == TaskStatus.running
    assert task.total_devices == 2
    assert task.start_time is not None and task.last_execution_time is not None
    for code in ("D1", "D2"):
        (instruction,) = await fleet.queue.dequeue_all(code)
        assert instruction.type == InstructionType.execute_task
        assert instruction.task_id == task.id
        assert instruction.payload["parameters"] == {"level": "full"}
        assert instruction.payload["script_id"] == "diag"


@pytest.mark.asyncio
async def test_high_priority_task_jumps_the_queue(fleet):
    fleet.add_device("D1")
    routine = Instruction.create(InstructionType.ping, created_at=fleet.clock())
    await fleet.queue.enqueue("D1", routine)

    task = await fleet.scheduler.create_and_dispatch(_request(priority=8))

    delivered = await fleet.queue.dequeue_all("D1")
    assert [i.task_id for i in delivered] == [task.id, None]


@pytest.mark.asyncio
async def test_normal_priority_task_waits_behind_queued_work(fleet):
    fleet.add_device("D1")
    routine = Instruction.create(InstructionType.ping, created_at=fleet.clock())
    await fleet.queue.enqueue("D1", routine)

    task = await fleet.scheduler.create_and_dispatch(_request(priority=5))

    delivered = await fleet.queue.dequeue_all("D1")
    assert [i.task_id for i in delivered] == [None, task.id]


@pytest.mark.asyncio
async def test_concurrent_dispatch_sends_once(fleet):
    fleet.add_device("D1")
    task = await fleet.scheduler.create_task(_request(task_type=TaskType.scheduled, scheduled_time=fleet.clock()))

    await asyncio.gather(fleet.scheduler.dispatch_task(task.id), fleet.scheduler.dispatch_task(task.id))

    assert await fleet.queue.length("D1") == 1


# =============================================================================
# Aggregation
# =============================================================================

@pytest.mark.asyncio
async def test_all_success_completes(fleet):
    fleet.add_device("D1")
    fleet.add_device("D2")
    task = await fleet.scheduler.create_and_dispatch(_request())

    await _report(fleet, task, "D1", True)
    assert (await fleet.scheduler.get_task(task.id)).status == TaskStatus.running

    await _report(fleet, task, "D2", True)
    task = await fleet.scheduler.get_task(task.id)
    assert task.status == TaskStatus.completed
    assert task.success_devices == 2
    assert task.end_time is not None


@pytest.mark.asyncio
async def test_any_failure_is_partial(fleet):
    fleet.add_device("D1")
    fleet.add_device("D2")
    task = await fleet.scheduler.create_and_dispatch(_request())

    await _report_all(fleet, task, {"D1": True, "D2": False})

    task = await fleet.scheduler.get_task(task.id)
    assert task.status == TaskStatus.partially_completed
    assert (task.success_devices, task.failed_devices) == (1, 1)


@pytest.mark.asyncio
async def test_all_failed_is_still_partial(fleet):
    fleet.add_device("D1")
    task = await fleet.scheduler.create_and_dispatch(_request())

    await _report_all(fleet, task, {"D1": False})

    assert (await fleet.scheduler.get_task(task.id)).status == TaskStatus.partially_completed


@pytest.mark.asyncio
async def test_reports_beyond_total_are_ignored(fleet):
    fleet.add_device("D1")
    task = await fleet.scheduler.create_and_dispatch(_request())

    await _report_all(fleet, task, {"D1": True})
    await _report(fleet, task, "D1", False)

    task = await fleet.scheduler.get_task(task.id)
    assert (task.success_devices, task.failed_devices) == (1, 0)
    assert task.status == TaskStatus.completed


# =============================================================================
# Retry
# =============================================================================

@pytest.mark.asyncio
async def test_failed_run_is_retried_with_backoff(fleet, clock):
    fleet.add_device("D1")
    task = await fleet.scheduler.create_and_dispatch(_request(max_retries=1))
    await _report_all(fleet, task, {"D1": False})
    await fleet.queue.clear("D1")

    task = await fleet.scheduler.get_task(task.id)
    assert task.status == TaskStatus.pending
    assert task.retry_count == 1
    assert task.scheduled_time == clock() + timedelta(seconds=20)

    clock.advance(19)
    assert (await fleet.scheduler.run_due_tasks()).dispatched == []

    clock.advance(1)
    assert (await fleet.scheduler.run_due_tasks()).dispatched == [task.id]
    assert (await fleet.scheduler.get_task(task.id)).status == TaskStatus.running

    await _report_all(fleet, task, {"D1": False})
    task = await fleet.scheduler.get_task(task.id)
    assert task.status == TaskStatus.partially_completed
    assert task.retry_count == 1


@pytest.mark.asyncio
async def test_retry_uses_configured_policy(clock):
    fleet = build_fleet(clock, retry_policy=RetryPolicy(base_delay_seconds=1, max_delay_seconds=60))
    task = await fleet.scheduler.create_and_dispatch(_request(max_retries=3))

    assert task.status == TaskStatus.pending
    assert task.failure_reason == NO_DEVICES_REASON
    assert task.scheduled_time == clock() + timedelta(seconds=2)


@pytest.mark.asyncio
async def test_recurring_task_is_not_retried(fleet, clock):
    task = await fleet.scheduler.create_task(
        _request(task_type=TaskType.recurring, cron_expression="*/5 * * * *", max_retries=3)
    )
    clock.advance(301)

    await fleet.scheduler.run_due_tasks()

    task = await fleet.scheduler.get_task(task.id)
    assert task.status == TaskStatus.failed
    assert task.retry_count == 0


# =============================================================================
# Scheduled and recurring scans
# =============================================================================

@pytest.mark.asyncio
async def test_scheduled_task_dispatches_once_when_due(fleet, clock):
    fleet.add_device("D1")
    task = await fleet.scheduler.create_task(
        _request(task_type=TaskType.scheduled, scheduled_time=clock() + timedelta(minutes=10))
    )

    assert (await fleet.scheduler.run_due_tasks()).dispatched == []

    clock.advance(600)
    assert (await fleet.scheduler.run_due_tasks()).dispatched == [task.id]
    assert (await fleet.scheduler.run_due_tasks()).dispatched == []
    assert await fleet.queue.length("D1") == 1


@pytest.mark.asyncio
async def test_overlapping_scans_dispatch_once(fleet, clock):
    fleet.add_device("D1")
    await fleet.scheduler.create_task(_request(task_type=TaskType.scheduled, scheduled_time=clock()))

    results = await asyncio.gather(fleet.scheduler.run_due_tasks(), fleet.scheduler.run_due_tasks())

    assert sum(len(result.dispatched) for result in results) == 1
    assert await fleet.queue.length("D1") == 1


@pytest.mark.asyncio
async def test_recurring_task_fires_each_cron_period(fleet, clock):
    fleet.add_device("D1")
    task = await fleet.scheduler.create_task(_request(task_type=TaskType.recurring, cron_expression="*/5 * * * *"))

    assert (await fleet.scheduler.run_due_tasks()).dispatched == []

    clock.advance(301)
    assert (await fleet.scheduler.run_due_tasks()).dispatched == [task.id]
    # Still running: the next scan must not stack another run.
    clock.advance(301)
    assert (await fleet.scheduler.run_due_tasks()).dispatched == []

    await _report_all(fleet, task, {"D1": True})
    assert (await fleet.scheduler.get_task(task.id)).status == TaskStatus.completed
    assert (await fleet.scheduler.run_due_tasks()).dispatched == [task.id]
    assert (await fleet.scheduler.run_due_tasks()).dispatched == []


# =============================================================================
# Lifecycle transitions
# =============================================================================

@pytest.mark.asyncio
async def test_pause_allowed_only_from_pending_or_running(fleet):
    fleet.add_device("D1")
    pending = await fleet.scheduler.create_task(
        _request(task_type=TaskType.scheduled, scheduled_time=fleet.clock() + timedelta(hours=1))
    )
    assert (await fleet.scheduler.pause(pending.id)).status == TaskStatus.paused

    done = await fleet.scheduler.create_and_dispatch(_request())
    await _report_all(fleet, done, {"D1": True})
    with pytest.raises(TaskStateError):
        await fleet.scheduler.pause(done.id)


@pytest.mark.asyncio
async def test_paused_task_is_skipped_by_scan(fleet, clock):
    fleet.add_device("D1")
    task = await fleet.scheduler.create_task(_request(task_type=TaskType.scheduled, scheduled_time=clock()))
    await fleet.scheduler.pause(task.id)

    assert (await fleet.scheduler.run_due_tasks()).dispatched == []
    assert await fleet.queue.length("D1") == 0


@pytest.mark.asyncio
async def test_resume_due_scheduled_task_dispatches(fleet, clock):
    fleet.add_device("D1")
    task = await fleet.scheduler.create_task(_request(task_type=TaskType.scheduled, scheduled_time=clock()))
    await fleet.scheduler.pause(task.id)

    task = await fleet.scheduler.resume(task.id)

    assert task.status == TaskStatus.running
    assert await fleet.queue.length("D1") == 1


@pytest.mark.asyncio
async def test_resume_future_scheduled_task_returns_to_pending(fleet, clock):
    task = await fleet.scheduler.create_task(
        _request(task_type=TaskType.scheduled, scheduled_time=clock() + timedelta(hours=1))
    )
    await fleet.scheduler.pause(task.id)

    assert (await fleet.scheduler.resume(task.id)).status == TaskStatus.pending


@pytest.mark.asyncio
async def test_paused_run_finishes_on_resume(fleet):
    fleet.add_device("D1")
    task = await fleet.scheduler.create_and_dispatch(_request())
    await fleet.scheduler.pause(task.id)

    await _report_all(fleet, task, {"D1": True})
    assert (await fleet.scheduler.get_task(task.id)).status == TaskStatus.paused

    assert (await fleet.scheduler.resume(task.id)).status == TaskStatus.completed


@pytest.mark.asyncio
async def test_resume_requires_paused(fleet):
    task = await fleet.scheduler.create_task(_request(task_type=TaskType.scheduled, scheduled_time=fleet.clock()))
    with pytest.raises(TaskStateError):
        await fleet.scheduler.resume(task.id)


@pytest.mark.asyncio
async def test_cancel_recalls_queued_and_stops_delivered(fleet):
    fleet.add_device("D1")
    fleet.add_device("D2")
    task = await fleet.scheduler.create_and_dispatch(_request())
    await fleet.queue.dequeue_all("D1")

    task = await fleet.scheduler.cancel(task.id)

    assert task.status == TaskStatus.cancelled
    assert await fleet.queue.length("D2") == 0
    (stop,) = await fleet.queue.dequeue_all("D1")
    assert stop.type == InstructionType.cancel_task
    assert stop.payload["task_id"] == task.id


@pytest.mark.asyncio
async def test_cancel_pulls_execute_left_over_from_earlier_run(fleet, clock):
    fleet.add_device("D1")
    task = await fleet.scheduler.create_and_dispatch(_request(max_retries=1))
    await _report_all(fleet, task, {"D1": False})
    clock.advance(20)
    await fleet.scheduler.run_due_tasks()
    await fleet.queue.enqueue("D1", Instruction.create(InstructionType.ping, created_at=clock()))
    assert await fleet.queue.length("D1") == 3

    await fleet.scheduler.cancel(task.id)

    (remaining,) = await fleet.queue.dequeue_all("D1")
    assert remaining.type == InstructionType.ping


@pytest.mark.asyncio
async def test_cancel_rejected_from_terminal_status(fleet):
    task = await fleet.scheduler.create_and_dispatch(_request())
    assert task.status == TaskStatus.failed

    with pytest.raises(TaskStateError):
        await fleet.scheduler.cancel(task.id)


@pytest.mark.asyncio
async def test_results_after_cancel_do_not_change_status(fleet):
    fleet.add_device("D1")
    task = await fleet.scheduler.create_and_dispatch(_request())
    sent = await fleet.store.hgetall(QueueKeys.task_instructions(task.id))
    await fleet.scheduler.cancel(task.id)

    await fleet.scheduler.record_device_result(task.id, "D1", sent["D1"], True)

    task = await fleet.scheduler.get_task(task.id)
    assert task.status == TaskStatus.cancelled
    assert task.success_devices == 0


@pytest.mark.asyncio
async def test_run_now_redispatches_failed_task(fleet):
    task = await fleet.scheduler.create_and_dispatch(_request())
    assert task.status == TaskStatus.failed
    fleet.add_device("D1")

    task = await fleet.scheduler.run_now(task.id)

    assert task.status == TaskStatus.running
    assert task.total_devices == 1


@pytest.mark.asyncio
async def test_run_now_rejected_while_running(fleet):
    fleet.add_device("D1")
    task = await fleet.scheduler.create_and_dispatch(_request())

    with pytest.raises(TaskStateError):
        await fleet.scheduler.run_now(task.id)


@pytest.mark.asyncio
async def test_statistics_count_by_status_and_type(fleet):
    fleet.add_device("D1")
    await fleet.scheduler.create_and_dispatch(_request())
    await fleet.scheduler.create_task(_request(task_type=TaskType.recurring, cron_expression="0 * * * *"))

    stats = await fleet.scheduler.statistics()

    assert stats.total == 2
    assert stats.by_status == {"running": 1, "pending": 1}
    assert stats.by_type == {"immediate": 1, "recurring": 1}
    assert stats.active_recurring == 1
