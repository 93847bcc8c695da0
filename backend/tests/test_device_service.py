"""Tests for device registration, heartbeat long-poll and result reporting."""

from __future__ import annotations

import asyncio

import pytest

from fleetctl.devices.schemas import DeviceHeartbeatRequest, DeviceRegisterRequest, ReportResultRequest
from fleetctl.errors import DeviceAuthError
from fleetctl.queue.instruction import Instruction, InstructionType
from fleetctl.storage.models import TaskStatus, TaskTargetType, TaskType
from fleetctl.tasks.schemas import TaskCreateRequest


def _register_request(code: str = "D1", **overrides) -> DeviceRegisterRequest:
    values = {
        "device_code": code,
        "device_name": f"Kiosk {code}",
        "certificate_request": "test-request",
        "model": "K-100",
    }
    values.update(overrides)
    return DeviceRegisterRequest(**values)


def _heartbeat(fleet, code: str, **overrides) -> DeviceHeartbeatRequest:
    values = {"device_code": code, "poll_timeout": 0, **fleet.sign(code)}
    values.update(overrides)
    return DeviceHeartbeatRequest(**values)


def _report(fleet, code: str, instruction_id: str, status: str, **overrides) -> ReportResultRequest:
    signed = fleet.sign(code, {"instruction_id": instruction_id, "status": status})
    return ReportResultRequest(device_code=code, instruction_id=instruction_id, status=status, **signed, **overrides)


async def _dispatch_to(fleet, *codes: str):
    for code in codes:
        fleet.add_device(code)
    return await fleet.scheduler.create_and_dispatch(
        TaskCreateRequest(name="diag", task_type=TaskType.immediate, target_type=TaskTargetType.all)
    )


# =============================================================================
# Registration
# =============================================================================

@pytest.mark.asyncio
async def test_register_issues_certificate_and_welcome(fleet):
    response = await fleet.devices.register(_register_request())

    assert response.created is True
    assert response.certificate == fleet.authenticator.generate_certificate("D1", "test-request")
    (welcome,) = await fleet.queue.dequeue_all("D1")
    assert welcome.type == InstructionType.welcome


@pytest.mark.asyncio
async def test_reregistration_is_idempotent(fleet):
    first = await fleet.devices.register(_register_request())
    await fleet.queue.clear("D1")

    second = await fleet.devices.register(_register_request(device_name="Renamed"))

    assert second.created is False
    assert second.device_id == first.device_id
    assert second.certificate == first.certificate
    assert await fleet.queue.length("D1") == 0
    assert (await fleet.directory.get_by_code("D1")).name == "Renamed"


@pytest.mark.asyncio
async def test_registration_survives_welcome_failure(fleet, monkeypatch):
    async def broken_enqueue(*args, **kwargs):
        raise ConnectionError("store down")

    monkeypatch.setattr(fleet.queue, "enqueue", broken_enqueue)

    response = await fleet.devices.register(_register_request())

    assert response.created is True


# =============================================================================
# Heartbeat
# =============================================================================

@pytest.mark.asyncio
async def test_heartbeat_from_unknown_device_is_rejected(fleet):
    with pytest.raises(DeviceAuthError):
        await fleet.devices.heartbeat(_heartbeat(fleet, "ghost"))


@pytest.mark.asyncio
async def test_heartbeat_from_disabled_device_is_rejected(fleet):
    fleet.add_device("D1").valid = False

    with pytest.raises(DeviceAuthError):
        await fleet.devices.heartbeat(_heartbeat(fleet, "D1"))


@pytest.mark.asyncio
async def test_heartbeat_with_bad_signature_is_rejected(fleet):
    fleet.add_device("D1")

    with pytest.raises(DeviceAuthError):
        await fleet.devices.heartbeat(_heartbeat(fleet, "D1", signature="0" * 64))
    assert await fleet.presence.is_online("D1") is False


@pytest.mark.asyncio
async def test_heartbeat_marks_online_stores_metrics_and_delivers(fleet, clock):
    fleet.add_device("D1")
    instruction = Instruction.create(InstructionType.ping, created_at=clock())
    await fleet.queue.enqueue("D1", instruction)

    response = await fleet.devices.heartbeat(
        _heartbeat(fleet, "D1", app_version="2.1.0", metrics={"battery": 90})
    )

    assert [i.id for i in response.instructions] == [instruction.id]
    assert await fleet.presence.is_online("D1") is True
    metrics = await fleet.presence.get_metrics("D1")
    assert metrics["battery"] == 90
    assert metrics["app_version"] == "2.1.0"


@pytest.mark.asyncio
async def test_heartbeat_long_poll_wakes_on_dispatch(fleet):
    fleet.add_device("D1")

    async def dispatch_later():
        await asyncio.sleep(0.05)
        return await fleet.scheduler.create_and_dispatch(
            TaskCreateRequest(name="late", task_type=TaskType.immediate, target_type=TaskTargetType.all)
        )

    response, task = await asyncio.gather(
        fleet.devices.heartbeat(_heartbeat(fleet, "D1", poll_timeout=1.5)),
        dispatch_later(),
    )

    assert [i.task_id for i in response.instructions] == [task.id]


def test_poll_timeout_is_clamped(fleet):
    assert fleet.devices.clamp_poll_timeout(None) == 0.5
    assert fleet.devices.clamp_poll_timeout(-3) == 0.0
    assert fleet.devices.clamp_poll_timeout(100) == 2.0


# =============================================================================
# Result reporting
# =============================================================================

@pytest.mark.asyncio
async def test_report_completes_task(fleet):
    task = await _dispatch_to(fleet, "D1")
    (instruction,) = await fleet.queue.dequeue_all("D1")

    response = await fleet.devices.report_result(_report(fleet, "D1", instruction.id, "success", output="ok"))

    assert response.counted is True
    assert (await fleet.scheduler.get_task(task.id)).status == TaskStatus.completed
    stored = await fleet.statuses.get(instruction.id)
    assert stored["status"] == "success"
    assert stored["output"] == "ok"


@pytest.mark.asyncio
async def test_reported_text_is_stored_verbatim(fleet):
    await _dispatch_to(fleet, "D1")
    (instruction,) = await fleet.queue.dequeue_all("D1")

    await fleet.devices.report_result(
        _report(fleet, "D1", instruction.id, "failed", output="42", error_message="null")
    )

    stored = await fleet.statuses.get(instruction.id)
    assert stored["output"] == "42"
    assert stored["error_message"] == "null"
    assert stored["result_counted"] is True


@pytest.mark.asyncio
async def test_duplicate_report_is_counted_once(fleet):
    task = await _dispatch_to(fleet, "D1", "D2")
    (instruction,) = await fleet.queue.dequeue_all("D1")

    first = await fleet.devices.report_result(_report(fleet, "D1", instruction.id, "failed"))
    second = await fleet.devices.report_result(_report(fleet, "D1", instruction.id, "failed"))

    assert (first.counted, second.counted) == (True, False)
    task = await fleet.scheduler.get_task(task.id)
    assert task.failed_devices == 1
    assert task.status == TaskStatus.running


@pytest.mark.asyncio
async def test_concurrent_duplicate_reports_count_once(fleet):
    task = await _dispatch_to(fleet, "D1", "D2")
    (instruction,) = await fleet.queue.dequeue_all("D1")

    responses = await asyncio.gather(
        *(fleet.devices.report_result(_report(fleet, "D1", instruction.id, "success")) for _ in range(3))
    )

    assert sum(r.counted for r in responses) == 1
    assert (await fleet.scheduler.get_task(task.id)).success_devices == 1


@pytest.mark.asyncio
async def test_progress_report_is_not_counted(fleet):
    task = await _dispatch_to(fleet, "D1")
    (instruction,) = await fleet.queue.dequeue_all("D1")

    response = await fleet.devices.report_result(_report(fleet, "D1", instruction.id, "running"))

    assert response.counted is False
    assert (await fleet.scheduler.get_task(task.id)).reported_devices == 0


@pytest.mark.asyncio
async def test_report_for_another_devices_instruction_is_rejected(fleet):
    await _dispatch_to(fleet, "D1", "D2")
    (instruction,) = await fleet.queue.dequeue_all("D1")

    with pytest.raises(DeviceAuthError):
        await fleet.devices.report_result(_report(fleet, "D2", instruction.id, "success"))


@pytest.mark.asyncio
async def test_report_from_non_target_device_does_not_count(fleet):
    fleet.add_device("D1")
    fleet.add_device("D2")
    task = await fleet.scheduler.create_and_dispatch(
        TaskCreateRequest(
            name="diag",
            task_type=TaskType.immediate,
            target_type=TaskTargetType.specific,
            target_device_ids=["id-D1"],
        )
    )

    response = await fleet.devices.report_result(
        _report(fleet, "D2", "INS-made-up", "success", task_id=task.id)
    )

    assert response.counted is False
    assert await fleet.statuses.get("INS-made-up") is None
    task = await fleet.scheduler.get_task(task.id)
    assert task.status == TaskStatus.running
    assert task.success_devices == 0


@pytest.mark.asyncio
async def test_unissued_instruction_ids_cannot_finish_a_task(fleet):
    task = await _dispatch_to(fleet, "D1", "D2")

    for instruction_id in ("INS-a", "INS-b"):
        await fleet.devices.report_result(_report(fleet, "D1", instruction_id, "success", task_id=task.id))

    task = await fleet.scheduler.get_task(task.id)
    assert task.status == TaskStatus.running
    assert task.reported_devices == 0


@pytest.mark.asyncio
async def test_report_for_other_devices_instruction_slot_does_not_count(fleet):
    task = await _dispatch_to(fleet, "D1", "D2")
    (instruction,) = await fleet.queue.dequeue_all("D1")

    # Right instruction, but credited to a device that was sent something else.
    await fleet.scheduler.record_device_result(task.id, "D2", instruction.id, True)

    assert (await fleet.scheduler.get_task(task.id)).reported_devices == 0


@pytest.mark.asyncio
async def test_report_for_earlier_run_does_not_count(fleet, clock):
    fleet.add_device("D1")
    task = await fleet.scheduler.create_and_dispatch(
        TaskCreateRequest(name="diag", task_type=TaskType.immediate, target_type=TaskTargetType.all, max_retries=1)
    )
    (first,) = await fleet.queue.dequeue_all("D1")
    await fleet.devices.report_result(_report(fleet, "D1", first.id, "failed"))
    clock.advance(20)
    await fleet.scheduler.run_due_tasks()
    (second,) = await fleet.queue.dequeue_all("D1")

    await fleet.scheduler.record_device_result(task.id, "D1", first.id, True)
    assert (await fleet.scheduler.get_task(task.id)).reported_devices == 0

    await fleet.devices.report_result(_report(fleet, "D1", second.id, "success"))
    assert (await fleet.scheduler.get_task(task.id)).status == TaskStatus.completed


@pytest.mark.asyncio
async def test_report_with_tampered_status_is_rejected(fleet):
    await _dispatch_to(fleet, "D1")
    (instruction,) = await fleet.queue.dequeue_all("D1")
    request = _report(fleet, "D1", instruction.id, "failed").model_copy(update={"status": "success"})

    with pytest.raises(DeviceAuthError):
        await fleet.devices.report_result(request)


@pytest.mark.asyncio
async def test_clear_device_drops_queue_and_presence(fleet, clock):
    fleet.add_device("D1")
    await fleet.devices.heartbeat(_heartbeat(fleet, "D1"))
    await fleet.queue.enqueue("D1", Instruction.create(InstructionType.ping, created_at=clock()))

    assert await fleet.devices.clear_device("D1") == 1
    assert await fleet.presence.is_online("D1") is False


@pytest.mark.asyncio
async def test_cleanup_offline_clears_only_silent_devices(fleet, clock):
    for code in ("D1", "D2", "D3"):
        fleet.add_device(code)
    await fleet.devices.heartbeat(_heartbeat(fleet, "D2"))
    clock.advance(60)
    await fleet.devices.heartbeat(_heartbeat(fleet, "D3"))
    clock.advance(90)
    for code in ("D1", "D2", "D3"):
        await fleet.queue.enqueue(code, Instruction.create(InstructionType.ping, created_at=clock()))

    # D1 never beat, D2 has been offline for 150s, D3 is still online.
    assert await fleet.devices.cleanup_offline(120, dry_run=True) == ["D1", "D2"]
    assert await fleet.queue.length("D1") == 1

    assert await fleet.devices.cleanup_offline(200) == ["D1"]
    assert await fleet.devices.cleanup_offline(120) == ["D1", "D2"]
    assert await fleet.queue.length("D2") == 0
    assert await fleet.presence.last_seen("D2") is None
    assert await fleet.presence.is_online("D3") is True
    assert await fleet.queue.length("D3") == 1
