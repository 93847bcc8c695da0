"""Device-facing operations: register, heartbeat with long-poll, result reporting."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator, Protocol

from fleetctl.devices.auth import SignatureAuthenticator
from fleetctl.devices.directory import DeviceDirectory, DeviceRecord
from fleetctl.devices.presence import PresenceTracker
from fleetctl.devices.schemas import (
    DeviceHeartbeatRequest,
    DeviceHeartbeatResponse,
    DeviceRegisterRequest,
    DeviceRegisterResponse,
    ReportResultRequest,
    ReportResultResponse,
)
from fleetctl.errors import DeviceAuthError
from fleetctl.observability.request_context import reset_device_code, set_device_code
from fleetctl.queue.instruction import ROUTINE_PRIORITY, Instruction, InstructionType
from fleetctl.queue.service import InstructionQueue
from fleetctl.queue.status import DEVICE_TERMINAL_STATUSES, InstructionStatus, InstructionStatusStore
from fleetctl.storage.adapter import StorageAdapter
from fleetctl.storage.keys import QueueKeys

logger = logging.getLogger(__name__)

TERMINAL_REPORT_VALUES = frozenset(status.value for status in DEVICE_TERMINAL_STATUSES)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TaskProgressSink(Protocol):
    async def record_device_result(
        self, task_id: str, device_code: str, instruction_id: str, success: bool
    ) -> None:
        ...


@contextmanager
def _device_log_context(device_code: str) -> Iterator[None]:
    token = set_device_code(device_code)
    try:
        yield
    finally:
        reset_device_code(token)


class DeviceService:
    """Entry point for every device-facing operation. All but register require a valid signature."""

    def __init__(
        self,
        *,
        store: StorageAdapter,
        directory: DeviceDirectory,
        authenticator: SignatureAuthenticator,
        presence: PresenceTracker,
        queue: InstructionQueue,
        statuses: InstructionStatusStore,
        progress: TaskProgressSink | None = None,
        long_poll_default_seconds: float = 30.0,
        long_poll_max_seconds: float = 60.0,
        lock_ttl_seconds: float = 30.0,
        lock_wait_seconds: float = 10.0,
        welcome_timeout_seconds: int = 300,
    ):
        self.store = store
        self.directory = directory
        self.authenticator = authenticator
        self.presence = presence
        self.queue = queue
        self.statuses = statuses
        self.progress = progress
        self.long_poll_default_seconds = long_poll_default_seconds
        self.long_poll_max_seconds = long_poll_max_seconds
        self.lock_ttl_seconds = lock_ttl_seconds
        self.lock_wait_seconds = lock_wait_seconds
        self.welcome_timeout_seconds = welcome_timeout_seconds

    async def register(self, request: DeviceRegisterRequest) -> DeviceRegisterResponse:
        """Create or refresh a device and issue its certificate."""
        with _device_log_context(request.device_code):
            certificate = self.authenticator.generate_certificate(request.device_code, request.certificate_request)
            record, created = await self.directory.upsert(
                request.device_code,
                request.device_name,
                certificate,
                request.descriptors(),
            )
            logger.info("device_registered", extra={"device_code": record.code, "created": created})

            if created:
                await self._send_welcome(record)

            return DeviceRegisterResponse(
                device_id=record.id,
                certificate=certificate,
                created=created,
                server_time=_utcnow(),
                config={
                    "heartbeat_interval": int(self.presence.online_ttl_seconds // 4) or 1,
                    "poll_timeout": self.long_poll_default_seconds,
                },
            )

    async def authenticate(
        self,
        device_code: str,
        signature: str | None,
        timestamp: int | None,
        additional: dict[str, Any] | None = None,
    ) -> DeviceRecord:
        record = await self.directory.get_by_code(device_code)
        if record is None:
            raise DeviceAuthError(f"Unknown device {device_code}")
        if not record.valid:
            raise DeviceAuthError(f"Device {device_code} is disabled")
        self.authenticator.verify(device_code, signature, timestamp, record.certificate, additional)
        return record

    async def heartbeat(self, request: DeviceHeartbeatRequest) -> DeviceHeartbeatResponse:
        """Mark presence, store metrics, then long-poll the device queue."""
        with _device_log_context(request.device_code):
            await self.authenticate(request.device_code, request.signature, request.timestamp)
            await self.presence.touch(request.device_code)
            metrics = dict(request.metrics)
            if request.app_version:
                metrics["app_version"] = request.app_version
            if request.device_info:
                metrics["device_info"] = request.device_info
            await self.presence.record_metrics(request.device_code, metrics)

            instructions = await self.queue.long_poll(request.device_code, self.clamp_poll_timeout(request.poll_timeout))
            if instructions:
                logger.info(
                    "instructions_delivered",
                    extra={"device_code": request.device_code, "count": len(instructions)},
                )
            return DeviceHeartbeatResponse(instructions=instructions, server_time=_utcnow())

    def clamp_poll_timeout(self, requested: float | None) -> float:
        if requested is None:
            return self.long_poll_default_seconds
        return min(max(requested, 0.0), self.long_poll_max_seconds)

    async def report_result(self, request: ReportResultRequest) -> ReportResultResponse:
        """Record a device's execution outcome and fold it into task progress once.

        Only instructions this server issued to the reporting device are
        recorded. The owning task comes from the stored record, never from
        the request.
        """
        with _device_log_context(request.device_code):
            await self.authenticate(
                request.device_code,
                request.signature,
                request.timestamp,
                request.signed_fields(),
            )

            lock_name = QueueKeys.instruction_report_lock(request.device_code, request.instruction_id)
            async with self.store.lock(lock_name, self.lock_ttl_seconds, self.lock_wait_seconds):
                previous = await self.statuses.get(request.instruction_id)
                if previous is None:
                    # Unknown or aged out; accepted so a replaying device can drop it.
                    logger.warning(
                        "instruction_result_unknown",
                        extra={"device_code": request.device_code, "instruction_id": request.instruction_id},
                    )
                    return ReportResultResponse(
                        instruction_id=request.instruction_id,
                        counted=False,
                        server_time=_utcnow(),
                    )
                if previous.get("device_code") != request.device_code:
                    raise DeviceAuthError(
                        f"Instruction {request.instruction_id} was not issued to {request.device_code}"
                    )

                task_id = previous.get("task_id")
                if request.task_id and request.task_id != task_id:
                    logger.warning(
                        "instruction_result_task_mismatch",
                        extra={
                            "instruction_id": request.instruction_id,
                            "task_id": task_id,
                            "reported_task_id": request.task_id,
                        },
                    )
                is_terminal = request.status in TERMINAL_REPORT_VALUES
                counted = is_terminal and not previous.get("result_counted")

                await self.statuses.update(
                    request.instruction_id,
                    request.status,
                    output=request.output,
                    error_message=request.error_message,
                    started_at=request.started_at,
                    finished_at=request.finished_at,
                    execution_metrics=request.execution_metrics or None,
                    result_counted=True if counted else None,
                )

                if counted and task_id and self.progress is not None:
                    await self.progress.record_device_result(
                        task_id,
                        request.device_code,
                        request.instruction_id,
                        success=request.status == InstructionStatus.success.value,
                    )

            logger.info(
                "instruction_result_reported",
                extra={
                    "device_code": request.device_code,
                    "instruction_id": request.instruction_id,
                    "status": request.status,
                    "task_id": task_id,
                    "counted": counted,
                },
            )
            return ReportResultResponse(instruction_id=request.instruction_id, counted=counted, server_time=_utcnow())

    async def clear_device(self, device_code: str) -> int:
        """Drop presence, metrics and every queued instruction for a device."""
        removed = await self.queue.clear(device_code)
        await self.presence.clear(device_code)
        return removed

    async def cleanup_offline(self, offline_seconds: float, dry_run: bool = False) -> list[str]:
        """Clear queue and presence state of devices silent for at least offline_seconds.

        Devices whose heartbeat record already aged out count as silent.
        Returns the affected device codes; with dry_run nothing is removed.
        """
        devices = await self.directory.list_all()
        online = await self.presence.online_status(record.code for record in devices)
        stale: list[str] = []
        for record in devices:
            if online[record.code]:
                continue
            idle = await self.presence.idle_seconds(record.code)
            if idle is None or idle >= offline_seconds:
                stale.append(record.code)

        if not dry_run:
            for code in stale:
                await self.clear_device(code)
        logger.info("offline_devices_cleaned", extra={"devices": len(stale), "dry_run": dry_run})
        return stale

    async def _send_welcome(self, record: DeviceRecord) -> None:
        instruction = Instruction.create(
            InstructionType.welcome,
            {"message": f"Welcome {record.name}", "device_id": record.id},
            timeout=self.welcome_timeout_seconds,
            priority=ROUTINE_PRIORITY,
        )
        try:
            await self.queue.enqueue(record.code, instruction)
        except Exception as exc:  # noqa: BLE001
            logger.warning("welcome_instruction_failed", extra={"device_code": record.code, "error": str(exc)})
