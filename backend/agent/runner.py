"""Instruction execution for the device agent."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from fleetctl.queue.instruction import Instruction, InstructionType

logger = logging.getLogger(__name__)

ScriptExecutor = Callable[[dict[str, Any]], Awaitable[tuple[bool, str]]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class InstructionOutcome:
    status: str
    output: str | None = None
    error_message: str | None = None
    started_at: datetime = field(default_factory=_utcnow)
    finished_at: datetime = field(default_factory=_utcnow)


def simulated_executor(run_seconds: float = 0.5) -> ScriptExecutor:
    """Executor that pretends to run a script and always succeeds."""

    async def execute(payload: dict[str, Any]) -> tuple[bool, str]:
        await asyncio.sleep(run_seconds)
        return True, f"script {payload.get('script_id') or '-'} finished"

    return execute


class InstructionRunner:
    """Routes instructions to handlers and tracks running scripts so they can be cancelled."""

    def __init__(self, executor: ScriptExecutor | None = None):
        self.executor = executor or simulated_executor()
        self._in_flight: dict[str, asyncio.Task] = {}
        self._cancel_requested: set[str] = set()

    def running_tasks(self) -> list[str]:
        return list(self._in_flight)

    async def run(self, instruction: Instruction) -> InstructionOutcome:
        if instruction.type == InstructionType.execute_task:
            return await self._execute(instruction)
        if instruction.type == InstructionType.cancel_task:
            return self._cancel(instruction)
        if instruction.type == InstructionType.ping:
            return InstructionOutcome(status="success", output="pong")
        if instruction.type == InstructionType.welcome:
            logger.info("agent_welcomed", extra={"message": instruction.payload.get("message")})
            return InstructionOutcome(status="success", output="welcome acknowledged")

        return InstructionOutcome(
            status="failed",
            error_message=f"Unsupported instruction type: {instruction.type.value}",
        )

    async def _execute(self, instruction: Instruction) -> InstructionOutcome:
        started = _utcnow()
        key = instruction.task_id or instruction.id
        job = asyncio.create_task(self.executor(dict(instruction.payload)))
        self._in_flight[key] = job
        try:
            success, output = await asyncio.wait_for(job, timeout=instruction.timeout)
        except asyncio.TimeoutError:
            return InstructionOutcome(
                status="timeout",
                error_message=f"Script exceeded {instruction.timeout}s",
                started_at=started,
            )
        except asyncio.CancelledError:
            if key not in self._cancel_requested:
                raise
            return InstructionOutcome(status="cancelled", error_message="Cancelled by server", started_at=started)
        except Exception as exc:  # noqa: BLE001
            return InstructionOutcome(status="failed", error_message=str(exc), started_at=started)
        finally:
            self._in_flight.pop(key, None)
            self._cancel_requested.discard(key)

        return InstructionOutcome(
            status="success" if success else "failed",
            output=output if success else None,
            error_message=None if success else output,
            started_at=started,
        )

    def _cancel(self, instruction: Instruction) -> InstructionOutcome:
        task_id = instruction.payload.get("task_id") or instruction.task_id
        job = self._in_flight.get(task_id) if task_id else None
        if job is None or job.done():
            return InstructionOutcome(status="success", output="nothing running")
        self._cancel_requested.add(task_id)
        job.cancel()
        return InstructionOutcome(status="success", output=f"cancelled {task_id}")
