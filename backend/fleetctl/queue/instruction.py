"""Instruction value object delivered to devices."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from enum import Enum as PyEnum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

ROUTINE_PRIORITY = 5
EXECUTE_PRIORITY = 7
URGENT_PRIORITY = 10

DEFAULT_TIMEOUT_SECONDS = 300


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InstructionType(str, PyEnum):
    execute_task = "execute_task"
    cancel_task = "cancel_task"
    welcome = "welcome"
    ping = "ping"
    collect_log = "collect_log"
    restart_app = "restart_app"
    update_app = "update_app"

    @property
    def is_urgent(self) -> bool:
        """Urgent types jump ahead of queued work."""
        return self in (InstructionType.cancel_task, InstructionType.restart_app)


class Instruction(BaseModel):
    """One unit of work for one device. Immutable once created."""

    model_config = ConfigDict(frozen=True)

    id: str
    type: InstructionType
    payload: dict[str, Any] = Field(default_factory=dict)
    timeout: int = DEFAULT_TIMEOUT_SECONDS
    priority: int = ROUTINE_PRIORITY
    created_at: datetime
    task_id: str | None = None

    @classmethod
    def create(
        cls,
        instruction_type: InstructionType,
        payload: dict[str, Any] | None = None,
        *,
        timeout: int = DEFAULT_TIMEOUT_SECONDS,
        priority: int = ROUTINE_PRIORITY,
        task_id: str | None = None,
        created_at: datetime | None = None,
    ) -> "Instruction":
        return cls(
            id=f"INS-{uuid4().hex}",
            type=instruction_type,
            payload=payload or {},
            timeout=timeout,
            priority=priority,
            created_at=created_at or _utcnow(),
            task_id=task_id,
        )

    @property
    def expires_at(self) -> datetime:
        return self.created_at + timedelta(seconds=self.timeout)

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or _utcnow()) > self.expires_at

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, raw: str) -> "Instruction":
        return cls.model_validate_json(raw)
