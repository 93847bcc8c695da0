"""SQLAlchemy models for devices, device groups and tasks."""

from datetime import datetime, timezone
from enum import Enum as PyEnum
from uuid import uuid4

from sqlalchemy import JSON, Boolean, DateTime, Enum, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from fleetctl.storage.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# Enums
# ============================================================================

class TaskType(str, PyEnum):
    immediate = "immediate"
    scheduled = "scheduled"
    recurring = "recurring"


class TaskTargetType(str, PyEnum):
    specific = "specific"
    group = "group"
    all = "all"


class TaskStatus(str, PyEnum):
    pending = "pending"
    running = "running"
    paused = "paused"
    completed = "completed"
    partially_completed = "partially_completed"
    failed = "failed"
    cancelled = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {
        TaskStatus.completed,
        TaskStatus.partially_completed,
        TaskStatus.failed,
        TaskStatus.cancelled,
    }
)


# ============================================================================
# Models
# ============================================================================

class DeviceGroup(Base):
    """Named set of devices used as a task target."""
    __tablename__ = "device_groups"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)


class Device(Base):
    """A registered device and its issued certificate."""
    __tablename__ = "devices"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    code: Mapped[str] = mapped_column(String(64), nullable=False, unique=True, index=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    certificate: Mapped[str | None] = mapped_column(String(128), nullable=True)
    group_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("device_groups.id", ondelete="SET NULL"), nullable=True, index=True
    )
    valid: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    descriptors: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)  # model, brand, os version...
    registered_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )


class Task(Base):
    """Operator task fanned out as one instruction per target device."""
    __tablename__ = "tasks"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    task_type: Mapped[TaskType] = mapped_column(Enum(TaskType), nullable=False)
    target_type: Mapped[TaskTargetType] = mapped_column(Enum(TaskTargetType), nullable=False)
    target_device_ids: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    target_group_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    status: Mapped[TaskStatus] = mapped_column(Enum(TaskStatus), nullable=False, default=TaskStatus.pending, index=True)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    script_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    parameters: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    scheduled_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cron_expression: Mapped[str | None] = mapped_column(String(100), nullable=True)
    last_execution_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_devices: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    success_devices: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_devices: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    start_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    end_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        Index("ix_tasks_status_scheduled", "status", "scheduled_time"),
    )

    # Column defaults only apply on flush; in-memory repositories never flush.
    _defaults = {
        "status": TaskStatus.pending,
        "priority": 5,
        "target_device_ids": list,
        "parameters": dict,
        "retry_count": 0,
        "max_retries": 0,
        "total_devices": 0,
        "success_devices": 0,
        "failed_devices": 0,
        "created_at": _utcnow,
    }

    def __init__(self, **kwargs):
        if "id" not in kwargs:
            kwargs["id"] = str(uuid4())
        for field, default in self._defaults.items():
            if kwargs.get(field) is None:
                kwargs[field] = default() if callable(default) else default
        super().__init__(**kwargs)

    @property
    def reported_devices(self) -> int:
        return self.success_devices + self.failed_devices
