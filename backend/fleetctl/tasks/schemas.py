"""Operator-facing task schemas."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from fleetctl.storage.models import TaskStatus, TaskTargetType, TaskType


class TaskCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    description: str | None = None
    task_type: TaskType = TaskType.immediate
    target_type: TaskTargetType
    target_device_ids: list[str] = Field(default_factory=list)
    target_group_id: str | None = None
    script_id: str | None = None
    parameters: dict[str, Any] = Field(default_factory=dict)
    priority: int = 5
    scheduled_time: datetime | None = None
    cron_expression: str | None = None
    max_retries: int = Field(default=0, ge=0)


class TaskResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    description: str | None = None
    task_type: TaskType
    target_type: TaskTargetType
    target_device_ids: list[str] = Field(default_factory=list)
    target_group_id: str | None = None
    status: TaskStatus
    priority: int
    script_id: str | None = None
    parameters: dict[str, Any] = Field(default_factory=dict)
    scheduled_time: datetime | None = None
    cron_expression: str | None = None
    last_execution_time: datetime | None = None
    retry_count: int
    max_retries: int
    total_devices: int
    success_devices: int
    failed_devices: int
    start_time: datetime | None = None
    end_time: datetime | None = None
    failure_reason: str | None = None
    created_at: datetime


class TaskStatistics(BaseModel):
    total: int
    by_status: dict[str, int]
    by_type: dict[str, int]
    active_recurring: int


class DueScanResult(BaseModel):
    dispatched: list[str]
    skipped: int
