"""Turning a task's declared target into concrete devices."""

from __future__ import annotations

from typing import Sequence

from fleetctl.devices.directory import DeviceDirectory, DeviceRecord
from fleetctl.errors import TargetConfigurationError
from fleetctl.storage.models import Task, TaskTargetType


class TaskTargetResolver:
    """Validates targets at creation and resolves them against the directory at dispatch."""

    def __init__(self, directory: DeviceDirectory):
        self.directory = directory

    async def apply_target(
        self,
        task: Task,
        device_ids: Sequence[str] | None = None,
        group_id: str | None = None,
    ) -> None:
        """Validate the declared target and store only the fields its type uses."""
        if task.target_type == TaskTargetType.specific:
            if not device_ids:
                raise TargetConfigurationError("A specific-device task needs at least one target device")
            task.target_device_ids = list(dict.fromkeys(device_ids))
            task.target_group_id = None
        elif task.target_type == TaskTargetType.group:
            if not group_id:
                raise TargetConfigurationError("A group task needs a target group")
            if not await self.directory.group_exists(group_id):
                raise TargetConfigurationError(f"Device group {group_id} does not exist")
            task.target_group_id = group_id
            task.target_device_ids = []
        else:
            task.target_device_ids = []
            task.target_group_id = None

    async def resolve(self, task: Task) -> list[DeviceRecord]:
        """Current devices for the task. Membership is read fresh on every call."""
        if task.target_type == TaskTargetType.specific:
            if not task.target_device_ids:
                return []
            return await self.directory.get_by_ids(task.target_device_ids)
        if task.target_type == TaskTargetType.group:
            if not task.target_group_id or not await self.directory.group_exists(task.target_group_id):
                raise TargetConfigurationError(f"Device group {task.target_group_id} does not exist")
            return await self.directory.list_group_members(task.target_group_id)
        return await self.directory.list_all()
