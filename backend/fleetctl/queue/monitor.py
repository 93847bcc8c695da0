"""Queue depth and presence overview for operators."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable

from fleetctl.devices.presence import PresenceTracker
from fleetctl.queue.service import InstructionQueue


def queue_status_label(length: int) -> str:
    if length == 0:
        return "idle"
    if length < 10:
        return "normal"
    if length < 50:
        return "busy"
    return "congested"


@dataclass(slots=True)
class DeviceQueueStats:
    device_code: str
    queue_length: int
    online: bool
    status: str


@dataclass(slots=True)
class FleetQueueOverview:
    total_devices: int = 0
    online_devices: int = 0
    total_queued: int = 0
    busy_devices: list[DeviceQueueStats] = field(default_factory=list)


class QueueMonitor:
    """Combines queue lengths with presence for monitoring views."""

    def __init__(self, queue: InstructionQueue, presence: PresenceTracker):
        self.queue = queue
        self.presence = presence

    async def device_stats(self, device_code: str) -> DeviceQueueStats:
        length = await self.queue.length(device_code)
        return DeviceQueueStats(
            device_code=device_code,
            queue_length=length,
            online=await self.presence.is_online(device_code),
            status=queue_status_label(length),
        )

    async def fleet_overview(self, device_codes: Iterable[str], busy_limit: int = 10) -> FleetQueueOverview:
        overview = FleetQueueOverview()
        busy: list[DeviceQueueStats] = []
        for device_code in device_codes:
            stats = await self.device_stats(device_code)
            overview.total_devices += 1
            overview.total_queued += stats.queue_length
            if stats.online:
                overview.online_devices += 1
            if stats.queue_length > 0:
                busy.append(stats)
        busy.sort(key=lambda item: item.queue_length, reverse=True)
        overview.busy_devices = busy[:busy_limit]
        return overview
