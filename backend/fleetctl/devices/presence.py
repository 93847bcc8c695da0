"""Heartbeat-based presence and ephemeral device metrics."""

from __future__ import annotations

import json
import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Iterable

from fleetctl.storage.adapter import StorageAdapter
from fleetctl.storage.keys import QueueKeys

logger = logging.getLogger(__name__)


def _flatten_metric(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value)


def _restore_metric(value: str) -> Any:
    try:
        return json.loads(value)
    except ValueError:
        return value


class PresenceTracker:
    """Tracks last-seen timestamps and metrics per device code.

    A device is online while its last accepted heartbeat is younger than the
    online window. Both the timestamp and the metrics hash carry TTLs so that
    silent devices age out of the store on their own.
    """

    def __init__(
        self,
        store: StorageAdapter,
        online_ttl_seconds: int = 120,
        heartbeat_ttl_seconds: int = 300,
        metrics_ttl_seconds: int = 86400,
        clock: Callable[[], float] = time.time,
    ):
        self._store = store
        self.online_ttl_seconds = online_ttl_seconds
        self.heartbeat_ttl_seconds = heartbeat_ttl_seconds
        self.metrics_ttl_seconds = metrics_ttl_seconds
        self._clock = clock

    async def touch(self, device_code: str) -> float:
        """Record an accepted heartbeat and return its timestamp."""
        now = self._clock()
        await self._store.set(QueueKeys.device_online(device_code), repr(now), ttl=self.online_ttl_seconds)
        await self._store.set(QueueKeys.device_heartbeat(device_code), repr(now), ttl=self.heartbeat_ttl_seconds)
        return now

    async def is_online(self, device_code: str) -> bool:
        raw = await self._store.get(QueueKeys.device_online(device_code))
        if raw is None:
            return False
        return (self._clock() - float(raw)) < self.online_ttl_seconds

    async def last_seen(self, device_code: str) -> datetime | None:
        raw = await self._store.get(QueueKeys.device_heartbeat(device_code))
        if raw is None:
            return None
        return datetime.fromtimestamp(float(raw), tz=timezone.utc)

    async def online_status(self, device_codes: Iterable[str]) -> dict[str, bool]:
        return {code: await self.is_online(code) for code in device_codes}

    async def idle_seconds(self, device_code: str) -> float | None:
        """Seconds since the last accepted heartbeat, or None once that record has aged out."""
        raw = await self._store.get(QueueKeys.device_heartbeat(device_code))
        if raw is None:
            return None
        return max(self._clock() - float(raw), 0.0)

    async def record_metrics(self, device_code: str, metrics: dict[str, Any]) -> None:
        """Overwrite metric fields; nested values are stored as JSON."""
        if not metrics:
            return
        mapping = {name: _flatten_metric(value) for name, value in metrics.items()}
        mapping["last_update"] = str(int(self._clock()))
        key = QueueKeys.device_metrics(device_code)
        await self._store.hset_many(key, mapping)
        await self._store.expire(key, self.metrics_ttl_seconds)

    async def get_metrics(self, device_code: str) -> dict[str, Any]:
        raw = await self._store.hgetall(QueueKeys.device_metrics(device_code))
        return {name: _restore_metric(value) for name, value in raw.items()}

    async def mark_offline(self, device_code: str) -> None:
        await self._store.delete(QueueKeys.device_online(device_code))
        logger.info("device_marked_offline", extra={"device_code": device_code})

    async def clear(self, device_code: str) -> None:
        """Forget presence and metrics for a device."""
        await self._store.delete(
            QueueKeys.device_online(device_code),
            QueueKeys.device_heartbeat(device_code),
            QueueKeys.device_metrics(device_code),
        )
