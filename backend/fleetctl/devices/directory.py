"""Device directory: which devices exist and which group each belongs to."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Protocol, Sequence, runtime_checkable
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fleetctl.storage.models import Device, DeviceGroup


@dataclass(slots=True)
class DeviceRecord:
    id: str
    code: str
    name: str
    certificate: str | None = None
    group_id: str | None = None
    valid: bool = True
    descriptors: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class DeviceDirectory(Protocol):
    """Protocol for looking up and registering devices."""

    async def get_by_code(self, code: str) -> DeviceRecord | None:
        ...

    async def get_by_ids(self, device_ids: Sequence[str]) -> list[DeviceRecord]:
        ...

    async def list_all(self) -> list[DeviceRecord]:
        """All valid devices."""
        ...

    async def group_exists(self, group_id: str) -> bool:
        ...

    async def list_group_members(self, group_id: str) -> list[DeviceRecord]:
        ...

    async def upsert(
        self,
        code: str,
        name: str,
        certificate: str,
        descriptors: dict[str, Any] | None = None,
    ) -> tuple[DeviceRecord, bool]:
        """Create or update a device by code. Returns (record, created)."""
        ...


class InMemoryDeviceDirectory:
    """Directory held in process memory."""

    def __init__(self) -> None:
        self._devices: dict[str, DeviceRecord] = {}
        self._groups: dict[str, str] = {}

    def add_group(self, name: str, group_id: str | None = None) -> str:
        group_id = group_id or str(uuid4())
        self._groups[group_id] = name
        return group_id

    def add_device(self, record: DeviceRecord) -> DeviceRecord:
        self._devices[record.code] = record
        return record

    def assign_group(self, code: str, group_id: str | None) -> None:
        self._devices[code].group_id = group_id

    async def get_by_code(self, code: str) -> DeviceRecord | None:
        record = self._devices.get(code)
        return replace(record) if record else None

    async def get_by_ids(self, device_ids: Sequence[str]) -> list[DeviceRecord]:
        wanted = set(device_ids)
        return [replace(r) for r in self._devices.values() if r.id in wanted and r.valid]

    async def list_all(self) -> list[DeviceRecord]:
        return [replace(r) for r in self._devices.values() if r.valid]

    async def group_exists(self, group_id: str) -> bool:
        return group_id in self._groups

    async def list_group_members(self, group_id: str) -> list[DeviceRecord]:
        return [replace(r) for r in self._devices.values() if r.group_id == group_id and r.valid]

    async def upsert(
        self,
        code: str,
        name: str,
        certificate: str,
        descriptors: dict[str, Any] | None = None,
    ) -> tuple[DeviceRecord, bool]:
        existing = self._devices.get(code)
        if existing is None:
            record = DeviceRecord(
                id=str(uuid4()),
                code=code,
                name=name,
                certificate=certificate,
                descriptors=dict(descriptors or {}),
            )
            self._devices[code] = record
            return replace(record), True

        existing.name = name
        existing.certificate = certificate
        existing.descriptors.update(descriptors or {})
        return replace(existing), False


def _to_record(device: Device) -> DeviceRecord:
    return DeviceRecord(
        id=device.id,
        code=device.code,
        name=device.name,
        certificate=device.certificate,
        group_id=device.group_id,
        valid=device.valid,
        descriptors=dict(device.descriptors or {}),
    )


class SqlDeviceDirectory:
    """Directory backed by the devices and device_groups tables."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._session_maker = session_maker

    async def get_by_code(self, code: str) -> DeviceRecord | None:
        async with self._session_maker() as session:
            result = await session.execute(select(Device).where(Device.code == code))
            device = result.scalar_one_or_none()
            return _to_record(device) if device else None

    async def get_by_ids(self, device_ids: Sequence[str]) -> list[DeviceRecord]:
        if not device_ids:
            return []
        async with self._session_maker() as session:
            result = await session.execute(
                select(Device).where(Device.id.in_(list(device_ids)), Device.valid.is_(True))
            )
            return [_to_record(d) for d in result.scalars().all()]

    async def list_all(self) -> list[DeviceRecord]:
        async with self._session_maker() as session:
            result = await session.execute(select(Device).where(Device.valid.is_(True)).order_by(Device.code))
            return [_to_record(d) for d in result.scalars().all()]

    async def group_exists(self, group_id: str) -> bool:
        async with self._session_maker() as session:
            return await session.get(DeviceGroup, group_id) is not None

    async def list_group_members(self, group_id: str) -> list[DeviceRecord]:
        async with self._session_maker() as session:
            result = await session.execute(
                select(Device).where(Device.group_id == group_id, Device.valid.is_(True))
            )
            return [_to_record(d) for d in result.scalars().all()]

    async def upsert(
        self,
        code: str,
        name: str,
        certificate: str,
        descriptors: dict[str, Any] | None = None,
    ) -> tuple[DeviceRecord, bool]:
        async with self._session_maker() as session:
            result = await session.execute(select(Device).where(Device.code == code).with_for_update())
            device = result.scalar_one_or_none()
            created = device is None
            if created:
                device = Device(code=code, name=name, certificate=certificate, descriptors=dict(descriptors or {}))
                session.add(device)
            else:
                device.name = name
                device.certificate = certificate
                device.descriptors = {**(device.descriptors or {}), **(descriptors or {})}
            await session.commit()
            return _to_record(device), created
