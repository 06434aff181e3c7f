"""Read-only device lookup used by ingestion and the CSV backfill."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .models import Device


@dataclass(frozen=True)
class DeviceRecord:
    device_id: str
    owner_id: str
    status: str
    sensor_types: tuple[str, ...]
    location: dict[str, Any] = field(default_factory=dict)

    @property
    def is_active(self) -> bool:
        return self.status.strip().lower() == "active"

    @property
    def station_id(self) -> str | None:
        return self.location.get("station_id") or None


class DeviceDirectory(Protocol):
    async def get_device(self, device_id: str) -> DeviceRecord | None: ...


def _record(row: Device) -> DeviceRecord:
    return DeviceRecord(
        device_id=row.device_id,
        owner_id=row.owner_id,
        status=row.status or "inactive",
        sensor_types=tuple(row.sensor_types or ()),
        location=dict(row.location or {}),
    )


class SQLDeviceDirectory:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_device(self, device_id: str) -> DeviceRecord | None:
        res = await self.session.execute(select(Device).where(Device.device_id == device_id))
        row = res.scalar_one_or_none()
        if row is None:
            return None
        return _record(row)

    async def active_devices(self) -> list[DeviceRecord]:
        res = await self.session.execute(
            select(Device).where(Device.status == "active").order_by(Device.device_id.asc())
        )
        return [_record(row) for row in res.scalars().all()]
