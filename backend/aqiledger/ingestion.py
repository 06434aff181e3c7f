"""Single-point ingestion into the owning hourly batch."""

from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping, Sequence

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from .devices import DeviceDirectory, DeviceRecord, SQLDeviceDirectory
from .errors import BatchClosedError, ConcurrencyError, ValidationError
from .lifecycle import ReadingStatus
from .models import Reading
from .sensors import is_known
from .utils import batch_window_for, build_reading_id, ensure_utc, utcnow

logger = logging.getLogger(__name__)

MAX_PAST = timedelta(hours=24)
MAX_FUTURE = timedelta(minutes=15)


def coerce_timestamp(value: Any) -> datetime:
    """Accept datetimes, ISO-8601 strings and Unix epoch seconds (or milliseconds)."""

    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, bool):
        raise ValidationError("timestamp must be a datetime, ISO-8601 string or epoch number", "timestamp")
    if isinstance(value, (int, float)):
        seconds = float(value)
        if abs(seconds) > 1e11:
            seconds /= 1000.0
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            raise ValidationError("timestamp is out of range", "timestamp") from None
    if isinstance(value, str) and value.strip():
        normalized = value.strip()
        if normalized.endswith("Z"):
            normalized = normalized[:-1] + "+00:00"
        try:
            return ensure_utc(datetime.fromisoformat(normalized))
        except ValueError:
            raise ValidationError("timestamp is not valid ISO-8601", "timestamp") from None
    raise ValidationError("timestamp is required", "timestamp")


def location_from_device(device: DeviceRecord) -> dict[str, Any]:
    loc = device.location or {}
    return {
        "city": loc.get("city", "Unknown"),
        "city_id": loc.get("city_id", "unknown"),
        "station": loc.get("station", "Unknown"),
        "station_id": loc.get("station_id", "unknown"),
        "coordinates": loc.get("coordinates"),
    }


def validate_submission(
    device: DeviceRecord | None,
    owner_id: str,
    sensor_readings: Mapping[str, Any],
    timestamp: datetime,
    now: datetime,
) -> None:
    if device is None:
        raise ValidationError("Device not found", "device_id")
    if device.owner_id != owner_id:
        raise ValidationError("Unauthorized: device not owned by user", "owner_id")
    if not device.is_active:
        raise ValidationError("Device is not active", "device_id")

    if not sensor_readings:
        raise ValidationError("At least one sensor reading is required", "sensor_data")
    configured = set(device.sensor_types)
    for sensor_type in sensor_readings:
        if not is_known(sensor_type) or sensor_type not in configured:
            raise ValidationError(
                f"Invalid sensor type: {sensor_type}. Device does not support this sensor.",
                f"sensor_data.{sensor_type}",
            )

    if timestamp < now - MAX_PAST:
        raise ValidationError("Timestamp too old (>24 hours)", "timestamp")
    if timestamp > now + MAX_FUTURE:
        raise ValidationError("Timestamp in future", "timestamp")

    for sensor_type, value in sensor_readings.items():
        if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
            raise ValidationError(
                f"Invalid value for sensor {sensor_type}: must be a number", f"sensor_data.{sensor_type}"
            )
        if value < 0:
            raise ValidationError(
                f"Invalid value for sensor {sensor_type}: must be non-negative", f"sensor_data.{sensor_type}"
            )


def append_values(
    reading: Reading, values: Mapping[str, Sequence[float]], now: datetime, ingestions: int = 1
) -> None:
    # JSON columns only notice reassignment, never in-place mutation
    sensor_data = {k: list(v) for k, v in (reading.sensor_data or {}).items()}
    counts = dict(reading.data_points_count or {})
    for sensor_type, new_values in values.items():
        sensor_data.setdefault(sensor_type, []).extend(float(v) for v in new_values)
        counts[sensor_type] = counts.get(sensor_type, 0) + len(new_values)
    reading.sensor_data = sensor_data
    reading.data_points_count = counts
    reading.ingestion_count = (reading.ingestion_count or 0) + ingestions
    reading.last_ingestion = now


async def ingest_reading(
    session: AsyncSession,
    owner_id: str,
    device_id: str,
    sensor_readings: Mapping[str, Any],
    timestamp: Any,
    *,
    directory: DeviceDirectory | None = None,
    now: datetime | None = None,
    max_attempts: int = 5,
) -> Reading:
    """Validate one submission and append it to (or open) its hourly batch."""

    now = ensure_utc(now) if now else utcnow()
    directory = directory or SQLDeviceDirectory(session)

    ts = coerce_timestamp(timestamp)
    device = await directory.get_device(device_id)
    validate_submission(device, owner_id, sensor_readings, ts, now)

    window = batch_window_for(ts)
    reading_id = build_reading_id(device_id, window)
    values = {k: float(v) for k, v in sensor_readings.items()}

    for attempt in range(1, max_attempts + 1):
        try:
            reading = await session.get(Reading, reading_id, populate_existing=True)
            if reading is None:
                logger.info("Creating new reading %s", reading_id)
                reading = Reading(
                    reading_id=reading_id,
                    device_id=device_id,
                    owner_id=owner_id,
                    window_start=window.start,
                    window_end=window.end,
                    hour_index=window.hour_index,
                    sensor_data={k: [v] for k, v in values.items()},
                    location=location_from_device(device),
                    ingestion_count=1,
                    last_ingestion=now,
                    data_points_count={k: 1 for k in values},
                    status=ReadingStatus.PENDING.value,
                    retry_count=0,
                )
                session.add(reading)
                await session.commit()
                return reading

            if reading.status != ReadingStatus.PENDING.value:
                status = reading.status
                await session.rollback()
                raise BatchClosedError(reading_id, status)

            append_values(reading, {k: [v] for k, v in values.items()}, now)
            await session.commit()
            logger.info("Appended to %s; ingestion count %d", reading_id, reading.ingestion_count)
            return reading
        except IntegrityError:
            await session.rollback()
            logger.info("Reading %s created concurrently; retrying as append (attempt %d)", reading_id, attempt)
        except StaleDataError:
            await session.rollback()
            logger.info("Concurrent append on %s; retrying (attempt %d)", reading_id, attempt)

    raise ConcurrencyError(f"Could not apply ingestion to {reading_id} after {max_attempts} attempts")


async def get_device_readings(
    session: AsyncSession,
    owner_id: str,
    device_id: str,
    status: str | None = None,
    limit: int = 10,
) -> list[Reading]:
    stmt = select(Reading).where(Reading.device_id == device_id, Reading.owner_id == owner_id)
    if status:
        stmt = stmt.where(Reading.status == status.upper())
    stmt = stmt.order_by(Reading.window_start.desc()).limit(limit)
    res = await session.execute(stmt)
    return list(res.scalars().all())


async def get_readings_by_status(
    session: AsyncSession, owner_id: str, status: str, limit: int | None = None
) -> list[Reading]:
    stmt = (
        select(Reading)
        .where(Reading.owner_id == owner_id, Reading.status == status.upper())
        .order_by(Reading.window_start.desc())
    )
    if limit is not None:
        stmt = stmt.limit(limit)
    res = await session.execute(stmt)
    return list(res.scalars().all())


async def get_reading_by_id(session: AsyncSession, owner_id: str, reading_id: str) -> Reading | None:
    res = await session.execute(
        select(Reading).where(Reading.reading_id == reading_id, Reading.owner_id == owner_id)
    )
    return res.scalar_one_or_none()
