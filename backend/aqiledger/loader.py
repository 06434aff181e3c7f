"""Bulk backfill of hourly batches from station CSV exports.

Exports carry one measurement per row (``datetime``, ``parameter``,
``value`` plus station columns). Rows are grouped into the same hourly
windows live ingestion uses and merged into PENDING readings, so the
backfilled batches flow through the rest of the pipeline unchanged.
"""

from __future__ import annotations

import csv
import logging
import math
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from .devices import DeviceRecord
from .errors import BatchClosedError, ValidationError
from .ingestion import append_values, coerce_timestamp, location_from_device
from .lifecycle import ReadingStatus
from .models import ProcessedFile, Reading
from .sensors import is_known
from .utils import BatchWindow, batch_window_for, build_reading_id, ensure_utc, utcnow

logger = logging.getLogger(__name__)

PARAMETER_ALIASES = {
    "pm10": "PM10",
    "pm2.5": "PM2.5",
    "pm25": "PM2.5",
    "no2": "NO2",
    "no": "NO",
    "nox": "NOX",
    "o3": "O3",
    "co": "CO",
    "co2": "CO2",
    "so2": "SO2",
    "temperature": "Temperature",
    "rh": "RH",
    "wind_speed": "Wind_Speed",
    "wind_direction": "Wind_Direction",
}


def normalize_parameter(name: str | None) -> str:
    cleaned = (name or "").strip()
    return PARAMETER_ALIASES.get(cleaned.lower(), cleaned)


@dataclass
class HourlyBatch:
    window: BatchWindow
    sensor_data: dict[str, list[float]] = field(default_factory=dict)
    rows: int = 0


@dataclass
class ParsedStationFile:
    batches: dict[datetime, HourlyBatch] = field(default_factory=dict)
    total_rows: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass
class LoaderResult:
    station_id: str
    file_path: str
    success: bool = False
    total_rows: int = 0
    batches_created: int = 0
    batches_updated: int = 0
    batches_skipped: int = 0
    errors: list[str] = field(default_factory=list)
    processing_time_ms: int = 0


def parse_station_csv(path: str | Path) -> ParsedStationFile:
    """Group every valid row of an export by hourly window.

    Bad rows are reported in ``errors`` and skipped; they never abort the file.
    """

    parsed = ParsedStationFile()
    with open(path, newline="", encoding="utf-8-sig") as fh:
        for line_no, row in enumerate(csv.DictReader(fh), start=2):
            parsed.total_rows += 1
            try:
                ts = coerce_timestamp(row.get("datetime"))
            except ValidationError:
                parsed.errors.append(f"line {line_no}: invalid timestamp {row.get('datetime')!r}")
                continue

            sensor_type = normalize_parameter(row.get("parameter"))
            if not is_known(sensor_type):
                parsed.errors.append(f"line {line_no}: unknown parameter {row.get('parameter')!r}")
                continue

            try:
                value = float(row.get("value"))
            except (TypeError, ValueError):
                parsed.errors.append(f"line {line_no}: invalid value for {sensor_type}: {row.get('value')!r}")
                continue
            if not math.isfinite(value) or value < 0:
                parsed.errors.append(f"line {line_no}: value for {sensor_type} must be a non-negative number")
                continue

            window = batch_window_for(ts)
            batch = parsed.batches.setdefault(window.start, HourlyBatch(window=window))
            batch.sensor_data.setdefault(sensor_type, []).append(value)
            batch.rows += 1
    return parsed


async def _merge_batch(session: AsyncSession, device: DeviceRecord, batch: HourlyBatch, now: datetime) -> bool:
    """Create or extend the reading for one window. Returns True when it was created."""

    reading_id = build_reading_id(device.device_id, batch.window)
    reading = await session.get(Reading, reading_id, populate_existing=True)
    if reading is None:
        session.add(
            Reading(
                reading_id=reading_id,
                device_id=device.device_id,
                owner_id=device.owner_id,
                window_start=batch.window.start,
                window_end=batch.window.end,
                hour_index=batch.window.hour_index,
                sensor_data={k: list(v) for k, v in batch.sensor_data.items()},
                location=location_from_device(device),
                ingestion_count=batch.rows,
                last_ingestion=now,
                data_points_count={k: len(v) for k, v in batch.sensor_data.items()},
                status=ReadingStatus.PENDING.value,
                retry_count=0,
            )
        )
        await session.commit()
        return True

    if reading.status != ReadingStatus.PENDING.value:
        status = reading.status
        await session.rollback()
        raise BatchClosedError(reading_id, status)

    append_values(reading, batch.sensor_data, now, ingestions=batch.rows)
    await session.commit()
    return False


async def load_station_csv(
    session: AsyncSession,
    device: DeviceRecord,
    path: str | Path,
    *,
    dry_run: bool = False,
    now: datetime | None = None,
    max_attempts: int = 3,
) -> LoaderResult:
    """Load one export into the device's hourly readings.

    With ``dry_run`` nothing is written and ``batches_created`` reports how
    many windows the file spans.
    """

    started = time.monotonic()
    now = ensure_utc(now) if now else utcnow()
    path = Path(path)
    result = LoaderResult(station_id=device.station_id or device.device_id, file_path=str(path))

    if not device.is_active:
        result.errors.append(f"Device {device.device_id} is not active")
    elif not path.is_file():
        result.errors.append(f"CSV file not found: {path}")
    else:
        parsed = parse_station_csv(path)
        result.total_rows = parsed.total_rows
        result.errors.extend(parsed.errors)
        logger.info(
            "Parsed %d rows from %s into %d hourly batches", parsed.total_rows, path.name, len(parsed.batches)
        )

        if dry_run:
            result.batches_created = len(parsed.batches)
        else:
            for start in sorted(parsed.batches):
                await _load_batch(session, device, parsed.batches[start], now, max_attempts, result)
        result.success = True

    result.processing_time_ms = int((time.monotonic() - started) * 1000)
    logger.info(
        "CSV load for %s finished: success=%s created=%d updated=%d skipped=%d errors=%d time_ms=%d",
        result.station_id,
        result.success,
        result.batches_created,
        result.batches_updated,
        result.batches_skipped,
        len(result.errors),
        result.processing_time_ms,
    )
    return result


async def _load_batch(
    session: AsyncSession,
    device: DeviceRecord,
    batch: HourlyBatch,
    now: datetime,
    max_attempts: int,
    result: LoaderResult,
) -> None:
    reading_id = build_reading_id(device.device_id, batch.window)
    for attempt in range(1, max_attempts + 1):
        try:
            created = await _merge_batch(session, device, batch, now)
        except BatchClosedError as exc:
            # closed batches are already anchored or on their way; never rewrite them
            result.batches_skipped += 1
            result.errors.append(str(exc))
            return
        except (IntegrityError, StaleDataError):
            await session.rollback()
            logger.info("Concurrent write on %s during backfill; retrying (attempt %d)", reading_id, attempt)
            continue

        if created:
            result.batches_created += 1
        else:
            result.batches_updated += 1
        return

    result.batches_skipped += 1
    result.errors.append(f"Could not merge {reading_id} after {max_attempts} attempts")


def station_data_folder(root: str | Path, station_id: str) -> Path | None:
    """Folder holding a station's exports, e.g. ``<root>/delhi_chandni_chowk_iitm_11603``."""

    root = Path(root)
    for name in dict.fromkeys((station_id, station_id.replace("_iitm", ""))):
        candidate = root / name
        if candidate.is_dir():
            return candidate
    return None


def list_csv_files(folder: str | Path) -> list[Path]:
    # names sort chronologically (location-<id>-<yyyymmdd>.csv)
    return sorted(p for p in Path(folder).iterdir() if p.is_file() and p.suffix == ".csv")


async def unprocessed_files(session: AsyncSession, station_id: str, folder: str | Path, limit: int) -> list[Path]:
    files = list_csv_files(folder)
    if not files:
        return []

    res = await session.execute(select(ProcessedFile.file_path).where(ProcessedFile.station_id == station_id))
    done = {Path(p).name for p in res.scalars().all()}
    pending = [f for f in files if f.name not in done]
    if not pending:
        logger.info("All %d files already processed for station %s", len(files), station_id)
        return []

    logger.info(
        "Found %d unprocessed files for %s, processing %d this run",
        len(pending),
        station_id,
        min(len(pending), limit),
    )
    return pending[:limit]


async def mark_processed(session: AsyncSession, device_id: str, loaded: LoaderResult, now: datetime) -> ProcessedFile:
    record = ProcessedFile(
        file_path=loaded.file_path,
        station_id=loaded.station_id,
        device_id=device_id,
        processed_at=now,
        batches_created=loaded.batches_created,
        batches_updated=loaded.batches_updated,
        total_rows=loaded.total_rows,
    )
    session.add(record)
    await session.commit()
    return record
