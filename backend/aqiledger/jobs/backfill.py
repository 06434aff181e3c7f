"""Scheduled CSV backfill: load new station exports into PENDING batches."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import Settings
from ..devices import SQLDeviceDirectory
from ..loader import load_station_csv, mark_processed, station_data_folder, unprocessed_files
from ..utils import ensure_utc, utcnow

logger = logging.getLogger(__name__)


@dataclass
class DeviceBackfill:
    device_id: str
    files_processed: int = 0
    batches_created: int = 0
    batches_updated: int = 0


@dataclass
class BackfillJobResult:
    total_devices: int = 0
    files_processed: int = 0
    batches_created: int = 0
    batches_updated: int = 0
    error_count: int = 0
    device_results: list[DeviceBackfill] = field(default_factory=list)
    processing_time_ms: int = 0


async def _backfill_devices(
    session_factory: async_sessionmaker[AsyncSession],
    settings: Settings,
    now: datetime,
    result: BackfillJobResult,
) -> None:
    async with session_factory() as session:
        devices = await SQLDeviceDirectory(session).active_devices()
        result.total_devices = len(devices)
        logger.info("Starting CSV backfill for %d active devices", len(devices))

        for device in devices:
            if not device.station_id:
                logger.warning("Device %s has no station id; skipping backfill", device.device_id)
                continue
            folder = station_data_folder(settings.backfill_data_dir, device.station_id)
            if folder is None:
                logger.warning("No data folder found for device %s (%s)", device.device_id, device.station_id)
                continue

            files = await unprocessed_files(session, device.station_id, folder, settings.backfill_max_files_per_run)
            summary = DeviceBackfill(device_id=device.device_id)
            for path in files:
                try:
                    loaded = await load_station_csv(session, device, path, now=now)
                    if not loaded.success:
                        result.error_count += 1
                        logger.error("Failed to load %s for %s: %s", path.name, device.device_id, loaded.errors)
                        continue
                    await mark_processed(session, device.device_id, loaded, now)
                except Exception:
                    await session.rollback()
                    result.error_count += 1
                    logger.exception("Error loading %s for %s", path.name, device.device_id)
                    continue

                summary.files_processed += 1
                summary.batches_created += loaded.batches_created
                summary.batches_updated += loaded.batches_updated
                logger.info(
                    "Loaded and recorded %s for %s (created=%d updated=%d rows=%d)",
                    path.name,
                    device.device_id,
                    loaded.batches_created,
                    loaded.batches_updated,
                    loaded.total_rows,
                )

            result.device_results.append(summary)
            result.files_processed += summary.files_processed
            result.batches_created += summary.batches_created
            result.batches_updated += summary.batches_updated


async def process_station_backfill(
    session_factory: async_sessionmaker[AsyncSession],
    settings: Settings,
    now: datetime | None = None,
) -> BackfillJobResult:
    started = time.monotonic()
    now = ensure_utc(now) if now else utcnow()
    result = BackfillJobResult()

    if settings.backfill_data_dir:
        await _backfill_devices(session_factory, settings, now, result)
    else:
        logger.info("BACKFILL_DATA_DIR not set; CSV backfill skipped")

    result.processing_time_ms = int((time.monotonic() - started) * 1000)
    logger.info(
        "CSV backfill completed: devices=%d files=%d created=%d updated=%d errors=%d time_ms=%d",
        result.total_devices,
        result.files_processed,
        result.batches_created,
        result.batches_updated,
        result.error_count,
        result.processing_time_ms,
    )
    return result
