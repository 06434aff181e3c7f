"""Close hourly batches whose window has elapsed (PENDING -> PROCESSING)."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..queue import ReadingQueue
from ..utils import ensure_utc, utcnow

logger = logging.getLogger(__name__)

PICKED_BY = "batch-processor"


@dataclass
class BatchProcessingResult:
    processed_count: int = 0
    failed_count: int = 0
    skipped_count: int = 0
    errors: list[dict[str, str]] = field(default_factory=list)
    processing_time_ms: int = 0


async def process_pending_batches(
    session_factory: async_sessionmaker[AsyncSession],
    now: datetime | None = None,
) -> BatchProcessingResult:
    started = time.monotonic()
    now = ensure_utc(now) if now else utcnow()
    result = BatchProcessingResult()

    async with session_factory() as session:
        queue = ReadingQueue(session)
        pending = await queue.pending_closed(now)
        logger.info("Found %d pending readings to process", len(pending))

        for reading in pending:
            try:
                if await queue.promote(reading, picked_at=now, picked_by=PICKED_BY):
                    result.processed_count += 1
                    logger.info(
                        "Picked reading %s for processing (ingestions=%d)",
                        reading.reading_id,
                        reading.ingestion_count,
                    )
                else:
                    result.skipped_count += 1
            except Exception as exc:
                await session.rollback()
                result.failed_count += 1
                result.errors.append({"reading_id": reading.reading_id, "error": str(exc)})
                logger.exception("Failed to promote reading %s", reading.reading_id)

    result.processing_time_ms = int((time.monotonic() - started) * 1000)
    logger.info(
        "Batch processing completed: processed=%d failed=%d skipped=%d time_ms=%d",
        result.processed_count,
        result.failed_count,
        result.skipped_count,
        result.processing_time_ms,
    )
    return result
