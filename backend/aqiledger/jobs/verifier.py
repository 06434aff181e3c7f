"""Anchor closed batches: Merkle root, content hash, storage pin."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import Settings
from ..queue import ReadingQueue
from ..storage import Pinner
from ..utils import utcnow
from ..verification import VerificationResult, verify_reading

logger = logging.getLogger(__name__)


@dataclass
class VerificationJobResult:
    processed_count: int = 0
    verified_count: int = 0
    failed_count: int = 0
    skipped_count: int = 0
    errors: list[dict[str, str]] = field(default_factory=list)
    processing_time_ms: int = 0


async def process_verification_queue(
    session_factory: async_sessionmaker[AsyncSession],
    pinner: Pinner,
    settings: Settings,
    now: datetime | None = None,
) -> VerificationJobResult:
    started = time.monotonic()
    result = VerificationJobResult()
    max_retries = settings.verifier_max_retries

    async with session_factory() as session:
        queue = ReadingQueue(session)
        readings = await queue.awaiting_verification(max_retries, settings.verifier_max_batches)
        logger.info("Found %d readings to verify", len(readings))

        for position, reading in enumerate(readings):
            if position and settings.verifier_delay_seconds:
                await asyncio.sleep(settings.verifier_delay_seconds)

            result.processed_count += 1
            try:
                verified_at = now or utcnow()
                try:
                    outcome = await verify_reading(reading, pinner, verified_at)
                except Exception as exc:
                    # unexpected pinner errors still count against the retry ceiling
                    logger.exception("Unexpected verification error for %s", reading.reading_id)
                    outcome = VerificationResult(success=False, error=str(exc) or type(exc).__name__)

                if outcome.success:
                    won = await queue.verify(
                        reading,
                        merkle_root=outcome.merkle_root,
                        content_hash=outcome.content_hash,
                        storage_uri=outcome.storage_uri,
                        storage_id=outcome.storage_id,
                        verified_at=verified_at,
                    )
                    if won:
                        result.verified_count += 1
                        logger.info("Verified reading %s (content id %s)", reading.reading_id, outcome.storage_id)
                    else:
                        result.skipped_count += 1
                    continue

                retry_count = (reading.retry_count or 0) + 1
                error = outcome.error or "Verification failed"
                if retry_count >= max_retries:
                    if await queue.fail(reading, retry_count, error, failed_at=verified_at):
                        result.failed_count += 1
                        result.errors.append({"reading_id": reading.reading_id, "error": error})
                        logger.error(
                            "Reading %s failed after %d attempts: %s", reading.reading_id, retry_count, error
                        )
                    else:
                        result.skipped_count += 1
                else:
                    await queue.record_retry(reading, retry_count, error)
                    result.skipped_count += 1
                    logger.warning(
                        "Verification attempt %d/%d failed for %s: %s",
                        retry_count,
                        max_retries,
                        reading.reading_id,
                        error,
                    )
            except Exception as exc:
                await session.rollback()
                result.failed_count += 1
                result.errors.append({"reading_id": reading.reading_id, "error": str(exc)})
                logger.exception("Failed to process reading %s", reading.reading_id)

    result.processing_time_ms = int((time.monotonic() - started) * 1000)
    logger.info(
        "Verification queue processing completed: processed=%d verified=%d failed=%d skipped=%d time_ms=%d",
        result.processed_count,
        result.verified_count,
        result.failed_count,
        result.skipped_count,
        result.processing_time_ms,
    )
    return result
