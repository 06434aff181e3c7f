"""Daily narrative reports over verified batches.

Verified readings are locked (VERIFIED -> PROCESSING_AI), grouped per device
and calendar day, and each group becomes one DAILY derivative. A group whose
generation or pinning fails is released back to VERIFIED so the next run
picks it up again.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Sequence

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import Settings
from ..generation import Generator
from ..hashing import plain_hash
from ..lifecycle import DerivativeType
from ..models import Derivative, Reading
from ..prompts import SYSTEM_INSTRUCTIONS, build_daily_prompt, daily_summary, prepare_daily_context
from ..queue import ReadingQueue
from ..storage import Pinner
from ..utils import ensure_utc, utcnow

logger = logging.getLogger(__name__)


@dataclass
class DerivativeJobResult:
    processed_count: int = 0
    derived_count: int = 0
    released_count: int = 0
    derivative_ids: list[str] = field(default_factory=list)
    errors: list[dict[str, str]] = field(default_factory=list)
    processing_time_ms: int = 0


def group_readings_by_day(readings: Sequence[Reading]) -> dict[tuple[str, date], list[Reading]]:
    groups: dict[tuple[str, date], list[Reading]] = defaultdict(list)
    for reading in readings:
        groups[(reading.device_id, reading.window_start.date())].append(reading)
    for members in groups.values():
        members.sort(key=lambda r: r.window_start)
    return dict(groups)


async def pin_report(pinner: Pinner, text: str, kind: DerivativeType, parent_ids: Sequence[str], label: str):
    """Hash report text and pin it; the hash doubles as a one-leaf Merkle root."""

    digest = plain_hash(text)
    pinned = await pinner.pin(
        {
            "type": kind.value,
            "content": text,
            "content_hash": digest,
            "merkle_root": digest,
            "parent_data_ids": list(parent_ids),
        },
        name=f"aqiledger-derivative-{label}",
        tags={"type": kind.value, "content_hash": digest},
    )
    return digest, pinned


async def _derive_day(
    session: AsyncSession,
    day: date,
    readings: list[Reading],
    generator: Generator,
    pinner: Pinner,
    settings: Settings,
    now: datetime,
) -> Derivative:
    context = prepare_daily_context(day, readings)
    generated = await generator.generate(
        SYSTEM_INSTRUCTIONS,
        build_daily_prompt(context),
        settings.llm_daily_model,
        settings.llm_temperature_daily,
        settings.llm_max_tokens_daily,
    )

    parent_ids = [r.reading_id for r in readings]
    digest, pinned = await pin_report(
        pinner, generated.text, DerivativeType.DAILY, parent_ids, f"{readings[0].device_id}-{day.isoformat()}"
    )

    period_start = readings[0].window_start.replace(hour=0)
    derivative = Derivative(
        type=DerivativeType.DAILY.value,
        period_start=period_start,
        period_end=period_start + timedelta(days=1),
        location=context["location"],
        parent_data_ids=parent_ids,
        content=generated.text,
        summary=daily_summary(context),
        content_hash=digest,
        merkle_root=digest,
        storage_uri=pinned.uri,
        storage_id=pinned.content_id,
        processed_at=now,
        llm_metadata=generated.metadata(generator.provider),
    )
    session.add(derivative)
    await session.commit()
    return derivative


async def _derive_verified(
    session_factory: async_sessionmaker[AsyncSession],
    generator: Generator,
    pinner: Pinner,
    settings: Settings,
    now: datetime,
    result: DerivativeJobResult,
) -> None:
    async with session_factory() as session:
        queue = ReadingQueue(session)
        verified = await queue.verified(settings.derivative_max_batches)
        if not verified:
            logger.info("No verified readings to process for derivative generation")
            return

        locked = await queue.claim_all(verified, "lock_for_derivation", now)
        result.processed_count = len(locked)
        logger.info("Locked %d of %d verified readings for derivation", len(locked), len(verified))

        for position, ((device_id, day), readings) in enumerate(group_readings_by_day(locked).items()):
            if position and settings.derivative_delay_seconds:
                await asyncio.sleep(settings.derivative_delay_seconds)

            try:
                derivative = await _derive_day(session, day, readings, generator, pinner, settings, now)
            except Exception as exc:
                await session.rollback()
                logger.exception("Failed to generate derivative for %s on %s", device_id, day)
                result.errors.append({"day": day.isoformat(), "device_id": device_id, "error": str(exc)})
                released = await queue.claim_all(readings, "release", str(exc))
                result.released_count += len(released)
                continue

            marked = await queue.claim_all(readings, "mark_derived", derivative.derivative_id)
            result.derived_count += len(marked)
            result.derivative_ids.append(derivative.derivative_id)
            logger.info(
                "Created daily derivative %s for %s on %s from %d readings",
                derivative.derivative_id,
                device_id,
                day,
                len(readings),
            )


async def process_derivative_generation(
    session_factory: async_sessionmaker[AsyncSession],
    generator: Generator,
    pinner: Pinner,
    settings: Settings,
    now: datetime | None = None,
) -> DerivativeJobResult:
    started = time.monotonic()
    now = ensure_utc(now) if now else utcnow()
    result = DerivativeJobResult()

    await _derive_verified(session_factory, generator, pinner, settings, now, result)

    result.processing_time_ms = int((time.monotonic() - started) * 1000)
    logger.info(
        "Derivative generation finished: processed=%d derived=%d released=%d time_ms=%d",
        result.processed_count,
        result.derived_count,
        result.released_count,
        result.processing_time_ms,
    )
    return result
