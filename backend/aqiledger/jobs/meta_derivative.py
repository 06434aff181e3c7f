"""Monthly roll-up of daily derivatives (DERIVED_INDIVIDUAL -> COMPLETE)."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import Settings
from ..generation import Generator
from ..lifecycle import DerivativeType
from ..models import Derivative
from ..prompts import SYSTEM_INSTRUCTIONS, build_monthly_prompt, prepare_monthly_context
from ..queue import ReadingQueue
from ..storage import Pinner
from ..utils import ensure_utc, previous_month_bounds, utcnow
from .derivative import pin_report

logger = logging.getLogger(__name__)


@dataclass
class MetaDerivativeJobResult:
    month: str | None = None
    derivative_id: str | None = None
    daily_count: int = 0
    completed_count: int = 0
    errors: list[dict[str, str]] = field(default_factory=list)
    processing_time_ms: int = 0


async def _roll_up_month(
    session_factory: async_sessionmaker[AsyncSession],
    generator: Generator,
    pinner: Pinner,
    settings: Settings,
    now: datetime,
    month_start: datetime,
    month_end: datetime,
    result: MetaDerivativeJobResult,
) -> None:
    async with session_factory() as session:
        queue = ReadingQueue(session)
        readings = await queue.derived_in_range(month_start, month_end)
        daily_ids = sorted({r.derivative_id for r in readings if r.derivative_id})

        dailies: list[Derivative] = []
        if daily_ids:
            res = await session.execute(
                select(Derivative)
                .where(Derivative.derivative_id.in_(daily_ids), Derivative.type == DerivativeType.DAILY.value)
                .order_by(Derivative.period_start.asc())
            )
            dailies = list(res.scalars().all())
            await session.commit()

        if not dailies:
            logger.info("No daily derivatives found for %s; nothing to aggregate", result.month)
            return

        resolved = {d.derivative_id for d in dailies}
        constituents = [r for r in readings if r.derivative_id in resolved]
        result.daily_count = len(dailies)

        try:
            context = prepare_monthly_context(month_start.date(), dailies)
            generated = await generator.generate(
                SYSTEM_INSTRUCTIONS,
                build_monthly_prompt(context),
                settings.llm_monthly_model,
                settings.llm_temperature_monthly,
                settings.llm_max_tokens_monthly,
            )

            parent_ids = sorted({pid for d in dailies for pid in (d.parent_data_ids or [])})
            digest, pinned = await pin_report(pinner, generated.text, DerivativeType.MONTHLY, parent_ids, result.month)

            monthly = Derivative(
                type=DerivativeType.MONTHLY.value,
                period_start=month_start,
                period_end=month_end,
                location=context["location"],
                parent_data_ids=parent_ids,
                child_derivative_ids=[d.derivative_id for d in dailies],
                content=generated.text,
                summary={k: v for k, v in context.items() if k != "daily_summaries"},
                content_hash=digest,
                merkle_root=digest,
                storage_uri=pinned.uri,
                storage_id=pinned.content_id,
                processed_at=now,
                llm_metadata=generated.metadata(generator.provider),
            )
            session.add(monthly)
            await session.flush()
            await session.execute(
                update(Derivative)
                .where(Derivative.derivative_id.in_(list(resolved)))
                .values(meta_parent_id=monthly.derivative_id, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        except Exception as exc:
            await session.rollback()
            result.errors.append({"month": result.month, "error": str(exc)})
            logger.exception("Failed to generate monthly derivative for %s", result.month)
            return

        completed = await queue.claim_all(constituents, "complete")
        result.derivative_id = monthly.derivative_id
        result.completed_count = len(completed)


async def process_meta_derivative_generation(
    session_factory: async_sessionmaker[AsyncSession],
    generator: Generator,
    pinner: Pinner,
    settings: Settings,
    now: datetime | None = None,
) -> MetaDerivativeJobResult:
    started = time.monotonic()
    now = ensure_utc(now) if now else utcnow()
    month_start, month_end = previous_month_bounds(now)
    result = MetaDerivativeJobResult(month=f"{month_start:%Y-%m}")

    await _roll_up_month(session_factory, generator, pinner, settings, now, month_start, month_end, result)

    result.processing_time_ms = int((time.monotonic() - started) * 1000)
    logger.info(
        "Monthly derivative generation finished for %s: derivative=%s dailies=%d completed=%d errors=%d time_ms=%d",
        result.month,
        result.derivative_id,
        result.daily_count,
        result.completed_count,
        len(result.errors),
        result.processing_time_ms,
    )
    return result
