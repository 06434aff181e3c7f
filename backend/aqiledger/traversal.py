"""Navigate derivative lineage and re-check its proofs against stored data."""

from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import EmptyBatchError
from .hashing import plain_hash
from .lifecycle import ANCHORED, DerivativeType, ReadingStatus
from .merkle import build_tree
from .models import Derivative, Reading

logger = logging.getLogger(__name__)


async def get_derivative(session: AsyncSession, derivative_id: str) -> Derivative | None:
    return await session.get(Derivative, derivative_id)


async def get_meta_derivative(session: AsyncSession, daily_id: str) -> Derivative | None:
    """The monthly derivative a daily log rolled up into, if any."""

    daily = await session.get(Derivative, daily_id)
    if daily is None or not daily.meta_parent_id:
        return None
    return await session.get(Derivative, daily.meta_parent_id)


async def get_daily_logs(session: AsyncSession, monthly_id: str) -> list[Derivative]:
    monthly = await session.get(Derivative, monthly_id)
    if monthly is None or not monthly.child_derivative_ids:
        return []
    res = await session.execute(
        select(Derivative)
        .where(Derivative.derivative_id.in_(monthly.child_derivative_ids))
        .order_by(Derivative.period_start.asc())
    )
    return list(res.scalars().all())


async def get_original_data(session: AsyncSession, derivative_id: str) -> list[Reading]:
    """The hourly readings a derivative was built from, oldest first."""

    derivative = await session.get(Derivative, derivative_id)
    if derivative is None or not derivative.parent_data_ids:
        return []
    res = await session.execute(
        select(Reading)
        .where(Reading.reading_id.in_(derivative.parent_data_ids))
        .order_by(Reading.window_start.asc())
    )
    return list(res.scalars().all())


def _reading_intact(reading: Reading) -> bool:
    if ReadingStatus(reading.status) not in ANCHORED or not reading.merkle_root:
        return False
    try:
        rebuilt = build_tree(reading.sensor_data or {}, reading.window_start).root
    except EmptyBatchError:
        return False
    return rebuilt == reading.merkle_root


async def verify_proof_chain(session: AsyncSession, derivative_id: str) -> bool:
    derivative = await session.get(Derivative, derivative_id)
    if derivative is None:
        return False

    if plain_hash(derivative.content) != derivative.content_hash:
        logger.warning("Content hash mismatch on derivative %s", derivative_id)
        return False

    readings = await get_original_data(session, derivative_id)
    if len(readings) != len(set(derivative.parent_data_ids or [])):
        logger.warning("Derivative %s references readings that no longer exist", derivative_id)
        return False
    for reading in readings:
        if not _reading_intact(reading):
            logger.warning("Reading %s under %s failed proof check", reading.reading_id, derivative_id)
            return False

    if derivative.type == DerivativeType.MONTHLY.value:
        for child_id in derivative.child_derivative_ids or []:
            if not await verify_proof_chain(session, child_id):
                return False
    return True
