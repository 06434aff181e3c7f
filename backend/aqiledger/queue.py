"""Status-keyed work queue over the ``readings`` table.

Each stage reads a snapshot of candidates in one short transaction, then
claims records one at a time with a conditional update that only succeeds
if the row still has the status and version the snapshot saw. Losing a
claim is not an error: some other writer got there first.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Sequence

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .lifecycle import ReadingStatus, ensure_transition
from .models import Reading
from .utils import utcnow

logger = logging.getLogger(__name__)


class ReadingQueue:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def _snapshot(self, stmt) -> list[Reading]:
        res = await self.session.execute(stmt)
        rows = list(res.scalars().all())
        # end the read transaction before any network call happens
        await self.session.commit()
        for row in rows:
            self.session.expunge(row)
        return rows

    async def pending_closed(self, now: datetime) -> list[Reading]:
        stmt = (
            select(Reading)
            .where(Reading.status == ReadingStatus.PENDING.value, Reading.window_end < now)
            .order_by(Reading.window_end.asc())
        )
        return await self._snapshot(stmt)

    async def awaiting_verification(self, max_retries: int, limit: int) -> list[Reading]:
        stmt = (
            select(Reading)
            .where(
                Reading.status == ReadingStatus.PROCESSING.value,
                Reading.merkle_root.is_(None),
                or_(Reading.retry_count.is_(None), Reading.retry_count < max_retries),
            )
            .order_by(Reading.window_end.asc())
            .limit(limit)
        )
        return await self._snapshot(stmt)

    async def verified(self, limit: int) -> list[Reading]:
        stmt = (
            select(Reading)
            .where(Reading.status == ReadingStatus.VERIFIED.value)
            .order_by(Reading.window_end.asc())
            .limit(limit)
        )
        return await self._snapshot(stmt)

    async def derived_in_range(self, start: datetime, end: datetime) -> list[Reading]:
        stmt = (
            select(Reading)
            .where(
                Reading.status == ReadingStatus.DERIVED_INDIVIDUAL.value,
                Reading.window_start >= start,
                Reading.window_start < end,
            )
            .order_by(Reading.window_start.asc())
        )
        return await self._snapshot(stmt)

    async def _claim(self, reading: Reading, target: ReadingStatus, **fields: Any) -> bool:
        ensure_transition(reading.reading_id, reading.status, target)

        values = {"status": target.value, "version": reading.version + 1, "updated_at": utcnow(), **fields}
        stmt = (
            update(Reading)
            .where(
                Reading.reading_id == reading.reading_id,
                Reading.status == reading.status,
                Reading.version == reading.version,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        res = await self.session.execute(stmt)
        await self.session.commit()

        if res.rowcount != 1:
            logger.info(
                "Lost claim on %s (%s -> %s); record changed concurrently",
                reading.reading_id,
                reading.status,
                target.value,
            )
            return False

        for key, value in values.items():
            setattr(reading, key, value)
        return True

    async def promote(self, reading: Reading, picked_at: datetime, picked_by: str) -> bool:
        return await self._claim(reading, ReadingStatus.PROCESSING, picked_at=picked_at, picked_by=picked_by)

    async def verify(
        self,
        reading: Reading,
        *,
        merkle_root: str,
        content_hash: str,
        storage_uri: str,
        storage_id: str,
        verified_at: datetime,
    ) -> bool:
        return await self._claim(
            reading,
            ReadingStatus.VERIFIED,
            merkle_root=merkle_root,
            content_hash=content_hash,
            storage_uri=storage_uri,
            storage_id=storage_id,
            verified_at=verified_at,
            error=None,
        )

    async def record_retry(self, reading: Reading, retry_count: int, error: str) -> bool:
        return await self._claim(reading, ReadingStatus.PROCESSING, retry_count=retry_count, error=error)

    async def fail(self, reading: Reading, retry_count: int, error: str, failed_at: datetime) -> bool:
        return await self._claim(
            reading, ReadingStatus.FAILED, retry_count=retry_count, error=error, failed_at=failed_at
        )

    async def lock_for_derivation(self, reading: Reading, started_at: datetime) -> bool:
        return await self._claim(reading, ReadingStatus.PROCESSING_AI, ai_started_at=started_at)

    async def mark_derived(self, reading: Reading, derivative_id: str) -> bool:
        return await self._claim(
            reading, ReadingStatus.DERIVED_INDIVIDUAL, derivative_id=derivative_id, error=None
        )

    async def release(self, reading: Reading, error: str) -> bool:
        return await self._claim(reading, ReadingStatus.VERIFIED, error=error)

    async def complete(self, reading: Reading) -> bool:
        return await self._claim(reading, ReadingStatus.COMPLETE)

    async def claim_all(self, readings: Sequence[Reading], method: str, *args: Any, **kwargs: Any) -> list[Reading]:
        """Apply one named transition to each reading, returning those that were won."""

        claimed: list[Reading] = []
        transition = getattr(self, method)
        for reading in readings:
            if await transition(reading, *args, **kwargs):
                claimed.append(reading)
        return claimed
