import asyncio
from datetime import datetime, timezone

import pytest
from sqlalchemy import update

from conftest import NOW
from aqiledger.errors import IllegalTransitionError
from aqiledger.models import Reading
from aqiledger.queue import ReadingQueue


def test_claim_moves_status_and_bumps_version(db, add_reading):
    async def scenario():
        async with db() as session_factory:
            await add_reading(session_factory)
            async with session_factory() as session:
                queue = ReadingQueue(session)
                [reading] = await queue.pending_closed(NOW)
                before = reading.version
                won = await queue.promote(reading, picked_at=NOW, picked_by="test")
            async with session_factory() as session:
                stored = await session.get(Reading, reading.reading_id)
                return won, before, reading, stored

    won, before, snapshot, stored = asyncio.run(scenario())
    assert won is True
    assert snapshot.status == "PROCESSING"
    assert stored.status == "PROCESSING"
    assert stored.version == before + 1
    assert stored.picked_by == "test"


def test_stale_snapshot_loses_claim(db, add_reading):
    async def scenario():
        async with db() as session_factory:
            await add_reading(session_factory)
            async with session_factory() as session:
                queue = ReadingQueue(session)
                [reading] = await queue.pending_closed(NOW)
                # another worker gets there first
                await session.execute(
                    update(Reading)
                    .where(Reading.reading_id == reading.reading_id)
                    .values(status="PROCESSING", version=Reading.version + 1)
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
                won = await queue.promote(reading, picked_at=NOW, picked_by="late")
            async with session_factory() as session:
                stored = await session.get(Reading, reading.reading_id)
                return won, stored

    won, stored = asyncio.run(scenario())
    assert won is False
    assert stored.picked_by is None


def test_illegal_transition_is_rejected_before_writing(db, add_reading):
    async def scenario():
        async with db() as session_factory:
            await add_reading(session_factory)
            async with session_factory() as session:
                queue = ReadingQueue(session)
                [reading] = await queue.pending_closed(NOW)
                with pytest.raises(IllegalTransitionError):
                    await queue.complete(reading)

    asyncio.run(scenario())


def test_pending_closed_skips_open_windows(db, add_reading):
    async def scenario():
        async with db() as session_factory:
            await add_reading(session_factory, hour=10)
            await add_reading(session_factory, hour=12)
            async with session_factory() as session:
                return [r.reading_id for r in await ReadingQueue(session).pending_closed(NOW)]

    assert asyncio.run(scenario()) == ["D_20250101_H10"]


def test_awaiting_verification_honours_retry_ceiling_and_limit(db, add_reading):
    async def scenario():
        async with db() as session_factory:
            await add_reading(session_factory, hour=8, status="PROCESSING", retry_count=3)
            await add_reading(session_factory, hour=9, status="PROCESSING", retry_count=2)
            await add_reading(session_factory, hour=10, status="PROCESSING")
            await add_reading(session_factory, hour=11, status="PROCESSING")
            async with session_factory() as session:
                rows = await ReadingQueue(session).awaiting_verification(max_retries=3, limit=2)
                return [r.reading_id for r in rows]

    assert asyncio.run(scenario()) == ["D_20250101_H09", "D_20250101_H10"]


def test_derived_in_range_is_half_open(db, add_reading):
    async def scenario():
        async with db() as session_factory:
            await add_reading(session_factory, hour=0, day=1, status="DERIVED_INDIVIDUAL")
            await add_reading(session_factory, hour=0, day=2, status="DERIVED_INDIVIDUAL")
            async with session_factory() as session:
                rows = await ReadingQueue(session).derived_in_range(
                    datetime(2025, 1, 1, tzinfo=timezone.utc), datetime(2025, 1, 2, tzinfo=timezone.utc)
                )
                return [r.reading_id for r in rows]

    assert asyncio.run(scenario()) == ["D_20250101_H00"]
