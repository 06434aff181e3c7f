import asyncio
from datetime import datetime, timezone

from sqlalchemy import update

from conftest import FakeGenerator, FakePinner
from aqiledger import traversal
from aqiledger.jobs.batch_processor import process_pending_batches
from aqiledger.jobs.derivative import process_derivative_generation
from aqiledger.jobs.meta_derivative import process_meta_derivative_generation
from aqiledger.jobs.verifier import process_verification_queue
from aqiledger.models import Derivative, Reading

RUN_AT = datetime(2025, 2, 1, 1, 0, tzinfo=timezone.utc)


async def _run_pipeline(session_factory, add_reading, settings):
    await add_reading(session_factory, hour=10, day=1, values={"PM10": [100.0, 120.0]})
    await add_reading(session_factory, hour=11, day=1, values={"PM10": [90.0], "PM2.5": [35.5]})
    await add_reading(session_factory, hour=8, day=2, values={"PM10": [60.0]})
    pinner = FakePinner()
    await process_pending_batches(session_factory, now=RUN_AT)
    await process_verification_queue(session_factory, pinner, settings, now=RUN_AT)
    daily = await process_derivative_generation(session_factory, FakeGenerator(), pinner, settings, now=RUN_AT)
    monthly = await process_meta_derivative_generation(
        session_factory, FakeGenerator(text="# Month\n\nSteady."), pinner, settings, now=RUN_AT
    )
    return daily.derivative_ids, monthly.derivative_id


def test_lineage_navigation(db, add_reading, settings):
    async def scenario():
        async with db() as session_factory:
            daily_ids, monthly_id = await _run_pipeline(session_factory, add_reading, settings)
            async with session_factory() as session:
                parent = await traversal.get_meta_derivative(session, daily_ids[0])
                children = await traversal.get_daily_logs(session, monthly_id)
                originals = await traversal.get_original_data(session, daily_ids[0])
                orphan = await traversal.get_meta_derivative(session, monthly_id)
            return daily_ids, monthly_id, parent, children, originals, orphan

    daily_ids, monthly_id, parent, children, originals, orphan = asyncio.run(scenario())
    assert parent.derivative_id == monthly_id
    assert [c.derivative_id for c in children] == daily_ids
    assert [r.reading_id for r in originals] == ["D_20250101_H10", "D_20250101_H11"]
    assert orphan is None


def test_proof_chain_holds_until_data_is_tampered(db, add_reading, settings):
    async def scenario():
        async with db() as session_factory:
            daily_ids, monthly_id = await _run_pipeline(session_factory, add_reading, settings)
            async with session_factory() as session:
                intact = await traversal.verify_proof_chain(session, monthly_id)
                await session.execute(
                    update(Reading)
                    .where(Reading.reading_id == "D_20250102_H08")
                    .values(sensor_data={"PM10": [61.0]})
                )
                await session.commit()
            async with session_factory() as session:
                first_day = await traversal.verify_proof_chain(session, daily_ids[0])
                second_day = await traversal.verify_proof_chain(session, daily_ids[1])
                month = await traversal.verify_proof_chain(session, monthly_id)
            return intact, first_day, second_day, month

    intact, first_day, second_day, month = asyncio.run(scenario())
    assert intact is True
    assert first_day is True
    assert second_day is False
    assert month is False


def test_edited_report_breaks_proof_chain(db, add_reading, settings):
    async def scenario():
        async with db() as session_factory:
            daily_ids, _ = await _run_pipeline(session_factory, add_reading, settings)
            async with session_factory() as session:
                await session.execute(
                    update(Derivative).where(Derivative.derivative_id == daily_ids[0]).values(content="edited")
                )
                await session.commit()
            async with session_factory() as session:
                return await traversal.verify_proof_chain(session, daily_ids[0])

    assert asyncio.run(scenario()) is False


def test_unknown_derivative(db):
    async def scenario():
        async with db() as session_factory:
            async with session_factory() as session:
                return (
                    await traversal.verify_proof_chain(session, "deriv_missing"),
                    await traversal.get_daily_logs(session, "deriv_missing"),
                    await traversal.get_original_data(session, "deriv_missing"),
                )

    assert asyncio.run(scenario()) == (False, [], [])
