import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, insert, select, update

from conftest import NOW
from aqiledger.errors import BatchClosedError, ConcurrencyError, ValidationError
from aqiledger.ingestion import (
    coerce_timestamp,
    get_device_readings,
    get_reading_by_id,
    get_readings_by_status,
    ingest_reading,
)
from aqiledger.models import Reading

TS = datetime(2025, 1, 1, 10, 5, tzinfo=timezone.utc)


def test_three_points_in_one_hour_append_to_one_reading(db, add_device):
    async def scenario():
        async with db() as session_factory:
            await add_device(session_factory)
            async with session_factory() as session:
                for minute, value in ((5, 100), (20, 110), (55, 120)):
                    await ingest_reading(
                        session, "owner-1", "D", {"PM10": value}, TS.replace(minute=minute), now=NOW
                    )
            async with session_factory() as session:
                count = (await session.execute(select(func.count()).select_from(Reading))).scalar_one()
                reading = await session.get(Reading, "D_20250101_H10")
                return count, reading

    count, reading = asyncio.run(scenario())
    assert count == 1
    assert reading.ingestion_count == 3
    assert reading.sensor_data == {"PM10": [100.0, 110.0, 120.0]}
    assert reading.data_points_count == {"PM10": 3}
    assert reading.status == "PENDING"
    assert reading.hour_index == 10
    assert reading.window_start == datetime(2025, 1, 1, 10, tzinfo=timezone.utc)
    assert reading.location["station"] == "Anand Vihar"


def test_new_sensor_type_joins_existing_reading(db, add_device):
    async def scenario():
        async with db() as session_factory:
            await add_device(session_factory)
            async with session_factory() as session:
                await ingest_reading(session, "owner-1", "D", {"PM10": 90}, TS, now=NOW)
                return await ingest_reading(session, "owner-1", "D", {"PM2.5": 40.5, "PM10": 95}, TS, now=NOW)

    reading = asyncio.run(scenario())
    assert reading.sensor_data == {"PM10": [90.0, 95.0], "PM2.5": [40.5]}
    assert reading.data_points_count == {"PM10": 2, "PM2.5": 1}
    assert reading.ingestion_count == 2


def test_next_hour_opens_a_new_reading(db, add_device):
    async def scenario():
        async with db() as session_factory:
            await add_device(session_factory)
            async with session_factory() as session:
                a = await ingest_reading(session, "owner-1", "D", {"PM10": 1}, TS, now=NOW)
                b = await ingest_reading(session, "owner-1", "D", {"PM10": 2}, TS + timedelta(hours=1), now=NOW)
                return a.reading_id, b.reading_id

    assert asyncio.run(scenario()) == ("D_20250101_H10", "D_20250101_H11")


def test_ingest_into_closed_batch_is_rejected(db, add_device):
    async def scenario():
        async with db() as session_factory:
            await add_device(session_factory)
            async with session_factory() as session:
                reading = await ingest_reading(session, "owner-1", "D", {"PM10": 1}, TS, now=NOW)
                reading.status = "PROCESSING"
                await session.commit()
                with pytest.raises(BatchClosedError) as excinfo:
                    await ingest_reading(session, "owner-1", "D", {"PM10": 2}, TS, now=NOW)
                return excinfo.value

    error = asyncio.run(scenario())
    assert error.code == "BATCH_CLOSED"
    assert error.reading_id == "D_20250101_H10"


@pytest.mark.parametrize(
    "device_id, owner_id, readings, ts, field",
    [
        ("missing", "owner-1", {"PM10": 1}, TS, "device_id"),
        ("D", "someone-else", {"PM10": 1}, TS, "owner_id"),
        ("OFF", "owner-1", {"PM10": 1}, TS, "device_id"),
        ("D", "owner-1", {}, TS, "sensor_data"),
        ("D", "owner-1", {"CO": 1}, TS, "sensor_data.CO"),
        ("D", "owner-1", {"Radon": 1}, TS, "sensor_data.Radon"),
        ("D", "owner-1", {"PM10": 1}, NOW - timedelta(hours=25), "timestamp"),
        ("D", "owner-1", {"PM10": 1}, NOW + timedelta(minutes=16), "timestamp"),
        ("D", "owner-1", {"PM10": -1}, TS, "sensor_data.PM10"),
        ("D", "owner-1", {"PM10": "high"}, TS, "sensor_data.PM10"),
        ("D", "owner-1", {"PM10": True}, TS, "sensor_data.PM10"),
        ("D", "owner-1", {"PM10": float("nan")}, TS, "sensor_data.PM10"),
    ],
)
def test_validation_failures_name_the_field(db, add_device, device_id, owner_id, readings, ts, field):
    async def scenario():
        async with db() as session_factory:
            await add_device(session_factory)
            await add_device(session_factory, device_id="OFF", status="inactive")
            async with session_factory() as session:
                with pytest.raises(ValidationError) as excinfo:
                    await ingest_reading(session, owner_id, device_id, readings, ts, now=NOW)
                count = (await session.execute(select(func.count()).select_from(Reading))).scalar_one()
                return excinfo.value, count

    error, count = asyncio.run(scenario())
    assert error.field == field
    assert count == 0


def test_coerce_timestamp_accepts_iso_and_epoch():
    expected = datetime(2025, 1, 1, 10, 5, tzinfo=timezone.utc)
    assert coerce_timestamp("2025-01-01T10:05:00Z") == expected
    assert coerce_timestamp(expected.timestamp()) == expected
    assert coerce_timestamp(int(expected.timestamp() * 1000)) == expected
    assert coerce_timestamp(datetime(2025, 1, 1, 10, 5)) == expected
    with pytest.raises(ValidationError):
        coerce_timestamp("yesterday")
    with pytest.raises(ValidationError):
        coerce_timestamp(None)


def test_query_helpers_are_scoped_to_owner(db, add_device):
    async def scenario():
        async with db() as session_factory:
            await add_device(session_factory)
            async with session_factory() as session:
                await ingest_reading(session, "owner-1", "D", {"PM10": 1}, TS, now=NOW)
                await ingest_reading(session, "owner-1", "D", {"PM10": 2}, TS + timedelta(hours=1), now=NOW)
            async with session_factory() as session:
                mine = await get_device_readings(session, "owner-1", "D", status="pending")
                theirs = await get_device_readings(session, "owner-2", "D")
                one = await get_reading_by_id(session, "owner-1", "D_20250101_H10")
                hidden = await get_reading_by_id(session, "owner-2", "D_20250101_H10")
                return [r.reading_id for r in mine], theirs, one, hidden

    mine, theirs, one, hidden = asyncio.run(scenario())
    assert mine == ["D_20250101_H11", "D_20250101_H10"]
    assert theirs == []
    assert one is not None
    assert hidden is None


async def _concurrent_create(session, reading_id):
    # a competing writer commits the same batch between our get and our commit
    await session.execute(
        insert(Reading).values(
            reading_id=reading_id,
            device_id="D",
            owner_id="owner-1",
            window_start=TS.replace(minute=0),
            window_end=TS.replace(hour=11, minute=0),
            hour_index=10,
            sensor_data={"PM10": [90.0]},
            location={"station": "Anand Vihar"},
            ingestion_count=1,
            last_ingestion=TS,
            data_points_count={"PM10": 1},
            status="PENDING",
            version=1,
        )
    )
    await session.commit()


async def _concurrent_bump(session, reading_id):
    await session.execute(
        update(Reading)
        .where(Reading.reading_id == reading_id)
        .values(version=Reading.version + 1)
        .execution_options(synchronize_session=False)
    )
    await session.commit()


def _racing_get(session, competitor, times=1):
    real_get = session.get
    calls = []

    async def racing_get(entity, ident, **kwargs):
        found = await real_get(entity, ident, **kwargs)
        calls.append(found)
        if len(calls) <= times:
            await competitor(session, ident)
        return found

    return racing_get, calls


def test_duplicate_create_retries_as_append(db, add_device, monkeypatch):
    async def scenario():
        async with db() as session_factory:
            await add_device(session_factory)
            async with session_factory() as session:
                racing_get, calls = _racing_get(session, _concurrent_create)
                monkeypatch.setattr(session, "get", racing_get)
                await ingest_reading(session, "owner-1", "D", {"PM10": 100}, TS, now=NOW)
            async with session_factory() as session:
                count = (await session.execute(select(func.count()).select_from(Reading))).scalar_one()
                return calls, count, await session.get(Reading, "D_20250101_H10")

    calls, count, reading = asyncio.run(scenario())
    assert calls[0] is None
    assert len(calls) == 2
    assert count == 1
    assert reading.ingestion_count == 2
    assert reading.sensor_data == {"PM10": [90.0, 100.0]}


def test_stale_append_is_retried(db, add_device, add_reading, monkeypatch):
    async def scenario():
        async with db() as session_factory:
            await add_device(session_factory)
            await add_reading(session_factory, values={"PM10": [90.0]})
            async with session_factory() as session:
                racing_get, calls = _racing_get(session, _concurrent_bump)
                monkeypatch.setattr(session, "get", racing_get)
                reading = await ingest_reading(session, "owner-1", "D", {"PM10": 100}, TS, now=NOW, max_attempts=3)
                return len(calls), reading

    attempts, reading = asyncio.run(scenario())
    assert attempts == 2
    assert reading.ingestion_count == 2
    assert reading.sensor_data == {"PM10": [90.0, 100.0]}


def test_persistently_stale_append_raises_concurrency_error(db, add_device, add_reading, monkeypatch):
    async def scenario():
        async with db() as session_factory:
            await add_device(session_factory)
            await add_reading(session_factory, values={"PM10": [90.0]})
            async with session_factory() as session:
                racing_get, _ = _racing_get(session, _concurrent_bump, times=10)
                monkeypatch.setattr(session, "get", racing_get)
                with pytest.raises(ConcurrencyError):
                    await ingest_reading(session, "owner-1", "D", {"PM10": 100}, TS, now=NOW, max_attempts=1)
            async with session_factory() as session:
                return await session.get(Reading, "D_20250101_H10")

    reading = asyncio.run(scenario())
    assert reading.ingestion_count == 1
    assert reading.sensor_data == {"PM10": [90.0]}


def test_status_query_applies_limit_newest_first(db, add_reading):
    async def scenario():
        async with db() as session_factory:
            for hour in (8, 9, 10):
                await add_reading(session_factory, hour=hour, status="VERIFIED")
            async with session_factory() as session:
                two = await get_readings_by_status(session, "owner-1", "verified", limit=2)
                every = await get_readings_by_status(session, "owner-1", "VERIFIED")
                return [r.reading_id for r in two], len(every)

    two, total = asyncio.run(scenario())
    assert two == ["D_20250101_H10", "D_20250101_H09"]
    assert total == 3
