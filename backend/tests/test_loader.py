import asyncio
from datetime import datetime, timezone

import pytest
from sqlalchemy import func, select, update

from conftest import NOW
from aqiledger.devices import DeviceRecord, SQLDeviceDirectory
from aqiledger.loader import load_station_csv, normalize_parameter, parse_station_csv, station_data_folder
from aqiledger.models import Reading

HEADER = '"location_id","sensors_id","location","datetime","lat","lon","parameter","units","value"\n'
STATION = '11603,12236360,"Chandni Chowk, Delhi - IITM"'


def _row(ts, parameter, value):
    return f'{STATION},"{ts}","28.656756","77.227234","{parameter}","µg/m³","{value}"\n'


SAMPLE = HEADER + "".join(
    [
        _row("2025-11-12T14:30:00+05:30", "pm10", "834.0"),
        _row("2025-11-12T14:30:00+05:30", "pm2.5", "500.0"),
        _row("2025-11-12T14:45:00+05:30", "pm10", "800.0"),
        _row("2025-11-12T14:45:00+05:30", "pm2.5", "480.0"),
        _row("2025-11-12T15:30:00+05:30", "pm10", "750.0"),
        _row("2025-11-12T15:30:00+05:30", "pm2.5", "450.0"),
    ]
)


@pytest.fixture
def sample_csv(tmp_path):
    path = tmp_path / "location-11603-20251112.csv"
    path.write_text(SAMPLE, encoding="utf-8")
    return path


async def _device(session_factory, add_device):
    await add_device(session_factory)
    async with session_factory() as session:
        return await SQLDeviceDirectory(session).get_device("D")


@pytest.mark.parametrize(
    "raw, expected",
    [("pm10", "PM10"), ("PM2.5", "PM2.5"), ("pm25", "PM2.5"), (" rh ", "RH"), ("wind_speed", "Wind_Speed"), ("bc", "bc")],
)
def test_normalize_parameter(raw, expected):
    assert normalize_parameter(raw) == expected


def test_rows_are_grouped_into_utc_hours(sample_csv):
    parsed = parse_station_csv(sample_csv)

    assert parsed.total_rows == 6
    assert parsed.errors == []
    first, second = (parsed.batches[k] for k in sorted(parsed.batches))
    assert first.window.start == datetime(2025, 11, 12, 9, tzinfo=timezone.utc)
    assert first.sensor_data == {"PM10": [834.0, 800.0], "PM2.5": [500.0, 480.0]}
    assert first.rows == 4
    assert second.window.hour_index == 10
    assert second.rows == 2


def test_bad_rows_are_reported_and_skipped(tmp_path):
    path = tmp_path / "bad.csv"
    path.write_text(
        HEADER
        + _row("not a date", "pm10", "1")
        + _row("2025-11-12T14:30:00+05:30", "bc", "1")
        + _row("2025-11-12T14:30:00+05:30", "pm10", "abc")
        + _row("2025-11-12T14:30:00+05:30", "pm10", "-4")
        + _row("2025-11-12T14:30:00+05:30", "pm10", "12"),
        encoding="utf-8",
    )

    parsed = parse_station_csv(path)
    assert parsed.total_rows == 5
    assert len(parsed.errors) == 4
    assert "invalid timestamp" in parsed.errors[0]
    assert "unknown parameter" in parsed.errors[1]
    [batch] = parsed.batches.values()
    assert batch.sensor_data == {"PM10": [12.0]}


def test_load_creates_pending_hourly_readings(db, add_device, sample_csv):
    async def scenario():
        async with db() as session_factory:
            device = await _device(session_factory, add_device)
            async with session_factory() as session:
                result = await load_station_csv(session, device, sample_csv, now=NOW)
            async with session_factory() as session:
                return result, await session.get(Reading, "D_20251112_H09"), await session.get(Reading, "D_20251112_H10")

    result, h09, h10 = asyncio.run(scenario())
    assert result.success is True
    assert result.station_id == "av-1"
    assert (result.total_rows, result.batches_created, result.batches_updated) == (6, 2, 0)
    assert h09.status == "PENDING"
    assert h09.owner_id == "owner-1"
    assert h09.ingestion_count == 4
    assert h09.sensor_data == {"PM10": [834.0, 800.0], "PM2.5": [500.0, 480.0]}
    assert h09.data_points_count == {"PM10": 2, "PM2.5": 2}
    assert h09.location["station"] == "Anand Vihar"
    assert h10.sensor_data == {"PM10": [750.0], "PM2.5": [450.0]}


def test_reload_appends_to_pending_and_leaves_closed_batches_alone(db, add_device, sample_csv):
    async def scenario():
        async with db() as session_factory:
            device = await _device(session_factory, add_device)
            async with session_factory() as session:
                await load_station_csv(session, device, sample_csv, now=NOW)
                await session.execute(
                    update(Reading).where(Reading.reading_id == "D_20251112_H10").values(status="VERIFIED")
                )
                await session.commit()
                again = await load_station_csv(session, device, sample_csv, now=NOW)
            async with session_factory() as session:
                return again, await session.get(Reading, "D_20251112_H09"), await session.get(Reading, "D_20251112_H10")

    again, h09, h10 = asyncio.run(scenario())
    assert (again.batches_created, again.batches_updated, again.batches_skipped) == (0, 1, 1)
    assert "D_20251112_H10" in again.errors[0]
    assert h09.ingestion_count == 8
    assert h09.sensor_data["PM10"] == [834.0, 800.0, 834.0, 800.0]
    assert h10.sensor_data == {"PM10": [750.0], "PM2.5": [450.0]}


def test_dry_run_writes_nothing(db, add_device, sample_csv):
    async def scenario():
        async with db() as session_factory:
            device = await _device(session_factory, add_device)
            async with session_factory() as session:
                result = await load_station_csv(session, device, sample_csv, dry_run=True, now=NOW)
                count = (await session.execute(select(func.count()).select_from(Reading))).scalar_one()
                return result, count

    result, count = asyncio.run(scenario())
    assert result.success is True
    assert result.batches_created == 2
    assert count == 0


def test_missing_file_or_inactive_device_fails_the_load(tmp_path, sample_csv):
    active = DeviceRecord("D", "owner-1", "active", ("PM10",), {"station_id": "av-1"})
    inactive = DeviceRecord("D", "owner-1", "inactive", ("PM10",), {"station_id": "av-1"})

    async def scenario():
        missing = await load_station_csv(None, active, tmp_path / "nope.csv", now=NOW)
        off = await load_station_csv(None, inactive, sample_csv, now=NOW)
        return missing, off

    missing, off = asyncio.run(scenario())
    assert missing.success is False
    assert "not found" in missing.errors[0]
    assert off.success is False
    assert "not active" in off.errors[0]


def test_station_folder_lookup_tolerates_iitm_suffix(tmp_path):
    (tmp_path / "delhi_chandni_chowk_11603").mkdir()
    assert station_data_folder(tmp_path, "delhi_chandni_chowk_iitm_11603") == tmp_path / "delhi_chandni_chowk_11603"
    assert station_data_folder(tmp_path, "mumbai_bandra_1") is None
