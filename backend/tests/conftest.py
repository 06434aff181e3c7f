import dataclasses
import sys
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from aqiledger.config import load_settings  # noqa: E402
from aqiledger.db import init_models, make_engine, make_session_factory  # noqa: E402
from aqiledger.errors import ExternalServiceError  # noqa: E402
from aqiledger.generation import GenerationResult  # noqa: E402
from aqiledger.models import Device, Reading  # noqa: E402
from aqiledger.storage import PinResult  # noqa: E402
from aqiledger.utils import batch_window_for, build_reading_id  # noqa: E402

NOW = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakePinner:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls = []

    async def pin(self, payload, name, tags=None):
        self.calls.append({"payload": payload, "name": name, "tags": dict(tags or {})})
        if self.fail:
            raise ExternalServiceError("storage", "HTTP 503: unavailable", status_code=503)
        cid = f"bafy{len(self.calls):04d}"
        return PinResult(content_id=cid, uri=f"ipfs://{cid}", size=123)


class FakeGenerator:
    provider = "fake"

    def __init__(self, text: str = "# Report\n\nAir was mostly clean today.", fail: bool = False):
        self.text = text
        self.fail = fail
        self.calls = []

    async def generate(self, system_prompt, user_prompt, model, temperature, max_tokens):
        self.calls.append({"user_prompt": user_prompt, "model": model})
        if self.fail:
            raise ExternalServiceError("generation", "LLM returned HTTP 500", status_code=500)
        return GenerationResult(
            text=self.text,
            model=model,
            tokens_used={"input": 10, "output": 20, "total": 30},
            cost_usd=0.0001,
            latency_ms=5,
        )


@asynccontextmanager
async def _in_memory_db():
    engine = make_engine("sqlite+aiosqlite://")
    await init_models(engine)
    try:
        yield make_session_factory(engine)
    finally:
        await engine.dispose()


async def _add_device(session_factory, device_id="D", owner_id="owner-1", sensor_types=("PM10", "PM2.5"), status="active"):
    async with session_factory() as session:
        session.add(
            Device(
                device_id=device_id,
                owner_id=owner_id,
                status=status,
                sensor_types=list(sensor_types),
                location={"city": "Delhi", "city_id": "delhi", "station": "Anand Vihar", "station_id": "av-1"},
            )
        )
        await session.commit()


@pytest.fixture
def db():
    """Async context manager yielding a session factory over a fresh in-memory database."""
    return _in_memory_db


@pytest.fixture
def add_device():
    return _add_device


@pytest.fixture
def settings():
    return dataclasses.replace(load_settings(), verifier_delay_seconds=0.0, derivative_delay_seconds=0.0)


async def _add_reading(session_factory, hour=10, device_id="D", status="PENDING", values=None, day=1, **fields):
    window = batch_window_for(datetime(2025, 1, day, hour, tzinfo=timezone.utc))
    values = values if values is not None else {"PM10": [100.0, 120.0]}
    fields.setdefault("retry_count", 0)
    reading = Reading(
        reading_id=build_reading_id(device_id, window),
        device_id=device_id,
        owner_id="owner-1",
        window_start=window.start,
        window_end=window.end,
        hour_index=window.hour_index,
        sensor_data=values,
        location={"city": "Delhi", "station": "Anand Vihar"},
        ingestion_count=max((len(v) for v in values.values()), default=0),
        last_ingestion=window.start,
        data_points_count={k: len(v) for k, v in values.items()},
        status=status,
        **fields,
    )
    async with session_factory() as session:
        session.add(reading)
        await session.commit()
    return reading.reading_id


@pytest.fixture
def add_reading():
    return _add_reading
