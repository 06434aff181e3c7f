from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from datetime import datetime
from typing import Any, Awaitable, Callable

from croniter import croniter
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import Settings
from ..generation import Generator
from ..storage import Pinner
from ..utils import utcnow
from .backfill import process_station_backfill
from .batch_processor import process_pending_batches
from .derivative import process_derivative_generation
from .meta_derivative import process_meta_derivative_generation
from .verifier import process_verification_queue

logger = logging.getLogger(__name__)

STAGES = ("data_ingestion", "batch_processor", "verifier", "derivative", "meta_derivative")


def next_fire_time(expression: str, after: datetime) -> datetime:
    return croniter(expression, after).get_next(datetime)


class PipelineScheduler:
    """One asyncio task per stage, each sleeping until its next cron tick."""

    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        pinner: Pinner,
        generator: Generator,
    ):
        self.settings = settings
        self.session_factory = session_factory
        self.pinner = pinner
        self.generator = generator
        self._tasks: dict[str, asyncio.Task] = {}

    def _schedules(self) -> dict[str, str]:
        schedules = {
            "batch_processor": self.settings.cron_batch_processor,
            "verifier": self.settings.cron_verifier,
            "derivative": self.settings.cron_derivative,
            "meta_derivative": self.settings.cron_meta_derivative,
        }
        if self.settings.backfill_data_dir:
            schedules["data_ingestion"] = self.settings.cron_data_ingestion
        return schedules

    def _runner(self, stage: str) -> Callable[[], Awaitable[Any]]:
        if stage == "data_ingestion":
            return lambda: process_station_backfill(self.session_factory, self.settings)
        if stage == "batch_processor":
            return lambda: process_pending_batches(self.session_factory)
        if stage == "verifier":
            return lambda: process_verification_queue(self.session_factory, self.pinner, self.settings)
        if stage == "derivative":
            return lambda: process_derivative_generation(
                self.session_factory, self.generator, self.pinner, self.settings
            )
        if stage == "meta_derivative":
            return lambda: process_meta_derivative_generation(
                self.session_factory, self.generator, self.pinner, self.settings
            )
        raise ValueError(f"Unknown pipeline stage: {stage}")

    async def run_once(self, stage: str) -> Any:
        return await self._runner(stage)()

    async def _loop(self, stage: str, expression: str) -> None:
        while True:
            fire_at = next_fire_time(expression, utcnow())
            delay = max((fire_at - utcnow()).total_seconds(), 0.0)
            logger.debug("Stage %s sleeping %.1fs until %s", stage, delay, fire_at.isoformat())
            await asyncio.sleep(delay)
            try:
                await self.run_once(stage)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Scheduled run of %s failed", stage)

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks.values())

    def start(self) -> None:
        if self.running:
            return
        for stage, expression in self._schedules().items():
            self._tasks[stage] = asyncio.create_task(self._loop(stage, expression), name=f"aqiledger-{stage}")
            logger.info("Scheduled %s with cron %r", stage, expression)

    async def stop(self) -> None:
        tasks, self._tasks = self._tasks, {}
        for task in tasks.values():
            task.cancel()
        for task in tasks.values():
            with suppress(asyncio.CancelledError):
                await task
        if tasks:
            logger.info("Stopped %d pipeline stages", len(tasks))
