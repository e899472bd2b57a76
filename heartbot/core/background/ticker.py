"""HeartbeatTicker — APScheduler interval job that drives HeartbeatEngine.tick()."""

from __future__ import annotations

from typing import TYPE_CHECKING

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from loguru import logger

if TYPE_CHECKING:
    from heartbot.core.config.schema import HeartbeatConfig
    from heartbot.core.heartbeat.engine import HeartbeatEngine

TICK_JOB_ID = "heartbeat_tick"


class HeartbeatTicker:
    """Fires one tick per interval.

    ``coalesce`` and ``max_instances=1`` keep ticks from overlapping inside
    this process; overlap across processes is left to the idempotency
    markers and log lookbacks.
    """

    def __init__(self, engine: HeartbeatEngine, config: HeartbeatConfig):
        self.engine = engine
        self.config = config
        self._scheduler = AsyncIOScheduler(
            job_defaults={"coalesce": True, "max_instances": 1}
        )

    async def start(self) -> None:
        if not self.config.enabled:
            logger.debug("HeartbeatTicker disabled")
            return
        self._scheduler.add_job(
            self._tick,
            trigger=IntervalTrigger(minutes=self.config.interval_minutes),
            id=TICK_JOB_ID,
            replace_existing=True,
        )
        self._scheduler.start()
        logger.info(f"HeartbeatTicker started (interval={self.config.interval_minutes}m)")

    async def stop(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        logger.info("HeartbeatTicker stopped")

    @property
    def running(self) -> bool:
        return self._scheduler.running

    async def _tick(self) -> None:
        try:
            result = await self.engine.tick()
        except Exception as e:
            logger.error(f"Heartbeat tick error: {e}")
            return
        if result.errors:
            logger.warning(f"Heartbeat tick finished with errors: {result.errors}")
