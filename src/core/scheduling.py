"""Cooperative interval jobs for background maintenance."""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any

from src.core.database.base import utcnow

logger = logging.getLogger(__name__)


class PeriodicJob(ABC):
    """Runs ``run()`` immediately on start and then every ``interval_seconds``.

    At most one run executes at a time: a tick that fires while a run is in
    progress is skipped and logged, not queued.
    """

    name: str = "periodic_job"

    def __init__(self, interval_seconds: float):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.interval_seconds = interval_seconds
        self._running = False
        self._task: asyncio.Task | None = None
        self._inflight: set[asyncio.Task] = set()
        self._stopping = asyncio.Event()
        self.last_run_at: datetime | None = None
        self.next_run_at: datetime | None = None
        self.skipped_runs = 0

    @abstractmethod
    async def run(self) -> Any:
        """Perform one execution."""

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def is_scheduled(self) -> bool:
        return self._task is not None and not self._task.done()

    async def trigger(self) -> Any | None:
        """Execute once unless a run is already in progress (returns None then)."""
        if self._running:
            self.skipped_runs += 1
            logger.info("%s already running, skipping this tick", self.name)
            return None
        self._running = True
        try:
            return await self.run()
        finally:
            self._running = False
            self.last_run_at = utcnow()

    def start(self) -> None:
        if self.is_scheduled:
            logger.info("%s is already scheduled", self.name)
            return
        self._stopping = asyncio.Event()
        self._task = asyncio.create_task(self._loop(), name=self.name)
        logger.info("%s scheduled every %ss", self.name, self.interval_seconds)

    async def stop(self) -> None:
        """Cancel the loop and wait for it to finish."""
        if self._task is None:
            return
        self._stopping.set()
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        for tick in list(self._inflight):
            tick.cancel()
        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)
        self.next_run_at = None
        logger.info("%s stopped", self.name)

    async def _loop(self) -> None:
        try:
            while not self._stopping.is_set():
                # Ticks are fire-and-forget so a slow run cannot delay the schedule
                tick = asyncio.create_task(self._tick())
                self._inflight.add(tick)
                tick.add_done_callback(self._inflight.discard)
                self.next_run_at = utcnow() + timedelta(seconds=self.interval_seconds)
                try:
                    await asyncio.wait_for(self._stopping.wait(), timeout=self.interval_seconds)
                except asyncio.TimeoutError:
                    continue
        except asyncio.CancelledError:
            logger.info("%s loop cancelled", self.name)
            raise

    async def _tick(self) -> None:
        try:
            await self.trigger()
        except Exception:
            logger.exception("%s run failed", self.name)
