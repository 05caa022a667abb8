"""Daily OVERDUE sweep.

``OverdueSweeper.run_sweep_now()`` is the single entry point; anything that
can call a function on a schedule (the asyncio ``SweepScheduler`` started by
the API, cron running ``main.py sweep``) can drive it. Re-running it for the
same day is harmless and a late run catches up on every missed day.
"""

import asyncio
import logging
import sqlite3
from datetime import datetime, timedelta
from typing import Callable, Optional

import database
from borrow_store import BorrowTransactionStore
from config import settings
from database import as_utc, utcnow
from errors import StoreUnavailableError

logger = logging.getLogger(__name__)


def start_of_day(moment: datetime) -> datetime:
    return as_utc(moment).replace(hour=0, minute=0, second=0, microsecond=0)


class OverdueSweeper:
    def __init__(self, store: Optional[BorrowTransactionStore] = None,
                 clock: Callable[[], datetime] = utcnow) -> None:
        self.store = store or BorrowTransactionStore()
        self.clock = clock

    def sweep(self, as_of: datetime) -> int:
        """Move BORROWED loans due before ``as_of`` to OVERDUE. Returns the number changed."""
        with database.transaction() as conn:
            count = self.store.sweep_overdue(conn, as_of)
        logger.info(f"Updated {count} transactions to OVERDUE status")
        return count

    def run_sweep_now(self) -> Optional[int]:
        """Sweep as of the start of the current UTC day.

        Store failures are logged and swallowed: the next scheduled tick is the retry.
        Returns the number of records changed, or None when the sweep failed.
        """
        as_of = start_of_day(self.clock())
        try:
            return self.sweep(as_of)
        except (StoreUnavailableError, sqlite3.Error) as exc:
            logger.error(f"Overdue sweep as of {as_of.isoformat()} failed, retrying on next schedule: {exc}")
            return None


class SweepScheduler:
    """Runs an ``OverdueSweeper`` once a day at a fixed UTC wall-clock time."""

    def __init__(self, sweeper: OverdueSweeper, hour: int = settings.overdue_sweep_hour,
                 minute: int = settings.overdue_sweep_minute, run_on_start: bool = True,
                 clock: Callable[[], datetime] = utcnow) -> None:
        if not (0 <= hour < 24 and 0 <= minute < 60):
            raise ValueError(f"Invalid sweep time {hour:02d}:{minute:02d}")
        self.sweeper = sweeper
        self.hour = hour
        self.minute = minute
        self.run_on_start = run_on_start
        self.clock = clock
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def seconds_until_next_run(self, now: Optional[datetime] = None) -> float:
        now = as_utc(now or self.clock())
        target = now.replace(hour=self.hour, minute=self.minute, second=0, microsecond=0)
        if target <= now:
            target += timedelta(days=1)
        return (target - now).total_seconds()

    async def _tick(self) -> None:
        try:
            await asyncio.to_thread(self.sweeper.run_sweep_now)
        except Exception:
            # A failed tick must not end the loop; the next tick sweeps again
            logger.exception("Overdue sweep tick failed unexpectedly")

    async def _run(self) -> None:
        # Catch up on ticks missed while the process was down
        if self.run_on_start:
            await self._tick()
        while True:
            delay = self.seconds_until_next_run()
            logger.debug(f"Next overdue sweep in {delay:.0f}s")
            await asyncio.sleep(delay)
            await self._tick()

    def start(self) -> asyncio.Task:
        """Schedule the sweep loop on the running event loop."""
        if not self.running:
            self._task = asyncio.create_task(self._run(), name="overdue-sweep")
            logger.info(f"Overdue sweep scheduled daily at {self.hour:02d}:{self.minute:02d} UTC")
        return self._task

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
