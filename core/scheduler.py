"""
scheduler.py - Named asyncio timers

Three kinds of timer, all identified by name so they can be cancelled:

- run_now: fire-and-forget task
- run_periodically: fixed-interval loop with a re-entrancy guard (a run that
  would overlap the previous one is dropped and counted as skipped)
- run_daily_at_utc_midnight: sleeps until the next UTC midnight, runs, repeats
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

logger = logging.getLogger(__name__)

CoroFn = Callable[[], Awaitable[Any]]


def seconds_until_utc_midnight(now: Optional[datetime] = None) -> float:
    """Seconds from `now` (aware, or naive UTC) to the next UTC midnight."""
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    now = now.astimezone(timezone.utc)
    midnight = (now + timedelta(days=1)).replace(hour=0, minute=0, second=0, microsecond=0)
    return (midnight - now).total_seconds()


class Scheduler:
    def __init__(self):
        self._tasks: Dict[str, asyncio.Task] = {}
        self._running: Dict[str, bool] = {}
        self.skipped: Dict[str, int] = {}

    def run_now(self, coro_fn: CoroFn, name: Optional[str] = None) -> asyncio.Task:
        task = asyncio.ensure_future(self._guarded(name or "run_now", coro_fn))
        if name:
            self._replace(name, task)
        return task

    def run_periodically(self, name: str, interval_s: float, coro_fn: CoroFn) -> asyncio.Task:
        """
        Call `coro_fn` every `interval_s` seconds until cancelled.

        Each run is started as its own task; when the previous run of the same
        timer is still in flight the new one is dropped.
        """
        self.skipped.setdefault(name, 0)

        async def _loop():
            while True:
                await asyncio.sleep(interval_s)
                if self._running.get(name):
                    self.skipped[name] += 1
                    logger.debug(f"[Scheduler] {name} still running, skipped ({self.skipped[name]})")
                    continue
                asyncio.ensure_future(self._tracked(name, coro_fn))

        task = asyncio.ensure_future(_loop())
        self._replace(name, task)
        return task

    def run_daily_at_utc_midnight(self, name: str, coro_fn: CoroFn) -> asyncio.Task:
        async def _loop():
            while True:
                delay = seconds_until_utc_midnight()
                logger.info(f"[Scheduler] {name} scheduled in {delay:.0f}s (next UTC midnight)")
                await asyncio.sleep(delay)
                await self._guarded(name, coro_fn)

        task = asyncio.ensure_future(_loop())
        self._replace(name, task)
        return task

    def is_scheduled(self, name: str) -> bool:
        task = self._tasks.get(name)
        return task is not None and not task.done()

    def cancel(self, name: str) -> bool:
        task = self._tasks.pop(name, None)
        if task is None:
            return False
        task.cancel()
        return True

    def cancel_all(self) -> None:
        for name in list(self._tasks):
            self.cancel(name)

    def _replace(self, name: str, task: asyncio.Task) -> None:
        old = self._tasks.get(name)
        if old is not None and old is not task:
            old.cancel()
        self._tasks[name] = task

    async def _tracked(self, name: str, coro_fn: CoroFn) -> None:
        self._running[name] = True
        try:
            await self._guarded(name, coro_fn)
        finally:
            self._running[name] = False

    @staticmethod
    async def _guarded(name: str, coro_fn: CoroFn) -> None:
        try:
            await coro_fn()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"[Scheduler] {name} failed: {e}", exc_info=True)

    def __repr__(self) -> str:
        return f"Scheduler(timers={sorted(self._tasks)})"
