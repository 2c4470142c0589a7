"""
test_scheduler.py - Tests for the named asyncio timers
"""

import asyncio
from datetime import datetime, timezone

import pytest

from core.scheduler import Scheduler, seconds_until_utc_midnight


def test_seconds_until_utc_midnight():
    assert seconds_until_utc_midnight(datetime(2026, 5, 1, 23, 59, 0)) == 60.0
    assert seconds_until_utc_midnight(datetime(2026, 5, 1, 0, 0, 0, tzinfo=timezone.utc)) == 86400.0


class TestScheduler:

    @pytest.mark.asyncio
    async def test_periodic_runs_and_cancel(self):
        scheduler = Scheduler()
        runs = []

        async def job():
            runs.append(1)

        scheduler.run_periodically('tick', 0.01, job)
        await asyncio.sleep(0.08)
        assert scheduler.is_scheduled('tick')
        assert scheduler.cancel('tick') is True
        count = len(runs)
        assert count >= 2
        await asyncio.sleep(0.03)
        assert len(runs) == count
        assert scheduler.cancel('tick') is False

    @pytest.mark.asyncio
    async def test_overlapping_runs_are_skipped(self):
        scheduler = Scheduler()
        release = asyncio.Event()
        started = []

        async def slow_job():
            started.append(1)
            await release.wait()

        scheduler.run_periodically('tick', 0.01, slow_job)
        await asyncio.sleep(0.08)
        assert len(started) == 1
        assert scheduler.skipped['tick'] >= 2
        release.set()
        scheduler.cancel_all()

    @pytest.mark.asyncio
    async def test_failures_do_not_stop_the_timer(self):
        scheduler = Scheduler()
        runs = []

        async def flaky():
            runs.append(1)
            raise RuntimeError("boom")

        scheduler.run_periodically('tick', 0.01, flaky)
        await asyncio.sleep(0.06)
        scheduler.cancel_all()
        assert len(runs) >= 2

    @pytest.mark.asyncio
    async def test_rescheduling_replaces_timer(self):
        scheduler = Scheduler()

        async def job():
            return None

        first = scheduler.run_daily_at_utc_midnight('daily', job)
        second = scheduler.run_daily_at_utc_midnight('daily', job)
        await asyncio.sleep(0.01)
        assert first.cancelled() or first.done()
        assert scheduler.is_scheduled('daily')
        scheduler.cancel_all()
        await asyncio.sleep(0.01)
        assert second.cancelled()
        assert not scheduler.is_scheduled('daily')

    @pytest.mark.asyncio
    async def test_run_now(self):
        scheduler = Scheduler()
        done = []

        async def job():
            done.append(1)

        await scheduler.run_now(job)
        assert done == [1]
