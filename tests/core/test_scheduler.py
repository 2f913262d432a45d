"""
Tests for the in-process periodic task scheduler.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from simdesk.platform.core.scheduler import PeriodicTask, TaskScheduler


class TestPeriodicTask:
    """Test single runs of a periodic task."""

    @pytest.mark.asyncio
    async def test_successful_run(self, clock):
        """A successful run is counted and timestamped."""
        func = AsyncMock()
        task = PeriodicTask(name="scores", interval=60, func=func, clock=clock)

        assert await task.run_once() is True

        func.assert_awaited_once()
        assert task.stats.runs == 1
        assert task.stats.last_started_at == clock.now()
        assert task.stats.last_error is None

    @pytest.mark.asyncio
    async def test_failure_is_contained(self, clock):
        """A raising run is recorded and does not propagate."""
        task = PeriodicTask(
            name="sweep", interval=60, func=AsyncMock(side_effect=RuntimeError("db down")), clock=clock
        )

        assert await task.run_once() is False
        assert task.stats.failures == 1
        assert task.stats.last_error == "db down"
        assert task.is_running is False

    @pytest.mark.asyncio
    async def test_timeout(self, clock):
        """A run exceeding its timeout is cancelled."""

        async def slow():
            await asyncio.sleep(5)

        task = PeriodicTask(name="safety-net", interval=60, func=slow, timeout=0.01, clock=clock)

        assert await task.run_once() is False
        assert task.stats.timeouts == 1
        assert "timed out" in task.stats.last_error

    @pytest.mark.asyncio
    async def test_overlapping_tick_skipped(self, clock):
        """A tick that arrives while the previous run is in flight is skipped."""
        release = asyncio.Event()

        async def blocking():
            await release.wait()

        task = PeriodicTask(name="sweep", interval=60, func=blocking, clock=clock)
        first = asyncio.create_task(task.run_once())
        await asyncio.sleep(0)

        assert await task.run_once() is False
        assert task.stats.skipped == 1

        release.set()
        assert await first is True
        assert task.stats.runs == 1


class TestTaskScheduler:
    """Test the scheduler lifecycle."""

    def test_duplicate_names_rejected(self, clock):
        """Task names are unique."""
        scheduler = TaskScheduler(clock=clock)
        scheduler.add("scores", 60, AsyncMock())

        with pytest.raises(ValueError, match="already registered"):
            scheduler.add("scores", 30, AsyncMock())

    @pytest.mark.asyncio
    async def test_start_and_stop(self, clock):
        """Started tasks run and are cancelled on stop."""
        ran = asyncio.Event()

        async def mark():
            ran.set()

        scheduler = TaskScheduler(clock=clock)
        scheduler.add("scores", 3600, mark, run_immediately=True)
        scheduler.start()

        await asyncio.wait_for(ran.wait(), timeout=1)
        assert scheduler.is_running

        await scheduler.stop()
        assert not scheduler.is_running
        assert scheduler.get("scores").stats.runs == 1

    @pytest.mark.asyncio
    async def test_add_while_running(self, clock):
        """Tasks added after start are spawned straight away."""
        ran = asyncio.Event()

        async def mark():
            ran.set()

        scheduler = TaskScheduler(clock=clock)
        scheduler.add("first", 3600, AsyncMock())
        scheduler.start()
        scheduler.add("late", 3600, mark, run_immediately=True)

        await asyncio.wait_for(ran.wait(), timeout=1)
        await scheduler.stop()

        assert [t.name for t in scheduler.tasks] == ["first", "late"]
        assert scheduler.get("missing") is None
