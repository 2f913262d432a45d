"""
In-process periodic task scheduler.

Drives the timer-based loops whose state lives in process memory (webhook
health scoring, recovery sweeps, safety-net checks). Database-only batch jobs
run on Celery beat instead, see ``simdesk.platform.celery_app``.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime

import structlog

from simdesk.platform.core.clock import Clock, SystemClock

logger = structlog.get_logger(__name__)

TaskFunc = Callable[[], Awaitable[object]]


@dataclass
class TaskStats:
    """Run counters for one periodic task."""

    runs: int = 0
    failures: int = 0
    timeouts: int = 0
    skipped: int = 0
    last_started_at: datetime | None = None
    last_finished_at: datetime | None = None
    last_error: str | None = None


@dataclass
class PeriodicTask:
    """
    A coroutine function invoked every ``interval`` seconds.

    A run that exceeds ``timeout`` is cancelled and counted; the loop keeps
    going and the next tick starts a fresh run. A tick that arrives while the
    previous run is still in flight is skipped.
    """

    name: str
    interval: float
    func: TaskFunc
    timeout: float | None = None
    run_immediately: bool = False
    clock: Clock = field(default_factory=SystemClock)
    stats: TaskStats = field(default_factory=TaskStats)
    _running: bool = field(default=False, init=False, repr=False)

    @property
    def is_running(self) -> bool:
        return self._running

    async def run_once(self) -> bool:
        """Execute one run. Returns False when the run failed, timed out or was skipped."""
        if self._running:
            self.stats.skipped += 1
            logger.debug("Periodic task still running, skipping tick", task=self.name)
            return False

        self._running = True
        self.stats.runs += 1
        self.stats.last_started_at = self.clock.now()
        try:
            if self.timeout is not None:
                await asyncio.wait_for(self.func(), timeout=self.timeout)
            else:
                await self.func()
            return True
        except TimeoutError:
            self.stats.timeouts += 1
            self.stats.last_error = f"timed out after {self.timeout}s"
            logger.warning("Periodic task timed out", task=self.name, timeout=self.timeout)
            return False
        except Exception as e:
            self.stats.failures += 1
            self.stats.last_error = str(e)
            logger.error("Periodic task failed", task=self.name, error=str(e), exc_info=True)
            return False
        finally:
            self._running = False
            self.stats.last_finished_at = self.clock.now()

    async def run_forever(self) -> None:
        if self.run_immediately:
            await self.run_once()
        while True:
            await asyncio.sleep(self.interval)
            await self.run_once()


class TaskScheduler:
    """Owns the asyncio tasks backing a set of ``PeriodicTask``s."""

    def __init__(self, clock: Clock | None = None) -> None:
        self.clock = clock or SystemClock()
        self._tasks: dict[str, PeriodicTask] = {}
        self._handles: dict[str, asyncio.Task[None]] = {}

    def add(
        self,
        name: str,
        interval: float,
        func: TaskFunc,
        *,
        timeout: float | None = None,
        run_immediately: bool = False,
    ) -> PeriodicTask:
        if name in self._tasks:
            raise ValueError(f"Periodic task {name} already registered")
        task = PeriodicTask(
            name=name,
            interval=interval,
            func=func,
            timeout=timeout,
            run_immediately=run_immediately,
            clock=self.clock,
        )
        self._tasks[name] = task
        if self.is_running:
            self._spawn(task)
        return task

    def get(self, name: str) -> PeriodicTask | None:
        return self._tasks.get(name)

    @property
    def tasks(self) -> list[PeriodicTask]:
        return list(self._tasks.values())

    @property
    def is_running(self) -> bool:
        return bool(self._handles)

    def _spawn(self, task: PeriodicTask) -> None:
        self._handles[task.name] = asyncio.create_task(task.run_forever(), name=task.name)

    def start(self) -> None:
        """Start every registered task on the running event loop."""
        for task in self._tasks.values():
            if task.name not in self._handles:
                self._spawn(task)
        logger.info("Task scheduler started", tasks=sorted(self._tasks))

    async def stop(self) -> None:
        handles = list(self._handles.values())
        self._handles.clear()
        for handle in handles:
            handle.cancel()
        await asyncio.gather(*handles, return_exceptions=True)
        logger.info("Task scheduler stopped", tasks=len(handles))


__all__ = ["PeriodicTask", "TaskScheduler", "TaskStats"]
