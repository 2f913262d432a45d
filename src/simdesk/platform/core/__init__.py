"""Shared primitives: clock and in-process scheduling."""

from simdesk.platform.core.clock import Clock, SystemClock, ensure_utc
from simdesk.platform.core.scheduler import PeriodicTask, TaskScheduler

__all__ = ["Clock", "SystemClock", "ensure_utc", "PeriodicTask", "TaskScheduler"]
