"""
Webhook reliability coordination.

Turns the monitor's periodic health verdicts into per-endpoint failure
patterns and decides when a scoped recovery reconciliation is worth running.

Per endpoint the state machine is::

    healthy --(consecutive failures >= threshold)--> recovering
    recovering --(healthy verdict)--> healthy

Recovery is rate limited: at most ``max_recovery_attempts`` dispatches per
failure streak, and the hourly sweep only retries endpoints whose last
failure and last attempt are both older than the cooldown.

Failure patterns live in process memory only; a restart starts every
endpoint from healthy.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

import structlog

from simdesk.platform.core.clock import Clock, SystemClock
from simdesk.platform.webhooks.monitor import HealthChangeEvent

logger = structlog.get_logger(__name__)

RecoveryHandler = Callable[[], Awaitable[object]]


@dataclass
class FailurePattern:
    """Transient failure history of one webhook endpoint."""

    endpoint: str
    consecutive_failures: int = 0
    first_failure_at: datetime | None = None
    last_failure_at: datetime | None = None
    recovery_attempts: int = 0
    last_recovery_at: datetime | None = None
    in_recovery: bool = False
    exhausted: bool = False

    @property
    def is_failing(self) -> bool:
        return self.consecutive_failures > 0 or self.in_recovery

    def to_dict(self) -> dict[str, Any]:
        return {
            "endpoint": self.endpoint,
            "consecutive_failures": self.consecutive_failures,
            "first_failure_at": self.first_failure_at.isoformat() if self.first_failure_at else None,
            "last_failure_at": self.last_failure_at.isoformat() if self.last_failure_at else None,
            "recovery_attempts": self.recovery_attempts,
            "in_recovery": self.in_recovery,
            "exhausted": self.exhausted,
        }


class WebhookReliabilityCoordinator:
    """Aggregates webhook health into failure patterns and dispatches recovery."""

    def __init__(
        self,
        clock: Clock | None = None,
        max_consecutive_failures: int = 3,
        max_recovery_attempts: int = 5,
        recovery_cooldown: timedelta = timedelta(minutes=30),
        recovery_timeout: float = 300.0,
    ) -> None:
        self.clock = clock or SystemClock()
        self.max_consecutive_failures = max_consecutive_failures
        self.max_recovery_attempts = max_recovery_attempts
        self.recovery_cooldown = recovery_cooldown
        self.recovery_timeout = recovery_timeout
        self._patterns: dict[str, FailurePattern] = {}
        self._handlers: list[tuple[str, RecoveryHandler]] = []
        self._inflight: dict[str, asyncio.Task[bool]] = {}
        self._lock = asyncio.Lock()

    def register_recovery_handler(self, match: str, handler: RecoveryHandler) -> None:
        """Route recovery for every endpoint whose path contains ``match``."""
        self._handlers.append((match, handler))

    def _handler_for(self, endpoint: str) -> RecoveryHandler | None:
        for match, handler in self._handlers:
            if match in endpoint:
                return handler
        return None

    async def handle_health_event(self, event: HealthChangeEvent) -> None:
        """Monitor listener."""
        if not event.is_healthy:
            await self.record_failure(event.endpoint)
        elif event.endpoint in self._patterns:
            await self.record_recovery(event.endpoint)

    async def record_failure(self, endpoint: str) -> FailurePattern:
        now = self.clock.now()
        async with self._lock:
            pattern = self._patterns.setdefault(endpoint, FailurePattern(endpoint=endpoint))
            if pattern.consecutive_failures == 0:
                pattern.first_failure_at = now
            pattern.consecutive_failures += 1
            pattern.last_failure_at = now
            should_recover = (
                pattern.consecutive_failures >= self.max_consecutive_failures
                and not pattern.in_recovery
            )
            if should_recover:
                pattern.in_recovery = True

        logger.debug(
            "Webhook failure recorded",
            endpoint=endpoint,
            consecutive_failures=pattern.consecutive_failures,
        )
        if should_recover:
            logger.warning(
                "Webhook endpoint entering recovery mode",
                endpoint=endpoint,
                consecutive_failures=pattern.consecutive_failures,
            )
            self.dispatch_recovery(endpoint)
        return pattern

    async def record_recovery(self, endpoint: str) -> None:
        async with self._lock:
            pattern = self._patterns.get(endpoint)
            if pattern is None or not pattern.is_failing:
                return
            was_in_recovery = pattern.in_recovery
            pattern.consecutive_failures = 0
            pattern.first_failure_at = None
            pattern.recovery_attempts = 0
            pattern.in_recovery = False
            pattern.exhausted = False
        if was_in_recovery:
            logger.info("Webhook endpoint recovered", endpoint=endpoint)

    def dispatch_recovery(self, endpoint: str) -> asyncio.Task[bool] | None:
        """Start ``trigger_recovery`` in the background unless one is already running."""
        running = self._inflight.get(endpoint)
        if running is not None and not running.done():
            return None
        task = asyncio.create_task(self.trigger_recovery(endpoint), name=f"recovery:{endpoint}")
        self._inflight[endpoint] = task
        task.add_done_callback(lambda _t, key=endpoint: self._inflight.pop(key, None))
        return task

    async def trigger_recovery(self, endpoint: str) -> bool:
        """Run one scoped reconciliation for ``endpoint``. Returns True when it completed."""
        async with self._lock:
            pattern = self._patterns.setdefault(endpoint, FailurePattern(endpoint=endpoint))
            if pattern.recovery_attempts >= self.max_recovery_attempts:
                if not pattern.exhausted:
                    pattern.exhausted = True
                    logger.warning(
                        "Recovery attempts exhausted, endpoint left degraded",
                        endpoint=endpoint,
                        attempts=pattern.recovery_attempts,
                    )
                return False
            pattern.recovery_attempts += 1
            pattern.last_recovery_at = self.clock.now()
            attempt = pattern.recovery_attempts

        handler = self._handler_for(endpoint)
        if handler is None:
            logger.info("No recovery action for endpoint", endpoint=endpoint)
            return False

        logger.info("Triggering webhook recovery", endpoint=endpoint, attempt=attempt)
        try:
            result = await asyncio.wait_for(handler(), timeout=self.recovery_timeout)
        except TimeoutError:
            logger.error(
                "Webhook recovery timed out",
                endpoint=endpoint,
                attempt=attempt,
                timeout=self.recovery_timeout,
            )
            return False
        except Exception as e:
            logger.error("Webhook recovery failed", endpoint=endpoint, attempt=attempt, error=str(e))
            return False

        logger.info("Webhook recovery completed", endpoint=endpoint, attempt=attempt, result=str(result))
        return True

    async def sweep(self) -> list[str]:
        """Re-attempt recovery for endpoints still recovering after the cooldown."""
        now = self.clock.now()
        due = []
        async with self._lock:
            for pattern in self._patterns.values():
                if not pattern.in_recovery or pattern.exhausted:
                    continue
                if pattern.last_failure_at and now - pattern.last_failure_at < self.recovery_cooldown:
                    continue
                if pattern.last_recovery_at and now - pattern.last_recovery_at < self.recovery_cooldown:
                    continue
                due.append(pattern.endpoint)

        for endpoint in due:
            self.dispatch_recovery(endpoint)
        if due:
            logger.info("Recovery sweep dispatched", endpoints=due)
        return due

    async def wait_for_recoveries(self) -> None:
        """Await every recovery currently running."""
        tasks = list(self._inflight.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def cancel_recoveries(self) -> None:
        tasks = list(self._inflight.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    def get_pattern(self, endpoint: str) -> FailurePattern | None:
        return self._patterns.get(endpoint)

    def failure_patterns(self) -> list[FailurePattern]:
        return list(self._patterns.values())

    def discard_pattern(self, endpoint: str) -> bool:
        """Forget an endpoint that is healthy again. Failing endpoints are kept."""
        pattern = self._patterns.get(endpoint)
        if pattern is None or pattern.is_failing:
            return False
        del self._patterns[endpoint]
        return True

    def health_summary(self) -> dict[str, Any]:
        patterns = list(self._patterns.values())
        unhealthy = [p for p in patterns if p.is_failing]
        return {
            "total_endpoints": len(patterns),
            "unhealthy_count": len(unhealthy),
            "healthy_count": len(patterns) - len(unhealthy),
            "in_recovery_count": sum(1 for p in patterns if p.in_recovery),
            "exhausted_count": sum(1 for p in patterns if p.exhausted),
            "failure_patterns": [p.to_dict() for p in patterns],
        }


__all__ = ["FailurePattern", "WebhookReliabilityCoordinator"]
