"""
Safety-net polling for unhealthy webhook endpoints.

A coarser guard on top of the reliability coordinator. When an endpoint has
been failing for longer than the activation threshold, a periodic check
starts polling the provider for recent records in a transitional state.
The net is only removed once the endpoint has been free of failures for the
whole deactivation window, so a single good delivery in the middle of an
outage does not switch it off.
"""

import asyncio
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

import structlog

from simdesk.platform.core.clock import Clock, SystemClock
from simdesk.platform.webhooks.reliability import FailurePattern, WebhookReliabilityCoordinator

logger = structlog.get_logger(__name__)

# A check returns the number of records it corrected
SafetyCheck = Callable[[str], Awaitable[int]]


@dataclass
class SafetyNetStatus:
    endpoint: str
    reason: str
    activated_at: datetime
    next_check_at: datetime
    checks_performed: int = 0
    failed_checks: int = 0
    records_updated: int = 0
    last_check_at: datetime | None = None
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "endpoint": self.endpoint,
            "reason": self.reason,
            "activated_at": self.activated_at.isoformat(),
            "next_check_at": self.next_check_at.isoformat(),
            "checks_performed": self.checks_performed,
            "failed_checks": self.failed_checks,
            "records_updated": self.records_updated,
            "last_check_at": self.last_check_at.isoformat() if self.last_check_at else None,
            "last_error": self.last_error,
        }


class SafetyNetActivator:
    """Activates and retires per-endpoint polling based on failure patterns."""

    def __init__(
        self,
        coordinator: WebhookReliabilityCoordinator,
        check: SafetyCheck,
        clock: Clock | None = None,
        activation_threshold: timedelta = timedelta(minutes=5),
        deactivation_threshold: timedelta = timedelta(hours=1),
        check_interval: timedelta = timedelta(minutes=15),
        check_timeout: float = 120.0,
    ) -> None:
        self.coordinator = coordinator
        self.check = check
        self.clock = clock or SystemClock()
        self.activation_threshold = activation_threshold
        self.deactivation_threshold = deactivation_threshold
        self.check_interval = check_interval
        self.check_timeout = check_timeout
        self._active: dict[str, SafetyNetStatus] = {}
        self._history: deque[dict[str, Any]] = deque(maxlen=50)
        self.last_evaluated_at: datetime | None = None

    def is_active(self, endpoint: str) -> bool:
        return endpoint in self._active

    @property
    def active_safety_nets(self) -> list[SafetyNetStatus]:
        return list(self._active.values())

    def _should_activate(self, pattern: FailurePattern, now: datetime) -> bool:
        if pattern.consecutive_failures == 0 or pattern.first_failure_at is None:
            return False
        return now - pattern.first_failure_at >= self.activation_threshold

    def _should_deactivate(self, pattern: FailurePattern | None, now: datetime) -> bool:
        if pattern is None:
            return True
        if pattern.consecutive_failures > 0:
            return False
        if pattern.last_failure_at is None:
            return True
        # Healthy without interruption since the last failure
        return now - pattern.last_failure_at >= self.deactivation_threshold

    def evaluate(self) -> dict[str, list[str]]:
        """Activate or deactivate safety nets. Returns the endpoints that changed."""
        now = self.clock.now()
        self.last_evaluated_at = now
        activated: list[str] = []
        deactivated: list[str] = []

        for pattern in self.coordinator.failure_patterns():
            if pattern.endpoint not in self._active and self._should_activate(pattern, now):
                self._active[pattern.endpoint] = SafetyNetStatus(
                    endpoint=pattern.endpoint,
                    reason=f"{pattern.consecutive_failures} consecutive failures since "
                    f"{pattern.first_failure_at.isoformat() if pattern.first_failure_at else 'unknown'}",
                    activated_at=now,
                    next_check_at=now,
                )
                activated.append(pattern.endpoint)
                logger.warning(
                    "Safety net activated",
                    endpoint=pattern.endpoint,
                    consecutive_failures=pattern.consecutive_failures,
                )

        for endpoint in list(self._active):
            pattern = self.coordinator.get_pattern(endpoint)
            if self._should_deactivate(pattern, now):
                status = self._active.pop(endpoint)
                self._history.append({**status.to_dict(), "deactivated_at": now.isoformat()})
                self.coordinator.discard_pattern(endpoint)
                deactivated.append(endpoint)
                logger.info(
                    "Safety net deactivated",
                    endpoint=endpoint,
                    checks_performed=status.checks_performed,
                    records_updated=status.records_updated,
                )

        return {"activated": activated, "deactivated": deactivated}

    async def _run_check(self, status: SafetyNetStatus, now: datetime) -> None:
        status.last_check_at = now
        status.next_check_at = now + self.check_interval
        status.checks_performed += 1
        try:
            updated = await asyncio.wait_for(self.check(status.endpoint), timeout=self.check_timeout)
        except TimeoutError:
            status.failed_checks += 1
            status.last_error = f"timed out after {self.check_timeout}s"
            logger.error("Safety check timed out", endpoint=status.endpoint, timeout=self.check_timeout)
            return
        except Exception as e:
            status.failed_checks += 1
            status.last_error = str(e)
            logger.error("Safety check failed", endpoint=status.endpoint, error=str(e))
            return

        status.records_updated += updated
        status.last_error = None
        logger.info(
            "Safety check completed",
            endpoint=status.endpoint,
            records_updated=updated,
            checks_performed=status.checks_performed,
        )

    async def run_due_checks(self) -> list[str]:
        now = self.clock.now()
        due = [status for status in self._active.values() if status.next_check_at <= now]
        await asyncio.gather(*(self._run_check(status, now) for status in due))
        return [status.endpoint for status in due]

    async def tick(self) -> None:
        """Scheduler entry point: evaluate, then run whichever checks are due."""
        self.evaluate()
        await self.run_due_checks()

    def detailed_status(self) -> dict[str, Any]:
        coordinator_summary = self.coordinator.health_summary()
        unhealthy = coordinator_summary["unhealthy_count"]
        if unhealthy == 0:
            overall = "healthy"
        elif self._active:
            overall = "protected"
        else:
            overall = "degraded"
        return {
            "overall_health": overall,
            "active_safety_nets": [status.to_dict() for status in self._active.values()],
            "recently_deactivated": list(self._history)[-10:],
            "last_evaluated_at": self.last_evaluated_at.isoformat() if self.last_evaluated_at else None,
            "coordinator": coordinator_summary,
        }


__all__ = ["SafetyNetActivator", "SafetyNetStatus"]
