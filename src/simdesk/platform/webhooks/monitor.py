"""
Webhook delivery health monitor.

Collects per-endpoint delivery metrics and periodically scores each endpoint.
Every scoring pass publishes one ``HealthChangeEvent`` per endpoint to the
subscribed listeners (the reliability coordinator among them).
"""

import asyncio
import uuid
from collections import Counter, deque
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

import structlog

from simdesk.platform.core.clock import Clock, SystemClock

logger = structlog.get_logger(__name__)

MAX_RECENT_EVENTS = 1000
MAX_RESPONSE_SAMPLES = 100

# Scoring thresholds
MIN_SUCCESS_RATE = 95.0
RECENT_FAILURE_WINDOW = timedelta(minutes=10)
RECENT_FAILURE_PENALTY = 30
SILENCE_WINDOW = timedelta(minutes=30)
SILENCE_PENALTY = 20
SLOW_RESPONSE_MS = 1000.0
SLOW_RESPONSE_PENALTY = 15
HEALTHY_SCORE_FLOOR = 70


@dataclass(frozen=True)
class WebhookEvent:
    """One processed webhook delivery."""

    id: str
    endpoint: str
    success: bool
    received_at: datetime
    status_code: int | None = None
    response_time_ms: float | None = None
    event_type: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class HealthChangeEvent:
    endpoint: str
    is_healthy: bool
    health_score: float
    success_rate: float | None
    observed_at: datetime


@dataclass
class EndpointMetrics:
    endpoint: str
    total_received: int = 0
    successful: int = 0
    failed: int = 0
    last_received_at: datetime | None = None
    last_success_at: datetime | None = None
    last_failure_at: datetime | None = None
    response_times_ms: deque[float] = field(default_factory=lambda: deque(maxlen=MAX_RESPONSE_SAMPLES))
    status_codes: Counter[int] = field(default_factory=Counter)
    event_types: Counter[str] = field(default_factory=Counter)
    is_healthy: bool = True
    health_score: float = 100.0

    @property
    def success_rate(self) -> float | None:
        if not self.total_received:
            return None
        return self.successful / self.total_received * 100

    @property
    def average_response_time_ms(self) -> float | None:
        if not self.response_times_ms:
            return None
        return sum(self.response_times_ms) / len(self.response_times_ms)

    def reset(self) -> None:
        self.total_received = self.successful = self.failed = 0
        self.last_received_at = self.last_success_at = self.last_failure_at = None
        self.response_times_ms.clear()
        self.status_codes.clear()
        self.event_types.clear()
        self.is_healthy = True
        self.health_score = 100.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "endpoint": self.endpoint,
            "total_received": self.total_received,
            "successful": self.successful,
            "failed": self.failed,
            "success_rate": self.success_rate,
            "average_response_time_ms": self.average_response_time_ms,
            "last_received_at": self.last_received_at.isoformat() if self.last_received_at else None,
            "last_failure_at": self.last_failure_at.isoformat() if self.last_failure_at else None,
            "status_codes": dict(self.status_codes),
            "event_types": dict(self.event_types),
            "is_healthy": self.is_healthy,
            "health_score": round(self.health_score, 2),
        }


HealthListener = Callable[[HealthChangeEvent], Awaitable[None]]


class WebhookHealthMonitor:
    """In-memory webhook metrics with periodic health scoring."""

    def __init__(
        self,
        clock: Clock | None = None,
        endpoints: Iterable[str] = (),
        silence_monitored: Iterable[str] = ("/api/esim/webhook",),
    ) -> None:
        self.clock = clock or SystemClock()
        self._metrics: dict[str, EndpointMetrics] = {}
        self._recent: deque[WebhookEvent] = deque(maxlen=MAX_RECENT_EVENTS)
        self._listeners: list[HealthListener] = []
        self._silence_monitored = frozenset(silence_monitored)
        for endpoint in endpoints:
            self.register_endpoint(endpoint)

    def register_endpoint(self, endpoint: str) -> EndpointMetrics:
        if endpoint not in self._metrics:
            self._metrics[endpoint] = EndpointMetrics(endpoint=endpoint)
        return self._metrics[endpoint]

    def subscribe(self, listener: HealthListener) -> None:
        self._listeners.append(listener)

    def unsubscribe(self, listener: HealthListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def record_event(
        self,
        endpoint: str,
        success: bool,
        *,
        status_code: int | None = None,
        response_time_ms: float | None = None,
        event_type: str | None = None,
        error: str | None = None,
    ) -> WebhookEvent:
        now = self.clock.now()
        event = WebhookEvent(
            id=uuid.uuid4().hex,
            endpoint=endpoint,
            success=success,
            received_at=now,
            status_code=status_code,
            response_time_ms=response_time_ms,
            event_type=event_type,
            error=error,
        )
        self._recent.appendleft(event)

        metrics = self.register_endpoint(endpoint)
        metrics.total_received += 1
        metrics.last_received_at = now
        if success:
            metrics.successful += 1
            metrics.last_success_at = now
        else:
            metrics.failed += 1
            metrics.last_failure_at = now
        if response_time_ms is not None:
            metrics.response_times_ms.append(response_time_ms)
        if status_code is not None:
            metrics.status_codes[status_code] += 1
        if event_type:
            metrics.event_types[event_type] += 1

        log = logger.debug if success else logger.warning
        log("Webhook delivery recorded", endpoint=endpoint, success=success, status_code=status_code)
        return event

    def score(self, metrics: EndpointMetrics, now: datetime) -> tuple[bool, float]:
        """Health verdict and score (0-100) for one endpoint."""
        score = 100.0
        healthy = True

        if (
            metrics.endpoint in self._silence_monitored
            and metrics.last_received_at is not None
            and now - metrics.last_received_at > SILENCE_WINDOW
        ):
            score -= SILENCE_PENALTY

        success_rate = metrics.success_rate
        if success_rate is not None and success_rate < MIN_SUCCESS_RATE:
            score -= (MIN_SUCCESS_RATE - success_rate) * 2
            healthy = False

        if metrics.last_failure_at is not None and now - metrics.last_failure_at < RECENT_FAILURE_WINDOW:
            score -= RECENT_FAILURE_PENALTY
            healthy = False

        average = metrics.average_response_time_ms
        if average is not None and average > SLOW_RESPONSE_MS:
            score -= SLOW_RESPONSE_PENALTY

        score = max(0.0, score)
        return healthy and score > HEALTHY_SCORE_FLOOR, score

    async def calculate_health_scores(self) -> list[HealthChangeEvent]:
        """Score every endpoint and publish the results to listeners."""
        now = self.clock.now()
        events = []
        for endpoint, metrics in list(self._metrics.items()):
            was_healthy = metrics.is_healthy
            metrics.is_healthy, metrics.health_score = self.score(metrics, now)
            if was_healthy != metrics.is_healthy:
                logger.info(
                    "Webhook endpoint health changed",
                    endpoint=endpoint,
                    is_healthy=metrics.is_healthy,
                    health_score=round(metrics.health_score, 2),
                )
            events.append(
                HealthChangeEvent(
                    endpoint=endpoint,
                    is_healthy=metrics.is_healthy,
                    health_score=metrics.health_score,
                    success_rate=metrics.success_rate,
                    observed_at=now,
                )
            )

        for event in events:
            await self._publish(event)
        return events

    async def _publish(self, event: HealthChangeEvent) -> None:
        results = await asyncio.gather(
            *(listener(event) for listener in self._listeners), return_exceptions=True
        )
        for result in results:
            if isinstance(result, Exception):
                logger.error(
                    "Health listener failed", endpoint=event.endpoint, error=str(result)
                )

    def get_metrics(self, endpoint: str | None = None) -> list[EndpointMetrics]:
        if endpoint is not None:
            metrics = self._metrics.get(endpoint)
            return [metrics] if metrics else []
        return list(self._metrics.values())

    def get_recent_events(self, limit: int = 50) -> list[WebhookEvent]:
        return list(self._recent)[:limit]

    def get_health_status(self) -> dict[str, Any]:
        unhealthy = [name for name, m in self._metrics.items() if not m.is_healthy]
        return {"is_healthy": not unhealthy, "unhealthy_endpoints": unhealthy}

    def reset_metrics(self, endpoint: str | None = None) -> None:
        if endpoint is None:
            for metrics in self._metrics.values():
                metrics.reset()
            self._recent.clear()
            logger.info("Webhook metrics reset")
            return
        metrics = self._metrics.get(endpoint)
        if metrics is not None:
            metrics.reset()
            logger.info("Webhook metrics reset", endpoint=endpoint)


__all__ = [
    "EndpointMetrics",
    "HealthChangeEvent",
    "HealthListener",
    "WebhookEvent",
    "WebhookHealthMonitor",
]
