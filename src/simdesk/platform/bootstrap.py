"""
Component wiring and startup ordering.

``build_platform`` constructs every component with its collaborators passed
in explicitly, in dependency order:

1. storage (engine, session factory)
2. exchange rates, email, credit notes
3. provider client and reconciler
4. health monitor, reliability coordinator, safety net
5. webhook handler and the in-process scheduler

Nothing here runs at import time; ``Platform.start`` starts the timers and
``Platform.stop`` tears them down in reverse.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

import httpx
import structlog
from fastapi import FastAPI
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from simdesk.platform.billing.credit_notes.notifications import EmailCreditNoteNotifier
from simdesk.platform.billing.credit_notes.service import CreditNoteGenerator
from simdesk.platform.billing.currency.service import ExchangeRateService
from simdesk.platform.billing.currency.source import HttpRateSource
from simdesk.platform.communications.email_service import EmailService
from simdesk.platform.core.clock import Clock, SystemClock
from simdesk.platform.core.scheduler import TaskScheduler
from simdesk.platform.db import create_engine_from_settings, create_session_factory
from simdesk.platform.logging import setup_logging
from simdesk.platform.settings import Settings, settings
from simdesk.platform.subscriptions.provider import EsimAccessClient
from simdesk.platform.subscriptions.reconciler import EsimStatusReconciler
from simdesk.platform.webhooks.handler import EsimWebhookHandler
from simdesk.platform.webhooks.monitor import WebhookHealthMonitor
from simdesk.platform.webhooks.reliability import WebhookReliabilityCoordinator
from simdesk.platform.webhooks.safety_net import SafetyNetActivator

logger = structlog.get_logger(__name__)


@dataclass
class Platform:
    """Every long-lived component of one process."""

    config: Settings
    clock: Clock
    session_factory: async_sessionmaker[AsyncSession]
    exchange_rates: ExchangeRateService
    email_service: EmailService
    credit_notes: CreditNoteGenerator
    provider: EsimAccessClient
    reconciler: EsimStatusReconciler
    monitor: WebhookHealthMonitor
    coordinator: WebhookReliabilityCoordinator
    safety_net: SafetyNetActivator
    webhook_handler: EsimWebhookHandler
    scheduler: TaskScheduler
    engine: AsyncEngine | None = None
    owns_engine: bool = False
    _started: bool = field(default=False, init=False, repr=False)

    def register_periodic_tasks(self) -> None:
        reliability = self.config.reliability
        safety = self.config.safety_net
        self.scheduler.add(
            "webhook-health-scoring",
            reliability.monitor_interval_seconds,
            self.monitor.calculate_health_scores,
            timeout=reliability.monitor_interval_seconds,
        )
        self.scheduler.add(
            "webhook-recovery-sweep",
            reliability.sweep_interval_seconds,
            self.coordinator.sweep,
            timeout=reliability.recovery_timeout_seconds,
        )
        self.scheduler.add(
            "safety-net",
            safety.evaluation_interval_seconds,
            self.safety_net.tick,
            timeout=safety.check_timeout_seconds + 30,
        )

    async def start(self) -> None:
        if self._started:
            return
        if not self.scheduler.tasks:
            self.register_periodic_tasks()
        await self.exchange_rates.refresh_rates()
        self.scheduler.start()
        self._started = True
        logger.info("Platform started", environment=self.config.environment.value)

    async def stop(self) -> None:
        """Stop timers, cancel in-flight recoveries and release connections."""
        await self.scheduler.stop()
        await self.coordinator.cancel_recoveries()
        await self.provider.close()
        if self.owns_engine and self.engine is not None:
            await self.engine.dispose()
        self._started = False
        logger.info("Platform stopped")

    def reliability_status(self) -> dict[str, Any]:
        status = self.safety_net.detailed_status()
        status["monitor"] = self.monitor.get_health_status()
        status["scheduler"] = {
            task.name: {
                "runs": task.stats.runs,
                "failures": task.stats.failures,
                "timeouts": task.stats.timeouts,
                "last_error": task.stats.last_error,
            }
            for task in self.scheduler.tasks
        }
        return status


def build_platform(
    config: Settings | None = None,
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    clock: Clock | None = None,
    provider_transport: httpx.AsyncBaseTransport | None = None,
    rate_source_transport: httpx.AsyncBaseTransport | None = None,
    email_service: EmailService | None = None,
) -> Platform:
    config = config or settings
    clock = clock or SystemClock()

    # 1. storage
    engine: AsyncEngine | None = None
    if session_factory is None:
        engine = create_engine_from_settings(config)
        session_factory = create_session_factory(engine)

    # 2. billing
    billing = config.billing
    rate_source = None
    if billing.exchange_rate_source_url:
        rate_source = HttpRateSource(
            billing.exchange_rate_source_url,
            timeout=billing.exchange_rate_timeout_seconds,
            transport=rate_source_transport,
        )
    exchange_rates = ExchangeRateService(session_factory, clock=clock, config=config, source=rate_source)
    email_service = email_service or EmailService.from_settings(config)
    credit_notes = CreditNoteGenerator(
        session_factory,
        exchange_rates,
        notifier=EmailCreditNoteNotifier(email_service),
        clock=clock,
        config=config,
        notification_timeout=config.email.timeout * 2,
    )

    # 3. provider polling
    safety = config.safety_net
    reliability = config.reliability
    provider = EsimAccessClient.from_settings(config, clock=clock, transport=provider_transport)
    reconciler = EsimStatusReconciler(
        session_factory,
        provider,
        clock=clock,
        max_concurrency=safety.max_concurrency,
        orphan_batch_size=reliability.orphan_batch_size,
        recent_batch_size=safety.check_batch_size,
        recent_window_hours=safety.recent_window_hours,
    )

    # 4. webhook reliability
    monitor = WebhookHealthMonitor(clock=clock, endpoints=reliability.monitored_endpoints)
    coordinator = WebhookReliabilityCoordinator(
        clock=clock,
        max_consecutive_failures=reliability.max_consecutive_failures,
        max_recovery_attempts=reliability.max_recovery_attempts,
        recovery_cooldown=timedelta(seconds=reliability.recovery_cooldown_seconds),
        recovery_timeout=reliability.recovery_timeout_seconds,
    )
    coordinator.register_recovery_handler(
        "esim", lambda: reconciler.reconcile_orphaned(reliability.orphan_batch_size)
    )
    monitor.subscribe(coordinator.handle_health_event)

    async def safety_check(endpoint: str) -> int:
        result = await reconciler.reconcile_recent()
        return result.updated

    safety_net = SafetyNetActivator(
        coordinator,
        safety_check,
        clock=clock,
        activation_threshold=timedelta(seconds=safety.activation_threshold_seconds),
        deactivation_threshold=timedelta(seconds=safety.deactivation_threshold_seconds),
        check_interval=timedelta(seconds=safety.check_interval_seconds),
        check_timeout=safety.check_timeout_seconds,
    )

    # 5. ingestion and timers
    webhook_handler = EsimWebhookHandler(session_factory, monitor, clock=clock)
    scheduler = TaskScheduler(clock=clock)

    return Platform(
        config=config,
        clock=clock,
        session_factory=session_factory,
        exchange_rates=exchange_rates,
        email_service=email_service,
        credit_notes=credit_notes,
        provider=provider,
        reconciler=reconciler,
        monitor=monitor,
        coordinator=coordinator,
        safety_net=safety_net,
        webhook_handler=webhook_handler,
        scheduler=scheduler,
        engine=engine,
        owns_engine=engine is not None,
    )


def create_app(platform: Platform | None = None, config: Settings | None = None) -> FastAPI:
    """FastAPI application serving webhook intake and reliability status."""
    from simdesk.platform.webhooks.router import router as webhooks_router

    config = config or (platform.config if platform else settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        setup_logging(config)
        current = platform or build_platform(config)
        app.state.platform = current
        await current.start()
        try:
            yield
        finally:
            await current.stop()

    app = FastAPI(title=config.app_name, version=config.app_version, lifespan=lifespan)
    app.include_router(webhooks_router)
    return app


__all__ = ["Platform", "build_platform", "create_app"]
