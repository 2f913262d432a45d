"""
Provider webhook ingestion.

Applies a provider notification to the matching subscription using the same
status mapping as the polling reconciler, and records the delivery outcome
on the health monitor.
"""

import time
from dataclasses import dataclass
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from simdesk.platform.core.clock import Clock, SystemClock
from simdesk.platform.subscriptions.classifier import ProviderStatus
from simdesk.platform.subscriptions.models import DataPlan, Subscription
from simdesk.platform.subscriptions.reconciler import apply_provider_status
from simdesk.platform.webhooks.monitor import WebhookHealthMonitor

logger = structlog.get_logger(__name__)

HEALTH_CHECK_NOTIFY_TYPE = "CHECK_HEALTH"


class WebhookError(Exception):
    """Rejected webhook delivery."""

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class EsimWebhookContent(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    order_no: str | None = Field(None, alias="orderNo")
    iccid: str | None = None
    esim_status: str | None = Field(None, alias="esimStatus")
    smdp_status: str | None = Field(None, alias="smdpStatus")
    event_type: str | None = Field(None, alias="eventType")
    order_usage: int | None = Field(None, alias="orderUsage")
    total_volume: int | None = Field(None, alias="totalVolume")
    activate_time: str | None = Field(None, alias="activateTime")


class EsimWebhookPayload(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    notify_type: str | None = Field(None, alias="notifyType")
    content: EsimWebhookContent | None = None


@dataclass
class WebhookResult:
    order_no: str | None
    subscription_id: int | None = None
    status: str | None = None
    changed: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": True,
            "order_no": self.order_no,
            "subscription_id": self.subscription_id,
            "status": self.status,
            "changed": self.changed,
        }


class EsimWebhookHandler:
    """Processes provider eSIM notifications."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        monitor: WebhookHealthMonitor,
        clock: Clock | None = None,
        endpoint: str = "/api/esim/webhook",
    ) -> None:
        self.session_factory = session_factory
        self.monitor = monitor
        self.clock = clock or SystemClock()
        self.endpoint = endpoint

    async def handle(self, raw_payload: dict[str, Any], endpoint: str | None = None) -> WebhookResult:
        endpoint = endpoint or self.endpoint
        started = time.perf_counter()
        notify_type = raw_payload.get("notifyType") if isinstance(raw_payload, dict) else None
        try:
            result = await self._process(raw_payload)
        except WebhookError as e:
            self._record(endpoint, False, started, e.status_code, notify_type, e.message)
            raise
        except SQLAlchemyError as e:
            logger.error("Failed to store webhook update", endpoint=endpoint, error=str(e))
            self._record(endpoint, False, started, 500, notify_type, str(e))
            raise
        except Exception as e:
            logger.exception("Unexpected error processing webhook", endpoint=endpoint)
            self._record(endpoint, False, started, 500, notify_type, str(e))
            raise
        self._record(endpoint, True, started, 200, notify_type, None)
        return result

    def _record(
        self,
        endpoint: str,
        success: bool,
        started: float,
        status_code: int,
        event_type: str | None,
        error: str | None,
    ) -> None:
        self.monitor.record_event(
            endpoint,
            success,
            status_code=status_code,
            response_time_ms=(time.perf_counter() - started) * 1000,
            event_type=event_type,
            error=error,
        )

    async def _process(self, raw_payload: dict[str, Any]) -> WebhookResult:
        try:
            payload = EsimWebhookPayload.model_validate(raw_payload)
        except ValidationError as e:
            raise WebhookError(f"Malformed webhook payload: {e.error_count()} errors") from e

        if payload.notify_type == HEALTH_CHECK_NOTIFY_TYPE:
            return WebhookResult(order_no=None)

        content = payload.content
        if content is None or not content.order_no:
            raise WebhookError("Missing orderNo in webhook content")

        provider_status = ProviderStatus.from_payload(content.model_dump(by_alias=True))

        async with self.session_factory() as session:
            row = await session.execute(
                select(Subscription, DataPlan.validity_days)
                .join(DataPlan, DataPlan.id == Subscription.plan_id)
                .where(Subscription.order_id == content.order_no)
            )
            found = row.first()
            if found is None:
                raise WebhookError(f"Unknown order {content.order_no}", status_code=404)
            subscription, validity_days = found
            previous = subscription.status
            changed = apply_provider_status(
                subscription, provider_status, self.clock.now(), validity_days
            )
            await session.commit()

        logger.info(
            "eSIM webhook processed",
            order_no=content.order_no,
            subscription_id=subscription.id,
            notify_type=payload.notify_type,
            previous=previous,
            status=subscription.status,
        )
        return WebhookResult(
            order_no=content.order_no,
            subscription_id=subscription.id,
            status=subscription.status,
            changed=changed,
        )


__all__ = ["EsimWebhookHandler", "EsimWebhookPayload", "WebhookError", "WebhookResult"]
