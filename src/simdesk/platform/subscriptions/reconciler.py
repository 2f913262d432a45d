"""
Polling reconciliation of subscription state.

Fallback for lost provider webhooks: picks a small, targeted set of records
suspected stale, asks the provider for their current status one order at a
time, and writes back any transition. Every mode is capped so a sustained
webhook outage cannot turn into a flood of provider calls.
"""

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from simdesk.platform.core.clock import Clock, SystemClock, ensure_utc
from simdesk.platform.subscriptions.classifier import (
    CancellationClassifier,
    ProviderStatus,
    SubscriptionSignals,
    cancellation_classifier,
    map_provider_status,
    parse_metadata,
)
from simdesk.platform.subscriptions.models import (
    TERMINAL_STATUSES,
    DataPlan,
    Subscription,
    SubscriptionStatus,
)
from simdesk.platform.subscriptions.provider import EsimAccessClient, EsimProviderError

logger = structlog.get_logger(__name__)

# Which stored statuses may move to which
ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    SubscriptionStatus.WAITING_FOR_ACTIVATION.value: frozenset(
        {
            SubscriptionStatus.ACTIVATED.value,
            SubscriptionStatus.CANCELLED.value,
            SubscriptionStatus.EXPIRED.value,
            SubscriptionStatus.ERROR.value,
        }
    ),
    SubscriptionStatus.ACTIVATED.value: frozenset(
        {SubscriptionStatus.CANCELLED.value, SubscriptionStatus.EXPIRED.value}
    ),
    SubscriptionStatus.ERROR.value: frozenset(
        {
            SubscriptionStatus.ACTIVATED.value,
            SubscriptionStatus.CANCELLED.value,
            SubscriptionStatus.EXPIRED.value,
        }
    ),
}


def parse_provider_time(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return ensure_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    except ValueError:
        return None


def apply_provider_status(
    subscription: Subscription,
    provider: ProviderStatus,
    now: datetime,
    validity_days: int | None = None,
) -> bool:
    """
    Apply a provider record to a subscription row.

    Returns True when the stored status changed. The raw provider record is
    kept in metadata either way. ``credit_note_id`` is never touched here.
    """
    metadata = parse_metadata(subscription.metadata_json)
    metadata["rawData"] = dict(provider.raw)
    metadata["lastSyncedAt"] = now.isoformat()
    subscription.metadata_json = metadata
    if provider.iccid and not subscription.iccid:
        subscription.iccid = provider.iccid

    target = map_provider_status(provider)
    if target is None or target.value == subscription.status:
        return False
    if target.value not in ALLOWED_TRANSITIONS.get(subscription.status, frozenset()):
        logger.debug(
            "Ignoring provider status transition",
            subscription_id=subscription.id,
            current=subscription.status,
            provider_status=provider.esim_status,
        )
        return False

    subscription.status = target.value
    if target is SubscriptionStatus.ACTIVATED:
        activated_at = parse_provider_time(provider.activate_time) or now
        subscription.activation_date = activated_at
        if validity_days:
            subscription.expiry_date = activated_at + timedelta(days=validity_days)
    elif target is SubscriptionStatus.CANCELLED:
        subscription.is_cancelled = True
        if subscription.cancelled_at is None:
            subscription.cancelled_at = now
    elif target is SubscriptionStatus.EXPIRED and subscription.expiry_date is None:
        subscription.expiry_date = now
    return True


@dataclass
class ReconciliationResult:
    """Outcome of one reconciliation batch."""

    mode: str
    checked: int = 0
    updated: int = 0
    unchanged: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "mode": self.mode,
            "checked": self.checked,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "failed": self.failed,
        }


class EsimStatusReconciler:
    """Bounded, targeted status polling against the provider."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        provider: EsimAccessClient,
        clock: Clock | None = None,
        classifier: CancellationClassifier | None = None,
        max_concurrency: int = 3,
        orphan_batch_size: int = 10,
        recent_batch_size: int = 5,
        recent_window_hours: int = 24,
    ) -> None:
        self.session_factory = session_factory
        self.provider = provider
        self.clock = clock or SystemClock()
        self.classifier = classifier or cancellation_classifier
        self.orphan_batch_size = orphan_batch_size
        self.recent_batch_size = recent_batch_size
        self.recent_window_hours = recent_window_hours
        self._semaphore = asyncio.Semaphore(max(1, max_concurrency))

    async def _select_ids(self, stmt: Any) -> list[int]:
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def reconcile_orphaned(self, limit: int | None = None) -> ReconciliationResult:
        """Oldest subscriptions still waiting for activation; used by webhook recovery."""
        limit = limit or self.orphan_batch_size
        stmt = (
            select(Subscription.id)
            .where(
                Subscription.status == SubscriptionStatus.WAITING_FOR_ACTIVATION.value,
                Subscription.order_id.is_not(None),
            )
            .order_by(Subscription.created_at.asc(), Subscription.id.asc())
            .limit(limit)
        )
        ids = await self._select_ids(stmt)
        return await self._reconcile_batch("orphaned", ids)

    async def reconcile_recent(
        self, window_hours: int | None = None, limit: int | None = None
    ) -> ReconciliationResult:
        """Recently created records in a transitional state; used by safety-net checks."""
        window = timedelta(hours=window_hours or self.recent_window_hours)
        since = self.clock.now() - window
        stmt = (
            select(Subscription.id)
            .where(
                Subscription.status == SubscriptionStatus.WAITING_FOR_ACTIVATION.value,
                Subscription.order_id.is_not(None),
                Subscription.created_at >= since,
            )
            .order_by(Subscription.created_at.desc(), Subscription.id.desc())
            .limit(limit or self.recent_batch_size)
        )
        ids = await self._select_ids(stmt)
        return await self._reconcile_batch("recent", ids)

    async def reconcile_subscriptions(self, subscription_ids: Sequence[int]) -> ReconciliationResult:
        return await self._reconcile_batch("targeted", list(subscription_ids))

    async def _reconcile_batch(self, mode: str, ids: list[int]) -> ReconciliationResult:
        result = ReconciliationResult(mode=mode)
        if not ids:
            return result

        outcomes = await asyncio.gather(*(self._guarded(sub_id) for sub_id in ids))
        for sub_id, outcome in zip(ids, outcomes, strict=True):
            result.checked += 1
            if isinstance(outcome, str):
                result.failed += 1
                result.errors.append(f"{sub_id}: {outcome}")
            elif outcome:
                result.updated += 1
            else:
                result.unchanged += 1

        logger.info("Reconciliation batch finished", **result.to_dict())
        return result

    async def _guarded(self, subscription_id: int) -> bool | str:
        async with self._semaphore:
            try:
                return await self.reconcile_subscription(subscription_id)
            except EsimProviderError as e:
                logger.warning(
                    "Provider status query failed",
                    subscription_id=subscription_id,
                    status_code=e.status_code,
                    error=str(e),
                )
                return str(e)
            except SQLAlchemyError as e:
                logger.error(
                    "Failed to persist reconciled status",
                    subscription_id=subscription_id,
                    error=str(e),
                )
                return str(e)

    async def reconcile_subscription(self, subscription_id: int) -> bool:
        """
        Poll one subscription and write back a transition. Returns True when it changed.

        The row is classified first: cancellation evidence already on the row
        outranks any provider snapshot, so such rows are promoted without a
        provider call.
        """
        async with self.session_factory() as session:
            found = await self._load_with_validity(session, subscription_id)
            if found is None:
                return False
            subscription, validity_days = found
            if subscription.status in TERMINAL_STATUSES:
                return False
            if self._promote_if_cancelled(subscription, validity_days):
                await session.commit()
                return True
            if subscription.order_id is None:
                return False
            order_id = subscription.order_id
            observed_status = subscription.status

        # Provider call happens outside any open transaction
        provider_status = await self.provider.query_status(order_id)
        if provider_status is None:
            logger.debug("Order unknown to provider", subscription_id=subscription_id, order_id=order_id)
            return False

        async with self.session_factory() as session:
            found = await self._load_with_validity(session, subscription_id)
            if found is None:
                return False
            subscription, validity_days = found
            if subscription.status != observed_status:
                # A webhook got there first
                logger.debug(
                    "Subscription changed during reconciliation",
                    subscription_id=subscription_id,
                    status=subscription.status,
                )
                return False
            if self._promote_if_cancelled(subscription, validity_days):
                await session.commit()
                return True

            changed = apply_provider_status(subscription, provider_status, self.clock.now(), validity_days)
            await session.commit()

        if changed:
            logger.info(
                "Subscription status reconciled",
                subscription_id=subscription_id,
                order_id=order_id,
                previous=observed_status,
                status=subscription.status,
            )
        return changed

    @staticmethod
    async def _load_with_validity(
        session: AsyncSession, subscription_id: int
    ) -> tuple[Subscription, int | None] | None:
        row = await session.execute(
            select(Subscription, DataPlan.validity_days)
            .join(DataPlan, DataPlan.id == Subscription.plan_id)
            .where(Subscription.id == subscription_id)
        )
        found = row.first()
        if found is None:
            return None
        return found[0], found[1]

    def _promote_if_cancelled(self, subscription: Subscription, validity_days: int | None) -> bool:
        """Move a non-terminal row to cancelled when the classifier says it is."""
        signals = SubscriptionSignals.from_subscription(subscription, validity_days)
        classification = self.classifier.classify(signals)
        if not classification.is_cancelled:
            return False
        previous = subscription.status
        subscription.status = SubscriptionStatus.CANCELLED.value
        subscription.is_cancelled = True
        if subscription.cancelled_at is None:
            subscription.cancelled_at = _metadata_cancel_time(signals.metadata) or self.clock.now()
        logger.info(
            "Cancellation recorded from stored evidence",
            subscription_id=subscription.id,
            previous=previous,
            rule=classification.rule,
        )
        return True


def _metadata_cancel_time(metadata: dict[str, Any] | Any) -> datetime | None:
    for key in ("cancelledAt", "cancelled_at", "cancelRequestTime", "refundDate"):
        value = metadata.get(key)
        if isinstance(value, str):
            parsed = parse_provider_time(value)
            if parsed is not None:
                return parsed
    return None


__all__ = [
    "EsimStatusReconciler",
    "ReconciliationResult",
    "apply_provider_status",
    "parse_provider_time",
]
