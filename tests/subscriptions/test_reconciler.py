"""
Tests for the polling status reconciler.
"""

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, Mock

import pytest
import pytest_asyncio

from simdesk.platform.core.clock import ensure_utc
from simdesk.platform.subscriptions.classifier import ProviderStatus
from simdesk.platform.subscriptions.models import Subscription, SubscriptionStatus
from simdesk.platform.subscriptions.provider import EsimProviderError
from simdesk.platform.subscriptions.reconciler import (
    EsimStatusReconciler,
    apply_provider_status,
    parse_provider_time,
)


def _provider(*statuses) -> Mock:
    provider = Mock()
    provider.query_status = AsyncMock(side_effect=list(statuses))
    return provider


async def _load(session_factory, subscription_id: int) -> Subscription:
    async with session_factory() as session:
        return await session.get(Subscription, subscription_id)


@pytest_asyncio.fixture
async def owner(factory):
    company = await factory.company()
    employee = await factory.employee(company)
    plan = await factory.plan(validity_days=30)
    return employee, plan


class TestApplyProviderStatus:
    """Test writing a provider record onto a subscription row."""

    def _subscription(self, status="waiting_for_activation") -> Subscription:
        return Subscription(id=1, employee_id=1, plan_id=1, status=status, metadata_json=None)

    def test_activation_sets_dates(self):
        """Activation stamps the activation and expiry dates from the plan validity."""
        subscription = self._subscription()
        now = datetime(2026, 3, 10, 12, 0, tzinfo=UTC)
        provider = ProviderStatus.from_payload(
            {"esimStatus": "IN_USE", "activateTime": "2026-03-10T08:00:00Z", "iccid": "8997"}
        )

        changed = apply_provider_status(subscription, provider, now, validity_days=30)

        assert changed is True
        assert subscription.status == "activated"
        assert subscription.activation_date == datetime(2026, 3, 10, 8, 0, tzinfo=UTC)
        assert subscription.expiry_date == datetime(2026, 4, 9, 8, 0, tzinfo=UTC)
        assert subscription.iccid == "8997"
        assert subscription.metadata_json["rawData"]["esimStatus"] == "IN_USE"

    def test_terminal_status_not_reverted(self):
        """A cancelled record is never moved back to activated."""
        subscription = self._subscription(status="cancelled")
        provider = ProviderStatus.from_payload({"esimStatus": "ONBOARD"})

        changed = apply_provider_status(subscription, provider, datetime.now(UTC))

        assert changed is False
        assert subscription.status == "cancelled"

    def test_cancellation_marks_flag(self):
        """Cancellation sets the flag and timestamp but never a credit reference."""
        subscription = self._subscription(status="activated")
        now = datetime(2026, 3, 10, 12, 0, tzinfo=UTC)

        apply_provider_status(subscription, ProviderStatus.from_payload({"esimStatus": "CANCEL"}), now)

        assert subscription.is_cancelled is True
        assert subscription.cancelled_at == now
        assert subscription.credit_note_id is None

    def test_metadata_json_string_preserved(self):
        """Legacy string metadata is merged, not discarded."""
        subscription = self._subscription()
        subscription.metadata_json = '{"source": "portal"}'

        apply_provider_status(subscription, ProviderStatus.from_payload({}), datetime.now(UTC))

        assert subscription.metadata_json["source"] == "portal"
        assert "lastSyncedAt" in subscription.metadata_json

    def test_parse_provider_time(self):
        """ISO timestamps with a Z suffix parse as UTC; junk is ignored."""
        assert parse_provider_time("2026-03-10T08:00:00Z") == datetime(2026, 3, 10, 8, 0, tzinfo=UTC)
        assert parse_provider_time("yesterday") is None
        assert parse_provider_time(None) is None


class TestOrphanedReconciliation:
    """Test the recovery sweep over records waiting for activation."""

    @pytest.mark.asyncio
    async def test_activates_waiting_subscription(self, session_factory, clock, factory, owner):
        """A waiting record the provider reports in use becomes activated."""
        employee, plan = owner
        subscription = await factory.subscription(employee, plan)
        provider = _provider(
            ProviderStatus.from_payload({"esimStatus": "ONBOARD", "activateTime": "2026-03-10T09:00:00Z"})
        )
        reconciler = EsimStatusReconciler(session_factory, provider, clock=clock)

        result = await reconciler.reconcile_orphaned()

        assert result.checked == 1
        assert result.updated == 1
        stored = await _load(session_factory, subscription.id)
        assert stored.status == "activated"
        assert ensure_utc(stored.expiry_date) == datetime(2026, 4, 9, 9, 0, tzinfo=UTC)
        provider.query_status.assert_awaited_once_with(subscription.order_id)

    @pytest.mark.asyncio
    async def test_oldest_first_and_capped(self, session_factory, clock, factory, owner):
        """Only the oldest records up to the limit are queried."""
        employee, plan = owner
        base = clock.now() - timedelta(hours=10)
        subs = [
            await factory.subscription(employee, plan, created_at=base + timedelta(hours=i))
            for i in range(4)
        ]
        provider = Mock()
        provider.query_status = AsyncMock(return_value=None)
        reconciler = EsimStatusReconciler(session_factory, provider, clock=clock)

        result = await reconciler.reconcile_orphaned(limit=2)

        assert result.checked == 2
        assert result.unchanged == 2
        queried = {call.args[0] for call in provider.query_status.await_args_list}
        assert queried == {subs[0].order_id, subs[1].order_id}

    @pytest.mark.asyncio
    async def test_skips_records_without_order(self, session_factory, clock, factory, owner):
        """Records never submitted to the provider cannot be polled."""
        employee, plan = owner
        await factory.subscription(employee, plan, order_id=None)
        provider = _provider()
        reconciler = EsimStatusReconciler(session_factory, provider, clock=clock)

        result = await reconciler.reconcile_orphaned()

        assert result.checked == 0
        provider.query_status.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_provider_error_isolated(self, session_factory, clock, factory, owner):
        """One failing query does not stop the rest of the batch."""
        employee, plan = owner
        first = await factory.subscription(employee, plan, created_at=clock.now() - timedelta(hours=2))
        second = await factory.subscription(employee, plan, created_at=clock.now() - timedelta(hours=1))
        statuses = {
            first.order_id: EsimProviderError("upstream down", status_code=502),
            second.order_id: ProviderStatus.from_payload({"esimStatus": "CANCEL"}),
        }

        async def query_status(order_id):
            outcome = statuses[order_id]
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

        provider = Mock()
        provider.query_status = AsyncMock(side_effect=query_status)
        reconciler = EsimStatusReconciler(session_factory, provider, clock=clock, max_concurrency=1)

        result = await reconciler.reconcile_orphaned()

        assert result.failed == 1
        assert result.updated == 1
        assert "upstream down" in result.errors[0]
        assert (await _load(session_factory, second.id)).status == "cancelled"
        assert (await _load(session_factory, first.id)).status == "waiting_for_activation"


class TestRecentReconciliation:
    """Test the safety-net sweep over recently created records."""

    @pytest.mark.asyncio
    async def test_window_and_limit(self, session_factory, clock, factory, owner):
        """Records older than the window are left alone."""
        employee, plan = owner
        old = await factory.subscription(employee, plan, created_at=clock.now() - timedelta(hours=30))
        recent = await factory.subscription(employee, plan, created_at=clock.now() - timedelta(hours=1))
        provider = Mock()
        provider.query_status = AsyncMock(return_value=None)
        reconciler = EsimStatusReconciler(session_factory, provider, clock=clock, recent_window_hours=24)

        result = await reconciler.reconcile_recent()

        assert result.checked == 1
        provider.query_status.assert_awaited_once_with(recent.order_id)
        assert old.order_id not in [c.args[0] for c in provider.query_status.await_args_list]

    @pytest.mark.asyncio
    async def test_limit_applies(self, session_factory, clock, factory, owner):
        """At most the batch size is checked per run."""
        employee, plan = owner
        for i in range(7):
            await factory.subscription(employee, plan, created_at=clock.now() - timedelta(minutes=i + 1))
        provider = Mock()
        provider.query_status = AsyncMock(return_value=None)
        reconciler = EsimStatusReconciler(session_factory, provider, clock=clock, recent_batch_size=5)

        result = await reconciler.reconcile_recent()

        assert result.checked == 5


class TestConcurrentUpdates:
    """Test interaction with webhooks arriving during a poll."""

    @pytest.mark.asyncio
    async def test_webhook_wins_race(self, session_factory, clock, factory, owner):
        """A status written while the provider call was in flight is not overwritten."""
        employee, plan = owner
        subscription = await factory.subscription(employee, plan)

        async def query_status(order_id):
            async with session_factory() as session:
                row = await session.get(Subscription, subscription.id)
                row.status = SubscriptionStatus.CANCELLED.value
                await session.commit()
            return ProviderStatus.from_payload({"esimStatus": "ONBOARD"})

        provider = Mock()
        provider.query_status = AsyncMock(side_effect=query_status)
        reconciler = EsimStatusReconciler(session_factory, provider, clock=clock)

        changed = await reconciler.reconcile_subscription(subscription.id)

        assert changed is False
        assert (await _load(session_factory, subscription.id)).status == "cancelled"

    @pytest.mark.asyncio
    async def test_terminal_records_not_polled(self, session_factory, clock, factory, owner):
        """Cancelled and expired records are never queried."""
        employee, plan = owner
        subscription = await factory.cancelled_subscription(employee, plan)
        provider = _provider()
        reconciler = EsimStatusReconciler(session_factory, provider, clock=clock)

        assert await reconciler.reconcile_subscription(subscription.id) is False
        provider.query_status.assert_not_awaited()


class TestStoredCancellationEvidence:
    """Test that cancellation evidence on the row outranks the provider."""

    @pytest.mark.asyncio
    async def test_refunded_waiting_record_not_activated(self, session_factory, clock, factory, owner):
        """A refunded record is cancelled even when the provider reports it onboard."""
        employee, plan = owner
        subscription = await factory.subscription(
            employee, plan, metadata_json={"refunded": True, "isCancelled": True}
        )
        provider = _provider(ProviderStatus.from_payload({"esimStatus": "ONBOARD"}))
        reconciler = EsimStatusReconciler(session_factory, provider, clock=clock)

        result = await reconciler.reconcile_orphaned()

        assert result.updated == 1
        stored = await _load(session_factory, subscription.id)
        assert stored.status == "cancelled"
        assert stored.is_cancelled is True
        assert ensure_utc(stored.cancelled_at) == clock.now()
        assert stored.credit_note_id is None
        provider.query_status.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_cancel_time_taken_from_metadata(self, session_factory, clock, factory, owner):
        """A recorded cancellation time becomes the cancellation timestamp."""
        employee, plan = owner
        flagged = await factory.subscription(
            employee,
            plan,
            status="activated",
            metadata_json={"cancelledAt": "2026-03-09T15:30:00Z"},
        )
        untouched = await factory.subscription(employee, plan, status="activated")
        provider = _provider(None)
        reconciler = EsimStatusReconciler(session_factory, provider, clock=clock)

        result = await reconciler.reconcile_subscriptions([flagged.id, untouched.id])

        assert result.updated == 1
        assert result.unchanged == 1
        stored = await _load(session_factory, flagged.id)
        assert stored.status == "cancelled"
        assert ensure_utc(stored.cancelled_at) == datetime(2026, 3, 9, 15, 30, tzinfo=UTC)
        assert (await _load(session_factory, untouched.id)).status == "activated"
        provider.query_status.assert_awaited_once_with(untouched.order_id)

    @pytest.mark.asyncio
    async def test_stale_snapshot_ignored_while_waiting(self, session_factory, clock, factory, owner):
        """An old revoked payload on a waiting record does not cancel it."""
        employee, plan = owner
        subscription = await factory.subscription(
            employee, plan, metadata_json={"rawData": {"esimStatus": "REVOKED"}}
        )
        provider = _provider(
            ProviderStatus.from_payload({"esimStatus": "IN_USE", "activateTime": "2026-03-10T09:00:00Z"})
        )
        reconciler = EsimStatusReconciler(session_factory, provider, clock=clock)

        assert await reconciler.reconcile_subscription(subscription.id) is True
        assert (await _load(session_factory, subscription.id)).status == "activated"
