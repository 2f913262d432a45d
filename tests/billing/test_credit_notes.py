"""
Tests for daily credit note generation.

Covers idempotent re-runs, VAT lines, currency conversion, numbering,
notification bookkeeping and the append-only guarantees of issued notes.
"""

import asyncio
from datetime import date, timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, Mock

import pytest
import pytest_asyncio
from sqlalchemy import func, select

from simdesk.platform.billing.credit_notes.models import CreditNote, CreditNoteItem, CreditNoteItemType
from simdesk.platform.billing.credit_notes.service import CreditNoteGenerator
from simdesk.platform.billing.exceptions import (
    CompanyNotFoundError,
    CreditNoteConflictError,
    CreditNoteError,
    CreditNoteImmutableError,
    CreditNoteNotFoundError,
    SubscriptionAlreadyCreditedError,
)
from simdesk.platform.core.clock import ensure_utc
from simdesk.platform.subscriptions.models import Subscription, SubscriptionStatus

TODAY = date(2026, 3, 10)


@pytest.fixture
def notifier() -> Mock:
    notifier = Mock()
    notifier.send_credit_note = AsyncMock(return_value=True)
    return notifier


@pytest.fixture
def generator(session_factory, exchange_rates, notifier, clock, test_settings) -> CreditNoteGenerator:
    return CreditNoteGenerator(
        session_factory, exchange_rates, notifier=notifier, clock=clock, config=test_settings
    )


@pytest_asyncio.fixture
async def uae_setup(factory):
    company = await factory.company()
    employee = await factory.employee(company)
    plan = await factory.plan()
    return company, employee, plan


async def _count_notes(session_factory) -> int:
    async with session_factory() as session:
        return await session.scalar(select(func.count()).select_from(CreditNote))


async def _load_subscription(session_factory, subscription_id) -> Subscription:
    async with session_factory() as session:
        return await session.get(Subscription, subscription_id)


class TestGeneration:
    """Test issuing one company's credit note."""

    @pytest.mark.asyncio
    async def test_vat_liable_company(self, generator, uae_setup, factory, clock):
        """A UAE company gets a principal line and a 5% VAT line."""
        company, employee, plan = uae_setup
        subscription = await factory.cancelled_subscription(employee, plan, cancelled_at=clock.now())

        credit_note = await generator.generate_for_company(company.id, TODAY)

        assert credit_note.credit_note_number == "CN-20260310-0001"
        assert credit_note.total_amount == Decimal("105.00")
        assert credit_note.currency == "USD"
        assert credit_note.credit_date == TODAY

        stored = await generator.get_credit_note(credit_note.id)
        principal, vat = stored.items
        assert principal.item_type == CreditNoteItemType.ESIM
        assert principal.total_amount == Decimal("100.00")
        assert principal.subscription_id == subscription.id
        assert vat.item_type == CreditNoteItemType.VAT
        assert vat.total_amount == Decimal("5.00")
        assert vat.description == "VAT Refund (5%) - UAE 5GB"

        marked = await _load_subscription(generator.session_factory, subscription.id)
        assert marked.credit_note_id == credit_note.id

    @pytest.mark.asyncio
    async def test_company_outside_vat_area(self, generator, factory, clock):
        """Companies outside the VAT countries get principal lines only."""
        company = await factory.company(name="Globex", country="Germany")
        employee = await factory.employee(company)
        plan = await factory.plan()
        await factory.cancelled_subscription(employee, plan, cancelled_at=clock.now())

        credit_note = await generator.generate_for_company(company.id, TODAY)

        stored = await generator.get_credit_note(credit_note.id)
        assert [item.item_type for item in stored.items] == [CreditNoteItemType.ESIM]
        assert stored.total_amount == Decimal("100.00")

    @pytest.mark.asyncio
    async def test_total_equals_sum_of_items(self, generator, uae_setup, factory, clock):
        """The stored total is exactly the sum of the rounded lines."""
        company, employee, plan = uae_setup
        small = await factory.plan(name="GCC 1GB", selling_price="49.99")
        tiny = await factory.plan(name="Oman 500MB", selling_price="12.50")
        for p in (plan, small, tiny):
            await factory.cancelled_subscription(employee, p, cancelled_at=clock.now())

        credit_note = await generator.generate_for_company(company.id, TODAY)

        stored = await generator.get_credit_note(credit_note.id)
        assert len(stored.items) == 6
        assert stored.total_amount == sum(item.total_amount for item in stored.items)
        assert stored.total_amount == Decimal("170.62")

    @pytest.mark.asyncio
    async def test_converted_to_company_currency(self, generator, exchange_rates, factory, clock):
        """Prices are converted to the company's currency before VAT."""
        await exchange_rates.update_rate("USD", "AED", "3.6725")
        company = await factory.company(currency="AED")
        employee = await factory.employee(company)
        plan = await factory.plan()
        await factory.cancelled_subscription(employee, plan, cancelled_at=clock.now())

        credit_note = await generator.generate_for_company(company.id, TODAY)

        stored = await generator.get_credit_note(credit_note.id)
        assert stored.currency == "AED"
        assert [item.total_amount for item in stored.items] == [Decimal("367.25"), Decimal("18.36")]
        assert stored.total_amount == Decimal("385.61")

    @pytest.mark.asyncio
    async def test_missing_rate_converts_one_to_one(self, generator, factory, clock):
        """Without a rate the amount is carried over unchanged."""
        company = await factory.company(country="France", currency="EUR")
        employee = await factory.employee(company)
        plan = await factory.plan()
        await factory.cancelled_subscription(employee, plan, cancelled_at=clock.now())

        credit_note = await generator.generate_for_company(company.id, TODAY)

        assert credit_note.currency == "EUR"
        assert credit_note.total_amount == Decimal("100.00")

    @pytest.mark.asyncio
    async def test_originating_bill_recorded(self, generator, uae_setup, factory, clock):
        """The first bill found among the credited subscriptions is referenced."""
        company, employee, plan = uae_setup
        await factory.cancelled_subscription(employee, plan, cancelled_at=clock.now())
        await factory.cancelled_subscription(employee, plan, cancelled_at=clock.now(), bill_id=41)
        await factory.cancelled_subscription(employee, plan, cancelled_at=clock.now(), bill_id=42)

        credit_note = await generator.generate_for_company(company.id, TODAY)

        stored = await generator.get_credit_note(credit_note.id)
        assert stored.original_bill_id == 41
        assert stored.to_dict()["original_bill_id"] == 41

    @pytest.mark.asyncio
    async def test_no_originating_bill(self, generator, uae_setup, factory, clock):
        """Without billed subscriptions the reference stays empty."""
        company, employee, plan = uae_setup
        await factory.cancelled_subscription(employee, plan, cancelled_at=clock.now())

        draft = await generator.preview_for_company(company.id, TODAY)

        assert draft.original_bill_id is None

    @pytest.mark.asyncio
    async def test_unknown_company(self, generator):
        """Generating for a missing company raises."""
        with pytest.raises(CompanyNotFoundError):
            await generator.generate_for_company(9999, TODAY)


class TestIdempotence:
    """Test that nothing is credited twice."""

    @pytest.mark.asyncio
    async def test_second_run_finds_nothing(self, generator, uae_setup, factory, clock, session_factory):
        """Re-running the same day issues no further note."""
        company, employee, plan = uae_setup
        await factory.cancelled_subscription(employee, plan, cancelled_at=clock.now())

        first = await generator.generate_for_company(company.id, TODAY)
        second = await generator.generate_for_company(company.id, TODAY)

        assert first is not None
        assert second is None
        assert await _count_notes(session_factory) == 1

    @pytest.mark.asyncio
    async def test_credit_note_reference_is_write_once(self, generator, uae_setup, factory, clock, session_factory):
        """A credited subscription cannot be pointed at another note."""
        company, employee, plan = uae_setup
        subscription = await factory.cancelled_subscription(employee, plan, cancelled_at=clock.now())
        credit_note = await generator.generate_for_company(company.id, TODAY)

        async with session_factory() as session:
            stored = await session.get(Subscription, subscription.id)
            stored.credit_note_id = credit_note.id

            with pytest.raises(SubscriptionAlreadyCreditedError) as exc_info:
                stored.credit_note_id = credit_note.id + 1

        assert exc_info.value.status_code == 409

    @pytest.mark.asyncio
    async def test_concurrent_marking_rolls_back(self, generator, uae_setup, factory, clock, session_factory):
        """A run that loses the race writes no note at all."""
        company, employee, plan = uae_setup
        await factory.cancelled_subscription(employee, plan, cancelled_at=clock.now())
        stale_draft = await generator.preview_for_company(company.id, TODAY)
        await generator.generate_for_company(company.id, TODAY)

        async with session_factory() as session:
            with pytest.raises(CreditNoteConflictError) as exc_info:
                await generator._persist(session, stale_draft)

        assert exc_info.value.context["marked"] == 0
        assert await _count_notes(session_factory) == 1

    @pytest.mark.asyncio
    async def test_expired_subscription_not_credited(self, generator, uae_setup, factory, clock):
        """Expiry is not a cancellation."""
        company, employee, plan = uae_setup
        await factory.subscription(
            employee, plan, status=SubscriptionStatus.EXPIRED.value, cancelled_at=clock.now()
        )

        assert await generator.generate_for_company(company.id, TODAY) is None

    @pytest.mark.asyncio
    async def test_only_the_given_day(self, generator, uae_setup, factory, clock):
        """Cancellations from other days belong to other runs."""
        company, employee, plan = uae_setup
        await factory.cancelled_subscription(employee, plan, cancelled_at=clock.now() - timedelta(days=1))

        assert await generator.companies_with_cancellations(TODAY) == []
        assert await generator.generate_for_company(company.id, TODAY) is None

        late = await generator.generate_for_company(company.id, TODAY - timedelta(days=1))
        assert late.credit_date == TODAY - timedelta(days=1)
        # Numbered by the day it was issued
        assert late.credit_note_number == "CN-20260310-0001"


class TestNumbering:
    """Test daily sequential numbering."""

    @pytest.mark.asyncio
    async def test_sequence_within_day(self, generator, uae_setup, factory, clock):
        """A later run on the same day continues the sequence."""
        company, employee, plan = uae_setup
        for _ in range(3):
            await factory.cancelled_subscription(employee, plan, cancelled_at=clock.now())
        other = await factory.company(name="Initech")

        first = await generator.process_daily_credit_notes()
        assert first.credit_notes == ["CN-20260310-0001"]
        assert other.id not in first.companies_without_credit

        clock.advance(hours=2)
        await factory.cancelled_subscription(employee, plan, cancelled_at=clock.now())
        second = await generator.process_daily_credit_notes()

        assert second.credit_notes == ["CN-20260310-0002"]

    @pytest.mark.asyncio
    async def test_taken_number_retried(self, generator, factory, clock, monkeypatch):
        """A number lost to a concurrent writer is retried with the next one."""
        first_company = await factory.company()
        second_company = await factory.company(name="Initech")
        plan = await factory.plan()
        for company in (first_company, second_company):
            employee = await factory.employee(company)
            await factory.cancelled_subscription(employee, plan, cancelled_at=clock.now())
        await generator.generate_for_company(first_company.id, TODAY)

        monkeypatch.setattr(
            "simdesk.platform.billing.credit_notes.service.next_credit_note_number",
            AsyncMock(side_effect=["CN-20260310-0001", "CN-20260310-0002"]),
        )
        credit_note = await generator.generate_for_company(second_company.id, TODAY)

        assert credit_note.credit_note_number == "CN-20260310-0002"

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, generator, factory, clock, monkeypatch, session_factory):
        """After the configured attempts the run gives up without marking anything."""
        first_company = await factory.company()
        second_company = await factory.company(name="Initech")
        plan = await factory.plan()
        for company in (first_company, second_company):
            employee = await factory.employee(company)
            await factory.cancelled_subscription(employee, plan, cancelled_at=clock.now())
        await generator.generate_for_company(first_company.id, TODAY)

        monkeypatch.setattr(
            "simdesk.platform.billing.credit_notes.service.next_credit_note_number",
            AsyncMock(return_value="CN-20260310-0001"),
        )
        with pytest.raises(CreditNoteError):
            await generator.generate_for_company(second_company.id, TODAY)

        assert await _count_notes(session_factory) == 1
        assert await generator.companies_with_cancellations(TODAY) == [second_company.id]


class TestNotifications:
    """Test email bookkeeping."""

    @pytest.mark.asyncio
    async def test_email_sent(self, generator, uae_setup, factory, clock, notifier):
        """A successful send marks the note as delivered."""
        company, employee, plan = uae_setup
        await factory.cancelled_subscription(employee, plan, cancelled_at=clock.now())

        credit_note = await generator.generate_for_company(company.id, TODAY)

        notifier.send_credit_note.assert_awaited_once()
        recipient, sent_note, sent_company, items = notifier.send_credit_note.await_args.args
        assert recipient == "billing@acme.test"
        assert sent_note.id == credit_note.id
        assert sent_company.id == company.id
        assert len(items) == 2

        stored = await generator.get_credit_note(credit_note.id)
        assert stored.email_sent is True
        assert ensure_utc(stored.email_sent_at) == clock.now()
        assert stored.notification_attempts == 1

    @pytest.mark.asyncio
    async def test_failed_send_keeps_note(self, generator, uae_setup, factory, clock, notifier):
        """A failed delivery is recorded and retried later."""
        company, employee, plan = uae_setup
        await factory.cancelled_subscription(employee, plan, cancelled_at=clock.now())
        notifier.send_credit_note.return_value = False

        credit_note = await generator.generate_for_company(company.id, TODAY)

        stored = await generator.get_credit_note(credit_note.id)
        assert stored.email_sent is False
        assert stored.last_notification_error == "Notifier reported a failed delivery"
        assert [n.id for n in await generator.list_credit_notes(email_sent=False)] == [credit_note.id]

        notifier.send_credit_note.return_value = True
        clock.advance(minutes=30)
        assert await generator.retry_pending_notifications() == 1

        stored = await generator.get_credit_note(credit_note.id)
        assert stored.email_sent is True
        assert stored.notification_attempts == 2
        assert stored.last_notification_error is None

    @pytest.mark.asyncio
    async def test_notifier_error_contained(self, generator, uae_setup, factory, clock, notifier):
        """A raising notifier does not undo the credit note."""
        company, employee, plan = uae_setup
        await factory.cancelled_subscription(employee, plan, cancelled_at=clock.now())
        notifier.send_credit_note.side_effect = ConnectionError("smtp unreachable")

        credit_note = await generator.generate_for_company(company.id, TODAY)

        stored = await generator.get_credit_note(credit_note.id)
        assert stored.last_notification_error == "smtp unreachable"
        assert stored.total_amount == Decimal("105.00")

    @pytest.mark.asyncio
    async def test_notification_timeout(self, session_factory, exchange_rates, clock, test_settings, uae_setup, factory):
        """A hanging notifier is abandoned after the timeout."""
        company, employee, plan = uae_setup
        await factory.cancelled_subscription(employee, plan, cancelled_at=clock.now())

        async def hang(*args):
            await asyncio.sleep(5)
            return True

        notifier = Mock()
        notifier.send_credit_note = hang
        generator = CreditNoteGenerator(
            session_factory,
            exchange_rates,
            notifier=notifier,
            clock=clock,
            config=test_settings,
            notification_timeout=0.01,
        )

        credit_note = await generator.generate_for_company(company.id, TODAY)

        stored = await generator.get_credit_note(credit_note.id)
        assert "timed out" in stored.last_notification_error

    @pytest.mark.asyncio
    async def test_missing_contact_email(self, generator, factory, clock, notifier):
        """Companies without a billing contact stay pending."""
        company = await factory.company(contact_email=None)
        employee = await factory.employee(company)
        plan = await factory.plan()
        await factory.cancelled_subscription(employee, plan, cancelled_at=clock.now())

        credit_note = await generator.generate_for_company(company.id, TODAY)

        notifier.send_credit_note.assert_not_awaited()
        stored = await generator.get_credit_note(credit_note.id)
        assert stored.last_notification_error == "Company has no contact email"

    @pytest.mark.asyncio
    async def test_retry_respects_attempt_limit(self, generator, uae_setup, factory, clock, notifier):
        """Notes that used up their attempts are not retried."""
        company, employee, plan = uae_setup
        await factory.cancelled_subscription(employee, plan, cancelled_at=clock.now())
        notifier.send_credit_note.return_value = False
        await generator.generate_for_company(company.id, TODAY)

        assert await generator.retry_pending_notifications(max_attempts=1) == 0
        assert notifier.send_credit_note.await_count == 1

    @pytest.mark.asyncio
    async def test_generate_without_notify(self, generator, uae_setup, factory, clock, notifier):
        """Notification can be deferred to the retry job."""
        company, employee, plan = uae_setup
        await factory.cancelled_subscription(employee, plan, cancelled_at=clock.now())

        credit_note = await generator.generate_for_company(company.id, TODAY, notify=False)

        notifier.send_credit_note.assert_not_awaited()
        stored = await generator.get_credit_note(credit_note.id)
        assert stored.email_sent is False
        assert stored.notification_attempts == 0


class TestDailyBatch:
    """Test the daily run across companies."""

    @pytest.mark.asyncio
    async def test_one_failure_does_not_stop_others(self, generator, factory, clock, monkeypatch):
        """A failing company is reported and retried by the next run."""
        plan = await factory.plan()
        broken = await factory.company(name="Broken Co")
        healthy = await factory.company(name="Healthy Co")
        for company in (broken, healthy):
            employee = await factory.employee(company)
            await factory.cancelled_subscription(employee, plan, cancelled_at=clock.now())

        original = generator.generate_for_company

        async def flaky(company_id, credit_date, **kwargs):
            if company_id == broken.id:
                raise RuntimeError("boom")
            return await original(company_id, credit_date, **kwargs)

        monkeypatch.setattr(generator, "generate_for_company", flaky)
        result = await generator.process_daily_credit_notes(TODAY)

        assert result.failed_companies == {broken.id: "boom"}
        assert result.credit_notes == ["CN-20260310-0001"]

        monkeypatch.undo()
        rerun = await generator.process_daily_credit_notes(TODAY)

        assert rerun.credit_notes == ["CN-20260310-0002"]
        assert rerun.failed_companies == {}

    @pytest.mark.asyncio
    async def test_dry_run_writes_nothing(self, generator, uae_setup, factory, clock, session_factory, notifier):
        """A dry run reports drafts without issuing or marking."""
        company, employee, plan = uae_setup
        subscription = await factory.cancelled_subscription(employee, plan, cancelled_at=clock.now())

        result = await generator.process_daily_credit_notes(TODAY, dry_run=True)

        assert result.credit_notes == []
        assert [d.company_id for d in result.drafts] == [company.id]
        assert result.drafts[0].total_amount == Decimal("105.00")
        assert result.to_dict()["drafts"][0]["total_amount"] == "105.00"
        assert await _count_notes(session_factory) == 0
        assert (await _load_subscription(session_factory, subscription.id)).credit_note_id is None
        notifier.send_credit_note.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_empty_day(self, generator):
        """A day without cancellations issues nothing."""
        result = await generator.process_daily_credit_notes(TODAY)

        assert result.credit_notes == []
        assert result.failed_companies == {}


@pytest_asyncio.fixture
async def issued(generator, uae_setup, factory, clock):
    company, employee, plan = uae_setup
    await factory.cancelled_subscription(employee, plan, cancelled_at=clock.now())
    return await generator.generate_for_company(company.id, TODAY)


class TestImmutability:
    """Test that issued notes are append-only."""

    @pytest.mark.asyncio
    async def test_amount_cannot_change(self, issued, session_factory):
        """Editing the total is rejected."""
        async with session_factory() as session:
            note = await session.get(CreditNote, issued.id)
            note.total_amount = Decimal("1.00")

            with pytest.raises(CreditNoteImmutableError) as exc_info:
                await session.commit()

        assert exc_info.value.context["fields"] == ["total_amount"]

    @pytest.mark.asyncio
    async def test_items_cannot_change(self, issued, session_factory):
        """Editing a line is rejected."""
        async with session_factory() as session:
            item = await session.scalar(select(CreditNoteItem).where(CreditNoteItem.credit_note_id == issued.id))
            item.unit_price = Decimal("0.01")

            with pytest.raises(CreditNoteImmutableError):
                await session.commit()

    @pytest.mark.asyncio
    async def test_cannot_delete(self, issued, session_factory):
        """Issued notes are never deleted."""
        async with session_factory() as session:
            note = await session.get(CreditNote, issued.id)
            await session.delete(note)

            with pytest.raises(CreditNoteImmutableError):
                await session.commit()

    @pytest.mark.asyncio
    async def test_notification_fields_mutable(self, issued, session_factory):
        """Delivery bookkeeping may still be updated."""
        async with session_factory() as session:
            note = await session.get(CreditNote, issued.id)
            note.notification_attempts = 4
            note.last_notification_error = "bounced"
            await session.commit()

        async with session_factory() as session:
            assert (await session.get(CreditNote, issued.id)).notification_attempts == 4


class TestQueries:
    """Test lookups and listings."""

    @pytest.mark.asyncio
    async def test_get_missing_credit_note(self, generator):
        """Unknown ids raise a not-found error."""
        with pytest.raises(CreditNoteNotFoundError) as exc_info:
            await generator.get_credit_note(404)

        assert exc_info.value.status_code == 404

    @pytest.mark.asyncio
    async def test_list_company_credit_notes(self, generator, uae_setup, factory, clock):
        """Company listings are newest first."""
        company, employee, plan = uae_setup
        await factory.cancelled_subscription(employee, plan, cancelled_at=clock.now())
        first = await generator.generate_for_company(company.id, TODAY)
        clock.advance(hours=1)
        await factory.cancelled_subscription(employee, plan, cancelled_at=clock.now())
        second = await generator.generate_for_company(company.id, TODAY)

        notes = await generator.list_company_credit_notes(company.id)

        assert [n.credit_note_number for n in notes] == [
            second.credit_note_number,
            first.credit_note_number,
        ]
        assert await generator.list_company_credit_notes(company.id + 100) == []

    @pytest.mark.asyncio
    async def test_is_vat_liable(self, generator):
        """VAT liability matches the configured country names case-insensitively."""
        assert generator.is_vat_liable(Mock(country=" united arab emirates "))
        assert not generator.is_vat_liable(Mock(country=None))
        assert not generator.is_vat_liable(Mock(country="Qatar"))
