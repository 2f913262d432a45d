"""
Credit note generation.

Once a day every company with subscriptions cancelled that day receives one
credit note refunding them. A subscription is credited at most once: the
note and the ``credit_note_id`` markers on its subscriptions are written in
the same transaction, and the marking UPDATE only touches rows that are
still unmarked. Re-running a day therefore finds nothing left to credit.

Email delivery happens after the commit; a failed send is recorded on the
note for ``retry_pending_notifications`` and never undoes the financial
record.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from simdesk.platform.billing.credit_notes.models import (
    CreditNote,
    CreditNoteItem,
    CreditNoteItemType,
)
from simdesk.platform.billing.credit_notes.notifications import CreditNoteNotifier
from simdesk.platform.billing.credit_notes.numbering import next_credit_note_number
from simdesk.platform.billing.currency.service import ExchangeRateService
from simdesk.platform.billing.exceptions import (
    CompanyNotFoundError,
    CreditNoteConflictError,
    CreditNoteError,
    CreditNoteNotFoundError,
)
from simdesk.platform.billing.money_utils import quantize_amount
from simdesk.platform.companies.models import Company, Employee
from simdesk.platform.core.clock import Clock, SystemClock, day_bounds, local_date
from simdesk.platform.logging import log_audit_event
from simdesk.platform.settings import Settings, settings
from simdesk.platform.subscriptions.classifier import (
    CancellationClassifier,
    cancellation_classifier,
)
from simdesk.platform.subscriptions.models import DataPlan, Subscription

logger = structlog.get_logger(__name__)


@dataclass
class CreditNoteLine:
    """Unpersisted credit note item."""

    item_type: str
    plan_name: str
    description: str
    unit_price: Decimal
    total_amount: Decimal
    quantity: int = 1
    subscription_id: int | None = None
    plan_id: int | None = None
    countries: list[str] | None = None
    data_amount: str | None = None
    validity_days: int | None = None

    def to_item(self) -> CreditNoteItem:
        return CreditNoteItem(
            item_type=self.item_type,
            plan_name=self.plan_name,
            description=self.description,
            unit_price=self.unit_price,
            quantity=self.quantity,
            total_amount=self.total_amount,
            subscription_id=self.subscription_id,
            plan_id=self.plan_id,
            countries=self.countries,
            data_amount=self.data_amount,
            validity_days=self.validity_days,
        )


@dataclass
class CreditNoteDraft:
    """What a run would credit for one company."""

    company_id: int
    company_name: str
    currency: str
    credit_date: date
    vat_applied: bool
    subscription_ids: list[int]
    lines: list[CreditNoteLine]
    original_bill_id: int | None = None

    @property
    def total_amount(self) -> Decimal:
        return sum((line.total_amount for line in self.lines), Decimal("0"))

    def to_dict(self) -> dict[str, Any]:
        return {
            "company_id": self.company_id,
            "company_name": self.company_name,
            "currency": self.currency,
            "credit_date": self.credit_date.isoformat(),
            "vat_applied": self.vat_applied,
            "subscription_ids": self.subscription_ids,
            "original_bill_id": self.original_bill_id,
            "total_amount": f"{self.total_amount:.2f}",
            "items": len(self.lines),
        }


@dataclass
class CreditNoteBatchResult:
    credit_date: date
    dry_run: bool = False
    credit_notes: list[str] = field(default_factory=list)
    drafts: list[CreditNoteDraft] = field(default_factory=list)
    failed_companies: dict[int, str] = field(default_factory=dict)
    companies_without_credit: list[int] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "credit_date": self.credit_date.isoformat(),
            "dry_run": self.dry_run,
            "credit_notes": self.credit_notes,
            "drafts": [draft.to_dict() for draft in self.drafts],
            "failed_companies": {str(k): v for k, v in self.failed_companies.items()},
            "companies_without_credit": self.companies_without_credit,
        }


class CreditNoteGenerator:
    """Issues daily VAT-aware credit notes for cancelled subscriptions."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        exchange_rates: ExchangeRateService,
        notifier: CreditNoteNotifier | None = None,
        clock: Clock | None = None,
        config: Settings | None = None,
        classifier: CancellationClassifier | None = None,
        notification_timeout: float = 60.0,
    ) -> None:
        self.session_factory = session_factory
        self.exchange_rates = exchange_rates
        self.notifier = notifier
        self.clock = clock or SystemClock()
        self.billing = (config or settings).billing
        self.classifier = classifier or cancellation_classifier
        self.notification_timeout = notification_timeout
        self._vat_countries = {c.strip().lower() for c in self.billing.vat_countries}

    def is_vat_liable(self, company: Company) -> bool:
        return bool(company.country) and company.country.strip().lower() in self._vat_countries

    def _today(self) -> date:
        return local_date(self.clock.now(), self.billing.business_timezone)

    def _window(self, credit_date: date) -> tuple[datetime, datetime]:
        return day_bounds(credit_date, self.billing.business_timezone)

    async def _build_draft(
        self, session: AsyncSession, company: Company, credit_date: date
    ) -> CreditNoteDraft | None:
        start, end = self._window(credit_date)
        result = await session.execute(
            select(Subscription, DataPlan)
            .join(Employee, Employee.id == Subscription.employee_id)
            .join(DataPlan, DataPlan.id == Subscription.plan_id)
            .where(
                Employee.company_id == company.id,
                Subscription.credit_note_id.is_(None),
                Subscription.cancelled_at >= start,
                Subscription.cancelled_at < end,
            )
            .order_by(Subscription.id)
        )
        rows = [
            (subscription, plan)
            for subscription, plan in result.all()
            if self.classifier.is_subscription_cancelled(subscription, plan.validity_days)
        ]
        if not rows:
            return None

        currency = (company.currency or self.billing.default_currency).upper()
        vat_applied = self.is_vat_liable(company)
        vat_percent = (self.billing.vat_rate * 100).normalize()
        lines: list[CreditNoteLine] = []

        for subscription, plan in rows:
            principal = await self.exchange_rates.convert_amount(
                plan.selling_price, self.billing.default_currency, currency
            )
            lines.append(
                CreditNoteLine(
                    item_type=CreditNoteItemType.ESIM,
                    plan_name=plan.name,
                    description=plan.description or f"{plan.name} refund",
                    unit_price=principal,
                    total_amount=principal,
                    subscription_id=subscription.id,
                    plan_id=plan.id,
                    countries=list(plan.countries or []),
                    data_amount=plan.data_amount,
                    validity_days=plan.validity_days,
                )
            )
            if vat_applied:
                vat = quantize_amount(principal * self.billing.vat_rate, currency)
                lines.append(
                    CreditNoteLine(
                        item_type=CreditNoteItemType.VAT,
                        plan_name=plan.name,
                        description=f"VAT Refund ({vat_percent:f}%) - {plan.name}",
                        unit_price=vat,
                        total_amount=vat,
                        subscription_id=subscription.id,
                        plan_id=plan.id,
                    )
                )

        return CreditNoteDraft(
            company_id=company.id,
            company_name=company.name,
            currency=currency,
            credit_date=credit_date,
            vat_applied=vat_applied,
            subscription_ids=[subscription.id for subscription, _ in rows],
            lines=lines,
            original_bill_id=next(
                (subscription.bill_id for subscription, _ in rows if subscription.bill_id is not None), None
            ),
        )

    async def _get_company(self, session: AsyncSession, company_id: int) -> Company:
        company = await session.get(Company, company_id)
        if company is None:
            raise CompanyNotFoundError(f"Company {company_id} not found", company_id=company_id)
        return company

    async def preview_for_company(self, company_id: int, credit_date: date) -> CreditNoteDraft | None:
        """What ``generate_for_company`` would issue, without writing anything."""
        async with self.session_factory() as session:
            company = await self._get_company(session, company_id)
            return await self._build_draft(session, company, credit_date)

    async def generate_for_company(
        self, company_id: int, credit_date: date, *, notify: bool = True
    ) -> CreditNote | None:
        """
        Issue the credit note for one company's cancellations on ``credit_date``.

        Returns None when nothing is left to credit.

        Raises:
            CompanyNotFoundError: Unknown company
            CreditNoteConflictError: A concurrent run marked some subscriptions first
            CreditNoteError: No free number after the configured retries
        """
        async with self.session_factory() as session:
            company = await self._get_company(session, company_id)
            draft = await self._build_draft(session, company, credit_date)
            if draft is None:
                logger.debug(
                    "No cancellations to credit",
                    company_id=company_id,
                    credit_date=credit_date.isoformat(),
                )
                return None

            credit_note = await self._persist(session, draft)

        logger.info(
            "Credit note issued",
            company_id=company_id,
            credit_note_number=credit_note.credit_note_number,
            total_amount=str(credit_note.total_amount),
            currency=credit_note.currency,
            subscriptions=len(draft.subscription_ids),
        )
        log_audit_event(
            "credit_note.issued",
            "billing",
            resource_type="credit_note",
            resource_id=credit_note.credit_note_number,
            company_id=company_id,
            total_amount=str(credit_note.total_amount),
            currency=credit_note.currency,
            subscription_ids=draft.subscription_ids,
        )

        if notify:
            await self.send_credit_note_email(credit_note.id)
        return credit_note

    async def _persist(self, session: AsyncSession, draft: CreditNoteDraft) -> CreditNote:
        issue_date = self._today()
        attempts = max(1, self.billing.credit_note_number_retries)

        for attempt in range(1, attempts + 1):
            number = await next_credit_note_number(session, issue_date, self.billing.credit_note_prefix)
            credit_note = CreditNote(
                company_id=draft.company_id,
                credit_note_number=number,
                original_bill_id=draft.original_bill_id,
                credit_date=draft.credit_date,
                total_amount=draft.total_amount,
                currency=draft.currency,
                reason=self.billing.credit_note_reason,
                created_at=self.clock.now(),
                items=[line.to_item() for line in draft.lines],
            )
            session.add(credit_note)
            try:
                await session.flush()
            except IntegrityError:
                await session.rollback()
                logger.warning(
                    "Credit note number taken, retrying",
                    credit_note_number=number,
                    attempt=attempt,
                )
                continue

            # Only rows that are still unmarked get the reference
            marked = await session.execute(
                update(Subscription)
                .where(
                    Subscription.id.in_(draft.subscription_ids),
                    Subscription.credit_note_id.is_(None),
                )
                .values(credit_note_id=credit_note.id)
                .execution_options(synchronize_session=False)
            )
            if marked.rowcount != len(draft.subscription_ids):
                await session.rollback()
                raise CreditNoteConflictError(
                    f"Subscriptions of company {draft.company_id} were credited concurrently",
                    company_id=draft.company_id,
                    expected=len(draft.subscription_ids),
                    marked=marked.rowcount,
                )

            await session.commit()
            return credit_note

        raise CreditNoteError(
            f"Could not allocate a credit note number after {attempts} attempts",
            context={"company_id": draft.company_id, "issue_date": issue_date.isoformat()},
            recovery_hint="Re-run the batch; already credited subscriptions are skipped",
        )

    async def get_credit_note(self, credit_note_id: int) -> CreditNote:
        async with self.session_factory() as session:
            result = await session.execute(
                select(CreditNote)
                .options(selectinload(CreditNote.items), selectinload(CreditNote.company))
                .where(CreditNote.id == credit_note_id)
            )
            credit_note = result.scalar_one_or_none()
        if credit_note is None:
            raise CreditNoteNotFoundError(
                f"Credit note {credit_note_id} not found", credit_note_id=credit_note_id
            )
        return credit_note

    async def send_credit_note_email(self, credit_note_id: int) -> bool:
        """Deliver one credit note and record the outcome on it."""
        credit_note = await self.get_credit_note(credit_note_id)
        company = credit_note.company

        error: str | None = None
        if self.notifier is None:
            error = "No notifier configured"
        elif not company.contact_email:
            error = "Company has no contact email"
        else:
            try:
                delivered = await asyncio.wait_for(
                    self.notifier.send_credit_note(
                        company.contact_email, credit_note, company, list(credit_note.items)
                    ),
                    timeout=self.notification_timeout,
                )
                if not delivered:
                    error = "Notifier reported a failed delivery"
            except TimeoutError:
                error = f"Notification timed out after {self.notification_timeout}s"
            except Exception as e:
                error = str(e) or e.__class__.__name__

        async with self.session_factory() as session:
            record = await session.get(CreditNote, credit_note_id)
            record.notification_attempts += 1
            if error is None:
                record.email_sent = True
                record.email_sent_at = self.clock.now()
                record.last_notification_error = None
            else:
                record.last_notification_error = error
            await session.commit()

        if error is None:
            logger.info(
                "Credit note email sent",
                credit_note_number=credit_note.credit_note_number,
                recipient=company.contact_email,
            )
            return True

        logger.warning(
            "Credit note notification pending",
            credit_note_number=credit_note.credit_note_number,
            company_id=company.id,
            error=error,
        )
        return False

    async def retry_pending_notifications(self, limit: int = 50, max_attempts: int = 5) -> int:
        """Re-send notes whose email has not gone out yet. Returns how many were delivered."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(CreditNote.id)
                .where(
                    CreditNote.email_sent.is_(False),
                    CreditNote.notification_attempts < max_attempts,
                )
                .order_by(CreditNote.id)
                .limit(limit)
            )
            pending = list(result.scalars().all())

        sent = 0
        for credit_note_id in pending:
            if await self.send_credit_note_email(credit_note_id):
                sent += 1
        if pending:
            logger.info("Pending credit note notifications retried", pending=len(pending), sent=sent)
        return sent

    async def companies_with_cancellations(self, credit_date: date) -> list[int]:
        start, end = self._window(credit_date)
        async with self.session_factory() as session:
            result = await session.execute(
                select(Employee.company_id)
                .join(Subscription, Subscription.employee_id == Employee.id)
                .where(
                    Subscription.credit_note_id.is_(None),
                    Subscription.cancelled_at >= start,
                    Subscription.cancelled_at < end,
                )
                .distinct()
                .order_by(Employee.company_id)
            )
            return list(result.scalars().all())

    async def process_daily_credit_notes(
        self, credit_date: date | None = None, *, dry_run: bool = False
    ) -> CreditNoteBatchResult:
        """
        Credit every company with un-credited cancellations on ``credit_date``.

        A failure for one company is logged and recorded; the others still run.
        The failed company is picked up again by the next run.
        """
        credit_date = credit_date or self._today()
        batch = CreditNoteBatchResult(credit_date=credit_date, dry_run=dry_run)
        company_ids = await self.companies_with_cancellations(credit_date)
        logger.info(
            "Daily credit note run started",
            credit_date=credit_date.isoformat(),
            companies=len(company_ids),
            dry_run=dry_run,
        )

        for company_id in company_ids:
            try:
                if dry_run:
                    draft = await self.preview_for_company(company_id, credit_date)
                    if draft is None:
                        batch.companies_without_credit.append(company_id)
                    else:
                        batch.drafts.append(draft)
                    continue

                credit_note = await self.generate_for_company(company_id, credit_date)
            except Exception as e:
                batch.failed_companies[company_id] = str(e)
                logger.error(
                    "Credit note generation failed for company",
                    company_id=company_id,
                    credit_date=credit_date.isoformat(),
                    error=str(e),
                    exc_info=True,
                )
                continue

            if credit_note is None:
                batch.companies_without_credit.append(company_id)
            else:
                batch.credit_notes.append(credit_note.credit_note_number)

        logger.info(
            "Daily credit note run finished",
            credit_date=credit_date.isoformat(),
            issued=len(batch.credit_notes),
            failed=len(batch.failed_companies),
            dry_run=dry_run,
        )
        return batch

    async def list_company_credit_notes(
        self, company_id: int, limit: int = 50, offset: int = 0
    ) -> list[CreditNote]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(CreditNote)
                .options(selectinload(CreditNote.items))
                .where(CreditNote.company_id == company_id)
                .order_by(CreditNote.created_at.desc(), CreditNote.id.desc())
                .limit(limit)
                .offset(offset)
            )
            return list(result.scalars().all())

    async def list_credit_notes(
        self, limit: int = 50, offset: int = 0, email_sent: bool | None = None
    ) -> list[CreditNote]:
        stmt = select(CreditNote).options(selectinload(CreditNote.items))
        if email_sent is not None:
            stmt = stmt.where(CreditNote.email_sent.is_(email_sent))
        async with self.session_factory() as session:
            result = await session.execute(
                stmt.order_by(CreditNote.created_at.desc(), CreditNote.id.desc()).limit(limit).offset(offset)
            )
            return list(result.scalars().all())


__all__ = [
    "CreditNoteBatchResult",
    "CreditNoteDraft",
    "CreditNoteGenerator",
    "CreditNoteLine",
]
