"""
Credit note tables.

Credit notes are append-only: once flushed, only the notification
bookkeeping columns may change, and rows are never deleted.
"""

from datetime import UTC, date, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    event,
    inspect,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from simdesk.platform.billing.exceptions import CreditNoteImmutableError
from simdesk.platform.companies.models import Company
from simdesk.platform.db import Base


class CreditNoteItemType:
    ESIM = "esim"
    VAT = "vat"


class CreditNote(Base):
    """One refund document per company per run."""

    __tablename__ = "credit_notes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    company_id: Mapped[int] = mapped_column(ForeignKey("companies.id"), nullable=False, index=True)
    credit_note_number: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    original_bill_id: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Day whose cancellations this note refunds
    credit_date: Mapped[date] = mapped_column(Date, nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    reason: Mapped[str] = mapped_column(String(255), nullable=False)

    # Notification bookkeeping (mutable)
    email_sent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    email_sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    notification_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_notification_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    company: Mapped[Company] = relationship()
    items: Mapped[list["CreditNoteItem"]] = relationship(
        back_populates="credit_note", order_by="CreditNoteItem.id"
    )

    MUTABLE_FIELDS = frozenset(
        {"email_sent", "email_sent_at", "notification_attempts", "last_notification_error"}
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "company_id": self.company_id,
            "credit_note_number": self.credit_note_number,
            "original_bill_id": self.original_bill_id,
            "credit_date": self.credit_date.isoformat(),
            "total_amount": f"{self.total_amount:.2f}",
            "currency": self.currency,
            "reason": self.reason,
            "email_sent": self.email_sent,
        }

    def __repr__(self) -> str:
        return f"<CreditNote(number={self.credit_note_number!r}, total={self.total_amount} {self.currency})>"


class CreditNoteItem(Base):
    """A principal line per credited subscription, plus a VAT line where due."""

    __tablename__ = "credit_note_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    credit_note_id: Mapped[int] = mapped_column(
        ForeignKey("credit_notes.id"), nullable=False, index=True
    )
    # Plain column: subscriptions already reference credit_notes
    subscription_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    plan_id: Mapped[int | None] = mapped_column(ForeignKey("data_plans.id"), nullable=True)

    item_type: Mapped[str] = mapped_column(String(20), nullable=False, default=CreditNoteItemType.ESIM)
    plan_name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    countries: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    data_amount: Mapped[str | None] = mapped_column(String(50), nullable=True)
    validity_days: Mapped[int | None] = mapped_column(Integer, nullable=True)

    credit_note: Mapped[CreditNote] = relationship(back_populates="items")

    MUTABLE_FIELDS = frozenset()


def _changed_fields(target: Any) -> list[str]:
    state = inspect(target)
    return [
        attr.key
        for attr in state.mapper.column_attrs
        if state.attrs[attr.key].history.has_changes()
    ]


@event.listens_for(CreditNote, "before_update")
@event.listens_for(CreditNoteItem, "before_update")
def _reject_financial_update(mapper: Any, connection: Any, target: Any) -> None:
    forbidden = [f for f in _changed_fields(target) if f not in target.MUTABLE_FIELDS]
    if forbidden:
        raise CreditNoteImmutableError(
            f"Issued credit notes cannot be modified (fields: {', '.join(sorted(forbidden))})",
            credit_note_id=getattr(target, "credit_note_id", None) or target.id,
            fields=sorted(forbidden),
        )


@event.listens_for(CreditNote, "before_delete")
@event.listens_for(CreditNoteItem, "before_delete")
def _reject_delete(mapper: Any, connection: Any, target: Any) -> None:
    raise CreditNoteImmutableError(
        "Issued credit notes cannot be deleted",
        credit_note_id=getattr(target, "credit_note_id", None) or target.id,
    )
