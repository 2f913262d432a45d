"""
Data plans and the subscriptions provisioned from them.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from simdesk.platform.billing.exceptions import SubscriptionAlreadyCreditedError
from simdesk.platform.companies.models import Employee
from simdesk.platform.db import Base, TimestampMixin


class SubscriptionStatus(str, Enum):
    """Stored lifecycle status of a subscription."""

    WAITING_FOR_ACTIVATION = "waiting_for_activation"
    ACTIVATED = "activated"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    ERROR = "error"


TERMINAL_STATUSES = frozenset({SubscriptionStatus.EXPIRED.value, SubscriptionStatus.CANCELLED.value})


class DataPlan(Base, TimestampMixin):
    """A sellable data plan. Prices are stored in the billing default currency."""

    __tablename__ = "data_plans"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    provider_plan_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    data_amount: Mapped[str | None] = mapped_column(String(50), nullable=True)  # e.g. "5GB"
    validity_days: Mapped[int] = mapped_column(Integer, nullable=False, default=30)
    provider_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=0)
    selling_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    countries: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class Subscription(Base, TimestampMixin):
    """
    A provisioned eSIM instance held by one employee.

    ``status`` moves through ``SubscriptionStatus`` driven by provider webhooks
    or by the polling reconciler. ``credit_note_id`` is written once by the
    credit-note run and never cleared or reassigned afterwards.
    """

    __tablename__ = "subscriptions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    employee_id: Mapped[int] = mapped_column(
        ForeignKey("employees.id", ondelete="CASCADE"), nullable=False, index=True
    )
    plan_id: Mapped[int] = mapped_column(ForeignKey("data_plans.id"), nullable=False)

    # Provider identifiers
    order_id: Mapped[str | None] = mapped_column(String(100), nullable=True, unique=True)
    iccid: Mapped[str | None] = mapped_column(String(50), nullable=True)

    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default=SubscriptionStatus.WAITING_FOR_ACTIVATION.value
    )
    purchase_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    activation_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    expiry_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    is_cancelled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Free-form provider snapshot; older rows may hold a JSON-encoded string
    metadata_json: Mapped[dict[str, Any] | str | None] = mapped_column(
        "metadata", JSON, nullable=True
    )

    bill_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    credit_note_id: Mapped[int | None] = mapped_column(
        ForeignKey("credit_notes.id"), nullable=True, index=True
    )

    employee: Mapped[Employee] = relationship()
    plan: Mapped[DataPlan] = relationship()

    __table_args__ = (
        Index("ix_subscriptions_status_cancelled_at", "status", "cancelled_at"),
        Index("ix_subscriptions_status_created_at", "status", "created_at"),
    )

    @validates("credit_note_id")
    def _guard_credit_note_id(self, key: str, value: int | None) -> int | None:
        current = self.credit_note_id
        if current is not None and value != current:
            raise SubscriptionAlreadyCreditedError(
                f"Subscription {self.id} is already credited by credit note {current}",
                subscription_id=self.id,
                credit_note_id=current,
            )
        return value

    def __repr__(self) -> str:
        return f"<Subscription(id={self.id}, order_id={self.order_id!r}, status={self.status!r})>"
