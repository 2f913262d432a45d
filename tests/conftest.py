"""
Global pytest configuration and fixtures for SimDesk platform tests.

Every test gets its own in-memory SQLite database and a manual clock, so
thresholds and time windows are exercised without wall-clock waits.
"""

from collections.abc import AsyncIterator
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import simdesk.platform.models  # noqa: F401
from simdesk.platform.billing.currency.service import ExchangeRateService
from simdesk.platform.companies.models import Company, Employee
from simdesk.platform.db import Base
from simdesk.platform.settings import Settings
from simdesk.platform.subscriptions.models import DataPlan, Subscription, SubscriptionStatus


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2026, 3, 10, 12, 0, tzinfo=UTC)

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs: float) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current

    def set(self, value: datetime) -> None:
        self.current = value


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def test_settings() -> Settings:
    """Settings isolated from the environment and any .env file."""
    return Settings(
        _env_file=None,
        environment="test",
        billing={"exchange_rate_source_url": None},
        email={"enabled": True, "smtp_host": "smtp.test"},
        provider={
            "access_code": "test-access",
            "secret_key": "test-secret",
            "retry_backoff_seconds": 0.0,
        },
    )


@pytest_asyncio.fixture
async def async_db_engine() -> AsyncIterator[AsyncEngine]:
    """Async in-memory database engine for tests."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,  # Required for SQLite in-memory async
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(async_db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(async_db_engine, class_=AsyncSession, autoflush=False, expire_on_commit=False)


@pytest.fixture
def exchange_rates(session_factory, clock, test_settings) -> ExchangeRateService:
    return ExchangeRateService(session_factory, clock=clock, config=test_settings)


class DataFactory:
    """Creates companies, employees, plans and subscriptions in committed transactions."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], clock: ManualClock) -> None:
        self.session_factory = session_factory
        self.clock = clock
        self._orders = 0

    async def _save(self, obj: Any) -> Any:
        async with self.session_factory() as session:
            session.add(obj)
            await session.commit()
        return obj

    async def company(
        self,
        name: str = "Acme Trading",
        country: str | None = "UAE",
        currency: str = "USD",
        contact_email: str | None = "billing@acme.test",
    ) -> Company:
        return await self._save(
            Company(name=name, country=country, currency=currency, contact_email=contact_email)
        )

    async def employee(self, company: Company, name: str = "Jane Roe") -> Employee:
        return await self._save(Employee(company_id=company.id, name=name, email="jane@acme.test"))

    async def plan(
        self,
        name: str = "UAE 5GB",
        selling_price: str = "100.00",
        validity_days: int = 30,
    ) -> DataPlan:
        return await self._save(
            DataPlan(
                name=name,
                description=f"{name} data plan",
                data_amount="5GB",
                validity_days=validity_days,
                provider_price=Decimal("60.00"),
                selling_price=Decimal(selling_price),
                countries=["AE"],
            )
        )

    async def subscription(
        self,
        employee: Employee,
        plan: DataPlan,
        status: str = SubscriptionStatus.WAITING_FOR_ACTIVATION.value,
        cancelled_at: datetime | None = None,
        created_at: datetime | None = None,
        order_id: str | None = "auto",
        **kwargs: Any,
    ) -> Subscription:
        if order_id == "auto":
            self._orders += 1
            order_id = f"B2026{self._orders:06d}"
        now = self.clock.now()
        return await self._save(
            Subscription(
                employee_id=employee.id,
                plan_id=plan.id,
                order_id=order_id,
                status=status,
                purchase_date=created_at or now,
                created_at=created_at or now,
                updated_at=created_at or now,
                cancelled_at=cancelled_at,
                is_cancelled=status == SubscriptionStatus.CANCELLED.value,
                **kwargs,
            )
        )

    async def cancelled_subscription(
        self, employee: Employee, plan: DataPlan, cancelled_at: datetime | None = None, **kwargs: Any
    ) -> Subscription:
        return await self.subscription(
            employee,
            plan,
            status=SubscriptionStatus.CANCELLED.value,
            cancelled_at=cancelled_at or self.clock.now(),
            **kwargs,
        )


@pytest.fixture
def factory(session_factory, clock) -> DataFactory:
    return DataFactory(session_factory, clock)
