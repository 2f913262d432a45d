"""
Exchange rate service.

Reads go through a snapshot of the rate table that is reloaded once it is
older than the freshness window. Conversion is advisory: a missing pair
converts 1:1 with a warning instead of failing the caller.
"""

from collections.abc import Callable
from decimal import Decimal, InvalidOperation
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from simdesk.platform.billing.currency.cache import RatePair, RateSnapshot, RateSnapshotCache
from simdesk.platform.billing.currency.models import ExchangeRate
from simdesk.platform.billing.currency.source import ExchangeRateSourceError, HttpRateSource
from simdesk.platform.billing.exceptions import InvalidExchangeRateError
from simdesk.platform.billing.money_utils import quantize_amount
from simdesk.platform.core.clock import Clock, SystemClock
from simdesk.platform.logging import log_audit_event
from simdesk.platform.settings import Settings, settings

logger = structlog.get_logger(__name__)

SnapshotListener = Callable[[RateSnapshot], None]


class ExchangeRateService:
    """Cached access to the exchange rate table."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Clock | None = None,
        config: Settings | None = None,
        source: HttpRateSource | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.clock = clock or SystemClock()
        self.billing = (config or settings).billing
        self.cache = RateSnapshotCache(self.billing.exchange_rate_cache_seconds, self.clock)
        self.source = source
        self._stale: RateSnapshot = {}
        self._listeners: list[SnapshotListener] = []

    def subscribe(self, listener: SnapshotListener) -> None:
        """Register a downstream cache to receive every refreshed snapshot."""
        self._listeners.append(listener)

    def _publish(self, snapshot: RateSnapshot) -> None:
        for listener in self._listeners:
            try:
                listener(dict(snapshot))
            except Exception as e:
                logger.error("Rate snapshot listener failed", error=str(e))

    async def refresh_rates(self) -> int:
        """Reload the snapshot from the database. On failure the stale snapshot is kept."""
        try:
            async with self.session_factory() as session:
                result = await session.execute(select(ExchangeRate).where(ExchangeRate.is_active.is_(True)))
                snapshot: RateSnapshot = {
                    (row.from_currency, row.to_currency): Decimal(str(row.rate))
                    for row in result.scalars().all()
                }
        except SQLAlchemyError as e:
            logger.error("Failed to refresh exchange rates, keeping stale cache", error=str(e))
            return len(self._stale)

        self.cache.put(snapshot)
        self._stale = snapshot
        self._publish(snapshot)
        logger.debug("Exchange rate cache refreshed", pairs=len(snapshot))
        return len(snapshot)

    async def _snapshot(self) -> RateSnapshot:
        snapshot = self.cache.get()
        if snapshot is None:
            await self.refresh_rates()
            snapshot = self.cache.get()
        return snapshot if snapshot is not None else self._stale

    async def get_rate(self, from_currency: str, to_currency: str) -> Decimal:
        from_currency = from_currency.upper()
        to_currency = to_currency.upper()
        if from_currency == to_currency:
            return Decimal("1")

        snapshot = await self._snapshot()
        rate = snapshot.get((from_currency, to_currency))
        if rate is None:
            logger.warning(
                "Exchange rate not found, using 1:1",
                from_currency=from_currency,
                to_currency=to_currency,
            )
            return Decimal("1")
        return rate

    async def convert_amount(
        self, amount: Decimal | int | str, from_currency: str, to_currency: str
    ) -> Decimal:
        """Convert and round to the target currency's minor unit."""
        rate = await self.get_rate(from_currency, to_currency)
        return quantize_amount(Decimal(str(amount)) * rate, to_currency.upper())

    async def update_rate(
        self, from_currency: str, to_currency: str, rate: Decimal | float | str, source: str = "manual"
    ) -> ExchangeRate:
        """Upsert a pair and refresh the cache immediately."""
        from_currency = from_currency.strip().upper()
        to_currency = to_currency.strip().upper()
        try:
            value = Decimal(str(rate))
            valid = value.is_finite() and value > 0
        except InvalidOperation:
            valid = False
        if not from_currency or not to_currency or not valid:
            raise InvalidExchangeRateError(
                f"Invalid rate {rate!r} for {from_currency}->{to_currency}",
                from_currency=from_currency,
                to_currency=to_currency,
            )

        async with self.session_factory() as session:
            result = await session.execute(
                select(ExchangeRate).where(
                    ExchangeRate.from_currency == from_currency,
                    ExchangeRate.to_currency == to_currency,
                )
            )
            record = result.scalar_one_or_none()
            if record is None:
                record = ExchangeRate(from_currency=from_currency, to_currency=to_currency)
                session.add(record)
            record.rate = value
            record.source = source
            record.is_active = True
            await session.commit()

        logger.info(
            "Exchange rate updated",
            from_currency=from_currency,
            to_currency=to_currency,
            rate=str(value),
            source=source,
        )
        log_audit_event(
            "exchange_rate.updated",
            "billing",
            resource_type="exchange_rate",
            resource_id=f"{from_currency}->{to_currency}",
            rate=str(value),
            source=source,
        )
        await self.refresh_rates()
        return record

    async def get_all_rates(self) -> list[dict[str, Any]]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(ExchangeRate).order_by(ExchangeRate.from_currency, ExchangeRate.to_currency)
            )
            return [
                {
                    "from_currency": row.from_currency,
                    "to_currency": row.to_currency,
                    "rate": str(row.rate),
                    "source": row.source,
                    "is_active": row.is_active,
                    "updated_at": row.updated_at.isoformat() if row.updated_at else None,
                }
                for row in result.scalars().all()
            ]

    def cache_info(self) -> dict[str, Any]:
        snapshot = self.cache.get()
        pairs: list[RatePair] = sorted((snapshot or self._stale).keys())
        return {
            "size": len(pairs),
            "pairs": [f"{a}->{b}" for a, b in pairs],
            "loaded_at": self.cache.loaded_at.isoformat() if self.cache.loaded_at else None,
            "age_seconds": self.cache.age_seconds,
            "ttl_seconds": self.cache.ttl_seconds,
            "is_fresh": snapshot is not None,
        }

    async def refresh_from_source(self, base_currency: str | None = None) -> int:
        """Pull current rates from the configured HTTP source. Returns pairs written."""
        if self.source is None:
            logger.debug("No exchange rate source configured")
            return 0

        base = (base_currency or self.billing.default_currency).upper()
        targets = [c.upper() for c in self.billing.supported_currencies if c.upper() != base]
        try:
            rates = await self.source.fetch_rates(base, targets)
        except ExchangeRateSourceError as e:
            logger.warning("Exchange rate source unavailable", base=base, error=str(e))
            return 0

        written = 0
        for currency, rate in rates.items():
            await self.update_rate(base, currency, rate, source=self.source.name)
            inverse = (Decimal("1") / rate).quantize(Decimal("0.00000001"))
            await self.update_rate(currency, base, inverse, source=self.source.name)
            written += 2
        logger.info("Exchange rates refreshed from source", base=base, pairs=written)
        return written


__all__ = ["ExchangeRateService"]
