"""HTTP exchange rate source."""

from decimal import Decimal, InvalidOperation

import httpx
import structlog

logger = structlog.get_logger(__name__)


class ExchangeRateSourceError(Exception):
    """Rate source unreachable or returned unusable data."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class HttpRateSource:
    """
    Fetches rates from a JSON endpoint shaped like ``{"rates": {"AED": 3.6725}}``.

    The base currency is passed as the ``base`` query parameter.
    """

    name = "api"

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.url = url
        self.timeout = timeout
        self._transport = transport

    async def fetch_rates(self, base_currency: str, target_currencies: list[str]) -> dict[str, Decimal]:
        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout), transport=self._transport
            ) as client:
                response = await client.get(self.url, params={"base": base_currency})
        except httpx.TimeoutException as e:
            raise ExchangeRateSourceError(f"Rate source timeout: {self.url}") from e
        except httpx.RequestError as e:
            raise ExchangeRateSourceError(f"Rate source request failed: {e}") from e

        if response.status_code >= 400:
            raise ExchangeRateSourceError(
                f"Rate source returned HTTP {response.status_code}", status_code=response.status_code
            )

        try:
            rates = response.json().get("rates") or {}
        except ValueError as e:
            raise ExchangeRateSourceError("Rate source returned a non-JSON body") from e

        result: dict[str, Decimal] = {}
        for currency in target_currencies:
            if currency == base_currency or currency not in rates:
                continue
            try:
                rate = Decimal(str(rates[currency]))
            except InvalidOperation:
                logger.warning("Ignoring malformed rate", currency=currency, value=rates[currency])
                continue
            if rate > 0:
                result[currency] = rate
        return result
