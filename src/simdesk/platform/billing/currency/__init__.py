"""Exchange rates and currency conversion."""

from simdesk.platform.billing.currency.models import ExchangeRate
from simdesk.platform.billing.currency.service import ExchangeRateService

__all__ = ["ExchangeRate", "ExchangeRateService"]
