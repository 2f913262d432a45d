"""
Model registry.

Importing this module registers every table on ``Base.metadata``.
"""

from simdesk.platform.billing.credit_notes.models import CreditNote, CreditNoteItem
from simdesk.platform.billing.currency.models import ExchangeRate
from simdesk.platform.companies.models import Company, Employee
from simdesk.platform.db import Base
from simdesk.platform.subscriptions.models import DataPlan, Subscription

__all__ = [
    "Base",
    "Company",
    "Employee",
    "DataPlan",
    "Subscription",
    "ExchangeRate",
    "CreditNote",
    "CreditNoteItem",
]
