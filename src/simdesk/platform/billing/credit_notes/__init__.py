"""Daily credit notes for cancelled subscriptions."""

from simdesk.platform.billing.credit_notes.models import CreditNote, CreditNoteItem
from simdesk.platform.billing.credit_notes.service import CreditNoteBatchResult, CreditNoteGenerator

__all__ = ["CreditNote", "CreditNoteBatchResult", "CreditNoteGenerator", "CreditNoteItem"]
