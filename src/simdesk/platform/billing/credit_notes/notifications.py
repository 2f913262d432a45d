"""Credit note delivery to the company's billing contact."""

from typing import Protocol

import structlog

from simdesk.platform.billing.credit_notes.models import CreditNote, CreditNoteItem
from simdesk.platform.billing.email_templates import build_credit_note_context, render_template
from simdesk.platform.communications.email_service import EmailMessage, EmailService
from simdesk.platform.companies.models import Company

logger = structlog.get_logger(__name__)


class CreditNoteNotifier(Protocol):
    async def send_credit_note(
        self,
        recipient: str,
        credit_note: CreditNote,
        company: Company,
        items: list[CreditNoteItem],
    ) -> bool: ...  # pragma: no cover - protocol definition


class EmailCreditNoteNotifier:
    """Sends the ``credit_note_issued`` template through ``EmailService``."""

    def __init__(self, email_service: EmailService) -> None:
        self.email_service = email_service

    async def send_credit_note(
        self,
        recipient: str,
        credit_note: CreditNote,
        company: Company,
        items: list[CreditNoteItem],
    ) -> bool:
        subject, html, text = render_template(
            "credit_note_issued", build_credit_note_context(credit_note, company, items)
        )
        response = await self.email_service.send_email(
            EmailMessage(to=[recipient], subject=subject, html_body=html, text_body=text)
        )
        if response.status != "sent":
            logger.warning(
                "Credit note email not delivered",
                credit_note_number=credit_note.credit_note_number,
                recipient=recipient,
                reason=response.message,
            )
            return False
        return True


__all__ = ["CreditNoteNotifier", "EmailCreditNoteNotifier"]
