"""
Email templates for billing events.

All templates carry HTML and plain text versions.
"""

from typing import Any

from simdesk.platform.billing.money_utils import create_money, format_money

EMAIL_TEMPLATES = {
    "credit_note_issued": {
        "subject": "Credit Note {credit_note_number} - {company_name}",
        "html": """
            <h2>Credit Note {credit_note_number}</h2>
            <p>Dear {company_name},</p>
            <p>A credit note has been issued for eSIM subscriptions cancelled on {credit_date}.</p>

            <table style="border-collapse: collapse; width: 100%;">
                <thead>
                    <tr>
                        <th style="text-align: left; padding: 6px;">Item</th>
                        <th style="text-align: right; padding: 6px;">Qty</th>
                        <th style="text-align: right; padding: 6px;">Amount</th>
                    </tr>
                </thead>
                <tbody>
                    {items_html}
                </tbody>
            </table>

            <p><strong>Total credited:</strong> {total_formatted}</p>
            <p><strong>Reason:</strong> {reason}</p>

            <p>The amount has been credited to your account balance.</p>
        """,
        "text": """
Credit Note {credit_note_number}

Dear {company_name},

A credit note has been issued for eSIM subscriptions cancelled on {credit_date}.

{items_text}

Total credited: {total_formatted}
Reason: {reason}

The amount has been credited to your account balance.
        """,
    },
}


def render_template(template_name: str, context: dict[str, Any]) -> tuple[str, str, str]:
    """
    Render an email template with context.

    Returns:
        Tuple of (subject, html_body, text_body)

    Raises:
        KeyError: If the template does not exist
    """
    template = EMAIL_TEMPLATES.get(template_name)
    if template is None:
        raise KeyError(f"Unknown email template: {template_name}")

    subject = template["subject"].format(**context)
    html = template["html"].format(**context)
    text = template["text"].format(**context)

    return subject, html, text


def build_credit_note_context(credit_note: Any, company: Any, items: list[Any]) -> dict[str, Any]:
    """Build template context for a credit note notification."""
    currency = credit_note.currency

    def _fmt(amount: Any) -> str:
        return format_money(create_money(amount, currency))

    rows_html = []
    rows_text = []
    for item in items:
        label = item.description or item.plan_name
        rows_html.append(
            f'<tr><td style="padding: 6px;">{label}</td>'
            f'<td style="text-align: right; padding: 6px;">{item.quantity}</td>'
            f'<td style="text-align: right; padding: 6px;">{_fmt(item.total_amount)}</td></tr>'
        )
        rows_text.append(f"- {label} x{item.quantity}: {_fmt(item.total_amount)}")

    return {
        "credit_note_number": credit_note.credit_note_number,
        "company_name": company.name,
        "credit_date": credit_note.credit_date.isoformat(),
        "items_html": "\n".join(rows_html),
        "items_text": "\n".join(rows_text),
        "total_formatted": _fmt(credit_note.total_amount),
        "reason": credit_note.reason,
    }
