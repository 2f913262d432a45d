"""
Credit note numbering: ``CN-YYYYMMDD-NNNN``.

The sequence restarts at 0001 every calendar day. The next number is derived
from the highest number already issued that day; the unique constraint on
``credit_note_number`` catches two writers racing for the same value.
"""

import re
from datetime import date

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from simdesk.platform.billing.credit_notes.models import CreditNote

_NUMBER_RE = re.compile(r"^(?P<prefix>[A-Z]+)-(?P<day>\d{8})-(?P<seq>\d{4,})$")


def format_credit_note_number(issue_date: date, sequence: int, prefix: str = "CN") -> str:
    return f"{prefix}-{issue_date:%Y%m%d}-{sequence:04d}"


def parse_sequence(number: str) -> int | None:
    match = _NUMBER_RE.match(number)
    return int(match.group("seq")) if match else None


async def next_credit_note_number(session: AsyncSession, issue_date: date, prefix: str = "CN") -> str:
    day_prefix = f"{prefix}-{issue_date:%Y%m%d}-"
    result = await session.execute(
        select(CreditNote.credit_note_number).where(CreditNote.credit_note_number.like(f"{day_prefix}%"))
    )
    sequences = [seq for seq in (parse_sequence(n) for n in result.scalars().all()) if seq is not None]
    return format_credit_note_number(issue_date, max(sequences, default=0) + 1, prefix)


__all__ = ["format_credit_note_number", "next_credit_note_number", "parse_sequence"]
