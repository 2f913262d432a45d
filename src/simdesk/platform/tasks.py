"""
Celery task definitions.

Each task builds its own platform wiring inside ``asyncio.run`` and tears it
down afterwards; worker processes keep no state between runs.
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import date
from typing import Any, TypeVar

import structlog

from simdesk.platform.bootstrap import Platform, build_platform
from simdesk.platform.celery_app import celery_app

logger = structlog.get_logger(__name__)

T = TypeVar("T")


async def _run_with_platform(func: Callable[[Platform], Awaitable[T]]) -> T:
    platform = build_platform()
    try:
        return await func(platform)
    finally:
        await platform.stop()


def run_with_platform(func: Callable[[Platform], Awaitable[T]]) -> T:
    return asyncio.run(_run_with_platform(func))


@celery_app.task(name="credit_notes.process_daily")
def process_daily_credit_notes_task(
    credit_date: str | None = None, dry_run: bool = False
) -> dict[str, Any]:
    """Issue the day's credit notes. ``credit_date`` is ISO formatted; defaults to today."""
    day = date.fromisoformat(credit_date) if credit_date else None

    async def _run(platform: Platform) -> dict[str, Any]:
        batch = await platform.credit_notes.process_daily_credit_notes(day, dry_run=dry_run)
        return batch.to_dict()

    result = run_with_platform(_run)
    logger.info(
        "Credit note task finished",
        issued=len(result["credit_notes"]),
        failed=len(result["failed_companies"]),
    )
    return result


@celery_app.task(name="credit_notes.retry_notifications")
def retry_credit_note_notifications_task(limit: int = 50) -> dict[str, Any]:
    async def _run(platform: Platform) -> int:
        return await platform.credit_notes.retry_pending_notifications(limit=limit)

    return {"sent": run_with_platform(_run)}


@celery_app.task(name="currency.refresh_rates")
def refresh_exchange_rates_task() -> dict[str, Any]:
    """Pull rates from the configured source and reload the cache."""

    async def _run(platform: Platform) -> dict[str, Any]:
        written = await platform.exchange_rates.refresh_from_source()
        cached = await platform.exchange_rates.refresh_rates()
        return {"status": "ok", "pairs_written": written, "pairs_cached": cached}

    return run_with_platform(_run)


__all__ = [
    "process_daily_credit_notes_task",
    "refresh_exchange_rates_task",
    "retry_credit_note_notifications_task",
]
