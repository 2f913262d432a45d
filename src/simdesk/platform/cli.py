#!/usr/bin/env python
"""
CLI management commands for the SimDesk platform.
"""

import asyncio
import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import date
from typing import Any

import click

from simdesk.platform.bootstrap import Platform, build_platform
from simdesk.platform.db import create_all_tables_async
from simdesk.platform.logging import setup_logging


@dataclass
class CLIDependencies:
    """Bundle of injectable dependencies used by CLI commands."""

    platform_factory: Callable[[], Platform]
    http_client_cls: type


def _get_cli_dependencies() -> CLIDependencies:
    """Return the default dependency bundle for CLI commands."""
    import httpx

    return CLIDependencies(platform_factory=build_platform, http_client_cls=httpx.AsyncClient)


def _run(deps: CLIDependencies, func: Callable[[Platform], Awaitable[Any]]) -> Any:
    async def _inner() -> Any:
        platform = deps.platform_factory()
        try:
            return await func(platform)
        finally:
            await platform.stop()

    return asyncio.run(_inner())


@click.group()
def cli() -> None:
    """SimDesk platform CLI."""
    setup_logging()


@cli.command()
def init_db() -> None:
    """Create all tables."""
    deps = _get_cli_dependencies()

    async def _init(platform: Platform) -> None:
        if platform.engine is None:
            raise click.ClickException("No database engine configured")
        await create_all_tables_async(platform.engine)

    click.echo("Initializing database...")
    _run(deps, _init)
    click.echo("Database initialized successfully!")


@cli.command()
@click.option(
    "--date",
    "credit_date",
    type=click.DateTime(formats=["%Y-%m-%d"]),
    default=None,
    help="Cancellation day to credit (default: today in business time)",
)
@click.option("--dry-run", is_flag=True, help="Report what would be credited without writing")
def process_credit_notes(credit_date: Any, dry_run: bool) -> None:
    """Run the daily credit note batch."""
    deps = _get_cli_dependencies()
    day: date | None = credit_date.date() if credit_date else None

    async def _process(platform: Platform) -> dict[str, Any]:
        batch = await platform.credit_notes.process_daily_credit_notes(day, dry_run=dry_run)
        return batch.to_dict()

    result = _run(deps, _process)
    click.echo(json.dumps(result, indent=2))
    if result["failed_companies"]:
        raise SystemExit(1)


@cli.command()
@click.option("--limit", default=50, show_default=True, help="Maximum notes to retry")
def retry_notifications(limit: int) -> None:
    """Re-send credit note emails that have not been delivered."""
    deps = _get_cli_dependencies()

    async def _retry(platform: Platform) -> int:
        return await platform.credit_notes.retry_pending_notifications(limit=limit)

    sent = _run(deps, _retry)
    click.echo(f"Delivered {sent} pending credit note email(s)")


@cli.command()
def refresh_rates() -> None:
    """Pull exchange rates from the configured source."""
    deps = _get_cli_dependencies()

    async def _refresh(platform: Platform) -> list[dict[str, Any]]:
        written = await platform.exchange_rates.refresh_from_source()
        click.echo(f"Wrote {written} rate(s)")
        return await platform.exchange_rates.get_all_rates()

    for rate in _run(deps, _refresh):
        click.echo(f"{rate['from_currency']} -> {rate['to_currency']}: {rate['rate']} ({rate['source']})")


@cli.command()
@click.argument("from_currency")
@click.argument("to_currency")
@click.argument("rate")
def set_rate(from_currency: str, to_currency: str, rate: str) -> None:
    """Set one exchange rate manually."""
    deps = _get_cli_dependencies()

    async def _set(platform: Platform) -> None:
        await platform.exchange_rates.update_rate(from_currency, to_currency, rate, source="manual")

    _run(deps, _set)
    click.echo(f"{from_currency.upper()} -> {to_currency.upper()} set to {rate}")


@cli.command()
@click.option(
    "--url",
    default="http://localhost:8000",
    show_default=True,
    help="Base URL of the running service",
)
def reliability_status(url: str) -> None:
    """Show webhook reliability status of a running service."""
    deps = _get_cli_dependencies()

    async def _fetch() -> dict[str, Any]:
        async with deps.http_client_cls(base_url=url, timeout=10.0) as client:
            response = await client.get("/api/webhooks/reliability")
            response.raise_for_status()
            return response.json()

    status = asyncio.run(_fetch())
    click.echo(f"Overall health: {status['overall_health']}")
    click.echo(json.dumps(status, indent=2))


if __name__ == "__main__":
    cli()
