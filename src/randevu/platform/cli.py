#!/usr/bin/env python
"""
CLI management commands for Randevu Platform Services.
"""

import asyncio
import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import click
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from randevu.platform.billing.payments.coordinator import PaymentCoordinator
from randevu.platform.billing.subscriptions.catalog import PlanCatalog
from randevu.platform.billing.subscriptions.renewal import RenewalProcessor
from randevu.platform.billing.subscriptions.seed import DEFAULT_PLANS
from randevu.platform.db import create_all_tables_async, get_async_engine, get_session_maker


@dataclass
class CLIDependencies:
    """Bundle of injectable dependencies used by CLI commands."""

    session_factory: Callable[[], async_sessionmaker[AsyncSession]]
    create_tables: Callable[[], Awaitable[None]]
    payments_factory: Callable[[], PaymentCoordinator]


def _get_cli_dependencies() -> CLIDependencies:
    """Return the default dependency bundle for CLI commands."""
    from randevu.platform.billing.dependencies import get_payment_coordinator

    return CLIDependencies(
        session_factory=get_session_maker,
        create_tables=create_all_tables_async,
        payments_factory=get_payment_coordinator,
    )


def _run(coro_factory: Callable[[], Awaitable[Any]]) -> Any:
    async def run() -> Any:
        try:
            return await coro_factory()
        finally:
            await get_async_engine().dispose()

    return asyncio.run(run())


def _echo_summary(title: str, summary: dict[str, Any]) -> None:
    click.echo(f"{title}:")
    click.echo(json.dumps(summary, indent=2))


@click.group()
def cli() -> None:
    """Randevu Platform Services CLI."""
    pass


@cli.command()
def init_database() -> None:
    """Create the billing tables."""
    deps = _get_cli_dependencies()
    click.echo("Initializing database...")
    _run(deps.create_tables)
    click.echo("Database initialized successfully!")


@cli.command()
def seed_plans() -> None:
    """Insert the default subscription plans (existing names are skipped)."""
    deps = _get_cli_dependencies()

    async def _seed() -> list[str]:
        async with deps.session_factory()() as session:
            plans = await PlanCatalog(session).seed_plans(DEFAULT_PLANS)
            await session.commit()
            return [plan.name for plan in plans]

    created = _run(_seed)
    if created:
        click.echo(f"Seeded plans: {', '.join(created)}")
    else:
        click.echo("All default plans already exist")


@cli.command()
def process_renewals() -> None:
    """Run one renewal sweep now."""
    deps = _get_cli_dependencies()

    async def _sweep() -> dict[str, Any]:
        processor = RenewalProcessor(deps.session_factory(), deps.payments_factory())
        return (await processor.process_subscription_renewals()).model_dump()

    _echo_summary("Renewal sweep", _run(_sweep))


@cli.command()
def process_expired() -> None:
    """Run one expiry-only sweep now (never charges)."""
    deps = _get_cli_dependencies()

    async def _sweep() -> dict[str, Any]:
        processor = RenewalProcessor(deps.session_factory(), deps.payments_factory())
        return (await processor.process_expired_subscriptions()).model_dump()

    _echo_summary("Expiry sweep", _run(_sweep))


@cli.command()
def cancel_delinquent() -> None:
    """Cancel past-due subscriptions that exhausted their payment retries."""
    deps = _get_cli_dependencies()

    async def _sweep() -> dict[str, Any]:
        processor = RenewalProcessor(deps.session_factory(), deps.payments_factory())
        return (await processor.cancel_delinquent_subscriptions()).model_dump()

    _echo_summary("Dunning sweep", _run(_sweep))


if __name__ == "__main__":
    cli()
