"""Tests for the management CLI."""

import json

import pytest
from click.testing import CliRunner
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from randevu.platform import cli as cli_module
from randevu.platform.cli import CLIDependencies, cli
from randevu.platform.db import create_all_tables_async
from tests.billing.fakes import FakePaymentCoordinator

pytestmark = pytest.mark.integration


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def cli_deps(tmp_path, monkeypatch) -> CLIDependencies:
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'cli.sqlite'}", poolclass=NullPool
    )
    session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    deps = CLIDependencies(
        session_factory=lambda: session_maker,
        create_tables=lambda: create_all_tables_async(engine),
        payments_factory=FakePaymentCoordinator,
    )
    monkeypatch.setattr(cli_module, "_get_cli_dependencies", lambda: deps)
    monkeypatch.setattr(cli_module, "get_async_engine", lambda: engine)
    return deps


class TestCLI:
    def test_init_and_seed(self, runner, cli_deps):
        init = runner.invoke(cli, ["init-database"])
        assert init.exit_code == 0, init.output
        assert "Database initialized successfully!" in init.output

        first = runner.invoke(cli, ["seed-plans"])
        assert first.exit_code == 0, first.output
        assert "Seeded plans: starter, professional, enterprise" in first.output

        second = runner.invoke(cli, ["seed-plans"])
        assert "All default plans already exist" in second.output

    @pytest.mark.parametrize(
        "command,title",
        [
            ("process-renewals", "Renewal sweep:"),
            ("process-expired", "Expiry sweep:"),
            ("cancel-delinquent", "Dunning sweep:"),
        ],
    )
    def test_sweeps_print_summary(self, runner, cli_deps, command, title):
        runner.invoke(cli, ["init-database"])

        result = runner.invoke(cli, [command])

        assert result.exit_code == 0, result.output
        assert result.output.startswith(title)
        summary = json.loads(result.output[len(title):])
        assert summary["processed"] == 0
