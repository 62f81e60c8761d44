"""
Tests for the command line interface.
"""

import asyncio

import pytest
from typer.testing import CliRunner

from evvm_fisher import __version__
from evvm_fisher.cli import app
from evvm_fisher.db import ExecutionDatabase
from evvm_fisher.executor import ExecutionResult
from evvm_fisher.stats import StatsLedger

from .helpers import make_intent
from .test_config import ENV_NAMES

runner = CliRunner()


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    for name in ENV_NAMES:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)


def _env_file(tmp_path, **values) -> str:
    path = tmp_path / "fisher.env"
    path.write_text("".join(f"{key}={value}\n" for key, value in values.items()))
    return str(path)


class TestCli:
    """Tests for the typer commands."""

    def test_version(self) -> None:
        result = runner.invoke(app, ["version"])

        assert result.exit_code == 0
        assert __version__ in result.output

    def test_run_disabled_exits_cleanly(self, tmp_path) -> None:
        config = _env_file(tmp_path, FISHER_ENABLED="false")

        result = runner.invoke(app, ["run", "--config", config])

        assert result.exit_code == 0
        assert "disabled" in result.output

    def test_run_without_key_fails(self, tmp_path) -> None:
        config = _env_file(tmp_path, FISHER_ENABLED="true", FISHER_PRIVATE_KEY="", FISHER_DATABASE_URL="")

        result = runner.invoke(app, ["run", "--config", config])

        assert result.exit_code == 1
        assert "FISHER_PRIVATE_KEY" in result.output

    def test_invalid_policy_fails(self, tmp_path) -> None:
        config = _env_file(tmp_path, FISHER_GOLDEN_SIGNATURE_POLICY="never")

        result = runner.invoke(app, ["check", "--config", config])

        assert result.exit_code == 1

    def test_stats_and_reset(self, tmp_path) -> None:
        db_url = f"sqlite:///{tmp_path / 'fisher.db'}"
        db = ExecutionDatabase(db_url)
        asyncio.run(
            StatsLedger(database=db).record(
                make_intent(amount=777),
                ExecutionResult.succeeded("0x" + "cd" * 32, gas_used=1, gas_cost=1, fee_earned=50),
            )
        )
        db.close()
        config = _env_file(tmp_path, FISHER_DATABASE_URL=db_url)

        result = runner.invoke(app, ["stats", "--config", config])

        assert result.exit_code == 0
        assert "Total Executions: 1" in result.output
        assert "amount=777" in result.output

        result = runner.invoke(app, ["reset-stats", "--config", config, "--yes"])

        assert result.exit_code == 0
        assert "Removed 1 executions." in result.output

    def test_stats_without_database(self, tmp_path) -> None:
        config = _env_file(tmp_path, FISHER_DATABASE_URL="")

        result = runner.invoke(app, ["stats", "--config", config])

        assert result.exit_code == 1
