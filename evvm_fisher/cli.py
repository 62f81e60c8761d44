"""
CLI entry point for the EVVM Fisher relay.
"""

import asyncio
import signal
from pathlib import Path
from typing import Optional

import typer
import structlog

from .config import ConfigurationError, FisherConfig, MATE_TOKEN
from .db import ExecutionDatabase
from .evm import ChainGateway, ChainGatewayError
from .relayer import FisherRelayer, IneligibleRelayError
from .stats import StatsLedger, format_units

# Configure structlog
structlog.configure(
    processors=[
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer(),
    ]
)

app = typer.Typer(
    name="evvm-fisher",
    help="EVVM Fisher - gasless payment relay",
    add_completion=False,
)

ConfigOption = typer.Option(
    None,
    "--config",
    "-c",
    help="Path to .env configuration file",
)


def _load_config(config_path: Optional[Path]) -> FisherConfig:
    config = FisherConfig.from_env(config_path)
    try:
        config.validate()
    except ConfigurationError as e:
        typer.echo(f"Configuration error: {e}", err=True)
        raise typer.Exit(code=1)
    return config


def _open_database(config: FisherConfig) -> ExecutionDatabase:
    if not config.persistence_enabled:
        typer.echo("Statistics persistence is disabled (FISHER_DATABASE_URL is empty).", err=True)
        raise typer.Exit(code=1)
    return ExecutionDatabase(config.settings.database_url)


async def _run_relayer(relayer: FisherRelayer):
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, relayer.request_stop)
        except NotImplementedError:
            # Windows event loops; Ctrl+C still surfaces as KeyboardInterrupt
            pass
    return await relayer.run()


@app.command()
def run(config_path: Optional[Path] = ConfigOption) -> None:
    """
    Start the fisher: watch pending pay() intents and execute the valid ones.
    """
    config = _load_config(config_path)

    if not config.settings.enabled:
        typer.echo("Fisher is disabled (FISHER_ENABLED is not true). Nothing to do.")
        return

    try:
        relayer = FisherRelayer(config)
    except ConfigurationError as e:
        typer.echo(f"Configuration error: {e}", err=True)
        raise typer.Exit(code=1)

    typer.echo(f"Fisher address: {relayer.gateway.address}")
    typer.echo("Running in continuous mode. Press Ctrl+C to stop.")

    try:
        stats = asyncio.run(_run_relayer(relayer))
    except IneligibleRelayError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1)
    except ChainGatewayError as e:
        typer.echo(f"Startup failed: {e}", err=True)
        raise typer.Exit(code=1)
    except KeyboardInterrupt:
        typer.echo("\nStopping fisher...")
        stats = relayer.ledger.snapshot()

    typer.echo("")
    for line in stats.summary_lines():
        typer.echo(line)


@app.command()
def check(config_path: Optional[Path] = ConfigOption) -> None:
    """
    Check connectivity and eligibility of the fisher wallet (no transactions sent).
    """
    config = _load_config(config_path)
    settings = config.settings

    try:
        account = config.load_account()
    except ConfigurationError as e:
        typer.echo(f"Configuration error: {e}", err=True)
        raise typer.Exit(code=1)

    gateway = ChainGateway(
        rpc_url=settings.rpc_url,
        account=account,
        evvm_address=settings.evvm_address,
        staking_address=settings.staking_address,
        chain_id=settings.chain_id,
    )

    async def probe() -> bool:
        try:
            if not await gateway.check_connectivity():
                typer.echo(f"Cannot connect to RPC: {settings.rpc_url}")
                return False

            evvm_id = settings.evvm_id if settings.evvm_id is not None else await gateway.get_evvm_id()
            golden = await gateway.get_golden_fisher()
            staker = await gateway.is_staker(account.address)
            balance = await gateway.get_balance(account.address, MATE_TOKEN)

            typer.echo(f"Fisher address: {account.address}")
            typer.echo(f"Block: {await gateway.get_block_number()}")
            typer.echo(f"EVVM: {settings.evvm_address} (id {evvm_id})")
            typer.echo(f"Staker: {'yes' if staker else 'no'}")
            typer.echo(f"Golden fisher: {'yes' if golden.lower() == account.address.lower() else 'no'}")
            typer.echo(f"MATE balance: {format_units(balance)}")
            return staker or golden.lower() == account.address.lower()
        finally:
            await gateway.close()

    try:
        eligible = asyncio.run(probe())
    except ChainGatewayError as e:
        typer.echo(f"Chain read failed: {e}", err=True)
        raise typer.Exit(code=1)

    if not eligible:
        typer.echo("Fisher is not eligible to relay. Stake MATE tokens first.")
        raise typer.Exit(code=1)


@app.command()
def stats(
    config_path: Optional[Path] = ConfigOption,
    limit: int = typer.Option(10, "--limit", "-n", help="Number of recent executions to show"),
) -> None:
    """
    Show persisted execution statistics.
    """
    config = _load_config(config_path)
    db = _open_database(config)
    ledger = StatsLedger.restore(db)

    for line in ledger.snapshot().summary_lines():
        typer.echo(line)

    recent = db.recent_executions(limit)
    if recent:
        typer.echo(f"\nRecent executions ({len(recent)}):")
    for record in recent:
        mark = "✓" if record.success else "✗"
        detail = record.tx_hash or record.failure_reason or "-"
        typer.echo(
            f"  {mark} {detail}  amount={record.amount} fee={record.priority_fee} profit={record.profit}"
        )
    db.close()


@app.command(name="reset-stats")
def reset_stats(
    config_path: Optional[Path] = ConfigOption,
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
) -> None:
    """
    Delete the persisted execution history.
    """
    config = _load_config(config_path)
    db = _open_database(config)

    if not yes and not typer.confirm(f"Delete {db.count_executions()} stored executions?"):
        db.close()
        raise typer.Abort()

    removed = db.clear()
    db.close()
    typer.echo(f"Removed {removed} executions.")


@app.command()
def version() -> None:
    """Show the fisher version."""
    from evvm_fisher import __version__
    typer.echo(f"evvm-fisher v{__version__}")


def main() -> None:
    """Main entry point."""
    app()


if __name__ == "__main__":
    main()
