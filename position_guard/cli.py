"""
CLI entrypoint for the Position Guard.

Provides commands for running the protection monitors, inspecting the
active strategy's tiers, reconciling a close and viewing recent close
decisions.
"""
import asyncio
import signal
import sys
import traceback
from pathlib import Path
from typing import Optional

import typer

from position_guard.config.config import Config, load_config
from position_guard.monitoring.logger import get_logger, setup_logging
from position_guard.storage.db import init_db

app = typer.Typer(
    name="position-guard",
    help="Code-level stop-loss and trailing-stop protection for perpetual swaps",
    add_completion=False,
)

logger = get_logger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).parent / "config" / "config.yaml"


def _load(config_path: Path, log_file: Optional[Path] = None) -> Config:
    try:
        config = load_config(str(config_path))
    except Exception as e:
        print("=" * 80, file=sys.stderr)
        print("CRITICAL ERROR - Failed to load configuration", file=sys.stderr)
        print("=" * 80, file=sys.stderr)
        print(f"Error: {e}", file=sys.stderr)
        print(f"Type: {type(e).__name__}", file=sys.stderr)
        print("=" * 80, file=sys.stderr)
        raise typer.Exit(1)

    setup_logging(
        config.monitoring.log_level,
        config.monitoring.log_format,
        log_file=str(log_file) if log_file else config.monitoring.log_file,
    )
    return config


def _init_ledger(config: Config) -> None:
    if not config.data.database_url:
        typer.secho("DATABASE_URL is not set", fg=typer.colors.RED, bold=True)
        raise typer.Exit(1)
    init_db(config.data.database_url)


@app.command()
def run(
    config_path: Path = typer.Option(DEFAULT_CONFIG_PATH, "--config", help="Path to config file"),
    log_file: Optional[Path] = typer.Option(None, "--log-file", help="Path to log file"),
):
    """
    Run the stop-loss and trailing-stop monitors until SIGINT/SIGTERM.

    Monitors whose tiers the active strategy lacks are not started.

    Example:
        python run.py run
    """
    config = _load(config_path, log_file)

    _init_ledger(config)

    from position_guard.data.exchange_client import CcxtExchangeGateway
    from position_guard.live.protection_supervisor import ProtectionSupervisor

    async def run_guard():
        gateway = CcxtExchangeGateway.from_config(config.exchange)
        if not gateway.has_valid_credentials():
            logger.critical("EXCHANGE_CREDENTIALS_MISSING", exchange=config.exchange.name)
            raise typer.Exit(1)

        supervisor = ProtectionSupervisor(config, gateway)
        shutdown = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, shutdown.set)
            except NotImplementedError:
                # Windows: KeyboardInterrupt still reaches asyncio.run
                pass

        try:
            started = await supervisor.start()
            if not started:
                typer.echo(f"Strategy '{supervisor.profile.name}' has no code-level protection. Nothing to run.")
                return
            logger.info("GUARD_RUNNING", environment=config.environment, monitors=started)
            await shutdown.wait()
        finally:
            await supervisor.stop()
            await gateway.close()

    try:
        asyncio.run(run_guard())
    except KeyboardInterrupt:
        logger.info("Position guard stopped by user")
    except typer.Exit:
        raise
    except Exception as e:
        logger.critical("GUARD_FAILED", error=str(e), error_type=type(e).__name__)
        traceback.print_exc(file=sys.stderr)
        raise typer.Exit(1)


@app.command()
def tiers(
    config_path: Path = typer.Option(DEFAULT_CONFIG_PATH, "--config", help="Path to config file"),
):
    """
    Show the active strategy's stop-loss and trailing-stop tiers.

    Example:
        TRADING_STRATEGY=swing-trend python run.py tiers
    """
    config = _load(config_path)
    profile = config.strategy.active_profile()

    typer.echo(f"Strategy: {profile.name}")
    typer.echo(f"Code-level protection: {'on' if profile.code_level_protection else 'off'}")
    typer.echo("=" * 50)

    if profile.stop_loss_tiers:
        typer.echo("\nStop-loss (by leverage)")
        for t in profile.stop_loss_tiers:
            upper = f"{t.max_leverage}x" if t.max_leverage is not None else "+"
            typer.echo(f"  {t.label:<12} {t.min_leverage}x-{upper:<6} stop at {t.stop_loss_percent}%")
    else:
        typer.echo("\nStop-loss: not configured")

    if profile.trailing_stop_tiers:
        typer.echo("\nTrailing stop (by peak ROI)")
        for t in profile.trailing_stop_tiers:
            upper = f"{t.max_profit}%" if t.max_profit is not None else "+"
            typer.echo(f"  {t.label:<12} {t.min_profit}%-{upper:<6} give back {t.drawdown_percent}%")
    else:
        typer.echo("\nTrailing stop: not configured")


@app.command()
def reconcile(
    symbol: str = typer.Argument(..., help="Ledger symbol, e.g. BTC"),
    config_path: Path = typer.Option(DEFAULT_CONFIG_PATH, "--config", help="Path to config file"),
):
    """
    Re-check the latest close trade of a symbol and patch it if it is off.

    Example:
        python run.py reconcile BTC
    """
    config = _load(config_path)
    _init_ledger(config)

    from position_guard.data.exchange_client import CcxtExchangeGateway
    from position_guard.reconciliation.ledger_reconciler import LedgerReconciler

    async def run_reconcile():
        gateway = CcxtExchangeGateway.from_config(config.exchange)
        try:
            reconciler = LedgerReconciler(
                gateway,
                fee_rate=config.monitor.fee_rate,
                price_tolerance=config.monitor.reconcile_price_tolerance,
                pnl_tolerance=config.monitor.reconcile_pnl_tolerance,
                fee_tolerance=config.monitor.reconcile_fee_tolerance,
                settle_currency=config.exchange.settle_currency,
            )
            return await reconciler.reconcile(symbol.upper())
        finally:
            await gateway.close()

    outcome = asyncio.run(run_reconcile())
    color = typer.colors.YELLOW if outcome.patched else typer.colors.GREEN
    typer.secho(f"{outcome.symbol}: {outcome.status.value}", fg=color, bold=True)
    if outcome.price is not None:
        typer.echo(f"  Price: {outcome.price}")
        typer.echo(f"  PnL:   {outcome.pnl}")
        typer.echo(f"  Fee:   {outcome.fee}")


@app.command()
def decisions(
    limit: int = typer.Option(10, "--limit", help="Number of decisions to show"),
    config_path: Path = typer.Option(DEFAULT_CONFIG_PATH, "--config", help="Path to config file"),
):
    """
    Show the most recent automatic close decisions.

    Example:
        python run.py decisions --limit 5
    """
    config = _load(config_path)
    _init_ledger(config)

    from position_guard.storage.repository import get_recent_decisions

    rows = get_recent_decisions(limit)
    if not rows:
        typer.echo("No decisions recorded yet.")
        return
    for row in rows:
        typer.echo("-" * 50)
        typer.echo(f"#{row['id']} {row['timestamp']:%Y-%m-%d %H:%M:%S}")
        typer.echo(row["decision"])


@app.callback()
def main(
    version: bool = typer.Option(False, "--version", help="Show version and exit"),
):
    """
    Position Guard

    Closes leveraged swap positions when their ROI% breaches the active
    strategy's stop-loss or trailing-stop tier.
    """
    if version:
        typer.echo("Position Guard v1.0.0")
        raise typer.Exit()


if __name__ == "__main__":
    app()
