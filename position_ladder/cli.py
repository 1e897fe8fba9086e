"""
CLI entrypoint for the Bitunix position ladder engine.

Provides commands to run the service, run a single reconciliation tick,
inspect and track positions, close positions manually and browse history.
"""
import asyncio
import json
import signal
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import List, Optional

import typer

from position_ladder.config.config import Config, load_config
from position_ladder.domain.models import Direction, Position
from position_ladder.exceptions import PositionLadderError
from position_ladder.monitoring.logger import get_logger, setup_logging
from position_ladder.storage.db import init_db
from position_ladder.storage.repository import HistoryStore, PositionStore

app = typer.Typer(
    name="position-ladder",
    help="Bitunix position reconciliation and take-profit ladder engine",
    add_completion=False,
)

logger = get_logger(__name__)

ConfigOption = typer.Option(None, "--config", help="Path to config file (defaults to the packaged config.yaml)")


def _load(config_path: Optional[Path], log_file: Optional[Path] = None) -> Config:
    try:
        config = load_config(str(config_path) if config_path else None)
    except (FileNotFoundError, ValueError) as e:
        typer.secho(f"Failed to load configuration: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)
    setup_logging(
        config.monitoring.log_level,
        config.monitoring.log_format,
        log_file=str(log_file) if log_file else config.monitoring.log_file,
    )
    return config


def _parse_decimal(value: str, what: str) -> Decimal:
    try:
        return Decimal(value)
    except InvalidOperation:
        raise typer.BadParameter(f"invalid {what}: {value!r}")


def _parse_direction(value: Optional[str]) -> Optional[Direction]:
    if value is None:
        return None
    try:
        return Direction.from_raw(value)
    except PositionLadderError as e:
        raise typer.BadParameter(str(e))


def _print_position(p: Position) -> None:
    allocated = ", ".join(str(q) for q in p.allocated_qty_per_level)
    typer.echo(
        f"{p.symbol:<14} {p.direction.value:<5} {p.status.value:<12} "
        f"qty {p.current_qty}/{p.total_qty}  entry {p.avg_entry_price}  "
        f"next TP {p.next_level_index}/{len(p.targets)}  SL {p.stop_loss}"
        f"{' (placed)' if p.sl_placed else ''}"
    )
    typer.echo(f"{'':<14} allocated [{allocated}]  version {p.version}")


@app.command()
def run(
    config_path: Optional[Path] = ConfigOption,
    no_tpsl: bool = typer.Option(False, "--no-tpsl", help="Track positions without placing TP/SL orders"),
    log_file: Optional[Path] = typer.Option(None, "--log-file", help="Path to log file"),
):
    """
    Run the reconciliation loop and the price monitor until interrupted.

    Example:
        python run.py run
    """
    config = _load(config_path, log_file)
    from position_ladder.live.engine import LadderService

    async def run_service():
        service = LadderService(config)
        if no_tpsl:
            service.set_tpsl_enabled(False)
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, service.stop)
            except NotImplementedError:
                pass
        await service.run()

    try:
        asyncio.run(run_service())
    except KeyboardInterrupt:
        logger.info("Ladder service stopped by user")
    except Exception as e:
        logger.critical("Ladder service failed", error=str(e), error_type=type(e).__name__, exc_info=True)
        raise typer.Exit(1)


@app.command("reconcile-once")
def reconcile_once(config_path: Optional[Path] = ConfigOption):
    """Run a single reconciliation tick and print the outcome per position."""
    config = _load(config_path)
    from position_ladder.live.engine import LadderService

    async def tick():
        service = LadderService(config)
        try:
            return await service.reconcile_once()
        finally:
            await service.gateway.close()
            service.db.dispose()

    report = asyncio.run(tick())
    if report.aborted_reason:
        typer.secho(f"Tick aborted: {report.aborted_reason}", fg=typer.colors.YELLOW)
    for o in report.outcomes:
        line = f"{str(o.key):<24} {o.outcome.value}"
        if o.detail:
            line += f"  ({o.detail})"
        if o.error_type:
            line += f"  [{o.error_type}]"
        typer.echo(line)
    typer.echo(f"persisted={report.persisted} removed={report.removed} {report.counts()}")
    if report.aborted_reason:
        raise typer.Exit(1)


@app.command()
def status(config_path: Optional[Path] = ConfigOption):
    """List tracked master positions."""
    config = _load(config_path)
    db = init_db(config.storage.database_url)
    try:
        positions = PositionStore(db).load()
    finally:
        db.dispose()
    if not positions:
        typer.echo("No tracked positions")
        return
    for p in positions:
        _print_position(p)


@app.command()
def track(
    symbol: str = typer.Argument(..., help="Contract symbol, e.g. BTCUSDT"),
    direction: str = typer.Argument(..., help="long or short"),
    entry: List[str] = typer.Option(..., "--entry", help="Entry order as PRICE:QTY (repeatable)"),
    target: List[str] = typer.Option(..., "--target", help="Take-profit target price (repeatable, in order)"),
    stop: str = typer.Option(..., "--stop", help="Stop-loss price"),
    note: Optional[str] = typer.Option(None, "--note"),
    config_path: Optional[Path] = ConfigOption,
):
    """
    Start tracking a position whose entry orders have been placed.

    Example:
        python run.py track BTCUSDT long --entry 100:3 --entry 98:2 --target 105 --target 110 --stop 95
    """
    config = _load(config_path)
    prices, qtys = [], []
    for item in entry:
        price, sep, qty = item.partition(":")
        if not sep:
            raise typer.BadParameter(f"entry must be PRICE:QTY, got {item!r}")
        prices.append(_parse_decimal(price, "entry price"))
        qtys.append(_parse_decimal(qty, "entry quantity"))

    try:
        position = Position.from_signal(
            symbol,
            _parse_direction(direction),
            prices,
            qtys,
            [_parse_decimal(t, "target") for t in target],
            _parse_decimal(stop, "stop"),
            note=note,
        )
    except PositionLadderError as e:
        typer.secho(f"Invalid position: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)

    db = init_db(config.storage.database_url)
    try:
        store = PositionStore(db, max_write_attempts=config.storage.max_write_attempts)
        existing = store.get(position.key)
        stored = store.create(position)
    finally:
        db.dispose()
    if existing is not None and existing.is_active:
        typer.secho("An active position already exists for this symbol and direction:", fg=typer.colors.YELLOW)
    _print_position(stored)


def _closer(config: Config):
    from position_ladder.data.bitunix_client import BitunixClient
    from position_ladder.execution.trade_closer import TradeCloser
    from position_ladder.reconciliation.history import HistoryRecorder

    db = init_db(config.storage.database_url)
    client = BitunixClient.from_config(config)
    history = HistoryRecorder(HistoryStore(db), client)
    return db, client, TradeCloser(client, history=history, qty_decimals=config.ladder.qty_decimals)


def _print_close_results(results) -> bool:
    ok = True
    for r in results:
        color = typer.colors.GREEN if r.success else typer.colors.RED
        typer.secho(f"{r.symbol:<14} {'closed' if r.success else 'failed'}  qty {r.closed_qty}  {r.message}", fg=color)
        ok = ok and r.success
    return ok


@app.command()
def close(
    symbol: str = typer.Argument(..., help="Contract symbol"),
    direction: Optional[str] = typer.Option(None, "--direction", help="Close only the long or short side"),
    config_path: Optional[Path] = ConfigOption,
):
    """Market-close the live position(s) on a symbol."""
    config = _load(config_path)
    side = _parse_direction(direction)

    async def do_close():
        db, client, closer = _closer(config)
        try:
            return await closer.close_running_trade(symbol, side)
        finally:
            await client.close()
            db.dispose()

    if not _print_close_results([asyncio.run(do_close())]):
        raise typer.Exit(1)


@app.command("close-all")
def close_all(
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
    config_path: Optional[Path] = ConfigOption,
):
    """Market-close every live position on the account."""
    config = _load(config_path)
    if not yes and not typer.confirm("Close ALL open positions at market?"):
        raise typer.Abort()

    async def do_close_all():
        db, client, closer = _closer(config)
        try:
            return await closer.close_all_positions()
        finally:
            await client.close()
            db.dispose()

    results = asyncio.run(do_close_all())
    if not results:
        typer.echo("No open positions")
        return
    if not _print_close_results(results):
        raise typer.Exit(1)


@app.command("import-legacy")
def import_legacy(
    path: Path = typer.Argument(..., exists=True, dir_okay=False, help="JSON file with legacy position records"),
    config_path: Optional[Path] = ConfigOption,
):
    """Import legacy position records (a JSON list, or an object keyed by position)."""
    config = _load(config_path)
    try:
        payload = json.loads(path.read_text())
    except json.JSONDecodeError as e:
        typer.secho(f"Invalid JSON in {path}: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)

    if isinstance(payload, dict):
        records = list(payload.values())
    elif isinstance(payload, list):
        records = payload
    else:
        typer.secho("Expected a JSON list or object of position records", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)

    db = init_db(config.storage.database_url)
    try:
        summary = PositionStore(db).import_records(r for r in records if isinstance(r, dict))
    finally:
        db.dispose()
    typer.echo(f"imported={summary['imported']} existing={summary['existing']} invalid={summary['invalid']}")


@app.command()
def history(
    limit: int = typer.Option(50, "--limit", help="Number of most recent entries"),
    retired: bool = typer.Option(False, "--retired", help="Show retired master records instead"),
    config_path: Optional[Path] = ConfigOption,
):
    """Show captured closed positions."""
    config = _load(config_path)
    db = init_db(config.storage.database_url)
    store = HistoryStore(db)
    try:
        if retired:
            for p in store.retired_positions(limit):
                _print_position(p)
            return
        trades = store.closed_trades(limit)
    finally:
        db.dispose()

    if not trades:
        typer.echo("No closed positions recorded")
        return
    for t in trades:
        typer.echo(
            f"{t.close_time:%Y-%m-%d %H:%M} {t.symbol:<14} {t.side:<5} qty {t.qty}  "
            f"entry {t.entry_price} close {t.close_price}  pnl {t.realized_pnl}  [{t.close_source}]"
        )


def main() -> None:
    app()


if __name__ == "__main__":
    main()
