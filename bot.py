"""
Trading execution bot - command-line entry point.

This is the thin composition shell. All behaviour lives in the services the
ServiceContainer wires together:
  run        - reconciliation, risk refresh and portfolio resets on a schedule
  reconcile  - a single reconciliation cycle
  positions  - list positions from the store
  validate   - run the pre-trade risk gate
  size       - fixed-fractional or Kelly position sizing
  close      - close a position with a market order
  risk       - drawdown / exposure summary
"""
import sys
import time
from decimal import Decimal, InvalidOperation
from typing import List

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from loguru import logger

from config import get_config
from container import ServiceContainer, get_container
from execution.errors import TradingError
from execution.models import CloseReason, MarketType, OrderSide, Position, PositionSide, PositionStatus

app = typer.Typer(help="Crypto trading execution core")
console = Console()


def _setup_logging(level: str) -> None:
    logger.remove()
    logger.add(sys.stderr, level=level,
               format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | {message}")


def _container() -> ServiceContainer:
    cfg = get_config()
    _setup_logging(cfg.log_level)
    return get_container(cfg)


def _decimal(value: str, name: str) -> Decimal:
    try:
        return Decimal(value)
    except InvalidOperation:
        console.print(f"[red]Invalid {name}: {value}[/red]")
        raise typer.Exit(2)


def _positions_table(title: str, positions: List[Position]) -> Table:
    table = Table(title=title, show_header=True, header_style="bold magenta")
    for col in ("ID", "Exchange", "Symbol", "Side", "Qty", "Entry", "Price", "uPnL", "Stop", "Target", "Status"):
        table.add_column(col)
    for p in positions:
        pnl = p.realized_pnl if p.status is PositionStatus.CLOSED else p.unrealized_pnl
        colour = "green" if (pnl or 0) >= 0 else "red"
        table.add_row(
            p.position_id, p.exchange, p.symbol, p.side.value.upper(), f"{p.quantity}",
            f"{p.entry_price}", f"{p.current_price or '-'}", f"[{colour}]{pnl or 0:+.4f}[/{colour}]",
            f"{p.stop_loss_price or '-'}", f"{p.take_profit_price or '-'}",
            p.status.value if not p.close_reason else f"{p.status.value} ({p.close_reason.value})")
    return table


@app.command()
def run():
    """Run the scheduled jobs until interrupted."""
    c = _container()
    console.print(Panel.fit("[bold cyan]TRADING EXECUTION CORE[/bold cyan]", border_style="cyan"))
    if c.metrics_server:
        c.metrics_server.start()
    c.scheduler.start()
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        console.print("\nShutting down...")
    finally:
        c.shutdown()


@app.command()
def reconcile():
    """Run one reconciliation cycle and print what changed."""
    c = _container()
    report = c.reconciler.reconcile()
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Outcome", style="cyan")
    table.add_column("Positions")
    for label, ids in (("opened", report.opened), ("updated", report.updated),
                       ("closed", report.closed), ("price skipped", report.price_skipped),
                       ("failed exchanges", report.failed_exchanges)):
        table.add_row(label, ", ".join(ids) or "-")
    for action in report.monitor_actions:
        table.add_row(f"monitor: {action.action}", f"{action.position_id} {action.detail or ''}")
    console.print(table)
    c.shutdown()
    raise typer.Exit(1 if report.failed_exchanges else 0)


@app.command()
def positions(status: str = typer.Option("open", "--status", "-s", help="open or closed")):
    """List positions from the store."""
    try:
        wanted = PositionStatus(status.lower())
    except ValueError:
        console.print(f"[red]Unknown status: {status}[/red]")
        raise typer.Exit(2)
    c = _container()
    console.print(_positions_table(f"{wanted.value.upper()} positions",
                                   c.position_store.find_by_status(wanted)))


@app.command()
def validate(
        symbol: str,
        size: str,
        exchange: str = typer.Option("BYBIT", "--exchange", "-e"),
        side: str = typer.Option("buy", "--side"),
        balance: str = typer.Option(..., "--balance", "-b", help="Account balance in USD"),
        market: str = typer.Option("linear", "--market", "-m"),
):
    """Run the pre-trade risk gate for a proposed order."""
    c = _container()
    decision = c.execution_engine.validate_trade(
        symbol.upper(), _decimal(size, "size"), exchange.upper(), OrderSide(side.lower()),
        _decimal(balance, "balance"), MarketType(market.lower()))
    if decision:
        console.print(f"[bold green]✓ ACCEPTED[/bold green] {symbol} {size} on {exchange}")
        raise typer.Exit(0)
    console.print(f"[bold red]✗ REJECTED[/bold red] {decision.reason}")
    raise typer.Exit(1)


@app.command()
def size(
        symbol: str,
        exchange: str = typer.Option("BYBIT", "--exchange", "-e"),
        balance: str = typer.Option(..., "--balance", "-b"),
        entry: str = typer.Option(..., "--entry"),
        stop: str = typer.Option(None, "--stop", help="Stop price; omit to use the volatility default"),
        side: str = typer.Option("buy", "--side"),
        kelly: bool = typer.Option(False, "--kelly", help="Use Kelly sizing instead of fixed-fractional"),
        market: str = typer.Option("linear", "--market", "-m"),
):
    """Compute a position size."""
    c = _container()
    gate = c.risk_gate
    sym, ex, mt = symbol.upper(), exchange.upper(), MarketType(market.lower())
    entry_price, account = _decimal(entry, "entry"), _decimal(balance, "balance")
    if kelly:
        qty = gate.calculate_kelly_position_size(sym, ex, account, entry_price, mt)
        stop_price = None
    else:
        if stop is None:
            vol = gate.calculate_volatility(sym, ex)
            stop_price = gate.calculate_stop_loss(entry_price, PositionSide.opened_by(OrderSide(side.lower())), vol)
        else:
            stop_price = _decimal(stop, "stop")
        qty = gate.calculate_position_size(sym, ex, account, entry_price, stop_price, mt)
    if qty is None:
        console.print("[red]No valid size (below exchange minimum or bad inputs)[/red]")
        raise typer.Exit(1)
    console.print(f"[green]{sym}[/green] qty={qty}" + (f" stop={stop_price}" if stop_price else ""))


@app.command()
def close(
        position_id: str,
        exchange: str = typer.Option(..., "--exchange", "-e"),
        reason: str = typer.Option("manual", "--reason"),
):
    """Close a position with an opposite-side market order."""
    c = _container()
    try:
        pos = c.execution_engine.close_position(position_id, CloseReason(reason), exchange.upper())
    except TradingError as e:
        console.print(f"[red]Close failed: {e}[/red]")
        raise typer.Exit(1)
    console.print(_positions_table("Result", [pos]))


@app.command()
def risk():
    """Refresh and print the risk summary."""
    c = _container()
    c.risk_gate.refresh_risk_metrics()
    summary = c.risk_gate.get_risk_summary()
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Metric", style="cyan")
    table.add_column("Value")
    table.add_row("Open positions", str(summary["positions"]["open"]))
    for ex, notional in summary["exposure"].items():
        table.add_row(f"Exposure {ex}", f"${notional:,.2f}")
    dd = summary["drawdown"]
    table.add_row("Daily drawdown", f"{dd['daily_pct']:.2f}% / {dd['daily_limit_pct']:.0f}%")
    table.add_row("Weekly drawdown", f"{dd['weekly_pct']:.2f}% / {dd['weekly_limit_pct']:.0f}%")
    table.add_row("Account value", f"${summary['portfolio']['current']:,.2f}")
    breaker = summary["circuit_breaker"]
    table.add_row("Circuit breaker", f"[red]{breaker}[/red]" if breaker else "[green]off[/green]")
    console.print(table)


if __name__ == "__main__":
    app()
