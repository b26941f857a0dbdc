"""CLI entry point for the trade simulation engine.

Commands:
  tradesim run                       — Run the trade cycle scheduler until interrupted
  tradesim run-once                  — Run one cycle now ("distribute profits")
  tradesim status                    — Show the last persisted scheduler state
  tradesim trades --user             — Show a user's trade history
  tradesim portfolio --user          — Show a user's balances and holdings
  tradesim subscribe --user --bot --amount
                                     — Lock funds into a bot subscription
  tradesim seed-demo                 — Insert demo bots, balances and subscriptions
"""

from __future__ import annotations

import asyncio
import json
import sys
from decimal import Decimal, InvalidOperation
from typing import Any

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

from tradesim.config import PlatformConfig, load_config
from tradesim.observability.logger import configure_logging, get_logger
from tradesim.observability.sentry_integration import init_sentry
from tradesim.storage.database import Database, LedgerError

load_dotenv()

console = Console()
log = get_logger(__name__)


def _run(coro: Any) -> Any:
    """Run an async coroutine from sync CLI."""
    return asyncio.run(coro)


def _open_db(cfg: PlatformConfig) -> Database:
    db = Database(cfg.storage)
    db.connect()
    return db


def _usd(value: Decimal) -> str:
    return f"${value:,.2f}"


@click.group()
@click.option("--config", "config_path", default=None, help="Path to config.yaml")
@click.pass_context
def cli(ctx: click.Context, config_path: str | None) -> None:
    """AI trading bot subscription simulator."""
    ctx.ensure_object(dict)
    cfg = load_config(config_path)
    ctx.obj["config"] = cfg
    configure_logging(
        level=cfg.observability.log_level,
        fmt="console",  # CLI always uses console format
        log_file=cfg.observability.log_file,
    )
    init_sentry()


# ─── RUN ─────────────────────────────────────────────────────────────

@cli.command()
@click.pass_context
def run(ctx: click.Context) -> None:
    """Start the trade cycle scheduler (Ctrl+C to stop)."""
    cfg: PlatformConfig = ctx.obj["config"]

    console.print("[bold cyan]🤖 Starting Trade Cycle Scheduler[/bold cyan]")
    console.print(f"  Cycle interval: {cfg.engine.cycle_interval_secs}s")
    console.print(f"  Price oracle: {'on' if cfg.oracle.enabled else 'off'}")
    console.print(f"  Database: {cfg.storage.sqlite_path}")
    console.print()

    async def _serve() -> None:
        from tradesim.connectors.price_oracle import PriceOracle
        from tradesim.engine.scheduler import TradeCycleScheduler

        db = _open_db(cfg)
        oracle = PriceOracle(cfg.oracle)
        try:
            scheduler = TradeCycleScheduler(db, cfg, oracle=oracle)
            await scheduler.serve()
        finally:
            await oracle.close()
            db.close()

    try:
        _run(_serve())
    except KeyboardInterrupt:
        pass
    console.print("\n[yellow]Scheduler stopped.[/yellow]")


# ─── RUN ONCE ────────────────────────────────────────────────────────

@cli.command("run-once")
@click.pass_context
def run_once(ctx: click.Context) -> None:
    """Run a single trade cycle now and print the report."""
    cfg: PlatformConfig = ctx.obj["config"]

    async def _cycle() -> dict[str, Any]:
        from tradesim.connectors.price_oracle import PriceOracle
        from tradesim.engine.scheduler import TradeCycleScheduler

        db = _open_db(cfg)
        oracle = PriceOracle(cfg.oracle)
        try:
            scheduler = TradeCycleScheduler(db, cfg, oracle=oracle)
            report = await scheduler.run_once()
            return report.to_dict()
        finally:
            await oracle.close()
            db.close()

    report = _run(_cycle())

    table = Table(title=f"📈 Trade Cycle ({report['processed']} processed)")
    table.add_column("Sub", style="dim", justify="right")
    table.add_column("User", justify="right")
    table.add_column("Asset", style="cyan")
    table.add_column("Result")
    table.add_column("Profit", justify="right", style="green")
    table.add_column("Loss", justify="right", style="red")
    for t in report["trades"]:
        result = "[green]WIN[/green]" if t["result"] == "win" else "[red]LOSS[/red]"
        table.add_row(
            str(t["subscription_id"]), str(t["user_id"]), t["asset"], result,
            _usd(Decimal(t["profit"])), _usd(Decimal(t["loss"])),
        )
    console.print(table)
    if report["expired"]:
        console.print(f"[yellow]{report['expired']} subscription(s) expired[/yellow]")
    for err in report["errors"]:
        console.print(f"[red]❌ {err}[/red]")
    console.print(f"[dim]Cycle took {report['duration_secs']}s[/dim]")


# ─── STATUS ──────────────────────────────────────────────────────────

@cli.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show the last persisted scheduler state."""
    cfg: PlatformConfig = ctx.obj["config"]
    from tradesim.engine.scheduler import STATE_KEY

    db = _open_db(cfg)
    try:
        raw = db.get_engine_state(STATE_KEY)
    finally:
        db.close()

    if raw is None:
        console.print("[yellow]The scheduler has not run against this database yet.[/yellow]")
        return
    state = json.loads(raw)
    last = state.get("last_cycle") or {}

    table = Table(title="📊 Scheduler Status")
    table.add_column("Metric", style="bold")
    table.add_column("Value", justify="right")
    table.add_row(
        "Running",
        "[green]YES[/green]" if state.get("running") else "[dim]no[/dim]",
    )
    table.add_row("Instance", str(state.get("instance_id", "")))
    table.add_row("Cycles", str(state.get("cycle_count", 0)))
    table.add_row("Interval", f"{state.get('interval_secs', '?')}s")
    if last:
        table.add_row("Last Cycle Status", str(last.get("status")))
        table.add_row("Last Cycle Processed", str(last.get("processed")))
        table.add_row("Last Cycle Expired", str(last.get("expired")))
        table.add_row("Last Cycle Errors", str(len(last.get("errors", []))))
        table.add_row("Last Cycle Duration", f"{last.get('duration_secs')}s")
    console.print(table)


# ─── TRADES ──────────────────────────────────────────────────────────

@cli.command()
@click.option("--user", "user_id", type=int, required=True, help="User ID")
@click.option("--limit", default=20, help="Number of trades to show")
@click.pass_context
def trades(ctx: click.Context, user_id: int, limit: int) -> None:
    """Show recent simulated trades for a user."""
    cfg: PlatformConfig = ctx.obj["config"]
    db = _open_db(cfg)
    try:
        records = db.list_trade_records(user_id=user_id, limit=limit)
    finally:
        db.close()

    if not records:
        console.print(f"[yellow]No trades for user {user_id}.[/yellow]")
        return

    table = Table(title=f"🧾 Trades for user {user_id}")
    table.add_column("When", style="dim")
    table.add_column("Sub", justify="right")
    table.add_column("Asset", style="cyan")
    table.add_column("Result")
    table.add_column("Size", justify="right")
    table.add_column("P&L", justify="right")
    table.add_column("Price", justify="right")
    for r in records:
        pnl = r.profit_amount - r.loss_amount
        table.add_row(
            r.created_at.strftime("%Y-%m-%d %H:%M"),
            str(r.subscription_id),
            r.asset_symbol,
            r.trade_result.upper(),
            _usd(r.trade_amount),
            f"[green]{_usd(pnl)}[/green]" if pnl >= 0 else f"[red]{_usd(pnl)}[/red]",
            _usd(r.asset_price_at_trade) if r.asset_price_at_trade is not None else "—",
        )
    console.print(table)


# ─── PORTFOLIO ───────────────────────────────────────────────────────

@cli.command()
@click.option("--user", "user_id", type=int, required=True, help="User ID")
@click.pass_context
def portfolio(ctx: click.Context, user_id: int) -> None:
    """Show a user's balances, subscriptions and holdings."""
    cfg: PlatformConfig = ctx.obj["config"]
    db = _open_db(cfg)
    try:
        balance = db.get_balance(user_id)
        subs = db.list_user_subscriptions(user_id)
        holdings = db.list_portfolio(user_id)
    finally:
        db.close()

    if balance is None:
        console.print(f"[yellow]No balance for user {user_id}.[/yellow]")
        return

    table = Table(title=f"💼 Balances for user {user_id}")
    table.add_column("Metric", style="bold")
    table.add_column("Value", justify="right")
    table.add_row("Total", _usd(balance.total_balance_usd))
    table.add_row("Available", _usd(balance.available_balance_usd))
    table.add_row("Locked", _usd(balance.locked_balance_usd))
    console.print(table)

    if subs:
        sub_table = Table(title="🤖 Subscriptions")
        sub_table.add_column("ID", justify="right")
        sub_table.add_column("Bot", justify="right")
        sub_table.add_column("Status")
        sub_table.add_column("Invested", justify="right")
        sub_table.add_column("Remaining", justify="right")
        sub_table.add_column("Profit", justify="right")
        sub_table.add_column("Expires", style="dim")
        for s in subs:
            state = s.status
            if s.is_paused:
                state += " (paused)"
            sub_table.add_row(
                str(s.id), str(s.bot_id), state,
                _usd(s.investment_amount), _usd(s.remaining_allocation),
                _usd(s.current_profit), s.expiry_date.strftime("%Y-%m-%d"),
            )
        console.print(sub_table)

    if holdings:
        h_table = Table(title="🪙 Holdings")
        h_table.add_column("Symbol", style="cyan")
        h_table.add_column("Amount", justify="right")
        h_table.add_column("Avg Price", justify="right")
        h_table.add_column("Value", justify="right", style="green")
        for h in holdings:
            h_table.add_row(
                h.symbol, f"{h.amount:.8f}", _usd(h.average_buy_price), _usd(h.current_value),
            )
        console.print(h_table)


# ─── SUBSCRIBE ───────────────────────────────────────────────────────

@cli.command()
@click.option("--user", "user_id", type=int, required=True, help="User ID")
@click.option("--bot", "bot_id", type=int, required=True, help="Bot ID")
@click.option("--amount", required=True, help="USD amount to allocate")
@click.pass_context
def subscribe(ctx: click.Context, user_id: int, bot_id: int, amount: str) -> None:
    """Subscribe a user to a bot, locking funds from the available balance."""
    cfg: PlatformConfig = ctx.obj["config"]
    from tradesim.engine.subscriptions import SubscriptionError
    from tradesim.engine.subscriptions import subscribe as create_subscription

    try:
        value = Decimal(amount)
    except InvalidOperation:
        raise click.BadParameter(f"not a number: {amount}", param_hint="--amount")
    if not value.is_finite():
        raise click.BadParameter(f"not a finite number: {amount}", param_hint="--amount")

    db = _open_db(cfg)
    try:
        bot = db.get_bot(bot_id)
        if bot is None:
            console.print(f"[red]❌ Bot {bot_id} not found.[/red]")
            sys.exit(1)
        try:
            sub = create_subscription(db, user_id, bot, value)
        except (SubscriptionError, LedgerError) as e:
            console.print(f"[red]❌ {e}[/red]")
            sys.exit(1)
    finally:
        db.close()

    console.print(
        f"[green]✅ Subscription {sub.id}: {_usd(sub.investment_amount)} in "
        f"'{bot.name}' until {sub.expiry_date:%Y-%m-%d}[/green]"
    )


# ─── SEED DEMO ───────────────────────────────────────────────────────

@cli.command("seed-demo")
@click.pass_context
def seed_demo(ctx: click.Context) -> None:
    """Insert demo bots, balances and subscriptions."""
    cfg: PlatformConfig = ctx.obj["config"]
    from tradesim.storage.demo_data import seed_demo as run_seed

    db = _open_db(cfg)
    try:
        summary = run_seed(db)
    finally:
        db.close()
    console.print(
        f"[green]✅ {summary['bots']} bots, {summary['users']} users, "
        f"{summary['subscriptions']} new subscriptions[/green]"
    )


if __name__ == "__main__":
    cli()
