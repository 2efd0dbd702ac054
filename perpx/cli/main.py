#!/usr/bin/env python3
"""
PerpX CLI

Command-line interface for inspecting configuration and simulating trades
against an in-process ledger.

Usage:
    perpx config [--config FILE] [--json]
    perpx markets [--config FILE]
    perpx simulate [--symbol SYMBOL] [--deposit USD] [--collateral USD]
                   [--leverage N] [--entry PRICE] [--exit PRICE] [--short] [--days N]
"""

import json
import time
from typing import Optional

import click

from perpx.config import PerpXConfig, load_config
from perpx.constants import PRICE_DECIMALS, from_units, to_units
from perpx.crypto import contract_address
from perpx.exceptions import PerpXException
from perpx.exchange.oracle import StaticPriceSource
from perpx.logger import configure_logging
from perpx.protocol import build_protocol


class SimulationClock:
    """Settable unix-seconds clock shared by every simulated component."""

    def __init__(self, start: int):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now += seconds


def _load(config_path: Optional[str]) -> PerpXConfig:
    try:
        config = load_config(config_path)
        config.validate()
    except PerpXException as e:
        raise click.ClickException(str(e))

    ctx = click.get_current_context()
    if not (ctx.obj or {}).get("log_level"):
        configure_logging(log_level=config.logging.level)
    return config


def _rule(title: str) -> None:
    click.echo(click.style("═══════════════════════════════════════", fg="cyan"))
    click.echo(click.style(f"  {title}", fg="cyan", bold=True))
    click.echo(click.style("═══════════════════════════════════════", fg="cyan"))


@click.group()
@click.version_option(version="1.0.0", prog_name="perpx")
@click.option("--log-level", default=None, help="Override the log level (DEBUG, INFO, ...)")
@click.pass_context
def cli(ctx: click.Context, log_level: Optional[str]):
    """PerpX Command Line Interface

    Leveraged perpetuals ledger with bridged deposits.
    """
    ctx.ensure_object(dict)
    ctx.obj["log_level"] = log_level
    if log_level:
        configure_logging(log_level=log_level.upper())


@cli.command("config")
@click.option("--config", "-c", "config_path", type=click.Path(), help="Path to config.toml")
@click.option("--json", "as_json", is_flag=True, help="Print raw JSON")
def config_cmd(config_path: Optional[str], as_json: bool):
    """Print the resolved configuration (file + environment)."""
    config = _load(config_path)
    data = config.to_dict()

    if as_json:
        click.echo(json.dumps(data, indent=2))
        return

    _rule("PerpX Configuration")
    for section, values in data.items():
        click.echo()
        click.echo(click.style(f"[{section}]", fg="green"))
        if isinstance(values, list):
            for item in values:
                click.echo(f"  - {item}")
        else:
            for key, value in values.items():
                click.echo(f"  {key} = {value}")


@cli.command("markets")
@click.option("--config", "-c", "config_path", type=click.Path(), help="Path to config.toml")
def markets_cmd(config_path: Optional[str]):
    """List configured markets."""
    config = _load(config_path)

    _rule("PerpX Markets")
    for market in config.markets:
        status = click.style("active", fg="green") if market.active else click.style("inactive", fg="red")
        click.echo(
            f"{market.symbol:<10} max {market.max_leverage}x  "
            f"maintenance {market.maintenance_margin_bps} bps  {status}"
        )


@cli.command("simulate")
@click.option("--config", "-c", "config_path", type=click.Path(), help="Path to config.toml")
@click.option("--symbol", "-s", default="BTC/USD", show_default=True, help="Market symbol")
@click.option("--deposit", default="100", show_default=True, help="USD to deposit")
@click.option("--collateral", default="50", show_default=True, help="USD collateral")
@click.option("--leverage", "-l", default=2, show_default=True, type=int, help="Leverage")
@click.option("--entry", default="50000", show_default=True, help="Entry price (USD)")
@click.option("--exit", "exit_price", default="55000", show_default=True, help="Exit price (USD)")
@click.option("--short", is_flag=True, help="Open a short instead of a long")
@click.option("--days", default=0, show_default=True, type=int, help="Days held before closing")
def simulate_cmd(
    config_path: Optional[str],
    symbol: str,
    deposit: str,
    collateral: str,
    leverage: int,
    entry: str,
    exit_price: str,
    short: bool,
    days: int,
):
    """Run deposit -> open -> price move -> close and print the settlement.

    Examples:

        perpx simulate

        perpx simulate --short --exit 45000 --days 2
    """
    config = _load(config_path)
    clock = SimulationClock(int(time.time()))
    owner = contract_address("perpx.cli.owner")
    trader = contract_address("perpx.cli.trader")

    try:
        protocol = build_protocol(config, owner=owner, clock=clock)
        ledger = protocol.ledger

        source = StaticPriceSource(to_units(entry, PRICE_DECIMALS), clock=clock)
        protocol.price_feed.set_price_feed(symbol, source, owner)

        ledger.deposit_usdc(trader, to_units(deposit))
        ledger.open_position(trader, symbol, to_units(collateral), leverage, not short)
        opened = ledger.get_position(trader, symbol)

        clock.advance(days * 86_400)
        source.update_answer(to_units(exit_price, PRICE_DECIMALS))
        before_close = ledger.get_position(trader, symbol)
        credited = ledger.close_position(trader, symbol)
    except PerpXException as e:
        raise click.ClickException(str(e))

    _rule(f"Simulated {'SHORT' if short else 'LONG'} {symbol}")
    click.echo(f"Size:              ${from_units(opened.size)}")
    click.echo(f"Entry price:       ${from_units(opened.entry_price, PRICE_DECIMALS)}")
    click.echo(f"Liquidation price: ${from_units(opened.liquidation_price, PRICE_DECIMALS)}")
    click.echo(f"Exit price:        ${from_units(before_close.current_price, PRICE_DECIMALS)}")
    click.echo(f"Unrealized P&L:    ${from_units(before_close.unrealized_pnl)}")
    click.echo(f"Holding fees:      ${from_units(before_close.accrued_fees)}")
    click.echo(f"Credited on close: ${from_units(credited)}")
    click.echo(click.style(f"Final balance:     ${from_units(ledger.get_balance(trader))}", fg="green", bold=True))


def main():
    cli()


if __name__ == "__main__":
    main()
