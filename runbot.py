#!/usr/bin/env python3
"""
Virtual Grid Bot - Config-driven paper launcher.

Usage:
    python runbot.py --config configs/example_grid.yml \
        --prices configs/example_prices.yml [--signals configs/example_signals.yml] [--env-file .env]

Generate a config template via:
    python -m trading_config.config_yaml
"""

import argparse
import asyncio
import logging
import os
import sys
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional

import dotenv
from rich.console import Console
from rich.table import Table

from exchange_clients.paper import PaperExchangeClient
from strategies.implementations.virtual_grid import ConfigurationError, TradingSignal
from trading_bot import GridTradingBot


class ReplayClock:
    """Simulated wall clock advanced one step per replayed tick."""

    def __init__(self, start: float, step_seconds: float):
        self.now = start
        self.step_seconds = step_seconds

    def __call__(self) -> float:
        return self.now

    def advance(self) -> None:
        self.now += self.step_seconds


def parse_arguments():
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Replay a price path through the virtual grid bot on a paper exchange."
    )

    parser.add_argument(
        "--config",
        "-c",
        type=str,
        required=True,
        help="Path to the YAML bot configuration.",
    )

    parser.add_argument(
        "--prices",
        "-p",
        type=str,
        required=True,
        help="YAML mapping of symbol -> list of prices to replay.",
    )

    parser.add_argument(
        "--signals",
        "-s",
        type=str,
        default=None,
        help="Optional YAML list of signals; each may carry an 'at_tick' index.",
    )

    parser.add_argument(
        "--env-file",
        type=str,
        default=".env",
        help="Path to an optional environment file (default: .env).",
    )

    parser.add_argument(
        "--tick-seconds",
        type=float,
        default=60.0,
        help="Simulated seconds between replayed prices (default: 60).",
    )

    parser.add_argument(
        "--log-level",
        "-l",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO). Use DEBUG to see detailed logs.",
    )

    parser.add_argument(
        "--close-on-exit",
        action="store_true",
        help="Flatten every position when the replay ends.",
    )

    return parser.parse_args()


def setup_logging(log_level: str):
    """Setup standard library logging for third-party modules."""
    level = getattr(logging, log_level.upper(), logging.INFO)
    logging.basicConfig(level=level)
    # UnifiedLogger handles its own console output; keep library noise down
    logging.getLogger('asyncio').setLevel(logging.WARNING)


def load_price_paths(path: Path) -> Dict[str, List[Decimal]]:
    from trading_config.config_yaml import load_yaml

    data = load_yaml(path)
    if not isinstance(data, dict):
        raise ValueError("Price file must map symbols to price lists")
    return {str(symbol).upper(): [Decimal(str(p)) for p in prices] for symbol, prices in data.items()}


def load_signals(path: Optional[Path]) -> Dict[int, List[TradingSignal]]:
    """Signals grouped by the replay tick at which they are submitted."""
    from trading_config.config_yaml import load_yaml

    if path is None:
        return {}
    entries = load_yaml(path) or []
    if not isinstance(entries, list):
        raise ValueError("Signals file must be a YAML list")

    by_tick: Dict[int, List[TradingSignal]] = {}
    for entry in entries:
        tick = int(entry.get("at_tick", 0))
        by_tick.setdefault(tick, []).append(TradingSignal.from_dict(entry))
    return by_tick


async def replay(
    bot: GridTradingBot,
    client: PaperExchangeClient,
    clock: ReplayClock,
    signals_by_tick: Dict[int, List[TradingSignal]],
) -> None:
    """Advance the paper prices tick by tick and feed the bot."""
    symbols = list(bot.strategies)
    tick = 0
    while any(client.remaining_prices(symbol) for symbol in symbols):
        for symbol in symbols:
            client.advance(symbol)
        await bot.poll_once()
        for signal in signals_by_tick.get(tick, []):
            signal.timestamp = clock()
            await bot.submit_signal(signal)
        tick += 1
        clock.advance()


def print_summary(bot: GridTradingBot, console: Console) -> None:
    table = Table(title="Virtual Grid Summary", expand=True)
    table.add_column("Symbol", style="cyan")
    table.add_column("Status")
    table.add_column("Spacing")
    table.add_column("Open", justify="right")
    table.add_column("Trades", justify="right")
    table.add_column("Win Rate", justify="right")
    table.add_column("Net P&L", justify="right")
    table.add_column("Fees", justify="right")
    table.add_column("Capital", justify="right")
    table.add_column("Signals", justify="right")

    for symbol, status in bot.get_status().items():
        performance = status["performance"]
        pnl = Decimal(performance["total_pnl"])
        pnl_style = "green" if pnl >= 0 else "red"
        signals = status["signals"]
        table.add_row(
            symbol,
            status["status"],
            status["spacing_status"],
            str(len(status["positions"])),
            str(performance["total_trades"]),
            f"{Decimal(performance['win_rate']):.1f}%",
            f"[{pnl_style}]{pnl:+.4f}[/]",
            f"{Decimal(performance['total_fees']):.4f}",
            f"{Decimal(status['ledger']['capital']):.2f}",
            f"{signals['successful_executions']}/{signals['total_executions']}",
        )

    console.print(table)


async def main():
    """Main entry point."""
    args = parse_arguments()

    # Set LOG_LEVEL environment variable for UnifiedLogger
    os.environ['LOG_LEVEL'] = args.log_level
    setup_logging(args.log_level)

    env_path = Path(args.env_file)
    if env_path.exists():
        dotenv.load_dotenv(env_path)

    from trading_config.config_yaml import load_config_from_yaml

    config_path = Path(args.config)
    if not config_path.exists():
        print(f"Error: Config file not found: {config_path}")
        sys.exit(1)

    try:
        config = load_config_from_yaml(config_path)
        price_paths = load_price_paths(Path(args.prices))
        signals_by_tick = load_signals(Path(args.signals) if args.signals else None)
    except (ConfigurationError, ValueError, FileNotFoundError) as e:
        print(f"Error: {e}")
        sys.exit(1)

    print(f"\n✓ Loaded configuration from: {config_path}")
    print(f"  Symbols: {', '.join(grid.symbol for grid in config.grids)}\n")

    client = PaperExchangeClient(config={"venue": config.grids[0].venue})
    for symbol, prices in price_paths.items():
        client.load_price_path(symbol, prices)
    # The first replayed price seeds each grid's center
    for grid in config.grids:
        client.advance(grid.symbol)

    clock = ReplayClock(start=float(os.getenv("REPLAY_START_TS", "0")), step_seconds=args.tick_seconds)

    print("=" * 70)
    print("  Starting Virtual Grid Bot (paper)")
    print("=" * 70 + "\n")

    bot = GridTradingBot(config, client, clock=clock)
    try:
        await bot.start()
        await replay(bot, client, clock, signals_by_tick)
    except KeyboardInterrupt:
        print("Interrupted")
    finally:
        await bot.graceful_shutdown("Replay complete", close_positions=args.close_on_exit)

    print_summary(bot, Console())


def cli():
    asyncio.run(main())


if __name__ == "__main__":
    cli()
