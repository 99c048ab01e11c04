#!/usr/bin/env python
"""Bot config CLI: list configured bots and their risk parameters.

Usage:
    python scripts/bot_status.py --config sentinel.yaml list
    python scripts/bot_status.py --config sentinel.yaml show <user_id> <active_strategy_id>
"""
import argparse
import sys
from decimal import Decimal
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from sentinel.config import SentinelConfig
from sentinel.errors import ConfigurationError


def format_decimal(d, decimals=2):
    """Format decimal for display."""
    return f"{d:.{decimals}f}"


def list_bots(config):
    """List every configured bot."""
    if not config.bots:
        print("No bots configured")
        return

    print(f"\n{'User':<16} {'Active Strategy':<20} {'Strategy':<16} {'Pairs':<24} {'Max Size':<12} {'SL %':<8} {'TP %':<8}")
    print("-" * 108)
    for bot in config.bots:
        print(
            f"{bot.user_id:<16} "
            f"{bot.active_strategy_id:<20} "
            f"{bot.strategy_id:<16} "
            f"{','.join(bot.trading_pairs):<24} "
            f"{format_decimal(bot.max_position_size):<12} "
            f"{format_decimal(bot.stop_loss_percent, 1):<8} "
            f"{format_decimal(bot.take_profit_percent, 1):<8}"
        )


def show_bot(config, user_id, active_strategy_id):
    """Show one bot with the exit prices it would set per 100 units of entry."""
    matches = [b for b in config.bots if b.key == (user_id, active_strategy_id)]
    if not matches:
        print(f"Bot not found: {user_id}/{active_strategy_id}")
        return 1
    bot = matches[0]
    hundred = Decimal(100)

    print(f"\n=== Bot: {bot.key} ===")
    print(f"Strategy: {bot.strategy_id}")
    print(f"Pairs: {', '.join(bot.trading_pairs)}")
    print(f"Max Position Size: ${format_decimal(bot.max_position_size)}")
    print(f"Stop Loss: {format_decimal(bot.stop_loss_percent, 1)}% "
          f"(entry 100 -> {format_decimal(hundred * (1 - bot.stop_loss_percent / hundred))})")
    print(f"Take Profit: {format_decimal(bot.take_profit_percent, 1)}% "
          f"(entry 100 -> {format_decimal(hundred * (1 + bot.take_profit_percent / hundred))})")
    print(f"Credentials: {bot.credentials!r}")
    print(f"\nEngine: every {config.engine.poll_interval_seconds}s, "
          f"stop after {config.engine.max_consecutive_errors} failed cycles, "
          f"SMA{config.engine.sma_period} ±{format_decimal(config.engine.signal_band_pct * 100, 1)}%")
    return 0


def main(argv=None):
    parser = argparse.ArgumentParser(description="Inspect configured Sentinel bots")
    parser.add_argument("--config", default="sentinel.yaml", help="Path to YAML config")
    subparsers = parser.add_subparsers(dest="command", required=True)
    subparsers.add_parser("list", help="List configured bots")
    show = subparsers.add_parser("show", help="Show one bot")
    show.add_argument("user_id")
    show.add_argument("active_strategy_id")
    args = parser.parse_args(argv)

    try:
        config = SentinelConfig.from_yaml(args.config)
    except (FileNotFoundError, ConfigurationError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2

    if args.command == "list":
        list_bots(config)
        return 0
    return show_bot(config, args.user_id, args.active_strategy_id)


if __name__ == "__main__":
    sys.exit(main())
