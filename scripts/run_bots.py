#!/usr/bin/env python
"""Run the configured trading bots until interrupted.

Usage:
    python scripts/run_bots.py --config sentinel.yaml
    python scripts/run_bots.py --config sentinel.yaml --log-level DEBUG
"""
import argparse
import asyncio
import signal
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from sentinel.config import SentinelConfig
from sentinel.errors import ConfigurationError
from sentinel.logging_setup import logger, setup_logging
from sentinel.runner import BotRunner


async def run(config: SentinelConfig) -> int:
    runner = BotRunner.from_config(config)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, lambda: asyncio.ensure_future(runner.stop()))
        except NotImplementedError:
            pass  # Windows: fall back to KeyboardInterrupt

    started = await runner.start()
    return 0 if started else 1


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Run Sentinel trading bots")
    parser.add_argument("--config", default="sentinel.yaml", help="Path to YAML config")
    parser.add_argument("--log-level", default=None, help="Override logging.log_level")
    args = parser.parse_args(argv)

    try:
        config = SentinelConfig.from_yaml(args.config)
    except (FileNotFoundError, ConfigurationError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2

    setup_logging(
        log_file=config.logging.log_file,
        level=args.log_level or config.logging.log_level,
    )
    if not config.bots:
        logger.error(f"No bots configured in {args.config}")
        return 2

    logger.info(f"Loaded config | path={args.config} bots={len(config.bots)}")
    try:
        return asyncio.run(run(config))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
