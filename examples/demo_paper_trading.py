#!/usr/bin/env python
"""Paper-trading demo: two bots against the in-memory exchange.

Shows:
1. Registering bots through BotManager
2. A buy on an SMA20 breakout and a take-profit exit
3. The circuit breaker stopping a bot whose session keeps failing
4. Shutdown via stop_all()
"""
import asyncio
import sys
from decimal import Decimal
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from sentinel.config import BotConfig, EngineConfig
from sentinel.events import EventCollector
from sentinel.exchange import ExchangeConnectionError, InMemoryExchange
from sentinel.logging_setup import logger, setup_logging
from sentinel.manager import BotManager
from sentinel.secrets import ExchangeCredentials

CREDS = ExchangeCredentials(api_key="paper", api_secret="cGFwZXI=", passphrase="paper")


async def main():
    setup_logging(log_file=None, level="INFO")
    logger.info("=== Sentinel Paper Trading Demo ===")

    exchanges = {}

    def factory(credentials):
        exchange = InMemoryExchange()
        exchange.set_closes("BTC-USD", [100] * 19 + [110])
        exchange.set_price("BTC-USD", 103)
        return exchange

    events = EventCollector()
    manager = BotManager(
        engine=EngineConfig(poll_interval_seconds=3600, max_consecutive_errors=3),
        client_factory=factory,
        event_sink=events,
    )

    for user in ("alice", "bob"):
        bot = manager.create_bot(BotConfig(
            credentials=CREDS,
            user_id=user,
            strategy_id="sma-crossover",
            active_strategy_id="demo",
            trading_pairs=("BTC-USD",),
            max_position_size=Decimal("50"),
        ))
        exchanges[user] = bot.client
        await bot.start()

    alice = manager.get_bot("alice", "demo")
    bob = manager.get_bot("bob", "demo")

    # [1] breakout above SMA20 x 1.02 -> buy
    await alice.run_cycle()
    logger.info(f"Alice positions: {[p.to_dict() for p in alice.positions.values()]}")

    # [2] market drifts up to ~112, price reaches take-profit inside the band -> forced sell
    exchanges["alice"].set_closes("BTC-USD", [112] * 20)
    exchanges["alice"].set_price("BTC-USD", 114)
    await alice.run_cycle()
    logger.info(f"Alice positions after take profit: {alice.positions}")

    # [3] bob's exchange is unreachable -> breaker trips after 3 cycles
    exchanges["bob"].fail_always("get_ticker", ExchangeConnectionError("connection refused"))
    for _ in range(3):
        await bob.run_cycle()
    logger.info(f"Bob running: {bob.is_running}, still registered: {bob.key in manager}")

    await manager.stop_all()
    logger.info("=== Demo Complete ===")
    for event in events.events:
        logger.info(f"  {event.type.value:<15} {event.user_id:<6} {event.signal.reason if event.signal else ''}")


if __name__ == "__main__":
    asyncio.run(main())
