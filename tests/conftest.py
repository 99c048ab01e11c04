"""Shared fixtures for bot engine tests."""
from decimal import Decimal

import pytest

from sentinel.config import BotConfig, EngineConfig
from sentinel.events import EventCollector
from sentinel.exchange import InMemoryExchange
from sentinel.secrets import ExchangeCredentials

CREDS = ExchangeCredentials(api_key="test_key", api_secret="dGVzdA==", passphrase="test_pass")

# SMA20 of these closes is 100.5: buy above 102.51, sell below 98.49
BREAKOUT_CLOSES = [100] * 19 + [110]


def make_config(**overrides) -> BotConfig:
    values = dict(
        credentials=CREDS,
        user_id="user-1",
        strategy_id="sma-crossover",
        active_strategy_id="active-1",
        trading_pairs=("BTC-USD",),
        max_position_size=Decimal("1000"),
        stop_loss_percent=Decimal("5"),
        take_profit_percent=Decimal("10"),
    )
    values.update(overrides)
    return BotConfig(**values)


@pytest.fixture
def exchange():
    ex = InMemoryExchange(prices={"BTC-USD": "100", "ETH-USD": "2000", "SOL-USD": "20"})
    ex.set_closes("BTC-USD", BREAKOUT_CLOSES)
    return ex


@pytest.fixture
def events():
    return EventCollector()


@pytest.fixture
def engine():
    # long interval: tests drive cycles with run_cycle() directly
    return EngineConfig(poll_interval_seconds=3600, max_consecutive_errors=5)
