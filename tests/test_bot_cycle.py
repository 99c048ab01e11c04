"""Cycle, trade execution, position monitoring and circuit breaker tests."""
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from sentinel.bot import CycleReport, SentinelBot
from sentinel.config import EngineConfig
from sentinel.errors import TradeExecutionError
from sentinel.events import BotEventType
from sentinel.exchange import (
    AuthenticationError,
    ExchangeAPIError,
    ExchangeConnectionError,
    ExchangeTimeoutError,
    OrderSide,
    RateLimitError,
    Ticker,
)
from sentinel.signals import TradeAction, TradingSignal

from conftest import make_config

PAIRS = ("BTC-USD", "ETH-USD", "SOL-USD")


@pytest_asyncio.fixture
async def bot(exchange, engine, events):
    bot = SentinelBot(make_config(), engine=engine, client_factory=lambda c: exchange, event_sink=events)
    await bot.start()
    yield bot
    await bot.stop()


@pytest_asyncio.fixture
async def multi_bot(exchange, engine, events):
    bot = SentinelBot(make_config(trading_pairs=PAIRS), engine=engine, client_factory=lambda c: exchange,
                      event_sink=events)
    await bot.start()
    yield bot
    await bot.stop()


class TestCycleReport:

    @pytest.mark.parametrize("pairs, critical, failed", [
        (1, 0, False),
        (1, 1, True),
        (2, 1, False),   # exactly half is not more than half
        (2, 2, True),
        (3, 1, False),
        (3, 2, True),
        (4, 2, False),
        (4, 3, True),
        (0, 0, False),
    ])
    def test_failed_threshold(self, pairs, critical, failed):
        report = CycleReport(pairs=pairs, critical_failures={f"P{i}": Exception() for i in range(critical)})
        assert report.failed is failed


class TestTradeFlow:

    @pytest.mark.asyncio
    async def test_breakout_buys_and_opens_position(self, bot, exchange, events):
        exchange.set_price("BTC-USD", 103)

        report = await bot.run_cycle()

        assert report.succeeded == ["BTC-USD"]
        assert exchange.orders == [{
            "id": "m1", "product_id": "BTC-USD", "side": "buy", "type": "market",
            "size": "1.00000000", "status": "done",
        }]
        position = bot.positions["BTC-USD"]
        assert position.amount == Decimal("1")
        assert position.entry_price == Decimal("103")
        assert position.stop_loss_price == Decimal("97.85")
        assert position.take_profit_price == Decimal("113.3")

        trades = events.of_type(BotEventType.TRADE)
        assert len(trades) == 1
        trade = trades[0]
        assert trade.signal.action is TradeAction.BUY
        assert trade.order["id"] == "m1"
        assert (trade.user_id, trade.strategy_id, trade.active_strategy_id) == (
            "user-1", "sma-crossover", "active-1")

    @pytest.mark.asyncio
    async def test_repeat_breakout_replaces_position(self, bot, exchange, events):
        exchange.set_price("BTC-USD", 103)
        await bot.run_cycle()

        exchange.set_price("BTC-USD", 105)
        await bot.run_cycle()

        assert [o["side"] for o in exchange.orders] == ["buy", "buy"]
        position = bot.positions["BTC-USD"]
        assert position.entry_price == Decimal("105")
        assert position.stop_loss_price == Decimal("99.75")
        assert position.take_profit_price == Decimal("115.5")
        assert len(events.of_type(BotEventType.TRADE)) == 2

    @pytest.mark.asyncio
    async def test_cross_below_sells_open_position(self, bot, exchange, events):
        exchange.set_price("BTC-USD", 103)
        await bot.run_cycle()

        # 98 is under SMA20 x 0.98 but above the 97.85 stop-loss
        exchange.set_price("BTC-USD", 98)
        await bot.run_cycle()

        assert bot.positions == {}
        sells = [e for e in events.of_type(BotEventType.TRADE) if e.signal.action is TradeAction.SELL]
        assert len(sells) == 1
        assert sells[0].signal.reason == "price crossed below SMA20"
        assert exchange.orders[-1]["side"] == "sell"

    @pytest.mark.asyncio
    async def test_quiet_market_does_nothing(self, bot, exchange, events):
        exchange.set_price("BTC-USD", 100)
        report = await bot.run_cycle()
        assert report.succeeded == ["BTC-USD"]
        assert exchange.orders == []
        assert events.of_type(BotEventType.TRADE) == []

    @pytest.mark.asyncio
    async def test_insufficient_history_skips_quietly(self, bot, exchange, events):
        exchange.set_closes("BTC-USD", [100] * 5)
        exchange.set_price("BTC-USD", 500)
        report = await bot.run_cycle()
        assert report.succeeded == ["BTC-USD"]
        assert not report.failed
        assert exchange.orders == []
        assert events.of_type(BotEventType.ERROR) == []


class TestPositionMonitoring:

    async def _open(self, bot, exchange, entry=100):
        signal = TradingSignal("BTC-USD", TradeAction.BUY, Decimal(entry), Decimal("0.5"), "test", 0.7)
        await bot.execute_trade(signal)
        # candles that never produce a crossover signal on their own
        exchange.set_closes("BTC-USD", [entry] * 20)

    @pytest.mark.asyncio
    async def test_stop_loss_forces_sell(self, bot, exchange, events):
        await self._open(bot, exchange)
        exchange.set_closes("BTC-USD", [94] * 20)  # no crossover: price sits on the SMA
        exchange.set_price("BTC-USD", 94)

        await bot.run_cycle()

        assert bot.positions == {}
        exit_trade = events.of_type(BotEventType.TRADE)[-1]
        assert exit_trade.signal.action is TradeAction.SELL
        assert exit_trade.signal.reason == "stop loss triggered"
        assert exit_trade.signal.confidence == 1.0
        assert exit_trade.signal.amount == Decimal("0.5")

    @pytest.mark.asyncio
    async def test_take_profit_forces_sell(self, bot, exchange, events):
        await self._open(bot, exchange)
        exchange.set_closes("BTC-USD", [111] * 20)
        exchange.set_price("BTC-USD", 111)

        await bot.run_cycle()

        assert bot.positions == {}
        assert events.of_type(BotEventType.TRADE)[-1].signal.reason == "take profit triggered"

    @pytest.mark.asyncio
    async def test_price_inside_range_holds(self, bot, exchange, events):
        await self._open(bot, exchange)
        exchange.set_price("BTC-USD", 100)

        await bot.run_cycle()

        assert "BTC-USD" in bot.positions
        assert len(events.of_type(BotEventType.TRADE)) == 1

    @pytest.mark.asyncio
    async def test_monitor_sees_position_opened_in_same_cycle(self, bot, exchange):
        exchange.set_price("BTC-USD", 103)
        tickers = [103, 90]  # signal step buys at 103, monitor step sees 90

        async def ticker_sequence(pair):
            return Ticker(pair=pair, price=Decimal(tickers.pop(0)))

        exchange.get_ticker = ticker_sequence
        await bot.run_cycle()

        assert [o["side"] for o in exchange.orders] == ["buy", "sell"]
        assert bot.positions == {}

    @pytest.mark.asyncio
    async def test_monitor_failure_is_contained(self, multi_bot, exchange, events):
        for pair in PAIRS:
            exchange.set_closes(pair, [exchange.prices[pair]] * 20)
        await multi_bot.execute_trade(TradingSignal("BTC-USD", TradeAction.BUY, Decimal("100"), Decimal("1"), "t", 0.7))
        await multi_bot.execute_trade(TradingSignal("ETH-USD", TradeAction.BUY, Decimal("2000"), Decimal("1"), "t", 0.7))
        exchange.set_price("ETH-USD", 1000)  # ETH drops through the lower band

        # BTC: signal-step ticker succeeds, monitor-step ticker fails
        original = exchange.get_ticker
        calls = {"BTC-USD": 0}

        async def flaky_ticker(pair):
            if pair == "BTC-USD":
                calls[pair] += 1
                if calls[pair] == 2:
                    raise ExchangeAPIError("502: bad gateway", status=502)
            return await original(pair)

        exchange.get_ticker = flaky_ticker
        report = await multi_bot.run_cycle()

        assert "ETH-USD" not in multi_bot.positions
        assert "BTC-USD" in multi_bot.positions
        assert report.succeeded == list(PAIRS)
        monitor_errors = [e for e in events.of_type(BotEventType.ERROR) if e.context.get("stage") == "monitor"]
        assert len(monitor_errors) == 1
        assert monitor_errors[0].context["pair"] == "BTC-USD"


class TestTradeExecution:

    @pytest.mark.asyncio
    async def test_failed_order_emits_error_and_raises(self, bot, exchange, events):
        error = ExchangeAPIError("400: Insufficient funds", status=400)
        exchange.fail_next("place_market_order", error)
        signal = TradingSignal("BTC-USD", TradeAction.BUY, Decimal("103"), Decimal("1"), "t", 0.7)

        with pytest.raises(TradeExecutionError) as info:
            await bot.execute_trade(signal)

        assert info.value.__cause__ is error
        assert info.value.signal is signal
        assert bot.positions == {}
        errors = events.of_type(BotEventType.ERROR)
        assert len(errors) == 1
        assert errors[0].error is error
        assert errors[0].signal is signal

    @pytest.mark.asyncio
    async def test_order_uses_signal_side_and_size(self, engine):
        client = AsyncMock()
        client.place_market_order.return_value = {"id": "abc"}
        bot = SentinelBot(make_config(), engine=engine, client_factory=lambda c: client)

        await bot.execute_trade(TradingSignal("BTC-USD", TradeAction.SELL, Decimal("1"), Decimal("0.3"), "t", 0.7))

        client.place_market_order.assert_awaited_once_with("BTC-USD", OrderSide.SELL, Decimal("0.3"))

    @pytest.mark.asyncio
    async def test_order_failure_in_cycle_emits_single_error(self, bot, exchange, events):
        exchange.set_price("BTC-USD", 103)
        exchange.fail_next("place_market_order", ExchangeAPIError("400: bad size", status=400))

        report = await bot.run_cycle()

        assert list(report.failures) == ["BTC-USD"]
        assert not report.failed
        assert len(events.of_type(BotEventType.ERROR)) == 1

    @pytest.mark.asyncio
    async def test_rate_limited_order_counts_as_critical(self, bot, exchange):
        exchange.set_price("BTC-USD", 103)
        exchange.fail_next("place_market_order", RateLimitError())

        report = await bot.run_cycle()

        assert list(report.critical_failures) == ["BTC-USD"]
        assert report.failed
        assert bot.consecutive_errors == 1


class TestCircuitBreaker:

    @pytest.mark.asyncio
    async def test_five_critical_cycles_stop_the_bot(self, bot, exchange, events):
        exchange.fail_always("get_ticker", ExchangeConnectionError("connection refused"))

        for i in range(4):
            await bot.run_cycle()
            assert bot.is_running
            assert bot.consecutive_errors == i + 1

        await bot.run_cycle()

        assert not bot.is_running
        critical = events.of_type(BotEventType.CRITICAL_ERROR)
        assert len(critical) == 1
        assert isinstance(critical[0].error, ExchangeConnectionError)
        assert critical[0].context["consecutive_errors"] == 5
        assert len(events.of_type(BotEventType.STOPPED)) == 1

        # further cycles never trip the breaker again
        await bot.run_cycle()
        assert len(events.of_type(BotEventType.CRITICAL_ERROR)) == 1

    @pytest.mark.asyncio
    async def test_success_resets_counter(self, bot, exchange):
        exchange.fail_always("get_ticker", ExchangeTimeoutError("Request timeout"))
        for _ in range(4):
            await bot.run_cycle()
        assert bot.consecutive_errors == 4

        exchange.fail_always("get_ticker", None)
        await bot.run_cycle()
        assert bot.consecutive_errors == 0

        exchange.fail_always("get_ticker", AuthenticationError())
        for _ in range(4):
            await bot.run_cycle()
        assert bot.is_running

    @pytest.mark.asyncio
    async def test_minority_critical_failures_do_not_count(self, multi_bot, exchange):
        original = exchange.get_ticker

        async def one_pair_down(pair):
            if pair == "SOL-USD":
                raise RateLimitError()
            return await original(pair)

        exchange.get_ticker = one_pair_down
        for _ in range(10):
            report = await multi_bot.run_cycle()
            assert not report.failed

        assert multi_bot.is_running
        assert multi_bot.consecutive_errors == 0

    @pytest.mark.asyncio
    async def test_majority_critical_failures_count(self, multi_bot, exchange, events):
        original = exchange.get_ticker

        async def two_pairs_down(pair):
            if pair != "BTC-USD":
                raise ExchangeConnectionError("connection refused")
            return await original(pair)

        exchange.get_ticker = two_pairs_down
        for _ in range(5):
            await multi_bot.run_cycle()

        assert not multi_bot.is_running
        assert len(events.of_type(BotEventType.CRITICAL_ERROR)) == 1

    @pytest.mark.asyncio
    async def test_non_critical_failures_never_trip(self, bot, exchange, events):
        exchange.fail_always("get_historic_candles", ExchangeAPIError("Malformed candles for BTC-USD"))

        for _ in range(8):
            report = await bot.run_cycle()
            assert list(report.failures) == ["BTC-USD"]

        assert bot.is_running
        assert bot.consecutive_errors == 0
        errors = events.of_type(BotEventType.ERROR)
        assert len(errors) == 8
        assert errors[0].context == {"pair": "BTC-USD", "stage": "signal", "critical": False}

    @pytest.mark.asyncio
    async def test_custom_threshold(self, exchange, events):
        engine = EngineConfig(poll_interval_seconds=3600, max_consecutive_errors=2)
        bot = SentinelBot(make_config(), engine=engine, client_factory=lambda c: exchange, event_sink=events)
        await bot.start()
        exchange.fail_always("get_ticker", RateLimitError())

        await bot.run_cycle()
        assert bot.is_running
        await bot.run_cycle()
        assert not bot.is_running

    @pytest.mark.asyncio
    async def test_float_band_from_yaml_drives_signal(self, exchange, events):
        engine = EngineConfig(poll_interval_seconds=3600, signal_band_pct=0.03)
        bot = SentinelBot(make_config(), engine=engine, client_factory=lambda c: exchange, event_sink=events)
        await bot.start()

        # SMA20 is 100.5, so the upper band is 103.515
        exchange.set_price("BTC-USD", 103)
        report = await bot.run_cycle()
        assert report.critical_failures == {}
        assert exchange.orders == []

        exchange.set_price("BTC-USD", 110)
        report = await bot.run_cycle()
        assert report.succeeded == ["BTC-USD"]
        assert [o["side"] for o in exchange.orders] == ["buy"]
        assert events.of_type(BotEventType.ERROR) == []
        await bot.stop()

    @pytest.mark.asyncio
    async def test_sink_failure_does_not_break_cycle(self, exchange, engine):
        def broken_sink(event):
            raise RuntimeError("sink down")

        bot = SentinelBot(make_config(), engine=engine, client_factory=lambda c: exchange, event_sink=broken_sink)
        await bot.start()
        exchange.set_price("BTC-USD", 103)
        report = await bot.run_cycle()
        assert report.succeeded == ["BTC-USD"]
        assert "BTC-USD" in bot.positions
        await bot.stop()
