"""
The per-(user, strategy) trading bot.

A ``SentinelBot`` owns one BotConfig, one PositionBook and one scheduler task.
Every ``poll_interval_seconds`` the scheduler starts a cycle which, for each
configured pair in turn:

    fetch ticker -> evaluate signal -> execute trade -> monitor position

Per-pair failures are caught and classified. When more than half of the
pairs (or all of them) fail critically the cycle counts as failed; after
``max_consecutive_errors`` failed cycles in a row the bot stops itself and
emits ``critical_error``. It never restarts on its own.

A tick that finds the previous cycle still running is skipped, so cycles
never overlap and the PositionBook is only ever touched by one cycle.

Usage:
    bot = SentinelBot(config, client_factory=lambda creds: InMemoryExchange())
    await bot.start()
    report = await bot.run_cycle()
    await bot.stop()
"""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .coinbase_client import CoinbaseClient
from .config import BotConfig, BotKey, EngineConfig
from .errors import (
    AlreadyRunningError,
    ConfigurationError,
    InsufficientPermissionsError,
    InvalidCredentialsError,
    TradeExecutionError,
    ValidationError,
    is_critical_error,
)
from .events import BotEvent, BotEventType, EventSink, dispatch
from .exchange import AuthenticationError, ExchangeClient, PermissionDeniedError
from .logging_setup import logger
from .position import Position, PositionBook
from .secrets import ExchangeCredentials
from .signals import SmaCrossoverStrategy, TradeAction, TradingSignal

ClientFactory = Callable[[ExchangeCredentials], ExchangeClient]

FORCED_EXIT_CONFIDENCE = 1.0


class BotState(str, Enum):
    STOPPED = "stopped"
    RUNNING = "running"


@dataclass
class CycleReport:
    """Outcome of one cycle across all configured pairs."""
    pairs: int
    succeeded: List[str] = field(default_factory=list)
    critical_failures: Dict[str, BaseException] = field(default_factory=dict)
    failures: Dict[str, BaseException] = field(default_factory=dict)

    @property
    def failed(self) -> bool:
        """True when every pair, or more than half of them, failed critically."""
        critical = len(self.critical_failures)
        if self.pairs == 0 or critical == 0:
            return False
        return critical == self.pairs or critical * 2 > self.pairs


class SentinelBot:
    """Autonomous SMA-crossover bot for one user and one active strategy."""

    def __init__(
        self,
        config: BotConfig,
        *,
        engine: Optional[EngineConfig] = None,
        client_factory: Optional[ClientFactory] = None,
        event_sink: Optional[EventSink] = None,
    ):
        # Raises before the client factory is ever touched
        config.validate()
        self.config = config
        self.engine = engine or EngineConfig()
        self.strategy = SmaCrossoverStrategy(
            period=self.engine.sma_period,
            band_pct=self.engine.signal_band_pct,
            max_order_units=self.engine.max_order_units,
        )
        factory = client_factory or CoinbaseClient.from_credentials
        try:
            self.client: ExchangeClient = factory(config.credentials)
        except Exception as e:
            raise ConfigurationError(f"Could not construct exchange client for {config.key}: {e}") from e

        self._event_sink = event_sink
        self._positions = PositionBook()
        self._running = False
        self._starting = False
        self._consecutive_errors = 0
        self._scheduler_task: Optional[asyncio.Task] = None
        self._cycle_task: Optional[asyncio.Task] = None

    @property
    def key(self) -> BotKey:
        return self.config.key

    @property
    def state(self) -> BotState:
        return BotState.RUNNING if self._running else BotState.STOPPED

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def consecutive_errors(self) -> int:
        return self._consecutive_errors

    @property
    def positions(self) -> Dict[str, Position]:
        """Copy of the open positions keyed by pair."""
        return self._positions.snapshot()

    def __repr__(self) -> str:
        return f"SentinelBot(key={self.key}, state={self.state.value}, positions={len(self._positions)})"

    # -- lifecycle ---------------------------------------------------------

    async def start(self) -> None:
        """Validate credentials, then enter Running and schedule the cycle.

        Raises:
            AlreadyRunningError: bot is running or a start is in flight
            InvalidCredentialsError: exchange rejected the credentials
            InsufficientPermissionsError: credentials lack permission
            ValidationError: the credential check failed for any other reason
        """
        if self._running or self._starting:
            raise AlreadyRunningError(f"Bot {self.key} is already running")

        self._starting = True
        try:
            await self._validate_credentials()
        except Exception:
            await self._close_client()
            raise
        finally:
            self._starting = False

        self._running = True
        self._consecutive_errors = 0
        self._scheduler_task = asyncio.create_task(self._schedule(), name=f"sentinel:{self.key}")
        logger.info(
            f"Bot started | bot={self.key} strategy={self.config.strategy_id} "
            f"pairs={','.join(self.config.trading_pairs)} interval={self.engine.poll_interval_seconds}s"
        )
        self._emit(BotEventType.STARTED)

    async def stop(self) -> None:
        """Cancel the schedule and enter Stopped. A no-op when already stopped.

        A cycle already in flight is left to finish; no further cycle starts.
        """
        if not self._running:
            return
        self._running = False

        task, self._scheduler_task = self._scheduler_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            await asyncio.wait({task})

        # An in-flight cycle closes the client itself when it finishes
        if self._cycle_task is None or self._cycle_task.done():
            await self._close_client()

        logger.info(f"Bot stopped | bot={self.key} open_positions={len(self._positions)}")
        self._emit(BotEventType.STOPPED)

    async def _validate_credentials(self) -> None:
        try:
            await self.client.validate_credentials()
        except Exception as e:
            status = getattr(e, "status", None)
            if isinstance(e, AuthenticationError) or status == 401:
                raise InvalidCredentialsError(f"Exchange rejected credentials for {self.key}") from e
            if isinstance(e, PermissionDeniedError) or status == 403:
                raise InsufficientPermissionsError(f"Credentials for {self.key} lack required permissions") from e
            raise ValidationError(f"Credential validation failed for {self.key}: {e}") from e

    async def _close_client(self) -> None:
        try:
            await self.client.close()
        except Exception as e:
            logger.warning(f"Failed to close exchange client | bot={self.key} error={e!r}")

    async def _schedule(self) -> None:
        """Start a cycle every poll interval, skipping ticks while one is running."""
        loop = asyncio.get_running_loop()
        interval = self.engine.poll_interval_seconds
        next_tick = loop.time() + interval
        while self._running:
            await asyncio.sleep(max(0.0, next_tick - loop.time()))
            while next_tick <= loop.time():
                next_tick += interval
            if not self._running:
                break
            if self._cycle_task is not None and not self._cycle_task.done():
                logger.warning(f"Previous cycle still running, tick skipped | bot={self.key}")
                continue
            self._cycle_task = asyncio.create_task(self._guarded_cycle())

    async def _guarded_cycle(self) -> None:
        try:
            await self.run_cycle()
        except Exception as e:
            logger.exception(f"Cycle crashed | bot={self.key} error={e!r}")
            self._emit(BotEventType.ERROR, error=e, context={"stage": "cycle"})
        finally:
            if not self._running:
                await self._close_client()

    # -- cycle -------------------------------------------------------------

    async def run_cycle(self) -> CycleReport:
        """Run one tick over every configured pair and apply the circuit breaker."""
        report = CycleReport(pairs=len(self.config.trading_pairs))
        last_critical: Optional[BaseException] = None

        for pair in self.config.trading_pairs:
            try:
                await self._process_pair(pair)
            except Exception as e:
                critical = is_critical_error(e)
                if critical:
                    report.critical_failures[pair] = e
                    last_critical = e
                    logger.error(f"Pair failed (critical) | bot={self.key} pair={pair} error={e!r}")
                else:
                    report.failures[pair] = e
                    logger.warning(f"Pair failed | bot={self.key} pair={pair} error={e!r}")
                if not isinstance(e, TradeExecutionError):
                    self._emit(
                        BotEventType.ERROR,
                        error=e,
                        context={"pair": pair, "stage": "signal", "critical": critical},
                    )
                if critical:
                    continue
            else:
                report.succeeded.append(pair)

            await self._monitor_position(pair)

        if report.failed:
            self._consecutive_errors += 1
            logger.error(
                f"Cycle failed | bot={self.key} critical={len(report.critical_failures)}/{report.pairs} "
                f"consecutive={self._consecutive_errors}/{self.engine.max_consecutive_errors}"
            )
            if self._running and self._consecutive_errors >= self.engine.max_consecutive_errors:
                await self._trip_circuit_breaker(last_critical)
        else:
            self._consecutive_errors = 0

        return report

    async def _process_pair(self, pair: str) -> None:
        ticker = await self.client.get_ticker(pair)
        candles = await self.client.get_historic_candles(pair, self.engine.candle_granularity)
        signal = self.strategy.evaluate(
            pair,
            ticker.price,
            candles,
            max_position_size=self.config.max_position_size,
            position=self._positions.get(pair),
        )
        if signal is None:
            logger.debug(f"No signal | bot={self.key} pair={pair} price={ticker.price} candles={len(candles)}")
            return
        logger.info(
            f"Signal | bot={self.key} pair={pair} action={signal.action.value} "
            f"price={signal.price} amount={signal.amount} reason={signal.reason!r}"
        )
        await self.execute_trade(signal)

    async def _monitor_position(self, pair: str) -> None:
        """Force a sell when the open position hits its stop-loss or take-profit."""
        position = self._positions.get(pair)
        if position is None:
            return
        try:
            ticker = await self.client.get_ticker(pair)
            reason = position.exit_reason(ticker.price)
            if reason is None:
                return
            logger.info(
                f"Exit triggered | bot={self.key} pair={pair} reason={reason!r} price={ticker.price} "
                f"entry={position.entry_price} stop_loss={position.stop_loss_price} take_profit={position.take_profit_price}"
            )
            await self.execute_trade(TradingSignal(
                pair=pair,
                action=TradeAction.SELL,
                price=ticker.price,
                amount=position.amount,
                reason=reason,
                confidence=FORCED_EXIT_CONFIDENCE,
            ))
        except Exception as e:
            logger.warning(f"Position check failed | bot={self.key} pair={pair} error={e!r}")
            if not isinstance(e, TradeExecutionError):
                self._emit(BotEventType.ERROR, error=e, context={"pair": pair, "stage": "monitor"})

    async def execute_trade(self, signal: TradingSignal) -> Dict[str, Any]:
        """Place a market order for ``signal`` and update the position book.

        Raises:
            TradeExecutionError: order placement failed; the exchange error is
                chained as ``__cause__`` and an ``error`` event was emitted
        """
        try:
            order = await self.client.place_market_order(signal.pair, signal.action.side, signal.amount)
        except Exception as e:
            logger.error(
                f"Order failed | bot={self.key} pair={signal.pair} action={signal.action.value} "
                f"amount={signal.amount} error={e!r}"
            )
            self._emit(
                BotEventType.ERROR,
                error=e,
                signal=signal,
                context={"pair": signal.pair, "stage": "execute", "signal": signal},
            )
            raise TradeExecutionError(f"Order placement failed for {signal.pair}: {e}", signal=signal) from e

        if signal.action is TradeAction.BUY:
            position = Position.open(
                pair=signal.pair,
                amount=signal.amount,
                entry_price=signal.price,
                stop_loss_percent=self.config.stop_loss_percent,
                take_profit_percent=self.config.take_profit_percent,
            )
            self._positions.set(position)
            logger.info(f"Position opened | bot={self.key} position={position.to_dict()}")
        else:
            self._positions.delete(signal.pair)

        logger.info(
            f"Trade executed | bot={self.key} pair={signal.pair} action={signal.action.value} "
            f"amount={signal.amount} price={signal.price} order_id={order.get('id')}"
        )
        self._emit(BotEventType.TRADE, signal=signal, order=order)
        return order

    async def _trip_circuit_breaker(self, error: Optional[BaseException]) -> None:
        failures = self._consecutive_errors
        logger.critical(
            f"Circuit breaker tripped, stopping bot | bot={self.key} consecutive_failures={failures} last_error={error!r}"
        )
        await self.stop()
        self._emit(
            BotEventType.CRITICAL_ERROR,
            error=error,
            context={"consecutive_errors": failures, "threshold": self.engine.max_consecutive_errors},
        )

    def _emit(self, event_type: BotEventType, **kwargs) -> None:
        dispatch(self._event_sink, BotEvent(
            type=event_type,
            user_id=self.config.user_id,
            strategy_id=self.config.strategy_id,
            active_strategy_id=self.config.active_strategy_id,
            **kwargs,
        ))
