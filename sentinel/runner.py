"""Process-level runner: start the configured bots and supervise until shutdown.

- Creates and starts every configured bot through one BotManager
- Watches for a stop request or for every bot having stopped itself
- Stops all bots on the way out
"""
import asyncio
from typing import Iterable, List, Optional

from .bot import ClientFactory
from .coinbase_client import CoinbaseClient
from .config import BotConfig, SentinelConfig
from .errors import SentinelError
from .events import BotEvent, BotEventType, EventSink
from .logging_setup import logger
from .manager import BotManager
from .rate_limit_policy import RateLimitManager
from .secrets import ExchangeCredentials


def coinbase_client_factory(config: SentinelConfig) -> ClientFactory:
    """Client factory honouring the exchange and rate-limit sections."""
    def factory(credentials: ExchangeCredentials) -> CoinbaseClient:
        return CoinbaseClient.from_credentials(
            credentials,
            base_url=config.exchange.base_url,
            timeout=config.exchange.timeout,
            max_retries=config.exchange.max_retries,
            max_backoff_seconds=config.exchange.max_backoff_seconds,
            rate_limiter=RateLimitManager.from_rates(
                config.rate_limit.orders_per_second,
                config.rate_limit.default_per_second,
            ),
        )
    return factory


def log_event(event: BotEvent) -> None:
    """Event sink that writes every bot event to the log."""
    bot = f"{event.user_id}/{event.active_strategy_id}"
    if event.type == BotEventType.TRADE:
        logger.info(f"Event trade | bot={bot} signal={event.signal.to_dict()} order_id={(event.order or {}).get('id')}")
    elif event.type == BotEventType.CRITICAL_ERROR:
        logger.critical(f"Event critical_error | bot={bot} error={event.error!r} context={event.context}")
    elif event.type == BotEventType.ERROR:
        logger.debug(f"Event error | bot={bot} error={event.error!r} pair={event.context.get('pair')}")
    else:
        logger.info(f"Event {event.type.value} | bot={bot}")


class BotRunner:
    """Start bots from config and keep the process alive while any is running."""

    def __init__(
        self,
        manager: BotManager,
        bot_configs: Iterable[BotConfig],
        *,
        check_interval: float = 5.0,
    ):
        self.manager = manager
        self.bot_configs: List[BotConfig] = list(bot_configs)
        self.check_interval = check_interval
        self._stop_event = asyncio.Event()

    @classmethod
    def from_config(cls, config: SentinelConfig, event_sink: Optional[EventSink] = log_event) -> "BotRunner":
        manager = BotManager(
            engine=config.engine,
            client_factory=coinbase_client_factory(config),
            event_sink=event_sink,
        )
        return cls(manager, config.bots)

    async def start(self) -> int:
        """Start the bots and block until stop() or until every bot has stopped.

        Returns:
            Number of bots that started successfully
        """
        started = await self._start_bots()
        try:
            if started:
                await self._supervise()
            else:
                logger.error("No bot could be started")
        finally:
            await self.manager.stop_all()
        return started

    async def stop(self) -> None:
        """Signal the runner to shut down."""
        self._stop_event.set()

    async def _start_bots(self) -> int:
        started = 0
        for bot_config in self.bot_configs:
            key = bot_config.key
            try:
                bot = self.manager.create_bot(bot_config)
            except SentinelError as e:
                logger.error(f"Bot not created | bot={key} error={e}")
                continue
            try:
                await bot.start()
            except SentinelError as e:
                logger.error(f"Bot failed to start | bot={key} error={e}")
                await self.manager.stop_bot(key.user_id, key.active_strategy_id)
                continue
            started += 1
        return started

    async def _supervise(self) -> None:
        while not self._stop_event.is_set():
            if not any(bot.is_running for bot in self.manager.snapshot().values()):
                logger.warning("Every bot has stopped; shutting down runner")
                return
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.check_interval)
            except asyncio.TimeoutError:
                pass
