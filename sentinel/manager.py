"""Registry of live bots keyed by (user, active strategy)."""
import asyncio
from typing import Dict, Optional

from .bot import ClientFactory, SentinelBot
from .config import BotConfig, BotKey, EngineConfig
from .errors import DuplicateBotError
from .events import EventSink
from .logging_setup import logger


class BotManager:
    """Create, look up and stop bots; at most one bot per key.

    Every bot the manager creates shares its engine settings, client factory
    and event sink. Construct one manager per process (or per test) and call
    ``stop_all()`` on shutdown.
    """

    def __init__(
        self,
        *,
        engine: Optional[EngineConfig] = None,
        client_factory: Optional[ClientFactory] = None,
        event_sink: Optional[EventSink] = None,
    ):
        self.engine = engine or EngineConfig()
        self.client_factory = client_factory
        self.event_sink = event_sink
        self._bots: Dict[BotKey, SentinelBot] = {}

    def create_bot(self, config: BotConfig) -> SentinelBot:
        """Build and register a bot for ``config``. The bot is not started.

        Raises:
            DuplicateBotError: a bot already exists for this user and strategy
            ConfigurationError: the config is invalid
        """
        key = config.key
        if key in self._bots:
            raise DuplicateBotError(f"Bot already exists for user {key.user_id} and strategy {key.active_strategy_id}")

        bot = SentinelBot(
            config,
            engine=self.engine,
            client_factory=self.client_factory,
            event_sink=self.event_sink,
        )
        self._bots[key] = bot
        logger.info(f"Bot registered | bot={key} strategy={config.strategy_id}")
        return bot

    def get_bot(self, user_id: str, active_strategy_id: str) -> Optional[SentinelBot]:
        return self._bots.get(BotKey(user_id, active_strategy_id))

    async def stop_bot(self, user_id: str, active_strategy_id: str) -> None:
        """Stop and deregister a bot; no-op if none is registered."""
        key = BotKey(user_id, active_strategy_id)
        bot = self._bots.get(key)
        if bot is None:
            return
        try:
            await bot.stop()
        finally:
            self._bots.pop(key, None)
        logger.info(f"Bot removed | bot={key}")

    async def stop_all(self) -> None:
        """Stop every bot concurrently and clear the registry."""
        bots = list(self._bots.values())
        self._bots.clear()
        if not bots:
            return
        results = await asyncio.gather(*(bot.stop() for bot in bots), return_exceptions=True)
        for bot, result in zip(bots, results):
            if isinstance(result, Exception):
                logger.error(f"Bot failed to stop cleanly | bot={bot.key} error={result!r}")
        logger.info(f"All bots stopped | count={len(bots)}")

    def snapshot(self) -> Dict[BotKey, SentinelBot]:
        """Point-in-time copy of the registry."""
        return dict(self._bots)

    def __len__(self) -> int:
        return len(self._bots)

    def __contains__(self, key: object) -> bool:
        return key in self._bots
