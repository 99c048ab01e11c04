"""
Sentinel Bot Engine.

Autonomous per-(user, strategy) trading bots for Coinbase spot markets:
- Fixed-cadence polling of ticker and candle data per configured pair
- SMA20 crossover signals with a ±2% hysteresis band
- Market-order execution through an async exchange client
- Stop-loss / take-profit monitoring of open positions every cycle
- Circuit breaker that stops a bot after repeated critical failures
- Typed events for persistence and notification layers
- Structured logging via loguru
- Configuration-driven (YAML)

Core Modules:
    bot: SentinelBot worker (lifecycle, cycle, circuit breaker)
    manager: BotManager registry keyed by (user, active strategy)
    signals: SMA crossover signal generation
    position: Position thresholds and the per-bot PositionBook
    events: BotEvent types and sinks
    errors: Error taxonomy and critical-failure classification
    exchange: ExchangeClient interface and in-memory paper exchange
    coinbase_client: Coinbase Exchange REST client (aiohttp)
    rate_limit_policy: Client-side API rate limiting
    config: Configuration loading and validation
    secrets: Credential management
    runner: Process-level start/supervise/shutdown
    logging_setup: loguru sinks shared by every module

Example:
    >>> from sentinel.manager import BotManager
    >>> from sentinel.config import BotConfig
    >>> from sentinel.secrets import load_credentials
    >>>
    >>> manager = BotManager()
    >>> bot = manager.create_bot(BotConfig(
    ...     credentials=load_credentials(),
    ...     user_id="u1", strategy_id="sma", active_strategy_id="as1",
    ...     trading_pairs=("BTC-USD",),
    ... ))
    >>> await bot.start()
"""

__version__ = "0.1.0"
__all__ = [
    "bot",
    "manager",
    "signals",
    "position",
    "events",
    "errors",
    "exchange",
    "coinbase_client",
    "rate_limit_policy",
    "config",
    "secrets",
    "runner",
    "logging_setup",
]
