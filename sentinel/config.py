"""Configuration loader for the bot engine.

Supports YAML format with environment variable interpolation.
"""
import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, List, NamedTuple, Optional, Tuple

import yaml

from .errors import ConfigurationError
from .secrets import ExchangeCredentials, load_credentials


@dataclass
class ExchangeConfig:
    """Coinbase exchange settings."""
    base_url: str = "https://api.exchange.coinbase.com"
    timeout: int = 10
    max_retries: int = 5
    max_backoff_seconds: float = 60.0


@dataclass
class EngineConfig:
    """Scheduling, circuit-breaker and signal parameters shared by every bot."""
    poll_interval_seconds: float = 60.0
    max_consecutive_errors: int = 5
    candle_granularity: int = 3600  # 1h candles
    sma_period: int = 20
    signal_band_pct: Decimal = Decimal('0.02')  # ±2% around the SMA
    max_order_units: Decimal = Decimal('1')  # cap per buy, base units

    def __post_init__(self):
        if self.poll_interval_seconds <= 0:
            raise ConfigurationError("poll_interval_seconds must be positive")
        if self.max_consecutive_errors < 1:
            raise ConfigurationError("max_consecutive_errors must be at least 1")
        if self.sma_period < 1:
            raise ConfigurationError("sma_period must be at least 1")
        self.signal_band_pct = _decimal(self.signal_band_pct, "signal_band_pct")
        self.max_order_units = _decimal(self.max_order_units, "max_order_units")
        if not Decimal(0) <= self.signal_band_pct < Decimal(1):
            raise ConfigurationError("signal_band_pct must be in [0, 1)")
        if self.max_order_units <= 0:
            raise ConfigurationError("max_order_units must be positive")


@dataclass
class RateLimitConfig:
    """Client-side rate-limit policy settings."""
    orders_per_second: int = 15
    default_per_second: int = 10


@dataclass
class LoggingConfig:
    log_file: Optional[str] = "sentinel.log"
    log_level: str = "INFO"


def _decimal(value: Any, name: str) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ConfigurationError(f"{name} must be numeric, got {value!r}")


def _section(data: Dict[str, Any], name: str) -> Dict[str, Any]:
    """A top-level YAML section; an empty one (`engine:`) reads as defaults."""
    section = data.get(name) or {}
    if not isinstance(section, dict):
        raise ConfigurationError(f"{name} must be a mapping, got {type(section).__name__}")
    return section


class BotKey(NamedTuple):
    """Registry key: one live bot per (user, active strategy)."""
    user_id: str
    active_strategy_id: str

    def __str__(self) -> str:
        return f"{self.user_id}/{self.active_strategy_id}"


@dataclass(frozen=True)
class BotConfig:
    """Immutable configuration of one bot.

    Attributes:
        credentials: Exchange API credentials (validated non-empty, otherwise opaque)
        user_id: Owning user
        strategy_id: Strategy template the bot runs
        active_strategy_id: Per-user strategy instance; second half of the registry key
        trading_pairs: Product ids to monitor
        max_position_size: Quote-currency notional per buy
        stop_loss_percent: e.g. Decimal('5') for 5%
        take_profit_percent: e.g. Decimal('10') for 10%
    """
    credentials: ExchangeCredentials
    user_id: str
    strategy_id: str
    active_strategy_id: str
    trading_pairs: Tuple[str, ...]
    max_position_size: Decimal = Decimal('1000')
    stop_loss_percent: Decimal = Decimal('5')
    take_profit_percent: Decimal = Decimal('10')

    def __post_init__(self):
        object.__setattr__(self, "trading_pairs", tuple(self.trading_pairs))
        for name in ("max_position_size", "stop_loss_percent", "take_profit_percent"):
            object.__setattr__(self, name, _decimal(getattr(self, name), name))

    @property
    def key(self) -> BotKey:
        return BotKey(self.user_id, self.active_strategy_id)

    def validate(self) -> None:
        """Raise ConfigurationError for missing credentials or malformed values."""
        if self.credentials is None:
            raise ConfigurationError("Missing exchange credentials")
        missing = self.credentials.missing_fields()
        if missing:
            raise ConfigurationError(f"Missing exchange credentials: {', '.join(missing)}")
        for name in ("user_id", "strategy_id", "active_strategy_id"):
            if not getattr(self, name):
                raise ConfigurationError(f"{name} is required")
        if not self.trading_pairs:
            raise ConfigurationError("At least one trading pair is required")
        if self.max_position_size <= 0:
            raise ConfigurationError("max_position_size must be positive")
        if self.stop_loss_percent < 0 or self.take_profit_percent < 0:
            raise ConfigurationError("stop_loss_percent and take_profit_percent must be non-negative")
        if self.stop_loss_percent >= 100:
            raise ConfigurationError("stop_loss_percent must be below 100")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BotConfig":
        """Build from a YAML mapping.

        Credentials come from a ``credentials`` block, or from
        ``load_credentials()`` when the block is absent.
        """
        try:
            creds_data = data.get("credentials")
            if creds_data:
                credentials = ExchangeCredentials(
                    api_key=creds_data.get("api_key", ""),
                    api_secret=creds_data.get("api_secret", ""),
                    passphrase=creds_data.get("passphrase", ""),
                )
            else:
                try:
                    credentials = load_credentials()
                except ValueError as e:
                    raise ConfigurationError(str(e))
            pairs = data.get("trading_pairs") or []
            if isinstance(pairs, str):
                pairs = [pairs]
            return cls(
                credentials=credentials,
                user_id=str(data["user_id"]),
                strategy_id=str(data["strategy_id"]),
                active_strategy_id=str(data["active_strategy_id"]),
                trading_pairs=tuple(pairs),
                max_position_size=_decimal(data.get("max_position_size", "1000"), "max_position_size"),
                stop_loss_percent=_decimal(data.get("stop_loss_percent", "5"), "stop_loss_percent"),
                take_profit_percent=_decimal(data.get("take_profit_percent", "10"), "take_profit_percent"),
            )
        except KeyError as e:
            raise ConfigurationError(f"Bot config missing field: {e.args[0]}")
        except AttributeError:
            raise ConfigurationError(f"Bot config must be a mapping, got {type(data).__name__}")

    def to_dict(self, include_secrets: bool = False) -> Dict[str, Any]:
        data = {
            "user_id": self.user_id,
            "strategy_id": self.strategy_id,
            "active_strategy_id": self.active_strategy_id,
            "trading_pairs": list(self.trading_pairs),
            "max_position_size": str(self.max_position_size),
            "stop_loss_percent": str(self.stop_loss_percent),
            "take_profit_percent": str(self.take_profit_percent),
        }
        if include_secrets:
            data["credentials"] = dict(self.credentials._asdict())
        return data


@dataclass
class SentinelConfig:
    """Complete process configuration: shared settings plus the bots to run."""
    exchange: ExchangeConfig = field(default_factory=ExchangeConfig)
    engine: EngineConfig = field(default_factory=EngineConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    bots: List[BotConfig] = field(default_factory=list)

    @classmethod
    def from_yaml(cls, config_path: str) -> "SentinelConfig":
        """Load configuration from YAML file with env var interpolation.

        Args:
            config_path: Path to YAML config file

        Returns:
            SentinelConfig instance

        Example YAML:
            engine:
              poll_interval_seconds: 60
              max_consecutive_errors: 5
            bots:
              - user_id: u1
                strategy_id: sma-crossover
                active_strategy_id: as-1
                trading_pairs: [BTC-USD, ETH-USD]
                credentials:
                  api_key: "${CB_API_KEY}"
                  api_secret: "${CB_API_SECRET}"
                  passphrase: "${CB_API_PASSPHRASE}"
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        with config_file.open("r") as f:
            raw = f.read()

        # Interpolate environment variables: ${VAR_NAME}
        for key, value in os.environ.items():
            raw = raw.replace(f"${{{key}}}", value)

        data = yaml.safe_load(raw) or {}
        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SentinelConfig":
        if not isinstance(data, dict):
            raise ConfigurationError(f"Configuration must be a mapping, got {type(data).__name__}")
        try:
            exchange = ExchangeConfig(**_section(data, "exchange"))
            engine = EngineConfig(**_section(data, "engine"))
            rate_limit = RateLimitConfig(**_section(data, "rate_limit"))
            logging = LoggingConfig(**_section(data, "logging"))
        except TypeError as e:
            raise ConfigurationError(f"Unknown configuration key: {e}")

        bots = data.get("bots") or []
        if not isinstance(bots, list):
            raise ConfigurationError(f"bots must be a list, got {type(bots).__name__}")
        return cls(
            exchange=exchange,
            engine=engine,
            rate_limit=rate_limit,
            logging=logging,
            bots=[BotConfig.from_dict(b) for b in bots],
        )

    def to_yaml(self, output_path: str, include_secrets: bool = False) -> None:
        """Save configuration to YAML file."""
        data = {
            "exchange": {
                "base_url": self.exchange.base_url,
                "timeout": self.exchange.timeout,
                "max_retries": self.exchange.max_retries,
                "max_backoff_seconds": self.exchange.max_backoff_seconds,
            },
            "engine": {
                "poll_interval_seconds": self.engine.poll_interval_seconds,
                "max_consecutive_errors": self.engine.max_consecutive_errors,
                "candle_granularity": self.engine.candle_granularity,
                "sma_period": self.engine.sma_period,
                "signal_band_pct": str(self.engine.signal_band_pct),
                "max_order_units": str(self.engine.max_order_units),
            },
            "rate_limit": {
                "orders_per_second": self.rate_limit.orders_per_second,
                "default_per_second": self.rate_limit.default_per_second,
            },
            "logging": {
                "log_file": self.logging.log_file,
                "log_level": self.logging.log_level,
            },
            "bots": [b.to_dict(include_secrets=include_secrets) for b in self.bots],
        }

        output_file = Path(output_path)
        output_file.parent.mkdir(parents=True, exist_ok=True)
        with output_file.open("w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)
