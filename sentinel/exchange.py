"""
Exchange client capability set consumed by the bot engine.

The engine never talks to an exchange directly; it depends on the async
``ExchangeClient`` interface below. ``CoinbaseClient`` implements it against
the Coinbase Exchange REST API, and ``InMemoryExchange`` is a scriptable paper
exchange for tests and dry runs.

All prices and sizes use Decimal.
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Union


class OrderSide(str, Enum):
    """Order side as sent to the exchange."""

    BUY = "buy"
    SELL = "sell"


class ExchangeError(Exception):
    """Base class for exchange client failures."""


class ExchangeAPIError(ExchangeError):
    """Non-2xx response from the exchange.

    Attributes:
        status: HTTP status code (None when unknown)
    """

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class AuthenticationError(ExchangeAPIError):
    """Credentials were rejected (401)."""

    def __init__(self, message: str = "authentication rejected", status: int = 401):
        super().__init__(message, status)


class PermissionDeniedError(ExchangeAPIError):
    """Credentials lack the required scope (403)."""

    def __init__(self, message: str = "forbidden", status: int = 403):
        super().__init__(message, status)


class RateLimitError(ExchangeAPIError):
    """Rate limit hit and backoff is exhausted (429)."""

    def __init__(self, message: str = "rate limited", status: int = 429):
        super().__init__(message, status)


class ExchangeConnectionError(ExchangeError):
    """The exchange could not be reached."""


class ExchangeTimeoutError(ExchangeError):
    """The exchange did not answer in time."""


@dataclass(frozen=True)
class Ticker:
    """Last-trade snapshot for a product."""

    pair: str
    price: Decimal
    bid: Optional[Decimal] = None
    ask: Optional[Decimal] = None
    volume: Optional[Decimal] = None


@dataclass(frozen=True)
class Candle:
    """One OHLCV bucket. ``time`` is the bucket start as a Unix timestamp."""

    time: int
    low: Decimal
    high: Decimal
    open: Decimal
    close: Decimal
    volume: Decimal = Decimal("0")

    @classmethod
    def from_row(cls, row: Sequence[Any]) -> "Candle":
        """Build from a Coinbase ``[time, low, high, open, close, volume]`` row."""
        return cls(
            time=int(row[0]),
            low=Decimal(str(row[1])),
            high=Decimal(str(row[2])),
            open=Decimal(str(row[3])),
            close=Decimal(str(row[4])),
            volume=Decimal(str(row[5])) if len(row) > 5 else Decimal("0"),
        )


class ExchangeClient(ABC):
    """Abstract async exchange client.

    Every method is an I/O boundary. Implementations raise the
    ``ExchangeError`` hierarchy so callers can classify failures.
    """

    @abstractmethod
    async def validate_credentials(self) -> None:
        """Check the account endpoints.

        Raises:
            AuthenticationError: credentials rejected
            PermissionDeniedError: credentials lack permission
            ExchangeError: anything else
        """

    @abstractmethod
    async def get_ticker(self, pair: str) -> Ticker:
        """Fetch the current ticker for ``pair``."""

    @abstractmethod
    async def get_historic_candles(self, pair: str, granularity: int) -> List[Candle]:
        """Fetch recent candles for ``pair``, most recent first.

        Args:
            pair: Product id, e.g. "BTC-USD"
            granularity: Bucket size in seconds
        """

    @abstractmethod
    async def place_market_order(self, pair: str, side: OrderSide, size: Decimal) -> Dict[str, Any]:
        """Place a market order and return the exchange's order record."""

    async def close(self) -> None:
        """Release network resources. Safe to call more than once."""


class InMemoryExchange(ExchangeClient):
    """A paper exchange that records orders and lets tests drive prices.

    Failures can be scripted per operation with ``fail_next`` (one-shot) or
    ``fail_always`` (until cleared).
    """

    def __init__(self, prices: Optional[Dict[str, Union[Decimal, str, int, float]]] = None):
        self.prices: Dict[str, Decimal] = {k: Decimal(str(v)) for k, v in (prices or {}).items()}
        self.candles: Dict[str, List[Candle]] = {}
        self.orders: List[Dict[str, Any]] = []
        self.credentials_error: Optional[Exception] = None
        self.closed = False
        self._one_shot: Dict[str, List[Exception]] = {}
        self._persistent: Dict[str, Exception] = {}
        self.next_id = 1

    def set_price(self, pair: str, price) -> None:
        self.prices[pair] = Decimal(str(price))

    def set_closes(self, pair: str, closes: Sequence, granularity: int = 3600, end: Optional[int] = None) -> None:
        """Install candles from chronological closing prices.

        Stored most recent first, the way Coinbase returns them.
        """
        end = end if end is not None else int(time.time()) // granularity * granularity
        start = end - granularity * (len(closes) - 1)
        chronological = [
            Candle(time=start + i * granularity, low=Decimal(str(c)), high=Decimal(str(c)),
                   open=Decimal(str(c)), close=Decimal(str(c)))
            for i, c in enumerate(closes)
        ]
        self.candles[pair] = list(reversed(chronological))

    def fail_next(self, operation: str, error: Exception) -> None:
        self._one_shot.setdefault(operation, []).append(error)

    def fail_always(self, operation: str, error: Optional[Exception]) -> None:
        if error is None:
            self._persistent.pop(operation, None)
        else:
            self._persistent[operation] = error

    def _maybe_fail(self, operation: str) -> None:
        queued = self._one_shot.get(operation)
        if queued:
            raise queued.pop(0)
        if operation in self._persistent:
            raise self._persistent[operation]

    async def validate_credentials(self) -> None:
        self._maybe_fail("validate_credentials")
        if self.credentials_error is not None:
            raise self.credentials_error

    async def get_ticker(self, pair: str) -> Ticker:
        self._maybe_fail("get_ticker")
        if pair not in self.prices:
            raise ExchangeAPIError(f"NotFound: unknown product {pair}", status=404)
        return Ticker(pair=pair, price=self.prices[pair])

    async def get_historic_candles(self, pair: str, granularity: int) -> List[Candle]:
        self._maybe_fail("get_historic_candles")
        return list(self.candles.get(pair, []))

    async def place_market_order(self, pair: str, side: OrderSide, size: Decimal) -> Dict[str, Any]:
        self._maybe_fail("place_market_order")
        oid = f"m{self.next_id}"
        self.next_id += 1
        order = {
            "id": oid,
            "product_id": pair,
            "side": OrderSide(side).value,
            "type": "market",
            "size": str(size),
            "status": "done",
        }
        self.orders.append(order)
        return order

    async def close(self) -> None:
        self.closed = True
