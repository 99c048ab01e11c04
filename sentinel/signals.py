"""
Moving-average crossover signal generation.

``SmaCrossoverStrategy.evaluate`` is a pure function of data the caller
already fetched: the pair, its current price, its recent candles, the bot's
max position size and the open position for the pair (if any). It never
touches the network.

A ±2% band around the SMA keeps signals from flapping when price sits on the
average.

Examples:
    >>> from decimal import Decimal
    >>> simple_moving_average([Decimal(100)] * 19 + [Decimal(110)], 20)
    Decimal('100.5')
"""

from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal
from enum import Enum
from typing import Optional, Sequence

from .exchange import Candle, OrderSide
from .position import Position

SIZE_QUANTUM = Decimal("0.00000001")


class TradeAction(str, Enum):
    BUY = "buy"
    SELL = "sell"

    @property
    def side(self) -> OrderSide:
        return OrderSide(self.value)


@dataclass(frozen=True)
class TradingSignal:
    """A trade the bot intends to execute within the current cycle.

    Attributes:
        pair: Product id
        action: BUY or SELL
        price: Price the signal was generated at (becomes entry price on BUY)
        amount: Size in base-currency units
        reason: Human-readable trigger description
        confidence: Score in [0, 1]
    """

    pair: str
    action: TradeAction
    price: Decimal
    amount: Decimal
    reason: str
    confidence: float

    def __post_init__(self):
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"confidence must be in [0, 1], got {self.confidence}")

    def to_dict(self) -> dict:
        return {
            "pair": self.pair,
            "action": self.action.value,
            "price": str(self.price),
            "amount": str(self.amount),
            "reason": self.reason,
            "confidence": self.confidence,
        }


def simple_moving_average(closes: Sequence[Decimal], period: int) -> Decimal:
    """Average of the last ``period`` values of a chronological series."""
    if period <= 0 or len(closes) < period:
        raise ValueError(f"need at least {period} values, got {len(closes)}")
    window = closes[-period:]
    return sum(window, Decimal(0)) / Decimal(period)


@dataclass(frozen=True)
class SmaCrossoverStrategy:
    """Buy above SMA × (1 + band), sell an open position below SMA × (1 - band)."""

    period: int = 20
    band_pct: Decimal = Decimal("0.02")
    confidence: float = 0.7
    max_order_units: Decimal = Decimal("1")

    def evaluate(
        self,
        pair: str,
        price: Decimal,
        candles: Sequence[Candle],
        max_position_size: Decimal,
        position: Optional[Position] = None,
    ) -> Optional[TradingSignal]:
        """Return a signal for ``pair`` or None.

        Fewer than ``period`` candles is not an error; it simply yields no signal.
        """
        if not candles or len(candles) < self.period or price <= 0:
            return None

        closes = [c.close for c in sorted(candles, key=lambda c: c.time)]
        sma = simple_moving_average(closes, self.period)

        if price > sma * (Decimal(1) + self.band_pct):
            amount = min(max_position_size / price, self.max_order_units)
            amount = amount.quantize(SIZE_QUANTUM, rounding=ROUND_DOWN)
            if amount <= 0:
                return None
            return TradingSignal(
                pair=pair,
                action=TradeAction.BUY,
                price=price,
                amount=amount,
                reason=f"price crossed above SMA{self.period}",
                confidence=self.confidence,
            )

        if price < sma * (Decimal(1) - self.band_pct) and position is not None:
            return TradingSignal(
                pair=pair,
                action=TradeAction.SELL,
                price=price,
                amount=position.amount,
                reason=f"price crossed below SMA{self.period}",
                confidence=self.confidence,
            )

        return None
