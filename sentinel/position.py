"""
Open position tracking with stop-loss and take-profit thresholds.

This module provides:
- Position: a single-leg long exposure on one pair, with stop-loss and
  take-profit prices derived from the entry price at open time
- PositionBook: the per-bot keyed store of open positions

The book holds at most one Position per pair. Opening a pair again
overwrites the previous entry; there is no averaging in.

Examples:
    >>> from decimal import Decimal
    >>> pos = Position.open(
    ...     pair="BTC-USD",
    ...     amount=Decimal("0.1"),
    ...     entry_price=Decimal("100"),
    ...     stop_loss_percent=Decimal("5"),
    ...     take_profit_percent=Decimal("10"),
    ... )
    >>> pos.stop_loss_price, pos.take_profit_price
    (Decimal('95.00'), Decimal('110.00'))
    >>> pos.exit_reason(Decimal("94"))
    'stop loss triggered'
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, Optional

STOP_LOSS_REASON = "stop loss triggered"
TAKE_PROFIT_REASON = "take profit triggered"

_HUNDRED = Decimal(100)


@dataclass
class Position:
    """An open long position.

    Attributes:
        pair: Product id
        amount: Quantity held in base-currency units
        entry_price: Price the buy signal executed at
        stop_loss_price: entry × (1 − stop_loss_percent/100)
        take_profit_price: entry × (1 + take_profit_percent/100)
        opened_at: UTC time the position was opened

    Invariants:
        - stop_loss_price <= entry_price <= take_profit_price
    """

    pair: str
    amount: Decimal
    entry_price: Decimal
    stop_loss_price: Decimal
    take_profit_price: Decimal
    opened_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def open(
        cls,
        pair: str,
        amount: Decimal,
        entry_price: Decimal,
        stop_loss_percent: Decimal,
        take_profit_percent: Decimal,
    ) -> "Position":
        """Create a position and compute its exit thresholds."""
        return cls(
            pair=pair,
            amount=amount,
            entry_price=entry_price,
            stop_loss_price=entry_price * (Decimal(1) - Decimal(stop_loss_percent) / _HUNDRED),
            take_profit_price=entry_price * (Decimal(1) + Decimal(take_profit_percent) / _HUNDRED),
        )

    def exit_reason(self, price: Decimal) -> Optional[str]:
        """Return why ``price`` forces an exit, or None if it doesn't.

        Stop-loss is checked before take-profit.
        """
        if price <= self.stop_loss_price:
            return STOP_LOSS_REASON
        if price >= self.take_profit_price:
            return TAKE_PROFIT_REASON
        return None

    def to_dict(self) -> Dict[str, str]:
        """Serialize position to dictionary, Decimals as strings."""
        return {
            "pair": self.pair,
            "amount": str(self.amount),
            "entry_price": str(self.entry_price),
            "stop_loss_price": str(self.stop_loss_price),
            "take_profit_price": str(self.take_profit_price),
            "opened_at": self.opened_at.isoformat(),
        }


class PositionBook:
    """Per-bot store of open positions keyed by pair.

    Owned by exactly one bot and only touched from that bot's cycle, which
    never overlaps with itself, so no locking is done here.
    """

    def __init__(self):
        self._positions: Dict[str, Position] = {}

    def get(self, pair: str) -> Optional[Position]:
        return self._positions.get(pair)

    def set(self, position: Position) -> None:
        self._positions[position.pair] = position

    def delete(self, pair: str) -> Optional[Position]:
        return self._positions.pop(pair, None)

    def snapshot(self) -> Dict[str, Position]:
        return dict(self._positions)

    def __contains__(self, pair: object) -> bool:
        return pair in self._positions

    def __len__(self) -> int:
        return len(self._positions)
