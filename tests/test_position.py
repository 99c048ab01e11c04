from decimal import Decimal

import pytest

from sentinel.position import STOP_LOSS_REASON, TAKE_PROFIT_REASON, Position, PositionBook


@pytest.fixture
def position():
    return Position.open(
        pair="BTC-USD",
        amount=Decimal("0.25"),
        entry_price=Decimal("100"),
        stop_loss_percent=Decimal("5"),
        take_profit_percent=Decimal("10"),
    )


def test_thresholds_from_entry(position):
    assert position.stop_loss_price == Decimal("95")
    assert position.take_profit_price == Decimal("110")


def test_stop_loss_triggered(position):
    assert position.exit_reason(Decimal("94")) == STOP_LOSS_REASON == "stop loss triggered"
    assert position.exit_reason(Decimal("95")) == STOP_LOSS_REASON


def test_take_profit_triggered(position):
    assert position.exit_reason(Decimal("111")) == TAKE_PROFIT_REASON == "take profit triggered"
    assert position.exit_reason(Decimal("110")) == TAKE_PROFIT_REASON


def test_no_exit_inside_range(position):
    assert position.exit_reason(Decimal("100")) is None
    assert position.exit_reason(Decimal("95.01")) is None
    assert position.exit_reason(Decimal("109.99")) is None


def test_zero_percent_thresholds_sit_on_entry():
    pos = Position.open("ETH-USD", Decimal("1"), Decimal("2000"), Decimal("0"), Decimal("0"))
    # stop-loss wins when both thresholds equal the price
    assert pos.exit_reason(Decimal("2000")) == STOP_LOSS_REASON


def test_to_dict_uses_strings(position):
    data = position.to_dict()
    assert data["amount"] == "0.25"
    assert data["stop_loss_price"] == "95.00"
    assert data["take_profit_price"] == "110.00"
    assert data["opened_at"] == position.opened_at.isoformat()


def test_book_holds_one_position_per_pair(position):
    book = PositionBook()
    book.set(position)
    replacement = Position.open("BTC-USD", Decimal("1"), Decimal("200"), Decimal("5"), Decimal("10"))
    book.set(replacement)

    assert len(book) == 1
    assert book.get("BTC-USD") is replacement


def test_book_delete_and_missing(position):
    book = PositionBook()
    book.set(position)

    assert "BTC-USD" in book
    assert book.delete("BTC-USD") is position
    assert book.get("BTC-USD") is None
    assert book.delete("BTC-USD") is None
    assert "BTC-USD" not in book


def test_book_snapshot_is_a_copy(position):
    book = PositionBook()
    book.set(position)
    snap = book.snapshot()
    snap.clear()
    assert len(book) == 1
    assert "BTC-USD" in book
