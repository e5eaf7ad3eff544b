"""PositionLifecycle: fills -> positions, key uniqueness, close accounting."""
import math
import statistics
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from execution.errors import ValidationError
from execution.models import (
    CloseReason, MarketType, Order, OrderSide, OrderStatus, OrderType, Position, PositionSide,
    PositionStatus,
)


def _fill(order_id, side, qty, price, symbol="BTCUSDT", exchange="BYBIT", **kw):
    return Order(order_id=order_id, symbol=symbol, exchange=exchange, side=side,
                 order_type=OrderType.MARKET, quantity=Decimal(qty), executed_qty=Decimal(qty),
                 avg_fill_price=Decimal(price), status=OrderStatus.FILLED, **kw)


def test_round_trip_realizes_price_difference_times_quantity(services):
    lc = services.lifecycle
    opened = lc.apply_fill(_fill("o1", OrderSide.BUY, "3", "100"))
    closed = lc.apply_fill(_fill("o2", OrderSide.SELL, "3", "110"))

    assert closed.position_id == opened.position_id
    assert closed.status is PositionStatus.CLOSED
    assert closed.realized_pnl == Decimal("30")
    assert closed.close_reason is CloseReason.FILLED_OFFSET
    assert closed.exit_order_ids == ["o2"]
    assert services.positions.find_by_status(PositionStatus.OPEN) == []


def test_short_round_trip(services):
    lc = services.lifecycle
    lc.apply_fill(_fill("o1", OrderSide.SELL, "2", "100"))
    closed = lc.apply_fill(_fill("o2", OrderSide.BUY, "2", "90"))

    assert closed.side is PositionSide.SHORT
    assert closed.realized_pnl == Decimal("20")


def test_same_side_fill_increases_with_weighted_average(services):
    lc = services.lifecycle
    lc.apply_fill(_fill("o1", OrderSide.BUY, "1", "100"))
    pos = lc.apply_fill(_fill("o2", OrderSide.BUY, "3", "120"))

    assert pos.quantity == Decimal("4")
    assert pos.entry_price == Decimal("115")
    assert len(services.positions.find_by_status(PositionStatus.OPEN)) == 1


def test_partial_offset_books_pnl_until_close(services):
    lc = services.lifecycle
    lc.apply_fill(_fill("o1", OrderSide.BUY, "4", "100"))
    reduced = lc.apply_fill(_fill("o2", OrderSide.SELL, "1", "110"))

    assert reduced.is_open
    assert reduced.quantity == Decimal("3")
    assert reduced.realized_pnl is None

    closed = lc.apply_fill(_fill("o3", OrderSide.SELL, "3", "105"))
    assert closed.realized_pnl == Decimal("10") + Decimal("15")


def test_opposite_fill_larger_than_position_does_not_open_reverse(services):
    lc = services.lifecycle
    lc.apply_fill(_fill("o1", OrderSide.BUY, "1", "100"))
    lc.apply_fill(_fill("o2", OrderSide.SELL, "5", "101"))

    assert services.positions.find_by_status(PositionStatus.OPEN) == []


def test_fills_on_different_exchanges_are_separate_keys(services):
    lc = services.lifecycle
    lc.apply_fill(_fill("o1", OrderSide.BUY, "1", "100"))
    lc.apply_fill(_fill("o2", OrderSide.BUY, "1", "100", exchange="MEXC"))

    keys = [p.key for p in services.positions.find_by_status(PositionStatus.OPEN)]
    assert len(keys) == 2 == len(set(keys))


def test_close_accounting_fields(services):
    lc = services.lifecycle
    pos = lc.apply_fill(_fill("o1", OrderSide.BUY, "2", "100",
                              metadata={"stop_loss": Decimal("95")}))
    closed = lc.close_with_order(pos.position_id, _fill("o2", OrderSide.SELL, "2", "110"),
                                 CloseReason.TAKE_PROFIT)

    assert closed.close_reason is CloseReason.TAKE_PROFIT
    assert closed.gross_profit == Decimal("20")
    assert closed.fees == Decimal("220") * Decimal("0.001")
    assert closed.net_profit == Decimal("20") - Decimal("0.220")
    assert closed.risk_reward_ratio == Decimal("2.0000")
    assert closed.exit_price == Decimal("110")


def test_close_with_unfilled_order_leaves_position_open(services):
    lc = services.lifecycle
    pos = lc.apply_fill(_fill("o1", OrderSide.BUY, "1", "100"))
    pending = Order(order_id="o2", symbol="BTCUSDT", exchange="BYBIT", side=OrderSide.SELL,
                    order_type=OrderType.MARKET, quantity=Decimal("1"))

    result = lc.close_with_order(pos.position_id, pending, CloseReason.STOP_LOSS)

    assert result.is_open
    assert result.realized_pnl is None


def test_reconciliation_close_uses_last_unrealized(services):
    pos = Position(symbol="ETHUSDT", exchange="BYBIT", market_type=MarketType.LINEAR,
                   side=PositionSide.LONG, quantity=Decimal("1"), entry_price=Decimal("100"))
    pos.mark(Decimal("93"))
    services.positions.save(pos)

    closed = services.lifecycle.close_without_order(pos, CloseReason.RECONCILIATION_MISSING)

    assert closed.realized_pnl == Decimal("-7")
    assert closed.close_reason.value == "reconciliation_closed_not_on_exchange"


def test_position_invariants():
    with pytest.raises(ValidationError):
        Position(symbol="X", exchange="BYBIT", market_type=MarketType.LINEAR,
                 side=PositionSide.LONG, quantity=Decimal("0"), entry_price=Decimal("1"))

    pos = Position(symbol="X", exchange="BYBIT", market_type=MarketType.LINEAR,
                   side=PositionSide.LONG, quantity=Decimal("1"), entry_price=Decimal("1"))
    pos.close(CloseReason.MANUAL, Decimal("0"))
    with pytest.raises(ValidationError):
        pos.close(CloseReason.MANUAL, Decimal("1"))


def _round_trip(lc, n, entry, exit_, symbol="BTCUSDT"):
    lc.apply_fill(_fill(f"b{n}", OrderSide.BUY, "1", entry, symbol=symbol))
    return lc.apply_fill(_fill(f"s{n}", OrderSide.SELL, "1", exit_, symbol=symbol))


def test_quick_exit_annualizes_over_at_least_one_hour(services):
    closed = _round_trip(services.lifecycle, 1, "100", "100.1")

    assert closed.annualized_return == pytest.approx(1.001 ** (365 * 24) - 1)


def test_annualized_return_over_a_year_matches_total_return(services):
    pos = Position(symbol="BTCUSDT", exchange="BYBIT", market_type=MarketType.LINEAR,
                   side=PositionSide.LONG, quantity=Decimal("1"), entry_price=Decimal("100"),
                   open_time=datetime.now(timezone.utc) - timedelta(days=365))
    services.positions.save(pos)

    closed = services.lifecycle.apply_fill(_fill("s1", OrderSide.SELL, "1", "110"))

    assert closed.position_id == pos.position_id
    assert closed.annualized_return == pytest.approx(0.10, rel=1e-4)


def test_sharpe_uses_closed_history_even_when_annualizing_overflows(services):
    lc = services.lifecycle
    for n, exit_ in enumerate(["101", "99", "102"]):
        _round_trip(lc, n, "100", exit_)

    closed = _round_trip(lc, 9, "100", "110")

    returns = [0.01, -0.01, 0.02, 0.10]
    expected = (statistics.mean(returns) - 0.02 / 252) / statistics.stdev(returns) * math.sqrt(252)
    assert closed.realized_pnl == Decimal("10")
    assert closed.annualized_return is None
    assert closed.sharpe_ratio == pytest.approx(expected)


def test_sharpe_needs_two_samples(services):
    closed = _round_trip(services.lifecycle, 1, "100", "110")

    assert closed.sharpe_ratio is None
