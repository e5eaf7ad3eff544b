"""PositionMonitor: exit priority, secure-profit ratchet, failure handling, manual close."""
from decimal import Decimal

import pytest

from config import MonitorConfig
from conftest import Services
from execution.errors import ExchangeMismatchError, PositionNotFoundError, TransientNetworkError
from execution.models import (
    CloseReason, MarketType, OrderSide, Position, PositionSide, PositionStatus,
)


def _open(services, side=PositionSide.LONG, entry="100", price="100", stop=None, target=None,
          symbol="BTCUSDT", exchange="BYBIT"):
    pos = Position(symbol=symbol, exchange=exchange, market_type=MarketType.LINEAR, side=side,
                   quantity=Decimal("2"), entry_price=Decimal(entry),
                   stop_loss_price=Decimal(stop) if stop else None,
                   take_profit_price=Decimal(target) if target else None)
    pos.mark(Decimal(price))
    services.positions.save(pos)
    return pos


def _move(services, pos, price):
    current = services.positions.find_by_id(pos.position_id)
    current.mark(Decimal(price))
    services.positions.save(current)
    services.exchanges[pos.exchange].prices[pos.symbol] = Decimal(price)


def test_long_stop_loss_closes_with_opposite_market_order(services, bybit):
    pos = _open(services, stop="95", target="120")
    _move(services, pos, "94")

    action = services.monitor.evaluate(pos.position_id)

    assert action.action == "closed"
    [request] = bybit.placed
    assert request.side is OrderSide.SELL
    assert request.quantity == Decimal("2")
    assert request.reduce_only
    closed = services.positions.find_by_id(pos.position_id)
    assert closed.close_reason is CloseReason.STOP_LOSS
    assert closed.realized_pnl == Decimal("-12")


def test_short_take_profit(services, bybit):
    pos = _open(services, side=PositionSide.SHORT, stop="110", target="90")
    _move(services, pos, "89")

    services.monitor.evaluate(pos.position_id)

    closed = services.positions.find_by_id(pos.position_id)
    assert bybit.placed[0].side is OrderSide.BUY
    assert closed.close_reason is CloseReason.TAKE_PROFIT
    assert closed.realized_pnl == Decimal("22")


def test_stop_loss_wins_over_take_profit(services):
    # Inverted levels so both conditions hold at once.
    pos = _open(services, stop="105", target="95")
    _move(services, pos, "100")

    services.monitor.evaluate(pos.position_id)

    assert services.positions.find_by_id(pos.position_id).close_reason is CloseReason.STOP_LOSS


def test_no_trigger_leaves_position_untouched(services, bybit):
    pos = _open(services, stop="90", target="120", price="105")

    assert services.monitor.evaluate(pos.position_id) is None
    assert bybit.placed == []


def test_failed_exit_order_keeps_position_open(services, bybit):
    pos = _open(services, stop="95")
    _move(services, pos, "90")
    bybit.order_script = [TransientNetworkError("down", "BYBIT")] * 3

    action = services.monitor.evaluate(pos.position_id)

    assert action.action == "close_failed"
    after = services.positions.find_by_id(pos.position_id)
    assert after.is_open
    assert after.realized_pnl is None

    # Next pass succeeds.
    assert services.monitor.evaluate(pos.position_id).action == "closed"


def test_secure_profit_ratchet_long_fires_once(services, bybit):
    pos = _open(services, stop="80")
    _move(services, pos, "131")

    action = services.monitor.evaluate(pos.position_id)

    after = services.positions.find_by_id(pos.position_id)
    assert action.action == "secure_profit"
    assert after.secure_profit_applied
    assert after.stop_loss_price == Decimal("100.10")
    assert after.stop_loss_price >= after.entry_price
    assert bybit.stops == [("BTCUSDT", PositionSide.LONG, Decimal("100.10"))]

    _move(services, pos, "140")
    assert services.monitor.evaluate(pos.position_id) is None
    assert len(bybit.stops) == 1


def test_secure_profit_ratchet_short(services):
    pos = _open(services, side=PositionSide.SHORT, stop="130")
    _move(services, pos, "65")

    services.monitor.evaluate(pos.position_id)

    after = services.positions.find_by_id(pos.position_id)
    assert after.stop_loss_price == Decimal("99.90")
    assert after.stop_loss_price <= after.entry_price


def test_ratchet_below_threshold_does_nothing(services):
    pos = _open(services, stop="80")
    _move(services, pos, "129")

    assert services.monitor.evaluate(pos.position_id) is None
    assert not services.positions.find_by_id(pos.position_id).secure_profit_applied


def test_ratchet_stop_push_failure_still_applies_locally(services, bybit):
    bybit.stop_error = TransientNetworkError("down", "BYBIT")
    pos = _open(services)
    _move(services, pos, "150")

    services.monitor.evaluate(pos.position_id)

    assert services.positions.find_by_id(pos.position_id).stop_loss_price == Decimal("100.10")


def test_trailing_stop_follows_high_and_triggers(bybit, mexc):
    cfg = MonitorConfig(secure_profit_trigger_pct=Decimal("10"), secure_profit_lock_pct=Decimal("0.001"),
                        trailing_stop_pct=Decimal("0.05"), fee_rate=Decimal("0.001"),
                        risk_free_rate=0.02, default_tick_size=Decimal("0.01"))
    services = Services(bybit, mexc, monitor_cfg=cfg)
    pos = _open(services)
    _move(services, pos, "120")
    services.monitor.evaluate(pos.position_id)
    assert services.positions.find_by_id(pos.position_id).trailing_stop_price == Decimal("114.00")

    _move(services, pos, "113")
    action = services.monitor.evaluate(pos.position_id)

    assert action.detail == CloseReason.TRAILING_STOP.value
    assert services.positions.find_by_id(pos.position_id).status is PositionStatus.CLOSED


def test_close_position_checks_id_and_exchange(services):
    pos = _open(services)

    with pytest.raises(PositionNotFoundError):
        services.monitor.close_position("pos_missing", CloseReason.MANUAL, "BYBIT")
    with pytest.raises(ExchangeMismatchError):
        services.monitor.close_position(pos.position_id, CloseReason.MANUAL, "MEXC")

    closed = services.monitor.close_position(pos.position_id, CloseReason.MANUAL, "BYBIT")
    assert closed.close_reason is CloseReason.MANUAL
    assert closed.realized_pnl == Decimal("0")


def test_evaluate_all_isolates_failures(services):
    healthy = _open(services, stop="95")
    _move(services, healthy, "94")
    # Unregistered venue: its exit order cannot be placed.
    broken = _open(services, symbol="ETHUSDT", exchange="OKX", stop="200")

    actions = {a.position_id: a.action for a in services.monitor.evaluate_all()}

    assert actions == {healthy.position_id: "closed", broken.position_id: "close_failed"}
    assert services.positions.find_by_id(broken.position_id).is_open
    assert not services.positions.find_by_id(healthy.position_id).is_open


def test_close_position_accepts_lowercase_exchange(services):
    pos = _open(services)

    closed = services.monitor.close_position(pos.position_id, CloseReason.MANUAL, "bybit")

    assert closed.status is PositionStatus.CLOSED
    with pytest.raises(ExchangeMismatchError):
        services.monitor.close_position(_open(services).position_id, CloseReason.MANUAL, "mexc")
