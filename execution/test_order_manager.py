"""OrderPlacementEngine: retry bounds, fail-fast on parse errors, fill-price derivation."""
from decimal import Decimal

import pytest

from execution.errors import (
    AuthenticationError, ExchangeMismatchError, OrderPlacementError, TransientNetworkError,
    ValidationError,
)
from execution.models import OrderRequest, OrderSide, OrderStatus, OrderType, PositionStatus


def test_filled_market_order_is_persisted_and_opens_position(services, bybit):
    order = services.buy("BTCUSDT", "2")

    assert order.status is OrderStatus.FILLED
    assert services.orders.find_by_id(order.order_id).executed_qty == Decimal("2")
    [pos] = services.positions.find_by_status(PositionStatus.OPEN)
    assert pos.quantity == Decimal("2")
    assert pos.entry_price == Decimal("100")
    assert pos.entry_order_ids == [order.order_id]


def test_transient_empty_responses_retry_exactly_the_bound(services, bybit):
    bybit.order_script = [None, None, None]

    with pytest.raises(OrderPlacementError) as exc:
        services.buy("BTCUSDT", "1")

    assert len(bybit.placed) == 3
    assert services.sleeps == [2.0, 2.0]
    assert exc.value.attempts == 3
    assert isinstance(exc.value.last_error, TransientNetworkError)
    assert exc.value.__cause__ is exc.value.last_error
    assert services.orders.find_by_symbol("BTCUSDT") == []
    assert services.positions.find_by_status(PositionStatus.OPEN) == []


def test_transient_failure_then_success(services, bybit):
    bybit.order_script = [TransientNetworkError("timeout", "BYBIT"),
                          {"status": "filled", "executed": "1", "avg": "101"}]

    order = services.buy("BTCUSDT", "1")

    assert order.avg_fill_price == Decimal("101")
    assert len(bybit.placed) == 2
    assert services.sleeps == [2.0]


def test_malformed_response_fails_without_retry(services, bybit):
    bybit.order_script = ["<html>gateway</html>"]

    with pytest.raises(OrderPlacementError) as exc:
        services.buy("BTCUSDT", "1")

    assert len(bybit.placed) == 1
    assert services.sleeps == []
    assert exc.value.attempts == 1


@pytest.mark.parametrize("error", [ValidationError("qty too small"), AuthenticationError("bad key")])
def test_rejections_propagate_unretried(services, bybit, error):
    bybit.order_script = [error]

    with pytest.raises(type(error)):
        services.buy("BTCUSDT", "1")

    assert len(bybit.placed) == 1
    assert services.sleeps == []


def test_avg_price_derived_from_cumulative_quote(services, bybit):
    bybit.order_script = [{"status": "filled", "executed": "2", "cum_quote": "205"}]

    order = services.buy("BTCUSDT", "2")

    assert order.avg_fill_price == Decimal("102.5")
    assert not order.price_incomplete


def test_avg_price_falls_back_to_live_price(services, bybit):
    bybit.prices["BTCUSDT"] = Decimal("99")
    bybit.order_script = [{"status": "filled", "executed": "1"}]

    order = services.buy("BTCUSDT", "1")

    assert order.avg_fill_price == Decimal("99")


def test_price_incomplete_order_is_still_recorded(services, bybit):
    bybit.order_script = [{"status": "filled", "executed": "1", "symbol": "ETHUSDT"}]

    order = services.engine.place_order(
        OrderRequest(symbol="ETHUSDT", side=OrderSide.BUY, quantity=Decimal("1")), "BYBIT")

    assert order.price_incomplete
    assert order.avg_fill_price is None
    assert services.orders.find_by_id(order.order_id).price_incomplete
    assert services.positions.find_by_status(PositionStatus.OPEN) == []


def test_unfilled_market_ack_is_refreshed(services, bybit):
    bybit.order_script = [{"status": "new"}]
    # The venue reports the fill on the follow-up query.
    original_get = bybit.get_order

    def filled_get(symbol, order_id, market_type):
        raw = original_get(symbol, order_id, market_type)
        return {**raw, "status": "filled", "executed": raw["qty"], "avg": "100"}

    bybit.get_order = filled_get

    order = services.buy("BTCUSDT", "1")

    assert order.status is OrderStatus.FILLED
    assert len(services.positions.find_by_status(PositionStatus.OPEN)) == 1


def test_filled_order_trade_fields_are_immutable(services):
    order = services.buy("BTCUSDT", "1")

    with pytest.raises(AttributeError):
        order.executed_qty = Decimal("5")
    order.strategy_tag = "bookkeeping"


def test_history_keeps_last_orders_per_symbol(services, bybit):
    services.engine._history.clear()
    for _ in range(3):
        services.buy("BTCUSDT", "1")

    assert len(services.engine.recent_orders("BTCUSDT")) == 3
    assert services.engine.recent_orders("ETHUSDT") == []


def test_get_order_status_applies_only_new_fills(services, bybit):
    bybit.order_script = [{"status": "partially_filled", "executed": "1", "avg": "100"}]
    order = services.engine.place_order(OrderRequest(
        symbol="BTCUSDT", side=OrderSide.BUY, quantity=Decimal("3"),
        order_type=OrderType.LIMIT, price=Decimal("100")), "BYBIT")
    bybit.orders[order.order_id].update({"status": "filled", "executed": "3"})

    refreshed = services.engine.get_order_status(order.order_id, "BYBIT")

    assert refreshed.status is OrderStatus.FILLED
    [pos] = services.positions.find_by_status(PositionStatus.OPEN)
    assert pos.quantity == Decimal("3")


def test_limit_order_gets_default_time_in_force(services, bybit):
    bybit.order_script = [{"status": "new"}]
    services.engine.place_order(OrderRequest(
        symbol="BTCUSDT", side=OrderSide.BUY, quantity=Decimal("1"),
        order_type=OrderType.LIMIT, price=Decimal("90")), "BYBIT")

    assert bybit.placed[0].time_in_force == "GTC"


def test_cancel_order(services, bybit):
    bybit.order_script = [{"status": "new"}]
    order = services.engine.place_order(OrderRequest(
        symbol="BTCUSDT", side=OrderSide.BUY, quantity=Decimal("1"),
        order_type=OrderType.LIMIT, price=Decimal("90")), "BYBIT")

    canceled = services.engine.cancel_order(order.order_id, "BYBIT")

    assert canceled.status is OrderStatus.CANCELED
    assert services.orders.find_by_id(order.order_id).status is OrderStatus.CANCELED
    with pytest.raises(ExchangeMismatchError):
        services.engine.cancel_order(order.order_id, "MEXC")


def test_unknown_exchange_is_rejected(services):
    with pytest.raises(ValidationError):
        services.buy("BTCUSDT", "1", exchange="KRAKEN")


def test_order_lookup_ignores_exchange_case(services, bybit):
    bybit.order_script = [{"status": "new"}]
    order = services.engine.place_order(OrderRequest(
        symbol="BTCUSDT", side=OrderSide.BUY, quantity=Decimal("1"),
        order_type=OrderType.LIMIT, price=Decimal("90")), "bybit")

    assert order.exchange == "BYBIT"
    assert services.engine.get_order_status(order.order_id, "bybit").status is OrderStatus.NEW
    assert services.engine.cancel_order(order.order_id, "Bybit").status is OrderStatus.CANCELED
