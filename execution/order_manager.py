"""
Order Placement Engine - owns order lifecycle (submission, normalization, fill tracking).

SRP: This class handles ONLY order submission with a bounded retry policy,
     normalization of venue responses into canonical Orders, persistence, and
     handing fills to PositionLifecycle. It never decides whether a trade is
     allowed (that is RiskGate's job).

Guarantee: place_order() returns a persisted Order or raises. There is no
"maybe placed" return value.
"""
from __future__ import annotations

import threading
import time
from collections import defaultdict, deque
from dataclasses import replace
from typing import Callable, Deque, Dict, List, Optional
from loguru import logger

from config import OrderConfig
from execution.errors import (
    AuthenticationError, ExchangeMismatchError, MalformedResponseError, OrderPlacementError,
    TradingError, TransientNetworkError, ValidationError,
)
from execution.models import Order, OrderRequest, OrderStatus, OrderType, utcnow
from execution.position_lifecycle import PositionLifecycle
from interfaces import IExchangeAdapter, IExchangeRegistry, IOrderStore
from monitoring import execution_metrics as metrics


class OrderPlacementEngine:
    """Submits, normalizes, persists and tracks orders."""

    def __init__(self, registry: IExchangeRegistry, orders: IOrderStore,
                 lifecycle: PositionLifecycle, cfg: Optional[OrderConfig] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.registry = registry
        self._store = orders
        self.lifecycle = lifecycle
        self.cfg = cfg or OrderConfig()
        self._sleep = sleep
        self._history: Dict[str, Deque[Order]] = defaultdict(lambda: deque(maxlen=self.cfg.history_size))
        self._history_lock = threading.Lock()
        self.total = self.filled = self.failed = 0

    # ── Placement ────────────────────────────────────────────────────────

    def place_order(self, request: OrderRequest, exchange: str,
                    update_positions: bool = True) -> Order:
        """
        Submit an order and return it persisted.

        Transient failures (timeouts, 5xx, empty bodies) are retried up to
        ``max_placement_retries`` attempts with a fixed delay. A malformed
        response fails on the spot. Validation and authentication errors
        propagate unchanged.

        Raises:
            OrderPlacementError: the order must be assumed not placed; the
                last underlying cause is attached as ``last_error``/``__cause__``.
        """
        adapter = self.registry.get(exchange)
        if request.order_type is OrderType.LIMIT and request.time_in_force is None:
            request.time_in_force = self.cfg.default_time_in_force
        self.total += 1
        order = self._submit_with_retry(adapter, request)
        order = self._refresh_unfilled_market(adapter, order, request)
        order = self._complete_fill_price(adapter, order)
        order.metadata.update({k: v for k, v in (("stop_loss", request.stop_loss),
                                                  ("take_profit", request.take_profit)) if v is not None})

        saved = self._save(order)
        metrics.ORDERS_PLACED.labels(exchange=adapter.name).inc()
        if saved.status is OrderStatus.FILLED:
            self.filled += 1
        logger.info(f"Order placed: {saved.order_id} {saved.side.value.upper()} {saved.quantity} "
                    f"{saved.symbol} on {adapter.name} [{saved.status.value}]"
                    + (f" avg={saved.avg_fill_price}" if saved.avg_fill_price else ""))

        if update_positions:
            self.lifecycle.apply_fill(saved)
        return saved

    def _submit_with_retry(self, adapter: IExchangeAdapter, request: OrderRequest) -> Order:
        attempts = self.cfg.max_placement_retries
        last_error: Optional[TradingError] = None
        for attempt in range(1, attempts + 1):
            try:
                raw = adapter.place_order(request)
                if not raw:
                    raise TransientNetworkError("empty order response", adapter.name)
                return adapter.parse_order(raw, request)
            except TransientNetworkError as e:
                last_error = e
                logger.warning(f"Order {request.client_order_id} attempt {attempt}/{attempts} "
                               f"on {adapter.name} failed: {e}")
                if attempt < attempts:
                    metrics.ORDER_RETRIES.labels(exchange=adapter.name).inc()
                    self._sleep(self.cfg.retry_delay_sec)
            except MalformedResponseError as e:
                self._fail(adapter.name)
                logger.error(f"Order {request.client_order_id} on {adapter.name}: "
                             f"unrecognized response, not retrying: {e}")
                raise OrderPlacementError(
                    f"Unrecognized order response from {adapter.name}: {e}",
                    attempts=attempt, last_error=e) from e
            except (ValidationError, AuthenticationError) as e:
                self._fail(adapter.name)
                logger.error(f"Order {request.client_order_id} rejected by {adapter.name}: {e}")
                raise
        self._fail(adapter.name)
        logger.error(f"Order {request.client_order_id} on {adapter.name} failed after {attempts} attempts")
        raise OrderPlacementError(
            f"Order placement on {adapter.name} failed after {attempts} attempts: {last_error}",
            attempts=attempts, last_error=last_error) from last_error

    def _fail(self, exchange: str) -> None:
        self.failed += 1
        metrics.ORDERS_FAILED.labels(exchange=exchange).inc()

    def _refresh_unfilled_market(self, adapter: IExchangeAdapter, order: Order,
                                 request: OrderRequest) -> Order:
        # Some venues acknowledge a market order with only its id.
        if order.order_type is not OrderType.MARKET or order.status is not OrderStatus.NEW:
            return order
        try:
            fresh = adapter.parse_order(
                adapter.get_order(order.symbol, order.order_id, order.market_type), request)
        except TradingError as e:
            logger.warning(f"Could not refresh order {order.order_id} on {adapter.name}: {e}")
            return order
        return replace(fresh, created_at=order.created_at)

    def _complete_fill_price(self, adapter: IExchangeAdapter, order: Order) -> Order:
        """Derive a missing average fill price: cumulative quote / executed, then live price."""
        if not order.has_fill or order.avg_fill_price is not None:
            return order
        if order.cumulative_quote_qty and order.executed_qty > 0:
            return replace(order, avg_fill_price=order.cumulative_quote_qty / order.executed_qty)
        try:
            live = adapter.get_last_price(order.symbol, order.market_type)
            logger.warning(f"Order {order.order_id}: no fill price reported, using live price {live}")
            return replace(order, avg_fill_price=live)
        except TradingError as e:
            logger.warning(f"Order {order.order_id}: fill price unavailable ({e}); flagged price-incomplete")
            metrics.PRICE_INCOMPLETE.labels(exchange=adapter.name).inc()
            return replace(order, price_incomplete=True)

    # ── Persistence / history ────────────────────────────────────────────

    def _save(self, order: Order) -> Order:
        saved = self._store.save(order)
        with self._history_lock:
            self._history[saved.symbol].append(saved)
        return saved

    def recent_orders(self, symbol: str) -> List[Order]:
        with self._history_lock:
            return list(self._history.get(symbol, ()))

    # ── Status / cancel ──────────────────────────────────────────────────

    def _stored(self, order_id: str, exchange: str) -> Order:
        stored = self._store.find_by_id(order_id)
        if stored is None:
            raise ValidationError(f"Unknown order {order_id}")
        if stored.exchange != exchange.upper():
            raise ExchangeMismatchError(f"Order {order_id} belongs to {stored.exchange}, not {exchange}")
        return stored

    def get_order_status(self, order_id: str, exchange: str, update_positions: bool = True) -> Order:
        """Re-read an order from its exchange; newly executed quantity is applied to positions."""
        stored = self._stored(order_id, exchange)
        if stored.status in (OrderStatus.FILLED, OrderStatus.CANCELED):
            return stored
        adapter = self.registry.get(exchange)
        fresh = adapter.parse_order(adapter.get_order(stored.symbol, order_id, stored.market_type))
        fresh = replace(fresh, strategy_tag=stored.strategy_tag, client_order_id=stored.client_order_id,
                        created_at=stored.created_at, metadata=dict(stored.metadata))
        fresh = self._complete_fill_price(adapter, fresh)
        saved = self._save(fresh)

        delta = saved.executed_qty - stored.executed_qty
        if update_positions and delta > 0 and saved.fill_price is not None:
            increment = replace(saved, status=OrderStatus.PARTIALLY_FILLED, executed_qty=delta,
                                cumulative_quote_qty=None)
            self.lifecycle.apply_fill(increment)
        logger.info(f"Order {order_id} status on {exchange}: {saved.status.value} "
                    f"executed={saved.executed_qty}")
        return saved

    def cancel_order(self, order_id: str, exchange: str) -> Order:
        stored = self._stored(order_id, exchange)
        if stored.status is OrderStatus.FILLED:
            raise ValidationError(f"Order {order_id} is already FILLED")
        if stored.status is OrderStatus.CANCELED:
            return stored
        self.registry.get(exchange).cancel_order(stored.symbol, order_id, stored.market_type)
        saved = self._save(replace(stored, status=OrderStatus.CANCELED, updated_at=utcnow()))
        logger.info(f"Order {order_id} canceled on {exchange}")
        return saved

    def get_stats(self) -> Dict[str, int]:
        return {"total": self.total, "filled": self.filled, "failed": self.failed}
