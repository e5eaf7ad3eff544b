"""
In-process order/position stores.

Records are copied on the way in and on the way out, so a caller mutating a
returned object has no effect until it calls save() again, matching the
semantics of an external store.
"""
from __future__ import annotations

import copy
import threading
from typing import Dict, List, Optional
from loguru import logger

from execution.models import Order, Position, PositionStatus


class InMemoryOrderStore:
    """Dict-backed OrderStore."""

    def __init__(self):
        self._lock = threading.Lock()
        self._orders: Dict[str, Order] = {}

    def save(self, order: Order) -> Order:
        with self._lock:
            self._orders[order.order_id] = copy.deepcopy(order)
        logger.debug(f"Order saved: {order.order_id} {order.symbol} {order.status.value}")
        return order

    def find_by_id(self, order_id: str) -> Optional[Order]:
        with self._lock:
            order = self._orders.get(order_id)
            return copy.deepcopy(order) if order else None

    def find_by_symbol(self, symbol: str) -> List[Order]:
        with self._lock:
            matches = [o for o in self._orders.values() if o.symbol == symbol]
        return sorted((copy.deepcopy(o) for o in matches), key=lambda o: o.created_at)


class InMemoryPositionStore:
    """Dict-backed PositionStore."""

    def __init__(self):
        self._lock = threading.Lock()
        self._positions: Dict[str, Position] = {}

    def save(self, position: Position) -> Position:
        with self._lock:
            self._positions[position.position_id] = copy.deepcopy(position)
        return position

    def find_by_id(self, position_id: str) -> Optional[Position]:
        with self._lock:
            pos = self._positions.get(position_id)
            return copy.deepcopy(pos) if pos else None

    def find_by_status(self, status: PositionStatus) -> List[Position]:
        with self._lock:
            matches = [p for p in self._positions.values() if p.status is status]
        return sorted((copy.deepcopy(p) for p in matches), key=lambda p: p.open_time)

    def find_by_symbol_and_status(self, symbol: str, status: PositionStatus) -> List[Position]:
        return [p for p in self.find_by_status(status) if p.symbol == symbol]
