"""
Execution Engine
Caller-facing facade over risk validation, order placement and position exits.

Strategy code talks to this class only:
    validate_trade          -> TradeDecision
    calculate_position_size -> size or None
    place_order             -> Order (persisted) or raises
    close_position          -> Position
"""
from decimal import Decimal
from typing import Any, Dict, List, Optional
from loguru import logger

from execution.models import (
    CloseReason, MarketType, Order, OrderRequest, OrderSide, Position, PositionStatus, TradeDecision,
)
from execution.order_manager import OrderPlacementEngine
from execution.position_monitor import PositionMonitor
from interfaces import IOrderStore, IPositionStore, IRiskPolicy


class ExecutionEngine:
    """
    Execution engine composed from injected collaborators.

    Workflow for a new trade:
    1. Size it (calculate_position_size)
    2. Check risk limits (validate_trade)
    3. Place the order (place_order) - fills update positions
    4. Exits happen in PositionMonitor, or on request via close_position
    """

    def __init__(self, risk: IRiskPolicy, orders: OrderPlacementEngine,
                 monitor: PositionMonitor, order_store: IOrderStore,
                 position_store: IPositionStore):
        self.risk = risk
        self.orders = orders
        self.monitor = monitor
        self._order_store = order_store
        self._position_store = position_store
        self._rejected = 0

    def validate_trade(self, symbol: str, proposed_size: Decimal, exchange: str, side: OrderSide,
                       account_balance: Decimal,
                       market_type: MarketType = MarketType.LINEAR) -> TradeDecision:
        return self.risk.validate_trade(symbol, proposed_size, exchange, side,
                                        account_balance, market_type)

    def calculate_position_size(self, symbol: str, exchange: str, account_balance: Decimal,
                                entry_price: Decimal, stop_loss_price: Decimal,
                                market_type: MarketType = MarketType.LINEAR) -> Optional[Decimal]:
        return self.risk.calculate_position_size(symbol, exchange, account_balance,
                                                 entry_price, stop_loss_price, market_type)

    def place_order(self, request: OrderRequest, exchange: str) -> Order:
        return self.orders.place_order(request, exchange)

    def execute_trade(self, request: OrderRequest, exchange: str,
                      account_balance: Decimal) -> Optional[Order]:
        """Validate then place. Returns None if the risk gate rejects the trade."""
        decision = self.validate_trade(request.symbol, request.quantity, exchange, request.side,
                                       account_balance, request.market_type)
        if not decision:
            logger.error(f"Rejected by risk gate: {decision.reason}")
            self._rejected += 1
            return None
        return self.place_order(request, exchange)

    def close_position(self, position_id: str, reason: CloseReason, exchange: str) -> Position:
        return self.monitor.close_position(position_id, reason, exchange)

    def get_order(self, order_id: str) -> Optional[Order]:
        return self._order_store.find_by_id(order_id)

    def get_position(self, position_id: str) -> Optional[Position]:
        return self._position_store.find_by_id(position_id)

    def get_open_positions(self) -> List[Position]:
        return self._position_store.find_by_status(PositionStatus.OPEN)

    def get_statistics(self) -> Dict[str, Any]:
        """Get execution statistics."""
        return {
            "orders": {**self.orders.get_stats(), "rejected": self._rejected},
            "positions": {
                "open": len(self.get_open_positions()),
                "closed": len(self._position_store.find_by_status(PositionStatus.CLOSED)),
            },
            "risk": self.risk.get_risk_summary(),
        }
