"""
Protocol interfaces for dependency injection (DIP - Dependency Inversion Principle).

High-level modules (order placement, reconciliation, monitoring, risk) depend
on these abstractions, not on concrete implementations.  This allows swapping
live exchanges ↔ in-memory fakes and memory ↔ Redis stores without touching
business logic.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, List, Optional, Protocol, Sequence, runtime_checkable

from execution.models import (
    ExchangePosition, InstrumentRules, MarketType, Order, OrderRequest,
    OrderSide, Position, PositionSide, PositionStatus, TradeDecision,
)


# ── Exchange Adapter ─────────────────────────────────────────────────────────

@runtime_checkable
class IExchangeAdapter(Protocol):
    """Signed-request client for one venue."""

    name: str

    def sign(self, timestamp: int, payload: str) -> str: ...

    def get_server_time(self) -> int: ...

    def format_symbol(self, symbol: str, market_type: MarketType) -> str: ...

    def request(self, method: str, path: str, params: Optional[Dict[str, Any]] = None,
                signed: bool = False, **kwargs) -> Any: ...

    def supports_positions(self, market_type: MarketType) -> bool: ...

    def get_instrument_rules(self, symbol: str, market_type: MarketType) -> InstrumentRules: ...

    def get_last_price(self, symbol: str, market_type: MarketType) -> Decimal: ...

    def get_daily_closes(self, symbol: str, limit: int,
                         market_type: MarketType = MarketType.SPOT) -> List[Decimal]: ...

    def place_order(self, request: OrderRequest) -> Dict[str, Any]: ...

    def get_order(self, symbol: str, order_id: str, market_type: MarketType) -> Dict[str, Any]: ...

    def cancel_order(self, symbol: str, order_id: str, market_type: MarketType) -> Dict[str, Any]: ...

    def parse_order(self, raw: Dict[str, Any], request: Optional[OrderRequest] = None) -> Order: ...

    def get_open_positions(self, market_type: MarketType) -> List[ExchangePosition]: ...

    def set_trading_stop(self, symbol: str, side: PositionSide, stop_loss: Decimal,
                         market_type: MarketType) -> None: ...

    def get_wallet_equity(self) -> Decimal: ...

    def close(self) -> None: ...


# ── Persistence ──────────────────────────────────────────────────────────────

@runtime_checkable
class IOrderStore(Protocol):
    """Order persistence, strongly consistent within the process."""

    def save(self, order: Order) -> Order: ...

    def find_by_id(self, order_id: str) -> Optional[Order]: ...

    def find_by_symbol(self, symbol: str) -> List[Order]: ...


@runtime_checkable
class IPositionStore(Protocol):
    """Position persistence, strongly consistent within the process."""

    def save(self, position: Position) -> Position: ...

    def find_by_id(self, position_id: str) -> Optional[Position]: ...

    def find_by_status(self, status: PositionStatus) -> List[Position]: ...

    def find_by_symbol_and_status(self, symbol: str, status: PositionStatus) -> List[Position]: ...


# ── Risk Policy ──────────────────────────────────────────────────────────────

@runtime_checkable
class IRiskPolicy(Protocol):
    """Pre-trade validation and sizing."""

    def validate_trade(self, symbol: str, proposed_size: Decimal, exchange: str,
                       side: OrderSide, account_balance: Decimal,
                       market_type: MarketType = MarketType.LINEAR) -> TradeDecision: ...

    def calculate_position_size(self, symbol: str, exchange: str, account_balance: Decimal,
                                entry_price: Decimal, stop_loss_price: Decimal,
                                market_type: MarketType = MarketType.LINEAR) -> Optional[Decimal]: ...

    def circuit_breaker_reason(self) -> Optional[str]: ...

    def get_risk_summary(self) -> Dict[str, Any]: ...


# ── Adapter lookup ───────────────────────────────────────────────────────────

@runtime_checkable
class IExchangeRegistry(Protocol):
    """Resolves an exchange identifier to its adapter."""

    def get(self, exchange: str) -> IExchangeAdapter: ...

    def names(self) -> Sequence[str]: ...

    def market_types(self, exchange: str) -> Sequence[MarketType]: ...
