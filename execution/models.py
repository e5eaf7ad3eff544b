"""
Execution data model - canonical Order/Position records and result types.

Exchange-specific payloads never leave the adapters; everything the engines,
reconciler and monitor touch is one of the types below.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Tuple

from execution.errors import ValidationError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_position_id() -> str:
    return f"pos_{uuid.uuid4().hex[:16]}"


# ── Enums ────────────────────────────────────────────────────────────────────

class MarketType(Enum):
    SPOT = "spot"
    LINEAR = "linear"


class OrderSide(Enum):
    BUY = "buy"
    SELL = "sell"

    @property
    def opposite(self) -> "OrderSide":
        return OrderSide.SELL if self is OrderSide.BUY else OrderSide.BUY


class OrderType(Enum):
    MARKET = "market"
    LIMIT = "limit"


class OrderStatus(Enum):
    NEW = "new"
    PARTIALLY_FILLED = "partially_filled"
    FILLED = "filled"
    CANCELED = "canceled"


class PositionSide(Enum):
    LONG = "long"
    SHORT = "short"

    @classmethod
    def opened_by(cls, side: OrderSide) -> "PositionSide":
        return cls.LONG if side is OrderSide.BUY else cls.SHORT

    @property
    def exit_side(self) -> OrderSide:
        return OrderSide.SELL if self is PositionSide.LONG else OrderSide.BUY


class PositionStatus(Enum):
    OPEN = "open"
    CLOSED = "closed"


class CloseReason(Enum):
    STOP_LOSS = "stop_loss"
    TAKE_PROFIT = "take_profit"
    TRAILING_STOP = "trailing_stop"
    RECONCILIATION_MISSING = "reconciliation_closed_not_on_exchange"
    MANUAL = "manual"
    FILLED_OFFSET = "filled_offset"


class PositionKey(NamedTuple):
    exchange: str
    market_type: MarketType
    symbol: str
    side: PositionSide


# ── Serialization helpers (used by the Redis store) ──────────────────────────

def _encode(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, list):
        return [_encode(v) for v in value]
    if isinstance(value, dict):
        return {k: _encode(v) for k, v in value.items()}
    return value


def _decode(data: Dict[str, Any], decoders: Dict[str, Callable[[Any], Any]]) -> Dict[str, Any]:
    out = {}
    for key, value in data.items():
        if value is not None and key in decoders:
            value = decoders[key](value)
        out[key] = value
    return out


# ── Order ────────────────────────────────────────────────────────────────────

_LOCKED_WHEN_FILLED = frozenset({
    "order_id", "symbol", "exchange", "side", "order_type", "quantity",
    "executed_qty", "avg_fill_price", "cumulative_quote_qty", "market_type",
})


@dataclass
class Order:
    """Canonical order. Trade fields are immutable once FILLED."""
    order_id: str
    symbol: str
    exchange: str
    side: OrderSide
    order_type: OrderType
    quantity: Decimal
    price: Optional[Decimal] = None
    executed_qty: Decimal = Decimal("0")
    avg_fill_price: Optional[Decimal] = None
    cumulative_quote_qty: Optional[Decimal] = None
    status: OrderStatus = OrderStatus.NEW
    client_order_id: Optional[str] = None
    strategy_tag: Optional[str] = None
    market_type: MarketType = MarketType.LINEAR
    price_incomplete: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __setattr__(self, name: str, value: Any) -> None:
        if (name in _LOCKED_WHEN_FILLED and name in self.__dict__
                and self.__dict__.get("status") is OrderStatus.FILLED):
            raise AttributeError(f"Order {self.order_id} is FILLED; '{name}' is immutable")
        super().__setattr__(name, value)

    @property
    def has_fill(self) -> bool:
        return self.status in (OrderStatus.FILLED, OrderStatus.PARTIALLY_FILLED) \
            and self.executed_qty > 0

    @property
    def fill_price(self) -> Optional[Decimal]:
        return self.avg_fill_price or self.price

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: _encode(getattr(self, f.name)) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Order":
        return cls(**_decode(data, {
            "side": OrderSide, "order_type": OrderType, "status": OrderStatus,
            "market_type": MarketType, "quantity": Decimal, "price": Decimal,
            "executed_qty": Decimal, "avg_fill_price": Decimal,
            "cumulative_quote_qty": Decimal, "created_at": datetime.fromisoformat,
            "updated_at": datetime.fromisoformat,
        }))


@dataclass
class OrderRequest:
    """What a caller asks the OrderPlacementEngine to submit."""
    symbol: str
    side: OrderSide
    quantity: Decimal
    order_type: OrderType = OrderType.MARKET
    price: Optional[Decimal] = None
    time_in_force: Optional[str] = None
    client_order_id: Optional[str] = None
    stop_loss: Optional[Decimal] = None
    take_profit: Optional[Decimal] = None
    market_type: MarketType = MarketType.LINEAR
    strategy_tag: Optional[str] = None
    reduce_only: bool = False

    def __post_init__(self):
        if self.quantity is None or self.quantity <= 0:
            raise ValidationError(f"Order quantity must be positive, got {self.quantity}")
        if self.order_type is OrderType.LIMIT and (self.price is None or self.price <= 0):
            raise ValidationError("LIMIT orders require a positive price")
        if self.client_order_id is None:
            self.client_order_id = f"cli_{uuid.uuid4().hex[:20]}"


# ── Position ─────────────────────────────────────────────────────────────────

@dataclass
class Position:
    """Locally authoritative position record."""
    symbol: str
    exchange: str
    market_type: MarketType
    side: PositionSide
    quantity: Decimal
    entry_price: Decimal
    position_id: str = field(default_factory=new_position_id)
    current_price: Optional[Decimal] = None
    unrealized_pnl: Decimal = Decimal("0")
    unrealized_pnl_pct: Decimal = Decimal("0")
    realized_pnl: Optional[Decimal] = None
    booked_pnl: Decimal = Decimal("0")  # partial reductions, folded into realized_pnl at close
    stop_loss_price: Optional[Decimal] = None
    take_profit_price: Optional[Decimal] = None
    trailing_stop_price: Optional[Decimal] = None
    secure_profit_applied: bool = False
    highest_price: Optional[Decimal] = None
    lowest_price: Optional[Decimal] = None
    leverage: Optional[Decimal] = None
    mark_price: Optional[Decimal] = None
    status: PositionStatus = PositionStatus.OPEN
    open_time: datetime = field(default_factory=utcnow)
    close_time: Optional[datetime] = None
    close_reason: Optional[CloseReason] = None
    exit_price: Optional[Decimal] = None
    exchange_position_id: Optional[str] = None
    strategy_tag: Optional[str] = None
    entry_order_ids: List[str] = field(default_factory=list)
    exit_order_ids: List[str] = field(default_factory=list)
    gross_profit: Optional[Decimal] = None
    fees: Optional[Decimal] = None
    net_profit: Optional[Decimal] = None
    max_drawdown: Optional[Decimal] = None
    risk_reward_ratio: Optional[Decimal] = None
    annualized_return: Optional[float] = None
    sharpe_ratio: Optional[float] = None
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        if self.status is PositionStatus.OPEN and self.quantity <= 0:
            raise ValidationError(
                f"OPEN position {self.symbol} on {self.exchange} needs quantity > 0, got {self.quantity}")

    @property
    def key(self) -> PositionKey:
        return PositionKey(self.exchange, self.market_type, self.symbol, self.side)

    @property
    def is_open(self) -> bool:
        return self.status is PositionStatus.OPEN

    @property
    def cost_basis(self) -> Decimal:
        return self.entry_price * self.quantity

    @property
    def notional(self) -> Decimal:
        return (self.current_price or self.entry_price) * self.quantity

    def pnl_at(self, price: Decimal) -> Decimal:
        change = price - self.entry_price
        if self.side is PositionSide.SHORT:
            change = -change
        return change * self.quantity

    def pnl_pct_at(self, price: Decimal) -> Decimal:
        if not self.entry_price:
            return Decimal("0")
        change = price - self.entry_price
        if self.side is PositionSide.SHORT:
            change = -change
        return change / self.entry_price * 100

    def mark(self, price: Decimal) -> None:
        """Apply a fresh price: PnL, percentage and running extremes."""
        self.current_price = price
        self.unrealized_pnl = self.pnl_at(price)
        self.unrealized_pnl_pct = self.pnl_pct_at(price)
        if self.highest_price is None or price > self.highest_price:
            self.highest_price = price
        if self.lowest_price is None or price < self.lowest_price:
            self.lowest_price = price
        self.updated_at = utcnow()

    def close(self, reason: CloseReason, realized_pnl: Decimal,
              exit_price: Optional[Decimal] = None) -> None:
        """OPEN -> CLOSED. realized_pnl is written exactly once, here."""
        if self.status is PositionStatus.CLOSED:
            raise ValidationError(f"Position {self.position_id} is already CLOSED")
        self.status = PositionStatus.CLOSED
        self.realized_pnl = realized_pnl
        self.exit_price = exit_price
        self.close_reason = reason
        self.close_time = utcnow()
        self.updated_at = self.close_time

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: _encode(getattr(self, f.name)) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Position":
        decimals = ("quantity", "entry_price", "current_price", "unrealized_pnl",
                    "unrealized_pnl_pct", "realized_pnl", "booked_pnl", "stop_loss_price",
                    "take_profit_price", "trailing_stop_price", "highest_price",
                    "lowest_price", "leverage", "mark_price", "exit_price",
                    "gross_profit", "fees", "net_profit", "max_drawdown",
                    "risk_reward_ratio")
        decoders: Dict[str, Callable[[Any], Any]] = {k: Decimal for k in decimals}
        decoders.update({
            "market_type": MarketType, "side": PositionSide, "status": PositionStatus,
            "close_reason": CloseReason, "open_time": datetime.fromisoformat,
            "close_time": datetime.fromisoformat, "updated_at": datetime.fromisoformat,
        })
        return cls(**_decode(data, decoders))


# ── Exchange-side records ────────────────────────────────────────────────────

@dataclass(frozen=True)
class ExchangePosition:
    """A position as reported by a venue, already in canonical units."""
    symbol: str
    side: PositionSide
    quantity: Decimal
    entry_price: Decimal
    market_type: MarketType
    unrealized_pnl: Decimal = Decimal("0")
    leverage: Optional[Decimal] = None
    mark_price: Optional[Decimal] = None
    exchange_position_id: Optional[str] = None


@dataclass(frozen=True)
class InstrumentRules:
    """Lot-size and price-tick filters for one instrument."""
    min_qty: Decimal
    qty_step: Decimal
    tick_size: Decimal
    # Base units per exchange contract; 1 where quantities are already in base units.
    contract_size: Decimal = Decimal("1")

    def round_qty_down(self, qty: Decimal) -> Decimal:
        if self.qty_step <= 0:
            return qty
        return (qty // self.qty_step) * self.qty_step

    def round_price(self, price: Decimal) -> Decimal:
        if self.tick_size <= 0:
            return price
        ticks = (price / self.tick_size).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
        return ticks * self.tick_size


# ── Result types ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class TradeDecision:
    """Outcome of a pre-trade check. Unpacks as (accepted, reason)."""
    accepted: bool
    reason: Optional[str] = None

    @classmethod
    def accept(cls) -> "TradeDecision":
        return cls(True, None)

    @classmethod
    def reject(cls, reason: str) -> "TradeDecision":
        return cls(False, reason)

    def __bool__(self) -> bool:
        return self.accepted

    def __iter__(self):
        return iter((self.accepted, self.reason))


@dataclass(frozen=True)
class FetchResult:
    """Positions reported by one exchange/market, or the reason the fetch failed."""
    exchange: str
    market_type: MarketType
    positions: Tuple[ExchangePosition, ...] = ()
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class MonitorAction:
    position_id: str
    action: str
    detail: Optional[str] = None


@dataclass
class ReconciliationReport:
    """Summary of one reconciliation cycle."""
    started_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    skipped_busy: bool = False
    opened: List[str] = field(default_factory=list)
    updated: List[str] = field(default_factory=list)
    closed: List[str] = field(default_factory=list)
    failed_exchanges: List[str] = field(default_factory=list)
    price_skipped: List[str] = field(default_factory=list)
    monitor_actions: List[MonitorAction] = field(default_factory=list)

    @property
    def transitions(self) -> int:
        return len(self.opened) + len(self.closed)
