"""Pytest fixtures: an in-memory exchange and wired-up execution services."""
import itertools
from decimal import Decimal
from typing import Any, Dict, List, Optional

import pytest

from config import MonitorConfig, OrderConfig, RiskLimits, SizingConfig
from exchanges.registry import ExchangeRegistry
from execution.errors import MalformedResponseError, TradingError, TransientNetworkError
from execution.models import (
    ExchangePosition, InstrumentRules, MarketType, Order, OrderRequest, OrderSide,
    OrderStatus, OrderType, PositionSide,
)
from execution.order_manager import OrderPlacementEngine
from execution.position_lifecycle import PositionLifecycle
from execution.position_monitor import PositionMonitor
from execution.position_reconciler import PositionReconciler
from execution.risk_engine import RiskGate
from storage.locks import KeyedLocks
from storage.memory_store import InMemoryOrderStore, InMemoryPositionStore


class FakeExchange:
    """Scriptable venue. Orders fill immediately at the current price unless scripted."""

    def __init__(self, name: str = "BYBIT"):
        self.name = name
        self.prices: Dict[str, Decimal] = {}
        self.closes: Dict[str, List[Decimal]] = {}
        self.rules = InstrumentRules(Decimal("0.001"), Decimal("0.001"), Decimal("0.01"))
        self.positions: List[ExchangePosition] = []
        self.positions_error: Optional[TradingError] = None
        self.price_errors: Dict[str, TradingError] = {}
        self.order_script: List[Any] = []
        self.placed: List[OrderRequest] = []
        self.stops: List[tuple] = []
        self.stop_error: Optional[TradingError] = None
        self.equity: Optional[Decimal] = Decimal("10000")
        self.orders: Dict[str, Dict[str, Any]] = {}
        self._ids = itertools.count(1)

    # protocol surface
    def sign(self, timestamp: int, payload: str) -> str:
        return f"sig-{timestamp}-{payload}"

    def get_server_time(self) -> int:
        return 0

    def format_symbol(self, symbol: str, market_type: MarketType) -> str:
        return symbol

    def request(self, method, path, params=None, signed=False, **kwargs):
        raise NotImplementedError

    def supports_positions(self, market_type: MarketType) -> bool:
        return market_type is MarketType.LINEAR

    def get_instrument_rules(self, symbol: str, market_type: MarketType) -> InstrumentRules:
        return self.rules

    def get_last_price(self, symbol: str, market_type: MarketType) -> Decimal:
        if symbol in self.price_errors:
            raise self.price_errors[symbol]
        if symbol not in self.prices:
            raise TransientNetworkError(f"no price for {symbol}", self.name)
        return self.prices[symbol]

    def get_daily_closes(self, symbol: str, limit: int, market_type: MarketType = MarketType.SPOT):
        return self.closes.get(symbol, [])[-limit:]

    def place_order(self, request: OrderRequest) -> Dict[str, Any]:
        self.placed.append(request)
        if self.order_script:
            step = self.order_script.pop(0)
            if isinstance(step, Exception):
                raise step
            if step is not None and not isinstance(step, dict):
                return step
            if step is None:
                return {}
            raw = {"order_id": str(next(self._ids)), "symbol": request.symbol,
                   "side": request.side.value, "qty": str(request.quantity),
                   "market_type": request.market_type.value, **step}
        else:
            price = self.prices.get(request.symbol)
            raw = {"order_id": str(next(self._ids)), "symbol": request.symbol,
                   "side": request.side.value, "qty": str(request.quantity),
                   "executed": str(request.quantity), "status": "filled",
                   "avg": str(price) if price is not None else None,
                   "market_type": request.market_type.value}
        self.orders[raw["order_id"]] = raw
        return raw

    def get_order(self, symbol: str, order_id: str, market_type: MarketType) -> Dict[str, Any]:
        return self.orders[order_id]

    def cancel_order(self, symbol: str, order_id: str, market_type: MarketType) -> Dict[str, Any]:
        self.orders[order_id]["status"] = "canceled"
        return self.orders[order_id]

    def parse_order(self, raw: Dict[str, Any], request: Optional[OrderRequest] = None) -> Order:
        if "order_id" not in raw:
            raise MalformedResponseError(f"unrecognized response {raw}")
        return Order(
            order_id=raw["order_id"], symbol=raw["symbol"], exchange=self.name,
            side=OrderSide(raw["side"]),
            order_type=request.order_type if request else OrderType.MARKET,
            quantity=Decimal(raw["qty"]),
            executed_qty=Decimal(raw.get("executed") or "0"),
            avg_fill_price=Decimal(raw["avg"]) if raw.get("avg") else None,
            cumulative_quote_qty=Decimal(raw["cum_quote"]) if raw.get("cum_quote") else None,
            status=OrderStatus(raw.get("status", "new")),
            client_order_id=request.client_order_id if request else None,
            strategy_tag=request.strategy_tag if request else None,
            market_type=MarketType(raw.get("market_type", "linear")),
        )

    def get_open_positions(self, market_type: MarketType) -> List[ExchangePosition]:
        if self.positions_error:
            raise self.positions_error
        return [p for p in self.positions if p.market_type is market_type]

    def set_trading_stop(self, symbol, side, stop_loss, market_type) -> None:
        if self.stop_error:
            raise self.stop_error
        self.stops.append((symbol, side, stop_loss))

    def get_wallet_equity(self) -> Decimal:
        if self.equity is None:
            raise TransientNetworkError("equity unavailable", self.name)
        return self.equity

    def close(self) -> None:
        pass

    # helpers
    def report(self, symbol: str, side: PositionSide, qty: str, entry: str,
               pnl: str = "0") -> ExchangePosition:
        pos = ExchangePosition(symbol=symbol, side=side, quantity=Decimal(qty),
                               entry_price=Decimal(entry), market_type=MarketType.LINEAR,
                               unrealized_pnl=Decimal(pnl))
        self.positions.append(pos)
        return pos


class Services:
    """Execution services wired over one or more FakeExchanges."""

    def __init__(self, *exchanges: FakeExchange, monitor_cfg: Optional[MonitorConfig] = None,
                 limits: Optional[RiskLimits] = None):
        self.exchanges = {e.name: e for e in exchanges}
        self.registry = ExchangeRegistry()
        for e in exchanges:
            self.registry.register(e, (MarketType.LINEAR,))
        self.sleeps: List[float] = []
        self.orders = InMemoryOrderStore()
        self.positions = InMemoryPositionStore()
        self.locks = KeyedLocks()
        self.monitor_cfg = monitor_cfg or MonitorConfig(
            secure_profit_trigger_pct=Decimal("0.30"), secure_profit_lock_pct=Decimal("0.001"),
            trailing_stop_pct=Decimal("0"), fee_rate=Decimal("0.001"),
            risk_free_rate=0.02, default_tick_size=Decimal("0.01"))
        self.lifecycle = PositionLifecycle(self.positions, self.locks, self.monitor_cfg)
        self.engine = OrderPlacementEngine(
            self.registry, self.orders, self.lifecycle,
            OrderConfig(max_placement_retries=3, retry_delay_sec=2.0, history_size=100,
                        default_time_in_force="GTC"),
            sleep=self.sleeps.append)
        self.monitor = PositionMonitor(self.engine, self.lifecycle, self.registry,
                                       self.positions, self.monitor_cfg)
        self.reconciler = PositionReconciler(self.registry, self.positions, self.lifecycle,
                                             self.monitor, max_workers=2)
        self.risk = RiskGate(self.registry, self.positions, limits or RiskLimits(
            max_account_risk_pct=Decimal("0.02"), max_single_coin_pct=Decimal("0.05"),
            max_portfolio_deployed_pct=Decimal("0.30"), max_correlated_positions=3,
            correlation_threshold=0.7, daily_loss_limit_pct=0.10,
            weekly_drawdown_limit_pct=0.20), SizingConfig())

    def buy(self, symbol: str, qty: str, exchange: str = "BYBIT", **kw) -> Order:
        return self.engine.place_order(
            OrderRequest(symbol=symbol, side=OrderSide.BUY, quantity=Decimal(qty), **kw), exchange)

    def sell(self, symbol: str, qty: str, exchange: str = "BYBIT", **kw) -> Order:
        return self.engine.place_order(
            OrderRequest(symbol=symbol, side=OrderSide.SELL, quantity=Decimal(qty), **kw), exchange)


@pytest.fixture
def bybit() -> FakeExchange:
    ex = FakeExchange("BYBIT")
    ex.prices["BTCUSDT"] = Decimal("100")
    return ex


@pytest.fixture
def mexc() -> FakeExchange:
    return FakeExchange("MEXC")


@pytest.fixture
def services(bybit, mexc) -> Services:
    return Services(bybit, mexc)
