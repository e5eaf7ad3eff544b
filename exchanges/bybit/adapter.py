"""
Bybit v5 Exchange Adapter

Signing: HMAC-SHA256 hex over  timestamp + apiKey + recvWindow + payload,
where payload is the query string for GET and the raw JSON body for POST.
Symbols: "BTC_USDT" and "BTCUSDT" both map to "BTCUSDT".
"""
from __future__ import annotations

import json
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlencode

from loguru import logger

from config import BotConfig
from exchanges.base import BaseExchangeAdapter, to_decimal
from execution.errors import (
    AuthenticationError, MalformedResponseError, TransientNetworkError, ValidationError,
)
from execution.models import (
    ExchangePosition, InstrumentRules, MarketType, Order, OrderRequest, OrderSide,
    OrderStatus, OrderType, PositionSide,
)

MAX_POSITION_PAGES = 10
POSITION_PAGE_LIMIT = 200

_ORDER_STATUS = {
    "Created": OrderStatus.NEW,
    "New": OrderStatus.NEW,
    "Untriggered": OrderStatus.NEW,
    "Triggered": OrderStatus.NEW,
    "PartiallyFilled": OrderStatus.PARTIALLY_FILLED,
    "Filled": OrderStatus.FILLED,
    "Cancelled": OrderStatus.CANCELED,
    "Rejected": OrderStatus.CANCELED,
    "Deactivated": OrderStatus.CANCELED,
    "PartiallyFilledCanceled": OrderStatus.CANCELED,
}


class BybitAdapter(BaseExchangeAdapter):
    """Bybit unified-account REST adapter (spot + USDT linear)."""

    name = "BYBIT"
    auth_error_codes = frozenset({10003, 10004, 10005, 10007, 33004})
    transient_error_codes = frozenset({10000, 10006, 10016})

    @classmethod
    def from_config(cls, cfg: BotConfig, **kwargs) -> "BybitAdapter":
        creds = cfg.exchanges.bybit
        return cls(creds.api_key, creds.api_secret, creds.base_url, cfg.http, **kwargs)

    # ── Signing / transport ──────────────────────────────────────────────

    def sign(self, timestamp: int, payload: str) -> str:
        return self._hmac_hex(f"{timestamp}{self.api_key}{self.http.recv_window_ms}{payload}")

    def _build_request(self, method: str, path: str, params: Optional[Dict[str, Any]],
                       signed: bool, body: Any) -> Tuple[str, Dict[str, str], Optional[str]]:
        query = urlencode({k: v for k, v in (params or {}).items() if v is not None})
        url = f"{path}?{query}" if query else path
        content = json.dumps(body, separators=(",", ":")) if body is not None else None
        headers: Dict[str, str] = {"Content-Type": "application/json"} if content else {}
        if signed:
            ts = self.get_server_time()
            payload = content if method == "POST" else query
            headers.update({
                "X-BAPI-API-KEY": self.api_key,
                "X-BAPI-TIMESTAMP": str(ts),
                "X-BAPI-SIGN": self.sign(ts, payload or ""),
                "X-BAPI-RECV-WINDOW": str(self.http.recv_window_ms),
            })
        return url, headers, content

    def _check_envelope(self, data: Any, path: str) -> None:
        if not isinstance(data, dict) or "retCode" not in data:
            raise MalformedResponseError(f"BYBIT {path}: missing retCode in {str(data)[:200]}")
        code = data["retCode"]
        if code == 0:
            return
        msg = f"BYBIT {path}: {data.get('retMsg', '')} (retCode={code})"
        if code in self.auth_error_codes:
            raise AuthenticationError(msg)
        if code in self.transient_error_codes:
            raise TransientNetworkError(msg, self.name)
        raise ValidationError(msg)

    def _fetch_server_time(self) -> int:
        data = self.request("GET", "/v5/market/time")
        if "time" in data:
            return int(data["time"])
        return int(data["result"]["timeSecond"]) * 1000

    # ── Symbols / helpers ────────────────────────────────────────────────

    def format_symbol(self, symbol: str, market_type: MarketType) -> str:
        return symbol.replace("_", "").upper()

    @staticmethod
    def _first(data: Dict[str, Any], path: str) -> Dict[str, Any]:
        rows = (data.get("result") or {}).get("list")
        if not isinstance(rows, list) or not rows:
            raise MalformedResponseError(f"BYBIT {path}: empty result list")
        return rows[0]

    def supports_positions(self, market_type: MarketType) -> bool:
        return market_type is MarketType.LINEAR

    # ── Market data ──────────────────────────────────────────────────────

    def _fetch_instrument_rules(self, symbol: str, market_type: MarketType) -> InstrumentRules:
        path = "/v5/market/instruments-info"
        data = self.request("GET", path, params={
            "category": market_type.value, "symbol": self.format_symbol(symbol, market_type)})
        info = self._first(data, path)
        lot = info.get("lotSizeFilter") or {}
        step = to_decimal(lot.get("qtyStep") or lot.get("basePrecision"), "qtyStep", Decimal("0.000001"))
        if step == 0:
            logger.warning(f"BYBIT qtyStep of 0 for {symbol}, defaulting to 0.000001")
            step = Decimal("0.000001")
        tick = to_decimal((info.get("priceFilter") or {}).get("tickSize"), "tickSize", Decimal("0.01"))
        return InstrumentRules(
            min_qty=to_decimal(lot.get("minOrderQty"), "minOrderQty", Decimal("0")),
            qty_step=step, tick_size=tick)

    def get_last_price(self, symbol: str, market_type: MarketType) -> Decimal:
        path = "/v5/market/tickers"
        data = self.request("GET", path, params={
            "category": market_type.value, "symbol": self.format_symbol(symbol, market_type)})
        price = to_decimal(self._first(data, path).get("lastPrice"), "lastPrice")
        if price is None or price <= 0:
            raise MalformedResponseError(f"BYBIT {path}: no lastPrice for {symbol}")
        return price

    def get_daily_closes(self, symbol: str, limit: int,
                         market_type: MarketType = MarketType.SPOT) -> List[Decimal]:
        data = self.request("GET", "/v5/market/kline", params={
            "category": market_type.value, "symbol": self.format_symbol(symbol, market_type),
            "interval": "D", "limit": limit})
        rows = (data.get("result") or {}).get("list") or []
        # Bybit returns newest first.
        return [to_decimal(row[4], "close") for row in reversed(rows)]

    # ── Orders ───────────────────────────────────────────────────────────

    def place_order(self, request: OrderRequest) -> Dict[str, Any]:
        is_market = request.order_type is OrderType.MARKET
        body: Dict[str, Any] = {
            "category": request.market_type.value,
            "symbol": self.format_symbol(request.symbol, request.market_type),
            "side": "Buy" if request.side is OrderSide.BUY else "Sell",
            "orderType": "Market" if is_market else "Limit",
            "qty": str(request.quantity),
            "timeInForce": request.time_in_force or "GTC",
            "orderLinkId": request.client_order_id,
        }
        if not is_market:
            body["price"] = str(request.price)
        if request.market_type is MarketType.LINEAR:
            # Hedge mode: idx 1 is the long leg, 2 the short leg.
            opens_long = request.side is OrderSide.BUY
            body["positionIdx"] = 1 if opens_long != request.reduce_only else 2
            if request.reduce_only:
                body["reduceOnly"] = True
            if request.take_profit is not None:
                body["takeProfit"] = str(request.take_profit)
            if request.stop_loss is not None:
                body["stopLoss"] = str(request.stop_loss)
        logger.debug(f"BYBIT create order {body['symbol']} {body['side']} {body['qty']}")
        return self.request("POST", "/v5/order/create", signed=True, body=body)

    def get_order(self, symbol: str, order_id: str, market_type: MarketType) -> Dict[str, Any]:
        params = {"category": market_type.value,
                  "symbol": self.format_symbol(symbol, market_type), "orderId": order_id}
        data = self.request("GET", "/v5/order/realtime", params=params, signed=True)
        if (data.get("result") or {}).get("list"):
            return data
        return self.request("GET", "/v5/order/history", params=params, signed=True)

    def cancel_order(self, symbol: str, order_id: str, market_type: MarketType) -> Dict[str, Any]:
        return self.request("POST", "/v5/order/cancel", signed=True, body={
            "category": market_type.value,
            "symbol": self.format_symbol(symbol, market_type), "orderId": order_id})

    def parse_order(self, raw: Dict[str, Any], request: Optional[OrderRequest] = None) -> Order:
        result = raw.get("result") if isinstance(raw, dict) else None
        if not isinstance(result, dict):
            raise MalformedResponseError(f"BYBIT order response without result: {str(raw)[:200]}")
        node = result["list"][0] if result.get("list") else result
        order_id = node.get("orderId")
        if not order_id:
            raise MalformedResponseError(f"BYBIT order response without orderId: {str(raw)[:200]}")

        if node.get("side"):
            side = OrderSide.BUY if node["side"] == "Buy" else OrderSide.SELL
        elif request:
            side = request.side
        else:
            raise MalformedResponseError(f"BYBIT order {order_id}: side missing")
        if node.get("orderType"):
            order_type = OrderType.MARKET if node["orderType"] == "Market" else OrderType.LIMIT
        else:
            order_type = request.order_type if request else OrderType.MARKET

        category = node.get("category")
        market_type = MarketType(category) if category in ("spot", "linear") else (
            request.market_type if request else MarketType.LINEAR)
        symbol = self.canonical_symbol(node.get("symbol") or (request.symbol if request else ""))
        avg = to_decimal(node.get("avgPrice"), "avgPrice")
        return Order(
            order_id=str(order_id),
            symbol=symbol,
            exchange=self.name,
            side=side,
            order_type=order_type,
            quantity=to_decimal(node.get("qty"), "qty", request.quantity if request else Decimal("0")),
            price=to_decimal(node.get("price"), "price", request.price if request else None) or None,
            executed_qty=to_decimal(node.get("cumExecQty"), "cumExecQty", Decimal("0")),
            avg_fill_price=avg if avg else None,
            cumulative_quote_qty=to_decimal(node.get("cumExecValue"), "cumExecValue"),
            status=_ORDER_STATUS.get(node.get("orderStatus", "New"), OrderStatus.NEW),
            client_order_id=node.get("orderLinkId") or (request.client_order_id if request else None),
            strategy_tag=request.strategy_tag if request else None,
            market_type=market_type,
        )

    # ── Positions / account ──────────────────────────────────────────────

    def get_open_positions(self, market_type: MarketType) -> List[ExchangePosition]:
        """All open positions. A list still paginated after MAX_POSITION_PAGES is an error."""
        path = "/v5/position/list"
        positions: List[ExchangePosition] = []
        cursor: Optional[str] = None
        for _ in range(MAX_POSITION_PAGES):
            data = self.request("GET", path, signed=True, params={
                "category": market_type.value, "settleCoin": "USDT",
                "limit": POSITION_PAGE_LIMIT, "cursor": cursor})
            result = data.get("result") or {}
            rows = result.get("list")
            if not isinstance(rows, list):
                raise MalformedResponseError(f"BYBIT {path}: result.list missing")
            for row in rows:
                pos = self._parse_position(row, market_type)
                if pos:
                    positions.append(pos)
            cursor = result.get("nextPageCursor")
            if not cursor or len(rows) < POSITION_PAGE_LIMIT:
                logger.info(f"Fetched {len(positions)} open BYBIT {market_type.value} positions")
                return positions
        raise MalformedResponseError(f"BYBIT {path}: still paginated after {MAX_POSITION_PAGES} pages")

    def _parse_position(self, row: Dict[str, Any], market_type: MarketType) -> Optional[ExchangePosition]:
        size = to_decimal(row.get("size"), "size", Decimal("0"))
        if size <= 0 or row.get("side") not in ("Buy", "Sell"):
            return None
        for required in ("symbol", "avgPrice"):
            if not row.get(required):
                raise MalformedResponseError(f"BYBIT position missing '{required}': {row}")
        return ExchangePosition(
            symbol=self.canonical_symbol(row["symbol"]),
            side=PositionSide.LONG if row["side"] == "Buy" else PositionSide.SHORT,
            quantity=size,
            entry_price=to_decimal(row["avgPrice"], "avgPrice"),
            market_type=market_type,
            unrealized_pnl=to_decimal(row.get("unrealisedPnl"), "unrealisedPnl", Decimal("0")),
            leverage=to_decimal(row.get("leverage"), "leverage"),
            mark_price=to_decimal(row.get("markPrice"), "markPrice"),
            exchange_position_id=f"{row['symbol']}:{row.get('positionIdx', 0)}",
        )

    def set_trading_stop(self, symbol: str, side: PositionSide, stop_loss: Decimal,
                         market_type: MarketType) -> None:
        self.request("POST", "/v5/position/trading-stop", signed=True, body={
            "category": market_type.value,
            "symbol": self.format_symbol(symbol, market_type),
            "stopLoss": str(stop_loss),
            "tpslMode": "Full",
            "positionIdx": 1 if side is PositionSide.LONG else 2,
        })
        logger.info(f"BYBIT stop-loss for {symbol} {side.value} set to {stop_loss}")

    def get_wallet_equity(self) -> Decimal:
        path = "/v5/account/wallet-balance"
        data = self.request("GET", path, signed=True, params={"accountType": "UNIFIED"})
        account = self._first(data, path)
        total = to_decimal(account.get("totalEquity"), "totalEquity")
        if total is not None:
            return total
        return sum((to_decimal(c.get("usdValue"), "usdValue", Decimal("0"))
                    for c in account.get("coin") or []), Decimal("0"))
