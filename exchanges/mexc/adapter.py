"""
MEXC Exchange Adapter

Two APIs behind one adapter:
  - Spot V3 (/api/v3/...): HMAC-SHA256 over the query string, appended as
    `signature`, key in X-MEXC-APIKEY.
  - Contract V1 (/api/v1/...): HMAC-SHA256 over apiKey + timestamp + payload
    (sorted query string for GET, JSON body for POST) in ApiKey /
    Request-Time / Signature headers.
Contract symbols use an underscore ("BTC_USDT"); spot symbols do not.
Contract volumes are counted in contracts of `contractSize` base units; the
adapter speaks base units to callers.
"""
from __future__ import annotations

import json
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlencode

from loguru import logger

from config import BotConfig, HttpConfig
from exchanges.base import BaseExchangeAdapter, to_decimal
from execution.errors import (
    AuthenticationError, MalformedResponseError, TransientNetworkError, ValidationError,
)
from execution.models import (
    ExchangePosition, InstrumentRules, MarketType, Order, OrderRequest, OrderSide,
    OrderStatus, OrderType, PositionSide,
)

QUOTE_CURRENCIES = ("USDT", "USDC", "USD", "BTC", "ETH", "BUSD")

_SPOT_STATUS = {
    "NEW": OrderStatus.NEW,
    "PARTIALLY_FILLED": OrderStatus.PARTIALLY_FILLED,
    "FILLED": OrderStatus.FILLED,
    "CANCELED": OrderStatus.CANCELED,
    "PARTIALLY_CANCELED": OrderStatus.CANCELED,
}
# Contract order state: 1 uninformed, 2 uncompleted, 3 completed, 4 cancelled, 5 invalid
_CONTRACT_STATE = {1: OrderStatus.NEW, 2: OrderStatus.NEW, 3: OrderStatus.FILLED,
                   4: OrderStatus.CANCELED, 5: OrderStatus.CANCELED}
# Contract order side: 1 open long, 2 close short, 3 open short, 4 close long
_CONTRACT_SIDE = {1: OrderSide.BUY, 2: OrderSide.BUY, 3: OrderSide.SELL, 4: OrderSide.SELL}


class MexcAdapter(BaseExchangeAdapter):
    """MEXC spot + USDT-M contract REST adapter."""

    name = "MEXC"
    auth_error_codes = frozenset({401, 402, 406, 602, 700001, 700002, 700003})
    transient_error_codes = frozenset({510, 1001})

    def __init__(self, api_key: str, api_secret: str, spot_base_url: str,
                 contract_base_url: str, http_cfg: Optional[HttpConfig] = None, **kwargs):
        super().__init__(api_key, api_secret, spot_base_url, http_cfg, **kwargs)
        self.contract_base_url = contract_base_url.rstrip("/")

    @classmethod
    def from_config(cls, cfg: BotConfig, **kwargs) -> "MexcAdapter":
        creds = cfg.exchanges.mexc
        return cls(creds.api_key, creds.api_secret, creds.spot_base_url,
                   creds.contract_base_url, cfg.http, **kwargs)

    # ── Signing / transport ──────────────────────────────────────────────

    def sign(self, timestamp: int, payload: str) -> str:
        return self._hmac_hex(f"{self.api_key}{timestamp}{payload}")

    def sign_query(self, query: str) -> str:
        return self._hmac_hex(query)

    @staticmethod
    def _is_contract(path: str) -> bool:
        return path.startswith("/api/v1/")

    def _build_request(self, method: str, path: str, params: Optional[Dict[str, Any]],
                       signed: bool, body: Any) -> Tuple[str, Dict[str, str], Optional[str]]:
        clean = {k: v for k, v in sorted((params or {}).items()) if v is not None}
        if self._is_contract(path):
            query = urlencode(clean)
            content = json.dumps(body, separators=(",", ":")) if body is not None else None
            url = f"{self.contract_base_url}{path}" + (f"?{query}" if query else "")
            headers: Dict[str, str] = {"Content-Type": "application/json"}
            if signed:
                ts = self.get_server_time()
                payload = content if method == "POST" else query
                headers.update({"ApiKey": self.api_key, "Request-Time": str(ts),
                                "Signature": self.sign(ts, payload or "")})
            return url, headers, content

        headers = {}
        if signed:
            clean["timestamp"] = self.get_server_time()
            clean["recvWindow"] = self.http.recv_window_ms
            query = urlencode(clean)
            query = f"{query}&signature={self.sign_query(query)}"
            headers["X-MEXC-APIKEY"] = self.api_key
        else:
            query = urlencode(clean)
        return (f"{path}?{query}" if query else path), headers, None

    def _check_envelope(self, data: Any, path: str) -> None:
        if not isinstance(data, dict):
            return
        if "success" in data:
            if data["success"]:
                return
            code = data.get("code")
        elif "code" in data and "msg" in data and data["code"] not in (0, 200, "0", "200"):
            code = data["code"]
        else:
            return
        try:
            code = int(code)
        except (TypeError, ValueError):
            pass
        msg = f"MEXC {path}: {data.get('message') or data.get('msg', '')} (code={code})"
        if code in self.auth_error_codes:
            raise AuthenticationError(msg)
        if code in self.transient_error_codes:
            raise TransientNetworkError(msg, self.name)
        raise ValidationError(msg)

    def _fetch_server_time(self) -> int:
        return int(self.request("GET", "/api/v3/time")["serverTime"])

    # ── Symbols ──────────────────────────────────────────────────────────

    def format_symbol(self, symbol: str, market_type: MarketType) -> str:
        symbol = symbol.upper()
        if market_type is MarketType.SPOT:
            return symbol.replace("_", "")
        if "_" in symbol:
            return symbol
        for quote in QUOTE_CURRENCIES:
            if symbol.endswith(quote) and len(symbol) > len(quote):
                return f"{symbol[:-len(quote)]}_{quote}"
        logger.warning(f"MEXC: no known quote currency in {symbol}, sending as-is")
        return symbol

    def supports_positions(self, market_type: MarketType) -> bool:
        return market_type is MarketType.LINEAR

    @staticmethod
    def _data(raw: Dict[str, Any], path: str) -> Any:
        if "data" not in raw:
            raise MalformedResponseError(f"MEXC {path}: missing data in {str(raw)[:200]}")
        return raw["data"]

    # ── Market data ──────────────────────────────────────────────────────

    def _fetch_instrument_rules(self, symbol: str, market_type: MarketType) -> InstrumentRules:
        if market_type is MarketType.LINEAR:
            path = "/api/v1/contract/detail"
            info = self._data(self.request("GET", path, params={
                "symbol": self.format_symbol(symbol, market_type)}), path)
            size = to_decimal(info.get("contractSize"), "contractSize", Decimal("1"))
            if size <= 0:
                raise MalformedResponseError(f"MEXC {path}: contractSize {size} for {symbol}")
            step = to_decimal(info.get("volUnit"), "volUnit", Decimal("1"))
            return InstrumentRules(
                min_qty=to_decimal(info.get("minVol"), "minVol", step) * size,
                qty_step=step * size,
                tick_size=to_decimal(info.get("priceUnit"), "priceUnit", Decimal("0.01")),
                contract_size=size)
        path = "/api/v3/exchangeInfo"
        data = self.request("GET", path, params={"symbol": self.format_symbol(symbol, market_type)})
        symbols = data.get("symbols") or []
        if not symbols:
            raise MalformedResponseError(f"MEXC {path}: no symbol info for {symbol}")
        info = symbols[0]
        step = to_decimal(info.get("baseSizePrecision"), "baseSizePrecision", Decimal("0.000001"))
        if step == 0:
            step = Decimal("0.000001")
        precision = int(info.get("quotePrecision", 2))
        return InstrumentRules(min_qty=step, qty_step=step,
                               tick_size=Decimal(1).scaleb(-precision))

    def contract_size(self, symbol: str) -> Decimal:
        return self.get_instrument_rules(self.canonical_symbol(symbol), MarketType.LINEAR).contract_size

    def get_last_price(self, symbol: str, market_type: MarketType) -> Decimal:
        if market_type is MarketType.LINEAR:
            path = "/api/v1/contract/ticker"
            node = self._data(self.request("GET", path, params={
                "symbol": self.format_symbol(symbol, market_type)}), path)
            price = to_decimal((node or {}).get("lastPrice"), "lastPrice")
        else:
            path = "/api/v3/ticker/price"
            price = to_decimal(self.request("GET", path, params={
                "symbol": self.format_symbol(symbol, market_type)}).get("price"), "price")
        if price is None or price <= 0:
            raise MalformedResponseError(f"MEXC {path}: no price for {symbol}")
        return price

    def get_daily_closes(self, symbol: str, limit: int,
                         market_type: MarketType = MarketType.SPOT) -> List[Decimal]:
        rows = self.request("GET", "/api/v3/klines", params={
            "symbol": self.format_symbol(symbol, MarketType.SPOT), "interval": "1d", "limit": limit})
        if not isinstance(rows, list):
            raise MalformedResponseError(f"MEXC klines for {symbol}: expected a list")
        return [to_decimal(row[4], "close") for row in rows]

    # ── Orders ───────────────────────────────────────────────────────────

    def place_order(self, request: OrderRequest) -> Dict[str, Any]:
        symbol = self.format_symbol(request.symbol, request.market_type)
        is_market = request.order_type is OrderType.MARKET
        if request.market_type is MarketType.LINEAR:
            if request.side is OrderSide.BUY:
                side = 2 if request.reduce_only else 1
            else:
                side = 4 if request.reduce_only else 3
            contracts = request.quantity / self.contract_size(request.symbol)
            body: Dict[str, Any] = {
                "symbol": symbol, "vol": format(contracts.normalize(), "f"), "side": side,
                "type": 5 if is_market else 1, "openType": 2,
                "price": str(request.price or 0), "externalOid": request.client_order_id,
            }
            if request.stop_loss is not None:
                body["stopLossPrice"] = str(request.stop_loss)
            if request.take_profit is not None:
                body["takeProfitPrice"] = str(request.take_profit)
            return self.request("POST", "/api/v1/private/order/submit", signed=True, body=body)

        params: Dict[str, Any] = {
            "symbol": symbol, "side": request.side.value.upper(),
            "type": "MARKET" if is_market else "LIMIT",
            "quantity": str(request.quantity), "newClientOrderId": request.client_order_id,
        }
        if not is_market:
            params["price"] = str(request.price)
        return self.request("POST", "/api/v3/order", params=params, signed=True)

    def get_order(self, symbol: str, order_id: str, market_type: MarketType) -> Dict[str, Any]:
        if market_type is MarketType.LINEAR:
            return self.request("GET", f"/api/v1/private/order/get/{order_id}", signed=True)
        return self.request("GET", "/api/v3/order", signed=True, params={
            "symbol": self.format_symbol(symbol, market_type), "orderId": order_id})

    def cancel_order(self, symbol: str, order_id: str, market_type: MarketType) -> Dict[str, Any]:
        if market_type is MarketType.LINEAR:
            return self.request("POST", "/api/v1/private/order/cancel", signed=True, body=[order_id])
        return self.request("DELETE", "/api/v3/order", signed=True, params={
            "symbol": self.format_symbol(symbol, market_type), "orderId": order_id})

    def parse_order(self, raw: Dict[str, Any], request: Optional[OrderRequest] = None) -> Order:
        if not isinstance(raw, dict):
            raise MalformedResponseError(f"MEXC order response is not an object: {str(raw)[:200]}")
        if "success" in raw:
            return self._parse_contract_order(raw.get("data"), request)
        return self._parse_spot_order(raw, request)

    def _parse_spot_order(self, node: Dict[str, Any], request: Optional[OrderRequest]) -> Order:
        order_id = node.get("orderId")
        if not order_id:
            raise MalformedResponseError(f"MEXC spot order without orderId: {str(node)[:200]}")
        if node.get("side"):
            side = OrderSide(node["side"].lower())
        elif request:
            side = request.side
        else:
            raise MalformedResponseError(f"MEXC spot order {order_id}: side missing")
        type_ = node.get("type")
        order_type = (OrderType.MARKET if type_ == "MARKET" else OrderType.LIMIT) if type_ else (
            request.order_type if request else OrderType.MARKET)
        return Order(
            order_id=str(order_id),
            symbol=self.canonical_symbol(node.get("symbol") or (request.symbol if request else "")),
            exchange=self.name, side=side, order_type=order_type,
            quantity=to_decimal(node.get("origQty"), "origQty", request.quantity if request else Decimal("0")),
            price=to_decimal(node.get("price"), "price", request.price if request else None) or None,
            executed_qty=to_decimal(node.get("executedQty"), "executedQty", Decimal("0")),
            cumulative_quote_qty=to_decimal(node.get("cummulativeQuoteQty"), "cummulativeQuoteQty"),
            status=_SPOT_STATUS.get(node.get("status", "NEW"), OrderStatus.NEW),
            client_order_id=node.get("clientOrderId") or (request.client_order_id if request else None),
            strategy_tag=request.strategy_tag if request else None,
            market_type=MarketType.SPOT,
        )

    def _parse_contract_order(self, data: Any, request: Optional[OrderRequest]) -> Order:
        # Submit returns the bare order id; order/get returns a full object.
        node: Dict[str, Any] = data if isinstance(data, dict) else {"orderId": data}
        order_id = node.get("orderId")
        if not order_id:
            raise MalformedResponseError(f"MEXC contract order without orderId: {str(data)[:200]}")
        if node.get("side") in _CONTRACT_SIDE:
            side = _CONTRACT_SIDE[node["side"]]
        elif request:
            side = request.side
        else:
            raise MalformedResponseError(f"MEXC contract order {order_id}: side missing")
        if node.get("orderType") is not None:
            order_type = OrderType.MARKET if node["orderType"] in (5, 6) else OrderType.LIMIT
        else:
            order_type = request.order_type if request else OrderType.MARKET
        symbol = self.canonical_symbol(node.get("symbol") or (request.symbol if request else ""))
        deal_vol = to_decimal(node.get("dealVol"), "dealVol", Decimal("0"))
        vol = to_decimal(node.get("vol"), "vol")
        if deal_vol or vol is not None:
            size = self.contract_size(symbol)
            deal_vol *= size
            quantity = vol * size if vol is not None else (request.quantity if request else deal_vol)
        else:
            quantity = request.quantity if request else Decimal("0")
        avg = to_decimal(node.get("dealAvgPrice"), "dealAvgPrice")
        status = _CONTRACT_STATE.get(node.get("state"), OrderStatus.NEW)
        if status is OrderStatus.NEW and deal_vol > 0:
            status = OrderStatus.PARTIALLY_FILLED
        return Order(
            order_id=str(order_id),
            symbol=symbol,
            exchange=self.name, side=side, order_type=order_type,
            quantity=quantity,
            price=to_decimal(node.get("price"), "price", request.price if request else None) or None,
            executed_qty=deal_vol,
            avg_fill_price=avg if avg else None,
            status=status,
            client_order_id=node.get("externalOid") or (request.client_order_id if request else None),
            strategy_tag=request.strategy_tag if request else None,
            market_type=MarketType.LINEAR,
        )

    # ── Positions / account ──────────────────────────────────────────────

    def get_open_positions(self, market_type: MarketType) -> List[ExchangePosition]:
        path = "/api/v1/private/position/open_positions"
        rows = self._data(self.request("GET", path, signed=True), path)
        if not isinstance(rows, list):
            raise MalformedResponseError(f"MEXC {path}: data is not a list")
        positions = [p for p in (self._parse_position(r) for r in rows) if p]
        logger.info(f"Fetched {len(positions)} open MEXC contract positions")
        return positions

    def _parse_position(self, row: Dict[str, Any]) -> Optional[ExchangePosition]:
        side_code = row.get("positionType", row.get("positionSide"))
        if side_code not in (1, 2):
            raise MalformedResponseError(f"MEXC position with unknown side {side_code}: {row}")
        qty = to_decimal(row.get("holdVol"), "holdVol", Decimal("0"))
        if qty <= 0:
            return None
        entry = to_decimal(row.get("holdAvgPrice") or row.get("avgEntryPrice"), "holdAvgPrice")
        if not row.get("symbol") or entry is None:
            raise MalformedResponseError(f"MEXC position missing symbol/entry: {row}")
        symbol = self.canonical_symbol(row["symbol"])
        pid = row.get("positionId")
        return ExchangePosition(
            symbol=symbol,
            side=PositionSide.LONG if side_code == 1 else PositionSide.SHORT,
            quantity=qty * self.contract_size(symbol), entry_price=entry,
            market_type=MarketType.LINEAR,
            unrealized_pnl=to_decimal(row.get("unrealisedPnl"), "unrealisedPnl", Decimal("0")),
            leverage=to_decimal(row.get("leverage"), "leverage"),
            exchange_position_id=str(pid) if pid is not None else None,
        )

    def set_trading_stop(self, symbol: str, side: PositionSide, stop_loss: Decimal,
                         market_type: MarketType) -> None:
        raise ValidationError("MEXC: exchange-side stop amendment is not supported; "
                              "the stop is enforced locally")

    def get_wallet_equity(self) -> Decimal:
        path = "/api/v1/private/account/asset/USDT"
        node = self._data(self.request("GET", path, signed=True), path) or {}
        equity = to_decimal(node.get("equity"), "equity")
        if equity is None:
            raise MalformedResponseError(f"MEXC {path}: no equity field")
        return equity
