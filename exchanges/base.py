"""
BaseExchangeAdapter - shared signed-request plumbing for every venue.

SRP: transport (httpx), error classification, GET retry/backoff, server-time
     sync and instrument-rule caching. Venue subclasses only supply signing,
     symbol conventions and payload translation.
OCP: a new venue is a new subclass registered in exchanges.registry.
"""
from __future__ import annotations

import hashlib
import hmac
import threading
import time
from abc import ABC, abstractmethod
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx
from loguru import logger

from config import HttpConfig
from execution.errors import (
    AuthenticationError, MalformedResponseError, TradingError,
    TransientNetworkError, ValidationError,
)
from execution.models import (
    ExchangePosition, InstrumentRules, MarketType, Order, OrderRequest, PositionSide,
)


def to_decimal(value: Any, field_name: str, default: Optional[Decimal] = None) -> Optional[Decimal]:
    """Parse an exchange numeric string; blank means default, garbage is malformed."""
    if value is None or value == "":
        return default
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise MalformedResponseError(f"Field '{field_name}' is not numeric: {value!r}") from e


class BaseExchangeAdapter(ABC):
    """Common behaviour for REST venue adapters."""

    name: str = "BASE"
    # Venue-specific business codes meaning bad credentials / signature.
    auth_error_codes: frozenset = frozenset()

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        base_url: str,
        http_cfg: Optional[HttpConfig] = None,
        client: Optional[httpx.Client] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self.api_key = api_key
        self._secret = api_secret
        self.base_url = base_url
        self.http = http_cfg or HttpConfig()
        self._client = client or httpx.Client(
            base_url=base_url,
            timeout=self.http.timeout_sec,
            headers={"User-Agent": "TradingBot/1.0", "Accept": "application/json"},
        )
        self._sleep = sleep
        self._clock = clock

        self._time_lock = threading.Lock()
        self._time_offset_ms: Optional[int] = None
        self._time_synced_at = 0.0

        self._rules_lock = threading.Lock()
        self._rules_cache: Dict[Tuple[str, MarketType], Tuple[float, InstrumentRules]] = {}

        logger.info(f"Initialized {self.name} adapter ({base_url})")

    # ── Signing ──────────────────────────────────────────────────────────

    def _hmac_hex(self, message: str) -> str:
        return hmac.new(self._secret.encode(), message.encode(), hashlib.sha256).hexdigest()

    @abstractmethod
    def sign(self, timestamp: int, payload: str) -> str:
        ...

    # ── Server time ──────────────────────────────────────────────────────

    def get_server_time(self) -> int:
        """Exchange time in ms. Offset re-synced at most once per TTL."""
        with self._time_lock:
            now = self._clock()
            if self._time_offset_ms is None or now - self._time_synced_at >= self.http.server_time_ttl_sec:
                try:
                    server_ms = self._fetch_server_time()
                    self._time_offset_ms = server_ms - int(now * 1000)
                    logger.debug(f"{self.name} clock offset {self._time_offset_ms}ms")
                except TradingError as e:
                    logger.warning(f"{self.name} server time sync failed, using local clock: {e}")
                    if self._time_offset_ms is None:
                        self._time_offset_ms = 0
                self._time_synced_at = now
            return int(self._clock() * 1000) + self._time_offset_ms

    @abstractmethod
    def _fetch_server_time(self) -> int:
        ...

    # ── Symbols ──────────────────────────────────────────────────────────

    @abstractmethod
    def format_symbol(self, symbol: str, market_type: MarketType) -> str:
        ...

    @staticmethod
    def canonical_symbol(exchange_symbol: str) -> str:
        return exchange_symbol.replace("_", "").replace("-", "").upper()

    # ── Transport ────────────────────────────────────────────────────────

    def request(self, method: str, path: str, params: Optional[Dict[str, Any]] = None,
                signed: bool = False, body: Any = None) -> Any:
        """
        Send one request and return the decoded JSON body.

        GET is retried on TransientNetworkError with doubling, capped backoff.
        Anything else propagates on the first failure.
        """
        method = method.upper()
        attempts = max(1, self.http.get_retries) if method == "GET" else 1
        last_error: Optional[TransientNetworkError] = None
        for attempt in range(1, attempts + 1):
            try:
                return self._send(method, path, params, signed, body)
            except TransientNetworkError as e:
                last_error = e
                if attempt == attempts:
                    break
                delay = self._backoff(attempt)
                logger.warning(f"{self.name} {method} {path} failed ({e}); "
                               f"retry {attempt}/{attempts - 1} in {delay:.2f}s")
                self._sleep(delay)
        raise last_error

    def _backoff(self, attempt: int) -> float:
        return min(self.http.backoff_base_sec * (2 ** (attempt - 1)), self.http.backoff_cap_sec)

    def _send(self, method: str, path: str, params: Optional[Dict[str, Any]],
              signed: bool, body: Any) -> Any:
        url, headers, content = self._build_request(method, path, params, signed, body)
        try:
            response = self._client.request(method, url, headers=headers, content=content)
        except httpx.TimeoutException as e:
            raise TransientNetworkError(f"{self.name} timeout on {path}: {e}", self.name) from e
        except httpx.TransportError as e:
            raise TransientNetworkError(f"{self.name} transport error on {path}: {e}", self.name) from e
        return self._parse_response(response, path)

    @abstractmethod
    def _build_request(self, method: str, path: str, params: Optional[Dict[str, Any]],
                       signed: bool, body: Any) -> Tuple[str, Dict[str, str], Optional[str]]:
        """Return (url, headers, body_text) ready to send."""

    def _parse_response(self, response: httpx.Response, path: str) -> Any:
        status = response.status_code
        if status in (401, 403):
            raise AuthenticationError(f"{self.name} {path}: HTTP {status}")
        if status == 429 or status >= 500:
            raise TransientNetworkError(f"{self.name} {path}: HTTP {status}", self.name)
        if status >= 400:
            try:
                self._check_envelope(response.json(), path)
            except (ValueError, MalformedResponseError):
                pass
            raise ValidationError(f"{self.name} {path}: HTTP {status} {response.text[:200]}")
        if not response.content or not response.content.strip():
            raise TransientNetworkError(f"{self.name} {path}: empty response body", self.name)
        try:
            data = response.json()
        except ValueError as e:
            raise MalformedResponseError(f"{self.name} {path}: undecodable body {response.text[:200]!r}") from e
        self._check_envelope(data, path)
        return data

    @abstractmethod
    def _check_envelope(self, data: Any, path: str) -> None:
        """Raise for venue-level error codes inside an HTTP 2xx body."""

    # ── Instrument metadata ──────────────────────────────────────────────

    def get_instrument_rules(self, symbol: str, market_type: MarketType) -> InstrumentRules:
        key = (symbol, market_type)
        now = self._clock()
        with self._rules_lock:
            hit = self._rules_cache.get(key)
            if hit and now - hit[0] < self.http.instrument_cache_ttl_sec:
                return hit[1]
        rules = self._fetch_instrument_rules(symbol, market_type)
        with self._rules_lock:
            self._rules_cache[key] = (now, rules)
        logger.info(f"{self.name} rules {symbol}/{market_type.value}: min={rules.min_qty} "
                    f"step={rules.qty_step} tick={rules.tick_size}")
        return rules

    @abstractmethod
    def _fetch_instrument_rules(self, symbol: str, market_type: MarketType) -> InstrumentRules:
        ...

    # ── Venue operations ─────────────────────────────────────────────────

    @abstractmethod
    def supports_positions(self, market_type: MarketType) -> bool: ...

    @abstractmethod
    def get_last_price(self, symbol: str, market_type: MarketType) -> Decimal: ...

    @abstractmethod
    def get_daily_closes(self, symbol: str, limit: int,
                         market_type: MarketType = MarketType.SPOT) -> List[Decimal]: ...

    @abstractmethod
    def place_order(self, request: OrderRequest) -> Dict[str, Any]: ...

    @abstractmethod
    def get_order(self, symbol: str, order_id: str, market_type: MarketType) -> Dict[str, Any]: ...

    @abstractmethod
    def cancel_order(self, symbol: str, order_id: str, market_type: MarketType) -> Dict[str, Any]: ...

    @abstractmethod
    def parse_order(self, raw: Dict[str, Any], request: Optional[OrderRequest] = None) -> Order: ...

    @abstractmethod
    def get_open_positions(self, market_type: MarketType) -> List[ExchangePosition]: ...

    @abstractmethod
    def set_trading_stop(self, symbol: str, side: PositionSide, stop_loss: Decimal,
                         market_type: MarketType) -> None: ...

    @abstractmethod
    def get_wallet_equity(self) -> Decimal: ...

    def close(self) -> None:
        self._client.close()
        logger.info(f"Closed {self.name} adapter")
