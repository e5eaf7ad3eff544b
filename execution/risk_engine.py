"""
Risk Engine
Pre-trade validation (RiskGate), position sizing and the drawdown circuit breaker
"""
import threading
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal, ROUND_DOWN
from typing import Any, Dict, List, Optional, Tuple

from loguru import logger

from config import RiskLimits, SizingConfig
from execution import risk_metrics
from execution.errors import InsufficientDataError, TradingError
from execution.models import (
    MarketType, OrderSide, PositionSide, PositionStatus, TradeDecision,
)
from interfaces import IExchangeRegistry, IPositionStore


@dataclass
class PortfolioSnapshot:
    """
    Account-value watermarks for the drawdown circuit breaker.

    Peaks only ratchet upward between resets; resets happen at UTC midnight
    (daily) and on Monday (weekly).
    """
    start_of_day_value: Optional[Decimal] = None
    peak_today: Optional[Decimal] = None
    start_of_week_value: Optional[Decimal] = None
    peak_this_week: Optional[Decimal] = None
    current_value: Optional[Decimal] = None
    day: Optional[date] = None
    week_start: Optional[date] = None
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def refresh(self, value: Decimal, today: Optional[date] = None) -> None:
        today = today or datetime.now(timezone.utc).date()
        with self._lock:
            self.current_value = value
            if self.start_of_day_value is None:
                self.start_of_day_value, self.peak_today, self.day = value, value, today
            if self.start_of_week_value is None:
                self.start_of_week_value, self.peak_this_week = value, value
                self.week_start = today - timedelta(days=today.weekday())
            self.peak_today = max(self.peak_today, value)
            self.peak_this_week = max(self.peak_this_week, value)

    def reset_daily(self, value: Decimal, today: Optional[date] = None) -> None:
        with self._lock:
            self.start_of_day_value = self.peak_today = self.current_value = value
            self.day = today or datetime.now(timezone.utc).date()
        logger.info(f"Daily portfolio reset: start-of-day value {value}")

    def reset_weekly(self, value: Decimal, today: Optional[date] = None) -> None:
        today = today or datetime.now(timezone.utc).date()
        with self._lock:
            self.start_of_week_value = self.peak_this_week = self.current_value = value
            self.week_start = today - timedelta(days=today.weekday())
        logger.info(f"Weekly portfolio reset: start-of-week value {value}")

    @staticmethod
    def _drawdown(peak: Optional[Decimal], current: Optional[Decimal]) -> float:
        if not peak or current is None or peak <= 0:
            return 0.0
        return float((peak - current) / peak)

    def daily_drawdown(self) -> float:
        with self._lock:
            return self._drawdown(self.peak_today, self.current_value)

    def weekly_drawdown(self) -> float:
        with self._lock:
            return self._drawdown(self.peak_this_week, self.current_value)

    def as_dict(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "current": float(self.current_value or 0),
                "start_of_day": float(self.start_of_day_value or 0),
                "peak_today": float(self.peak_today or 0),
                "start_of_week": float(self.start_of_week_value or 0),
                "peak_this_week": float(self.peak_this_week or 0),
            }


class RiskGate:
    """
    Pre-trade risk gate.

    Enforces:
    - Exchange minimum order size after step rounding
    - Single-instrument and whole-portfolio exposure caps
    - Correlated-position count
    - Daily / weekly drawdown circuit breakers
    """

    def __init__(
            self,
            registry: IExchangeRegistry,
            positions: IPositionStore,
            limits: Optional[RiskLimits] = None,
            sizing: Optional[SizingConfig] = None,
            snapshot: Optional[PortfolioSnapshot] = None,
    ):
        self._registry = registry
        self._positions = positions
        self.limits = limits or RiskLimits()
        self.sizing = sizing or SizingConfig()
        self.snapshot = snapshot or PortfolioSnapshot()

        logger.info(
            f"Initialized Risk Gate: "
            f"single_coin={self.limits.max_single_coin_pct:.1%}, "
            f"portfolio={self.limits.max_portfolio_deployed_pct:.1%}, "
            f"daily_limit={self.limits.daily_loss_limit_pct:.1%}"
        )

    # ── Validation ───────────────────────────────────────────────────────

    def validate_trade(
            self,
            symbol: str,
            proposed_size: Decimal,
            exchange: str,
            side: OrderSide,
            account_balance: Decimal,
            market_type: MarketType = MarketType.LINEAR,
    ) -> TradeDecision:
        """
        Validate a proposed trade against every risk limit.

        Args:
            symbol: canonical symbol, e.g. "BTCUSDT"
            proposed_size: quantity in base units
            exchange: exchange id
            side: BUY or SELL
            account_balance: account value the exposure caps are measured against
            market_type: SPOT or LINEAR

        Returns:
            TradeDecision; unpacks as (is_valid, reason)
        """
        if proposed_size is None or proposed_size <= 0:
            return self._reject(symbol, f"Position size must be positive, got {proposed_size}")
        if account_balance is None or account_balance <= 0:
            return self._reject(symbol, f"Account balance must be positive, got {account_balance}")

        breaker = self.circuit_breaker_reason()
        if breaker:
            return self._reject(symbol, breaker)

        try:
            adapter = self._registry.get(exchange)
            rules = adapter.get_instrument_rules(symbol, market_type)
            price = adapter.get_last_price(symbol, market_type)
        except TradingError as e:
            return self._reject(symbol, f"Market data unavailable for {symbol} on {exchange}: {e}")

        # Sizing floor
        size = rules.round_qty_down(proposed_size)
        if size <= 0 or size < rules.min_qty:
            return self._reject(symbol, f"Size {proposed_size} rounds to {size}, "
                                        f"below exchange minimum {rules.min_qty}")

        # Single-instrument exposure
        notional = size * price
        max_single = account_balance * self.limits.max_single_coin_pct
        if notional > max_single:
            return self._reject(symbol, f"Notional ${notional:.2f} exceeds single-coin limit "
                                        f"${max_single:.2f} ({self.limits.max_single_coin_pct:.1%})")

        # Portfolio exposure on this exchange
        deployed = self.exposure(exchange)
        max_deployed = account_balance * self.limits.max_portfolio_deployed_pct
        if deployed + notional > max_deployed:
            return self._reject(symbol, f"Portfolio exposure ${deployed + notional:.2f} would exceed "
                                        f"${max_deployed:.2f} ({self.limits.max_portfolio_deployed_pct:.1%})")

        # Correlation
        correlated = self.count_correlated_positions(symbol, exchange)
        if correlated >= self.limits.max_correlated_positions:
            return self._reject(symbol, f"{correlated} open positions correlated with {symbol} "
                                        f"(max {self.limits.max_correlated_positions})")

        logger.info(f"Trade accepted: {side.value.upper()} {size} {symbol} on {exchange} "
                    f"(notional ${notional:.2f})")
        return TradeDecision.accept()

    @staticmethod
    def _reject(symbol: str, reason: str) -> TradeDecision:
        logger.warning(f"Trade rejected for {symbol}: {reason}")
        return TradeDecision.reject(reason)

    def circuit_breaker_reason(self) -> Optional[str]:
        daily = self.snapshot.daily_drawdown()
        if daily >= self.limits.daily_loss_limit_pct:
            return f"Daily drawdown {daily:.1%} reached limit {self.limits.daily_loss_limit_pct:.1%}"
        weekly = self.snapshot.weekly_drawdown()
        if weekly >= self.limits.weekly_drawdown_limit_pct:
            return f"Weekly drawdown {weekly:.1%} reached limit {self.limits.weekly_drawdown_limit_pct:.1%}"
        return None

    def exposure(self, exchange: Optional[str] = None) -> Decimal:
        """Notional of OPEN positions, optionally for one exchange."""
        return sum((p.notional for p in self._positions.find_by_status(PositionStatus.OPEN)
                    if exchange is None or p.exchange == exchange.upper()), Decimal("0"))

    # ── Correlation / volatility ─────────────────────────────────────────

    def _closes(self, symbol: str, exchange: str) -> List[float]:
        adapter = self._registry.get(exchange)
        closes = adapter.get_daily_closes(symbol, self.sizing.correlation_lookback_days)
        return [float(c) for c in closes]

    def count_correlated_positions(self, symbol: str, exchange: str) -> int:
        """Open positions whose daily-close correlation with symbol exceeds the threshold."""
        others = {(p.symbol, p.exchange) for p in self._positions.find_by_status(PositionStatus.OPEN)
                  if p.symbol != symbol}
        if not others:
            return 0
        try:
            candidate = self._closes(symbol, exchange)
        except TradingError as e:
            logger.warning(f"No price history for {symbol}, treating as uncorrelated: {e}")
            return 0
        count = 0
        for other_symbol, other_exchange in sorted(others):
            corr = self.correlation(candidate, other_symbol, other_exchange)
            if abs(corr) > self.limits.correlation_threshold:
                logger.debug(f"{symbol} ~ {other_symbol}: corr={corr:.2f}")
                count += 1
        return count

    def correlation(self, candidate: List[float], other_symbol: str, other_exchange: str) -> float:
        try:
            other = self._closes(other_symbol, other_exchange)
            return risk_metrics.pearson(candidate, other, self.sizing.min_correlation_samples)
        except InsufficientDataError:
            return 0.0
        except TradingError as e:
            logger.warning(f"Correlation skipped for {other_symbol}: {e}")
            return 0.0

    def calculate_volatility(self, symbol: str, exchange: str) -> float:
        try:
            return risk_metrics.volatility(self._closes(symbol, exchange))
        except InsufficientDataError:
            logger.warning(f"Insufficient history for {symbol}, default volatility "
                           f"{self.sizing.default_volatility:.2%}")
        except TradingError as e:
            logger.warning(f"Volatility fetch failed for {symbol}: {e}")
        return self.sizing.default_volatility

    def calculate_max_drawdown(self, symbol: str, exchange: str) -> float:
        try:
            return risk_metrics.max_drawdown(self._closes(symbol, exchange))
        except TradingError as e:
            logger.warning(f"Drawdown history unavailable for {symbol}: {e}")
            return 0.0

    # ── Stops / targets ──────────────────────────────────────────────────

    def volatility_multiplier(self, vol: float) -> Decimal:
        if vol > self.sizing.high_vol_threshold:
            return self.sizing.high_vol_multiplier
        if vol > self.sizing.medium_vol_threshold:
            return self.sizing.medium_vol_multiplier
        return self.sizing.low_vol_multiplier

    def calculate_stop_loss(self, entry_price: Decimal, side: PositionSide, vol: float) -> Decimal:
        pct = self.sizing.default_stop_loss_pct * self.volatility_multiplier(vol)
        if side is PositionSide.LONG:
            return entry_price * (1 - pct)
        return entry_price * (1 + pct)

    def calculate_take_profit(self, entry_price: Decimal, stop_loss: Decimal, side: PositionSide,
                              risk_reward: Optional[Decimal] = None) -> Decimal:
        distance = abs(entry_price - stop_loss) * (risk_reward or self.sizing.risk_reward_ratio)
        if side is PositionSide.LONG:
            return entry_price + distance
        return entry_price - distance

    # ── Sizing ───────────────────────────────────────────────────────────

    def calculate_position_size(
            self,
            symbol: str,
            exchange: str,
            account_balance: Decimal,
            entry_price: Decimal,
            stop_loss_price: Decimal,
            market_type: MarketType = MarketType.LINEAR,
    ) -> Optional[Decimal]:
        """Fixed-fractional size: (balance × max account risk) / |entry − stop|, step-rounded."""
        distance = abs(entry_price - stop_loss_price)
        if distance == 0:
            logger.warning(f"Stop equals entry for {symbol}; cannot size")
            return None
        risk_amount = account_balance * self.limits.max_account_risk_pct
        raw = (risk_amount / distance).quantize(Decimal("0.00000001"), rounding=ROUND_DOWN)
        return self._fit_to_rules(symbol, exchange, raw, market_type)

    def _fit_to_rules(self, symbol: str, exchange: str, raw: Decimal,
                      market_type: MarketType) -> Optional[Decimal]:
        try:
            rules = self._registry.get(exchange).get_instrument_rules(symbol, market_type)
        except TradingError as e:
            logger.error(f"Instrument rules unavailable for {symbol} on {exchange}: {e}")
            return None
        size = rules.round_qty_down(raw)
        if size <= 0 or size < rules.min_qty:
            logger.info(f"Size {raw} for {symbol} below minimum {rules.min_qty}")
            return None
        return size

    def _closed_pnls(self, symbol: str) -> List[float]:
        return [float(p.realized_pnl)
                for p in self._positions.find_by_symbol_and_status(symbol, PositionStatus.CLOSED)
                if p.realized_pnl is not None]

    def historical_win_rate(self, symbol: str) -> float:
        pnls = self._closed_pnls(symbol)
        if not pnls:
            return self.sizing.default_win_rate
        return sum(1 for p in pnls if p > 0) / len(pnls)

    def average_win_loss(self, symbol: str) -> Tuple[float, float]:
        pnls = self._closed_pnls(symbol)
        wins = [p for p in pnls if p > 0]
        losses = [-p for p in pnls if p < 0]
        avg_win = sum(wins) / len(wins) if wins else 0.0
        avg_loss = sum(losses) / len(losses) if losses else 0.0
        return avg_win, avg_loss

    def kelly_fraction(self, symbol: str) -> float:
        """Clamped Kelly fraction from the symbol's closed-position history."""
        win_rate = self.historical_win_rate(symbol)
        avg_win, avg_loss = self.average_win_loss(symbol)
        try:
            f = risk_metrics.kelly_fraction(win_rate, avg_win, avg_loss)
        except InsufficientDataError:
            b = float(self.sizing.risk_reward_ratio)
            f = (b * win_rate - (1.0 - win_rate)) / b
        return risk_metrics.clamp(f, self.sizing.kelly_min_fraction, self.sizing.kelly_max_fraction)

    def calculate_kelly_position_size(
            self,
            symbol: str,
            exchange: str,
            account_balance: Decimal,
            entry_price: Decimal,
            market_type: MarketType = MarketType.LINEAR,
    ) -> Optional[Decimal]:
        """Allocate balance × Kelly fraction of capital, converted to base units."""
        if entry_price <= 0:
            return None
        f = self.kelly_fraction(symbol)
        capital = account_balance * Decimal(str(f))
        raw = (capital / entry_price).quantize(Decimal("0.00000001"), rounding=ROUND_DOWN)
        logger.info(f"Kelly size for {symbol}: f={f:.3f}, capital=${capital:.2f}, qty={raw}")
        return self._fit_to_rules(symbol, exchange, raw, market_type)

    # ── Portfolio snapshot jobs ──────────────────────────────────────────

    def account_value(self) -> Optional[Decimal]:
        """Sum of wallet equity across exchanges; None if every venue failed."""
        total, ok = Decimal("0"), False
        for name in self._registry.names():
            try:
                total += self._registry.get(name).get_wallet_equity()
                ok = True
            except TradingError as e:
                logger.error(f"Equity fetch failed for {name}: {e}")
        return total if ok else None

    def refresh_risk_metrics(self) -> Optional[Decimal]:
        value = self.account_value()
        if value is None:
            logger.warning("Risk metrics refresh skipped: no account value")
            return None
        self.snapshot.refresh(value)
        breaker = self.circuit_breaker_reason()
        if breaker:
            logger.warning(f"Circuit breaker active: {breaker}")
        return value

    def run_period_resets(self, now: Optional[datetime] = None) -> None:
        """Daily reset on a new UTC date, weekly reset on a new Monday-anchored week."""
        now = now or datetime.now(timezone.utc)
        today = now.date()
        week_start = today - timedelta(days=today.weekday())
        need_daily = self.snapshot.day != today
        need_weekly = self.snapshot.week_start != week_start
        if not (need_daily or need_weekly):
            return
        value = self.account_value()
        if value is None:
            logger.warning("Portfolio reset postponed: no account value")
            return
        if need_daily:
            self.snapshot.reset_daily(value, today)
        if need_weekly:
            self.snapshot.reset_weekly(value, today)

    def get_risk_summary(self) -> Dict[str, Any]:
        """Get comprehensive risk summary."""
        open_positions = self._positions.find_by_status(PositionStatus.OPEN)
        by_exchange: Dict[str, float] = {}
        for p in open_positions:
            by_exchange[p.exchange] = by_exchange.get(p.exchange, 0.0) + float(p.notional)
        return {
            "timestamp": datetime.now(timezone.utc),
            "positions": {"open": len(open_positions)},
            "exposure": by_exchange,
            "drawdown": {
                "daily_pct": self.snapshot.daily_drawdown() * 100,
                "weekly_pct": self.snapshot.weekly_drawdown() * 100,
                "daily_limit_pct": self.limits.daily_loss_limit_pct * 100,
                "weekly_limit_pct": self.limits.weekly_drawdown_limit_pct * 100,
            },
            "portfolio": self.snapshot.as_dict(),
            "circuit_breaker": self.circuit_breaker_reason(),
        }
