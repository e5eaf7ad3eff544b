"""
Position Monitor - exit rules for open positions.

SRP: evaluates stop-loss, trailing stop, take-profit and the secure-profit
     ratchet on each OPEN position and triggers exits. It delegates order
     submission to OrderPlacementEngine and close accounting to
     PositionLifecycle.

Rule priority per pass (first match wins):
    1. stop-loss         LONG: price <= stop   SHORT: price >= stop
    2. trailing stop     same comparison against trailing_stop_price
    3. take-profit       LONG: price >= target SHORT: price <= target
    4. secure-profit ratchet (once per position): stop -> entry * (1 ± lock)
"""
from __future__ import annotations

import operator
from decimal import Decimal
from typing import Iterable, List, Optional
from loguru import logger

from config import MonitorConfig
from execution.errors import ExchangeMismatchError, PositionNotFoundError, TradingError
from execution.models import (
    CloseReason, InstrumentRules, MarketType, MonitorAction, OrderRequest, OrderType,
    Position, PositionSide, PositionStatus,
)
from execution.order_manager import OrderPlacementEngine
from execution.position_lifecycle import PositionLifecycle
from interfaces import IExchangeRegistry, IPositionStore


class PositionMonitor:
    """Applies exit rules and closes positions through the order engine."""

    def __init__(self, engine: OrderPlacementEngine, lifecycle: PositionLifecycle,
                 registry: IExchangeRegistry, positions: IPositionStore,
                 cfg: Optional[MonitorConfig] = None):
        self.engine = engine
        self.lifecycle = lifecycle
        self.registry = registry
        self._store = positions
        self.cfg = cfg or MonitorConfig()

    # ── Evaluation ───────────────────────────────────────────────────────

    def evaluate_all(self, positions: Optional[Iterable[Position]] = None) -> List[MonitorAction]:
        """Evaluate every OPEN position; a failure on one never stops the pass."""
        if positions is None:
            positions = self._store.find_by_status(PositionStatus.OPEN)
        actions: List[MonitorAction] = []
        for pos in positions:
            try:
                action = self.evaluate(pos.position_id)
            except TradingError as e:
                logger.error(f"Monitor failed on {pos.position_id} {pos.symbol}: {e}")
                continue
            if action:
                actions.append(action)
        return actions

    def evaluate(self, position_id: str) -> Optional[MonitorAction]:
        snapshot = self._store.find_by_id(position_id)
        if snapshot is None or not snapshot.is_open:
            return None
        with self.lifecycle.locks.hold(snapshot.key):
            pos = self._store.find_by_id(position_id)
            if not pos.is_open or pos.current_price is None:
                return None
            price = pos.current_price

            if self._should_exit(pos, price, pos.stop_loss_price, operator.le, operator.ge):
                return self._exit(pos, CloseReason.STOP_LOSS)
            if self._update_trailing(pos) and self._should_exit(
                    pos, price, pos.trailing_stop_price, operator.le, operator.ge):
                return self._exit(pos, CloseReason.TRAILING_STOP)
            if self._should_exit(pos, price, pos.take_profit_price, operator.ge, operator.le):
                return self._exit(pos, CloseReason.TAKE_PROFIT)
            return self._secure_profit(pos)

    @staticmethod
    def _should_exit(pos: Position, price: Decimal, level: Optional[Decimal],
                     long_cmp, short_cmp) -> bool:
        if not level:
            return False
        return long_cmp(price, level) if pos.side is PositionSide.LONG else short_cmp(price, level)

    def _update_trailing(self, pos: Position) -> bool:
        """Move the trailing stop with the favourable extreme. False when trailing is off."""
        pct = self.cfg.trailing_stop_pct
        if pct <= 0:
            return False
        if pos.side is PositionSide.LONG:
            candidate = (pos.highest_price or pos.entry_price) * (1 - pct)
            moved = pos.trailing_stop_price is None or candidate > pos.trailing_stop_price
        else:
            candidate = (pos.lowest_price or pos.entry_price) * (1 + pct)
            moved = pos.trailing_stop_price is None or candidate < pos.trailing_stop_price
        if moved:
            pos.trailing_stop_price = candidate
            self._store.save(pos)
            logger.debug(f"Trailing stop for {pos.position_id} -> {candidate:.8f}")
        return True

    # ── Secure-profit ratchet ────────────────────────────────────────────

    def _secure_profit(self, pos: Position) -> Optional[MonitorAction]:
        if pos.secure_profit_applied:
            return None
        if pos.unrealized_pnl_pct < self.cfg.secure_profit_trigger_pct * 100:
            return None

        lock = self.cfg.secure_profit_lock_pct
        raw = pos.entry_price * (1 + lock) if pos.side is PositionSide.LONG else pos.entry_price * (1 - lock)
        new_stop = self._rules_for(pos).round_price(raw)
        tightens = (pos.stop_loss_price is None
                    or (pos.side is PositionSide.LONG and new_stop > pos.stop_loss_price)
                    or (pos.side is PositionSide.SHORT and new_stop < pos.stop_loss_price))
        if tightens:
            pos.stop_loss_price = new_stop
        pos.secure_profit_applied = True
        self._store.save(pos)
        logger.info(f"Secure-profit ratchet on {pos.position_id} {pos.symbol} "
                    f"({pos.unrealized_pnl_pct:.2f}%): stop -> {pos.stop_loss_price}")

        if tightens and pos.market_type is MarketType.LINEAR:
            try:
                self.registry.get(pos.exchange).set_trading_stop(
                    pos.symbol, pos.side, new_stop, pos.market_type)
            except TradingError as e:
                logger.warning(f"Could not push stop for {pos.position_id} to {pos.exchange}; "
                               f"enforced locally: {e}")
        return MonitorAction(pos.position_id, "secure_profit", f"stop_loss={pos.stop_loss_price}")

    def _rules_for(self, pos: Position) -> InstrumentRules:
        try:
            return self.registry.get(pos.exchange).get_instrument_rules(pos.symbol, pos.market_type)
        except TradingError as e:
            logger.warning(f"No instrument rules for {pos.symbol} on {pos.exchange} ({e}); "
                           f"using tick {self.cfg.default_tick_size}")
            return InstrumentRules(Decimal("0"), Decimal("0"), self.cfg.default_tick_size)

    # ── Closing ──────────────────────────────────────────────────────────

    def _exit(self, pos: Position, reason: CloseReason) -> MonitorAction:
        logger.info(f"{reason.value} hit for {pos.position_id} {pos.symbol} @ {pos.current_price}")
        try:
            closed = self._close(pos, reason)
        except TradingError as e:
            logger.error(f"Exit order for {pos.position_id} failed, position stays OPEN: {e}")
            return MonitorAction(pos.position_id, "close_failed", f"{reason.value}: {e}")
        if closed is not None and not closed.is_open:
            return MonitorAction(pos.position_id, "closed", reason.value)
        return MonitorAction(pos.position_id, "close_pending", reason.value)

    def _close(self, pos: Position, reason: CloseReason) -> Optional[Position]:
        request = OrderRequest(
            symbol=pos.symbol, side=pos.side.exit_side, quantity=pos.quantity,
            order_type=OrderType.MARKET, market_type=pos.market_type,
            strategy_tag=pos.strategy_tag, reduce_only=True)
        order = self.engine.place_order(request, pos.exchange, update_positions=False)
        return self.lifecycle.close_with_order(pos.position_id, order, reason)

    def close_position(self, position_id: str, reason: CloseReason, exchange: str) -> Position:
        """Close a position on request with an opposite-side market order for its full quantity."""
        pos = self._store.find_by_id(position_id)
        if pos is None:
            raise PositionNotFoundError(f"Position {position_id} not found")
        if pos.exchange != exchange.upper():
            raise ExchangeMismatchError(f"Position {position_id} is on {pos.exchange}, not {exchange}")
        with self.lifecycle.locks.hold(pos.key):
            pos = self._store.find_by_id(position_id)
            if not pos.is_open:
                logger.warning(f"Position {position_id} already closed ({pos.close_reason})")
                return pos
            return self._close(pos, reason) or pos
