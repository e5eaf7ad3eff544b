"""
PositionLifecycle - turns fills into position transitions and owns close accounting.

SRP: open / increase / reduce / close a Position from an Order, and compute
     the realized-PnL and performance figures at the CLOSED transition.
     It never talks to an exchange.
"""
from __future__ import annotations

import math
from decimal import Decimal, ROUND_HALF_UP
from typing import List, Optional
from loguru import logger

from config import MonitorConfig
from execution.models import (
    CloseReason, Order, Position, PositionKey, PositionSide, PositionStatus,
)
from interfaces import IPositionStore
from monitoring import execution_metrics as metrics
from storage.locks import KeyedLocks

# Holding periods shorter than one hour annualize as one hour.
MIN_HELD_DAYS = 1 / 24


class PositionLifecycle:
    """Applies fills to positions; all writes for a key happen under that key's lock."""

    def __init__(self, positions: IPositionStore, locks: Optional[KeyedLocks] = None,
                 cfg: Optional[MonitorConfig] = None):
        self._store = positions
        self.locks = locks or KeyedLocks()
        self.cfg = cfg or MonitorConfig()

    # ── Lookup ───────────────────────────────────────────────────────────

    def find_open(self, key: PositionKey) -> Optional[Position]:
        matches = [p for p in self._store.find_by_symbol_and_status(key.symbol, PositionStatus.OPEN)
                   if p.key == key]
        if len(matches) > 1:
            logger.warning(f"Duplicate OPEN positions for {key}; using {matches[0].position_id}")
        return matches[0] if matches else None

    # ── Fills ────────────────────────────────────────────────────────────

    def apply_fill(self, order: Order) -> Optional[Position]:
        """
        Update positions from a filled/partially filled order.

        An opposite-side OPEN position is reduced or closed first; only if
        none exists is a same-side position opened or increased.
        """
        if not order.has_fill:
            return None
        price = order.fill_price
        if price is None:
            logger.warning(f"Order {order.order_id} has no fill price; position update skipped")
            return None

        opened_side = PositionSide.opened_by(order.side)
        opposite = PositionSide.SHORT if opened_side is PositionSide.LONG else PositionSide.LONG
        opposite_key = PositionKey(order.exchange, order.market_type, order.symbol, opposite)
        with self.locks.hold(opposite_key):
            existing = self.find_open(opposite_key)
            if existing:
                return self._reduce(existing, order, order.executed_qty, price)

        key = PositionKey(order.exchange, order.market_type, order.symbol, opened_side)
        with self.locks.hold(key):
            existing = self.find_open(key)
            if existing:
                return self._increase(existing, order, price)
            return self._open(order, price, opened_side)

    def _open(self, order: Order, price: Decimal, side: PositionSide) -> Position:
        meta = order.metadata or {}
        pos = Position(
            symbol=order.symbol, exchange=order.exchange, market_type=order.market_type,
            side=side, quantity=order.executed_qty, entry_price=price,
            stop_loss_price=meta.get("stop_loss"), take_profit_price=meta.get("take_profit"),
            strategy_tag=order.strategy_tag, entry_order_ids=[order.order_id])
        pos.mark(price)
        self._store.save(pos)
        metrics.POSITIONS_OPENED.labels(exchange=pos.exchange, source="order").inc()
        logger.info(f"Position opened: {pos.position_id} {side.value.upper()} {pos.quantity} "
                    f"{pos.symbol} @ {price} on {pos.exchange}")
        return pos

    def _increase(self, pos: Position, order: Order, price: Decimal) -> Position:
        total = pos.quantity + order.executed_qty
        pos.entry_price = (pos.entry_price * pos.quantity + price * order.executed_qty) / total
        pos.quantity = total
        pos.entry_order_ids.append(order.order_id)
        pos.mark(pos.current_price or price)
        self._store.save(pos)
        logger.info(f"Position increased: {pos.position_id} qty={total} avg_entry={pos.entry_price:.8f}")
        return pos

    def _reduce(self, pos: Position, order: Order, qty: Decimal, price: Decimal) -> Position:
        if qty >= pos.quantity:
            if qty > pos.quantity:
                logger.warning(f"Fill {order.order_id} of {qty} exceeds {pos.position_id} qty "
                               f"{pos.quantity}; excess not opened")
            return self._finalize_close(pos, price, CloseReason.FILLED_OFFSET, order)
        pos.booked_pnl += self._signed_pnl(pos, price, qty)
        pos.quantity -= qty
        pos.exit_order_ids.append(order.order_id)
        pos.mark(price)
        self._store.save(pos)
        logger.info(f"Position reduced: {pos.position_id} by {qty} @ {price}, remaining {pos.quantity}")
        return pos

    # ── Closing ──────────────────────────────────────────────────────────

    def close_with_order(self, position_id: str, order: Order, reason: CloseReason) -> Optional[Position]:
        """Close (or reduce, on a partial fill) after an exit order was placed."""
        current = self._store.find_by_id(position_id)
        if current is None:
            return None
        with self.locks.hold(current.key):
            pos = self._store.find_by_id(position_id)
            if not pos.is_open:
                logger.warning(f"Position {position_id} already closed ({pos.close_reason})")
                return pos
            if not order.has_fill:
                logger.warning(f"Exit order {order.order_id} for {position_id} not filled yet "
                               f"({order.status.value}); position stays OPEN")
                return pos
            price = order.fill_price or pos.current_price or pos.entry_price
            if order.executed_qty < pos.quantity:
                return self._reduce(pos, order, order.executed_qty, price)
            return self._finalize_close(pos, price, reason, order)

    def close_without_order(self, pos: Position, reason: CloseReason) -> Position:
        """Close using the last known unrealized PnL. Caller holds the key lock."""
        realized = pos.booked_pnl + (pos.unrealized_pnl or Decimal("0"))
        pos.close(reason, realized, pos.current_price)
        self._store.save(pos)
        metrics.POSITIONS_CLOSED.labels(exchange=pos.exchange, reason=reason.value).inc()
        logger.info(f"Position closed: {pos.position_id} {pos.symbol} P&L={realized:+.4f} ({reason.value})")
        return pos

    @staticmethod
    def _signed_pnl(pos: Position, exit_price: Decimal, qty: Decimal) -> Decimal:
        entry_notional = pos.entry_price * qty
        exit_notional = exit_price * qty
        diff = exit_notional - entry_notional
        return diff if pos.side is PositionSide.LONG else -diff

    def _finalize_close(self, pos: Position, exit_price: Decimal, reason: CloseReason,
                        order: Optional[Order] = None) -> Position:
        qty = pos.quantity
        gross = pos.booked_pnl + self._signed_pnl(pos, exit_price, qty)
        quote = order.cumulative_quote_qty if order and order.cumulative_quote_qty else exit_price * qty
        fees = (pos.fees or Decimal("0")) + quote * self.cfg.fee_rate
        pos.mark(exit_price)
        pos.gross_profit = gross
        pos.fees = fees
        pos.net_profit = gross - fees
        if pos.highest_price and pos.lowest_price and pos.highest_price > 0:
            pos.max_drawdown = ((pos.highest_price - pos.lowest_price) / pos.highest_price).quantize(
                Decimal("0.00000001"), rounding=ROUND_HALF_UP)
        if pos.stop_loss_price is not None:
            risk = abs(pos.entry_price - pos.stop_loss_price)
            if risk > 0:
                pos.risk_reward_ratio = (abs(exit_price - pos.entry_price) / risk).quantize(
                    Decimal("0.0001"), rounding=ROUND_HALF_UP)
        if order:
            pos.exit_order_ids.append(order.order_id)
        pos.close(reason, gross, exit_price)
        self._performance(pos)
        self._store.save(pos)
        metrics.POSITIONS_CLOSED.labels(exchange=pos.exchange, reason=reason.value).inc()
        logger.info(f"Position closed: {pos.position_id} {pos.side.value.upper()} {pos.symbol} "
                    f"P&L=${gross:+.4f} net=${pos.net_profit:+.4f} ({reason.value})")
        return pos

    # ── Performance ──────────────────────────────────────────────────────

    def _performance(self, pos: Position) -> None:
        """Annualized return and a simple Sharpe ratio against the symbol's closed history."""
        if pos.cost_basis <= 0 or pos.realized_pnl is None:
            return
        held_days = max((pos.close_time - pos.open_time).total_seconds() / 86400, MIN_HELD_DAYS)
        total_return = float(pos.realized_pnl / pos.cost_basis)
        if total_return <= -1:
            pos.annualized_return = -1.0
        else:
            try:
                pos.annualized_return = (1 + total_return) ** (365 / held_days) - 1
            except OverflowError:
                logger.debug(f"{pos.position_id}: annualized return overflows over {held_days:.4f} days")
                pos.annualized_return = None

        returns = self._historical_returns(pos.symbol) + [total_return]
        if len(returns) < 2:
            return
        mean = sum(returns) / len(returns)
        vol = math.sqrt(sum((r - mean) ** 2 for r in returns) / (len(returns) - 1))
        if vol > 0:
            pos.sharpe_ratio = (mean - self.cfg.risk_free_rate / 252) / vol * math.sqrt(252)

    def _historical_returns(self, symbol: str) -> List[float]:
        return [float(p.realized_pnl / p.cost_basis)
                for p in self._store.find_by_symbol_and_status(symbol, PositionStatus.CLOSED)
                if p.realized_pnl is not None and p.cost_basis > 0]


