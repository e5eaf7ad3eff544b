"""
Position Reconciler - converges the local OPEN-position set to what exchanges report.

One cycle:
    1. fetch positions from every (exchange, market) concurrently; a failed
       fetch is recorded and that exchange/market is left untouched
    2. match reports to local OPEN positions by (exchange, market, symbol, side);
       merge matches, create positions for unmatched reports
    3. close local positions that a successful fetch no longer reports
    4. re-price every OPEN position and hand them to PositionMonitor

Cycles are single-flight: a cycle requested while one is running returns a
report with ``skipped_busy`` set.
"""
from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal
from typing import Dict, List, Optional, Set, Tuple
from loguru import logger

from execution.errors import TradingError
from execution.models import (
    CloseReason, ExchangePosition, FetchResult, MarketType, Position, PositionKey,
    PositionStatus, ReconciliationReport, utcnow,
)
from execution.position_lifecycle import PositionLifecycle
from execution.position_monitor import PositionMonitor
from interfaces import IExchangeRegistry, IPositionStore
from monitoring import execution_metrics as metrics


class PositionReconciler:
    """Periodic merge of exchange-reported positions into the local store."""

    def __init__(self, registry: IExchangeRegistry, positions: IPositionStore,
                 lifecycle: PositionLifecycle, monitor: Optional[PositionMonitor] = None,
                 max_workers: int = 4):
        self.registry = registry
        self._store = positions
        self.lifecycle = lifecycle
        self.monitor = monitor
        self.max_workers = max_workers
        self._running = threading.Lock()

    @property
    def busy(self) -> bool:
        return self._running.locked()

    def reconcile(self) -> ReconciliationReport:
        if not self._running.acquire(blocking=False):
            logger.warning("Reconciliation already in progress; skipping this cycle")
            metrics.RECONCILIATION_CYCLES.labels(outcome="skipped").inc()
            return ReconciliationReport(skipped_busy=True, finished_at=utcnow())
        started = time.monotonic()
        try:
            report = self._run_cycle()
        finally:
            self._running.release()
        metrics.RECONCILIATION_SECONDS.observe(time.monotonic() - started)
        metrics.RECONCILIATION_CYCLES.labels(
            outcome="partial" if report.failed_exchanges else "ok").inc()
        metrics.OPEN_POSITIONS.set(len(self._store.find_by_status(PositionStatus.OPEN)))
        logger.info(f"Reconciliation done: opened={len(report.opened)} updated={len(report.updated)} "
                    f"closed={len(report.closed)} failed={report.failed_exchanges or '-'}")
        return report

    # ── Cycle ────────────────────────────────────────────────────────────

    def _targets(self) -> List[Tuple[str, MarketType]]:
        targets = []
        for name in self.registry.names():
            adapter = self.registry.get(name)
            for market_type in self.registry.market_types(name):
                if adapter.supports_positions(market_type):
                    targets.append((name, market_type))
        return targets

    def _fetch(self, exchange: str, market_type: MarketType) -> FetchResult:
        try:
            reported = self.registry.get(exchange).get_open_positions(market_type)
        except TradingError as e:
            logger.error(f"Position fetch failed for {exchange} {market_type.value}; "
                         f"skipping it this cycle: {e}")
            metrics.EXCHANGE_FETCH_FAILURES.labels(exchange=exchange).inc()
            return FetchResult(exchange, market_type, error=str(e))
        return FetchResult(exchange, market_type, positions=tuple(reported))

    def fetch_all(self) -> List[FetchResult]:
        targets = self._targets()
        if not targets:
            return []
        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(targets)),
                                thread_name_prefix="reconcile") as pool:
            return list(pool.map(lambda t: self._fetch(*t), targets))

    def _local_open(self) -> Dict[PositionKey, Position]:
        local: Dict[PositionKey, Position] = {}
        for pos in self._store.find_by_status(PositionStatus.OPEN):
            if pos.key in local:
                logger.warning(f"Duplicate OPEN position for {pos.key}: keeping "
                               f"{local[pos.key].position_id}, ignoring {pos.position_id}")
                continue
            local[pos.key] = pos
        return local

    def _run_cycle(self) -> ReconciliationReport:
        report = ReconciliationReport()
        # Snapshot first: anything opened after it is not a closure candidate this cycle.
        local = self._local_open()
        results = self.fetch_all()
        processed: Set[PositionKey] = set()

        for result in results:
            if not result.ok:
                report.failed_exchanges.append(f"{result.exchange}:{result.market_type.value}")
                continue
            for reported in result.positions:
                key = PositionKey(result.exchange, reported.market_type, reported.symbol, reported.side)
                if key in processed:
                    logger.warning(f"{result.exchange} reported {key} twice; keeping the first")
                    continue
                processed.add(key)
                try:
                    self._merge_or_create(key, reported, local.get(key), report)
                except TradingError as e:
                    logger.error(f"Could not reconcile {key}: {e}")

        succeeded = {(r.exchange, r.market_type) for r in results if r.ok}
        for key, pos in local.items():
            if key in processed or (key.exchange, key.market_type) not in succeeded:
                continue
            self._close_missing(key, pos.position_id, report)

        open_positions = self._reprice(report)
        if self.monitor is not None:
            report.monitor_actions.extend(self.monitor.evaluate_all(open_positions))
        report.finished_at = utcnow()
        return report

    def _merge_or_create(self, key: PositionKey, reported: ExchangePosition,
                         known: Optional[Position], report: ReconciliationReport) -> None:
        with self.lifecycle.locks.hold(key):
            current = self._store.find_by_id(known.position_id) if known else None
            if current is not None and current.is_open:
                current.quantity = reported.quantity
                current.entry_price = reported.entry_price
                current.unrealized_pnl = reported.unrealized_pnl
                current.leverage = reported.leverage or current.leverage
                current.mark_price = reported.mark_price or current.mark_price
                current.exchange_position_id = reported.exchange_position_id or current.exchange_position_id
                current.updated_at = utcnow()
                self._store.save(current)
                report.updated.append(current.position_id)
                return
            pos = Position(
                symbol=reported.symbol, exchange=key.exchange, market_type=reported.market_type,
                side=reported.side, quantity=reported.quantity, entry_price=reported.entry_price,
                unrealized_pnl=reported.unrealized_pnl, leverage=reported.leverage,
                mark_price=reported.mark_price, exchange_position_id=reported.exchange_position_id)
            if reported.mark_price:
                pos.mark(reported.mark_price)
            self._store.save(pos)
            report.opened.append(pos.position_id)
            metrics.POSITIONS_OPENED.labels(exchange=key.exchange, source="reconciliation").inc()
            logger.info(f"Position discovered on {key.exchange}: {pos.position_id} "
                        f"{pos.side.value.upper()} {pos.quantity} {pos.symbol} @ {pos.entry_price}")

    def _close_missing(self, key: PositionKey, position_id: str, report: ReconciliationReport) -> None:
        with self.lifecycle.locks.hold(key):
            pos = self._store.find_by_id(position_id)
            if pos is None or not pos.is_open:
                return
            logger.warning(f"{pos.position_id} {pos.symbol} not reported by {key.exchange}; closing")
            self.lifecycle.close_without_order(pos, CloseReason.RECONCILIATION_MISSING)
            report.closed.append(pos.position_id)

    # ── Post-pass ────────────────────────────────────────────────────────

    def _reprice(self, report: ReconciliationReport) -> List[Position]:
        """Mark every OPEN position at the live price; a failed fetch skips that position only."""
        repriced: List[Position] = []
        for pos in self._store.find_by_status(PositionStatus.OPEN):
            try:
                price = self.registry.get(pos.exchange).get_last_price(pos.symbol, pos.market_type)
            except TradingError as e:
                logger.warning(f"Price fetch failed for {pos.symbol} on {pos.exchange}: {e}")
                report.price_skipped.append(pos.position_id)
                continue
            with self.lifecycle.locks.hold(pos.key):
                current = self._store.find_by_id(pos.position_id)
                if current is None or not current.is_open:
                    continue
                current.mark(price)
                self._store.save(current)
                repriced.append(current)
        return repriced

    def total_unrealized(self) -> Decimal:
        return sum((p.unrealized_pnl for p in self._store.find_by_status(PositionStatus.OPEN)),
                   Decimal("0"))
