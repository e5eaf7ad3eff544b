"""
Execution Metrics
Prometheus counters/gauges for order placement, reconciliation and risk,
plus a small exporter that serves them over HTTP for Grafana.
"""
import threading
from http.server import HTTPServer
from typing import Any, Callable, Dict, Optional

from loguru import logger
from prometheus_client import Counter, Gauge, Histogram

from monitoring.metrics_handler import MetricsHandler

# Module-level collectors: prometheus_client registers each name once per process.
ORDERS_PLACED = Counter('trading_orders_placed', 'Orders accepted by an exchange', ['exchange'])
ORDERS_FAILED = Counter('trading_orders_failed', 'Orders that failed terminally', ['exchange'])
ORDER_RETRIES = Counter('trading_order_retries', 'Order placement retry attempts', ['exchange'])
PRICE_INCOMPLETE = Counter('trading_orders_price_incomplete', 'Filled orders without a fill price', ['exchange'])
POSITIONS_OPENED = Counter('trading_positions_opened', 'Positions opened', ['exchange', 'source'])
POSITIONS_CLOSED = Counter('trading_positions_closed', 'Positions closed', ['exchange', 'reason'])
RECONCILIATION_CYCLES = Counter('trading_reconciliation_cycles', 'Reconciliation cycles', ['outcome'])
EXCHANGE_FETCH_FAILURES = Counter('trading_exchange_fetch_failures', 'Failed position fetches', ['exchange'])
RECONCILIATION_SECONDS = Histogram(
    'trading_reconciliation_seconds', 'Reconciliation cycle duration',
    buckets=[0.1, 0.5, 1, 2, 5, 10, 30, 60])
OPEN_POSITIONS = Gauge('trading_open_positions', 'Number of open positions')
DAILY_DRAWDOWN = Gauge('trading_daily_drawdown_pct', 'Drawdown since UTC midnight, percent')
WEEKLY_DRAWDOWN = Gauge('trading_weekly_drawdown_pct', 'Drawdown since Monday, percent')
ACCOUNT_VALUE = Gauge('trading_account_value', 'Account value across exchanges in USD')


def update_risk_gauges(summary: dict) -> None:
    """Copy a RiskGate.get_risk_summary() dict onto the gauges."""
    OPEN_POSITIONS.set(summary["positions"]["open"])
    DAILY_DRAWDOWN.set(summary["drawdown"]["daily_pct"])
    WEEKLY_DRAWDOWN.set(summary["drawdown"]["weekly_pct"])
    ACCOUNT_VALUE.set(summary["portfolio"]["current"])


class MetricsServer:
    """Serves /metrics and /health from a daemon thread. Port 0 binds any free port."""

    def __init__(self, port: int = 8000, probe: Optional[Callable[[], Dict[str, Any]]] = None,
                 host: str = '0.0.0.0'):
        self.port = port
        self.host = host
        self._handler = type("BoundMetricsHandler", (MetricsHandler,), {"probe": staticmethod(probe)}) \
            if probe else MetricsHandler
        self._server: Optional[HTTPServer] = None
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._server:
            logger.warning("Metrics server already running")
            return
        self._server = HTTPServer((self.host, self.port), self._handler)
        self.port = self._server.server_address[1]
        self._thread = threading.Thread(target=self._server.serve_forever, daemon=True)
        self._thread.start()
        logger.info(f"✓ Metrics server started on http://localhost:{self.port}/metrics")

    def stop(self) -> None:
        if self._server:
            self._server.shutdown()
            self._server.server_close()
            self._server = None
        logger.info("Metrics server stopped")
