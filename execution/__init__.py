"""
Execution layer - order placement, position lifecycle, reconciliation and risk control.

SRP split:
  execution_engine.py     - caller-facing facade
  order_manager.py        - order submission, retries, normalization
  position_lifecycle.py   - fills -> positions, close accounting
  position_reconciler.py  - exchange-vs-local convergence (single-flight)
  position_monitor.py     - stop-loss / take-profit / ratchet exits
  risk_engine.py          - RiskGate + drawdown circuit breaker
  risk_metrics.py         - volatility, correlation, Kelly maths
"""
