"""
Service Container - wires and owns all shared service instances.

SRP:  This module's only job is construction + lifecycle of shared services.
DIP:  All consumers receive interfaces, not concrete classes.
OCP:  Adding a new service = one new property; existing code untouched.

Usage:
    container = ServiceContainer(cfg)       # build once at startup
    container.reconciler.reconcile()

    # Or use the module-level getter:
    from container import get_container
    container = get_container()
"""
from __future__ import annotations

from typing import Optional
from loguru import logger

from config import BotConfig, get_config
from interfaces import IExchangeRegistry, IOrderStore, IPositionStore, IRiskPolicy


class ServiceContainer:
    """
    Owns and lazily constructs all shared service instances.

    Every property returns a Protocol-typed reference where one exists so
    consumers never depend on concrete implementations.
    """

    def __init__(self, cfg: Optional[BotConfig] = None):
        self.cfg = cfg or get_config()
        self._registry: Optional[IExchangeRegistry] = None
        self._redis = None
        self._order_store: Optional[IOrderStore] = None
        self._position_store: Optional[IPositionStore] = None
        self._locks = None
        self._lifecycle = None
        self._order_engine = None
        self._monitor = None
        self._reconciler = None
        self._risk_gate: Optional[IRiskPolicy] = None
        self._execution_engine = None
        self._scheduler = None
        self._metrics_server = None
        logger.info("ServiceContainer initialised")

    # ── Lazy constructors ────────────────────────────────────────────────

    @property
    def registry(self) -> IExchangeRegistry:
        if self._registry is None:
            from exchanges.registry import build_registry
            self._registry = build_registry(self.cfg)
        return self._registry

    @property
    def redis(self):
        if self._redis is None:
            from storage.redis_store import get_redis_client
            self._redis = get_redis_client(self.cfg.redis)
        return self._redis

    def _build_stores(self) -> None:
        if self.cfg.store.backend == "redis":
            from storage.redis_store import RedisOrderStore, RedisPositionStore
            prefix = self.cfg.redis.key_prefix
            self._order_store = self._order_store or RedisOrderStore(self.redis, prefix)
            self._position_store = self._position_store or RedisPositionStore(self.redis, prefix)
        else:
            from storage.memory_store import InMemoryOrderStore, InMemoryPositionStore
            self._order_store = self._order_store or InMemoryOrderStore()
            self._position_store = self._position_store or InMemoryPositionStore()
        logger.info(f"Stores ready (backend={self.cfg.store.backend})")

    @property
    def order_store(self) -> IOrderStore:
        if self._order_store is None:
            self._build_stores()
        return self._order_store

    @property
    def position_store(self) -> IPositionStore:
        if self._position_store is None:
            self._build_stores()
        return self._position_store

    @property
    def locks(self):
        if self._locks is None:
            from storage.locks import KeyedLocks
            self._locks = KeyedLocks()
        return self._locks

    @property
    def lifecycle(self):
        if self._lifecycle is None:
            from execution.position_lifecycle import PositionLifecycle
            self._lifecycle = PositionLifecycle(self.position_store, self.locks, self.cfg.monitor)
        return self._lifecycle

    @property
    def order_engine(self):
        if self._order_engine is None:
            from execution.order_manager import OrderPlacementEngine
            self._order_engine = OrderPlacementEngine(
                self.registry, self.order_store, self.lifecycle, self.cfg.orders)
        return self._order_engine

    @property
    def monitor(self):
        if self._monitor is None:
            from execution.position_monitor import PositionMonitor
            self._monitor = PositionMonitor(
                self.order_engine, self.lifecycle, self.registry, self.position_store, self.cfg.monitor)
        return self._monitor

    @property
    def reconciler(self):
        if self._reconciler is None:
            from execution.position_reconciler import PositionReconciler
            self._reconciler = PositionReconciler(
                self.registry, self.position_store, self.lifecycle, self.monitor,
                max_workers=self.cfg.scheduler.workers)
        return self._reconciler

    @property
    def risk_gate(self) -> IRiskPolicy:
        if self._risk_gate is None:
            from execution.risk_engine import RiskGate
            self._risk_gate = RiskGate(self.registry, self.position_store,
                                       self.cfg.risk, self.cfg.sizing)
        return self._risk_gate

    @property
    def execution_engine(self):
        if self._execution_engine is None:
            from execution.execution_engine import ExecutionEngine
            self._execution_engine = ExecutionEngine(
                self.risk_gate, self.order_engine, self.monitor,
                self.order_store, self.position_store)
        return self._execution_engine

    @property
    def scheduler(self):
        if self._scheduler is None:
            self._scheduler = self._build_scheduler()
        return self._scheduler

    def _build_scheduler(self):
        from scheduler import PeriodicScheduler
        from monitoring.execution_metrics import update_risk_gauges

        sc = self.cfg.scheduler
        sched = PeriodicScheduler(workers=sc.workers)

        def refresh_risk():
            self.risk_gate.refresh_risk_metrics()
            update_risk_gauges(self.risk_gate.get_risk_summary())

        if sc.reconcile_enabled:
            sched.add_job("reconcile_positions", sc.reconcile_interval_sec, self.reconciler.reconcile)
        if sc.risk_refresh_enabled:
            sched.add_job("refresh_risk_metrics", sc.risk_refresh_interval_sec, refresh_risk)
        sched.add_job("portfolio_resets", sc.reset_check_interval_sec, self.risk_gate.run_period_resets)
        return sched

    @property
    def metrics_server(self):
        if self._metrics_server is None and self.cfg.metrics.enabled:
            from monitoring.execution_metrics import MetricsServer
            self._metrics_server = MetricsServer(self.cfg.metrics.port, probe=self._health)
        return self._metrics_server

    def _health(self) -> dict:
        return {
            "reconciler_busy": self.reconciler.busy,
            "circuit_breaker": self.risk_gate.circuit_breaker_reason(),
            "jobs": {j.name: {"runs": j.runs, "failures": j.failures, "skipped": j.skipped}
                     for j in self.scheduler.jobs},
        }

    # ── Inject overrides (for testing) ───────────────────────────────────

    def override(self, **kwargs):
        """
        Override any service with a mock/stub.

        Example:
            container.override(registry=FakeRegistry())
        """
        for key, value in kwargs.items():
            attr = f"_{key}"
            if hasattr(self, attr):
                setattr(self, attr, value)
                logger.debug(f"ServiceContainer: overrode {key}")
            else:
                raise KeyError(f"Unknown service: {key}")

    def shutdown(self) -> None:
        if self._scheduler:
            self._scheduler.stop()
        if self._metrics_server:
            self._metrics_server.stop()
        if self._registry is not None and hasattr(self._registry, "close_all"):
            self._registry.close_all()
        logger.info("ServiceContainer shut down")


# ── Module-level singleton ───────────────────────────────────────────────────

_container: Optional[ServiceContainer] = None


def get_container(cfg: Optional[BotConfig] = None) -> ServiceContainer:
    """Get or create the global service container."""
    global _container
    if _container is None:
        _container = ServiceContainer(cfg)
    return _container
