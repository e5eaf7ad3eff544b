"""
Typed configuration - single source of truth for all execution-core settings.

SRP: This module's sole responsibility is loading and validating configuration.
All env-var reads are consolidated here; no other module should call os.getenv().
Percentages are fractions throughout (0.05 == 5%).
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Tuple
from dotenv import load_dotenv

load_dotenv()


def _env(key: str, default: str) -> str:
    return os.getenv(key, default)


def _env_bool(key: str, default: str = "true") -> bool:
    return _env(key, default).lower() == "true"


def _env_int(key: str, default: str) -> int:
    return int(_env(key, default))


def _env_float(key: str, default: str) -> float:
    return float(_env(key, default))


def _env_decimal(key: str, default: str) -> Decimal:
    return Decimal(_env(key, default))


def _env_list(key: str, default: str) -> Tuple[str, ...]:
    return tuple(p.strip().upper() for p in _env(key, default).split(",") if p.strip())


# ── Risk Limits ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class RiskLimits:
    """Process-wide risk limits, read-only after load."""
    max_account_risk_pct: Decimal = _env_decimal("MAX_ACCOUNT_RISK_PCT", "0.02")
    max_single_coin_pct: Decimal = _env_decimal("MAX_SINGLE_COIN_PCT", "0.05")
    max_portfolio_deployed_pct: Decimal = _env_decimal("MAX_PORTFOLIO_DEPLOYED_PCT", "0.30")
    max_correlated_positions: int = _env_int("MAX_CORRELATED_POSITIONS", "3")
    correlation_threshold: float = _env_float("CORRELATION_THRESHOLD", "0.7")
    daily_loss_limit_pct: float = _env_float("DAILY_LOSS_LIMIT_PCT", "0.10")
    weekly_drawdown_limit_pct: float = _env_float("WEEKLY_DRAWDOWN_LIMIT_PCT", "0.20")


# ── Sizing / Stop Defaults ───────────────────────────────────────────────────

@dataclass(frozen=True)
class SizingConfig:
    """Stop/target defaults, volatility tiers and Kelly bounds."""
    default_stop_loss_pct: Decimal = _env_decimal("DEFAULT_STOP_LOSS_PCT", "0.02")
    default_take_profit_pct: Decimal = _env_decimal("DEFAULT_TAKE_PROFIT_PCT", "0.04")
    risk_reward_ratio: Decimal = _env_decimal("RISK_REWARD_RATIO", "2.0")
    high_vol_threshold: float = _env_float("HIGH_VOL_THRESHOLD", "0.02")
    medium_vol_threshold: float = _env_float("MEDIUM_VOL_THRESHOLD", "0.01")
    high_vol_multiplier: Decimal = _env_decimal("HIGH_VOL_MULTIPLIER", "1.5")
    medium_vol_multiplier: Decimal = _env_decimal("MEDIUM_VOL_MULTIPLIER", "1.0")
    low_vol_multiplier: Decimal = _env_decimal("LOW_VOL_MULTIPLIER", "0.75")
    correlation_lookback_days: int = _env_int("CORRELATION_LOOKBACK_DAYS", "30")
    min_correlation_samples: int = _env_int("MIN_CORRELATION_SAMPLES", "5")
    default_volatility: float = _env_float("DEFAULT_VOLATILITY", "0.02")
    default_win_rate: float = _env_float("DEFAULT_WIN_RATE", "0.55")
    kelly_min_fraction: float = _env_float("KELLY_MIN_FRACTION", "0.01")
    kelly_max_fraction: float = _env_float("KELLY_MAX_FRACTION", "0.25")


# ── Position Monitor ─────────────────────────────────────────────────────────

@dataclass(frozen=True)
class MonitorConfig:
    """Exit-rule parameters and close accounting constants."""
    secure_profit_trigger_pct: Decimal = _env_decimal("SECURE_PROFIT_TRIGGER_PCT", "0.30")
    secure_profit_lock_pct: Decimal = _env_decimal("SECURE_PROFIT_LOCK_PCT", "0.001")
    trailing_stop_pct: Decimal = _env_decimal("TRAILING_STOP_PCT", "0")
    fee_rate: Decimal = _env_decimal("FEE_RATE", "0.001")
    risk_free_rate: float = _env_float("RISK_FREE_RATE", "0.02")
    default_tick_size: Decimal = _env_decimal("DEFAULT_TICK_SIZE", "0.01")


# ── Order Placement ──────────────────────────────────────────────────────────

@dataclass(frozen=True)
class OrderConfig:
    """Order submission retry policy and history cache."""
    max_placement_retries: int = _env_int("MAX_ORDER_PLACEMENT_RETRIES", "3")
    retry_delay_sec: float = _env_float("ORDER_RETRY_DELAY_SEC", "2.0")
    history_size: int = _env_int("ORDER_HISTORY_SIZE", "100")
    default_time_in_force: str = _env("DEFAULT_TIME_IN_FORCE", "GTC")


# ── HTTP / Exchange transport ────────────────────────────────────────────────

@dataclass(frozen=True)
class HttpConfig:
    """Timeouts, GET retry backoff and server-time sync."""
    timeout_sec: float = _env_float("HTTP_TIMEOUT_SEC", "10.0")
    get_retries: int = _env_int("HTTP_GET_RETRIES", "3")
    backoff_base_sec: float = _env_float("HTTP_BACKOFF_BASE_SEC", "0.5")
    backoff_cap_sec: float = _env_float("HTTP_BACKOFF_CAP_SEC", "4.0")
    recv_window_ms: int = _env_int("RECV_WINDOW_MS", "5000")
    server_time_ttl_sec: float = _env_float("SERVER_TIME_TTL_SEC", "300")
    instrument_cache_ttl_sec: float = _env_float("INSTRUMENT_CACHE_TTL_SEC", "86400")


# ── Scheduler ────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class SchedulerConfig:
    """Periodic job intervals."""
    reconcile_interval_sec: float = _env_float("RECONCILE_INTERVAL_SEC", "60")
    risk_refresh_interval_sec: float = _env_float("RISK_REFRESH_INTERVAL_SEC", "3600")
    reset_check_interval_sec: float = _env_float("RESET_CHECK_INTERVAL_SEC", "60")
    workers: int = _env_int("SCHEDULER_WORKERS", "4")
    reconcile_enabled: bool = _env_bool("RECONCILE_ENABLED", "true")
    risk_refresh_enabled: bool = _env_bool("RISK_REFRESH_ENABLED", "true")


# ── Exchange Credentials ─────────────────────────────────────────────────────

@dataclass(frozen=True)
class BybitCreds:
    """Bybit v5 API credentials (read-only from env)."""
    api_key: str = _env("BYBIT_API_KEY", "")
    api_secret: str = _env("BYBIT_API_SECRET", "")
    base_url: str = _env("BYBIT_BASE_URL", "https://api.bybit.com")
    market_types: Tuple[str, ...] = _env_list("BYBIT_MARKET_TYPES", "LINEAR")


@dataclass(frozen=True)
class MexcCreds:
    """MEXC spot V3 + contract V1 credentials (read-only from env)."""
    api_key: str = _env("MEXC_API_KEY", "")
    api_secret: str = _env("MEXC_API_SECRET", "")
    spot_base_url: str = _env("MEXC_SPOT_BASE_URL", "https://api.mexc.com")
    contract_base_url: str = _env("MEXC_CONTRACT_BASE_URL", "https://contract.mexc.com")
    market_types: Tuple[str, ...] = _env_list("MEXC_MARKET_TYPES", "LINEAR")


@dataclass(frozen=True)
class ExchangesConfig:
    """Which venues are connected, plus their credentials."""
    enabled: Tuple[str, ...] = _env_list("EXCHANGES", "BYBIT,MEXC")
    bybit: BybitCreds = field(default_factory=BybitCreds)
    mexc: MexcCreds = field(default_factory=MexcCreds)


# ── Storage / Redis / Metrics ────────────────────────────────────────────────

@dataclass(frozen=True)
class RedisConfig:
    """Redis connection settings."""
    host: str = _env("REDIS_HOST", "localhost")
    port: int = _env_int("REDIS_PORT", "6379")
    db: int = _env_int("REDIS_DB", "2")
    key_prefix: str = _env("REDIS_KEY_PREFIX", "trading")


@dataclass(frozen=True)
class StoreConfig:
    """Persistence backend: "memory" or "redis"."""
    backend: str = _env("STORE_BACKEND", "memory").lower()


@dataclass(frozen=True)
class MetricsConfig:
    """Prometheus endpoint settings."""
    enabled: bool = _env_bool("METRICS_ENABLED", "true")
    port: int = _env_int("METRICS_PORT", "8000")


# ── Top-level aggregate ─────────────────────────────────────────────────────

@dataclass(frozen=True)
class BotConfig:
    """
    Root configuration object - compose all sub-configs.

    Usage:
        cfg = BotConfig()              # loads from env
        print(cfg.risk.max_single_coin_pct)
        print(cfg.scheduler.reconcile_interval_sec)
    """
    risk: RiskLimits = field(default_factory=RiskLimits)
    sizing: SizingConfig = field(default_factory=SizingConfig)
    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    orders: OrderConfig = field(default_factory=OrderConfig)
    http: HttpConfig = field(default_factory=HttpConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    exchanges: ExchangesConfig = field(default_factory=ExchangesConfig)
    redis: RedisConfig = field(default_factory=RedisConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    metrics: MetricsConfig = field(default_factory=MetricsConfig)
    log_level: str = _env("LOG_LEVEL", "INFO").upper()


# Module-level singleton (immutable, safe to share)
_cfg: BotConfig | None = None


def get_config() -> BotConfig:
    """Get the global immutable config. Created once, never mutated."""
    global _cfg
    if _cfg is None:
        _cfg = BotConfig()
    return _cfg
