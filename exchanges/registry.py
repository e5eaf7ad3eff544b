"""
ExchangeRegistry - resolves an exchange id ("BYBIT", "MEXC") to its adapter.

OCP: adding a venue means one new entry in _FACTORIES; callers only ever ask
the registry, never branch on exchange names themselves.
"""
from __future__ import annotations

from typing import Callable, Dict, Iterator, List, Optional, Sequence, Tuple
from loguru import logger

from config import BotConfig
from execution.errors import ValidationError
from execution.models import MarketType
from interfaces import IExchangeAdapter


def _bybit(cfg: BotConfig) -> Tuple[IExchangeAdapter, Tuple[str, ...]]:
    from exchanges.bybit.adapter import BybitAdapter
    return BybitAdapter.from_config(cfg), cfg.exchanges.bybit.market_types


def _mexc(cfg: BotConfig) -> Tuple[IExchangeAdapter, Tuple[str, ...]]:
    from exchanges.mexc.adapter import MexcAdapter
    return MexcAdapter.from_config(cfg), cfg.exchanges.mexc.market_types


_FACTORIES: Dict[str, Callable[[BotConfig], Tuple[IExchangeAdapter, Tuple[str, ...]]]] = {
    "BYBIT": _bybit,
    "MEXC": _mexc,
}


class ExchangeRegistry:
    """Adapter lookup plus the market types reconciled on each venue."""

    def __init__(self):
        self._adapters: Dict[str, IExchangeAdapter] = {}
        self._market_types: Dict[str, Tuple[MarketType, ...]] = {}

    def register(self, adapter: IExchangeAdapter,
                 market_types: Sequence[MarketType] = (MarketType.LINEAR,)) -> None:
        name = adapter.name.upper()
        self._adapters[name] = adapter
        self._market_types[name] = tuple(market_types)
        logger.info(f"Registered exchange {name} ({', '.join(m.value for m in market_types)})")

    def get(self, exchange: str) -> IExchangeAdapter:
        adapter = self._adapters.get(exchange.upper())
        if adapter is None:
            raise ValidationError(f"Unknown exchange: {exchange}")
        return adapter

    def market_types(self, exchange: str) -> Tuple[MarketType, ...]:
        return self._market_types.get(exchange.upper(), ())

    def names(self) -> List[str]:
        return list(self._adapters)

    def __iter__(self) -> Iterator[IExchangeAdapter]:
        return iter(list(self._adapters.values()))

    def __contains__(self, exchange: str) -> bool:
        return exchange.upper() in self._adapters

    def close_all(self) -> None:
        for adapter in self:
            adapter.close()


def build_registry(cfg: BotConfig, names: Optional[Sequence[str]] = None) -> ExchangeRegistry:
    """Construct adapters for every enabled exchange."""
    registry = ExchangeRegistry()
    for name in names or cfg.exchanges.enabled:
        factory = _FACTORIES.get(name.upper())
        if factory is None:
            raise ValidationError(f"No adapter for exchange '{name}'")
        adapter, market_types = factory(cfg)
        registry.register(adapter, [MarketType[m] for m in market_types])
    return registry
