"""
Redis-backed order/position stores.

Layout (prefix defaults to "trading"):
  {prefix}:order:{id}                 JSON order
  {prefix}:orders:symbol:{symbol}     set of order ids
  {prefix}:position:{id}              JSON position
  {prefix}:positions:status:{status}  set of position ids
"""
from __future__ import annotations

import json
from typing import List, Optional

import redis
from loguru import logger

from config import RedisConfig
from execution.models import Order, Position, PositionStatus


def get_redis_client(cfg: RedisConfig) -> redis.Redis:
    """Connect and ping; connection errors propagate to the caller."""
    client = redis.Redis(
        host=cfg.host, port=cfg.port, db=cfg.db,
        decode_responses=True, socket_connect_timeout=5,
    )
    client.ping()
    logger.info(f"Connected to Redis {cfg.host}:{cfg.port}/{cfg.db}")
    return client


class RedisOrderStore:
    """OrderStore persisted as JSON strings with a per-symbol index."""

    def __init__(self, client: redis.Redis, prefix: str = "trading"):
        self._r = client
        self._prefix = prefix

    def _key(self, order_id: str) -> str:
        return f"{self._prefix}:order:{order_id}"

    def _symbol_key(self, symbol: str) -> str:
        return f"{self._prefix}:orders:symbol:{symbol}"

    def save(self, order: Order) -> Order:
        pipe = self._r.pipeline(transaction=True)
        pipe.set(self._key(order.order_id), json.dumps(order.to_dict()))
        pipe.sadd(self._symbol_key(order.symbol), order.order_id)
        pipe.execute()
        return order

    def find_by_id(self, order_id: str) -> Optional[Order]:
        raw = self._r.get(self._key(order_id))
        return Order.from_dict(json.loads(raw)) if raw else None

    def find_by_symbol(self, symbol: str) -> List[Order]:
        orders = [self.find_by_id(oid) for oid in self._r.smembers(self._symbol_key(symbol))]
        return sorted((o for o in orders if o), key=lambda o: o.created_at)


class RedisPositionStore:
    """PositionStore persisted as JSON strings with a per-status index."""

    def __init__(self, client: redis.Redis, prefix: str = "trading"):
        self._r = client
        self._prefix = prefix

    def _key(self, position_id: str) -> str:
        return f"{self._prefix}:position:{position_id}"

    def _status_key(self, status: PositionStatus) -> str:
        return f"{self._prefix}:positions:status:{status.value}"

    def save(self, position: Position) -> Position:
        pipe = self._r.pipeline(transaction=True)
        pipe.set(self._key(position.position_id), json.dumps(position.to_dict()))
        for status in PositionStatus:
            if status is position.status:
                pipe.sadd(self._status_key(status), position.position_id)
            else:
                pipe.srem(self._status_key(status), position.position_id)
        pipe.execute()
        return position

    def find_by_id(self, position_id: str) -> Optional[Position]:
        raw = self._r.get(self._key(position_id))
        return Position.from_dict(json.loads(raw)) if raw else None

    def find_by_status(self, status: PositionStatus) -> List[Position]:
        found = [self.find_by_id(pid) for pid in self._r.smembers(self._status_key(status))]
        return sorted((p for p in found if p and p.status is status), key=lambda p: p.open_time)

    def find_by_symbol_and_status(self, symbol: str, status: PositionStatus) -> List[Position]:
        return [p for p in self.find_by_status(status) if p.symbol == symbol]
