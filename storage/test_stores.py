"""Order/position stores: copy semantics, status index, Redis JSON layout."""
import json
from collections import defaultdict
from decimal import Decimal

import pytest

from execution.models import (
    CloseReason, MarketType, Order, OrderSide, OrderStatus, OrderType, Position, PositionSide,
    PositionStatus,
)
from storage.locks import KeyedLocks
from storage.memory_store import InMemoryOrderStore, InMemoryPositionStore
from storage.redis_store import RedisOrderStore, RedisPositionStore


class _Pipeline:
    def __init__(self, client):
        self._client = client
        self._ops = []

    def __getattr__(self, name):
        def queue(*args):
            self._ops.append((name, args))
        return queue

    def execute(self):
        return [getattr(self._client, name)(*args) for name, args in self._ops]


class DictRedis:
    """The handful of redis.Redis calls the stores make, backed by dicts."""

    def __init__(self):
        self.strings = {}
        self.sets = defaultdict(set)

    def get(self, key):
        return self.strings.get(key)

    def set(self, key, value):
        self.strings[key] = value

    def sadd(self, key, member):
        self.sets[key].add(member)

    def srem(self, key, member):
        self.sets[key].discard(member)

    def smembers(self, key):
        return set(self.sets.get(key, ()))

    def pipeline(self, transaction=True):
        return _Pipeline(self)


def _position(symbol="BTCUSDT", qty="1"):
    return Position(symbol=symbol, exchange="BYBIT", market_type=MarketType.LINEAR,
                    side=PositionSide.LONG, quantity=Decimal(qty), entry_price=Decimal("100"),
                    stop_loss_price=Decimal("95"))


def _order(order_id="1", status=OrderStatus.FILLED):
    return Order(order_id=order_id, symbol="BTCUSDT", exchange="BYBIT", side=OrderSide.BUY,
                 order_type=OrderType.MARKET, quantity=Decimal("2"), executed_qty=Decimal("2"),
                 avg_fill_price=Decimal("100.5"), status=status, metadata={"stop_loss": "95"})


@pytest.fixture(params=["memory", "redis"])
def stores(request):
    if request.param == "memory":
        return InMemoryOrderStore(), InMemoryPositionStore()
    client = DictRedis()
    return RedisOrderStore(client, prefix="t"), RedisPositionStore(client, prefix="t")


def test_order_save_and_find(stores):
    orders, _ = stores
    orders.save(_order("1"))
    orders.save(_order("2", status=OrderStatus.NEW))

    found = orders.find_by_id("1")

    assert found.avg_fill_price == Decimal("100.5")
    assert found.status is OrderStatus.FILLED
    assert found.metadata == {"stop_loss": "95"}
    assert {o.order_id for o in orders.find_by_symbol("BTCUSDT")} == {"1", "2"}
    assert orders.find_by_id("missing") is None
    assert orders.find_by_symbol("ETHUSDT") == []


def test_position_status_index_follows_transitions(stores):
    _, positions = stores
    pos = _position()
    positions.save(pos)
    assert [p.position_id for p in positions.find_by_status(PositionStatus.OPEN)] == [pos.position_id]

    pos.close(CloseReason.MANUAL, Decimal("3"), Decimal("103"))
    positions.save(pos)

    assert positions.find_by_status(PositionStatus.OPEN) == []
    [closed] = positions.find_by_symbol_and_status("BTCUSDT", PositionStatus.CLOSED)
    assert closed.realized_pnl == Decimal("3")
    assert closed.close_reason is CloseReason.MANUAL
    assert closed.stop_loss_price == Decimal("95")


def test_returned_positions_are_detached_copies(stores):
    _, positions = stores
    pos = _position()
    positions.save(pos)

    loaded = positions.find_by_id(pos.position_id)
    loaded.quantity = Decimal("99")

    assert positions.find_by_id(pos.position_id).quantity == Decimal("1")


def test_redis_layout(stores):
    orders, positions = stores
    if not isinstance(orders, RedisOrderStore):
        pytest.skip("redis layout only")
    pos = _position()
    orders.save(_order("7"))
    positions.save(pos)

    client = orders._r
    assert json.loads(client.strings["t:order:7"])["status"] == "filled"
    assert client.sets["t:orders:symbol:BTCUSDT"] == {"7"}
    assert client.sets["t:positions:status:open"] == {pos.position_id}
    assert json.loads(client.strings[f"t:position:{pos.position_id}"])["entry_price"] == "100"


def test_keyed_locks_are_per_key_and_reentrant():
    locks = KeyedLocks()
    a = ("BYBIT", MarketType.LINEAR, "BTCUSDT", PositionSide.LONG)

    with locks.hold(a):
        with locks.hold(a):
            pass

    assert locks.lock_for(a) is locks.lock_for(a)
    assert locks.lock_for(a) is not locks.lock_for(a[:3] + (PositionSide.SHORT,))
    assert len(locks) == 2
