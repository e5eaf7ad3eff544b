"""
Persistence - order/position stores behind IOrderStore / IPositionStore.

  memory_store.py  - in-process dict stores
  redis_store.py   - Redis JSON stores
  locks.py         - per-key lock table
"""
