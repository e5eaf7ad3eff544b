"""
Exchange adapters - one signed-request client per venue.

  base.py            - shared transport, retry/backoff, server-time sync
  bybit/adapter.py   - Bybit v5
  mexc/adapter.py    - MEXC spot V3 + contract V1
  registry.py        - adapter lookup keyed by exchange id
"""
