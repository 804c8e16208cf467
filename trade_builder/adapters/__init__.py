"""
Trade Builder - Store Adapters.

============================================================
MODULES
============================================================
- base: OrderSource and TradeStore interfaces
- memory: In-memory store (tests, embedding, failure injection)

The SQLAlchemy store lives in trade_builder.repository.

============================================================
"""

from .base import OrderSource, TradeStore
from .memory import InMemoryStoreConfig, InMemoryTradeStore


__all__ = [
    "OrderSource",
    "TradeStore",
    "InMemoryStoreConfig",
    "InMemoryTradeStore",
]
