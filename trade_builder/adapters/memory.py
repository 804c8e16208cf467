"""
Trade Builder - In-Memory Store.

============================================================
PURPOSE
============================================================
Store adapter kept in process memory.

FEATURES:
- Same contract as the SQL repository
- Configurable write latency
- Configurable failure injection per group
- Write counters for assertions

============================================================
"""

import asyncio
import copy
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Set

from ..types import AtomicityError, GroupKey, Order, Trade, TradeStatus
from .base import TradeStore


logger = logging.getLogger(__name__)


# ============================================================
# STORE CONFIGURATION
# ============================================================

@dataclass
class InMemoryStoreConfig:
    """Configuration for the in-memory store."""

    write_latency_ms: float = 0.0
    """Simulated latency of a group write."""

    fail_groups: Set[GroupKey] = field(default_factory=set)
    """Groups whose writes fail after partially applying."""

    fail_clear: bool = False
    """Whether clear_user_trades fails."""


# ============================================================
# IN-MEMORY STORE
# ============================================================

class InMemoryTradeStore(TradeStore):
    """
    Trade store backed by dictionaries.

    Writes are applied to a copy and swapped in, so an injected
    failure leaves the previous state untouched.
    """

    def __init__(self, config: Optional[InMemoryStoreConfig] = None):
        self._config = config or InMemoryStoreConfig()
        self._orders: Dict[str, Dict[str, Order]] = {}
        self._trades: Dict[str, Dict[str, Trade]] = {}
        self._stats = {
            "group_writes": 0,
            "failed_writes": 0,
            "clears": 0,
        }

    @property
    def config(self) -> InMemoryStoreConfig:
        return self._config

    @property
    def stats(self) -> Dict[str, int]:
        return dict(self._stats)

    # --------------------------------------------------------
    # INGESTION
    # --------------------------------------------------------

    def add_orders(self, orders: Iterable[Order]) -> None:
        """Record orders (ingestion side, outside the rebuild contract)."""
        for order in orders:
            self._orders.setdefault(order.user_id, {})[order.id] = order

    def get_order(self, user_id: str, order_id: str) -> Optional[Order]:
        return self._orders.get(user_id, {}).get(order_id)

    # --------------------------------------------------------
    # ORDER SOURCE
    # --------------------------------------------------------

    async def fetch_user_ids(self) -> List[str]:
        return sorted(u for u, orders in self._orders.items() if orders)

    async def fetch_unconsumed_orders(self, user_id: str) -> List[Order]:
        return [o for o in self._orders.get(user_id, {}).values() if not o.used_in_trade]

    async def fetch_all_orders(self, user_id: str) -> List[Order]:
        return list(self._orders.get(user_id, {}).values())

    async def fetch_orders_by_ids(
        self,
        user_id: str,
        order_ids: Iterable[str],
    ) -> List[Order]:
        orders = self._orders.get(user_id, {})
        return [orders[order_id] for order_id in order_ids if order_id in orders]

    # --------------------------------------------------------
    # TRADE STORE
    # --------------------------------------------------------

    async def fetch_trades(self, user_id: str) -> List[Trade]:
        return list(self._trades.get(user_id, {}).values())

    async def fetch_open_trades(self, user_id: str) -> List[Trade]:
        return [
            t for t in self._trades.get(user_id, {}).values()
            if t.status == TradeStatus.OPEN
        ]

    async def clear_user_trades(self, user_id: str) -> int:
        if self._config.fail_clear:
            raise AtomicityError(f"Injected failure clearing trades of {user_id}")

        deleted = len(self._trades.pop(user_id, {}))
        orders = self._orders.get(user_id, {})
        for order_id, order in orders.items():
            if order.used_in_trade or order.trade_id is not None:
                orders[order_id] = order.tagged(None)

        self._stats["clears"] += 1
        return deleted

    async def replace_group_trades(
        self,
        user_id: str,
        group: GroupKey,
        trades: Sequence[Trade],
        replaced_trade_ids: Sequence[str],
        order_tags: Dict[str, str],
    ) -> None:
        if self._config.write_latency_ms > 0:
            await asyncio.sleep(self._config.write_latency_ms / 1000)

        staged_trades = copy.copy(self._trades.get(user_id, {}))
        staged_orders = copy.copy(self._orders.get(user_id, {}))

        try:
            for trade_id in replaced_trade_ids:
                staged_trades.pop(trade_id, None)

            for trade in trades:
                if trade.group_key != group:
                    raise ValueError(f"Trade {trade.id} does not belong to {group}")
                staged_trades[trade.id] = trade

            if group in self._config.fail_groups:
                raise RuntimeError(f"Injected write failure for {group}")

            for order_id, trade_id in order_tags.items():
                if order_id not in staged_orders:
                    raise KeyError(f"Unknown order {order_id}")
                staged_orders[order_id] = staged_orders[order_id].tagged(trade_id)

        except (ValueError, KeyError, RuntimeError) as e:
            self._stats["failed_writes"] += 1
            logger.error(f"Group write for {group} rolled back: {e}")
            raise AtomicityError(f"Write for {group} rolled back: {e}", group=group) from e

        self._trades[user_id] = staged_trades
        self._orders[user_id] = staged_orders
        self._stats["group_writes"] += 1
