"""
Trade Builder - Store Adapter Base.

============================================================
PURPOSE
============================================================
Abstract interface for order sources and trade stores.

DESIGN PRINCIPLES:
- Storage-agnostic interface
- Clean separation from matching logic
- Fully testable with the in-memory store

CONTRACT:
- replace_group_trades is atomic: everything or nothing
- Failures surface as AtomicityError

============================================================
"""

from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Sequence

from ..types import GroupKey, Order, Trade


# ============================================================
# ORDER SOURCE
# ============================================================

class OrderSource(ABC):
    """
    Supplies a user's executions.

    Ordering of returned orders is not required; the
    sequencer imposes it.
    """

    @abstractmethod
    async def fetch_user_ids(self) -> List[str]:
        """Users that have orders, sorted."""
        pass

    @abstractmethod
    async def fetch_unconsumed_orders(self, user_id: str) -> List[Order]:
        """Orders not yet used in any trade."""
        pass

    @abstractmethod
    async def fetch_all_orders(self, user_id: str) -> List[Order]:
        """Every order of the user."""
        pass

    @abstractmethod
    async def fetch_orders_by_ids(
        self,
        user_id: str,
        order_ids: Iterable[str],
    ) -> List[Order]:
        """Orders by id. Unknown ids are omitted."""
        pass


# ============================================================
# TRADE STORE
# ============================================================

class TradeStore(OrderSource):
    """
    Stores orders, trades and order-to-trade tags.
    """

    @abstractmethod
    async def fetch_trades(self, user_id: str) -> List[Trade]:
        """Every trade of the user."""
        pass

    @abstractmethod
    async def fetch_open_trades(self, user_id: str) -> List[Trade]:
        """Trades still open."""
        pass

    @abstractmethod
    async def clear_user_trades(self, user_id: str) -> int:
        """
        Delete every trade of the user and clear all order tags.

        Returns:
            Number of trades deleted
        """
        pass

    @abstractmethod
    async def replace_group_trades(
        self,
        user_id: str,
        group: GroupKey,
        trades: Sequence[Trade],
        replaced_trade_ids: Sequence[str],
        order_tags: Dict[str, str],
    ) -> None:
        """
        Atomically swap in the trades of one group.

        Deletes `replaced_trade_ids`, inserts `trades` with their
        allocations and tags each order in `order_tags` with its
        trade id.

        Raises:
            AtomicityError: If anything fails. Nothing is written.
        """
        pass
