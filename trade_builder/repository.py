"""
Trade Builder - Repository.

============================================================
PURPOSE
============================================================
SQL trade store on the async SQLAlchemy ORM.

RESPONSIBILITIES:
- Load orders (unconsumed, all, by id)
- Load trades with their allocations
- Clear a user's trades and tags
- Swap in one group's trades atomically

CRITICAL REQUIREMENTS:
- One session per operation
- Every write inside a single transaction
- Database errors surface as AtomicityError (writes)
  or StoreError (reads), never half-applied

============================================================
"""

import logging
from typing import Dict, Iterable, List, NoReturn, Optional, Sequence

from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlalchemy.orm import selectinload

from .adapters.base import TradeStore
from .clock import to_naive_utc
from .models import OrderModel, TradeAllocationModel, TradeModel
from .types import (
    AllocationRole,
    AssetClass,
    AtomicityError,
    GroupKey,
    HoldingPeriodClass,
    MarketSession,
    Order,
    OrderAllocation,
    OrderSide,
    OrderStatus,
    StoreError,
    Trade,
    TradeSide,
    TradeStatus,
)


# ============================================================
# MODEL CONVERSION
# ============================================================

def order_to_model(order: Order) -> OrderModel:
    """Build an ORM row for an order."""
    return OrderModel(
        id=order.id,
        user_id=order.user_id,
        account_id=order.account_id,
        symbol=order.symbol,
        side=order.side.value,
        quantity=order.quantity,
        price=order.price,
        executed_at=to_naive_utc(order.executed_at),
        asset_class=order.asset_class.value,
        status=order.status.value,
        sequence=order.sequence,
        commission=order.commission,
        fees=order.fees,
        used_in_trade=order.used_in_trade,
        trade_id=order.trade_id,
    )


def order_from_model(model: OrderModel) -> Order:
    """Domain order from an ORM row."""
    return Order(
        id=model.id,
        user_id=model.user_id,
        account_id=model.account_id,
        symbol=model.symbol,
        side=OrderSide(model.side),
        quantity=model.quantity,
        price=model.price,
        executed_at=model.executed_at,
        asset_class=AssetClass(model.asset_class),
        commission=model.commission,
        fees=model.fees,
        sequence=model.sequence,
        status=OrderStatus(model.status),
        used_in_trade=model.used_in_trade,
        trade_id=model.trade_id,
    )


def trade_to_model(trade: Trade) -> TradeModel:
    """Build ORM rows for a trade and its allocations."""
    model = TradeModel(
        id=trade.id,
        user_id=trade.user_id,
        account_id=trade.account_id,
        symbol=trade.symbol,
        asset_class=trade.asset_class.value,
        side=trade.side.value,
        status=trade.status.value,
        open_quantity=trade.open_quantity,
        close_quantity=trade.close_quantity,
        avg_entry_price=trade.avg_entry_price,
        avg_exit_price=trade.avg_exit_price,
        cost_basis=trade.cost_basis,
        proceeds=trade.proceeds,
        realized_pnl=trade.realized_pnl,
        commissions_total=trade.commissions_total,
        fees_total=trade.fees_total,
        executions_count=trade.executions_count,
        entry_at=to_naive_utc(trade.entry_at),
        exit_at=to_naive_utc(trade.exit_at),
        time_in_trade_seconds=trade.time_in_trade_seconds,
        holding_period_class=trade.holding_period_class.value,
        market_session=trade.market_session.value,
        orders_in_trade=list(trade.orders_in_trade),
    )
    model.allocations = [
        TradeAllocationModel(
            order_id=a.order_id,
            leg_index=a.leg_index,
            side=a.side.value,
            role=a.role.value,
            quantity=a.quantity,
            order_quantity=a.order_quantity,
            price=a.price,
            executed_at=to_naive_utc(a.executed_at),
        )
        for a in trade.allocations
    ]
    return model


def trade_from_model(model: TradeModel) -> Trade:
    """Domain trade from ORM rows. Allocations must be loaded."""
    allocations = tuple(
        OrderAllocation(
            trade_id=model.id,
            order_id=a.order_id,
            leg_index=a.leg_index,
            side=OrderSide(a.side),
            role=AllocationRole(a.role),
            quantity=a.quantity,
            order_quantity=a.order_quantity,
            price=a.price,
            executed_at=a.executed_at,
        )
        for a in sorted(model.allocations, key=lambda a: a.leg_index)
    )
    return Trade(
        id=model.id,
        user_id=model.user_id,
        account_id=model.account_id,
        symbol=model.symbol,
        side=TradeSide(model.side),
        status=TradeStatus(model.status),
        open_quantity=model.open_quantity,
        close_quantity=model.close_quantity,
        avg_entry_price=model.avg_entry_price,
        avg_exit_price=model.avg_exit_price,
        realized_pnl=model.realized_pnl,
        commissions_total=model.commissions_total,
        fees_total=model.fees_total,
        executions_count=model.executions_count,
        entry_at=model.entry_at,
        exit_at=model.exit_at,
        holding_period_class=HoldingPeriodClass(model.holding_period_class),
        market_session=MarketSession(model.market_session),
        orders_in_trade=tuple(model.orders_in_trade or ()),
        allocations=allocations,
        asset_class=AssetClass(model.asset_class),
        cost_basis=model.cost_basis,
        proceeds=model.proceeds,
        time_in_trade_seconds=model.time_in_trade_seconds,
    )


# ============================================================
# TRADE REPOSITORY
# ============================================================

class TradeRepository(TradeStore):
    """
    Trade store backed by a SQL database.

    Datetimes are stored as naive UTC and returned naive.
    """

    def __init__(self, session_factory: async_sessionmaker):
        """
        Initialize repository.

        Args:
            session_factory: Async session factory
        """
        self._session_factory = session_factory
        self._logger = logging.getLogger("repository.TradeRepository")

    # --------------------------------------------------------
    # ERROR HANDLING
    # --------------------------------------------------------

    def _handle_db_error(
        self,
        error: Exception,
        operation: str,
        group: Optional[GroupKey] = None,
        write: bool = False,
    ) -> NoReturn:
        """
        Wrap a database error.

        Raises:
            AtomicityError: For writes
            StoreError: For reads
        """
        self._logger.error(f"Database error in {operation}: {error}", exc_info=True)

        if write:
            raise AtomicityError(
                f"{operation} rolled back: {error}",
                group=group,
            ) from error
        raise StoreError(f"{operation} failed: {error}", operation=operation) from error

    # --------------------------------------------------------
    # ORDER INGESTION
    # --------------------------------------------------------

    async def add_orders(self, orders: Iterable[Order]) -> int:
        """
        Insert or update orders.

        Returns:
            Number of orders written
        """
        count = 0
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    for order in orders:
                        await session.merge(order_to_model(order))
                        count += 1
        except SQLAlchemyError as e:
            self._handle_db_error(e, "add_orders", write=True)

        self._logger.info(f"Stored {count} orders")
        return count

    # --------------------------------------------------------
    # ORDER SOURCE
    # --------------------------------------------------------

    async def fetch_user_ids(self) -> List[str]:
        stmt = select(OrderModel.user_id).distinct().order_by(OrderModel.user_id)
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            self._handle_db_error(e, "fetch_user_ids")

    async def fetch_unconsumed_orders(self, user_id: str) -> List[Order]:
        stmt = select(OrderModel).where(
            OrderModel.user_id == user_id,
            OrderModel.used_in_trade.is_(False),
        )
        return await self._fetch_orders(stmt, "fetch_unconsumed_orders")

    async def fetch_all_orders(self, user_id: str) -> List[Order]:
        stmt = select(OrderModel).where(OrderModel.user_id == user_id)
        return await self._fetch_orders(stmt, "fetch_all_orders")

    async def fetch_orders_by_ids(
        self,
        user_id: str,
        order_ids: Iterable[str],
    ) -> List[Order]:
        ids = list(order_ids)
        if not ids:
            return []
        stmt = select(OrderModel).where(
            OrderModel.user_id == user_id,
            OrderModel.id.in_(ids),
        )
        return await self._fetch_orders(stmt, "fetch_orders_by_ids")

    async def _fetch_orders(self, stmt, operation: str) -> List[Order]:
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                return [order_from_model(m) for m in result.scalars().all()]
        except SQLAlchemyError as e:
            self._handle_db_error(e, operation)

    # --------------------------------------------------------
    # TRADES
    # --------------------------------------------------------

    async def fetch_trades(self, user_id: str) -> List[Trade]:
        stmt = (
            select(TradeModel)
            .options(selectinload(TradeModel.allocations))
            .where(TradeModel.user_id == user_id)
            .order_by(TradeModel.account_id, TradeModel.symbol, TradeModel.entry_at)
        )
        return await self._fetch_trades(stmt, "fetch_trades")

    async def fetch_open_trades(self, user_id: str) -> List[Trade]:
        stmt = (
            select(TradeModel)
            .options(selectinload(TradeModel.allocations))
            .where(
                TradeModel.user_id == user_id,
                TradeModel.status == TradeStatus.OPEN.value,
            )
        )
        return await self._fetch_trades(stmt, "fetch_open_trades")

    async def _fetch_trades(self, stmt, operation: str) -> List[Trade]:
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                return [trade_from_model(m) for m in result.scalars().all()]
        except SQLAlchemyError as e:
            self._handle_db_error(e, operation)

    async def clear_user_trades(self, user_id: str) -> int:
        trade_ids = select(TradeModel.id).where(TradeModel.user_id == user_id)
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    await session.execute(
                        delete(TradeAllocationModel).where(
                            TradeAllocationModel.trade_id.in_(trade_ids)
                        )
                        .execution_options(synchronize_session=False)
                    )
                    result = await session.execute(
                        delete(TradeModel)
                        .where(TradeModel.user_id == user_id)
                        .execution_options(synchronize_session=False)
                    )
                    await session.execute(
                        update(OrderModel)
                        .where(OrderModel.user_id == user_id)
                        .values(used_in_trade=False, trade_id=None)
                        .execution_options(synchronize_session=False)
                    )
                    deleted = result.rowcount
        except SQLAlchemyError as e:
            self._handle_db_error(e, "clear_user_trades", write=True)

        self._logger.info(f"Cleared {deleted} trades for user {user_id}")
        return deleted

    async def replace_group_trades(
        self,
        user_id: str,
        group: GroupKey,
        trades: Sequence[Trade],
        replaced_trade_ids: Sequence[str],
        order_tags: Dict[str, str],
    ) -> None:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    if replaced_trade_ids:
                        await session.execute(
                            delete(TradeAllocationModel).where(
                                TradeAllocationModel.trade_id.in_(list(replaced_trade_ids))
                            )
                            .execution_options(synchronize_session=False)
                        )
                        await session.execute(
                            delete(TradeModel).where(
                                TradeModel.user_id == user_id,
                                TradeModel.id.in_(list(replaced_trade_ids)),
                            )
                            .execution_options(synchronize_session=False)
                        )

                    for trade in trades:
                        if trade.group_key != group:
                            raise AtomicityError(
                                f"Trade {trade.id} does not belong to {group}",
                                group=group,
                            )
                        session.add(trade_to_model(trade))

                    for order_id, trade_id in order_tags.items():
                        result = await session.execute(
                            update(OrderModel)
                            .where(
                                OrderModel.user_id == user_id,
                                OrderModel.id == order_id,
                            )
                            .values(used_in_trade=True, trade_id=trade_id)
                            .execution_options(synchronize_session=False)
                        )
                        if result.rowcount != 1:
                            raise AtomicityError(
                                f"{group}: order {order_id} not found while tagging",
                                group=group,
                            )

        except AtomicityError as e:
            self._logger.error(f"Group write for {group} rolled back: {e}")
            raise
        except SQLAlchemyError as e:
            self._handle_db_error(e, f"replace_group_trades({group})", group=group, write=True)

        self._logger.debug(f"{group}: stored {len(trades)} trades")
