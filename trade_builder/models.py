"""
Trade Builder - ORM Models.

============================================================
PURPOSE
============================================================
SQLAlchemy ORM models for order and trade persistence.

TABLES:
- tb_orders: Broker-reported executions and their trade tags
- tb_trades: Reconstructed trades
- tb_trade_allocations: Order legs attributed to each trade

AUDIT REQUIREMENTS:
- Orders are never deleted by a rebuild
- Trades are replaced, never edited in place
- Every order share in a trade has an allocation row

============================================================
"""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from .clock import utc_now


# ============================================================
# BASE
# ============================================================

class Base(DeclarativeBase):
    """Base class for trade builder ORM models."""
    pass


# ============================================================
# ORDER MODEL
# ============================================================

class OrderModel(Base):
    """
    Persisted broker execution.

    Only `used_in_trade` and `trade_id` change after ingestion.
    """

    __tablename__ = "tb_orders"

    # Identifiers
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False)
    symbol: Mapped[str] = mapped_column(String(32), nullable=False)

    # Execution
    side: Mapped[str] = mapped_column(String(8), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(Numeric(24, 8), nullable=False)
    price: Mapped[Optional[Decimal]] = mapped_column(Numeric(24, 8))
    executed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, index=True)
    asset_class: Mapped[str] = mapped_column(String(16), default="EQUITY")
    status: Mapped[str] = mapped_column(String(16), default="FILLED")
    sequence: Mapped[int] = mapped_column(Integer, default=0)

    # Charges
    commission: Mapped[Decimal] = mapped_column(Numeric(24, 8), default=Decimal("0"))
    fees: Mapped[Decimal] = mapped_column(Numeric(24, 8), default=Decimal("0"))

    # Trade tag
    used_in_trade: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    trade_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)

    # Timestamps
    recorded_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)

    __table_args__ = (
        Index("ix_tb_orders_user_account_symbol", "user_id", "account_id", "symbol"),
    )

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "account_id": self.account_id,
            "symbol": self.symbol,
            "side": self.side,
            "quantity": str(self.quantity),
            "price": str(self.price) if self.price is not None else None,
            "executed_at": self.executed_at.isoformat() if self.executed_at else None,
            "status": self.status,
            "commission": str(self.commission),
            "fees": str(self.fees),
            "used_in_trade": self.used_in_trade,
            "trade_id": self.trade_id,
        }


# ============================================================
# TRADE MODEL
# ============================================================

class TradeModel(Base):
    """
    Reconstructed trade.

    Deleted and re-inserted on rebuild, keyed by a deterministic id.
    """

    __tablename__ = "tb_trades"

    # Identifiers
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False)
    symbol: Mapped[str] = mapped_column(String(32), nullable=False)
    asset_class: Mapped[str] = mapped_column(String(16), default="EQUITY")

    # State
    side: Mapped[str] = mapped_column(String(8), nullable=False)
    status: Mapped[str] = mapped_column(String(8), nullable=False, index=True)

    # Quantities and prices
    open_quantity: Mapped[Decimal] = mapped_column(Numeric(24, 8), nullable=False)
    close_quantity: Mapped[Decimal] = mapped_column(Numeric(24, 8), nullable=False)
    avg_entry_price: Mapped[Decimal] = mapped_column(Numeric(24, 8), nullable=False)
    avg_exit_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(24, 8))
    cost_basis: Mapped[Decimal] = mapped_column(Numeric(24, 8), default=Decimal("0"))
    proceeds: Mapped[Optional[Decimal]] = mapped_column(Numeric(24, 8))

    # P&L and charges
    realized_pnl: Mapped[Decimal] = mapped_column(Numeric(24, 8), nullable=False)
    commissions_total: Mapped[Decimal] = mapped_column(Numeric(24, 8), default=Decimal("0"))
    fees_total: Mapped[Decimal] = mapped_column(Numeric(24, 8), default=Decimal("0"))
    executions_count: Mapped[int] = mapped_column(Integer, default=0)

    # Timing
    entry_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    exit_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    time_in_trade_seconds: Mapped[Optional[int]] = mapped_column(Integer)
    holding_period_class: Mapped[str] = mapped_column(String(16), nullable=False)
    market_session: Mapped[str] = mapped_column(String(16), nullable=False)

    # Contributing orders, first-touch order
    orders_in_trade: Mapped[list] = mapped_column(JSON, default=list)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)

    # Relationships
    allocations: Mapped[List["TradeAllocationModel"]] = relationship(
        "TradeAllocationModel",
        back_populates="trade",
        cascade="all, delete-orphan",
        order_by="TradeAllocationModel.leg_index",
    )

    __table_args__ = (
        Index("ix_tb_trades_user_account_symbol", "user_id", "account_id", "symbol"),
    )

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "account_id": self.account_id,
            "symbol": self.symbol,
            "side": self.side,
            "status": self.status,
            "open_quantity": str(self.open_quantity),
            "close_quantity": str(self.close_quantity),
            "avg_entry_price": str(self.avg_entry_price),
            "avg_exit_price": str(self.avg_exit_price) if self.avg_exit_price is not None else None,
            "realized_pnl": str(self.realized_pnl),
            "commissions_total": str(self.commissions_total),
            "fees_total": str(self.fees_total),
            "executions_count": self.executions_count,
            "entry_at": self.entry_at.isoformat() if self.entry_at else None,
            "exit_at": self.exit_at.isoformat() if self.exit_at else None,
            "holding_period_class": self.holding_period_class,
            "market_session": self.market_session,
            "orders_in_trade": list(self.orders_in_trade or []),
        }


# ============================================================
# TRADE ALLOCATION MODEL
# ============================================================

class TradeAllocationModel(Base):
    """
    Share of an order attributed to a trade.

    A flip order has one row in each of the two trades it touches.
    """

    __tablename__ = "tb_trade_allocations"

    # Primary key
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # References
    trade_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("tb_trades.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    order_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    # Leg
    leg_index: Mapped[int] = mapped_column(Integer, nullable=False)
    side: Mapped[str] = mapped_column(String(8), nullable=False)
    role: Mapped[str] = mapped_column(String(8), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(Numeric(24, 8), nullable=False)
    order_quantity: Mapped[Decimal] = mapped_column(Numeric(24, 8), nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(24, 8), nullable=False)
    executed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    # Relationship
    trade: Mapped["TradeModel"] = relationship("TradeModel", back_populates="allocations")

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "trade_id": self.trade_id,
            "order_id": self.order_id,
            "leg_index": self.leg_index,
            "side": self.side,
            "role": self.role,
            "quantity": str(self.quantity),
            "order_quantity": str(self.order_quantity),
            "price": str(self.price),
            "executed_at": self.executed_at.isoformat() if self.executed_at else None,
        }
