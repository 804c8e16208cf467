"""
Trade Builder - Types.

============================================================
PURPOSE
============================================================
All type definitions for trade reconstruction.

CRITICAL PRINCIPLE:
    "Orders are facts, trades are derived."
    "A trade can always be rebuilt from the orders it came from."

============================================================
"""

from datetime import datetime
from typing import Optional, Tuple
from dataclasses import dataclass, field, replace
from enum import Enum
from decimal import Decimal


# ============================================================
# ORDER ENUMS
# ============================================================

class OrderSide(Enum):
    """Execution side."""

    BUY = "BUY"
    SELL = "SELL"


class OrderStatus(Enum):
    """Broker-reported order status."""

    FILLED = "FILLED"
    """Executed. The only matchable status."""

    PENDING = "PENDING"
    """Working at the broker, not executed yet."""

    CANCELLED = "CANCELLED"
    """Cancelled before execution."""

    REJECTED = "REJECTED"
    """Rejected by the broker."""


class AssetClass(Enum):
    """Instrument asset class."""

    EQUITY = "EQUITY"
    OPTION = "OPTION"
    OTHER = "OTHER"


# ============================================================
# TRADE ENUMS
# ============================================================

class TradeSide(Enum):
    """Direction of the opening leg of a trade."""

    LONG = "LONG"
    SHORT = "SHORT"

    @classmethod
    def from_order_side(cls, side: OrderSide) -> "TradeSide":
        """Direction opened by an execution on this side."""
        return cls.LONG if side == OrderSide.BUY else cls.SHORT

    @property
    def entry_side(self) -> OrderSide:
        """Execution side that adds to the position."""
        return OrderSide.BUY if self == TradeSide.LONG else OrderSide.SELL

    @property
    def sign(self) -> int:
        """+1 for long, -1 for short."""
        return 1 if self == TradeSide.LONG else -1

    def opposite(self) -> "TradeSide":
        """Get the reversed direction."""
        return TradeSide.SHORT if self == TradeSide.LONG else TradeSide.LONG


class TradeStatus(Enum):
    """Trade status."""

    OPEN = "OPEN"
    """Some quantity still open."""

    CLOSED = "CLOSED"
    """Fully closed, close quantity equals open quantity."""


class HoldingPeriodClass(Enum):
    """Holding period classification."""

    INTRADAY = "INTRADAY"
    MULTIDAY = "MULTIDAY"


class MarketSession(Enum):
    """Session in which a trade was opened."""

    PRE_MARKET = "PRE_MARKET"
    REGULAR = "REGULAR"
    AFTER_HOURS = "AFTER_HOURS"


class AllocationRole(Enum):
    """Role of an order leg inside a trade."""

    ENTRY = "ENTRY"
    EXIT = "EXIT"


# ============================================================
# MATCHING ENUMS
# ============================================================

class PositionState(Enum):
    """
    Position state of one (account, symbol) group.

    State Machine:

                  BUY          SELL
      LONG_OPEN ◄───── FLAT ─────► SHORT_OPEN
          │             ▲              │
          │  SELL == q  │  BUY == q    │
          ├─────────────┴──────────────┤
          │                            │
          │  SELL > q (flip)           │
          └──────────► SHORT_OPEN      │
                       LONG_OPEN ◄─────┘
                        BUY > q (flip)

    Same-side fills and smaller opposite fills stay in place.
    There is no terminal state.
    """

    FLAT = "FLAT"
    LONG_OPEN = "LONG_OPEN"
    SHORT_OPEN = "SHORT_OPEN"

    def is_open(self) -> bool:
        """Check if a position is open."""
        return self != PositionState.FLAT

    @classmethod
    def for_side(cls, side: TradeSide) -> "PositionState":
        """Open state for a trade direction."""
        return cls.LONG_OPEN if side == TradeSide.LONG else cls.SHORT_OPEN


class FillAction(Enum):
    """What a single execution does to the position."""

    OPEN = "OPEN"
    """Opens a position from FLAT."""

    SCALE_IN = "SCALE_IN"
    """Adds to the open position."""

    SCALE_OUT = "SCALE_OUT"
    """Reduces the open position without closing it."""

    CLOSE = "CLOSE"
    """Closes the open position exactly."""

    FLIP = "FLIP"
    """Closes the open position and opens the reverse with the excess."""


class MatchEventType(Enum):
    """Events emitted by the position matcher."""

    OPEN = "OPEN"
    SCALE_IN = "SCALE_IN"
    SCALE_OUT = "SCALE_OUT"
    CLOSE = "CLOSE"


class RebuildScope(Enum):
    """Rebuild scope."""

    INCREMENTAL = "INCREMENTAL"
    """Only unconsumed orders; historical closed trades are kept."""

    FULL = "FULL"
    """Clear every trade and tag, then reprocess all orders."""


# ============================================================
# ORDER
# ============================================================

@dataclass(frozen=True)
class GroupKey:
    """Matching group: one position per account and symbol."""

    account_id: str
    symbol: str

    def __str__(self) -> str:
        return f"{self.account_id}/{self.symbol}"

    def sort_key(self) -> Tuple[str, str]:
        return (self.account_id, self.symbol)


@dataclass(frozen=True)
class Order:
    """
    A broker-reported execution.

    Immutable. Only the rebuild controller changes `used_in_trade`
    and `trade_id`, by writing a new copy through the store.
    """

    id: str
    """Order identifier."""

    user_id: str
    """Owning user."""

    account_id: str
    """Brokerage account."""

    symbol: str
    """Instrument symbol."""

    side: OrderSide
    """Execution side."""

    quantity: Decimal
    """Executed quantity (positive)."""

    price: Optional[Decimal]
    """Execution price."""

    executed_at: Optional[datetime]
    """Execution time. Orders without one are not matchable."""

    asset_class: AssetClass = AssetClass.EQUITY
    commission: Decimal = Decimal("0")
    fees: Decimal = Decimal("0")

    sequence: int = 0
    """Ingestion sequence number, tie-break for equal timestamps."""

    status: OrderStatus = OrderStatus.FILLED

    used_in_trade: bool = False
    trade_id: Optional[str] = None

    @property
    def group_key(self) -> GroupKey:
        """Matching group of this order."""
        return GroupKey(self.account_id, self.symbol)

    @property
    def total_charges(self) -> Decimal:
        """Commission plus fees."""
        return self.commission + self.fees

    def tagged(self, trade_id: Optional[str]) -> "Order":
        """Copy of this order tagged with (or cleared from) a trade."""
        return replace(self, used_in_trade=trade_id is not None, trade_id=trade_id)


@dataclass(frozen=True)
class Execution:
    """
    One leg of an order fed to the matcher.

    Normally the whole order. A flip splits an order into a
    closing leg and an opening leg.
    """

    order: Order
    quantity: Decimal

    @classmethod
    def of(cls, order: Order) -> "Execution":
        """Full-quantity leg for an order."""
        return cls(order=order, quantity=order.quantity)

    @property
    def order_id(self) -> str:
        return self.order.id

    @property
    def side(self) -> OrderSide:
        return self.order.side

    @property
    def price(self) -> Decimal:
        return self.order.price

    @property
    def executed_at(self) -> datetime:
        return self.order.executed_at

    @property
    def charges_share(self) -> Decimal:
        """Commission and fees attributable to this leg, pro rata by quantity."""
        if self.quantity == self.order.quantity:
            return self.order.total_charges
        return self.order.total_charges * self.quantity / self.order.quantity

    def split(self, quantity: Decimal) -> Tuple["Execution", "Execution"]:
        """Split into a leg of `quantity` and the remainder."""
        return (
            Execution(order=self.order, quantity=quantity),
            Execution(order=self.order, quantity=self.quantity - quantity),
        )


# ============================================================
# MATCH EVENT
# ============================================================

@dataclass(frozen=True)
class MatchEvent:
    """Event emitted by the position matcher."""

    event_type: MatchEventType
    """Event type."""

    action: FillAction
    """Classification of the execution that produced the event."""

    execution: Execution
    """Leg the event applies to."""

    position_side: TradeSide
    """Direction of the position the event applies to."""

    entry_basis: Decimal
    """Average cost of the open position at event time."""

    released_cost: Decimal = Decimal("0")
    """Cost basis released by a closing slice."""

    @property
    def quantity(self) -> Decimal:
        return self.execution.quantity

    @property
    def price(self) -> Decimal:
        return self.execution.price


# ============================================================
# TRADE
# ============================================================

@dataclass(frozen=True)
class OrderAllocation:
    """Share of an order attributed to a trade."""

    trade_id: str
    order_id: str
    leg_index: int
    side: OrderSide
    role: AllocationRole
    quantity: Decimal
    order_quantity: Decimal
    price: Decimal
    executed_at: datetime

    @property
    def is_partial(self) -> bool:
        """Whether the order was split across trades."""
        return self.quantity != self.order_quantity


@dataclass(frozen=True)
class Trade:
    """
    Reconstructed round-trip position.

    Never edited in place. A rebuild produces a fresh record
    and swaps it in.
    """

    id: str
    user_id: str
    account_id: str
    symbol: str
    side: TradeSide
    status: TradeStatus

    open_quantity: Decimal
    close_quantity: Decimal
    avg_entry_price: Decimal
    avg_exit_price: Optional[Decimal]
    realized_pnl: Decimal
    commissions_total: Decimal
    fees_total: Decimal
    executions_count: int

    entry_at: datetime
    exit_at: Optional[datetime]
    holding_period_class: HoldingPeriodClass
    market_session: MarketSession

    orders_in_trade: Tuple[str, ...] = ()
    allocations: Tuple[OrderAllocation, ...] = ()

    asset_class: AssetClass = AssetClass.EQUITY
    cost_basis: Decimal = Decimal("0")
    proceeds: Optional[Decimal] = None
    time_in_trade_seconds: Optional[int] = None

    @property
    def group_key(self) -> GroupKey:
        return GroupKey(self.account_id, self.symbol)

    @property
    def remaining_quantity(self) -> Decimal:
        """Quantity still open."""
        return self.open_quantity - self.close_quantity

    @property
    def is_open(self) -> bool:
        return self.status == TradeStatus.OPEN

    def allocated_quantity(self, order_id: str) -> Decimal:
        """Total quantity of an order attributed to this trade."""
        return sum(
            (a.quantity for a in self.allocations if a.order_id == order_id),
            Decimal("0"),
        )


# ============================================================
# EXCEPTIONS
# ============================================================

class TradeBuilderError(Exception):
    """Base exception for trade reconstruction."""

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.code = code


class SequencingError(TradeBuilderError):
    """Orders cannot be sequenced (e.g. mixed users)."""
    pass


class MatcherContractError(TradeBuilderError):
    """An execution reached the matcher in violation of the sequencer contract."""

    def __init__(self, message: str, order_id: Optional[str] = None):
        super().__init__(message, code="GRP_CONTRACT_VIOLATION")
        self.order_id = order_id


class ReconciliationRequiredError(TradeBuilderError):
    """Executions cannot be matched without guessing. Fatal for the group."""

    def __init__(
        self,
        message: str,
        code: str = "REC_UNMATCHABLE_EXECUTION",
        order_id: Optional[str] = None,
    ):
        super().__init__(message, code=code)
        self.order_id = order_id


class AtomicityError(TradeBuilderError):
    """A group write failed and was rolled back."""

    def __init__(self, message: str, group: Optional[GroupKey] = None):
        super().__init__(message, code="ATO_GROUP_WRITE_FAILED")
        self.group = group


class RebuildInProgressError(TradeBuilderError):
    """A rebuild for this user is already running."""

    def __init__(self, user_id: str):
        super().__init__(
            f"Rebuild already in progress for user {user_id}",
            code="RBL_IN_PROGRESS",
        )
        self.user_id = user_id


class RebuildFailedError(TradeBuilderError):
    """One or more groups of a rebuild failed."""

    def __init__(self, user_id: str, failed_groups: Tuple[GroupKey, ...], details: str):
        groups = ", ".join(str(g) for g in failed_groups)
        super().__init__(
            f"Rebuild for user {user_id} failed for {groups}: {details}",
            code="RBL_GROUP_FAILURES",
        )
        self.user_id = user_id
        self.failed_groups = failed_groups


class StoreError(TradeBuilderError):
    """Reading from the order or trade store failed."""

    def __init__(self, message: str, operation: str):
        super().__init__(message, code="STO_READ_FAILED")
        self.operation = operation
