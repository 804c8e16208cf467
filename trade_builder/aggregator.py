"""
Trade Builder - Trade Aggregator.

============================================================
PURPOSE
============================================================
Folds the matcher's event stream of one group into Trade records.

EVENT HANDLING:
- OPEN:      start a trade
- SCALE_IN:  add to entry totals
- SCALE_OUT: add to exit totals, realize P&L of the closed slice
- CLOSE:     finalize (status, exit time, holding period)

P&L OF A CLOSED SLICE:
    sign * (exit_price * closed - released_cost)
    - closing leg's pro-rata commission and fees
    - pro-rata share of entry commission and fees not yet expensed

============================================================
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from .clock import ExchangeCalendar, as_utc
from .config import AggregatorConfig, IntradayRule
from .types import (
    AllocationRole,
    AssetClass,
    Execution,
    GroupKey,
    HoldingPeriodClass,
    MatchEvent,
    MatchEventType,
    MatcherContractError,
    OrderAllocation,
    Trade,
    TradeSide,
    TradeStatus,
)


logger = logging.getLogger(__name__)


TRADE_ID_NAMESPACE = uuid.UUID("6f1c2d0e-8a4b-5c3e-9d7f-2b1a0e4c6d8f")

ZERO = Decimal("0")


def trade_id_for(user_id: str, group: GroupKey, opening_order_id: str) -> str:
    """
    Deterministic trade id.

    A trade is identified by the order that opened it, so rebuilding an
    unchanged order set reproduces the same ids.
    """
    name = f"{user_id}|{group.account_id}|{group.symbol}|{opening_order_id}"
    return str(uuid.uuid5(TRADE_ID_NAMESPACE, name))


# ============================================================
# TRADE IN PROGRESS
# ============================================================

@dataclass
class _TradeInProgress:
    """Mutable accumulator, frozen into a Trade on output."""

    trade_id: str
    side: TradeSide
    asset_class: AssetClass
    entry_at: datetime

    entry_quantity: Decimal = ZERO
    entry_cost: Decimal = ZERO
    exit_quantity: Decimal = ZERO
    exit_value: Decimal = ZERO
    realized_pnl: Decimal = ZERO

    unexpensed_entry_charges: Decimal = ZERO
    """Entry commission and fees not yet charged against realized P&L."""

    exit_at: Optional[datetime] = None
    closed: bool = False

    commissions: Dict[str, Decimal] = field(default_factory=dict)
    """Commission per contributing order, insertion ordered."""

    fees: Dict[str, Decimal] = field(default_factory=dict)
    allocations: List[OrderAllocation] = field(default_factory=list)

    @property
    def open_quantity(self) -> Decimal:
        return self.entry_quantity - self.exit_quantity

    def add_leg(self, execution: Execution, role: AllocationRole) -> None:
        order = execution.order
        self.commissions.setdefault(order.id, order.commission)
        self.fees.setdefault(order.id, order.fees)
        self.allocations.append(
            OrderAllocation(
                trade_id=self.trade_id,
                order_id=order.id,
                leg_index=len(self.allocations),
                side=order.side,
                role=role,
                quantity=execution.quantity,
                order_quantity=order.quantity,
                price=order.price,
                executed_at=order.executed_at,
            )
        )


# ============================================================
# TRADE AGGREGATOR
# ============================================================

class TradeAggregator:
    """
    Builds the trades of one (account, symbol) group from match events.
    """

    def __init__(
        self,
        user_id: str,
        group: GroupKey,
        config: Optional[AggregatorConfig] = None,
    ):
        """
        Initialize aggregator.

        Args:
            user_id: Owning user
            group: Group the events belong to
            config: Aggregation configuration
        """
        self._user_id = user_id
        self._group = group
        self._config = config or AggregatorConfig()
        self._calendar = ExchangeCalendar(
            timezone_name=self._config.timezone,
            regular_open=self._config.regular_session_start,
            regular_close=self._config.regular_session_end,
        )

        self._current: Optional[_TradeInProgress] = None
        self._completed: List[Trade] = []

    @property
    def current_trade_id(self) -> Optional[str]:
        """Id of the trade still open, if any."""
        return self._current.trade_id if self._current else None

    # --------------------------------------------------------
    # EVENTS
    # --------------------------------------------------------

    def apply(self, event: MatchEvent) -> None:
        """Fold one event."""
        if event.event_type == MatchEventType.OPEN:
            self._on_open(event)
        elif event.event_type == MatchEventType.SCALE_IN:
            self._on_scale_in(event)
        elif event.event_type == MatchEventType.SCALE_OUT:
            self._on_scale_out(event)
        elif event.event_type == MatchEventType.CLOSE:
            self._on_close(event)

    def apply_all(self, events: Iterable[MatchEvent]) -> None:
        """Fold events in order."""
        for event in events:
            self.apply(event)

    def _on_open(self, event: MatchEvent) -> None:
        if self._current is not None:
            raise MatcherContractError(
                f"{self._group}: OPEN for order {event.execution.order_id} "
                f"while trade {self._current.trade_id} is open",
                order_id=event.execution.order_id,
            )

        execution = event.execution
        self._current = _TradeInProgress(
            trade_id=trade_id_for(self._user_id, self._group, execution.order_id),
            side=event.position_side,
            asset_class=execution.order.asset_class,
            entry_at=execution.executed_at,
        )
        self._add_entry(execution)

    def _on_scale_in(self, event: MatchEvent) -> None:
        self._require_current(event)
        self._add_entry(event.execution)

    def _add_entry(self, execution: Execution) -> None:
        trade = self._current
        trade.entry_quantity += execution.quantity
        trade.entry_cost += execution.quantity * execution.price
        trade.unexpensed_entry_charges += execution.charges_share
        trade.add_leg(execution, AllocationRole.ENTRY)

    def _on_scale_out(self, event: MatchEvent) -> None:
        trade = self._require_current(event)
        execution = event.execution
        closed = execution.quantity
        open_before = trade.open_quantity

        if closed == open_before:
            entry_charges = trade.unexpensed_entry_charges
        else:
            entry_charges = trade.unexpensed_entry_charges * closed / open_before
        trade.unexpensed_entry_charges -= entry_charges

        gross = (execution.price * closed - event.released_cost) * trade.side.sign
        trade.realized_pnl += gross - execution.charges_share - entry_charges

        trade.exit_quantity += closed
        trade.exit_value += execution.price * closed
        trade.add_leg(execution, AllocationRole.EXIT)

    def _on_close(self, event: MatchEvent) -> None:
        trade = self._require_current(event)
        trade.closed = True
        trade.exit_at = event.execution.executed_at
        self._completed.append(self._freeze(trade))
        self._current = None

        logger.debug(f"{self._group}: closed trade {trade.trade_id}")

    def _require_current(self, event: MatchEvent) -> _TradeInProgress:
        if self._current is None:
            raise MatcherContractError(
                f"{self._group}: {event.event_type.value} for order "
                f"{event.execution.order_id} without an open trade",
                order_id=event.execution.order_id,
            )
        return self._current

    # --------------------------------------------------------
    # OUTPUT
    # --------------------------------------------------------

    def trades(self) -> List[Trade]:
        """Closed trades in closing order, then the open trade if any."""
        trades = list(self._completed)
        if self._current is not None:
            trades.append(self._freeze(self._current))
        return trades

    def _freeze(self, trade: _TradeInProgress) -> Trade:
        cfg = self._config
        status = TradeStatus.CLOSED if trade.closed else TradeStatus.OPEN

        avg_entry = trade.entry_cost / trade.entry_quantity
        avg_exit = None
        if trade.closed:
            avg_exit = self._price(trade.exit_value / trade.exit_quantity)

        proceeds = None
        if trade.exit_quantity > ZERO:
            proceeds = self._price(trade.exit_value)

        time_in_trade = None
        if trade.exit_at is not None:
            delta = as_utc(trade.exit_at) - as_utc(trade.entry_at)
            time_in_trade = int(delta.total_seconds())

        order_ids = tuple(trade.commissions)

        return Trade(
            id=trade.trade_id,
            user_id=self._user_id,
            account_id=self._group.account_id,
            symbol=self._group.symbol,
            side=trade.side,
            status=status,
            open_quantity=self._quantity(trade.entry_quantity),
            close_quantity=self._quantity(trade.exit_quantity),
            avg_entry_price=self._price(avg_entry),
            avg_exit_price=avg_exit,
            realized_pnl=trade.realized_pnl.quantize(cfg.pnl_quantum, rounding=cfg.rounding),
            commissions_total=sum(trade.commissions.values(), ZERO),
            fees_total=sum(trade.fees.values(), ZERO),
            executions_count=len(order_ids),
            entry_at=trade.entry_at,
            exit_at=trade.exit_at,
            holding_period_class=self._holding_period(trade),
            market_session=self._calendar.market_session(trade.entry_at),
            orders_in_trade=order_ids,
            allocations=tuple(trade.allocations),
            asset_class=trade.asset_class,
            cost_basis=self._price(trade.entry_cost),
            proceeds=proceeds,
            time_in_trade_seconds=time_in_trade,
        )

    def _holding_period(self, trade: _TradeInProgress) -> HoldingPeriodClass:
        if trade.exit_at is None:
            return HoldingPeriodClass.INTRADAY

        if self._config.intraday_rule == IntradayRule.WITHIN_HOURS:
            hours = (as_utc(trade.exit_at) - as_utc(trade.entry_at)).total_seconds() / 3600
            if hours <= self._config.intraday_max_hours:
                return HoldingPeriodClass.INTRADAY
            return HoldingPeriodClass.MULTIDAY

        if self._calendar.same_trading_day(trade.entry_at, trade.exit_at):
            return HoldingPeriodClass.INTRADAY
        return HoldingPeriodClass.MULTIDAY

    def _price(self, value: Decimal) -> Decimal:
        return value.quantize(self._config.price_quantum, rounding=self._config.rounding)

    def _quantity(self, value: Decimal) -> Decimal:
        return value.quantize(self._config.quantity_quantum, rounding=self._config.rounding)
