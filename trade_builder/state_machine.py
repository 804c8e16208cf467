"""
Trade Builder - Position Matcher.

============================================================
PURPOSE
============================================================
Per-(account, symbol) state machine that consumes ordered
executions and emits matching events.

STATE MACHINE:

    FLAT ──── OPEN ────► LONG_OPEN / SHORT_OPEN
                              │
                              ├── SCALE_IN   (same side)
                              ├── SCALE_OUT  (opposite, qty < q)
                              ├── CLOSE      (opposite, qty == q) ──► FLAT
                              └── FLIP       (opposite, qty > q)  ──► reverse side

EVENTS PER FILL ACTION:
    OPEN      -> OPEN
    SCALE_IN  -> SCALE_IN
    SCALE_OUT -> SCALE_OUT
    CLOSE     -> SCALE_OUT, CLOSE
    FLIP      -> SCALE_OUT, CLOSE, OPEN   (same order, two legs)

INVARIANTS:
- Quantities and cost are Decimal running totals
- Cost is exactly zero whenever the position is FLAT
- A group is processed strictly sequentially

============================================================
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Context, Decimal, localcontext
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from .clock import utc_now
from .config import MatcherConfig
from .types import (
    Execution,
    FillAction,
    GroupKey,
    MatchEvent,
    MatchEventType,
    MatcherContractError,
    OrderSide,
    PositionState,
    ReconciliationRequiredError,
    TradeSide,
)


logger = logging.getLogger(__name__)


ZERO = Decimal("0")


# ============================================================
# STATE TRANSITION RULES
# ============================================================

# Fill actions allowed from each state
VALID_ACTIONS: Dict[PositionState, Set[FillAction]] = {
    PositionState.FLAT: {
        FillAction.OPEN,
    },
    PositionState.LONG_OPEN: {
        FillAction.SCALE_IN,
        FillAction.SCALE_OUT,
        FillAction.CLOSE,
        FillAction.FLIP,
    },
    PositionState.SHORT_OPEN: {
        FillAction.SCALE_IN,
        FillAction.SCALE_OUT,
        FillAction.CLOSE,
        FillAction.FLIP,
    },
}

# Valid transitions from each state
VALID_TRANSITIONS: Dict[PositionState, Set[PositionState]] = {
    PositionState.FLAT: {
        PositionState.LONG_OPEN,
        PositionState.SHORT_OPEN,
    },
    PositionState.LONG_OPEN: {
        PositionState.LONG_OPEN,
        PositionState.FLAT,
        PositionState.SHORT_OPEN,
    },
    PositionState.SHORT_OPEN: {
        PositionState.SHORT_OPEN,
        PositionState.FLAT,
        PositionState.LONG_OPEN,
    },
}


# ============================================================
# TRANSITION RECORD
# ============================================================

@dataclass
class PositionTransition:
    """Record of one execution applied to the position."""

    order_id: str
    """Source order."""

    action: FillAction
    """Fill classification."""

    from_state: PositionState
    to_state: PositionState

    quantity: Decimal
    """Leg quantity."""

    position_quantity: Decimal
    """Open quantity after the fill."""

    timestamp: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class PositionSnapshot:
    """Current open exposure of a group."""

    state: PositionState
    side: Optional[TradeSide]
    quantity: Decimal
    cost: Decimal

    @property
    def basis(self) -> Optional[Decimal]:
        """Weighted average cost of the open quantity."""
        if self.quantity == ZERO:
            return None
        return self.cost / self.quantity


# ============================================================
# TRANSITION GUARD
# ============================================================

class TransitionGuard:
    """
    Guard for position transitions.
    """

    @staticmethod
    def classify(
        state: PositionState,
        side: Optional[TradeSide],
        open_quantity: Decimal,
        execution: Execution,
    ) -> FillAction:
        """
        Classify what an execution does to the position.

        Args:
            state: Current state
            side: Direction of the open position (None when FLAT)
            open_quantity: Open quantity
            execution: Incoming leg

        Returns:
            FillAction
        """
        if state == PositionState.FLAT:
            return FillAction.OPEN

        if execution.side == side.entry_side:
            return FillAction.SCALE_IN

        if execution.quantity < open_quantity:
            return FillAction.SCALE_OUT
        if execution.quantity == open_quantity:
            return FillAction.CLOSE
        return FillAction.FLIP

    @staticmethod
    def can_apply(state: PositionState, action: FillAction) -> Tuple[bool, str]:
        """Check if an action is allowed from a state."""
        if action in VALID_ACTIONS.get(state, set()):
            return True, "Valid action"
        return False, f"Invalid action {action.value} from {state.value}"

    @staticmethod
    def can_transition(
        from_state: PositionState,
        to_state: PositionState,
    ) -> Tuple[bool, str]:
        """Check if a transition is allowed."""
        if to_state in VALID_TRANSITIONS.get(from_state, set()):
            return True, "Valid transition"
        return False, f"Invalid transition: {from_state.value} -> {to_state.value}"


# ============================================================
# POSITION MATCHER
# ============================================================

class PositionMatcher:
    """
    State machine for one (account, symbol) position.

    Consumes executions in sequencer order and returns the
    matching events of each. Holds no state beyond the group.
    """

    def __init__(
        self,
        group: GroupKey,
        config: Optional[MatcherConfig] = None,
    ):
        """
        Initialize matcher.

        Args:
            group: Group this matcher owns
            config: Matcher configuration
        """
        self._group = group
        self._config = config or MatcherConfig()
        self._context = Context(prec=self._config.decimal_precision)

        self._state = PositionState.FLAT
        self._side: Optional[TradeSide] = None
        self._quantity = ZERO
        self._cost = ZERO

        self._history: List[PositionTransition] = []
        self._listeners: List[Callable[[PositionTransition], None]] = []

    @property
    def group(self) -> GroupKey:
        return self._group

    @property
    def state(self) -> PositionState:
        """Get current position state."""
        return self._state

    @property
    def history(self) -> List[PositionTransition]:
        """Get transition history."""
        return list(self._history)

    def snapshot(self) -> PositionSnapshot:
        """Get current open exposure."""
        return PositionSnapshot(
            state=self._state,
            side=self._side,
            quantity=self._quantity,
            cost=self._cost,
        )

    def add_listener(self, listener: Callable[[PositionTransition], None]) -> None:
        """Add a transition listener."""
        self._listeners.append(listener)

    def classify(self, execution: Execution) -> FillAction:
        """Classify an execution against the current position."""
        return TransitionGuard.classify(
            self._state, self._side, self._quantity, execution
        )

    # --------------------------------------------------------
    # APPLY
    # --------------------------------------------------------

    def apply(self, execution: Execution) -> List[MatchEvent]:
        """
        Apply one execution.

        Args:
            execution: Next leg in sequencer order

        Returns:
            Events produced by the execution

        Raises:
            MatcherContractError: Invalid quantity or foreign group
            ReconciliationRequiredError: Execution cannot be matched
        """
        self._validate(execution)

        action = self.classify(execution)
        allowed, reason = TransitionGuard.can_apply(self._state, action)
        if not allowed:
            raise MatcherContractError(
                f"{self._group}: {reason} for order {execution.order_id}",
                order_id=execution.order_id,
            )

        from_state = self._state

        with localcontext(self._context):
            if action == FillAction.OPEN:
                events = [self._open(execution, action)]
            elif action == FillAction.SCALE_IN:
                events = [self._scale_in(execution)]
            elif action == FillAction.SCALE_OUT:
                events = [self._reduce(execution, action)]
            elif action == FillAction.CLOSE:
                events = self._close(execution, action)
            else:
                events = self._flip(execution)

        allowed, reason = TransitionGuard.can_transition(from_state, self._state)
        if not allowed:
            raise MatcherContractError(
                f"{self._group}: {reason} for order {execution.order_id}",
                order_id=execution.order_id,
            )

        self._record(execution, action, from_state)
        return events

    def apply_all(self, executions: Iterable[Execution]) -> List[MatchEvent]:
        """Apply executions in order and return all events."""
        events: List[MatchEvent] = []
        for execution in executions:
            events.extend(self.apply(execution))
        return events

    # --------------------------------------------------------
    # TRANSITIONS
    # --------------------------------------------------------

    def _open(self, execution: Execution, action: FillAction) -> MatchEvent:
        side = TradeSide.from_order_side(execution.side)
        self._require_short_allowed(execution, side)

        self._state = PositionState.for_side(side)
        self._side = side
        self._quantity = execution.quantity
        self._cost = execution.quantity * execution.price

        return MatchEvent(
            event_type=MatchEventType.OPEN,
            action=action,
            execution=execution,
            position_side=side,
            entry_basis=execution.price,
        )

    def _scale_in(self, execution: Execution) -> MatchEvent:
        self._quantity += execution.quantity
        self._cost += execution.quantity * execution.price

        return MatchEvent(
            event_type=MatchEventType.SCALE_IN,
            action=FillAction.SCALE_IN,
            execution=execution,
            position_side=self._side,
            entry_basis=self._cost / self._quantity,
        )

    def _reduce(self, execution: Execution, action: FillAction) -> MatchEvent:
        """Close `execution.quantity` of the position at the fill price."""
        closed = execution.quantity
        basis = self._cost / self._quantity

        if closed == self._quantity:
            released = self._cost
        else:
            released = self._cost * closed / self._quantity

        self._quantity -= closed
        self._cost -= released

        return MatchEvent(
            event_type=MatchEventType.SCALE_OUT,
            action=action,
            execution=execution,
            position_side=self._side,
            entry_basis=basis,
            released_cost=released,
        )

    def _close(self, execution: Execution, action: FillAction) -> List[MatchEvent]:
        side = self._side
        scale_out = self._reduce(execution, action)

        self._state = PositionState.FLAT
        self._side = None
        self._quantity = ZERO
        self._cost = ZERO

        close = MatchEvent(
            event_type=MatchEventType.CLOSE,
            action=action,
            execution=execution,
            position_side=side,
            entry_basis=scale_out.entry_basis,
        )
        return [scale_out, close]

    def _flip(self, execution: Execution) -> List[MatchEvent]:
        closing_leg, opening_leg = execution.split(self._quantity)
        new_side = self._side.opposite()
        self._require_short_allowed(execution, new_side)

        events = self._close(closing_leg, FillAction.FLIP)
        events.append(self._open(opening_leg, FillAction.FLIP))

        logger.debug(
            f"{self._group}: order {execution.order_id} flipped position to "
            f"{new_side.value} {opening_leg.quantity}"
        )
        return events

    # --------------------------------------------------------
    # CHECKS
    # --------------------------------------------------------

    def _validate(self, execution: Execution) -> None:
        order = execution.order
        if execution.quantity is None or execution.quantity <= 0:
            raise MatcherContractError(
                f"{self._group}: order {order.id} reached the matcher "
                f"with quantity {execution.quantity}",
                order_id=order.id,
            )
        if execution.quantity > order.quantity:
            raise MatcherContractError(
                f"{self._group}: leg of order {order.id} exceeds its quantity",
                order_id=order.id,
            )
        if order.group_key != self._group:
            raise MatcherContractError(
                f"{self._group}: order {order.id} belongs to {order.group_key}",
                order_id=order.id,
            )
        if order.price is None or order.executed_at is None:
            raise MatcherContractError(
                f"{self._group}: order {order.id} is missing price or execution time",
                order_id=order.id,
            )

    def _require_short_allowed(self, execution: Execution, side: TradeSide) -> None:
        if side == TradeSide.SHORT and not self._config.allows_short(
            execution.order.asset_class
        ):
            raise ReconciliationRequiredError(
                f"{self._group}: {OrderSide.SELL.value} order {execution.order_id} "
                f"would open a short {execution.order.asset_class.value} position",
                code="REC_SHORT_NOT_ALLOWED",
                order_id=execution.order_id,
            )

    def _record(
        self,
        execution: Execution,
        action: FillAction,
        from_state: PositionState,
    ) -> None:
        transition = PositionTransition(
            order_id=execution.order_id,
            action=action,
            from_state=from_state,
            to_state=self._state,
            quantity=execution.quantity,
            position_quantity=self._quantity,
        )
        self._history.append(transition)

        for listener in self._listeners:
            try:
                listener(transition)
            except Exception as e:
                logger.error(f"Position listener error: {e}")

        logger.debug(
            f"{self._group}: {action.value} {execution.quantity} "
            f"({from_state.value} -> {self._state.value}, order {execution.order_id})"
        )
