"""
Position Matcher Tests.

============================================================
PURPOSE
============================================================
Tests for the per-group position state machine.

TEST CATEGORIES:
- Transition tests: OPEN, SCALE_IN, SCALE_OUT, CLOSE
- Flip tests: Reversal through a single order
- Guard tests: Allowed actions and transitions
- Contract tests: Executions the matcher refuses

============================================================
"""

from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from trade_builder import (
    AssetClass,
    Execution,
    FillAction,
    GroupKey,
    MatchEventType,
    MatcherConfig,
    MatcherContractError,
    PositionMatcher,
    PositionState,
    ReconciliationRequiredError,
    TradeSide,
    TransitionGuard,
)


GROUP = GroupKey("acct-1", "AAPL")


def no_shorts() -> MatcherConfig:
    return MatcherConfig(allow_short_positions={
        AssetClass.EQUITY: False,
        AssetClass.OPTION: False,
        AssetClass.OTHER: False,
    })


# ============================================================
# TRANSITION TESTS
# ============================================================

class TestTransitions:
    """Tests for basic transitions."""

    def test_initial_state_is_flat(self):
        matcher = PositionMatcher(GROUP)

        assert matcher.state == PositionState.FLAT
        assert matcher.snapshot().quantity == Decimal("0")
        assert matcher.snapshot().basis is None

    def test_buy_from_flat_opens_long(self, make_order):
        matcher = PositionMatcher(GROUP)

        events = matcher.apply(Execution.of(make_order("o1", "BUY", 100, 10)))

        assert [e.event_type for e in events] == [MatchEventType.OPEN]
        assert events[0].position_side == TradeSide.LONG
        assert matcher.state == PositionState.LONG_OPEN
        assert matcher.snapshot().cost == Decimal("1000")

    def test_sell_from_flat_opens_short(self, make_order):
        matcher = PositionMatcher(GROUP)

        matcher.apply(Execution.of(make_order("o1", "SELL", 100, 10)))

        assert matcher.state == PositionState.SHORT_OPEN
        assert matcher.snapshot().side == TradeSide.SHORT

    def test_scale_in_weights_basis(self, make_order):
        matcher = PositionMatcher(GROUP)
        matcher.apply(Execution.of(make_order("o1", "BUY", 100, 10)))

        events = matcher.apply(Execution.of(make_order("o2", "BUY", 100, 12, minutes=1)))

        assert events[0].event_type == MatchEventType.SCALE_IN
        assert events[0].entry_basis == Decimal("11")
        assert matcher.snapshot().quantity == Decimal("200")

    def test_scale_out_releases_cost_pro_rata(self, make_order):
        matcher = PositionMatcher(GROUP)
        matcher.apply(Execution.of(make_order("o1", "BUY", 100, 10)))
        matcher.apply(Execution.of(make_order("o2", "BUY", 100, 12, minutes=1)))

        events = matcher.apply(Execution.of(make_order("o3", "SELL", 50, 13, minutes=2)))

        assert [e.event_type for e in events] == [MatchEventType.SCALE_OUT]
        assert events[0].released_cost == Decimal("550")
        snapshot = matcher.snapshot()
        assert snapshot.quantity == Decimal("150")
        assert snapshot.cost == Decimal("1650")
        assert snapshot.basis == Decimal("11")
        assert matcher.state == PositionState.LONG_OPEN

    def test_exact_close_returns_to_flat(self, make_order):
        matcher = PositionMatcher(GROUP)
        matcher.apply(Execution.of(make_order("o1", "BUY", 100, 10)))

        events = matcher.apply(Execution.of(make_order("o2", "SELL", 100, 12, minutes=1)))

        assert [e.event_type for e in events] == [
            MatchEventType.SCALE_OUT,
            MatchEventType.CLOSE,
        ]
        assert all(e.action == FillAction.CLOSE for e in events)
        assert matcher.state == PositionState.FLAT
        assert matcher.snapshot().cost == Decimal("0")
        assert matcher.snapshot().side is None

    def test_cost_is_zero_after_uneven_close(self, make_order):
        matcher = PositionMatcher(GROUP)
        matcher.apply(Execution.of(make_order("o1", "BUY", 3, "10.01")))
        matcher.apply(Execution.of(make_order("o2", "SELL", 1, 11, minutes=1)))
        matcher.apply(Execution.of(make_order("o3", "SELL", 2, 11, minutes=2)))

        assert matcher.state == PositionState.FLAT
        assert matcher.snapshot().cost == Decimal("0")

    def test_history_records_transitions(self, make_order):
        matcher = PositionMatcher(GROUP)
        matcher.apply(Execution.of(make_order("o1", "BUY", 100, 10)))
        matcher.apply(Execution.of(make_order("o2", "SELL", 100, 12, minutes=1)))

        history = matcher.history
        assert [(h.from_state, h.to_state) for h in history] == [
            (PositionState.FLAT, PositionState.LONG_OPEN),
            (PositionState.LONG_OPEN, PositionState.FLAT),
        ]
        assert history[1].position_quantity == Decimal("0")

    def test_classify_does_not_mutate(self, make_order):
        matcher = PositionMatcher(GROUP)
        matcher.apply(Execution.of(make_order("o1", "BUY", 100, 10)))

        action = matcher.classify(Execution.of(make_order("o2", "SELL", 150, 12)))

        assert action == FillAction.FLIP
        assert matcher.state == PositionState.LONG_OPEN
        assert matcher.snapshot().quantity == Decimal("100")


# ============================================================
# FLIP TESTS
# ============================================================

class TestFlip:
    """Tests for a single order reversing the position."""

    def test_flip_long_to_short(self, make_order):
        matcher = PositionMatcher(GROUP)
        matcher.apply(Execution.of(make_order("o1", "BUY", 50, 10)))

        events = matcher.apply(Execution.of(make_order("o2", "SELL", 80, 11, minutes=1)))

        assert [e.event_type for e in events] == [
            MatchEventType.SCALE_OUT,
            MatchEventType.CLOSE,
            MatchEventType.OPEN,
        ]
        assert all(e.action == FillAction.FLIP for e in events)
        assert [e.quantity for e in events] == [Decimal("50"), Decimal("50"), Decimal("30")]
        assert {e.execution.order_id for e in events} == {"o2"}
        assert events[0].position_side == TradeSide.LONG
        assert events[2].position_side == TradeSide.SHORT

        snapshot = matcher.snapshot()
        assert matcher.state == PositionState.SHORT_OPEN
        assert snapshot.quantity == Decimal("30")
        assert snapshot.cost == Decimal("330")

    def test_flip_short_to_long(self, make_order):
        matcher = PositionMatcher(GROUP)
        matcher.apply(Execution.of(make_order("o1", "SELL", 20, 10)))

        events = matcher.apply(Execution.of(make_order("o2", "BUY", 25, 9, minutes=1)))

        assert events[-1].event_type == MatchEventType.OPEN
        assert events[-1].quantity == Decimal("5")
        assert matcher.state == PositionState.LONG_OPEN

    def test_flip_legs_sum_to_order_quantity(self, make_order):
        matcher = PositionMatcher(GROUP)
        matcher.apply(Execution.of(make_order("o1", "BUY", "0.7", 10)))

        events = matcher.apply(Execution.of(make_order("o2", "SELL", "1.2", 11, minutes=1)))

        closing, _, opening = events
        assert closing.quantity + opening.quantity == Decimal("1.2")

    def test_flip_into_disallowed_short_leaves_position(self, make_order):
        matcher = PositionMatcher(GROUP, no_shorts())
        matcher.apply(Execution.of(make_order("o1", "BUY", 50, 10)))

        with pytest.raises(ReconciliationRequiredError) as exc_info:
            matcher.apply(Execution.of(make_order("o2", "SELL", 80, 11, minutes=1)))

        assert exc_info.value.code == "REC_SHORT_NOT_ALLOWED"
        assert exc_info.value.order_id == "o2"
        assert matcher.state == PositionState.LONG_OPEN
        assert matcher.snapshot().quantity == Decimal("50")

    def test_short_open_disallowed(self, make_order):
        matcher = PositionMatcher(GROUP, no_shorts())

        with pytest.raises(ReconciliationRequiredError):
            matcher.apply(Execution.of(make_order("o1", "SELL", 10, 10)))

        assert matcher.state == PositionState.FLAT


# ============================================================
# GUARD TESTS
# ============================================================

class TestTransitionGuard:
    """Tests for TransitionGuard."""

    def test_flat_only_opens(self):
        allowed, _ = TransitionGuard.can_apply(PositionState.FLAT, FillAction.OPEN)
        assert allowed

        for action in (FillAction.SCALE_IN, FillAction.SCALE_OUT, FillAction.CLOSE, FillAction.FLIP):
            allowed, reason = TransitionGuard.can_apply(PositionState.FLAT, action)
            assert not allowed
            assert action.value in reason

    def test_open_cannot_open_again(self):
        allowed, _ = TransitionGuard.can_apply(PositionState.LONG_OPEN, FillAction.OPEN)
        assert not allowed

    def test_flat_to_flat_invalid(self):
        allowed, _ = TransitionGuard.can_transition(PositionState.FLAT, PositionState.FLAT)
        assert not allowed

    def test_reversal_transitions_valid(self):
        assert TransitionGuard.can_transition(
            PositionState.LONG_OPEN, PositionState.SHORT_OPEN
        )[0]
        assert TransitionGuard.can_transition(
            PositionState.SHORT_OPEN, PositionState.LONG_OPEN
        )[0]


# ============================================================
# CONTRACT TESTS
# ============================================================

class TestContract:
    """Tests for executions that violate the sequencer contract."""

    def test_foreign_group_rejected(self, make_order):
        matcher = PositionMatcher(GROUP)

        with pytest.raises(MatcherContractError) as exc_info:
            matcher.apply(Execution.of(make_order("o1", "BUY", 1, 10, symbol="MSFT")))

        assert exc_info.value.code == "GRP_CONTRACT_VIOLATION"

    def test_zero_quantity_rejected(self, make_order):
        order = make_order("o1", "BUY", 1, 10)

        with pytest.raises(MatcherContractError):
            PositionMatcher(GROUP).apply(Execution(order=order, quantity=Decimal("0")))

    def test_leg_larger_than_order_rejected(self, make_order):
        order = make_order("o1", "BUY", 1, 10)

        with pytest.raises(MatcherContractError):
            PositionMatcher(GROUP).apply(Execution(order=order, quantity=Decimal("2")))

    def test_missing_price_rejected(self, make_order):
        order = make_order("o1", "BUY", 1, None)

        with pytest.raises(MatcherContractError):
            PositionMatcher(GROUP).apply(Execution.of(order))


# ============================================================
# LISTENER TESTS
# ============================================================

class TestListeners:
    """Tests for transition listeners."""

    def test_listener_called(self, make_order):
        matcher = PositionMatcher(GROUP)
        listener = MagicMock()
        matcher.add_listener(listener)

        matcher.apply(Execution.of(make_order("o1", "BUY", 1, 10)))

        listener.assert_called_once()
        transition = listener.call_args[0][0]
        assert transition.action == FillAction.OPEN
        assert transition.order_id == "o1"

    def test_listener_error_does_not_break_matching(self, make_order):
        matcher = PositionMatcher(GROUP)
        matcher.add_listener(MagicMock(side_effect=RuntimeError("boom")))

        events = matcher.apply(Execution.of(make_order("o1", "BUY", 1, 10)))

        assert len(events) == 1
        assert matcher.state == PositionState.LONG_OPEN
