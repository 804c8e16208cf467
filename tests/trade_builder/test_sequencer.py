"""
Order Sequencer Tests.

============================================================
PURPOSE
============================================================
Tests for validation, grouping and ordering of executions.

TEST CATEGORIES:
- Skip tests: Malformed orders are reported, not matched
- Ordering tests: Total order within a group
- Grouping tests: One stream per account and symbol

============================================================
"""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from trade_builder import (
    OrderSequencer,
    OrderStatus,
    ProblemKind,
    SequencerConfig,
    SequencingError,
)
from trade_builder.types import GroupKey


# ============================================================
# SKIP TESTS
# ============================================================

class TestSkippedOrders:
    """Tests for orders excluded from matching."""

    def test_unfilled_order_is_skipped(self, make_order):
        result = OrderSequencer().sequence([
            make_order("o1", "BUY", 100, 10, status=OrderStatus.CANCELLED),
        ])

        assert result.groups == {}
        assert [p.code for p in result.skipped] == ["SEQ_NOT_FILLED"]
        assert result.skipped[0].kind == ProblemKind.SKIPPED_ORDER
        assert result.skipped[0].order_id == "o1"

    def test_missing_execution_time_is_skipped(self, make_order):
        result = OrderSequencer().sequence([
            make_order("o1", "BUY", 100, 10, executed_at=None),
        ])

        assert [p.code for p in result.skipped] == ["SEQ_MISSING_EXECUTED_AT"]

    @pytest.mark.parametrize("quantity", [0, -5])
    def test_non_positive_quantity_is_skipped(self, make_order, quantity):
        result = OrderSequencer().sequence([
            make_order("o1", "BUY", quantity, 10),
        ])

        assert [p.code for p in result.skipped] == ["SEQ_NON_POSITIVE_QUANTITY"]

    @pytest.mark.parametrize("price", [None, -1])
    def test_invalid_price_is_skipped(self, make_order, price):
        result = OrderSequencer().sequence([
            make_order("o1", "BUY", 100, price),
        ])

        assert [p.code for p in result.skipped] == ["SEQ_INVALID_PRICE"]

    def test_zero_price_allowed_by_default(self, make_order):
        result = OrderSequencer().sequence([make_order("o1", "SELL", 1, 0)])

        assert result.skipped == []
        assert result.order_count == 1

    def test_zero_price_skipped_when_disallowed(self, make_order):
        sequencer = OrderSequencer(SequencerConfig(allow_zero_price=False))
        result = sequencer.sequence([make_order("o1", "SELL", 1, 0)])

        assert [p.code for p in result.skipped] == ["SEQ_INVALID_PRICE"]

    def test_duplicate_order_id_keeps_one(self, make_order):
        first = make_order("o1", "BUY", 100, 10)
        second = make_order("o1", "BUY", 50, 11)

        result = OrderSequencer().sequence([first, second])

        executions = result.groups[GroupKey("acct-1", "AAPL")]
        assert len(executions) == 1
        assert executions[0].quantity == Decimal("100")
        assert [p.code for p in result.skipped] == ["SEQ_DUPLICATE_ORDER"]

    def test_duplicate_winner_independent_of_input_order(self, make_order):
        early = make_order("o1", "BUY", 50, 11, minutes=0)
        late = make_order("o1", "BUY", 100, 10, minutes=5)

        forward = OrderSequencer().sequence([late, early])
        backward = OrderSequencer().sequence([early, late])

        assert forward.groups == backward.groups
        executions = forward.groups[GroupKey("acct-1", "AAPL")]
        assert executions[0].quantity == Decimal("50")
        assert [p.code for p in forward.skipped] == ["SEQ_DUPLICATE_ORDER"]

    def test_duplicate_with_missing_time_loses(self, make_order):
        broken = make_order("o1", "BUY", 100, 10, executed_at=None)
        valid = make_order("o1", "BUY", 100, 10, minutes=30)

        result = OrderSequencer().sequence([broken, valid])

        assert result.order_count == 1
        assert [p.code for p in result.skipped] == ["SEQ_DUPLICATE_ORDER"]

    def test_skip_carries_group(self, make_order):
        result = OrderSequencer().sequence([
            make_order("o1", "BUY", 0, 10, account_id="acct-9", symbol="TSLA"),
        ])

        problem = result.skipped[0]
        assert problem.group == GroupKey("acct-9", "TSLA")
        assert not problem.is_fatal

    def test_valid_orders_still_processed(self, make_order):
        result = OrderSequencer().sequence([
            make_order("bad", "BUY", 100, None),
            make_order("good", "BUY", 100, 10),
        ])

        assert result.order_count == 1
        assert len(result.skipped) == 1


# ============================================================
# ORDERING TESTS
# ============================================================

class TestOrdering:
    """Tests for the total order within a group."""

    def test_sorted_by_execution_time(self, make_order):
        result = OrderSequencer().sequence([
            make_order("late", "SELL", 100, 12, minutes=30),
            make_order("early", "BUY", 100, 10, minutes=0),
        ])

        ids = [e.order_id for e in result.groups[GroupKey("acct-1", "AAPL")]]
        assert ids == ["early", "late"]

    def test_tie_broken_by_sequence(self, make_order):
        result = OrderSequencer().sequence([
            make_order("a", "SELL", 100, 12, sequence=2),
            make_order("b", "BUY", 100, 10, sequence=1),
        ])

        ids = [e.order_id for e in result.groups[GroupKey("acct-1", "AAPL")]]
        assert ids == ["b", "a"]

    def test_tie_broken_by_order_id(self, make_order):
        result = OrderSequencer().sequence([
            make_order("b", "SELL", 100, 12),
            make_order("a", "BUY", 100, 10),
        ])

        ids = [e.order_id for e in result.groups[GroupKey("acct-1", "AAPL")]]
        assert ids == ["a", "b"]

    def test_naive_times_are_utc(self, make_order):
        naive = datetime(2024, 3, 4, 15, 0)
        aware = datetime(2024, 3, 4, 14, 59, tzinfo=timezone.utc)

        result = OrderSequencer().sequence([
            make_order("naive", "SELL", 100, 12, executed_at=naive),
            make_order("aware", "BUY", 100, 10, executed_at=aware),
        ])

        ids = [e.order_id for e in result.groups[GroupKey("acct-1", "AAPL")]]
        assert ids == ["aware", "naive"]

    def test_input_order_does_not_matter(self, make_order):
        orders = [
            make_order(f"o{i}", "BUY", 1, 10, minutes=i % 3, sequence=i)
            for i in range(9)
        ]

        forward = OrderSequencer().sequence(orders)
        backward = OrderSequencer().sequence(list(reversed(orders)))

        assert forward.groups == backward.groups

    def test_executions_are_full_legs(self, make_order):
        result = OrderSequencer().sequence([make_order("o1", "BUY", 100, 10)])

        execution = result.groups[GroupKey("acct-1", "AAPL")][0]
        assert execution.quantity == execution.order.quantity


# ============================================================
# GROUPING TESTS
# ============================================================

class TestGrouping:
    """Tests for grouping by account and symbol."""

    def test_groups_by_account_and_symbol(self, make_order):
        result = OrderSequencer().sequence([
            make_order("o1", "BUY", 100, 10, account_id="acct-2", symbol="AAPL"),
            make_order("o2", "BUY", 100, 10, account_id="acct-1", symbol="MSFT"),
            make_order("o3", "BUY", 100, 10, account_id="acct-1", symbol="AAPL"),
        ])

        assert list(result.groups) == [
            GroupKey("acct-1", "AAPL"),
            GroupKey("acct-1", "MSFT"),
            GroupKey("acct-2", "AAPL"),
        ]
        assert result.user_id == "user-1"

    def test_mixed_users_rejected(self, make_order):
        with pytest.raises(SequencingError):
            OrderSequencer().sequence([
                make_order("o1", "BUY", 100, 10, user_id="user-1"),
                make_order("o2", "BUY", 100, 10, user_id="user-2"),
            ])

    def test_empty_input(self):
        result = OrderSequencer().sequence([])

        assert result.groups == {}
        assert result.skipped == []
        assert result.user_id is None
        assert result.order_count == 0
