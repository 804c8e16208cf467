"""
Trade Construction Tests.

============================================================
PURPOSE
============================================================
End-to-end tests of the pure construction pipeline.

TEST CATEGORIES:
- Scenario tests: Round trip, partial close, flip
- Property tests: Determinism, conservation, exclusivity
- Isolation tests: One failing group does not affect others
- Continuation tests: Replaying an open trade

============================================================
"""

import random
from decimal import Decimal
from unittest.mock import patch

from trade_builder import (
    AssetClass,
    Execution,
    GroupKey,
    MatcherConfig,
    ProblemKind,
    Seed,
    TradeBuilderConfig,
    TradeSide,
    TradeStatus,
    build_group,
    build_trades,
    trade_id_for,
)


AAPL = GroupKey("acct-1", "AAPL")
MSFT = GroupKey("acct-1", "MSFT")


def seed_from(trade, orders):
    by_id = {o.id: o for o in orders}
    return Seed(
        trade_id=trade.id,
        executions=tuple(
            Execution(order=by_id[a.order_id], quantity=a.quantity)
            for a in trade.allocations
        ),
    )


# ============================================================
# SCENARIO TESTS
# ============================================================

class TestScenarios:
    """Tests for the canonical scenarios."""

    def test_simple_round_trip(self, make_order):
        result = build_trades([
            make_order("o1", "BUY", 100, 10, commission=1, fees="0.25"),
            make_order("o2", "SELL", 100, 12, minutes=5, commission=1, fees="0.25"),
        ])

        assert len(result.trades) == 1
        trade = result.trades[0]
        assert trade.side == TradeSide.LONG
        assert trade.status == TradeStatus.CLOSED
        assert trade.realized_pnl == Decimal("197.50")
        assert trade.open_quantity == trade.close_quantity == Decimal("100")
        assert result.problems == []

    def test_partial_close(self, make_order):
        result = build_trades([
            make_order("o1", "BUY", 100, 10),
            make_order("o2", "SELL", 40, 12, minutes=5),
        ])

        trade = result.trades[0]
        assert trade.status == TradeStatus.OPEN
        assert trade.open_quantity == Decimal("100")
        assert trade.close_quantity == Decimal("40")
        assert trade.realized_pnl == Decimal("80.00")

    def test_flip(self, make_order):
        result = build_trades([
            make_order("o1", "BUY", 50, 10),
            make_order("o2", "SELL", 80, 11, minutes=5),
        ])

        closed, opened = result.trades
        assert closed.side == TradeSide.LONG
        assert closed.status == TradeStatus.CLOSED
        assert closed.open_quantity == Decimal("50")
        assert closed.realized_pnl == Decimal("50.00")
        assert closed.orders_in_trade == ("o1", "o2")

        assert opened.side == TradeSide.SHORT
        assert opened.status == TradeStatus.OPEN
        assert opened.open_quantity == Decimal("30")
        assert opened.avg_entry_price == Decimal("11")
        assert opened.orders_in_trade == ("o2",)
        assert opened.id == trade_id_for("user-1", AAPL, "o2")
        assert opened.allocations[0].is_partial

    def test_flip_order_commission(self, make_order):
        result = build_trades([
            make_order("o1", "BUY", 50, 10),
            make_order("o2", "SELL", 80, 11, minutes=5, commission=8),
        ])

        closed, opened = result.trades
        # closing leg carries 50/80 of the commission
        assert closed.realized_pnl == Decimal("45.00")
        assert closed.commissions_total == Decimal("8")
        assert opened.commissions_total == Decimal("8")

    def test_repeated_round_trips(self, make_order):
        result = build_trades([
            make_order("o1", "BUY", 10, 10),
            make_order("o2", "SELL", 10, 11, minutes=1),
            make_order("o3", "BUY", 10, 12, minutes=2),
            make_order("o4", "SELL", 10, 13, minutes=3),
        ])

        assert [t.status for t in result.trades] == [TradeStatus.CLOSED, TradeStatus.CLOSED]
        assert len({t.id for t in result.trades}) == 2

    def test_skipped_orders_reported(self, make_order):
        result = build_trades([
            make_order("o1", "BUY", 10, 10),
            make_order("o2", "SELL", 10, None, minutes=1),
        ])

        assert result.trades[0].status == TradeStatus.OPEN
        assert [p.code for p in result.skipped] == ["SEQ_INVALID_PRICE"]
        assert result.failed_groups == []


# ============================================================
# PROPERTY TESTS
# ============================================================

class TestProperties:
    """Tests for determinism, conservation and exclusivity."""

    def _orders(self, make_order):
        return [
            make_order("o1", "BUY", 100, 10),
            make_order("o2", "SELL", 30, 11, minutes=1, commission="0.7"),
            make_order("o3", "SELL", 120, 12, minutes=2, fees="0.13"),
            make_order("o4", "BUY", 40, 9, minutes=3),
            make_order("o5", "BUY", 10, 10, minutes=4),
            make_order("m1", "BUY", 5, 300, symbol="MSFT"),
            make_order("m2", "SELL", 5, 310, symbol="MSFT", minutes=9),
        ]

    def test_deterministic_regardless_of_input_order(self, make_order):
        orders = self._orders(make_order)
        shuffled = list(orders)
        random.Random(7).shuffle(shuffled)

        first = build_trades(orders)
        second = build_trades(shuffled)

        assert first.trades == second.trades

    def test_quantity_conservation(self, make_order):
        orders = self._orders(make_order)
        result = build_trades(orders)

        for order in orders:
            allocated = sum(
                (t.allocated_quantity(order.id) for t in result.trades),
                Decimal("0"),
            )
            assert allocated == order.quantity, order.id

        for trade in result.trades:
            assert trade.close_quantity <= trade.open_quantity
            if trade.status == TradeStatus.CLOSED:
                assert trade.close_quantity == trade.open_quantity

    def test_order_exclusivity(self, make_order):
        result = build_trades(self._orders(make_order))

        owners = {}
        for trade in result.trades:
            for order_id in trade.orders_in_trade:
                owners.setdefault(order_id, set()).add(trade.id)

        # only the flip order o3 is shared, by exactly two trades
        shared = {order_id for order_id, ids in owners.items() if len(ids) > 1}
        assert shared == {"o3"}
        assert len(owners["o3"]) == 2

    def test_groups_in_key_order(self, make_order):
        result = build_trades(self._orders(make_order))

        assert list(result.groups) == [AAPL, MSFT]


# ============================================================
# ISOLATION TESTS
# ============================================================

class TestGroupIsolation:
    """Tests for per-group failure isolation."""

    def _no_equity_shorts(self):
        config = TradeBuilderConfig()
        config.matcher = MatcherConfig(allow_short_positions={AssetClass.EQUITY: False})
        return config

    def test_reconciliation_failure_isolated(self, make_order):
        result = build_trades(
            [
                make_order("a1", "BUY", 10, 10),
                make_order("a2", "SELL", 20, 11, minutes=1),
                make_order("m1", "BUY", 5, 300, symbol="MSFT"),
                make_order("m2", "SELL", 5, 310, symbol="MSFT", minutes=1),
            ],
            self._no_equity_shorts(),
        )

        assert result.failed_groups == [AAPL]
        assert [t.symbol for t in result.trades] == ["MSFT"]
        problem = result.groups[AAPL].problems[0]
        assert problem.kind == ProblemKind.RECONCILIATION_REQUIRED
        assert problem.code == "REC_SHORT_NOT_ALLOWED"
        assert problem.order_id == "a2"
        assert result.groups[AAPL].trades == []

    def test_unexpected_error_isolated(self, make_order):
        orders = [make_order("o1", "BUY", 10, 10)]
        executions = tuple(Execution.of(o) for o in orders)

        with patch(
            "trade_builder.builder.TradeAggregator.apply_all",
            side_effect=RuntimeError("boom"),
        ):
            outcome = build_group("user-1", AAPL, executions)

        assert not outcome.succeeded
        assert outcome.trades == []
        assert outcome.problems[0].code == "GRP_UNEXPECTED_ERROR"
        assert outcome.problems[0].kind == ProblemKind.GROUP_FAILURE


# ============================================================
# CONTINUATION TESTS
# ============================================================

class TestContinuation:
    """Tests for continuing an open trade from its allocations."""

    def _orders(self, make_order):
        return [
            make_order("o1", "BUY", 100, 10, commission=1),
            make_order("o2", "SELL", 40, 12, minutes=1, commission=1),
            make_order("o3", "SELL", 90, 11, minutes=2, commission=1),
            make_order("o4", "BUY", 20, 9, minutes=3),
        ]

    def test_continuation_matches_full_build(self, make_order):
        orders = self._orders(make_order)
        full = build_trades(orders)

        first = build_trades(orders[:2])
        open_trade = first.trades[0]
        seeds = {AAPL: seed_from(open_trade, orders)}
        second = build_trades(orders[2:], seeds=seeds)

        assert second.trades == full.trades
        assert second.trades[0].id == open_trade.id

    def test_continuation_of_flip_opened_trade(self, make_order):
        orders = [
            make_order("o1", "BUY", 50, 10),
            make_order("o2", "SELL", 80, 11, minutes=1, commission=8),
            make_order("o3", "BUY", 30, 10, minutes=2),
        ]
        full = build_trades(orders)

        first = build_trades(orders[:2])
        seeds = {AAPL: seed_from(first.trades[1], orders)}
        second = build_trades(orders[2:], seeds=seeds)

        assert second.trades == full.trades[1:]

    def test_seed_that_does_not_reopen_diverges(self, make_order):
        orders = [
            make_order("o1", "BUY", 10, 10),
            make_order("o2", "SELL", 10, 11, minutes=1),
        ]
        seed = Seed(
            trade_id=trade_id_for("user-1", AAPL, "o1"),
            executions=tuple(Execution.of(o) for o in orders),
        )

        result = build_trades(
            [make_order("o3", "BUY", 5, 10, minutes=2)],
            seeds={AAPL: seed},
        )

        assert result.failed_groups == [AAPL]
        assert result.groups[AAPL].problems[0].code == "REC_SEED_DIVERGED"
