"""
Trade Builder - Trade Construction.

============================================================
PURPOSE
============================================================
Pure trade construction: orders in, trades and diagnostics out.

PIPELINE (per group, strictly sequential):
    Sequencer -> PositionMatcher -> TradeAggregator

FAILURE ISOLATION:
- A failing group reports problems and produces no trades
- Other groups are unaffected

No persistence, no shared state. Persistence and concurrency
belong to the rebuild controller.

============================================================
"""

import logging
from dataclasses import dataclass, field
from decimal import Context, localcontext
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .clock import as_utc
from .config import TradeBuilderConfig
from .aggregator import TradeAggregator
from .errors import RebuildProblem
from .sequencer import OrderSequencer, SequenceResult
from .state_machine import PositionMatcher
from .types import (
    Execution,
    GroupKey,
    MatcherContractError,
    Order,
    ReconciliationRequiredError,
    Trade,
)


logger = logging.getLogger(__name__)


# ============================================================
# RESULT TYPES
# ============================================================

@dataclass(frozen=True)
class Seed:
    """Legs of an existing open trade, replayed before new executions."""

    trade_id: str
    executions: Tuple[Execution, ...]


@dataclass
class GroupOutcome:
    """Result of building one group."""

    group: GroupKey
    trades: List[Trade] = field(default_factory=list)
    problems: List[RebuildProblem] = field(default_factory=list)
    executions_processed: int = 0

    @property
    def succeeded(self) -> bool:
        """Whether the group produced trades that may be persisted."""
        return not any(p.is_fatal for p in self.problems)


@dataclass
class BuildResult:
    """Result of building all groups of one user."""

    user_id: Optional[str] = None
    groups: Dict[GroupKey, GroupOutcome] = field(default_factory=dict)
    skipped: List[RebuildProblem] = field(default_factory=list)

    @property
    def trades(self) -> List[Trade]:
        """Trades of every successful group, in group order."""
        trades: List[Trade] = []
        for outcome in self.groups.values():
            if outcome.succeeded:
                trades.extend(outcome.trades)
        return trades

    @property
    def problems(self) -> List[RebuildProblem]:
        """Skipped orders followed by group problems."""
        problems = list(self.skipped)
        for outcome in self.groups.values():
            problems.extend(outcome.problems)
        return problems

    @property
    def failed_groups(self) -> List[GroupKey]:
        return [key for key, outcome in self.groups.items() if not outcome.succeeded]


# ============================================================
# GROUP CONSTRUCTION
# ============================================================

def build_group(
    user_id: str,
    group: GroupKey,
    executions: Sequence[Execution],
    config: Optional[TradeBuilderConfig] = None,
    seed: Optional[Seed] = None,
) -> GroupOutcome:
    """
    Build the trades of one group.

    Never raises: every failure is reported on the outcome.

    Args:
        user_id: Owning user
        group: Group key
        executions: New executions in sequencer order
        config: Configuration
        seed: Open trade to continue

    Returns:
        GroupOutcome
    """
    config = config or TradeBuilderConfig()
    outcome = GroupOutcome(group=group)

    try:
        with localcontext(Context(prec=config.matcher.decimal_precision)):
            matcher = PositionMatcher(group, config.matcher)
            aggregator = TradeAggregator(user_id, group, config.aggregator)

            if seed is not None:
                _replay_seed(matcher, aggregator, group, seed, executions)

            for execution in executions:
                aggregator.apply_all(matcher.apply(execution))
                outcome.executions_processed += 1

            outcome.trades = aggregator.trades()

    except ReconciliationRequiredError as e:
        logger.error(f"Reconciliation required for {group}: {e}")
        outcome.trades = []
        outcome.problems.append(
            RebuildProblem.from_code(e.code, str(e), group=group, order_id=e.order_id)
        )

    except MatcherContractError as e:
        logger.error(f"Matcher contract violated for {group}: {e}")
        outcome.trades = []
        outcome.problems.append(
            RebuildProblem.from_code(
                "GRP_CONTRACT_VIOLATION", str(e), group=group, order_id=e.order_id
            )
        )

    except Exception as e:
        logger.error(f"Failed to build trades for {group}: {e}", exc_info=True)
        outcome.trades = []
        outcome.problems.append(
            RebuildProblem.from_code("GRP_UNEXPECTED_ERROR", str(e), group=group)
        )

    return outcome


def _replay_seed(
    matcher: PositionMatcher,
    aggregator: TradeAggregator,
    group: GroupKey,
    seed: Seed,
    executions: Sequence[Execution],
) -> None:
    aggregator.apply_all(matcher.apply_all(seed.executions))

    if not matcher.state.is_open() or aggregator.current_trade_id != seed.trade_id:
        raise ReconciliationRequiredError(
            f"{group}: replaying open trade {seed.trade_id} did not reproduce it",
            code="REC_SEED_DIVERGED",
        )

    if seed.executions and executions:
        last_seen = max(as_utc(e.executed_at) for e in seed.executions)
        first_new = as_utc(executions[0].executed_at)
        if first_new < last_seen:
            logger.warning(
                f"{group}: order {executions[0].order_id} predates open trade "
                f"{seed.trade_id}; a full rebuild may attribute it differently"
            )


# ============================================================
# PUBLIC ENTRY POINT
# ============================================================

def build_sequenced(
    sequenced: SequenceResult,
    config: Optional[TradeBuilderConfig] = None,
    seeds: Optional[Mapping[GroupKey, Seed]] = None,
) -> BuildResult:
    """Build every group of an already sequenced order set."""
    config = config or TradeBuilderConfig()
    seeds = seeds or {}
    result = BuildResult(user_id=sequenced.user_id, skipped=list(sequenced.skipped))

    keys = sorted(set(sequenced.groups) | set(seeds), key=GroupKey.sort_key)
    for key in keys:
        result.groups[key] = build_group(
            sequenced.user_id,
            key,
            sequenced.groups.get(key, ()),
            config,
            seeds.get(key),
        )
    return result


def build_trades(
    orders: Iterable[Order],
    config: Optional[TradeBuilderConfig] = None,
    seeds: Optional[Mapping[GroupKey, Seed]] = None,
) -> BuildResult:
    """
    Reconstruct trades from orders.

    Args:
        orders: Orders of one user, any order
        config: Configuration
        seeds: Open trades to continue, per group

    Returns:
        BuildResult with trades and diagnostics
    """
    config = config or TradeBuilderConfig()
    sequenced = OrderSequencer(config.sequencer).sequence(orders)
    if sequenced.user_id is None and seeds:
        first = next(iter(seeds.values()))
        if first.executions:
            sequenced.user_id = first.executions[0].order.user_id
    return build_sequenced(sequenced, config, seeds)
