"""
Trade Builder - Rebuild Controller.

============================================================
PURPOSE
============================================================
Runs trade reconstruction against a store.

SCOPES:
- INCREMENTAL: unconsumed orders only. An open trade in a group
  with new orders is replayed from its allocations, continued
  and replaced under the same id. Closed trades are untouched.
- FULL: clear every trade and tag of the user, then rebuild
  from all orders.

FLOW (one user):
    fetch -> sequence -> build groups concurrently -> barrier
          -> persist each successful group atomically

CONCURRENCY:
- Groups of one user: bounded worker threads
- Users of a batch: bounded tasks, cancellation between users
- One rebuild per user at a time

============================================================
"""

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .adapters.base import TradeStore
from .builder import GroupOutcome, Seed, build_group
from .clock import utc_now
from .config import TradeBuilderConfig
from .errors import RebuildProblem
from .sequencer import OrderSequencer
from .types import (
    AtomicityError,
    Execution,
    GroupKey,
    RebuildFailedError,
    RebuildInProgressError,
    RebuildScope,
    Trade,
    TradeBuilderError,
)


logger = logging.getLogger(__name__)


# ============================================================
# RESULTS
# ============================================================

@dataclass
class RebuildResult:
    """Outcome of rebuilding one user."""

    user_id: str
    scope: RebuildScope

    trades: List[Trade] = field(default_factory=list)
    """Trades written by this run (the delta)."""

    replaced_trade_ids: List[str] = field(default_factory=list)
    """Open trades replaced by a continued version."""

    problems: List[RebuildProblem] = field(default_factory=list)
    orders_processed: int = 0
    groups_processed: int = 0
    cleared_trades: int = 0

    started_at: datetime = field(default_factory=utc_now)
    completed_at: Optional[datetime] = None

    @property
    def failed_groups(self) -> List[GroupKey]:
        """Groups with a fatal problem, sorted."""
        groups = {p.group for p in self.problems if p.is_fatal and p.group is not None}
        return sorted(groups, key=GroupKey.sort_key)

    @property
    def has_failures(self) -> bool:
        return bool(self.failed_groups)

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()

    def raise_for_failures(self) -> None:
        """
        Raise if any group failed.

        Raises:
            RebuildFailedError: Naming every failed account/symbol
        """
        failed = self.failed_groups
        if not failed:
            return
        details = "; ".join(
            f"{p.group}: {p.code}" for p in self.problems if p.is_fatal and p.group is not None
        )
        raise RebuildFailedError(self.user_id, tuple(failed), details)

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "user_id": self.user_id,
            "scope": self.scope.value,
            "trades_written": len(self.trades),
            "replaced_trade_ids": list(self.replaced_trade_ids),
            "orders_processed": self.orders_processed,
            "groups_processed": self.groups_processed,
            "cleared_trades": self.cleared_trades,
            "failed_groups": [str(g) for g in self.failed_groups],
            "problems": [p.to_dict() for p in self.problems],
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


@dataclass
class BatchRebuildResult:
    """Outcome of a multi-user rebuild job."""

    scope: RebuildScope
    results: Dict[str, RebuildResult] = field(default_factory=dict)

    errors: Dict[str, Exception] = field(default_factory=dict)
    """Users whose rebuild did not run to completion."""

    cancelled: List[str] = field(default_factory=list)
    """Users not started because the job was cancelled."""

    @property
    def failed_users(self) -> List[str]:
        failed = set(self.errors)
        failed.update(u for u, r in self.results.items() if r.has_failures)
        return sorted(failed)

    @property
    def has_failures(self) -> bool:
        return bool(self.failed_users)

    @property
    def trades_written(self) -> int:
        return sum(len(r.trades) for r in self.results.values())


# ============================================================
# REBUILD CONTROLLER
# ============================================================

class RebuildController:
    """
    Rebuilds a user's trades against a store.

    Holds no trade state; only the per-user lock registry.
    """

    def __init__(
        self,
        store: TradeStore,
        config: Optional[TradeBuilderConfig] = None,
    ):
        """
        Initialize controller.

        Args:
            store: Order and trade store
            config: Configuration
        """
        self._store = store
        self._config = config or TradeBuilderConfig()
        self._sequencer = OrderSequencer(self._config.sequencer)
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_holders: Dict[str, int] = {}

    @property
    def config(self) -> TradeBuilderConfig:
        return self._config

    def is_rebuilding(self, user_id: str) -> bool:
        """Check if a rebuild for the user is running."""
        lock = self._locks.get(user_id)
        return lock is not None and lock.locked()

    # --------------------------------------------------------
    # ENTRY POINTS
    # --------------------------------------------------------

    async def process_user_orders(self, user_id: str) -> RebuildResult:
        """Incremental rebuild: match the user's unconsumed orders."""
        return await self.rebuild(user_id, RebuildScope.INCREMENTAL)

    async def rebuild_all_trades(self, user_id: str) -> RebuildResult:
        """Full rebuild: clear the user's trades and rebuild from all orders."""
        return await self.rebuild(user_id, RebuildScope.FULL)

    async def rebuild(
        self,
        user_id: str,
        scope: RebuildScope = RebuildScope.INCREMENTAL,
    ) -> RebuildResult:
        """
        Rebuild one user's trades.

        Rebuilds of one user are serialized within this controller only;
        separate processes sharing a store are not excluded. A user's
        lock is dropped once no rebuild holds or waits on it.

        Args:
            user_id: User to rebuild
            scope: INCREMENTAL or FULL

        Returns:
            RebuildResult

        Raises:
            RebuildInProgressError: If a rebuild for the user is running
                and concurrent rebuilds are rejected
            StoreError: If orders or trades cannot be read
            AtomicityError: If clearing trades for a full rebuild fails
        """
        lock = self._locks.setdefault(user_id, asyncio.Lock())
        if lock.locked() and self._config.concurrency.reject_concurrent_rebuilds:
            logger.warning(f"Rejected {scope.value} rebuild for user {user_id}: already running")
            raise RebuildInProgressError(user_id)

        self._lock_holders[user_id] = self._lock_holders.get(user_id, 0) + 1
        try:
            async with lock:
                return await self._run(user_id, scope)
        finally:
            self._lock_holders[user_id] -= 1
            if not self._lock_holders[user_id]:
                del self._lock_holders[user_id]
                del self._locks[user_id]

    async def rebuild_users(
        self,
        user_ids: Iterable[str],
        scope: RebuildScope = RebuildScope.INCREMENTAL,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> BatchRebuildResult:
        """
        Rebuild several users concurrently.

        A set cancel_event stops users that have not started;
        a user already running completes.

        Args:
            user_ids: Users to rebuild
            scope: Rebuild scope
            cancel_event: Cancellation signal

        Returns:
            BatchRebuildResult
        """
        batch = BatchRebuildResult(scope=scope)
        semaphore = asyncio.Semaphore(self._config.concurrency.max_concurrent_users)
        users = list(dict.fromkeys(user_ids))

        async def run_user(user_id: str) -> None:
            async with semaphore:
                if cancel_event is not None and cancel_event.is_set():
                    batch.cancelled.append(user_id)
                    return
                try:
                    batch.results[user_id] = await self.rebuild(user_id, scope)
                except TradeBuilderError as e:
                    logger.error(f"Rebuild for user {user_id} failed: {e}")
                    batch.errors[user_id] = e
                except Exception as e:
                    logger.error(f"Rebuild for user {user_id} failed: {e}", exc_info=True)
                    batch.errors[user_id] = e

        await asyncio.gather(*(run_user(u) for u in users))

        if batch.cancelled:
            logger.warning(f"Batch cancelled, {len(batch.cancelled)} users not rebuilt")
        logger.info(
            f"Batch {scope.value} rebuild finished: {len(batch.results)} users, "
            f"{batch.trades_written} trades written, {len(batch.failed_users)} failed"
        )
        return batch

    # --------------------------------------------------------
    # ONE USER
    # --------------------------------------------------------

    async def _run(self, user_id: str, scope: RebuildScope) -> RebuildResult:
        result = RebuildResult(user_id=user_id, scope=scope)
        logger.info(f"Starting {scope.value} rebuild for user {user_id}")

        seeds: Dict[GroupKey, Seed] = {}
        if scope == RebuildScope.FULL:
            result.cleared_trades = await self._store.clear_user_trades(user_id)
            orders = await self._store.fetch_all_orders(user_id)
        else:
            orders = await self._store.fetch_unconsumed_orders(user_id)

        sequenced = self._sequencer.sequence(orders)
        result.problems.extend(sequenced.skipped)
        result.orders_processed = sequenced.order_count

        groups = sorted(sequenced.groups, key=GroupKey.sort_key)
        if scope == RebuildScope.INCREMENTAL and groups:
            seeds, seed_problems = await self._load_seeds(user_id, groups)
            result.problems.extend(seed_problems)
            failed = {p.group for p in seed_problems}
            groups = [g for g in groups if g not in failed]

        outcomes = await self._build_groups(user_id, groups, sequenced.groups, seeds)
        result.groups_processed = len(outcomes)

        for key, outcome in outcomes:
            result.problems.extend(outcome.problems)
            if not outcome.succeeded:
                logger.error(f"{key}: no trades written, group failed")
                continue
            await self._persist_group(user_id, key, outcome, seeds.get(key), result)

        result.completed_at = utc_now()
        logger.info(
            f"Finished {scope.value} rebuild for user {user_id}: "
            f"{result.orders_processed} orders, {len(result.trades)} trades written, "
            f"{len(result.failed_groups)} failed groups"
        )
        return result

    async def _load_seeds(
        self,
        user_id: str,
        groups: Sequence[GroupKey],
    ) -> Tuple[Dict[GroupKey, Seed], List[RebuildProblem]]:
        """Open trades to continue, for groups that have new orders."""
        wanted = set(groups)
        open_trades: Dict[GroupKey, List[Trade]] = defaultdict(list)
        for trade in await self._store.fetch_open_trades(user_id):
            if trade.group_key in wanted:
                open_trades[trade.group_key].append(trade)

        seeds: Dict[GroupKey, Seed] = {}
        problems: List[RebuildProblem] = []

        for key in sorted(open_trades, key=GroupKey.sort_key):
            trades = open_trades[key]
            if len(trades) > 1:
                problems.append(
                    RebuildProblem.from_code(
                        "REC_MULTIPLE_OPEN_TRADES",
                        f"{key}: {len(trades)} open trades",
                        group=key,
                    )
                )
                continue

            trade = trades[0]
            order_ids = list(dict.fromkeys(a.order_id for a in trade.allocations))
            orders = {
                o.id: o for o in await self._store.fetch_orders_by_ids(user_id, order_ids)
            }
            missing = [order_id for order_id in order_ids if order_id not in orders]
            if missing:
                problems.append(
                    RebuildProblem.from_code(
                        "REC_SEED_ORDER_MISSING",
                        f"{key}: open trade {trade.id} references missing orders {missing}",
                        group=key,
                        order_id=missing[0],
                    )
                )
                continue

            seeds[key] = Seed(
                trade_id=trade.id,
                executions=tuple(
                    Execution(order=orders[a.order_id], quantity=a.quantity)
                    for a in trade.allocations
                ),
            )

        for problem in problems:
            logger.error(problem.message)
        return seeds, problems

    async def _build_groups(
        self,
        user_id: str,
        groups: Sequence[GroupKey],
        executions: Dict[GroupKey, Tuple[Execution, ...]],
        seeds: Dict[GroupKey, Seed],
    ) -> List[Tuple[GroupKey, GroupOutcome]]:
        """Build groups in worker threads and wait for all of them."""
        semaphore = asyncio.Semaphore(self._config.concurrency.max_concurrent_groups)

        async def run_group(key: GroupKey) -> GroupOutcome:
            async with semaphore:
                return await asyncio.to_thread(
                    build_group,
                    user_id,
                    key,
                    executions[key],
                    self._config,
                    seeds.get(key),
                )

        results = await asyncio.gather(
            *(run_group(key) for key in groups),
            return_exceptions=True,
        )

        outcomes: List[Tuple[GroupKey, GroupOutcome]] = []
        for key, outcome in zip(groups, results):
            if isinstance(outcome, Exception):
                logger.error(f"Worker for {key} failed: {outcome}")
                outcome = GroupOutcome(
                    group=key,
                    problems=[
                        RebuildProblem.from_code("GRP_UNEXPECTED_ERROR", str(outcome), group=key)
                    ],
                )
            elif isinstance(outcome, BaseException):
                raise outcome
            outcomes.append((key, outcome))
        return outcomes

    async def _persist_group(
        self,
        user_id: str,
        key: GroupKey,
        outcome: GroupOutcome,
        seed: Optional[Seed],
        result: RebuildResult,
    ) -> None:
        replaced = [seed.trade_id] if seed is not None else []
        try:
            await self._store.replace_group_trades(
                user_id,
                key,
                outcome.trades,
                replaced,
                order_tags_for(outcome.trades),
            )
        except AtomicityError as e:
            result.problems.append(
                RebuildProblem.from_code("ATO_GROUP_WRITE_FAILED", str(e), group=key)
            )
            return

        result.trades.extend(outcome.trades)
        result.replaced_trade_ids.extend(replaced)
        logger.info(
            f"{key}: wrote {len(outcome.trades)} trades "
            f"from {outcome.executions_processed} executions"
        )


def order_tags_for(trades: Sequence[Trade]) -> Dict[str, str]:
    """
    Order id to trade id tags for a group's trades.

    An order split by a flip is tagged with the later trade.
    """
    tags: Dict[str, str] = {}
    for trade in trades:
        for allocation in trade.allocations:
            tags[allocation.order_id] = trade.id
    return tags
