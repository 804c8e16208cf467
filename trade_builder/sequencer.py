"""
Trade Builder - Order Sequencer.

============================================================
PURPOSE
============================================================
Validates, deduplicates and orders executions per group.

SEQUENCING STEPS:
1. Drop duplicate order ids (earliest by execution time, sequence
   and content wins, whatever the input order)
2. Skip unmatchable orders with a diagnostic
3. Group by (account, symbol)
4. Sort by (executed_at, sequence, id)

CRITICAL PRINCIPLE:
    "Determinism of the whole pipeline rests on this order being total."

============================================================
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple

from .clock import as_utc
from .config import SequencerConfig
from .errors import RebuildProblem
from .types import (
    Execution,
    GroupKey,
    Order,
    OrderStatus,
    SequencingError,
)


logger = logging.getLogger(__name__)


# ============================================================
# SEQUENCE RESULT
# ============================================================

@dataclass
class SequenceResult:
    """Output of the sequencer."""

    groups: Dict[GroupKey, Tuple[Execution, ...]] = field(default_factory=dict)
    """Ordered executions per group, groups in key order."""

    skipped: List[RebuildProblem] = field(default_factory=list)
    """Skipped order diagnostics."""

    user_id: Optional[str] = None
    """Owner of the sequenced orders."""

    @property
    def order_count(self) -> int:
        """Number of matchable orders."""
        return sum(len(executions) for executions in self.groups.values())


def execution_sort_key(order: Order):
    """Total order within a group."""
    return (as_utc(order.executed_at), order.sequence, order.id)


def duplicate_rank(order: Order):
    """Order among records sharing an id; the lowest is kept."""
    missing = order.executed_at is None
    return (
        missing,
        None if missing else as_utc(order.executed_at),
        order.sequence,
        order.status.value,
        order.side.value,
        str(order.quantity),
        str(order.price),
        str(order.commission),
        str(order.fees),
    )


# ============================================================
# SEQUENCER
# ============================================================

class OrderSequencer:
    """
    Turns an unordered order collection into ordered per-group streams.
    """

    def __init__(self, config: Optional[SequencerConfig] = None):
        self._config = config or SequencerConfig()

    def sequence(self, orders: Iterable[Order]) -> SequenceResult:
        """
        Sequence orders.

        Args:
            orders: Orders of a single user, any order

        Returns:
            SequenceResult

        Raises:
            SequencingError: If orders belong to more than one user
        """
        result = SequenceResult()
        by_id: Dict[str, List[Order]] = {}
        grouped: Dict[GroupKey, List[Order]] = {}

        for order in orders:
            if result.user_id is None:
                result.user_id = order.user_id
            elif order.user_id != result.user_id:
                raise SequencingError(
                    f"Orders of users {result.user_id} and {order.user_id} "
                    f"cannot be sequenced together"
                )
            by_id.setdefault(order.id, []).append(order)

        for order_id in sorted(by_id):
            order, *duplicates = sorted(by_id[order_id], key=duplicate_rank)
            for duplicate in duplicates:
                self._skip(
                    result,
                    duplicate,
                    "SEQ_DUPLICATE_ORDER",
                    f"Duplicate order {order_id} ignored",
                )

            code, reason = self._check(order)
            if code:
                self._skip(result, order, code, reason)
                continue

            grouped.setdefault(order.group_key, []).append(order)

        for key in sorted(grouped, key=GroupKey.sort_key):
            ordered = sorted(grouped[key], key=execution_sort_key)
            result.groups[key] = tuple(Execution.of(order) for order in ordered)

        logger.debug(
            f"Sequenced {result.order_count} orders into {len(result.groups)} "
            f"groups ({len(result.skipped)} skipped)"
        )
        return result

    def _check(self, order: Order) -> Tuple[Optional[str], str]:
        """Return (code, reason) if the order is not matchable."""
        if self._config.skip_unfilled and order.status != OrderStatus.FILLED:
            return "SEQ_NOT_FILLED", f"Order {order.id} has status {order.status.value}"

        if order.executed_at is None:
            return "SEQ_MISSING_EXECUTED_AT", f"Order {order.id} has no execution time"

        if order.quantity is None or order.quantity <= 0:
            return "SEQ_NON_POSITIVE_QUANTITY", f"Order {order.id} has quantity {order.quantity}"

        if order.price is None or order.price < 0:
            return "SEQ_INVALID_PRICE", f"Order {order.id} has price {order.price}"

        if order.price == Decimal("0") and not self._config.allow_zero_price:
            return "SEQ_INVALID_PRICE", f"Order {order.id} has zero price"

        return None, ""

    def _skip(
        self,
        result: SequenceResult,
        order: Order,
        code: str,
        reason: str,
    ) -> None:
        logger.warning(f"Skipping order {order.id} ({order.group_key}): {reason}")
        result.skipped.append(
            RebuildProblem.from_code(
                code,
                reason,
                group=order.group_key,
                order_id=order.id,
            )
        )
