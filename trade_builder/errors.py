"""
Trade Builder - Error Taxonomy.

============================================================
PURPOSE
============================================================
Classification of everything that can go wrong in a rebuild.

PROBLEM KINDS:
1. Skipped Order - Malformed order excluded from matching
2. Group Failure - Unexpected error isolated to one group
3. Reconciliation Required - Executions cannot be matched safely
4. Atomicity Failure - Group write rolled back

PROPAGATION:
- Skipped orders and group failures are recovered locally
- Reconciliation and atomicity failures are surfaced per user
- A rebuild never hides which account/symbol failed

============================================================
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Optional, Set

from .clock import utc_now
from .types import GroupKey


# ============================================================
# PROBLEM KINDS
# ============================================================

class ProblemKind(Enum):
    """Problem classification."""

    SKIPPED_ORDER = "SKIPPED_ORDER"
    """Order excluded from matching. Run continues."""

    GROUP_FAILURE = "GROUP_FAILURE"
    """Error while processing one group. Other groups continue."""

    RECONCILIATION_REQUIRED = "RECONCILIATION_REQUIRED"
    """Group cannot be matched without guessing. No trade produced."""

    ATOMICITY_FAILURE = "ATOMICITY_FAILURE"
    """Group write rolled back. Orders remain unconsumed."""


class ErrorSeverity(Enum):
    """Problem severity levels."""

    WARNING = "WARNING"
    """Non-critical, informational."""

    ERROR = "ERROR"
    """Standard error, needs attention."""

    CRITICAL = "CRITICAL"
    """Needs manual reconciliation or retry."""


# ============================================================
# ERROR CODE REGISTRY
# ============================================================

@dataclass
class ErrorCodeInfo:
    """Information about an error code."""

    code: str
    kind: ProblemKind
    severity: ErrorSeverity
    is_retryable: bool
    description: str
    recommended_action: str


ERROR_CODES: Dict[str, ErrorCodeInfo] = {
    # ========== SKIPPED ORDERS ==========
    "SEQ_MISSING_EXECUTED_AT": ErrorCodeInfo(
        code="SEQ_MISSING_EXECUTED_AT",
        kind=ProblemKind.SKIPPED_ORDER,
        severity=ErrorSeverity.WARNING,
        is_retryable=False,
        description="Order has no execution time",
        recommended_action="Re-import the order with its execution time",
    ),
    "SEQ_NON_POSITIVE_QUANTITY": ErrorCodeInfo(
        code="SEQ_NON_POSITIVE_QUANTITY",
        kind=ProblemKind.SKIPPED_ORDER,
        severity=ErrorSeverity.WARNING,
        is_retryable=False,
        description="Order quantity is zero or negative",
        recommended_action="Fix the quantity at ingestion",
    ),
    "SEQ_INVALID_PRICE": ErrorCodeInfo(
        code="SEQ_INVALID_PRICE",
        kind=ProblemKind.SKIPPED_ORDER,
        severity=ErrorSeverity.WARNING,
        is_retryable=False,
        description="Order price is missing or negative",
        recommended_action="Fix the price at ingestion",
    ),
    "SEQ_NOT_FILLED": ErrorCodeInfo(
        code="SEQ_NOT_FILLED",
        kind=ProblemKind.SKIPPED_ORDER,
        severity=ErrorSeverity.WARNING,
        is_retryable=False,
        description="Order was not filled",
        recommended_action="None, unfilled orders never form trades",
    ),
    "SEQ_DUPLICATE_ORDER": ErrorCodeInfo(
        code="SEQ_DUPLICATE_ORDER",
        kind=ProblemKind.SKIPPED_ORDER,
        severity=ErrorSeverity.WARNING,
        is_retryable=False,
        description="Order id seen more than once",
        recommended_action="Check ingestion for double imports",
    ),

    # ========== GROUP FAILURES ==========
    "GRP_CONTRACT_VIOLATION": ErrorCodeInfo(
        code="GRP_CONTRACT_VIOLATION",
        kind=ProblemKind.GROUP_FAILURE,
        severity=ErrorSeverity.ERROR,
        is_retryable=False,
        description="Execution reached the matcher with invalid quantity or group",
        recommended_action="Investigate sequencing of the group",
    ),
    "GRP_UNEXPECTED_ERROR": ErrorCodeInfo(
        code="GRP_UNEXPECTED_ERROR",
        kind=ProblemKind.GROUP_FAILURE,
        severity=ErrorSeverity.ERROR,
        is_retryable=True,
        description="Unexpected error while building the group",
        recommended_action="Retry or investigate logs",
    ),

    # ========== RECONCILIATION ==========
    "REC_UNMATCHABLE_EXECUTION": ErrorCodeInfo(
        code="REC_UNMATCHABLE_EXECUTION",
        kind=ProblemKind.RECONCILIATION_REQUIRED,
        severity=ErrorSeverity.CRITICAL,
        is_retryable=False,
        description="Execution cannot be matched to a position",
        recommended_action="Reconcile the account's order history",
    ),
    "REC_SHORT_NOT_ALLOWED": ErrorCodeInfo(
        code="REC_SHORT_NOT_ALLOWED",
        kind=ProblemKind.RECONCILIATION_REQUIRED,
        severity=ErrorSeverity.CRITICAL,
        is_retryable=False,
        description="Sell exceeds the open long and shorting is disabled",
        recommended_action="Import the missing opening orders",
    ),
    "REC_SEED_ORDER_MISSING": ErrorCodeInfo(
        code="REC_SEED_ORDER_MISSING",
        kind=ProblemKind.RECONCILIATION_REQUIRED,
        severity=ErrorSeverity.CRITICAL,
        is_retryable=False,
        description="An order of the open trade no longer exists",
        recommended_action="Run a full rebuild",
    ),
    "REC_SEED_DIVERGED": ErrorCodeInfo(
        code="REC_SEED_DIVERGED",
        kind=ProblemKind.RECONCILIATION_REQUIRED,
        severity=ErrorSeverity.CRITICAL,
        is_retryable=False,
        description="Replaying the open trade does not reproduce an open position",
        recommended_action="Run a full rebuild",
    ),
    "REC_MULTIPLE_OPEN_TRADES": ErrorCodeInfo(
        code="REC_MULTIPLE_OPEN_TRADES",
        kind=ProblemKind.RECONCILIATION_REQUIRED,
        severity=ErrorSeverity.CRITICAL,
        is_retryable=False,
        description="More than one open trade for the same account and symbol",
        recommended_action="Run a full rebuild",
    ),

    # ========== ATOMICITY ==========
    "ATO_GROUP_WRITE_FAILED": ErrorCodeInfo(
        code="ATO_GROUP_WRITE_FAILED",
        kind=ProblemKind.ATOMICITY_FAILURE,
        severity=ErrorSeverity.CRITICAL,
        is_retryable=True,
        description="Persisting the group's trades failed and was rolled back",
        recommended_action="Retry the rebuild",
    ),
}


def get_error_info(code: str) -> Optional[ErrorCodeInfo]:
    """Get error info by code."""
    return ERROR_CODES.get(code)


def is_retryable(code: str) -> bool:
    """Check if a problem code is retryable."""
    info = get_error_info(code)
    return info.is_retryable if info else False


FATAL_PROBLEM_KINDS: Set[ProblemKind] = {
    ProblemKind.GROUP_FAILURE,
    ProblemKind.RECONCILIATION_REQUIRED,
    ProblemKind.ATOMICITY_FAILURE,
}
"""Kinds that mean a group produced no persisted trades."""


# ============================================================
# REBUILD PROBLEM
# ============================================================

@dataclass
class RebuildProblem:
    """A problem reported by a rebuild."""

    kind: ProblemKind
    code: str
    message: str
    severity: ErrorSeverity = ErrorSeverity.WARNING
    account_id: Optional[str] = None
    symbol: Optional[str] = None
    order_id: Optional[str] = None
    detected_at: datetime = field(default_factory=utc_now)

    @classmethod
    def from_code(
        cls,
        code: str,
        message: str,
        group: Optional[GroupKey] = None,
        order_id: Optional[str] = None,
    ) -> "RebuildProblem":
        """Create a problem from a registered code."""
        info = ERROR_CODES[code]
        return cls(
            kind=info.kind,
            code=code,
            message=message,
            severity=info.severity,
            account_id=group.account_id if group else None,
            symbol=group.symbol if group else None,
            order_id=order_id,
        )

    @property
    def group(self) -> Optional[GroupKey]:
        """Group the problem belongs to, if any."""
        if self.account_id is None or self.symbol is None:
            return None
        return GroupKey(self.account_id, self.symbol)

    @property
    def is_fatal(self) -> bool:
        """Whether the group produced no persisted trades."""
        return self.kind in FATAL_PROBLEM_KINDS

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "kind": self.kind.value,
            "code": self.code,
            "severity": self.severity.value,
            "message": self.message,
            "account_id": self.account_id,
            "symbol": self.symbol,
            "order_id": self.order_id,
            "detected_at": self.detected_at.isoformat(),
        }
