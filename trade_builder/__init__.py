"""
Trade Builder Package.

============================================================
PURPOSE
============================================================
Reconstructs round-trip trades from brokerage executions.

CRITICAL PRINCIPLE:
    "Orders are facts, trades are derived."
    "Rebuilding an unchanged order set reproduces the same trades."

AUTHORITY BOUNDARIES:
    CAN:
        - Sequence and match executions
        - Create, continue and replace trades
        - Tag orders with the trade that consumed them

    MUST NOT:
        - Modify or delete orders
        - Guess at matches it cannot make
        - Leave a group half-written

============================================================
MODULES
============================================================
- types: Orders, executions, trades, exceptions
- config: Configuration
- errors: Problem taxonomy and codes
- clock: UTC helpers and exchange calendar
- sequencer: Order validation, grouping and ordering
- state_machine: Position matcher
- aggregator: Trade aggregation and P&L
- builder: Pure construction pipeline
- rebuild: Rebuild controller
- adapters: Store interfaces and in-memory store
- models: ORM models for persistence
- database: Async engine and sessions
- repository: SQL trade store

============================================================
"""

# ============================================================
# TYPES
# ============================================================
from .types import (
    # Enums
    OrderSide,
    OrderStatus,
    AssetClass,
    TradeSide,
    TradeStatus,
    HoldingPeriodClass,
    MarketSession,
    AllocationRole,
    PositionState,
    FillAction,
    MatchEventType,
    RebuildScope,
    # Dataclasses
    GroupKey,
    Order,
    Execution,
    MatchEvent,
    OrderAllocation,
    Trade,
    # Exceptions
    TradeBuilderError,
    SequencingError,
    MatcherContractError,
    ReconciliationRequiredError,
    AtomicityError,
    RebuildInProgressError,
    RebuildFailedError,
    StoreError,
)

# ============================================================
# CONFIG
# ============================================================
from .config import (
    SequencerConfig,
    MatcherConfig,
    IntradayRule,
    AggregatorConfig,
    ConcurrencyConfig,
    DatabaseConfig,
    TradeBuilderConfig,
)

# ============================================================
# ERRORS
# ============================================================
from .errors import (
    ProblemKind,
    ErrorSeverity,
    ErrorCodeInfo,
    ERROR_CODES,
    get_error_info,
    is_retryable,
    RebuildProblem,
)

# ============================================================
# PIPELINE
# ============================================================
from .sequencer import OrderSequencer, SequenceResult
from .state_machine import PositionMatcher, TransitionGuard
from .aggregator import TradeAggregator, trade_id_for
from .builder import (
    Seed,
    GroupOutcome,
    BuildResult,
    build_group,
    build_trades,
)

# ============================================================
# REBUILD
# ============================================================
from .rebuild import (
    RebuildController,
    RebuildResult,
    BatchRebuildResult,
)

# ============================================================
# STORES
# ============================================================
from .adapters import (
    OrderSource,
    TradeStore,
    InMemoryStoreConfig,
    InMemoryTradeStore,
)
from .repository import TradeRepository


# ============================================================
# VERSION
# ============================================================
__version__ = "1.0.0"


# ============================================================
# ALL EXPORTS
# ============================================================
__all__ = [
    # Types
    "OrderSide",
    "OrderStatus",
    "AssetClass",
    "TradeSide",
    "TradeStatus",
    "HoldingPeriodClass",
    "MarketSession",
    "AllocationRole",
    "PositionState",
    "FillAction",
    "MatchEventType",
    "RebuildScope",
    "GroupKey",
    "Order",
    "Execution",
    "MatchEvent",
    "OrderAllocation",
    "Trade",
    "TradeBuilderError",
    "SequencingError",
    "MatcherContractError",
    "ReconciliationRequiredError",
    "AtomicityError",
    "RebuildInProgressError",
    "RebuildFailedError",
    "StoreError",
    # Config
    "SequencerConfig",
    "MatcherConfig",
    "IntradayRule",
    "AggregatorConfig",
    "ConcurrencyConfig",
    "DatabaseConfig",
    "TradeBuilderConfig",
    # Errors
    "ProblemKind",
    "ErrorSeverity",
    "ErrorCodeInfo",
    "ERROR_CODES",
    "get_error_info",
    "is_retryable",
    "RebuildProblem",
    # Pipeline
    "OrderSequencer",
    "SequenceResult",
    "PositionMatcher",
    "TransitionGuard",
    "TradeAggregator",
    "trade_id_for",
    "Seed",
    "GroupOutcome",
    "BuildResult",
    "build_group",
    "build_trades",
    # Rebuild
    "RebuildController",
    "RebuildResult",
    "BatchRebuildResult",
    # Stores
    "OrderSource",
    "TradeStore",
    "InMemoryStoreConfig",
    "InMemoryTradeStore",
    "TradeRepository",
    # Version
    "__version__",
]
