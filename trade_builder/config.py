"""
Trade Builder - Configuration.

============================================================
PURPOSE
============================================================
All configuration for trade reconstruction.

CRITICAL CONSTRAINTS:
- Deterministic behavior for a given configuration
- Fixed-precision decimal arithmetic only
- No rebuilds racing on the same user

============================================================
"""

import os
from dataclasses import dataclass, field
from datetime import time
from decimal import Decimal, ROUND_HALF_EVEN
from enum import Enum
from typing import Dict, Optional

from dotenv import load_dotenv

from .types import AssetClass


# ============================================================
# SEQUENCER CONFIGURATION
# ============================================================

@dataclass
class SequencerConfig:
    """
    Order sequencing configuration.
    """

    skip_unfilled: bool = True
    """Whether orders not in FILLED status are skipped."""

    allow_zero_price: bool = True
    """Whether a zero price is matchable (e.g. options expiring worthless)."""


# ============================================================
# MATCHER CONFIGURATION
# ============================================================

@dataclass
class MatcherConfig:
    """
    Position matcher configuration.
    """

    decimal_precision: int = 34
    """Significant digits for matching arithmetic."""

    allow_short_positions: Dict[AssetClass, bool] = field(default_factory=lambda: {
        AssetClass.EQUITY: True,
        AssetClass.OPTION: True,
        AssetClass.OTHER: True,
    })
    """Whether a SELL may open (or flip into) a short, per asset class."""

    def allows_short(self, asset_class: AssetClass) -> bool:
        """Check if shorts are allowed for an asset class."""
        return self.allow_short_positions.get(asset_class, True)


# ============================================================
# AGGREGATOR CONFIGURATION
# ============================================================

class IntradayRule(Enum):
    """How a closed trade is classified as intraday."""

    SAME_CALENDAR_DAY = "SAME_CALENDAR_DAY"
    """Entry and exit on the same date in the exchange timezone."""

    WITHIN_HOURS = "WITHIN_HOURS"
    """Exit within `intraday_max_hours` of entry."""


@dataclass
class AggregatorConfig:
    """
    Trade aggregation configuration.
    """

    timezone: str = "America/New_York"
    """Exchange timezone for calendar days and sessions."""

    intraday_rule: IntradayRule = IntradayRule.SAME_CALENDAR_DAY
    """Intraday classification rule."""

    intraday_max_hours: float = 24.0
    """Threshold for WITHIN_HOURS."""

    regular_session_start: time = time(9, 30)
    """Regular session open (exchange time)."""

    regular_session_end: time = time(16, 0)
    """Regular session close (exchange time)."""

    price_quantum: Decimal = Decimal("0.00000001")
    """Precision of prices and cost totals."""

    quantity_quantum: Decimal = Decimal("0.00000001")
    """Precision of quantities."""

    pnl_quantum: Decimal = Decimal("0.01")
    """Precision of realized P&L."""

    rounding: str = ROUND_HALF_EVEN
    """Rounding mode for quantization."""


# ============================================================
# CONCURRENCY CONFIGURATION
# ============================================================

@dataclass
class ConcurrencyConfig:
    """
    Worker pool configuration.
    """

    max_concurrent_users: int = 4
    """Users rebuilt in parallel by a batch job."""

    max_concurrent_groups: int = 8
    """(account, symbol) groups matched in parallel for one user."""

    reject_concurrent_rebuilds: bool = True
    """Reject (True) or queue (False) a rebuild for a user already rebuilding."""


# ============================================================
# DATABASE CONFIGURATION
# ============================================================

@dataclass
class DatabaseConfig:
    """
    Persistence configuration.
    """

    url: Optional[str] = None
    """Database URL. Falls back to DATABASE_URL."""

    echo: bool = False
    """Log SQL statements."""

    pool_size: int = 5
    """Connections kept in pool."""

    max_overflow: int = 10
    """Connections beyond pool_size."""

    pool_recycle: int = 1800
    """Recycle connections after N seconds."""


# ============================================================
# MASTER CONFIGURATION
# ============================================================

@dataclass
class TradeBuilderConfig:
    """
    Master configuration for trade reconstruction.
    """

    sequencer: SequencerConfig = field(default_factory=SequencerConfig)
    matcher: MatcherConfig = field(default_factory=MatcherConfig)
    aggregator: AggregatorConfig = field(default_factory=AggregatorConfig)
    concurrency: ConcurrencyConfig = field(default_factory=ConcurrencyConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)

    @classmethod
    def for_testing(cls) -> "TradeBuilderConfig":
        """Get configuration for testing."""
        return cls(
            concurrency=ConcurrencyConfig(
                max_concurrent_users=2,
                max_concurrent_groups=2,
            ),
            database=DatabaseConfig(url="sqlite+aiosqlite:///:memory:"),
        )

    @classmethod
    def for_production(cls) -> "TradeBuilderConfig":
        """Get configuration for production."""
        return cls(
            concurrency=ConcurrencyConfig(
                max_concurrent_users=8,
                max_concurrent_groups=16,
                reject_concurrent_rebuilds=True,
            ),
            database=DatabaseConfig(pool_size=10, max_overflow=20),
        )

    @classmethod
    def from_env(cls) -> "TradeBuilderConfig":
        """Build configuration from environment variables (and .env)."""
        load_dotenv()

        config = cls()
        config.aggregator.timezone = os.getenv(
            "TRADE_BUILDER_TIMEZONE", config.aggregator.timezone
        )
        config.concurrency.max_concurrent_users = int(os.getenv(
            "TRADE_BUILDER_MAX_CONCURRENT_USERS",
            str(config.concurrency.max_concurrent_users),
        ))
        config.concurrency.max_concurrent_groups = int(os.getenv(
            "TRADE_BUILDER_MAX_CONCURRENT_GROUPS",
            str(config.concurrency.max_concurrent_groups),
        ))
        config.concurrency.reject_concurrent_rebuilds = os.getenv(
            "TRADE_BUILDER_REJECT_CONCURRENT_REBUILDS", "true"
        ).lower() == "true"

        allow_short = os.getenv("TRADE_BUILDER_ALLOW_SHORT")
        if allow_short is not None:
            allowed = allow_short.lower() == "true"
            config.matcher.allow_short_positions = {
                asset_class: allowed for asset_class in AssetClass
            }

        config.database.url = os.getenv("DATABASE_URL")
        config.database.echo = os.getenv("DATABASE_ECHO", "false").lower() == "true"
        return config
