"""
Trade Builder - Clock and Exchange Calendar.

============================================================
RESPONSIBILITY
============================================================
Time handling for trade reconstruction.

- Naive timestamps are UTC
- Calendar days and sessions are judged in the exchange timezone
- Persistence stores naive UTC

============================================================
"""

from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from .types import MarketSession


# ============================================================
# UTC HELPERS
# ============================================================

def utc_now() -> datetime:
    """Get current naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_utc(dt: datetime) -> datetime:
    """Aware UTC datetime. Naive input is taken as UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_naive_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Naive UTC datetime for storage."""
    if dt is None:
        return None
    return as_utc(dt).replace(tzinfo=None)


# ============================================================
# EXCHANGE CALENDAR
# ============================================================

@dataclass(frozen=True)
class ExchangeCalendar:
    """
    Exchange-local view of execution times.
    """

    timezone_name: str = "America/New_York"
    regular_open: time = time(9, 30)
    regular_close: time = time(16, 0)

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone_name)

    def local(self, dt: datetime) -> datetime:
        """Convert to exchange-local time."""
        return as_utc(dt).astimezone(self.tz)

    def trading_day(self, dt: datetime) -> date:
        """Exchange-local calendar date."""
        return self.local(dt).date()

    def same_trading_day(self, first: datetime, second: datetime) -> bool:
        """Whether both times fall on the same exchange-local date."""
        return self.trading_day(first) == self.trading_day(second)

    def market_session(self, dt: datetime) -> MarketSession:
        """Session an execution time falls in."""
        local_time = self.local(dt).time()
        if local_time < self.regular_open:
            return MarketSession.PRE_MARKET
        if local_time < self.regular_close:
            return MarketSession.REGULAR
        return MarketSession.AFTER_HOURS
