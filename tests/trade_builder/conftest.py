"""
Shared fixtures for trade builder tests.

Times are 2024-03-04, when New York is on EST (UTC-5):
15:00 UTC is 10:00 exchange time, inside the regular session.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from trade_builder import Order, OrderSide


BASE_TIME = datetime(2024, 3, 4, 15, 0, tzinfo=timezone.utc)


def _decimal(value):
    if value is None:
        return None
    return Decimal(str(value))


@pytest.fixture
def base_time():
    return BASE_TIME


@pytest.fixture
def make_order():
    """
    Order factory.

    make_order("o1", "BUY", 100, 10, minutes=5, commission=1)
    """

    def factory(order_id, side, quantity, price, minutes=0, **overrides):
        fields = {
            "id": order_id,
            "user_id": "user-1",
            "account_id": "acct-1",
            "symbol": "AAPL",
            "side": OrderSide(side),
            "quantity": _decimal(quantity),
            "price": _decimal(price),
            "executed_at": BASE_TIME + timedelta(minutes=minutes),
        }
        for name in ("commission", "fees"):
            if name in overrides:
                overrides[name] = _decimal(overrides[name])
        fields.update(overrides)
        return Order(**fields)

    return factory
