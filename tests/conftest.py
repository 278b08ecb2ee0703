"""Pytest fixtures for cartengine tests."""

import asyncio
import inspect
import tempfile
from datetime import datetime, timezone
from pathlib import Path

import pytest

from cartengine.cart import CartStore
from cartengine.coupons import CouponValidator
from cartengine.errors import BackendError
from cartengine.json_store import JsonStoreBackend
from cartengine.models import Coupon, DiscountType
from cartengine.pricing import TieredShipping
from cartengine.stock import StockLedger

FIXED_NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def fixed_clock() -> datetime:
    return FIXED_NOW


class FlakyBackend:
    """Wraps a backend so tests can fail or hold individual operations.

    ``fail_on`` names async methods that raise BackendError instead of
    running; ``hold`` maps a method name to an asyncio.Event the call waits
    on before proceeding.
    """

    def __init__(self, inner):
        self.inner = inner
        self.fail_on: set[str] = set()
        self.hold: dict[str, asyncio.Event] = {}
        self.calls: list[str] = []

    def __getattr__(self, name):
        attr = getattr(self.inner, name)
        if not inspect.iscoroutinefunction(attr):
            return attr

        async def wrapper(*args, **kwargs):
            self.calls.append(name)
            gate = self.hold.get(name)
            if gate is not None:
                await gate.wait()
            if name in self.fail_on:
                raise BackendError(name, "simulated outage")
            return await attr(*args, **kwargs)

        return wrapper


@pytest.fixture
def temp_dir():
    """Create a temporary directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def store(temp_dir):
    """A JSON store seeded with two products, stock and a set of coupons."""
    backend = JsonStoreBackend(temp_dir / "data")
    backend.init()

    backend.put_product("runner", "Road Runner", "100", brand="Acme", image_url="runner.png")
    backend.put_product("trail", "Trail Blazer", "1000", brand="Acme")
    backend.set_stock("runner", 9, 5)
    backend.set_stock("runner", 10, 1)
    backend.set_stock("trail", 9, 4)
    backend.set_stock("trail", 11, 0)

    coupons = [
        Coupon(code="SAVE10", discount_type=DiscountType.PERCENTAGE, discount_value=10),
        Coupon(code="FLAT500", discount_type=DiscountType.FIXED_AMOUNT, discount_value=500),
        Coupon(
            code="MIN250",
            discount_type=DiscountType.FIXED_AMOUNT,
            discount_value=50,
            min_spend_amount=250,
        ),
        Coupon(
            code="ONCE",
            discount_type=DiscountType.PERCENTAGE,
            discount_value=20,
            usage_limit_total=1,
        ),
        Coupon(
            code="EXPIRED",
            discount_type=DiscountType.PERCENTAGE,
            discount_value=10,
            expires_at=datetime(2020, 1, 1, tzinfo=timezone.utc),
        ),
        Coupon(
            code="FUTURE",
            discount_type=DiscountType.PERCENTAGE,
            discount_value=10,
            starts_at=datetime(2099, 1, 1, tzinfo=timezone.utc),
        ),
        Coupon(
            code="OFF",
            discount_type=DiscountType.PERCENTAGE,
            discount_value=10,
            is_active=False,
        ),
    ]
    for coupon in coupons:
        backend.put_coupon(coupon)
    return backend


@pytest.fixture
def flaky(store):
    return FlakyBackend(store)


@pytest.fixture
def make_cart():
    """Factory for CartStore instances over a given backend."""

    def _make(backend, user_id="shopper-1"):
        return CartStore(
            user_id,
            backend,
            StockLedger(backend),
            CouponValidator(backend),
            TieredShipping(),
        )

    return _make
