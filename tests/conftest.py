"""Pytest fixtures for stockcart tests."""

import tempfile
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path

import pytest

from stockcart.cart import CartService
from stockcart.config import Settings
from stockcart.ledger import StockLedger
from stockcart.models import Product, Variant
from stockcart.orders import OrderService
from stockcart.pricing import PricingRule
from stockcart.store import Stores
from stockcart.wishlist import WishlistService


class MutableClock:
    """A now() callable tests can move forward."""

    def __init__(self, start: datetime | None = None):
        self.current = start or datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


class RecordingNotifier:
    """Collects notifications instead of sending them."""

    def __init__(self):
        self.sent: list[tuple[str, dict]] = []

    def notify(self, kind: str, payload: dict) -> None:
        self.sent.append((kind, payload))


def seed_products() -> list[Product]:
    return [
        Product.create("Whey Protein", "10.00", stock_quantity=5, product_id="whey"),
        Product.create("BCAA", "20.00", stock_quantity=3, product_id="bcaa"),
        Product.create(
            "Mass Gainer",
            "30.00",
            stock_quantity=2,
            product_id="gainer",
            variants=[
                Variant(id="choc", name="Chocolate", price=Decimal("30.00"), stock_quantity=2),
                Variant(id="van", name="Vanilla", price=Decimal("32.00"), stock_quantity=0),
            ],
        ),
        Product.create("Creatine", "15.00", stock_quantity=0, product_id="creatine"),
    ]


@pytest.fixture
def temp_dir():
    """Create a temporary directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def settings(temp_dir):
    return Settings(
        data_dir=temp_dir / "data",
        store_lock_timeout_seconds=5.0,
        store_retry_attempts=3,
    )


@pytest.fixture
def stores(settings):
    """JSON stores with a seeded catalog."""
    stores = Stores.from_settings(settings)
    stores.catalog.upsert_products(seed_products())
    return stores


@pytest.fixture
def ledger(stores):
    return StockLedger(stores.catalog)


@pytest.fixture
def clock():
    return MutableClock()


@pytest.fixture
def cart_service(stores, ledger):
    return CartService(stores.carts, ledger)


@pytest.fixture
def held_cart_service(stores, ledger):
    """Cart service that reserves the stock it holds."""
    return CartService(stores.carts, ledger, hold_stock=True)


@pytest.fixture
def order_service(stores, ledger, clock):
    return OrderService(
        stores.orders,
        stores.carts,
        stores.customers,
        ledger,
        pricing=PricingRule(),
        return_window_days=30,
        now=clock,
    )


@pytest.fixture
def wishlist_service(stores, ledger):
    return WishlistService(stores.customers, ledger)


@pytest.fixture
def notifier():
    return RecordingNotifier()
