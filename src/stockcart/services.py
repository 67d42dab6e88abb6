"""Wiring: build the ledger, services and watcher over one set of stores."""

import threading
from dataclasses import dataclass
from pathlib import Path

from .cart import CartService
from .config import Settings, get_settings
from .ledger import StockLedger
from .notifier import Notifier
from .orders import OrderService
from .pricing import PricingRule
from .store import Stores
from .watcher import RestockWatcher
from .wishlist import WishlistService


@dataclass
class Services:
    settings: Settings
    stores: Stores
    ledger: StockLedger
    carts: CartService
    orders: OrderService
    wishlist: WishlistService
    watcher: RestockWatcher


def build_services(
    settings: Settings | None = None,
    notifier: Notifier | None = None,
    stores: Stores | None = None,
) -> Services:
    """Build every service over the same stores and a single stock ledger."""
    settings = settings or get_settings()
    stores = stores or Stores.from_settings(settings)
    ledger = StockLedger(stores.catalog)
    carts = CartService(stores.carts, ledger, hold_stock=settings.hold_stock_in_cart)
    orders = OrderService(
        stores.orders,
        stores.carts,
        stores.customers,
        ledger,
        pricing=PricingRule.from_settings(settings),
        return_window_days=settings.return_window_days,
        hold_stock=settings.hold_stock_in_cart,
    )
    wishlist = WishlistService(stores.customers, ledger)
    watcher = RestockWatcher(
        stores.customers,
        ledger,
        carts,
        notifier=notifier,
        interval_seconds=settings.sweep_interval_seconds,
        time_budget_seconds=settings.sweep_time_budget_seconds,
    )
    return Services(
        settings=settings,
        stores=stores,
        ledger=ledger,
        carts=carts,
        orders=orders,
        wishlist=wishlist,
        watcher=watcher,
    )


_services: dict[Path, Services] = {}
_services_lock = threading.Lock()


def get_services() -> Services:
    """Get the process-wide services for the configured data directory."""
    settings = get_settings()
    with _services_lock:
        services = _services.get(settings.data_dir)
        if services is None:
            services = build_services(settings)
            _services[settings.data_dir] = services
        return services


def reset_services() -> None:
    """Stop any running watchers and forget the cached services."""
    with _services_lock:
        for services in _services.values():
            services.watcher.stop()
        _services.clear()
