"""Repository protocols and JSON-file stores for stockcart.

Each store keeps its documents under the data directory and serializes
read-modify-write cycles with an exclusive flock on a sibling lock file.
Lock acquisition is bounded: it polls until the configured timeout and then
raises RetryableStoreError. Lock timeouts and file read/write failures are
retried a few times with backoff before reaching the caller.
"""

from __future__ import annotations

import fcntl
import json
import os
import tempfile
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import IO, Any, Callable, Iterator, Protocol, TypeVar

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .config import Settings
from .errors import (
    InsufficientStockError,
    OrderNotFoundError,
    OutOfStockError,
    ProductNotFoundError,
    RetryableStoreError,
)
from .models import Cart, Customer, Order, Product, _parse_time, _utc_now
from .observability import get_logger

T = TypeVar("T")

CATALOG_FILE = "catalog.json"
CARTS_FILE = "carts.json"
CUSTOMERS_FILE = "customers.json"
ORDERS_DIR = "orders"

_LOCK_POLL_SECONDS = 0.005

logger = get_logger("store")


@dataclass(frozen=True)
class StockAdjustment:
    """Result of an atomic stock update."""

    product_id: str
    variant_id: str | None
    before: int
    after: int

    @property
    def delta(self) -> int:
        return self.after - self.before


def available_stock(product: Product, variant_id: str | None = None) -> int:
    """Sellable quantity of a product or one of its variants.

    The product's in_stock flag dominates: a product marked out of stock has
    nothing available even if a stale positive quantity remains.
    """
    if not product.in_stock:
        return 0
    if variant_id:
        variant = product.get_variant(variant_id)
        if variant is None or not variant.in_stock:
            return 0
        return max(variant.stock_quantity, 0)
    return max(product.stock_quantity, 0)


# --- Repository protocols ---


class CatalogRepository(Protocol):
    """Read products; the only writer of stock fields."""

    def get_product(self, product_id: str) -> Product | None: ...

    def list_products(self) -> list[Product]: ...

    def upsert_products(self, products: list[Product]) -> int: ...

    def adjust_stock(
        self, product_id: str, variant_id: str | None, delta: int
    ) -> StockAdjustment: ...

    def take_up_to(
        self, product_id: str, variant_id: str | None, wanted: int
    ) -> StockAdjustment: ...


class CartRepository(Protocol):
    def get(self, user_id: str) -> Cart | None: ...

    def list_carts(self) -> list[Cart]: ...

    def mutate(self, user_id: str, fn: Callable[[Cart], T]) -> T: ...

    def delete(
        self, user_id: str, updated_before: datetime | None = None
    ) -> Cart | None: ...


class OrderRepository(Protocol):
    def get(self, order_id: str) -> Order | None: ...

    def list_orders(self, user_id: str | None = None) -> list[Order]: ...

    def save(self, order: Order) -> None: ...

    def update(self, order_id: str, fn: Callable[[Order], T]) -> T: ...


class CustomerRepository(Protocol):
    def get(self, user_id: str) -> Customer | None: ...

    def update(self, user_id: str, fn: Callable[[Customer], T]) -> T: ...

    def list_with_flagged_wishlist(self) -> list[Customer]: ...


# --- JSON file implementations ---


class JsonFileStore:
    """Shared plumbing: bounded exclusive lock and atomic JSON writes."""

    def __init__(
        self,
        data_dir: Path,
        filename: str,
        lock_timeout: float = 5.0,
        retry_attempts: int = 3,
    ):
        """
        Initialize the store.

        Args:
            data_dir: Directory holding the JSON document.
            filename: Document file name inside data_dir.
            lock_timeout: Seconds to wait for the lock per attempt.
            retry_attempts: Lock acquisition attempts before giving up.
        """
        self.data_dir = Path(data_dir)
        self.path = self.data_dir / filename
        self.lock_timeout = lock_timeout
        self.retry_attempts = retry_attempts
        self._lock_path = self.data_dir / f".{Path(filename).stem}.lock"

    def _ensure_dir(self) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)

    def _acquire(self, lock_file: IO[str]) -> None:
        deadline = time.monotonic() + self.lock_timeout
        while True:
            try:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                return
            except BlockingIOError:
                if time.monotonic() >= deadline:
                    raise RetryableStoreError(
                        "lock",
                        f"timed out after {self.lock_timeout}s waiting for {self.path.name}",
                    )
                time.sleep(_LOCK_POLL_SECONDS)

    def _log_retry(self, retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "store_retry",
            store=self.path.name,
            operation=getattr(error, "operation", None),
            attempt=retry_state.attempt_number,
            max_attempts=self.retry_attempts,
        )

    def _retrying(self) -> Retrying:
        return Retrying(
            retry=retry_if_exception_type(RetryableStoreError),
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential(multiplier=0.05, max=1.0),
            before_sleep=self._log_retry,
            reraise=True,
        )

    @contextmanager
    def _lock(self) -> Iterator[None]:
        """Hold an exclusive lock on this store for a read-modify-write cycle."""
        self._ensure_dir()
        with open(self._lock_path, "w") as lock_file:
            for attempt in self._retrying():
                with attempt:
                    self._acquire(lock_file)
            try:
                yield
            finally:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)

    def _load_data(self) -> dict[str, Any]:
        return self._retrying()(self._read_json, self.path)

    def _save_data(self, data: dict[str, Any], path: Path | None = None) -> None:
        """Write a document, retrying transient IO failures.

        Only the IO step is retried, never the caller's read-modify-write
        callback: callbacks may reserve stock or save other documents.
        """
        self._retrying()(self._write_json, data, path or self.path)

    def _read_json(self, path: Path) -> dict[str, Any]:
        if not path.exists():
            return {}
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except OSError as exc:
            raise RetryableStoreError("load", str(exc)) from exc

    def _write_json(self, data: dict[str, Any], target: Path) -> None:
        """Write to a temp file then rename (atomic on POSIX)."""
        self._ensure_dir()
        fd, temp_path = tempfile.mkstemp(
            dir=self.data_dir, prefix=f".{target.stem}_", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
                f.write("\n")
            os.replace(temp_path, target)
        except OSError as exc:
            try:
                os.unlink(temp_path)
            except OSError:
                pass
            raise RetryableStoreError("save", str(exc)) from exc


class JsonCatalogStore(JsonFileStore):
    """Products keyed by id in catalog.json."""

    def __init__(self, data_dir: Path, lock_timeout: float = 5.0, retry_attempts: int = 3):
        super().__init__(data_dir, CATALOG_FILE, lock_timeout, retry_attempts)

    def get_product(self, product_id: str) -> Product | None:
        data = self._load_data().get("products", {})
        if product_id not in data:
            return None
        return Product.from_dict(data[product_id])

    def list_products(self) -> list[Product]:
        return [Product.from_dict(p) for p in self._load_data().get("products", {}).values()]

    def upsert_products(self, products: list[Product]) -> int:
        """Insert or replace products, recomputing stock flags from quantities."""
        with self._lock():
            data = self._load_data()
            stored = data.setdefault("products", {})
            for product in products:
                product.set_stock(product.stock_quantity)
                for variant in product.variants:
                    variant.set_stock(variant.stock_quantity)
                stored[product.id] = product.to_dict()
            self._save_data(data)
        return len(products)

    def _locate(self, data: dict[str, Any], product_id: str, variant_id: str | None):
        raw = data.get("products", {}).get(product_id)
        if raw is None:
            raise ProductNotFoundError(product_id)
        product = Product.from_dict(raw)
        target = product
        if variant_id:
            target = product.get_variant(variant_id)
            if target is None:
                raise ProductNotFoundError(product_id, variant_id)
        return product, target

    def adjust_stock(
        self, product_id: str, variant_id: str | None, delta: int
    ) -> StockAdjustment:
        """
        Atomically add delta to a product's (or variant's) stock.

        A negative delta is a conditional decrement: it only applies when at
        least -delta units are available, checked under the same lock that
        writes the new quantity.

        Raises:
            ProductNotFoundError: If the product or variant doesn't exist.
            OutOfStockError: If a decrement finds nothing available.
            InsufficientStockError: If a decrement finds fewer than -delta units.
        """
        with self._lock():
            data = self._load_data()
            product, target = self._locate(data, product_id, variant_id)
            before = target.stock_quantity
            if delta < 0:
                available = available_stock(product, variant_id)
                requested = -delta
                if available == 0:
                    raise OutOfStockError(product_id, variant_id, requested)
                if requested > available:
                    raise InsufficientStockError(product_id, variant_id, requested, available)
            target.set_stock(before + delta)
            data["products"][product_id] = product.to_dict()
            self._save_data(data)
        return StockAdjustment(product_id, variant_id, before, target.stock_quantity)

    def take_up_to(
        self, product_id: str, variant_id: str | None, wanted: int
    ) -> StockAdjustment:
        """Atomically take min(wanted, available) units; may take nothing."""
        with self._lock():
            data = self._load_data()
            product, target = self._locate(data, product_id, variant_id)
            before = target.stock_quantity
            taken = min(wanted, available_stock(product, variant_id))
            if taken > 0:
                target.set_stock(before - taken)
                data["products"][product_id] = product.to_dict()
                self._save_data(data)
        return StockAdjustment(product_id, variant_id, before, before - taken)


class JsonCartStore(JsonFileStore):
    """Carts keyed by user id in carts.json."""

    def __init__(self, data_dir: Path, lock_timeout: float = 5.0, retry_attempts: int = 3):
        super().__init__(data_dir, CARTS_FILE, lock_timeout, retry_attempts)

    def get(self, user_id: str) -> Cart | None:
        raw = self._load_data().get("carts", {}).get(user_id)
        return Cart.from_dict(raw) if raw is not None else None

    def list_carts(self) -> list[Cart]:
        return [Cart.from_dict(c) for c in self._load_data().get("carts", {}).values()]

    def mutate(self, user_id: str, fn: Callable[[Cart], T]) -> T:
        """
        Apply fn to the user's cart under the lock and persist the result.

        The cart is created lazily. If fn raises, nothing is written.
        """
        with self._lock():
            data = self._load_data()
            carts = data.setdefault("carts", {})
            raw = carts.get(user_id)
            cart = Cart.from_dict(raw) if raw is not None else Cart(user_id=user_id)
            result = fn(cart)
            cart.updated_at = _utc_now()
            carts[user_id] = cart.to_dict()
            self._save_data(data)
        return result

    def delete(
        self, user_id: str, updated_before: datetime | None = None
    ) -> Cart | None:
        """
        Remove a user's cart and return it, or None if there was none.

        With updated_before, the cart is only removed if it was last updated
        before that moment, checked under the lock.
        """
        with self._lock():
            data = self._load_data()
            carts = data.get("carts", {})
            raw = carts.get(user_id)
            if raw is None:
                return None
            if updated_before is not None:
                if _parse_time(raw["updated_at"]) >= updated_before:
                    return None
            del carts[user_id]
            self._save_data(data)
        return Cart.from_dict(raw)


class JsonCustomerStore(JsonFileStore):
    """Customers (with their wishlists) keyed by id in customers.json."""

    def __init__(self, data_dir: Path, lock_timeout: float = 5.0, retry_attempts: int = 3):
        super().__init__(data_dir, CUSTOMERS_FILE, lock_timeout, retry_attempts)

    def get(self, user_id: str) -> Customer | None:
        raw = self._load_data().get("customers", {}).get(user_id)
        return Customer.from_dict(raw) if raw is not None else None

    def update(self, user_id: str, fn: Callable[[Customer], T]) -> T:
        with self._lock():
            data = self._load_data()
            customers = data.setdefault("customers", {})
            raw = customers.get(user_id)
            customer = Customer.from_dict(raw) if raw is not None else Customer(id=user_id)
            result = fn(customer)
            customers[user_id] = customer.to_dict()
            self._save_data(data)
        return result

    def list_with_flagged_wishlist(self) -> list[Customer]:
        """Customers with at least one wishlist entry waiting for restock."""
        customers = [Customer.from_dict(c) for c in self._load_data().get("customers", {}).values()]
        return [c for c in customers if any(e.was_out_of_stock for e in c.wishlist)]


class JsonOrderStore(JsonFileStore):
    """One JSON file per order under orders/."""

    def __init__(self, data_dir: Path, lock_timeout: float = 5.0, retry_attempts: int = 3):
        super().__init__(Path(data_dir) / ORDERS_DIR, "orders.json", lock_timeout, retry_attempts)

    def _order_path(self, order_id: str) -> Path:
        return self.data_dir / f"{order_id}.json"

    def _read(self, path: Path) -> Order:
        return Order.from_dict(self._retrying()(self._read_json, path))

    def _write(self, order: Order) -> None:
        self._save_data(order.to_dict(), self._order_path(order.id))

    def get(self, order_id: str) -> Order | None:
        path = self._order_path(order_id)
        if not path.exists():
            return None
        return self._read(path)

    def list_orders(self, user_id: str | None = None) -> list[Order]:
        """List orders, newest first, optionally only one user's."""
        if not self.data_dir.exists():
            return []
        orders = [self._read(p) for p in self.data_dir.glob("*.json")]
        if user_id is not None:
            orders = [o for o in orders if o.user_id == user_id]
        orders.sort(key=lambda o: _parse_time(o.created_at), reverse=True)
        return orders

    def save(self, order: Order) -> None:
        with self._lock():
            order.updated_at = _utc_now()
            self._write(order)

    def update(self, order_id: str, fn: Callable[[Order], T]) -> T:
        """
        Apply fn to a stored order under the lock and persist it.

        Raises:
            OrderNotFoundError: If the order doesn't exist.
        """
        with self._lock():
            order = self.get(order_id)
            if order is None:
                raise OrderNotFoundError(order_id)
            result = fn(order)
            order.updated_at = _utc_now()
            self._write(order)
        return result


@dataclass
class Stores:
    """The four repositories the core runs against."""

    catalog: CatalogRepository
    carts: CartRepository
    orders: OrderRepository
    customers: CustomerRepository

    @classmethod
    def from_settings(cls, settings: Settings) -> "Stores":
        kwargs = {
            "lock_timeout": settings.store_lock_timeout_seconds,
            "retry_attempts": settings.store_retry_attempts,
        }
        return cls(
            catalog=JsonCatalogStore(settings.data_dir, **kwargs),
            carts=JsonCartStore(settings.data_dir, **kwargs),
            orders=JsonOrderStore(settings.data_dir, **kwargs),
            customers=JsonCustomerStore(settings.data_dir, **kwargs),
        )
