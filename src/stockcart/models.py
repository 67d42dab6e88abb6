"""Data models for stockcart."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any
import uuid


def _utc_now() -> str:
    """Return current UTC time as ISO 8601 string."""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _format_time(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _parse_time(value: str) -> datetime:
    """Parse an ISO 8601 timestamp written by _utc_now()."""
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _generate_id() -> str:
    """Generate a new record ID."""
    return str(uuid.uuid4())


def _money(value: Any) -> Decimal:
    """Coerce a JSON number or string into a Decimal without float artifacts."""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    RETURNED = "returned"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


# Catalog models


@dataclass
class Variant:
    """A sellable variant of a product (flavour, size)."""

    id: str
    name: str
    price: Decimal
    stock_quantity: int = 0
    in_stock: bool = False

    def set_stock(self, quantity: int) -> None:
        """Write quantity and flag together; the only way stock fields change."""
        self.stock_quantity = quantity
        self.in_stock = quantity > 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "price": str(self.price),
            "stock_quantity": self.stock_quantity,
            "in_stock": self.in_stock,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Variant":
        return cls(
            id=data["id"],
            name=data["name"],
            price=_money(data["price"]),
            stock_quantity=data.get("stock_quantity", 0),
            in_stock=data.get("in_stock", data.get("stock_quantity", 0) > 0),
        )


@dataclass
class Product:
    """A catalog product as seen by the stock ledger."""

    id: str
    name: str
    price: Decimal
    stock_quantity: int = 0
    in_stock: bool = False
    variants: list[Variant] = field(default_factory=list)

    def get_variant(self, variant_id: str) -> Variant | None:
        for variant in self.variants:
            if variant.id == variant_id:
                return variant
        return None

    def set_stock(self, quantity: int) -> None:
        self.stock_quantity = quantity
        self.in_stock = quantity > 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "price": str(self.price),
            "stock_quantity": self.stock_quantity,
            "in_stock": self.in_stock,
            "variants": [v.to_dict() for v in self.variants],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Product":
        return cls(
            id=data["id"],
            name=data["name"],
            price=_money(data["price"]),
            stock_quantity=data.get("stock_quantity", 0),
            in_stock=data.get("in_stock", data.get("stock_quantity", 0) > 0),
            variants=[Variant.from_dict(v) for v in data.get("variants", [])],
        )

    @classmethod
    def create(
        cls,
        name: str,
        price: Decimal | str | float,
        stock_quantity: int = 0,
        variants: list[Variant] | None = None,
        product_id: str | None = None,
    ) -> "Product":
        """Create a product with consistent stock flags."""
        product = cls(
            id=product_id or _generate_id(),
            name=name,
            price=_money(price),
            variants=variants or [],
        )
        product.set_stock(stock_quantity)
        for variant in product.variants:
            variant.set_stock(variant.stock_quantity)
        return product


# Cart models


@dataclass
class CartLine:
    """One (product, variant) line in a user's cart."""

    product_id: str
    quantity: int
    unit_price: Decimal
    product_name: str = ""
    variant_id: str | None = None
    variant_name: str | None = None
    added_at: str = field(default_factory=_utc_now)
    updated_at: str = field(default_factory=_utc_now)

    @property
    def key(self) -> tuple[str, str | None]:
        return (self.product_id, self.variant_id)

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "product_id": self.product_id,
            "product_name": self.product_name,
            "quantity": self.quantity,
            "unit_price": str(self.unit_price),
            "added_at": self.added_at,
            "updated_at": self.updated_at,
        }
        if self.variant_id is not None:
            result["variant_id"] = self.variant_id
            result["variant_name"] = self.variant_name
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CartLine":
        return cls(
            product_id=data["product_id"],
            quantity=data["quantity"],
            unit_price=_money(data["unit_price"]),
            product_name=data.get("product_name", ""),
            variant_id=data.get("variant_id"),
            variant_name=data.get("variant_name"),
            added_at=data.get("added_at", ""),
            updated_at=data.get("updated_at", ""),
        )


@dataclass
class Cart:
    """A user's cart. One per user, created lazily on first add."""

    user_id: str
    lines: list[CartLine] = field(default_factory=list)
    updated_at: str = field(default_factory=_utc_now)

    def find_line(self, product_id: str, variant_id: str | None = None) -> CartLine | None:
        for line in self.lines:
            if line.key == (product_id, variant_id):
                return line
        return None

    def remove_line(self, line: CartLine) -> None:
        self.lines = [l for l in self.lines if l.key != line.key]

    def stats(self) -> dict[str, Any]:
        return {
            "item_count": len(self.lines),
            "total_items": sum(l.quantity for l in self.lines),
            "total_value": str(sum((l.line_total for l in self.lines), Decimal("0"))),
            "last_updated": self.updated_at,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "lines": [l.to_dict() for l in self.lines],
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Cart":
        return cls(
            user_id=data["user_id"],
            lines=[CartLine.from_dict(l) for l in data.get("lines", [])],
            updated_at=data.get("updated_at", ""),
        )


@dataclass(frozen=True)
class LineRequest:
    """A requested (product, variant, quantity) line from a client."""

    product_id: str
    quantity: int = 1
    variant_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "product_id": self.product_id,
            "quantity": self.quantity,
            "variant_id": self.variant_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LineRequest":
        variant = data.get("variant")
        variant_id = data.get("variant_id")
        if variant_id is None and isinstance(variant, dict):
            variant_id = variant.get("id")
        return cls(
            product_id=data["product_id"],
            quantity=int(data.get("quantity", 1)),
            variant_id=variant_id,
        )


@dataclass
class CartResult:
    """Outcome of a cart mutation.

    status is "ok" when the whole request was applied, or "clamped" when
    only applied_quantity units could be applied (reason says why).
    """

    cart: Cart
    status: str = "ok"
    requested_quantity: int = 0
    applied_quantity: int = 0
    reason: str | None = None

    @property
    def clamped(self) -> bool:
        return self.status == "clamped"


@dataclass
class SyncResult:
    """Outcome of merging an anonymous cart into a user's cart."""

    cart: Cart
    succeeded: list[dict[str, Any]] = field(default_factory=list)
    failed: list[dict[str, Any]] = field(default_factory=list)


# Order models


@dataclass
class OrderLine:
    """Frozen copy of a purchased item; does not follow catalog edits."""

    product_id: str
    name: str
    unit_price: Decimal
    quantity: int
    variant: dict[str, Any] | None = None  # {"id", "name", "price"} at purchase time

    @property
    def variant_id(self) -> str | None:
        return self.variant["id"] if self.variant else None

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity

    def to_dict(self) -> dict[str, Any]:
        return {
            "product_id": self.product_id,
            "name": self.name,
            "unit_price": str(self.unit_price),
            "quantity": self.quantity,
            "variant": self.variant,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OrderLine":
        return cls(
            product_id=data["product_id"],
            name=data["name"],
            unit_price=_money(data["unit_price"]),
            quantity=data["quantity"],
            variant=data.get("variant"),
        )


@dataclass
class StatusHistoryEntry:
    status: str
    timestamp: str
    note: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"status": self.status, "timestamp": self.timestamp, "note": self.note}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StatusHistoryEntry":
        return cls(
            status=data["status"],
            timestamp=data["timestamp"],
            note=data.get("note", ""),
        )


@dataclass
class Order:
    """An order snapshot. Items and totals never change after creation."""

    id: str
    order_number: str
    user_id: str | None
    items: list[OrderLine]
    subtotal: Decimal
    tax: Decimal
    shipping: Decimal
    total: Decimal
    status: str = OrderStatus.PENDING.value
    payment_status: str = PaymentStatus.PENDING.value
    payment_method: str = ""
    shipping_address: dict[str, Any] = field(default_factory=dict)
    billing_address: dict[str, Any] = field(default_factory=dict)
    notes: str | None = None
    tracking_number: str | None = None
    estimated_delivery: str | None = None
    delivered_at: str | None = None
    return_request: dict[str, Any] | None = None
    stock_released: bool = False
    status_history: list[StatusHistoryEntry] = field(default_factory=list)
    created_at: str = field(default_factory=_utc_now)
    updated_at: str = field(default_factory=_utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "order_number": self.order_number,
            "user_id": self.user_id,
            "items": [i.to_dict() for i in self.items],
            "subtotal": str(self.subtotal),
            "tax": str(self.tax),
            "shipping": str(self.shipping),
            "total": str(self.total),
            "status": self.status,
            "payment_status": self.payment_status,
            "payment_method": self.payment_method,
            "shipping_address": self.shipping_address,
            "billing_address": self.billing_address,
            "notes": self.notes,
            "tracking_number": self.tracking_number,
            "estimated_delivery": self.estimated_delivery,
            "delivered_at": self.delivered_at,
            "return_request": self.return_request,
            "stock_released": self.stock_released,
            "status_history": [h.to_dict() for h in self.status_history],
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Order":
        return cls(
            id=data["id"],
            order_number=data.get("order_number", ""),
            user_id=data.get("user_id"),
            items=[OrderLine.from_dict(i) for i in data.get("items", [])],
            subtotal=_money(data["subtotal"]),
            tax=_money(data["tax"]),
            shipping=_money(data["shipping"]),
            total=_money(data["total"]),
            status=data.get("status", OrderStatus.PENDING.value),
            payment_status=data.get("payment_status", PaymentStatus.PENDING.value),
            payment_method=data.get("payment_method", ""),
            shipping_address=data.get("shipping_address", {}),
            billing_address=data.get("billing_address", {}),
            notes=data.get("notes"),
            tracking_number=data.get("tracking_number"),
            estimated_delivery=data.get("estimated_delivery"),
            delivered_at=data.get("delivered_at"),
            return_request=data.get("return_request"),
            stock_released=data.get("stock_released", False),
            status_history=[
                StatusHistoryEntry.from_dict(h) for h in data.get("status_history", [])
            ],
            created_at=data.get("created_at", ""),
            updated_at=data.get("updated_at", ""),
        )


# Customer / wishlist models


@dataclass
class WishlistEntry:
    """A wishlisted product (or variant) waiting for restock."""

    product_id: str
    variant_id: str | None = None
    auto_add_to_cart: bool = False
    notify_on_restock: bool = False
    was_out_of_stock: bool = False  # sticky; only flagged entries are swept
    added_at: str = field(default_factory=_utc_now)

    @property
    def key(self) -> tuple[str, str | None]:
        return (self.product_id, self.variant_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "product_id": self.product_id,
            "variant_id": self.variant_id,
            "auto_add_to_cart": self.auto_add_to_cart,
            "notify_on_restock": self.notify_on_restock,
            "was_out_of_stock": self.was_out_of_stock,
            "added_at": self.added_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "WishlistEntry":
        return cls(
            product_id=data["product_id"],
            variant_id=data.get("variant_id"),
            auto_add_to_cart=data.get("auto_add_to_cart", False),
            notify_on_restock=data.get("notify_on_restock", False),
            was_out_of_stock=data.get("was_out_of_stock", False),
            added_at=data.get("added_at", ""),
        )


def _empty_stats() -> dict[str, Any]:
    return {"total_orders": 0, "total_spent": "0", "last_order_date": None}


@dataclass
class Customer:
    """The slice of a user record this core reads and writes."""

    id: str
    name: str = ""
    email: str = ""
    wishlist: list[WishlistEntry] = field(default_factory=list)
    stats: dict[str, Any] = field(default_factory=_empty_stats)

    def find_entry(self, product_id: str, variant_id: str | None = None) -> WishlistEntry | None:
        for entry in self.wishlist:
            if entry.key == (product_id, variant_id):
                return entry
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "wishlist": [e.to_dict() for e in self.wishlist],
            "stats": self.stats,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Customer":
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            email=data.get("email", ""),
            wishlist=[WishlistEntry.from_dict(e) for e in data.get("wishlist", [])],
            stats=data.get("stats") or _empty_stats(),
        )


# Restock watcher results


@dataclass
class SweepReport:
    """Summary of one restock sweep."""

    started_at: str
    finished_at: str | None = None
    skipped: bool = False  # another sweep was still running
    users_processed: int = 0
    users_pending: int = 0  # left for the next sweep after the time budget ran out
    entries_restocked: int = 0
    auto_added: list[dict[str, Any]] = field(default_factory=list)
    auto_add_failed: list[dict[str, Any]] = field(default_factory=list)
    notifications_sent: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def budget_exhausted(self) -> bool:
        return self.users_pending > 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "skipped": self.skipped,
            "users_processed": self.users_processed,
            "users_pending": self.users_pending,
            "budget_exhausted": self.budget_exhausted,
            "entries_restocked": self.entries_restocked,
            "auto_added": self.auto_added,
            "auto_add_failed": self.auto_add_failed,
            "notifications_sent": self.notifications_sent,
            "errors": self.errors,
        }
