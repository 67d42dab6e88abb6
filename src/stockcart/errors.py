"""Custom exceptions for stockcart."""


class StockcartError(Exception):
    """Base exception for all stockcart errors."""

    pass


class ProductNotFoundError(StockcartError):
    """Raised when a product (or the requested variant of it) doesn't exist."""

    def __init__(self, product_id: str, variant_id: str | None = None):
        self.product_id = product_id
        self.variant_id = variant_id
        msg = f"Product not found: {product_id}"
        if variant_id:
            msg = f"Variant '{variant_id}' not found for product {product_id}"
        super().__init__(msg)


class ItemNotFoundError(StockcartError):
    """Raised when a cart line or order item doesn't exist."""

    def __init__(self, product_id: str, variant_id: str | None = None):
        self.product_id = product_id
        self.variant_id = variant_id
        msg = f"Item not found: {product_id}"
        if variant_id:
            msg = f"{msg} (variant {variant_id})"
        super().__init__(msg)


class InvalidQuantityError(StockcartError):
    """Raised when a quantity that must be positive isn't."""

    def __init__(self, quantity: int):
        self.quantity = quantity
        super().__init__(f"Quantity must be a positive integer, got {quantity}")


class StockError(StockcartError):
    """Base for errors caused by not having enough sellable stock."""

    def __init__(
        self,
        message: str,
        product_id: str,
        variant_id: str | None,
        requested: int,
        available: int,
    ):
        self.product_id = product_id
        self.variant_id = variant_id
        self.requested = requested
        self.available = available
        super().__init__(message)


class OutOfStockError(StockError):
    """Raised when nothing at all is available."""

    def __init__(self, product_id: str, variant_id: str | None = None, requested: int = 0):
        target = product_id if not variant_id else f"{product_id} (variant {variant_id})"
        super().__init__(f"Out of stock: {target}", product_id, variant_id, requested, 0)


class InsufficientStockError(StockError):
    """Raised when some stock is available but less than requested."""

    def __init__(
        self,
        product_id: str,
        variant_id: str | None,
        requested: int,
        available: int,
    ):
        target = product_id if not variant_id else f"{product_id} (variant {variant_id})"
        super().__init__(
            f"Only {available} available for {target}, requested {requested}",
            product_id,
            variant_id,
            requested,
            available,
        )


class OrderNotFoundError(StockcartError):
    """Raised when an order ID doesn't exist."""

    def __init__(self, order_id: str, message: str | None = None):
        self.order_id = order_id
        super().__init__(message or f"Order not found: {order_id}")


class OwnershipMismatchError(OrderNotFoundError):
    """Raised when a user acts on an order they don't own.

    Subclasses OrderNotFoundError so another user's order is reported
    exactly like a missing one.
    """

    def __init__(self, order_id: str, user_id: str | None):
        self.user_id = user_id
        super().__init__(order_id, f"Order not found: {order_id}")


class InvalidTransitionError(StockcartError):
    """Raised when an order status change isn't allowed by the state machine."""

    def __init__(self, order_id: str, current: str, requested: str, reason: str | None = None):
        self.order_id = order_id
        self.current = current
        self.requested = requested
        msg = f"Cannot move order {order_id} from '{current}' to '{requested}'"
        if reason:
            msg = f"{msg} ({reason})"
        super().__init__(msg)


class ReturnWindowExpiredError(StockcartError):
    """Raised when a return is requested too long after delivery."""

    def __init__(self, order_id: str, days_since_delivery: float, window_days: int):
        self.order_id = order_id
        self.days_since_delivery = days_since_delivery
        self.window_days = window_days
        super().__init__(
            f"Returns must be requested within {window_days} days of delivery "
            f"(order {order_id} was delivered {days_since_delivery:.0f} days ago)"
        )


class GuestCartError(StockcartError):
    """Raised when a cart or wishlist operation is attempted without a user."""

    def __init__(self, operation: str = "Cart"):
        self.operation = operation
        super().__init__(f"{operation} operations require a signed-in user")


class RetryableStoreError(StockcartError):
    """Raised when a store operation fails transiently (lock timeout, IO error)."""

    def __init__(self, operation: str, reason: str):
        self.operation = operation
        self.reason = reason
        super().__init__(f"Store operation '{operation}' failed: {reason}")


class EmptyOrderError(StockcartError):
    """Raised when an order (or a checkout from an empty cart) has no lines."""

    def __init__(self, source: str = "order"):
        self.source = source
        super().__init__(f"Cannot place an order from an empty {source}")
