"""Order fulfillment: order creation, status transitions and payment outcomes."""

import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable

from .errors import (
    EmptyOrderError,
    GuestCartError,
    InvalidQuantityError,
    InvalidTransitionError,
    ItemNotFoundError,
    OrderNotFoundError,
    OwnershipMismatchError,
    ReturnWindowExpiredError,
    StockcartError,
)
from .ledger import StockLedger
from .models import (
    Cart,
    Customer,
    LineRequest,
    Order,
    OrderLine,
    OrderStatus,
    PaymentStatus,
    StatusHistoryEntry,
    _format_time,
    _generate_id,
    _parse_time,
)
from .observability import get_logger
from .pricing import PricingRule, calculate_pricing
from .store import CartRepository, CustomerRepository, OrderRepository

logger = get_logger("orders")

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    OrderStatus.PENDING.value: {OrderStatus.CONFIRMED.value, OrderStatus.CANCELLED.value},
    OrderStatus.CONFIRMED.value: {OrderStatus.PROCESSING.value, OrderStatus.CANCELLED.value},
    OrderStatus.PROCESSING.value: {OrderStatus.SHIPPED.value, OrderStatus.CANCELLED.value},
    OrderStatus.SHIPPED.value: {OrderStatus.DELIVERED.value},
    OrderStatus.DELIVERED.value: {OrderStatus.RETURNED.value},
    OrderStatus.CANCELLED.value: set(),
    OrderStatus.RETURNED.value: set(),
}


def can_transition(current: str, requested: str) -> bool:
    return requested in ALLOWED_TRANSITIONS.get(current, set())


def _utc_clock() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class OrderPage:
    """One page of a user's order history."""

    orders: list[Order] = field(default_factory=list)
    page: int = 1
    limit: int = 10
    total: int = 0

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.total else 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "orders": [o.to_dict() for o in self.orders],
            "pagination": {
                "page": self.page,
                "limit": self.limit,
                "total": self.total,
                "total_pages": self.total_pages,
                "has_next": self.page < self.total_pages,
                "has_prev": self.page > 1,
            },
        }


class OrderService:
    """Creates orders against the stock ledger and drives their status."""

    def __init__(
        self,
        orders: OrderRepository,
        carts: CartRepository,
        customers: CustomerRepository,
        ledger: StockLedger,
        pricing: PricingRule | None = None,
        return_window_days: int = 30,
        hold_stock: bool = False,
        now: Callable[[], datetime] | None = None,
    ):
        self.orders = orders
        self.carts = carts
        self.customers = customers
        self.ledger = ledger
        self.pricing = pricing or PricingRule()
        self.return_window_days = return_window_days
        self.hold_stock = hold_stock
        self.now = now or _utc_clock

    # --- Creation ---

    def create_order(
        self,
        user_id: str | None,
        lines: list[LineRequest],
        shipping_address: dict[str, Any] | None = None,
        billing_address: dict[str, Any] | None = None,
        payment_method: str = "",
        notes: str | None = None,
    ) -> Order:
        """
        Reserve stock for every line and record a pending order.

        Either every line is reserved or none is: when a line fails, the
        lines already reserved by this call are released before the error
        is raised. user_id may be None for a guest checkout.

        Raises:
            EmptyOrderError: If lines is empty.
            InvalidQuantityError: If a line's quantity is not positive.
            ProductNotFoundError: If a product or variant doesn't exist.
            OutOfStockError, InsufficientStockError: If a line can't be reserved.
        """
        if not lines:
            raise EmptyOrderError("order")
        for request in lines:
            if request.quantity <= 0:
                raise InvalidQuantityError(request.quantity)

        reserved: list[LineRequest] = []
        try:
            order_lines = []
            for request in lines:
                order_lines.append(self._snapshot(request))
                self.ledger.reserve(request.product_id, request.variant_id, request.quantity)
                reserved.append(request)
            order = self._build_order(
                user_id, order_lines, shipping_address, billing_address, payment_method, notes
            )
            self.orders.save(order)
        except Exception as e:
            self._rollback(reserved, e)
            raise

        logger.info(
            "order_created",
            order_id=order.id,
            order_number=order.order_number,
            user_id=user_id,
            lines=len(order.items),
            total=str(order.total),
        )
        return order

    def checkout(
        self,
        user_id: str | None,
        shipping_address: dict[str, Any] | None = None,
        billing_address: dict[str, Any] | None = None,
        payment_method: str = "",
        notes: str | None = None,
    ) -> Order:
        """
        Turn a user's cart into an order and empty the cart.

        When the cart holds stock, its holds become the order's reservation;
        otherwise the lines are reserved as in create_order. If the order
        can't be placed the cart is left untouched.
        """
        if not user_id:
            raise GuestCartError()

        def apply(cart: Cart) -> Order:
            if not cart.lines:
                raise EmptyOrderError("cart")
            requests = [
                LineRequest(line.product_id, line.quantity, line.variant_id)
                for line in cart.lines
            ]
            if self.hold_stock:
                order_lines = [self._snapshot(r) for r in requests]
                order = self._build_order(
                    user_id, order_lines, shipping_address, billing_address, payment_method, notes
                )
                self.orders.save(order)
                logger.info(
                    "order_created",
                    order_id=order.id,
                    order_number=order.order_number,
                    user_id=user_id,
                    lines=len(order.items),
                    total=str(order.total),
                    from_cart_holds=True,
                )
            else:
                order = self.create_order(
                    user_id,
                    requests,
                    shipping_address,
                    billing_address,
                    payment_method,
                    notes,
                )
            cart.lines = []
            return order

        return self.carts.mutate(user_id, apply)

    def _snapshot(self, request: LineRequest) -> OrderLine:
        product = self.ledger.lookup(request.product_id, request.variant_id)
        variant = None
        unit_price = product.price
        if request.variant_id:
            v = product.get_variant(request.variant_id)
            unit_price = v.price
            variant = {"id": v.id, "name": v.name, "price": str(v.price)}
        return OrderLine(
            product_id=product.id,
            name=product.name,
            unit_price=unit_price,
            quantity=request.quantity,
            variant=variant,
        )

    def _build_order(
        self,
        user_id: str | None,
        order_lines: list[OrderLine],
        shipping_address: dict[str, Any] | None,
        billing_address: dict[str, Any] | None,
        payment_method: str,
        notes: str | None,
    ) -> Order:
        now = self.now()
        timestamp = _format_time(now)
        pricing = calculate_pricing(order_lines, self.pricing)
        return Order(
            id=_generate_id(),
            order_number=f"ORD-{now:%Y%m%d}-{uuid.uuid4().hex[:6].upper()}",
            user_id=user_id,
            items=order_lines,
            subtotal=pricing.subtotal,
            tax=pricing.tax,
            shipping=pricing.shipping,
            total=pricing.total,
            payment_method=payment_method,
            shipping_address=shipping_address or {},
            billing_address=billing_address or shipping_address or {},
            notes=notes,
            status_history=[
                StatusHistoryEntry(OrderStatus.PENDING.value, timestamp, "Order created")
            ],
            created_at=timestamp,
            updated_at=timestamp,
        )

    def _rollback(self, reserved: list[LineRequest], error: Exception) -> None:
        for request in reversed(reserved):
            self.ledger.release(request.product_id, request.variant_id, request.quantity)
        logger.warning(
            "order_rolled_back",
            released_lines=len(reserved),
            error_type=type(error).__name__,
            error=str(error),
        )

    # --- Lookup ---

    def get_order(self, order_id: str, user_id: str | None = None) -> Order:
        """
        Get an order. When user_id is given the order must belong to that user.

        Raises:
            OrderNotFoundError: If the order doesn't exist or belongs to someone else.
        """
        order = self.orders.get(order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        if user_id is not None:
            self._check_owner(order, user_id)
        return order

    def list_orders(
        self,
        user_id: str | None,
        status: str | None = None,
        page: int = 1,
        limit: int = 10,
    ) -> OrderPage:
        """List a user's orders (all orders when user_id is None), newest first."""
        page = max(page, 1)
        limit = max(limit, 1)
        orders = self.orders.list_orders(user_id)
        if status:
            orders = [o for o in orders if o.status == status]
        start = (page - 1) * limit
        return OrderPage(
            orders=orders[start:start + limit], page=page, limit=limit, total=len(orders)
        )

    def tracking(self, order_id: str, user_id: str | None) -> dict[str, Any]:
        order = self.get_order(order_id, user_id)
        return {
            "order_number": order.order_number,
            "status": order.status,
            "tracking_number": order.tracking_number,
            "estimated_delivery": order.estimated_delivery,
            "status_history": [h.to_dict() for h in order.status_history],
        }

    # --- Transitions ---

    def cancel_order(self, order_id: str, user_id: str | None) -> Order:
        """
        Cancel a user's order and put its stock back.

        Stock is released before the order is written as cancelled.

        Raises:
            OrderNotFoundError: If the order doesn't exist or belongs to someone else.
            InvalidTransitionError: If the order has shipped, been delivered,
                or is already cancelled or returned.
        """

        def apply(order: Order) -> Order:
            self._check_owner(order, user_id)
            self._check_transition(order, OrderStatus.CANCELLED.value)
            self._release_stock(order)
            self._record(order, OrderStatus.CANCELLED.value, "Order cancelled by customer")
            return order

        return self.orders.update(order_id, apply)

    def request_return(
        self,
        order_id: str,
        user_id: str | None,
        reason: str,
        item_ids: list[str] | None = None,
    ) -> Order:
        """
        Mark a delivered order as returned.

        Stock is not released on return.

        Raises:
            OrderNotFoundError: If the order doesn't exist or belongs to someone else.
            InvalidTransitionError: If the order hasn't been delivered.
            ReturnWindowExpiredError: If delivery was more than the return window ago.
            ItemNotFoundError: If an item id doesn't match a product in the order.
        """

        def apply(order: Order) -> Order:
            self._check_owner(order, user_id)
            self._check_transition(
                order, OrderStatus.RETURNED.value, "only delivered orders can be returned"
            )
            now = self.now()
            days = (now - self._delivered_at(order)).total_seconds() / 86400
            if days > self.return_window_days:
                raise ReturnWindowExpiredError(order.id, days, self.return_window_days)

            order_items = [line.product_id for line in order.items]
            for item_id in item_ids or []:
                if item_id not in order_items:
                    raise ItemNotFoundError(item_id)

            order.return_request = {
                "reason": reason,
                "items": list(item_ids) if item_ids else order_items,
                "requested_at": _format_time(now),
            }
            self._record(order, OrderStatus.RETURNED.value, f"Return requested: {reason}")
            return order

        return self.orders.update(order_id, apply)

    def update_status(
        self,
        order_id: str,
        new_status: str,
        note: str | None = None,
        tracking_number: str | None = None,
        estimated_delivery: str | None = None,
    ) -> Order:
        """
        Move an order to a new status (admin).

        Cancelling releases stock exactly like cancel_order. Delivering
        records delivered_at, which starts the return window.

        Raises:
            OrderNotFoundError: If the order doesn't exist.
            InvalidTransitionError: If the state machine doesn't allow the move.
        """

        def apply(order: Order) -> Order:
            self._check_transition(order, new_status)
            if new_status == OrderStatus.CANCELLED.value:
                self._release_stock(order)
            if new_status == OrderStatus.DELIVERED.value:
                order.delivered_at = _format_time(self.now())
            if tracking_number:
                order.tracking_number = tracking_number
            if estimated_delivery:
                order.estimated_delivery = estimated_delivery
            self._record(order, new_status, note or f"Status changed to {new_status}")
            return order

        return self.orders.update(order_id, apply)

    def apply_payment_outcome(
        self,
        order_id: str,
        succeeded: bool,
        gateway: str | None = None,
        payment_id: str | None = None,
    ) -> Order:
        """
        Record a payment gateway outcome for an order.

        Success marks the order paid and confirmed; failure marks it failed
        and leaves it pending. Stock is not re-checked: it was reserved when
        the order was created. A repeated success is a no-op.

        Raises:
            OrderNotFoundError: If the order doesn't exist.
            InvalidTransitionError: If the order is no longer pending or confirmed.
        """
        via = f" via {gateway}" if gateway else ""
        ref = f" ({payment_id})" if payment_id else ""

        def apply(order: Order) -> tuple[Order, bool]:
            if (
                succeeded
                and order.payment_status == PaymentStatus.PAID.value
                and order.status == OrderStatus.CONFIRMED.value
            ):
                return order, False
            if order.status not in (OrderStatus.PENDING.value, OrderStatus.CONFIRMED.value):
                target = OrderStatus.CONFIRMED.value if succeeded else OrderStatus.PENDING.value
                raise InvalidTransitionError(
                    order.id, order.status, target, "payment outcome after fulfillment started"
                )
            if succeeded:
                order.payment_status = PaymentStatus.PAID.value
                self._record(
                    order, OrderStatus.CONFIRMED.value, f"Payment received{via}{ref}"
                )
            else:
                order.payment_status = PaymentStatus.FAILED.value
                self._record(order, OrderStatus.PENDING.value, f"Payment failed{via}{ref}")
            return order, True

        order, changed = self.orders.update(order_id, apply)
        if not changed:
            logger.info("payment_outcome_repeated", order_id=order_id, gateway=gateway)
            return order
        logger.info(
            "payment_outcome_applied",
            order_id=order_id,
            succeeded=succeeded,
            gateway=gateway,
        )
        if succeeded and order.user_id:
            self._record_purchase(order)
        return order

    def _record_purchase(self, order: Order) -> None:
        timestamp = _format_time(self.now())

        def apply(customer: Customer) -> None:
            stats = customer.stats
            stats["total_orders"] = stats.get("total_orders", 0) + 1
            spent = Decimal(str(stats.get("total_spent", "0"))) + order.total
            stats["total_spent"] = str(spent)
            stats["last_order_date"] = timestamp

        self.customers.update(order.user_id, apply)

    # --- Helpers ---

    def _check_owner(self, order: Order, user_id: str | None) -> None:
        if user_id is None or order.user_id != user_id:
            raise OwnershipMismatchError(order.id, user_id)

    def _check_transition(self, order: Order, requested: str, reason: str | None = None) -> None:
        if not can_transition(order.status, requested):
            raise InvalidTransitionError(order.id, order.status, requested, reason)

    def _release_stock(self, order: Order) -> None:
        """
        Put every line's stock back, or none of it.

        If a line can't be released, the lines already released are taken
        back before the error propagates, so the order (still unreleased) can
        be cancelled again without returning stock twice.
        """
        if order.stock_released:
            logger.warning("order_stock_already_released", order_id=order.id)
            return
        released: list[OrderLine] = []
        try:
            for line in order.items:
                self.ledger.release(line.product_id, line.variant_id, line.quantity)
                released.append(line)
        except Exception as e:
            self._undo_release(order, released, e)
            raise
        order.stock_released = True

    def _undo_release(self, order: Order, released: list[OrderLine], error: Exception) -> None:
        for line in reversed(released):
            try:
                self.ledger.reserve(line.product_id, line.variant_id, line.quantity)
            except StockcartError as undo_error:
                # The units were sold again in the meantime; they can't be taken back
                logger.error(
                    "order_release_undo_failed",
                    order_id=order.id,
                    product_id=line.product_id,
                    variant_id=line.variant_id,
                    quantity=line.quantity,
                    error=str(undo_error),
                )
        logger.warning(
            "order_release_rolled_back",
            order_id=order.id,
            released_lines=len(released),
            error_type=type(error).__name__,
            error=str(error),
        )

    def _record(self, order: Order, status: str, note: str) -> None:
        previous = order.status
        order.status = status
        order.status_history.append(
            StatusHistoryEntry(status, _format_time(self.now()), note)
        )
        logger.info(
            "order_status_changed",
            order_id=order.id,
            previous=previous,
            status=status,
            note=note,
        )

    def _delivered_at(self, order: Order) -> datetime:
        if order.delivered_at:
            return _parse_time(order.delivered_at)
        for entry in reversed(order.status_history):
            if entry.status == OrderStatus.DELIVERED.value:
                return _parse_time(entry.timestamp)
        return _parse_time(order.updated_at)
