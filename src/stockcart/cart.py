"""Cart store: per-user cart lines kept consistent with available stock."""

from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from .errors import (
    GuestCartError,
    InvalidQuantityError,
    ItemNotFoundError,
    OutOfStockError,
    StockcartError,
)
from .ledger import StockLedger
from .models import Cart, CartLine, CartResult, LineRequest, Product, SyncResult, _utc_now
from .observability import get_logger
from .store import CartRepository

logger = get_logger("cart")

CLAMP_REASON = "insufficient_stock"


def _utc_clock() -> datetime:
    return datetime.now(timezone.utc)


class CartService:
    """Add, update and remove cart lines, re-validating stock on every mutation.

    By default the cart only reads the ledger: a line is admitted or clamped
    against the stock available at mutation time. With hold_stock=True the
    cart reserves the units it holds, so concurrent carts cannot both claim
    the last units; decreases, removals, clears and cleanup release them.
    """

    def __init__(
        self,
        carts: CartRepository,
        ledger: StockLedger,
        hold_stock: bool = False,
        now: Callable[[], datetime] | None = None,
    ):
        self.carts = carts
        self.ledger = ledger
        self.hold_stock = hold_stock
        self.now = now or _utc_clock

    def get_cart(self, user_id: str | None) -> Cart:
        """Get a user's cart; an empty cart if they don't have one yet."""
        self._require_user(user_id)
        return self.carts.get(user_id) or Cart(user_id=user_id)

    def get_stats(self, user_id: str | None) -> dict[str, Any]:
        return self.get_cart(user_id).stats()

    def add_item(
        self,
        user_id: str | None,
        product_id: str,
        quantity: int = 1,
        variant_id: str | None = None,
    ) -> CartResult:
        """
        Add quantity units of a product (or variant) to a user's cart.

        An existing line with the same product and variant is merged. If the
        merged quantity exceeds available stock it is clamped and the result
        status is "clamped".

        Raises:
            GuestCartError: If there is no user.
            InvalidQuantityError: If quantity is not positive.
            ProductNotFoundError: If the product or variant doesn't exist.
            OutOfStockError: If nothing is available; the cart is unchanged.
        """
        self._require_user(user_id)
        if quantity <= 0:
            raise InvalidQuantityError(quantity)
        product = self.ledger.lookup(product_id, variant_id)

        if self.hold_stock:
            return self._add_held(user_id, product, quantity, variant_id)

        def apply(cart: Cart) -> CartResult:
            available = self.ledger.available(product_id, variant_id)
            if available == 0:
                raise OutOfStockError(product_id, variant_id, quantity)
            line = cart.find_line(product_id, variant_id)
            existing = line.quantity if line else 0
            final = min(existing + quantity, available)
            self._set_line(cart, product, variant_id, line, final)
            clamped = final < existing + quantity
            return self._result(cart, quantity, max(final - existing, 0), clamped)

        result = self.carts.mutate(user_id, apply)
        self._log_clamp(user_id, product_id, variant_id, result)
        return result

    def _add_held(
        self, user_id: str, product: Product, quantity: int, variant_id: str | None
    ) -> CartResult:
        held: list[int] = []

        def apply(cart: Cart) -> CartResult:
            taken = self.ledger.reserve_up_to(product.id, variant_id, quantity)
            if taken == 0:
                raise OutOfStockError(product.id, variant_id, quantity)
            held.append(taken)
            line = cart.find_line(product.id, variant_id)
            existing = line.quantity if line else 0
            self._set_line(cart, product, variant_id, line, existing + taken)
            return self._result(cart, quantity, taken, taken < quantity)

        try:
            result = self.carts.mutate(user_id, apply)
        except Exception:
            # The cart write failed after the hold was taken
            if held:
                self.ledger.release(product.id, variant_id, held[0])
            raise
        self._log_clamp(user_id, product.id, variant_id, result)
        return result

    def update_quantity(
        self,
        user_id: str | None,
        product_id: str,
        quantity: int,
        variant_id: str | None = None,
    ) -> CartResult:
        """
        Set a line's quantity, clamping it to available stock.

        A quantity of zero or less removes the line, as does clamping to zero
        when the product has sold out since it was added.

        Raises:
            GuestCartError: If there is no user.
            ItemNotFoundError: If the cart has no such line.
        """
        self._require_user(user_id)
        if quantity <= 0:
            cart = self.remove_item(user_id, product_id, variant_id)
            return CartResult(cart=cart, requested_quantity=quantity, applied_quantity=0)

        product = self.ledger.lookup(product_id, variant_id)
        released: list[int] = []
        held: list[int] = []

        def apply(cart: Cart) -> CartResult:
            line = cart.find_line(product_id, variant_id)
            if line is None:
                raise ItemNotFoundError(product_id, variant_id)
            existing = line.quantity
            if self.hold_stock:
                final = quantity
                if quantity > existing:
                    taken = self.ledger.reserve_up_to(product_id, variant_id, quantity - existing)
                    held.append(taken)
                    final = existing + taken
                elif quantity < existing:
                    released.append(existing - quantity)
            else:
                available = self.ledger.available(product_id, variant_id)
                if available == 0:
                    cart.remove_line(line)
                    return self._result(cart, quantity, 0, True)
                final = min(quantity, available)
            self._set_line(cart, product, variant_id, line, final)
            return self._result(cart, quantity, final, final < quantity)

        try:
            result = self.carts.mutate(user_id, apply)
        except Exception:
            if held and held[0]:
                self.ledger.release(product_id, variant_id, held[0])
            raise
        if released:
            self.ledger.release(product_id, variant_id, released[0])
        self._log_clamp(user_id, product_id, variant_id, result)
        return result

    def remove_item(
        self, user_id: str | None, product_id: str, variant_id: str | None = None
    ) -> Cart:
        """
        Remove a line from a user's cart.

        Raises:
            GuestCartError: If there is no user.
            ItemNotFoundError: If the cart has no such line.
        """
        self._require_user(user_id)

        def apply(cart: Cart) -> CartLine:
            line = cart.find_line(product_id, variant_id)
            if line is None:
                raise ItemNotFoundError(product_id, variant_id)
            cart.remove_line(line)
            return line

        removed = self.carts.mutate(user_id, apply)
        if self.hold_stock:
            self._release_lines([removed])
        return self.get_cart(user_id)

    def clear(self, user_id: str | None) -> Cart:
        """Empty a user's cart. Clearing an empty or missing cart is not an error."""
        self._require_user(user_id)
        removed = self.carts.delete(user_id)
        if removed is not None and self.hold_stock:
            self._release_lines(removed.lines)
        return Cart(user_id=user_id)

    def sync_from_anonymous(
        self, user_id: str | None, lines: list[LineRequest]
    ) -> SyncResult:
        """
        Merge a client-held cart into the user's cart with add_item semantics.

        Each line is applied independently; lines that fail are reported in
        `failed` with the error type and message instead of aborting the sync.
        """
        self._require_user(user_id)
        succeeded: list[dict[str, Any]] = []
        failed: list[dict[str, Any]] = []

        for request in lines:
            entry = request.to_dict()
            try:
                result = self.add_item(
                    user_id, request.product_id, request.quantity, request.variant_id
                )
            except StockcartError as e:
                entry.update(error_type=type(e).__name__, reason=str(e))
                failed.append(entry)
                continue
            entry.update(status=result.status, applied_quantity=result.applied_quantity)
            if result.reason:
                entry["reason"] = result.reason
            succeeded.append(entry)

        logger.info(
            "cart_synced",
            user_id=user_id,
            succeeded=len(succeeded),
            failed=len(failed),
        )
        return SyncResult(cart=self.get_cart(user_id), succeeded=succeeded, failed=failed)

    def cleanup_old_carts(self, max_age_hours: int = 24) -> list[str]:
        """
        Delete carts not updated within max_age_hours.

        Returns:
            User IDs whose carts were removed.
        """
        cutoff = self.now() - timedelta(hours=max_age_hours)
        removed_users: list[str] = []
        for cart in self.carts.list_carts():
            removed = self.carts.delete(cart.user_id, updated_before=cutoff)
            if removed is None:
                continue
            if self.hold_stock:
                self._release_lines(removed.lines)
            removed_users.append(cart.user_id)

        if removed_users:
            logger.info("carts_cleaned_up", count=len(removed_users), max_age_hours=max_age_hours)
        return removed_users

    def _set_line(
        self,
        cart: Cart,
        product: Product,
        variant_id: str | None,
        line: CartLine | None,
        quantity: int,
    ) -> CartLine:
        if line is not None:
            line.quantity = quantity
            line.updated_at = _utc_now()
            return line

        unit_price = product.price
        variant_name = None
        if variant_id:
            variant = product.get_variant(variant_id)
            unit_price = variant.price
            variant_name = variant.name
        line = CartLine(
            product_id=product.id,
            quantity=quantity,
            unit_price=unit_price,
            product_name=product.name,
            variant_id=variant_id,
            variant_name=variant_name,
        )
        cart.lines.append(line)
        return line

    def _result(self, cart: Cart, requested: int, applied: int, clamped: bool) -> CartResult:
        if clamped:
            return CartResult(
                cart=cart,
                status="clamped",
                requested_quantity=requested,
                applied_quantity=applied,
                reason=CLAMP_REASON,
            )
        return CartResult(cart=cart, requested_quantity=requested, applied_quantity=applied)

    def _release_lines(self, lines: list[CartLine]) -> None:
        for line in lines:
            if line.quantity > 0:
                self.ledger.release(line.product_id, line.variant_id, line.quantity)

    def _log_clamp(
        self,
        user_id: str,
        product_id: str,
        variant_id: str | None,
        result: CartResult,
    ) -> None:
        if result.clamped:
            logger.info(
                "cart_quantity_clamped",
                user_id=user_id,
                product_id=product_id,
                variant_id=variant_id,
                requested=result.requested_quantity,
                applied=result.applied_quantity,
            )

    @staticmethod
    def _require_user(user_id: str | None) -> None:
        if not user_id:
            raise GuestCartError()
