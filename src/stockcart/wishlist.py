"""Wishlist entries and their waiting-for-restock flag."""

from typing import Any

from .errors import GuestCartError, ItemNotFoundError
from .ledger import StockLedger
from .models import Customer, WishlistEntry
from .observability import get_logger
from .store import CustomerRepository

logger = get_logger("wishlist")


class WishlistService:
    """Manages wishlist entries.

    An entry is flagged was_out_of_stock whenever it is added or observed
    while its product (or variant) has nothing available. Only the restock
    watcher clears the flag.
    """

    def __init__(self, customers: CustomerRepository, ledger: StockLedger):
        self.customers = customers
        self.ledger = ledger

    def add_entry(
        self,
        user_id: str | None,
        product_id: str,
        variant_id: str | None = None,
        auto_add_to_cart: bool = False,
        notify_on_restock: bool = False,
    ) -> WishlistEntry:
        """
        Add a product to a user's wishlist, or update the existing entry's options.

        Raises:
            GuestCartError: If there is no user.
            ProductNotFoundError: If the product or variant doesn't exist.
        """
        self._require_user(user_id)
        product = self.ledger.lookup(product_id, variant_id)
        out_of_stock = self.ledger.available_stock(product, variant_id) == 0

        def apply(customer: Customer) -> WishlistEntry:
            entry = customer.find_entry(product_id, variant_id)
            if entry is None:
                entry = WishlistEntry(product_id=product_id, variant_id=variant_id)
                customer.wishlist.append(entry)
            entry.auto_add_to_cart = auto_add_to_cart
            entry.notify_on_restock = notify_on_restock
            entry.was_out_of_stock = entry.was_out_of_stock or out_of_stock
            return entry

        entry = self.customers.update(user_id, apply)
        logger.info(
            "wishlist_entry_saved",
            user_id=user_id,
            product_id=product_id,
            variant_id=variant_id,
            was_out_of_stock=entry.was_out_of_stock,
        )
        return entry

    def update_entry(
        self,
        user_id: str | None,
        product_id: str,
        variant_id: str | None = None,
        auto_add_to_cart: bool | None = None,
        notify_on_restock: bool | None = None,
    ) -> WishlistEntry:
        """Change an existing entry's preferences; None leaves a preference as is."""
        self._require_user(user_id)

        def apply(customer: Customer) -> WishlistEntry:
            entry = customer.find_entry(product_id, variant_id)
            if entry is None:
                raise ItemNotFoundError(product_id, variant_id)
            if auto_add_to_cart is not None:
                entry.auto_add_to_cart = auto_add_to_cart
            if notify_on_restock is not None:
                entry.notify_on_restock = notify_on_restock
            return entry

        return self.customers.update(user_id, apply)

    def remove_entry(
        self, user_id: str | None, product_id: str, variant_id: str | None = None
    ) -> list[WishlistEntry]:
        """
        Remove an entry and return the remaining wishlist.

        Raises:
            ItemNotFoundError: If the wishlist has no such entry.
        """
        self._require_user(user_id)

        def apply(customer: Customer) -> list[WishlistEntry]:
            entry = customer.find_entry(product_id, variant_id)
            if entry is None:
                raise ItemNotFoundError(product_id, variant_id)
            customer.wishlist = [e for e in customer.wishlist if e.key != entry.key]
            return customer.wishlist

        return self.customers.update(user_id, apply)

    def get_wishlist(self, user_id: str | None) -> list[dict[str, Any]]:
        """
        Get a user's wishlist with current availability.

        Entries observed with nothing available are flagged for the restock
        watcher before the list is returned.
        """
        self._require_user(user_id)
        customer = self.customers.get(user_id)
        if customer is None:
            return []

        views = []
        newly_out: set[tuple[str, str | None]] = set()
        for entry in customer.wishlist:
            product = self.ledger.find_product(entry.product_id)
            available = self.ledger.available_stock(product, entry.variant_id) if product else 0
            if available == 0 and not entry.was_out_of_stock:
                newly_out.add(entry.key)
                entry.was_out_of_stock = True
            view = entry.to_dict()
            view["product_name"] = product.name if product else None
            view["available"] = available
            views.append(view)

        if newly_out:

            def apply(fresh: Customer) -> None:
                for e in fresh.wishlist:
                    if e.key in newly_out:
                        e.was_out_of_stock = True

            self.customers.update(user_id, apply)
            logger.info("wishlist_entries_flagged", user_id=user_id, count=len(newly_out))
        return views

    @staticmethod
    def _require_user(user_id: str | None) -> None:
        if not user_id:
            raise GuestCartError("Wishlist")
