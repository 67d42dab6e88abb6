"""Stock ledger: the single writer of product and variant stock."""

import threading

from .errors import InvalidQuantityError, ProductNotFoundError, StockError
from .models import Product
from .observability import get_logger
from .store import CatalogRepository, StockAdjustment, available_stock

logger = get_logger("ledger")


class StockLedger:
    """Check, reserve and release sellable stock.

    Every decrement goes through the catalog's conditional update, so the
    availability check and the write happen as one step under the store lock.
    """

    def __init__(self, catalog: CatalogRepository):
        self.catalog = catalog
        # Units reserved through this ledger and not yet released, per key.
        # Only used to flag suspicious releases; never to reject them.
        self._outstanding: dict[tuple[str, str | None], int] = {}
        self._outstanding_lock = threading.Lock()

    def find_product(self, product_id: str) -> Product | None:
        return self.catalog.get_product(product_id)

    def lookup(self, product_id: str, variant_id: str | None = None) -> Product:
        """
        Get a product, checking the variant exists when one is given.

        Raises:
            ProductNotFoundError: If the product or variant doesn't exist.
        """
        product = self.catalog.get_product(product_id)
        if product is None:
            raise ProductNotFoundError(product_id)
        if variant_id and product.get_variant(variant_id) is None:
            raise ProductNotFoundError(product_id, variant_id)
        return product

    def available_stock(self, product: Product, variant_id: str | None = None) -> int:
        return available_stock(product, variant_id)

    def available(self, product_id: str, variant_id: str | None = None) -> int:
        """Current available stock, read fresh from the catalog."""
        return available_stock(self.lookup(product_id, variant_id), variant_id)

    def reserve(
        self, product_id: str, variant_id: str | None, quantity: int
    ) -> StockAdjustment:
        """
        Take quantity units out of the sellable pool.

        Raises:
            InvalidQuantityError: If quantity is not positive.
            ProductNotFoundError: If the product or variant doesn't exist.
            OutOfStockError: If nothing is available.
            InsufficientStockError: If fewer than quantity units are available.
        """
        if quantity <= 0:
            raise InvalidQuantityError(quantity)
        try:
            adjustment = self.catalog.adjust_stock(product_id, variant_id, -quantity)
        except StockError as exc:
            logger.info(
                "stock_reserve_rejected",
                product_id=product_id,
                variant_id=variant_id,
                requested=quantity,
                available=exc.available,
            )
            raise
        self._track(product_id, variant_id, quantity)
        logger.info(
            "stock_reserved",
            product_id=product_id,
            variant_id=variant_id,
            quantity=quantity,
            remaining=adjustment.after,
        )
        return adjustment

    def reserve_up_to(self, product_id: str, variant_id: str | None, quantity: int) -> int:
        """Reserve as many of quantity units as are available; returns the amount taken."""
        if quantity <= 0:
            raise InvalidQuantityError(quantity)
        adjustment = self.catalog.take_up_to(product_id, variant_id, quantity)
        taken = -adjustment.delta
        if taken:
            self._track(product_id, variant_id, taken)
            logger.info(
                "stock_reserved",
                product_id=product_id,
                variant_id=variant_id,
                quantity=taken,
                requested=quantity,
                remaining=adjustment.after,
            )
        return taken

    def release(
        self, product_id: str, variant_id: str | None, quantity: int
    ) -> StockAdjustment:
        """
        Put quantity units back into the sellable pool.

        There is no upper bound: releasing more than was reserved is accepted
        and logged as suspicious.
        """
        if quantity <= 0:
            raise InvalidQuantityError(quantity)
        adjustment = self.catalog.adjust_stock(product_id, variant_id, quantity)
        key = (product_id, variant_id)
        with self._outstanding_lock:
            outstanding = self._outstanding.get(key, 0)
            self._outstanding[key] = max(outstanding - quantity, 0)
        if quantity > outstanding:
            logger.warning(
                "stock_release_suspicious",
                product_id=product_id,
                variant_id=variant_id,
                quantity=quantity,
                outstanding=outstanding,
            )
        logger.info(
            "stock_released",
            product_id=product_id,
            variant_id=variant_id,
            quantity=quantity,
            remaining=adjustment.after,
        )
        return adjustment

    def _track(self, product_id: str, variant_id: str | None, quantity: int) -> None:
        key = (product_id, variant_id)
        with self._outstanding_lock:
            self._outstanding[key] = self._outstanding.get(key, 0) + quantity
