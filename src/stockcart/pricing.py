"""Order pricing: subtotal, tax, shipping and total."""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Iterable

from .config import Settings
from .models import OrderLine

CENTS = Decimal("0.01")


def _round(amount: Decimal) -> Decimal:
    return amount.quantize(CENTS, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class PricingRule:
    """Tax rate and shipping policy applied when an order is created."""

    tax_rate: Decimal = Decimal("0.08")
    free_shipping_threshold: Decimal = Decimal("50.00")
    flat_shipping_fee: Decimal = Decimal("5.99")

    @classmethod
    def from_settings(cls, settings: Settings) -> "PricingRule":
        return cls(
            tax_rate=settings.tax_rate,
            free_shipping_threshold=settings.free_shipping_threshold,
            flat_shipping_fee=settings.flat_shipping_fee,
        )


@dataclass(frozen=True)
class PricingBreakdown:
    subtotal: Decimal
    tax: Decimal
    shipping: Decimal
    total: Decimal

    def to_dict(self) -> dict[str, Any]:
        return {
            "subtotal": str(self.subtotal),
            "tax": str(self.tax),
            "shipping": str(self.shipping),
            "total": str(self.total),
        }


def calculate_pricing(lines: Iterable[OrderLine], rule: PricingRule) -> PricingBreakdown:
    """Price a set of order lines.

    Shipping is free only when the subtotal is strictly greater than the
    threshold; tax is rounded half-up to cents before the total is summed.
    """
    subtotal = sum((line.line_total for line in lines), Decimal("0"))
    tax = _round(subtotal * rule.tax_rate)

    if subtotal > rule.free_shipping_threshold:
        shipping = Decimal("0.00")
    else:
        shipping = rule.flat_shipping_fee

    total = subtotal + tax + shipping

    return PricingBreakdown(
        subtotal=_round(subtotal),
        tax=tax,
        shipping=_round(shipping),
        total=_round(total),
    )
