from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Protocol

from app.config import settings

_CENTS = Decimal("0.01")


class PricedItem(Protocol):
    price: float
    quantity: int


@dataclass(frozen=True)
class PricingRules:
    tax_rate: Decimal
    free_shipping_threshold: Decimal
    shipping_fee: Decimal

    @classmethod
    def from_settings(cls) -> "PricingRules":
        return cls(
            tax_rate=Decimal(str(settings.tax_rate)),
            free_shipping_threshold=Decimal(str(settings.free_shipping_threshold)),
            shipping_fee=Decimal(str(settings.shipping_fee)),
        )


@dataclass(frozen=True)
class OrderTotals:
    subtotal: Decimal
    tax: Decimal
    shipping: Decimal
    total: Decimal

    def as_metadata(self) -> dict[str, str]:
        return {
            "subtotal": str(self.subtotal),
            "tax": str(self.tax),
            "delivery_charge": str(self.shipping),
            "total_amount": str(self.total),
        }


def _money(value: Decimal) -> Decimal:
    return value.quantize(_CENTS, rounding=ROUND_HALF_UP)


def compute_totals(items: Iterable[PricedItem], rules: PricingRules | None = None) -> OrderTotals:
    """Derive order totals from line items; client-sent totals are ignored."""
    rules = rules or PricingRules.from_settings()
    subtotal = _money(
        sum((Decimal(str(item.price)) * item.quantity for item in items), Decimal("0"))
    )
    tax = _money(subtotal * rules.tax_rate)
    shipping = Decimal("0.00") if subtotal > rules.free_shipping_threshold else _money(
        rules.shipping_fee
    )
    return OrderTotals(
        subtotal=subtotal,
        tax=tax,
        shipping=shipping,
        total=_money(subtotal + tax + shipping),
    )
