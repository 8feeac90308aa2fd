"""
Checkout pricing.

The same breakdown is shown to the shopper and charged by the server; the
server never accepts a total computed elsewhere.
"""
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Protocol, Union

from storefront.config import FREE_SHIPPING_THRESHOLD, SHIPPING_FEE, TAX_RATE

CENT = Decimal("0.01")


class PricedLine(Protocol):
    unit_price: int      # cents
    quantity: int


@dataclass(frozen=True)
class PriceBreakdown:
    subtotal: Decimal
    tax: Decimal
    shipping: Decimal
    total: Decimal


def to_cents(amount: Union[Decimal, int, str]) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_cents(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(CENT)


def calculate(
    lines: Iterable[PricedLine],
    tax_rate: Decimal = TAX_RATE,
    free_shipping_threshold: Decimal = FREE_SHIPPING_THRESHOLD,
    shipping_fee: Decimal = SHIPPING_FEE,
) -> PriceBreakdown:
    subtotal = sum((from_cents(line.unit_price) * line.quantity for line in lines), Decimal("0")).quantize(CENT)
    tax = (subtotal * tax_rate).quantize(CENT, rounding=ROUND_HALF_UP)
    shipping = Decimal("0.00") if subtotal > free_shipping_threshold else Decimal(shipping_fee).quantize(CENT)
    return PriceBreakdown(
        subtotal=subtotal,
        tax=tax,
        shipping=shipping,
        total=subtotal + tax + shipping,
    )
