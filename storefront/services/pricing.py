"""
Pricing calculator shared by checkout preview and order creation.

Both call sites go through compute_breakdown with the same inputs, so the
total a user is shown is the total they are charged.
"""

import uuid
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable

from storefront.schemas.pricing import PriceBreakdown

FREE_SHIPPING_THRESHOLD = 10000
FLAT_SHIPPING_FEE = 40
TAX_RATE = Decimal("0.18")
INSURANCE_RATE = Decimal("0.02")


@dataclass(frozen=True)
class PricedLine:
    product_id: uuid.UUID
    original_price: float
    final_price: float
    quantity: int


def round_currency(value: Decimal | float) -> int:
    """
    Round half-up to a whole currency unit (2.5 -> 3, never banker's rounding).
    """
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def line_insurance(line: PricedLine) -> int:
    return round_currency(Decimal(str(line.final_price)) * line.quantity * INSURANCE_RATE)


def compute_breakdown(
    lines: Iterable[PricedLine],
    insured_product_ids: Iterable[uuid.UUID] = (),
    coupon_discount: float = 0,
) -> PriceBreakdown:
    """
    Compute the price breakdown for a set of lines.

    - original_subtotal = sum(original_price * quantity)
    - item_discount     = original_subtotal - sum(final_price * quantity)
    - subtotal          = original_subtotal - item_discount
    - total_insurance   = sum(round(final_price * quantity * 2%)) over insured lines
    - shipping_cost     = 0 when subtotal >= 10000, else 40
    - tax               = round(subtotal * 18%)
    - grand_total       = subtotal + insurance + shipping + tax - coupon_discount
    - total_savings     = item_discount + coupon_discount

    Pure: no I/O, no clock, no mutation of the inputs.
    """
    insured = set(insured_product_ids)

    original_subtotal = Decimal(0)
    final_subtotal = Decimal(0)
    total_insurance = 0
    for line in lines:
        original_subtotal += Decimal(str(line.original_price)) * line.quantity
        final_subtotal += Decimal(str(line.final_price)) * line.quantity
        if line.product_id in insured:
            total_insurance += line_insurance(line)

    item_discount = original_subtotal - final_subtotal
    subtotal = original_subtotal - item_discount
    shipping_cost = 0 if subtotal >= FREE_SHIPPING_THRESHOLD else FLAT_SHIPPING_FEE
    tax = round_currency(subtotal * TAX_RATE)
    coupon = Decimal(str(coupon_discount))
    grand_total = subtotal + total_insurance + shipping_cost + tax - coupon

    return PriceBreakdown(
        original_subtotal=float(original_subtotal),
        item_discount=float(item_discount),
        subtotal=float(subtotal),
        total_insurance=float(total_insurance),
        shipping_cost=float(shipping_cost),
        tax=float(tax),
        coupon_discount=float(coupon),
        grand_total=float(grand_total),
        total_savings=float(item_discount + coupon),
    )
