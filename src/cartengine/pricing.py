"""Pricing engine for cartengine.

``price`` is the single source of cart totals. The live cart view, checkout
and the invoice all call it; nothing else adds up line totals.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol

from .models import (
    AppliedCoupon,
    CartLineItem,
    DiscountType,
    PriceBreakdown,
    ShippingMethod,
    round_money,
)

ZERO = Decimal("0")
HUNDRED = Decimal("100")


class ShippingRule(Protocol):
    """Shipping cost keyed on the order's subtotal and chosen method."""

    def cost(self, subtotal: Decimal, method: ShippingMethod) -> Decimal:
        ...


@dataclass(frozen=True)
class TieredShipping:
    """Standard shipping is free above a threshold; express is a flat fee."""

    free_threshold: Decimal = Decimal("200")
    standard_fee: Decimal = Decimal("15")
    express_fee: Decimal = Decimal("15")

    def cost(self, subtotal: Decimal, method: ShippingMethod) -> Decimal:
        if subtotal <= ZERO:
            return ZERO
        if method is ShippingMethod.EXPRESS:
            return self.express_fee
        return ZERO if subtotal > self.free_threshold else self.standard_fee


def compute_subtotal(lines: Iterable[CartLineItem]) -> Decimal:
    return sum((line.line_total for line in lines), ZERO)


def compute_discount(discount_type: DiscountType, value: Decimal, subtotal: Decimal) -> Decimal:
    """Discount for a subtotal, clamped so the total can never go negative."""
    if discount_type is DiscountType.PERCENTAGE:
        amount = subtotal * value / HUNDRED
    else:
        amount = value
    amount = min(max(amount, ZERO), max(subtotal, ZERO))
    return round_money(amount)


def rebind_coupon(applied: AppliedCoupon, subtotal: Decimal) -> AppliedCoupon:
    """Re-evaluate an applied coupon's discount against a new subtotal."""
    if applied.subtotal == subtotal:
        return applied
    return AppliedCoupon(
        code=applied.code,
        discount_type=applied.discount_type,
        discount_value=applied.discount_value,
        discount_amount=compute_discount(applied.discount_type, applied.discount_value, subtotal),
        subtotal=subtotal,
    )


def price(
    lines: Iterable[CartLineItem],
    applied_coupon: AppliedCoupon | None,
    shipping_rule: ShippingRule,
    shipping_method: ShippingMethod = ShippingMethod.STANDARD,
) -> PriceBreakdown:
    """Compute subtotal, discount, shipping and total for a set of lines.

    The coupon's discount is recomputed from its type and value against the
    current subtotal, so a percentage coupon applied to an earlier cart
    scales with the cart instead of going stale.
    """
    subtotal = compute_subtotal(lines)
    discount = ZERO
    if applied_coupon is not None:
        discount = rebind_coupon(applied_coupon, subtotal).discount_amount
    shipping = shipping_rule.cost(subtotal, shipping_method)
    total = max(ZERO, subtotal - discount + shipping)
    return PriceBreakdown(
        subtotal=subtotal,
        discount=discount,
        shipping=shipping,
        total=total,
    )
