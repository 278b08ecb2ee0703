"""Invoice data for orders and live carts.

Totals here are always the PriceBreakdown produced by ``pricing.price``;
this module formats them and never adds anything up itself.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from .models import Order, PriceBreakdown, ShippingMethod

if TYPE_CHECKING:
    from .cart import CartStore

CURRENCY_SYMBOL = "₹"


@dataclass(frozen=True)
class InvoiceLine:
    description: str
    size: float
    color: str
    quantity: int
    unit_price: str
    line_total: str


@dataclass(frozen=True)
class Invoice:
    reference: str
    lines: tuple[InvoiceLine, ...]
    totals: PriceBreakdown
    coupon_code: str | None = None
    ship_to: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "reference": self.reference,
            "lines": [line.__dict__ for line in self.lines],
            "totals": self.totals.to_dict(),
            "coupon_code": self.coupon_code,
            "ship_to": list(self.ship_to),
        }


def build_invoice(order: Order) -> Invoice:
    """Invoice for a committed order, using the totals frozen at commit."""
    lines = tuple(
        InvoiceLine(
            description=item.name or item.product_id,
            size=item.size,
            color=item.color,
            quantity=item.quantity,
            unit_price=str(item.unit_price),
            line_total=str(item.unit_price * item.quantity),
        )
        for item in order.items
    )
    return Invoice(
        reference=order.order_code or order.id,
        lines=lines,
        totals=order.totals,
        coupon_code=order.coupon_code,
        ship_to=tuple(order.shipping_address.lines()) if order.shipping_address else (),
    )


def live_summary(cart: CartStore, shipping_method: ShippingMethod = ShippingMethod.STANDARD) -> Invoice:
    """Invoice-shaped summary of a cart that has not been committed yet."""
    applied = cart.applied_coupon
    lines = tuple(
        InvoiceLine(
            description=line.name or line.product_id,
            size=line.size,
            color=line.color,
            quantity=line.quantity,
            unit_price=str(line.unit_price),
            line_total=str(line.line_total),
        )
        for line in cart.lines
    )
    return Invoice(
        reference=f"cart:{cart.user_id}",
        lines=lines,
        totals=cart.totals(shipping_method),
        coupon_code=applied.code if applied else None,
    )


def render_invoice_text(invoice: Invoice) -> str:
    def money(value) -> str:
        return f"{CURRENCY_SYMBOL}{value:.2f}"

    out = [f"Invoice {invoice.reference}", ""]
    if invoice.ship_to:
        out.append("Ship to:")
        out.extend(f"  {line}" for line in invoice.ship_to)
        out.append("")
    for line in invoice.lines:
        out.append(
            f"{line.description} (size {line.size:g}, {line.color}) x{line.quantity}  "
            f"{CURRENCY_SYMBOL}{line.line_total}"
        )
    totals = invoice.totals
    out.append("")
    out.append(f"Subtotal: {money(totals.subtotal)}")
    if totals.discount:
        label = f"Discount ({invoice.coupon_code})" if invoice.coupon_code else "Discount"
        out.append(f"{label}: -{money(totals.discount)}")
    out.append(f"Shipping: {'Free' if not totals.shipping else money(totals.shipping)}")
    out.append(f"Total: {money(totals.total)}")
    return "\n".join(out)
