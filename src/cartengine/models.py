"""Data models for cartengine."""

from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import ROUND_HALF_EVEN, Decimal
from enum import Enum
from typing import Any, NamedTuple

DEFAULT_COLOR = "Default"
CENTS = Decimal("0.01")


def _utc_now() -> str:
    """Return current UTC time as ISO 8601 string."""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _generate_id() -> str:
    """Generate a new row ID."""
    return str(uuid.uuid4())


def _generate_order_code() -> str:
    """Generate a short human-facing order code (e.g. ORD-4F9A1C)."""
    return f"ORD-{secrets.token_hex(3).upper()}"


def to_money(value: Any) -> Decimal:
    """Coerce a stored/transported amount to Decimal without float drift."""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def round_money(amount: Decimal, places: int = 2) -> Decimal:
    """Round to specified decimal places using banker's rounding."""
    quantize_str = "0." + "0" * places if places else "1"
    return amount.quantize(Decimal(quantize_str), rounding=ROUND_HALF_EVEN)


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO 8601 timestamp; naive values are taken as UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_timestamp(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _money_str(value: Decimal | None) -> str | None:
    return None if value is None else str(value)


class DiscountType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED_AMOUNT = "fixed_amount"


class ShippingMethod(str, Enum):
    STANDARD = "standard"
    EXPRESS = "express"


class OrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


# Legacy status values written by older storefront code
STATUS_ALIASES = {
    "confirmed": OrderStatus.PROCESSING,
    "payment_verified": OrderStatus.PROCESSING,
    "awaiting_confirmation": OrderStatus.PENDING,
}


def normalize_status(value: OrderStatus | str) -> OrderStatus:
    """Map a stored or requested status string to an OrderStatus.

    Raises:
        ValueError: If the value is not a known status or alias.
    """
    if isinstance(value, OrderStatus):
        return value
    key = value.strip().lower()
    if key in STATUS_ALIASES:
        return STATUS_ALIASES[key]
    return OrderStatus(key)


class RejectionReason(str, Enum):
    """Coupon rejection reasons, in evaluation order."""

    NOT_FOUND = "not_found"
    DISABLED = "disabled"
    NOT_YET_ACTIVE = "not_yet_active"
    EXPIRED = "expired"
    LIMIT_REACHED = "limit_reached"
    BELOW_MINIMUM_SPEND = "below_minimum_spend"


_REJECTION_MESSAGES = {
    RejectionReason.NOT_FOUND: "Invalid coupon code",
    RejectionReason.DISABLED: "This coupon is no longer active",
    RejectionReason.NOT_YET_ACTIVE: "This coupon is not yet active",
    RejectionReason.EXPIRED: "This coupon has expired",
    RejectionReason.LIMIT_REACHED: "This coupon usage limit has been reached",
}


# Models for stock and cart lines


@dataclass
class StockEntry:
    """Remaining units for one (product, size); backed by shoe_sizes."""

    product_id: str
    size: float
    quantity: int

    def to_row(self) -> dict[str, Any]:
        return {"shoe_id": self.product_id, "size": self.size, "quantity": self.quantity}

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "StockEntry":
        return cls(
            product_id=row["shoe_id"],
            size=row["size"],
            quantity=max(0, int(row.get("quantity") or 0)),
        )


class LineKey(NamedTuple):
    """Identity of a cart line: at most one line per key per cart."""

    product_id: str
    size: float
    color: str


@dataclass
class CartLineItem:
    """One (product, size, color) entry in a shopper's cart."""

    id: str
    product_id: str
    size: float
    color: str
    quantity: int
    unit_price: Decimal
    stock_snapshot: int = 0  # availability observed at the last stock read
    name: str = ""
    brand: str | None = None
    image: str | None = None

    @property
    def key(self) -> LineKey:
        return LineKey(self.product_id, self.size, self.color)

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "size": self.size,
            "color": self.color,
            "quantity": self.quantity,
            "unit_price": str(self.unit_price),
            "stock_snapshot": self.stock_snapshot,
            "name": self.name,
            "brand": self.brand,
            "image": self.image,
        }

    def to_row(self, user_id: str) -> dict[str, Any]:
        """Row for the cart_items relation."""
        return {
            "id": self.id,
            "user_id": user_id,
            "shoe_id": self.product_id,
            "quantity": self.quantity,
            "size": self.size,
            "color": self.color,
            "brand": self.brand,
        }

    @classmethod
    def from_stock_row(cls, row: dict[str, Any]) -> "CartLineItem":
        """Hydrate from a get_cart_with_stock row."""
        return cls(
            id=row["id"],
            product_id=row["shoe_id"],
            size=row["size"],
            color=row.get("color") or DEFAULT_COLOR,
            quantity=int(row["quantity"]),
            unit_price=to_money(row.get("shoe_price") or 0),
            stock_snapshot=max(0, int(row.get("stock_quantity") or 0)),
            name=row.get("shoe_name") or "Unknown Shoe",
            brand=row.get("brand"),
            image=row.get("shoe_image"),
        )

    @classmethod
    def create(
        cls,
        product_id: str,
        size: float,
        quantity: int,
        unit_price: Decimal | int | str,
        color: str | None = None,
        name: str = "",
        brand: str | None = None,
        image: str | None = None,
    ) -> "CartLineItem":
        """Create a new line with a generated ID (not yet stock-checked)."""
        return cls(
            id=_generate_id(),
            product_id=product_id,
            size=size,
            color=color or DEFAULT_COLOR,
            quantity=quantity,
            unit_price=to_money(unit_price),
            name=name,
            brand=brand,
            image=image,
        )


@dataclass(frozen=True)
class StockIssue:
    """A line whose quantity exceeds what is currently in stock."""

    line_id: str
    product_id: str
    size: float
    requested: int
    available: int

    @property
    def shortfall(self) -> int:
        return max(0, self.requested - self.available)

    @property
    def kind(self) -> str:
        return "sold_out" if self.available <= 0 else "insufficient"

    def to_dict(self) -> dict[str, Any]:
        return {
            "line_id": self.line_id,
            "product_id": self.product_id,
            "size": self.size,
            "requested": self.requested,
            "available": self.available,
            "shortfall": self.shortfall,
            "kind": self.kind,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StockIssue":
        return cls(
            line_id=data.get("line_id", ""),
            product_id=data["product_id"],
            size=data["size"],
            requested=int(data["requested"]),
            available=int(data["available"]),
        )


# Models for coupons


@dataclass
class Coupon:
    """An admin-managed discount code; read-only here except times_used."""

    code: str
    discount_type: DiscountType
    discount_value: Decimal
    starts_at: datetime | None = None
    expires_at: datetime | None = None
    usage_limit_total: int | None = None
    times_used: int = 0
    min_spend_amount: Decimal | None = None
    is_active: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "discount_type": self.discount_type.value,
            "discount_value": str(self.discount_value),
            "starts_at": format_timestamp(self.starts_at),
            "expires_at": format_timestamp(self.expires_at),
            "usage_limit_total": self.usage_limit_total,
            "times_used": self.times_used,
            "min_spend_amount": _money_str(self.min_spend_amount),
            "is_active": self.is_active,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Coupon":
        limit = data.get("usage_limit_total")
        min_spend = data.get("min_spend_amount")
        return cls(
            code=str(data["code"]).strip().upper(),
            discount_type=DiscountType(data["discount_type"]),
            discount_value=to_money(data["discount_value"]),
            starts_at=parse_timestamp(data.get("starts_at")),
            expires_at=parse_timestamp(data.get("expires_at")),
            usage_limit_total=None if limit is None else int(limit),
            times_used=int(data.get("times_used") or 0),
            min_spend_amount=None if min_spend is None else to_money(min_spend),
            # A missing flag counts as active; only an explicit false disables.
            is_active=data.get("is_active") is not False,
        )


@dataclass(frozen=True)
class AppliedCoupon:
    """A coupon that passed validation, bound to the subtotal it was priced at."""

    code: str
    discount_type: DiscountType
    discount_value: Decimal
    discount_amount: Decimal
    subtotal: Decimal

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "discount_type": self.discount_type.value,
            "discount_value": str(self.discount_value),
            "discount_amount": str(self.discount_amount),
            "subtotal": str(self.subtotal),
        }


@dataclass(frozen=True)
class Rejection:
    """Why a coupon cannot be applied."""

    reason: RejectionReason
    min_spend_amount: Decimal | None = None

    @property
    def message(self) -> str:
        if self.reason is RejectionReason.BELOW_MINIMUM_SPEND:
            return f"Minimum spend of ₹{self.min_spend_amount} required"
        return _REJECTION_MESSAGES[self.reason]

    def to_dict(self) -> dict[str, Any]:
        return {
            "reason": self.reason.value,
            "message": self.message,
            "min_spend_amount": _money_str(self.min_spend_amount),
        }


# Models for pricing and orders


@dataclass(frozen=True)
class PriceBreakdown:
    """Totals shared by the live cart view and the invoice."""

    subtotal: Decimal
    discount: Decimal
    shipping: Decimal
    total: Decimal

    def to_dict(self) -> dict[str, str]:
        return {
            "subtotal": str(self.subtotal),
            "discount": str(self.discount),
            "shipping": str(self.shipping),
            "total": str(self.total),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PriceBreakdown":
        return cls(
            subtotal=to_money(data["subtotal"]),
            discount=to_money(data.get("discount") or 0),
            shipping=to_money(data.get("shipping") or 0),
            total=to_money(data["total"]),
        )


@dataclass(frozen=True)
class ShippingAddress:
    """Delivery details snapshotted onto the order at commit."""

    first_name: str
    last_name: str
    address: str
    city: str
    postal_code: str
    email: str = ""
    phone: str = ""
    apartment: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "first_name": self.first_name,
            "last_name": self.last_name,
            "email": self.email,
            "phone": self.phone,
            "address": self.address,
            "apartment": self.apartment,
            "city": self.city,
            "postal_code": self.postal_code,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ShippingAddress":
        return cls(
            first_name=data.get("first_name") or "",
            last_name=data.get("last_name") or "",
            email=data.get("email") or "",
            phone=data.get("phone") or "",
            address=data.get("address") or "",
            apartment=data.get("apartment") or None,
            city=data.get("city") or "",
            postal_code=data.get("postal_code") or "",
        )

    @classmethod
    def from_order_row(cls, row: dict[str, Any]) -> "ShippingAddress | None":
        """Read the address columns of an orders row; None when absent."""
        if not row.get("address"):
            return None
        return cls.from_dict(row)

    def to_procedure_arg(self, shipping_method: ShippingMethod) -> dict[str, Any]:
        """The ``p_shipping_address`` argument of the checkout procedure."""
        return {
            "email": self.email,
            "firstName": self.first_name,
            "lastName": self.last_name,
            "address": self.address,
            "apartment": self.apartment,
            "city": self.city,
            "postalCode": self.postal_code,
            "phone": self.phone,
            "shippingMethod": shipping_method.value,
        }

    def lines(self) -> list[str]:
        out = [f"{self.first_name} {self.last_name}".strip(), self.address]
        if self.apartment:
            out.append(self.apartment)
        out.append(f"{self.city}, {self.postal_code}")
        return [line for line in out if line]


@dataclass(frozen=True)
class OrderItem:
    """A frozen order line (order_items relation)."""

    product_id: str
    size: float
    color: str
    quantity: int
    unit_price: Decimal
    name: str = ""
    brand: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "shoe_id": self.product_id,
            "size": self.size,
            "color": self.color,
            "quantity": self.quantity,
            "price": str(self.unit_price),
            "name": self.name,
            "brand": self.brand,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OrderItem":
        # Hosted rows carry the product under an embedded "shoes" object
        shoe = data.get("shoes") or {}
        return cls(
            product_id=data["shoe_id"],
            size=data["size"],
            color=data.get("color") or DEFAULT_COLOR,
            quantity=int(data["quantity"]),
            unit_price=to_money(data["price"]),
            name=data.get("name") or shoe.get("name") or "",
            brand=data.get("brand") or shoe.get("brand"),
        )

    @classmethod
    def from_line(cls, line: CartLineItem) -> "OrderItem":
        return cls(
            product_id=line.product_id,
            size=line.size,
            color=line.color,
            quantity=line.quantity,
            unit_price=line.unit_price,
            name=line.name,
            brand=line.brand,
        )


@dataclass(frozen=True)
class Order:
    """Immutable order snapshot; only the status may change after creation."""

    id: str
    order_code: str
    user_id: str
    items: tuple[OrderItem, ...]
    totals: PriceBreakdown
    shipping_method: ShippingMethod = ShippingMethod.STANDARD
    coupon_code: str | None = None
    status: OrderStatus = OrderStatus.PENDING
    shipping_address: ShippingAddress | None = None
    payment_method: str | None = None
    created_at: str = field(default_factory=_utc_now)
    updated_at: str = field(default_factory=_utc_now)

    def with_status(self, status: OrderStatus) -> "Order":
        return replace(self, status=status, updated_at=_utc_now())

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "order_code": self.order_code,
            "user_id": self.user_id,
            "items": [i.to_dict() for i in self.items],
            "totals": self.totals.to_dict(),
            "shipping_method": self.shipping_method.value,
            "coupon_code": self.coupon_code,
            "status": self.status.value,
            "shipping_address": self.shipping_address.to_dict() if self.shipping_address else None,
            "payment_method": self.payment_method,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Order":
        address = data.get("shipping_address")
        return cls(
            id=data["id"],
            order_code=data.get("order_code") or "",
            user_id=data["user_id"],
            items=tuple(OrderItem.from_dict(i) for i in data.get("items", [])),
            totals=PriceBreakdown.from_dict(data["totals"]),
            shipping_method=ShippingMethod(data.get("shipping_method") or "standard"),
            coupon_code=data.get("coupon_code"),
            status=normalize_status(data.get("status") or "pending"),
            shipping_address=ShippingAddress.from_dict(address) if address else None,
            payment_method=data.get("payment_method"),
            created_at=data.get("created_at") or "",
            updated_at=data.get("updated_at") or "",
        )

    @classmethod
    def create(
        cls,
        user_id: str,
        items: list[OrderItem],
        totals: PriceBreakdown,
        shipping_method: ShippingMethod,
        coupon_code: str | None = None,
        shipping_address: ShippingAddress | None = None,
        payment_method: str | None = None,
    ) -> "Order":
        """Create a new pending order with generated ID, code and timestamps."""
        now = _utc_now()
        return cls(
            id=_generate_id(),
            order_code=_generate_order_code(),
            user_id=user_id,
            items=tuple(items),
            totals=totals,
            shipping_method=shipping_method,
            coupon_code=coupon_code,
            status=OrderStatus.PENDING,
            shipping_address=shipping_address,
            payment_method=payment_method,
            created_at=now,
            updated_at=now,
        )


@dataclass(frozen=True)
class CommitRequest:
    """Everything the atomic commit step needs, computed and validated up front."""

    user_id: str
    lines: tuple[CartLineItem, ...]
    totals: PriceBreakdown
    shipping_method: ShippingMethod
    coupon_code: str | None = None
    shipping_address: ShippingAddress | None = None
    payment_method: str | None = None

    @property
    def items(self) -> list[OrderItem]:
        return [OrderItem.from_line(line) for line in self.lines]

    def to_payload(self) -> dict[str, Any]:
        """Arguments for the hosted ``process_order`` procedure."""
        address = self.shipping_address
        return {
            "p_user_id": self.user_id,
            "p_payment_method": self.payment_method,
            "p_shipping_address": (
                address.to_procedure_arg(self.shipping_method)
                if address
                else {"shippingMethod": self.shipping_method.value}
            ),
            "p_items": [
                {
                    "shoeId": line.product_id,
                    "size": line.size,
                    "quantity": line.quantity,
                    "color": line.color,
                    "price": str(line.unit_price),
                }
                for line in self.lines
            ],
            "p_subtotal": str(self.totals.subtotal),
            "p_shipping_cost": str(self.totals.shipping),
            "p_total": str(self.totals.total),
            "p_discount_code": self.coupon_code,
        }
