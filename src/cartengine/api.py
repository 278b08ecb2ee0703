"""FastAPI REST API for the cart and checkout engine."""

from decimal import Decimal
from functools import lru_cache
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from . import __version__
from .backend import StoreBackend
from .cart import CartRegistry, CartStore
from .config import Settings, build_backend, build_shipping_rule
from .coupons import CouponValidator
from .errors import (
    BackendError,
    CartEngineError,
    CartValidationError,
    CommitConflictError,
    CouponRejectedError,
    EmptyCartError,
    FatalCommitError,
    InvalidStatusTransitionError,
    LineItemNotFoundError,
    MissingIdentityError,
    MutationAbandonedError,
    OrderNotFoundError,
    ProductNotFoundError,
    StockExceededError,
    TransientStoreError,
)
from .invoice import build_invoice, live_summary
from .models import (
    AppliedCoupon,
    CartLineItem,
    Order,
    Rejection,
    ShippingAddress,
    ShippingMethod,
    StockIssue,
)
from .observability import get_logger
from .orders import OrderCommitter, OrderTracker
from .pricing import ShippingRule
from .stock import StockLedger

logger = get_logger(__name__)


# --- Pydantic Schemas ---


class LineSchema(BaseModel):
    id: str
    product_id: str
    name: str
    size: float
    color: str
    quantity: int
    unit_price: str
    line_total: str
    stock_snapshot: int
    brand: Optional[str] = None
    image: Optional[str] = None


class StockIssueSchema(BaseModel):
    line_id: str
    product_id: str
    size: float
    requested: int
    available: int
    shortfall: int
    kind: str  # "sold_out" | "insufficient"


class AppliedCouponSchema(BaseModel):
    code: str
    discount_type: str
    discount_value: str
    discount_amount: str


class RejectionSchema(BaseModel):
    reason: str
    message: str
    min_spend_amount: Optional[str] = None


class TotalsSchema(BaseModel):
    subtotal: str
    discount: str
    shipping: str
    total: str


class CartResponse(BaseModel):
    user_id: str
    lines: list[LineSchema]
    item_count: int
    stock_issues: list[StockIssueSchema]
    coupon: Optional[AppliedCouponSchema] = None
    coupon_rejection: Optional[RejectionSchema] = None
    shipping_method: str
    totals: TotalsSchema


class AddItemRequest(BaseModel):
    product_id: str
    size: float
    quantity: int = Field(default=1, ge=1)
    color: Optional[str] = None


class UpdateQuantityRequest(BaseModel):
    # Values below 1 are accepted and clamped to 1 by the cart
    quantity: int


class CouponValidateRequest(BaseModel):
    code: str
    subtotal: Optional[Decimal] = Field(
        None, description="Subtotal to price against; defaults to the shopper's cart subtotal"
    )


class CouponValidateResponse(BaseModel):
    eligible: bool
    coupon: Optional[AppliedCouponSchema] = None
    rejection: Optional[RejectionSchema] = None


class ShippingAddressSchema(BaseModel):
    first_name: str
    last_name: str
    address: str
    city: str
    postal_code: str
    email: str = ""
    phone: str = ""
    apartment: Optional[str] = None


class CheckoutRequest(BaseModel):
    coupon_code: Optional[str] = None
    shipping_method: ShippingMethod = ShippingMethod.STANDARD
    shipping_address: Optional[ShippingAddressSchema] = None
    payment_method: Optional[str] = None


class OrderItemSchema(BaseModel):
    product_id: str
    name: str = ""
    brand: Optional[str] = None
    size: float
    color: str
    quantity: int
    unit_price: str


class OrderSchema(BaseModel):
    id: str
    order_code: str
    user_id: str
    status: str
    shipping_method: str
    coupon_code: Optional[str] = None
    items: list[OrderItemSchema]
    totals: TotalsSchema
    shipping_address: Optional[ShippingAddressSchema] = None
    payment_method: Optional[str] = None
    created_at: str
    updated_at: str


class OrderListResponse(BaseModel):
    orders: list[OrderSchema]
    count: int


class StatusUpdateRequest(BaseModel):
    status: str = Field(..., description="pending|processing|shipped|delivered|cancelled")


class InvoiceLineSchema(BaseModel):
    description: str
    size: float
    color: str
    quantity: int
    unit_price: str
    line_total: str


class InvoiceSchema(BaseModel):
    reference: str
    lines: list[InvoiceLineSchema]
    totals: TotalsSchema
    coupon_code: Optional[str] = None
    ship_to: list[str] = []


class ErrorResponse(BaseModel):
    detail: str
    error_type: str
    context: dict = {}


# --- Dependencies ---


@lru_cache
def get_settings() -> Settings:
    return Settings()


@lru_cache
def get_backend() -> StoreBackend:
    """Get the process-wide store backend."""
    return build_backend(get_settings())


def get_shipping_rule() -> ShippingRule:
    return build_shipping_rule(get_settings())


@lru_cache
def get_cart_registry() -> CartRegistry:
    """Get the process-wide registry of shopper carts."""
    return CartRegistry(get_backend(), get_shipping_rule())


def get_user_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    """Shopper identity from the identity provider; no identity means no cart."""
    if not x_user_id:
        raise MissingIdentityError()
    return x_user_id


# --- Helper Functions ---


async def load_cart(registry: CartRegistry, user_id: str) -> CartStore:
    """Get the shopper's shared CartStore, refreshed from the store with live stock."""
    cart = registry.get(user_id)
    await cart.load()
    return cart


def line_to_schema(line: CartLineItem) -> LineSchema:
    return LineSchema(
        id=line.id,
        product_id=line.product_id,
        name=line.name,
        size=line.size,
        color=line.color,
        quantity=line.quantity,
        unit_price=str(line.unit_price),
        line_total=str(line.line_total),
        stock_snapshot=line.stock_snapshot,
        brand=line.brand,
        image=line.image,
    )


def coupon_to_schema(applied: AppliedCoupon) -> AppliedCouponSchema:
    return AppliedCouponSchema(
        code=applied.code,
        discount_type=applied.discount_type.value,
        discount_value=str(applied.discount_value),
        discount_amount=str(applied.discount_amount),
    )


def rejection_to_schema(rejection: Rejection) -> RejectionSchema:
    return RejectionSchema(**rejection.to_dict())


def issue_to_schema(issue: StockIssue) -> StockIssueSchema:
    return StockIssueSchema(**issue.to_dict())


def order_to_schema(order: Order) -> OrderSchema:
    return OrderSchema(
        id=order.id,
        order_code=order.order_code,
        user_id=order.user_id,
        status=order.status.value,
        shipping_method=order.shipping_method.value,
        coupon_code=order.coupon_code,
        items=[
            OrderItemSchema(
                product_id=i.product_id,
                name=i.name,
                brand=i.brand,
                size=i.size,
                color=i.color,
                quantity=i.quantity,
                unit_price=str(i.unit_price),
            )
            for i in order.items
        ],
        totals=TotalsSchema(**order.totals.to_dict()),
        shipping_address=(
            ShippingAddressSchema(**order.shipping_address.to_dict())
            if order.shipping_address
            else None
        ),
        payment_method=order.payment_method,
        created_at=order.created_at,
        updated_at=order.updated_at,
    )


def cart_to_response(
    cart: CartStore,
    shipping_method: ShippingMethod,
    rejection: Rejection | None = None,
) -> CartResponse:
    applied = cart.applied_coupon
    return CartResponse(
        user_id=cart.user_id,
        lines=[line_to_schema(line) for line in cart.lines],
        item_count=cart.item_count,
        stock_issues=[issue_to_schema(i) for i in cart.stock_issues()],
        coupon=coupon_to_schema(applied) if applied else None,
        coupon_rejection=rejection_to_schema(rejection) if rejection else None,
        shipping_method=shipping_method.value,
        totals=TotalsSchema(**cart.totals(shipping_method).to_dict()),
    )


async def get_owned_order(tracker: OrderTracker, order_id: str, user_id: str) -> Order:
    order = await tracker.get(order_id)
    if order.user_id != user_id:
        # Don't reveal other shoppers' order IDs
        raise OrderNotFoundError(order_id)
    return order


# --- FastAPI App ---


app = FastAPI(
    title="cartengine API",
    description="Inventory-aware cart, coupon pricing and order commit",
    version=__version__,
)

# CORS for local development
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:5173",
        "http://localhost:3000",
        "http://127.0.0.1:5173",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- Global Exception Handler ---


# Map exception types to HTTP status codes (most specific class wins)
ERROR_STATUS_CODES: dict[type, int] = {
    StockExceededError: 409,
    CouponRejectedError: 422,
    EmptyCartError: 400,
    CartValidationError: 400,
    CommitConflictError: 409,
    TransientStoreError: 503,
    BackendError: 503,
    FatalCommitError: 500,
    LineItemNotFoundError: 404,
    ProductNotFoundError: 404,
    OrderNotFoundError: 404,
    InvalidStatusTransitionError: 409,
    MissingIdentityError: 401,
    MutationAbandonedError: 409,
}


def status_code_for(exc: CartEngineError) -> int:
    for cls in type(exc).__mro__:
        if cls in ERROR_STATUS_CODES:
            return ERROR_STATUS_CODES[cls]
    return 500


@app.exception_handler(CartEngineError)
async def cartengine_error_handler(request: Request, exc: CartEngineError) -> JSONResponse:
    """Map CartEngineError subclasses to appropriate HTTP responses."""
    status_code = status_code_for(exc)
    if status_code >= 500:
        logger.error(
            "request_failed",
            path=request.url.path,
            error_type=type(exc).__name__,
            detail=str(exc),
        )
    else:
        logger.info("request_rejected", path=request.url.path, error_type=type(exc).__name__)
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(
            detail=str(exc), error_type=type(exc).__name__, context=exc.context()
        ).model_dump(),
    )


# --- Endpoints ---


@app.get("/api/health")
async def health_check(backend: StoreBackend = Depends(get_backend)):
    """
    Health check endpoint.

    Returns basic service status and which store backend is configured.
    """
    return {"status": "ok", "backend": type(backend).__name__, "version": __version__}


# --- Cart Endpoints ---


@app.get("/api/cart", response_model=CartResponse)
async def get_cart(
    coupon: Optional[str] = Query(default=None),
    shipping_method: ShippingMethod = Query(default=ShippingMethod.STANDARD),
    user_id: str = Depends(get_user_id),
    registry: CartRegistry = Depends(get_cart_registry),
):
    """
    Get the shopper's cart with live stock and totals.

    If a coupon code is given it is validated against the current subtotal;
    a rejection is reported alongside the cart instead of failing the request.
    An accepted coupon stays applied to the shopper's cart until it is removed,
    the cart is cleared, or an order is placed.
    """
    cart = await load_cart(registry, user_id)
    rejection = None
    if coupon:
        try:
            await cart.apply_coupon(coupon)
        except CouponRejectedError as e:
            rejection = e.rejection
    return cart_to_response(cart, shipping_method, rejection)


@app.post("/api/cart/items", response_model=LineSchema, status_code=201)
async def add_cart_item(
    request: AddItemRequest,
    user_id: str = Depends(get_user_id),
    backend: StoreBackend = Depends(get_backend),
    registry: CartRegistry = Depends(get_cart_registry),
):
    """Add a product to the cart, merging with an existing line of the same size and color."""
    product = await backend.fetch_product(request.product_id)
    if product is None:
        raise ProductNotFoundError(request.product_id)

    cart = await load_cart(registry, user_id)
    item = CartLineItem.create(
        product_id=request.product_id,
        size=request.size,
        quantity=request.quantity,
        unit_price=product["price"],
        color=request.color,
        name=product.get("name") or "",
        brand=product.get("brand"),
        image=product.get("image_url"),
    )
    result = await cart.add_item(item)
    return line_to_schema(result.line)


@app.patch("/api/cart/items/{line_id}", response_model=LineSchema)
async def update_cart_item(
    line_id: str,
    request: UpdateQuantityRequest,
    user_id: str = Depends(get_user_id),
    registry: CartRegistry = Depends(get_cart_registry),
):
    """Change a line's quantity (clamped to at least 1, capped by live stock)."""
    cart = await load_cart(registry, user_id)
    result = await cart.update_quantity(line_id, request.quantity)
    return line_to_schema(result.line)


@app.delete("/api/cart/items/{line_id}", response_model=CartResponse)
async def remove_cart_item(
    line_id: str,
    user_id: str = Depends(get_user_id),
    registry: CartRegistry = Depends(get_cart_registry),
):
    """Remove a line and return the updated cart."""
    cart = await load_cart(registry, user_id)
    await cart.remove_item(line_id)
    return cart_to_response(cart, ShippingMethod.STANDARD)


@app.delete("/api/cart", response_model=CartResponse)
async def clear_cart(
    user_id: str = Depends(get_user_id),
    registry: CartRegistry = Depends(get_cart_registry),
):
    """Remove every line from the cart."""
    cart = await load_cart(registry, user_id)
    await cart.clear()
    return cart_to_response(cart, ShippingMethod.STANDARD)


@app.delete("/api/cart/coupon", response_model=CartResponse)
async def remove_cart_coupon(
    user_id: str = Depends(get_user_id),
    registry: CartRegistry = Depends(get_cart_registry),
):
    """Drop the coupon applied to the shopper's cart."""
    cart = await load_cart(registry, user_id)
    cart.remove_coupon()
    return cart_to_response(cart, ShippingMethod.STANDARD)


# --- Coupon Endpoints ---


@app.post("/api/coupons/validate", response_model=CouponValidateResponse)
async def validate_coupon(
    request: CouponValidateRequest,
    user_id: str = Depends(get_user_id),
    backend: StoreBackend = Depends(get_backend),
    registry: CartRegistry = Depends(get_cart_registry),
):
    """Preview a coupon without applying or consuming it."""
    if request.subtotal is not None:
        subtotal = request.subtotal
    else:
        subtotal = (await load_cart(registry, user_id)).subtotal

    result = await CouponValidator(backend).validate(request.code, subtotal)
    if isinstance(result, Rejection):
        return CouponValidateResponse(eligible=False, rejection=rejection_to_schema(result))
    return CouponValidateResponse(eligible=True, coupon=coupon_to_schema(result))


# --- Checkout and Order Endpoints ---


@app.post("/api/checkout", response_model=OrderSchema, status_code=201)
async def checkout(
    request: CheckoutRequest,
    user_id: str = Depends(get_user_id),
    backend: StoreBackend = Depends(get_backend),
    shipping_rule: ShippingRule = Depends(get_shipping_rule),
    registry: CartRegistry = Depends(get_cart_registry),
):
    """
    Commit the shopper's cart as an order.

    Stock and coupon eligibility are re-validated; on conflict nothing is
    reserved and the response lists every affected line.
    """
    cart = await load_cart(registry, user_id)
    if request.coupon_code:
        await cart.apply_coupon(request.coupon_code)

    address = request.shipping_address
    committer = OrderCommitter(backend, StockLedger(backend), CouponValidator(backend), shipping_rule)
    order = await committer.commit(
        cart,
        request.shipping_method,
        shipping_address=ShippingAddress(**address.model_dump()) if address else None,
        payment_method=request.payment_method,
    )
    return order_to_schema(order)


@app.get("/api/orders", response_model=OrderListResponse)
async def list_orders(
    user_id: str = Depends(get_user_id),
    backend: StoreBackend = Depends(get_backend),
):
    """List the shopper's orders, newest first."""
    orders = await OrderTracker(backend).list_for_user(user_id)
    return OrderListResponse(orders=[order_to_schema(o) for o in orders], count=len(orders))


@app.get("/api/orders/{order_id}", response_model=OrderSchema)
async def get_order(
    order_id: str,
    user_id: str = Depends(get_user_id),
    backend: StoreBackend = Depends(get_backend),
):
    order = await get_owned_order(OrderTracker(backend), order_id, user_id)
    return order_to_schema(order)


@app.get("/api/orders/{order_id}/invoice", response_model=InvoiceSchema)
async def get_order_invoice(
    order_id: str,
    user_id: str = Depends(get_user_id),
    backend: StoreBackend = Depends(get_backend),
):
    """Invoice data for an order; totals are the ones frozen at commit."""
    order = await get_owned_order(OrderTracker(backend), order_id, user_id)
    return InvoiceSchema(**build_invoice(order).to_dict())


@app.get("/api/cart/invoice", response_model=InvoiceSchema)
async def get_cart_invoice(
    coupon: Optional[str] = Query(default=None),
    shipping_method: ShippingMethod = Query(default=ShippingMethod.STANDARD),
    user_id: str = Depends(get_user_id),
    registry: CartRegistry = Depends(get_cart_registry),
):
    """Invoice-shaped preview of the live cart."""
    cart = await load_cart(registry, user_id)
    if coupon:
        await cart.apply_coupon(coupon)
    return InvoiceSchema(**live_summary(cart, shipping_method).to_dict())


@app.post("/api/orders/{order_id}/cancel", response_model=OrderSchema)
async def cancel_order(
    order_id: str,
    user_id: str = Depends(get_user_id),
    backend: StoreBackend = Depends(get_backend),
):
    """Cancel one of the shopper's own orders while it is still pending."""
    tracker = OrderTracker(backend)
    await get_owned_order(tracker, order_id, user_id)
    order = await tracker.cancel(order_id, customer=True)
    return order_to_schema(order)


@app.patch("/api/admin/orders/{order_id}/status", response_model=OrderSchema)
async def update_order_status(
    order_id: str,
    request: StatusUpdateRequest,
    user_id: str = Depends(get_user_id),
    backend: StoreBackend = Depends(get_backend),
):
    """
    Move an order through its lifecycle (staff only).

    The caller must be identified; role checks are enforced by the identity
    layer in front of this API.
    """
    try:
        order = await OrderTracker(backend).advance(order_id, request.status)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown order status: {request.status}")
    logger.info(
        "order_status_set_by_staff", order_id=order_id, staff_id=user_id, status=order.status.value
    )
    return order_to_schema(order)
