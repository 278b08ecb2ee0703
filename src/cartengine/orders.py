"""Order commit and status lifecycle."""

from __future__ import annotations

from typing import TYPE_CHECKING

from .errors import (
    BackendError,
    CommitConflictError,
    EmptyCartError,
    FatalCommitError,
    InvalidStatusTransitionError,
)
from .models import (
    CommitRequest,
    Order,
    OrderStatus,
    Rejection,
    ShippingAddress,
    ShippingMethod,
    normalize_status,
)
from .observability import get_logger
from .pricing import TieredShipping, price

if TYPE_CHECKING:
    from .backend import StoreBackend
    from .cart import CartStore
    from .coupons import CouponValidator
    from .pricing import ShippingRule
    from .stock import StockLedger

logger = get_logger(__name__)

# Allowed forward moves; cancelled is reachable from any non-terminal status.
ORDER_TRANSITIONS: dict[OrderStatus, set[OrderStatus]] = {
    OrderStatus.PENDING: {OrderStatus.PROCESSING, OrderStatus.CANCELLED},
    OrderStatus.PROCESSING: {OrderStatus.SHIPPED, OrderStatus.CANCELLED},
    OrderStatus.SHIPPED: {OrderStatus.DELIVERED, OrderStatus.CANCELLED},
    OrderStatus.DELIVERED: set(),
    OrderStatus.CANCELLED: set(),
}

TERMINAL_STATUSES = frozenset(s for s, nxt in ORDER_TRANSITIONS.items() if not nxt)


def can_transition(current: OrderStatus, new: OrderStatus) -> bool:
    return new in ORDER_TRANSITIONS[current]


class OrderCommitter:
    """Turns a validated cart (and optional coupon) into an immutable order."""

    def __init__(
        self,
        backend: StoreBackend,
        ledger: StockLedger,
        validator: CouponValidator,
        shipping_rule: ShippingRule | None = None,
    ):
        self._backend = backend
        self._ledger = ledger
        self._validator = validator
        self._shipping_rule = shipping_rule or TieredShipping()

    async def commit(
        self,
        cart: CartStore,
        shipping_method: ShippingMethod = ShippingMethod.STANDARD,
        shipping_address: ShippingAddress | None = None,
        payment_method: str | None = None,
    ) -> Order:
        """
        Commit the cart as a new pending order.

        Stock for every line and the applied coupon are re-validated first,
        since time has passed since the cart was loaded. The write itself is
        one atomic backend call: stock decrement, coupon usage increment,
        order snapshot and cart removal all happen together or not at all.

        The cart is held exclusively for the whole commit: mutations already
        in flight settle before the lines are read, and later ones wait until
        the committed lines are gone from the cart.

        Returns:
            The created Order.

        Raises:
            EmptyCartError: If the cart has no lines.
            CommitConflictError: If stock or coupon eligibility changed.
            StockUnavailableError: If stock could not be read (nothing applied).
            FatalCommitError: If the atomic write failed (nothing applied).
        """
        log = logger.bind(user_id=cart.user_id)
        async with cart.exclusive():
            lines = cart.lines
            if not lines:
                raise EmptyCartError()

            issues = await self._ledger.check(lines)
            if issues:
                log.warning("commit_stock_conflict", issues=[i.to_dict() for i in issues])
                raise CommitConflictError(stock_issues=issues)

            applied = cart.applied_coupon
            if applied is not None:
                result = await self._validator.validate(applied.code, cart.subtotal)
                if isinstance(result, Rejection):
                    log.warning("commit_coupon_conflict", code=applied.code, reason=result.reason.value)
                    raise CommitConflictError(rejection=result)
                applied = result

            totals = price(lines, applied, self._shipping_rule, shipping_method)
            request = CommitRequest(
                user_id=cart.user_id,
                lines=lines,
                totals=totals,
                shipping_method=shipping_method,
                coupon_code=applied.code if applied else None,
                shipping_address=shipping_address,
                payment_method=payment_method,
            )

            try:
                order = await self._backend.commit_order(request)
            except CommitConflictError as e:
                log.warning("commit_conflict_at_store", detail=str(e))
                raise
            except BackendError as e:
                log.error("commit_failed", operation=e.operation, error=e.detail)
                raise FatalCommitError(e.detail) from e

            cart.mark_committed(line.id for line in lines)
        log.info(
            "order_committed",
            order_id=order.id,
            order_code=order.order_code,
            total=str(order.totals.total),
        )
        return order


class OrderTracker:
    """Reads orders and moves them through their status lifecycle."""

    def __init__(self, backend: StoreBackend):
        self._backend = backend

    async def get(self, order_id: str) -> Order:
        return await self._backend.fetch_order(order_id)

    async def list_for_user(self, user_id: str) -> list[Order]:
        return await self._backend.list_orders(user_id)

    async def advance(self, order_id: str, status: OrderStatus | str) -> Order:
        """Move an order to a new status if the state machine allows it.

        The store compares against the status read here, so two staff members
        updating the same order cannot both succeed from the same state.
        Cancelling returns the order's units to stock.
        """
        new = normalize_status(status)
        order = await self._backend.fetch_order(order_id)
        if not can_transition(order.status, new):
            raise InvalidStatusTransitionError(order.status, new)

        updated = await self._backend.transition_order(
            order_id,
            expected=order.status,
            new=new,
            restock=new is OrderStatus.CANCELLED,
        )
        logger.info("order_status_changed", order_id=order_id, old=order.status.value, new=new.value)
        return updated

    async def cancel(self, order_id: str, customer: bool = False) -> Order:
        """Cancel an order; customers may only cancel orders still pending."""
        if customer:
            order = await self._backend.fetch_order(order_id)
            if order.status is not OrderStatus.PENDING:
                raise InvalidStatusTransitionError(order.status, OrderStatus.CANCELLED)
        return await self.advance(order_id, OrderStatus.CANCELLED)
