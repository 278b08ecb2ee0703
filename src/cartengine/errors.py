"""Custom exceptions for cartengine."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .models import OrderStatus, Rejection, StockIssue


class CartEngineError(Exception):
    """Base exception for all cartengine errors."""

    def context(self) -> dict[str, Any]:
        """Structured fields for API responses and log events."""
        return {}


# --- Validation: surfaced to the shopper, nothing changed ---


class CartValidationError(CartEngineError):
    """A request was rejected before any state changed."""

    pass


class StockExceededError(CartValidationError):
    """Raised when a line quantity would exceed the live stock."""

    def __init__(self, available: int, requested: int | None = None):
        self.available = available
        self.requested = requested
        msg = f"Only {available} left in stock"
        if requested is not None:
            msg = f"{msg} (requested {requested})"
        super().__init__(msg)

    def context(self) -> dict[str, Any]:
        return {"available": self.available, "requested": self.requested}


class CouponRejectedError(CartValidationError):
    """Raised when a coupon code cannot be applied."""

    def __init__(self, rejection: Rejection):
        self.rejection = rejection
        super().__init__(rejection.message)

    @property
    def reason(self):
        return self.rejection.reason

    def context(self) -> dict[str, Any]:
        return self.rejection.to_dict()


class EmptyCartError(CartValidationError):
    """Raised when checking out a cart with no lines."""

    def __init__(self):
        super().__init__("Your cart is empty")


# --- Conflict: concurrent activity invalidated the cart ---


class CommitConflictError(CartEngineError):
    """Raised when commit-time re-validation fails.

    Carries every oversubscribed line (not only the first) and/or the coupon
    rejection, so the shopper can adjust the cart in one pass.
    """

    def __init__(
        self,
        stock_issues: list[StockIssue] | None = None,
        rejection: Rejection | None = None,
    ):
        self.stock_issues = list(stock_issues or [])
        self.rejection = rejection
        parts = []
        if self.stock_issues:
            parts.append(
                f"{len(self.stock_issues)} item(s) no longer available in the requested quantity"
            )
        if rejection is not None:
            parts.append(rejection.message)
        super().__init__("; ".join(parts) or "Cart changed since it was last loaded")

    def context(self) -> dict[str, Any]:
        return {
            "stock_issues": [i.to_dict() for i in self.stock_issues],
            "coupon": self.rejection.to_dict() if self.rejection else None,
        }


# --- Transient: storage hiccup, local state rolled back, retry is safe ---


class BackendError(CartEngineError):
    """Raised by store backends when a read or write fails."""

    def __init__(self, operation: str, detail: str):
        self.operation = operation
        self.detail = detail
        super().__init__(f"Store operation '{operation}' failed: {detail}")


class TransientStoreError(CartEngineError):
    """Raised when a mutation could not be persisted; local state was restored."""

    def __init__(self, operation: str, detail: str = ""):
        self.operation = operation
        self.detail = detail
        msg = f"Could not {operation}, please try again"
        if detail:
            msg = f"{msg} ({detail})"
        super().__init__(msg)

    def context(self) -> dict[str, Any]:
        return {"operation": self.operation}


class StockUnavailableError(TransientStoreError):
    """Raised when stock could not be read; the mutation is blocked."""

    def __init__(self, product_id: str, size: float, detail: str = ""):
        self.product_id = product_id
        self.size = size
        super().__init__("check stock", detail)

    def context(self) -> dict[str, Any]:
        return {"operation": self.operation, "product_id": self.product_id, "size": self.size}


# --- Fatal: the atomic commit failed, nothing was reserved ---


class FatalCommitError(CartEngineError):
    """Raised when the atomic commit step fails after validation passed."""

    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(f"Order failed, nothing was charged or reserved: {detail}")


# --- Lookups and lifecycle ---


class LineItemNotFoundError(CartEngineError):
    """Raised when a cart line ID doesn't exist."""

    def __init__(self, line_id: str):
        self.line_id = line_id
        super().__init__(f"Cart item not found: {line_id}")


class ProductNotFoundError(CartEngineError):
    """Raised when a product ID doesn't exist."""

    def __init__(self, product_id: str):
        self.product_id = product_id
        super().__init__(f"Product not found: {product_id}")


class OrderNotFoundError(CartEngineError):
    """Raised when an order ID doesn't exist."""

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order not found: {order_id}")


class InvalidStatusTransitionError(CartEngineError):
    """Raised when an order cannot move to the requested status."""

    def __init__(self, current: OrderStatus | str, requested: OrderStatus | str):
        self.current = str(getattr(current, "value", current))
        self.requested = str(getattr(requested, "value", requested))
        super().__init__(
            f"Cannot change order status from '{self.current}' to '{self.requested}'"
        )

    def context(self) -> dict[str, Any]:
        return {"current": self.current, "requested": self.requested}


class MissingIdentityError(CartEngineError):
    """Raised when a cart operation has no shopper identity."""

    def __init__(self):
        super().__init__("Please login to use the cart")


class MutationAbandonedError(CartEngineError):
    """Raised when a mutation targets a cart the shopper has navigated away from."""

    def __init__(self, operation: str):
        self.operation = operation
        super().__init__(f"Cart was closed before '{operation}' could be applied")


class StoreNotInitializedError(CartEngineError):
    """Raised when the local data store doesn't exist."""

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"Store not found at {path}. Run 'cartengine init' first.")
