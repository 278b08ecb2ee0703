"""Protocol definition for store backends."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from .models import CartLineItem, CommitRequest, Coupon, Order, OrderStatus


class StoreBackend(Protocol):
    """Protocol for the hosted data store behind the cart engine.

    Implementations persist the relations the engine reads and writes
    (cart_items, shoe_sizes, coupons, orders, order_items). Every method is
    a single round trip; the engine never composes several writes into one
    logical operation on the client side.

    Implementations raise ``BackendError`` for storage or network failures,
    and ``CommitConflictError`` when the checks inside ``commit_order`` fail.
    """

    async def fetch_stock(self, product_id: str, size: float) -> int:
        """Return remaining units for a (product, size); 0 when no row exists."""
        ...

    async def fetch_cart_with_stock(self, user_id: str) -> list[dict[str, Any]]:
        """Combined cart read.

        Returns rows with keys: id, shoe_id, quantity, size, color, brand,
        shoe_name, shoe_price, shoe_image, stock_quantity.
        """
        ...

    async def fetch_product(self, product_id: str) -> dict[str, Any] | None:
        """Return the product row (id, name, price, image_url, brand) or None."""
        ...

    async def insert_cart_item(self, user_id: str, line: CartLineItem) -> None:
        ...

    async def update_cart_item_quantity(self, line_id: str, quantity: int) -> None:
        ...

    async def delete_cart_item(self, line_id: str) -> None:
        ...

    async def delete_cart_items(self, user_id: str, line_ids: list[str]) -> None:
        """Delete the given lines of a user's cart in one write."""
        ...

    async def fetch_coupon(self, code: str) -> Coupon | None:
        """Look up a coupon by its exact normalized code."""
        ...

    async def commit_order(self, request: CommitRequest) -> Order:
        """Atomically turn a validated cart into an order.

        In one transaction: re-check stock for every line, increment the
        coupon's times_used only if its usage limit is not reached, decrement
        stock, insert the order and its items, and delete the cart lines.
        Either everything is applied or nothing is.
        """
        ...

    async def fetch_order(self, order_id: str) -> Order:
        """Raises OrderNotFoundError if the order doesn't exist."""
        ...

    async def list_orders(self, user_id: str) -> list[Order]:
        """Orders for a user, newest first."""
        ...

    async def transition_order(
        self,
        order_id: str,
        expected: OrderStatus,
        new: OrderStatus,
        restock: bool = False,
    ) -> Order:
        """Compare-and-set an order's status.

        Fails with InvalidStatusTransitionError if the stored status is no
        longer ``expected``. With ``restock``, the order's units are returned
        to stock in the same transaction.
        """
        ...
