"""Inventory-aware shopping cart."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass, replace
from decimal import Decimal
from typing import TYPE_CHECKING

from .coupons import CouponValidator
from .errors import (
    BackendError,
    LineItemNotFoundError,
    MissingIdentityError,
    MutationAbandonedError,
    StockExceededError,
    TransientStoreError,
)
from .models import (
    AppliedCoupon,
    CartLineItem,
    LineKey,
    PriceBreakdown,
    ShippingMethod,
    StockIssue,
)
from .observability import get_logger
from .pricing import TieredShipping, compute_subtotal, price, rebind_coupon
from .stock import StockLedger

if TYPE_CHECKING:
    from .backend import StoreBackend
    from .pricing import ShippingRule

logger = get_logger(__name__)

RemoteWrite = Callable[[], Awaitable[None]]


@dataclass(frozen=True)
class RollbackToken:
    """Enough to undo one staged change to one line key."""

    key: LineKey
    index: int
    previous: CartLineItem | None  # None: the key had no line before


@dataclass(frozen=True)
class MutationResult:
    """Outcome of an applied mutation."""

    line: CartLineItem | None
    tokens: tuple[RollbackToken, ...]


class CartStore:
    """Owns one shopper's cart lines and applied coupon.

    Every quantity-changing mutation reads live stock first, applies the
    change locally, then issues a single remote write; if the write fails
    the affected line is restored and TransientStoreError is raised.

    Mutations on the same line key are serialized; mutations on different
    keys may interleave. A rollback only touches its own key, so a failed
    write never undoes another key's successful change. Whole-cart work
    (load, clear, commit) runs inside ``exclusive()``, which waits for every
    in-flight mutation to settle first.
    """

    def __init__(
        self,
        user_id: str | None,
        backend: StoreBackend,
        ledger: StockLedger,
        validator: CouponValidator,
        shipping_rule: ShippingRule | None = None,
    ):
        if not user_id:
            raise MissingIdentityError()
        self.user_id = user_id
        self._backend = backend
        self._ledger = ledger
        self._validator = validator
        self._shipping_rule = shipping_rule or TieredShipping()
        self._lines: list[CartLineItem] = []
        self._coupon: AppliedCoupon | None = None
        self._locks: dict[LineKey, asyncio.Lock] = {}
        self._exclusive = asyncio.Lock()
        self._closed = False
        self._log = logger.bind(user_id=user_id)

    # --- Views ---

    @property
    def lines(self) -> tuple[CartLineItem, ...]:
        return tuple(self._lines)

    @property
    def subtotal(self) -> Decimal:
        return compute_subtotal(self._lines)

    @property
    def item_count(self) -> int:
        return sum(line.quantity for line in self._lines)

    @property
    def applied_coupon(self) -> AppliedCoupon | None:
        """The applied coupon re-priced against the current subtotal."""
        if self._coupon is None:
            return None
        return rebind_coupon(self._coupon, self.subtotal)

    @property
    def closed(self) -> bool:
        return self._closed

    def totals(self, shipping_method: ShippingMethod = ShippingMethod.STANDARD) -> PriceBreakdown:
        return price(self._lines, self._coupon, self._shipping_rule, shipping_method)

    def get_line(self, line_id: str) -> CartLineItem:
        for line in self._lines:
            if line.id == line_id:
                return line
        raise LineItemNotFoundError(line_id)

    def stock_issues(self) -> list[StockIssue]:
        """Lines whose quantity exceeds the stock observed when last read."""
        return [
            StockIssue(
                line_id=line.id,
                product_id=line.product_id,
                size=line.size,
                requested=line.quantity,
                available=line.stock_snapshot,
            )
            for line in self._lines
            if line.quantity > line.stock_snapshot
        ]

    # --- Lifecycle ---

    async def load(self) -> None:
        """Replace local state with the stored cart and a fresh stock snapshot."""
        async with self.exclusive():
            try:
                rows = await self._backend.fetch_cart_with_stock(self.user_id)
            except BackendError as e:
                self._log.error("cart_load_failed", error=e.detail)
                raise TransientStoreError("load cart", e.detail) from e
            self._lines = [CartLineItem.from_stock_row(row) for row in rows]
        self._log.debug("cart_loaded", lines=len(self._lines))

    def close(self) -> None:
        """Abandon the cart.

        Mutations that have not staged yet raise MutationAbandonedError. A
        mutation whose remote write is already in flight is not applied
        locally either: its staged change is undone once the write returns.
        The write itself has been sent and is seen by the next ``load()``.
        """
        self._closed = True

    def mark_committed(self, line_ids: Iterable[str]) -> None:
        """Drop lines that became an order, along with the applied coupon.

        Call inside ``exclusive()`` so no mutation can restore a dropped line.
        """
        ids = set(line_ids)
        self._lines = [line for line in self._lines if line.id not in ids]
        self._coupon = None

    # --- Mutations ---

    async def add_item(self, item: CartLineItem) -> MutationResult:
        """Add a line, merging into an existing line with the same key."""
        if item.quantity < 1:
            raise ValueError("quantity must be at least 1")

        key = item.key
        async with self._key_lock(key):
            self._ensure_open("add item")
            index = self._index_of(key)
            existing = self._lines[index] if index is not None else None
            tentative = item.quantity + (existing.quantity if existing else 0)

            available = await self._ledger.available(item.product_id, item.size)
            if tentative > available:
                self._log.info(
                    "stock_exceeded", product_id=item.product_id, requested=tentative, available=available
                )
                raise StockExceededError(available, tentative)

            if existing is not None:
                updated = replace(existing, quantity=tentative, stock_snapshot=available)

                async def write() -> None:
                    await self._backend.update_cart_item_quantity(updated.id, tentative)

            else:
                updated = replace(item, stock_snapshot=available)

                async def write() -> None:
                    await self._backend.insert_cart_item(self.user_id, updated)

            tokens = await self._apply("add item", [(key, updated)], write)
            self._log.info("line_added", line_id=updated.id, quantity=tentative, merged=existing is not None)
            return MutationResult(updated, tokens)

    async def remove_item(self, line_id: str) -> MutationResult:
        """Remove a line; shrinking the cart is never stock-checked."""
        key = self.get_line(line_id).key
        async with self._key_lock(key):
            self._ensure_open("remove item")
            line = self.get_line(line_id)

            async def write() -> None:
                await self._backend.delete_cart_item(line.id)

            tokens = await self._apply("remove item", [(line.key, None)], write)
            self._log.info("line_removed", line_id=line_id)
            return MutationResult(None, tokens)

    async def update_quantity(self, line_id: str, quantity: int) -> MutationResult:
        """Set a line's quantity; values below 1 are raised to 1."""
        requested = max(1, int(quantity))
        key = self.get_line(line_id).key
        async with self._key_lock(key):
            self._ensure_open("update quantity")
            line = self.get_line(line_id)

            available = await self._ledger.available(line.product_id, line.size)
            if requested > available:
                self._log.info("stock_exceeded", line_id=line_id, requested=requested, available=available)
                raise StockExceededError(available, requested)

            updated = replace(line, quantity=requested, stock_snapshot=available)

            async def write() -> None:
                await self._backend.update_cart_item_quantity(line_id, requested)

            tokens = await self._apply("update quantity", [(key, updated)], write)
            self._log.info("line_quantity_updated", line_id=line_id, quantity=requested)
            return MutationResult(updated, tokens)

    async def clear(self) -> MutationResult:
        """Remove every line and the applied coupon."""
        async with self.exclusive():
            self._ensure_open("clear cart")

            lines = list(self._lines)
            if not lines:
                self._coupon = None
                return MutationResult(None, ())
            line_ids = [line.id for line in lines]

            async def write() -> None:
                await self._backend.delete_cart_items(self.user_id, line_ids)

            tokens = await self._apply("clear cart", [(line.key, None) for line in lines], write)
            self._coupon = None
            self._log.info("cart_cleared", lines=len(line_ids))
            return MutationResult(None, tokens)

    # --- Coupons ---

    async def apply_coupon(self, code: str) -> AppliedCoupon:
        """Validate a code against the current subtotal and keep it applied."""
        applied = await self._validator.require(code, self.subtotal)
        self._coupon = applied
        self._log.info("coupon_applied", code=applied.code, discount=str(applied.discount_amount))
        return applied

    def remove_coupon(self) -> None:
        self._coupon = None

    # --- Optimistic apply / rollback ---

    @asynccontextmanager
    async def exclusive(self) -> AsyncIterator[None]:
        """Hold every line key lock until the block exits.

        Keys that appear while the locks are being taken are locked as well,
        so inside the block no line is staged but unconfirmed. Mutations that
        arrive while the block runs wait for it to finish.
        """
        async with self._exclusive, AsyncExitStack() as stack:
            held: set[LineKey] = set()
            while True:
                pending = sorted((set(self._locks) | {line.key for line in self._lines}) - held)
                if not pending:
                    break
                for key in pending:
                    await stack.enter_async_context(self._lock_for(key))
                    held.add(key)
            yield

    @asynccontextmanager
    async def _key_lock(self, key: LineKey) -> AsyncIterator[None]:
        """Lock one line key, yielding to a whole-cart operation in progress."""
        lock = self._lock_for(key)
        while True:
            await lock.acquire()
            if not self._exclusive.locked():
                break
            lock.release()
            async with self._exclusive:
                pass
        try:
            yield
        finally:
            lock.release()

    def _lock_for(self, key: LineKey) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def _ensure_open(self, operation: str) -> None:
        if self._closed:
            raise MutationAbandonedError(operation)

    def _index_of(self, key: LineKey) -> int | None:
        for i, line in enumerate(self._lines):
            if line.key == key:
                return i
        return None

    def _stage(self, key: LineKey, line: CartLineItem | None) -> RollbackToken:
        index = self._index_of(key)
        previous = self._lines[index] if index is not None else None
        if line is None:
            if index is not None:
                del self._lines[index]
        elif index is None:
            self._lines.append(line)
            index = len(self._lines) - 1
        else:
            self._lines[index] = line
        return RollbackToken(key=key, index=index if index is not None else len(self._lines), previous=previous)

    def _restore(self, token: RollbackToken) -> None:
        index = self._index_of(token.key)
        if token.previous is None:
            if index is not None:
                del self._lines[index]
        elif index is not None:
            self._lines[index] = token.previous
        else:
            self._lines.insert(min(token.index, len(self._lines)), token.previous)

    def rollback(self, tokens: Iterable[RollbackToken]) -> None:
        """Undo staged changes, newest first."""
        for token in reversed(list(tokens)):
            self._restore(token)

    async def _apply(
        self,
        operation: str,
        changes: list[tuple[LineKey, CartLineItem | None]],
        write: RemoteWrite,
    ) -> tuple[RollbackToken, ...]:
        """Stage changes locally, issue the remote write, restore on failure."""
        self._ensure_open(operation)
        tokens = [self._stage(key, line) for key, line in changes]
        try:
            await write()
        except BackendError as e:
            self.rollback(tokens)
            self._log.error("cart_write_failed", operation=operation, error=e.detail)
            raise TransientStoreError(operation, e.detail) from e
        except asyncio.CancelledError:
            self.rollback(tokens)
            self._log.warning("cart_write_cancelled", operation=operation)
            raise
        if self._closed:
            self.rollback(tokens)
            self._log.info("cart_write_abandoned", operation=operation)
            raise MutationAbandonedError(operation)
        return tuple(tokens)


class CartRegistry:
    """Keeps one CartStore per shopper for the life of the process.

    Concurrent requests for the same shopper then share one set of line
    locks, so two adds of the same key still merge instead of both writing
    the same absolute quantity.
    """

    def __init__(self, backend: StoreBackend, shipping_rule: ShippingRule | None = None):
        self._backend = backend
        self._ledger = StockLedger(backend)
        self._validator = CouponValidator(backend)
        self._shipping_rule = shipping_rule or TieredShipping()
        self._carts: dict[str, CartStore] = {}

    def get(self, user_id: str | None) -> CartStore:
        if not user_id:
            raise MissingIdentityError()
        cart = self._carts.get(user_id)
        if cart is None or cart.closed:
            cart = self._carts[user_id] = CartStore(
                user_id, self._backend, self._ledger, self._validator, self._shipping_rule
            )
        return cart

    def __len__(self) -> int:
        return len(self._carts)
