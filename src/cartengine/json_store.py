"""JSON file store backend for cartengine."""

from __future__ import annotations

import asyncio
import fcntl
import json
import os
import tempfile
from collections.abc import Callable
from contextlib import contextmanager
from decimal import Decimal
from pathlib import Path
from typing import Any, Iterator, TypeVar

from .config import Settings
from .errors import (
    BackendError,
    CommitConflictError,
    InvalidStatusTransitionError,
    OrderNotFoundError,
)
from .models import (
    CartLineItem,
    CommitRequest,
    Coupon,
    Order,
    OrderItem,
    OrderStatus,
    Rejection,
    RejectionReason,
    StockEntry,
    StockIssue,
    _generate_id,
    _utc_now,
    normalize_status,
)

T = TypeVar("T")

SCHEMA_VERSION = 1

STORE_FILE = "store.json"

TABLES = ("shoes", "shoe_sizes", "cart_items", "coupons", "orders", "order_items")


def _empty_store() -> dict[str, Any]:
    data: dict[str, Any] = {"schema_version": SCHEMA_VERSION}
    for table in TABLES:
        data[table] = []
    return data


def _find_stock_row(data: dict[str, Any], product_id: str, size: float) -> dict[str, Any] | None:
    for row in data["shoe_sizes"]:
        if row["shoe_id"] == product_id and row["size"] == size:
            return row
    return None


class JsonStoreBackend:
    """Stores every relation in one JSON document.

    Read-modify-write operations hold an exclusive file lock, and every write
    replaces the whole document atomically, so a multi-table change such as
    ``commit_order`` is applied entirely or not at all.
    """

    def __init__(self, config_dir: Path | None = None):
        """
        Initialize JsonStoreBackend.

        Args:
            config_dir: Override data directory (defaults to Settings.data_dir).
        """
        self.config_dir = Path(config_dir) if config_dir else Settings().data_dir
        self.store_path = self.config_dir / STORE_FILE

    def _ensure_dir(self) -> None:
        """Ensure data directory exists."""
        self.config_dir.mkdir(parents=True, exist_ok=True)

    @contextmanager
    def _lock(self) -> Iterator[None]:
        """Acquire exclusive lock on the store file for read-modify-write operations."""
        self._ensure_dir()
        lock_path = self.config_dir / ".store.lock"
        with open(lock_path, "w") as lock_file:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)

    def _load_data(self) -> dict[str, Any]:
        """Load store data from disk."""
        if not self.store_path.exists():
            return _empty_store()

        with open(self.store_path, "r", encoding="utf-8") as f:
            data = json.load(f)
        for table in TABLES:
            data.setdefault(table, [])
        return data

    def _save_data(self, data: dict[str, Any]) -> None:
        """Save store data to disk atomically."""
        self._ensure_dir()

        fd, temp_path = tempfile.mkstemp(dir=self.config_dir, prefix=".store_", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
                f.write("\n")
            os.replace(temp_path, self.store_path)
        except Exception:
            try:
                os.unlink(temp_path)
            except OSError:
                pass
            raise

    async def _call(self, operation: str, func: Callable[..., T], *args: Any) -> T:
        """Run a blocking store operation off the event loop."""
        try:
            return await asyncio.to_thread(func, *args)
        except (OSError, ValueError) as e:
            raise BackendError(operation, str(e)) from e

    # --- Administration (synchronous, used by the CLI and fixtures) ---

    def exists(self) -> bool:
        return self.store_path.exists()

    def init(self, force: bool = False) -> None:
        """Create an empty store; keeps existing data unless force=True."""
        with self._lock():
            if self.exists() and not force:
                return
            self._save_data(_empty_store())

    def put_product(
        self,
        product_id: str,
        name: str,
        price: Decimal | int | str,
        image_url: str | None = None,
        brand: str | None = None,
    ) -> None:
        row = {
            "id": product_id,
            "name": name,
            "price": str(price),
            "image_url": image_url,
            "brand": brand,
        }
        with self._lock():
            data = self._load_data()
            data["shoes"] = [s for s in data["shoes"] if s["id"] != product_id]
            data["shoes"].append(row)
            self._save_data(data)

    def set_stock(self, product_id: str, size: float, quantity: int) -> StockEntry:
        if quantity < 0:
            raise ValueError("stock quantity cannot be negative")
        entry = StockEntry(product_id=product_id, size=size, quantity=quantity)
        with self._lock():
            data = self._load_data()
            row = _find_stock_row(data, product_id, size)
            if row is None:
                data["shoe_sizes"].append(entry.to_row())
            else:
                row["quantity"] = quantity
            self._save_data(data)
        return entry

    def list_stock(self, product_id: str | None = None) -> list[StockEntry]:
        data = self._load_data()
        return [
            StockEntry.from_row(r)
            for r in data["shoe_sizes"]
            if product_id is None or r["shoe_id"] == product_id
        ]

    def put_coupon(self, coupon: Coupon) -> None:
        with self._lock():
            data = self._load_data()
            data["coupons"] = [c for c in data["coupons"] if c["code"] != coupon.code]
            data["coupons"].append(coupon.to_dict())
            self._save_data(data)

    # --- StoreBackend protocol ---

    async def fetch_stock(self, product_id: str, size: float) -> int:
        return await self._call("fetch_stock", self._fetch_stock, product_id, size)

    def _fetch_stock(self, product_id: str, size: float) -> int:
        row = _find_stock_row(self._load_data(), product_id, size)
        return max(0, int(row["quantity"])) if row else 0

    async def fetch_cart_with_stock(self, user_id: str) -> list[dict[str, Any]]:
        return await self._call("get_cart_with_stock", self._fetch_cart_with_stock, user_id)

    def _fetch_cart_with_stock(self, user_id: str) -> list[dict[str, Any]]:
        data = self._load_data()
        shoes = {s["id"]: s for s in data["shoes"]}
        rows = []
        for item in data["cart_items"]:
            if item["user_id"] != user_id:
                continue
            shoe = shoes.get(item["shoe_id"], {})
            stock = _find_stock_row(data, item["shoe_id"], item["size"])
            rows.append(
                {
                    "id": item["id"],
                    "shoe_id": item["shoe_id"],
                    "quantity": item["quantity"],
                    "size": item["size"],
                    "color": item["color"],
                    "brand": shoe.get("brand") or item.get("brand"),
                    "shoe_name": shoe.get("name"),
                    "shoe_price": shoe.get("price", "0"),
                    "shoe_image": shoe.get("image_url"),
                    "stock_quantity": stock["quantity"] if stock else 0,
                }
            )
        return rows

    async def fetch_product(self, product_id: str) -> dict[str, Any] | None:
        return await self._call("fetch_product", self._fetch_product, product_id)

    def _fetch_product(self, product_id: str) -> dict[str, Any] | None:
        for shoe in self._load_data()["shoes"]:
            if shoe["id"] == product_id:
                return dict(shoe)
        return None

    async def insert_cart_item(self, user_id: str, line: CartLineItem) -> None:
        await self._call("insert_cart_item", self._insert_cart_item, user_id, line)

    def _insert_cart_item(self, user_id: str, line: CartLineItem) -> None:
        with self._lock():
            data = self._load_data()
            for item in data["cart_items"]:
                if item["user_id"] == user_id and (
                    item["shoe_id"], item["size"], item["color"]
                ) == tuple(line.key):
                    raise ValueError("duplicate key violates unique constraint on cart_items")
            data["cart_items"].append(line.to_row(user_id))
            self._save_data(data)

    async def update_cart_item_quantity(self, line_id: str, quantity: int) -> None:
        await self._call("update_cart_item", self._update_cart_item_quantity, line_id, quantity)

    def _update_cart_item_quantity(self, line_id: str, quantity: int) -> None:
        with self._lock():
            data = self._load_data()
            for item in data["cart_items"]:
                if item["id"] == line_id:
                    item["quantity"] = quantity
                    self._save_data(data)
                    return
            raise ValueError(f"cart item {line_id} does not exist")

    async def delete_cart_item(self, line_id: str) -> None:
        await self._call("delete_cart_item", self._delete_cart_items, None, [line_id])

    async def delete_cart_items(self, user_id: str, line_ids: list[str]) -> None:
        await self._call("delete_cart_items", self._delete_cart_items, user_id, line_ids)

    def _delete_cart_items(self, user_id: str | None, line_ids: list[str]) -> None:
        ids = set(line_ids)
        with self._lock():
            data = self._load_data()
            data["cart_items"] = [
                item
                for item in data["cart_items"]
                if not (item["id"] in ids and (user_id is None or item["user_id"] == user_id))
            ]
            self._save_data(data)

    async def fetch_coupon(self, code: str) -> Coupon | None:
        return await self._call("fetch_coupon", self._fetch_coupon, code)

    def _fetch_coupon(self, code: str) -> Coupon | None:
        for row in self._load_data()["coupons"]:
            if row["code"] == code:
                return Coupon.from_dict(row)
        return None

    async def commit_order(self, request: CommitRequest) -> Order:
        return await self._call("commit_order", self._commit_order, request)

    def _commit_order(self, request: CommitRequest) -> Order:
        with self._lock():
            data = self._load_data()

            # Units of one (product, size) are shared by every color of it
            requested: dict[tuple[str, float], int] = {}
            for line in request.lines:
                pair = (line.product_id, line.size)
                requested[pair] = requested.get(pair, 0) + line.quantity

            issues = []
            for line in request.lines:
                row = _find_stock_row(data, line.product_id, line.size)
                available = max(0, int(row["quantity"])) if row else 0
                wanted = requested[(line.product_id, line.size)]
                if wanted > available:
                    issues.append(
                        StockIssue(
                            line_id=line.id,
                            product_id=line.product_id,
                            size=line.size,
                            requested=wanted,
                            available=available,
                        )
                    )

            coupon_row = None
            rejection = None
            if request.coupon_code:
                coupon_row = next(
                    (c for c in data["coupons"] if c["code"] == request.coupon_code), None
                )
                if coupon_row is None:
                    rejection = Rejection(RejectionReason.NOT_FOUND)
                else:
                    limit = coupon_row.get("usage_limit_total")
                    if limit is not None and int(coupon_row.get("times_used") or 0) >= int(limit):
                        rejection = Rejection(RejectionReason.LIMIT_REACHED)

            if issues or rejection:
                raise CommitConflictError(issues, rejection)

            for (product_id, size), quantity in requested.items():
                row = _find_stock_row(data, product_id, size)
                row["quantity"] = int(row["quantity"]) - quantity
            if coupon_row is not None:
                coupon_row["times_used"] = int(coupon_row.get("times_used") or 0) + 1

            order = Order.create(
                user_id=request.user_id,
                items=request.items,
                totals=request.totals,
                shipping_method=request.shipping_method,
                coupon_code=request.coupon_code,
                shipping_address=request.shipping_address,
                payment_method=request.payment_method,
            )
            order_row = order.to_dict()
            order_row.pop("items")
            data["orders"].append(order_row)
            for item in order.items:
                data["order_items"].append(
                    {"id": _generate_id(), "order_id": order.id, **item.to_dict()}
                )

            line_ids = {line.id for line in request.lines}
            data["cart_items"] = [
                item
                for item in data["cart_items"]
                if not (item["user_id"] == request.user_id and item["id"] in line_ids)
            ]

            self._save_data(data)
            return order

    def _order_from_rows(self, data: dict[str, Any], row: dict[str, Any]) -> Order:
        items = [i for i in data["order_items"] if i["order_id"] == row["id"]]
        return Order.from_dict({**row, "items": items})

    async def fetch_order(self, order_id: str) -> Order:
        return await self._call("fetch_order", self._fetch_order, order_id)

    def _fetch_order(self, order_id: str) -> Order:
        data = self._load_data()
        for row in data["orders"]:
            if row["id"] == order_id:
                return self._order_from_rows(data, row)
        raise OrderNotFoundError(order_id)

    async def list_orders(self, user_id: str) -> list[Order]:
        return await self._call("list_orders", self._list_orders, user_id)

    def _list_orders(self, user_id: str) -> list[Order]:
        data = self._load_data()
        rows = [r for r in data["orders"] if r["user_id"] == user_id]
        rows.sort(key=lambda r: r.get("created_at", ""), reverse=True)
        return [self._order_from_rows(data, r) for r in rows]

    async def transition_order(
        self,
        order_id: str,
        expected: OrderStatus,
        new: OrderStatus,
        restock: bool = False,
    ) -> Order:
        return await self._call(
            "transition_order", self._transition_order, order_id, expected, new, restock
        )

    def _transition_order(
        self,
        order_id: str,
        expected: OrderStatus,
        new: OrderStatus,
        restock: bool,
    ) -> Order:
        with self._lock():
            data = self._load_data()
            row = next((r for r in data["orders"] if r["id"] == order_id), None)
            if row is None:
                raise OrderNotFoundError(order_id)
            if normalize_status(row["status"]) is not expected:
                raise InvalidStatusTransitionError(row["status"], new)

            if restock:
                for item in data["order_items"]:
                    if item["order_id"] != order_id:
                        continue
                    parsed = OrderItem.from_dict(item)
                    stock = _find_stock_row(data, parsed.product_id, parsed.size)
                    if stock is None:
                        data["shoe_sizes"].append(
                            StockEntry(parsed.product_id, parsed.size, parsed.quantity).to_row()
                        )
                    else:
                        stock["quantity"] = int(stock["quantity"]) + parsed.quantity

            row["status"] = new.value
            row["updated_at"] = _utc_now()
            self._save_data(data)
            return self._order_from_rows(data, row)
