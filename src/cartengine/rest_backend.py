"""HTTP client for a PostgREST-style hosted store.

Tables are read and written under ``/rest/v1/<table>``; the combined cart
read and the transactional procedures live under ``/rest/v1/rpc/<name>``.
The atomic commit is one call to the storefront's ``process_order``
procedure, never a sequence of client writes.
"""

from __future__ import annotations

import json
from typing import Any

import httpx

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
    OrderStatus,
    Rejection,
    RejectionReason,
    ShippingAddress,
    StockIssue,
    _utc_now,
    to_money,
)
from .observability import get_logger

logger = get_logger(__name__)

# Procedure error hints that mean "the cart is stale", not "the store is broken"
CONFLICT_HINTS = {
    "stock_conflict",
    "coupon_limit_reached",
    "coupon_not_found",
}
STATUS_CONFLICT_HINT = "status_conflict"


def _parse_error(response: httpx.Response) -> dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {"message": response.text}
    return body if isinstance(body, dict) else {"message": str(body)}


def _conflict_from_error(error: dict[str, Any]) -> CommitConflictError:
    """Build a CommitConflictError from a procedure error body."""
    hint = error.get("hint")
    details = error.get("details") or "[]"
    if isinstance(details, str):
        try:
            details = json.loads(details)
        except ValueError:
            details = []

    if hint == "stock_conflict":
        return CommitConflictError(stock_issues=[StockIssue.from_dict(d) for d in details])
    if hint == "coupon_limit_reached":
        return CommitConflictError(rejection=Rejection(RejectionReason.LIMIT_REACHED))
    return CommitConflictError(rejection=Rejection(RejectionReason.NOT_FOUND))


class RestBackend:
    """StoreBackend over HTTP using httpx.AsyncClient."""

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ):
        """
        Initialize RestBackend.

        Args:
            base_url: Store root URL (the ``/rest/v1`` prefix is added here).
            api_key: Sent as both ``apikey`` and bearer token.
            timeout: Request timeout in seconds.
            client: Pre-built client (for testing with a mock transport).
        """
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["apikey"] = api_key
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/") + "/rest/v1",
            headers=headers,
            timeout=timeout,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        *,
        params: dict[str, str] | None = None,
        payload: Any = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        try:
            return await self._client.request(
                method, path, params=params, json=payload, headers=headers
            )
        except httpx.RequestError as e:
            logger.warning("store_request_failed", operation=operation, error=str(e))
            raise BackendError(operation, str(e)) from e

    async def _send(self, operation: str, method: str, path: str, **kwargs: Any) -> Any:
        response = await self._request(operation, method, path, **kwargs)
        if response.is_success:
            if not response.content:
                return None
            return response.json()
        error = _parse_error(response)
        raise BackendError(operation, f"{response.status_code}: {error.get('message', '')}")

    async def _rpc(self, operation: str, name: str, args: dict[str, Any]) -> tuple[httpx.Response, Any]:
        response = await self._request(operation, "POST", f"/rpc/{name}", payload=args)
        if response.is_success:
            return response, (response.json() if response.content else None)
        return response, _parse_error(response)

    async def fetch_stock(self, product_id: str, size: float) -> int:
        rows = await self._send(
            "fetch_stock",
            "GET",
            "/shoe_sizes",
            params={"select": "quantity", "shoe_id": f"eq.{product_id}", "size": f"eq.{size}"},
        )
        if not rows:
            return 0
        return max(0, int(rows[0]["quantity"]))

    async def fetch_cart_with_stock(self, user_id: str) -> list[dict[str, Any]]:
        response, body = await self._rpc(
            "get_cart_with_stock", "get_cart_with_stock", {"p_user_id": user_id}
        )
        if not response.is_success:
            raise BackendError("get_cart_with_stock", body.get("message", ""))
        return list(body or [])

    async def fetch_product(self, product_id: str) -> dict[str, Any] | None:
        rows = await self._send(
            "fetch_product",
            "GET",
            "/shoes",
            params={"select": "id,name,price,image_url,brand", "id": f"eq.{product_id}"},
        )
        return rows[0] if rows else None

    async def insert_cart_item(self, user_id: str, line: CartLineItem) -> None:
        await self._send(
            "insert_cart_item",
            "POST",
            "/cart_items",
            payload=line.to_row(user_id),
            headers={"Prefer": "return=minimal"},
        )

    async def update_cart_item_quantity(self, line_id: str, quantity: int) -> None:
        await self._send(
            "update_cart_item",
            "PATCH",
            "/cart_items",
            params={"id": f"eq.{line_id}"},
            payload={"quantity": quantity},
            headers={"Prefer": "return=minimal"},
        )

    async def delete_cart_item(self, line_id: str) -> None:
        await self._send("delete_cart_item", "DELETE", "/cart_items", params={"id": f"eq.{line_id}"})

    async def delete_cart_items(self, user_id: str, line_ids: list[str]) -> None:
        if not line_ids:
            return
        await self._send(
            "delete_cart_items",
            "DELETE",
            "/cart_items",
            params={"user_id": f"eq.{user_id}", "id": f"in.({','.join(line_ids)})"},
        )

    async def fetch_coupon(self, code: str) -> Coupon | None:
        rows = await self._send(
            "fetch_coupon", "GET", "/coupons", params={"select": "*", "code": f"eq.{code}"}
        )
        return Coupon.from_dict(rows[0]) if rows else None

    async def commit_order(self, request: CommitRequest) -> Order:
        response, body = await self._rpc("commit_order", "process_order", request.to_payload())
        if not response.is_success:
            if body.get("hint") in CONFLICT_HINTS:
                raise _conflict_from_error(body)
            raise BackendError("commit_order", f"{response.status_code}: {body.get('message', '')}")

        # process_order returns the new order's id; everything else is ours
        if isinstance(body, list):
            body = body[0]
        row = body if isinstance(body, dict) else {"id": body}
        now = _utc_now()
        address = request.shipping_address
        return Order.from_dict(
            {
                "order_code": "",
                "status": "pending",
                "created_at": now,
                "updated_at": now,
                **row,
                "user_id": request.user_id,
                "items": [i.to_dict() for i in request.items],
                "totals": request.totals.to_dict(),
                "shipping_method": request.shipping_method.value,
                "coupon_code": request.coupon_code,
                "shipping_address": address.to_dict() if address else None,
                "payment_method": request.payment_method,
            }
        )

    def _order_from_row(self, row: dict[str, Any]) -> Order:
        subtotal = to_money(row["subtotal"])
        shipping = to_money(row.get("shipping_cost") or 0)
        total = to_money(row["total"])
        discount = row.get("discount")
        if discount is None:
            # orders has no discount column; it is what the total leaves out
            discount = max(subtotal + shipping - total, 0)
        address = ShippingAddress.from_order_row(row)
        return Order.from_dict(
            {
                **row,
                "items": row.get("order_items", []),
                "totals": {
                    "subtotal": subtotal,
                    "discount": discount,
                    "shipping": shipping,
                    "total": total,
                },
                "coupon_code": row.get("discount_code"),
                "shipping_address": address.to_dict() if address else None,
            }
        )

    async def fetch_order(self, order_id: str) -> Order:
        rows = await self._send(
            "fetch_order",
            "GET",
            "/orders",
            params={"select": "*,order_items(*,shoes(name,brand))", "id": f"eq.{order_id}"},
        )
        if not rows:
            raise OrderNotFoundError(order_id)
        return self._order_from_row(rows[0])

    async def list_orders(self, user_id: str) -> list[Order]:
        rows = await self._send(
            "list_orders",
            "GET",
            "/orders",
            params={
                "select": "*,order_items(*,shoes(name,brand))",
                "user_id": f"eq.{user_id}",
                "order": "created_at.desc",
            },
        )
        return [self._order_from_row(r) for r in rows or []]

    async def transition_order(
        self,
        order_id: str,
        expected: OrderStatus,
        new: OrderStatus,
        restock: bool = False,
    ) -> Order:
        response, body = await self._rpc(
            "transition_order",
            "transition_order_status",
            {
                "p_order_id": order_id,
                "p_expected_status": expected.value,
                "p_new_status": new.value,
                "p_restock": restock,
            },
        )
        if not response.is_success:
            if response.status_code == 404:
                raise OrderNotFoundError(order_id)
            if body.get("hint") == STATUS_CONFLICT_HINT:
                raise InvalidStatusTransitionError(body.get("details") or expected, new)
            raise BackendError("transition_order", f"{response.status_code}: {body.get('message', '')}")
        return await self.fetch_order(order_id)
