"""Live stock reads for cart mutations and commit re-validation."""

from __future__ import annotations

import asyncio
from collections.abc import Iterable
from typing import TYPE_CHECKING

from .errors import BackendError, StockUnavailableError
from .models import CartLineItem, StockIssue
from .observability import get_logger

if TYPE_CHECKING:
    from .backend import StoreBackend

logger = get_logger(__name__)


class StockLedger:
    """Read-only view of remaining units per (product, size).

    There is no cache: stock changes out-of-band (other shoppers, admin
    edits), so every call is a fresh read. A failed read never means
    "unlimited"; it raises StockUnavailableError and blocks the caller.
    """

    def __init__(self, backend: StoreBackend):
        self._backend = backend

    async def available(self, product_id: str, size: float) -> int:
        """Return remaining units, raising StockUnavailableError if unknown."""
        try:
            quantity = await self._backend.fetch_stock(product_id, size)
        except BackendError as e:
            logger.error("stock_read_failed", product_id=product_id, size=size, error=e.detail)
            raise StockUnavailableError(product_id, size, e.detail) from e
        return max(0, int(quantity))

    async def check(self, lines: Iterable[CartLineItem]) -> list[StockIssue]:
        """Re-read stock for every line and report the oversubscribed ones.

        Lines sharing a (product, size) in different colors draw on the same
        units, so their quantities are summed before comparing.
        """
        lines = list(lines)
        requested: dict[tuple[str, float], int] = {}
        for line in lines:
            pair = (line.product_id, line.size)
            requested[pair] = requested.get(pair, 0) + line.quantity

        pairs = list(requested)
        counts = await asyncio.gather(*(self.available(p, s) for p, s in pairs))
        available = dict(zip(pairs, counts))

        issues = []
        for line in lines:
            pair = (line.product_id, line.size)
            if requested[pair] > available[pair]:
                issues.append(
                    StockIssue(
                        line_id=line.id,
                        product_id=line.product_id,
                        size=line.size,
                        requested=requested[pair],
                        available=available[pair],
                    )
                )
        return issues
