"""Coupon eligibility rules."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone
from decimal import Decimal
from typing import TYPE_CHECKING

from .errors import BackendError, CouponRejectedError, TransientStoreError
from .models import AppliedCoupon, Coupon, Rejection, RejectionReason
from .observability import get_logger
from .pricing import compute_discount

if TYPE_CHECKING:
    from .backend import StoreBackend

logger = get_logger(__name__)

Clock = Callable[[], datetime]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def normalize_code(code: str | None) -> str:
    """Trim and upper-case a coupon code."""
    return (code or "").strip().upper()


def evaluate(coupon: Coupon | None, subtotal: Decimal, now: datetime) -> AppliedCoupon | Rejection:
    """Evaluate a coupon row against a subtotal.

    Checks run in a fixed order and the first failure decides the reason the
    shopper sees: not found, disabled, not yet active, expired, usage limit
    reached, below minimum spend. Pure: the coupon is never modified.
    """
    if coupon is None:
        return Rejection(RejectionReason.NOT_FOUND)

    if not coupon.is_active:
        return Rejection(RejectionReason.DISABLED)

    if coupon.starts_at is not None and coupon.starts_at > now:
        return Rejection(RejectionReason.NOT_YET_ACTIVE)

    if coupon.expires_at is not None and coupon.expires_at < now:
        return Rejection(RejectionReason.EXPIRED)

    if coupon.usage_limit_total is not None and coupon.times_used >= coupon.usage_limit_total:
        return Rejection(RejectionReason.LIMIT_REACHED)

    if coupon.min_spend_amount is not None and subtotal < coupon.min_spend_amount:
        return Rejection(RejectionReason.BELOW_MINIMUM_SPEND, coupon.min_spend_amount)

    return AppliedCoupon(
        code=coupon.code,
        discount_type=coupon.discount_type,
        discount_value=coupon.discount_value,
        discount_amount=compute_discount(coupon.discount_type, coupon.discount_value, subtotal),
        subtotal=subtotal,
    )


class CouponValidator:
    """Looks coupons up and evaluates them; never records usage.

    Usage is only counted when an order is committed, so previewing a code
    in the cart does not consume it.
    """

    def __init__(self, backend: StoreBackend, clock: Clock = _now):
        self._backend = backend
        self._clock = clock

    async def validate(self, code: str | None, subtotal: Decimal) -> AppliedCoupon | Rejection:
        normalized = normalize_code(code)
        if not normalized:
            return Rejection(RejectionReason.NOT_FOUND)

        try:
            coupon = await self._backend.fetch_coupon(normalized)
        except BackendError as e:
            logger.error("coupon_lookup_failed", code=normalized, error=e.detail)
            raise TransientStoreError("validate coupon", e.detail) from e

        result = evaluate(coupon, subtotal, self._clock())
        if isinstance(result, Rejection):
            logger.info("coupon_rejected", code=normalized, reason=result.reason.value)
        return result

    async def require(self, code: str | None, subtotal: Decimal) -> AppliedCoupon:
        """Like validate, but raises CouponRejectedError on rejection."""
        result = await self.validate(code, subtotal)
        if isinstance(result, Rejection):
            raise CouponRejectedError(result)
        return result
