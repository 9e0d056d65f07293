"""
Coupon rules: eligibility checks and the usage counter.

``usage_count`` only moves inside the transaction that creates or cancels the
order referencing the coupon, and the increment is conditional on the usage
limit so concurrent checkouts cannot overshoot it.
"""

from datetime import datetime
from typing import Any, Dict, Optional

import structlog

from storefront.errors import CouponInvalidError
from storefront.schemas.domain import Coupon, Principal
from storefront.storage.base import IStore, IUnitOfWork

logger = structlog.get_logger().bind(component="coupons")


class CouponService:

    def __init__(self, store: IStore):
        self.store = store

    async def validate_coupon(
        self,
        uow: IUnitOfWork,
        code: str,
        user_id: str,
        subtotal: float,
        now: Optional[datetime] = None,
        lock: bool = False,
    ) -> Coupon:
        """
        Check a code against its rules. With ``lock`` the coupon row is held for
        the rest of the unit of work, so the per-user count cannot race another
        checkout by the same user.
        """
        coupon = await uow.get_coupon_by_code(code)
        if coupon is None or not coupon.is_active:
            raise CouponInvalidError()
        if not coupon.is_within_window(now):
            raise CouponInvalidError("Coupon has expired or is not yet valid")
        if coupon.is_exhausted:
            raise CouponInvalidError("Coupon usage limit has been reached")
        if coupon.min_order_value is not None and subtotal < coupon.min_order_value:
            raise CouponInvalidError(f"Minimum order value of {coupon.min_order_value:.2f} required")
        if coupon.per_user_limit is not None:
            if lock:
                await uow.lock_coupon(coupon.id)
            used = await uow.count_user_coupon_orders(user_id, coupon.id)
            if used >= coupon.per_user_limit:
                raise CouponInvalidError("You have already used this coupon the maximum number of times")
        return coupon

    async def claim_usage(self, uow: IUnitOfWork, coupon: Coupon) -> None:
        if not await uow.try_increment_coupon_usage(coupon.id):
            logger.info("coupon_claim_rejected", coupon_id=coupon.id)
            raise CouponInvalidError("Coupon usage limit has been reached")

    async def release_usage(self, uow: IUnitOfWork, coupon_id: str) -> None:
        await uow.decrement_coupon_usage(coupon_id)

    async def quote(self, code: str, principal: Principal, subtotal: float) -> Dict[str, Any]:
        """Validate a code for display at checkout"""
        async with self.store.transaction() as uow:
            coupon = await self.validate_coupon(uow, code, principal.user_id, subtotal)
        return {
            "id": coupon.id,
            "code": coupon.code,
            "name": coupon.name,
            "type": coupon.type.value,
            "value": coupon.value,
            "maxDiscount": coupon.max_discount,
            "minOrderValue": coupon.min_order_value,
            "discount": coupon.discount_for(subtotal),
        }
