"""
Pricing Snapshot Validator
==========================
Recomputes line prices and totals from the catalog and compares them with a
client cart snapshot. Mismatches are reported, never corrected.

pip install pydantic structlog
"""

from typing import List, Optional

import structlog
from pydantic import BaseModel

from storefront.config import CheckoutConfig
from storefront.errors import CouponInvalidError, PriceMismatchError, ProductUnavailableError
from storefront.schemas.domain import CartSnapshot, Coupon, StockUnit
from storefront.storage.base import IUnitOfWork

logger = structlog.get_logger().bind(component="pricing")


class PricingQuote(BaseModel):
    """Authoritative totals for a validated snapshot"""
    subtotal: float
    discount: float
    tax: float
    total: float
    units: List[StockUnit]


class PricingSnapshotValidator:

    def __init__(self, config: Optional[CheckoutConfig] = None):
        self.config = config or CheckoutConfig()

    def _close(self, a: float, b: float) -> bool:
        return abs(a - b) <= self.config.PRICE_EPSILON

    async def validate(
        self,
        uow: IUnitOfWork,
        snapshot: CartSnapshot,
        coupon: Optional[Coupon] = None,
    ) -> PricingQuote:
        """
        Check every unit price, then subtotal, discount and total.

        Raises:
            ProductUnavailableError: a product/variant is missing or inactive
            PriceMismatchError: any figure differs by more than the epsilon
        """
        units: List[StockUnit] = []
        subtotal = 0.0

        for item in snapshot.items:
            unit = await uow.get_stock_unit(item.stock_item.unit)
            if unit is None or not unit.is_active:
                raise ProductUnavailableError(item.stock_item.key)

            if not self._close(unit.price, item.unit_price_at_snapshot):
                logger.warning(
                    "price_mismatch",
                    unit=unit.ref.key,
                    expected=unit.price,
                    submitted=item.unit_price_at_snapshot,
                )
                raise PriceMismatchError("price", unit.price, item.unit_price_at_snapshot, unit.label)

            units.append(unit)
            subtotal += unit.price * item.quantity

        subtotal = round(subtotal, 2)
        if not self._close(subtotal, snapshot.subtotal):
            logger.warning("subtotal_mismatch", expected=subtotal, submitted=snapshot.subtotal)
            raise PriceMismatchError("subtotal", subtotal, snapshot.subtotal)

        if snapshot.coupon_code and coupon is None:
            raise CouponInvalidError()
        discount = coupon.discount_for(subtotal) if coupon else 0.0
        if not self._close(discount, snapshot.discount):
            logger.warning("discount_mismatch", expected=discount, submitted=snapshot.discount)
            raise PriceMismatchError("discount", discount, snapshot.discount)

        # Tax is declared by the client; it only has to add up
        total = round(subtotal - discount + snapshot.tax, 2)
        if not self._close(total, snapshot.total):
            logger.warning("total_mismatch", expected=total, submitted=snapshot.total)
            raise PriceMismatchError("total", total, snapshot.total)

        return PricingQuote(
            subtotal=subtotal,
            discount=discount,
            tax=snapshot.tax,
            total=total,
            units=units,
        )
