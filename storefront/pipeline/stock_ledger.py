"""
Stock Ledger
============
Sole owner of the available-quantity counters.

Every change is relative: ``reserve`` issues one conditional decrement per
unit ("decrement where available >= requested") and ``restore`` issues
unconditional increments. A reservation runs inside a savepoint, so a failure
on any unit undoes the decrements already applied for earlier units even when
the caller keeps its outer transaction alive.
"""

from contextlib import asynccontextmanager
from typing import Any, Dict, Iterable, List, Optional

import structlog
from pydantic import BaseModel

from storefront.config import CheckoutConfig
from storefront.errors import InsufficientStockError, ProductUnavailableError, UnitNotFoundError
from storefront.schemas.domain import ReservedItem, StockItem
from storefront.storage.base import IStore, IUnitOfWork

logger = structlog.get_logger().bind(component="stock_ledger")


class AvailabilityResult(BaseModel):
    """Outcome of a non-reserving stock check"""
    valid: bool
    message: Optional[str] = None
    product_id: Optional[str] = None
    variant_id: Optional[str] = None
    available_quantity: Optional[int] = None
    requested_quantity: Optional[int] = None


class StockLedger:

    def __init__(self, store: IStore, config: Optional[CheckoutConfig] = None):
        self.store = store
        self.config = config or CheckoutConfig()

    @asynccontextmanager
    async def _scope(self, uow: Optional[IUnitOfWork]):
        if uow is not None:
            yield uow
        else:
            async with self.store.transaction() as own:
                yield own

    # =========================================================================
    # RESERVE / RESTORE
    # =========================================================================

    async def reserve(
        self,
        items: List[StockItem],
        uow: Optional[IUnitOfWork] = None,
    ) -> List[ReservedItem]:
        """
        Atomically decrement stock for every item.

        Raises:
            UnitNotFoundError: a product or variant does not exist
            ProductUnavailableError: a product or variant is inactive
            InsufficientStockError: a unit cannot cover the requested quantity

        On any of these, no counter is left decremented.
        """
        # Rows are touched in a stable order so concurrent reservations
        # against overlapping units cannot deadlock each other.
        ordered = sorted(enumerate(items), key=lambda pair: pair[1].key)
        reserved: Dict[int, ReservedItem] = {}

        async with self._scope(uow) as scope:
            async with scope.savepoint():
                for index, item in ordered:
                    unit = await scope.get_stock_unit(item.unit)
                    if unit is None:
                        logger.warning("stock_unit_not_found", unit=item.key)
                        raise UnitNotFoundError(item.key)
                    if not unit.is_active:
                        raise ProductUnavailableError(unit.label)

                    if not await scope.try_decrement_stock(item.unit, item.quantity):
                        logger.info(
                            "stock_reservation_rejected",
                            unit=item.key,
                            requested=item.quantity,
                        )
                        raise InsufficientStockError(item.key, unit.label, item.quantity)

                    reserved[index] = ReservedItem(
                        product_id=item.product_id,
                        variant_id=item.variant_id,
                        quantity=item.quantity,
                        price=unit.price,
                        product_name=unit.label,
                    )

        logger.info("stock_reserved", units=len(reserved))
        return [reserved[i] for i in range(len(items))]

    async def restore(
        self,
        items: Iterable[StockItem],
        uow: Optional[IUnitOfWork] = None,
    ) -> None:
        """Increment stock back. A unit deleted since reservation is skipped."""
        async with self._scope(uow) as scope:
            for item in items:
                if not await scope.increment_stock(item.unit, item.quantity):
                    logger.warning("stock_restore_unit_missing", unit=item.key, quantity=item.quantity)
        logger.info("stock_restored")

    # =========================================================================
    # READS
    # =========================================================================

    async def check_availability(self, items: List[StockItem]) -> AvailabilityResult:
        """Report the first item that cannot be covered, without reserving"""
        async with self.store.transaction() as uow:
            for item in items:
                unit = await uow.get_stock_unit(item.unit)
                if unit is None or not unit.is_active:
                    return AvailabilityResult(
                        valid=False,
                        message=f"Product not found: {item.key}",
                        product_id=item.product_id,
                        variant_id=item.variant_id,
                        available_quantity=0,
                        requested_quantity=item.quantity,
                    )
                if unit.available_quantity < item.quantity:
                    return AvailabilityResult(
                        valid=False,
                        message=(
                            f"Insufficient stock for {unit.label}. "
                            f"Available: {unit.available_quantity}, Requested: {item.quantity}"
                        ),
                        product_id=item.product_id,
                        variant_id=item.variant_id,
                        available_quantity=unit.available_quantity,
                        requested_quantity=item.quantity,
                    )
        return AvailabilityResult(valid=True)

    async def low_stock(self) -> Dict[str, List[Dict[str, Any]]]:
        async with self.store.transaction() as uow:
            return await uow.list_low_stock(self.config.LOW_STOCK_VARIANT_THRESHOLD)

    async def stock_info(
        self,
        product_ids: Iterable[str],
        variant_ids: Iterable[str],
    ) -> Dict[str, List[Dict[str, Any]]]:
        async with self.store.transaction() as uow:
            return await uow.get_stock_info(product_ids, variant_ids)
