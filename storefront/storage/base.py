"""
Persistence Interfaces
======================
Abstractions for the relational store so the checkout core can run against
Postgres in production and an in-memory fake in tests.

A unit of work is one database transaction. Everything done through it either
commits together or rolls back together. Stock counters are only reachable
through relative, conditional operations: there is no "set stock" call.
"""

from abc import ABC, abstractmethod
from contextlib import AbstractAsyncContextManager
from typing import Any, Dict, Iterable, List, Optional, Tuple

from storefront.schemas.domain import (
    Coupon,
    Order,
    OrderStatus,
    PaymentStatus,
    StatusHistoryEntry,
    StockUnit,
    StockUnitRef,
)


class IUnitOfWork(ABC):
    """Operations available inside a single transaction"""

    # -------------------------------------------------------------------------
    # Stock
    # -------------------------------------------------------------------------

    @abstractmethod
    async def get_stock_unit(self, ref: StockUnitRef) -> Optional[StockUnit]:
        pass

    @abstractmethod
    async def try_decrement_stock(self, ref: StockUnitRef, quantity: int) -> bool:
        """Decrement only if available >= quantity. Returns False otherwise."""
        pass

    @abstractmethod
    async def increment_stock(self, ref: StockUnitRef, quantity: int) -> bool:
        """Unconditional increment. Returns False if the unit no longer exists."""
        pass

    @abstractmethod
    async def list_low_stock(self, variant_threshold: int) -> Dict[str, List[Dict[str, Any]]]:
        pass

    @abstractmethod
    async def get_stock_info(
        self,
        product_ids: Iterable[str],
        variant_ids: Iterable[str],
    ) -> Dict[str, List[Dict[str, Any]]]:
        pass

    # -------------------------------------------------------------------------
    # Coupons
    # -------------------------------------------------------------------------

    @abstractmethod
    async def get_coupon_by_code(self, code: str) -> Optional[Coupon]:
        pass

    @abstractmethod
    async def try_increment_coupon_usage(self, coupon_id: str) -> bool:
        """Increment only while usage_count < usage_limit (or no limit)."""
        pass

    @abstractmethod
    async def decrement_coupon_usage(self, coupon_id: str) -> None:
        pass

    @abstractmethod
    async def lock_coupon(self, coupon_id: str) -> None:
        """Hold the coupon row until the unit of work ends."""
        pass

    @abstractmethod
    async def count_user_coupon_orders(self, user_id: str, coupon_id: str) -> int:
        """Non-cancelled orders of this user that used this coupon"""
        pass

    # -------------------------------------------------------------------------
    # Orders
    # -------------------------------------------------------------------------

    @abstractmethod
    async def insert_order(self, order: Order) -> None:
        """Insert order, items and history.

        Raises DuplicateOrderNumberError on an order/tracking number collision
        and DuplicateOrderError when the gateway order already has an order.
        """
        pass

    @abstractmethod
    async def get_order(self, order_id: str, user_id: Optional[str] = None) -> Optional[Order]:
        pass

    @abstractmethod
    async def find_order(
        self,
        *,
        payment_id: Optional[str] = None,
        gateway_order_id: Optional[str] = None,
    ) -> Optional[Order]:
        pass

    @abstractmethod
    async def list_orders(
        self,
        *,
        user_id: Optional[str] = None,
        status: Optional[OrderStatus] = None,
        search: Optional[str] = None,
        page: int = 1,
        limit: int = 10,
    ) -> Tuple[List[Order], int]:
        pass

    @abstractmethod
    async def update_order(
        self,
        order_id: str,
        *,
        expected_statuses: Optional[Iterable[OrderStatus]] = None,
        expected_payment_statuses: Optional[Iterable[PaymentStatus]] = None,
        **fields: Any,
    ) -> bool:
        """Compare-and-set update. Returns False if the order is missing or
        its current status/payment status is not among the expected ones."""
        pass

    @abstractmethod
    async def append_status_history(self, order_id: str, entry: StatusHistoryEntry) -> None:
        pass

    # -------------------------------------------------------------------------
    # Cart
    # -------------------------------------------------------------------------

    @abstractmethod
    async def clear_cart(self, user_id: str) -> None:
        pass

    # -------------------------------------------------------------------------
    # Webhook dedupe
    # -------------------------------------------------------------------------

    @abstractmethod
    async def record_webhook_event(self, event_id: str, event_type: str) -> bool:
        """Returns False if the event id was already recorded."""
        pass

    # -------------------------------------------------------------------------
    # Nesting
    # -------------------------------------------------------------------------

    @abstractmethod
    def savepoint(self) -> AbstractAsyncContextManager:
        """Nested scope rolled back on its own when the block raises."""
        pass


# Columns update_order may touch
UPDATABLE_ORDER_FIELDS = frozenset({
    "status",
    "payment_status",
    "payment_id",
    "tracking_number",
    "estimated_delivery",
})


class IStore(ABC):
    """Transactional store"""

    @abstractmethod
    def transaction(self) -> AbstractAsyncContextManager:
        """Yield an IUnitOfWork; commit on clean exit, roll back on exception."""
        pass

    @abstractmethod
    async def ping(self) -> bool:
        pass
