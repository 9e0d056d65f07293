"""
Order reads and administrative status changes.

Reads go through the cache (read-through, JSON payloads); every mutation
invalidates the affected keys afterwards.
"""

from datetime import datetime
from typing import Any, Dict, Optional

import structlog

from storefront.config import Settings
from storefront.errors import (
    ConflictError,
    InvalidStatusTransitionError,
    OrderNotFoundError,
    ValidationError,
)
from storefront.pipeline.order_cache import (
    all_orders_key,
    invalidate_order_cache,
    order_details_key,
    user_orders_key,
)
from storefront.pipeline.order_commit import OrderCommitTransaction
from storefront.schemas.domain import (
    Order,
    OrderStatus,
    PaymentStatus,
    Principal,
    StatusHistoryEntry,
)
from storefront.services.cache import ICache, cache_wrapper
from storefront.storage.base import IStore

logger = structlog.get_logger().bind(component="orders")


def _page(orders, total: int, page: int, limit: int) -> Dict[str, Any]:
    return {
        "orders": [o.model_dump(mode="json") for o in orders],
        "pagination": {
            "total": total,
            "page": page,
            "limit": limit,
            "pages": (total + limit - 1) // limit if limit else 0,
        },
    }


class OrderService:

    def __init__(
        self,
        store: IStore,
        cache: ICache,
        settings: Settings,
        committer: OrderCommitTransaction,
    ):
        self.store = store
        self.cache = cache
        self.settings = settings
        self.committer = committer

    # =========================================================================
    # READS
    # =========================================================================

    async def list_orders(
        self,
        principal: Principal,
        status: Optional[OrderStatus] = None,
        page: int = 1,
        limit: int = 10,
    ) -> Dict[str, Any]:
        query = {"status": status.value if status else None, "page": page, "limit": limit}

        async def load():
            async with self.store.transaction() as uow:
                orders, total = await uow.list_orders(
                    user_id=principal.user_id, status=status, page=page, limit=limit
                )
            return _page(orders, total, page, limit)

        return await cache_wrapper(
            self.cache,
            user_orders_key(principal.user_id, query),
            load,
            self.settings.cache.ORDER_CACHE_TTL,
        )

    async def get_order(self, principal: Principal, order_id: str) -> Dict[str, Any]:
        async def load():
            async with self.store.transaction() as uow:
                order = await uow.get_order(order_id)
            return order.model_dump(mode="json") if order else None

        data = await cache_wrapper(
            self.cache,
            order_details_key(order_id),
            load,
            self.settings.cache.ORDER_CACHE_TTL,
        )
        # Cached per order, so ownership is checked on every read
        if data is None or (data["user_id"] != principal.user_id and not principal.is_admin):
            raise OrderNotFoundError()
        return data

    async def track_order(self, principal: Principal, order_id: str) -> Dict[str, Any]:
        data = await self.get_order(principal, order_id)
        return {
            "currentStatus": data["status"],
            "trackingNumber": data["tracking_number"],
            "estimatedDelivery": data["estimated_delivery"],
            "history": sorted(data["status_history"], key=lambda h: h["created_at"], reverse=True),
        }

    async def list_all_orders(
        self,
        status: Optional[OrderStatus] = None,
        search: Optional[str] = None,
        page: int = 1,
        limit: int = 10,
    ) -> Dict[str, Any]:
        query = {"status": status.value if status else None, "search": search, "page": page, "limit": limit}

        async def load():
            async with self.store.transaction() as uow:
                orders, total = await uow.list_orders(status=status, search=search, page=page, limit=limit)
            return _page(orders, total, page, limit)

        return await cache_wrapper(
            self.cache,
            all_orders_key(query),
            load,
            self.settings.cache.ADMIN_CACHE_TTL,
        )

    # =========================================================================
    # ADMIN UPDATES
    # =========================================================================

    async def update_status(
        self,
        principal: Principal,
        order_id: str,
        status: OrderStatus,
        note: Optional[str] = None,
        tracking_number: Optional[str] = None,
        estimated_delivery: Optional[datetime] = None,
    ) -> Order:
        if estimated_delivery is not None and estimated_delivery < datetime.utcnow():
            raise ValidationError("Estimated delivery cannot be in the past.")

        # Cancellation has side effects on stock and coupons
        if status == OrderStatus.CANCELLED:
            return await self.committer.cancel(principal, order_id, note)

        async with self.store.transaction() as uow:
            order = await uow.get_order(order_id)
            if order is None:
                raise OrderNotFoundError()
            if not order.can_transition_to(status):
                raise InvalidStatusTransitionError(order.status.value, status.value)

            updated = await uow.update_order(
                order.id,
                expected_statuses=[order.status],
                status=status,
                tracking_number=tracking_number,
                estimated_delivery=estimated_delivery,
            )
            if not updated:
                raise ConflictError("Order was updated concurrently. Please retry.")

            await uow.append_status_history(
                order.id,
                StatusHistoryEntry(
                    status=status,
                    note=note or f"Order status updated to {status.value}",
                    updated_by=principal.user_id,
                ),
            )
            order = await uow.get_order(order_id)

        await invalidate_order_cache(self.cache, order)
        logger.info("order_status_updated", order_id=order_id, status=status.value, by=principal.user_id)
        return order

    async def update_payment_status(
        self,
        principal: Principal,
        order_id: str,
        payment_status: PaymentStatus,
        note: Optional[str] = None,
    ) -> Order:
        async with self.store.transaction() as uow:
            order = await uow.get_order(order_id)
            if order is None:
                raise OrderNotFoundError()
            if not order.can_transition_payment_to(payment_status):
                raise InvalidStatusTransitionError(order.payment_status.value, payment_status.value)

            updated = await uow.update_order(
                order.id,
                expected_payment_statuses=[order.payment_status],
                payment_status=payment_status,
            )
            if not updated:
                raise ConflictError("Order was updated concurrently. Please retry.")

            # History tracks fulfilment status; the note records the payment change
            await uow.append_status_history(
                order.id,
                StatusHistoryEntry(
                    status=order.status,
                    note=note or f"Payment status updated to {payment_status.value}",
                    updated_by=principal.user_id,
                ),
            )
            order = await uow.get_order(order_id)

        await invalidate_order_cache(self.cache, order)
        logger.info(
            "payment_status_updated",
            order_id=order_id,
            payment_status=payment_status.value,
            by=principal.user_id,
        )
        return order
