"""
In-memory store used by tests and local demos.

Writes are applied immediately and recorded in an undo log; rolling back a
unit of work replays the log in reverse. Undo entries revert only the fields
or counters a write touched, so a rollback never overwrites changes another
unit of work committed meanwhile. Every operation yields to the event
loop first so concurrent transactions interleave the way they would against a
real database, while each check-and-write itself runs without a suspension
point in between.
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from storefront.errors import DuplicateOrderError, DuplicateOrderNumberError
from storefront.schemas.domain import (
    Coupon,
    Order,
    OrderStatus,
    PaymentStatus,
    Product,
    ProductVariant,
    StatusHistoryEntry,
    StockUnit,
    StockUnitRef,
    resolve_unit_price,
)
from storefront.storage.base import UPDATABLE_ORDER_FIELDS, IStore, IUnitOfWork


class InMemoryStore(IStore):
    """Dict-backed store with undo-log transactions"""

    def __init__(self):
        self.products: Dict[str, Product] = {}
        self.variants: Dict[str, ProductVariant] = {}
        self.coupons: Dict[str, Coupon] = {}
        self.orders: Dict[str, Order] = {}
        self.carts: Dict[str, List[Dict[str, Any]]] = {}
        self.webhook_events: Dict[str, str] = {}
        self.coupon_holders: Dict[str, "InMemoryUnitOfWork"] = {}

    # -------------------------------------------------------------------------
    # Seeding
    # -------------------------------------------------------------------------

    def add_product(self, product: Product) -> Product:
        self.products[product.id] = product
        return product

    def add_variant(self, variant: ProductVariant) -> ProductVariant:
        self.variants[variant.id] = variant
        return variant

    def add_coupon(self, coupon: Coupon) -> Coupon:
        self.coupons[coupon.id] = coupon
        return coupon

    def set_cart(self, user_id: str, items: List[Dict[str, Any]]):
        self.carts[user_id] = list(items)

    def available(self, ref: StockUnitRef) -> int:
        if ref.variant_id:
            return self.variants[ref.variant_id].stock
        return self.products[ref.product_id].stock_quantity

    # -------------------------------------------------------------------------
    # IStore
    # -------------------------------------------------------------------------

    @asynccontextmanager
    async def transaction(self):
        uow = InMemoryUnitOfWork(self)
        try:
            yield uow
        except BaseException:
            uow.rollback_to(0)
            raise
        finally:
            uow.release_locks()

    async def ping(self) -> bool:
        return True


class InMemoryUnitOfWork(IUnitOfWork):

    def __init__(self, store: InMemoryStore):
        self.store = store
        self._undo: List[Callable[[], None]] = []
        self._held: List[str] = []

    def rollback_to(self, mark: int):
        while len(self._undo) > mark:
            self._undo.pop()()

    def release_locks(self):
        for coupon_id in self._held:
            self.store.coupon_holders.pop(coupon_id, None)
        self._held.clear()

    def _replace(self, table: Dict[str, Any], key: str, new_value: Any):
        previous = table.get(key)

        def undo():
            if previous is None:
                table.pop(key, None)
            else:
                table[key] = previous

        table[key] = new_value
        self._undo.append(undo)

    def _patch(self, table: Dict[str, Any], key: str, changes: Dict[str, Any]):
        # Undo reverts only the fields this write touched
        current = table[key]
        previous = {field: getattr(current, field) for field in changes}
        table[key] = current.model_copy(update=changes)

        def undo():
            row = table.get(key)
            if row is not None:
                table[key] = row.model_copy(update=previous)

        self._undo.append(undo)

    def _adjust(self, table: Dict[str, Any], key: str, field: str, delta: int):
        # Counters undo by inverse delta, never by snapshot
        def apply(amount: int):
            current = table.get(key)
            if current is not None:
                value = max(getattr(current, field) + amount, 0)
                table[key] = current.model_copy(update={field: value})

        apply(delta)
        self._undo.append(lambda: apply(-delta))

    @asynccontextmanager
    async def savepoint(self):
        mark = len(self._undo)
        try:
            yield self
        except BaseException:
            self.rollback_to(mark)
            raise

    # -------------------------------------------------------------------------
    # Stock
    # -------------------------------------------------------------------------

    def _resolve(self, ref: StockUnitRef) -> Optional[Tuple[Product, Optional[ProductVariant]]]:
        product = self.store.products.get(ref.product_id)
        if product is None:
            return None
        if ref.variant_id is None:
            return product, None
        variant = self.store.variants.get(ref.variant_id)
        if variant is None or variant.product_id != product.id:
            return None
        return product, variant

    async def get_stock_unit(self, ref: StockUnitRef) -> Optional[StockUnit]:
        await asyncio.sleep(0)
        resolved = self._resolve(ref)
        if resolved is None:
            return None
        product, variant = resolved
        return StockUnit(
            ref=ref,
            product_name=product.name,
            label=variant.label(product.name) if variant else product.name,
            price=resolve_unit_price(product, variant),
            available_quantity=variant.stock if variant else product.stock_quantity,
            low_stock_threshold=product.low_stock_threshold,
            is_active=product.is_active and (variant.is_active if variant else True),
        )

    async def try_decrement_stock(self, ref: StockUnitRef, quantity: int) -> bool:
        await asyncio.sleep(0)
        resolved = self._resolve(ref)
        if resolved is None:
            return False
        product, variant = resolved
        if variant is not None:
            if variant.stock < quantity:
                return False
            self._adjust(self.store.variants, variant.id, "stock", -quantity)
        else:
            if product.stock_quantity < quantity:
                return False
            self._adjust(self.store.products, product.id, "stock_quantity", -quantity)
        return True

    async def increment_stock(self, ref: StockUnitRef, quantity: int) -> bool:
        await asyncio.sleep(0)
        resolved = self._resolve(ref)
        if resolved is None:
            return False
        product, variant = resolved
        if variant is not None:
            self._adjust(self.store.variants, variant.id, "stock", quantity)
        else:
            self._adjust(self.store.products, product.id, "stock_quantity", quantity)
        return True

    async def list_low_stock(self, variant_threshold: int) -> Dict[str, List[Dict[str, Any]]]:
        await asyncio.sleep(0)
        products = [
            {
                "id": p.id,
                "name": p.name,
                "sku": p.sku,
                "stock_quantity": p.stock_quantity,
                "low_stock_threshold": p.low_stock_threshold,
            }
            for p in self.store.products.values()
            if p.is_active and p.stock_quantity <= p.low_stock_threshold
        ]
        variants = []
        for v in self.store.variants.values():
            product = self.store.products.get(v.product_id)
            if v.is_active and product and product.is_active and v.stock <= variant_threshold:
                variants.append({
                    "id": v.id,
                    "product_name": product.name,
                    "size": v.size,
                    "color": v.color,
                    "sku": v.sku,
                    "stock": v.stock,
                })
        return {"products": products, "variants": variants}

    async def get_stock_info(
        self,
        product_ids: Iterable[str],
        variant_ids: Iterable[str],
    ) -> Dict[str, List[Dict[str, Any]]]:
        await asyncio.sleep(0)
        products = []
        for pid in product_ids:
            p = self.store.products.get(pid)
            if not p or not p.is_active:
                continue
            products.append({
                "id": p.id,
                "name": p.name,
                "stock_quantity": p.stock_quantity,
                "low_stock_threshold": p.low_stock_threshold,
                "variants": [
                    {"id": v.id, "size": v.size, "color": v.color, "stock": v.stock, "sku": v.sku}
                    for v in self.store.variants.values()
                    if v.product_id == p.id and v.is_active
                ],
            })
        variants = []
        for vid in variant_ids:
            v = self.store.variants.get(vid)
            if not v or not v.is_active:
                continue
            product = self.store.products.get(v.product_id)
            variants.append({
                "id": v.id,
                "size": v.size,
                "color": v.color,
                "stock": v.stock,
                "product_name": product.name if product else None,
            })
        return {"products": products, "variants": variants}

    # -------------------------------------------------------------------------
    # Coupons
    # -------------------------------------------------------------------------

    async def get_coupon_by_code(self, code: str) -> Optional[Coupon]:
        await asyncio.sleep(0)
        for coupon in self.store.coupons.values():
            if coupon.code == code.upper():
                return coupon
        return None

    async def try_increment_coupon_usage(self, coupon_id: str) -> bool:
        await asyncio.sleep(0)
        coupon = self.store.coupons.get(coupon_id)
        if coupon is None or coupon.is_exhausted:
            return False
        self._adjust(self.store.coupons, coupon_id, "usage_count", 1)
        return True

    async def decrement_coupon_usage(self, coupon_id: str) -> None:
        await asyncio.sleep(0)
        coupon = self.store.coupons.get(coupon_id)
        if coupon is None:
            return
        if coupon.usage_count > 0:
            self._adjust(self.store.coupons, coupon_id, "usage_count", -1)

    async def lock_coupon(self, coupon_id: str) -> None:
        await asyncio.sleep(0)
        while self.store.coupon_holders.get(coupon_id, self) is not self:
            await asyncio.sleep(0)
        if coupon_id not in self._held:
            self.store.coupon_holders[coupon_id] = self
            self._held.append(coupon_id)

    async def count_user_coupon_orders(self, user_id: str, coupon_id: str) -> int:
        await asyncio.sleep(0)
        return sum(
            1 for o in self.store.orders.values()
            if o.user_id == user_id and o.coupon_id == coupon_id and o.status != OrderStatus.CANCELLED
        )

    # -------------------------------------------------------------------------
    # Orders
    # -------------------------------------------------------------------------

    async def insert_order(self, order: Order) -> None:
        await asyncio.sleep(0)
        for existing in self.store.orders.values():
            if existing.order_number == order.order_number:
                raise DuplicateOrderNumberError()
            if order.tracking_number and existing.tracking_number == order.tracking_number:
                raise DuplicateOrderNumberError()
            if order.gateway_order_id and existing.gateway_order_id == order.gateway_order_id:
                raise DuplicateOrderError()
        if order.id in self.store.orders:
            raise DuplicateOrderError()
        self._replace(self.store.orders, order.id, order.model_copy(deep=True))

    async def get_order(self, order_id: str, user_id: Optional[str] = None) -> Optional[Order]:
        await asyncio.sleep(0)
        order = self.store.orders.get(order_id)
        if order is None or (user_id is not None and order.user_id != user_id):
            return None
        return order.model_copy(deep=True)

    async def find_order(
        self,
        *,
        payment_id: Optional[str] = None,
        gateway_order_id: Optional[str] = None,
    ) -> Optional[Order]:
        await asyncio.sleep(0)
        for order in self.store.orders.values():
            if payment_id and order.payment_id == payment_id:
                return order.model_copy(deep=True)
            if gateway_order_id and order.gateway_order_id == gateway_order_id:
                return order.model_copy(deep=True)
        return None

    async def list_orders(
        self,
        *,
        user_id: Optional[str] = None,
        status: Optional[OrderStatus] = None,
        search: Optional[str] = None,
        page: int = 1,
        limit: int = 10,
    ) -> Tuple[List[Order], int]:
        await asyncio.sleep(0)
        matches = [
            o for o in self.store.orders.values()
            if (user_id is None or o.user_id == user_id)
            and (status is None or o.status == status)
            and (not search or search.lower() in o.order_number.lower())
        ]
        matches.sort(key=lambda o: o.created_at, reverse=True)
        start = (page - 1) * limit
        return [o.model_copy(deep=True) for o in matches[start:start + limit]], len(matches)

    async def update_order(
        self,
        order_id: str,
        *,
        expected_statuses: Optional[Iterable[OrderStatus]] = None,
        expected_payment_statuses: Optional[Iterable[PaymentStatus]] = None,
        **fields: Any,
    ) -> bool:
        await asyncio.sleep(0)
        unknown = set(fields) - UPDATABLE_ORDER_FIELDS
        if unknown:
            raise ValueError(f"Cannot update order fields: {sorted(unknown)}")
        order = self.store.orders.get(order_id)
        if order is None:
            return False
        if expected_statuses is not None and order.status not in set(expected_statuses):
            return False
        if expected_payment_statuses is not None and order.payment_status not in set(expected_payment_statuses):
            return False
        update = {k: v for k, v in fields.items() if v is not None}
        update["updated_at"] = datetime.utcnow()
        self._patch(self.store.orders, order_id, update)
        return True

    async def append_status_history(self, order_id: str, entry: StatusHistoryEntry) -> None:
        await asyncio.sleep(0)
        orders = self.store.orders
        order = orders[order_id]
        orders[order_id] = order.model_copy(update={"status_history": [*order.status_history, entry]})

        def undo():
            row = orders.get(order_id)
            if row is not None:
                history = [h for h in row.status_history if h.id != entry.id]
                orders[order_id] = row.model_copy(update={"status_history": history})

        self._undo.append(undo)

    # -------------------------------------------------------------------------
    # Cart & webhooks
    # -------------------------------------------------------------------------

    async def clear_cart(self, user_id: str) -> None:
        await asyncio.sleep(0)
        if user_id in self.store.carts:
            self._replace(self.store.carts, user_id, [])

    async def record_webhook_event(self, event_id: str, event_type: str) -> bool:
        await asyncio.sleep(0)
        if event_id in self.store.webhook_events:
            return False
        self._replace(self.store.webhook_events, event_id, event_type)
        return True
