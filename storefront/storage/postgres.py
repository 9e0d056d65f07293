"""
PostgreSQL store backed by the shared asyncpg pool.

Stock and coupon counters change only through single conditional UPDATE
statements, so the check and the write happen atomically inside Postgres.
"""

from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple

import asyncpg
import structlog

from storefront.database import Database
from storefront.errors import DuplicateOrderError, DuplicateOrderNumberError
from storefront.schemas.domain import (
    Coupon,
    DiscountType,
    Order,
    OrderLineItem,
    OrderStatus,
    PaymentStatus,
    StatusHistoryEntry,
    StockUnit,
    StockUnitRef,
)
from storefront.storage.base import UPDATABLE_ORDER_FIELDS, IStore, IUnitOfWork

logger = structlog.get_logger().bind(component="postgres_store")


def _num(value: Optional[Decimal]) -> Optional[float]:
    return float(value) if value is not None else None


def _dec(value: Optional[float]) -> Optional[Decimal]:
    return Decimal(str(round(value, 2))) if value is not None else None


def _db_value(value: Any) -> Any:
    if isinstance(value, (OrderStatus, PaymentStatus)):
        return value.value
    return value


def _coupon_from_row(row: asyncpg.Record) -> Coupon:
    return Coupon(
        id=row["id"],
        code=row["code"],
        name=row["name"],
        type=DiscountType(row["type"]),
        value=_num(row["value"]),
        max_discount=_num(row["max_discount"]),
        min_order_value=_num(row["min_order_value"]),
        usage_limit=row["usage_limit"],
        usage_count=row["usage_count"],
        per_user_limit=row["per_user_limit"],
        valid_from=row["valid_from"],
        valid_until=row["valid_until"],
        is_active=row["is_active"],
    )


class PostgresUnitOfWork(IUnitOfWork):
    """One connection holding one open transaction"""

    def __init__(self, conn: asyncpg.Connection):
        self.conn = conn

    @asynccontextmanager
    async def savepoint(self):
        # Nested asyncpg transactions are SAVEPOINTs
        async with self.conn.transaction():
            yield self

    # -------------------------------------------------------------------------
    # Stock
    # -------------------------------------------------------------------------

    async def get_stock_unit(self, ref: StockUnitRef) -> Optional[StockUnit]:
        if ref.variant_id is None:
            row = await self.conn.fetchrow(
                """
                SELECT name, price, discounted_price, stock_quantity,
                       low_stock_threshold, is_active
                FROM products WHERE id = $1
                """,
                ref.product_id,
            )
            if not row:
                return None
            price = row["discounted_price"] if row["discounted_price"] is not None else row["price"]
            return StockUnit(
                ref=ref,
                product_name=row["name"],
                label=row["name"],
                price=_num(price),
                available_quantity=row["stock_quantity"],
                low_stock_threshold=row["low_stock_threshold"],
                is_active=row["is_active"],
            )

        row = await self.conn.fetchrow(
            """
            SELECT p.name, p.price, p.discounted_price, p.low_stock_threshold,
                   p.is_active AS product_active,
                   v.size, v.color, v.price AS variant_price, v.stock,
                   v.is_active AS variant_active
            FROM product_variants v
            JOIN products p ON p.id = v.product_id
            WHERE v.id = $1 AND v.product_id = $2
            """,
            ref.variant_id,
            ref.product_id,
        )
        if not row:
            return None
        if row["variant_price"] is not None:
            price = row["variant_price"]
        elif row["discounted_price"] is not None:
            price = row["discounted_price"]
        else:
            price = row["price"]
        detail = " - ".join(part for part in (row["size"], row["color"]) if part)
        return StockUnit(
            ref=ref,
            product_name=row["name"],
            label=f"{row['name']} ({detail})" if detail else row["name"],
            price=_num(price),
            available_quantity=row["stock"],
            low_stock_threshold=row["low_stock_threshold"],
            is_active=row["product_active"] and row["variant_active"],
        )

    async def try_decrement_stock(self, ref: StockUnitRef, quantity: int) -> bool:
        if ref.variant_id is None:
            row = await self.conn.fetchrow(
                """
                UPDATE products
                SET stock_quantity = stock_quantity - $1,
                    updated_at = (NOW() AT TIME ZONE 'utc')
                WHERE id = $2 AND stock_quantity >= $1
                RETURNING id
                """,
                quantity,
                ref.product_id,
            )
        else:
            row = await self.conn.fetchrow(
                """
                UPDATE product_variants
                SET stock = stock - $1,
                    updated_at = (NOW() AT TIME ZONE 'utc')
                WHERE id = $2 AND product_id = $3 AND stock >= $1
                RETURNING id
                """,
                quantity,
                ref.variant_id,
                ref.product_id,
            )
        return row is not None

    async def increment_stock(self, ref: StockUnitRef, quantity: int) -> bool:
        if ref.variant_id is None:
            row = await self.conn.fetchrow(
                """
                UPDATE products
                SET stock_quantity = stock_quantity + $1,
                    updated_at = (NOW() AT TIME ZONE 'utc')
                WHERE id = $2
                RETURNING id
                """,
                quantity,
                ref.product_id,
            )
        else:
            row = await self.conn.fetchrow(
                """
                UPDATE product_variants
                SET stock = stock + $1,
                    updated_at = (NOW() AT TIME ZONE 'utc')
                WHERE id = $2 AND product_id = $3
                RETURNING id
                """,
                quantity,
                ref.variant_id,
                ref.product_id,
            )
        return row is not None

    async def list_low_stock(self, variant_threshold: int) -> Dict[str, List[Dict[str, Any]]]:
        products = await self.conn.fetch(
            """
            SELECT id, name, sku, stock_quantity, low_stock_threshold
            FROM products
            WHERE is_active AND stock_quantity <= low_stock_threshold
            ORDER BY stock_quantity ASC
            """
        )
        variants = await self.conn.fetch(
            """
            SELECT v.id, p.name AS product_name, v.size, v.color, v.sku, v.stock
            FROM product_variants v
            JOIN products p ON p.id = v.product_id
            WHERE v.is_active AND p.is_active AND v.stock <= $1
            ORDER BY v.stock ASC
            """,
            variant_threshold,
        )
        return {
            "products": [dict(row) for row in products],
            "variants": [dict(row) for row in variants],
        }

    async def get_stock_info(
        self,
        product_ids: Iterable[str],
        variant_ids: Iterable[str],
    ) -> Dict[str, List[Dict[str, Any]]]:
        product_ids = list(product_ids)
        variant_ids = list(variant_ids)
        products: List[Dict[str, Any]] = []
        variants: List[Dict[str, Any]] = []

        if product_ids:
            rows = await self.conn.fetch(
                """
                SELECT id, name, stock_quantity, low_stock_threshold
                FROM products WHERE id = ANY($1) AND is_active
                """,
                product_ids,
            )
            variant_rows = await self.conn.fetch(
                """
                SELECT id, product_id, size, color, stock, sku
                FROM product_variants WHERE product_id = ANY($1) AND is_active
                """,
                product_ids,
            )
            for row in rows:
                products.append({
                    **dict(row),
                    "variants": [
                        {k: v[k] for k in ("id", "size", "color", "stock", "sku")}
                        for v in variant_rows if v["product_id"] == row["id"]
                    ],
                })

        if variant_ids:
            rows = await self.conn.fetch(
                """
                SELECT v.id, v.size, v.color, v.stock, p.name AS product_name
                FROM product_variants v
                JOIN products p ON p.id = v.product_id
                WHERE v.id = ANY($1) AND v.is_active
                """,
                variant_ids,
            )
            variants = [dict(row) for row in rows]

        return {"products": products, "variants": variants}

    # -------------------------------------------------------------------------
    # Coupons
    # -------------------------------------------------------------------------

    async def get_coupon_by_code(self, code: str) -> Optional[Coupon]:
        row = await self.conn.fetchrow("SELECT * FROM coupons WHERE code = $1", code.upper())
        return _coupon_from_row(row) if row else None

    async def try_increment_coupon_usage(self, coupon_id: str) -> bool:
        row = await self.conn.fetchrow(
            """
            UPDATE coupons SET usage_count = usage_count + 1
            WHERE id = $1 AND (usage_limit IS NULL OR usage_count < usage_limit)
            RETURNING id
            """,
            coupon_id,
        )
        return row is not None

    async def decrement_coupon_usage(self, coupon_id: str) -> None:
        await self.conn.execute(
            "UPDATE coupons SET usage_count = GREATEST(usage_count - 1, 0) WHERE id = $1",
            coupon_id,
        )

    async def lock_coupon(self, coupon_id: str) -> None:
        await self.conn.execute("SELECT id FROM coupons WHERE id = $1 FOR UPDATE", coupon_id)

    async def count_user_coupon_orders(self, user_id: str, coupon_id: str) -> int:
        return await self.conn.fetchval(
            """
            SELECT COUNT(*) FROM orders
            WHERE user_id = $1 AND coupon_id = $2 AND status <> 'CANCELLED'
            """,
            user_id,
            coupon_id,
        )

    # -------------------------------------------------------------------------
    # Orders
    # -------------------------------------------------------------------------

    async def insert_order(self, order: Order) -> None:
        try:
            async with self.conn.transaction():
                await self.conn.execute(
                    """
                    INSERT INTO orders
                    (id, order_number, user_id, status, payment_status, payment_method,
                     payment_id, gateway_order_id, shipping_address_id, subtotal,
                     discount_amount, tax_amount, total_amount, coupon_id,
                     tracking_number, estimated_delivery, created_at, updated_at)
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12,
                            $13, $14, $15, $16, $17, $18)
                    """,
                    order.id,
                    order.order_number,
                    order.user_id,
                    order.status.value,
                    order.payment_status.value,
                    order.payment_method,
                    order.payment_id,
                    order.gateway_order_id,
                    order.shipping_address_id,
                    _dec(order.subtotal),
                    _dec(order.discount_amount),
                    _dec(order.tax_amount),
                    _dec(order.total_amount),
                    order.coupon_id,
                    order.tracking_number,
                    order.estimated_delivery,
                    order.created_at,
                    order.updated_at,
                )
                await self.conn.executemany(
                    """
                    INSERT INTO order_items
                    (id, order_id, product_id, variant_id, product_name, quantity, price_at_purchase)
                    VALUES ($1, $2, $3, $4, $5, $6, $7)
                    """,
                    [
                        (item.id, order.id, item.product_id, item.variant_id,
                         item.product_name, item.quantity, _dec(item.price_at_purchase))
                        for item in order.items
                    ],
                )
                for entry in order.status_history:
                    await self.append_status_history(order.id, entry)
        except asyncpg.UniqueViolationError as e:
            if e.constraint_name == "orders_gateway_order_id_key" or e.constraint_name == "orders_pkey":
                raise DuplicateOrderError()
            raise DuplicateOrderNumberError()

    async def _load_order(self, row: asyncpg.Record) -> Order:
        items = await self.conn.fetch("SELECT * FROM order_items WHERE order_id = $1", row["id"])
        history = await self.conn.fetch(
            "SELECT * FROM order_status_history WHERE order_id = $1 ORDER BY created_at",
            row["id"],
        )
        return Order(
            id=row["id"],
            order_number=row["order_number"],
            user_id=row["user_id"],
            status=OrderStatus(row["status"]),
            payment_status=PaymentStatus(row["payment_status"]),
            payment_method=row["payment_method"],
            payment_id=row["payment_id"],
            gateway_order_id=row["gateway_order_id"],
            shipping_address_id=row["shipping_address_id"],
            subtotal=_num(row["subtotal"]),
            discount_amount=_num(row["discount_amount"]),
            tax_amount=_num(row["tax_amount"]),
            total_amount=_num(row["total_amount"]),
            coupon_id=row["coupon_id"],
            tracking_number=row["tracking_number"],
            estimated_delivery=row["estimated_delivery"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            items=[
                OrderLineItem(
                    id=i["id"],
                    order_id=i["order_id"],
                    product_id=i["product_id"],
                    variant_id=i["variant_id"],
                    product_name=i["product_name"],
                    quantity=i["quantity"],
                    price_at_purchase=_num(i["price_at_purchase"]),
                )
                for i in items
            ],
            status_history=[
                StatusHistoryEntry(
                    id=h["id"],
                    status=OrderStatus(h["status"]),
                    note=h["note"],
                    updated_by=h["updated_by"],
                    created_at=h["created_at"],
                )
                for h in history
            ],
        )

    async def get_order(self, order_id: str, user_id: Optional[str] = None) -> Optional[Order]:
        if user_id is None:
            row = await self.conn.fetchrow("SELECT * FROM orders WHERE id = $1", order_id)
        else:
            row = await self.conn.fetchrow(
                "SELECT * FROM orders WHERE id = $1 AND user_id = $2", order_id, user_id
            )
        return await self._load_order(row) if row else None

    async def find_order(
        self,
        *,
        payment_id: Optional[str] = None,
        gateway_order_id: Optional[str] = None,
    ) -> Optional[Order]:
        row = None
        if payment_id:
            row = await self.conn.fetchrow("SELECT * FROM orders WHERE payment_id = $1", payment_id)
        if row is None and gateway_order_id:
            row = await self.conn.fetchrow(
                "SELECT * FROM orders WHERE gateway_order_id = $1", gateway_order_id
            )
        return await self._load_order(row) if row else None

    async def list_orders(
        self,
        *,
        user_id: Optional[str] = None,
        status: Optional[OrderStatus] = None,
        search: Optional[str] = None,
        page: int = 1,
        limit: int = 10,
    ) -> Tuple[List[Order], int]:
        conditions = []
        params: List[Any] = []
        param_num = 1

        if user_id:
            conditions.append(f"user_id = ${param_num}")
            params.append(user_id)
            param_num += 1

        if status:
            conditions.append(f"status = ${param_num}")
            params.append(status.value)
            param_num += 1

        if search:
            conditions.append(f"order_number ILIKE ${param_num}")
            params.append(f"%{search}%")
            param_num += 1

        where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""

        total = await self.conn.fetchval(f"SELECT COUNT(*) FROM orders {where_clause}", *params)
        rows = await self.conn.fetch(
            f"""
            SELECT * FROM orders
            {where_clause}
            ORDER BY created_at DESC
            LIMIT ${param_num} OFFSET ${param_num + 1}
            """,
            *params,
            limit,
            (page - 1) * limit,
        )
        return [await self._load_order(row) for row in rows], total

    async def update_order(
        self,
        order_id: str,
        *,
        expected_statuses: Optional[Iterable[OrderStatus]] = None,
        expected_payment_statuses: Optional[Iterable[PaymentStatus]] = None,
        **fields: Any,
    ) -> bool:
        unknown = set(fields) - UPDATABLE_ORDER_FIELDS
        if unknown:
            raise ValueError(f"Cannot update order fields: {sorted(unknown)}")

        set_clauses = ["updated_at = $1"]
        params: List[Any] = [datetime.utcnow()]
        param_num = 2

        for key, value in fields.items():
            if value is None:
                continue
            set_clauses.append(f"{key} = ${param_num}")
            params.append(_db_value(value))
            param_num += 1

        conditions = [f"id = ${param_num}"]
        params.append(order_id)
        param_num += 1

        if expected_statuses is not None:
            conditions.append(f"status = ANY(${param_num})")
            params.append([s.value for s in expected_statuses])
            param_num += 1

        if expected_payment_statuses is not None:
            conditions.append(f"payment_status = ANY(${param_num})")
            params.append([s.value for s in expected_payment_statuses])
            param_num += 1

        row = await self.conn.fetchrow(
            f"""
            UPDATE orders
            SET {', '.join(set_clauses)}
            WHERE {' AND '.join(conditions)}
            RETURNING id
            """,
            *params,
        )
        return row is not None

    async def append_status_history(self, order_id: str, entry: StatusHistoryEntry) -> None:
        await self.conn.execute(
            """
            INSERT INTO order_status_history (id, order_id, status, note, updated_by, created_at)
            VALUES ($1, $2, $3, $4, $5, $6)
            """,
            entry.id,
            order_id,
            entry.status.value,
            entry.note,
            entry.updated_by,
            entry.created_at,
        )

    # -------------------------------------------------------------------------
    # Cart & webhooks
    # -------------------------------------------------------------------------

    async def clear_cart(self, user_id: str) -> None:
        await self.conn.execute(
            "DELETE FROM cart_items WHERE cart_id IN (SELECT id FROM carts WHERE user_id = $1)",
            user_id,
        )

    async def record_webhook_event(self, event_id: str, event_type: str) -> bool:
        row = await self.conn.fetchrow(
            """
            INSERT INTO webhook_events (id, event_type) VALUES ($1, $2)
            ON CONFLICT (id) DO NOTHING
            RETURNING id
            """,
            event_id,
            event_type,
        )
        return row is not None


class PostgresStore(IStore):
    """IStore over the process-wide Database pool"""

    @asynccontextmanager
    async def transaction(self):
        async with Database.acquire() as conn:
            async with conn.transaction():
                yield PostgresUnitOfWork(conn)

    async def ping(self) -> bool:
        try:
            return await Database.fetch_one("SELECT 1") is not None
        except (asyncpg.PostgresError, OSError) as e:
            logger.warning("database_ping_failed", error=str(e))
            return False
