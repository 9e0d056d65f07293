"""Cache keys for order reads and their invalidation."""

import json
from typing import Any, Dict

from storefront.schemas.domain import Order
from storefront.services.cache import ICache


def order_details_key(order_id: str) -> str:
    return f"orders:{order_id}"


def user_orders_key(user_id: str, query: Dict[str, Any]) -> str:
    return f"orders:user:{user_id}:{json.dumps(query, sort_keys=True, default=str)}"


def all_orders_key(query: Dict[str, Any]) -> str:
    return f"orders:all:{json.dumps(query, sort_keys=True, default=str)}"


async def invalidate_order_cache(cache: ICache, order: Order) -> None:
    """Drop every cached view an order mutation can make stale"""
    await cache.delete(order_details_key(order.id))
    await cache.delete_pattern(f"orders:user:{order.user_id}:*")
    await cache.delete_pattern("orders:all:*")
