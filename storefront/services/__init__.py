# services/__init__.py
# ============================================================================
# STOREFRONT CHECKOUT: SERVICES MODULE
# ============================================================================
# External collaborators: cache and payment gateway
# ============================================================================

from storefront.services.cache import ICache, InMemoryCache, RedisCache, cache_wrapper
from storefront.services.gateway import IPaymentGateway, RazorpayGateway

__all__ = [
    "ICache",
    "InMemoryCache",
    "RedisCache",
    "cache_wrapper",
    "IPaymentGateway",
    "RazorpayGateway",
]
