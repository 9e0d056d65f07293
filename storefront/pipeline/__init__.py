# pipeline/__init__.py
# ============================================================================
# STOREFRONT CHECKOUT: PIPELINE
# ============================================================================
# Stock ledger, pricing, intents, signatures, order commit and webhook
# reconciliation
# ============================================================================

from storefront.pipeline.coupons import CouponService
from storefront.pipeline.intents import PaymentIntentBroker
from storefront.pipeline.order_commit import OrderCommitTransaction
from storefront.pipeline.orders import OrderService
from storefront.pipeline.pricing import PricingQuote, PricingSnapshotValidator
from storefront.pipeline.signatures import SignatureVerifier
from storefront.pipeline.stock_ledger import AvailabilityResult, StockLedger
from storefront.pipeline.webhooks import WebhookReconciler, WebhookRouter

__all__ = [
    "CouponService",
    "PaymentIntentBroker",
    "OrderCommitTransaction",
    "OrderService",
    "PricingQuote",
    "PricingSnapshotValidator",
    "SignatureVerifier",
    "AvailabilityResult",
    "StockLedger",
    "WebhookReconciler",
    "WebhookRouter",
]
