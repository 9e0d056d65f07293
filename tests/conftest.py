"""Pytest fixtures for storefront checkout tests."""

import itertools
import json
from datetime import datetime, timedelta
from typing import Dict, List, Optional

import pytest

from storefront.config import Settings
from storefront.errors import NotFoundError
from storefront.pipeline import (
    CouponService,
    OrderCommitTransaction,
    OrderService,
    PaymentIntentBroker,
    PricingSnapshotValidator,
    SignatureVerifier,
    StockLedger,
    WebhookReconciler,
)
from storefront.schemas.domain import (
    CartSnapshot,
    CartSnapshotItem,
    Coupon,
    DiscountType,
    GatewayOrder,
    GatewayPayment,
    PaymentConfirmation,
    Principal,
    Product,
    ProductVariant,
    Role,
)
from storefront.services.cache import InMemoryCache
from storefront.services.gateway import IPaymentGateway
from storefront.storage.memory import InMemoryStore

KEY_SECRET = "test_key_secret"
WEBHOOK_SECRET = "test_webhook_secret"
JWT_SECRET = "test-jwt-secret"


class FakeGateway(IPaymentGateway):
    """Records created orders and serves payments registered by the test."""

    def __init__(self):
        self.orders: Dict[str, GatewayOrder] = {}
        self.payments: Dict[str, GatewayPayment] = {}
        self._ids = itertools.count(1)

    async def create_order(self, amount, currency, receipt, notes) -> GatewayOrder:
        order = GatewayOrder(
            id=f"order_{next(self._ids):06d}",
            amount=amount,
            currency=currency,
            receipt=receipt,
            notes=notes,
        )
        self.orders[order.id] = order
        return order

    async def fetch_payment(self, payment_id: str) -> GatewayPayment:
        if payment_id not in self.payments:
            raise NotFoundError("Payment not found")
        return self.payments[payment_id]

    def pay(self, gateway_order_id: str, payment_id: Optional[str] = None, status: str = "captured") -> str:
        payment_id = payment_id or f"pay_{gateway_order_id}"
        order = self.orders[gateway_order_id]
        self.payments[payment_id] = GatewayPayment(
            id=payment_id,
            order_id=gateway_order_id,
            status=status,
            amount=order.amount,
            currency=order.currency,
            notes=order.notes,
        )
        return payment_id


def sign_payment(gateway_order_id: str, payment_id: str, secret: str = KEY_SECRET) -> str:
    return SignatureVerifier.sign(SignatureVerifier.payment_material(gateway_order_id, payment_id), secret)


def confirmation_for(gateway_order_id: str, payment_id: str) -> PaymentConfirmation:
    return PaymentConfirmation(
        razorpay_order_id=gateway_order_id,
        razorpay_payment_id=payment_id,
        razorpay_signature=sign_payment(gateway_order_id, payment_id),
    )


def webhook_body(event: str, payload: dict, event_id: Optional[str] = None) -> bytes:
    body = {"entity": "event", "event": event, "payload": payload, "created_at": 1700000000}
    if event_id:
        body["id"] = event_id
    return json.dumps(body).encode("utf-8")


def sign_webhook(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    return SignatureVerifier.sign(body, secret)


def make_snapshot(
    items: List[tuple],
    coupon_code: Optional[str] = None,
    discount: float = 0,
    tax: float = 0,
    payment_method: str = "RAZORPAY",
) -> CartSnapshot:
    """Build a consistent snapshot from (product_id, variant_id, quantity, price) tuples."""
    subtotal = round(sum(qty * price for _, _, qty, price in items), 2)
    return CartSnapshot(
        items=[
            CartSnapshotItem(product_id=pid, variant_id=vid, quantity=qty, unit_price_at_snapshot=price)
            for pid, vid, qty, price in items
        ],
        subtotal=subtotal,
        discount=discount,
        tax=tax,
        total=round(subtotal - discount + tax, 2),
        coupon_code=coupon_code,
        shipping_address_id="addr_1",
        payment_method=payment_method,
    )


@pytest.fixture
def settings():
    s = Settings()
    s.gateway.KEY_ID = "rzp_test_key"
    s.gateway.KEY_SECRET = KEY_SECRET
    s.gateway.WEBHOOK_SECRET = WEBHOOK_SECRET
    s.auth.JWT_SECRET = JWT_SECRET
    s.database.STORE_BACKEND = "memory"
    s.server.LOG_JSON = True
    return s


@pytest.fixture
def store():
    """In-memory store with a small catalog and two coupons."""
    s = InMemoryStore()
    s.add_product(Product(id="tee", name="Cotton Tee", price=500, stock_quantity=10, low_stock_threshold=3))
    s.add_product(Product(
        id="jacket", name="Denim Jacket", price=2000, discounted_price=1800, stock_quantity=0,
    ))
    s.add_variant(ProductVariant(id="jacket-m", product_id="jacket", size="M", color="Blue", stock=3))
    s.add_variant(ProductVariant(id="jacket-l", product_id="jacket", size="L", price=1900, stock=1))
    s.add_product(Product(id="retired", name="Retired Cap", price=300, stock_quantity=50, is_active=False))

    now = datetime.utcnow()
    s.add_coupon(Coupon(
        id="cpn-save10", code="SAVE10", name="Ten percent off", type=DiscountType.PERCENTAGE,
        value=10, max_discount=150, usage_limit=2,
        valid_from=now - timedelta(days=1), valid_until=now + timedelta(days=30),
    ))
    s.add_coupon(Coupon(
        id="cpn-flat", code="FLAT100", type=DiscountType.FIXED_AMOUNT, value=100,
        min_order_value=1000, per_user_limit=1,
        valid_from=now - timedelta(days=1), valid_until=now + timedelta(days=30),
    ))
    s.set_cart("user-1", [{"product_id": "tee", "quantity": 2}])
    return s


@pytest.fixture
def cache():
    return InMemoryCache()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def customer():
    return Principal(user_id="user-1", role=Role.CUSTOMER)


@pytest.fixture
def other_customer():
    return Principal(user_id="user-2", role=Role.CUSTOMER)


@pytest.fixture
def admin():
    return Principal(user_id="admin-1", role=Role.ADMIN)


@pytest.fixture
def ledger(store, settings):
    return StockLedger(store, settings.checkout)


@pytest.fixture
def pricing(settings):
    return PricingSnapshotValidator(settings.checkout)


@pytest.fixture
def coupons(store):
    return CouponService(store)


@pytest.fixture
def intents(store, cache, gateway, settings, pricing, coupons):
    return PaymentIntentBroker(store, cache, gateway, settings, pricing=pricing, coupons=coupons)


@pytest.fixture
def committer(store, cache, gateway, settings, intents, ledger, pricing, coupons):
    return OrderCommitTransaction(
        store, cache, gateway, settings,
        intents=intents, ledger=ledger, pricing=pricing, coupons=coupons,
    )


@pytest.fixture
def orders(store, cache, settings, committer):
    return OrderService(store, cache, settings, committer)


@pytest.fixture
def reconciler(store, cache, settings, committer):
    return WebhookReconciler(store, cache, settings, committer)
