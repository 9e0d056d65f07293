# schemas/domain.py
# ============================================================================
# STOREFRONT CHECKOUT: DOMAIN MODELS
# ============================================================================
# Catalog, cart snapshot, payment intent, order and coupon entities plus the
# two order state machines (fulfilment status and payment status).
# ============================================================================

import secrets
import uuid
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field


BASE36 = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"


# ============================================================================
# SECTION 1: ENUMS
# ============================================================================

class OrderStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    OUT_FOR_DELIVERY = "OUT_FOR_DELIVERY"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"
    PARTIAL_REFUND = "PARTIAL_REFUND"


class DiscountType(str, Enum):
    PERCENTAGE = "PERCENTAGE"
    FIXED_AMOUNT = "FIXED_AMOUNT"
    FREE_SHIPPING = "FREE_SHIPPING"


class Role(str, Enum):
    CUSTOMER = "CUSTOMER"
    DELIVERY_PARTNER = "DELIVERY_PARTNER"
    ADMIN = "ADMIN"
    SUPER_ADMIN = "SUPER_ADMIN"


ORDER_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED, OrderStatus.REFUNDED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.SHIPPED, OrderStatus.REFUNDED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.OUT_FOR_DELIVERY, OrderStatus.REFUNDED}),
    OrderStatus.OUT_FOR_DELIVERY: frozenset({OrderStatus.DELIVERED, OrderStatus.REFUNDED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.REFUNDED: frozenset(),
}

PAYMENT_TRANSITIONS: Dict[PaymentStatus, FrozenSet[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset({PaymentStatus.PAID, PaymentStatus.FAILED}),
    PaymentStatus.PAID: frozenset({PaymentStatus.REFUNDED, PaymentStatus.PARTIAL_REFUND}),
    PaymentStatus.PARTIAL_REFUND: frozenset({PaymentStatus.REFUNDED, PaymentStatus.PARTIAL_REFUND}),
    PaymentStatus.FAILED: frozenset(),
    PaymentStatus.REFUNDED: frozenset(),
}

CANCELLABLE_STATUSES = frozenset({OrderStatus.PENDING, OrderStatus.CONFIRMED})
SETTLED_PAYMENT_STATUSES = frozenset({PaymentStatus.PAID, PaymentStatus.PARTIAL_REFUND})


# ============================================================================
# SECTION 2: CATALOG & STOCK
# ============================================================================

class StockUnitRef(BaseModel):
    """A bare product or a specific product+variant combination"""
    model_config = ConfigDict(frozen=True)

    product_id: str
    variant_id: Optional[str] = None

    @property
    def key(self) -> str:
        if self.variant_id:
            return f"{self.product_id}:{self.variant_id}"
        return self.product_id


class StockItem(StockUnitRef):
    quantity: int = Field(..., ge=1)

    @property
    def unit(self) -> StockUnitRef:
        return StockUnitRef(product_id=self.product_id, variant_id=self.variant_id)


class ReservedItem(StockItem):
    """A successfully decremented unit with the price frozen at reservation time"""
    price: float
    product_name: str


class Product(BaseModel):
    id: str
    name: str
    price: float = Field(..., ge=0)
    discounted_price: Optional[float] = Field(default=None, ge=0)
    stock_quantity: int = Field(default=0, ge=0)
    low_stock_threshold: int = 5
    sku: Optional[str] = None
    is_active: bool = True

    @property
    def effective_price(self) -> float:
        if self.discounted_price is not None:
            return self.discounted_price
        return self.price


class ProductVariant(BaseModel):
    id: str
    product_id: str
    size: Optional[str] = None
    color: Optional[str] = None
    sku: Optional[str] = None
    price: Optional[float] = Field(default=None, ge=0)
    stock: int = Field(default=0, ge=0)
    is_active: bool = True

    def label(self, product_name: str) -> str:
        detail = self.size or ""
        if self.color:
            detail = f"{detail} - {self.color}" if detail else self.color
        return f"{product_name} ({detail})" if detail else product_name


class StockUnit(BaseModel):
    """Read-only view of one stock counter and the price rule that applies to it"""
    ref: StockUnitRef
    product_name: str
    label: str
    price: float
    available_quantity: int
    low_stock_threshold: int
    is_active: bool


def resolve_unit_price(product: Product, variant: Optional[ProductVariant]) -> float:
    """Variant override price, else the product's discounted price, else its list price"""
    if variant is not None and variant.price is not None:
        return variant.price
    return product.effective_price


# ============================================================================
# SECTION 3: CART SNAPSHOT & PAYMENT INTENT
# ============================================================================

class CartSnapshotItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    product_id: str
    variant_id: Optional[str] = None
    quantity: int = Field(..., ge=1)
    unit_price_at_snapshot: float = Field(..., ge=0)

    @property
    def stock_item(self) -> StockItem:
        return StockItem(product_id=self.product_id, variant_id=self.variant_id, quantity=self.quantity)


class CartSnapshot(BaseModel):
    """Immutable client description of an intended purchase. Never ground truth."""
    model_config = ConfigDict(frozen=True)

    items: List[CartSnapshotItem] = Field(..., min_length=1)
    subtotal: float = Field(..., ge=0)
    discount: float = Field(default=0, ge=0)
    tax: float = Field(default=0, ge=0)
    total: float = Field(..., ge=0)
    coupon_code: Optional[str] = None
    shipping_address_id: str
    payment_method: str = "RAZORPAY"

    @property
    def stock_items(self) -> List[StockItem]:
        return [item.stock_item for item in self.items]


class PaymentIntentRecord(BaseModel):
    """Short-lived binding of a gateway order to a cart snapshot"""
    gateway_order_id: str
    order_id: str  # business order id, pre-allocated and sent to the gateway as notes.orderId
    user_id: str
    snapshot: CartSnapshot
    amount: int  # smallest currency unit
    currency: str
    created_at: datetime = Field(default_factory=datetime.utcnow)
    expires_at: datetime

    @computed_field
    @property
    def is_expired(self) -> bool:
        return datetime.utcnow() >= self.expires_at

    @property
    def remaining_ttl(self) -> int:
        return max(int((self.expires_at - datetime.utcnow()).total_seconds()), 0)


class IntentHandle(BaseModel):
    """Everything the client needs to open the gateway checkout"""
    gateway_order_id: str
    amount: int
    currency: str
    key: str
    name: str
    description: str
    expires_at: datetime
    prefill: Dict[str, str] = Field(default_factory=dict)


class PaymentConfirmation(BaseModel):
    razorpay_order_id: str
    razorpay_payment_id: str
    razorpay_signature: str


# ============================================================================
# SECTION 4: GATEWAY VIEWS
# ============================================================================

class GatewayOrder(BaseModel):
    id: str
    amount: int
    currency: str
    receipt: Optional[str] = None
    status: str = "created"
    notes: Dict[str, str] = Field(default_factory=dict)


class GatewayPayment(BaseModel):
    id: str
    order_id: Optional[str] = None
    status: str
    amount: int = 0
    currency: str = "INR"
    method: Optional[str] = None
    notes: Dict[str, str] = Field(default_factory=dict)

    @property
    def is_captured(self) -> bool:
        return self.status == "captured"


# ============================================================================
# SECTION 5: ORDERS
# ============================================================================

class StatusHistoryEntry(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    status: OrderStatus
    note: Optional[str] = None
    updated_by: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)


class OrderLineItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    order_id: str
    product_id: str
    variant_id: Optional[str] = None
    quantity: int = Field(..., ge=1)
    price_at_purchase: float
    product_name: Optional[str] = None

    @property
    def stock_item(self) -> StockItem:
        return StockItem(product_id=self.product_id, variant_id=self.variant_id, quantity=self.quantity)


class Order(BaseModel):
    """Durable order record"""
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    order_number: str
    user_id: str
    status: OrderStatus = OrderStatus.PENDING
    payment_status: PaymentStatus = PaymentStatus.PENDING
    payment_method: str
    payment_id: Optional[str] = None
    gateway_order_id: Optional[str] = None
    shipping_address_id: str

    subtotal: float
    discount_amount: float = 0
    tax_amount: float = 0
    total_amount: float

    coupon_id: Optional[str] = None
    tracking_number: Optional[str] = None
    estimated_delivery: Optional[datetime] = None

    items: List[OrderLineItem] = Field(default_factory=list)
    status_history: List[StatusHistoryEntry] = Field(default_factory=list)

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @staticmethod
    def generate_order_number() -> str:
        return "ORD-" + "".join(secrets.choice(BASE36) for _ in range(12))

    @staticmethod
    def generate_tracking_number() -> str:
        return "TRK" + "".join(secrets.choice(BASE36) for _ in range(10))

    @computed_field
    @property
    def is_paid(self) -> bool:
        return self.payment_status in SETTLED_PAYMENT_STATUSES

    @property
    def stock_items(self) -> List[StockItem]:
        return [item.stock_item for item in self.items]

    def can_transition_to(self, new_status: OrderStatus) -> bool:
        if new_status not in ORDER_TRANSITIONS[self.status]:
            return False
        # Refunds only make sense once money has been taken
        if new_status == OrderStatus.REFUNDED:
            return self.is_paid
        return True

    def can_transition_payment_to(self, new_status: PaymentStatus) -> bool:
        return new_status in PAYMENT_TRANSITIONS[self.payment_status]


def estimated_delivery_date(working_days: int = 5, start: Optional[datetime] = None) -> datetime:
    """Add working days to start, skipping Saturdays and Sundays"""
    date = start or datetime.utcnow()
    added = 0
    while added < working_days:
        date += timedelta(days=1)
        if date.weekday() < 5:
            added += 1
    return date


# ============================================================================
# SECTION 6: COUPONS
# ============================================================================

class Coupon(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    code: str
    name: str = ""
    type: DiscountType
    value: float = Field(..., ge=0)
    max_discount: Optional[float] = None
    min_order_value: Optional[float] = None
    usage_limit: Optional[int] = None
    usage_count: int = Field(default=0, ge=0)
    per_user_limit: Optional[int] = None
    valid_from: datetime
    valid_until: datetime
    is_active: bool = True

    def is_within_window(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.utcnow()
        return self.valid_from <= now <= self.valid_until

    @property
    def is_exhausted(self) -> bool:
        return self.usage_limit is not None and self.usage_count >= self.usage_limit

    def discount_for(self, subtotal: float) -> float:
        if self.type == DiscountType.PERCENTAGE:
            discount = subtotal * self.value / 100
            if self.max_discount is not None:
                discount = min(discount, self.max_discount)
        elif self.type == DiscountType.FIXED_AMOUNT:
            discount = self.value
        else:
            discount = 0.0
        return round(min(discount, subtotal), 2)


# ============================================================================
# SECTION 7: AUTH & WEBHOOKS
# ============================================================================

class Principal(BaseModel):
    """Authenticated caller, passed explicitly into every core operation"""
    model_config = ConfigDict(frozen=True)

    user_id: str
    role: Role = Role.CUSTOMER

    @property
    def is_admin(self) -> bool:
        return self.role in (Role.ADMIN, Role.SUPER_ADMIN)


class WebhookEvent(BaseModel):
    """Parsed gateway webhook delivery"""
    id: str
    event: str
    created_at: Optional[int] = None
    payload: Dict[str, Any] = Field(default_factory=dict)

    def entity(self, name: str) -> dict:
        wrapper = self.payload.get(name)
        entity = wrapper.get("entity") if isinstance(wrapper, dict) else None
        return entity if isinstance(entity, dict) else {}
