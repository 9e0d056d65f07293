# api/server.py
# ============================================================================
# STOREFRONT CHECKOUT: FASTAPI SERVER
# ============================================================================
# Payments, orders, stock and coupon endpoints over the checkout core, with
# CORS, timing headers, structured errors and health probes.
#
# pip install fastapi uvicorn pydantic structlog
# ============================================================================

import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import uuid4

import structlog
import uvicorn
from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from storefront.api.auth import get_principal, require_admin, require_staff
from storefront.config import Settings
from storefront.database import close_database, init_database
from storefront.errors import StorefrontError
from storefront.logging_config import configure_logging
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
    OrderStatus,
    PaymentConfirmation,
    PaymentStatus,
    Principal,
    StockItem,
)
from storefront.services.cache import ICache, RedisCache
from storefront.services.gateway import IPaymentGateway, RazorpayGateway
from storefront.storage.base import IStore
from storefront.storage.memory import InMemoryStore
from storefront.storage.postgres import PostgresStore

logger = structlog.get_logger().bind(component="server")

VERSION = "1.0.0"


# =============================================================================
# REQUEST MODELS
# =============================================================================

class CartItemRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    product_id: str = Field(..., alias="productId")
    variant_id: Optional[str] = Field(default=None, alias="variantId")
    quantity: int = Field(..., ge=1, le=100)
    price: float = Field(..., ge=0)


class CartDataRequest(BaseModel):
    """Client cart snapshot"""
    model_config = ConfigDict(populate_by_name=True)

    items: List[CartItemRequest] = Field(..., min_length=1)
    subtotal: float = Field(..., ge=0)
    discount: float = Field(default=0, ge=0)
    tax: float = Field(default=0, ge=0)
    total: float = Field(..., ge=0)
    coupon_code: Optional[str] = Field(default=None, alias="couponCode")
    shipping_address_id: str = Field(..., alias="shippingAddressId")
    payment_method: str = Field(default="RAZORPAY", alias="paymentMethod")

    def to_snapshot(self) -> CartSnapshot:
        return CartSnapshot(
            items=[
                CartSnapshotItem(
                    product_id=i.product_id,
                    variant_id=i.variant_id,
                    quantity=i.quantity,
                    unit_price_at_snapshot=i.price,
                )
                for i in self.items
            ],
            subtotal=self.subtotal,
            discount=self.discount,
            tax=self.tax,
            total=self.total,
            coupon_code=self.coupon_code.upper() if self.coupon_code else None,
            shipping_address_id=self.shipping_address_id,
            payment_method=self.payment_method,
        )


class CreateCartOrderRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    cart_data: CartDataRequest = Field(..., alias="cartData")
    user_email: Optional[str] = Field(default=None, alias="userEmail")
    user_phone: Optional[str] = Field(default=None, alias="userPhone")


class VerifyAndCreateRequest(BaseModel):
    razorpay_order_id: str = Field(..., min_length=1)
    razorpay_payment_id: str = Field(..., min_length=1)
    razorpay_signature: str = Field(..., min_length=1)


class CodOrderRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    cart_data: CartDataRequest = Field(..., alias="cartData")


class CancelOrderRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class UpdateOrderStatusRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    status: OrderStatus
    note: Optional[str] = Field(default=None, max_length=500)
    tracking_number: Optional[str] = Field(default=None, alias="trackingNumber")
    estimated_delivery: Optional[datetime] = Field(default=None, alias="estimatedDelivery")


class UpdatePaymentStatusRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    payment_status: PaymentStatus = Field(..., alias="paymentStatus")
    note: Optional[str] = Field(default=None, max_length=500)


class StockCheckItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    product_id: str = Field(..., alias="productId")
    variant_id: Optional[str] = Field(default=None, alias="variantId")
    quantity: int = Field(..., ge=1)


class ValidateCartRequest(BaseModel):
    items: List[StockCheckItem] = Field(..., min_length=1)


def success(data: Any = None, message: Optional[str] = None) -> Dict[str, Any]:
    body: Dict[str, Any] = {"status": "success"}
    if message:
        body["message"] = message
    if data is not None:
        body["data"] = data
    return body


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _split_ids(raw: Optional[str]) -> List[str]:
    return [part for part in (raw or "").split(",") if part]


# =============================================================================
# APP FACTORY
# =============================================================================

def create_app(
    settings: Optional[Settings] = None,
    store: Optional[IStore] = None,
    cache: Optional[ICache] = None,
    gateway: Optional[IPaymentGateway] = None,
) -> FastAPI:
    """
    Build the application. Collaborators not passed in are created from
    settings and connected in the lifespan hook.
    """
    settings = settings or Settings()
    configure_logging(settings.server)

    owns_database = store is None and settings.database.STORE_BACKEND == "postgres"
    if store is None:
        store = PostgresStore() if owns_database else InMemoryStore()
    owned_cache = RedisCache(settings.cache.REDIS_URL) if cache is None else None
    cache = cache or owned_cache
    gateway = gateway or RazorpayGateway(settings.gateway)

    pricing = PricingSnapshotValidator(settings.checkout)
    coupons = CouponService(store)
    ledger = StockLedger(store, settings.checkout)
    signatures = SignatureVerifier(settings.gateway)
    intents = PaymentIntentBroker(store, cache, gateway, settings, pricing=pricing, coupons=coupons)
    committer = OrderCommitTransaction(
        store, cache, gateway, settings,
        intents=intents, signatures=signatures, ledger=ledger, pricing=pricing, coupons=coupons,
    )
    orders = OrderService(store, cache, settings, committer)
    reconciler = WebhookReconciler(store, cache, settings, committer, signatures=signatures)

    started_at = datetime.utcnow()

    # =========================================================================
    # LIFESPAN MANAGEMENT
    # =========================================================================

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown logic"""
        logger.info("server_starting", version=VERSION, env=settings.server.ENV)

        if owns_database:
            await init_database(settings.database)
        if owned_cache is not None:
            await owned_cache.initialize()

        yield

        # Cleanup
        logger.info("server_shutting_down")
        if owned_cache is not None:
            await owned_cache.close()
        if owns_database:
            await close_database()

    app = FastAPI(
        title="Storefront Checkout",
        description="Order creation, payment reconciliation and stock reservation",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.settings = settings

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.server.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # =========================================================================
    # MIDDLEWARE
    # =========================================================================

    @app.middleware("http")
    async def add_timing_header(request: Request, call_next):
        """Add response timing and request ID headers"""
        request_id = str(uuid4())[:8]
        start = time.perf_counter()

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)

        response = await call_next(request)

        duration = (time.perf_counter() - start) * 1000
        response.headers["X-Response-Time-Ms"] = f"{duration:.2f}"
        response.headers["X-Request-ID"] = request_id

        return response

    # =========================================================================
    # ERROR HANDLERS
    # =========================================================================

    @app.exception_handler(StorefrontError)
    async def storefront_error_handler(request: Request, exc: StorefrontError):
        if exc.status_code >= 500:
            logger.error("request_failed", path=request.url.path, error_type=type(exc).__name__)
        return JSONResponse(
            status_code=exc.status_code,
            content={"status": "error", "message": exc.message},
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        errors = [
            {"field": ".".join(str(p) for p in err["loc"] if p != "body"), "message": err["msg"]}
            for err in exc.errors()
        ]
        return JSONResponse(
            status_code=400,
            content={"status": "error", "message": "Validation failed", "errors": errors},
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.error("unhandled_error", path=request.url.path, exc_info=exc)
        return JSONResponse(
            status_code=500,
            content={"status": "error", "message": "Internal server error"},
        )

    # =========================================================================
    # HEALTH ENDPOINTS
    # =========================================================================

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        store_ok = await store.ping()
        cache_ok = await cache.ping()
        return {
            "status": "healthy" if store_ok else "degraded",
            "version": VERSION,
            "uptime_seconds": (datetime.utcnow() - started_at).total_seconds(),
            "store_connected": store_ok,
            "cache_connected": cache_ok,
        }

    @app.get("/ready")
    async def readiness_check():
        """Kubernetes readiness probe"""
        return {"ready": await store.ping()}

    @app.get("/live")
    async def liveness_check():
        """Kubernetes liveness probe"""
        return {"live": True}

    # =========================================================================
    # PAYMENT ENDPOINTS
    # =========================================================================

    @app.post("/payments/create-cart-order")
    async def create_cart_order(
        body: CreateCartOrderRequest,
        principal: Principal = Depends(get_principal),
    ):
        prefill = {}
        if body.user_email:
            prefill["email"] = body.user_email
        if body.user_phone:
            prefill["contact"] = body.user_phone

        handle = await intents.create_intent(principal, body.cart_data.to_snapshot(), prefill)
        return success({
            "orderId": handle.gateway_order_id,
            "amount": handle.amount,
            "currency": handle.currency,
            "key": handle.key,
            "name": handle.name,
            "description": handle.description,
            "expiresAt": handle.expires_at.isoformat(),
            "prefill": handle.prefill,
        })

    @app.post("/payments/verify-and-create")
    async def verify_and_create(
        body: VerifyAndCreateRequest,
        principal: Principal = Depends(get_principal),
    ):
        confirmation = PaymentConfirmation(**body.model_dump())
        order = await committer.commit(principal, confirmation)
        return success(
            {
                "verified": True,
                "paymentId": order.payment_id,
                "orderId": order.id,
                "orderNumber": order.order_number,
            },
            message="Payment verified and order created successfully",
        )

    @app.post("/payments/webhook")
    async def payment_webhook(request: Request):
        """
        Gateway webhook. Signature-gated; always 200 once the signature is valid.
        """
        body = await request.body()
        result = await reconciler.handle(
            body,
            request.headers.get("x-razorpay-signature"),
            request.headers.get("x-razorpay-event-id"),
        )
        return success(result)

    # =========================================================================
    # ORDER ENDPOINTS
    # =========================================================================

    @app.post("/orders/cod")
    async def create_cod_order(
        body: CodOrderRequest,
        principal: Principal = Depends(get_principal),
    ):
        order = await committer.commit_cash_on_delivery(principal, body.cart_data.to_snapshot())
        return success(order.model_dump(mode="json"), message="Order placed successfully")

    @app.get("/orders/admin/list")
    async def list_all_orders(
        status: Optional[OrderStatus] = None,
        search: Optional[str] = None,
        page: int = Query(default=1, ge=1),
        limit: int = Query(default=10, ge=1, le=100),
        principal: Principal = Depends(require_admin),
    ):
        return success(await orders.list_all_orders(status, search, page, limit))

    @app.put("/orders/admin/{order_id}/status")
    async def update_order_status(
        order_id: str,
        body: UpdateOrderStatusRequest,
        principal: Principal = Depends(require_staff),
    ):
        order = await orders.update_status(
            principal,
            order_id,
            body.status,
            note=body.note,
            tracking_number=body.tracking_number,
            estimated_delivery=_naive_utc(body.estimated_delivery),
        )
        return success(order.model_dump(mode="json"), message="Order status updated successfully")

    @app.put("/orders/{order_id}/payment-status")
    async def update_payment_status(
        order_id: str,
        body: UpdatePaymentStatusRequest,
        principal: Principal = Depends(require_admin),
    ):
        order = await orders.update_payment_status(principal, order_id, body.payment_status, body.note)
        return success(
            {
                "orderId": order.id,
                "paymentStatus": order.payment_status.value,
                "lastUpdate": order.status_history[-1].model_dump(mode="json"),
            },
            message="Payment status updated successfully",
        )

    @app.get("/orders")
    async def list_orders(
        status: Optional[OrderStatus] = None,
        page: int = Query(default=1, ge=1),
        limit: int = Query(default=10, ge=1, le=100),
        principal: Principal = Depends(get_principal),
    ):
        return success(await orders.list_orders(principal, status, page, limit))

    @app.get("/orders/{order_id}")
    async def get_order(order_id: str, principal: Principal = Depends(get_principal)):
        return success(await orders.get_order(principal, order_id))

    @app.get("/orders/{order_id}/track")
    async def track_order(order_id: str, principal: Principal = Depends(get_principal)):
        return success(await orders.track_order(principal, order_id))

    @app.post("/orders/{order_id}/cancel")
    async def cancel_order(
        order_id: str,
        body: Optional[CancelOrderRequest] = None,
        principal: Principal = Depends(get_principal),
    ):
        order = await committer.cancel(principal, order_id, body.reason if body else None)
        return success(
            {"orderId": order.id, "status": order.status.value},
            message="Order cancelled successfully",
        )

    # =========================================================================
    # STOCK & COUPON ENDPOINTS
    # =========================================================================

    @app.post("/stock/validate-cart")
    async def validate_cart_stock(
        body: ValidateCartRequest,
        principal: Principal = Depends(get_principal),
    ):
        result = await ledger.check_availability([
            StockItem(product_id=i.product_id, variant_id=i.variant_id, quantity=i.quantity)
            for i in body.items
        ])
        if not result.valid:
            return JSONResponse(
                status_code=400,
                content={"status": "error", "message": result.message, "data": result.model_dump()},
            )
        return success(result.model_dump(), message="All items are available")

    @app.get("/stock/info")
    async def stock_info(
        product_ids: Optional[str] = Query(default=None, alias="productIds"),
        variant_ids: Optional[str] = Query(default=None, alias="variantIds"),
    ):
        return success(await ledger.stock_info(_split_ids(product_ids), _split_ids(variant_ids)))

    @app.get("/stock/low")
    async def low_stock(principal: Principal = Depends(require_admin)):
        return success(await ledger.low_stock())

    @app.get("/coupons/validate/{code}")
    async def validate_coupon(
        code: str,
        subtotal: float = Query(..., ge=0),
        principal: Principal = Depends(get_principal),
    ):
        return success(await coupons.quote(code, principal, subtotal))

    return app


# =============================================================================
# RUN SERVER
# =============================================================================

def main():
    settings = Settings()
    uvicorn.run(
        "storefront.api.server:create_app",
        factory=True,
        host=settings.server.HOST,
        port=settings.server.PORT,
        reload=settings.server.DEBUG,
        log_level=settings.server.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    main()
