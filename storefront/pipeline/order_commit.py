"""
Order Commit Transaction
========================
Turns a confirmed payment into a durable order.

Flow for a gateway payment:
1. Verify the confirmation signature
2. Confirm with the gateway that the payment is captured for this order
3. Consume the payment intent (atomic claim, one winner per intent)
4. In ONE database transaction: re-validate pricing, reserve stock, claim the
   coupon, insert the order with its first history entry, clear the cart
5. Commit, then invalidate cached order reads

Stock reservation and order insert share a transaction, so any failure after
reservation leaves stock untouched. The synchronous path is the only place
orders are created; webhooks reconcile existing orders only.

Cash-on-delivery orders skip steps 1-3 and are stored CONFIRMED with payment
PENDING.

pip install pydantic structlog
"""

import uuid
from datetime import datetime
from typing import List, Optional

import structlog

from storefront.config import Settings
from storefront.errors import (
    DuplicateOrderError,
    DuplicateOrderNumberError,
    FatalIntegrityError,
    IntentNotFoundError,
    OrderNotCancellableError,
    OrderNotFoundError,
    PaymentNotCapturedError,
)
from storefront.pipeline.coupons import CouponService
from storefront.pipeline.intents import PaymentIntentBroker
from storefront.pipeline.order_cache import invalidate_order_cache
from storefront.pipeline.pricing import PricingSnapshotValidator
from storefront.pipeline.signatures import SignatureVerifier
from storefront.pipeline.stock_ledger import StockLedger
from storefront.schemas.domain import (
    CANCELLABLE_STATUSES,
    CartSnapshot,
    Coupon,
    Order,
    OrderLineItem,
    OrderStatus,
    PaymentConfirmation,
    PaymentStatus,
    Principal,
    ReservedItem,
    StatusHistoryEntry,
    estimated_delivery_date,
)
from storefront.services.cache import ICache
from storefront.services.gateway import IPaymentGateway
from storefront.storage.base import IStore, IUnitOfWork


class OrderCommitTransaction:
    """
    Orchestrates order creation and cancellation.

    Example:
        committer = OrderCommitTransaction(store, cache, gateway, settings)
        order = await committer.commit(principal, confirmation)
    """

    def __init__(
        self,
        store: IStore,
        cache: ICache,
        gateway: IPaymentGateway,
        settings: Settings,
        intents: Optional[PaymentIntentBroker] = None,
        signatures: Optional[SignatureVerifier] = None,
        ledger: Optional[StockLedger] = None,
        pricing: Optional[PricingSnapshotValidator] = None,
        coupons: Optional[CouponService] = None,
    ):
        self.store = store
        self.cache = cache
        self.gateway = gateway
        self.settings = settings
        self.pricing = pricing or PricingSnapshotValidator(settings.checkout)
        self.coupons = coupons or CouponService(store)
        self.ledger = ledger or StockLedger(store, settings.checkout)
        self.signatures = signatures or SignatureVerifier(settings.gateway)
        self.intents = intents or PaymentIntentBroker(
            store, cache, gateway, settings, pricing=self.pricing, coupons=self.coupons
        )
        self._base_logger = structlog.get_logger()

    def _get_logger(self, correlation_id: Optional[str] = None):
        """Get logger bound with correlation context"""
        return self._base_logger.bind(
            component="order_commit",
            correlation_id=correlation_id or str(uuid.uuid4()),
        )

    # =========================================================================
    # GATEWAY PAYMENT
    # =========================================================================

    async def commit(self, principal: Principal, confirmation: PaymentConfirmation) -> Order:
        gateway_order_id = confirmation.razorpay_order_id
        payment_id = confirmation.razorpay_payment_id
        log = self._get_logger(gateway_order_id)

        self.signatures.verify_payment(gateway_order_id, payment_id, confirmation.razorpay_signature)

        payment = await self.gateway.fetch_payment(payment_id)
        if not payment.is_captured or payment.order_id != gateway_order_id:
            log.warning("payment_not_captured", payment_id=payment_id, status=payment.status)
            raise PaymentNotCapturedError()

        try:
            record = await self.intents.consume_intent(gateway_order_id, principal.user_id)
        except IntentNotFoundError:
            # Double submit or retry after success: hand back the order that exists
            existing = await self._existing_order(gateway_order_id, payment_id, principal.user_id)
            if existing is not None:
                log.info("commit_replayed", order_id=existing.id)
                return existing
            raise

        try:
            async with self.store.transaction() as uow:
                order = await self._create_order(
                    uow,
                    order_id=record.order_id,
                    user_id=record.user_id,
                    snapshot=record.snapshot,
                    status=OrderStatus.CONFIRMED,
                    payment_status=PaymentStatus.PAID,
                    payment_method=record.snapshot.payment_method,
                    payment_id=payment_id,
                    gateway_order_id=gateway_order_id,
                    note="Order confirmed after successful payment",
                )
        except DuplicateOrderError:
            existing = await self._existing_order(gateway_order_id, payment_id, principal.user_id)
            if existing is None:
                raise FatalIntegrityError()
            log.info("commit_replayed", order_id=existing.id)
            return existing
        except Exception as e:
            # Money is captured but no order exists; keep the intent for a retry
            await self.intents.release_intent(record)
            log.critical(
                "payment_captured_without_order",
                gateway_order_id=gateway_order_id,
                payment_id=payment_id,
                order_id=record.order_id,
                user_id=record.user_id,
                amount=record.amount,
                currency=record.currency,
                reason=type(e).__name__,
            )
            raise

        await invalidate_order_cache(self.cache, order)
        log.info(
            "order_committed",
            order_id=order.id,
            order_number=order.order_number,
            total=order.total_amount,
        )
        return order

    async def _existing_order(self, gateway_order_id: str, payment_id: str, user_id: str) -> Optional[Order]:
        async with self.store.transaction() as uow:
            order = await uow.find_order(gateway_order_id=gateway_order_id)
            if order is None:
                order = await uow.find_order(payment_id=payment_id)
        if order is None or order.user_id != user_id:
            return None
        return order

    # =========================================================================
    # CASH ON DELIVERY
    # =========================================================================

    async def commit_cash_on_delivery(self, principal: Principal, snapshot: CartSnapshot) -> Order:
        order_id = uuid.uuid4().hex
        log = self._get_logger(order_id)

        async with self.store.transaction() as uow:
            order = await self._create_order(
                uow,
                order_id=order_id,
                user_id=principal.user_id,
                snapshot=snapshot,
                status=OrderStatus.CONFIRMED,
                payment_status=PaymentStatus.PENDING,
                payment_method="COD",
                payment_id=None,
                gateway_order_id=None,
                note="Cash on delivery order confirmed",
            )

        await invalidate_order_cache(self.cache, order)
        log.info("cod_order_committed", order_id=order.id, order_number=order.order_number)
        return order

    # =========================================================================
    # SHARED CREATE PATH
    # =========================================================================

    async def _create_order(
        self,
        uow: IUnitOfWork,
        *,
        order_id: str,
        user_id: str,
        snapshot: CartSnapshot,
        status: OrderStatus,
        payment_status: PaymentStatus,
        payment_method: str,
        payment_id: Optional[str],
        gateway_order_id: Optional[str],
        note: str,
    ) -> Order:
        coupon: Optional[Coupon] = None
        if snapshot.coupon_code:
            coupon = await self.coupons.validate_coupon(
                uow, snapshot.coupon_code, user_id, snapshot.subtotal, lock=True
            )

        quote = await self.pricing.validate(uow, snapshot, coupon)
        reserved = await self.ledger.reserve(snapshot.stock_items, uow)
        if coupon is not None:
            await self.coupons.claim_usage(uow, coupon)

        now = datetime.utcnow()
        order = Order(
            id=order_id,
            order_number=Order.generate_order_number(),
            user_id=user_id,
            status=status,
            payment_status=payment_status,
            payment_method=payment_method,
            payment_id=payment_id,
            gateway_order_id=gateway_order_id,
            shipping_address_id=snapshot.shipping_address_id,
            subtotal=quote.subtotal,
            discount_amount=quote.discount,
            tax_amount=quote.tax,
            total_amount=quote.total,
            coupon_id=coupon.id if coupon else None,
            estimated_delivery=estimated_delivery_date(self.settings.checkout.DELIVERY_WORKING_DAYS, now),
            items=self._line_items(order_id, reserved),
            status_history=[StatusHistoryEntry(status=status, note=note, created_at=now)],
            created_at=now,
            updated_at=now,
        )
        order = await self._insert_with_retry(uow, order)
        await uow.clear_cart(user_id)
        return order

    @staticmethod
    def _line_items(order_id: str, reserved: List[ReservedItem]) -> List[OrderLineItem]:
        # Prices come from the reservation, never from the snapshot
        return [
            OrderLineItem(
                order_id=order_id,
                product_id=item.product_id,
                variant_id=item.variant_id,
                quantity=item.quantity,
                price_at_purchase=item.price,
                product_name=item.product_name,
            )
            for item in reserved
        ]

    async def _insert_with_retry(self, uow: IUnitOfWork, order: Order) -> Order:
        attempts = self.settings.checkout.ORDER_NUMBER_MAX_ATTEMPTS
        for attempt in range(1, attempts + 1):
            candidate = order.model_copy(update={
                "order_number": Order.generate_order_number(),
                "tracking_number": Order.generate_tracking_number(),
            })
            try:
                async with uow.savepoint():
                    await uow.insert_order(candidate)
                return candidate
            except DuplicateOrderNumberError:
                self._get_logger(order.id).warning("order_number_collision", attempt=attempt)

        self._get_logger(order.id).error("order_number_exhausted", attempts=attempts)
        raise FatalIntegrityError()

    # =========================================================================
    # CANCELLATION
    # =========================================================================

    async def cancel(self, principal: Principal, order_id: str, note: Optional[str] = None) -> Order:
        """Cancel a PENDING/CONFIRMED order, restoring stock and coupon usage in one transaction"""
        log = self._get_logger(order_id)
        owner = None if principal.is_admin else principal.user_id

        async with self.store.transaction() as uow:
            order = await uow.get_order(order_id, owner)
            if order is None:
                raise OrderNotFoundError()
            cancelled = await self.cancel_within(
                uow,
                order,
                note=note or ("Order cancelled by admin" if principal.is_admin else "Order cancelled by customer"),
                updated_by=principal.user_id,
            )
            if not cancelled:
                raise OrderNotCancellableError()
            order = await uow.get_order(order_id)

        await invalidate_order_cache(self.cache, order)
        log.info("order_cancelled", order_id=order_id, by=principal.user_id)
        return order

    async def cancel_within(
        self,
        uow: IUnitOfWork,
        order: Order,
        note: str,
        updated_by: Optional[str] = None,
        payment_status: Optional[PaymentStatus] = None,
    ) -> bool:
        """
        Cancel inside the caller's transaction. Returns False when the order
        is no longer in a cancellable state (another caller won the race).
        """
        won = await uow.update_order(
            order.id,
            expected_statuses=CANCELLABLE_STATUSES,
            status=OrderStatus.CANCELLED,
            payment_status=payment_status,
        )
        if not won:
            return False

        await self.ledger.restore(order.stock_items, uow)
        if order.coupon_id:
            await self.coupons.release_usage(uow, order.coupon_id)
        await uow.append_status_history(
            order.id,
            StatusHistoryEntry(status=OrderStatus.CANCELLED, note=note, updated_by=updated_by),
        )
        return True
