"""
Payment Intent Broker
=====================
Mints a gateway order for a validated cart snapshot and parks the binding
(gateway order id -> user, snapshot) in the cache under a TTL. No durable
order exists until the payment is confirmed.

Consumption is an atomic read-and-delete, so of two concurrent confirmations
for the same intent only one ever sees the record. A consumer that fails
before committing puts the record back for the remaining TTL.
"""

import uuid
from datetime import datetime, timedelta
from typing import Dict, Optional

import structlog

from storefront.config import Settings
from storefront.errors import (
    IntentExpiredError,
    IntentNotFoundError,
    IntentOwnershipError,
    TransientInfraError,
    ValidationError,
)
from storefront.pipeline.coupons import CouponService
from storefront.pipeline.pricing import PricingSnapshotValidator
from storefront.schemas.domain import CartSnapshot, IntentHandle, PaymentIntentRecord, Principal
from storefront.services.cache import ICache
from storefront.services.gateway import IPaymentGateway
from storefront.storage.base import IStore

INTENT_KEY_PREFIX = "payment_intent:"


def intent_key(gateway_order_id: str) -> str:
    return f"{INTENT_KEY_PREFIX}{gateway_order_id}"


class PaymentIntentBroker:

    def __init__(
        self,
        store: IStore,
        cache: ICache,
        gateway: IPaymentGateway,
        settings: Settings,
        pricing: Optional[PricingSnapshotValidator] = None,
        coupons: Optional[CouponService] = None,
    ):
        self.store = store
        self.cache = cache
        self.gateway = gateway
        self.settings = settings
        self.pricing = pricing or PricingSnapshotValidator(settings.checkout)
        self.coupons = coupons or CouponService(store)
        self._base_logger = structlog.get_logger()

    def _get_logger(self, correlation_id: Optional[str] = None):
        """Get logger bound with correlation context"""
        return self._base_logger.bind(
            component="intent_broker",
            correlation_id=correlation_id or str(uuid.uuid4()),
        )

    # =========================================================================
    # CREATE
    # =========================================================================

    async def create_intent(
        self,
        principal: Principal,
        snapshot: CartSnapshot,
        prefill: Optional[Dict[str, str]] = None,
    ) -> IntentHandle:
        order_id = uuid.uuid4().hex
        log = self._get_logger(order_id)

        # Fail fast on a stale or tampered cart before touching the gateway
        async with self.store.transaction() as uow:
            coupon = None
            if snapshot.coupon_code:
                coupon = await self.coupons.validate_coupon(
                    uow, snapshot.coupon_code, principal.user_id, snapshot.subtotal
                )
            quote = await self.pricing.validate(uow, snapshot, coupon)

        amount = round(quote.total * 100)
        if amount <= 0:
            raise ValidationError("Order total must be greater than zero")

        gateway_order = await self.gateway.create_order(
            amount=amount,
            currency=self.settings.gateway.CURRENCY,
            receipt=f"rcpt_{order_id}",
            notes={
                "orderId": order_id,
                "userId": principal.user_id,
                "itemCount": str(len(snapshot.items)),
            },
        )

        ttl = self.settings.cache.PAYMENT_INTENT_TTL
        now = datetime.utcnow()
        record = PaymentIntentRecord(
            gateway_order_id=gateway_order.id,
            order_id=order_id,
            user_id=principal.user_id,
            snapshot=snapshot,
            amount=gateway_order.amount,
            currency=gateway_order.currency,
            created_at=now,
            expires_at=now + timedelta(seconds=ttl),
        )

        # The cache is the only home of the intent; without it checkout cannot finish
        if not await self.cache.set(intent_key(gateway_order.id), record.model_dump(mode="json"), ttl):
            log.error("intent_store_failed", gateway_order_id=gateway_order.id)
            raise TransientInfraError("Unable to start checkout. Please try again.")

        log.info(
            "intent_created",
            gateway_order_id=gateway_order.id,
            amount=record.amount,
            items=len(snapshot.items),
        )

        return IntentHandle(
            gateway_order_id=gateway_order.id,
            amount=record.amount,
            currency=record.currency,
            key=self.settings.gateway.KEY_ID,
            name=self.settings.gateway.BUSINESS_NAME,
            description=f"Order for {len(snapshot.items)} item(s)",
            expires_at=record.expires_at,
            prefill=prefill or {},
        )

    # =========================================================================
    # CONSUME
    # =========================================================================

    async def consume_intent(self, gateway_order_id: str, expected_user_id: str) -> PaymentIntentRecord:
        """
        Claim the intent. Only one caller can succeed per intent.

        Raises:
            IntentNotFoundError: never existed, already consumed, or evicted
            IntentOwnershipError: bound to another user (record left in place)
            IntentExpiredError: past its expiry
        """
        log = self._get_logger(gateway_order_id)

        raw = await self.cache.pop(intent_key(gateway_order_id))
        if raw is None:
            log.info("intent_not_found", gateway_order_id=gateway_order_id)
            raise IntentNotFoundError()

        record = PaymentIntentRecord.model_validate(raw)

        if record.user_id != expected_user_id:
            log.warning("intent_user_mismatch", gateway_order_id=gateway_order_id)
            await self.release_intent(record)
            raise IntentOwnershipError()

        if record.is_expired:
            log.info("intent_expired", gateway_order_id=gateway_order_id)
            raise IntentExpiredError()

        log.info("intent_consumed", gateway_order_id=gateway_order_id)
        return record

    async def release_intent(self, record: PaymentIntentRecord) -> None:
        """Put a claimed record back so the client can retry"""
        ttl = record.remaining_ttl
        if ttl <= 0:
            return
        if not await self.cache.set(intent_key(record.gateway_order_id), record.model_dump(mode="json"), ttl):
            self._get_logger(record.gateway_order_id).warning(
                "intent_release_failed", gateway_order_id=record.gateway_order_id
            )
