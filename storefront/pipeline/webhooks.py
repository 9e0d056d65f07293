"""
Webhook Reconciler
==================
Applies gateway-pushed payment events to orders that already exist.

- Signature is checked against the raw body before anything is parsed
- Each delivery is recorded by event id in the same transaction as the state
  change it causes; a redelivery is a no-op
- Every update is conditional on the current payment/order status, so the
  outcome converges no matter how deliveries race with the synchronous path
- Events for unknown orders are logged and dropped; orders are never created here
- Handler failures are logged and reported as processed so the gateway does
  not retry into duplicate effects

pip install structlog
"""

import hashlib
import json
import uuid
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

import structlog
from pydantic import ValidationError

from storefront.config import Settings
from storefront.pipeline.order_cache import invalidate_order_cache
from storefront.pipeline.order_commit import OrderCommitTransaction
from storefront.pipeline.signatures import SignatureVerifier
from storefront.schemas.domain import (
    SETTLED_PAYMENT_STATUSES,
    Order,
    OrderStatus,
    PaymentStatus,
    StatusHistoryEntry,
    WebhookEvent,
)
from storefront.services.cache import ICache
from storefront.storage.base import IStore, IUnitOfWork

HandlerResult = Tuple[str, Optional[Order]]
WebhookHandler = Callable[[WebhookEvent, IUnitOfWork, Any], Awaitable[HandlerResult]]


# =============================================================================
# WEBHOOK ROUTER
# =============================================================================

class WebhookRouter:
    """
    Maps gateway event names to handlers.
    Separates routing logic from business logic.
    """

    def __init__(self):
        self._handlers: Dict[str, WebhookHandler] = {}
        self._logger = structlog.get_logger().bind(component="webhook_router")

    def register(self, event_type: str):
        """Decorator to register handler for event type"""
        def decorator(handler: WebhookHandler):
            self._handlers[event_type] = handler
            self._logger.debug("handler_registered", event_type=event_type)
            return handler
        return decorator

    def handles(self, event_type: str) -> bool:
        return event_type in self._handlers

    async def route(self, event: WebhookEvent, uow: IUnitOfWork, log) -> HandlerResult:
        """Route event to appropriate handler"""
        handler = self._handlers.get(event.event)
        if not handler:
            self._logger.warning("no_handler", event_type=event.event)
            return "ignored", None
        return await handler(event, uow, log)


# =============================================================================
# RECONCILER
# =============================================================================

class WebhookReconciler:

    def __init__(
        self,
        store: IStore,
        cache: ICache,
        settings: Settings,
        committer: OrderCommitTransaction,
        signatures: Optional[SignatureVerifier] = None,
    ):
        self.store = store
        self.cache = cache
        self.settings = settings
        self.committer = committer
        self.signatures = signatures or SignatureVerifier(settings.gateway)

        self.router = WebhookRouter()
        self._register_handlers()

        self._base_logger = structlog.get_logger()

    def _get_logger(self, correlation_id: Optional[str] = None):
        """Get logger bound with correlation context"""
        return self._base_logger.bind(
            component="webhook_reconciler",
            correlation_id=correlation_id or str(uuid.uuid4()),
        )

    @staticmethod
    def event_id_for(body: bytes, header_event_id: Optional[str], payload: Dict[str, Any]) -> str:
        return header_event_id or payload.get("id") or hashlib.sha256(body).hexdigest()

    def _parse_event(self, body: bytes, header_event_id: Optional[str]) -> Optional[WebhookEvent]:
        """Decode a signed body; None when it is not a well-formed event object"""
        try:
            payload = json.loads(body)
        except ValueError:
            return None
        if not isinstance(payload, dict):
            return None
        try:
            return WebhookEvent(
                id=self.event_id_for(body, header_event_id, payload),
                event=payload.get("event", "unknown"),
                created_at=payload.get("created_at"),
                payload=payload.get("payload") or {},
            )
        except ValidationError:
            return None

    # =========================================================================
    # ENTRY POINT
    # =========================================================================

    async def handle(
        self,
        body: bytes,
        signature: Optional[str],
        header_event_id: Optional[str] = None,
    ) -> Dict[str, str]:
        """
        Verify and apply one delivery.

        Raises:
            SignatureVerificationError: the body is not signed with the webhook secret

        Any other failure is logged and reported in the returned outcome.
        """
        self.signatures.verify_webhook(body, signature)

        event = self._parse_event(body, header_event_id)
        if event is None:
            self._get_logger().warning("webhook_malformed_body", body_size=len(body))
            return {"status": "received", "outcome": "malformed"}

        log = self._get_logger(event.id)
        log.info("webhook_received", event_type=event.event)

        if not self.router.handles(event.event):
            log.info("webhook_ignored", event_type=event.event)
            return {"status": "received", "event_id": event.id, "outcome": "ignored"}

        try:
            outcome, order = await self._apply(event, log)
        except Exception:
            log.error("webhook_handler_failed", event_type=event.event, exc_info=True)
            return {"status": "received", "event_id": event.id, "outcome": "failed"}

        if order is not None:
            await invalidate_order_cache(self.cache, order)
        log.info("webhook_processed", event_type=event.event, outcome=outcome)
        return {"status": "received", "event_id": event.id, "outcome": outcome}

    async def _apply(self, event: WebhookEvent, log) -> HandlerResult:
        async with self.store.transaction() as uow:
            if not await uow.record_webhook_event(event.id, event.event):
                log.info("webhook_duplicate", event_type=event.event)
                return "duplicate", None
            outcome, order = await self.router.route(event, uow, log)
            if order is not None:
                order = await uow.get_order(order.id)
            return outcome, order

    # =========================================================================
    # HANDLERS (Registered with Router)
    # =========================================================================

    def _register_handlers(self):
        """Register all webhook handlers"""

        @self.router.register("payment.captured")
        async def handle_payment_captured(event: WebhookEvent, uow: IUnitOfWork, log):
            return await self._on_payment_captured(event, uow, log)

        @self.router.register("payment.failed")
        async def handle_payment_failed(event: WebhookEvent, uow: IUnitOfWork, log):
            return await self._on_payment_failed(event, uow, log)

        @self.router.register("refund.processed")
        async def handle_refund(event: WebhookEvent, uow: IUnitOfWork, log):
            return await self._on_refund_processed(event, uow, log)

    @staticmethod
    async def _find_order(
        uow: IUnitOfWork,
        entity: Dict[str, Any],
        payment_id: Optional[str],
        gateway_order_id: Optional[str] = None,
    ) -> Optional[Order]:
        # Razorpay sends [] rather than {} for empty notes
        notes = entity.get("notes")
        order_id = notes.get("orderId") if isinstance(notes, dict) else None

        order = await uow.get_order(order_id) if order_id else None
        if order is None and (payment_id or gateway_order_id):
            order = await uow.find_order(payment_id=payment_id, gateway_order_id=gateway_order_id)
        return order

    async def _on_payment_captured(self, event: WebhookEvent, uow: IUnitOfWork, log) -> HandlerResult:
        payment = event.entity("payment")
        order = await self._find_order(uow, payment, payment.get("id"), payment.get("order_id"))
        if order is None:
            log.warning("webhook_dropped", reason="order_not_found", payment_id=payment.get("id"))
            return "dropped", None

        paid = await uow.update_order(
            order.id,
            expected_payment_statuses=[PaymentStatus.PENDING],
            payment_status=PaymentStatus.PAID,
            payment_id=payment.get("id"),
        )
        if not paid:
            log.info("webhook_noop", order_id=order.id, payment_status=order.payment_status.value)
            return "noop", None

        status = order.status
        if order.status == OrderStatus.PENDING:
            if await uow.update_order(order.id, expected_statuses=[OrderStatus.PENDING], status=OrderStatus.CONFIRMED):
                status = OrderStatus.CONFIRMED

        await uow.append_status_history(
            order.id,
            StatusHistoryEntry(status=status, note="Payment captured successfully"),
        )
        log.info("webhook_payment_captured", order_id=order.id)
        return "applied", order

    async def _on_payment_failed(self, event: WebhookEvent, uow: IUnitOfWork, log) -> HandlerResult:
        payment = event.entity("payment")
        order = await self._find_order(uow, payment, payment.get("id"), payment.get("order_id"))
        if order is None:
            log.warning("webhook_dropped", reason="order_not_found", payment_id=payment.get("id"))
            return "dropped", None

        # A failed attempt never overrides money that was already taken
        failed = await uow.update_order(
            order.id,
            expected_payment_statuses=[PaymentStatus.PENDING],
            payment_status=PaymentStatus.FAILED,
        )
        if not failed:
            log.info("webhook_noop", order_id=order.id, payment_status=order.payment_status.value)
            return "noop", None

        if order.status == OrderStatus.PENDING:
            await self.committer.cancel_within(uow, order, note="Payment failed")
        else:
            await uow.append_status_history(
                order.id,
                StatusHistoryEntry(status=order.status, note="Payment failed"),
            )
        log.info("webhook_payment_failed", order_id=order.id)
        return "applied", order

    async def _on_refund_processed(self, event: WebhookEvent, uow: IUnitOfWork, log) -> HandlerResult:
        refund = event.entity("refund")
        payment = event.entity("payment")
        order = await self._find_order(uow, refund, refund.get("payment_id"))
        if order is None and payment:
            order = await self._find_order(uow, payment, payment.get("id"), payment.get("order_id"))
        if order is None:
            log.warning("webhook_dropped", reason="order_not_found", refund_id=refund.get("id"))
            return "dropped", None

        if order.payment_status not in SETTLED_PAYMENT_STATUSES:
            log.info("webhook_noop", order_id=order.id, payment_status=order.payment_status.value)
            return "noop", None

        # Cumulative refunded amount when the payment entity is attached
        refunded = payment.get("amount_refunded") or refund.get("amount")
        if not refunded:
            log.warning("refund_amount_missing", order_id=order.id, refund_id=refund.get("id"))
            return "noop", None
        total = round(order.total_amount * 100)
        payment_status = PaymentStatus.PARTIAL_REFUND if 0 < refunded < total else PaymentStatus.REFUNDED

        updated = await uow.update_order(
            order.id,
            expected_payment_statuses=[order.payment_status],
            payment_status=payment_status,
        )
        if not updated:
            log.info("webhook_noop", order_id=order.id, payment_status=order.payment_status.value)
            return "noop", None

        status = order.status
        if payment_status == PaymentStatus.REFUNDED and order.can_transition_to(OrderStatus.REFUNDED):
            if await uow.update_order(order.id, expected_statuses=[order.status], status=OrderStatus.REFUNDED):
                status = OrderStatus.REFUNDED

        label = "Refund processed" if payment_status == PaymentStatus.REFUNDED else "Partial refund processed"
        await uow.append_status_history(
            order.id,
            StatusHistoryEntry(status=status, note=f"{label}: {refund.get('id')}"),
        )
        log.info("webhook_refund_processed", order_id=order.id, payment_status=payment_status.value)
        return "applied", order
