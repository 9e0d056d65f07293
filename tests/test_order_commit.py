"""Tests for turning confirmed payments into orders, and for cancellation."""

import asyncio

import pytest

from storefront.errors import (
    CouponInvalidError,
    FatalIntegrityError,
    InsufficientStockError,
    IntentNotFoundError,
    IntentOwnershipError,
    OrderNotCancellableError,
    OrderNotFoundError,
    PaymentNotCapturedError,
    PriceMismatchError,
    SignatureVerificationError,
)
from storefront.pipeline.intents import intent_key
from storefront.schemas.domain import (
    Order,
    OrderStatus,
    PaymentConfirmation,
    PaymentStatus,
    Principal,
    StockUnitRef,
)
from storefront.storage.memory import InMemoryUnitOfWork

from .conftest import confirmation_for, make_snapshot

TEE = StockUnitRef(product_id="tee")
JACKET_L = StockUnitRef(product_id="jacket", variant_id="jacket-l")


async def paid_intent(intents, gateway, principal, snapshot, status="captured") -> PaymentConfirmation:
    handle = await intents.create_intent(principal, snapshot)
    payment_id = gateway.pay(handle.gateway_order_id, status=status)
    return confirmation_for(handle.gateway_order_id, payment_id)


def coupon_snapshot():
    return make_snapshot([("tee", None, 2, 500)], coupon_code="SAVE10", discount=100, tax=18)


class TestCommit:
    def test_happy_path(self, committer, intents, gateway, store, cache, customer):
        async def scenario():
            confirmation = await paid_intent(intents, gateway, customer, coupon_snapshot())
            return confirmation, await committer.commit(customer, confirmation)

        confirmation, order = asyncio.run(scenario())

        assert order.status == OrderStatus.CONFIRMED
        assert order.payment_status == PaymentStatus.PAID
        assert order.payment_id == confirmation.razorpay_payment_id
        assert order.gateway_order_id == confirmation.razorpay_order_id
        assert order.id == gateway.orders[confirmation.razorpay_order_id].notes["orderId"]
        assert order.order_number.startswith("ORD-") and len(order.order_number) == 16
        assert order.tracking_number.startswith("TRK") and len(order.tracking_number) == 13
        assert (order.subtotal, order.discount_amount, order.tax_amount, order.total_amount) == (1000, 100, 18, 918)
        assert order.coupon_id == "cpn-save10"
        assert [(i.product_id, i.quantity, i.price_at_purchase) for i in order.items] == [("tee", 2, 500)]
        assert [h.note for h in order.status_history] == ["Order confirmed after successful payment"]
        assert order.estimated_delivery.weekday() < 5

        assert store.orders[order.id].order_number == order.order_number
        assert store.available(TEE) == 8
        assert store.coupons["cpn-save10"].usage_count == 1
        assert store.carts["user-1"] == []
        assert asyncio.run(cache.get(intent_key(confirmation.razorpay_order_id))) is None

    def test_line_items_use_catalog_price_and_variant_label(self, committer, intents, gateway, store, customer):
        snapshot = make_snapshot([("jacket", "jacket-m", 1, 1800), ("tee", None, 1, 500)])

        async def scenario():
            confirmation = await paid_intent(intents, gateway, customer, snapshot)
            return await committer.commit(customer, confirmation)

        order = asyncio.run(scenario())
        assert [(i.product_name, i.price_at_purchase) for i in order.items] == [
            ("Denim Jacket (M - Blue)", 1800),
            ("Cotton Tee", 500),
        ]

    def test_bad_signature_changes_nothing(self, committer, intents, gateway, store, cache, customer):
        async def scenario():
            confirmation = await paid_intent(intents, gateway, customer, coupon_snapshot())
            forged = confirmation.model_copy(update={"razorpay_signature": "0" * 64})
            with pytest.raises(SignatureVerificationError):
                await committer.commit(customer, forged)
            return confirmation

        confirmation = asyncio.run(scenario())
        assert store.orders == {}
        assert store.available(TEE) == 10
        assert asyncio.run(cache.get(intent_key(confirmation.razorpay_order_id))) is not None

    def test_uncaptured_payment_rejected(self, committer, intents, gateway, store, customer):
        async def scenario():
            confirmation = await paid_intent(intents, gateway, customer, coupon_snapshot(), status="authorized")
            await committer.commit(customer, confirmation)

        with pytest.raises(PaymentNotCapturedError):
            asyncio.run(scenario())
        assert store.orders == {}

    def test_payment_for_another_gateway_order_rejected(self, committer, intents, gateway, store, customer):
        async def scenario():
            first = await paid_intent(intents, gateway, customer, make_snapshot([("tee", None, 1, 500)]))
            second = await intents.create_intent(customer, make_snapshot([("tee", None, 1, 500)]))
            # Reuse the first payment against the second gateway order
            await committer.commit(customer, confirmation_for(second.gateway_order_id, first.razorpay_payment_id))

        with pytest.raises(PaymentNotCapturedError):
            asyncio.run(scenario())
        assert store.orders == {}

    def test_other_user_cannot_commit_intent(self, committer, intents, gateway, store, customer, other_customer):
        async def scenario():
            confirmation = await paid_intent(intents, gateway, customer, coupon_snapshot())
            await committer.commit(other_customer, confirmation)

        with pytest.raises(IntentOwnershipError):
            asyncio.run(scenario())
        assert store.orders == {}

    def test_price_change_after_intent_rejected_before_stock_moves(
        self, committer, intents, gateway, store, cache, customer
    ):
        async def scenario():
            confirmation = await paid_intent(intents, gateway, customer, coupon_snapshot())
            store.products["tee"] = store.products["tee"].model_copy(update={"price": 550})
            with pytest.raises(PriceMismatchError):
                await committer.commit(customer, confirmation)
            return confirmation

        confirmation = asyncio.run(scenario())
        assert store.orders == {}
        assert store.available(TEE) == 10
        assert store.coupons["cpn-save10"].usage_count == 0
        # The intent survives so the payment can be reconciled or retried
        assert asyncio.run(cache.get(intent_key(confirmation.razorpay_order_id))) is not None

    def test_insert_failure_rolls_back_reservation(
        self, committer, intents, gateway, store, cache, customer, monkeypatch
    ):
        async def failing_insert(self, order):
            raise RuntimeError("connection reset")

        async def scenario():
            confirmation = await paid_intent(intents, gateway, customer, coupon_snapshot())
            monkeypatch.setattr(InMemoryUnitOfWork, "insert_order", failing_insert)
            with pytest.raises(RuntimeError):
                await committer.commit(customer, confirmation)
            return confirmation

        confirmation = asyncio.run(scenario())
        assert store.orders == {}
        assert store.available(TEE) == 10
        assert store.coupons["cpn-save10"].usage_count == 0
        assert store.carts["user-1"] == [{"product_id": "tee", "quantity": 2}]
        assert asyncio.run(cache.get(intent_key(confirmation.razorpay_order_id))) is not None

    def test_out_of_stock_at_commit(self, committer, intents, gateway, store, customer, other_customer):
        snapshot = make_snapshot([("jacket", "jacket-l", 1, 1900)])

        async def scenario():
            first = await paid_intent(intents, gateway, customer, snapshot)
            second = await paid_intent(intents, gateway, other_customer, snapshot)
            await committer.commit(customer, first)
            with pytest.raises(InsufficientStockError):
                await committer.commit(other_customer, second)

        asyncio.run(scenario())
        assert len(store.orders) == 1
        assert store.available(JACKET_L) == 0


class TestIdempotentCommit:
    def test_resubmit_returns_existing_order(self, committer, intents, gateway, store, customer):
        async def scenario():
            confirmation = await paid_intent(intents, gateway, customer, coupon_snapshot())
            first = await committer.commit(customer, confirmation)
            second = await committer.commit(customer, confirmation)
            return first, second

        first, second = asyncio.run(scenario())
        assert first.id == second.id
        assert len(store.orders) == 1
        assert store.available(TEE) == 8
        assert store.coupons["cpn-save10"].usage_count == 1

    def test_concurrent_double_submit_creates_one_order(self, committer, intents, gateway, store, customer):
        async def scenario():
            confirmation = await paid_intent(intents, gateway, customer, coupon_snapshot())
            return await asyncio.gather(
                committer.commit(customer, confirmation),
                committer.commit(customer, confirmation),
                return_exceptions=True,
            )

        results = asyncio.run(scenario())
        orders = [r for r in results if isinstance(r, Order)]
        assert orders
        assert all(isinstance(r, (Order, IntentNotFoundError)) for r in results)
        assert len({o.id for o in orders}) == 1
        assert len(store.orders) == 1
        assert store.available(TEE) == 8

    def test_replay_is_scoped_to_the_owner(self, committer, intents, gateway, customer, other_customer):
        async def scenario():
            confirmation = await paid_intent(intents, gateway, customer, coupon_snapshot())
            await committer.commit(customer, confirmation)
            await committer.commit(other_customer, confirmation)

        with pytest.raises(IntentNotFoundError):
            asyncio.run(scenario())


class TestOrderNumbers:
    def test_collision_is_retried(self, committer, intents, gateway, store, customer, monkeypatch):
        taken = Order(
            order_number="ORD-AAAAAAAAAAAA", user_id="user-9", payment_method="COD",
            shipping_address_id="addr_9", subtotal=1, total_amount=1,
        )
        store.orders[taken.id] = taken
        numbers = iter(["ORD-AAAAAAAAAAAA", "ORD-AAAAAAAAAAAA", "ORD-BBBBBBBBBBBB"])
        monkeypatch.setattr(Order, "generate_order_number", staticmethod(lambda: next(numbers)))

        async def scenario():
            confirmation = await paid_intent(intents, gateway, customer, coupon_snapshot())
            return await committer.commit(customer, confirmation)

        order = asyncio.run(scenario())
        assert order.order_number == "ORD-BBBBBBBBBBBB"
        assert store.available(TEE) == 8

    def test_exhausted_attempts_roll_back(self, committer, intents, gateway, store, customer, monkeypatch):
        taken = Order(
            order_number="ORD-AAAAAAAAAAAA", user_id="user-9", payment_method="COD",
            shipping_address_id="addr_9", subtotal=1, total_amount=1,
        )
        store.orders[taken.id] = taken
        monkeypatch.setattr(Order, "generate_order_number", staticmethod(lambda: "ORD-AAAAAAAAAAAA"))

        async def scenario():
            confirmation = await paid_intent(intents, gateway, customer, coupon_snapshot())
            await committer.commit(customer, confirmation)

        with pytest.raises(FatalIntegrityError):
            asyncio.run(scenario())
        assert len(store.orders) == 1
        assert store.available(TEE) == 10
        assert store.coupons["cpn-save10"].usage_count == 0


class TestCashOnDelivery:
    def test_cod_order(self, committer, store, customer):
        snapshot = make_snapshot([("tee", None, 1, 500)], payment_method="COD")
        order = asyncio.run(committer.commit_cash_on_delivery(customer, snapshot))

        assert order.status == OrderStatus.CONFIRMED
        assert order.payment_status == PaymentStatus.PENDING
        assert order.payment_method == "COD"
        assert order.payment_id is None
        assert store.available(TEE) == 9

    def test_cod_with_stale_price(self, committer, store, customer):
        snapshot = make_snapshot([("tee", None, 1, 400)], payment_method="COD")
        with pytest.raises(PriceMismatchError):
            asyncio.run(committer.commit_cash_on_delivery(customer, snapshot))
        assert store.orders == {}

    def test_concurrent_checkouts_respect_per_user_coupon_limit(self, committer, store, customer):
        snapshot = make_snapshot(
            [("tee", None, 2, 500)], coupon_code="FLAT100", discount=100, payment_method="COD"
        )

        async def scenario():
            return await asyncio.gather(
                committer.commit_cash_on_delivery(customer, snapshot),
                committer.commit_cash_on_delivery(customer, snapshot),
                return_exceptions=True,
            )

        results = asyncio.run(scenario())

        assert sum(1 for r in results if isinstance(r, CouponInvalidError)) == 1
        assert len(store.orders) == 1
        assert store.coupons["cpn-flat"].usage_count == 1
        assert store.available(TEE) == 8
        assert store.coupon_holders == {}


class TestCancel:
    def place(self, committer, customer):
        return asyncio.run(committer.commit_cash_on_delivery(customer, coupon_snapshot()))

    def test_cancel_restores_stock_and_coupon(self, committer, store, customer):
        order = self.place(committer, customer)
        assert store.available(TEE) == 8
        assert store.coupons["cpn-save10"].usage_count == 1

        cancelled = asyncio.run(committer.cancel(customer, order.id, "Changed my mind"))

        assert cancelled.status == OrderStatus.CANCELLED
        assert cancelled.status_history[-1].note == "Changed my mind"
        assert cancelled.status_history[-1].updated_by == "user-1"
        assert store.available(TEE) == 10
        assert store.coupons["cpn-save10"].usage_count == 0

    def test_cancel_twice(self, committer, store, customer):
        order = self.place(committer, customer)
        asyncio.run(committer.cancel(customer, order.id))
        with pytest.raises(OrderNotCancellableError):
            asyncio.run(committer.cancel(customer, order.id))
        assert store.available(TEE) == 10

    def test_concurrent_cancel_restores_once(self, committer, store, customer):
        order = self.place(committer, customer)

        async def scenario():
            return await asyncio.gather(
                committer.cancel(customer, order.id),
                committer.cancel(customer, order.id),
                return_exceptions=True,
            )

        results = asyncio.run(scenario())
        assert sum(1 for r in results if isinstance(r, OrderNotCancellableError)) == 1
        assert store.available(TEE) == 10
        assert store.coupons["cpn-save10"].usage_count == 0

    def test_other_customer_sees_not_found(self, committer, customer, other_customer):
        order = self.place(committer, customer)
        with pytest.raises(OrderNotFoundError):
            asyncio.run(committer.cancel(other_customer, order.id))

    def test_admin_can_cancel(self, committer, customer, admin):
        order = self.place(committer, customer)
        cancelled = asyncio.run(committer.cancel(admin, order.id))
        assert cancelled.status_history[-1].note == "Order cancelled by admin"

    def test_shipped_order_is_not_cancellable(self, committer, store, customer):
        order = self.place(committer, customer)
        store.orders[order.id] = store.orders[order.id].model_copy(update={"status": OrderStatus.SHIPPED})
        with pytest.raises(OrderNotCancellableError):
            asyncio.run(committer.cancel(customer, order.id))
        assert store.available(TEE) == 8

    def test_unknown_order(self, committer):
        with pytest.raises(OrderNotFoundError):
            asyncio.run(committer.cancel(Principal(user_id="user-1"), "missing"))
