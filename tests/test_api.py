"""Tests for the HTTP surface."""

from datetime import datetime, timedelta, timezone

import jwt
import pytest
from fastapi.testclient import TestClient

from storefront.api import create_app, issue_token
from storefront.schemas.domain import OrderStatus, Principal, Role, StockUnitRef

from .conftest import JWT_SECRET, sign_payment, sign_webhook, webhook_body

TEE = StockUnitRef(product_id="tee")


def auth(user_id="user-1", role=Role.CUSTOMER):
    token = issue_token(Principal(user_id=user_id, role=role), JWT_SECRET)
    return {"Authorization": f"Bearer {token}"}


def cart(quantity=2, price=500, coupon=None, discount=0):
    subtotal = quantity * price
    body = {
        "items": [{"productId": "tee", "quantity": quantity, "price": price}],
        "subtotal": subtotal,
        "discount": discount,
        "tax": 0,
        "total": subtotal - discount,
        "shippingAddressId": "addr_1",
    }
    if coupon:
        body["couponCode"] = coupon
    return body


@pytest.fixture
def client(settings, store, cache, gateway):
    app = create_app(settings=settings, store=store, cache=cache, gateway=gateway)
    with TestClient(app) as c:
        yield c


def place_paid_order(client, gateway, headers=None):
    headers = headers or auth()
    created = client.post("/payments/create-cart-order", json={"cartData": cart()}, headers=headers)
    assert created.status_code == 200
    gateway_order_id = created.json()["data"]["orderId"]
    payment_id = gateway.pay(gateway_order_id)
    return client.post(
        "/payments/verify-and-create",
        json={
            "razorpay_order_id": gateway_order_id,
            "razorpay_payment_id": payment_id,
            "razorpay_signature": sign_payment(gateway_order_id, payment_id),
        },
        headers=headers,
    )


class TestProbes:
    def test_live(self, client):
        assert client.get("/live").json() == {"live": True}

    def test_health(self, client):
        body = client.get("/health").json()
        assert body["status"] == "healthy"
        assert body["store_connected"] is True
        assert body["cache_connected"] is True

    def test_timing_headers(self, client):
        response = client.get("/ready")
        assert response.json() == {"ready": True}
        assert "X-Response-Time-Ms" in response.headers
        assert "X-Request-ID" in response.headers


class TestAuth:
    def test_missing_token(self, client):
        response = client.get("/orders")
        assert response.status_code == 401
        assert response.json() == {"status": "error", "message": "Authentication required"}

    def test_bad_token(self, client):
        response = client.get("/orders", headers={"Authorization": "Bearer not-a-jwt"})
        assert response.status_code == 401
        assert response.json()["message"] == "Invalid token"

    def test_expired_token(self, client):
        token = jwt.encode(
            {"id": "user-1", "role": "CUSTOMER", "exp": datetime.now(timezone.utc) - timedelta(minutes=1)},
            JWT_SECRET,
            algorithm="HS256",
        )
        response = client.get("/orders", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 401
        assert response.json()["message"] == "Token expired"

    def test_sub_claim_is_accepted(self, client):
        token = jwt.encode({"sub": "user-1"}, JWT_SECRET, algorithm="HS256")
        response = client.get("/orders", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 200

    def test_customer_cannot_use_admin_routes(self, client):
        assert client.get("/orders/admin/list", headers=auth()).status_code == 403
        assert client.get("/stock/low", headers=auth()).status_code == 403


class TestCheckout:
    def test_create_cart_order(self, client, gateway):
        response = client.post(
            "/payments/create-cart-order",
            json={"cartData": cart(coupon="save10", discount=100), "userEmail": "a@example.com"},
            headers=auth(),
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["amount"] == 90000
        assert data["currency"] == "INR"
        assert data["key"] == "rzp_test_key"
        assert data["prefill"] == {"email": "a@example.com"}
        assert data["orderId"] in gateway.orders

    def test_request_validation_error_shape(self, client):
        response = client.post(
            "/payments/create-cart-order",
            json={"cartData": {**cart(), "items": []}},
            headers=auth(),
        )
        assert response.status_code == 400
        body = response.json()
        assert body["status"] == "error"
        assert body["errors"][0]["field"].startswith("cartData.items")

    def test_price_mismatch(self, client):
        response = client.post("/payments/create-cart-order", json={"cartData": cart(price=450)}, headers=auth())
        assert response.status_code == 400
        assert "Price mismatch" in response.json()["message"]

    def test_verify_and_create(self, client, gateway, store):
        response = place_paid_order(client, gateway)

        assert response.status_code == 200
        body = response.json()
        assert body["message"] == "Payment verified and order created successfully"
        assert body["data"]["verified"] is True
        assert body["data"]["orderNumber"].startswith("ORD-")
        assert store.available(TEE) == 8

    def test_bad_signature(self, client, gateway, store):
        created = client.post("/payments/create-cart-order", json={"cartData": cart()}, headers=auth())
        gateway_order_id = created.json()["data"]["orderId"]
        payment_id = gateway.pay(gateway_order_id)

        response = client.post(
            "/payments/verify-and-create",
            json={
                "razorpay_order_id": gateway_order_id,
                "razorpay_payment_id": payment_id,
                "razorpay_signature": "f" * 64,
            },
            headers=auth(),
        )

        assert response.status_code == 400
        assert response.json() == {"status": "error", "message": "Invalid payment signature"}
        assert store.orders == {}

    def test_unknown_intent(self, client):
        response = client.post(
            "/payments/verify-and-create",
            json={
                "razorpay_order_id": "order_x",
                "razorpay_payment_id": "pay_x",
                "razorpay_signature": sign_payment("order_x", "pay_x"),
            },
            headers=auth(),
        )
        assert response.status_code == 404

    def test_cod_order(self, client, store):
        response = client.post("/orders/cod", json={"cartData": cart(quantity=1)}, headers=auth())

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["payment_method"] == "COD"
        assert data["payment_status"] == "PENDING"
        assert store.available(TEE) == 9

    def test_out_of_stock(self, client):
        response = client.post("/orders/cod", json={"cartData": cart(quantity=11)}, headers=auth())
        assert response.status_code == 400
        assert response.json()["message"] == "Insufficient stock for product: Cotton Tee"


class TestOrders:
    def test_read_track_and_cancel(self, client, gateway, store):
        order_id = place_paid_order(client, gateway).json()["data"]["orderId"]

        listing = client.get("/orders", headers=auth()).json()["data"]
        assert [o["id"] for o in listing["orders"]] == [order_id]

        detail = client.get(f"/orders/{order_id}", headers=auth())
        assert detail.status_code == 200
        assert detail.json()["data"]["status"] == "CONFIRMED"

        assert client.get(f"/orders/{order_id}", headers=auth("user-2")).status_code == 404

        track = client.get(f"/orders/{order_id}/track", headers=auth()).json()["data"]
        assert track["currentStatus"] == "CONFIRMED"

        cancelled = client.post(f"/orders/{order_id}/cancel", json={"reason": "Ordered twice"}, headers=auth())
        assert cancelled.status_code == 200
        assert cancelled.json()["data"] == {"orderId": order_id, "status": "CANCELLED"}
        assert store.available(TEE) == 10

        again = client.post(f"/orders/{order_id}/cancel", headers=auth())
        assert again.status_code == 409

    def test_admin_flow(self, client, gateway):
        order_id = place_paid_order(client, gateway).json()["data"]["orderId"]
        admin = auth("admin-1", Role.ADMIN)

        listing = client.get("/orders/admin/list", params={"status": "CONFIRMED"}, headers=admin)
        assert listing.json()["data"]["pagination"]["total"] == 1

        eta = (datetime.now(timezone.utc) + timedelta(days=2)).isoformat()
        updated = client.put(
            f"/orders/admin/{order_id}/status",
            json={"status": "PROCESSING", "trackingNumber": "TRK42", "estimatedDelivery": eta},
            headers=admin,
        )
        assert updated.status_code == 200
        assert updated.json()["data"]["tracking_number"] == "TRK42"

        invalid = client.put(f"/orders/admin/{order_id}/status", json={"status": "PENDING"}, headers=admin)
        assert invalid.status_code == 400

        refunded = client.put(
            f"/orders/{order_id}/payment-status",
            json={"paymentStatus": "REFUNDED", "note": "Returned"},
            headers=admin,
        )
        assert refunded.status_code == 200
        assert refunded.json()["data"]["paymentStatus"] == "REFUNDED"
        assert refunded.json()["data"]["lastUpdate"]["note"] == "Returned"

    def test_delivery_partner_updates_status_only(self, client, gateway):
        order_id = place_paid_order(client, gateway).json()["data"]["orderId"]
        partner = auth("rider-1", Role.DELIVERY_PARTNER)

        response = client.put(f"/orders/admin/{order_id}/status", json={"status": "PROCESSING"}, headers=partner)
        assert response.status_code == 200
        assert response.json()["data"]["status"] == OrderStatus.PROCESSING.value

        forbidden = client.put(f"/orders/{order_id}/payment-status", json={"paymentStatus": "REFUNDED"}, headers=partner)
        assert forbidden.status_code == 403


class TestWebhookEndpoint:
    def test_rejects_bad_signature(self, client):
        response = client.post("/payments/webhook", content=b"{}", headers={"x-razorpay-signature": "nope"})
        assert response.status_code == 400

    def test_acknowledges_valid_delivery(self, client, gateway, store):
        order_id = place_paid_order(client, gateway).json()["data"]["orderId"]
        order = store.orders[order_id]
        body = webhook_body("payment.captured", {
            "payment": {"entity": {"id": order.payment_id, "order_id": order.gateway_order_id, "notes": []}},
        })

        response = client.post(
            "/payments/webhook",
            content=body,
            headers={"x-razorpay-signature": sign_webhook(body), "x-razorpay-event-id": "evt_42"},
        )

        assert response.status_code == 200
        assert response.json()["data"] == {"status": "received", "event_id": "evt_42", "outcome": "noop"}

    def test_signed_body_of_unexpected_shape_is_acknowledged(self, client):
        for body in (b"[]", b'{"event": "payment.captured", "payload": {"payment": null}}'):
            response = client.post("/payments/webhook", content=body, headers={"x-razorpay-signature": sign_webhook(body)})
            assert response.status_code == 200
            assert response.json()["data"]["outcome"] in ("malformed", "dropped")


class TestStockAndCoupons:
    def test_validate_cart(self, client):
        ok = client.post("/stock/validate-cart", json={"items": [{"productId": "tee", "quantity": 2}]}, headers=auth())
        assert ok.status_code == 200

        short = client.post(
            "/stock/validate-cart",
            json={"items": [{"productId": "jacket", "variantId": "jacket-l", "quantity": 3}]},
            headers=auth(),
        )
        assert short.status_code == 400
        assert short.json()["data"]["available_quantity"] == 1

    def test_stock_info_is_public(self, client):
        response = client.get("/stock/info", params={"productIds": "tee,jacket"})
        assert response.status_code == 200
        assert {p["id"] for p in response.json()["data"]["products"]} == {"tee", "jacket"}

    def test_low_stock_for_admin(self, client):
        response = client.get("/stock/low", headers=auth("admin-1", Role.SUPER_ADMIN))
        assert response.status_code == 200
        assert [p["id"] for p in response.json()["data"]["products"]] == ["jacket"]

    def test_validate_coupon(self, client):
        response = client.get("/coupons/validate/SAVE10", params={"subtotal": 1000}, headers=auth())
        assert response.status_code == 200
        assert response.json()["data"]["discount"] == 100

        invalid = client.get("/coupons/validate/BOGUS", params={"subtotal": 1000}, headers=auth())
        assert invalid.status_code == 400
        assert invalid.json()["message"] == "Invalid coupon code"
