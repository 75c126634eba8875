"""Tests for the HTTP API."""

import hashlib
import hmac
import json
import time

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.exc import OperationalError

from app.core.config import settings
from app.core.security import create_access_token
from app.main import app
from app.models.shop import OrderStatus
from app.modules.shop.payments import PaymentStore
from app.modules.shop.service import get_payment_service
from tests.conftest import get_order_status, get_stock, set_stock

WEBHOOK_SECRET = "whsec_test_secret"


def stripe_signature(payload: str, secret: str = WEBHOOK_SECRET) -> str:
    timestamp = int(time.time())
    signed = f"{timestamp}.{payload}".encode()
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def intent_event(event_type: str, intent_id: str) -> str:
    return json.dumps(
        {
            "id": "evt_test_1",
            "object": "event",
            "type": event_type,
            "data": {"object": {"id": intent_id, "object": "payment_intent"}},
        }
    )


@pytest.fixture
async def client(db, gateway, service):
    app.state.db = db
    app.state.gateway = gateway
    app.dependency_overrides[get_payment_service] = lambda: service

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture
def auth(shop):
    token = create_access_token(shop.user_id, "buyer@example.com")
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def other_auth(shop):
    token = create_access_token(shop.other_user_id, "someone@example.com")
    return {"Authorization": f"Bearer {token}"}


async def create_intent(client, auth, shop, amount=100.0):
    return await client.post(
        "/api/v1/payments/create-intent",
        json={"orderId": shop.order_id, "amount": amount, "currency": "usd"},
        headers=auth,
    )


class TestSystem:
    async def test_health(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"


class TestAuthentication:
    async def test_missing_token(self, client, shop):
        response = await client.get("/api/v1/payments")
        assert response.status_code == 401

    async def test_invalid_token(self, client, shop):
        response = await client.get(
            "/api/v1/payments", headers={"Authorization": "Bearer not-a-jwt"}
        )
        assert response.status_code == 401

    async def test_unknown_user(self, client, shop):
        token = create_access_token("ghost", "ghost@example.com")
        response = await client.get(
            "/api/v1/payments", headers={"Authorization": f"Bearer {token}"}
        )
        assert response.status_code == 401


class TestCreateIntent:
    async def test_create_intent(self, client, auth, shop, gateway):
        response = await create_intent(client, auth, shop)

        assert response.status_code == 201
        body = response.json()
        assert body["success"] is True
        assert body["data"]["clientSecret"].startswith("pi_test_")
        assert body["data"]["paymentId"]

    async def test_amount_mismatch(self, client, auth, shop, gateway):
        response = await create_intent(client, auth, shop, amount=50.0)

        assert response.status_code == 409
        body = response.json()
        assert body["success"] is False
        assert body["error"] == "CONFLICT"
        assert gateway.create_calls == []

    async def test_duplicate_intent(self, client, auth, shop):
        await create_intent(client, auth, shop)

        response = await create_intent(client, auth, shop)

        assert response.status_code == 409

    async def test_validation(self, client, auth, shop):
        response = await client.post(
            "/api/v1/payments/create-intent",
            json={"orderId": shop.order_id, "amount": -1},
            headers=auth,
        )
        assert response.status_code == 422

    async def test_other_users_order(self, client, other_auth, shop):
        response = await create_intent(client, other_auth, shop)

        assert response.status_code == 404
        assert response.json()["error"] == "NOT_FOUND"

    async def test_default_currency(self, client, auth, shop, monkeypatch):
        monkeypatch.setattr(settings, "shop_currency", "eur")

        response = await client.post(
            "/api/v1/payments/create-intent",
            json={"orderId": shop.order_id, "amount": 100.0},
            headers=auth,
        )

        assert response.status_code == 201
        payment_id = response.json()["data"]["paymentId"]
        payment = (await client.get(f"/api/v1/payments/{payment_id}", headers=auth)).json()
        assert payment["data"]["currency"] == "eur"

    async def test_lock_contention_is_a_conflict(self, client, auth, shop, monkeypatch):
        async def locked_create(store, *args, **kwargs):
            raise OperationalError("INSERT INTO payments", {}, Exception("database is locked"))

        monkeypatch.setattr(PaymentStore, "create", locked_create)

        response = await create_intent(client, auth, shop)

        assert response.status_code == 409
        assert response.json()["error"] == "CONFLICT"


class TestConfirm:
    async def test_confirm_paid_intent(self, client, auth, shop, gateway, db):
        created = (await create_intent(client, auth, shop)).json()["data"]
        payment = (await client.get(f"/api/v1/payments/{created['paymentId']}", headers=auth)).json()
        intent_id = payment["data"]["paymentIntentId"]
        gateway.succeed(intent_id)

        response = await client.post(
            "/api/v1/payments/confirm",
            json={"paymentIntentId": intent_id, "orderId": shop.order_id},
            headers=auth,
        )

        assert response.status_code == 200
        body = response.json()
        assert body["data"]["status"] == "COMPLETED"
        assert body["data"]["transactionId"] == f"ch_{intent_id}"
        assert body["message"] == "Payment processed successfully"
        assert await get_stock(db, shop.product_id) == 0
        assert await get_order_status(db, shop.order_id) == OrderStatus.PROCESSING

    async def test_confirm_pending_intent(self, client, auth, shop):
        created = (await create_intent(client, auth, shop)).json()["data"]

        response = await client.post(
            "/api/v1/payments/confirm",
            json={"paymentIntentId": created["paymentId"], "orderId": shop.order_id},
            headers=auth,
        )

        assert response.status_code == 200
        assert response.json()["data"]["status"] == "PENDING"

    async def test_insufficient_stock(self, client, auth, shop, gateway, db):
        created = (await create_intent(client, auth, shop)).json()["data"]
        payment = (await client.get(f"/api/v1/payments/{created['paymentId']}", headers=auth)).json()
        gateway.succeed(payment["data"]["paymentIntentId"])
        await set_stock(db, shop.product_id, 3)

        response = await client.post(
            "/api/v1/payments/confirm",
            json={"paymentIntentId": created["paymentId"], "orderId": shop.order_id},
            headers=auth,
        )

        assert response.status_code == 409
        assert response.json()["error"] == "INSUFFICIENT_STOCK"
        assert await get_stock(db, shop.product_id) == 3

    async def test_unknown_payment(self, client, auth, shop):
        response = await client.post(
            "/api/v1/payments/confirm",
            json={"paymentIntentId": "pi_missing", "orderId": shop.order_id},
            headers=auth,
        )

        assert response.status_code == 404


class TestHistory:
    async def test_list_and_lookup(self, client, auth, other_auth, shop):
        created = (await create_intent(client, auth, shop)).json()["data"]

        listing = await client.get("/api/v1/payments", headers=auth)
        by_order = await client.get(f"/api/v1/payments/order/{shop.order_id}", headers=auth)
        hidden = await client.get(f"/api/v1/payments/{created['paymentId']}", headers=other_auth)
        empty = await client.get("/api/v1/payments", headers=other_auth)

        assert [p["id"] for p in listing.json()["data"]] == [created["paymentId"]]
        assert by_order.json()["data"]["orderId"] == shop.order_id
        assert by_order.json()["data"]["amount"] == 100.0
        assert hidden.status_code == 404
        assert empty.json()["data"] == []


class TestStripeWebhook:
    @pytest.fixture(autouse=True)
    def webhook_secret(self, monkeypatch):
        monkeypatch.setattr(settings, "stripe_webhook_secret", WEBHOOK_SECRET)

    async def test_missing_signature(self, client):
        response = await client.post("/api/v1/webhooks/stripe", content="{}")
        assert response.status_code == 401

    async def test_invalid_signature(self, client):
        payload = intent_event("payment_intent.succeeded", "pi_x")
        response = await client.post(
            "/api/v1/webhooks/stripe",
            content=payload,
            headers={"Stripe-Signature": stripe_signature(payload, "whsec_wrong")},
        )
        assert response.status_code == 401

    async def test_succeeded_event_completes_payment(self, client, auth, shop, gateway, db):
        created = (await create_intent(client, auth, shop)).json()["data"]
        payment = (await client.get(f"/api/v1/payments/{created['paymentId']}", headers=auth)).json()
        intent_id = payment["data"]["paymentIntentId"]
        gateway.succeed(intent_id)
        payload = intent_event("payment_intent.succeeded", intent_id)

        for _ in range(2):
            response = await client.post(
                "/api/v1/webhooks/stripe",
                content=payload,
                headers={"Stripe-Signature": stripe_signature(payload)},
            )
            assert response.status_code == 200

        assert await get_stock(db, shop.product_id) == 0
        assert await get_order_status(db, shop.order_id) == OrderStatus.PROCESSING

    async def test_failed_attempt_keeps_payment_open(self, client, auth, shop, gateway, db):
        created = (await create_intent(client, auth, shop)).json()["data"]
        payment = (await client.get(f"/api/v1/payments/{created['paymentId']}", headers=auth)).json()
        intent_id = payment["data"]["paymentIntentId"]

        gateway.decline(intent_id)
        declined = intent_event("payment_intent.payment_failed", intent_id)
        response = await client.post(
            "/api/v1/webhooks/stripe",
            content=declined,
            headers={"Stripe-Signature": stripe_signature(declined)},
        )
        assert response.status_code == 200
        payment = (await client.get(f"/api/v1/payments/{created['paymentId']}", headers=auth)).json()
        assert payment["data"]["status"] == "PENDING"

        gateway.succeed(intent_id)
        succeeded = intent_event("payment_intent.succeeded", intent_id)
        response = await client.post(
            "/api/v1/webhooks/stripe",
            content=succeeded,
            headers={"Stripe-Signature": stripe_signature(succeeded)},
        )
        assert response.status_code == 200
        assert await get_stock(db, shop.product_id) == 0
        assert await get_order_status(db, shop.order_id) == OrderStatus.PROCESSING

    async def test_unknown_intent_is_acknowledged(self, client, shop):
        payload = intent_event("payment_intent.payment_failed", "pi_unknown")

        response = await client.post(
            "/api/v1/webhooks/stripe",
            content=payload,
            headers={"Stripe-Signature": stripe_signature(payload)},
        )

        assert response.status_code == 200
