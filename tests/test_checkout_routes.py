from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from application.services.checkout_service import CheckoutService
from infrastructure.cache import InMemoryCheckoutSessionStore
from infrastructure.external.store.memory import InMemoryCheckoutStore
from main import app
from tests.conftest import RecordingNotifier


HEADERS = {"X-User-ID": "user-1"}

BODY = {
    "session_id": "sess-1",
    "items": [{"product_id": "p1", "quantity": 1, "unit_price": "999.00"}],
    "shipping_address": {
        "full_name": "Asha Rao",
        "phone": "9999999999",
        "address": "12 MG Road",
        "city": "Bengaluru",
        "state": "KA",
        "pincode": "560001",
    },
}


@pytest.fixture
def client(fast_config):
    with TestClient(app) as test_client:
        app.state.checkout_service = CheckoutService(
            InMemoryCheckoutStore(), RecordingNotifier(), InMemoryCheckoutSessionStore(), config=fast_config
        )
        yield test_client


@pytest.fixture
def memory_store(client) -> InMemoryCheckoutStore:
    return app.state.checkout_service.store


def test_health_and_request_id(client):
    resp = client.get("/health", headers={"X-Request-ID": "req-42"})
    assert resp.status_code == 200
    assert resp.json()["data"] == {"status": "healthy"}
    assert resp.headers["X-Request-ID"] == "req-42"


def test_missing_user_header_is_unauthorized(client):
    resp = client.post("/api/v1/checkout/quote", json={"session_id": "s", "items": []})
    assert resp.status_code == 401
    assert resp.json()["code"] == 30001


def test_quote_returns_breakdown(client):
    resp = client.post("/api/v1/checkout/quote", json=BODY, headers=HEADERS)
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["subtotal"] == "999.00"
    assert data["goodwill_discount"] == "0.37"
    assert data["total"] == "998.63"
    assert data["currency"] == "INR"


def test_quote_ignores_client_referral_discount(client):
    body = {**BODY, "referral_discount": "999"}
    data = client.post("/api/v1/checkout/quote", json=body, headers=HEADERS).json()["data"]
    assert data["referral_discount"] == "0.00"
    assert data["total"] == "998.63"


def test_request_body_validation(client):
    body = {**BODY, "items": [{"product_id": "p1", "quantity": 0, "unit_price": "1"}]}
    resp = client.post("/api/v1/checkout/quote", json=body, headers=HEADERS)
    assert resp.status_code == 422
    assert resp.json()["error"]["type"] == "ValidationError"


def test_settle_without_address_is_rejected_inline(client):
    body = {k: v for k, v in BODY.items() if k != "shipping_address"}
    resp = client.post("/api/v1/checkout/settle", json=body, headers=HEADERS)
    assert resp.status_code == 422
    payload = resp.json()
    assert payload["message"] == "Please select a delivery address"
    assert payload["error"]["field"] == "shipping_address"


def test_external_settlement_flow(client, memory_store):
    resp = client.post("/api/v1/checkout/settle", json=BODY, headers=HEADERS)
    assert resp.status_code == 200
    attempt = resp.json()["data"]
    assert attempt["method"] == "external"
    assert attempt["remaining_amount"] == "998.63"
    tid = attempt["transaction_id"]

    status = client.get(f"/api/v1/checkout/transactions/{tid}", headers=HEADERS).json()["data"]
    assert status["status"] == "processing"

    qr = client.get(f"/api/v1/checkout/transactions/{tid}/qr.png", headers=HEADERS)
    assert qr.status_code == 200
    assert qr.headers["content-type"] == "image/png"

    again = client.post("/api/v1/checkout/settle", json=BODY, headers=HEADERS)
    assert again.status_code == 409

    cancelled = client.post(f"/api/v1/checkout/transactions/{tid}/cancel", headers=HEADERS).json()["data"]
    assert cancelled["status"] == "failed"
    assert cancelled["reason"] == "cancelled"


def test_wallet_only_settlement_completes(client, memory_store):
    memory_store.set_wallet_balance("user-1", Decimal("5000"))
    resp = client.post("/api/v1/checkout/settle", json={**BODY, "wallet_amount": "5000"}, headers=HEADERS)
    attempt = resp.json()["data"]
    assert attempt["method"] == "wallet"
    assert attempt["auto_complete"] is True

    status = client.get(f"/api/v1/checkout/transactions/{attempt['transaction_id']}", headers=HEADERS)
    assert status.json()["data"]["status"] == "completed"

    balance = client.get("/api/v1/wallet/balance", headers=HEADERS).json()["data"]
    assert balance == {"balance": "4001.37", "currency": "INR"}


def test_unknown_transaction_is_not_found(client):
    resp = client.get("/api/v1/checkout/transactions/TXNMISSING", headers=HEADERS)
    assert resp.status_code == 404


def test_other_users_cannot_touch_a_transaction(client):
    tid = client.post("/api/v1/checkout/settle", json=BODY, headers=HEADERS).json()["data"]["transaction_id"]
    other = {"X-User-ID": "user-2"}

    assert client.post(f"/api/v1/checkout/transactions/{tid}/cancel", headers=other).status_code == 404
    assert client.get(f"/api/v1/checkout/transactions/{tid}", headers=other).status_code == 404
    assert client.get(f"/api/v1/checkout/transactions/{tid}/qr.png", headers=other).status_code == 404

    status = client.get(f"/api/v1/checkout/transactions/{tid}", headers=HEADERS).json()["data"]
    assert status["status"] == "processing"
    client.post(f"/api/v1/checkout/transactions/{tid}/cancel", headers=HEADERS)


def test_wallet_top_up(client):
    resp = client.post("/api/v1/wallet/top-up", json={"amount": "250"}, headers=HEADERS)
    assert resp.status_code == 200
    attempt = resp.json()["data"]
    assert attempt["purpose"] == "wallet_load"
    assert attempt["external_reference"].startswith("upi://pay?")

    too_small = client.post("/api/v1/wallet/top-up", json={"amount": "1"}, headers=HEADERS)
    assert too_small.status_code == 422


def test_referral_endpoints(client, memory_store):
    memory_store.add_referrer("ref-9", "FRIEND", name="Ravi")

    eligibility = client.get("/api/v1/checkout/referral/eligibility", headers=HEADERS).json()["data"]
    assert eligibility == {"eligibility": "eligible"}

    valid = client.post("/api/v1/checkout/referral/validate", json={"code": "friend"}, headers=HEADERS)
    assert valid.json()["data"] == {"valid": True, "referrer_name": "Ravi"}

    attached = client.post("/api/v1/checkout/referral/attach", json={"code": "FRIEND"}, headers=HEADERS)
    assert attached.json()["data"] == {"outcome": "success"}


def test_coupon_validation_endpoint(client, memory_store):
    from application.dtos.checkout import CouponRecord

    memory_store.add_coupon(CouponRecord(code="TEN", type="percentage", value=Decimal("10")))
    body = {"code": "TEN", "items": BODY["items"]}
    data = client.post("/api/v1/checkout/coupons/validate", json=body, headers=HEADERS).json()["data"]
    assert data["valid"] is True
    assert data["discount"] == "99.90"
