import json
from decimal import Decimal

import httpx
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from application.dtos.checkout import CheckoutSessionState, PaymentNotification
from domain.checkout.entity import CheckoutFlow
from domain.checkout.payment_rail import build_upi_uri
from domain.common.exceptions import CheckoutValidationException, NotificationDeliveryException, StoreUnavailableException
from infrastructure.cache import RedisCache, RedisCheckoutSessionStore
from infrastructure.external.notifications.webhook import WebhookNotifier
from infrastructure.external.payments import UpiQrRenderer


class FakeRedis:
    def __init__(self, down: bool = False):
        self.data: dict[str, str] = {}
        self.down = down

    def _check(self):
        if self.down:
            raise RedisConnectionError("down")

    async def get(self, key):
        self._check()
        return self.data.get(key)

    async def set(self, key, value, ex=None):
        self._check()
        self.data[key] = value

    async def delete(self, key):
        self._check()
        return 1 if self.data.pop(key, None) is not None else 0


def _notification() -> PaymentNotification:
    return PaymentNotification(
        transaction_id="TXN1", order_reference="ORD1", amount=Decimal("748.63"),
        timestamp="2024-01-01T00:00:00Z",
    )


def test_upi_uri_format():
    uri = build_upi_uri(payee_vpa="shop@upi", payee_name="The Shop", amount=Decimal("5"), note="Order ORD1 TXN1")
    assert uri == "upi://pay?pa=shop@upi&pn=The%20Shop&am=5.00&cu=INR&tn=Order%20ORD1%20TXN1"


def test_qr_renderer_outputs_png():
    renderer = UpiQrRenderer(scale=2, border=1)
    png = renderer.png("upi://pay?pa=shop@upi&am=1.00")
    assert png.startswith(b"\x89PNG")
    assert renderer.data_url("upi://pay?pa=shop@upi").startswith("data:image/png;base64,")
    with pytest.raises(CheckoutValidationException):
        renderer.png("https://example.com/pay")


@pytest.mark.asyncio
async def test_webhook_posts_notification_with_secret():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(200)

    notifier = WebhookNotifier("https://hooks.test/payments/notify", "s3cret", transport=httpx.MockTransport(handler))
    await notifier.notify(_notification())
    await notifier.aclose()
    assert seen["url"] == "https://hooks.test/payments/notify"
    assert seen["auth"] == "Bearer s3cret"
    assert seen["body"]["transaction_id"] == "TXN1"
    assert seen["body"]["amount"] == "748.63"


@pytest.mark.asyncio
async def test_webhook_failure_raises_delivery_error_once():
    calls = []

    def handler(request):
        calls.append(1)
        return httpx.Response(500)

    notifier = WebhookNotifier("https://hooks.test/notify", transport=httpx.MockTransport(handler))
    with pytest.raises(NotificationDeliveryException):
        await notifier.notify(_notification())
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_redis_session_store_roundtrip_and_outage():
    client = FakeRedis()
    sessions = RedisCheckoutSessionStore(RedisCache(client, namespace="checkout"), ttl=60)

    state = await sessions.load("u1", "s1")
    state.flow = CheckoutFlow.RETRY
    state.retry_order_id = "o1"
    state.goodwill_discount = Decimal("0.37")
    await sessions.save(state)
    assert "checkout:session:u1:s1" in client.data

    loaded = await sessions.load("u1", "s1")
    assert loaded == CheckoutSessionState(
        owner_id="u1", session_id="s1", flow=CheckoutFlow.RETRY,
        retry_order_id="o1", goodwill_discount=Decimal("0.37"),
    )
    await sessions.clear("u1", "s1")
    assert (await sessions.load("u1", "s1")).retry_order_id is None

    client.down = True
    with pytest.raises(StoreUnavailableException):
        await sessions.load("u1", "s1")
