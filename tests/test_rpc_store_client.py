import json
from decimal import Decimal

import httpx
import pytest

from application.services.order_service import OrderLifecycleManager
from domain.checkout.entity import (
    CartSnapshot,
    CheckoutContext,
    CheckoutFlow,
    LineItem,
    OrderStatus,
    PriceBreakdown,
    ReferralAttachOutcome,
    ReferralEligibility,
    ShippingMethod,
    VerificationStatus,
)
from domain.common.exceptions import StoreUnavailableException
from infrastructure.external.store.rpc_client import RpcStoreClient


def _client(handler) -> RpcStoreClient:
    return RpcStoreClient(
        "https://store.test",
        "anon-key",
        retry_delay=0.001,
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.asyncio
async def test_create_order_settles_the_store_price():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["headers"] = request.headers
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "success": True,
                "order_id": "o-9",
                "display_order_id": "ORD9",
                "subtotal": 1099.00,
                "shipping": 0.00,
                "discount": 50.37,
                "total": 1048.63,
            },
        )

    client = _client(handler)
    context = CheckoutContext(
        owner_id="u1",
        session_id="s1",
        items=CartSnapshot.of([LineItem(product_id="p1", quantity=1, unit_price=Decimal("1"))]),
        transaction_id="TXN1",
    )
    price = PriceBreakdown.of("1", "0", "0", "0", "0.37")
    order = await client.create_order(context, price)
    await client.aclose()

    assert seen["path"] == "/rest/v1/rpc/create_order"
    assert seen["headers"]["apikey"] == "anon-key"
    assert seen["headers"]["authorization"] == "Bearer anon-key"
    assert seen["body"]["p_transaction_id"] == "TXN1"
    assert seen["body"]["p_lucky_discount"] == "0.37"
    assert "price" not in seen["body"]["p_items"][0]
    assert order.id == "o-9" and order.display_id == "ORD9"
    assert order.total == Decimal("1048.63")
    assert order.price.goodwill_discount == Decimal("0.37")
    assert order.price.coupon_discount == Decimal("50.00")


@pytest.mark.asyncio
async def test_create_order_with_inconsistent_totals_is_an_outage():
    body = {"success": True, "order_id": "o-9", "subtotal": "100", "shipping": "0", "discount": "0", "total": "5"}
    client = _client(lambda request: httpx.Response(200, json=body))
    context = CheckoutContext(owner_id="u1", session_id="s1", transaction_id="TXN1")
    with pytest.raises(StoreUnavailableException):
        await client.create_order(context, PriceBreakdown.of("100", "0"))


@pytest.mark.asyncio
async def test_mutations_are_not_retried():
    calls = []

    def handler(request):
        calls.append(request.url.path)
        return httpx.Response(503, json={"message": "down"})

    client = _client(handler)
    with pytest.raises(StoreUnavailableException) as exc_info:
        await client.clear_cart("u1")
    assert calls == ["/rest/v1/rpc/clear_user_cart"]
    assert exc_info.value.status_code == 503


@pytest.mark.asyncio
async def test_reads_retry_transient_failures():
    responses = iter([httpx.Response(503), httpx.Response(200, json=[{"balance": "120.5"}])])
    client = _client(lambda request: next(responses))
    assert await client.get_wallet_balance("u1") == Decimal("120.50")


@pytest.mark.asyncio
async def test_process_payment_business_error_is_a_result():
    def handler(request):
        return httpx.Response(400, json={"message": "Insufficient wallet balance"})

    result = await _client(handler).process_payment("o1", "TXN1", use_wallet=True, wallet_amount=Decimal("10"))
    assert result.success is False
    assert result.error == "Insufficient wallet balance"


@pytest.mark.asyncio
async def test_auth_failure_is_an_outage():
    client = _client(lambda request: httpx.Response(401, json={"message": "bad key"}))
    with pytest.raises(StoreUnavailableException):
        await client.process_payment("o1", "TXN1", use_wallet=False, wallet_amount=Decimal("0"))


@pytest.mark.asyncio
async def test_network_error_becomes_store_unavailable():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(StoreUnavailableException):
        await _client(handler).check_order_verification("TXN1")


@pytest.mark.asyncio
async def test_verification_and_transaction_status_mapping():
    def handler(request):
        if request.url.path.endswith("/orders"):
            if request.url.params["transaction_id"] == "eq.TXN1":
                return httpx.Response(200, json=[{"payment_verified": "YES", "status": "processing"}])
            return httpx.Response(200, json=[{"payment_verified": "NO", "status": "cancelled"}])
        return httpx.Response(200, json=[{"status": "cancelled"}])

    client = _client(handler)
    assert await client.check_order_verification("TXN1") == VerificationStatus.CONFIRMED
    assert await client.check_order_verification("TXN2") == VerificationStatus.FAILED
    assert await client.check_transaction_completion("TXN1") == VerificationStatus.FAILED


ORDER_ROW = {
    "id": "o1",
    "display_order_id": "48213",
    "user_id": "u1",
    "status": "pending",
    "subtotal": 200.00,
    "tax": 0.00,
    "shipping": 99.00,
    "discount": 20.42,
    "discount_amount": 20.00,
    "discount_code": "SAVE20",
    "total": 278.58,
    "payment_method": "upi",
    "payment_confirmed": False,
    "payment_verified": "NO",
    "transaction_id": "TXN1",
    "shipping_name": "Asha Rao",
    "shipping_address": "12 MG Road",
    "shipping_city": "Bengaluru",
    "shipping_state": "KA",
    "shipping_zip_code": "560001",
    "shipping_country": "India",
    "shipping_phone": "9999999999",
    "shipping_method": "Standard",
    "order_items": [
        {"product_id": "p1", "product_name": "Classic", "product_price": 100.00, "quantity": 2, "variant_id": None},
    ],
}


@pytest.mark.asyncio
async def test_fetch_order_maps_store_row():
    seen = {}

    def handler(request):
        seen["select"] = request.url.params["select"]
        return httpx.Response(200, json=[ORDER_ROW])

    order = await _client(handler).fetch_order("o1", "u1")

    assert seen["select"] == "*,order_items(*)"
    assert order.status == OrderStatus.PENDING
    assert order.shipping_method == ShippingMethod.STANDARD
    assert order.shipping_address.city == "Bengaluru"
    assert order.shipping_address.pincode == "560001"
    assert order.items.items[0].unit_price == Decimal("100.00")
    assert order.price.coupon_discount == Decimal("20.00")
    assert order.price.goodwill_discount == Decimal("0.42")
    assert order.total == Decimal("278.58")

    empty = _client(lambda request: httpx.Response(200, json=[]))
    assert await empty.fetch_order("o1", "u1") is None


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "changes, expected",
    [
        ({"status": "processing"}, OrderStatus.COMPLETED),
        ({"status": "delivered"}, OrderStatus.COMPLETED),
        ({"payment_verified": "YES"}, OrderStatus.COMPLETED),
        ({"status": "cancelled"}, OrderStatus.FAILED),
        ({"status": "on_hold"}, OrderStatus.PENDING),
    ],
)
async def test_fetch_order_store_statuses(changes, expected):
    row = {**ORDER_ROW, **changes}
    order = await _client(lambda request: httpx.Response(200, json=[row])).fetch_order("o1", "u1")
    assert order.status == expected


@pytest.mark.asyncio
async def test_wallet_load_row_has_no_address():
    row = {**ORDER_ROW, "shipping_address": None, "shipping_method": None, "order_items": []}
    order = await _client(lambda request: httpx.Response(200, json=[row])).fetch_order("o1", "u1")
    assert order.shipping_address is None
    assert order.items.is_empty


@pytest.mark.asyncio
async def test_unreadable_order_row_falls_back_to_new_order():
    row = {key: value for key, value in ORDER_ROW.items() if key != "subtotal"}
    client = _client(lambda request: httpx.Response(200, json=[row]))

    with pytest.raises(StoreUnavailableException):
        await client.fetch_order("o1", "u1")

    context = CheckoutContext(
        owner_id="u1", session_id="s1", flow=CheckoutFlow.RETRY, retry_order_id="o1", transaction_id="TXN2"
    )
    assert await OrderLifecycleManager(client).fetch_retry_order(context) is None


@pytest.mark.asyncio
async def test_referral_procedures():
    def handler(request):
        if request.url.path.endswith("/referrals"):
            return httpx.Response(200, json=[{"referred_by": "r1", "first_order_completed": False}])
        if request.url.path.endswith("attach_referral_code_late"):
            return httpx.Response(200, json={"success": False, "error": "already_has_referrer_or_first_order"})
        return httpx.Response(200, json={"valid": True, "referrer_name": "Ravi"})

    client = _client(handler)
    status = await client.get_referral_status("u1")
    assert status.eligibility() == ReferralEligibility.ALREADY_ATTACHED
    outcome = await client.attach_referral_code_late("u1", "FRIEND")
    assert outcome == ReferralAttachOutcome.ALREADY_HAS_REFERRER_OR_FIRST_ORDER
    validation = await client.validate_referral_code("FRIEND")
    assert validation.valid and validation.referrer_name == "Ravi"


@pytest.mark.asyncio
async def test_verify_payment_void_response_is_success():
    client = _client(lambda request: httpx.Response(204))
    assert (await client.verify_payment("TXN1")).success
