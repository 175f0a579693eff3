import asyncio
from decimal import Decimal

import pytest

from application.dtos.checkout import CheckoutRequest, CouponRecord, QuoteRequest
from domain.checkout.entity import CheckoutFlow, PaymentMethod, SettlementStatus
from domain.common.exceptions import (
    AttemptInFlightException,
    CheckoutValidationException,
    RetryContextLostException,
    SettlementRejectedException,
    TransactionNotFoundException,
)
from tests.conftest import OWNER, SESSION, checkout_request, item


async def _settled(service, transaction_id):
    protocol = service.confirmations.get(transaction_id)
    result = await protocol.wait(2)
    # let the completion hook run
    await asyncio.sleep(0.02)
    return result


@pytest.mark.asyncio
async def test_quote_applies_coupon_and_session_goodwill(service, store):
    store.add_coupon(CouponRecord(code="SAVE50", value=Decimal("50")))
    request = QuoteRequest(session_id=SESSION, items=[item()], coupon_code="SAVE50")

    first = await service.quote(OWNER, request)
    second = await service.quote(OWNER, request)

    assert first.total == Decimal("948.63")
    assert first == second


@pytest.mark.asyncio
async def test_quote_with_invalid_coupon_is_rejected(service):
    with pytest.raises(CheckoutValidationException):
        await service.quote(OWNER, QuoteRequest(session_id=SESSION, items=[item()], coupon_code="NOPE"))


@pytest.mark.asyncio
async def test_cart_checkout_clears_cart_once(service, store):
    store.set_wallet_balance(OWNER, Decimal("2000"))
    attempt = await service.checkout(OWNER, checkout_request(wallet_amount=Decimal("2000")))

    assert attempt.method == PaymentMethod.WALLET
    result = await _settled(service, attempt.transaction_id)
    assert result.status == SettlementStatus.COMPLETED
    assert store.carts_cleared == [OWNER]
    state = await service.sessions.load(OWNER, SESSION)
    assert state.transaction_id is None and state.goodwill_discount is None


@pytest.mark.asyncio
async def test_buy_now_checkout_leaves_cart_alone(service, store):
    store.set_wallet_balance(OWNER, Decimal("2000"))
    attempt = await service.checkout(
        OWNER,
        checkout_request(flow=CheckoutFlow.BUY_NOW, items=[item("solo", 1, "250")], wallet_amount=Decimal("2000")),
    )
    assert attempt.amount == Decimal("249.63")
    result = await _settled(service, attempt.transaction_id)
    assert result.status == SettlementStatus.COMPLETED
    assert store.carts_cleared == []


@pytest.mark.asyncio
async def test_external_checkout_confirms_by_polling(service, store, notifier):
    attempt = await service.checkout(OWNER, checkout_request())
    assert attempt.method == PaymentMethod.EXTERNAL
    assert service.status(OWNER, attempt.transaction_id).status == "processing"

    store.mark_verified(attempt.transaction_id)
    result = await _settled(service, attempt.transaction_id)
    assert result.status == SettlementStatus.COMPLETED
    assert service.status(OWNER, attempt.transaction_id).status == "completed"
    assert store.carts_cleared == [OWNER]
    assert len(notifier.sent) == 1


@pytest.mark.asyncio
async def test_double_submit_reuses_order_and_is_blocked_while_processing(service, store):
    attempt = await service.checkout(OWNER, checkout_request())
    with pytest.raises(AttemptInFlightException):
        await service.checkout(OWNER, checkout_request())
    assert len(store.orders) == 1
    service.cancel(OWNER, attempt.transaction_id)


@pytest.mark.asyncio
async def test_retry_resumes_order_with_original_goodwill(service, store):
    first = await service.checkout(OWNER, checkout_request())
    service.cancel(OWNER, first.transaction_id)
    original = store.orders[first.order_id]

    # a fresh draw would differ from the stored value
    service.goodwill.min_minor = service.goodwill.max_minor = 80
    retry = await service.checkout(
        "user-1",
        checkout_request(session_id="sess-2", flow=CheckoutFlow.RETRY, retry_order_id=first.order_id),
    )

    assert retry.order_id == first.order_id
    assert retry.transaction_id != first.transaction_id
    assert retry.amount == original.total
    assert store.orders[first.order_id].price.goodwill_discount == Decimal("0.37")

    store.mark_verified(retry.transaction_id)
    await _settled(service, retry.transaction_id)
    assert store.carts_cleared == []


@pytest.mark.asyncio
async def test_retry_without_remembered_order_loses_context(service):
    with pytest.raises(RetryContextLostException):
        await service.checkout(OWNER, checkout_request(flow=CheckoutFlow.RETRY))


@pytest.mark.asyncio
async def test_cart_entry_resets_buy_now_session(service, sessions):
    state = await sessions.load(OWNER, SESSION)
    state.flow = CheckoutFlow.BUY_NOW
    state.goodwill_discount = Decimal("0.99")
    await sessions.save(state)

    attempt = await service.checkout(OWNER, checkout_request())
    assert attempt.amount == Decimal("998.63")
    service.cancel(OWNER, attempt.transaction_id)


@pytest.mark.asyncio
async def test_wallet_top_up_confirms_and_credits(service, store):
    attempt = await service.start_top_up(OWNER, Decimal("500"))
    assert attempt.order_id is None
    assert "am=500.00" in attempt.external_reference

    store.mark_wallet_load(attempt.transaction_id, "completed")
    result = await _settled(service, attempt.transaction_id)
    assert result.status == SettlementStatus.COMPLETED
    assert await service.wallet_balance(OWNER) == Decimal("500.00")
    assert store.carts_cleared == []


@pytest.mark.asyncio
async def test_wallet_top_up_bounds(service):
    with pytest.raises(CheckoutValidationException):
        await service.start_top_up(OWNER, Decimal("5"))
    with pytest.raises(CheckoutValidationException):
        await service.start_top_up(OWNER, Decimal("50000.01"))


@pytest.mark.asyncio
async def test_client_cannot_price_a_referral_discount(service, store):
    request = CheckoutRequest.model_validate(
        {**checkout_request().model_dump(), "referral_discount": "100000"}
    )
    attempt = await service.checkout(OWNER, request)

    assert attempt.amount == Decimal("998.63")
    assert attempt.method == PaymentMethod.EXTERNAL
    assert store.orders[attempt.order_id].price.referral_discount == Decimal("0.00")
    service.cancel(OWNER, attempt.transaction_id)


@pytest.mark.asyncio
async def test_checkout_settles_the_store_price(service, store):
    store.set_product_price("p1", Decimal("1099"))
    attempt = await service.checkout(OWNER, checkout_request(items=[item(price="1.00")]))

    assert attempt.amount == Decimal("1098.63")
    assert "am=1098.63" in attempt.external_reference
    service.cancel(OWNER, attempt.transaction_id)


@pytest.mark.asyncio
async def test_transactions_are_private_to_their_owner(service):
    attempt = await service.checkout(OWNER, checkout_request())

    for peek in (service.status, service.attempt, service.cancel):
        with pytest.raises(TransactionNotFoundException):
            peek("someone-else", attempt.transaction_id)

    assert service.status(OWNER, attempt.transaction_id).status == "processing"
    service.cancel(OWNER, attempt.transaction_id)


@pytest.mark.asyncio
async def test_wallet_balance_outage_is_rejected(service, store):
    store.fail_next("get_wallet_balance")
    with pytest.raises(SettlementRejectedException):
        await service.wallet_balance(OWNER)
