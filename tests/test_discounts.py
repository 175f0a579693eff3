import random
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from application.dtos.checkout import CheckoutSessionState, CouponRecord
from application.services.discount_service import (
    CouponService,
    GoodwillAllocator,
    ReferralService,
    coupon_discount_amount,
)
from domain.checkout.entity import (
    CartSnapshot,
    Order,
    PriceBreakdown,
    ReferralAttachOutcome,
    ReferralAttachment,
    ReferralEligibility,
    ShippingMethod,
)
from domain.common.exceptions import CheckoutValidationException, SettlementRejectedException


def _coupon(**overrides) -> CouponRecord:
    data = {"code": "SAVE50", "name": "Flat 50", "type": "fixed_amount", "value": Decimal("50")}
    data.update(overrides)
    return CouponRecord(**data)


def test_goodwill_is_drawn_once_per_session():
    allocator = GoodwillAllocator(min_minor=1, max_minor=99, rng=random.Random(3))
    state = CheckoutSessionState(owner_id="u", session_id="s")
    first = allocator.for_session(state)
    assert Decimal("0.01") <= first <= Decimal("0.99")
    assert allocator.for_session(state) == first
    assert state.goodwill_discount == first


def test_goodwill_replays_retry_order_value():
    allocator = GoodwillAllocator(min_minor=50, max_minor=50)
    state = CheckoutSessionState(owner_id="u", session_id="s", goodwill_discount=Decimal("0.50"))
    order = Order(
        id="ord-1",
        display_id="ORD000001",
        owner_id="u",
        items=CartSnapshot(),
        shipping_address=None,
        shipping_method=ShippingMethod.STANDARD,
        price=PriceBreakdown.of("10", "0", goodwill_discount="0.12"),
        transaction_id="TXN1",
    )

    assert allocator.for_session(state, retry_order=order) == Decimal("0.12")
    assert state.goodwill_discount == Decimal("0.12")


def test_goodwill_bounds_validated():
    with pytest.raises(ValueError):
        GoodwillAllocator(min_minor=0, max_minor=10)


def test_coupon_discount_amount_caps():
    pct = _coupon(type="percentage", value=Decimal("20"), max_discount_amount=Decimal("100"))
    assert coupon_discount_amount(pct, Decimal("300")) == Decimal("60.00")
    assert coupon_discount_amount(pct, Decimal("999")) == Decimal("100.00")
    assert coupon_discount_amount(_coupon(value=Decimal("80")), Decimal("30")) == Decimal("30.00")


@pytest.mark.asyncio
async def test_coupon_validation_outcomes(store):
    now = datetime.now(timezone.utc)
    store.add_coupon(_coupon())
    store.add_coupon(_coupon(code="OLD", end_date=now - timedelta(days=1)))
    store.add_coupon(_coupon(code="SOON", start_date=now + timedelta(days=1)))
    store.add_coupon(_coupon(code="USED", usage_limit=5, usage_count=5))
    store.add_coupon(_coupon(code="BIG", min_cart_value=Decimal("500")))
    coupons = CouponService(store)

    ok = await coupons.validate(" save50 ", Decimal("999"))
    assert ok.valid and ok.discount == Decimal("50.00")
    assert (await coupons.validate("NOPE")).message == "Invalid coupon code"
    assert (await coupons.validate("OLD")).message == "Coupon code has expired"
    assert (await coupons.validate("SOON")).message == "Coupon code is not yet active"
    assert (await coupons.validate("USED")).message == "Coupon code usage limit reached"
    short = await coupons.validate("BIG", Decimal("450"))
    assert not short.valid and short.message == "Add 50.00 more to use this coupon"


@pytest.mark.asyncio
async def test_coupon_blank_and_store_failure(store):
    coupons = CouponService(store)
    with pytest.raises(CheckoutValidationException):
        await coupons.validate("   ")
    store.fail_next("validate_coupon")
    result = await coupons.validate("SAVE50")
    assert not result.valid
    assert result.message == "Failed to validate coupon code"


def test_referral_eligibility_rules():
    assert ReferralAttachment("u").eligibility() == ReferralEligibility.ELIGIBLE
    assert ReferralAttachment("u", referred_by="r").eligibility() == ReferralEligibility.ALREADY_ATTACHED
    assert ReferralAttachment("u", referred_by="r", first_order_completed=True).eligibility() == ReferralEligibility.ALREADY_ATTACHED
    assert ReferralAttachment("u", first_order_completed=True).eligibility() == ReferralEligibility.INELIGIBLE


@pytest.mark.asyncio
async def test_referral_attach_flow(store):
    store.add_referrer("ref-1", "FRIEND", name="Ravi")
    referrals = ReferralService(store)

    assert await referrals.check_eligibility("u") == ReferralEligibility.ELIGIBLE
    assert await referrals.attach("u", "nobody") == ReferralAttachOutcome.INVALID_OR_SELF
    assert await referrals.attach("ref-1", "friend") == ReferralAttachOutcome.INVALID_OR_SELF
    assert await referrals.attach("u", "friend") == ReferralAttachOutcome.SUCCESS
    assert await referrals.attach("u", "friend") == ReferralAttachOutcome.ALREADY_HAS_REFERRER_OR_FIRST_ORDER
    assert await referrals.check_eligibility("u") == ReferralEligibility.ALREADY_ATTACHED

    validation = await referrals.validate_referral_code("friend")
    assert validation.valid and validation.referrer_name == "Ravi"


@pytest.mark.asyncio
async def test_referral_store_failures(store):
    referrals = ReferralService(store)
    store.fail_next("get_referral_status")
    assert await referrals.check_eligibility("u") == ReferralEligibility.INELIGIBLE
    store.fail_next("attach_referral_code_late")
    with pytest.raises(SettlementRejectedException):
        await referrals.attach("u", "FRIEND")
    store.fail_next("validate_referral_code")
    assert (await referrals.validate_referral_code("FRIEND")).valid is False
    with pytest.raises(CheckoutValidationException):
        await referrals.attach("u", "")
