"""
Discount & referral services.

Coupon validation and referral attachment go through the store; the goodwill
discount is drawn locally once per checkout session and replayed verbatim
when an order is retried.
"""
from __future__ import annotations

import random
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Optional

from application.dtos.checkout import CheckoutSessionState, CouponRecord, CouponValidation, ReferralCodeValidation
from application.ports.checkout_store import CheckoutStore
from core.logging_config import get_logger
from domain.checkout.entity import (
    ZERO,
    Order,
    ReferralAttachOutcome,
    ReferralEligibility,
    to_money,
)
from domain.common.exceptions import (
    CheckoutValidationException,
    SettlementRejectedException,
    StoreUnavailableException,
)


logger = get_logger(__name__)

INVALID_COUPON = "Invalid coupon code"
COUPON_LOOKUP_FAILED = "Failed to validate coupon code"


def _require_code(code: Optional[str], *, field: str, message: str) -> str:
    cleaned = (code or "").strip()
    if not cleaned:
        raise CheckoutValidationException(message, field=field, message_key=f"checkout.{field}.missing")
    return cleaned


def coupon_discount_amount(coupon: CouponRecord, subtotal: Decimal) -> Decimal:
    """Amount a coupon takes off ``subtotal``, capped by max_discount and the subtotal itself."""
    if coupon.type == "percentage":
        amount = subtotal * coupon.value / Decimal(100)
    else:
        amount = coupon.value
    if coupon.max_discount_amount is not None and amount > coupon.max_discount_amount:
        amount = coupon.max_discount_amount
    return to_money(max(ZERO, min(amount, subtotal)))


class CouponService:
    def __init__(self, store: CheckoutStore, *, clock: Callable[[], datetime] | None = None) -> None:
        self.store = store
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _rejection(self, coupon: CouponRecord) -> Optional[str]:
        now = self._clock()
        if not coupon.is_active:
            return INVALID_COUPON
        if coupon.end_date and coupon.end_date < now:
            return "Coupon code has expired"
        if coupon.start_date and coupon.start_date > now:
            return "Coupon code is not yet active"
        if coupon.usage_limit and coupon.usage_count >= coupon.usage_limit:
            return "Coupon code usage limit reached"
        return None

    async def validate(self, code: Optional[str], subtotal: Optional[Decimal] = None) -> CouponValidation:
        cleaned = _require_code(code, field="coupon_code", message="Please enter a coupon code")
        try:
            coupon = await self.store.validate_coupon(cleaned.lower())
        except StoreUnavailableException as exc:
            logger.warning("coupon_validation_failed", code=cleaned, error=exc.message)
            return CouponValidation(valid=False, code=cleaned, message=COUPON_LOOKUP_FAILED)

        if coupon is None:
            return CouponValidation(valid=False, code=cleaned, message=INVALID_COUPON)
        reason = self._rejection(coupon)
        if reason:
            return CouponValidation(valid=False, code=cleaned, name=coupon.name, message=reason)

        discount = None
        if subtotal is not None:
            if coupon.min_cart_value and subtotal < coupon.min_cart_value:
                return CouponValidation(
                    valid=False,
                    code=cleaned,
                    name=coupon.name,
                    message=f"Add {to_money(coupon.min_cart_value - subtotal)} more to use this coupon",
                )
            discount = coupon_discount_amount(coupon, subtotal)
        logger.info("coupon_validated", code=cleaned, discount=str(discount) if discount is not None else None)
        return CouponValidation(valid=True, code=coupon.code, name=coupon.name, discount=discount)


class GoodwillAllocator:
    """
    会话级随机优惠

    业务规则：
    1. 每个结算会话只抽取一次，重新报价沿用同一数值
    2. 重试订单使用原订单记录的数值
    3. 会话清空（新订单）后重新抽取
    """

    def __init__(self, *, min_minor: int = 1, max_minor: int = 99, rng: random.Random | None = None) -> None:
        if not 0 < min_minor <= max_minor:
            raise ValueError("goodwill bounds must satisfy 0 < min_minor <= max_minor")
        self.min_minor = min_minor
        self.max_minor = max_minor
        self._rng = rng or random.SystemRandom()

    def draw(self) -> Decimal:
        return to_money(Decimal(self._rng.randint(self.min_minor, self.max_minor)) / Decimal(100))

    def for_session(self, state: CheckoutSessionState, retry_order: Optional[Order] = None) -> Decimal:
        """Return the goodwill value for this session; the caller persists ``state``."""
        if retry_order is not None:
            state.goodwill_discount = retry_order.price.goodwill_discount
            return retry_order.price.goodwill_discount
        if state.goodwill_discount is None:
            state.goodwill_discount = self.draw()
            logger.debug("goodwill_drawn", session_id=state.session_id, amount=str(state.goodwill_discount))
        return to_money(state.goodwill_discount)


class ReferralService:
    def __init__(self, store: CheckoutStore) -> None:
        self.store = store

    async def check_eligibility(self, user_id: str) -> ReferralEligibility:
        try:
            status = await self.store.get_referral_status(user_id)
        except StoreUnavailableException as exc:
            logger.warning("referral_status_failed", user_id=user_id, error=exc.message)
            return ReferralEligibility.INELIGIBLE
        if status is None:
            return ReferralEligibility.ELIGIBLE
        return status.eligibility()

    async def attach(self, user_id: str, code: Optional[str]) -> ReferralAttachOutcome:
        cleaned = _require_code(code, field="referral_code", message="Please enter a referral code")
        try:
            outcome = await self.store.attach_referral_code_late(user_id, cleaned.upper())
        except StoreUnavailableException as exc:
            raise SettlementRejectedException(
                "Could not apply referral code, please try again",
                procedure="attach_referral_code_late",
            ) from exc
        logger.info("referral_attach", user_id=user_id, outcome=outcome.value)
        return outcome

    async def validate_referral_code(self, code: Optional[str]) -> ReferralCodeValidation:
        cleaned = _require_code(code, field="referral_code", message="Please enter a referral code")
        try:
            return await self.store.validate_referral_code(cleaned.upper())
        except StoreUnavailableException as exc:
            logger.warning("referral_validation_failed", error=exc.message)
            return ReferralCodeValidation(valid=False)
