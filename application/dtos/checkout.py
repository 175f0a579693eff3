"""
Checkout DTOs (Pydantic v2) used at application boundaries.

Store-facing results mirror what the remote procedures return; request/response
models are what the HTTP layer accepts and renders.
"""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.types import condecimal

from domain.checkout.entity import (
    CartSnapshot,
    CheckoutFlow,
    LineItem,
    PaymentAttempt,
    PriceBreakdown,
    SettlementResult,
    ShippingAddress,
    ShippingMethod,
)


# ---------------------------------------------------------------- store side

class CouponRecord(BaseModel):
    """Row of the discounts table as returned by ``validate_coupon``."""

    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    code: str
    name: Optional[str] = None
    type: Literal["percentage", "fixed_amount", "cart_value"] = "fixed_amount"
    value: Decimal
    min_cart_value: Optional[Decimal] = None
    max_discount_amount: Optional[Decimal] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    usage_limit: Optional[int] = None
    usage_count: int = 0
    is_active: bool = True


class CouponValidation(BaseModel):
    valid: bool
    code: Optional[str] = None
    name: Optional[str] = None
    discount: Optional[Decimal] = None
    message: Optional[str] = None


class ReferralCodeValidation(BaseModel):
    valid: bool
    referrer_name: Optional[str] = None


class ProcessPaymentResult(BaseModel):
    model_config = ConfigDict(extra="ignore")

    success: bool
    wallet_transaction_id: Optional[str] = None
    payment_deep_link: Optional[str] = None
    message: Optional[str] = None
    error: Optional[str] = None


class VerifyPaymentResult(BaseModel):
    model_config = ConfigDict(extra="ignore")

    success: bool
    message: Optional[str] = None


class WalletLoad(BaseModel):
    transaction_id: str
    owner_id: str
    amount: Decimal
    payment_deep_link: Optional[str] = None


# ---------------------------------------------------------------- HTTP side

class LineItemIn(BaseModel):
    product_id: str
    quantity: int = Field(gt=0)
    unit_price: condecimal(ge=0)  # type: ignore[valid-type]
    variant_id: Optional[str] = None
    combo_id: Optional[str] = None

    def to_domain(self) -> LineItem:
        return LineItem(
            product_id=self.product_id,
            quantity=self.quantity,
            unit_price=self.unit_price,
            variant_id=self.variant_id,
            combo_id=self.combo_id,
        )


class ShippingAddressIn(BaseModel):
    full_name: str
    phone: str
    address: str
    city: str
    state: str
    pincode: str
    country: str = "India"
    label: Optional[str] = None

    def to_domain(self) -> ShippingAddress:
        return ShippingAddress(**self.model_dump())


class QuoteRequest(BaseModel):
    session_id: str
    items: list[LineItemIn] = Field(default_factory=list)
    shipping_method: ShippingMethod = ShippingMethod.STANDARD
    coupon_code: Optional[str] = None

    def cart(self) -> CartSnapshot:
        return CartSnapshot.of(item.to_domain() for item in self.items)


class CheckoutRequest(QuoteRequest):
    flow: CheckoutFlow = CheckoutFlow.CART
    shipping_address: Optional[ShippingAddressIn] = None
    retry_order_id: Optional[str] = None
    wallet_amount: condecimal(ge=0) = Decimal("0")  # type: ignore[valid-type]

    @field_validator("coupon_code")
    @classmethod
    def _strip_coupon(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        return v.strip() or None


class CodeRequest(BaseModel):
    code: str


class CouponValidateRequest(CodeRequest):
    items: list[LineItemIn] = Field(default_factory=list)


class TopUpRequest(BaseModel):
    amount: condecimal(gt=0)  # type: ignore[valid-type]


class QuoteView(BaseModel):
    subtotal: Decimal
    shipping_cost: Decimal
    coupon_discount: Decimal
    referral_discount: Decimal
    goodwill_discount: Decimal
    total: Decimal
    currency: str = "INR"

    @classmethod
    def from_breakdown(cls, price: PriceBreakdown, currency: str = "INR") -> "QuoteView":
        return cls(
            subtotal=price.subtotal,
            shipping_cost=price.shipping_cost,
            coupon_discount=price.coupon_discount,
            referral_discount=price.referral_discount,
            goodwill_discount=price.goodwill_discount,
            total=price.total,
            currency=currency,
        )


class AttemptView(BaseModel):
    transaction_id: str
    order_id: Optional[str] = None
    display_order_id: Optional[str] = None
    amount: Decimal
    wallet_amount_used: Decimal
    remaining_amount: Decimal
    method: str
    purpose: str
    auto_complete: bool
    external_reference: Optional[str] = None

    @classmethod
    def from_attempt(cls, attempt: PaymentAttempt) -> "AttemptView":
        return cls(
            transaction_id=attempt.transaction_id,
            order_id=attempt.order_id,
            display_order_id=attempt.display_order_id,
            amount=attempt.amount,
            wallet_amount_used=attempt.wallet_amount_used,
            remaining_amount=attempt.remaining_amount,
            method=attempt.method.value,
            purpose=attempt.purpose.value,
            auto_complete=attempt.auto_complete,
            external_reference=attempt.external_reference,
        )


class SettlementView(BaseModel):
    transaction_id: str
    status: str
    order_id: Optional[str] = None
    reason: Optional[str] = None
    message: Optional[str] = None
    verified_data: Optional[dict[str, Any]] = None

    @classmethod
    def processing(cls, transaction_id: str, order_id: Optional[str] = None) -> "SettlementView":
        return cls(transaction_id=transaction_id, status="processing", order_id=order_id)

    @classmethod
    def from_result(cls, result: SettlementResult) -> "SettlementView":
        return cls(
            transaction_id=result.transaction_id,
            status=result.status.value,
            order_id=result.order_id,
            reason=result.reason,
            message=result.message,
            verified_data=result.verified_data,
        )


# ---------------------------------------------------------------- adapters

class PaymentNotification(BaseModel):
    """Body of the fire-and-forget payment webhook."""

    transaction_id: str
    order_reference: str
    amount: Decimal
    timestamp: datetime


class CheckoutSessionState(BaseModel):
    """
    Per-session checkout flags persisted between requests.

    Cleared on completion or when a normal cart checkout is entered.
    """

    owner_id: str
    session_id: str
    flow: CheckoutFlow = CheckoutFlow.CART
    retry_order_id: Optional[str] = None
    buy_now_item: Optional[LineItemIn] = None
    goodwill_discount: Optional[Decimal] = None
    transaction_id: Optional[str] = None

    def reset_for_cart(self) -> "CheckoutSessionState":
        return CheckoutSessionState(owner_id=self.owner_id, session_id=self.session_id)
