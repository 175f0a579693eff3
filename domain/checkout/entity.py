"""
结算领域实体 - 订单快照、价格明细、支付尝试与结算结果
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Any, Iterable, Iterator, Optional

from domain.common.exceptions import CheckoutValidationException

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_money(value: Any) -> Decimal:
    """Coerce to a 2-place Decimal (floats go through str to avoid binary noise)."""
    if isinstance(value, float):
        value = str(value)
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def new_transaction_id() -> str:
    """Client-generated transaction id, created once per checkout attempt."""
    return f"TXN{uuid.uuid4().hex[:12].upper()}"


class ShippingMethod(str, Enum):
    STANDARD = "standard"
    EXPRESS = "express"
    PRIORITY = "priority"


class OrderStatus(str, Enum):
    """订单状态枚举"""
    PENDING = "pending"
    PAYMENT_PROCESSING = "payment_processing"
    COMPLETED = "completed"
    FAILED = "failed"


class CheckoutFlow(str, Enum):
    CART = "cart"
    BUY_NOW = "buy_now"
    RETRY = "retry"


class PaymentMethod(str, Enum):
    WALLET = "wallet"
    EXTERNAL = "external"
    WALLET_EXTERNAL = "wallet+external"


class AttemptPurpose(str, Enum):
    ORDER = "order"
    WALLET_LOAD = "wallet_load"


class VerificationStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class SettlementStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


class ReferralEligibility(str, Enum):
    ELIGIBLE = "eligible"
    ALREADY_ATTACHED = "already_attached"
    INELIGIBLE = "ineligible"


class ReferralAttachOutcome(str, Enum):
    SUCCESS = "success"
    INVALID_OR_SELF = "invalid_or_self"
    ALREADY_HAS_REFERRER_OR_FIRST_ORDER = "already_has_referrer_or_first_order"


@dataclass(frozen=True)
class LineItem:
    product_id: str
    quantity: int
    unit_price: Decimal
    variant_id: Optional[str] = None
    combo_id: Optional[str] = None

    def __post_init__(self):
        if self.quantity <= 0:
            raise CheckoutValidationException(
                f"Quantity must be positive: {self.quantity}", field="quantity"
            )
        price = to_money(self.unit_price)
        if price < 0:
            raise CheckoutValidationException(
                f"Unit price must not be negative: {price}", field="unit_price"
            )
        object.__setattr__(self, "unit_price", price)

    @property
    def line_total(self) -> Decimal:
        return to_money(self.unit_price * self.quantity)

    def to_dict(self) -> dict[str, Any]:
        return {
            "product_id": self.product_id,
            "variant_id": self.variant_id,
            "combo_id": self.combo_id,
            "quantity": self.quantity,
            "unit_price": str(self.unit_price),
        }


@dataclass(frozen=True)
class CartSnapshot:
    """
    购物车快照 - 交给订单管理器后不可变

    来源：持久购物车、单个"立即购买"商品、或重试订单的商品列表。
    """

    items: tuple[LineItem, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "items", tuple(self.items))

    @classmethod
    def of(cls, items: Iterable[LineItem]) -> "CartSnapshot":
        return cls(items=tuple(items))

    def __iter__(self) -> Iterator[LineItem]:
        return iter(self.items)

    def __len__(self) -> int:
        return len(self.items)

    @property
    def is_empty(self) -> bool:
        return not self.items


@dataclass(frozen=True)
class ShippingAddress:
    full_name: str
    phone: str
    address: str
    city: str
    state: str
    pincode: str
    country: str = "India"
    label: Optional[str] = None

    REQUIRED = ("full_name", "phone", "address", "city", "state", "pincode")

    def validate(self) -> None:
        missing = [name for name in self.REQUIRED if not str(getattr(self, name) or "").strip()]
        if missing:
            raise CheckoutValidationException(
                "Please select a delivery address",
                field="shipping_address",
                details={"missing": missing},
                message_key="checkout.address.missing",
            )

    def to_dict(self) -> dict[str, Any]:
        return {
            "full_name": self.full_name,
            "phone": self.phone,
            "address": self.address,
            "city": self.city,
            "state": self.state,
            "pincode": self.pincode,
            "country": self.country,
            "label": self.label,
        }


@dataclass(frozen=True)
class PriceBreakdown:
    """
    价格明细

    业务规则：
    total = max(0, subtotal + shipping_cost - coupon - referral - goodwill)
    """

    subtotal: Decimal
    shipping_cost: Decimal
    coupon_discount: Decimal
    referral_discount: Decimal
    goodwill_discount: Decimal
    total: Decimal

    def __post_init__(self):
        for name in ("subtotal", "shipping_cost", "coupon_discount",
                     "referral_discount", "goodwill_discount", "total"):
            object.__setattr__(self, name, to_money(getattr(self, name)))
        expected = self.expected_total(
            self.subtotal, self.shipping_cost,
            self.coupon_discount + self.referral_discount + self.goodwill_discount,
        )
        if self.total != expected:
            raise CheckoutValidationException(
                f"Total {self.total} does not match breakdown (expected {expected})",
                field="total",
            )

    @staticmethod
    def expected_total(subtotal: Decimal, shipping_cost: Decimal, discount_sum: Decimal) -> Decimal:
        return max(ZERO, to_money(subtotal + shipping_cost - discount_sum))

    @classmethod
    def of(
        cls,
        subtotal: Any,
        shipping_cost: Any,
        coupon_discount: Any = ZERO,
        referral_discount: Any = ZERO,
        goodwill_discount: Any = ZERO,
    ) -> "PriceBreakdown":
        values = [to_money(v) for v in (subtotal, shipping_cost, coupon_discount,
                                          referral_discount, goodwill_discount)]
        total = cls.expected_total(values[0], values[1], values[2] + values[3] + values[4])
        return cls(*values, total=total)

    @property
    def discount_total(self) -> Decimal:
        return self.coupon_discount + self.referral_discount + self.goodwill_discount

    def to_dict(self) -> dict[str, str]:
        return {
            "subtotal": str(self.subtotal),
            "shipping_cost": str(self.shipping_cost),
            "coupon_discount": str(self.coupon_discount),
            "referral_discount": str(self.referral_discount),
            "goodwill_discount": str(self.goodwill_discount),
            "total": str(self.total),
        }


@dataclass(frozen=True)
class Order:
    """
    订单 - 由数据存储拥有，引擎只持有只读引用
    """

    id: str
    display_id: str
    owner_id: str
    items: CartSnapshot
    shipping_address: Optional[ShippingAddress]
    shipping_method: ShippingMethod
    price: PriceBreakdown
    transaction_id: str
    status: OrderStatus = OrderStatus.PENDING
    payment_deep_link: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def total(self) -> Decimal:
        return self.price.total

    @property
    def is_paid(self) -> bool:
        return self.status == OrderStatus.COMPLETED


@dataclass(frozen=True)
class PaymentAttempt:
    """
    支付尝试

    业务规则：
    1. wallet_amount_used <= amount
    2. remaining_amount == amount - wallet_amount_used
    3. auto_complete 仅适用于钱包全额支付
    """

    transaction_id: str
    order_id: Optional[str]
    owner_id: str
    amount: Decimal
    wallet_amount_used: Decimal
    remaining_amount: Decimal
    method: PaymentMethod
    external_reference: Optional[str] = None
    auto_complete: bool = False
    purpose: AttemptPurpose = AttemptPurpose.ORDER
    should_clear_cart: bool = True
    display_order_id: Optional[str] = None
    wallet_transaction_id: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self):
        for name in ("amount", "wallet_amount_used", "remaining_amount"):
            object.__setattr__(self, name, to_money(getattr(self, name)))
        if self.wallet_amount_used < 0 or self.wallet_amount_used > self.amount:
            raise CheckoutValidationException(
                f"Wallet amount {self.wallet_amount_used} outside [0, {self.amount}]",
                field="wallet_amount_used",
            )
        if self.remaining_amount != self.amount - self.wallet_amount_used:
            raise CheckoutValidationException(
                "remaining_amount must equal amount - wallet_amount_used",
                field="remaining_amount",
            )
        if self.auto_complete and self.method != PaymentMethod.WALLET:
            raise CheckoutValidationException(
                "Only wallet-only attempts can auto-complete", field="auto_complete"
            )

    @property
    def is_wallet_only(self) -> bool:
        return self.method == PaymentMethod.WALLET


@dataclass(frozen=True)
class SettlementResult:
    """终态结算结果 - 一经产生不可变"""

    status: SettlementStatus
    transaction_id: str
    order_id: Optional[str] = None
    order: Optional[Order] = None
    verified_data: Optional[dict[str, Any]] = None
    reason: Optional[str] = None
    message: Optional[str] = None

    @classmethod
    def completed(
        cls,
        attempt: PaymentAttempt,
        *,
        order: Optional[Order] = None,
        verified_data: Optional[dict[str, Any]] = None,
    ) -> "SettlementResult":
        return cls(
            status=SettlementStatus.COMPLETED,
            transaction_id=attempt.transaction_id,
            order_id=attempt.order_id,
            order=order,
            verified_data=verified_data,
        )

    @classmethod
    def failed(cls, attempt: PaymentAttempt, reason: str, *, message: Optional[str] = None) -> "SettlementResult":
        return cls(
            status=SettlementStatus.FAILED,
            transaction_id=attempt.transaction_id,
            order_id=attempt.order_id,
            reason=reason,
            message=message,
        )

    @classmethod
    def timed_out(cls, attempt: PaymentAttempt, message: str) -> "SettlementResult":
        return cls(
            status=SettlementStatus.TIMED_OUT,
            transaction_id=attempt.transaction_id,
            order_id=attempt.order_id,
            reason="timeout",
            message=message,
        )


@dataclass(frozen=True)
class ReferralAttachment:
    user_id: str
    referred_by: Optional[str] = None
    first_order_completed: bool = False

    def eligibility(self) -> ReferralEligibility:
        if self.referred_by:
            # Attachment is permanent, whatever happens to later orders
            return ReferralEligibility.ALREADY_ATTACHED
        if self.first_order_completed:
            return ReferralEligibility.INELIGIBLE
        return ReferralEligibility.ELIGIBLE


@dataclass(frozen=True)
class CheckoutContext:
    """
    结算上下文 - 取代散落在会话存储中的重试/立即购买标记

    由外层适配器（会话存储）负责持久化与恢复，核心只接收该值对象。
    """

    owner_id: str
    session_id: str
    flow: CheckoutFlow = CheckoutFlow.CART
    items: CartSnapshot = field(default_factory=CartSnapshot)
    shipping_address: Optional[ShippingAddress] = None
    shipping_method: ShippingMethod = ShippingMethod.STANDARD
    transaction_id: str = field(default_factory=new_transaction_id)
    coupon_code: Optional[str] = None
    coupon_discount: Decimal = ZERO
    goodwill_discount: Optional[Decimal] = None
    retry_order_id: Optional[str] = None

    @property
    def is_retry(self) -> bool:
        return self.flow == CheckoutFlow.RETRY

    @property
    def should_clear_cart(self) -> bool:
        # Buy-now and retry flows never touch the persistent cart
        return self.flow == CheckoutFlow.CART

    def with_goodwill(self, value: Decimal) -> "CheckoutContext":
        return replace(self, goodwill_discount=to_money(value))

    def with_coupon(self, code: Optional[str], discount: Decimal) -> "CheckoutContext":
        return replace(self, coupon_code=code, coupon_discount=to_money(discount))
