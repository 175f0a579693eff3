"""
定价引擎 - 纯函数，无 I/O

业务规则：
1. subtotal = Σ(unit_price × quantity)
2. 运费由配送方式决定（费用表可配置）
3. total = max(0, subtotal + shipping - coupon - referral - goodwill)，保留两位小数
"""
from __future__ import annotations

from decimal import Decimal
from typing import Any, Mapping, Optional

from domain.checkout.entity import (
    ZERO,
    CartSnapshot,
    PriceBreakdown,
    ShippingMethod,
    to_money,
)
from domain.common.exceptions import CheckoutValidationException

DEFAULT_SHIPPING_FEES: Mapping[ShippingMethod, Decimal] = {
    ShippingMethod.STANDARD: Decimal("0.00"),
    ShippingMethod.EXPRESS: Decimal("99.00"),
    ShippingMethod.PRIORITY: Decimal("199.00"),
}


def shipping_fee(
    method: ShippingMethod,
    fees: Optional[Mapping[ShippingMethod, Decimal]] = None,
) -> Decimal:
    table = fees if fees is not None else DEFAULT_SHIPPING_FEES
    try:
        return to_money(table[ShippingMethod(method)])
    except (KeyError, ValueError):
        raise CheckoutValidationException(
            f"Unknown shipping method: {method}", field="shipping_method"
        ) from None


def compute_subtotal(cart: CartSnapshot) -> Decimal:
    return to_money(sum((item.line_total for item in cart), ZERO))


def _non_negative(name: str, value: Any) -> Decimal:
    amount = to_money(value if value is not None else ZERO)
    if amount < 0:
        raise CheckoutValidationException(f"{name} must not be negative", field=name)
    return amount


def compute_breakdown(
    cart: CartSnapshot,
    shipping_method: ShippingMethod,
    coupon_discount: Any = ZERO,
    referral_discount: Any = ZERO,
    goodwill_discount: Any = ZERO,
    *,
    fees: Optional[Mapping[ShippingMethod, Decimal]] = None,
) -> PriceBreakdown:
    """Price a cart snapshot. Deterministic for identical inputs."""
    return PriceBreakdown.of(
        subtotal=compute_subtotal(cart),
        shipping_cost=shipping_fee(shipping_method, fees),
        coupon_discount=_non_negative("coupon_discount", coupon_discount),
        referral_discount=_non_negative("referral_discount", referral_discount),
        goodwill_discount=_non_negative("goodwill_discount", goodwill_discount),
    )


def fees_from_settings(shipping: Any) -> dict[ShippingMethod, Decimal]:
    """Build the fee table from a settings object exposing standard/express/priority."""
    return {method: to_money(getattr(shipping, method.value)) for method in ShippingMethod}
