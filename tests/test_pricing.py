from decimal import Decimal

import pytest

from domain.checkout.entity import CartSnapshot, LineItem, PriceBreakdown, ShippingMethod
from domain.checkout.pricing import compute_breakdown, compute_subtotal, shipping_fee
from domain.common.exceptions import CheckoutValidationException


def _cart(*prices_and_qty):
    return CartSnapshot.of(
        LineItem(product_id=f"p{i}", quantity=qty, unit_price=Decimal(price))
        for i, (price, qty) in enumerate(prices_and_qty)
    )


def test_discounts_stack_on_subtotal():
    price = compute_breakdown(_cart(("999.00", 1)), ShippingMethod.STANDARD, "50.00", "0", "0.37")
    assert price.subtotal == Decimal("999.00")
    assert price.discount_total == Decimal("50.37")
    assert price.total == Decimal("948.63")


def test_total_is_floored_at_zero():
    price = compute_breakdown(_cart(("999.00", 1)), ShippingMethod.STANDARD, "1000.00", "49.00", "0.37")
    assert price.total == Decimal("0.00")


def test_shipping_fee_added_per_method():
    cart = _cart(("100.00", 2))
    assert compute_breakdown(cart, ShippingMethod.EXPRESS).total == Decimal("299.00")
    assert compute_breakdown(cart, ShippingMethod.PRIORITY).total == Decimal("399.00")
    custom = {m: Decimal("10") for m in ShippingMethod}
    assert compute_breakdown(cart, ShippingMethod.PRIORITY, fees=custom).shipping_cost == Decimal("10.00")


def test_subtotal_rounds_half_up_to_cents():
    assert compute_subtotal(_cart(("0.335", 3))) == Decimal("1.02")


def test_same_inputs_same_breakdown():
    cart = _cart(("12.50", 3), ("7.25", 1))
    first = compute_breakdown(cart, ShippingMethod.EXPRESS, "5", "2", "0.11")
    second = compute_breakdown(cart, ShippingMethod.EXPRESS, "5", "2", "0.11")
    assert first == second


def test_negative_discount_rejected():
    with pytest.raises(CheckoutValidationException):
        compute_breakdown(_cart(("10", 1)), ShippingMethod.STANDARD, "-1")


def test_unknown_shipping_method_rejected():
    with pytest.raises(CheckoutValidationException):
        shipping_fee("teleport")


def test_breakdown_rejects_inconsistent_total():
    with pytest.raises(CheckoutValidationException):
        PriceBreakdown(
            subtotal=Decimal("10"),
            shipping_cost=Decimal("0"),
            coupon_discount=Decimal("0"),
            referral_discount=Decimal("0"),
            goodwill_discount=Decimal("0"),
            total=Decimal("9"),
        )


def test_line_item_validation():
    with pytest.raises(CheckoutValidationException):
        LineItem(product_id="p", quantity=0, unit_price=Decimal("1"))
    with pytest.raises(CheckoutValidationException):
        LineItem(product_id="p", quantity=1, unit_price=Decimal("-1"))
