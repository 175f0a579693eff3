"""
In-memory checkout store.

Same contract as the RPC store: each procedure is atomic (one asyncio lock),
order creation is idempotent per transaction id and the wallet debit fails
with ``insufficient_funds`` instead of going negative. Used when no store URL
is configured and as the test double.
"""
from __future__ import annotations

import asyncio
import itertools
from dataclasses import replace
from collections import Counter, defaultdict
from decimal import Decimal
from typing import Optional

from application.dtos.checkout import (
    CouponRecord,
    ProcessPaymentResult,
    ReferralCodeValidation,
    VerifyPaymentResult,
    WalletLoad,
)
from core.logging_config import get_logger
from domain.checkout.entity import (
    ZERO,
    CartSnapshot,
    CheckoutContext,
    Order,
    OrderStatus,
    PriceBreakdown,
    ReferralAttachOutcome,
    ReferralAttachment,
    ReferralEligibility,
    VerificationStatus,
    to_money,
)
from domain.checkout.pricing import compute_subtotal
from domain.common.exceptions import StoreUnavailableException
from shared.codes.checkout_codes import STORE_TRANSACTION_TO_INTERNAL, STORE_VERIFICATION_TO_INTERNAL


logger = get_logger(__name__)


class InMemoryCheckoutStore:
    def __init__(self, *, issue_wallet_receipts: bool = True) -> None:
        # False mimics a store that settles wallet-only payments without a receipt id
        self.issue_wallet_receipts = issue_wallet_receipts
        self._lock = asyncio.Lock()
        self._ids = itertools.count(1)
        self.orders: dict[str, Order] = {}
        self.orders_by_transaction: dict[str, str] = {}
        self.payment_verified: dict[str, str] = {}
        self.wallets: dict[str, Decimal] = defaultdict(lambda: ZERO)
        self.wallet_transactions: dict[str, dict] = {}
        self.coupons: dict[str, CouponRecord] = {}
        self.catalog: dict[str, Decimal] = {}
        self.referrals: dict[str, ReferralAttachment] = {}
        self.referral_codes: dict[str, str] = {}
        self.referrer_names: dict[str, str] = {}
        self.carts_cleared: list[str] = []
        self.calls: Counter[str] = Counter()
        self._failures: Counter[str] = Counter()

    # ------------------------------------------------------------ test helpers

    def fail_next(self, procedure: str, times: int = 1) -> None:
        """Make the next ``times`` calls of ``procedure`` raise StoreUnavailableException."""
        self._failures[procedure] += times

    def _enter(self, procedure: str) -> None:
        self.calls[procedure] += 1
        if self._failures[procedure] > 0:
            self._failures[procedure] -= 1
            raise StoreUnavailableException(f"{procedure} unavailable", procedure=procedure, status_code=503)

    def set_wallet_balance(self, owner_id: str, amount: Decimal) -> None:
        self.wallets[owner_id] = to_money(amount)

    def set_product_price(self, product_id: str, price: Decimal) -> None:
        self.catalog[product_id] = to_money(price)

    def add_coupon(self, coupon: CouponRecord) -> None:
        self.coupons[coupon.code.lower()] = coupon

    def add_referrer(self, user_id: str, code: str, name: Optional[str] = None) -> None:
        self.referral_codes[code.upper()] = user_id
        if name:
            self.referrer_names[user_id] = name

    def mark_verified(self, transaction_id: str, flag: str = "YES") -> None:
        self.payment_verified[transaction_id] = flag
        order_id = self.orders_by_transaction.get(transaction_id)
        if order_id and flag == "YES":
            self._set_status(order_id, OrderStatus.COMPLETED)
        elif order_id and flag in {"REJECTED", "FAILED"}:
            self._set_status(order_id, OrderStatus.FAILED)

    def mark_wallet_load(self, transaction_id: str, status: str = "completed") -> None:
        load = self.wallet_transactions[transaction_id]
        if status == "completed" and load["status"] != "completed":
            self.wallets[load["owner_id"]] += load["amount"]
        load["status"] = status

    def _set_status(self, order_id: str, status: OrderStatus) -> None:
        order = self.orders[order_id]
        self.orders[order_id] = _replace_order(order, status=status)

    # ------------------------------------------------------------ orders

    async def create_order(self, context: CheckoutContext, price: PriceBreakdown) -> Order:
        async with self._lock:
            self._enter("create_order")
            existing = self.orders_by_transaction.get(context.transaction_id)
            if existing:
                logger.debug("duplicate_order_request", transaction_id=context.transaction_id, order_id=existing)
                return self.orders[existing]
            seq = next(self._ids)
            items = self._priced_items(context.items)
            order = Order(
                id=f"ord-{seq}",
                display_id=f"ORD{seq:06d}",
                owner_id=context.owner_id,
                items=items,
                shipping_address=context.shipping_address,
                shipping_method=context.shipping_method,
                price=_store_breakdown(items, price),
                transaction_id=context.transaction_id,
            )
            self.orders[order.id] = order
            self.orders_by_transaction[order.transaction_id] = order.id
            self.payment_verified[order.transaction_id] = "NO"
            return order

    def _priced_items(self, items: CartSnapshot) -> CartSnapshot:
        return CartSnapshot.of(
            replace(item, unit_price=self.catalog[item.product_id]) if item.product_id in self.catalog else item
            for item in items
        )

    async def fetch_order(self, order_id: str, owner_id: str) -> Optional[Order]:
        async with self._lock:
            self._enter("fetch_order")
            order = self.orders.get(order_id)
            if order is None or order.owner_id != owner_id:
                return None
            return order

    async def process_payment(
        self,
        order_id: str,
        transaction_id: str,
        *,
        use_wallet: bool,
        wallet_amount: Decimal,
    ) -> ProcessPaymentResult:
        async with self._lock:
            self._enter("process_payment")
            order = self.orders.get(order_id)
            if order is None:
                return ProcessPaymentResult(success=False, error="order_not_found")
            if order.status == OrderStatus.COMPLETED:
                return ProcessPaymentResult(success=False, error="order_already_paid")
            amount = to_money(wallet_amount) if use_wallet else ZERO
            if amount > self.wallets[order.owner_id]:
                return ProcessPaymentResult(
                    success=False, error="insufficient_funds", message="Insufficient wallet balance"
                )
            if order.transaction_id != transaction_id:
                # Retried order: the new attempt id replaces the old one
                self.orders_by_transaction.pop(order.transaction_id, None)
                order = _replace_order(order, transaction_id=transaction_id)
                self.orders_by_transaction[transaction_id] = order.id
                self.payment_verified[transaction_id] = "NO"
            self.wallets[order.owner_id] -= amount
            wallet_txn = None
            if amount == order.total:
                if amount > 0 and self.issue_wallet_receipts:
                    wallet_txn = f"WTX-{transaction_id}"
                self.payment_verified[transaction_id] = "YES"
                order = _replace_order(order, status=OrderStatus.COMPLETED)
            else:
                order = _replace_order(order, status=OrderStatus.PAYMENT_PROCESSING)
            self.orders[order.id] = order
            return ProcessPaymentResult(success=True, wallet_transaction_id=wallet_txn)

    async def verify_payment(self, transaction_id: str, verification_method: str = "automatic") -> VerifyPaymentResult:
        async with self._lock:
            self._enter("verify_payment")
            if transaction_id not in self.orders_by_transaction:
                return VerifyPaymentResult(success=False, message="Transaction not found")
            self.mark_verified(transaction_id, "YES")
            return VerifyPaymentResult(success=True)

    async def get_wallet_balance(self, owner_id: str) -> Decimal:
        async with self._lock:
            self._enter("get_wallet_balance")
            return self.wallets[owner_id]

    async def check_order_verification(self, transaction_id: str) -> VerificationStatus:
        async with self._lock:
            self._enter("check_order_verification")
            flag = self.payment_verified.get(transaction_id, "NO")
            return VerificationStatus(STORE_VERIFICATION_TO_INTERNAL.get(flag, "pending"))

    async def check_transaction_completion(self, transaction_id: str) -> VerificationStatus:
        async with self._lock:
            self._enter("check_transaction_completion")
            load = self.wallet_transactions.get(transaction_id)
            status = load["status"] if load else "pending"
            return VerificationStatus(STORE_TRANSACTION_TO_INTERNAL.get(status, "pending"))

    async def create_wallet_load(self, owner_id: str, amount: Decimal, transaction_id: str) -> WalletLoad:
        async with self._lock:
            self._enter("create_wallet_load")
            self.wallet_transactions.setdefault(
                transaction_id,
                {"owner_id": owner_id, "amount": to_money(amount), "status": "pending"},
            )
            return WalletLoad(transaction_id=transaction_id, owner_id=owner_id, amount=to_money(amount))

    async def clear_cart(self, owner_id: str) -> None:
        async with self._lock:
            self._enter("clear_cart")
            self.carts_cleared.append(owner_id)

    # ------------------------------------------------------------ discounts

    async def validate_coupon(self, code: str) -> Optional[CouponRecord]:
        async with self._lock:
            self._enter("validate_coupon")
            return self.coupons.get(code.lower())

    async def get_referral_status(self, user_id: str) -> Optional[ReferralAttachment]:
        async with self._lock:
            self._enter("get_referral_status")
            return self.referrals.get(user_id)

    async def attach_referral_code_late(self, user_id: str, code: str) -> ReferralAttachOutcome:
        async with self._lock:
            self._enter("attach_referral_code_late")
            referrer = self.referral_codes.get(code.upper())
            if referrer is None or referrer == user_id:
                return ReferralAttachOutcome.INVALID_OR_SELF
            current = self.referrals.get(user_id) or ReferralAttachment(user_id=user_id)
            if current.eligibility() != ReferralEligibility.ELIGIBLE:
                return ReferralAttachOutcome.ALREADY_HAS_REFERRER_OR_FIRST_ORDER
            self.referrals[user_id] = ReferralAttachment(user_id=user_id, referred_by=referrer)
            return ReferralAttachOutcome.SUCCESS

    async def validate_referral_code(self, code: str) -> ReferralCodeValidation:
        async with self._lock:
            self._enter("validate_referral_code")
            referrer = self.referral_codes.get(code.upper())
            if referrer is None:
                return ReferralCodeValidation(valid=False)
            return ReferralCodeValidation(valid=True, referrer_name=self.referrer_names.get(referrer))


def _replace_order(order: Order, **changes) -> Order:
    return replace(order, **changes)


def _store_breakdown(items: CartSnapshot, requested: PriceBreakdown) -> PriceBreakdown:
    # Catalog prices win; discounts are capped at the subtotal as the store does
    subtotal = compute_subtotal(items)
    return PriceBreakdown.of(
        subtotal=subtotal,
        shipping_cost=requested.shipping_cost,
        coupon_discount=min(requested.coupon_discount, subtotal),
        goodwill_discount=min(requested.goodwill_discount, subtotal),
    )
