"""
Checkout application service - composes pricing, discounts, order lifecycle,
settlement and confirmation for the HTTP layer.

Dependencies (store, notifier, session store) are injected from the
composition root (main.py lifespan / tests), keeping dependencies one-way.
"""
from __future__ import annotations

import random
from decimal import Decimal
from typing import Any, Optional

from application.dtos.checkout import (
    CheckoutRequest,
    CheckoutSessionState,
    CouponValidation,
    LineItemIn,
    QuoteRequest,
    ReferralCodeValidation,
    SettlementView,
)
from application.ports.checkout_store import CheckoutStore
from application.ports.notifier import PaymentNotifier
from application.ports.session import CheckoutSessionStore
from application.services.confirmation_service import ConfirmationProtocol, ConfirmationRegistry
from application.services.discount_service import CouponService, GoodwillAllocator, ReferralService
from application.services.order_service import OrderLifecycleManager
from application.services.settlement_service import PaymentSettlementEngine
from application.services.wallet_service import WalletService
from core.logging_config import bound_checkout_context, get_logger
from core.settings import CheckoutSettings, checkout_settings
from domain.checkout.entity import (
    ZERO,
    CartSnapshot,
    CheckoutContext,
    CheckoutFlow,
    Order,
    PaymentAttempt,
    PriceBreakdown,
    ReferralAttachOutcome,
    ReferralEligibility,
    SettlementResult,
    new_transaction_id,
)
from domain.checkout.pricing import compute_breakdown, compute_subtotal, fees_from_settings
from domain.common.exceptions import CheckoutValidationException, TransactionNotFoundException


logger = get_logger(__name__)


class CheckoutService:
    def __init__(
        self,
        store: CheckoutStore,
        notifier: PaymentNotifier,
        sessions: CheckoutSessionStore,
        *,
        config: CheckoutSettings = checkout_settings,
        rng: random.Random | None = None,
    ) -> None:
        self.store = store
        self.sessions = sessions
        self.config = config
        self.fees = fees_from_settings(config.shipping)

        self.coupons = CouponService(store)
        self.goodwill = GoodwillAllocator(
            min_minor=config.goodwill.min_minor, max_minor=config.goodwill.max_minor, rng=rng
        )
        self.referrals = ReferralService(store)
        self.orders = OrderLifecycleManager(store)
        self.engine = PaymentSettlementEngine(
            store,
            notifier,
            payee_vpa=config.rail.payee_vpa,
            payee_name=config.rail.payee_name,
            currency=config.currency,
        )
        self.confirmations = ConfirmationRegistry(
            store,
            deadline_seconds=config.confirmation.deadline_seconds,
            poll_interval_seconds=config.confirmation.poll_interval_seconds,
            refund_window=config.confirmation.refund_window,
            finished_ttl_seconds=config.confirmation.finished_ttl_seconds,
            max_finished=config.confirmation.max_finished,
        )
        self.wallet = WalletService(
            store,
            self.engine,
            self.confirmations,
            min_amount=config.top_up.min_amount,
            max_amount=config.top_up.max_amount,
        )

    # ------------------------------------------------------------ pricing

    async def _coupon_discount(self, code: Optional[str], cart: CartSnapshot) -> Decimal:
        if not code:
            return ZERO
        validation = await self.coupons.validate(code, compute_subtotal(cart))
        if not validation.valid:
            raise CheckoutValidationException(
                validation.message or "Invalid coupon code",
                field="coupon_code",
                message_key="checkout.coupon.invalid",
            )
        return validation.discount or ZERO

    def _price(
        self, context: CheckoutContext, coupon_discount: Decimal, goodwill: Decimal
    ) -> PriceBreakdown:
        # Referral rewards are never priced at checkout; the referral slot stays zero
        return compute_breakdown(
            context.items,
            context.shipping_method,
            coupon_discount,
            ZERO,
            goodwill,
            fees=self.fees,
        )

    async def quote(self, owner_id: str, request: QuoteRequest) -> PriceBreakdown:
        cart = request.cart()
        if cart.is_empty:
            raise CheckoutValidationException("Your cart is empty", field="items", message_key="checkout.cart.empty")
        state = await self.sessions.load(owner_id, request.session_id)
        goodwill = self.goodwill.for_session(state)
        await self.sessions.save(state)
        return compute_breakdown(
            cart,
            request.shipping_method,
            await self._coupon_discount(request.coupon_code, cart),
            ZERO,
            goodwill,
            fees=self.fees,
        )

    async def validate_coupon(self, code: Optional[str], items: list[LineItemIn]) -> CouponValidation:
        subtotal = compute_subtotal(CartSnapshot.of(i.to_domain() for i in items)) if items else None
        return await self.coupons.validate(code, subtotal)

    # ------------------------------------------------------------ checkout

    def _enter_flow(self, state: CheckoutSessionState, request: CheckoutRequest) -> CheckoutSessionState:
        if request.flow == CheckoutFlow.CART:
            if state.flow != CheckoutFlow.CART:
                logger.info("checkout_flow_reset", previous=state.flow.value, session_id=state.session_id)
                state = state.reset_for_cart()
            return state
        state.flow = request.flow
        if request.flow == CheckoutFlow.BUY_NOW:
            if request.items:
                state.buy_now_item = request.items[0]
        elif request.flow == CheckoutFlow.RETRY:
            if request.retry_order_id and request.retry_order_id != state.retry_order_id:
                state.transaction_id = None
                state.goodwill_discount = None
            state.retry_order_id = request.retry_order_id or state.retry_order_id
        return state

    def _context(self, owner_id: str, state: CheckoutSessionState, request: CheckoutRequest) -> CheckoutContext:
        if state.flow == CheckoutFlow.BUY_NOW:
            if state.buy_now_item is None:
                raise CheckoutValidationException("No item selected", field="items")
            items = CartSnapshot.of([state.buy_now_item.to_domain()])
        else:
            items = request.cart()
        return CheckoutContext(
            owner_id=owner_id,
            session_id=state.session_id,
            flow=state.flow,
            items=items,
            shipping_address=request.shipping_address.to_domain() if request.shipping_address else None,
            shipping_method=request.shipping_method,
            transaction_id=state.transaction_id or new_transaction_id(),
            coupon_code=request.coupon_code,
            goodwill_discount=state.goodwill_discount,
            retry_order_id=state.retry_order_id,
        )

    async def _resolve_order(self, context: CheckoutContext, state: CheckoutSessionState) -> Order:
        if context.is_retry:
            order = await self.orders.fetch_retry_order(context)
            if order is not None:
                self.goodwill.for_session(state, retry_order=order)
                return order
            logger.info("retry_fallback_new_order", transaction_id=context.transaction_id)
        goodwill = self.goodwill.for_session(state)
        coupon = await self._coupon_discount(context.coupon_code, context.items)
        priced = context.with_goodwill(goodwill).with_coupon(context.coupon_code, coupon)
        return await self.orders.create_order(priced, self._price(priced, coupon, goodwill))

    async def checkout(self, owner_id: str, request: CheckoutRequest) -> PaymentAttempt:
        state = self._enter_flow(await self.sessions.load(owner_id, request.session_id), request)
        context = self._context(owner_id, state, request)
        # Same id on a double submit; the store dedupes creation by it
        state.transaction_id = context.transaction_id

        with bound_checkout_context(transaction_id=context.transaction_id, flow=context.flow.value):
            order = await self._resolve_order(context, state)
            await self.sessions.save(state)
            self.confirmations.ensure_idle(order.id)

            attempt = await self.engine.settle(
                order,
                request.wallet_amount,
                # A retried order gets this attempt's id; new orders keep the stored one
                transaction_id=context.transaction_id if context.is_retry else order.transaction_id,
                should_clear_cart=context.should_clear_cart,
            )
            await self.confirmations.start(attempt, on_completed=self._completion_hook(context))
            return attempt

    def _completion_hook(self, context: CheckoutContext):
        async def _cleanup(attempt: PaymentAttempt) -> None:
            await self.sessions.clear(context.owner_id, context.session_id)
            if attempt.should_clear_cart:
                await self.store.clear_cart(context.owner_id)
            logger.info(
                "checkout_cleanup_done",
                transaction_id=attempt.transaction_id,
                cart_cleared=attempt.should_clear_cart,
            )

        return _cleanup

    # ------------------------------------------------------------ status

    def _owned(self, owner_id: str, transaction_id: str) -> ConfirmationProtocol:
        protocol = self.confirmations.get(transaction_id)
        if protocol.attempt.owner_id != owner_id:
            # Reported exactly like an unknown id
            logger.warning("transaction_owner_mismatch", transaction_id=transaction_id, owner_id=owner_id)
            raise TransactionNotFoundException(transaction_id)
        return protocol

    def attempt(self, owner_id: str, transaction_id: str) -> PaymentAttempt:
        return self._owned(owner_id, transaction_id).attempt

    def status(self, owner_id: str, transaction_id: str) -> SettlementView:
        protocol = self._owned(owner_id, transaction_id)
        if protocol.result is None:
            return SettlementView.processing(transaction_id, protocol.attempt.order_id)
        return SettlementView.from_result(protocol.result)

    def cancel(self, owner_id: str, transaction_id: str) -> SettlementResult:
        return self._owned(owner_id, transaction_id).cancel()

    # ------------------------------------------------------------ wallet / referral

    async def wallet_balance(self, owner_id: str) -> Decimal:
        return await self.wallet.balance(owner_id)

    async def start_top_up(self, owner_id: str, amount: Any) -> PaymentAttempt:
        return await self.wallet.start_top_up(owner_id, amount)

    async def referral_eligibility(self, owner_id: str) -> ReferralEligibility:
        return await self.referrals.check_eligibility(owner_id)

    async def attach_referral(self, owner_id: str, code: Optional[str]) -> ReferralAttachOutcome:
        return await self.referrals.attach(owner_id, code)

    async def validate_referral_code(self, code: Optional[str]) -> ReferralCodeValidation:
        return await self.referrals.validate_referral_code(code)

    async def aclose(self) -> None:
        await self.confirmations.aclose()
        await self.engine.aclose()
