"""
Payment settlement engine.

Splits an order total between the wallet and the external rail, settles the
wallet part through the store's atomic ``process_payment`` procedure and
returns a PaymentAttempt for the confirmation protocol. The wallet snapshot
is advisory only; the store decides at debit time.
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from application.dtos.checkout import PaymentNotification, ProcessPaymentResult
from application.ports.checkout_store import CheckoutStore
from application.ports.notifier import PaymentNotifier
from core.logging_config import get_logger
from domain.checkout.entity import (
    ZERO,
    AttemptPurpose,
    Order,
    PaymentAttempt,
    PaymentMethod,
    to_money,
)
from domain.checkout.payment_rail import build_upi_uri, payment_note
from domain.common.exceptions import (
    CheckoutValidationException,
    InsufficientFundsException,
    NotificationDeliveryException,
    SettlementRejectedException,
    StoreUnavailableException,
)
from shared.codes.checkout_codes import INSUFFICIENT_FUNDS_MARKERS


logger = get_logger(__name__)


def _is_insufficient_funds(result: ProcessPaymentResult) -> bool:
    text = " ".join(filter(None, (result.error, result.message))).lower()
    return any(marker in text for marker in INSUFFICIENT_FUNDS_MARKERS)


class PaymentSettlementEngine:
    def __init__(
        self,
        store: CheckoutStore,
        notifier: PaymentNotifier,
        *,
        payee_vpa: str,
        payee_name: str,
        currency: str = "INR",
    ) -> None:
        self.store = store
        self.notifier = notifier
        self.payee_vpa = payee_vpa
        self.payee_name = payee_name
        self.currency = currency
        self._notifications: set[asyncio.Task[Any]] = set()

    async def wallet_snapshot(self, owner_id: str) -> Decimal:
        try:
            return to_money(await self.store.get_wallet_balance(owner_id))
        except StoreUnavailableException as exc:
            logger.warning("wallet_snapshot_failed", owner_id=owner_id, error=exc.message)
            return ZERO

    def external_reference(self, amount: Decimal, note: str) -> str:
        return build_upi_uri(
            payee_vpa=self.payee_vpa,
            payee_name=self.payee_name,
            amount=amount,
            note=note,
            currency=self.currency,
        )

    async def _process(
        self,
        order: Order,
        *,
        transaction_id: str,
        use_wallet: bool,
        wallet_amount: Decimal,
        snapshot: Decimal,
    ) -> ProcessPaymentResult:
        try:
            result = await self.store.process_payment(
                order.id,
                transaction_id,
                use_wallet=use_wallet,
                wallet_amount=wallet_amount,
            )
        except StoreUnavailableException as exc:
            raise SettlementRejectedException(
                "Payment processing failed",
                procedure="process_payment",
                details={"order_id": order.id, "status_code": exc.status_code},
            ) from exc
        if result.success:
            return result
        if _is_insufficient_funds(result):
            logger.warning(
                "settlement_insufficient_funds",
                order_id=order.id,
                requested=str(wallet_amount),
                snapshot=str(snapshot),
            )
            raise InsufficientFundsException(wallet_amount, available=snapshot)
        raise SettlementRejectedException(
            result.message or result.error or "Payment processing failed",
            procedure="process_payment",
            details={"order_id": order.id},
        )

    async def settle(
        self,
        order: Order,
        funding_preference: Any = ZERO,
        *,
        transaction_id: Optional[str] = None,
        should_clear_cart: bool = True,
    ) -> PaymentAttempt:
        """
        Fund ``order`` from the wallet (up to ``funding_preference``) and the external rail.

        ``transaction_id`` overrides the order's id for a retried order; the store
        records the new id against the order.
        """
        requested = to_money(funding_preference or ZERO)
        if requested < 0:
            raise CheckoutValidationException(
                "Wallet amount must not be negative", field="wallet_amount"
            )
        if order.is_paid:
            raise SettlementRejectedException(
                "Order already paid", procedure="process_payment", details={"order_id": order.id}
            )

        txn = transaction_id or order.transaction_id
        total = order.total
        snapshot = await self.wallet_snapshot(order.owner_id)
        wallet_used = min(requested, snapshot, total)
        remaining = total - wallet_used

        if remaining == ZERO:
            result = await self._process(
                order, transaction_id=txn, use_wallet=wallet_used > 0, wallet_amount=wallet_used, snapshot=snapshot
            )
            attempt = PaymentAttempt(
                transaction_id=txn,
                order_id=order.id,
                owner_id=order.owner_id,
                amount=total,
                wallet_amount_used=wallet_used,
                remaining_amount=ZERO,
                method=PaymentMethod.WALLET,
                # process_payment settled the full total; nothing is left to confirm
                auto_complete=True,
                should_clear_cart=should_clear_cart,
                display_order_id=order.display_id,
                wallet_transaction_id=result.wallet_transaction_id,
            )
            logger.info(
                "settlement_wallet_only",
                order_id=order.id,
                transaction_id=txn,
                amount=str(total),
                auto_complete=attempt.auto_complete,
            )
            return attempt

        method = PaymentMethod.WALLET_EXTERNAL if wallet_used > 0 else PaymentMethod.EXTERNAL
        result = await self._process(
            order, transaction_id=txn, use_wallet=wallet_used > 0, wallet_amount=wallet_used, snapshot=snapshot
        )
        reference = result.payment_deep_link or order.payment_deep_link or self.external_reference(
            remaining, payment_note(order.display_id, txn)
        )
        attempt = PaymentAttempt(
            transaction_id=txn,
            order_id=order.id,
            owner_id=order.owner_id,
            amount=total,
            wallet_amount_used=wallet_used,
            remaining_amount=remaining,
            method=method,
            external_reference=reference,
            should_clear_cart=should_clear_cart,
            display_order_id=order.display_id,
            wallet_transaction_id=result.wallet_transaction_id,
        )
        logger.info(
            "settlement_external",
            order_id=order.id,
            transaction_id=txn,
            method=method.value,
            wallet_amount_used=str(wallet_used),
            remaining_amount=str(remaining),
        )
        self.notify_in_background(attempt)
        return attempt

    def notify_in_background(self, attempt: PaymentAttempt) -> None:
        notification = PaymentNotification(
            transaction_id=attempt.transaction_id,
            order_reference=attempt.display_order_id or attempt.order_id or attempt.transaction_id,
            amount=attempt.remaining_amount,
            timestamp=datetime.now(timezone.utc),
        )
        task = asyncio.create_task(self._deliver(notification))
        self._notifications.add(task)
        task.add_done_callback(self._notifications.discard)

    async def _deliver(self, notification: PaymentNotification) -> None:
        try:
            await self.notifier.notify(notification)
        except NotificationDeliveryException as exc:
            logger.warning(
                "notification_delivery_failed",
                transaction_id=notification.transaction_id,
                error=exc.message,
            )
            return
        logger.debug("notification_delivered", transaction_id=notification.transaction_id)

    @property
    def pending_notifications(self) -> int:
        return len(self._notifications)

    async def aclose(self) -> None:
        """Wait for in-flight notifications (each bounded by the notifier timeout)."""
        if not self._notifications:
            return
        results = await asyncio.gather(*list(self._notifications), return_exceptions=True)
        for outcome in results:
            if isinstance(outcome, BaseException) and not isinstance(outcome, asyncio.CancelledError):
                logger.error("notification_task_error", error=str(outcome))


def wallet_load_attempt(
    *,
    transaction_id: str,
    owner_id: str,
    amount: Decimal,
    external_reference: str,
) -> PaymentAttempt:
    return PaymentAttempt(
        transaction_id=transaction_id,
        order_id=None,
        owner_id=owner_id,
        amount=amount,
        wallet_amount_used=ZERO,
        remaining_amount=amount,
        method=PaymentMethod.EXTERNAL,
        external_reference=external_reference,
        purpose=AttemptPurpose.WALLET_LOAD,
        should_clear_cart=False,
    )
