"""
Wallet balance and top-up through the external rail.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Any, Optional

from application.ports.checkout_store import CheckoutStore
from application.services.confirmation_service import ConfirmationRegistry
from application.services.settlement_service import PaymentSettlementEngine, wallet_load_attempt
from core.logging_config import get_logger
from domain.checkout.entity import PaymentAttempt, new_transaction_id, to_money
from domain.common.exceptions import CheckoutValidationException, SettlementRejectedException, StoreUnavailableException


logger = get_logger(__name__)


class WalletService:
    def __init__(
        self,
        store: CheckoutStore,
        engine: PaymentSettlementEngine,
        confirmations: ConfirmationRegistry,
        *,
        min_amount: Decimal = Decimal("10"),
        max_amount: Decimal = Decimal("50000"),
    ) -> None:
        self.store = store
        self.engine = engine
        self.confirmations = confirmations
        self.min_amount = to_money(min_amount)
        self.max_amount = to_money(max_amount)

    async def balance(self, owner_id: str) -> Decimal:
        try:
            return to_money(await self.store.get_wallet_balance(owner_id))
        except StoreUnavailableException as exc:
            logger.warning("wallet_balance_failed", owner_id=owner_id, error=exc.message)
            raise SettlementRejectedException(
                "Could not load wallet balance",
                procedure="get_wallet_balance",
                details={"status_code": exc.status_code},
            ) from exc

    async def start_top_up(self, owner_id: str, amount: Any, *, transaction_id: Optional[str] = None) -> PaymentAttempt:
        value = to_money(amount)
        if not self.min_amount <= value <= self.max_amount:
            raise CheckoutValidationException(
                f"Amount must be between {self.min_amount} and {self.max_amount}",
                field="amount",
                details={"min": str(self.min_amount), "max": str(self.max_amount)},
                message_key="wallet.top_up.bounds",
            )
        txn = transaction_id or new_transaction_id()
        try:
            load = await self.store.create_wallet_load(owner_id, value, txn)
        except StoreUnavailableException as exc:
            raise SettlementRejectedException(
                "Failed to start wallet top-up",
                procedure="create_wallet_load",
                details={"status_code": exc.status_code},
            ) from exc

        reference = load.payment_deep_link or self.engine.external_reference(value, f"Wallet top-up {load.transaction_id}")
        attempt = wallet_load_attempt(
            transaction_id=load.transaction_id,
            owner_id=owner_id,
            amount=value,
            external_reference=reference,
        )
        logger.info("wallet_top_up_started", owner_id=owner_id, transaction_id=attempt.transaction_id, amount=str(value))
        self.engine.notify_in_background(attempt)
        await self.confirmations.start(attempt)
        return attempt
