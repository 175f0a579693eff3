"""
Checkout store port (application/ports).

The relational store is reached only through atomic remote procedures. Adapters
raise ``StoreUnavailableException`` for transport failures and return result
objects for business-level rejections; services decide what each means.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Optional, Protocol, runtime_checkable

from application.dtos.checkout import (
    CouponRecord,
    ProcessPaymentResult,
    ReferralCodeValidation,
    VerifyPaymentResult,
    WalletLoad,
)
from domain.checkout.entity import (
    CheckoutContext,
    Order,
    PriceBreakdown,
    ReferralAttachOutcome,
    ReferralAttachment,
    VerificationStatus,
)


@runtime_checkable
class CheckoutStore(Protocol):
    async def create_order(self, context: CheckoutContext, price: PriceBreakdown) -> Order:
        """Idempotent per ``context.transaction_id``: a duplicate returns the existing order."""
        ...

    async def fetch_order(self, order_id: str, owner_id: str) -> Optional[Order]: ...

    async def process_payment(
        self,
        order_id: str,
        transaction_id: str,
        *,
        use_wallet: bool,
        wallet_amount: Decimal,
    ) -> ProcessPaymentResult: ...

    async def verify_payment(
        self, transaction_id: str, verification_method: str = "automatic"
    ) -> VerifyPaymentResult: ...

    async def get_wallet_balance(self, owner_id: str) -> Decimal: ...

    async def attach_referral_code_late(self, user_id: str, code: str) -> ReferralAttachOutcome: ...

    async def validate_referral_code(self, code: str) -> ReferralCodeValidation: ...

    async def get_referral_status(self, user_id: str) -> Optional[ReferralAttachment]: ...

    async def validate_coupon(self, code: str) -> Optional[CouponRecord]: ...

    async def check_order_verification(self, transaction_id: str) -> VerificationStatus: ...

    async def check_transaction_completion(self, transaction_id: str) -> VerificationStatus: ...

    async def create_wallet_load(
        self, owner_id: str, amount: Decimal, transaction_id: str
    ) -> WalletLoad: ...

    async def clear_cart(self, owner_id: str) -> None: ...
