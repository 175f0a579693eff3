"""
PostgREST-style store client.

Mutations go through ``POST /rest/v1/rpc/<procedure>`` and are sent exactly
once; reads (``GET /rest/v1/<table>`` and read-only procedures) retry transient
failures. Every transport failure is converted to StoreUnavailableException
here so raw httpx errors never leave this module.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Any, Optional

import httpx

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
    LineItem,
    Order,
    OrderStatus,
    PriceBreakdown,
    ReferralAttachOutcome,
    ReferralAttachment,
    ShippingAddress,
    ShippingMethod,
    VerificationStatus,
    to_money,
)
from domain.common.exceptions import CheckoutValidationException, StoreUnavailableException
from infrastructure.external.api_clients.base import APIError, BaseAPIClient
from shared.codes.checkout_codes import (
    STORE_ORDER_STATUS_TO_INTERNAL,
    STORE_TRANSACTION_TO_INTERNAL,
    STORE_VERIFICATION_TO_INTERNAL,
)


logger = get_logger(__name__)

# 4xx raised by a procedure (RAISE EXCEPTION) is a business answer, not an outage
_AUTH_STATUSES = {401, 403}

# Raised while reading a row or response the adapter cannot make sense of
_MAPPING_ERRORS = (KeyError, TypeError, ValueError, ArithmeticError, CheckoutValidationException)


def _first(data: Any) -> Optional[dict]:
    if isinstance(data, list):
        return data[0] if data else None
    if isinstance(data, dict):
        return data
    return None


def _store_price(
    data: dict,
    *,
    coupon: Any = None,
    goodwill_hint: Any = ZERO,
) -> PriceBreakdown:
    """
    Build a breakdown from the store's own figures.

    The store folds coupon and goodwill into a single ``discount`` column.
    Rows carry the coupon part as ``discount_amount``; a fresh create_order
    response does not, so the goodwill sent with the request splits it.
    """
    discount = to_money(data.get("discount") or 0)
    if coupon is not None:
        coupon_part = min(to_money(coupon), discount)
        goodwill_part = discount - coupon_part
    else:
        goodwill_part = min(to_money(goodwill_hint or 0), discount)
        coupon_part = discount - goodwill_part
    return PriceBreakdown(
        subtotal=data["subtotal"],
        shipping_cost=data.get("shipping") or 0,
        coupon_discount=coupon_part,
        referral_discount=ZERO,
        goodwill_discount=goodwill_part,
        total=data["total"],
    )


def _shipping_method(value: Any) -> ShippingMethod:
    try:
        return ShippingMethod(str(value or "").strip().lower())
    except ValueError:
        return ShippingMethod.STANDARD


def _order_status(row: dict) -> OrderStatus:
    raw = str(row.get("status") or "pending").lower()
    mapped = STORE_ORDER_STATUS_TO_INTERNAL.get(raw)
    if mapped is None:
        logger.warning("unknown_order_status", order_id=row.get("id"), status=raw)
        mapped = OrderStatus.PENDING.value
    flag = str(row.get("payment_verified") or "NO").upper()
    if flag == "YES" or row.get("payment_confirmed") is True:
        return OrderStatus.COMPLETED
    if flag == "REJECTED":
        return OrderStatus.FAILED
    return OrderStatus(mapped)


def _shipping_address(row: dict) -> Optional[ShippingAddress]:
    # Wallet-load orders carry no shipping columns
    if not row.get("shipping_address"):
        return None
    return ShippingAddress(
        full_name=row.get("shipping_name") or "",
        phone=row.get("shipping_phone") or "",
        address=row["shipping_address"],
        city=row.get("shipping_city") or "",
        state=row.get("shipping_state") or "",
        pincode=row.get("shipping_zip_code") or "",
        country=row.get("shipping_country") or "India",
    )


def _order_from_row(row: dict) -> Order:
    items = CartSnapshot.of(
        LineItem(
            product_id=str(item["product_id"]),
            quantity=int(item["quantity"]),
            unit_price=item.get("product_price") or 0,
            variant_id=item.get("variant_id"),
            combo_id=item.get("combo_id"),
        )
        for item in row.get("order_items") or []
    )
    return Order(
        id=str(row["id"]),
        display_id=str(row.get("display_order_id") or row["id"]),
        owner_id=str(row["user_id"]),
        items=items,
        shipping_address=_shipping_address(row),
        shipping_method=_shipping_method(row.get("shipping_method")),
        price=_store_price(row, coupon=row.get("discount_amount") or 0),
        transaction_id=str(row.get("transaction_id") or ""),
        status=_order_status(row),
        payment_deep_link=row.get("upi_deep_link"),
    )


class RpcStoreClient(BaseAPIClient):
    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        *,
        timeout: float = 10.0,
        max_retries: int = 2,
        retry_delay: float = 0.2,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        headers = {"apikey": api_key} if api_key else None
        super().__init__(
            base_url,
            timeout=timeout,
            max_retries=max_retries,
            retry_delay=retry_delay,
            headers=headers,
            auth_token=api_key,
            transport=transport,
        )

    async def _rpc(
        self,
        procedure: str,
        payload: dict[str, Any],
        *,
        idempotent: bool = False,
        business_errors: bool = False,
    ) -> Any:
        try:
            response = await self.request(
                "POST", f"rest/v1/rpc/{procedure}", json_data=payload, idempotent=idempotent
            )
        except APIError as exc:
            status = exc.status_code
            if business_errors and status and 400 <= status < 500 and status not in _AUTH_STATUSES:
                return {"success": False, "error": exc.message}
            logger.warning("store_rpc_failed", procedure=procedure, status_code=status, error=exc.message)
            raise StoreUnavailableException(exc.message, procedure=procedure, status_code=status) from exc
        return response.json()

    async def _select(self, table: str, params: dict[str, str]) -> list[dict]:
        try:
            response = await self.get(f"rest/v1/{table}", params=params)
        except APIError as exc:
            logger.warning("store_select_failed", table=table, status_code=exc.status_code, error=exc.message)
            raise StoreUnavailableException(exc.message, procedure=table, status_code=exc.status_code) from exc
        data = response.json()
        return data if isinstance(data, list) else []

    # ------------------------------------------------------------ orders

    async def create_order(self, context: CheckoutContext, price: PriceBreakdown) -> Order:
        payload = {
            "p_user_id": context.owner_id,
            "p_transaction_id": context.transaction_id,
            "p_items": [
                {
                    "product_id": item.product_id,
                    "variant_id": item.variant_id,
                    "combo_id": item.combo_id,
                    "quantity": item.quantity,
                }
                for item in context.items
            ],
            "p_shipping_address": context.shipping_address.to_dict() if context.shipping_address else None,
            "p_shipping_method": context.shipping_method.value,
            "p_coupon_code": context.coupon_code,
            "p_lucky_discount": str(price.goodwill_discount),
        }
        data = _first(await self._rpc("create_order", payload)) or {}
        if not data.get("success", True) or not data.get("order_id"):
            raise StoreUnavailableException(
                data.get("message") or "Failed to create order", procedure="create_order"
            )
        try:
            # The store prices the items itself; its figures are what gets settled
            stored = _store_price(data, goodwill_hint=price.goodwill_discount)
        except _MAPPING_ERRORS as exc:
            logger.error("store_order_totals_invalid", order_id=data["order_id"], error=str(exc))
            raise StoreUnavailableException(
                "Store returned unusable order totals", procedure="create_order"
            ) from exc
        if stored.total != price.total:
            logger.warning(
                "order_total_mismatch",
                order_id=data["order_id"],
                quoted=str(price.total),
                stored=str(stored.total),
            )
        return Order(
            id=str(data["order_id"]),
            display_id=str(data.get("display_order_id") or data["order_id"]),
            owner_id=context.owner_id,
            items=context.items,
            shipping_address=context.shipping_address,
            shipping_method=context.shipping_method,
            price=stored,
            transaction_id=str(data.get("transaction_id") or context.transaction_id),
            status=OrderStatus.PENDING,
            payment_deep_link=data.get("upi_deep_link"),
        )

    async def fetch_order(self, order_id: str, owner_id: str) -> Optional[Order]:
        rows = await self._select(
            "orders",
            {"id": f"eq.{order_id}", "user_id": f"eq.{owner_id}", "select": "*,order_items(*)"},
        )
        if not rows:
            return None
        try:
            return _order_from_row(rows[0])
        except _MAPPING_ERRORS as exc:
            logger.error("store_order_row_invalid", order_id=order_id, error=str(exc))
            raise StoreUnavailableException(
                "Store returned an unreadable order", procedure="fetch_order"
            ) from exc

    # ------------------------------------------------------------ payment

    async def process_payment(
        self,
        order_id: str,
        transaction_id: str,
        *,
        use_wallet: bool,
        wallet_amount: Decimal,
    ) -> ProcessPaymentResult:
        data = await self._rpc(
            "process_order_payment",
            {
                "p_order_id": order_id,
                "p_transaction_id": transaction_id,
                "p_payment_method": "wallet" if use_wallet else "upi",
                "p_use_wallet": use_wallet,
                "p_wallet_amount": str(wallet_amount),
            },
            business_errors=True,
        )
        return ProcessPaymentResult.model_validate(_first(data) or {"success": False})

    async def verify_payment(self, transaction_id: str, verification_method: str = "automatic") -> VerifyPaymentResult:
        data = await self._rpc(
            "verify_order_payment",
            {"p_transaction_id": transaction_id, "p_verification_method": verification_method},
            business_errors=True,
        )
        row = _first(data)
        # A void procedure answers 204/null on success
        return VerifyPaymentResult.model_validate(row) if row else VerifyPaymentResult(success=True)

    async def get_wallet_balance(self, owner_id: str) -> Decimal:
        data = await self._rpc("get_wallet_balance", {"p_user_id": owner_id}, idempotent=True)
        row = _first(data)
        if row is not None:
            return to_money(row.get("balance", 0))
        return to_money(data or 0)

    async def check_order_verification(self, transaction_id: str) -> VerificationStatus:
        rows = await self._select(
            "orders",
            {"transaction_id": f"eq.{transaction_id}", "select": "payment_verified,status"},
        )
        if not rows:
            return VerificationStatus.PENDING
        row = rows[0]
        if STORE_ORDER_STATUS_TO_INTERNAL.get(str(row.get("status") or "").lower()) == OrderStatus.FAILED.value:
            return VerificationStatus.FAILED
        flag = str(row.get("payment_verified") or "NO").upper()
        return VerificationStatus(STORE_VERIFICATION_TO_INTERNAL.get(flag, "pending"))

    async def check_transaction_completion(self, transaction_id: str) -> VerificationStatus:
        rows = await self._select(
            "wallet_transactions",
            {"reference_id": f"eq.{transaction_id}", "select": "status"},
        )
        if not rows:
            return VerificationStatus.PENDING
        status = str(rows[0].get("status") or "pending").lower()
        return VerificationStatus(STORE_TRANSACTION_TO_INTERNAL.get(status, "pending"))

    async def create_wallet_load(self, owner_id: str, amount: Decimal, transaction_id: str) -> WalletLoad:
        data = _first(
            await self._rpc(
                "create_order",
                {
                    "p_user_id": owner_id,
                    "p_transaction_id": transaction_id,
                    "p_items": [],
                    "p_shipping_address": None,
                    "p_shipping_method": None,
                    "p_coupon_code": None,
                    "p_lucky_discount": 0,
                    "p_is_wallet_load": True,
                    "p_custom_amount": str(amount),
                },
            )
        ) or {}
        if not data.get("success", True):
            raise StoreUnavailableException(
                data.get("message") or "Failed to create wallet load order", procedure="create_wallet_load"
            )
        return WalletLoad(
            transaction_id=str(data.get("transaction_id") or transaction_id),
            owner_id=owner_id,
            amount=amount,
            payment_deep_link=data.get("upi_deep_link"),
        )

    async def clear_cart(self, owner_id: str) -> None:
        await self._rpc("clear_user_cart", {"p_user_id": owner_id})

    # ------------------------------------------------------------ discounts

    async def validate_coupon(self, code: str) -> Optional[CouponRecord]:
        rows = await self._select("discounts", {"code": f"eq.{code}", "select": "*"})
        return CouponRecord.model_validate(rows[0]) if rows else None

    async def get_referral_status(self, user_id: str) -> Optional[ReferralAttachment]:
        rows = await self._select(
            "referrals",
            {"user_id": f"eq.{user_id}", "select": "referred_by,first_order_completed"},
        )
        if not rows:
            return None
        return ReferralAttachment(
            user_id=user_id,
            referred_by=rows[0].get("referred_by"),
            first_order_completed=bool(rows[0].get("first_order_completed")),
        )

    async def attach_referral_code_late(self, user_id: str, code: str) -> ReferralAttachOutcome:
        data = _first(
            await self._rpc(
                "attach_referral_code_late", {"p_user_id": user_id, "p_referral_code": code}
            )
        ) or {}
        if data.get("success"):
            return ReferralAttachOutcome.SUCCESS
        if data.get("error") == ReferralAttachOutcome.ALREADY_HAS_REFERRER_OR_FIRST_ORDER.value:
            return ReferralAttachOutcome.ALREADY_HAS_REFERRER_OR_FIRST_ORDER
        return ReferralAttachOutcome.INVALID_OR_SELF

    async def validate_referral_code(self, code: str) -> ReferralCodeValidation:
        data = _first(
            await self._rpc("validate_referral_code", {"p_referral_code": code}, idempotent=True)
        ) or {}
        return ReferralCodeValidation(
            valid=bool(data.get("valid") or data.get("is_valid")),
            referrer_name=data.get("referrer_name"),
        )

    async def aclose(self) -> None:
        await self.close()
