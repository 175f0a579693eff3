"""领域层业务异常定义，供领域与基础设施使用。

核心（core）层仅负责全局映射与异常处理，尽量避免领域层反向依赖核心层。
Every store failure is converted into one of these at the boundary that
issued the call; raw transport errors never reach the caller.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Optional

from shared.codes import BusinessCode
from shared.codes.checkout_codes import CheckoutCode

# Where the caller should send the user when a retry cannot be resumed
ORDER_HISTORY_VIEW = "/orders"


class BusinessException(Exception):
    """业务异常基类"""

    def __init__(
        self,
        code: int,
        message: str,
        error_type: str = "BusinessError",
        details: Optional[dict] = None,
        field: Optional[str] = None,
        message_key: Optional[str] = None,
        format_params: Optional[dict] = None,
    ) -> None:
        self.code = code
        self.message = message
        self.error_type = error_type
        self.details = details
        self.field = field
        self.message_key = message_key
        self.format_params = format_params
        super().__init__(self.message)


class CheckoutValidationException(BusinessException):
    """Inline input problems (missing address, missing coupon text...). Never retried."""

    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        details: dict | None = None,
        message_key: str | None = None,
    ):
        super().__init__(
            code=BusinessCode.PARAM_VALIDATION_ERROR,
            message=message,
            error_type="ValidationError",
            details=details,
            field=field,
            message_key=message_key or "checkout.validation",
        )


class InsufficientFundsException(BusinessException):
    """The store rejected the wallet debit; the caller must re-quote."""

    def __init__(self, requested: Decimal, *, available: Optional[Decimal] = None):
        details = {"requested": str(requested)}
        if available is not None:
            details["available"] = str(available)
        super().__init__(
            code=CheckoutCode.INSUFFICIENT_FUNDS,
            message="Wallet balance changed, please review the amount and try again",
            error_type="InsufficientFunds",
            details=details,
            field="wallet_amount",
            message_key="checkout.wallet.insufficient",
        )


class OrderNotFoundException(BusinessException):
    def __init__(self, order_id: Optional[str] = None, *, message: str = "Order not found"):
        details = {"recovery": ORDER_HISTORY_VIEW}
        if order_id:
            details["order_id"] = order_id
        super().__init__(
            code=CheckoutCode.ORDER_NOT_FOUND,
            message=message,
            error_type="OrderNotFound",
            details=details,
            message_key="checkout.order.not_found",
        )


class RetryContextLostException(OrderNotFoundException):
    """Retry was requested but the remembered prior order is gone from the session."""

    def __init__(self):
        super().__init__(message="Retry session expired. Please try again from your orders.")
        self.code = CheckoutCode.RETRY_CONTEXT_LOST
        self.error_type = "RetryContextLost"
        self.message_key = "checkout.retry.context_lost"


class SettlementRejectedException(BusinessException):
    """A store procedure refused or failed; the attempt is aborted."""

    def __init__(self, message: str, *, procedure: str, details: Optional[dict] = None):
        full_details = {"procedure": procedure}
        if details:
            full_details.update(details)
        super().__init__(
            code=CheckoutCode.SETTLEMENT_REJECTED,
            message=message,
            error_type="SettlementRejected",
            details=full_details,
            message_key="checkout.settlement.rejected",
        )


class AttemptInFlightException(BusinessException):
    def __init__(self, order_id: str, transaction_id: str):
        super().__init__(
            code=CheckoutCode.ATTEMPT_IN_FLIGHT,
            message="A payment for this order is already being confirmed",
            error_type="AttemptInFlight",
            details={"order_id": order_id, "transaction_id": transaction_id},
            message_key="checkout.attempt.in_flight",
        )


class NotificationDeliveryException(BusinessException):
    """Raised by notifiers; the settlement engine logs and swallows it."""

    def __init__(self, message: str, *, transaction_id: str):
        super().__init__(
            code=CheckoutCode.NOTIFICATION_FAILED,
            message=message,
            error_type="NotificationDeliveryFailure",
            details={"transaction_id": transaction_id},
        )


class StoreUnavailableException(BusinessException):
    """Transport-level store failure; each caller converts it to its own kind."""

    def __init__(self, message: str, *, procedure: str, status_code: Optional[int] = None):
        super().__init__(
            code=BusinessCode.SERVICE_UNAVAILABLE,
            message=message,
            error_type="StoreUnavailable",
            details={"procedure": procedure, "status_code": status_code},
        )
        self.procedure = procedure
        self.status_code = status_code


class TransactionNotFoundException(BusinessException):
    def __init__(self, transaction_id: str):
        super().__init__(
            code=BusinessCode.NOT_FOUND,
            message="Transaction not found",
            error_type="TransactionNotFound",
            details={"transaction_id": transaction_id},
            message_key="checkout.transaction.not_found",
        )
