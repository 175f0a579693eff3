"""
Order lifecycle manager - create a durable order or reuse the one being retried.
"""
from __future__ import annotations

from typing import Optional

from application.ports.checkout_store import CheckoutStore
from core.logging_config import get_logger
from domain.checkout.entity import CheckoutContext, Order, PriceBreakdown
from domain.common.exceptions import (
    CheckoutValidationException,
    RetryContextLostException,
    SettlementRejectedException,
    StoreUnavailableException,
)


logger = get_logger(__name__)


class OrderLifecycleManager:
    def __init__(self, store: CheckoutStore) -> None:
        self.store = store

    async def fetch_retry_order(self, context: CheckoutContext) -> Optional[Order]:
        """
        Load the order remembered for a retry.

        Returns None when the order cannot be loaded; the caller then falls back
        to creating a new order. Missing and unreachable are logged separately.
        """
        if not context.retry_order_id:
            raise RetryContextLostException()
        try:
            order = await self.store.fetch_order(context.retry_order_id, context.owner_id)
        except StoreUnavailableException as exc:
            logger.warning(
                "retry_order_fetch_failed",
                order_id=context.retry_order_id,
                error=exc.message,
                status_code=exc.status_code,
            )
            return None
        if order is None:
            logger.warning("retry_order_missing", order_id=context.retry_order_id)
            return None
        if order.is_paid:
            raise SettlementRejectedException(
                "Order already paid",
                procedure="fetch_order",
                details={"order_id": order.id},
            )
        logger.info("retry_order_reused", order_id=order.id, transaction_id=order.transaction_id)
        return order

    async def create_order(self, context: CheckoutContext, price: PriceBreakdown) -> Order:
        if context.items.is_empty:
            raise CheckoutValidationException(
                "Your cart is empty", field="items", message_key="checkout.cart.empty"
            )
        if context.shipping_address is None:
            raise CheckoutValidationException(
                "Please select a delivery address",
                field="shipping_address",
                message_key="checkout.address.missing",
            )
        context.shipping_address.validate()

        try:
            order = await self.store.create_order(context, price)
        except StoreUnavailableException as exc:
            raise SettlementRejectedException(
                "Failed to create order",
                procedure="create_order",
                details={"status_code": exc.status_code},
            ) from exc

        logger.info(
            "order_created",
            order_id=order.id,
            display_id=order.display_id,
            transaction_id=order.transaction_id,
            total=str(order.price.total),
        )
        return order

    async def create_or_get_order(self, context: CheckoutContext, price: PriceBreakdown) -> Order:
        if context.is_retry:
            order = await self.fetch_retry_order(context)
            if order is not None:
                return order
            logger.info("retry_fallback_new_order", transaction_id=context.transaction_id)
        return await self.create_order(context, price)
