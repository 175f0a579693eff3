"""
Payment notification webhook client.

One POST per attempt with a bearer secret and a short timeout; never retried.
"""
from __future__ import annotations

from typing import Optional

import httpx

from application.dtos.checkout import PaymentNotification
from core.logging_config import get_logger
from domain.common.exceptions import NotificationDeliveryException
from infrastructure.external.api_clients.base import APIError, BaseAPIClient


logger = get_logger(__name__)


class WebhookNotifier(BaseAPIClient):
    def __init__(
        self,
        url: str,
        secret: Optional[str] = None,
        *,
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        base_url, _, path = url.rpartition("/")
        super().__init__(
            base_url,
            timeout=timeout,
            max_retries=0,
            auth_token=secret,
            transport=transport,
        )
        self.path = path

    async def notify(self, notification: PaymentNotification) -> None:
        try:
            await self.post(self.path, json_data=notification)
        except APIError as exc:
            raise NotificationDeliveryException(
                str(exc), transaction_id=notification.transaction_id
            ) from exc
        logger.info("notification_sent", transaction_id=notification.transaction_id)

    async def aclose(self) -> None:
        await self.close()
