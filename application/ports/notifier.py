"""
Payment notification port. Delivery is best-effort; implementations raise
``NotificationDeliveryException`` and never retry.
"""
from __future__ import annotations

from typing import Protocol, runtime_checkable

from application.dtos.checkout import PaymentNotification


@runtime_checkable
class PaymentNotifier(Protocol):
    async def notify(self, notification: PaymentNotification) -> None: ...


class NullNotifier:
    """Used when no webhook is configured."""

    async def notify(self, notification: PaymentNotification) -> None:
        return None
