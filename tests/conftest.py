"""Shared fixtures: in-memory store and sessions, a recording notifier and fast confirmation timing."""
import random
from decimal import Decimal

import pytest
import pytest_asyncio

from application.dtos.checkout import CheckoutRequest, LineItemIn, PaymentNotification, ShippingAddressIn
from application.services.checkout_service import CheckoutService
from core.settings import CheckoutSettings, ConfirmationSettings, GoodwillSettings
from domain.common.exceptions import NotificationDeliveryException
from infrastructure.cache import InMemoryCheckoutSessionStore
from infrastructure.external.store.memory import InMemoryCheckoutStore


OWNER = "user-1"
SESSION = "sess-1"


class RecordingNotifier:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent: list[PaymentNotification] = []

    async def notify(self, notification: PaymentNotification) -> None:
        self.sent.append(notification)
        if self.fail:
            raise NotificationDeliveryException("webhook down", transaction_id=notification.transaction_id)


@pytest.fixture
def store() -> InMemoryCheckoutStore:
    return InMemoryCheckoutStore()


@pytest.fixture
def sessions() -> InMemoryCheckoutSessionStore:
    return InMemoryCheckoutSessionStore()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def fast_config() -> CheckoutSettings:
    # goodwill pinned to 0.37 so totals are predictable
    return CheckoutSettings(
        goodwill=GoodwillSettings(min_minor=37, max_minor=37),
        confirmation=ConfirmationSettings(deadline_seconds=0.5, poll_interval_seconds=0.02),
    )


@pytest_asyncio.fixture
async def service(store, notifier, sessions, fast_config):
    svc = CheckoutService(store, notifier, sessions, config=fast_config, rng=random.Random(7))
    yield svc
    await svc.aclose()


def item(product_id: str = "p1", quantity: int = 1, price: str = "999.00") -> LineItemIn:
    return LineItemIn(product_id=product_id, quantity=quantity, unit_price=Decimal(price))


def address() -> ShippingAddressIn:
    return ShippingAddressIn(
        full_name="Asha Rao",
        phone="9999999999",
        address="12 MG Road",
        city="Bengaluru",
        state="KA",
        pincode="560001",
    )


def checkout_request(**overrides) -> CheckoutRequest:
    data = {
        "session_id": SESSION,
        "items": [item()],
        "shipping_address": address(),
    }
    data.update(overrides)
    return CheckoutRequest(**data)
