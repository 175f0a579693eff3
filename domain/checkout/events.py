"""
Checkout domain events.

Recorded by the confirmation protocol when an attempt reaches a terminal state.
Domain remains free of infrastructure imports.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional
import uuid


@dataclass
class CheckoutEvent:
    transaction_id: str
    order_id: Optional[str] = None
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class PaymentConfirmed(CheckoutEvent):
    pass


@dataclass
class PaymentFailed(CheckoutEvent):
    reason: Optional[str] = None


@dataclass
class PaymentTimedOut(CheckoutEvent):
    pass


@dataclass
class PaymentCancelled(CheckoutEvent):
    pass
