"""
Checkout session port - keeps retry/buy-now flags out of the core.
"""
from __future__ import annotations

from typing import Protocol, runtime_checkable

from application.dtos.checkout import CheckoutSessionState


@runtime_checkable
class CheckoutSessionStore(Protocol):
    async def load(self, owner_id: str, session_id: str) -> CheckoutSessionState:
        """Return the stored state, or a fresh cart-flow state when none exists."""
        ...

    async def save(self, state: CheckoutSessionState) -> None: ...

    async def clear(self, owner_id: str, session_id: str) -> None: ...
