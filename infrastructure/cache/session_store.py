"""
Checkout session state stores (Redis and in-memory).
"""
from __future__ import annotations

from typing import Any, Optional

from redis.exceptions import RedisError

from application.dtos.checkout import CheckoutSessionState
from core.logging_config import get_logger
from domain.common.exceptions import StoreUnavailableException
from infrastructure.cache.redis_cache import RedisCache


logger = get_logger(__name__)


def _session_key(owner_id: str, session_id: str) -> str:
    return f"session:{owner_id}:{session_id}"


class RedisCheckoutSessionStore:
    def __init__(self, cache: RedisCache, ttl: Optional[int] = None) -> None:
        self.cache = cache
        self.ttl = ttl

    async def load(self, owner_id: str, session_id: str) -> CheckoutSessionState:
        try:
            raw: Any = await self.cache.get(_session_key(owner_id, session_id))
        except RedisError as exc:
            logger.warning("session_load_failed", owner_id=owner_id, error=str(exc))
            raise StoreUnavailableException("Session store unavailable", procedure="session_load") from exc
        if not raw:
            return CheckoutSessionState(owner_id=owner_id, session_id=session_id)
        return CheckoutSessionState.model_validate(raw)

    async def save(self, state: CheckoutSessionState) -> None:
        try:
            await self.cache.set(
                _session_key(state.owner_id, state.session_id),
                state.model_dump(mode="json"),
                ttl=self.ttl,
            )
        except RedisError as exc:
            logger.warning("session_save_failed", owner_id=state.owner_id, error=str(exc))
            raise StoreUnavailableException("Session store unavailable", procedure="session_save") from exc

    async def clear(self, owner_id: str, session_id: str) -> None:
        try:
            await self.cache.delete(_session_key(owner_id, session_id))
        except RedisError as exc:
            logger.warning("session_clear_failed", owner_id=owner_id, error=str(exc))
            raise StoreUnavailableException("Session store unavailable", procedure="session_clear") from exc


class InMemoryCheckoutSessionStore:
    def __init__(self) -> None:
        self._states: dict[str, dict[str, Any]] = {}

    async def load(self, owner_id: str, session_id: str) -> CheckoutSessionState:
        raw = self._states.get(_session_key(owner_id, session_id))
        if raw is None:
            return CheckoutSessionState(owner_id=owner_id, session_id=session_id)
        return CheckoutSessionState.model_validate(raw)

    async def save(self, state: CheckoutSessionState) -> None:
        self._states[_session_key(state.owner_id, state.session_id)] = state.model_dump(mode="json")

    async def clear(self, owner_id: str, session_id: str) -> None:
        self._states.pop(_session_key(owner_id, session_id), None)
