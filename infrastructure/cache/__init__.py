"""缓存层对外暴露的接口"""
from .redis_cache import (
    RedisCache,
    init_redis_cache,
    shutdown_redis_cache,
)
from .session_store import InMemoryCheckoutSessionStore, RedisCheckoutSessionStore

__all__ = [
    "RedisCache",
    "init_redis_cache",
    "shutdown_redis_cache",
    "InMemoryCheckoutSessionStore",
    "RedisCheckoutSessionStore",
]
