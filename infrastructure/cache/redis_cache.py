"""Redis缓存实现"""
from __future__ import annotations

import asyncio
import json
from typing import Any, Optional

from redis import asyncio as aioredis

from core.config import settings


def _json_dumps(value: Any) -> str:
    """将任意对象序列化为JSON字符串"""
    return json.dumps(value, default=str)


def _json_loads(value: Optional[str]) -> Any:
    if value is None:
        return None
    return json.loads(value)


class RedisCache:
    """基于Redis的命名空间缓存"""

    def __init__(self, client: aioredis.Redis, namespace: str = "", default_ttl: Optional[int] = None) -> None:
        self._client = client
        self._namespace = namespace.strip(":")
        self._default_ttl = default_ttl

    def _format_key(self, key: str) -> str:
        if not self._namespace:
            return key
        return f"{self._namespace}:{key}"

    async def get(self, key: str) -> Any:
        return _json_loads(await self._client.get(self._format_key(key)))

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        payload = _json_dumps(value)
        expire = self._default_ttl if ttl is None else ttl
        if expire and expire > 0:
            await self._client.set(self._format_key(key), payload, ex=expire)
        else:
            await self._client.set(self._format_key(key), payload)

    async def delete(self, key: str) -> bool:
        return bool(await self._client.delete(self._format_key(key)))


_redis_client: Optional[aioredis.Redis] = None
_cache_instance: Optional[RedisCache] = None
_lock = asyncio.Lock()


async def init_redis_cache(namespace: Optional[str] = None) -> RedisCache:
    """初始化Redis缓存实例"""
    global _redis_client, _cache_instance

    if _cache_instance is not None:
        return _cache_instance

    async with _lock:
        if _cache_instance is not None:
            return _cache_instance

        config = settings.redis
        if not config.url:
            raise RuntimeError("redis.url 未配置，无法初始化Redis缓存")

        client = aioredis.from_url(
            config.url,
            encoding="utf-8",
            decode_responses=True,
            max_connections=config.max_connections,
        )
        _redis_client = client
        _cache_instance = RedisCache(
            client=client,
            namespace=namespace or config.namespace,
            default_ttl=config.session_ttl,
        )
        return _cache_instance


async def shutdown_redis_cache() -> None:
    """关闭Redis连接"""
    global _redis_client, _cache_instance

    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
        _cache_instance = None
