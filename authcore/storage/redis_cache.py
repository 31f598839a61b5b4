from __future__ import annotations

import json
from typing import Any, Optional

import redis.asyncio as aioredis
from redis import Redis

from authcore.logging import get_logger

logger = get_logger(__name__)


class RedisCache:
    """Best-effort JSON cache over Redis for account profile lookups.

    Never authoritative: every Redis failure is logged and reported as a
    miss (``get``) or silently dropped (``set``/``remove``).
    """

    DEFAULT_TTL_SECONDS = 60 * 60

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = 5.0,
        default_ttl_seconds: int = DEFAULT_TTL_SECONDS,
        client: Any = None,
    ):
        self.redis_url = redis_url
        self.default_ttl_seconds = default_ttl_seconds
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling the cache."""
        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def get(self, key: str) -> Optional[Any]:
        try:
            raw = await self.client.get(key)
        except Exception as exc:
            logger.warning("cache_get_failed", key=key, error=str(exc))
            return None
        return _decode(key, raw)

    async def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        try:
            await self.client.set(
                key, json.dumps(value), ex=ttl_seconds or self.default_ttl_seconds
            )
        except Exception as exc:
            logger.warning("cache_set_failed", key=key, error=str(exc))

    async def remove(self, key: str) -> None:
        try:
            await self.client.delete(key)
        except Exception as exc:
            logger.warning("cache_remove_failed", key=key, error=str(exc))

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous Redis client internally to avoid event loop binding
    issues in pytest, but exposes async methods so it can be awaited
    uniformly like RedisCache.
    """

    DEFAULT_TTL_SECONDS = RedisCache.DEFAULT_TTL_SECONDS

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = 5.0,
        default_ttl_seconds: int = DEFAULT_TTL_SECONDS,
        client: Any = None,
    ):
        self.redis_url = redis_url
        self.default_ttl_seconds = default_ttl_seconds
        self.client = client or Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        self.client.ping()

    async def get(self, key: str) -> Optional[Any]:
        try:
            raw = self.client.get(key)
        except Exception as exc:
            logger.warning("cache_get_failed", key=key, error=str(exc))
            return None
        return _decode(key, raw)

    async def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        try:
            self.client.set(
                key, json.dumps(value), ex=ttl_seconds or self.default_ttl_seconds
            )
        except Exception as exc:
            logger.warning("cache_set_failed", key=key, error=str(exc))

    async def remove(self, key: str) -> None:
        try:
            self.client.delete(key)
        except Exception as exc:
            logger.warning("cache_remove_failed", key=key, error=str(exc))

    async def close(self) -> None:
        self.client.close()


def _decode(key: str, raw: Optional[str]) -> Optional[Any]:
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        logger.warning("cache_value_corrupt", key=key)
        return None
