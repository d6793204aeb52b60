from __future__ import annotations

import asyncio
from typing import Any, Awaitable, List, Optional

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin async Redis wrapper: string values with server-side TTL."""

    DEFAULT_OPERATION_TIMEOUT = 5.0
    SCAN_BATCH_SIZE = 100

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = 5.0,
        operation_timeout: float = DEFAULT_OPERATION_TIMEOUT,
    ):
        self.redis_url = redis_url
        self.operation_timeout = operation_timeout
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    async def _bounded(self, awaitable: Awaitable[Any]) -> Any:
        return await asyncio.wait_for(awaitable, self.operation_timeout)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # A short-lived sync client keeps the async client off a temporary loop.
        sync_client = Redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_timeout=self.operation_timeout,
            socket_connect_timeout=self.operation_timeout,
        )
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def get(self, key: str) -> Optional[str]:
        return await self._bounded(self.client.get(key))

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self._bounded(self.client.set(key, value, ex=max(1, int(ttl_seconds))))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self._bounded(self.client.delete(*keys)))

    async def getdel(self, key: str) -> Optional[str]:
        """Atomically read and remove ``key`` (GETDEL, Redis 6.2+)."""
        return await self._bounded(self.client.getdel(key))

    async def scan(
        self, cursor: int, match: str, count: int = SCAN_BATCH_SIZE
    ) -> tuple[int, List[str]]:
        next_cursor, keys = await self._bounded(
            self.client.scan(cursor=cursor, match=match, count=count)
        )
        return int(next_cursor), list(keys)

    async def delete_pattern(self, pattern: str, *, batch_size: int = SCAN_BATCH_SIZE) -> int:
        """SCAN for ``pattern`` and DEL each batch as it is found."""
        deleted = 0
        cursor = 0
        while True:
            cursor, keys = await self.scan(cursor, pattern, batch_size)
            if keys:
                deleted += await self.delete(*keys)
            if cursor == 0:
                break
        return deleted

    async def close(self) -> None:
        """Close the connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
