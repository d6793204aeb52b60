from __future__ import annotations

import asyncio
import json
from typing import Any, Awaitable, Callable, List, Optional, Protocol, Tuple, TypeVar

from tasktrack.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class CacheBackend(Protocol):
    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def delete(self, *keys: str) -> int: ...

    async def getdel(self, key: str) -> Optional[str]: ...

    async def scan(self, cursor: int, match: str, count: int = 100) -> Tuple[int, List[str]]: ...

    async def delete_pattern(self, pattern: str, *, batch_size: int = 100) -> int: ...

    def verify_connection(self) -> None: ...

    async def close(self) -> None: ...


def user_email_key(email: str) -> str:
    return f"user:email:{email.lower()}"


def todo_list_key(user_id: str, signature: str) -> str:
    return f"todos:user:{user_id}:list:{signature}"


def todo_item_key(user_id: str, todo_id: str) -> str:
    return f"todos:user:{user_id}:item:{todo_id}"


def todo_user_pattern(user_id: str) -> str:
    return f"todos:user:{user_id}:*"


class CacheAside:
    """Best-effort JSON cache in front of a source of truth.

    Reads degrade to a miss on any failure and writes never raise, so the
    cache can vanish without breaking a request.
    """

    def __init__(self, backend: CacheBackend, *, timeout_seconds: float = 5.0) -> None:
        self.backend = backend
        self.timeout_seconds = timeout_seconds

    async def get_cached(self, key: str, decode: Callable[[Any], T]) -> Optional[T]:
        try:
            raw = await asyncio.wait_for(self.backend.get(key), self.timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning("cache_get_timeout", key=key)
            return None
        except Exception as exc:
            logger.warning("cache_get_failed", key=key, error=str(exc))
            return None
        if raw is None:
            return None
        try:
            return decode(json.loads(raw))
        except (json.JSONDecodeError, TypeError, KeyError, ValueError) as exc:
            # corrupted entry; treat as a miss
            logger.warning("cache_entry_corrupt", key=key, error=str(exc))
            return None

    async def set_cached(
        self,
        key: str,
        value: T,
        ttl_seconds: int,
        encode: Optional[Callable[[T], Any]] = None,
    ) -> None:
        try:
            payload = json.dumps(encode(value) if encode else value)
        except (TypeError, ValueError) as exc:
            logger.warning("cache_encode_failed", key=key, error=str(exc))
            return
        try:
            await asyncio.wait_for(
                self.backend.set(key, payload, ttl_seconds), self.timeout_seconds
            )
        except asyncio.TimeoutError:
            logger.warning("cache_set_timeout", key=key)
        except Exception as exc:
            logger.warning("cache_set_failed", key=key, error=str(exc))

    async def get_or_load(
        self,
        key: str,
        ttl_seconds: int,
        load: Callable[[], Awaitable[Optional[T]]],
        *,
        encode: Callable[[T], Any],
        decode: Callable[[Any], T],
    ) -> Optional[T]:
        cached = await self.get_cached(key, decode)
        if cached is not None:
            return cached
        value = await load()
        if value is not None:
            await self.set_cached(key, value, ttl_seconds, encode)
        return value

    async def delete(self, key: str) -> None:
        try:
            await asyncio.wait_for(self.backend.delete(key), self.timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning("cache_delete_timeout", key=key)
        except Exception as exc:
            logger.warning("cache_delete_failed", key=key, error=str(exc))

    async def delete_by_prefix(self, pattern: str) -> int:
        """Invalidate every key matching ``pattern``; returns how many were removed.

        Keys are deleted batch by batch, so an interrupted sweep leaves at worst
        some stale entries behind. Those expire or get recomputed on the next miss.
        """
        try:
            deleted = await asyncio.wait_for(
                self.backend.delete_pattern(pattern), self.timeout_seconds
            )
        except asyncio.TimeoutError:
            logger.warning("cache_invalidate_timeout", pattern=pattern)
            return 0
        except Exception as exc:
            logger.warning("cache_invalidate_failed", pattern=pattern, error=str(exc))
            return 0
        logger.debug("cache_invalidated", pattern=pattern, deleted=deleted)
        return deleted
