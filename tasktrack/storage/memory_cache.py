from __future__ import annotations

import fnmatch
import threading
import time
from typing import Callable, Dict, List, Optional, Tuple


class MemoryCache:
    """In-process stand-in for RedisCache used under TEST_MODE or dev fallback.

    Mirrors the RedisCache coroutine interface. Expiry is lazy: entries are
    dropped when touched after their deadline.
    """

    SCAN_BATCH_SIZE = 100

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.Lock()

    def verify_connection(self) -> None:
        return None

    def _live(self, key: str) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= self._clock():
            self._entries.pop(key, None)
            return None
        return value

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._live(key)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self._entries[key] = (value, self._clock() + max(1, int(ttl_seconds)))

    async def delete(self, *keys: str) -> int:
        removed = 0
        with self._lock:
            for key in keys:
                if self._live(key) is not None:
                    removed += 1
                self._entries.pop(key, None)
        return removed

    async def getdel(self, key: str) -> Optional[str]:
        with self._lock:
            value = self._live(key)
            self._entries.pop(key, None)
            return value

    async def scan(
        self, cursor: int, match: str, count: int = SCAN_BATCH_SIZE
    ) -> Tuple[int, List[str]]:
        with self._lock:
            keys = sorted(k for k in list(self._entries) if self._live(k) is not None)
        matched = [k for k in keys[cursor : cursor + count] if fnmatch.fnmatchcase(k, match)]
        next_cursor = cursor + count
        return (0 if next_cursor >= len(keys) else next_cursor), matched

    async def delete_pattern(self, pattern: str, *, batch_size: int = SCAN_BATCH_SIZE) -> int:
        # index cursors shift as keys are removed, so sweep a snapshot instead
        with self._lock:
            matched = sorted(
                k
                for k in list(self._entries)
                if self._live(k) is not None and fnmatch.fnmatchcase(k, pattern)
            )
        deleted = 0
        for start in range(0, len(matched), batch_size):
            deleted += await self.delete(*matched[start : start + batch_size])
        return deleted

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()
