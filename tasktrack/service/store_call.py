from __future__ import annotations

import asyncio
from typing import Any, Callable, TypeVar

from tasktrack.logging import get_logger
from tasktrack.service.errors import DatabaseError, ServiceError
from tasktrack.storage.errors import ConstraintViolation

logger = get_logger(__name__)

T = TypeVar("T")


async def call_store(operation: str, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Run a blocking store call off the event loop.

    ``ConstraintViolation`` and service errors pass through untouched so
    callers can map them; anything else becomes an opaque ``DatabaseError``.
    """
    try:
        return await asyncio.to_thread(func, *args, **kwargs)
    except (ConstraintViolation, ServiceError):
        raise
    except Exception as exc:
        logger.error(
            "store_operation_failed",
            operation=operation,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        raise DatabaseError("database operation failed", detail={"operation": operation}) from exc
