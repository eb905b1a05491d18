"""Transport-level retry for state store calls."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
import logging
from typing import TypeVar

import asyncpg

from coursegen.domain.errors import InfrastructureError

T = TypeVar("T")
logger = logging.getLogger(__name__)

DEFAULT_DELAYS: tuple[float, ...] = (0.1, 0.5, 2.0)

TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    ConnectionError,
    OSError,
    asyncio.TimeoutError,
    asyncpg.PostgresConnectionError,
    asyncpg.InterfaceError,
    asyncpg.exceptions.SerializationError,
    asyncpg.exceptions.DeadlockDetectedError,
)


async def with_transport_retry(
    call: Callable[[], Awaitable[T]],
    *,
    operation: str,
    delays: Sequence[float] = DEFAULT_DELAYS,
) -> T:
    """Runs ``call`` again after each delay while it fails with a transient error.

    Non-transient errors are raised immediately. When every retry fails the
    last error is wrapped in InfrastructureError.
    """
    for attempt, delay in enumerate(delays):
        try:
            return await call()
        except TRANSIENT_ERRORS as exc:
            logger.warning(
                "store call failed, retrying",
                extra={"operation": operation, "retry": attempt + 1, "delay_seconds": delay, "error": str(exc)},
            )
            await asyncio.sleep(delay)

    try:
        return await call()
    except TRANSIENT_ERRORS as exc:
        raise InfrastructureError(f"{operation} failed after {len(delays) + 1} tries: {exc}") from exc
