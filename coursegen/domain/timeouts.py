from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from typing import TypeVar

from coursegen.domain.errors import GenerationFailure

T = TypeVar("T")


async def call_with_timeout(call: Awaitable[T], *, timeout_seconds: float, what: str) -> T:
    """Bounds an external call; a hang becomes a retryable llm_timeout."""
    try:
        return await asyncio.wait_for(call, timeout=timeout_seconds)
    except TimeoutError as exc:
        raise GenerationFailure(f"{what} timed out after {timeout_seconds:g}s", code="llm_timeout") from exc
