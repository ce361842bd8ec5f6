"""Timeout and single-retry helpers for backend calls."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any, TypeVar

from parley.core.exceptions import BackendTimeoutError
from parley.logging_config import get_logger
from parley.observability.metrics import record_backend_timeout

logger: Any = get_logger(__name__)

T = TypeVar("T")

# A timed-out backend call is retried exactly once before surfacing
TIMEOUT_RETRIES = 1


async def call_with_timeout(
    call: Callable[[], Awaitable[T]],
    *,
    stage: str,
    timeout: float,
    retries: int = TIMEOUT_RETRIES,
    session_id: str | None = None,
) -> T:
    """Await ``call()`` under ``timeout``, retrying on timeout only.

    ``call`` is a factory so each attempt gets a fresh coroutine.

    Raises:
        BackendTimeoutError: When every attempt timed out.
    """
    for attempt in range(retries + 1):
        try:
            return await asyncio.wait_for(call(), timeout=timeout)
        except TimeoutError:
            record_backend_timeout(stage)
            logger.warning(
                f"{stage} call timed out after {timeout}s "
                f"(attempt {attempt + 1}/{retries + 1}, session={session_id})"
            )

    raise BackendTimeoutError(
        f"{stage} backend timed out after {retries + 1} attempts",
        stage=stage,
        timeout=timeout,
        session_id=session_id,
    )


async def next_before(
    stream: AsyncIterator[T],
    deadline: float,
    *,
    stage: str,
    session_id: str | None = None,
) -> T:
    """Get the next item of ``stream`` before the loop-time ``deadline``.

    Raises:
        StopAsyncIteration: When the stream is exhausted.
        BackendTimeoutError: When the deadline passes first.
    """
    remaining = deadline - asyncio.get_running_loop().time()
    if remaining <= 0:
        raise BackendTimeoutError(
            f"{stage} deadline passed", stage=stage, timeout=0.0, session_id=session_id
        )
    try:
        return await asyncio.wait_for(anext(stream), timeout=remaining)
    except TimeoutError as e:
        raise BackendTimeoutError(
            f"{stage} backend produced nothing for {remaining:.2f}s",
            stage=stage,
            timeout=remaining,
            session_id=session_id,
        ) from e
