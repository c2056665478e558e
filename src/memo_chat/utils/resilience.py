"""Deadline helpers applied to every downstream call."""

import asyncio
from typing import Awaitable, Callable, TypeVar

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_none

from memo_chat.utils.errors import UpstreamTimeoutError
from memo_chat.utils.logging import get_logger

logger = get_logger("resilience")

T = TypeVar("T")


async def with_timeout(operation: Awaitable[T], timeout: float, label: str) -> T:
    """Race ``operation`` against a timer.

    On expiry the wait is abandoned and ``UpstreamTimeoutError`` is raised.
    Work already handed to a thread or a remote service is not interrupted.
    """
    try:
        return await asyncio.wait_for(operation, timeout=timeout)
    except asyncio.TimeoutError as e:
        logger.warning(f"{label} timed out after {timeout:g}s")
        raise UpstreamTimeoutError(label=label, timeout=timeout) from e


async def with_timeout_retry(
    factory: Callable[[], Awaitable[T]],
    timeout: float,
    label: str,
    attempts: int = 2,
) -> T:
    """Like ``with_timeout`` but retries timeouts for cheap, idempotent calls.

    ``factory`` is called once per attempt since an awaitable cannot be awaited twice.
    Only ``UpstreamTimeoutError`` is retried; other errors propagate immediately.
    """
    async for attempt in AsyncRetrying(
        reraise=True,
        stop=stop_after_attempt(max(1, attempts)),
        wait=wait_none(),
        retry=retry_if_exception_type(UpstreamTimeoutError),
    ):
        with attempt:
            return await with_timeout(factory(), timeout, label)
    # unreachable due to reraise=True, but keeps type checkers happy
    raise UpstreamTimeoutError(label=label, timeout=timeout)
