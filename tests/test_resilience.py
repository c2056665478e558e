"""Unit tests for the deadline helpers."""

import asyncio

import pytest

from memo_chat.utils.errors import UpstreamTimeoutError, VectorStoreError
from memo_chat.utils.resilience import with_timeout, with_timeout_retry


async def _sleep_then(value, delay: float):
    await asyncio.sleep(delay)
    return value


@pytest.mark.asyncio
async def test_with_timeout_returns_result():
    assert await with_timeout(_sleep_then("ok", 0), 1.0, "fast call") == "ok"


@pytest.mark.asyncio
async def test_with_timeout_raises_labeled_error():
    with pytest.raises(UpstreamTimeoutError) as exc_info:
        await with_timeout(_sleep_then("late", 1.0), 0.01, "Vector search")

    assert exc_info.value.label == "Vector search"
    assert exc_info.value.message == "Vector search timeout after 0.01s"
    assert exc_info.value.status_code == 504


@pytest.mark.asyncio
async def test_with_timeout_propagates_other_errors():
    async def boom():
        raise VectorStoreError("down")

    with pytest.raises(VectorStoreError):
        await with_timeout(boom(), 1.0, "store")


@pytest.mark.asyncio
async def test_retry_recovers_from_one_timeout():
    calls = []

    def factory():
        calls.append(1)
        delay = 1.0 if len(calls) == 1 else 0
        return _sleep_then("second try", delay)

    result = await with_timeout_retry(factory, 0.01, "lookup", attempts=2)

    assert result == "second try"
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_retry_gives_up_after_attempts():
    calls = []

    def factory():
        calls.append(1)
        return _sleep_then("never", 1.0)

    with pytest.raises(UpstreamTimeoutError):
        await with_timeout_retry(factory, 0.01, "lookup", attempts=2)

    assert len(calls) == 2


@pytest.mark.asyncio
async def test_retry_does_not_retry_other_errors():
    calls = []

    async def failing():
        raise VectorStoreError("down")

    def factory():
        calls.append(1)
        return failing()

    with pytest.raises(VectorStoreError):
        await with_timeout_retry(factory, 1.0, "lookup", attempts=3)

    assert len(calls) == 1
