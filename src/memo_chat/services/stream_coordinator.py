"""Server-Sent Events coordinator for streamed, cited answers.

Frame order on the wire is always::

    citations -> delta* -> (done | error)

with ``: keep-alive`` comment frames allowed between data frames while the
completion provider is quiet. Everything is produced by one generator, so
keep-alives can never be reordered relative to data frames.

State machine::

    NOT_STARTED -> STREAMING -> DONE
         |              \\-----> ERRORED
         \\-------------------> ERRORED

Only ``NOT_STARTED -> ERRORED`` may be reported as an HTTP status code; once
streaming has started, failures become an in-stream ``error`` event.
"""

import asyncio
import json
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional, Sequence

from memo_chat.models.chat import StreamEventType
from memo_chat.models.chunk import Context
from memo_chat.utils.errors import UpstreamTimeoutError
from memo_chat.utils.logging import get_logger

logger = get_logger("stream_coordinator")

KEEPALIVE_FRAME = ": keep-alive\n\n"

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


class StreamState(str, Enum):
    NOT_STARTED = "not_started"
    STREAMING = "streaming"
    DONE = "done"
    ERRORED = "errored"


_ALLOWED_TRANSITIONS = {
    StreamState.NOT_STARTED: {StreamState.STREAMING, StreamState.ERRORED},
    StreamState.STREAMING: {StreamState.DONE, StreamState.ERRORED},
    StreamState.DONE: set(),
    StreamState.ERRORED: set(),
}


def format_event(payload: Dict[str, Any]) -> str:
    """Frame one JSON payload as an SSE data event."""
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"


class StreamCoordinator:
    """Drives one response stream from citations to its terminal event."""

    def __init__(
        self,
        keepalive_interval: float = 15.0,
        completion_timeout: float = 60.0,
        is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
    ):
        self.keepalive_interval = keepalive_interval
        self.completion_timeout = completion_timeout
        self._is_disconnected = is_disconnected
        self._state = StreamState.NOT_STARTED

    @property
    def state(self) -> StreamState:
        return self._state

    @property
    def can_send_status_error(self) -> bool:
        """True while no bytes have been written to the client."""
        return self._state == StreamState.NOT_STARTED

    def _transition(self, new_state: StreamState) -> None:
        if new_state not in _ALLOWED_TRANSITIONS[self._state]:
            raise RuntimeError(f"Invalid stream transition {self._state.value} -> {new_state.value}")
        logger.debug(
            f"Stream state {self._state.value} -> {new_state.value}",
            extra={"stream_state": new_state.value},
        )
        self._state = new_state

    def fail_before_stream(self) -> None:
        """Record a failure that will be reported as a status-coded response.

        Raises:
            RuntimeError: If the stream has already started.
        """
        if self._state is not StreamState.NOT_STARTED:
            raise RuntimeError(
                f"Cannot report a status-coded error once the stream is {self._state.value}"
            )
        self._transition(StreamState.ERRORED)

    async def _client_gone(self) -> bool:
        if self._is_disconnected is None:
            return False
        try:
            return await self._is_disconnected()
        except Exception:
            logger.debug("Disconnect check failed", exc_info=True)
            return False

    @staticmethod
    def _error_message(error: Exception) -> str:
        if isinstance(error, UpstreamTimeoutError):
            return "Response timed out"
        return "Stream processing failed"

    async def stream(
        self, contexts: Sequence[Context], token_stream: AsyncIterator[str]
    ) -> AsyncIterator[str]:
        """Yield SSE frames for ``contexts`` followed by the streamed answer.

        ``completion_timeout`` bounds every quiet period of the token stream,
        including the wait for the first increment. The token stream is always
        closed on exit, including when the client disconnects.
        """
        self._transition(StreamState.STREAMING)
        yield format_event(
            {
                "type": StreamEventType.CITATIONS.value,
                "citations": [c.to_citation() for c in contexts],
            }
        )

        loop = asyncio.get_running_loop()
        iterator = token_stream.__aiter__()
        pending: Optional[asyncio.Future] = None
        last_activity = loop.time()
        delta_count = 0

        try:
            while True:
                if pending is None:
                    pending = asyncio.ensure_future(iterator.__anext__())

                remaining = self.completion_timeout - (loop.time() - last_activity)
                wait = max(0.0, min(self.keepalive_interval, remaining))
                done, _ = await asyncio.wait({pending}, timeout=wait)

                if not done:
                    # The wait ran up to the completion deadline rather than a keep-alive tick
                    if remaining <= self.keepalive_interval:
                        raise UpstreamTimeoutError(
                            label="Completion stream", timeout=self.completion_timeout
                        )
                    if await self._client_gone():
                        logger.info(
                            "Client disconnected while waiting for completion",
                            extra={"deltas": delta_count},
                        )
                        self._transition(StreamState.ERRORED)
                        return
                    yield KEEPALIVE_FRAME
                    continue

                finished, pending = pending, None
                try:
                    delta = finished.result()
                except StopAsyncIteration:
                    break

                last_activity = loop.time()
                if not delta:
                    continue
                if await self._client_gone():
                    logger.info(
                        f"Client disconnected after {delta_count} deltas", extra={"deltas": delta_count}
                    )
                    self._transition(StreamState.ERRORED)
                    return
                delta_count += 1
                yield format_event({"type": StreamEventType.DELTA.value, "delta": delta})

            self._transition(StreamState.DONE)
            logger.info(
                "Stream completed",
                extra={
                    "stream_state": self._state.value,
                    "deltas": delta_count,
                    "citations": len(contexts),
                },
            )
            yield format_event({"type": StreamEventType.DONE.value})

        except (asyncio.CancelledError, GeneratorExit):
            logger.info("Stream closed before completion", extra={"deltas": delta_count})
            if self._state == StreamState.STREAMING:
                self._transition(StreamState.ERRORED)
            raise
        except Exception as e:
            logger.error(
                f"Error during streaming: {e}",
                exc_info=True,
                extra={"error_type": type(e).__name__, "deltas": delta_count},
            )
            self._transition(StreamState.ERRORED)
            yield format_event(
                {"type": StreamEventType.ERROR.value, "error": self._error_message(e)}
            )
        finally:
            await self._release(pending, iterator)

    @staticmethod
    async def _release(pending: Optional[asyncio.Future], iterator: AsyncIterator[str]) -> None:
        if pending is not None and not pending.done():
            pending.cancel()
            try:
                await pending
            except (asyncio.CancelledError, StopAsyncIteration):
                pass
            except Exception as e:
                logger.debug(f"Ignoring error from abandoned completion read: {e}")

        aclose = getattr(iterator, "aclose", None)
        if aclose is not None:
            try:
                await aclose()
            except Exception as e:
                logger.debug(f"Ignoring error while closing token stream: {e}")
