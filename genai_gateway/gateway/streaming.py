"""Pull-based chat event stream over a live vendor HTTP response.

The stream owns the vendor connection: it is closed when the consumer reaches
the terminal event, stops iterating, or the task is cancelled. Each network
read races a per-request deadline and an optional cancellation event; both
abort the read the same way and end the sequence with an ErrorEvent.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator

import httpx

from genai_gateway.gateway.errors import RequestAbortedError
from genai_gateway.gateway.stream_decoders import LineStreamDecoder
from genai_gateway.gateway.types import ChatEvent, ErrorEvent

logger = logging.getLogger(__name__)


class Deadline:
    """Absolute point in (monotonic loop) time after which a request is aborted."""

    def __init__(self, timeout: float):
        self.timeout = timeout
        self._expires_at = asyncio.get_running_loop().time() + timeout

    def remaining(self) -> float:
        return self._expires_at - asyncio.get_running_loop().time()


async def run_with_abort(
    awaitable,
    deadline: Deadline,
    cancel_event: asyncio.Event | None = None,
    vendor: str = "",
):
    """Await *awaitable* unless the deadline passes or *cancel_event* is set first.

    Raises RequestAbortedError on either trigger. Exceptions of the awaitable
    itself (including StopAsyncIteration) propagate unchanged.
    """
    remaining = deadline.remaining()
    aborted = None
    if remaining <= 0:
        aborted = RequestAbortedError("timeout", vendor, deadline.timeout)
    elif cancel_event is not None and cancel_event.is_set():
        aborted = RequestAbortedError("cancelled", vendor)
    if aborted is not None:
        close = getattr(awaitable, "close", None)
        if close is not None:
            close()  # never scheduled
        raise aborted

    work = asyncio.ensure_future(awaitable)
    waiters: set[asyncio.Future] = {work}
    cancel_waiter: asyncio.Future | None = None
    if cancel_event is not None:
        cancel_waiter = asyncio.ensure_future(cancel_event.wait())
        waiters.add(cancel_waiter)

    try:
        await asyncio.wait(waiters, timeout=remaining, return_when=asyncio.FIRST_COMPLETED)
    finally:
        if cancel_waiter is not None:
            cancel_waiter.cancel()
        if not work.done():
            work.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await work

    if work.cancelled():
        if cancel_event is not None and cancel_event.is_set():
            raise RequestAbortedError("cancelled", vendor)
        raise RequestAbortedError("timeout", vendor, deadline.timeout)
    return work.result()


class ChatEventStream:
    """Lazy, finite, single-pass sequence of canonical chat events.

    Iterate it exactly once with ``async for``. The sequence always ends with
    one terminal event (DoneEvent or ErrorEvent).
    """

    def __init__(
        self,
        response: httpx.Response,
        client: httpx.AsyncClient,
        decoder: LineStreamDecoder,
        *,
        vendor: str,
        model: str,
        deadline: Deadline,
        cancel_event: asyncio.Event | None = None,
    ):
        self.vendor = vendor
        self.model = model
        self._response = response
        self._client = client
        self._decoder = decoder
        self._deadline = deadline
        self._cancel_event = cancel_event
        self._started = False
        self._closed = False

    def __aiter__(self) -> AsyncIterator[ChatEvent]:
        if self._started:
            raise RuntimeError("ChatEventStream can only be iterated once")
        self._started = True
        return self._events()

    async def _events(self) -> AsyncIterator[ChatEvent]:
        chunks = self._response.aiter_bytes()
        try:
            while True:
                try:
                    chunk = await run_with_abort(
                        chunks.__anext__(), self._deadline, self._cancel_event, self.vendor
                    )
                except StopAsyncIteration:
                    break
                except RequestAbortedError as e:
                    logger.warning("%s stream aborted (%s)", self.vendor, e.reason)
                    yield ErrorEvent(e.message)
                    return
                except httpx.HTTPError as e:
                    logger.warning("%s stream read failed: %s", self.vendor, e)
                    yield ErrorEvent(f"Connection to {self.vendor} failed mid-stream: {e}")
                    return

                for event in self._decoder.feed(chunk):
                    yield event
                    if event.terminal:
                        return

            for event in self._decoder.finish():
                yield event
        finally:
            await self.aclose()

    async def aclose(self) -> None:
        """Release the vendor connection. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        await self._response.aclose()
        await self._client.aclose()
