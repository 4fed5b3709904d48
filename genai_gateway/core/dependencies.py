"""FastAPI dependencies shared by the gateway routes."""

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator

from fastapi import Request

from genai_gateway.core.config import Settings, settings
from genai_gateway.gateway.errors import ValidationError
from genai_gateway.gateway.orchestrator import GenerationOrchestrator
from genai_gateway.gateway.rate_limiter import SlidingWindowRateLimiter, client_key_from_headers

logger = logging.getLogger(__name__)


def build_orchestrator(app_settings: Settings = settings, **adapter_kwargs) -> GenerationOrchestrator:
    """Wire an orchestrator with its own chat and image limiter stores."""
    return GenerationOrchestrator(
        app_settings,
        chat_limiter=SlidingWindowRateLimiter(
            app_settings.chat_rate_limit, app_settings.chat_rate_window_seconds, name="chat"
        ),
        image_limiter=SlidingWindowRateLimiter(
            app_settings.image_rate_limit, app_settings.image_rate_window_seconds, name="image"
        ),
        adapter_kwargs=adapter_kwargs,
    )


def get_orchestrator(request: Request) -> GenerationOrchestrator:
    return request.app.state.orchestrator


def get_client_key(request: Request) -> str:
    peer = request.client.host if request.client else None
    return client_key_from_headers(request.headers, peer)


def get_request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "")


async def read_json_body(request: Request):
    """Parse the raw body as JSON. Malformed JSON is a validation failure, not a 422."""
    try:
        return await request.json()
    except ValueError:
        raise ValidationError(["body: must be valid JSON"])


@contextlib.asynccontextmanager
async def disconnect_event(request: Request) -> AsyncIterator[asyncio.Event]:
    """Yield an event that is set once the client goes away.

    Enter only after the body has been read: the watcher consumes ASGI
    receive messages. Leave before returning a StreamingResponse, which
    listens for the disconnect itself.
    """
    event = asyncio.Event()

    async def watch() -> None:
        while True:
            message = await request.receive()
            if message["type"] == "http.disconnect":
                break
        logger.info("Client disconnected, cancelling vendor call")
        event.set()

    watcher = asyncio.create_task(watch())
    try:
        yield event
    finally:
        watcher.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await watcher
