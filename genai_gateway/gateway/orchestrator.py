"""Generation Orchestrator — the request lifecycle behind /chat and /image.

Stages::

    RECEIVED → VALIDATED → RATE_CHECKED → PROVIDER_RESOLVED → CONFIGURED
             → INVOKED → STREAMING | COMPLETED | FAILED

Every failure leaves as a GatewayError stamped with the last stage reached
and, once the rate check has run, the limiter decision so the transport can
emit rate-limit headers on error responses too.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from genai_gateway.core.config import Settings
from genai_gateway.core.metrics import PROVIDER_LATENCY, PROVIDER_REQUESTS, RATE_LIMITED
from genai_gateway.gateway.errors import (
    ConfigurationError,
    GatewayError,
    RateLimitError,
    UnsupportedCapabilityError,
)
from genai_gateway.gateway.rate_limiter import RateLimitDecision, SlidingWindowRateLimiter
from genai_gateway.gateway.streaming import ChatEventStream
from genai_gateway.gateway.types import (
    Capability,
    ChatEvent,
    ChatResult,
    DoneEvent,
    ErrorEvent,
    Vendor,
)
from genai_gateway.gateway.validator import validate_chat_request, validate_image_request
from genai_gateway.gateway.vendor_adapters import ProviderAdapter, create_adapter

logger = logging.getLogger(__name__)

ENDPOINTS = {"chat": "/chat", "image": "/image", "health": "/health", "metrics": "/metrics"}
_STARTED_AT = time.monotonic()


class RequestStage(str, Enum):
    RECEIVED = "received"
    VALIDATED = "validated"
    RATE_CHECKED = "rate_checked"
    PROVIDER_RESOLVED = "provider_resolved"
    CONFIGURED = "configured"
    INVOKED = "invoked"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class GenerationOutcome:
    """What the transport needs to answer: a JSON body or an SSE frame stream."""

    provider: str
    rate_limit: RateLimitDecision
    body: dict[str, Any] | None = None
    frames: AsyncIterator[str] | None = None

    @property
    def streaming(self) -> bool:
        return self.frames is not None


@dataclass
class _Lifecycle:
    operation: str
    request_id: str
    stage: RequestStage = RequestStage.RECEIVED
    provider: str = ""
    rate_limit: RateLimitDecision | None = None
    started: float = field(default_factory=time.perf_counter)

    def advance(self, stage: RequestStage) -> None:
        logger.debug(
            "%s %s → %s",
            self.operation,
            self.stage.value,
            stage.value,
            extra={"request_id": self.request_id, "stage": stage.value},
        )
        self.stage = stage

    def elapsed_ms(self) -> int:
        return int((time.perf_counter() - self.started) * 1000)

    def stamp(self, error: GatewayError) -> GatewayError:
        error.stage = self.stage.value
        if error.rate_limit is None:
            error.rate_limit = self.rate_limit
        return error


def format_sse(event: ChatEvent) -> str:
    """One Server-Sent Events frame: ``data: <json>`` plus a blank line."""
    return f"data: {json.dumps(event.to_dict(), ensure_ascii=False)}\n\n"


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


class GenerationOrchestrator:
    """Drive chat and image requests through validation, rate limiting and a vendor adapter.

    The limiters are owned by the caller (the application state in
    production, fresh instances in tests).
    """

    def __init__(
        self,
        settings: Settings,
        chat_limiter: SlidingWindowRateLimiter,
        image_limiter: SlidingWindowRateLimiter,
        adapter_factory: Callable[..., ProviderAdapter] = create_adapter,
        adapter_kwargs: dict[str, Any] | None = None,
    ):
        self.settings = settings
        self.chat_limiter = chat_limiter
        self.image_limiter = image_limiter
        self._adapter_factory = adapter_factory
        self._adapter_kwargs = adapter_kwargs or {}

    # -----------------------------------------------------------------
    # Shared stages
    # -----------------------------------------------------------------

    async def _rate_check(self, lifecycle: _Lifecycle, limiter: SlidingWindowRateLimiter, client_key: str) -> None:
        decision = await limiter.acquire(client_key)
        lifecycle.rate_limit = decision
        lifecycle.advance(RequestStage.RATE_CHECKED)
        if decision.limited:
            RATE_LIMITED.labels(endpoint=lifecycle.operation).inc()
            raise RateLimitError(decision)

    def _resolve(self, lifecycle: _Lifecycle, vendor: Vendor, capability: Capability) -> ProviderAdapter:
        lifecycle.provider = vendor.value
        lifecycle.advance(RequestStage.PROVIDER_RESOLVED)
        adapter = self._adapter_factory(
            vendor,
            self.settings.adapter_config(vendor),
            capability=capability,
            **self._adapter_kwargs,
        )
        if capability == Capability.IMAGE and not adapter.supports_image_generation:
            raise UnsupportedCapabilityError(f"Provider {vendor.value} does not support image generation")
        if not adapter.is_configured():
            raise ConfigurationError(f"Provider {vendor.value} is not configured")
        lifecycle.advance(RequestStage.CONFIGURED)
        return adapter

    def _fail(self, lifecycle: _Lifecycle, error: GatewayError) -> GatewayError:
        lifecycle.stamp(error)
        if lifecycle.stage in (RequestStage.INVOKED, RequestStage.STREAMING):
            PROVIDER_REQUESTS.labels(
                provider=lifecycle.provider, operation=lifecycle.operation, outcome="error"
            ).inc()
            logger.warning(
                "%s via %s failed at %s: %s",
                lifecycle.operation,
                lifecycle.provider,
                lifecycle.stage.value,
                error.message,
                extra={"request_id": lifecycle.request_id, "provider": lifecycle.provider, "stage": error.stage},
            )
        else:
            logger.info(
                "%s rejected at %s: %s (%d)",
                lifecycle.operation,
                lifecycle.stage.value,
                error.message,
                error.status_code,
                extra={"request_id": lifecycle.request_id, "stage": error.stage},
            )
        lifecycle.stage = RequestStage.FAILED
        return error

    def _record_success(self, lifecycle: _Lifecycle, invoked_at: float) -> None:
        PROVIDER_LATENCY.labels(provider=lifecycle.provider, operation=lifecycle.operation).observe(
            time.perf_counter() - invoked_at
        )
        PROVIDER_REQUESTS.labels(provider=lifecycle.provider, operation=lifecycle.operation, outcome="ok").inc()

    # -----------------------------------------------------------------
    # Chat
    # -----------------------------------------------------------------

    async def chat(
        self,
        payload: Any,
        client_key: str,
        cancel_event: asyncio.Event | None = None,
        request_id: str = "",
    ) -> GenerationOutcome:
        """Run a chat request. Raises GatewayError on any pre-stream failure."""
        lifecycle = _Lifecycle(operation="chat", request_id=request_id)
        try:
            request = validate_chat_request(payload)
            lifecycle.advance(RequestStage.VALIDATED)

            await self._rate_check(lifecycle, self.chat_limiter, client_key)
            adapter = self._resolve(lifecycle, request.vendor, Capability.CHAT)

            lifecycle.advance(RequestStage.INVOKED)
            invoked_at = time.perf_counter()
            result = await adapter.chat(request, cancel_event)
            self._record_success(lifecycle, invoked_at)
        except GatewayError as e:
            raise self._fail(lifecycle, e)

        if isinstance(result, ChatEventStream):
            lifecycle.advance(RequestStage.STREAMING)
            return GenerationOutcome(
                provider=lifecycle.provider,
                rate_limit=lifecycle.rate_limit,
                frames=self._stream_frames(lifecycle, result),
            )

        lifecycle.advance(RequestStage.COMPLETED)
        return GenerationOutcome(
            provider=lifecycle.provider,
            rate_limit=lifecycle.rate_limit,
            body=self._chat_body(lifecycle, result),
        )

    def _chat_body(self, lifecycle: _Lifecycle, result: ChatResult) -> dict[str, Any]:
        logger.info(
            "chat via %s completed in %dms",
            lifecycle.provider,
            lifecycle.elapsed_ms(),
            extra={"request_id": lifecycle.request_id, "provider": lifecycle.provider},
        )
        return {
            "success": True,
            "provider": lifecycle.provider,
            "response": result.content,
            "metadata": {
                "provider": lifecycle.provider,
                "model": result.model,
                "duration_ms": lifecycle.elapsed_ms(),
                "timestamp": _timestamp(),
                "request_id": lifecycle.request_id,
            },
            "usage": result.usage,
        }

    async def _stream_frames(self, lifecycle: _Lifecycle, stream: ChatEventStream) -> AsyncIterator[str]:
        """Forward events as SSE frames, ending exactly at the terminal event."""
        terminal: ChatEvent | None = None
        try:
            async for event in stream:
                if isinstance(event, DoneEvent):
                    event = DoneEvent(
                        {
                            **event.metadata,
                            "provider": lifecycle.provider,
                            "model": event.metadata.get("model") or stream.model,
                            "duration_ms": lifecycle.elapsed_ms(),
                            "request_id": lifecycle.request_id,
                        }
                    )
                yield format_sse(event)
                if event.terminal:
                    terminal = event
                    break
        finally:
            await stream.aclose()
            if isinstance(terminal, ErrorEvent):
                lifecycle.stage = RequestStage.FAILED
                PROVIDER_REQUESTS.labels(provider=lifecycle.provider, operation="chat_stream", outcome="error").inc()
                logger.warning(
                    "chat stream via %s ended with error: %s",
                    lifecycle.provider,
                    terminal.message,
                    extra={"request_id": lifecycle.request_id, "provider": lifecycle.provider},
                )
            elif terminal is not None:
                lifecycle.advance(RequestStage.COMPLETED)
                logger.info(
                    "chat stream via %s completed in %dms",
                    lifecycle.provider,
                    lifecycle.elapsed_ms(),
                    extra={"request_id": lifecycle.request_id, "provider": lifecycle.provider},
                )
            else:
                logger.info(
                    "chat stream via %s closed by client",
                    lifecycle.provider,
                    extra={"request_id": lifecycle.request_id, "provider": lifecycle.provider},
                )

    # -----------------------------------------------------------------
    # Image
    # -----------------------------------------------------------------

    async def image(
        self,
        payload: Any,
        client_key: str,
        cancel_event: asyncio.Event | None = None,
        request_id: str = "",
    ) -> GenerationOutcome:
        """Run an image request. Always buffered."""
        lifecycle = _Lifecycle(operation="image", request_id=request_id)
        try:
            request = validate_image_request(payload)
            lifecycle.advance(RequestStage.VALIDATED)

            await self._rate_check(lifecycle, self.image_limiter, client_key)
            adapter = self._resolve(lifecycle, request.vendor, Capability.IMAGE)

            lifecycle.advance(RequestStage.INVOKED)
            invoked_at = time.perf_counter()
            result = await adapter.generate_image(request, cancel_event)
            self._record_success(lifecycle, invoked_at)
        except GatewayError as e:
            raise self._fail(lifecycle, e)

        lifecycle.advance(RequestStage.COMPLETED)
        logger.info(
            "image via %s completed in %dms",
            lifecycle.provider,
            lifecycle.elapsed_ms(),
            extra={"request_id": lifecycle.request_id, "provider": lifecycle.provider},
        )
        images = [result.to_dict()]
        return GenerationOutcome(
            provider=lifecycle.provider,
            rate_limit=lifecycle.rate_limit,
            body={
                "success": True,
                "provider": lifecycle.provider,
                "images": images,
                "metadata": {
                    "provider": lifecycle.provider,
                    "model": result.model,
                    "duration_ms": lifecycle.elapsed_ms(),
                    "timestamp": _timestamp(),
                    "request_id": lifecycle.request_id,
                    "prompt": {"original": result.original_prompt, "revised": result.revised_prompt},
                    "options": {
                        "size": request.size.value,
                        "quality": request.quality.value,
                        "response_format": request.response_format.value,
                    },
                },
                "count": len(images),
            },
        )

    # -----------------------------------------------------------------
    # Health
    # -----------------------------------------------------------------

    def health(self) -> dict[str, Any]:
        """Credential presence per vendor. Healthy only when every vendor is configured.

        No vendor is contacted.
        """
        providers = self.settings.provider_status()
        return {
            "status": "healthy" if all(providers.values()) else "degraded",
            "providers": providers,
            "timestamp": _timestamp(),
            "uptime": int(time.monotonic() - _STARTED_AT),
            "version": self.settings.app_version,
            "environment": self.settings.app_env,
            "endpoints": ENDPOINTS,
        }
