"""Vendor-Specific Adapters — protocol-level handling for each AI vendor.

Each adapter translates a canonical ChatRequest / ImageRequest into the
vendor's HTTP protocol and maps the reply back to canonical shapes. Adapters
share no base class: they are independent implementations of the
``ProviderAdapter`` protocol, selected by ``create_adapter``.

Vendor-specific behaviors:
  - OpenAI: Chat Completions (bearer auth), DALL·E 3 image generation
  - Gemini: generateContent / streamGenerateContent, key query param,
    assistant → model, system prompt folded into the first user turn
  - Anthropic: Messages API (x-api-key), system prompt hoisted to top level
  - Azure OpenAI chat: deployment name in the URL path, api-key header
  - Azure OpenAI image: DALL·E 3 deployment, always base64 output
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from typing import Any, Protocol, runtime_checkable

import httpx

from genai_gateway.gateway.errors import (
    ConfigurationError,
    RequestAbortedError,
    UnsupportedCapabilityError,
    UnsupportedVendorError,
    VendorError,
)
from genai_gateway.gateway.stream_decoders import get_decoder
from genai_gateway.gateway.streaming import ChatEventStream, Deadline, run_with_abort
from genai_gateway.gateway.types import (
    MAX_OUTPUT_TOKENS,
    AdapterConfig,
    Capability,
    ChatMessage,
    ChatRequest,
    ChatResult,
    ImageRequest,
    ImageResponseFormat,
    ImageResult,
    MessageRole,
    Vendor,
)

logger = logging.getLogger(__name__)

USER_AGENT = "genai-gateway/1.0"
END_USER_ID = "demo-student"


@runtime_checkable
class ProviderAdapter(Protocol):
    """Capability set every vendor adapter implements."""

    vendor: Vendor
    supports_image_generation: bool

    def is_configured(self) -> bool: ...

    async def chat(
        self, request: ChatRequest, cancel_event: asyncio.Event | None = None
    ) -> ChatEventStream | ChatResult: ...

    async def generate_image(
        self, request: ImageRequest, cancel_event: asyncio.Event | None = None
    ) -> ImageResult: ...


# ---------------------------------------------------------------------------
# Shared HTTP helpers
# ---------------------------------------------------------------------------


def _base_headers() -> dict[str, str]:
    return {"Content-Type": "application/json", "User-Agent": USER_AGENT}


def _make_client(timeout: float, transport: httpx.AsyncBaseTransport | None) -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=timeout, transport=transport)


async def _vendor_error(response: httpx.Response, vendor: Vendor) -> VendorError:
    """Build a VendorError from a failed HTTP response, keeping the vendor's own text."""
    await response.aread()
    message = f"Error {response.status_code}"
    try:
        data = response.json()
    except ValueError:
        data = None

    # Gemini occasionally wraps errors in a one-element array
    if isinstance(data, list) and data:
        data = data[0]

    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict) and error.get("message"):
            message = error["message"]
        elif isinstance(error, str) and error:
            message = error
        elif data.get("message"):
            message = str(data["message"])
    elif response.reason_phrase:
        message = response.reason_phrase

    return VendorError(message, vendor=vendor.value, vendor_status=response.status_code)


async def _post_json(
    *,
    vendor: Vendor,
    url: str,
    payload: dict[str, Any],
    headers: dict[str, str],
    params: dict[str, str] | None,
    timeout: float,
    transport: httpx.AsyncBaseTransport | None,
    cancel_event: asyncio.Event | None,
) -> dict[str, Any]:
    """One buffered request/response cycle. Returns the decoded JSON body."""
    deadline = Deadline(timeout)
    try:
        async with _make_client(timeout, transport) as client:
            resp = await run_with_abort(
                client.post(url, json=payload, headers=headers, params=params),
                deadline,
                cancel_event,
                vendor.value,
            )
            if resp.status_code >= 400:
                raise await _vendor_error(resp, vendor)
            try:
                data = resp.json()
            except ValueError as e:
                raise VendorError(f"Invalid JSON response: {e}", vendor=vendor.value, vendor_status=resp.status_code)
    except httpx.TimeoutException:
        raise RequestAbortedError("timeout", vendor.value, timeout)
    except httpx.HTTPError as e:
        raise VendorError(f"Connection to {vendor.value} failed: {e}", vendor=vendor.value)

    if not isinstance(data, dict):
        raise VendorError("Unexpected response body", vendor=vendor.value, vendor_status=resp.status_code)
    return data


async def _open_stream(
    *,
    vendor: Vendor,
    model: str,
    url: str,
    payload: dict[str, Any],
    headers: dict[str, str],
    params: dict[str, str] | None,
    timeout: float,
    transport: httpx.AsyncBaseTransport | None,
    cancel_event: asyncio.Event | None,
) -> ChatEventStream:
    """Send the request and hand back a live event stream.

    Vendor HTTP failures are raised here, before the first event, so the
    caller can still answer with a proper status code.
    """
    deadline = Deadline(timeout)
    client = _make_client(timeout, transport)
    try:
        request = client.build_request("POST", url, json=payload, headers=headers, params=params)
        resp = await run_with_abort(client.send(request, stream=True), deadline, cancel_event, vendor.value)
    except httpx.TimeoutException:
        await client.aclose()
        raise RequestAbortedError("timeout", vendor.value, timeout)
    except httpx.HTTPError as e:
        await client.aclose()
        raise VendorError(f"Connection to {vendor.value} failed: {e}", vendor=vendor.value)
    except BaseException:
        await client.aclose()
        raise

    if resp.status_code >= 400:
        try:
            error = await _vendor_error(resp, vendor)
        finally:
            await resp.aclose()
            await client.aclose()
        raise error

    return ChatEventStream(
        resp,
        client,
        get_decoder(vendor),
        vendor=vendor.value,
        model=model,
        deadline=deadline,
        cancel_event=cancel_event,
    )


async def _invoke_chat(
    *,
    vendor: Vendor,
    request: ChatRequest,
    url: str,
    payload: dict[str, Any],
    headers: dict[str, str],
    params: dict[str, str] | None,
    config: AdapterConfig,
    transport: httpx.AsyncBaseTransport | None,
    cancel_event: asyncio.Event | None,
    parse_result: Callable[[dict[str, Any]], ChatResult],
) -> ChatEventStream | ChatResult:
    logger.debug(
        "Sending chat request to %s (model=%s, messages=%d, stream=%s)",
        vendor.value,
        request.model,
        len(request.messages),
        request.streaming,
    )
    common = dict(
        vendor=vendor,
        url=url,
        payload=payload,
        headers=headers,
        params=params,
        timeout=config.timeout_seconds,
        transport=transport,
        cancel_event=cancel_event,
    )
    if request.streaming:
        return await _open_stream(model=request.model, **common)

    data = await _post_json(**common)
    try:
        return parse_result(data)
    except (LookupError, TypeError, AttributeError) as e:
        raise VendorError(f"Unexpected response shape: {e}", vendor=vendor.value, vendor_status=200)


def _parse_image(data: dict[str, Any], request: ImageRequest, vendor: Vendor, model: str) -> ImageResult:
    items = data.get("data") or []
    if not items:
        raise VendorError("No image was generated", vendor=vendor.value, vendor_status=200)
    item = items[0]
    return ImageResult(
        original_prompt=request.prompt,
        size=request.size,
        quality=request.quality,
        image_url=item.get("url"),
        image_base64=item.get("b64_json"),
        revised_prompt=item.get("revised_prompt"),
        model=model,
    )


def _openai_result(data: dict[str, Any], fallback_model: str) -> ChatResult:
    choices = data.get("choices") or [{}]
    content = (choices[0].get("message") or {}).get("content") or ""
    return ChatResult(content=content, model=data.get("model") or fallback_model, usage=data.get("usage") or {})


# ---------------------------------------------------------------------------
# OpenAI Adapter
# ---------------------------------------------------------------------------


class OpenAIAdapter:
    """OpenAI Chat Completions + DALL·E 3 adapter."""

    vendor = Vendor.OPENAI
    supports_image_generation = True
    default_base_url = "https://api.openai.com/v1"
    image_model = "dall-e-3"

    def __init__(self, config: AdapterConfig, *, transport: httpx.AsyncBaseTransport | None = None):
        if not config.api_key:
            raise ConfigurationError("OpenAI API key is required")
        self.config = config
        self.base_url = (config.base_url or self.default_base_url).rstrip("/")
        self._transport = transport

    def is_configured(self) -> bool:
        return bool(self.config.api_key)

    def _headers(self) -> dict[str, str]:
        return {**_base_headers(), "Authorization": f"Bearer {self.config.api_key}"}

    @staticmethod
    def format_messages(messages: Sequence[ChatMessage]) -> list[dict[str, str]]:
        """Direct role mapping: the canonical shape is OpenAI's shape."""
        return [m.to_dict() for m in messages]

    def build_chat_payload(self, request: ChatRequest) -> dict[str, Any]:
        return {
            "model": request.model,
            "messages": self.format_messages(request.messages),
            "temperature": request.temperature,
            "stream": request.streaming,
            "max_tokens": MAX_OUTPUT_TOKENS,
            "user": END_USER_ID,
        }

    async def chat(
        self, request: ChatRequest, cancel_event: asyncio.Event | None = None
    ) -> ChatEventStream | ChatResult:
        return await _invoke_chat(
            vendor=self.vendor,
            request=request,
            url=f"{self.base_url}/chat/completions",
            payload=self.build_chat_payload(request),
            headers=self._headers(),
            params=None,
            config=self.config,
            transport=self._transport,
            cancel_event=cancel_event,
            parse_result=lambda data: _openai_result(data, request.model),
        )

    async def generate_image(self, request: ImageRequest, cancel_event: asyncio.Event | None = None) -> ImageResult:
        logger.debug("Generating image with OpenAI (%s, %s): %.50s", request.size.value, request.quality.value, request.prompt)
        data = await _post_json(
            vendor=self.vendor,
            url=f"{self.base_url}/images/generations",
            payload={
                "model": self.image_model,
                "prompt": request.prompt,
                "size": request.size.value,
                "quality": request.quality.value,
                "n": 1,
                "response_format": request.response_format.value,
                "user": END_USER_ID,
            },
            headers=self._headers(),
            params=None,
            timeout=self.config.image_timeout_seconds,
            transport=self._transport,
            cancel_event=cancel_event,
        )
        return _parse_image(data, request, self.vendor, self.image_model)


# ---------------------------------------------------------------------------
# Gemini Adapter (Google AI)
# ---------------------------------------------------------------------------


class GeminiAdapter:
    """Google Gemini adapter. Chat only."""

    vendor = Vendor.GEMINI
    supports_image_generation = False
    default_base_url = "https://generativelanguage.googleapis.com/v1beta"

    def __init__(self, config: AdapterConfig, *, transport: httpx.AsyncBaseTransport | None = None):
        if not config.api_key:
            raise ConfigurationError("Gemini API key is required")
        self.config = config
        self.base_url = (config.base_url or self.default_base_url).rstrip("/")
        self._transport = transport

    def is_configured(self) -> bool:
        return bool(self.config.api_key)

    @staticmethod
    def format_messages(messages: Sequence[ChatMessage]) -> list[dict[str, Any]]:
        """Rename assistant → model and fold system text into the first user turn.

        Gemini's ``contents`` has no system role. All system messages are
        joined and prefixed onto the first user message; if the conversation
        has no user message the system text becomes a leading user turn.
        """
        system_text = "\n\n".join(m.content for m in messages if m.role == MessageRole.SYSTEM)
        contents: list[dict[str, Any]] = []
        folded = not system_text

        for message in messages:
            if message.role == MessageRole.SYSTEM:
                continue
            role = "model" if message.role == MessageRole.ASSISTANT else "user"
            text = message.content
            if not folded and role == "user":
                text = f"{system_text}\n\n{text}"
                folded = True
            contents.append({"role": role, "parts": [{"text": text}]})

        if not folded:
            contents.insert(0, {"role": "user", "parts": [{"text": system_text}]})
        return contents

    def build_chat_payload(self, request: ChatRequest) -> dict[str, Any]:
        return {
            "contents": self.format_messages(request.messages),
            "generationConfig": {
                "temperature": request.temperature,
                "maxOutputTokens": MAX_OUTPUT_TOKENS,
                "topP": 0.8,
                "topK": 10,
            },
        }

    @staticmethod
    def _parse_result(data: dict[str, Any], model: str) -> ChatResult:
        candidates = data.get("candidates") or []
        if not candidates:
            block_reason = (data.get("promptFeedback") or {}).get("blockReason")
            if block_reason:
                raise VendorError(
                    f"Prompt blocked by Gemini safety filter: {block_reason}",
                    vendor=Vendor.GEMINI.value,
                    vendor_status=200,
                )
            return ChatResult(content="", model=model, usage=data.get("usageMetadata") or {})

        parts = (candidates[0].get("content") or {}).get("parts") or []
        content = "".join(p.get("text", "") for p in parts)
        return ChatResult(content=content, model=model, usage=data.get("usageMetadata") or {})

    async def chat(
        self, request: ChatRequest, cancel_event: asyncio.Event | None = None
    ) -> ChatEventStream | ChatResult:
        if request.streaming:
            url = f"{self.base_url}/models/{request.model}:streamGenerateContent"
            params = {"key": self.config.api_key, "alt": "sse"}
        else:
            url = f"{self.base_url}/models/{request.model}:generateContent"
            params = {"key": self.config.api_key}

        return await _invoke_chat(
            vendor=self.vendor,
            request=request,
            url=url,
            payload=self.build_chat_payload(request),
            headers=_base_headers(),
            params=params,
            config=self.config,
            transport=self._transport,
            cancel_event=cancel_event,
            parse_result=lambda data: self._parse_result(data, request.model),
        )

    async def generate_image(self, request: ImageRequest, cancel_event: asyncio.Event | None = None) -> ImageResult:
        raise UnsupportedCapabilityError("Provider gemini does not support image generation")


# ---------------------------------------------------------------------------
# Anthropic Adapter
# ---------------------------------------------------------------------------


class AnthropicAdapter:
    """Anthropic Messages API adapter. Chat only."""

    vendor = Vendor.ANTHROPIC
    supports_image_generation = False
    default_base_url = "https://api.anthropic.com/v1"
    default_api_version = "2023-06-01"

    def __init__(self, config: AdapterConfig, *, transport: httpx.AsyncBaseTransport | None = None):
        if not config.api_key:
            raise ConfigurationError("Anthropic API key is required")
        self.config = config
        self.base_url = (config.base_url or self.default_base_url).rstrip("/")
        self._transport = transport

    def is_configured(self) -> bool:
        return bool(self.config.api_key)

    @staticmethod
    def format_messages(messages: Sequence[ChatMessage]) -> tuple[str, list[dict[str, str]]]:
        """Hoist system text to the top-level field; other turns pass through.

        The first system message leads; any later ones are appended to it
        because the Messages API accepts only user/assistant turns.
        """
        system_parts: list[str] = []
        conversation: list[dict[str, str]] = []
        for message in messages:
            if message.role == MessageRole.SYSTEM:
                system_parts.append(message.content)
            else:
                conversation.append(message.to_dict())
        return "\n\n".join(system_parts), conversation

    def build_chat_payload(self, request: ChatRequest) -> dict[str, Any]:
        system, conversation = self.format_messages(request.messages)
        payload: dict[str, Any] = {
            "model": request.model,
            "messages": conversation,
            "max_tokens": MAX_OUTPUT_TOKENS,
            "temperature": request.temperature,
            "stream": request.streaming,
        }
        if system:
            payload["system"] = system
        return payload

    def _headers(self) -> dict[str, str]:
        return {
            **_base_headers(),
            "x-api-key": self.config.api_key,
            "anthropic-version": self.config.api_version or self.default_api_version,
        }

    @staticmethod
    def _parse_result(data: dict[str, Any], fallback_model: str) -> ChatResult:
        blocks = data.get("content") or []
        content = "".join(b.get("text", "") for b in blocks if b.get("type", "text") == "text")
        return ChatResult(content=content, model=data.get("model") or fallback_model, usage=data.get("usage") or {})

    async def chat(
        self, request: ChatRequest, cancel_event: asyncio.Event | None = None
    ) -> ChatEventStream | ChatResult:
        return await _invoke_chat(
            vendor=self.vendor,
            request=request,
            url=f"{self.base_url}/messages",
            payload=self.build_chat_payload(request),
            headers=self._headers(),
            params=None,
            config=self.config,
            transport=self._transport,
            cancel_event=cancel_event,
            parse_result=lambda data: self._parse_result(data, request.model),
        )

    async def generate_image(self, request: ImageRequest, cancel_event: asyncio.Event | None = None) -> ImageResult:
        raise UnsupportedCapabilityError("Provider anthropic does not support image generation")


# ---------------------------------------------------------------------------
# Azure OpenAI Adapters
# ---------------------------------------------------------------------------

DEFAULT_AZURE_API_VERSION = "2024-06-01"


def _azure_endpoint(config: AdapterConfig) -> str:
    if not config.api_key or not config.endpoint:
        raise ConfigurationError("Azure OpenAI API key and endpoint are required")
    return config.endpoint.rstrip("/")


class AzureChatAdapter:
    """Azure OpenAI chat. ``request.model`` is the deployment name."""

    vendor = Vendor.AZURE
    supports_image_generation = False

    def __init__(self, config: AdapterConfig, *, transport: httpx.AsyncBaseTransport | None = None):
        self.endpoint = _azure_endpoint(config)
        self.config = config
        self.api_version = config.api_version or DEFAULT_AZURE_API_VERSION
        self._transport = transport

    def is_configured(self) -> bool:
        return bool(self.config.api_key and self.config.endpoint)

    format_messages = staticmethod(OpenAIAdapter.format_messages)

    def build_chat_payload(self, request: ChatRequest) -> dict[str, Any]:
        # No "model" field: the deployment in the URL selects the model
        return {
            "messages": self.format_messages(request.messages),
            "temperature": request.temperature,
            "max_tokens": MAX_OUTPUT_TOKENS,
            "stream": request.streaming,
            "user": END_USER_ID,
        }

    def deployment_url(self, deployment: str) -> str:
        return f"{self.endpoint}/openai/deployments/{deployment}/chat/completions"

    async def chat(
        self, request: ChatRequest, cancel_event: asyncio.Event | None = None
    ) -> ChatEventStream | ChatResult:
        return await _invoke_chat(
            vendor=self.vendor,
            request=request,
            url=self.deployment_url(request.model),
            payload=self.build_chat_payload(request),
            headers={**_base_headers(), "api-key": self.config.api_key},
            params={"api-version": self.api_version},
            config=self.config,
            transport=self._transport,
            cancel_event=cancel_event,
            parse_result=lambda data: _openai_result(data, request.model),
        )

    async def generate_image(self, request: ImageRequest, cancel_event: asyncio.Event | None = None) -> ImageResult:
        raise UnsupportedCapabilityError("Azure chat deployments do not generate images; use the image adapter")


class AzureImageAdapter:
    """Azure OpenAI DALL·E 3 deployment. Image only, base64 output."""

    vendor = Vendor.AZURE
    supports_image_generation = True
    default_deployment = "dall-e-3"

    def __init__(self, config: AdapterConfig, *, transport: httpx.AsyncBaseTransport | None = None):
        self.endpoint = _azure_endpoint(config)
        self.config = config
        self.api_version = config.api_version or DEFAULT_AZURE_API_VERSION
        self.deployment = config.deployment or self.default_deployment
        self._transport = transport

    def is_configured(self) -> bool:
        return bool(self.config.api_key and self.config.endpoint and self.deployment)

    async def chat(
        self, request: ChatRequest, cancel_event: asyncio.Event | None = None
    ) -> ChatEventStream | ChatResult:
        raise UnsupportedCapabilityError("Azure image deployments do not support chat")

    async def generate_image(self, request: ImageRequest, cancel_event: asyncio.Event | None = None) -> ImageResult:
        logger.debug("Generating image with Azure deployment %s: %.50s", self.deployment, request.prompt)
        data = await _post_json(
            vendor=self.vendor,
            url=f"{self.endpoint}/openai/deployments/{self.deployment}/images/generations",
            payload={
                "prompt": request.prompt,
                "size": request.size.value,
                "quality": request.quality.value,
                "n": 1,  # DALL·E 3 allows a single image per request
                "response_format": ImageResponseFormat.B64_JSON.value,
            },
            headers={**_base_headers(), "api-key": self.config.api_key},
            params={"api-version": self.api_version},
            timeout=self.config.image_timeout_seconds,
            transport=self._transport,
            cancel_event=cancel_event,
        )
        return _parse_image(data, request, self.vendor, self.deployment)


# ---------------------------------------------------------------------------
# Adapter registry
# ---------------------------------------------------------------------------

CHAT_ADAPTERS: dict[Vendor, type[ProviderAdapter]] = {
    Vendor.OPENAI: OpenAIAdapter,
    Vendor.GEMINI: GeminiAdapter,
    Vendor.ANTHROPIC: AnthropicAdapter,
    Vendor.AZURE: AzureChatAdapter,
}

IMAGE_ADAPTERS: dict[Vendor, type[ProviderAdapter]] = {
    Vendor.OPENAI: OpenAIAdapter,
    Vendor.AZURE: AzureImageAdapter,
}


def create_adapter(
    vendor: Vendor | str,
    config: AdapterConfig,
    *,
    capability: Capability = Capability.CHAT,
    **kwargs,
) -> ProviderAdapter:
    """Factory: construct the adapter for a vendor and capability.

    Pure construction, no I/O. Vendors without a dedicated image adapter
    resolve to their chat adapter, whose ``generate_image`` reports the
    capability as unsupported.
    """
    try:
        vendor = Vendor(vendor)
    except ValueError:
        raise UnsupportedVendorError(f"Unsupported provider: {vendor}")

    registry = IMAGE_ADAPTERS if capability == Capability.IMAGE else CHAT_ADAPTERS
    cls = registry.get(vendor) or CHAT_ADAPTERS[vendor]
    return cls(config, **kwargs)
