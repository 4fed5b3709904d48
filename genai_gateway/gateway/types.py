"""Core types and DTOs for the generative-AI gateway.

Every vendor adapter consumes and produces these canonical shapes, so the
HTTP layer never sees a vendor wire format.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class Vendor(str, Enum):
    """Supported generative-AI vendors."""

    OPENAI = "openai"
    GEMINI = "gemini"
    ANTHROPIC = "anthropic"
    AZURE = "azure"


class MessageRole(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class Capability(str, Enum):
    """Operations an adapter may expose."""

    CHAT = "chat"
    IMAGE = "image"


class ImageSize(str, Enum):
    SQUARE = "1024x1024"
    LANDSCAPE = "1792x1024"
    PORTRAIT = "1024x1792"


class ImageQuality(str, Enum):
    STANDARD = "standard"
    HD = "hd"


class ImageResponseFormat(str, Enum):
    URL = "url"
    B64_JSON = "b64_json"


DEFAULT_TEMPERATURE = 0.7
MAX_OUTPUT_TOKENS = 2000


# ---------------------------------------------------------------------------
# Chat request / result
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ChatMessage:
    """A single conversation turn. Content is already trimmed and non-empty."""

    role: MessageRole
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role.value, "content": self.content}


@dataclass(frozen=True)
class ChatRequest:
    """Canonical chat request, self-contained (carries all prior turns)."""

    vendor: Vendor
    model: str
    messages: tuple[ChatMessage, ...]
    temperature: float = DEFAULT_TEMPERATURE
    streaming: bool = True


@dataclass
class ChatResult:
    """Buffered (non-streaming) chat completion."""

    content: str
    model: str
    usage: dict[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Chat events (streaming)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ContentEvent:
    """Incremental piece of generated text."""

    delta: str
    terminal = False

    def to_dict(self) -> dict[str, Any]:
        return {"type": "content", "delta": self.delta}


@dataclass(frozen=True)
class MetadataEvent:
    """Side-channel information (model name, usage, finish reason)."""

    fields: dict[str, Any]
    terminal = False

    def to_dict(self) -> dict[str, Any]:
        return {"type": "metadata", "metadata": self.fields}


@dataclass(frozen=True)
class ErrorEvent:
    """Terminal event: the stream failed."""

    message: str
    terminal = True

    def to_dict(self) -> dict[str, Any]:
        return {"type": "error", "error": self.message}


@dataclass(frozen=True)
class DoneEvent:
    """Terminal event: the stream completed normally."""

    metadata: dict[str, Any] = field(default_factory=dict)
    terminal = True

    def to_dict(self) -> dict[str, Any]:
        return {"type": "done", "metadata": self.metadata}


ChatEvent = ContentEvent | MetadataEvent | ErrorEvent | DoneEvent


# ---------------------------------------------------------------------------
# Image request / result
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ImageRequest:
    vendor: Vendor
    prompt: str
    size: ImageSize = ImageSize.SQUARE
    quality: ImageQuality = ImageQuality.STANDARD
    response_format: ImageResponseFormat = ImageResponseFormat.URL


@dataclass
class ImageResult:
    """One generated image. Exactly one of image_url / image_base64 is set."""

    original_prompt: str
    size: ImageSize
    quality: ImageQuality
    image_url: str | None = None
    image_base64: str | None = None
    mime_type: str = "image/png"
    revised_prompt: str | None = None
    model: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "url": self.image_url,
            "base64": self.image_base64,
            "mimeType": self.mime_type if self.image_base64 else None,
            "revisedPrompt": self.revised_prompt,
            "size": self.size.value,
            "quality": self.quality.value,
        }


# ---------------------------------------------------------------------------
# Adapter config
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AdapterConfig:
    """Credentials and endpoint parameters for one vendor.

    Built from process settings at adapter construction; adapters never
    mutate it.
    """

    api_key: str = ""
    base_url: str = ""
    endpoint: str = ""  # Azure resource endpoint
    api_version: str = ""  # Azure / Anthropic API version
    deployment: str = ""  # Azure image deployment name
    timeout_seconds: float = 60.0
    image_timeout_seconds: float = 120.0
