"""Pydantic models for the image endpoint."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from genai_gateway.schemas.chat import strip_control_chars

MAX_PROMPT_CHARS = 4000


class ImageRequestIn(BaseModel):
    """Inbound body of POST /image."""

    model_config = ConfigDict(extra="ignore")

    provider: Literal["openai", "azure"]
    prompt: str = Field(min_length=1, max_length=MAX_PROMPT_CHARS)
    size: Literal["1024x1024", "1792x1024", "1024x1792"] = "1024x1024"
    quality: Literal["standard", "hd"] = "standard"
    response_format: Literal["url", "b64_json"] = "url"

    @field_validator("prompt")
    @classmethod
    def _clean_prompt(cls, v: str) -> str:
        v = strip_control_chars(v).strip()
        if not v:
            raise ValueError("prompt must not be empty")
        return v


class GeneratedImage(BaseModel):
    url: str | None = None
    base64: str | None = None
    mimeType: str | None = None
    revisedPrompt: str | None = None
    size: str
    quality: str


class ImageResponse(BaseModel):
    success: bool = True
    provider: str
    images: list[GeneratedImage]
    metadata: dict[str, Any]
    count: int
