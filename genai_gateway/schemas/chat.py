"""Pydantic models for the chat endpoint."""

from __future__ import annotations

import re
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from genai_gateway.gateway.types import DEFAULT_TEMPERATURE

MAX_MESSAGES = 50
MAX_MESSAGE_CHARS = 10_000
MAX_MODEL_CHARS = 100

# Control characters except \t, \n, \r
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")


def strip_control_chars(value: str) -> str:
    return _CONTROL_CHARS.sub("", value)


# ---------------------------------------------------------------------------
# Request
# ---------------------------------------------------------------------------


class ChatMessageIn(BaseModel):
    model_config = ConfigDict(extra="ignore")

    role: Literal["system", "user", "assistant"]
    content: str = Field(max_length=MAX_MESSAGE_CHARS)

    @field_validator("content")
    @classmethod
    def _clean_content(cls, v: str) -> str:
        v = strip_control_chars(v).strip()
        if not v:
            raise ValueError("content must not be empty")
        return v


class ChatOptionsIn(BaseModel):
    """Scalar fields of a POST /chat body; messages are validated separately."""

    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    provider: Literal["openai", "gemini", "anthropic", "azure"]
    model: str = Field(min_length=1, max_length=MAX_MODEL_CHARS)
    # no coercion from bool or str
    temperature: float = Field(default=DEFAULT_TEMPERATURE, ge=0, le=2, strict=True)
    stream: bool = Field(default=True, strict=True)


# ---------------------------------------------------------------------------
# Response
# ---------------------------------------------------------------------------


class ChatResponse(BaseModel):
    """Non-streaming reply of POST /chat."""

    success: bool = True
    provider: str
    response: str
    metadata: dict[str, Any]
    usage: dict[str, Any]
