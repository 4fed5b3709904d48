"""Request Validator — schema-checks inbound payloads into canonical requests.

Validation is all-or-nothing: either a fully normalized, defaulted request
comes back, or a ValidationError listing every field-level problem as
``"<field>: <message>"`` strings.
"""

from __future__ import annotations

import logging
from typing import Any

import pydantic
from pydantic import TypeAdapter

from genai_gateway.gateway.errors import ValidationError
from genai_gateway.gateway.types import (
    ChatMessage,
    ChatRequest,
    ImageQuality,
    ImageRequest,
    ImageResponseFormat,
    ImageSize,
    MessageRole,
    Vendor,
)
from genai_gateway.schemas.chat import MAX_MESSAGES, ChatMessageIn, ChatOptionsIn
from genai_gateway.schemas.image import ImageRequestIn

logger = logging.getLogger(__name__)

_MESSAGES_ADAPTER = TypeAdapter(list[ChatMessageIn])


def _field_path(loc: tuple[Any, ...]) -> str:
    path = ""
    for part in loc:
        if isinstance(part, int):
            path += f"[{part}]"
        else:
            path += f".{part}" if path else str(part)
    return path or "body"


def _format_errors(exc: pydantic.ValidationError, prefix: tuple[Any, ...] = ()) -> list[str]:
    return [f"{_field_path(prefix + tuple(err['loc']))}: {err['msg']}" for err in exc.errors()]


def _as_object(payload: Any) -> dict[str, Any]:
    if not isinstance(payload, dict):
        raise ValidationError(["body: must be a JSON object"])
    # null means "not provided": defaults apply, required fields fail
    return {k: v for k, v in payload.items() if v is not None}


def _to_messages(items: list[ChatMessageIn]) -> tuple[ChatMessage, ...]:
    return tuple(ChatMessage(role=MessageRole(m.role), content=m.content) for m in items)


def validate_messages(raw: Any) -> tuple[ChatMessage, ...]:
    """Validate a message array on its own.

    Every message needs a role in {system, user, assistant} and a content
    string of at most 10,000 characters that is non-empty once trimmed.
    """
    if not isinstance(raw, list):
        raise ValidationError(["messages: must be an array"])
    if not 1 <= len(raw) <= MAX_MESSAGES:
        raise ValidationError([f"messages: must contain between 1 and {MAX_MESSAGES} items"])
    try:
        items = _MESSAGES_ADAPTER.validate_python(raw)
    except pydantic.ValidationError as e:
        raise ValidationError(_format_errors(e, prefix=("messages",)))
    return _to_messages(items)


def validate_chat_request(payload: Any) -> ChatRequest:
    """Validate and normalize a POST /chat body.

    Scalar fields and the message array are checked independently so one
    rejection lists the problems of both.
    """
    data = _as_object(payload)
    errors: list[str] = []

    options = None
    try:
        options = ChatOptionsIn.model_validate(data)
    except pydantic.ValidationError as e:
        errors.extend(_format_errors(e))

    messages: tuple[ChatMessage, ...] = ()
    if "messages" not in data:
        errors.append("messages: Field required")
    else:
        try:
            messages = validate_messages(data["messages"])
        except ValidationError as e:
            errors.extend(e.errors)

    if errors:
        logger.debug("Chat request rejected: %s", errors)
        raise ValidationError(errors)

    return ChatRequest(
        vendor=Vendor(options.provider),
        model=options.model,
        messages=messages,
        temperature=options.temperature,
        streaming=options.stream,
    )


def validate_image_request(payload: Any) -> ImageRequest:
    """Validate and normalize a POST /image body."""
    data = _as_object(payload)
    try:
        parsed = ImageRequestIn.model_validate(data)
    except pydantic.ValidationError as e:
        errors = _format_errors(e)
        logger.debug("Image request rejected: %s", errors)
        raise ValidationError(errors)

    return ImageRequest(
        vendor=Vendor(parsed.provider),
        prompt=parsed.prompt,
        size=ImageSize(parsed.size),
        quality=ImageQuality(parsed.quality),
        response_format=ImageResponseFormat(parsed.response_format),
    )
