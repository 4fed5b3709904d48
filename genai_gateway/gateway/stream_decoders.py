"""Stream decoders — vendor wire chunks → canonical ChatEvents.

All vendors share the same framing technique: bytes are appended to a
buffer, split on newlines, and the last (possibly incomplete) line is held
back until the next read. Only the per-line parsing differs:

  - OpenAI / Azure: SSE ``data: {json}`` lines, ``data: [DONE]`` terminates
  - Gemini: one JSON object per line (optional ``data:`` prefix with alt=sse),
    ``finishReason`` terminates
  - Anthropic: SSE ``data: {json}`` lines with a ``type`` discriminator

A line that cannot be parsed is skipped. Once a terminal event has been
produced the decoder ignores any further input.
"""

from __future__ import annotations

import codecs
import json
import logging
from typing import Any

from genai_gateway.gateway.errors import StreamDecodeError
from genai_gateway.gateway.types import (
    ChatEvent,
    ContentEvent,
    DoneEvent,
    ErrorEvent,
    MetadataEvent,
    Vendor,
)

logger = logging.getLogger(__name__)

_DATA_PREFIX = "data:"


def _sse_payload(line: str) -> str | None:
    """Return the payload of an SSE ``data:`` line, or None for other lines."""
    if not line.startswith(_DATA_PREFIX):
        return None
    return line[len(_DATA_PREFIX) :].strip()


def _parse_json(payload: str) -> dict[str, Any]:
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as e:
        raise StreamDecodeError(f"invalid JSON: {e}") from e
    if not isinstance(data, dict):
        raise StreamDecodeError(f"expected JSON object, got {type(data).__name__}")
    return data


def _compact(fields: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in fields.items() if v not in (None, "", {})}


class LineStreamDecoder:
    """Buffering line splitter shared by all vendor decoders.

    Subclasses implement ``_decode_line`` (one complete line → events) and
    ``_end_of_stream`` (terminal event when the byte stream ends without one).
    """

    def __init__(self, vendor: str):
        self.vendor = vendor
        self._buffer = ""
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._finished = False

    @property
    def finished(self) -> bool:
        return self._finished

    def feed(self, chunk: bytes) -> list[ChatEvent]:
        """Consume one network read and return the events it completes."""
        if self._finished:
            return []
        self._buffer += self._utf8.decode(chunk)
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        return self._decode_lines(lines)

    def finish(self) -> list[ChatEvent]:
        """Flush the held-back line and guarantee a terminal event."""
        if self._finished:
            return []
        self._buffer += self._utf8.decode(b"", final=True)
        tail, self._buffer = self._buffer, ""
        events = self._decode_lines([tail])
        if not self._finished:
            events.append(self._end_of_stream())
            self._finished = True
        return events

    def _decode_lines(self, lines: list[str]) -> list[ChatEvent]:
        events: list[ChatEvent] = []
        for raw in lines:
            line = raw.rstrip("\r")
            if not line.strip():
                continue
            try:
                decoded = self._decode_line(line)
            except (StreamDecodeError, LookupError, TypeError, AttributeError) as e:
                logger.debug("Skipping undecodable %s stream line (%s): %.200s", self.vendor, e, line)
                continue
            for event in decoded:
                events.append(event)
                if event.terminal:
                    self._finished = True
                    return events
        return events

    def _decode_line(self, line: str) -> list[ChatEvent]:
        raise NotImplementedError

    def _end_of_stream(self) -> ChatEvent:
        return ErrorEvent(f"{self.vendor} stream ended before completion")


# ---------------------------------------------------------------------------
# OpenAI / Azure OpenAI
# ---------------------------------------------------------------------------


class OpenAIStreamDecoder(LineStreamDecoder):
    """Chat Completions SSE stream (also used by Azure OpenAI)."""

    def __init__(self, vendor: str = Vendor.OPENAI.value):
        super().__init__(vendor)
        self._model = ""
        self._finish_reason = ""

    def _decode_line(self, line: str) -> list[ChatEvent]:
        payload = _sse_payload(line)
        if payload is None:
            return []
        if payload == "[DONE]":
            return [DoneEvent(_compact({"model": self._model, "finish_reason": self._finish_reason}))]

        data = _parse_json(payload)
        events: list[ChatEvent] = []

        if not self._model and data.get("model"):
            self._model = data["model"]
            events.append(MetadataEvent({"model": self._model}))

        # Azure sends a prompt_filter_results chunk with empty choices first
        choices = data.get("choices") or []
        if not choices:
            return events

        choice = choices[0]
        content = (choice.get("delta") or {}).get("content")
        if content:
            events.append(ContentEvent(content))

        finish_reason = choice.get("finish_reason")
        if finish_reason:
            self._finish_reason = finish_reason
            events.append(MetadataEvent({"finish_reason": finish_reason}))

        return events


# ---------------------------------------------------------------------------
# Gemini
# ---------------------------------------------------------------------------


class GeminiStreamDecoder(LineStreamDecoder):
    """streamGenerateContent output: one JSON object per line."""

    def __init__(self, vendor: str = Vendor.GEMINI.value):
        super().__init__(vendor)
        self._usage: dict[str, Any] = {}

    def _decode_line(self, line: str) -> list[ChatEvent]:
        payload = _sse_payload(line)
        if payload is None:
            payload = line.strip()
        if not payload:
            return []

        data = _parse_json(payload)

        if "error" in data:
            error = data["error"]
            if isinstance(error, dict):
                error = error.get("message")
            return [ErrorEvent(str(error) if error else "Gemini stream error")]

        if data.get("usageMetadata"):
            self._usage = data["usageMetadata"]

        candidates = data.get("candidates") or []
        if not candidates:
            block_reason = (data.get("promptFeedback") or {}).get("blockReason")
            if block_reason:
                return [ErrorEvent(f"Prompt blocked by Gemini safety filter: {block_reason}")]
            return []

        candidate = candidates[0]
        events: list[ChatEvent] = []

        parts = (candidate.get("content") or {}).get("parts") or []
        text = parts[0].get("text") if parts else None
        if text:
            events.append(ContentEvent(text))

        finish_reason = candidate.get("finishReason")
        if finish_reason:
            events.append(DoneEvent(_compact({"finish_reason": finish_reason, "usage": self._usage})))

        return events

    def _end_of_stream(self) -> ChatEvent:
        # Gemini may close the stream without a finishReason on the last chunk
        return DoneEvent(_compact({"usage": self._usage}))


# ---------------------------------------------------------------------------
# Anthropic
# ---------------------------------------------------------------------------


class AnthropicStreamDecoder(LineStreamDecoder):
    """Messages API SSE stream with typed events."""

    def __init__(self, vendor: str = Vendor.ANTHROPIC.value):
        super().__init__(vendor)
        self._model = ""
        self._usage: dict[str, Any] = {}
        self._stop_reason = ""

    def _decode_line(self, line: str) -> list[ChatEvent]:
        payload = _sse_payload(line)
        if payload is None:
            # "event: ..." lines duplicate the type field of the data line
            return []
        if payload == "[DONE]":
            return [self._done()]

        data = _parse_json(payload)
        kind = data.get("type")

        if kind == "content_block_delta":
            text = (data.get("delta") or {}).get("text")
            return [ContentEvent(text)] if text else []

        if kind == "message_start":
            message = data.get("message") or {}
            self._model = message.get("model") or ""
            self._usage.update(message.get("usage") or {})
            return [MetadataEvent(_compact({"model": self._model, "usage": dict(self._usage)}))]

        if kind == "message_delta":
            self._stop_reason = (data.get("delta") or {}).get("stop_reason") or ""
            self._usage.update(data.get("usage") or {})
            return [MetadataEvent(_compact({"stop_reason": self._stop_reason, "usage": dict(self._usage)}))]

        if kind == "message_stop":
            return [self._done()]

        if kind == "error":
            error = data.get("error") or {}
            return [ErrorEvent(error.get("message") or "Anthropic stream error")]

        # content_block_start, content_block_stop, ping: more blocks may follow
        return []

    def _done(self) -> DoneEvent:
        return DoneEvent(_compact({"model": self._model, "stop_reason": self._stop_reason, "usage": self._usage}))


DECODER_REGISTRY: dict[Vendor, type[LineStreamDecoder]] = {
    Vendor.OPENAI: OpenAIStreamDecoder,
    Vendor.AZURE: OpenAIStreamDecoder,
    Vendor.GEMINI: GeminiStreamDecoder,
    Vendor.ANTHROPIC: AnthropicStreamDecoder,
}


def get_decoder(vendor: Vendor) -> LineStreamDecoder:
    """Factory: a fresh decoder for one streaming invocation."""
    return DECODER_REGISTRY[vendor](vendor.value)
