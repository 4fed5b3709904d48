"""Tests for request validation and normalization."""

from __future__ import annotations

import pytest

from genai_gateway.gateway.errors import ValidationError
from genai_gateway.gateway.types import (
    ImageQuality,
    ImageResponseFormat,
    ImageSize,
    MessageRole,
    Vendor,
)
from genai_gateway.gateway.validator import (
    validate_chat_request,
    validate_image_request,
    validate_messages,
)


def _chat_payload(**overrides) -> dict:
    payload = {
        "provider": "openai",
        "model": "gpt-4o-mini",
        "messages": [{"role": "user", "content": "What is 2+2?"}],
    }
    payload.update(overrides)
    return payload


def _fields(exc_info) -> list[str]:
    return [detail.split(":", 1)[0] for detail in exc_info.value.details]


class TestChatValidation:
    def test_defaults(self):
        request = validate_chat_request(_chat_payload())
        assert request.vendor == Vendor.OPENAI
        assert request.temperature == 0.7
        assert request.streaming is True
        assert request.messages[0].role == MessageRole.USER

    def test_null_fields_take_defaults(self):
        request = validate_chat_request(_chat_payload(temperature=None, stream=None))
        assert request.temperature == 0.7
        assert request.streaming is True

    def test_normalization(self):
        request = validate_chat_request(
            _chat_payload(
                model="  gpt-4o  ",
                messages=[{"role": "user", "content": "  hi\x00 there\x07\n  "}],
                stream=False,
                temperature=0,
            )
        )
        assert request.model == "gpt-4o"
        assert request.messages[0].content == "hi there"
        assert request.streaming is False
        assert request.temperature == 0

    def test_temperature_out_of_range(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_chat_request(_chat_payload(temperature=2.5))
        assert exc_info.value.status_code == 400
        assert _fields(exc_info) == ["temperature"]

    @pytest.mark.parametrize("value", [True, "0.5", [0.5]])
    def test_temperature_must_be_a_number(self, value):
        with pytest.raises(ValidationError) as exc_info:
            validate_chat_request(_chat_payload(temperature=value))
        assert _fields(exc_info) == ["temperature"]

    def test_integer_temperature_accepted(self):
        assert validate_chat_request(_chat_payload(temperature=1)).temperature == 1.0

    @pytest.mark.parametrize("value", ["yes", "true", 1, 0])
    def test_stream_must_be_a_boolean(self, value):
        with pytest.raises(ValidationError) as exc_info:
            validate_chat_request(_chat_payload(stream=value))
        assert _fields(exc_info) == ["stream"]

    def test_option_and_message_errors_reported_together(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_chat_request(_chat_payload(stream="yes", messages=[{"role": "tool", "content": "x"}]))
        assert _fields(exc_info) == ["stream", "messages[0].role"]

    def test_empty_messages(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_chat_request(_chat_payload(messages=[]))
        assert _fields(exc_info) == ["messages"]

    def test_unknown_provider(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_chat_request(_chat_payload(provider="mistral"))
        assert _fields(exc_info) == ["provider"]

    def test_all_errors_reported(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_chat_request({"provider": "x", "temperature": -1})
        assert set(_fields(exc_info)) == {"provider", "model", "messages", "temperature"}

    def test_message_errors_are_indexed(self):
        messages = [
            {"role": "user", "content": "ok"},
            {"role": "tool", "content": "nope"},
            {"role": "assistant", "content": "   "},
        ]
        with pytest.raises(ValidationError) as exc_info:
            validate_chat_request(_chat_payload(messages=messages))
        assert _fields(exc_info) == ["messages[1].role", "messages[2].content"]

    def test_message_too_long(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_chat_request(_chat_payload(messages=[{"role": "user", "content": "x" * 10_001}]))
        assert _fields(exc_info) == ["messages[0].content"]

    def test_too_many_messages(self):
        messages = [{"role": "user", "content": "hi"}] * 51
        with pytest.raises(ValidationError) as exc_info:
            validate_chat_request(_chat_payload(messages=messages))
        assert _fields(exc_info) == ["messages"]

    def test_model_too_long(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_chat_request(_chat_payload(model="m" * 101))
        assert _fields(exc_info) == ["model"]

    @pytest.mark.parametrize("body", [None, [], "chat", 42])
    def test_body_must_be_object(self, body):
        with pytest.raises(ValidationError) as exc_info:
            validate_chat_request(body)
        assert exc_info.value.details == ["body: must be a JSON object"]


class TestValidateMessages:
    def test_valid(self):
        messages = validate_messages([{"role": "system", "content": "Be brief."}, {"role": "user", "content": "Hi"}])
        assert [m.role for m in messages] == [MessageRole.SYSTEM, MessageRole.USER]

    def test_not_a_list(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_messages({"role": "user"})
        assert exc_info.value.details == ["messages: must be an array"]

    def test_empty(self):
        with pytest.raises(ValidationError):
            validate_messages([])

    def test_missing_content(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_messages([{"role": "user"}])
        assert _fields(exc_info) == ["messages[0].content"]


class TestImageValidation:
    def test_defaults(self):
        request = validate_image_request({"provider": "openai", "prompt": "  A red fox  "})
        assert request.vendor == Vendor.OPENAI
        assert request.prompt == "A red fox"
        assert request.size == ImageSize.SQUARE
        assert request.quality == ImageQuality.STANDARD
        assert request.response_format == ImageResponseFormat.URL

    def test_explicit_options(self):
        request = validate_image_request(
            {"provider": "azure", "prompt": "fox", "size": "1024x1792", "quality": "hd", "response_format": "b64_json"}
        )
        assert request.size == ImageSize.PORTRAIT
        assert request.quality == ImageQuality.HD
        assert request.response_format == ImageResponseFormat.B64_JSON

    def test_chat_only_provider_rejected(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_image_request({"provider": "gemini", "prompt": "fox"})
        assert _fields(exc_info) == ["provider"]

    def test_bad_size_and_empty_prompt(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_image_request({"provider": "openai", "prompt": "  ", "size": "512x512"})
        assert set(_fields(exc_info)) == {"prompt", "size"}
