"""Tests for provider stream normalizers."""

from __future__ import annotations

import json

import pytest

from chat_gateway.config import ProviderConfig
from chat_gateway.models import Delta, Done, Error, ErrorKind, RawFrame
from chat_gateway.normalizers import get_normalizer, infer_provider, select_normalizer
from chat_gateway.normalizers.anthropic import AnthropicNormalizer
from chat_gateway.normalizers.ollama import OllamaNormalizer
from chat_gateway.normalizers.openai import OpenAINormalizer


def feed_all(normalizer, chunks):
    events = []
    for chunk in chunks:
        events.extend(normalizer.feed(RawFrame(chunk)))
    events.extend(normalizer.finish())
    return events


OPENAI_STREAM = (
    b'data: {"choices": [{"delta": {"role": "assistant"}}]}\n\n'
    b'data: {"choices": [{"delta": {"content": "Hel"}}]}\n\n'
    b'data: {"choices": [{"delta": {"content": "lo \xc3\xa9t\xc3\xa9"}}]}\n\n'
    b'data: {"choices": [{"delta": {}, "finish_reason": "stop"}]}\n\n'
    b"data: [DONE]\n\n"
)


def test_openai_stream_yields_deltas_then_done() -> None:
    events = feed_all(OpenAINormalizer(), [OPENAI_STREAM])
    assert events == [Delta("Hel"), Delta("lo été"), Done()]


@pytest.mark.parametrize("split_at", [1, 7, 30, 60, 61, 62, 100, len(OPENAI_STREAM) - 3])
def test_split_frame_normalizes_like_whole_frame(split_at: int) -> None:
    whole = feed_all(OpenAINormalizer(), [OPENAI_STREAM])
    split = feed_all(OpenAINormalizer(), [OPENAI_STREAM[:split_at], OPENAI_STREAM[split_at:]])
    assert split == whole


def test_byte_by_byte_delivery_matches_whole() -> None:
    chunks = [OPENAI_STREAM[i : i + 1] for i in range(len(OPENAI_STREAM))]
    assert feed_all(OpenAINormalizer(), chunks) == feed_all(OpenAINormalizer(), [OPENAI_STREAM])


def test_crlf_delimited_records_are_recognised() -> None:
    stream = b'data: {"choices": [{"delta": {"content": "a"}}]}\r\n\r\ndata: [DONE]\r\n\r\n'
    events = feed_all(OpenAINormalizer(), [stream[:49], stream[49:]])
    assert events == [Delta("a"), Done()]


def test_malformed_record_is_dropped() -> None:
    stream = b"data: {not json\n\n" b": keep-alive\n\n" b'data: {"choices": [{"delta": {"content": "ok"}}]}\n\n' b"data: [DONE]\n\n"
    assert feed_all(OpenAINormalizer(), [stream]) == [Delta("ok"), Done()]


def test_malformed_final_frame_ends_stream() -> None:
    stream = b'data: {"choices": [{"delta": {"content": "x"}}]}\n\ndata: {"choi'
    assert feed_all(OpenAINormalizer(), [stream]) == [Delta("x"), Done()]


def test_unterminated_final_record_is_normalized() -> None:
    stream = b'data: {"choices": [{"delta": {"content": "x"}}]}\n\ndata: [DONE]'
    assert feed_all(OpenAINormalizer(), [stream]) == [Delta("x"), Done()]


def test_input_after_terminal_event_is_ignored() -> None:
    normalizer = OpenAINormalizer()
    late = b'data: {"choices": [{"delta": {"content": "late"}}]}\n\n'
    assert normalizer.feed(RawFrame(b"data: [DONE]\n\n" + late)) == [Done()]
    assert normalizer.feed(RawFrame(b'data: {"choices": [{"delta": {"content": "x"}}]}\n\n')) == []
    assert normalizer.finish() == []


def test_openai_in_band_error_is_classified() -> None:
    stream = b'data: {"error": {"message": "Rate limit reached", "type": "requests", "code": "rate_limit_exceeded"}}\n\n'
    (event,) = feed_all(OpenAINormalizer(), [stream])
    assert isinstance(event, Error)
    assert event.kind is ErrorKind.RATE_LIMITED


def test_numeric_error_code_is_treated_as_status() -> None:
    stream = b'data: {"error": {"message": "Provider returned error", "code": 502}}\n\n'
    (event,) = feed_all(OpenAINormalizer(), [stream])
    assert event.kind is ErrorKind.UPSTREAM_INTERNAL


@pytest.mark.parametrize(
    "status,body,expected",
    [
        (401, b'{"error": {"message": "Incorrect API key", "code": "invalid_api_key"}}', ErrorKind.INVALID_CREDENTIAL),
        (403, b"forbidden", ErrorKind.INVALID_CREDENTIAL),
        (429, b"slow down", ErrorKind.RATE_LIMITED),
        (504, b"<html>gateway timeout</html>", ErrorKind.UPSTREAM_TIMEOUT),
        (408, b"", ErrorKind.UPSTREAM_TIMEOUT),
        (500, b'{"error": {"message": "boom"}}', ErrorKind.UPSTREAM_INTERNAL),
        (503, b"unavailable", ErrorKind.UPSTREAM_INTERNAL),
        (400, b'{"error": {"message": "bad request", "type": "invalid_request_error"}}', ErrorKind.UNKNOWN),
        (418, b"teapot", ErrorKind.UNKNOWN),
    ],
)
def test_error_frame_classification(status: int, body: bytes, expected: ErrorKind) -> None:
    normalizer = OpenAINormalizer()
    events = normalizer.feed(RawFrame.error(status, body))
    assert len(events) == 1
    assert events[0].kind is expected
    assert normalizer.finished
    assert normalizer.finish() == []


def test_error_message_is_bounded() -> None:
    normalizer = OpenAINormalizer()
    (event,) = normalizer.feed(RawFrame.error(500, b"x" * 10_000))
    assert len(event.message) < 300


ANTHROPIC_STREAM = (
    b'event: message_start\ndata: {"type": "message_start", "message": {"id": "msg_1"}}\n\n'
    b'event: content_block_start\ndata: {"type": "content_block_start", "index": 0}\n\n'
    b"event: ping\ndata: {\"type\": \"ping\"}\n\n"
    b'event: content_block_delta\ndata: {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "Hi"}}\n\n'
    b'event: content_block_delta\ndata: {"type": "content_block_delta", "delta": {"type": "text_delta", "text": " there"}}\n\n'
    b'event: content_block_stop\ndata: {"type": "content_block_stop", "index": 0}\n\n'
    b'event: message_delta\ndata: {"type": "message_delta", "delta": {"stop_reason": "end_turn"}}\n\n'
    b'event: message_stop\ndata: {"type": "message_stop"}\n\n'
)


def test_anthropic_stream() -> None:
    assert feed_all(AnthropicNormalizer(), [ANTHROPIC_STREAM]) == [Delta("Hi"), Delta(" there"), Done()]


def test_anthropic_split_stream_matches_whole() -> None:
    middle = len(ANTHROPIC_STREAM) // 2
    whole = feed_all(AnthropicNormalizer(), [ANTHROPIC_STREAM])
    assert feed_all(AnthropicNormalizer(), [ANTHROPIC_STREAM[:middle], ANTHROPIC_STREAM[middle:]]) == whole


def test_anthropic_error_event() -> None:
    stream = b'event: error\ndata: {"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}}\n\n'
    (event,) = feed_all(AnthropicNormalizer(), [stream])
    assert event.kind is ErrorKind.UPSTREAM_INTERNAL


def test_anthropic_http_error_body_is_refined_by_type() -> None:
    body = json.dumps({"type": "error", "error": {"type": "authentication_error", "message": "invalid x-api-key"}})
    (event,) = AnthropicNormalizer().feed(RawFrame.error(400, body.encode()))
    assert event.kind is ErrorKind.INVALID_CREDENTIAL


def test_anthropic_request_shape() -> None:
    config = ProviderConfig(endpoint="https://api.anthropic.com/v1/messages", credential="key")
    headers, payload = AnthropicNormalizer().build_request(config, "hello", "claude-test")
    assert headers["x-api-key"] == "key"
    assert headers["Authorization"] == "Bearer key"
    assert payload["stream"] is True
    assert payload["messages"] == [{"role": "user", "content": "hello"}]


def test_ollama_ndjson_stream() -> None:
    stream = (
        b'{"message": {"role": "assistant", "content": "A"}, "done": false}\n'
        b'{"message": {"role": "assistant", "content": "B"}, "done": false}\n'
        b'{"message": {"role": "assistant", "content": ""}, "done": true, "eval_count": 2}\n'
    )
    assert feed_all(OllamaNormalizer(), [stream[:20], stream[20:]]) == [Delta("A"), Delta("B"), Done()]


def test_ollama_generate_and_error_records() -> None:
    assert OllamaNormalizer().normalize('{"response": "tok", "done": false}') == Delta("tok")
    event = OllamaNormalizer().normalize('{"error": "model not found"}')
    assert isinstance(event, Error)
    assert event.kind is ErrorKind.UNKNOWN


@pytest.mark.parametrize(
    "endpoint,expected",
    [
        ("http://gpu-box:11434/api/chat", {"model": "llama3", "messages": [{"role": "user", "content": "hi"}], "stream": True}),
        ("http://gpu-box:11434/api/generate", {"model": "llama3", "prompt": "hi", "stream": True}),
        ("http://gpu-box:11434/api/generate/", {"model": "llama3", "prompt": "hi", "stream": True}),
    ],
)
def test_ollama_request_shape_follows_endpoint(endpoint: str, expected: dict) -> None:
    _, payload = OllamaNormalizer().build_request(ProviderConfig(endpoint=endpoint, credential="k"), "hi", "llama3")
    assert payload == expected


def test_openai_request_shape() -> None:
    config = ProviderConfig(endpoint="https://api.openai.com/v1/chat/completions", credential="sk-1")
    headers, payload = OpenAINormalizer().build_request(config, "hi", "gpt-test")
    assert headers["Authorization"] == "Bearer sk-1"
    assert payload == {"model": "gpt-test", "messages": [{"role": "user", "content": "hi"}], "stream": True}


@pytest.mark.parametrize(
    "endpoint,expected",
    [
        ("https://api.openai.com/v1/chat/completions", "openai"),
        ("https://api.anthropic.com/v1/messages", "anthropic"),
        ("http://localhost:11434/api/chat", "ollama"),
        ("http://gpu-box:8080/api/generate", "ollama"),
        ("http://localhost:8000/v1/chat/completions", "openai"),
    ],
)
def test_infer_provider(endpoint: str, expected: str) -> None:
    assert infer_provider(endpoint) == expected


def test_select_normalizer_prefers_explicit_provider() -> None:
    config = ProviderConfig(endpoint="https://proxy.internal/v1/messages", credential="k", provider="openai")
    assert isinstance(select_normalizer(config), OpenAINormalizer)


def test_select_normalizer_returns_fresh_instances() -> None:
    config = ProviderConfig(endpoint="https://api.openai.com/v1/chat/completions", credential="k")
    assert select_normalizer(config) is not select_normalizer(config)


def test_unknown_provider_raises() -> None:
    with pytest.raises(ValueError):
        get_normalizer("carrier-pigeon")
