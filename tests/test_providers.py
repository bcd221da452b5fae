from __future__ import annotations

import json
from typing import List

import pytest

from cao.models import (
    AnthropicAdapter,
    GeminiAdapter,
    LLMConfigurationError,
    LLMQuotaError,
    LLMRateLimitError,
    LLMTransportError,
    OfflineAdapter,
    TransportRequest,
    TransportResponse,
    XAIAdapter,
    build_provider,
)
from cao.tools.catalog import RESPONSE_TOOL_NAME, active_tools, default_tools

TOOLS = active_tools(default_tools(), expose_project=False)
HISTORY = [
    {"role": "user", "content": "Task: fix the bug"},
    {"role": "assistant", "content": "Reading files"},
    {"role": "user", "content": "Operation results: ok"},
]
REPLY = {"reasoning": "done", "operations": [], "status": "completed"}


class RecordingTransport:
    def __init__(self, response: TransportResponse) -> None:
        self.response = response
        self.requests: List[TransportRequest] = []

    def __call__(self, request: TransportRequest) -> TransportResponse:
        self.requests.append(request)
        return self.response


def test_gemini_streams_json_mode_with_system_instruction() -> None:
    text = json.dumps(REPLY)
    transport = RecordingTransport(
        TransportResponse.from_events(
            [
                {"candidates": [{"content": {"parts": [{"text": text[:10]}]}}]},
                {"candidates": [{"content": {"parts": [{"text": text[10:]}]}}]},
            ]
        )
    )
    deltas: List[str] = []
    adapter = GeminiAdapter("gemini-2.5-flash", api_key="g-key", transport=transport)

    result = adapter.invoke("SYSTEM", HISTORY, tools=TOOLS, on_delta=deltas.append)

    request = transport.requests[0]
    assert result.text == text
    assert "".join(deltas) == text
    assert request.url.endswith(":streamGenerateContent?key=g-key&alt=sse")
    assert request.payload["systemInstruction"] == {"parts": [{"text": "SYSTEM"}]}
    assert [item["role"] for item in request.payload["contents"]] == ["user", "model", "user"]
    config = request.payload["generationConfig"]
    assert config["responseMimeType"] == "application/json"
    assert "additionalProperties" not in json.dumps(config["responseSchema"])
    assert "stream" not in request.payload


def test_claude_uses_forced_tool_and_returns_structured_input() -> None:
    partial = json.dumps(REPLY)
    transport = RecordingTransport(
        TransportResponse.from_events(
            [
                {"type": "message_start"},
                {"type": "content_block_start", "content_block": {"type": "tool_use", "name": RESPONSE_TOOL_NAME}},
                {"type": "content_block_delta", "delta": {"type": "input_json_delta", "partial_json": partial[:7]}},
                {"type": "content_block_delta", "delta": {"type": "input_json_delta", "partial_json": partial[7:]}},
                {"type": "message_stop"},
            ]
        )
    )
    adapter = AnthropicAdapter("claude-sonnet-4", api_key="a-key", transport=transport)

    result = adapter.invoke("SYSTEM", HISTORY, tools=TOOLS)

    payload = transport.requests[0].payload
    assert result.structured == REPLY
    assert payload["system"] == "SYSTEM"
    assert payload["stream"] is True
    assert payload["tool_choice"] == {"type": "tool", "name": RESPONSE_TOOL_NAME}
    schema = payload["tools"][0]["input_schema"]
    assert schema["additionalProperties"] is False
    assert transport.requests[0].headers["x-api-key"] == "a-key"


def test_claude_merges_consecutive_turns_and_reads_non_streaming_tool_use() -> None:
    body = json.dumps({"content": [{"type": "tool_use", "name": RESPONSE_TOOL_NAME, "input": REPLY}]})
    transport = RecordingTransport(TransportResponse.from_text(200, body))
    adapter = AnthropicAdapter("claude-haiku", api_key="a-key", stream=False, transport=transport)
    history = [{"role": "user", "content": "one"}, {"role": "user", "content": "two"}]

    result = adapter.invoke("SYSTEM", history, tools=TOOLS)

    assert transport.requests[0].payload["messages"] == [{"role": "user", "content": "one\n\ntwo"}]
    assert result.structured == REPLY


def test_grok_sends_strict_response_format() -> None:
    text = json.dumps(REPLY)
    transport = RecordingTransport(
        TransportResponse.from_events(
            [
                {"choices": [{"delta": {"role": "assistant"}}]},
                {"choices": [{"delta": {"content": text}}]},
            ]
        )
    )
    adapter = XAIAdapter("grok-4", api_key="x-key", transport=transport)

    result = adapter.invoke("SYSTEM", HISTORY, tools=TOOLS)

    payload = transport.requests[0].payload
    assert result.text == text
    assert payload["messages"][0] == {"role": "system", "content": "SYSTEM"}
    assert payload["response_format"]["type"] == "json_schema"
    assert payload["response_format"]["json_schema"]["strict"] is True
    assert transport.requests[0].headers["Authorization"] == "Bearer x-key"


@pytest.mark.parametrize(
    ("status", "body", "error_cls"),
    [
        (429, "slow down", LLMRateLimitError),
        (402, "payment required", LLMQuotaError),
        (400, '{"error": "insufficient_quota"}', LLMQuotaError),
        (500, "boom", LLMTransportError),
    ],
)
def test_error_statuses_map_to_error_classes(status: int, body: str, error_cls: type) -> None:
    transport = RecordingTransport(TransportResponse.from_text(status, body))
    adapter = XAIAdapter("grok-4", api_key="x-key", transport=transport)

    with pytest.raises(error_cls) as excinfo:
        adapter.invoke("SYSTEM", HISTORY, tools=TOOLS)

    assert excinfo.value.status == status


def test_registry_picks_adapter_by_prefix(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)

    assert isinstance(build_provider("grok-3", api_keys={"xai": "k"}), XAIAdapter)
    assert isinstance(build_provider("Claude-opus", api_keys={"anthropic": "k"}), AnthropicAdapter)
    assert isinstance(build_provider("offline"), OfflineAdapter)
    with pytest.raises(LLMConfigurationError):
        build_provider("gpt-4o")
    with pytest.raises(LLMConfigurationError):
        build_provider("gemini-2.5-pro")


def test_offline_adapter_replays_script_then_completes() -> None:
    adapter = OfflineAdapter(script=[REPLY | {"status": "in_progress"}, "raw text"])

    first = adapter.invoke("S", HISTORY)
    second = adapter.invoke("S", HISTORY)
    third = adapter.invoke("S", HISTORY)

    assert json.loads(first.text)["status"] == "in_progress"
    assert second.text == "raw text"
    assert json.loads(third.text)["status"] == "completed"
    assert len(adapter.calls) == 3
