"""Claude adapter: a single mandatory tool whose input is the agent response."""

from __future__ import annotations

import json
import os
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from ..tools.catalog import RESPONSE_TOOL_NAME, ToolDefinition, build_response_schema
from .llm_client import ChatTurn, DeltaCallback, LLMResponseFormatError, ProviderAdapter

__all__ = ["AnthropicAdapter"]

API_URL = "https://api.anthropic.com/v1/messages"
API_VERSION = "2023-06-01"


def _merge_turns(history: Sequence[ChatTurn]) -> List[Dict[str, str]]:
    """Map roles and merge consecutive turns from the same side."""
    messages: List[Dict[str, str]] = []
    for turn in history:
        role = "assistant" if turn.get("role") == "assistant" else "user"
        content = turn.get("content", "")
        if messages and messages[-1]["role"] == role:
            messages[-1]["content"] = f"{messages[-1]['content']}\n\n{content}"
        else:
            messages.append({"role": role, "content": content})
    if messages and messages[0]["role"] != "user":
        messages.insert(0, {"role": "user", "content": "Continue."})
    return messages


class AnthropicAdapter(ProviderAdapter):
    provider = "anthropic"
    env_key = "ANTHROPIC_API_KEY"

    def __init__(self, model: str, *, api_key: Optional[str] = None, base_url: str = API_URL, **kwargs: Any) -> None:
        self._base_url = base_url
        super().__init__(model, api_key=api_key or os.getenv(self.env_key or ""), **kwargs)

    def _endpoint(self, stream: bool) -> str:
        return self._base_url

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "x-api-key": self._api_key or "",
            "anthropic-version": API_VERSION,
        }

    def _build_payload(
        self,
        system_prompt: str,
        history: Sequence[ChatTurn],
        tools: Sequence[ToolDefinition],
    ) -> Dict[str, Any]:
        return {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "system": system_prompt,
            "messages": _merge_turns(history),
            "tools": [
                {
                    "name": RESPONSE_TOOL_NAME,
                    "description": "Return reasoning, operations, a blackboard entry and the status.",
                    "input_schema": build_response_schema(tools, closed=True),
                }
            ],
            "tool_choice": {"type": "tool", "name": RESPONSE_TOOL_NAME},
        }

    def _extract_delta(self, event: Mapping[str, Any]) -> str:
        if event.get("type") != "content_block_delta":
            return ""
        delta = event.get("delta") or {}
        if delta.get("type") == "input_json_delta":
            return delta.get("partial_json") or ""
        if delta.get("type") == "text_delta":
            return delta.get("text") or ""
        return ""

    def _consume_stream(
        self,
        events: Iterable[Dict[str, Any]],
        on_delta: Optional[DeltaCallback],
    ) -> tuple[str, Optional[Dict[str, Any]]]:
        tool_chunks: List[str] = []
        text_chunks: List[str] = []
        for event in events:
            if event.get("type") == "error":
                error = event.get("error") or {}
                raise LLMResponseFormatError(
                    f"Claude stream error: {error.get('message') or error}", body=json.dumps(event)
                )
            delta = self._extract_delta(event)
            if not delta:
                continue
            if (event.get("delta") or {}).get("type") == "input_json_delta":
                tool_chunks.append(delta)
            else:
                text_chunks.append(delta)
            if on_delta is not None:
                on_delta(delta)

        if not tool_chunks:
            return "".join(text_chunks), None
        tool_input = "".join(tool_chunks)
        try:
            structured = json.loads(tool_input)
        except json.JSONDecodeError:
            return tool_input, None
        return tool_input, structured if isinstance(structured, dict) else None

    def _extract_complete(self, data: Any) -> tuple[str, Optional[Dict[str, Any]]]:
        if not isinstance(data, Mapping):
            raise LLMResponseFormatError("Claude response was not a JSON object.", body=json.dumps(data))
        texts: List[str] = []
        for block in data.get("content") or []:
            if not isinstance(block, Mapping):
                continue
            if block.get("type") == "tool_use" and block.get("name") == RESPONSE_TOOL_NAME:
                tool_input = block.get("input")
                if isinstance(tool_input, dict):
                    return json.dumps(tool_input), tool_input
            if block.get("type") == "text" and block.get("text"):
                texts.append(block["text"])
        if texts:
            return "".join(texts), None
        raise LLMResponseFormatError("Claude response did not contain the response tool call.", body=json.dumps(data))
