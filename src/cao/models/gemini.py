"""Gemini adapter: native JSON mode with a separate system instruction."""

from __future__ import annotations

import json
import os
from typing import Any, Dict, List, Mapping, Optional, Sequence
from urllib.parse import quote

from ..tools.catalog import ToolDefinition, build_response_schema
from .llm_client import ChatTurn, LLMResponseFormatError, ProviderAdapter

__all__ = ["GeminiAdapter"]

BASE_URL = "https://generativelanguage.googleapis.com/v1beta/models"

# Keywords the generateContent schema dialect understands.
_SCHEMA_KEYS = {"type", "properties", "required", "items", "enum", "description", "nullable", "format"}


def _gemini_schema(value: Any) -> Any:
    if isinstance(value, dict):
        cleaned: Dict[str, Any] = {}
        for key, child in value.items():
            if key not in _SCHEMA_KEYS:
                continue
            if key == "properties" and isinstance(child, dict):
                cleaned[key] = {name: _gemini_schema(prop) for name, prop in child.items()}
            else:
                cleaned[key] = _gemini_schema(child)
        return cleaned
    if isinstance(value, list):
        return [_gemini_schema(item) for item in value]
    return value


class GeminiAdapter(ProviderAdapter):
    provider = "gemini"
    env_key = "GEMINI_API_KEY"

    def __init__(self, model: str, *, api_key: Optional[str] = None, base_url: str = BASE_URL, **kwargs: Any) -> None:
        self._base_url = base_url.rstrip("/")
        super().__init__(model, api_key=api_key or os.getenv(self.env_key or ""), **kwargs)

    def _endpoint(self, stream: bool) -> str:
        key = quote(self._api_key or "", safe="")
        if stream:
            return f"{self._base_url}/{self.model}:streamGenerateContent?key={key}&alt=sse"
        return f"{self._base_url}/{self.model}:generateContent?key={key}"

    def _stream_flag(self) -> Dict[str, Any]:
        # Streaming is selected by the endpoint, not the body.
        return {}

    def _build_payload(
        self,
        system_prompt: str,
        history: Sequence[ChatTurn],
        tools: Sequence[ToolDefinition],
    ) -> Dict[str, Any]:
        contents: List[Dict[str, Any]] = [
            {
                "role": "model" if turn.get("role") == "assistant" else "user",
                "parts": [{"text": turn.get("content", "")}],
            }
            for turn in history
        ]
        generation_config: Dict[str, Any] = {
            "maxOutputTokens": self.max_tokens,
            "temperature": self.temperature,
            "responseMimeType": "application/json",
        }
        if tools:
            generation_config["responseSchema"] = _gemini_schema(build_response_schema(tools))
        return {
            "systemInstruction": {"parts": [{"text": system_prompt}]},
            "contents": contents,
            "generationConfig": generation_config,
        }

    @staticmethod
    def _candidate_text(data: Mapping[str, Any]) -> str:
        candidates = data.get("candidates") or []
        if not candidates or not isinstance(candidates[0], Mapping):
            return ""
        content = candidates[0].get("content") or {}
        parts = content.get("parts") or []
        return "".join(part.get("text", "") for part in parts if isinstance(part, Mapping))

    def _extract_delta(self, event: Mapping[str, Any]) -> str:
        return self._candidate_text(event)

    def _extract_complete(self, data: Any) -> tuple[str, Optional[Dict[str, Any]]]:
        if not isinstance(data, Mapping):
            raise LLMResponseFormatError("Gemini response was not a JSON object.", body=json.dumps(data))
        text = self._candidate_text(data)
        if not text:
            raise LLMResponseFormatError("Gemini response did not contain candidate text.", body=json.dumps(data))
        return text, None
