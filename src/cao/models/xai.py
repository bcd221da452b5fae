"""Grok adapter: chat completions with a strict ``response_format`` schema."""

from __future__ import annotations

import json
import os
from typing import Any, Dict, List, Mapping, Optional, Sequence

from ..tools.catalog import RESPONSE_SCHEMA_NAME, ToolDefinition, build_response_schema
from .llm_client import ChatTurn, LLMResponseFormatError, ProviderAdapter

__all__ = ["XAIAdapter"]

API_URL = "https://api.x.ai/v1/chat/completions"


class XAIAdapter(ProviderAdapter):
    provider = "xai"
    env_key = "XAI_API_KEY"

    def __init__(self, model: str, *, api_key: Optional[str] = None, base_url: str = API_URL, **kwargs: Any) -> None:
        self._base_url = base_url
        super().__init__(model, api_key=api_key or os.getenv(self.env_key or ""), **kwargs)

    def _endpoint(self, stream: bool) -> str:
        return self._base_url

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self._api_key or ''}",
        }

    def _build_payload(
        self,
        system_prompt: str,
        history: Sequence[ChatTurn],
        tools: Sequence[ToolDefinition],
    ) -> Dict[str, Any]:
        messages: List[Dict[str, str]] = [{"role": "system", "content": system_prompt}]
        for turn in history:
            role = "assistant" if turn.get("role") == "assistant" else "user"
            messages.append({"role": role, "content": turn.get("content", "")})
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
        }
        if tools:
            payload["response_format"] = {
                "type": "json_schema",
                "json_schema": {
                    "name": RESPONSE_SCHEMA_NAME,
                    "strict": True,
                    "schema": build_response_schema(tools),
                },
            }
        return payload

    def _extract_delta(self, event: Mapping[str, Any]) -> str:
        choices = event.get("choices") or []
        if not choices or not isinstance(choices[0], Mapping):
            return ""
        delta = choices[0].get("delta") or {}
        content = delta.get("content")
        return content if isinstance(content, str) else ""

    def _extract_complete(self, data: Any) -> tuple[str, Optional[Dict[str, Any]]]:
        choices = data.get("choices") if isinstance(data, Mapping) else None
        if not choices or not isinstance(choices[0], Mapping):
            raise LLMResponseFormatError("Grok response did not contain choices.", body=json.dumps(data))
        message = choices[0].get("message") or {}
        content = message.get("content")
        if not isinstance(content, str) or not content:
            raise LLMResponseFormatError("Grok response message was empty.", body=json.dumps(data))
        return content, None
