"""Deterministic adapter used for dry runs and tests."""

from __future__ import annotations

import json
from collections import deque
from typing import Any, Deque, Dict, Iterable, Optional, Sequence

from ..tools.catalog import ToolDefinition
from .llm_client import ChatTurn, DeltaCallback, ProviderAdapter, ProviderResult

__all__ = ["OfflineAdapter"]

DEFAULT_OFFLINE_RESPONSE: Dict[str, Any] = {
    "reasoning": "Offline mode: no language model is configured, so no operations were planned.",
    "operations": [],
    "blackboard_entry": {
        "entry_type": "reflection",
        "content": "Ran without a provider; configure an API key to let the agent act.",
    },
    "status": "completed",
}


class OfflineAdapter(ProviderAdapter):
    """Replays scripted outputs in order, then a fixed completed response."""

    provider = "offline"

    def __init__(self, model: str = "offline", *, script: Iterable[str | Dict[str, Any]] = (), **kwargs: Any) -> None:
        kwargs.pop("api_key", None)
        kwargs.pop("transport", None)
        super().__init__(model, api_key="offline", transport=lambda request: None, **kwargs)
        self._script: Deque[str] = deque(
            item if isinstance(item, str) else json.dumps(item) for item in script
        )
        self.calls: list[Dict[str, Any]] = []

    def invoke(
        self,
        system_prompt: str,
        history: Sequence[ChatTurn],
        *,
        tools: Sequence[ToolDefinition] = (),
        on_delta: Optional[DeltaCallback] = None,
    ) -> ProviderResult:
        self.calls.append({"system_prompt": system_prompt, "history": [dict(turn) for turn in history]})
        text = self._script.popleft() if self._script else json.dumps(DEFAULT_OFFLINE_RESPONSE)
        if on_delta is not None and text:
            on_delta(text)
        return ProviderResult(text=text, provider=self.provider, model=self.model)
