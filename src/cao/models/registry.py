"""Pick the provider adapter for a model name."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Type

from .anthropic import AnthropicAdapter
from .gemini import GeminiAdapter
from .llm_client import LLMConfigurationError, ProviderAdapter, Transport
from .offline import OfflineAdapter
from .xai import XAIAdapter

LOGGER = logging.getLogger(__name__)

PROVIDER_PREFIXES: Dict[str, Type[ProviderAdapter]] = {
    "gemini": GeminiAdapter,
    "claude": AnthropicAdapter,
    "grok": XAIAdapter,
    "offline": OfflineAdapter,
}


def adapter_class_for(model: str) -> Type[ProviderAdapter]:
    name = (model or "").strip().lower()
    for prefix, adapter_cls in PROVIDER_PREFIXES.items():
        if name.startswith(prefix):
            return adapter_cls
    raise LLMConfigurationError(
        f"Unsupported model '{model}'. Expected a name starting with one of: "
        + ", ".join(sorted(PROVIDER_PREFIXES)),
        details={"model": model},
    )


def build_provider(
    model: str,
    *,
    api_keys: Optional[Dict[str, Optional[str]]] = None,
    transport: Optional[Transport] = None,
    **settings: Any,
) -> ProviderAdapter:
    """Instantiate the adapter for ``model``.

    ``api_keys`` is keyed by provider (``gemini``, ``anthropic``, ``xai``);
    missing entries fall back to each adapter's environment variable.
    Raises :class:`LLMConfigurationError` for unknown prefixes or missing keys.
    """
    adapter_cls = adapter_class_for(model)
    if adapter_cls is OfflineAdapter:
        return OfflineAdapter(model, **settings)
    api_key = (api_keys or {}).get(adapter_cls.provider)
    adapter = adapter_cls(model, api_key=api_key, transport=transport, **settings)
    LOGGER.debug("Using %s adapter for model %s", adapter.provider, model)
    return adapter


__all__ = ["PROVIDER_PREFIXES", "adapter_class_for", "build_provider"]
