"""Convenience exports for the provider adapters."""

from .anthropic import AnthropicAdapter
from .gemini import GeminiAdapter
from .llm_client import (
    LLMAuthenticationError,
    LLMClientError,
    LLMConfigurationError,
    LLMQuotaError,
    LLMRateLimitError,
    LLMResponseFormatError,
    LLMTransportError,
    ProviderAdapter,
    ProviderResult,
    TransportRequest,
    TransportResponse,
)
from .offline import OfflineAdapter
from .registry import build_provider
from .xai import XAIAdapter

__all__ = [
    "AnthropicAdapter",
    "GeminiAdapter",
    "LLMAuthenticationError",
    "LLMClientError",
    "LLMConfigurationError",
    "LLMQuotaError",
    "LLMRateLimitError",
    "LLMResponseFormatError",
    "LLMTransportError",
    "OfflineAdapter",
    "ProviderAdapter",
    "ProviderResult",
    "TransportRequest",
    "TransportResponse",
    "XAIAdapter",
    "build_provider",
]
