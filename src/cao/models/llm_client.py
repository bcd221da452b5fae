"""Provider adapter base class, transport plumbing and error types."""

from __future__ import annotations

import http.client
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence

from ..tools.catalog import ToolDefinition

__all__ = [
    "ChatTurn",
    "DeltaCallback",
    "LLMAuthenticationError",
    "LLMClientError",
    "LLMConfigurationError",
    "LLMQuotaError",
    "LLMRateLimitError",
    "LLMResponseFormatError",
    "LLMTransportError",
    "ProviderAdapter",
    "ProviderResult",
    "Transport",
    "TransportRequest",
    "TransportResponse",
    "error_for_status",
    "iter_sse_data",
]

LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_TOKENS = 32768
DEFAULT_TEMPERATURE = 0.7
DEFAULT_TIMEOUT = 120.0

_QUOTA_MARKERS = ("insufficient_quota", "quota exceeded", "exceeded your current quota", "billing", "credit")


class LLMClientError(RuntimeError):
    """Base error raised for provider failures."""

    def __init__(
        self,
        message: str,
        *,
        status: Optional[int] = None,
        body: str = "",
        details: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.body = body
        self.details: dict[str, Any] = dict(details or {})


class LLMConfigurationError(LLMClientError):
    """Raised when no adapter can be built for the requested model."""


class LLMTransportError(LLMClientError):
    """Raised when the request fails or the provider answers with an error status."""


class LLMRateLimitError(LLMTransportError):
    """Provider returned HTTP 429."""


class LLMQuotaError(LLMTransportError):
    """Provider reported exhausted credits or quota (HTTP 402 or quota body)."""


class LLMAuthenticationError(LLMTransportError):
    """Provider rejected the credentials (HTTP 401/403)."""


class LLMResponseFormatError(LLMClientError):
    """Raised when a successful response carries no usable output."""


ChatTurn = Mapping[str, str]
DeltaCallback = Callable[[str], None]


@dataclass(slots=True)
class TransportRequest:
    """Everything a transport needs to perform one POST."""

    url: str
    headers: Dict[str, str]
    payload: Dict[str, Any]
    timeout: float = DEFAULT_TIMEOUT
    stream: bool = True


@dataclass(slots=True)
class TransportResponse:
    """HTTP status plus the response body split into lines."""

    status: int
    lines: Iterable[str] = ()

    @classmethod
    def from_text(cls, status: int, text: str) -> "TransportResponse":
        return cls(status=status, lines=text.splitlines())

    @classmethod
    def from_events(cls, events: Sequence[Mapping[str, Any]], *, status: int = 200) -> "TransportResponse":
        """Build an SSE body out of decoded event payloads."""
        lines: List[str] = []
        for event in events:
            lines.append(f"data: {json.dumps(event)}")
            lines.append("")
        return cls(status=status, lines=lines)


Transport = Callable[[TransportRequest], TransportResponse]


@dataclass(slots=True)
class ProviderResult:
    """Raw output of one provider call."""

    text: str
    provider: str
    model: str
    status: int = 200
    structured: Optional[Dict[str, Any]] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


def error_for_status(status: int, body: str, *, provider: str) -> LLMTransportError:
    """Translate a non-success HTTP status into the matching error class."""
    lowered = body.lower()
    snippet = body.strip()[:500]
    if status == 402 or (status in (400, 403, 429) and any(marker in lowered for marker in _QUOTA_MARKERS)):
        return LLMQuotaError(
            f"{provider} quota exhausted. Please add credits to your API account.",
            status=status,
            body=body,
        )
    if status == 429:
        return LLMRateLimitError(
            f"{provider} rate limit exceeded. Please try again later.",
            status=status,
            body=body,
        )
    if status in (401, 403):
        return LLMAuthenticationError(f"{provider} rejected the API key (HTTP {status}).", status=status, body=body)
    return LLMTransportError(f"{provider} API error HTTP {status}: {snippet}", status=status, body=body)


def iter_sse_data(lines: Iterable[str]) -> Iterator[Dict[str, Any]]:
    """Yield decoded JSON payloads from ``data:`` lines, skipping keep-alives."""
    for raw_line in lines:
        line = raw_line.rstrip("\r\n")
        if not line.startswith("data:"):
            continue
        data = line[5:].strip()
        if not data or data == "[DONE]":
            continue
        try:
            payload = json.loads(data)
        except json.JSONDecodeError:
            LOGGER.debug("Ignoring undecodable SSE chunk: %s", data[:120])
            continue
        if isinstance(payload, dict):
            yield payload


class ProviderAdapter:
    """Shared request/streaming flow; subclasses describe one provider convention."""

    provider = "base"
    env_key: Optional[str] = None

    def __init__(
        self,
        model: str,
        *,
        api_key: Optional[str] = None,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        temperature: float = DEFAULT_TEMPERATURE,
        timeout: float = DEFAULT_TIMEOUT,
        stream: bool = True,
        transport: Optional[Transport] = None,
    ) -> None:
        self.model = model
        self._api_key = api_key
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.timeout = timeout
        self.stream = stream
        self._transport = transport or _http_transport

        if transport is None and not api_key:
            raise LLMConfigurationError(
                f"An API key is required for {self.provider} models"
                + (f"; set {self.env_key}." if self.env_key else "."),
                details={"model": model},
            )

    def invoke(
        self,
        system_prompt: str,
        history: Sequence[ChatTurn],
        *,
        tools: Sequence[ToolDefinition] = (),
        on_delta: Optional[DeltaCallback] = None,
    ) -> ProviderResult:
        """Send one request and return the accumulated output."""
        request = TransportRequest(
            url=self._endpoint(self.stream),
            headers=self._headers(),
            payload=self._build_payload(system_prompt, history, tools),
            timeout=self.timeout,
            stream=self.stream,
        )
        if self.stream:
            request.payload.update(self._stream_flag())

        try:
            response = self._transport(request)
        except LLMClientError:
            raise
        except Exception as error:
            raise LLMTransportError(f"Transport rejected the request: {error}") from error

        try:
            text, structured = self._read_response(response, on_delta)
        except (OSError, http.client.HTTPException) as error:
            LOGGER.error("%s response stream broke off: %s", self.provider, error)
            raise LLMTransportError(
                f"{self.provider} connection failed while reading the response: {error}",
                status=response.status,
            ) from error

        return ProviderResult(
            text=text,
            provider=self.provider,
            model=self.model,
            status=response.status,
            structured=structured,
        )

    def _read_response(
        self,
        response: TransportResponse,
        on_delta: Optional[DeltaCallback],
    ) -> tuple[str, Optional[Dict[str, Any]]]:
        if response.status >= 400:
            body = "\n".join(response.lines)
            LOGGER.error("%s API error %s: %s", self.provider, response.status, body[:2000])
            raise error_for_status(response.status, body, provider=self.provider)

        if self.stream:
            return self._consume_stream(iter_sse_data(response.lines), on_delta)
        body = "\n".join(response.lines)
        try:
            data = json.loads(body)
        except json.JSONDecodeError as error:
            raise LLMResponseFormatError(
                f"{self.provider} returned a non-JSON body.", status=response.status, body=body
            ) from error
        text, structured = self._extract_complete(data)
        if on_delta and text:
            on_delta(text)
        return text, structured

    def _consume_stream(
        self,
        events: Iterable[Dict[str, Any]],
        on_delta: Optional[DeltaCallback],
    ) -> tuple[str, Optional[Dict[str, Any]]]:
        chunks: List[str] = []
        for event in events:
            delta = self._extract_delta(event)
            if not delta:
                continue
            chunks.append(delta)
            if on_delta is not None:
                on_delta(delta)
        return "".join(chunks), None

    # Subclass hooks -----------------------------------------------------------------
    def _endpoint(self, stream: bool) -> str:
        raise NotImplementedError

    def _headers(self) -> Dict[str, str]:
        return {"Content-Type": "application/json"}

    def _stream_flag(self) -> Dict[str, Any]:
        return {"stream": True}

    def _build_payload(
        self,
        system_prompt: str,
        history: Sequence[ChatTurn],
        tools: Sequence[ToolDefinition],
    ) -> Dict[str, Any]:
        raise NotImplementedError

    def _extract_delta(self, event: Mapping[str, Any]) -> str:
        raise NotImplementedError

    def _extract_complete(self, data: Any) -> tuple[str, Optional[Dict[str, Any]]]:
        raise NotImplementedError


def _http_transport(request: TransportRequest) -> TransportResponse:
    """Default transport built on urllib; streams lines lazily."""
    import urllib.error
    import urllib.request

    data = json.dumps(request.payload).encode("utf-8")
    http_request = urllib.request.Request(request.url, data=data, headers=request.headers, method="POST")
    try:
        response = urllib.request.urlopen(http_request, timeout=request.timeout)
    except TimeoutError as error:  # pragma: no cover - network-dependent
        raise LLMTransportError("Provider request timed out.") from error
    except urllib.error.HTTPError as error:  # pragma: no cover - network-dependent
        message = error.read().decode("utf-8", errors="ignore")
        return TransportResponse.from_text(error.code, message)
    except urllib.error.URLError as error:  # pragma: no cover - network-dependent
        raise LLMTransportError(f"Failed to reach provider endpoint: {error.reason}") from error

    status = getattr(response, "status", 200)

    def _lines() -> Iterator[str]:
        try:
            for raw in response:
                yield raw.decode("utf-8", errors="replace")
        except TimeoutError as error:  # pragma: no cover - network-dependent
            raise LLMTransportError("Provider stream timed out.") from error
        except (OSError, http.client.HTTPException) as error:  # pragma: no cover - network-dependent
            raise LLMTransportError(f"Provider stream interrupted: {error}", status=status) from error
        finally:
            response.close()

    return TransportResponse(status=status, lines=_lines())
