"""Turn raw model output into an :class:`AgentResponse`, whatever its shape."""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

from .structured import (
    BLACKBOARD_ENTRY_TYPES,
    DEFAULT_BLACKBOARD_ENTRY_TYPE,
    IN_PROGRESS_STATUS,
    PARSE_ERROR_STATUS,
    AgentOperation,
    AgentResponse,
    BlackboardNote,
)

LOGGER = logging.getLogger(__name__)

RAW_OUTPUT_LIMIT = 2000
PARSE_FAILURE_REASONING = "Failed to parse agent response as JSON."

_BLACKBOARD_FRAGMENT_RE = re.compile(
    r'"blackboard_entry":\s*"\s*\\n<parameter[^"]*"?\s*,\s*"content":\s*"([^"]*)"'
)
_PARAMETER_PAIR_RE = re.compile(r"<parameter[^>]*>[^<]*</parameter>")
_PARAMETER_OPEN_RE = re.compile(r"<parameter[^>]*>")
_PARAMETER_CLOSE_RE = re.compile(r"</parameter>")
_FENCE_RE = re.compile(r"```(?:json|JSON)?[ \t]*\n?(.*?)```", re.DOTALL)
_OBJECT_START_RE = re.compile(r'\{\s*"(?:reasoning|operations|status|blackboard_entry)"')
_CONTENT_MARKER_RE = re.compile(r'^\s*"?content"?\s*[:=>]\s*(.+)', re.IGNORECASE | re.DOTALL)

_OPERATION_META_KEYS = {"type", "operation", "name", "params", "parameters"}


def _normalise_json_string(payload: str) -> str:
    """Normalise common non-JSON characters emitted by models."""
    if not payload:
        return payload
    translation = {
        0x201C: '"',
        0x201D: '"',
        0x2018: "'",
        0x2019: "'",
        0xFF07: "'",
        0x00A0: " ",
        0xFEFF: "",
    }
    return payload.translate(str.maketrans(translation))


def _strip_trailing_commas(payload: str) -> str:
    """Remove trailing commas before closing braces/brackets."""
    if not payload:
        return payload
    return re.sub(r",(\s*[}\]])", r"\1", payload)


def _loads_object(candidate: Optional[str]) -> Optional[Dict[str, Any]]:
    """Parse ``candidate`` and accept only a JSON object."""
    if not candidate:
        return None
    try:
        value = json.loads(candidate)
    except (json.JSONDecodeError, RecursionError):
        return None
    return value if isinstance(value, dict) else None


def _balanced_object(text: str, start: int) -> Optional[str]:
    """Return the brace-balanced object that opens at ``start``, string aware."""
    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return text[start : index + 1]
    return None


def _fenced_blocks(text: str) -> List[str]:
    return [match.strip() for match in _FENCE_RE.findall(text) if match.strip()]


def clean_parameter_markup(text: str) -> str:
    """Strip ``<parameter ...>`` wrapper fragments some backends leave in tool output."""
    cleaned = _BLACKBOARD_FRAGMENT_RE.sub(
        lambda match: '"blackboard_entry": {"entry_type": "progress", "content": "%s"}' % match.group(1),
        text,
    )
    cleaned = _PARAMETER_PAIR_RE.sub("", cleaned)
    cleaned = _PARAMETER_OPEN_RE.sub("", cleaned)
    return _PARAMETER_CLOSE_RE.sub("", cleaned)


# Stages ------------------------------------------------------------------------------
def parse_direct(text: str) -> Optional[Dict[str, Any]]:
    return _loads_object(text)


def parse_without_markup(text: str) -> Optional[Dict[str, Any]]:
    if "<parameter" not in text and "</parameter>" not in text:
        return None
    return _loads_object(clean_parameter_markup(text))


def parse_last_fence(text: str) -> Optional[Dict[str, Any]]:
    blocks = _fenced_blocks(text)
    if not blocks:
        return None
    return _loads_object(blocks[-1])


def parse_any_fence(text: str) -> Optional[Dict[str, Any]]:
    for block in reversed(_fenced_blocks(text)):
        for candidate in (block, _strip_trailing_commas(_normalise_json_string(block))):
            parsed = _loads_object(candidate)
            if parsed is not None:
                return parsed
    return None


def parse_brace_span(text: str) -> Optional[Dict[str, Any]]:
    first = text.find("{")
    last = text.rfind("}")
    if first == -1 or last <= first:
        return None
    span = text[first : last + 1]
    collapsed = re.sub(r"\s+", " ", span)
    for candidate in (
        span,
        collapsed,
        _strip_trailing_commas(_normalise_json_string(collapsed)),
    ):
        parsed = _loads_object(candidate)
        if parsed is not None:
            return parsed
    return None


def parse_heuristic_object(text: str) -> Optional[Dict[str, Any]]:
    for match in _OBJECT_START_RE.finditer(text):
        candidate = _balanced_object(text, match.start())
        if candidate is None:
            continue
        for variant in (candidate, _strip_trailing_commas(_normalise_json_string(re.sub(r"\s+", " ", candidate)))):
            parsed = _loads_object(variant)
            if parsed is not None:
                return parsed
    return None


ParseStage = Tuple[str, Callable[[str], Optional[Dict[str, Any]]]]

PARSE_STAGES: Tuple[ParseStage, ...] = (
    ("direct", parse_direct),
    ("markup_cleaned", parse_without_markup),
    ("last_fence", parse_last_fence),
    ("any_fence", parse_any_fence),
    ("brace_span", parse_brace_span),
    ("heuristic_object", parse_heuristic_object),
)


# Normalisation -----------------------------------------------------------------------
def _coerce_operations(value: Any) -> List[Any]:
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except (json.JSONDecodeError, RecursionError):
            return []
    if not isinstance(value, list):
        return []
    return value


def _operation_from(entry: Mapping[str, Any], index: int) -> AgentOperation:
    op_type = entry.get("type") or entry.get("operation") or entry.get("name") or ""
    params = entry.get("params", entry.get("parameters"))
    if isinstance(params, str):
        params = _loads_object(params)
    if not isinstance(params, dict):
        # Flattened operations carry their parameters beside ``type``.
        params = {key: value for key, value in entry.items() if key not in _OPERATION_META_KEYS}
    return AgentOperation(type=str(op_type).strip(), params=dict(params), index=index)


def _coerce_blackboard(value: Any) -> Optional[BlackboardNote]:
    if value is None:
        return None
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        match = _CONTENT_MARKER_RE.search(text)
        content = match.group(1).strip() if match else text
        return BlackboardNote(entry_type=DEFAULT_BLACKBOARD_ENTRY_TYPE, content=content)
    if isinstance(value, Mapping):
        entry_type = value.get("entry_type")
        if not isinstance(entry_type, str) or entry_type.strip() not in BLACKBOARD_ENTRY_TYPES:
            entry_type = DEFAULT_BLACKBOARD_ENTRY_TYPE
        content = value.get("content")
        if content is None:
            content = ""
        elif not isinstance(content, str):
            content = json.dumps(content)
        return BlackboardNote(entry_type=entry_type.strip(), content=content)
    return None


def normalize_response(data: Mapping[str, Any], *, method: Optional[str] = None) -> AgentResponse:
    """Coerce a decoded object into the canonical response shape."""
    reasoning = data.get("reasoning")
    if reasoning is None:
        reasoning = ""
    elif not isinstance(reasoning, str):
        reasoning = json.dumps(reasoning)

    operations: List[AgentOperation] = []
    for entry in _coerce_operations(data.get("operations")):
        if isinstance(entry, Mapping):
            operations.append(_operation_from(entry, len(operations)))

    status = data.get("status")
    if not isinstance(status, str) or not status.strip():
        status = IN_PROGRESS_STATUS

    return AgentResponse(
        reasoning=reasoning,
        operations=operations,
        blackboard_entry=_coerce_blackboard(data.get("blackboard_entry")),
        status=status.strip().lower(),
        parse_method=method,
    )


def parse_error_response(raw: str, *, reason: str = PARSE_FAILURE_REASONING) -> AgentResponse:
    return AgentResponse(
        reasoning=reason,
        operations=[],
        status=PARSE_ERROR_STATUS,
        raw_output=(raw or "")[:RAW_OUTPUT_LIMIT],
    )


def iter_stage_results(raw: str, stages: Sequence[ParseStage] = PARSE_STAGES) -> Iterator[Tuple[str, Dict[str, Any]]]:
    text = raw.strip()
    for name, stage in stages:
        try:
            parsed = stage(text)
        except Exception:  # noqa: BLE001 - a stage must never break the pipeline
            LOGGER.debug("Parse stage %s raised", name, exc_info=True)
            continue
        if parsed is not None:
            yield name, parsed


def parse_agent_response(
    raw: Optional[str],
    *,
    structured: Optional[Mapping[str, Any]] = None,
) -> AgentResponse:
    """Parse ``raw`` through the staged fallbacks. Never raises.

    ``structured`` is a payload the provider already decoded (a tool call);
    when present it wins over text parsing.
    """
    if isinstance(structured, Mapping):
        return normalize_response(structured, method="structured")

    text = raw if isinstance(raw, str) else ""
    for name, parsed in iter_stage_results(text):
        LOGGER.debug("Agent response parsed via %s", name)
        try:
            return normalize_response(parsed, method=name)
        except Exception:  # noqa: BLE001
            LOGGER.debug("Normalising stage %s output failed", name, exc_info=True)
            continue

    LOGGER.warning("Failed to parse agent response (%d chars)", len(text))
    return parse_error_response(text.strip())


__all__ = [
    "PARSE_STAGES",
    "RAW_OUTPUT_LIMIT",
    "clean_parameter_markup",
    "normalize_response",
    "parse_agent_response",
    "parse_any_fence",
    "parse_brace_span",
    "parse_direct",
    "parse_error_response",
    "parse_heuristic_object",
    "parse_last_fence",
    "parse_without_markup",
]
