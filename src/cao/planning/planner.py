"""Validate and order the operations requested in one agent response."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from ..structured import AgentOperation, OperationResult
from ..tools.catalog import PROJECT_EXPLORATION_TOOLS, ToolDefinition

LOGGER = logging.getLogger(__name__)

EDIT_LINES = "edit_lines"

# Each requirement is a tuple of alternatives; one of them must be present.
REQUIRED_PARAMS: Dict[str, Tuple[Tuple[str, ...], ...]] = {
    "list_files": (),
    "search": (("keyword",),),
    "wildcard_search": (("pattern",),),
    "read_file": (("path", "file_id"),),
    "edit_lines": (("path", "file_id"), ("start_line",), ("end_line",), ("new_content",)),
    "create_file": (("path",),),
    "delete_file": (("path", "file_id"),),
    "move_file": (("path", "file_id"), ("new_path",)),
    "get_staged_changes": (),
    "unstage_file": (("path",),),
    "discard_all_staged": (),
    "project_inventory": (),
    "project_category": (("category",),),
    "project_elements": (("element_ids",),),
}

_ALLOW_EMPTY = {"new_content", "content"}
_PATH_ALIASES = {"path": ("path", "file_path")}


@dataclass(slots=True)
class PlannedBatch:
    """Operations to execute, in order, plus the ones rejected up front."""

    operations: List[AgentOperation] = field(default_factory=list)
    skipped: List[OperationResult] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.operations) + len(self.skipped)


def _has_value(params: Mapping[str, Any], key: str) -> bool:
    for alias in _PATH_ALIASES.get(key, (key,)):
        value = params.get(alias)
        if value is None:
            continue
        if isinstance(value, str) and not value.strip() and key not in _ALLOW_EMPTY:
            continue
        if isinstance(value, (list, tuple)) and not value:
            continue
        return True
    return False


def missing_params(operation: AgentOperation) -> List[str]:
    """Describe unmet requirements, e.g. ``["path|file_id", "end_line"]``."""
    missing: List[str] = []
    for alternatives in REQUIRED_PARAMS.get(operation.type, ()):
        if not any(_has_value(operation.params, key) for key in alternatives):
            missing.append("|".join(alternatives))
    return missing


def _skip(operation: AgentOperation, reason: str) -> OperationResult:
    LOGGER.warning("Skipping %s operation #%s: %s", operation.type or "<untyped>", operation.index, reason)
    return OperationResult(
        index=operation.index,
        type=operation.type,
        success=False,
        error=reason,
        path=operation.target,
        skipped=True,
    )


def _coerce_line_numbers(operation: AgentOperation) -> Optional[str]:
    for key in ("start_line", "end_line"):
        value = operation.params.get(key)
        if isinstance(value, bool):
            return f"{key} must be an integer"
        try:
            if isinstance(value, float):
                if not value.is_integer():
                    raise ValueError(value)
                value = int(value)
            operation.params[key] = int(str(value).strip())
        except (TypeError, ValueError):
            return f"{key} must be an integer, got {value!r}"
    if not isinstance(operation.params.get("new_content"), str):
        operation.params["new_content"] = str(operation.params.get("new_content"))
    return None


def default_target_key(operation: AgentOperation) -> str:
    if operation.path:
        return operation.path
    return f"id:{operation.file_id}"


def plan_operations(
    operations: Iterable[AgentOperation],
    tools: Sequence[ToolDefinition] | Mapping[str, ToolDefinition],
    *,
    expose_project: bool = False,
    target_key: Callable[[AgentOperation], str] = default_target_key,
) -> PlannedBatch:
    """Drop invalid operations and order same-file edits back to front.

    Edits for one file are sorted by descending ``start_line`` and emitted
    together where that file's first edit appeared; everything else keeps its
    relative order. An edit whose ``end_line`` reaches the ``start_line`` of
    the edit accepted just above it is dropped as an overlap.
    """
    if isinstance(tools, Mapping):
        catalog = dict(tools)
    else:
        catalog = {tool.name: tool for tool in tools}

    batch = PlannedBatch()
    valid: List[AgentOperation] = []
    for operation in operations:
        tool = catalog.get(operation.type)
        if tool is None or not tool.enabled:
            reason = "Missing operation type" if not operation.type else f"Unknown operation type: {operation.type}"
            batch.skipped.append(_skip(operation, reason))
            continue
        if tool.group == PROJECT_EXPLORATION_TOOLS and not expose_project:
            batch.skipped.append(_skip(operation, f"{operation.type} is not enabled for this session"))
            continue
        missing = missing_params(operation)
        if missing:
            batch.skipped.append(_skip(operation, f"Missing required parameter(s): {', '.join(missing)}"))
            continue
        if operation.type == EDIT_LINES:
            problem = _coerce_line_numbers(operation)
            if problem:
                batch.skipped.append(_skip(operation, problem))
                continue
        valid.append(operation)

    groups: Dict[str, List[AgentOperation]] = {}
    for operation in valid:
        if operation.type == EDIT_LINES:
            groups.setdefault(target_key(operation), []).append(operation)

    emitted: set[str] = set()
    for operation in valid:
        if operation.type != EDIT_LINES:
            batch.operations.append(operation)
            continue
        key = target_key(operation)
        if key in emitted:
            continue
        emitted.add(key)
        batch.operations.extend(_order_file_edits(groups[key], batch.skipped))

    batch.skipped.sort(key=lambda result: result.index)
    return batch


def _order_file_edits(edits: List[AgentOperation], skipped: List[OperationResult]) -> List[AgentOperation]:
    # Equal starts run in reverse request order.
    ordered = sorted(edits, key=lambda op: (op.params["start_line"], op.index), reverse=True)
    accepted: List[AgentOperation] = []
    for edit in ordered:
        if accepted:
            above = accepted[-1]
            if edit.params["end_line"] >= above.params["start_line"]:
                skipped.append(
                    _skip(
                        edit,
                        "Overlapping edit: lines {}-{} collide with lines {}-{} edited in the same batch".format(
                            edit.params["start_line"],
                            edit.params["end_line"],
                            above.params["start_line"],
                            above.params["end_line"],
                        ),
                    )
                )
                continue
        accepted.append(edit)
    return accepted


__all__ = ["PlannedBatch", "REQUIRED_PARAMS", "default_target_key", "missing_params", "plan_operations"]
