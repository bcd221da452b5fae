"""Typed payloads exchanged between the parser, planner and executor."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

BLACKBOARD_ENTRY_TYPES = (
    "planning",
    "progress",
    "decision",
    "reasoning",
    "next_steps",
    "reflection",
)
DEFAULT_BLACKBOARD_ENTRY_TYPE = "progress"

PARSE_ERROR_STATUS = "parse_error"
IN_PROGRESS_STATUS = "in_progress"


@dataclass(slots=True)
class BlackboardNote:
    """Working-memory entry written by the agent for future iterations."""

    entry_type: str = DEFAULT_BLACKBOARD_ENTRY_TYPE
    content: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"entry_type": self.entry_type, "content": self.content}


@dataclass(slots=True)
class AgentOperation:
    """Single tool invocation requested by the agent."""

    type: str
    params: Dict[str, Any] = field(default_factory=dict)
    index: int = 0

    @property
    def path(self) -> Optional[str]:
        value = self.params.get("path") or self.params.get("file_path")
        if isinstance(value, str) and value.strip():
            return value.strip()
        return None

    @property
    def file_id(self) -> Optional[str]:
        value = self.params.get("file_id")
        if isinstance(value, (str, int)) and str(value).strip():
            return str(value).strip()
        return None

    @property
    def target(self) -> Optional[str]:
        """Return the path when present, otherwise the bare identifier."""
        return self.path or self.file_id

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "params": dict(self.params)}


@dataclass(slots=True)
class AgentResponse:
    """Normalised model output for one iteration."""

    reasoning: str = ""
    operations: List[AgentOperation] = field(default_factory=list)
    blackboard_entry: Optional[BlackboardNote] = None
    status: str = IN_PROGRESS_STATUS
    raw_output: Optional[str] = None
    parse_method: Optional[str] = None

    @property
    def is_parse_error(self) -> bool:
        return self.status == PARSE_ERROR_STATUS

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "reasoning": self.reasoning,
            "operations": [operation.to_dict() for operation in self.operations],
            "status": self.status,
        }
        if self.blackboard_entry is not None:
            payload["blackboard_entry"] = self.blackboard_entry.to_dict()
        if self.raw_output is not None:
            payload["raw_output"] = self.raw_output
        return payload


@dataclass(slots=True)
class OperationResult:
    """Outcome of executing (or skipping) a single operation."""

    index: int
    type: str
    success: bool
    data: Any = None
    error: Optional[str] = None
    warnings: List[str] = field(default_factory=list)
    path: Optional[str] = None
    skipped: bool = False

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "index": self.index,
            "type": self.type,
            "success": self.success,
        }
        if self.path:
            payload["path"] = self.path
        if self.data is not None:
            payload["data"] = self.data
        if self.error:
            payload["error"] = self.error
        if self.warnings:
            payload["warnings"] = list(self.warnings)
        if self.skipped:
            payload["skipped"] = True
        return payload


__all__ = [
    "AgentOperation",
    "AgentResponse",
    "BLACKBOARD_ENTRY_TYPES",
    "BlackboardNote",
    "DEFAULT_BLACKBOARD_ENTRY_TYPE",
    "IN_PROGRESS_STATUS",
    "OperationResult",
    "PARSE_ERROR_STATUS",
]
