"""Typed records tracked by the session persistence layer."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


class RecordModel(BaseModel):
    """Base Pydantic model with strict field handling."""

    model_config = ConfigDict(extra="forbid", frozen=False)


class SessionMode(str, Enum):
    """How the agent is expected to approach the task."""

    SINGLE_TASK = "single_task"
    ITERATIVE_LOOP = "iterative_loop"
    CONTINUOUS_IMPROVEMENT = "continuous_improvement"


class SessionStatus(str, Enum):
    """Lifecycle states for an agent session."""

    RUNNING = "running"
    COMPLETED = "completed"
    PENDING_COMMIT = "pending_commit"
    FAILED = "failed"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self is not SessionStatus.RUNNING


class MessageRole(str, Enum):
    """Author of a session message."""

    USER = "user"
    AGENT = "agent"
    SYSTEM = "system"


class BlackboardEntryType(str, Enum):
    """Categories of agent working memory."""

    PLANNING = "planning"
    PROGRESS = "progress"
    DECISION = "decision"
    REASONING = "reasoning"
    NEXT_STEPS = "next_steps"
    REFLECTION = "reflection"


class OperationStatus(str, Enum):
    """Execution state recorded for each operation."""

    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class Session(RecordModel):
    """One task submitted to the agent."""

    id: str
    project_id: str = ""
    repo_id: str = ""
    task_description: str
    mode: SessionMode = SessionMode.SINGLE_TASK
    status: SessionStatus = SessionStatus.RUNNING
    max_iterations: int = 30
    current_iteration: int = 0
    abort_requested: bool = False
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None


class Message(RecordModel):
    """Append-only audit record of the conversation."""

    id: str
    session_id: str
    role: MessageRole
    content: str
    iteration: int = 0
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)

    @property
    def hidden(self) -> bool:
        return self.role is MessageRole.SYSTEM or bool(self.metadata.get("hidden"))


class BlackboardEntry(RecordModel):
    """Agent memory entry replayed into later prompts."""

    id: str
    session_id: str
    entry_type: BlackboardEntryType = BlackboardEntryType.PROGRESS
    content: str
    iteration: int = 0
    created_at: datetime = Field(default_factory=utc_now)


class LLMCallLog(RecordModel):
    """Prompt and raw output captured for every provider call."""

    id: str
    session_id: str
    iteration: int
    model: str
    input_prompt: str
    output_raw: str = ""
    parse_success: bool = False
    parse_error: Optional[str] = None
    api_status: Optional[int] = None
    created_at: datetime = Field(default_factory=utc_now)


class OperationLog(RecordModel):
    """Execution status of a single agent operation."""

    id: str
    session_id: str
    iteration: int
    operation_type: str
    file_path: Optional[str] = None
    status: OperationStatus = OperationStatus.IN_PROGRESS
    details: Dict[str, Any] = Field(default_factory=dict)
    error_message: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
