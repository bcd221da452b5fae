"""Prompt sections and the assembler that turns them into a system prompt."""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Literal, Mapping, Optional, Sequence

from pydantic import BaseModel, ConfigDict

from .project_context import render_project_context
from .tools.catalog import ToolDefinition, render_response_schema_text, render_tool_catalog

ATTACHED_WITH_ID = "attached_files_with"
ATTACHED_WITHOUT_ID = "attached_files_without"

PROMPT_VARIABLES = (
    "TOOLS_LIST",
    "RESPONSE_SCHEMA",
    "TASK_MODE",
    "AUTO_COMMIT",
    "PROJECT_CONTEXT",
    "CHAT_HISTORY",
    "BLACKBOARD",
    "ATTACHED_FILES_LIST",
    "CURRENT_ITERATION",
    "MAX_ITERATIONS",
)

_PLACEHOLDER_RE = re.compile(r"\{\{([A-Z0-9_]+)\}\}")


class PromptSection(BaseModel):
    """Ordered fragment of the system prompt."""

    model_config = ConfigDict(extra="forbid")

    id: str
    title: str
    content: str
    order: int = 0
    kind: Literal["static", "dynamic"] = "static"
    editability: Literal["editable", "readonly", "substitutable"] = "editable"
    enabled: bool = True
    custom: bool = False


DEFAULT_PROMPT_SECTIONS: tuple[PromptSection, ...] = (
    PromptSection(
        id="identity",
        title="Identity",
        order=1,
        editability="substitutable",
        content=(
            "You are CodingAgent, an autonomous coding agent working inside a staged repository. "
            "You act by returning structured JSON that lists the file operations to perform.\n\n"
            "Task mode: {{TASK_MODE}}\n"
            "Auto-commit enabled: {{AUTO_COMMIT}}"
        ),
    ),
    PromptSection(
        id="tools",
        title="Available Tools",
        order=2,
        editability="substitutable",
        content="{{TOOLS_LIST}}",
    ),
    PromptSection(
        id="response_format",
        title="Response Format",
        order=3,
        editability="readonly",
        content="{{RESPONSE_SCHEMA}}",
    ),
    PromptSection(
        id=ATTACHED_WITH_ID,
        title="Attached Files",
        order=4,
        editability="substitutable",
        content=(
            "The user attached the following file(s). They are your primary focus:\n"
            "{{ATTACHED_FILES_LIST}}\n\n"
            "Use read_file directly with these paths or file_id values. Do not call list_files first."
        ),
    ),
    PromptSection(
        id=ATTACHED_WITHOUT_ID,
        title="Getting Started",
        order=4,
        content=(
            "No files are attached. Your first operation must be list_files so you know which paths "
            "exist before reading, editing or deleting anything."
        ),
    ),
    PromptSection(
        id="project_context",
        title="Project Context",
        order=5,
        kind="dynamic",
        editability="readonly",
        content="{{PROJECT_CONTEXT}}",
    ),
    PromptSection(
        id="chat_history",
        title="Chat History",
        order=6,
        kind="dynamic",
        editability="readonly",
        content="{{CHAT_HISTORY}}",
    ),
    PromptSection(
        id="blackboard",
        title="Blackboard",
        order=7,
        kind="dynamic",
        editability="readonly",
        content="{{BLACKBOARD}}",
    ),
    PromptSection(
        id="iteration_status",
        title="Iteration Status",
        order=8,
        editability="readonly",
        content=(
            "This is iteration {{CURRENT_ITERATION}} of at most {{MAX_ITERATIONS}}. "
            "Plan your remaining work so the task finishes within the budget."
        ),
    ),
    PromptSection(
        id="critical_rules",
        title="Critical Rules",
        order=9,
        content=(
            "1. Prefer paths over file_id values; paths stay valid after edits.\n"
            "2. Call read_file before edit_lines and count lines from the numbered output.\n"
            "3. Several edit_lines on one file in a single response are applied bottom-up; "
            "give line numbers from the version you last read and never let ranges overlap.\n"
            "4. Keep JSON and YAML files structurally valid (no duplicate keys).\n"
            "5. Set status to \"in_progress\" while more operations are needed.\n"
            "6. Set status to \"requires_commit\" when staged changes are ready for review.\n"
            "7. Set status to \"completed\" only once the request has been fully delivered."
        ),
    ),
    PromptSection(
        id="completion_validation",
        title="Completion Validation",
        order=10,
        content=(
            "Before setting status to \"completed\" confirm that you actually answered the question "
            "or performed the change. Reading a file without explaining it, or describing a change "
            "without executing it, is not completion."
        ),
    ),
)


def default_prompt_sections() -> List[PromptSection]:
    return [section.model_copy() for section in DEFAULT_PROMPT_SECTIONS]


def substitute_variables(template: str, variables: Mapping[str, str]) -> str:
    """Replace ``{{NAME}}`` placeholders in one pass; unknown names are kept."""

    def _replace(match: re.Match[str]) -> str:
        name = match.group(1)
        if name in variables:
            return str(variables[name])
        return match.group(0)

    return _PLACEHOLDER_RE.sub(_replace, template)


def render_attached_files(attached_files: Sequence[Mapping[str, Any]]) -> str:
    lines = []
    for item in attached_files:
        path = item.get("path") or ""
        file_id = item.get("id") or item.get("file_id")
        lines.append(f"- {path} (file_id: {file_id})" if file_id else f"- {path}")
    return "\n".join(lines)


def render_blackboard(entries: Iterable[Any]) -> str:
    """Format entries oldest first as ``[entry_type]: content``."""
    lines = []
    for entry in entries:
        entry_type = getattr(entry, "entry_type", None)
        content = getattr(entry, "content", None)
        if isinstance(entry, Mapping):
            entry_type = entry.get("entry_type")
            content = entry.get("content")
        entry_type = getattr(entry_type, "value", entry_type) or "progress"
        lines.append(f"[{entry_type}]: {content or ''}")
    return "\n".join(lines)


def render_chat_history(turns: Iterable[Mapping[str, str]]) -> str:
    lines = []
    for turn in turns:
        role = str(turn.get("role", "user")).upper()
        lines.append(f"{role}: {turn.get('content', '')}")
    return "\n\n".join(lines)


@dataclass(slots=True)
class PromptContext:
    """Runtime values used to fill the variable table."""

    tools: Sequence[ToolDefinition] = ()
    mode: str = "single_task"
    auto_commit: bool = False
    attached_files: Sequence[Mapping[str, Any]] = ()
    project_context: Optional[Mapping[str, Any]] = None
    chat_history: Sequence[Mapping[str, str]] = ()
    blackboard: Sequence[Any] = ()
    current_iteration: int = 1
    max_iterations: int = 30
    extra_variables: Dict[str, str] = field(default_factory=dict)


def build_variable_table(context: PromptContext) -> Dict[str, str]:
    table = {
        "TOOLS_LIST": render_tool_catalog(context.tools),
        "RESPONSE_SCHEMA": render_response_schema_text(context.tools),
        "TASK_MODE": getattr(context.mode, "value", context.mode),
        "AUTO_COMMIT": "true" if context.auto_commit else "false",
        "PROJECT_CONTEXT": render_project_context(context.project_context),
        "CHAT_HISTORY": render_chat_history(context.chat_history),
        "BLACKBOARD": render_blackboard(context.blackboard),
        "ATTACHED_FILES_LIST": render_attached_files(context.attached_files),
        "CURRENT_ITERATION": str(context.current_iteration),
        "MAX_ITERATIONS": str(context.max_iterations),
    }
    table.update(context.extra_variables)
    return table


def select_sections(sections: Iterable[PromptSection], *, has_attachments: bool) -> List[PromptSection]:
    """Enabled sections suited to the attachment state, sorted by ``order``."""
    selected = []
    for section in sections:
        if not section.enabled:
            continue
        if section.id == ATTACHED_WITH_ID and not has_attachments:
            continue
        if section.id == ATTACHED_WITHOUT_ID and has_attachments:
            continue
        selected.append(section)
    return sorted(selected, key=lambda section: section.order)


def assemble_prompt(sections: Iterable[PromptSection], context: PromptContext) -> str:
    """Build the system prompt for one iteration."""
    variables = build_variable_table(context)
    parts: List[str] = []
    for section in select_sections(sections, has_attachments=bool(context.attached_files)):
        content = substitute_variables(section.content, variables)
        if section.kind == "dynamic" and not content.strip():
            continue
        parts.append(f"=== {section.title.upper()} ===\n{content}")
    return "\n\n".join(parts)


@dataclass(slots=True)
class PromptPreview:
    prompt: str
    char_count: int
    word_count: int
    token_estimate: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "prompt": self.prompt,
            "char_count": self.char_count,
            "word_count": self.word_count,
            "token_estimate": self.token_estimate,
        }


def preview_prompt(sections: Iterable[PromptSection], context: PromptContext) -> PromptPreview:
    """Assemble a prompt and report rough size figures (about 4 chars per token)."""
    prompt = assemble_prompt(sections, context)
    return PromptPreview(
        prompt=prompt,
        char_count=len(prompt),
        word_count=len(prompt.split()),
        token_estimate=math.ceil(len(prompt) / 4),
    )


__all__ = [
    "ATTACHED_WITHOUT_ID",
    "ATTACHED_WITH_ID",
    "DEFAULT_PROMPT_SECTIONS",
    "PROMPT_VARIABLES",
    "PromptContext",
    "PromptPreview",
    "PromptSection",
    "assemble_prompt",
    "build_variable_table",
    "default_prompt_sections",
    "preview_prompt",
    "render_attached_files",
    "render_blackboard",
    "render_chat_history",
    "select_sections",
    "substitute_variables",
]
