"""Tool catalog shared by prompt rendering and provider response schemas."""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Literal, Mapping, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field

from ..structured import BLACKBOARD_ENTRY_TYPES

FILE_OPERATIONS = "file_operations"
PROJECT_EXPLORATION_TOOLS = "project_exploration_tools"

RESPONSE_STATUSES = ("in_progress", "completed", "requires_commit")
RESPONSE_TOOL_NAME = "respond_with_actions"
RESPONSE_SCHEMA_NAME = "coding_agent_response"

_JSON_TYPES = {
    "string": "string",
    "str": "string",
    "integer": "integer",
    "int": "integer",
    "number": "number",
    "float": "number",
    "boolean": "boolean",
    "bool": "boolean",
    "array": "array",
    "list": "array",
    "object": "object",
    "dict": "object",
}


class ToolParameter(BaseModel):
    """Single named parameter accepted by a tool."""

    model_config = ConfigDict(extra="forbid")

    type: str = "string"
    required: bool = False
    description: str = ""
    enum: Optional[List[str]] = None

    @property
    def json_type(self) -> str:
        return _JSON_TYPES.get(self.type.lower(), "string")


class ToolDefinition(BaseModel):
    """Operation the agent may request, with its parameter schema."""

    model_config = ConfigDict(extra="forbid")

    name: str
    description: str
    category: str
    group: Literal["file_operations", "project_exploration_tools"] = FILE_OPERATIONS
    enabled: bool = True
    params: Dict[str, ToolParameter] = Field(default_factory=dict)

    @property
    def required_params(self) -> List[str]:
        return [name for name, param in self.params.items() if param.required]


def _param(kind: str, description: str, *, required: bool = False, enum: Sequence[str] | None = None) -> ToolParameter:
    return ToolParameter(type=kind, required=required, description=description, enum=list(enum) if enum else None)


_FILE_TARGET_PARAMS = {
    "path": _param("string", "Repository-relative path of the file (preferred)."),
    "file_id": _param("string", "File identifier from list_files or search results."),
}

DEFAULT_TOOLS: tuple[ToolDefinition, ...] = (
    ToolDefinition(
        name="list_files",
        category="discovery",
        description="List all files with their id and path. Call first when no files are attached.",
        params={"path_prefix": _param("string", "Only list paths starting with this prefix.")},
    ),
    ToolDefinition(
        name="search",
        category="discovery",
        description="Search file paths and content by keyword (case-insensitive).",
        params={"keyword": _param("string", "Text to search for.", required=True)},
    ),
    ToolDefinition(
        name="wildcard_search",
        category="discovery",
        description="Find files whose path matches a glob pattern, optionally filtering content by regex.",
        params={
            "pattern": _param("string", "Glob such as src/**/*.py.", required=True),
            "content_pattern": _param("string", "Regular expression the content must match."),
        },
    ),
    ToolDefinition(
        name="read_file",
        category="read",
        description="Read the complete current content of a single file, with line numbers.",
        params=dict(_FILE_TARGET_PARAMS),
    ),
    ToolDefinition(
        name="edit_lines",
        category="edit",
        description=(
            "Replace lines start_line..end_line (1-based, inclusive) with new_content and stage the change. "
            "Use start_line > end_line to insert without deleting. Read the file first."
        ),
        params={
            **_FILE_TARGET_PARAMS,
            "start_line": _param("integer", "First line to replace (1-based).", required=True),
            "end_line": _param("integer", "Last line to replace (inclusive).", required=True),
            "new_content": _param("string", "Replacement text.", required=True),
        },
    ),
    ToolDefinition(
        name="create_file",
        category="edit",
        description="Create a new file and stage it as an add.",
        params={
            "path": _param("string", "Repository-relative path for the new file.", required=True),
            "content": _param("string", "Full file content."),
        },
    ),
    ToolDefinition(
        name="delete_file",
        category="edit",
        description="Delete a file and stage the deletion.",
        params=dict(_FILE_TARGET_PARAMS),
    ),
    ToolDefinition(
        name="move_file",
        category="edit",
        description="Move or rename a file to a new path.",
        params={
            **_FILE_TARGET_PARAMS,
            "new_path": _param("string", "Destination path.", required=True),
        },
    ),
    ToolDefinition(
        name="get_staged_changes",
        category="staging",
        description="List all staged (uncommitted) changes.",
    ),
    ToolDefinition(
        name="unstage_file",
        category="staging",
        description="Remove the staged change for a path.",
        params={"path": _param("string", "Path whose staged change should be dropped.", required=True)},
    ),
    ToolDefinition(
        name="discard_all_staged",
        category="staging",
        description="Discard every staged change.",
    ),
    ToolDefinition(
        name="project_inventory",
        category="project",
        group=PROJECT_EXPLORATION_TOOLS,
        description="Counts and previews for every project category. Start exploration here.",
    ),
    ToolDefinition(
        name="project_category",
        category="project",
        group=PROJECT_EXPLORATION_TOOLS,
        description="Load all items from one project category.",
        params={"category": _param("string", "Category name from project_inventory.", required=True)},
    ),
    ToolDefinition(
        name="project_elements",
        category="project",
        group=PROJECT_EXPLORATION_TOOLS,
        description="Fetch specific project items by id (8-character prefixes accepted).",
        params={"element_ids": _param("array", "Identifiers of the items to fetch.", required=True)},
    ),
)


def default_tools() -> List[ToolDefinition]:
    """Return a fresh copy of the built-in catalog."""
    return [tool.model_copy(deep=True) for tool in DEFAULT_TOOLS]


def apply_custom_descriptions(
    tools: Iterable[ToolDefinition],
    custom: Optional[Mapping[str, Mapping[str, str]]],
) -> List[ToolDefinition]:
    """Override descriptions keyed by group then tool name."""
    updated = [tool.model_copy(deep=True) for tool in tools]
    if not custom:
        return updated
    for tool in updated:
        group_overrides = custom.get(tool.group) or {}
        description = group_overrides.get(tool.name)
        if isinstance(description, str) and description.strip():
            tool.description = description.strip()
    return updated


def active_tools(tools: Iterable[ToolDefinition], *, expose_project: bool) -> List[ToolDefinition]:
    """Filter to enabled tools, dropping project exploration unless exposed."""
    return [
        tool
        for tool in tools
        if tool.enabled and (expose_project or tool.group != PROJECT_EXPLORATION_TOOLS)
    ]


def tool_index(tools: Iterable[ToolDefinition]) -> Dict[str, ToolDefinition]:
    return {tool.name: tool for tool in tools}


def _render_tool(tool: ToolDefinition) -> List[str]:
    lines = [f"**{tool.name}** [{tool.category}]", f"  {tool.description}"]
    if tool.params:
        lines.append("  Parameters:")
        for name, param in tool.params.items():
            required = "(required)" if param.required else "(optional)"
            lines.append(f"    - {name}: {param.type} {required} - {param.description}")
    lines.append("")
    return lines


def render_tool_catalog(tools: Sequence[ToolDefinition]) -> str:
    """Human-readable catalog text for the ``{{TOOLS_LIST}}`` placeholder."""
    file_tools = [tool for tool in tools if tool.enabled and tool.group == FILE_OPERATIONS]
    project_tools = [tool for tool in tools if tool.enabled and tool.group == PROJECT_EXPLORATION_TOOLS]

    lines: List[str] = ["## FILE OPERATIONS", ""]
    for tool in file_tools:
        lines.extend(_render_tool(tool))

    if project_tools:
        lines.extend(["", "## PROJECT EXPLORATION TOOLS (READ-ONLY)", ""])
        for tool in project_tools:
            lines.extend(_render_tool(tool))
        lines.extend(
            [
                "PROJECT EXPLORATION WORKFLOW:",
                "1. Start with project_inventory to see counts and previews of all categories",
                "2. Use project_category to load full details of categories you need",
                "3. Use project_elements to fetch specific items by ID",
            ]
        )
    return "\n".join(lines).rstrip() + "\n"


def render_response_schema_text(tools: Sequence[ToolDefinition]) -> str:
    """Response format description for the ``{{RESPONSE_SCHEMA}}`` placeholder."""
    names = [tool.name for tool in tools if tool.enabled]
    head = names[0] if names else "list_files"
    tail = '" | "'.join(names[1:4])
    type_hint = f'"{head}" | "{tail}" | ...' if tail else f'"{head}"'
    entry_types = " | ".join(f'"{value}"' for value in BLACKBOARD_ENTRY_TYPES)
    statuses = " | ".join(f'"{value}"' for value in RESPONSE_STATUSES)
    return (
        "When responding, structure your response as:\n"
        "{\n"
        '  "reasoning": "Your chain-of-thought reasoning about what to do next",\n'
        '  "operations": [\n'
        "    {\n"
        f'      "type": {type_hint},\n'
        '      "params": { /* tool-specific parameters from the AVAILABLE TOOLS section */ }\n'
        "    }\n"
        "  ],\n"
        '  "blackboard_entry": {\n'
        f'    "entry_type": {entry_types},\n'
        '    "content": "Your memory/reflection for this step"\n'
        "  },\n"
        f'  "status": {statuses}\n'
        "}\n\n"
        f"Available operation types: {', '.join(names)}"
    )


def _params_properties(tools: Sequence[ToolDefinition]) -> Dict[str, Any]:
    properties: Dict[str, Any] = {}
    for tool in tools:
        for name, param in tool.params.items():
            if name in properties:
                continue
            schema: Dict[str, Any] = {"type": param.json_type, "description": param.description}
            if param.json_type == "array":
                schema["items"] = {"type": "string"}
            if param.enum:
                schema["enum"] = list(param.enum)
            properties[name] = schema
    return properties


def build_response_schema(tools: Sequence[ToolDefinition], *, closed: bool = False) -> Dict[str, Any]:
    """JSON Schema for the agent response, derived from the enabled tools.

    ``closed`` adds ``additionalProperties: false`` on the fixed-shape objects,
    which the strict tool-call convention requires.
    """
    enabled = [tool for tool in tools if tool.enabled]
    operation_schema: Dict[str, Any] = {
        "type": "object",
        "properties": {
            "type": {"type": "string", "enum": [tool.name for tool in enabled]},
            "params": {
                "type": "object",
                "description": "Operation-specific parameters",
                "properties": _params_properties(enabled),
            },
        },
        "required": ["type", "params"],
    }
    blackboard_schema: Dict[str, Any] = {
        "type": "object",
        "properties": {
            "entry_type": {"type": "string", "enum": list(BLACKBOARD_ENTRY_TYPES)},
            "content": {"type": "string"},
        },
        "required": ["entry_type", "content"],
    }
    schema: Dict[str, Any] = {
        "type": "object",
        "properties": {
            "reasoning": {"type": "string", "description": "Chain-of-thought reasoning"},
            "operations": {"type": "array", "items": operation_schema},
            "blackboard_entry": blackboard_schema,
            "status": {"type": "string", "enum": list(RESPONSE_STATUSES)},
        },
        "required": ["reasoning", "operations", "status", "blackboard_entry"],
    }
    if closed:
        for node in (schema, operation_schema, blackboard_schema):
            node["additionalProperties"] = False
    return schema


__all__ = [
    "DEFAULT_TOOLS",
    "FILE_OPERATIONS",
    "PROJECT_EXPLORATION_TOOLS",
    "RESPONSE_SCHEMA_NAME",
    "RESPONSE_STATUSES",
    "RESPONSE_TOOL_NAME",
    "ToolDefinition",
    "ToolParameter",
    "active_tools",
    "apply_custom_descriptions",
    "build_response_schema",
    "default_tools",
    "render_response_schema_text",
    "render_tool_catalog",
    "tool_index",
]
