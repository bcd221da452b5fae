"""Repository access and the tool catalog exposed to the agent."""

from .catalog import (
    DEFAULT_TOOLS,
    FILE_OPERATIONS,
    PROJECT_EXPLORATION_TOOLS,
    ToolDefinition,
    ToolParameter,
    active_tools,
    apply_custom_descriptions,
    build_response_schema,
    default_tools,
    render_response_schema_text,
    render_tool_catalog,
)
from .repository import (
    FileContent,
    FileEntry,
    InMemoryRepositoryStore,
    RepositoryStoreClient,
    RepositoryStoreError,
    StagedChange,
)
from .workspace_store import WorkspaceRepositoryStore

__all__ = [
    "DEFAULT_TOOLS",
    "FILE_OPERATIONS",
    "PROJECT_EXPLORATION_TOOLS",
    "FileContent",
    "FileEntry",
    "InMemoryRepositoryStore",
    "RepositoryStoreClient",
    "RepositoryStoreError",
    "StagedChange",
    "ToolDefinition",
    "ToolParameter",
    "WorkspaceRepositoryStore",
    "active_tools",
    "apply_custom_descriptions",
    "build_response_schema",
    "default_tools",
    "render_response_schema_text",
    "render_tool_catalog",
]
