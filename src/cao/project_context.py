"""Helpers over the free-form project context attached to a task."""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional, Sequence

PROJECT_CATEGORIES: Dict[str, tuple[str, ...]] = {
    "artifacts": ("artifacts",),
    "requirements": ("requirements",),
    "standards": ("standards",),
    "tech_stacks": ("tech_stacks", "techStacks"),
    "canvas_nodes": ("canvas_nodes", "canvasNodes"),
    "canvas_edges": ("canvas_edges", "canvasEdges"),
}

SNIPPET_CHARS = 160
TECH_STACK_SNIPPET_CHARS = 120
PREVIEW_LIMITS: Dict[str, int] = {
    "artifacts": 5,
    "requirements": 10,
    "standards": 10,
    "tech_stacks": 10,
    "canvas_nodes": 20,
    "canvas_edges": 20,
}


def project_metadata(context: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    if not context:
        return {}
    meta = context.get("project_metadata") or context.get("projectMetadata") or {}
    return dict(meta) if isinstance(meta, Mapping) else {}


def category_items(context: Optional[Mapping[str, Any]], category: str) -> List[Dict[str, Any]]:
    """Return the list stored under ``category`` (snake or camel case keys)."""
    if not context:
        return []
    for key in PROJECT_CATEGORIES.get(category, (category,)):
        value = context.get(key)
        if isinstance(value, Sequence) and not isinstance(value, (str, bytes)):
            return [dict(item) for item in value if isinstance(item, Mapping)]
    return []


def _snippet(value: Any, limit: int = SNIPPET_CHARS) -> str:
    if value is None:
        return ""
    return str(value)[:limit]


def item_label(category: str, item: Mapping[str, Any], index: int = 0) -> str:
    """One-line preview used by both the prompt digest and the inventory tool."""
    if category == "artifacts":
        title = item.get("ai_title") or item.get("title") or f"Artifact {index + 1}"
        summary = item.get("ai_summary") or _snippet(item.get("content"))
        return f"{title}: {summary}"
    if category in {"requirements", "standards"}:
        code = f"{item['code']} - " if item.get("code") else ""
        body = item.get("content") if category == "requirements" else item.get("description")
        return f"{code}{item.get('title', '')}: {_snippet(body)}"
    if category == "tech_stacks":
        kind = f" [{item['type']}]" if item.get("type") else ""
        return f"{item.get('name', '')}{kind}: {_snippet(item.get('description'), TECH_STACK_SNIPPET_CHARS)}"
    if category == "canvas_nodes":
        data = item.get("data") if isinstance(item.get("data"), Mapping) else {}
        kind = data.get("type") or item.get("type") or "node"
        label = data.get("label") or data.get("title") or data.get("name") or item.get("id")
        return f"[{kind}] {label}"
    if category == "canvas_edges":
        label = f" ({item['label']})" if item.get("label") else ""
        return f"{item.get('source_id')} -> {item.get('target_id')}{label}"
    return _snippet(item.get("title") or item.get("name") or item.get("id"))


def _heading(category: str) -> str:
    return category.replace("_", " ").title()


def render_project_context(context: Optional[Mapping[str, Any]]) -> str:
    """Digest of the project context for the ``{{PROJECT_CONTEXT}}`` placeholder."""
    if not context:
        return ""
    parts: List[str] = []
    meta = project_metadata(context)
    if meta:
        lines = [f"Project: {meta.get('name', '')}"]
        for key in ("description", "organization", "scope"):
            if meta.get(key):
                lines.append(f"{key.title()}: {meta[key]}")
        parts.append("\n".join(lines))

    for category, limit in PREVIEW_LIMITS.items():
        items = category_items(context, category)
        if not items:
            continue
        preview = "\n".join(
            f"- {item_label(category, item, index)}" for index, item in enumerate(items[:limit])
        )
        parts.append(f"{_heading(category)} ({len(items)} total, showing up to {limit}):\n{preview}")
    return "\n\n".join(parts)


def project_inventory(context: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    inventory: Dict[str, Any] = {"project": project_metadata(context), "categories": {}}
    for category in PROJECT_CATEGORIES:
        items = category_items(context, category)
        inventory["categories"][category] = {
            "count": len(items),
            "preview": [
                {"id": item.get("id"), "label": item_label(category, item, index)}
                for index, item in enumerate(items[:3])
            ],
        }
    return inventory


def find_elements(context: Optional[Mapping[str, Any]], element_ids: Sequence[str]) -> List[Dict[str, Any]]:
    """Look items up by id across every category; 8+ character prefixes match."""
    wanted = [str(value) for value in element_ids if str(value).strip()]
    found: List[Dict[str, Any]] = []
    for category in PROJECT_CATEGORIES:
        for item in category_items(context, category):
            item_id = str(item.get("id") or "")
            if not item_id:
                continue
            for candidate in wanted:
                if item_id == candidate or (len(candidate) >= 8 and item_id.startswith(candidate)):
                    found.append({"category": category, **item})
                    break
    return found


__all__ = [
    "PROJECT_CATEGORIES",
    "category_items",
    "find_elements",
    "item_label",
    "project_inventory",
    "project_metadata",
    "render_project_context",
]
