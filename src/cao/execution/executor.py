"""Execute planned operations against the repository store."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from .. import project_context as project
from ..structured import AgentOperation, OperationResult
from ..tools.repository import RepositoryStoreClient, RepositoryStoreError, StagedChange
from .line_edits import (
    apply_line_edit,
    canonicalize_structured,
    count_lines,
    edit_preview,
    number_lines,
)
from .registry import SessionFileRegistry

LOGGER = logging.getLogger(__name__)


class OperationError(RuntimeError):
    """Raised when a single operation cannot be carried out."""

    def __init__(self, message: str, *, details: Mapping[str, Any] | None = None) -> None:
        super().__init__(message)
        self.details: dict[str, Any] = dict(details or {})


@dataclass(slots=True)
class ResolvedFile:
    """A file target after identifier resolution."""

    id: str
    path: str
    content: Optional[str]
    source: str


OperationCallback = Callable[[AgentOperation], None]
ResultCallback = Callable[[AgentOperation, OperationResult], None]


class OperationExecutor:
    """Runs operations for one session and owns its file registry."""

    def __init__(
        self,
        store: RepositoryStoreClient,
        repo_id: str,
        *,
        registry: Optional[SessionFileRegistry] = None,
        project_context: Optional[Mapping[str, Any]] = None,
        expose_project: bool = False,
    ) -> None:
        self.store = store
        self.repo_id = repo_id
        self.registry = registry or SessionFileRegistry()
        self.project_context = dict(project_context or {})
        self.expose_project = expose_project
        self._handlers: Dict[str, Callable[[AgentOperation], OperationResult]] = {
            "list_files": self._list_files,
            "search": self._search,
            "wildcard_search": self._wildcard_search,
            "read_file": self._read_file,
            "edit_lines": self._edit_lines,
            "create_file": self._create_file,
            "delete_file": self._delete_file,
            "move_file": self._move_file,
            "get_staged_changes": self._get_staged_changes,
            "unstage_file": self._unstage_file,
            "discard_all_staged": self._discard_all_staged,
            "project_inventory": self._project_inventory,
            "project_category": self._project_category,
            "project_elements": self._project_elements,
        }

    # Batch ---------------------------------------------------------------------------
    def execute_batch(
        self,
        operations: Iterable[AgentOperation],
        *,
        on_start: Optional[OperationCallback] = None,
        on_complete: Optional[ResultCallback] = None,
    ) -> List[OperationResult]:
        """Run operations in order; a failure never stops the rest."""
        results: List[OperationResult] = []
        for operation in operations:
            if on_start is not None:
                on_start(operation)
            result = self.execute(operation)
            results.append(result)
            if on_complete is not None:
                on_complete(operation, result)
        return results

    def execute(self, operation: AgentOperation) -> OperationResult:
        handler = self._handlers.get(operation.type)
        try:
            if handler is None:
                raise OperationError(f"Unknown operation type: {operation.type}")
            return handler(operation)
        except (OperationError, RepositoryStoreError) as error:
            LOGGER.warning("Operation %s #%s failed: %s", operation.type, operation.index, error)
            return self._failure(operation, str(error))
        except Exception as error:  # noqa: BLE001 - isolate one broken operation from the batch
            LOGGER.exception("Operation %s #%s raised unexpectedly", operation.type, operation.index)
            return self._failure(operation, f"{type(error).__name__}: {error}")

    @staticmethod
    def _failure(operation: AgentOperation, message: str) -> OperationResult:
        return OperationResult(
            index=operation.index,
            type=operation.type,
            success=False,
            error=message,
            path=operation.target,
        )

    @staticmethod
    def _success(operation: AgentOperation, data: Any, *, path: Optional[str] = None, warnings: Optional[List[str]] = None) -> OperationResult:
        return OperationResult(
            index=operation.index,
            type=operation.type,
            success=True,
            data=data,
            path=path,
            warnings=list(warnings or []),
        )

    # Resolution ----------------------------------------------------------------------
    def _staged_by_path(self) -> Dict[str, StagedChange]:
        return {change.path: change for change in self.store.list_staged(self.repo_id)}

    def _resolve_path(self, path: str) -> ResolvedFile:
        entry = self.registry.get(path)
        if entry is not None:
            return ResolvedFile(id=entry.staging_id, path=path, content=entry.content, source="registry")
        staged = self._staged_by_path().get(path)
        if staged is not None:
            if staged.kind == "delete":
                raise OperationError(f"File {path} is staged for deletion.", details={"path": path})
            return ResolvedFile(id=staged.id, path=path, content=staged.new_content or "", source="staged")
        committed = self.store.find_by_path(path)
        if committed is not None:
            return ResolvedFile(id=committed.id, path=path, content=None, source="committed")
        raise OperationError(f"File not found: {path}", details={"path": path})

    def resolve(self, operation: AgentOperation) -> ResolvedFile:
        """Find the file an operation targets: path first, registry first."""
        if operation.path:
            return self._resolve_path(operation.path)
        file_id = operation.file_id
        if not file_id:
            raise OperationError("Operation has neither path nor file_id.")
        registered = self.registry.path_for_id(file_id)
        if registered is not None:
            return self._resolve_path(registered)
        try:
            fetched = self.store.read_content(file_id)
        except RepositoryStoreError as error:
            raise OperationError(f"File not found for file_id {file_id}: {error}", details={"file_id": file_id}) from error
        return ResolvedFile(id=fetched.id, path=fetched.path, content=fetched.content, source="store")

    def _content_of(self, resolved: ResolvedFile) -> str:
        if resolved.content is not None:
            return resolved.content
        return self.store.read_content(resolved.id).content

    def target_key(self, operation: AgentOperation) -> str:
        """Grouping key for planning; maps known identifiers back to paths."""
        if operation.path:
            return operation.path
        file_id = operation.file_id or ""
        registered = self.registry.path_for_id(file_id)
        if registered is not None:
            return registered
        for entry in self.store.list_paths():
            if entry.id == file_id:
                return entry.path
        return f"id:{file_id}"

    def _path_exists(self, path: str) -> bool:
        try:
            self._resolve_path(path)
        except OperationError:
            return False
        return True

    def _stage_write(self, path: str, kind: str, old_content: Optional[str], new_content: str, *, previous_id: Optional[str] = None) -> StagedChange:
        change = self.store.stage_change(self.repo_id, kind, path, old_content=old_content, new_content=new_content)
        self.registry.record(path, change.id, new_content)
        if previous_id:
            self.registry.alias(previous_id, path)
        return change

    # Discovery -----------------------------------------------------------------------
    def _list_files(self, operation: AgentOperation) -> OperationResult:
        prefix = operation.params.get("path_prefix") or None
        entries = self.store.list_paths(prefix)
        files = []
        for entry in entries:
            registered = self.registry.get(entry.path)
            files.append({"id": registered.staging_id if registered else entry.id, "path": entry.path})
        return self._success(operation, {"files": files, "count": len(files)})

    def _search(self, operation: AgentOperation) -> OperationResult:
        keyword = str(operation.params["keyword"])
        matches = self.store.search(keyword)
        return self._success(operation, {"keyword": keyword, "results": matches, "count": len(matches)})

    def _wildcard_search(self, operation: AgentOperation) -> OperationResult:
        pattern = str(operation.params["pattern"])
        content_pattern = operation.params.get("content_pattern") or None
        try:
            matches = self.store.wildcard_search(pattern, content_pattern=content_pattern)
        except re.error as error:
            raise OperationError(f"Invalid content_pattern {content_pattern!r}: {error}") from error
        return self._success(operation, {"pattern": pattern, "results": matches, "count": len(matches)})

    # File operations -----------------------------------------------------------------
    def _read_file(self, operation: AgentOperation) -> OperationResult:
        resolved = self.resolve(operation)
        content = self._content_of(resolved)
        data = {
            "id": resolved.id,
            "path": resolved.path,
            "total_lines": count_lines(content),
            "content": number_lines(content),
        }
        return self._success(operation, data, path=resolved.path)

    def _edit_lines(self, operation: AgentOperation) -> OperationResult:
        resolved = self.resolve(operation)
        original = self._content_of(resolved)
        params = operation.params
        edit = apply_line_edit(original, int(params["start_line"]), int(params["end_line"]), str(params["new_content"]))
        content, warnings = canonicalize_structured(resolved.path, edit.content)

        change = self._stage_write(resolved.path, "edit", original, content, previous_id=resolved.id)
        try:
            current = self.store.read_content(change.id).content
        except RepositoryStoreError:
            current = content
        if current != content:
            LOGGER.warning("Re-read of %s after edit differs from staged content", resolved.path)
            self.registry.record(resolved.path, change.id, current)

        data = {
            "id": change.id,
            "path": resolved.path,
            "mode": edit.mode,
            "start_line": edit.start_line,
            "end_line": edit.end_line,
            "lines_removed": edit.lines_removed,
            "lines_inserted": edit.lines_inserted,
            "total_lines": count_lines(current),
            "preview": edit_preview(current, edit),
        }
        return self._success(operation, data, path=resolved.path, warnings=warnings)

    def _create_file(self, operation: AgentOperation) -> OperationResult:
        path = str(operation.path)
        content, warnings = canonicalize_structured(path, str(operation.params.get("content") or ""))
        try:
            existing: Optional[ResolvedFile] = self._resolve_path(path)
        except OperationError:
            existing = None

        if existing is not None:
            old_content = self._content_of(existing)
            change = self._stage_write(path, "edit", old_content, content, previous_id=existing.id)
            warnings.append(f"{path} already existed; its content was replaced.")
            action = "replaced"
        else:
            # A committed file staged for deletion is being recreated.
            staged = self._staged_by_path().get(path)
            kind = "edit" if staged is not None and staged.kind == "delete" else "add"
            change = self._stage_write(path, kind, "", content)
            action = "created"
        data = {"id": change.id, "path": path, "action": action, "total_lines": count_lines(content)}
        return self._success(operation, data, path=path, warnings=warnings)

    def _delete_file(self, operation: AgentOperation) -> OperationResult:
        resolved = self.resolve(operation)
        staged = self._staged_by_path().get(resolved.path)
        if staged is not None and staged.kind == "add":
            self.store.unstage(self.repo_id, resolved.path)
            action = "unstaged"
        else:
            old_content = self._content_of(resolved)
            self.store.stage_change(self.repo_id, "delete", resolved.path, old_content=old_content)
            action = "deleted"
        self.registry.remove(resolved.path)
        return self._success(operation, {"path": resolved.path, "action": action}, path=resolved.path)

    def _move_file(self, operation: AgentOperation) -> OperationResult:
        resolved = self.resolve(operation)
        new_path = str(operation.params["new_path"]).strip()
        if new_path == resolved.path:
            raise OperationError(f"{resolved.path} is already at that path.")
        if self._path_exists(new_path):
            raise OperationError(f"Target path already exists: {new_path}", details={"path": new_path})

        staged = self._staged_by_path().get(resolved.path)
        if staged is not None and staged.kind == "add":
            moved = self.store.update_staged_path(self.repo_id, resolved.path, new_path)
            new_id = moved.id
            content = moved.new_content or ""
        else:
            committed = self.store.find_by_path(resolved.path)
            if committed is None:
                raise OperationError(f"File not found: {resolved.path}")
            content = self._content_of(resolved)
            entry = self.store.move_path(self.repo_id, committed.id, new_path)
            new_id = entry.id

        if self.registry.rename(resolved.path, new_path, new_id) is None:
            self.registry.record(new_path, new_id, content)
        data = {"id": new_id, "old_path": resolved.path, "new_path": new_path}
        return self._success(operation, data, path=new_path)

    # Staging -------------------------------------------------------------------------
    def _get_staged_changes(self, operation: AgentOperation) -> OperationResult:
        changes = [change.to_dict() for change in self.store.list_staged(self.repo_id)]
        return self._success(operation, {"changes": changes, "count": len(changes)})

    def _unstage_file(self, operation: AgentOperation) -> OperationResult:
        path = str(operation.path)
        self.store.unstage(self.repo_id, path)
        self.registry.remove(path)
        return self._success(operation, {"path": path, "action": "unstaged"}, path=path)

    def _discard_all_staged(self, operation: AgentOperation) -> OperationResult:
        count = self.store.discard_all_staged(self.repo_id)
        self.registry.clear()
        return self._success(operation, {"discarded": count})

    # Project exploration -------------------------------------------------------------
    def _require_project(self) -> None:
        if not self.expose_project:
            raise OperationError("Project exploration tools are not enabled for this session.")

    def _project_inventory(self, operation: AgentOperation) -> OperationResult:
        self._require_project()
        return self._success(operation, project.project_inventory(self.project_context))

    def _project_category(self, operation: AgentOperation) -> OperationResult:
        self._require_project()
        category = str(operation.params["category"]).strip()
        if category not in project.PROJECT_CATEGORIES:
            raise OperationError(
                f"Unknown project category: {category}. Expected one of: "
                + ", ".join(project.PROJECT_CATEGORIES)
            )
        items = project.category_items(self.project_context, category)
        return self._success(operation, {"category": category, "items": items, "count": len(items)})

    def _project_elements(self, operation: AgentOperation) -> OperationResult:
        self._require_project()
        raw_ids = operation.params["element_ids"]
        if isinstance(raw_ids, str):
            raw_ids = [part.strip() for part in raw_ids.split(",")]
        elements = project.find_elements(self.project_context, list(raw_ids))
        return self._success(operation, {"elements": elements, "count": len(elements)})


def summarize_result(result: OperationResult) -> str:
    """One line describing an operation outcome for conversation history."""
    label = f"{result.type}" + (f" {result.path}" if result.path else "")
    if not result.success:
        prefix = "SKIPPED" if result.skipped else "FAILED"
        return f"- {label}: {prefix} - {result.error}"
    data = result.data if isinstance(result.data, Mapping) else {}
    detail = ""
    if result.type == "edit_lines":
        detail = (
            f" (-{data.get('lines_removed', 0)}/+{data.get('lines_inserted', 0)} lines,"
            f" now {data.get('total_lines', '?')} lines)"
        )
    elif result.type == "read_file":
        detail = f" ({data.get('total_lines', '?')} lines)"
    elif "count" in data:
        detail = f" ({data['count']} result(s))"
    elif "action" in data:
        detail = f" ({data['action']})"
    warning = f" [warnings: {'; '.join(result.warnings)}]" if result.warnings else ""
    return f"- {label}: OK{detail}{warning}"


def summarize_results(results: Iterable[OperationResult]) -> str:
    lines = [summarize_result(result) for result in results]
    return "\n".join(lines) if lines else "- no operations executed"


__all__ = [
    "OperationError",
    "OperationExecutor",
    "ResolvedFile",
    "summarize_result",
    "summarize_results",
]
