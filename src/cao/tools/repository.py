"""Repository store interface and an in-memory reference implementation."""

from __future__ import annotations

import fnmatch
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Mapping, Optional, Tuple
from uuid import uuid4

StagedKind = Literal["add", "edit", "delete"]
STAGED_KINDS: Tuple[str, ...] = ("add", "edit", "delete")


class RepositoryStoreError(RuntimeError):
    """Raised when the backing store rejects a request."""

    def __init__(self, message: str, *, details: Mapping[str, Any] | None = None) -> None:
        super().__init__(message)
        self.details: dict[str, Any] = dict(details or {})


@dataclass(slots=True)
class FileEntry:
    """Identifier/path pair returned by path listings."""

    id: str
    path: str

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "path": self.path}


@dataclass(slots=True)
class FileContent:
    """File body as seen through the staged overlay."""

    id: str
    path: str
    content: str


@dataclass(slots=True)
class StagedChange:
    """Uncommitted mutation held by the store."""

    id: str
    path: str
    kind: str
    old_content: Optional[str] = None
    new_content: Optional[str] = None

    def to_dict(self, *, include_content: bool = False) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"id": self.id, "path": self.path, "kind": self.kind}
        if include_content:
            payload["old_content"] = self.old_content
            payload["new_content"] = self.new_content
        return payload


class RepositoryStoreClient(ABC):
    """Narrow interface over a remote file/staging store."""

    @abstractmethod
    def list_paths(self, prefix: Optional[str] = None) -> List[FileEntry]:
        """List committed and staged-add paths, optionally under ``prefix``."""

    @abstractmethod
    def read_content(self, file_id: str) -> FileContent:
        """Return content for ``file_id`` with staged edits overlaid."""

    @abstractmethod
    def stage_change(
        self,
        repo_id: str,
        kind: str,
        path: str,
        old_content: Optional[str] = None,
        new_content: Optional[str] = None,
    ) -> StagedChange:
        """Stage an add/edit/delete and return the staging record."""

    @abstractmethod
    def list_staged(self, repo_id: str) -> List[StagedChange]:
        """Return every staged change for ``repo_id``."""

    @abstractmethod
    def unstage(self, repo_id: str, path: str) -> None:
        """Drop the staged change for ``path``."""

    @abstractmethod
    def discard_all_staged(self, repo_id: str) -> int:
        """Drop all staged changes and return how many were removed."""

    @abstractmethod
    def move_path(self, repo_id: str, file_id: str, new_path: str) -> FileEntry:
        """Move a committed file (staged as delete + add)."""

    @abstractmethod
    def update_staged_path(self, repo_id: str, old_path: str, new_path: str) -> StagedChange:
        """Re-key a staged change to ``new_path``."""

    def find_by_path(self, path: str) -> Optional[FileEntry]:
        """Locate a committed or staged-add entry by exact path."""
        for entry in self.list_paths():
            if entry.path == path:
                return entry
        return None

    def search(self, keyword: str, *, max_matches: int = 3) -> List[Dict[str, Any]]:
        """Case-insensitive keyword search across paths and file contents."""
        needle = keyword.lower()
        results: List[Dict[str, Any]] = []
        for entry in self.list_paths():
            path_hit = needle in entry.path.lower()
            try:
                content = self.read_content(entry.id).content
            except RepositoryStoreError:
                content = ""
            matches = _matching_lines(content, lambda line: needle in line.lower(), max_matches)
            if path_hit or matches:
                results.append({"id": entry.id, "path": entry.path, "matches": matches})
        return results

    def wildcard_search(
        self,
        pattern: str,
        *,
        content_pattern: Optional[str] = None,
        max_matches: int = 3,
    ) -> List[Dict[str, Any]]:
        """Glob over paths with an optional regular-expression content filter."""
        regex = re.compile(content_pattern) if content_pattern else None
        results: List[Dict[str, Any]] = []
        for entry in self.list_paths():
            if not _glob_match(entry.path, pattern):
                continue
            if regex is None:
                results.append({"id": entry.id, "path": entry.path})
                continue
            try:
                content = self.read_content(entry.id).content
            except RepositoryStoreError:
                continue
            matches = _matching_lines(content, lambda line: bool(regex.search(line)), max_matches)
            if matches:
                results.append({"id": entry.id, "path": entry.path, "matches": matches})
        return results


def _glob_match(path: str, pattern: str) -> bool:
    if fnmatch.fnmatchcase(path, pattern):
        return True
    # `**/` also matches files at the top level.
    if pattern.startswith("**/") and fnmatch.fnmatchcase(path, pattern[3:]):
        return True
    return "/" not in pattern and fnmatch.fnmatchcase(path.rsplit("/", 1)[-1], pattern)


def _matching_lines(content: str, predicate, limit: int) -> List[Dict[str, Any]]:
    matches: List[Dict[str, Any]] = []
    for number, line in enumerate(content.splitlines(), start=1):
        if predicate(line):
            matches.append({"line": number, "text": line.strip()[:200]})
            if len(matches) >= limit:
                break
    return matches


@dataclass(slots=True)
class _CommittedFile:
    id: str
    path: str
    content: str


@dataclass
class InMemoryRepositoryStore(RepositoryStoreClient):
    """Dictionary-backed store used by tests and embedded callers.

    Staging identifiers rotate on every write, so callers that hold on to an
    old identifier observe the same staleness a remote store would show.
    """

    files: Dict[str, _CommittedFile] = field(default_factory=dict)
    staged: Dict[str, Dict[str, StagedChange]] = field(default_factory=dict)

    @classmethod
    def from_files(cls, files: Mapping[str, str]) -> "InMemoryRepositoryStore":
        store = cls()
        for path, content in files.items():
            store.add_committed(path, content)
        return store

    def add_committed(self, path: str, content: str) -> FileEntry:
        file_id = f"file-{uuid4().hex[:12]}"
        self.files[file_id] = _CommittedFile(id=file_id, path=path, content=content)
        return FileEntry(id=file_id, path=path)

    def _staged_for(self, repo_id: str) -> Dict[str, StagedChange]:
        return self.staged.setdefault(repo_id, {})

    def _all_staged(self) -> List[StagedChange]:
        return [change for changes in self.staged.values() for change in changes.values()]

    def _committed_by_path(self, path: str) -> Optional[_CommittedFile]:
        for record in self.files.values():
            if record.path == path:
                return record
        return None

    def list_paths(self, prefix: Optional[str] = None) -> List[FileEntry]:
        staged_by_path = {change.path: change for change in self._all_staged()}
        entries: List[FileEntry] = []
        for record in self.files.values():
            change = staged_by_path.get(record.path)
            if change is not None and change.kind == "delete":
                continue
            entries.append(FileEntry(id=record.id, path=record.path))
        committed_paths = {record.path for record in self.files.values()}
        for change in staged_by_path.values():
            if change.kind != "delete" and change.path not in committed_paths:
                entries.append(FileEntry(id=change.id, path=change.path))
        if prefix:
            entries = [entry for entry in entries if entry.path.startswith(prefix)]
        return sorted(entries, key=lambda entry: entry.path)

    def read_content(self, file_id: str) -> FileContent:
        for change in self._all_staged():
            if change.id == file_id:
                if change.kind == "delete":
                    raise RepositoryStoreError(f"File {change.path} is staged for deletion.")
                return FileContent(id=change.id, path=change.path, content=change.new_content or "")
        record = self.files.get(file_id)
        if record is None:
            raise RepositoryStoreError(f"File not found: {file_id}", details={"file_id": file_id})
        for change in self._all_staged():
            if change.path == record.path:
                if change.kind == "delete":
                    raise RepositoryStoreError(f"File {record.path} is staged for deletion.")
                return FileContent(id=record.id, path=record.path, content=change.new_content or "")
        return FileContent(id=record.id, path=record.path, content=record.content)

    def stage_change(
        self,
        repo_id: str,
        kind: str,
        path: str,
        old_content: Optional[str] = None,
        new_content: Optional[str] = None,
    ) -> StagedChange:
        if kind not in STAGED_KINDS:
            raise RepositoryStoreError(f"Unsupported staged change kind: {kind}")
        staged = self._staged_for(repo_id)
        existing = staged.get(path)
        if existing is not None:
            # Keep the original baseline and the original intent of new files.
            old_content = existing.old_content
            if existing.kind == "add" and kind == "edit":
                kind = "add"
        change = StagedChange(
            id=f"staged-{uuid4().hex[:12]}",
            path=path,
            kind=kind,
            old_content=old_content,
            new_content=new_content if kind != "delete" else None,
        )
        staged[path] = change
        return change

    def list_staged(self, repo_id: str) -> List[StagedChange]:
        return sorted(self._staged_for(repo_id).values(), key=lambda change: change.path)

    def unstage(self, repo_id: str, path: str) -> None:
        staged = self._staged_for(repo_id)
        if path not in staged:
            raise RepositoryStoreError(f"No staged change for {path}", details={"path": path})
        del staged[path]

    def discard_all_staged(self, repo_id: str) -> int:
        staged = self._staged_for(repo_id)
        count = len(staged)
        staged.clear()
        return count

    def move_path(self, repo_id: str, file_id: str, new_path: str) -> FileEntry:
        record = self.files.get(file_id)
        if record is None:
            raise RepositoryStoreError(f"File not found: {file_id}", details={"file_id": file_id})
        if self._committed_by_path(new_path) is not None:
            raise RepositoryStoreError(f"Target path already exists: {new_path}")
        content = self.read_content(file_id).content
        self.stage_change(repo_id, "delete", record.path, old_content=record.content)
        added = self.stage_change(repo_id, "add", new_path, old_content="", new_content=content)
        return FileEntry(id=added.id, path=new_path)

    def update_staged_path(self, repo_id: str, old_path: str, new_path: str) -> StagedChange:
        staged = self._staged_for(repo_id)
        change = staged.pop(old_path, None)
        if change is None:
            raise RepositoryStoreError(f"No staged change for {old_path}", details={"path": old_path})
        moved = StagedChange(
            id=f"staged-{uuid4().hex[:12]}",
            path=new_path,
            kind=change.kind,
            old_content=change.old_content,
            new_content=change.new_content,
        )
        staged[new_path] = moved
        return moved


__all__ = [
    "FileContent",
    "FileEntry",
    "InMemoryRepositoryStore",
    "RepositoryStoreClient",
    "RepositoryStoreError",
    "STAGED_KINDS",
    "StagedChange",
    "StagedKind",
]
