"""Repository store backed by a working directory on disk."""

from __future__ import annotations

import hashlib
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from .repository import (
    FileEntry,
    InMemoryRepositoryStore,
    RepositoryStoreError,
    StagedChange,
    _CommittedFile,
)

LOGGER = logging.getLogger(__name__)

DEFAULT_IGNORED_DIRS = frozenset(
    {
        ".git",
        ".hg",
        ".venv",
        "venv",
        "__pycache__",
        "node_modules",
        ".mypy_cache",
        ".pytest_cache",
        "data",
        "dist",
        "build",
    }
)
MAX_FILE_BYTES = 512_000


def _file_id(path: str) -> str:
    digest = hashlib.sha1(path.encode("utf-8")).hexdigest()[:12]
    return f"file-{digest}"


def _iter_workspace_files(root: Path, ignored_dirs: Iterable[str]) -> Iterable[Path]:
    ignored = set(ignored_dirs)
    for current, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(name for name in dirnames if name not in ignored)
        for filename in sorted(filenames):
            yield Path(current) / filename


class WorkspaceRepositoryStore(InMemoryRepositoryStore):
    """Committed content comes from ``root``; staged changes live beside it.

    Staged changes are kept in memory and, when ``staging_path`` is given,
    mirrored to a JSON file so separate CLI invocations see the same staging
    area. Nothing touches the working tree until :meth:`apply_staged`.
    """

    def __init__(
        self,
        root: Path | str,
        *,
        staging_path: Path | str | None = None,
        ignored_dirs: Iterable[str] = DEFAULT_IGNORED_DIRS,
    ) -> None:
        super().__init__()
        self.root = Path(root).resolve()
        if not self.root.is_dir():
            raise RepositoryStoreError(f"Workspace root does not exist: {self.root}")
        self.staging_path = Path(staging_path) if staging_path else None
        self._ignored_dirs = tuple(ignored_dirs)
        self._load_committed()
        self._load_staging()

    def _load_committed(self) -> None:
        for fs_path in _iter_workspace_files(self.root, self._ignored_dirs):
            try:
                if fs_path.stat().st_size > MAX_FILE_BYTES:
                    continue
                content = fs_path.read_text(encoding="utf-8")
            except UnicodeDecodeError:
                continue
            except OSError as error:
                LOGGER.warning("Skipping unreadable workspace file %s: %s", fs_path, error)
                continue
            relative = fs_path.relative_to(self.root).as_posix()
            file_id = _file_id(relative)
            self.files[file_id] = _CommittedFile(id=file_id, path=relative, content=content)

    def _load_staging(self) -> None:
        if self.staging_path is None or not self.staging_path.exists():
            return
        try:
            payload = json.loads(self.staging_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as error:
            raise RepositoryStoreError(
                f"Failed to read staging file {self.staging_path}: {error}"
            ) from error
        for repo_id, changes in (payload or {}).items():
            bucket = self._staged_for(repo_id)
            for item in changes or []:
                change = StagedChange(
                    id=item["id"],
                    path=item["path"],
                    kind=item["kind"],
                    old_content=item.get("old_content"),
                    new_content=item.get("new_content"),
                )
                bucket[change.path] = change

    def _save_staging(self) -> None:
        if self.staging_path is None:
            return
        payload: Dict[str, List[Dict[str, Any]]] = {
            repo_id: [change.to_dict(include_content=True) for change in changes.values()]
            for repo_id, changes in self.staged.items()
        }
        self.staging_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.staging_path.with_suffix(self.staging_path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        tmp_path.replace(self.staging_path)

    def stage_change(
        self,
        repo_id: str,
        kind: str,
        path: str,
        old_content: Optional[str] = None,
        new_content: Optional[str] = None,
    ) -> StagedChange:
        _validate_relative(path)
        change = super().stage_change(repo_id, kind, path, old_content, new_content)
        self._save_staging()
        return change

    def unstage(self, repo_id: str, path: str) -> None:
        super().unstage(repo_id, path)
        self._save_staging()

    def discard_all_staged(self, repo_id: str) -> int:
        count = super().discard_all_staged(repo_id)
        self._save_staging()
        return count

    def move_path(self, repo_id: str, file_id: str, new_path: str) -> FileEntry:
        _validate_relative(new_path)
        entry = super().move_path(repo_id, file_id, new_path)
        self._save_staging()
        return entry

    def update_staged_path(self, repo_id: str, old_path: str, new_path: str) -> StagedChange:
        _validate_relative(new_path)
        change = super().update_staged_path(repo_id, old_path, new_path)
        self._save_staging()
        return change

    def apply_staged(self, repo_id: str) -> List[str]:
        """Write staged changes into the working tree and clear them."""
        touched: List[str] = []
        for change in self.list_staged(repo_id):
            target = self.root / change.path
            if change.kind == "delete":
                if target.exists():
                    target.unlink()
            else:
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_text(change.new_content or "", encoding="utf-8")
            touched.append(change.path)
        self.discard_all_staged(repo_id)
        self.files.clear()
        self._load_committed()
        return touched


def _validate_relative(path: str) -> None:
    candidate = Path(path)
    if candidate.is_absolute():
        raise RepositoryStoreError(f"Absolute paths are not permitted: {path}")
    if any(part == ".." for part in candidate.parts):
        raise RepositoryStoreError(f"Path escaping detected: {path}")
    if candidate.parts and candidate.parts[0] == ".git":
        raise RepositoryStoreError("Changes may not target the .git directory.")


__all__ = ["DEFAULT_IGNORED_DIRS", "WorkspaceRepositoryStore"]
