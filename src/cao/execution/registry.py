"""Per-session map from path to the latest staged identifier and content."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Iterator, Optional


@dataclass(slots=True)
class RegistryEntry:
    staging_id: str
    content: str
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class SessionFileRegistry:
    """Remembers what this session last wrote to each path.

    Every identifier ever recorded for a path stays mapped to that path, so
    an operation quoting an identifier from an earlier listing still lands on
    the newest staged content.
    """

    def __init__(self) -> None:
        self._entries: Dict[str, RegistryEntry] = {}
        self._ids: Dict[str, str] = {}

    def __contains__(self, path: object) -> bool:
        return path in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._entries))

    def get(self, path: str) -> Optional[RegistryEntry]:
        return self._entries.get(path)

    def path_for_id(self, identifier: str) -> Optional[str]:
        path = self._ids.get(identifier)
        if path is not None and path in self._entries:
            return path
        return None

    def alias(self, identifier: str, path: str) -> None:
        """Associate an older identifier (e.g. a committed id) with ``path``."""
        if identifier:
            self._ids[identifier] = path

    def record(self, path: str, staging_id: str, content: str) -> RegistryEntry:
        entry = RegistryEntry(staging_id=staging_id, content=content)
        self._entries[path] = entry
        self._ids[staging_id] = path
        return entry

    def remove(self, path: str) -> Optional[RegistryEntry]:
        entry = self._entries.pop(path, None)
        for identifier in [key for key, value in self._ids.items() if value == path]:
            del self._ids[identifier]
        return entry

    def rename(self, old_path: str, new_path: str, staging_id: str) -> Optional[RegistryEntry]:
        entry = self._entries.pop(old_path, None)
        if entry is None:
            return None
        for identifier, path in list(self._ids.items()):
            if path == old_path:
                self._ids[identifier] = new_path
        return self.record(new_path, staging_id, entry.content)

    def clear(self) -> None:
        self._entries.clear()
        self._ids.clear()

    def snapshot(self) -> Dict[str, str]:
        return {path: entry.staging_id for path, entry in self._entries.items()}


__all__ = ["RegistryEntry", "SessionFileRegistry"]
