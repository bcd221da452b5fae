from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any, Dict, Iterator, List

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from cao.memory.store import MemoryStore  # noqa: E402
from cao.tools.repository import InMemoryRepositoryStore  # noqa: E402

SAMPLE_FILES: Dict[str, str] = {
    "README.md": "# Demo\n\nA tiny project used by the tests.\n",
    "src/app.py": "def greet(name):\n    return 'hi ' + name\n\n\ndef main():\n    print(greet('world'))\n",
    "config/settings.json": '{"debug": false, "level": 1}\n',
}


def agent_reply(
    operations: List[Dict[str, Any]] | None = None,
    *,
    status: str = "in_progress",
    reasoning: str = "Working on it.",
    note: str | None = None,
) -> str:
    """Serialise a well-formed agent response."""
    payload: Dict[str, Any] = {
        "reasoning": reasoning,
        "operations": operations or [],
        "status": status,
    }
    if note is not None:
        payload["blackboard_entry"] = {"entry_type": "progress", "content": note}
    return json.dumps(payload)


@pytest.fixture()
def repo_store() -> InMemoryRepositoryStore:
    return InMemoryRepositoryStore.from_files(SAMPLE_FILES)


@pytest.fixture()
def memory_store() -> Iterator[MemoryStore]:
    with MemoryStore(":memory:") as store:
        yield store
