from __future__ import annotations

from cao.memory.schema import (
    BlackboardEntryType,
    LLMCallLog,
    MessageRole,
    OperationStatus,
    Session,
    SessionStatus,
    utc_now,
)
from cao.memory.store import MemoryStore


def test_session_message_roundtrip(tmp_path) -> None:
    db_path = tmp_path / "cao.sqlite"
    with MemoryStore(db_path) as store:
        session = Session(id="s-1", task_description="Fix the bug", metadata={"model": "offline"})
        store.create_session(session)
        store.insert_message(session.id, MessageRole.USER, "Fix the bug")
        store.insert_message(session.id, MessageRole.AGENT, "Reading", iteration=1, metadata={"status": "in_progress"})
        store.insert_message(session.id, MessageRole.SYSTEM, "results", iteration=1, metadata={"hidden": True})

        store.update_session(session.id, current_iteration=1)
        store.update_session(session.id, status=SessionStatus.COMPLETED, completed_at=utc_now())

    with MemoryStore(db_path) as reopened:
        loaded = reopened.get_session("s-1")
        assert loaded is not None
        assert loaded.status is SessionStatus.COMPLETED
        assert loaded.current_iteration == 1
        assert loaded.completed_at is not None
        assert loaded.metadata == {"model": "offline"}

        everything = reopened.list_messages("s-1")
        visible = reopened.list_messages("s-1", include_hidden=False)
        assert [message.role for message in everything] == [MessageRole.USER, MessageRole.AGENT, MessageRole.SYSTEM]
        assert [message.content for message in visible] == ["Fix the bug", "Reading"]
        assert everything[1].metadata == {"status": "in_progress"}


def test_abort_flag_and_session_listing(memory_store: MemoryStore) -> None:
    memory_store.create_session(Session(id="a", task_description="first"))
    memory_store.create_session(Session(id="b", task_description="second"))

    memory_store.request_abort("a")
    memory_store.request_abort("missing")

    assert memory_store.get_session("a").abort_requested  # type: ignore[union-attr]
    assert not memory_store.get_session("b").abort_requested  # type: ignore[union-attr]
    assert {session.id for session in memory_store.list_sessions()} == {"a", "b"}
    assert memory_store.get_session("missing") is None


def test_blackboard_returns_latest_entries_oldest_first(memory_store: MemoryStore) -> None:
    memory_store.create_session(Session(id="s", task_description="t"))
    for number in range(1, 6):
        memory_store.add_blackboard_entry("s", BlackboardEntryType.PROGRESS, f"note {number}", iteration=number)

    entries = memory_store.recent_blackboard_entries("s", limit=3)

    assert [entry.content for entry in entries] == ["note 3", "note 4", "note 5"]


def test_operation_and_llm_logs(memory_store: MemoryStore) -> None:
    memory_store.create_session(Session(id="s", task_description="t"))
    ok = memory_store.log_operation("s", 1, "read_file", file_path="a.py", details={"index": 0})
    bad = memory_store.log_operation("s", 1, "edit_lines", file_path="b.py")
    memory_store.update_operation_status(ok.id, OperationStatus.COMPLETED)
    memory_store.update_operation_status(bad.id, OperationStatus.FAILED, error_message="File not found")
    memory_store.insert_llm_log(
        LLMCallLog(id="l1", session_id="s", iteration=1, model="offline", input_prompt="p", output_raw="o", parse_success=True)
    )

    failed = memory_store.list_operations("s", statuses=[OperationStatus.FAILED])
    logs = memory_store.list_llm_logs("s")

    assert [record.file_path for record in failed] == ["b.py"]
    assert failed[0].error_message == "File not found"
    assert len(memory_store.list_operations("s")) == 2
    assert logs[0].parse_success
    assert logs[0].api_status is None
