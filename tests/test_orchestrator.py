from __future__ import annotations

import json
from pathlib import Path

from conftest import agent_reply

from cao.events import EventType, RecordingEmitter
from cao.memory.schema import MessageRole, OperationStatus, SessionStatus
from cao.memory.store import MemoryStore
from cao.models import OfflineAdapter, TransportResponse, XAIAdapter
from cao.orchestrator import AgentOrchestrator, TaskSubmission
from cao.tools.repository import InMemoryRepositoryStore

READ_APP = {"type": "read_file", "params": {"path": "src/app.py"}}
EDIT_APP = {
    "type": "edit_lines",
    "params": {"path": "src/app.py", "start_line": 2, "end_line": 2, "new_content": "    return f'hello {name}'"},
}


def _orchestrator(memory_store: MemoryStore, repo_store: InMemoryRepositoryStore, provider, **kwargs):
    emitter = RecordingEmitter()
    orchestrator = AgentOrchestrator(memory_store, repo_store, provider, emitter=emitter, **kwargs)
    return orchestrator, emitter


def test_session_runs_until_agent_completes(memory_store: MemoryStore, repo_store: InMemoryRepositoryStore) -> None:
    provider = OfflineAdapter(
        script=[
            agent_reply([READ_APP], note="Inspecting app.py"),
            agent_reply([EDIT_APP], status="completed", reasoning="Updated the greeting."),
        ]
    )
    orchestrator, emitter = _orchestrator(memory_store, repo_store, provider)

    outcome = orchestrator.run(TaskSubmission(task_description="Use an f-string in greet"))

    assert outcome.status is SessionStatus.COMPLETED
    assert outcome.stop_reason == "completed"
    assert outcome.iterations == 2
    assert [result.type for result in outcome.operation_results] == ["read_file", "edit_lines"]
    staged = repo_store.list_staged("local")
    assert staged[0].new_content.splitlines()[1] == "    return f'hello {name}'"

    session = memory_store.get_session(outcome.session_id)
    assert session is not None
    assert session.status is SessionStatus.COMPLETED
    assert session.current_iteration == 2
    assert session.completed_at is not None

    messages = memory_store.list_messages(outcome.session_id)
    assert [message.role for message in messages] == [
        MessageRole.USER,
        MessageRole.AGENT,
        MessageRole.SYSTEM,
        MessageRole.AGENT,
        MessageRole.SYSTEM,
    ]
    assert messages[2].metadata["operation_results"] is True
    assert messages[2].hidden
    assert "read_file src/app.py: OK (6 lines)" in messages[2].content
    visible = memory_store.list_messages(outcome.session_id, include_hidden=False)
    assert [message.content for message in visible][-1] == "Updated the greeting."

    notes = memory_store.recent_blackboard_entries(outcome.session_id)
    assert [note.content for note in notes] == ["Inspecting app.py"]
    operations = memory_store.list_operations(outcome.session_id, statuses=[OperationStatus.COMPLETED])
    assert [record.operation_type for record in operations] == ["read_file", "edit_lines"]

    assert emitter.types() == [
        "session_created",
        "llm_streaming",
        "llm_complete",
        "operation_start",
        "operation_complete",
        "iteration_complete",
        "llm_streaming",
        "llm_complete",
        "operation_start",
        "operation_complete",
        "iteration_complete",
    ]


def test_next_request_carries_full_results_once(memory_store: MemoryStore, repo_store: InMemoryRepositoryStore) -> None:
    provider = OfflineAdapter(
        script=[agent_reply([READ_APP]), agent_reply(), agent_reply(status="completed")]
    )
    orchestrator, _ = _orchestrator(memory_store, repo_store, provider)

    orchestrator.run(TaskSubmission(task_description="Explain app.py"))

    first, second, third = (call["history"] for call in provider.calls)
    assert first == [{"role": "user", "content": "Task: Explain app.py"}]
    assert second[-1]["role"] == "user"
    assert "Full operation results" in second[-1]["content"]
    assert "1| def greet(name):" in second[-1]["content"]
    # The earlier results shrink back to the summary once newer results arrive.
    assert "1| def greet(name):" not in json.dumps(third[:-1])
    assert "read_file src/app.py: OK" in third[2]["content"]
    assert "=== AVAILABLE TOOLS ===" in provider.calls[0]["system_prompt"]
    assert "Task: Explain app.py" not in provider.calls[0]["system_prompt"]


def test_requires_commit_ends_session_pending(memory_store: MemoryStore, repo_store: InMemoryRepositoryStore) -> None:
    provider = OfflineAdapter(
        script=[agent_reply([{"type": "create_file", "params": {"path": "NOTES.md", "content": "x"}}], status="requires_commit")]
    )
    orchestrator, _ = _orchestrator(memory_store, repo_store, provider)

    outcome = orchestrator.run(TaskSubmission(task_description="Write notes"))

    assert outcome.status is SessionStatus.PENDING_COMMIT
    assert outcome.iterations == 1


def test_iteration_budget_decides_final_status(memory_store: MemoryStore, repo_store: InMemoryRepositoryStore) -> None:
    create = {"type": "create_file", "params": {"path": "a.txt", "content": "a"}}
    staged_provider = OfflineAdapter(script=[agent_reply([create]), agent_reply()])
    idle_provider = OfflineAdapter(script=[agent_reply(), agent_reply()])

    staged_outcome = _orchestrator(memory_store, repo_store, staged_provider)[0].run(
        TaskSubmission(task_description="Create a file", max_iterations=2)
    )
    repo_store.discard_all_staged("local")
    idle_outcome = _orchestrator(memory_store, repo_store, idle_provider)[0].run(
        TaskSubmission(task_description="Think", max_iterations=2)
    )

    assert staged_outcome.status is SessionStatus.PENDING_COMMIT
    assert staged_outcome.stop_reason == "max_iterations"
    assert staged_outcome.iterations == 2
    assert idle_outcome.status is SessionStatus.COMPLETED
    assert idle_outcome.stop_reason == "max_iterations"


def test_parse_error_is_recorded_and_loop_continues(
    memory_store: MemoryStore, repo_store: InMemoryRepositoryStore
) -> None:
    provider = OfflineAdapter(script=["I am not JSON at all", agent_reply(status="completed")])
    orchestrator, _ = _orchestrator(memory_store, repo_store, provider)

    outcome = orchestrator.run(TaskSubmission(task_description="Do something"))

    assert outcome.status is SessionStatus.COMPLETED
    logs = memory_store.list_llm_logs(outcome.session_id)
    assert [log.parse_success for log in logs] == [False, True]
    agent_message = memory_store.list_messages(outcome.session_id)[1]
    assert agent_message.metadata["status"] == "parse_error"
    assert agent_message.metadata["raw_output"] == "I am not JSON at all"
    assert "could not be parsed" in provider.calls[1]["history"][-1]["content"]


def test_skipped_operations_are_logged(memory_store: MemoryStore, repo_store: InMemoryRepositoryStore) -> None:
    provider = OfflineAdapter(
        script=[agent_reply([{"type": "format_disk", "params": {}}, READ_APP], status="completed")]
    )
    orchestrator, emitter = _orchestrator(memory_store, repo_store, provider)

    outcome = orchestrator.run(TaskSubmission(task_description="Try things"))

    assert [result.skipped for result in outcome.operation_results] == [True, False]
    skipped = memory_store.list_operations(outcome.session_id, statuses=[OperationStatus.SKIPPED])
    assert skipped[0].operation_type == "format_disk"
    assert emitter.types().count("operation_start") == 1


def test_provider_error_fails_session(memory_store: MemoryStore, repo_store: InMemoryRepositoryStore) -> None:
    provider = XAIAdapter(
        "grok-4",
        api_key="k",
        transport=lambda request: TransportResponse.from_text(429, "Too many requests"),
    )
    orchestrator, emitter = _orchestrator(memory_store, repo_store, provider)

    outcome = orchestrator.run(TaskSubmission(task_description="Anything"))

    assert outcome.status is SessionStatus.FAILED
    assert outcome.stop_reason == "provider_error"
    assert "rate limit" in (outcome.error or "")
    assert emitter.types()[-1] == "error"
    logs = memory_store.list_llm_logs(outcome.session_id)
    assert logs[0].api_status == 429
    assert not logs[0].parse_success
    assert memory_store.get_session(outcome.session_id).status is SessionStatus.FAILED  # type: ignore[union-attr]
    assert memory_store.list_messages(outcome.session_id)[-1].role is MessageRole.SYSTEM


def test_stream_broken_mid_response_fails_as_provider_error(
    memory_store: MemoryStore, repo_store: InMemoryRepositoryStore
) -> None:
    def broken_lines():
        yield "data: " + json.dumps({"choices": [{"delta": {"content": "{\"reasoning\": "}}]})
        yield ""
        raise ConnectionResetError("connection reset by peer")

    provider = XAIAdapter(
        "grok-4",
        api_key="k",
        transport=lambda request: TransportResponse(status=200, lines=broken_lines()),
    )
    orchestrator, emitter = _orchestrator(memory_store, repo_store, provider)

    outcome = orchestrator.run(TaskSubmission(task_description="Anything"))

    assert outcome.status is SessionStatus.FAILED
    assert outcome.stop_reason == "provider_error"
    assert "connection reset" in (outcome.error or "")
    assert emitter.types() == ["session_created", "llm_streaming", "error"]
    logs = memory_store.list_llm_logs(outcome.session_id)
    assert len(logs) == 1
    assert not logs[0].parse_success
    assert "connection reset" in (logs[0].parse_error or "")


def test_abort_is_honoured_before_next_iteration(memory_store: MemoryStore, repo_store: InMemoryRepositoryStore) -> None:
    provider = OfflineAdapter(script=[agent_reply(), agent_reply(), agent_reply()])
    orchestrator, emitter = _orchestrator(memory_store, repo_store, provider)

    def abort_after_first(event) -> None:
        if event.type is EventType.ITERATION_COMPLETE:
            orchestrator.request_abort(event.session_id)

    emitter.subscribe(abort_after_first)
    outcome = orchestrator.run(TaskSubmission(task_description="Loop", max_iterations=5))

    assert outcome.status is SessionStatus.ABORTED
    assert outcome.iterations == 1
    assert len(provider.calls) == 1
    last = emitter.events[-1]
    assert last.type is EventType.ERROR
    assert last.payload["kind"] == "aborted"
    assert memory_store.get_session(outcome.session_id).status is SessionStatus.ABORTED  # type: ignore[union-attr]


def test_resume_rebuilds_history_and_refuses_aborted(
    memory_store: MemoryStore, repo_store: InMemoryRepositoryStore
) -> None:
    provider = OfflineAdapter(script=[agent_reply([READ_APP], status="completed"), agent_reply(status="completed")])
    orchestrator, _ = _orchestrator(memory_store, repo_store, provider)
    first = orchestrator.run(TaskSubmission(task_description="Review app.py", max_iterations=3))

    resumed = orchestrator.resume(first.session_id, "Now summarise it")

    history = provider.calls[-1]["history"]
    assert resumed.status is SessionStatus.COMPLETED
    assert history[0] == {"role": "user", "content": "Task: Review app.py"}
    assert history[2]["content"].startswith("[System]: Operation results (iteration 1)")
    assert history[-1] == {"role": "user", "content": "Now summarise it"}
    assert memory_store.get_session(first.session_id).current_iteration == 2  # type: ignore[union-attr]

    orchestrator.request_abort(first.session_id)
    refused = orchestrator.resume(first.session_id, "again")
    assert refused.status is SessionStatus.ABORTED
    assert len(provider.calls) == 2


def test_llm_artifacts_are_written(tmp_path: Path, memory_store: MemoryStore, repo_store: InMemoryRepositoryStore) -> None:
    provider = OfflineAdapter(script=[agent_reply(status="completed")])
    orchestrator, _ = _orchestrator(memory_store, repo_store, provider, logs_dir=tmp_path)

    orchestrator.run(TaskSubmission(task_description="Log it"))

    files = sorted((tmp_path / "llm_inputs").glob("*.txt"))
    assert [path.name.split("__")[0] for path in files] == ["input", "output"]
    assert files[0].read_text(encoding="utf-8").startswith("Timestamp: ")
    assert "Model: offline" in files[0].read_text(encoding="utf-8")


def test_submission_clamps_iterations() -> None:
    assert TaskSubmission(task_description="t", max_iterations=0).max_iterations == 1
    assert TaskSubmission(task_description="t", max_iterations=500).max_iterations == 100
