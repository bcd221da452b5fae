"""Session loop that drives prompt, provider, parser, planner and executor."""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .config import HARD_MAX_ITERATIONS
from .events import EventEmitter, EventType
from .execution.executor import OperationExecutor, summarize_results
from .memory.schema import (
    BlackboardEntryType,
    LLMCallLog,
    Message,
    MessageRole,
    OperationStatus,
    Session,
    SessionMode,
    SessionStatus,
    utc_now,
)
from .memory.store import SessionStore
from .models.llm_client import LLMClientError, ProviderAdapter
from .parsing import parse_agent_response
from .planning.planner import plan_operations
from .prompts import PromptContext, PromptSection, assemble_prompt, default_prompt_sections
from .structured import AgentOperation, AgentResponse, OperationResult
from .tools.catalog import ToolDefinition, active_tools, apply_custom_descriptions, default_tools
from .tools.repository import RepositoryStoreClient, RepositoryStoreError
from .utils.slug import slugify

LOGGER = logging.getLogger(__name__)

COMPLETED_STATUS = "completed"
COMMIT_STATUSES = frozenset({"requires_commit", "pending_commit"})
EPHEMERAL_RESULT_CHARS = 60_000
PARSE_RETRY_HINT = (
    "Your previous response could not be parsed. Reply with exactly one JSON object "
    "matching the RESPONSE FORMAT section and nothing else."
)


class OrchestratorError(RuntimeError):
    """Raised for requests the loop cannot start (unknown session and the like)."""


class AttachedFile(BaseModel):
    model_config = ConfigDict(extra="forbid")

    path: str
    id: Optional[str] = None


class TaskSubmission(BaseModel):
    """Everything needed to start a session."""

    model_config = ConfigDict(extra="forbid")

    task_description: str = Field(min_length=1)
    attached_files: List[AttachedFile] = Field(default_factory=list)
    project_context: Dict[str, Any] = Field(default_factory=dict)
    mode: SessionMode = SessionMode.SINGLE_TASK
    auto_commit: bool = False
    max_iterations: int = 30
    prompt_sections: Optional[List[PromptSection]] = None
    custom_tool_descriptions: Optional[Dict[str, Dict[str, str]]] = None
    expose_project: bool = False
    project_id: str = ""
    repo_id: str = "local"

    @field_validator("max_iterations")
    @classmethod
    def _clamp_iterations(cls, value: int) -> int:
        return clamp_iterations(value)


def clamp_iterations(value: Any) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        number = 30
    return max(1, min(number, HARD_MAX_ITERATIONS))


@dataclass(slots=True)
class SessionOutcome:
    """Final state of one run of the loop."""

    session_id: str
    status: SessionStatus
    iterations: int
    operation_results: List[OperationResult] = field(default_factory=list)
    stop_reason: str = ""
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "status": self.status.value,
            "iterations": self.iterations,
            "stop_reason": self.stop_reason,
            "error": self.error,
            "operation_results": [result.to_dict() for result in self.operation_results],
        }


@dataclass(slots=True)
class _RunState:
    session: Session
    submission: TaskSubmission
    tools: List[ToolDefinition]
    sections: List[PromptSection]
    executor: OperationExecutor
    history: List[Dict[str, str]] = field(default_factory=list)
    ephemeral: Optional[str] = None
    results: List[OperationResult] = field(default_factory=list)
    iterations_run: int = 0


class AgentOrchestrator:
    """Runs agent sessions against one repository store and one provider.

    Iterations are strictly sequential. The abort flag is polled before each
    iteration; final status and completion time are written once per run.
    """

    def __init__(
        self,
        store: SessionStore,
        repository: RepositoryStoreClient,
        provider: ProviderAdapter,
        *,
        emitter: Optional[EventEmitter] = None,
        history_limit: int = 20,
        history_char_limit: int = 4000,
        blackboard_limit: int = 10,
        logs_dir: Optional[Path] = None,
    ) -> None:
        self.store = store
        self.repository = repository
        self.provider = provider
        self.emitter = emitter or EventEmitter()
        self.history_limit = max(int(history_limit), 2)
        self.history_char_limit = max(int(history_char_limit), 200)
        self.blackboard_limit = blackboard_limit
        self.logs_dir = Path(logs_dir) if logs_dir else None

    # Public API ----------------------------------------------------------------------
    def run(self, submission: TaskSubmission) -> SessionOutcome:
        """Create a session for ``submission`` and drive it to a terminal state."""
        session = Session(
            id=str(uuid.uuid4()),
            project_id=submission.project_id,
            repo_id=submission.repo_id,
            task_description=submission.task_description,
            mode=submission.mode,
            max_iterations=submission.max_iterations,
            metadata={
                "model": self.provider.model,
                "provider": self.provider.provider,
                "submission": submission.model_dump(mode="json", exclude={"task_description"}),
            },
        )
        self.store.create_session(session)
        self.store.insert_message(session.id, MessageRole.USER, submission.task_description, iteration=0)
        self.emitter.emit(
            EventType.SESSION_CREATED,
            session.id,
            task_description=submission.task_description,
            model=self.provider.model,
            max_iterations=session.max_iterations,
        )
        LOGGER.info("Session %s created (model=%s)", session.id, self.provider.model)

        state = self._new_state(session, submission)
        state.history.append({"role": "user", "content": self._truncate(f"Task: {submission.task_description}")})
        return self._drive(state, limit=session.max_iterations)

    def resume(self, session_id: str, message: Optional[str] = None) -> SessionOutcome:
        """Continue an existing session, optionally with a follow-up message."""
        session = self.store.get_session(session_id)
        if session is None:
            raise OrchestratorError(f"Unknown session: {session_id}")
        if session.status is SessionStatus.ABORTED or session.abort_requested:
            LOGGER.info("Session %s was aborted; not resuming", session_id)
            return SessionOutcome(
                session_id=session_id,
                status=SessionStatus.ABORTED,
                iterations=0,
                stop_reason="aborted",
            )

        stored = dict(session.metadata.get("submission") or {})
        stored["task_description"] = session.task_description
        submission = TaskSubmission.model_validate(stored)
        state = self._new_state(session, submission)
        state.history = self._rebuild_history(self.store.list_messages(session_id))
        if message:
            self.store.insert_message(session_id, MessageRole.USER, message, iteration=session.current_iteration)
            state.history.append({"role": "user", "content": self._truncate(message)})
            self._trim_history(state)
        if session.status is not SessionStatus.RUNNING:
            self.store.update_session(session_id, status=SessionStatus.RUNNING)
            session.status = SessionStatus.RUNNING

        limit = session.current_iteration + clamp_iterations(session.max_iterations)
        return self._drive(state, limit=limit)

    def request_abort(self, session_id: str) -> None:
        """Ask a running session to stop before its next iteration."""
        self.store.request_abort(session_id)

    # Loop ----------------------------------------------------------------------------
    def _new_state(self, session: Session, submission: TaskSubmission) -> _RunState:
        tools = active_tools(
            apply_custom_descriptions(default_tools(), submission.custom_tool_descriptions),
            expose_project=submission.expose_project,
        )
        sections = list(submission.prompt_sections) if submission.prompt_sections else default_prompt_sections()
        executor = OperationExecutor(
            self.repository,
            submission.repo_id,
            project_context=submission.project_context,
            expose_project=submission.expose_project,
        )
        return _RunState(
            session=session,
            submission=submission,
            tools=tools,
            sections=sections,
            executor=executor,
        )

    def _abort_requested(self, session_id: str) -> bool:
        current = self.store.get_session(session_id)
        return bool(current and current.abort_requested)

    def _drive(self, state: _RunState, *, limit: int) -> SessionOutcome:
        session = state.session
        limit = min(limit, session.current_iteration + HARD_MAX_ITERATIONS)
        final_status: Optional[SessionStatus] = None
        stop_reason = ""
        error_message: Optional[str] = None
        iteration = session.current_iteration

        while iteration < limit:
            if self._abort_requested(session.id):
                final_status, stop_reason = SessionStatus.ABORTED, "aborted"
                self.store.insert_message(
                    session.id,
                    MessageRole.SYSTEM,
                    "Session aborted before iteration {}.".format(iteration + 1),
                    iteration=iteration,
                    metadata={"hidden": True},
                )
                self.emitter.emit(
                    EventType.ERROR,
                    session.id,
                    iteration=iteration,
                    error="Session aborted by request.",
                    kind="aborted",
                )
                break

            iteration += 1
            session.current_iteration = iteration
            self.store.update_session(session.id, current_iteration=iteration)
            try:
                response = self._run_iteration(state, iteration)
            except LLMClientError as error:
                final_status, stop_reason, error_message = SessionStatus.FAILED, "provider_error", str(error)
                self._record_failure(session.id, iteration, error_message, kind=type(error).__name__)
                break
            except Exception as error:  # noqa: BLE001 - the session must still reach a terminal state
                LOGGER.exception("Iteration %s of session %s crashed", iteration, session.id)
                final_status, stop_reason = SessionStatus.FAILED, "internal_error"
                error_message = f"{type(error).__name__}: {error}"
                self._record_failure(session.id, iteration, error_message, kind=type(error).__name__)
                break

            if response.status == COMPLETED_STATUS:
                final_status, stop_reason = SessionStatus.COMPLETED, "completed"
                break
            if response.status in COMMIT_STATUSES:
                final_status, stop_reason = SessionStatus.PENDING_COMMIT, "requires_commit"
                break

        if final_status is None:
            stop_reason = "max_iterations"
            final_status = SessionStatus.PENDING_COMMIT if self._has_staged(state) else SessionStatus.COMPLETED
            LOGGER.info("Session %s hit its iteration budget (%s)", session.id, limit)

        self.store.update_session(session.id, status=final_status, completed_at=utc_now())
        session.status = final_status
        LOGGER.info("Session %s finished: %s (%s)", session.id, final_status.value, stop_reason)
        return SessionOutcome(
            session_id=session.id,
            status=final_status,
            iterations=state.iterations_run,
            operation_results=list(state.results),
            stop_reason=stop_reason,
            error=error_message,
        )

    def _has_staged(self, state: _RunState) -> bool:
        try:
            return bool(self.repository.list_staged(state.submission.repo_id))
        except RepositoryStoreError:
            LOGGER.warning("Could not list staged changes for %s", state.submission.repo_id, exc_info=True)
            return False

    def _record_failure(self, session_id: str, iteration: int, message: str, *, kind: str) -> None:
        self.store.insert_message(
            session_id,
            MessageRole.SYSTEM,
            f"Iteration {iteration} failed: {message}",
            iteration=iteration,
            metadata={"hidden": True, "error": kind},
        )
        self.emitter.emit(EventType.ERROR, session_id, iteration=iteration, error=message, kind=kind)

    def _run_iteration(self, state: _RunState, iteration: int) -> AgentResponse:
        session = state.session
        state.iterations_run += 1
        system_prompt = assemble_prompt(state.sections, self._prompt_context(state, iteration))
        turns = self._request_turns(state)
        input_prompt = system_prompt + "\n\n" + "\n".join(f"{turn['role']}: {turn['content']}" for turn in turns)
        self._write_llm_artifact("input", session.id, iteration, input_prompt)

        received = {"chars": 0}

        def _on_delta(delta: str) -> None:
            received["chars"] += len(delta)
            self.emitter.emit(
                EventType.LLM_STREAMING,
                session.id,
                iteration=iteration,
                delta=delta,
                chars_received=received["chars"],
            )

        try:
            result = self.provider.invoke(system_prompt, turns, tools=state.tools, on_delta=_on_delta)
        except LLMClientError as error:
            LOGGER.error("Provider call failed in session %s iteration %s: %s", session.id, iteration, error)
            self.store.insert_llm_log(
                LLMCallLog(
                    id=str(uuid.uuid4()),
                    session_id=session.id,
                    iteration=iteration,
                    model=self.provider.model,
                    input_prompt=input_prompt,
                    output_raw=error.body or str(error),
                    parse_success=False,
                    parse_error=f"API error: {error.status}" if error.status and error.status >= 400 else str(error),
                    api_status=error.status,
                )
            )
            raise

        self.emitter.emit(EventType.LLM_COMPLETE, session.id, iteration=iteration, total_chars=len(result.text))
        self._write_llm_artifact("output", session.id, iteration, result.text)

        response = parse_agent_response(result.text, structured=result.structured)
        self.store.insert_llm_log(
            LLMCallLog(
                id=str(uuid.uuid4()),
                session_id=session.id,
                iteration=iteration,
                model=self.provider.model,
                input_prompt=input_prompt,
                output_raw=result.text,
                parse_success=not response.is_parse_error,
                parse_error=response.reasoning if response.is_parse_error else None,
                api_status=result.status,
            )
        )

        agent_metadata: Dict[str, Any] = {
            "status": response.status,
            "operations": [operation.to_dict() for operation in response.operations],
            "parse_method": response.parse_method,
        }
        if response.raw_output is not None:
            agent_metadata["raw_output"] = response.raw_output
        self.store.insert_message(
            session.id,
            MessageRole.AGENT,
            response.reasoning,
            iteration=iteration,
            metadata=agent_metadata,
        )
        note = response.blackboard_entry
        if note is not None and note.content.strip():
            self.store.add_blackboard_entry(
                session.id,
                BlackboardEntryType(note.entry_type),
                note.content,
                iteration=iteration,
            )

        results = self._execute(state, response, iteration)
        summary = summarize_results(results)
        self.store.insert_message(
            session.id,
            MessageRole.SYSTEM,
            f"Operation results (iteration {iteration}):\n{summary}",
            iteration=iteration,
            metadata={
                "hidden": True,
                "operation_results": True,
                "results": [
                    {
                        "index": item.index,
                        "type": item.type,
                        "success": item.success,
                        "path": item.path,
                        "error": item.error,
                    }
                    for item in results
                ],
            },
        )
        self._remember(state, response, results, summary, iteration)
        self.emitter.emit(
            EventType.ITERATION_COMPLETE,
            session.id,
            iteration=iteration,
            status=response.status,
            operations=len(results),
            succeeded=sum(1 for item in results if item.success),
        )
        return response

    def _execute(self, state: _RunState, response: AgentResponse, iteration: int) -> List[OperationResult]:
        session_id = state.session.id
        batch = plan_operations(
            response.operations,
            state.tools,
            expose_project=state.submission.expose_project,
            target_key=state.executor.target_key,
        )
        for skipped in batch.skipped:
            record = self.store.log_operation(
                session_id,
                iteration,
                skipped.type or "unknown",
                file_path=skipped.path,
                details={"index": skipped.index},
            )
            self.store.update_operation_status(record.id, OperationStatus.SKIPPED, error_message=skipped.error)

        log_ids: Dict[int, str] = {}

        def _on_start(operation: AgentOperation) -> None:
            record = self.store.log_operation(
                session_id,
                iteration,
                operation.type,
                file_path=operation.target,
                details={"index": operation.index, "params": _loggable_params(operation.params)},
            )
            log_ids[operation.index] = record.id
            self.emitter.emit(
                EventType.OPERATION_START,
                session_id,
                iteration=iteration,
                operation=operation.to_dict(),
                index=operation.index,
            )

        def _on_complete(operation: AgentOperation, result: OperationResult) -> None:
            status = OperationStatus.COMPLETED if result.success else OperationStatus.FAILED
            record_id = log_ids.get(operation.index)
            if record_id is not None:
                self.store.update_operation_status(record_id, status, error_message=result.error)
            self.emitter.emit(
                EventType.OPERATION_COMPLETE,
                session_id,
                iteration=iteration,
                index=operation.index,
                result=result.to_dict(),
            )

        executed = state.executor.execute_batch(batch.operations, on_start=_on_start, on_complete=_on_complete)
        results = sorted(executed + batch.skipped, key=lambda item: item.index)
        state.results.extend(results)
        return results

    # History -------------------------------------------------------------------------
    def _prompt_context(self, state: _RunState, iteration: int) -> PromptContext:
        blackboard = self.store.recent_blackboard_entries(state.session.id, limit=self.blackboard_limit)
        requests = [
            {"role": "user", "content": self._truncate(message.content)}
            for message in self.store.list_messages(state.session.id, include_hidden=False)
            if message.role is MessageRole.USER
        ]
        submission = state.submission
        return PromptContext(
            tools=state.tools,
            mode=submission.mode.value,
            auto_commit=submission.auto_commit,
            attached_files=[item.model_dump() for item in submission.attached_files],
            project_context=submission.project_context,
            chat_history=requests,
            blackboard=blackboard,
            current_iteration=iteration,
            max_iterations=state.session.max_iterations,
        )

    def _request_turns(self, state: _RunState) -> List[Dict[str, str]]:
        """Stored history with the previous iteration's full results swapped in."""
        turns = [dict(turn) for turn in state.history]
        if state.ephemeral and turns and turns[-1]["role"] == "user":
            turns[-1]["content"] = state.ephemeral
        return turns

    def _remember(
        self,
        state: _RunState,
        response: AgentResponse,
        results: List[OperationResult],
        summary: str,
        iteration: int,
    ) -> None:
        if response.is_parse_error:
            assistant = f"(unparseable response)\n{(response.raw_output or '')[:500]}"
            user = f"{PARSE_RETRY_HINT}\n\nOperation results (iteration {iteration}):\n{summary}"
        else:
            operations = ", ".join(
                f"{operation.type}({operation.target})" if operation.target else operation.type
                for operation in response.operations
            )
            assistant = f"{response.reasoning}\n\nOperations: {operations or 'none'}\nStatus: {response.status}"
            user = f"Operation results (iteration {iteration}):\n{summary}"

        state.history.append({"role": "assistant", "content": self._truncate(assistant)})
        state.history.append({"role": "user", "content": self._truncate(user)})
        self._trim_history(state)

        full = json.dumps([result.to_dict() for result in results], indent=2, ensure_ascii=False, default=str)
        if len(full) > EPHEMERAL_RESULT_CHARS:
            full = full[:EPHEMERAL_RESULT_CHARS] + "\n... (truncated)"
        state.ephemeral = f"{user}\n\nFull operation results:\n{full}"

    def _trim_history(self, state: _RunState) -> None:
        if len(state.history) <= self.history_limit:
            return
        head = state.history[0]
        tail = state.history[-(self.history_limit - 1) :]
        # Keep the first retained tail turn an assistant turn so roles alternate.
        if tail and tail[0]["role"] == "user":
            tail = tail[1:]
        state.history = [head] + tail

    def _truncate(self, text: str) -> str:
        if len(text) <= self.history_char_limit:
            return text
        return text[: self.history_char_limit] + "\n... (truncated)"

    def _rebuild_history(self, messages: List[Message]) -> List[Dict[str, str]]:
        history: List[Dict[str, str]] = []
        for message in messages:
            if message.role is MessageRole.USER:
                content = message.content if history else f"Task: {message.content}"
                history.append({"role": "user", "content": self._truncate(content)})
            elif message.role is MessageRole.AGENT:
                history.append({"role": "assistant", "content": self._truncate(message.content)})
            else:
                history.append({"role": "user", "content": self._truncate(f"[System]: {message.content}")})
        if len(history) > self.history_limit:
            history = [history[0]] + history[-(self.history_limit - 1) :]
        return history

    # Artifacts -----------------------------------------------------------------------
    def _write_llm_artifact(self, kind: str, session_id: str, iteration: int, text: str) -> None:
        """Persist prompt/output text for offline inspection; failures are ignored."""
        if self.logs_dir is None:
            return
        root = self.logs_dir / "llm_inputs"
        timestamp = datetime.now(timezone.utc)
        name = "__".join(
            [
                kind,
                slugify(session_id, fallback="session"),
                f"iter-{iteration}",
                timestamp.strftime("%Y%m%dT%H%M%S%fZ"),
                uuid.uuid4().hex[:8],
            ]
        )
        header = [
            f"Timestamp: {timestamp.isoformat()}",
            f"Session: {session_id}",
            f"Iteration: {iteration}",
            f"Model: {self.provider.model}",
            "",
        ]
        try:
            root.mkdir(parents=True, exist_ok=True)
            (root / f"{name}.txt").write_text("\n".join(header) + text, encoding="utf-8")
        except OSError:
            return


def _loggable_params(params: Mapping[str, Any]) -> Dict[str, Any]:
    """Operation params with long text values shortened for the audit log."""
    logged: Dict[str, Any] = {}
    for key, value in params.items():
        if isinstance(value, str) and len(value) > 500:
            logged[key] = value[:500] + "..."
        else:
            logged[key] = value
    return logged


__all__ = [
    "AgentOrchestrator",
    "AttachedFile",
    "OrchestratorError",
    "SessionOutcome",
    "TaskSubmission",
    "clamp_iterations",
]
