"""CLI commands for running coding-agent sessions against a local workspace."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer
import yaml

from .config import (
    DEFAULT_CONFIG_NAME,
    AgentConfig,
    ConfigError,
    default_config_data,
    load_config,
    write_config,
)
from .events import AgentEvent, EventEmitter, EventType
from .memory.schema import SessionMode, SessionStatus
from .memory.store import MemoryStore
from .models import LLMClientError, ProviderAdapter, build_provider
from .orchestrator import AgentOrchestrator, OrchestratorError, SessionOutcome, TaskSubmission
from .prompts import PromptContext, PromptSection, default_prompt_sections, preview_prompt
from .tools.catalog import active_tools, apply_custom_descriptions, default_tools
from .tools.repository import RepositoryStoreError
from .tools.workspace_store import WorkspaceRepositoryStore

APP_HELP = "Coding agent orchestrator CLI."

app = typer.Typer(help=APP_HELP)

CONFIG_OPTION_HELP = "Path to the agent configuration file."


def _load(config: str) -> tuple[AgentConfig, Path]:
    config_path = Path(config)
    try:
        return load_config(config_path), config_path.resolve().parent
    except ConfigError as error:
        typer.echo(str(error))
        raise typer.Exit(code=1) from error


def _open_store(settings: AgentConfig, base: Path) -> MemoryStore:
    db_path = settings.resolve_path(settings.paths.db_path, base)
    if db_path is None:
        data_root = settings.resolve_path(settings.paths.data, base) or base / "data"
        db_path = data_root / "cao.sqlite"
    return MemoryStore(db_path)


def _open_workspace(settings: AgentConfig, base: Path) -> WorkspaceRepositoryStore:
    root = settings.resolve_path(settings.workspace.root, base) or base
    try:
        return WorkspaceRepositoryStore(root, staging_path=settings.resolve_path(settings.paths.staging, base))
    except RepositoryStoreError as error:
        typer.echo(str(error))
        raise typer.Exit(code=1) from error


def _build_provider(settings: AgentConfig, model: Optional[str], *, stream: Optional[bool] = None) -> ProviderAdapter:
    models_cfg = settings.models
    try:
        return build_provider(
            model or models_cfg.default,
            api_keys=models_cfg.resolved_api_keys(),
            max_tokens=models_cfg.max_tokens,
            temperature=models_cfg.temperature,
            timeout=models_cfg.timeout,
            stream=models_cfg.stream if stream is None else stream,
        )
    except LLMClientError as error:
        typer.echo(f"Provider configuration error: {error}")
        raise typer.Exit(code=1) from error


def _read_mapping_file(path: Optional[Path], label: str) -> Any:
    if path is None:
        return None
    try:
        text = path.read_text(encoding="utf-8")
        return yaml.safe_load(text)
    except (OSError, yaml.YAMLError) as error:
        typer.echo(f"Failed to read {label} from {path}: {error}")
        raise typer.Exit(code=1) from error


def _load_sections(path: Optional[Path]) -> Optional[List[PromptSection]]:
    data = _read_mapping_file(path, "prompt sections")
    if data is None:
        return None
    if isinstance(data, dict):
        data = data.get("sections") or []
    if not isinstance(data, list):
        typer.echo("Prompt sections file must contain a list of sections.")
        raise typer.Exit(code=1)
    try:
        return [PromptSection.model_validate(item) for item in data]
    except ValueError as error:
        typer.echo(f"Invalid prompt section: {error}")
        raise typer.Exit(code=1) from error


def _attached(paths: List[str]) -> List[Dict[str, Any]]:
    return [{"path": path.strip()} for path in paths if path.strip()]


def _print_event(event: AgentEvent) -> None:
    payload = event.payload
    if event.type is EventType.LLM_STREAMING:
        return
    if event.type is EventType.OPERATION_START:
        operation = payload.get("operation") or {}
        params = operation.get("params") or {}
        target = params.get("path") or params.get("file_id") or ""
        typer.echo(f"  [{event.iteration}] -> {operation.get('type')} {target}".rstrip())
    elif event.type is EventType.OPERATION_COMPLETE:
        result = payload.get("result") or {}
        if not result.get("success"):
            typer.echo(f"  [{event.iteration}]    failed: {result.get('error')}")
    elif event.type is EventType.LLM_COMPLETE:
        typer.echo(f"Iteration {event.iteration}: received {payload.get('total_chars', 0)} chars")
    elif event.type is EventType.ITERATION_COMPLETE:
        typer.echo(f"Iteration {event.iteration}: status {payload.get('status')}")
    elif event.type is EventType.ERROR:
        typer.echo(f"Error: {payload.get('error')}")


def _render_outcome(outcome: SessionOutcome) -> None:
    succeeded = sum(1 for result in outcome.operation_results if result.success)
    typer.echo(f"Session {outcome.session_id}: {outcome.status.value} ({outcome.stop_reason})")
    typer.echo(f"Iterations: {outcome.iterations}")
    typer.echo(f"Operations: {len(outcome.operation_results)} total | {succeeded} succeeded")
    if outcome.error:
        typer.echo(f"Error: {outcome.error}")


def _build_orchestrator(
    settings: AgentConfig,
    base: Path,
    store: MemoryStore,
    workspace: WorkspaceRepositoryStore,
    provider: ProviderAdapter,
    *,
    quiet: bool,
) -> AgentOrchestrator:
    emitter = EventEmitter()
    if not quiet:
        emitter.subscribe(_print_event)
    return AgentOrchestrator(
        store,
        workspace,
        provider,
        emitter=emitter,
        history_limit=settings.loop.history_limit,
        history_char_limit=settings.loop.history_char_limit,
        blackboard_limit=settings.loop.blackboard_limit,
        logs_dir=settings.resolve_path(settings.paths.logs, base),
    )


def _finish(outcome: SessionOutcome, workspace: WorkspaceRepositoryStore, repo_id: str, *, apply: bool) -> None:
    _render_outcome(outcome)
    staged = workspace.list_staged(repo_id)
    if staged:
        typer.echo(f"Staged changes: {len(staged)}")
        for change in staged:
            typer.echo(f"- {change.kind}: {change.path}")
    if apply and staged:
        touched = workspace.apply_staged(repo_id)
        typer.echo(f"Applied {len(touched)} change(s) to the working tree.")
    if outcome.status is SessionStatus.FAILED:
        raise typer.Exit(code=1)


@app.command()
def init(
    config: str = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c", help=CONFIG_OPTION_HELP),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Default model identifier."),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing configuration file."),
) -> None:
    """Write a starter configuration file."""
    config_path = Path(config)
    if config_path.exists() and not force:
        typer.echo(f"Config already exists at {config_path}; use --force to overwrite.")
        raise typer.Exit(code=1)
    data = default_config_data()
    if model:
        data["models"]["default"] = model
    write_config(config_path, data)
    typer.echo(f"Wrote configuration to {config_path}")


@app.command()
def run(
    task: str = typer.Argument(..., help="Task description for the agent."),
    config: str = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c", help=CONFIG_OPTION_HELP),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Override the configured model."),
    attach: List[str] = typer.Option([], "--attach", "-a", help="Workspace path to attach (repeatable)."),
    project_context: Optional[Path] = typer.Option(
        None, "--project-context", help="YAML/JSON file describing the surrounding project."
    ),
    expose_project: bool = typer.Option(
        False, "--expose-project/--no-expose-project", help="Enable the read-only project tools."
    ),
    sections: Optional[Path] = typer.Option(None, "--sections", help="YAML file with prompt sections."),
    mode: SessionMode = typer.Option(SessionMode.SINGLE_TASK, "--mode", help="Task mode."),
    auto_commit: bool = typer.Option(False, "--auto-commit/--no-auto-commit", help="Auto-commit flag for the prompt."),
    max_iterations: Optional[int] = typer.Option(None, "--max-iterations", help="Iteration budget (1-100)."),
    stream: Optional[bool] = typer.Option(None, "--stream/--no-stream", help="Override streaming."),
    apply: bool = typer.Option(False, "--apply", help="Write staged changes to disk when the session ends."),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Only print the final summary."),
) -> None:
    """Run a new agent session for TASK."""
    settings, base = _load(config)
    provider = _build_provider(settings, model, stream=stream)
    context = _read_mapping_file(project_context, "project context") or {}
    if not isinstance(context, dict):
        typer.echo("Project context must be a mapping.")
        raise typer.Exit(code=1)

    try:
        submission = TaskSubmission(
            task_description=task,
            attached_files=_attached(attach),
            project_context=context,
            mode=mode,
            auto_commit=auto_commit,
            max_iterations=max_iterations or settings.loop.max_iterations,
            prompt_sections=_load_sections(sections),
            expose_project=expose_project,
            repo_id=settings.workspace.repo_id,
        )
    except ValueError as error:
        typer.echo(f"Invalid task submission: {error}")
        raise typer.Exit(code=1) from error

    workspace = _open_workspace(settings, base)
    with _open_store(settings, base) as store:
        orchestrator = _build_orchestrator(settings, base, store, workspace, provider, quiet=quiet)
        typer.echo(f"Running agent with {provider.model} (max {submission.max_iterations} iterations)...")
        outcome = orchestrator.run(submission)
    _finish(outcome, workspace, submission.repo_id, apply=apply)


@app.command()
def resume(
    session_id: str = typer.Argument(..., help="Session identifier."),
    message: Optional[str] = typer.Option(None, "--message", "-m", help="Follow-up instruction."),
    config: str = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c", help=CONFIG_OPTION_HELP),
    model: Optional[str] = typer.Option(None, "--model", help="Override the configured model."),
    apply: bool = typer.Option(False, "--apply", help="Write staged changes to disk when the session ends."),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Only print the final summary."),
) -> None:
    """Continue an existing session."""
    settings, base = _load(config)
    provider = _build_provider(settings, model)
    workspace = _open_workspace(settings, base)
    with _open_store(settings, base) as store:
        orchestrator = _build_orchestrator(settings, base, store, workspace, provider, quiet=quiet)
        try:
            outcome = orchestrator.resume(session_id, message)
        except OrchestratorError as error:
            typer.echo(str(error))
            raise typer.Exit(code=1) from error
    _finish(outcome, workspace, settings.workspace.repo_id, apply=apply)


@app.command("preview-prompt")
def preview_prompt_command(
    task: str = typer.Argument("", help="Optional task text shown in the chat history section."),
    config: str = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c", help=CONFIG_OPTION_HELP),
    attach: List[str] = typer.Option([], "--attach", "-a", help="Attached path (repeatable)."),
    project_context: Optional[Path] = typer.Option(None, "--project-context", help="Project context file."),
    expose_project: bool = typer.Option(False, "--expose-project/--no-expose-project"),
    sections: Optional[Path] = typer.Option(None, "--sections", help="YAML file with prompt sections."),
    summary_only: bool = typer.Option(False, "--summary", help="Print only the size figures."),
) -> None:
    """Assemble the first-iteration system prompt without calling a model."""
    settings, _ = _load(config)
    context = _read_mapping_file(project_context, "project context") or {}
    tools = active_tools(apply_custom_descriptions(default_tools(), None), expose_project=expose_project)
    prompt_context = PromptContext(
        tools=tools,
        attached_files=_attached(attach),
        project_context=context if isinstance(context, dict) else None,
        chat_history=[{"role": "user", "content": task}] if task else (),
        current_iteration=1,
        max_iterations=settings.loop.max_iterations,
    )
    preview = preview_prompt(_load_sections(sections) or default_prompt_sections(), prompt_context)
    if not summary_only:
        typer.echo(preview.prompt)
        typer.echo("")
    typer.echo(
        f"{preview.char_count} chars | {preview.word_count} words | ~{preview.token_estimate} tokens"
    )


@app.command()
def sessions(
    config: str = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c", help=CONFIG_OPTION_HELP),
    limit: int = typer.Option(20, "--limit", help="Maximum sessions to list."),
) -> None:
    """List recent sessions."""
    settings, base = _load(config)
    with _open_store(settings, base) as store:
        records = store.list_sessions(limit=limit)
    if not records:
        typer.echo("No sessions recorded.")
        return
    for record in records:
        typer.echo(
            f"{record.id} [{record.status.value}] iter {record.current_iteration}/{record.max_iterations} "
            f"- {record.task_description[:60]}"
        )


@app.command()
def transcript(
    session_id: str = typer.Argument(..., help="Session identifier."),
    config: str = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c", help=CONFIG_OPTION_HELP),
    include_hidden: bool = typer.Option(False, "--all", help="Include hidden system messages."),
    as_json: bool = typer.Option(False, "--json", help="Emit JSON instead of text."),
) -> None:
    """Print the stored conversation for a session."""
    settings, base = _load(config)
    with _open_store(settings, base) as store:
        session = store.get_session(session_id)
        if session is None:
            typer.echo(f"Unknown session: {session_id}")
            raise typer.Exit(code=1)
        messages = store.list_messages(session_id, include_hidden=include_hidden)
        blackboard = store.recent_blackboard_entries(session_id)

    if as_json:
        payload = {
            "session": session.model_dump(mode="json"),
            "messages": [message.model_dump(mode="json") for message in messages],
            "blackboard": [entry.model_dump(mode="json") for entry in blackboard],
        }
        typer.echo(json.dumps(payload, indent=2))
        return

    typer.echo(f"Session {session.id} [{session.status.value}]")
    for message in messages:
        typer.echo(f"\n({message.iteration}) {message.role.value.upper()}:\n{message.content}")
    if blackboard:
        typer.echo("\nBlackboard:")
        for entry in blackboard:
            typer.echo(f"- [{entry.entry_type.value}] {entry.content}")


@app.command()
def abort(
    session_id: str = typer.Argument(..., help="Session identifier."),
    config: str = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c", help=CONFIG_OPTION_HELP),
) -> None:
    """Flag a session so it stops before its next iteration."""
    settings, base = _load(config)
    with _open_store(settings, base) as store:
        if store.get_session(session_id) is None:
            typer.echo(f"Unknown session: {session_id}")
            raise typer.Exit(code=1)
        store.request_abort(session_id)
    typer.echo(f"Abort requested for {session_id}")


@app.command()
def staged(
    config: str = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c", help=CONFIG_OPTION_HELP),
    apply: bool = typer.Option(False, "--apply", help="Write staged changes to disk."),
    discard: bool = typer.Option(False, "--discard", help="Drop all staged changes."),
) -> None:
    """Show, apply or discard staged workspace changes."""
    if apply and discard:
        typer.echo("Choose either --apply or --discard.")
        raise typer.Exit(code=1)
    settings, base = _load(config)
    workspace = _open_workspace(settings, base)
    repo_id = settings.workspace.repo_id
    changes = workspace.list_staged(repo_id)
    if not changes:
        typer.echo("No staged changes.")
        return
    for change in changes:
        typer.echo(f"- {change.kind}: {change.path}")
    if apply:
        touched = workspace.apply_staged(repo_id)
        typer.echo(f"Applied {len(touched)} change(s).")
    elif discard:
        count = workspace.discard_all_staged(repo_id)
        typer.echo(f"Discarded {count} change(s).")


if __name__ == "__main__":
    app()
