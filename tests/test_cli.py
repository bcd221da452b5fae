from __future__ import annotations

from pathlib import Path

from typer.testing import CliRunner

from cao.cli import app
from cao.tools.workspace_store import WorkspaceRepositoryStore

runner = CliRunner()


def _init(tmp_path: Path) -> Path:
    (tmp_path / "main.py").write_text("print('hi')\n", encoding="utf-8")
    config_path = tmp_path / "config.yaml"
    result = runner.invoke(app, ["init", "--config", str(config_path), "--model", "offline"])
    assert result.exit_code == 0, result.output
    return config_path


def test_init_refuses_to_overwrite(tmp_path: Path) -> None:
    config_path = _init(tmp_path)

    again = runner.invoke(app, ["init", "--config", str(config_path)])
    forced = runner.invoke(app, ["init", "--config", str(config_path), "--force"])

    assert again.exit_code == 1
    assert "already exists" in again.output
    assert forced.exit_code == 0


def test_run_offline_session_and_inspect_it(tmp_path: Path) -> None:
    config_path = _init(tmp_path)

    run = runner.invoke(app, ["run", "Say hello", "--config", str(config_path)])

    assert run.exit_code == 0, run.output
    assert "completed (completed)" in run.output
    assert (tmp_path / "data" / "cao.sqlite").exists()
    assert list((tmp_path / "data" / "logs" / "llm_inputs").glob("input__*.txt"))

    listing = runner.invoke(app, ["sessions", "--config", str(config_path)])
    session_id = listing.output.split()[0]
    transcript = runner.invoke(app, ["transcript", session_id, "--config", str(config_path)])
    full = runner.invoke(app, ["transcript", session_id, "--config", str(config_path), "--all", "--json"])

    assert "[completed]" in listing.output
    assert "USER:\nSay hello" in transcript.output
    assert "Operation results" not in transcript.output
    assert "Operation results" in full.output


def test_unknown_model_exits_before_creating_session(tmp_path: Path) -> None:
    config_path = _init(tmp_path)

    result = runner.invoke(app, ["run", "Task", "--config", str(config_path), "--model", "gpt-4o"])
    listing = runner.invoke(app, ["sessions", "--config", str(config_path)])

    assert result.exit_code == 1
    assert "Provider configuration error" in result.output
    assert "No sessions recorded." in listing.output


def test_preview_prompt_reports_sizes(tmp_path: Path) -> None:
    config_path = _init(tmp_path)

    full = runner.invoke(app, ["preview-prompt", "Fix it", "--config", str(config_path), "--attach", "main.py"])
    summary = runner.invoke(app, ["preview-prompt", "--config", str(config_path), "--summary"])

    assert full.exit_code == 0, full.output
    assert "=== ATTACHED FILES ===" in full.output
    assert "- main.py" in full.output
    assert "USER: Fix it" in full.output
    assert "=== IDENTITY ===" not in summary.output
    assert "tokens" in summary.output


def test_staged_apply_and_abort(tmp_path: Path) -> None:
    config_path = _init(tmp_path)
    store = WorkspaceRepositoryStore(tmp_path, staging_path=tmp_path / "data" / "staging.json")
    store.stage_change("local", "edit", "main.py", old_content="print('hi')\n", new_content="print('bye')\n")

    shown = runner.invoke(app, ["staged", "--config", str(config_path)])
    applied = runner.invoke(app, ["staged", "--config", str(config_path), "--apply"])
    aborted = runner.invoke(app, ["abort", "missing-session", "--config", str(config_path)])

    assert "- edit: main.py" in shown.output
    assert applied.exit_code == 0
    assert (tmp_path / "main.py").read_text(encoding="utf-8") == "print('bye')\n"
    assert aborted.exit_code == 1
