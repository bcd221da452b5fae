from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from cao.config import AgentConfig, ConfigError, default_config_data, load_config, write_config


def test_missing_file_yields_defaults(tmp_path: Path) -> None:
    config = load_config(tmp_path / "absent.yaml")

    assert config.models.default == "gemini-2.5-flash"
    assert config.loop.max_iterations == 30
    assert config.workspace.repo_id == "local"


def test_roundtrip_and_iteration_clamp(tmp_path: Path) -> None:
    path = tmp_path / "config.yaml"
    data = default_config_data()
    data["loop"]["max_iterations"] = 250
    data["models"]["default"] = "claude-sonnet-4"
    write_config(path, data)

    config = load_config(path)

    assert list(yaml.safe_load(path.read_text(encoding="utf-8")))[0] == "models"
    assert config.models.default == "claude-sonnet-4"
    assert config.loop.max_iterations == 100


def test_invalid_config_raises(tmp_path: Path) -> None:
    bad_yaml = tmp_path / "bad.yaml"
    bad_yaml.write_text("models: [unclosed\n", encoding="utf-8")
    not_mapping = tmp_path / "list.yaml"
    not_mapping.write_text("- a\n- b\n", encoding="utf-8")

    with pytest.raises(ConfigError):
        load_config(bad_yaml)
    with pytest.raises(ConfigError):
        load_config(not_mapping)
    with pytest.raises(ConfigError):
        AgentConfig.from_mapping({"loop": {"unknown_key": 1}})


def test_api_keys_fall_back_to_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("XAI_API_KEY", "from-env")
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    config = AgentConfig.from_mapping({"models": {"api_keys": {"anthropic": "from-config"}}})

    keys = config.models.resolved_api_keys()

    assert keys == {"gemini": None, "anthropic": "from-config", "xai": "from-env"}


def test_relative_paths_resolve_against_config_dir(tmp_path: Path) -> None:
    config = AgentConfig()

    assert config.resolve_path("data/x.sqlite", tmp_path) == (tmp_path / "data" / "x.sqlite").resolve()
    assert config.resolve_path(None, tmp_path) is None
